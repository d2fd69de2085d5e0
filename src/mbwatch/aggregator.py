# =============================================================================
# Event Aggregator
# =============================================================================
# Collects events from every account monitor and runs the update script once
# per burst.
#
# Key responsibilities:
#   - Debounce: the first NEW_MAIL of a burst arms a short timer, accounts
#     reporting before it fires join the same update
#   - Full updates supersede per-account ones
#   - Periodic forced full updates (full_update_ticker)
#   - Running the external update script
#
# Design notes:
#   - The timer is never re-armed while accounts are pending, so the added
#     latency is bounded by the delay after the FIRST event of a burst
#   - The target list has no ordering guarantee
#   - The script is awaited inside the loop, so two runs never overlap;
#     events arriving meanwhile wait in the queue
# =============================================================================

import asyncio
import logging
import shutil
from typing import Awaitable, Callable

from mbwatch.config import WatchSettings, expand_path
from mbwatch.core import Account, Event, EventKind, Timer

logger = logging.getLogger(__name__)

# Type for the function invoked with the update targets
UpdateAction = Callable[[list[str]], Awaitable[None]]


async def run_update_script(script: str, update_names: list[str]) -> int | None:
    """
    Run the update script with the update targets as arguments.

    The script inherits stdout/stderr. Failures are logged, never raised.

    Args:
        script: Script name or path (~ is expanded, PATH is searched).
        update_names: Targets such as "work:INBOX".

    Returns:
        The script's exit status, or None if it could not be run.
    """
    logger.debug(f"Running update script {script} with args: {update_names}")

    path = shutil.which(str(expand_path(script)))
    if path is None:
        logger.error(f"Cannot find update script {script} in PATH")
        return None
    logger.debug(f"Update script found: {path}")

    try:
        proc = await asyncio.create_subprocess_exec(path, *update_names)
        status = await proc.wait()
    except OSError as e:
        logger.error(f"{script}: could not be run: {e}")
        return None

    if status != 0:
        logger.warning(f"{script}: returned an error: exit status {status}")
    else:
        logger.debug(f"{script}: completed")
    return status


async def full_update_ticker(events: asyncio.Queue, interval: float) -> None:
    """Emit a FULL_UPDATE now and then every `interval` seconds."""
    while True:
        await events.put(Event(EventKind.FULL_UPDATE))
        await asyncio.sleep(interval)


class EventAggregator:
    """
    Debounces account events into update script runs.

    Usage:
        >>> aggregator = EventAggregator(accounts, events, settings, action)
        >>> await aggregator.run()

    Attributes:
        accounts: All watched accounts, keyed by name.
        pending: Names of accounts waiting for an update.
        full_update: A full update is pending; supersedes `pending`.
    """

    def __init__(
        self,
        accounts: dict[str, Account],
        events: asyncio.Queue,
        settings: WatchSettings,
        action: UpdateAction,
    ) -> None:
        self.accounts = accounts
        self.settings = settings
        self.pending: set[str] = set()
        self.full_update = False
        self._events = events
        self._action = action
        self._timer = Timer()

    @property
    def timer(self) -> Timer:
        return self._timer

    async def run(self) -> None:
        """Process events forever."""
        while True:
            logger.debug("Aggregator select")
            get = asyncio.ensure_future(self._events.get())
            fire = asyncio.ensure_future(self._timer.wait())
            try:
                done, _ = await asyncio.wait({get, fire}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                get.cancel()
                fire.cancel()

            if get in done:
                self.handle(get.result())
            if self._timer.consume():
                await self.flush()

    def handle(self, event: Event) -> None:
        """Apply one event to the pending state."""
        if event.kind is EventKind.NEW_MAIL:
            logger.debug(f"Received NEW_MAIL: {event.account.name} ({event.count})")
            if not self.full_update:
                # First event of a burst arms the timer
                if not self.pending:
                    logger.debug("Setting damp timer")
                    self._timer.arm(self.settings.debounce)
                self.pending.add(event.account.name)

        elif event.kind is EventKind.FULL_UPDATE:
            logger.debug(f"Received FULL_UPDATE from {event.account.name if event.account else 'ticker'}")
            if not self.full_update:
                if self.pending:
                    # Timer already armed by the pending burst
                    self.pending.clear()
                else:
                    logger.debug("Setting damp timer")
                    self._timer.arm(self.settings.debounce)
            self.full_update = True

        else:
            logger.debug(f"Received {event}")

    def targets(self) -> list[str]:
        """
        Update targets for the pending state, deduplicated.

        A full update covers every watched account. There is no ordering
        guarantee.
        """
        if self.full_update:
            names = self.accounts.keys()
        else:
            names = self.pending
        return list({self.accounts[name].update_name for name in names if name in self.accounts})

    async def flush(self) -> None:
        """Run the update action for everything pending and reset."""
        logger.debug("Damped timer fires")
        targets = self.targets()
        self.full_update = False
        self.pending.clear()
        await self._action(targets)
