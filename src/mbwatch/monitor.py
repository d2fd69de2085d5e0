# =============================================================================
# Account Monitor
# =============================================================================
# Keeps one account online and reports INBOX changes to the aggregator.
#
# State machine:
#
#   DISCONNECTED --login--> CONNECTED --no IDLE--> POLL_FALLBACK (loop)
#        ^                      |
#        |                   IDLE ok, SELECT INBOX
#        |                      v
#        +---- IDLE ended --- WATCHING <--- REFRESHING (every 29 minutes)
#
# Key responsibilities:
#   - Resolve credentials, connect, log in, check for IDLE
#   - Poll INBOX at the poll interval when IDLE is unsupported
#   - Run IDLE and turn EXISTS updates into NEW_MAIL events
#   - Re-issue IDLE before the server drops it
#   - Reconnect after errors, never giving up
#
# Design notes:
#   - One task per account. Only that task touches the monitor's fields
#   - The session is logged out and dropped before any reconnect
#   - The message count is reset to 0 on teardown, and a delta against 0
#     is always 0: the first poll after a reconnect never reports new mail
#   - Broken invariants raise ContractViolation, which is never caught here
# =============================================================================

import asyncio
import logging
from enum import Enum, auto
from typing import Awaitable, Callable

from mbwatch.config import WatchSettings
from mbwatch.core import Account, AccountConfig, ContractViolation, Event, EventKind, Timer
from mbwatch.credentials import CredentialError, resolve_password
from mbwatch.imap.client import (
    RECOVERABLE_ERRORS,
    IMAPAuthenticationError,
    IMAPSession,
    MailboxUpdate,
)
from mbwatch.imap.idle import IdleExchange

logger = logging.getLogger(__name__)

# Creates a fresh session for a connection attempt
SessionFactory = Callable[[AccountConfig], IMAPSession]


class AccountState(Enum):
    """Where an account is in its connection life cycle."""
    DISCONNECTED = auto()
    CONNECTED = auto()
    POLL_FALLBACK = auto()
    WATCHING = auto()
    REFRESHING = auto()


def mail_delta(old: int, new: int) -> int:
    """
    Number of new messages between two INBOX counts.

    An old count of 0 means "unknown baseline" (fresh connection), which
    never reports a delta.
    """
    if old == 0:
        return 0
    return new - old


class AccountMonitor:
    """
    Watches one account via IDLE or polling.

    Usage:
        >>> monitor = AccountMonitor(account, events, settings)
        >>> task = asyncio.create_task(monitor.run())

    Attributes:
        account: The watched account.
        state: Current AccountState.
        msg_count: Last known INBOX message count (0 = unknown).
        idle_ok: The current session supports IDLE.
    """

    def __init__(
        self,
        account: Account,
        events: asyncio.Queue,
        settings: WatchSettings,
        session_factory: SessionFactory | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the monitor.

        Args:
            account: The account to watch.
            events: Queue feeding the event aggregator.
            settings: Intervals and flags.
            session_factory: Builds sessions (tests pass fakes).
            sleep: Pause function (tests pass a recorder).
        """
        self.account = account
        self.settings = settings
        self.state = AccountState.DISCONNECTED
        self.msg_count = 0
        self.idle_ok = False

        self._events = events
        self._session_factory = session_factory or self._new_session
        self._sleep = sleep
        self._running = False

        self._session: IMAPSession | None = None
        self._password: str | None = None
        self._exchange: IdleExchange | None = None
        self._updates: asyncio.Queue | None = None
        self._refresh = Timer()

    @property
    def name(self) -> str:
        return self.account.name

    @property
    def session(self) -> IMAPSession | None:
        return self._session

    @property
    def watching(self) -> bool:
        return self._exchange is not None

    @property
    def poll_interval(self) -> float:
        """Seconds between polls: the account override or the global one."""
        if self.account.config.poll_interval is not None:
            return self.account.config.poll_interval
        return self.settings.poll_interval

    def _new_session(self, config: AccountConfig) -> IMAPSession:
        return IMAPSession(config, trace=self.settings.trace)

    # =========================================================================
    # Main Loop
    # =========================================================================

    async def run(self) -> None:
        """
        Take the account online and keep it that way.

        Errors connecting are logged and retried after a delay. Only a
        ContractViolation (or cancellation) ends this coroutine.
        """
        if self._running:
            raise ContractViolation(f"{self.name}: account already online")
        self._running = True

        logger.debug(f"{self.name}: taking online")
        try:
            while True:
                await self.step()
        finally:
            self._running = False

    async def step(self) -> None:
        """Run one turn of the state machine."""
        if self._session is None:
            await self.login()

        if self._session is None:
            # No connection, wait, then try to reconnect
            await self._pause(self.settings.reconnect_delay, "reconnect")
            return

        if not self.idle_ok:
            # No IDLE, wait, then check for new messages
            await self._poll_pause()
            await self.check_for_new()
            return

        if self._exchange is None:
            try:
                await self.select_inbox()
            except RECOVERABLE_ERRORS as e:
                logger.warning(f"{self.name}: got error selecting INBOX, reconnecting: {e}")
                await self.teardown()
                await self._pause(self.settings.reconnect_delay, "reconnect")
                return
            self.start_idle()

        await self.watch()

    # =========================================================================
    # Connection
    # =========================================================================

    async def login(self) -> bool:
        """
        Resolve credentials, connect and log in.

        Returns:
            True on success. Failures are logged and leave the account
            DISCONNECTED.
        """
        try:
            if self._password is None:
                self._password = await resolve_password(
                    self.account.config, use_keyring=self.settings.use_keyring
                )

            self._session = self._session_factory(self.account.config)
            await self._session.connect(self._password)
            self.idle_ok = self._session.supports_idle()
        except (CredentialError, *RECOVERABLE_ERRORS) as e:
            if isinstance(e, IMAPAuthenticationError):
                # The command or keyring may hand out a new one next time
                self._password = None
            logger.warning(f"{self.name}: login failed, will retry: {e}")
            await self.teardown()
            return False

        logger.debug(f"{self.name}: support IDLE: {self.idle_ok}")
        self.state = AccountState.CONNECTED if self.idle_ok else AccountState.POLL_FALLBACK
        return True

    async def teardown(self, offline: bool = False) -> None:
        """
        Drop the session: stop IDLE, log out, forget the message count.

        Args:
            offline: Tell the aggregator the account went offline.
        """
        if self._exchange is not None:
            await self.stop_idle(drain=False)

        session, self._session = self._session, None
        if session is not None:
            await session.logout()

        self.msg_count = 0
        self.idle_ok = False
        self.state = AccountState.DISCONNECTED

        if offline:
            await self._events.put(Event(EventKind.OFFLINE, self.account))

    async def _pause(self, delay: float, reason: str) -> None:
        logger.debug(f"{self.name}: pausing {delay:.0f}s for {reason}")
        await self._sleep(delay)

    async def _poll_pause(self) -> None:
        if self.idle_ok:
            raise ContractViolation(f"{self.name}: poll called when IDLE supported")
        await self._pause(self.poll_interval, "next poll")

    # =========================================================================
    # Mailbox Checks
    # =========================================================================

    async def select_inbox(self) -> int:
        """Select INBOX and store the server's message count."""
        self.msg_count = await self._session.select_inbox()
        logger.debug(f"{self.name}: {self.msg_count} messages")
        return self.msg_count

    async def check_for_new(self) -> int:
        """
        Poll INBOX once and report new mail.

        A failed check tears the session down so the next step reconnects.

        Returns:
            The delta that was computed (0 on errors).
        """
        old = self.msg_count
        try:
            await self.select_inbox()
        except RECOVERABLE_ERRORS as e:
            logger.warning(f"{self.name}: got error checking for new: {e}")
            await self.teardown(offline=True)
            return 0

        delta = mail_delta(old, self.msg_count)
        if delta > 0:
            await self.new_mail(delta)
        elif self.settings.trace:
            logger.debug(f"{self.name}: check for new returns {delta}")
        return delta

    async def new_mail(self, count: int) -> None:
        """Signal the aggregator (a count of 0 asks for a full update)."""
        if count == 0:
            logger.debug(f"{self.account}: signaling FULL update")
            await self._events.put(Event(EventKind.FULL_UPDATE, self.account))
        else:
            logger.debug(f"{self.account}: signaling NEW mail: {count}")
            await self._events.put(Event(EventKind.NEW_MAIL, self.account, count))

    # =========================================================================
    # IDLE
    # =========================================================================

    def start_idle(self) -> None:
        """
        Start the IDLE exchange and arm the refresh timer.

        Raises:
            ContractViolation: If already watching or not connected.
        """
        if self._exchange is not None:
            raise ContractViolation(f"{self.name}: IDLE already running")
        if self._session is None or not self.idle_ok:
            raise ContractViolation(f"{self.name}: IDLE started without an IDLE session")

        logger.debug(f"{self.name}: starting to IDLE")

        self._updates = asyncio.Queue()
        self._session.updates = self._updates
        self._exchange = IdleExchange(self.name, trace=self.settings.trace)
        self._exchange.start(self._session)
        self._refresh.arm(self.settings.idle_refresh)
        self.state = AccountState.WATCHING

    async def stop_idle(self, drain: bool) -> bool:
        """
        Stop the IDLE exchange.

        Args:
            drain: Block until the server completed the command.

        Returns:
            True if the session is still usable for another command.
        """
        logger.debug(f"{self.name}: stopping IDLE")

        self._refresh.cancel()

        exchange, self._exchange = self._exchange, None
        clean = await exchange.stop(wait=drain)
        if drain and clean and exchange.error is not None:
            clean = False

        if self._session is not None:
            self._session.updates = None
        self._updates = None
        return clean

    async def watch(self) -> None:
        """Wait for an update, the end of IDLE, or the refresh timer."""
        if self.settings.trace:
            logger.debug(f"{self.name}: selecting")

        get = asyncio.ensure_future(self._updates.get())
        refresh = asyncio.ensure_future(self._refresh.wait())
        idle_done = self._exchange.done
        try:
            done, _ = await asyncio.wait(
                {get, idle_done, refresh}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            get.cancel()
            refresh.cancel()

        if get in done:
            await self._on_update(get.result())
        elif idle_done in done:
            error = self._exchange.error
            if isinstance(error, ContractViolation):
                raise error
            # We didn't ask for this, so the connection is probably lost
            logger.debug(f"{self.name}: IDLE has stopped: {error!r}")
            await self.teardown(offline=True)
        elif self._refresh.consume():
            logger.debug(f"{self.name}: IDLE refresh")
            self.state = AccountState.REFRESHING
            if not await self.stop_idle(drain=True):
                await self.teardown(offline=True)

    async def _on_update(self, update) -> None:
        if not isinstance(update, MailboxUpdate):
            logger.debug(f"{self.name}: got unknown update: {update}")
            return

        delta = update.messages - self.msg_count
        self.msg_count = update.messages
        if delta != 0:
            await self.new_mail(delta)
