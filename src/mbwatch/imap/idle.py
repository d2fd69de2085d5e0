# =============================================================================
# IDLE Command and Response Handling
# =============================================================================
# Implements the client side of the IMAP IDLE extension (RFC 2177):
#
#   C: A001 IDLE
#   S: + idling
#   S: * 4 EXISTS              <- unsolicited, routed by the session
#   C: DONE
#   S: A001 OK IDLE terminated
#
# Key responsibilities:
#   - Describe the zero-argument IDLE command
#   - Decode response lines into frames (continuation / data / status)
#   - Watch for the first continuation, then wait on a stop token and
#     write the literal DONE line when it is set
#   - Expose the completion of the exchange as a future
#
# Design notes:
#   - Anything other than the first continuation is reported unhandled, so
#     the session dispatches it as an unsolicited update. EXISTS counts reach
#     the monitor that way, never through this handler.
#   - A frame that cannot be decoded is kept as raw data, it never aborts
#     the exchange. Only the overall completion is surfaced.
# =============================================================================

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from mbwatch.core import ContractViolation

if TYPE_CHECKING:
    from mbwatch.imap.client import IMAPSession

logger = logging.getLogger(__name__)

# Literal line that ends an IDLE command
DONE = b"DONE\r\n"


# =============================================================================
# Response Frames
# =============================================================================

@dataclass(frozen=True)
class ContinuationRequest:
    """A "+" response: the server is ready for the pending command."""
    info: str = ""


@dataclass(frozen=True)
class DataResponse:
    """An untagged "*" response, split into fields."""
    tag: str = "*"
    fields: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class StatusResponse:
    """A tagged completion (OK / NO / BAD)."""
    tag: str
    status: str
    info: str = ""


Response = ContinuationRequest | DataResponse | StatusResponse

_STATUSES = ("OK", "NO", "BAD", "BYE", "PREAUTH")


def parse_response(line: str | bytes) -> Response:
    """
    Decode one response line into a frame.

    aioimaplib hands us untagged lines without the leading "*", so a line
    that is neither a continuation nor tagged is treated as untagged data.

    Args:
        line: Response line, with or without CRLF.

    Returns:
        The decoded frame. Undecodable input becomes a DataResponse holding
        whatever fields could be split out.
    """
    if isinstance(line, (bytes, bytearray)):
        line = bytes(line).decode("utf-8", errors="replace")
    line = line.strip()

    if line.startswith("+"):
        return ContinuationRequest(info=line[1:].strip())

    parts = line.split(" ", 2)
    if parts[0] == "*":
        return DataResponse(fields=line[1:].split())

    # Tagged completion: "<tag> OK text"
    if len(parts) >= 2 and parts[1].upper() in _STATUSES and not parts[0].isdigit():
        info = parts[2] if len(parts) > 2 else ""
        return StatusResponse(tag=parts[0], status=parts[1].upper(), info=info)

    return DataResponse(fields=line.split())


# =============================================================================
# IDLE Command
# =============================================================================

@dataclass(frozen=True)
class IdleCommand:
    """
    The IDLE command. It takes no arguments.

    aioimaplib tags and writes the command line itself (idle_start()).
    """
    name: str = "IDLE"

    def __str__(self) -> str:
        return self.name


# =============================================================================
# IDLE Exchange
# =============================================================================

class IdleExchange:
    """
    One IDLE command from start to tagged completion.

    The exchange holds a stop token and a completion future (the task
    running the command). A monitor starts it, waits on done(), and ends it
    with stop().

    Usage:
        >>> exchange = IdleExchange("work")
        >>> exchange.start(session)
        >>> # ... unsolicited updates arrive through the session ...
        >>> clean = await exchange.stop(wait=True)
    """

    def __init__(self, name: str, trace: bool = False) -> None:
        """
        Initialize the exchange.

        Args:
            name: Account name, for log messages.
            trace: Log every frame passing through the handler.
        """
        self.name = name
        self.command = IdleCommand()
        self.trace = trace

        self._stop = asyncio.Event()
        self._got_continuation = False
        self._send = None
        self._task: asyncio.Task | None = None
        self._waiter: asyncio.Task | None = None

    @property
    def acknowledged(self) -> bool:
        """True once the server answered the command with a continuation."""
        return self._got_continuation

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    @property
    def done(self) -> asyncio.Task:
        """
        Completion future of the exchange.

        Resolves to None when the server completed the command with OK and
        raises the session's error otherwise.
        """
        if self._task is None:
            raise ContractViolation(f"{self.name}: IDLE exchange not started")
        return self._task

    def start(self, session: "IMAPSession") -> asyncio.Task:
        """
        Issue the command on a session.

        Raises:
            ContractViolation: If this exchange was already started.
        """
        if self._task is not None:
            raise ContractViolation(f"{self.name}: IDLE exchange started twice")

        self._send = session.send_raw
        self._task = asyncio.ensure_future(self._run(session))
        self._task.add_done_callback(self._log_completion)
        return self._task

    @property
    def error(self) -> BaseException | None:
        """Why the exchange ended, None if it completed with OK or is running."""
        if self._task is None or not self._task.done():
            return None
        if self._task.cancelled():
            return asyncio.CancelledError()
        return self._task.exception()

    def _log_completion(self, task: asyncio.Task) -> None:
        err = self.error
        if err is not None:
            logger.debug(f"{self.name}: IDLE exchange ended: {err!r}")
        elif self.trace:
            logger.debug(f"{self.name}: IDLE exchange ended cleanly")

    async def _run(self, session: "IMAPSession") -> None:
        if self.trace:
            logger.debug(f"{self.name}: go-idle: executing {self.command}")
        try:
            await session.execute(self.command, self)
        finally:
            if self._waiter is not None and not self._waiter.done():
                self._waiter.cancel()
        if self.trace:
            logger.debug(f"{self.name}: go-idle: completed")

    def handle(self, resp: Response) -> bool:
        """
        Offer a frame to the handler.

        Returns:
            True if the frame was consumed, False if the session should
            dispatch it as an unsolicited response.
        """
        if self.trace:
            logger.debug(f"{self.name}: IDLE handle: {resp}")

        if isinstance(resp, ContinuationRequest) and not self._got_continuation:
            self._got_continuation = True
            # Wait for the stop token, then end the command
            self._waiter = asyncio.ensure_future(self._wait_for_stop())
            return True

        return False

    async def _wait_for_stop(self) -> None:
        await self._stop.wait()
        logger.debug(f"{self.name}: stopping IDLE, sending DONE")
        self._send(DONE)

    async def stop(self, wait: bool = False) -> bool:
        """
        Ask the server to end the IDLE command.

        Args:
            wait: Block until the exchange has completed.

        Returns:
            False if the command had to be abandoned because no continuation
            had arrived yet (the session is then in an unknown state), True
            otherwise.
        """
        self._stop.set()

        if self._task is None:
            return True

        if not self._got_continuation and not self._task.done():
            # Nothing to terminate on the wire yet, drop the pending command
            logger.debug(f"{self.name}: IDLE not acknowledged, abandoning command")
            self._task.cancel()
            await asyncio.wait({self._task})
            return False

        if wait:
            await asyncio.wait({self._task})
        return True
