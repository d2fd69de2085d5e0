# =============================================================================
# IMAP Session
# =============================================================================
# Provides the live connection for one watched account, wrapping aioimaplib.
#
# Key responsibilities:
#   - Connection management (connect with SSL or STARTTLS, logout)
#   - Authentication with an already resolved password
#   - Capability check for IDLE
#   - Selecting INBOX and reporting its message count
#   - Running an IDLE exchange and dispatching unsolicited responses
#
# Design notes:
#   - A session is owned by exactly one AccountMonitor and is never reused
#     after logout; the monitor builds a new one to reconnect
#   - Unsolicited EXISTS responses are delivered as MailboxUpdate objects on
#     the `updates` queue, which the monitor binds while IDLE is running
#   - There is no timeout on a running IDLE; a stalled server blocks only
#     the owning account's task. A closed socket is seen through aioimaplib's
#     conn_lost_cb and ends the IDLE with IMAPConnectionError
#   - aioimaplib has no STARTTLS support, so the upgrade is done here with
#     loop.start_tls() on the protocol's transport
# =============================================================================

import asyncio
import logging
import re
import ssl
from dataclasses import dataclass, field

from aioimaplib import aioimaplib

from mbwatch.core import AccountConfig, ContractViolation, TLSMode
from mbwatch.imap.idle import (
    DataResponse,
    IdleCommand,
    IdleExchange,
    Response,
    StatusResponse,
    parse_response,
)

# Set up logging for this module
logger = logging.getLogger(__name__)

# aioimaplib keeps its own push timer per IDLE; ours (the monitor's refresh
# timer) always fires first.
IDLE_PUSH_TIMEOUT = 60 * 60

_TLS_VERSIONS = {
    "TLSv1": ssl.TLSVersion.TLSv1,
    "TLSv1.1": ssl.TLSVersion.TLSv1_1,
    "TLSv1.2": ssl.TLSVersion.TLSv1_2,
    "TLSv1.3": ssl.TLSVersion.TLSv1_3,
}


def make_ssl_context(ssl_version: str) -> ssl.SSLContext:
    """
    Build a client SSL context for the configured TLS version.

    mbsync allows a list such as "TLSv1.2 TLSv1.3"; the lowest listed
    version becomes the minimum. Unknown or "None" values leave the
    library defaults in place.
    """
    context = ssl.create_default_context()
    versions = [_TLS_VERSIONS[v] for v in ssl_version.split() if v in _TLS_VERSIONS]
    if versions:
        context.minimum_version = min(versions)
    return context


@dataclass
class MailboxUpdate:
    """The selected mailbox now holds `messages` messages."""
    mailbox: str
    messages: int


@dataclass
class ConnectionState:
    """
    Tracks the current state of an IMAP connection.

    Attributes:
        connected: Whether we have an active connection.
        authenticated: Whether we've successfully logged in.
        selected_folder: Currently selected folder, if any.
        capabilities: Server capabilities (from CAPABILITY response).
    """
    connected: bool = False
    authenticated: bool = False
    selected_folder: str | None = None
    capabilities: list[str] = field(default_factory=list)


class IMAPSession:
    """
    Async IMAP session for one account.

    Usage:
        >>> session = IMAPSession(config)
        >>> await session.connect(password)
        >>> count = await session.select_inbox()
        >>> await session.logout()

    Attributes:
        config: Connection parameters for this account.
        state: Current connection state.
        updates: Queue receiving MailboxUpdate objects, bound by the owner
                 while an IDLE exchange runs. None when nobody listens.
    """

    # Timeout for connect/login/select (seconds). IDLE itself has none.
    TIMEOUT = 30

    def __init__(self, config: AccountConfig, trace: bool = False) -> None:
        """
        Initialize the session.

        Args:
            config: Account configuration with IMAP server details.
            trace: Log every dispatched response.
        """
        self.config = config
        self.trace = trace
        self.state = ConnectionState()
        self.updates: asyncio.Queue | None = None
        self._client: aioimaplib.IMAP4_SSL | aioimaplib.IMAP4 | None = None
        self._lost = asyncio.Event()

    @property
    def is_connected(self) -> bool:
        """Check if session is connected and authenticated."""
        return (
            self.state.connected
            and self.state.authenticated
            and self._client is not None
            and not self._lost.is_set()
        )

    @property
    def lost(self) -> bool:
        """True once the server closed the connection."""
        return self._lost.is_set()

    def _connection_lost(self, exc: Exception | None) -> None:
        """aioimaplib callback for a closed socket."""
        if self._lost.is_set():
            return
        logger.debug(f"{self.config.name}: connection lost: {exc!r}")
        self._lost.set()
        self.state.connected = False

    # =========================================================================
    # Connection Management
    # =========================================================================

    async def connect(self, password: str) -> None:
        """
        Establish the connection and log in.

        Args:
            password: The resolved password for config.user.

        Raises:
            IMAPConnectionError: If unable to connect to the server.
            IMAPAuthenticationError: If login fails.
        """
        host, port = self.config.host, self.config.port
        logger.debug(f"{self.config.name}: connecting to {host}:{port}")
        context = make_ssl_context(self.config.ssl_version)

        try:
            if self.config.tls_mode is TLSMode.IMAPS:
                self._client = aioimaplib.IMAP4_SSL(
                    host=host,
                    port=port,
                    timeout=self.TIMEOUT,
                    ssl_context=context,
                )
            else:
                self._client = aioimaplib.IMAP4(
                    host=host,
                    port=port,
                    timeout=self.TIMEOUT,
                )
            # IMAP4_SSL takes no conn_lost_cb argument, the protocol has one
            self._client.protocol.conn_lost_cb = self._connection_lost

            await self._client.wait_hello_from_server()
            self.state.connected = True
            logger.debug(f"{self.config.name}: connected ({self.config.tls_mode.value})")

            if self.config.tls_mode is TLSMode.STARTTLS:
                await self._starttls(context)

        except asyncio.TimeoutError as e:
            raise IMAPConnectionError(f"Connection timed out to {host}:{port}") from e
        except (OSError, aioimaplib.AioImapException) as e:
            raise IMAPConnectionError(f"Failed to connect to {host}:{port}: {e}") from e

        await self._authenticate(password)

        self.state.capabilities = list(self._client.protocol.capabilities)
        logger.debug(f"{self.config.name}: capabilities {self.state.capabilities}")

    async def _starttls(self, context: ssl.SSLContext) -> None:
        """
        Upgrade the plaintext connection to TLS (RFC 3501 section 6.2.1).

        Raises:
            IMAPConnectionError: If the server does not offer or refuses
                                 STARTTLS.
        """
        if not self._client.has_capability("STARTTLS"):
            raise IMAPConnectionError(f"{self.config.host} does not support STARTTLS")

        protocol = self._client.protocol
        command = aioimaplib.Command("STARTTLS", protocol.new_tag(), loop=protocol.loop)
        response = await asyncio.wait_for(protocol.execute(command), self.TIMEOUT)
        if response.result != "OK":
            raise IMAPConnectionError(f"STARTTLS refused by {self.config.host}: {response.lines}")

        transport = await protocol.loop.start_tls(
            protocol.transport,
            protocol,
            context,
            server_hostname=self.config.host,
            ssl_handshake_timeout=self.TIMEOUT,
        )
        protocol.transport = transport
        logger.debug(f"{self.config.name}: TLS started")

        # Capabilities from before the upgrade must not be trusted
        await asyncio.wait_for(protocol.capability(), self.TIMEOUT)

    async def _authenticate(self, password: str) -> None:
        """
        Log in with the resolved password.

        Raises:
            IMAPAuthenticationError: If the server rejects the login.
        """
        try:
            response = await self._client.login(self.config.user, password)
        except asyncio.TimeoutError as e:
            raise IMAPConnectionError(f"Login timed out for {self.config.user}") from e
        except aioimaplib.AioImapException as e:
            raise IMAPConnectionError(f"Login failed for {self.config.user}: {e}") from e

        if response.result != "OK":
            logger.warning(f"{self.config.name}: login {self.config.user} failed")
            raise IMAPAuthenticationError(
                f"Authentication failed for {self.config.user}: {response.lines}"
            )

        self.state.authenticated = True
        logger.debug(f"{self.config.name}: {self.config.user} logged in")

    async def logout(self) -> None:
        """
        Send LOGOUT and drop the connection.

        Errors are logged: the session is being thrown away either way.
        """
        client, self._client = self._client, None
        self.state = ConnectionState()
        self.updates = None
        if client is None:
            return
        if not self._lost.is_set():
            try:
                logger.debug(f"{self.config.name}: sending LOGOUT")
                await client.logout()
            except Exception as e:
                logger.warning(f"{self.config.name}: error during logout: {e}")

        transport = client.protocol.transport
        if transport is not None and not transport.is_closing():
            transport.close()

    def supports_idle(self) -> bool:
        """Check if server supports the IDLE command."""
        if not self._client:
            return False
        return self._client.has_capability("IDLE")

    # =========================================================================
    # Mailbox
    # =========================================================================

    async def select_inbox(self) -> int:
        """
        Select INBOX.

        Returns:
            Number of messages in INBOX as reported by the server.

        Raises:
            IMAPError: If the selection fails.
        """
        if not self.is_connected:
            raise IMAPConnectionError(f"{self.config.name}: not connected")

        logger.debug(f"{self.config.name}: selecting INBOX")
        try:
            response = await self._client.select("INBOX")
        except asyncio.TimeoutError as e:
            raise IMAPConnectionError(f"{self.config.name}: SELECT timed out") from e
        except aioimaplib.AioImapException as e:
            raise IMAPError(f"{self.config.name}: SELECT aborted: {e}") from e

        if response.result != "OK":
            raise IMAPError(f"Failed to select INBOX: {response.lines}")

        count = self._parse_exists(response.lines)
        if count is None:
            raise IMAPError(f"No EXISTS count in SELECT response: {response.lines}")

        self.state.selected_folder = "INBOX"
        logger.debug(f"{self.config.name}: {count} messages")
        return count

    @staticmethod
    def _parse_exists(lines) -> int | None:
        """Find the "N EXISTS" count in SELECT response lines."""
        for line in lines:
            if isinstance(line, (bytes, bytearray)):
                line = bytes(line).decode("utf-8", errors="replace")
            match = re.search(r"(\d+)\s+EXISTS", str(line), re.IGNORECASE)
            if match:
                return int(match.group(1))
        return None

    # =========================================================================
    # IDLE Support
    # =========================================================================

    def send_raw(self, data: bytes) -> None:
        """Write bytes straight to the connection (used for DONE)."""
        if self._client is None or self._lost.is_set():
            logger.debug(f"{self.config.name}: dropping {data!r}, not connected")
            return
        self._client.protocol.transport.write(data)

    async def execute(self, command: IdleCommand, handler: IdleExchange) -> None:
        """
        Run an IDLE command until the server completes it.

        Frames are offered to the handler first; frames it does not handle
        go through the unsolicited dispatch.

        Raises:
            ContractViolation: If the server does not support IDLE.
            IMAPError: If the server rejects the command or the connection
                       fails before the tagged completion.
        """
        if command.name != "IDLE" or not self.supports_idle():
            raise ContractViolation(f"{self.config.name}: {command} used without server support")

        lost = asyncio.ensure_future(self._lost.wait())
        start: asyncio.Future | None = None
        push: asyncio.Future | None = None
        try:
            # idle_start() returns once the server sent its continuation
            start = asyncio.ensure_future(self._client.idle_start(timeout=IDLE_PUSH_TIMEOUT))
            await asyncio.wait({start, lost}, return_when=asyncio.FIRST_COMPLETED)
            if not start.done():
                raise IMAPConnectionError(f"{self.config.name}: connection lost before IDLE started")
            try:
                idle = start.result()
            except aioimaplib.AioImapException as e:
                raise IMAPError(f"{self.config.name}: IDLE rejected: {e}") from e

            self._route(parse_response("+ idling"), handler)

            while not idle.done() and not lost.done():
                push = asyncio.ensure_future(self._client.wait_server_push(timeout=IDLE_PUSH_TIMEOUT))
                await asyncio.wait({idle, push, lost}, return_when=asyncio.FIRST_COMPLETED)
                if push.done():
                    self._handle_push(push, handler)
                    push = None

            if not idle.done():
                # The tagged completion can never arrive now
                idle.cancel()
                raise IMAPConnectionError(f"{self.config.name}: connection lost during IDLE")
        finally:
            for future in (lost, start, push):
                if future is not None and not future.done():
                    future.cancel()

        try:
            response = idle.result()
        except (aioimaplib.AioImapException, asyncio.TimeoutError, OSError) as e:
            raise IMAPConnectionError(f"{self.config.name}: IDLE failed: {e}") from e

        self._route(StatusResponse(tag="", status=response.result), handler)
        if response.result != "OK":
            raise IMAPError(f"{self.config.name}: IDLE ended with {response.result}: {response.lines}")

    def _handle_push(self, push: asyncio.Future, handler: IdleExchange) -> None:
        """Dispatch one batch of pushed lines."""
        try:
            lines = push.result()
        except asyncio.TimeoutError:
            return
        except Exception as e:
            logger.warning(f"{self.config.name}: IDLE push error: {e}")
            return

        if lines == aioimaplib.STOP_WAIT_SERVER_PUSH:
            return
        for line in lines:
            self._route(parse_response(line), handler)

    def _route(self, resp: Response, handler: IdleExchange) -> None:
        if handler.handle(resp):
            return
        self._dispatch_unsolicited(resp)

    def _dispatch_unsolicited(self, resp: Response) -> None:
        """Turn unsolicited responses into updates for the owner."""
        if self.trace:
            logger.debug(f"{self.config.name}: unsolicited {resp}")

        if not isinstance(resp, DataResponse) or len(resp.fields) < 2:
            return
        if resp.fields[1].upper() != "EXISTS":
            return

        try:
            messages = int(resp.fields[0])
        except ValueError:
            logger.debug(f"{self.config.name}: bad EXISTS response {resp.fields}")
            return

        if self.updates is not None:
            self.updates.put_nowait(MailboxUpdate(self.state.selected_folder or "INBOX", messages))


# =============================================================================
# Exceptions
# =============================================================================

class IMAPError(Exception):
    """Base exception for IMAP operations."""
    pass


class IMAPConnectionError(IMAPError):
    """Raised when unable to connect to IMAP server."""
    pass


class IMAPAuthenticationError(IMAPError):
    """Raised when IMAP authentication fails."""
    pass


# Errors a monitor recovers from by reconnecting
RECOVERABLE_ERRORS = (
    IMAPError,
    OSError,
    asyncio.TimeoutError,
    aioimaplib.AioImapException,
)
