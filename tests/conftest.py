# =============================================================================
# Pytest Configuration and Fixtures
# =============================================================================
# Shared fixtures for the mbwatch test suite.
#
# FakeSession stands in for the network: it subclasses IMAPSession so the
# real unsolicited-response dispatch is exercised, and replaces everything
# that would talk to a server.
# =============================================================================

import asyncio
import tempfile
import textwrap
from pathlib import Path

import pytest

from mbwatch.config import WatchSettings
from mbwatch.core import Account, AccountConfig, Channel
from mbwatch.imap.client import IMAPConnectionError, IMAPSession
from mbwatch.imap.idle import DONE, ContinuationRequest, parse_response


class FakeSession(IMAPSession):
    """
    In-memory IMAP session.

    Args:
        config: Account config (as passed by the monitor's factory).
        idle: Advertise the IDLE capability.
        counts: Successive INBOX counts returned by select_inbox(); the
                last one repeats.
        connect_error: Exception raised by connect().
        select_error: Exception raised by select_inbox().
        ack: Answer IDLE with a continuation.
        execute_error: Exception raised by execute() once IDLE started.
    """

    def __init__(
        self,
        config,
        *,
        idle=True,
        counts=(0,),
        connect_error=None,
        select_error=None,
        ack=True,
        execute_error=None,
    ):
        super().__init__(config)
        self.idle = idle
        self.counts = list(counts)
        self.connect_error = connect_error
        self.select_error = select_error
        self.ack = ack
        self.execute_error = execute_error

        self.password = None
        self.selects = 0
        self.sent: list[bytes] = []
        self.logged_out = False
        self.handler = None
        self.executions = 0
        self._done = asyncio.Event()

    async def connect(self, password):
        if self.connect_error is not None:
            raise self.connect_error
        self.password = password
        self.state.connected = True
        self.state.authenticated = True

    def supports_idle(self):
        return self.idle

    async def select_inbox(self):
        self.selects += 1
        if self.select_error is not None:
            raise self.select_error
        count = self.counts.pop(0) if len(self.counts) > 1 else self.counts[0]
        self.state.selected_folder = "INBOX"
        return count

    def send_raw(self, data):
        self.sent.append(data)
        if data == DONE:
            self._done.set()

    async def execute(self, command, handler):
        self.handler = handler
        self.executions += 1
        self._done.clear()
        if self.ack:
            self._route(ContinuationRequest("idling"), handler)
        if self.execute_error is not None:
            raise self.execute_error

        done = asyncio.ensure_future(self._done.wait())
        lost = asyncio.ensure_future(self._lost.wait())
        try:
            await asyncio.wait({done, lost}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            done.cancel()
            lost.cancel()
        if self._lost.is_set():
            raise IMAPConnectionError("connection reset by peer")

    async def logout(self):
        self.logged_out = True
        self.updates = None

    # Test helpers

    def push(self, line: str) -> None:
        """Deliver a server line while IDLE runs."""
        self._route(parse_response(line), self.handler)

    def drop(self) -> None:
        """Simulate the connection dying under a running IDLE."""
        self._connection_lost(ConnectionResetError("connection reset by peer"))


class SessionFactory:
    """Builds FakeSessions for a monitor and remembers them."""

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.sessions: list[FakeSession] = []

    def __call__(self, config):
        session = FakeSession(config, **self.kwargs)
        self.sessions.append(session)
        return session


async def wait_until(predicate, timeout=1.0):
    """Poll predicate() until it is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def settings():
    """Settings with short delays for tests."""
    return WatchSettings(
        poll_interval=300,
        reconnect_delay=60,
        idle_refresh=60,
        debounce=0.05,
        full_interval=300,
    )


@pytest.fixture
def sample_config():
    """Create a sample AccountConfig for testing."""
    return AccountConfig(
        name="work",
        host="imap.example.com",
        port=993,
        user="test@example.com",
        password="secret",
    )


@pytest.fixture
def sample_account(sample_config):
    """Create a sample Account for testing."""
    return Account(
        config=sample_config,
        channels=(Channel(name="work-inbox", far=":work:"),),
        update_name="work-inbox:INBOX",
    )


def make_account(name: str, label: str | None = None, **config) -> Account:
    """Account with a single channel named after it."""
    return Account(
        config=AccountConfig(name=name, host=f"imap.{name}.example", user=name, password="pw", **config),
        channels=(Channel(name=name, far=f":{name}:"),),
        update_name=label or f"{name}:INBOX",
    )


@pytest.fixture
def write_mbsyncrc(temp_dir):
    """Write an mbsyncrc into the temp dir and return its path."""
    def write(text: str, name: str = "mbsyncrc") -> Path:
        path = temp_dir / name
        path.write_text(textwrap.dedent(text).lstrip())
        return path
    return write


SAMPLE_MBSYNCRC = """
    # Work account, referenced by its store
    IMAPAccount work
    Host imap.work.example
    User alice@work.example
    PassCmd "pass show mail/work"
    SSLType IMAPS

    IMAPStore work-remote
    Account work

    MaildirStore work-local
    Path ~/Mail/work/
    Inbox ~/Mail/work/INBOX

    # Personal store with its config inline
    IMAPStore home-remote
    Host mail.home.example
    User alice
    Password "hunter 2"
    SSLType STARTTLS

    Channel work-inbox
    Far :work-remote:
    Near :work-local:
    Patterns INBOX

    Channel work-archive
    Far :work-remote:
    Near :work-local:

    Channel home
    Far :home-remote:
    Near :home-local:
    """


@pytest.fixture
def sample_mbsyncrc(write_mbsyncrc):
    """A small but complete mbsyncrc."""
    return write_mbsyncrc(SAMPLE_MBSYNCRC)
