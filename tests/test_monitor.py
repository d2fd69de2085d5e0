# =============================================================================
# Account Monitor Tests
# =============================================================================

import asyncio
from dataclasses import replace

import pytest

from mbwatch.core import ContractViolation, EventKind
from mbwatch.imap.client import IMAPAuthenticationError, IMAPConnectionError, IMAPError
from mbwatch.monitor import AccountMonitor, AccountState, mail_delta
from conftest import SessionFactory, make_account, wait_until


class SleepRecorder:
    """Records requested pauses and returns at once."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


def drain(events: asyncio.Queue) -> list:
    items = []
    while not events.empty():
        items.append(events.get_nowait())
    return items


def idling(monitor: AccountMonitor) -> bool:
    """True once IDLE runs and the server acknowledged it."""
    exchange = monitor._exchange
    return monitor.state is AccountState.WATCHING and exchange is not None and exchange.acknowledged


async def shutdown(task: asyncio.Task, monitor: AccountMonitor) -> None:
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    await monitor.teardown()
    await asyncio.sleep(0.01)


# =============================================================================
# Deltas
# =============================================================================

class TestMailDelta:
    """Tests for the new-message delta."""

    def test_unknown_baseline_never_reports(self):
        assert mail_delta(0, 25) == 0

    def test_growth(self):
        assert mail_delta(5, 8) == 3

    def test_shrink(self):
        assert mail_delta(8, 5) == -3


# =============================================================================
# Polling
# =============================================================================

class TestPolling:
    """Accounts whose server has no IDLE."""

    @pytest.mark.asyncio
    async def test_polls_at_account_interval(self, settings):
        account = make_account("slow", poll_interval=120)
        events = asyncio.Queue()
        factory = SessionFactory(idle=False, counts=(10, 12, 12))
        sleep = SleepRecorder()
        monitor = AccountMonitor(account, events, settings, factory, sleep)

        for _ in range(3):
            await monitor.step()
            assert monitor.state is AccountState.POLL_FALLBACK

        assert sleep.delays == [120, 120, 120]
        assert factory.sessions[0].executions == 0
        assert not monitor.watching

        queued = drain(events)
        assert len(queued) == 1
        assert queued[0].kind is EventKind.NEW_MAIL
        assert queued[0].count == 2
        assert queued[0].account is account

    @pytest.mark.asyncio
    async def test_global_interval_without_override(self, settings):
        monitor = AccountMonitor(make_account("plain"), asyncio.Queue(), settings)
        assert monitor.poll_interval == settings.poll_interval

    @pytest.mark.asyncio
    async def test_first_poll_after_connect_is_silent(self, settings):
        events = asyncio.Queue()
        factory = SessionFactory(idle=False, counts=(40,))
        monitor = AccountMonitor(make_account("a"), events, settings, factory, SleepRecorder())

        await monitor.step()

        assert monitor.msg_count == 40
        assert events.empty()

    @pytest.mark.asyncio
    async def test_poll_error_tears_down(self, settings):
        events = asyncio.Queue()
        factory = SessionFactory(idle=False, counts=(10,))
        monitor = AccountMonitor(make_account("a"), events, settings, factory, SleepRecorder())
        await monitor.step()

        session = factory.sessions[0]
        session.select_error = IMAPError("mailbox gone")
        await monitor.step()

        assert session.logged_out
        assert monitor.session is None
        assert monitor.msg_count == 0
        assert monitor.state is AccountState.DISCONNECTED
        assert [e.kind for e in drain(events)] == [EventKind.OFFLINE]

        # Next step reconnects with a fresh session
        await monitor.step()
        assert len(factory.sessions) == 2

    @pytest.mark.asyncio
    async def test_poll_pause_with_idle_is_a_violation(self, settings):
        factory = SessionFactory(idle=True)
        monitor = AccountMonitor(make_account("a"), asyncio.Queue(), settings, factory)
        await monitor.login()

        with pytest.raises(ContractViolation):
            await monitor._poll_pause()


# =============================================================================
# Connecting
# =============================================================================

class TestLogin:
    """Connection and reconnect behavior."""

    @pytest.mark.asyncio
    async def test_failed_connect_pauses_for_reconnect(self, settings):
        events = asyncio.Queue()
        factory = SessionFactory(connect_error=IMAPConnectionError("refused"))
        sleep = SleepRecorder()
        monitor = AccountMonitor(make_account("a"), events, settings, factory, sleep)

        await monitor.step()

        assert sleep.delays == [settings.reconnect_delay]
        assert monitor.session is None
        assert monitor.state is AccountState.DISCONNECTED
        assert events.empty()

    @pytest.mark.asyncio
    async def test_password_is_passed_and_cached(self, settings):
        factory = SessionFactory(idle=False)
        monitor = AccountMonitor(make_account("a"), asyncio.Queue(), settings, factory)

        assert await monitor.login() is True
        await monitor.teardown()
        assert await monitor.login() is True

        assert [s.password for s in factory.sessions] == ["pw", "pw"]
        assert monitor._password == "pw"

    @pytest.mark.asyncio
    async def test_auth_failure_forgets_password(self, settings):
        factory = SessionFactory(connect_error=IMAPAuthenticationError("denied"))
        monitor = AccountMonitor(make_account("a"), asyncio.Queue(), settings, factory)

        assert await monitor.login() is False
        assert monitor._password is None
        assert factory.sessions[0].logged_out

    @pytest.mark.asyncio
    async def test_missing_credentials_are_retried(self, settings):
        account = make_account("a")
        account = replace(account, config=replace(account.config, password=""))
        factory = SessionFactory()
        sleep = SleepRecorder()
        monitor = AccountMonitor(account, asyncio.Queue(), settings, factory, sleep)

        await monitor.step()

        assert factory.sessions == []
        assert sleep.delays == [settings.reconnect_delay]

    @pytest.mark.asyncio
    async def test_run_twice_is_a_violation(self, settings):
        factory = SessionFactory(idle=True, counts=(3,))
        monitor = AccountMonitor(make_account("a"), asyncio.Queue(), settings, factory)
        task = asyncio.create_task(monitor.run())
        await wait_until(lambda: monitor.state is AccountState.WATCHING)

        with pytest.raises(ContractViolation):
            await monitor.run()

        await shutdown(task, monitor)


# =============================================================================
# IDLE
# =============================================================================

class TestWatching:
    """Accounts watched with IDLE."""

    @pytest.mark.asyncio
    async def test_select_stores_server_count(self, settings):
        factory = SessionFactory(idle=True, counts=(42,))
        monitor = AccountMonitor(make_account("a"), asyncio.Queue(), settings, factory)
        await monitor.login()

        assert monitor.state is AccountState.CONNECTED
        assert await monitor.select_inbox() == 42
        assert monitor.msg_count == 42

    @pytest.mark.asyncio
    async def test_exists_reports_new_mail(self, settings):
        account = make_account("a")
        events = asyncio.Queue()
        factory = SessionFactory(idle=True, counts=(5,))
        monitor = AccountMonitor(account, events, settings, factory)
        task = asyncio.create_task(monitor.run())
        await wait_until(lambda: idling(monitor))

        factory.sessions[0].push("* 7 EXISTS")
        event = await asyncio.wait_for(events.get(), timeout=1)

        assert event.kind is EventKind.NEW_MAIL
        assert event.count == 2
        assert event.account is account
        assert monitor.msg_count == 7

        # Same count again is no news
        factory.sessions[0].push("* 7 EXISTS")
        await asyncio.sleep(0.02)
        assert events.empty()

        await shutdown(task, monitor)

    @pytest.mark.asyncio
    async def test_expunge_reports_negative_delta(self, settings):
        events = asyncio.Queue()
        factory = SessionFactory(idle=True, counts=(5,))
        monitor = AccountMonitor(make_account("a"), events, settings, factory)
        task = asyncio.create_task(monitor.run())
        await wait_until(lambda: idling(monitor))

        factory.sessions[0].push("* 4 EXISTS")
        event = await asyncio.wait_for(events.get(), timeout=1)

        assert event.kind is EventKind.NEW_MAIL
        assert event.count == -1
        assert monitor.msg_count == 4

        await shutdown(task, monitor)

    @pytest.mark.asyncio
    async def test_lost_idle_goes_offline_and_reconnects(self, settings):
        events = asyncio.Queue()
        factory = SessionFactory(idle=True, counts=(5,))
        monitor = AccountMonitor(make_account("a"), events, settings, factory)
        task = asyncio.create_task(monitor.run())
        await wait_until(lambda: idling(monitor))

        first = factory.sessions[0]
        first.drop()
        event = await asyncio.wait_for(events.get(), timeout=1)

        assert event.kind is EventKind.OFFLINE
        assert first.logged_out
        await wait_until(lambda: len(factory.sessions) == 2 and monitor.state is AccountState.WATCHING)

        await shutdown(task, monitor)

    @pytest.mark.asyncio
    async def test_contract_violation_in_idle_is_raised(self, settings):
        events = asyncio.Queue()
        factory = SessionFactory(idle=True, ack=False, execute_error=ContractViolation("IDLE unsupported"))
        monitor = AccountMonitor(make_account("a"), events, settings, factory)
        task = asyncio.create_task(monitor.run())

        with pytest.raises(ContractViolation):
            await asyncio.wait_for(task, timeout=1)

        assert len(factory.sessions) == 1
        assert events.empty()
        await monitor.teardown()

    @pytest.mark.asyncio
    async def test_refresh_reissues_idle_on_same_session(self, settings):
        settings = replace(settings, idle_refresh=0.05)
        events = asyncio.Queue()
        factory = SessionFactory(idle=True, counts=(5, 9))
        monitor = AccountMonitor(make_account("a"), events, settings, factory)
        task = asyncio.create_task(monitor.run())

        await wait_until(lambda: factory.sessions and factory.sessions[0].executions == 2)
        await wait_until(lambda: monitor.state is AccountState.WATCHING)

        session = factory.sessions[0]
        assert len(factory.sessions) == 1
        assert session.sent[0] == b"DONE\r\n"
        assert session.selects == 2
        assert not session.logged_out
        assert monitor.msg_count == 9
        assert events.empty()

        await shutdown(task, monitor)

    @pytest.mark.asyncio
    async def test_unacknowledged_refresh_reconnects(self, settings):
        settings = replace(settings, idle_refresh=0.05)
        events = asyncio.Queue()
        factory = SessionFactory(idle=True, ack=False)
        monitor = AccountMonitor(make_account("a"), events, settings, factory)
        task = asyncio.create_task(monitor.run())

        event = await asyncio.wait_for(events.get(), timeout=1)

        assert event.kind is EventKind.OFFLINE
        assert factory.sessions[0].sent == []
        assert factory.sessions[0].logged_out

        await shutdown(task, monitor)

    @pytest.mark.asyncio
    async def test_start_idle_twice_is_a_violation(self, settings):
        factory = SessionFactory(idle=True)
        monitor = AccountMonitor(make_account("a"), asyncio.Queue(), settings, factory)
        await monitor.login()
        await monitor.select_inbox()
        monitor.start_idle()

        with pytest.raises(ContractViolation):
            monitor.start_idle()

        await monitor.teardown()

    def test_start_idle_without_session_is_a_violation(self, settings):
        monitor = AccountMonitor(make_account("a"), asyncio.Queue(), settings)
        with pytest.raises(ContractViolation):
            monitor.start_idle()

    @pytest.mark.asyncio
    async def test_teardown_resets_state(self, settings):
        events = asyncio.Queue()
        factory = SessionFactory(idle=True, counts=(12,))
        monitor = AccountMonitor(make_account("a"), events, settings, factory)
        await monitor.login()
        await monitor.select_inbox()
        monitor.start_idle()

        await monitor.teardown(offline=True)

        assert not monitor.watching
        assert not monitor.idle_ok
        assert monitor.msg_count == 0
        assert monitor.state is AccountState.DISCONNECTED
        assert factory.sessions[0].logged_out
        assert events.get_nowait().kind is EventKind.OFFLINE
