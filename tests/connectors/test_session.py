"""
Tests for the per-identity connection state machine.

Covers:
- Register on first contact, login thereafter
- Bounded login retries tied to the live handle
- Throttle signals (text, kick, reset) feeding the shared admission controller
- Per-identity cooldown after a throttled episode
- Backoff reset after ACTIVE and terminal FAILED after the reconnect budget
- At most one live handle per identity
- Idle behaviors scoped to the ACTIVE period
"""

from __future__ import annotations

import asyncio
import logging
import random
import threading
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import TYPE_CHECKING
from unittest.mock import AsyncMock, MagicMock

import orjson
import pytest

from sessionfleet.connectors.admission import AdmissionConfig, AdmissionController
from sessionfleet.connectors.backoff import BackoffConfig
from sessionfleet.connectors.credentials import CredentialStore
from sessionfleet.connectors.session import ConnectionStateMachine
from sessionfleet.connectors.transport import (
    Established,
    InboundText,
    Kicked,
    SessionEvent,
    TransportError,
)
from sessionfleet.connectors.types import Identity, ServerConfig, SessionConfig, SessionState

if TYPE_CHECKING:
    from conftest import FakeClock, FakeTransport, WaitUntil

MachineFactory = Callable[..., ConnectionStateMachine]


class TestAuthentication:
    """Register-once / login-thereafter."""

    @pytest.mark.asyncio
    async def test_first_session_registers_then_logs_in(
        self,
        make_machine: MachineFactory,
        transport: FakeTransport,
        credentials: CredentialStore,
    ) -> None:
        """A fresh identity registers once; the next session logs in."""
        transport.add_session(Established())
        transport.add_session(Established())
        machine = make_machine(config=SessionConfig(registration_secret="pw", max_reconnect_attempts=1))

        state = await asyncio.wait_for(machine.run(), timeout=5)

        assert state == SessionState.FAILED
        handles = transport.handles["bot_1"]
        assert handles[0].sent == ["/register pw pw"]
        assert handles[1].sent == ["/login pw"]
        assert credentials.get("bot_1") == "pw"
        assert orjson.loads(credentials.path.read_bytes()) == {"bot_1": "pw"}

        metrics = machine.get_metrics()
        assert metrics.registrations == 1
        assert metrics.logins == 1

    @pytest.mark.asyncio
    async def test_stored_identity_never_registers(
        self,
        make_machine: MachineFactory,
        transport: FakeTransport,
        credentials: CredentialStore,
    ) -> None:
        """An identity with a stored secret only ever logs in."""
        credentials.set_secret("bot_1", "stored")
        for _ in range(3):
            transport.add_session(Established())
        machine = make_machine()

        await asyncio.wait_for(machine.run(), timeout=5)

        sent = [text for h in transport.handles["bot_1"] for text in h.sent]
        assert sent == ["/login stored"] * 3
        assert machine.get_metrics().registrations == 0

    @pytest.mark.asyncio
    async def test_state_sequence_through_one_session(
        self,
        make_machine: MachineFactory,
        transport: FakeTransport,
    ) -> None:
        """CONNECTING -> AUTHENTICATING -> ACTIVE -> DISCONNECTED -> FAILED."""
        transport.add_session(Established())
        states: list[SessionState] = []
        machine = make_machine(
            config=SessionConfig(registration_secret="pw", max_reconnect_attempts=0),
            on_state_change=lambda name, state: states.append(state),
        )

        await asyncio.wait_for(machine.run(), timeout=5)

        assert states == [
            SessionState.CONNECTING,
            SessionState.AUTHENTICATING,
            SessionState.ACTIVE,
            SessionState.DISCONNECTED,
            SessionState.FAILED,
        ]

    @pytest.mark.asyncio
    async def test_credential_write_failure_keeps_secret_in_memory(
        self,
        make_machine: MachineFactory,
        transport: FakeTransport,
        tmp_path: Path,
        wait_until: WaitUntil,
    ) -> None:
        """A failed credential write is logged; the next session still logs in."""
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        store = CredentialStore(blocker / "credentials.json")
        store.load()

        transport.add_session(Established())
        transport.add_session(Established(), hold_open=True)
        machine = make_machine(credentials=store)
        task = asyncio.create_task(machine.run())

        await wait_until(lambda: len(transport.handles["bot_1"]) == 2 and machine.is_active)

        assert store.get("bot_1") == "pw"
        assert store.save_failures == 1
        assert transport.handles["bot_1"][1].sent == ["/login pw"]

        await machine.stop()
        assert task.done()

    @pytest.mark.asyncio
    async def test_credential_write_runs_off_the_event_loop(
        self,
        make_machine: MachineFactory,
        transport: FakeTransport,
        credentials: CredentialStore,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """The blocking file write happens in a worker thread, not the loop thread."""
        loop_thread = threading.get_ident()
        write_threads: list[int] = []
        original = credentials.set_secret

        def recording_set_secret(name: str, secret: str) -> None:
            write_threads.append(threading.get_ident())
            original(name, secret)

        monkeypatch.setattr(credentials, "set_secret", recording_set_secret)
        transport.add_session(Established())
        machine = make_machine(config=SessionConfig(registration_secret="pw", max_reconnect_attempts=0))

        await asyncio.wait_for(machine.run(), timeout=5)

        assert len(write_threads) == 1
        assert write_threads[0] != loop_thread
        assert credentials.get("bot_1") == "pw"
        assert orjson.loads(credentials.path.read_bytes()) == {"bot_1": "pw"}


class TestLoginRetries:
    """Bounded login retries after failure markers."""

    @pytest.mark.asyncio
    async def test_retries_stop_at_limit_and_session_stays_active(
        self,
        make_machine: MachineFactory,
        transport: FakeTransport,
        credentials: CredentialStore,
        wait_until: WaitUntil,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Three failures with a limit of 3: two resends, then log and stay connected."""
        credentials.set_secret("bot_1", "pw")
        transport.add_session(
            Established(),
            InboundText("Wrong password! Please log in again."),
            InboundText("Login failed."),
            InboundText("Login failed."),
            hold_open=True,
        )
        machine = make_machine()

        with caplog.at_level(logging.ERROR, logger="sessionfleet.connectors.session"):
            task = asyncio.create_task(machine.run())
            handle_sent = lambda: transport.handles["bot_1"][0].sent  # noqa: E731
            await wait_until(lambda: bool(transport.handles["bot_1"]) and len(handle_sent()) == 3)
            await asyncio.sleep(0.01)

        assert handle_sent() == ["/login pw"] * 3
        assert machine.state == SessionState.ACTIVE
        assert machine.login_retries == 3
        assert machine.get_metrics().login_retries_sent == 2
        assert "Max login retries (3) reached" in caplog.text

        await machine.stop()
        assert task.done()

    @pytest.mark.asyncio
    async def test_success_marker_resets_retry_count(
        self,
        make_machine: MachineFactory,
        transport: FakeTransport,
        credentials: CredentialStore,
        wait_until: WaitUntil,
    ) -> None:
        """A success marker after a failure resets the counter."""
        credentials.set_secret("bot_1", "pw")
        transport.add_session(
            Established(),
            InboundText("Login failed"),
            InboundText("Successfully logged in!"),
            hold_open=True,
        )
        machine = make_machine()
        asyncio.create_task(machine.run())

        await wait_until(lambda: machine.login_confirmed)

        assert machine.login_retries == 0
        await machine.stop()

    @pytest.mark.asyncio
    async def test_retry_never_reaches_a_newer_handle(
        self,
        make_machine: MachineFactory,
        transport: FakeTransport,
        credentials: CredentialStore,
        wait_until: WaitUntil,
    ) -> None:
        """A pending retry dies with its session."""
        credentials.set_secret("bot_1", "pw")
        transport.add_session(Established(), InboundText("Login failed"))
        transport.add_session(Established(), hold_open=True)
        machine = make_machine()
        asyncio.create_task(machine.run())

        await wait_until(lambda: len(transport.handles["bot_1"]) == 2 and machine.is_active)
        await asyncio.sleep(0.01)

        assert transport.handles["bot_1"][1].sent == ["/login pw"]
        await machine.stop()

    @pytest.mark.asyncio
    async def test_zero_retry_limit_never_resends(
        self,
        make_machine: MachineFactory,
        transport: FakeTransport,
        credentials: CredentialStore,
        wait_until: WaitUntil,
    ) -> None:
        credentials.set_secret("bot_1", "pw")
        transport.add_session(Established(), InboundText("Login failed"), hold_open=True)
        machine = make_machine(config=SessionConfig(registration_secret="pw", max_login_retries=0))
        asyncio.create_task(machine.run())

        await wait_until(lambda: machine.login_retries == 1)
        await asyncio.sleep(0.01)

        assert transport.handles["bot_1"][0].sent == ["/login pw"]
        await machine.stop()


class TestThrottleSignals:
    """Throttle detection and the per-identity cooldown."""

    @pytest.mark.asyncio
    async def test_throttle_text_doubles_admission_delay(
        self,
        make_machine: MachineFactory,
        transport: FakeTransport,
        admission: AdmissionController,
        wait_until: WaitUntil,
    ) -> None:
        """One message with two throttle phrases is one EXPLICIT signal."""
        transport.add_session(
            Established(),
            InboundText("You are logging in too fast! Try again later."),
            hold_open=True,
        )
        machine = make_machine()
        asyncio.create_task(machine.run())

        await wait_until(lambda: machine.get_metrics().throttle_signals == 1)

        assert admission.current_delay_ms == 3000
        assert admission.signals_explicit == 1
        await machine.stop()

    @pytest.mark.asyncio
    async def test_connection_reset_is_soft_signal_with_cooldown(
        self,
        make_machine: MachineFactory,
        transport: FakeTransport,
        admission: AdmissionController,
        clock: FakeClock,
    ) -> None:
        """ECONNRESET raises the delay x1.5 and adds one cooldown."""
        transport.add_session(
            Established(),
            TransportError(code="ECONNRESET", message="read ECONNRESET"),
        )
        machine = make_machine(config=SessionConfig(registration_secret="pw", max_reconnect_attempts=0))

        state = await asyncio.wait_for(machine.run(), timeout=5)

        assert state == SessionState.FAILED
        assert admission.current_delay_ms == 2250
        assert admission.signals_soft == 1
        cooldowns = [s for s in clock.sleeps_for("bot_1") if s >= 5.0]
        assert len(cooldowns) == 1
        assert 5.0 <= cooldowns[0] <= 15.0

    @pytest.mark.asyncio
    async def test_reset_while_connecting_is_soft_signal(
        self,
        make_machine: MachineFactory,
        transport: FakeTransport,
        admission: AdmissionController,
    ) -> None:
        transport.add_failure(ConnectionResetError("reset by peer"))
        machine = make_machine(config=SessionConfig(registration_secret="pw", max_reconnect_attempts=0))

        await asyncio.wait_for(machine.run(), timeout=5)

        assert admission.current_delay_ms == 2250
        assert machine.get_metrics().connect_failures == 1

    @pytest.mark.asyncio
    async def test_unrelated_kick_is_not_a_throttle_signal(
        self,
        make_machine: MachineFactory,
        transport: FakeTransport,
        admission: AdmissionController,
    ) -> None:
        transport.add_session(Established(), Kicked(reason="Server closed"))
        machine = make_machine(config=SessionConfig(registration_secret="pw", max_reconnect_attempts=0))

        await asyncio.wait_for(machine.run(), timeout=5)

        assert admission.current_delay_ms == 1500
        assert machine.get_metrics().throttle_signals == 0

    @pytest.mark.asyncio
    async def test_try_again_kick_is_one_signal_and_one_cooldown(
        self,
        make_machine: MachineFactory,
        transport: FakeTransport,
        admission: AdmissionController,
        clock: FakeClock,
        wait_until: WaitUntil,
    ) -> None:
        """A "try again" kick is one EXPLICIT signal; other identities keep their backoff."""
        config = SessionConfig(
            registration_secret="pw",
            max_reconnect_attempts=1,
            throttle_cooldown_min_ms=9000,
            throttle_cooldown_max_ms=9000,
        )
        transport.add_session(
            Established(),
            Kicked(reason="Server busy, please try again in a minute"),
            identity="bot_1",
        )
        transport.add_session(Established(), identity="bot_1", hold_open=True)
        transport.add_session(Established(), identity="bot_2", hold_open=True)
        machine_a = make_machine("bot_1", config=config)
        machine_b = make_machine("bot_2", config=config)

        asyncio.create_task(machine_b.run())
        await wait_until(lambda: machine_b.is_active)
        asyncio.create_task(machine_a.run())
        await wait_until(lambda: transport.open_calls["bot_1"] == 2 and machine_a.is_active)

        assert machine_a.get_metrics().throttle_signals == 1
        assert admission.signals_explicit == 1
        assert admission.current_delay_ms == 3000
        assert clock.sleeps_for("bot_1").count(9.0) == 1
        assert 9.0 not in clock.sleeps_for("bot_2")
        assert machine_b.backoff_attempt == 0
        assert machine_b.get_metrics().throttle_signals == 0

        await machine_a.stop()
        await machine_b.stop()

    @pytest.mark.asyncio
    async def test_repeated_resets_reach_exact_ceiling(
        self,
        transport: FakeTransport,
        credentials: CredentialStore,
        clock: FakeClock,
    ) -> None:
        """Each ECONNRESET episode multiplies the shared delay by 1.5 until it sits at the ceiling."""
        admission = AdmissionController(
            config=AdmissionConfig(initial_delay_ms=8000, max_delay_ms=20000),
            _time_fn=clock.time_ms,
            _sleep_fn=clock.sleep,
        )
        for _ in range(4):
            transport.add_session(
                Established(),
                TransportError(code="ECONNRESET", message="read ECONNRESET"),
                identity="bot_1",
            )
        delays_after_disconnect: list[int] = []

        def record(name: str, state: SessionState) -> None:
            if state == SessionState.DISCONNECTED:
                delays_after_disconnect.append(admission.current_delay_ms)

        machine = ConnectionStateMachine(
            Identity(name="bot_1", index=1),
            ServerConfig(),
            transport,
            admission,
            credentials,
            SessionConfig(registration_secret="pw", max_reconnect_attempts=3),
            on_state_change=record,
            rng=random.Random(42),
            sleep_fn=clock.sleeper("bot_1"),
        )

        state = await asyncio.wait_for(machine.run(), timeout=5)

        assert state == SessionState.FAILED
        assert delays_after_disconnect == [12000, 18000, 20000, 20000]
        assert admission.signals_soft == 4

    @pytest.mark.asyncio
    async def test_cooldown_is_per_identity(
        self,
        make_machine: MachineFactory,
        transport: FakeTransport,
        admission: AdmissionController,
        clock: FakeClock,
        wait_until: WaitUntil,
    ) -> None:
        """A throttled kick delays only the kicked identity; the delay is shared."""
        config = SessionConfig(
            registration_secret="pw",
            max_reconnect_attempts=1,
            throttle_cooldown_min_ms=7000,
            throttle_cooldown_max_ms=7000,
        )
        transport.add_session(
            Established(),
            Kicked(reason="You are logging in too fast"),
            identity="bot_1",
        )
        transport.add_session(Established(), identity="bot_2", hold_open=True)
        machine_a = make_machine("bot_1", config=config)
        machine_b = make_machine("bot_2", config=config)

        task_b = asyncio.create_task(machine_b.run())
        state_a = await asyncio.wait_for(machine_a.run(), timeout=5)
        await wait_until(lambda: machine_b.is_active)

        assert state_a == SessionState.FAILED
        assert 7.0 in clock.sleeps_for("bot_1")
        assert 7.0 not in clock.sleeps_for("bot_2")
        assert admission.current_delay_ms == 3000
        assert machine_a.get_metrics().throttle_signals == 1
        assert machine_b.get_metrics().throttle_signals == 0
        assert machine_b.backoff_attempt == 0
        assert machine_b.state == SessionState.ACTIVE

        await machine_b.stop()
        assert task_b.done()


class TestReconnect:
    """Backoff, FAILED and handle ownership."""

    @pytest.mark.asyncio
    async def test_unreachable_server_fails_after_budget(
        self,
        make_machine: MachineFactory,
        transport: FakeTransport,
        admission: AdmissionController,
        clock: FakeClock,
    ) -> None:
        """Initial attempt + 3 reconnects, then FAILED with no further clearance."""
        machine = make_machine()

        state = await asyncio.wait_for(machine.run(), timeout=5)

        assert state == SessionState.FAILED
        assert transport.open_calls["bot_1"] == 4
        assert admission.grants_for("bot_1") == 4
        metrics = machine.get_metrics()
        assert metrics.reconnect_attempts == 3
        assert metrics.connect_failures == 4

        delays = clock.sleeps_for("bot_1")
        assert len(delays) == 3
        assert 4.0 <= delays[0] <= 6.0
        assert 5.5 <= delays[1] <= 7.5
        assert 7.45 <= delays[2] <= 9.45

        await asyncio.sleep(0.01)
        assert admission.grants_for("bot_1") == 4

    @pytest.mark.asyncio
    async def test_zero_budget_fails_after_first_disconnect(
        self,
        make_machine: MachineFactory,
        transport: FakeTransport,
    ) -> None:
        machine = make_machine(config=SessionConfig(registration_secret="pw", max_reconnect_attempts=0))

        state = await asyncio.wait_for(machine.run(), timeout=5)

        assert state == SessionState.FAILED
        assert transport.open_calls["bot_1"] == 1

    @pytest.mark.asyncio
    async def test_large_budget_reaches_failed_at_capped_delay(
        self,
        make_machine: MachineFactory,
        transport: FakeTransport,
        clock: FakeClock,
    ) -> None:
        """Attempt counts far past the backoff cap keep reconnecting at the cap, then FAILED."""
        config = SessionConfig(
            registration_secret="pw",
            max_reconnect_attempts=1200,
            backoff=BackoffConfig(
                base_delay_ms=1, max_delay_ms=30000, multiplier=2.0, jitter_factor=0.0
            ),
        )
        machine = make_machine(config=config)

        state = await asyncio.wait_for(machine.run(), timeout=30)

        assert state == SessionState.FAILED
        assert transport.open_calls["bot_1"] == 1201
        delays = clock.sleeps_for("bot_1")
        assert len(delays) == 1200
        assert all(d <= 30.0 for d in delays)
        assert delays[-1] == 30.0

    @pytest.mark.asyncio
    async def test_active_session_resets_backoff(
        self,
        make_machine: MachineFactory,
        transport: FakeTransport,
        wait_until: WaitUntil,
    ) -> None:
        transport.add_failure(ConnectionRefusedError("refused"))
        transport.add_failure(ConnectionRefusedError("refused"))
        transport.add_session(Established(), hold_open=True)
        machine = make_machine()
        asyncio.create_task(machine.run())

        await wait_until(lambda: machine.is_active)

        assert machine.backoff_attempt == 0
        assert machine.get_metrics().reconnect_attempts == 2
        await machine.stop()

    @pytest.mark.asyncio
    async def test_at_most_one_live_handle(
        self,
        make_machine: MachineFactory,
        transport: FakeTransport,
    ) -> None:
        for _ in range(3):
            transport.add_session(Established(), InboundText("hello"))
        machine = make_machine()

        await asyncio.wait_for(machine.run(), timeout=5)

        assert transport.overlapping_opens == 0
        assert all(h.closed for h in transport.handles["bot_1"])
        assert not machine.has_live_handle

    @pytest.mark.asyncio
    async def test_episode_error_routes_to_disconnected(
        self,
        make_machine: MachineFactory,
        transport: FakeTransport,
    ) -> None:
        """An exception while reading events ends the episode like a disconnect."""

        class ExplodingHandle:
            closed = False

            async def events(self) -> AsyncIterator[SessionEvent]:
                yield Established()
                raise RuntimeError("decoder blew up")

            async def send_text(self, text: str) -> None:
                return None

            async def close(self) -> None:
                self.closed = True

        handle = ExplodingHandle()
        transport.open = AsyncMock(return_value=handle)  # type: ignore[method-assign]
        machine = make_machine(config=SessionConfig(registration_secret="pw", max_reconnect_attempts=0))

        state = await asyncio.wait_for(machine.run(), timeout=5)

        assert state == SessionState.FAILED
        assert handle.closed
        assert machine.get_metrics().last_error == "decoder blew up"


class TestLifecycle:
    """Idle behaviors and stop()."""

    @pytest.mark.asyncio
    async def test_idle_behaviors_scoped_to_active_period(
        self,
        make_machine: MachineFactory,
        transport: FakeTransport,
    ) -> None:
        transport.add_session(Established())
        idle = MagicMock()
        idle.stop = AsyncMock()
        machine = make_machine(
            config=SessionConfig(registration_secret="pw", max_reconnect_attempts=0),
            idle=idle,
        )

        await asyncio.wait_for(machine.run(), timeout=5)

        idle.start.assert_called_once()
        identity, handle = idle.start.call_args.args
        assert identity == Identity(name="bot_1", index=1)
        assert handle is transport.handles["bot_1"][0]
        idle.stop.assert_awaited_once_with(identity)

    @pytest.mark.asyncio
    async def test_stop_closes_live_session(
        self,
        make_machine: MachineFactory,
        transport: FakeTransport,
        wait_until: WaitUntil,
    ) -> None:
        transport.add_session(Established(), hold_open=True)
        idle = MagicMock()
        idle.stop = AsyncMock()
        machine = make_machine(idle=idle)
        task = asyncio.create_task(machine.run())
        await wait_until(lambda: machine.is_active)

        await machine.stop()

        assert task.done()
        assert machine.state == SessionState.STOPPED
        assert transport.handles["bot_1"][0].closed
        idle.stop.assert_awaited_once()

        # Idempotent
        await machine.stop()
        assert machine.state == SessionState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_after_failed_keeps_failed(
        self,
        make_machine: MachineFactory,
    ) -> None:
        machine = make_machine(config=SessionConfig(registration_secret="pw", max_reconnect_attempts=0))
        await asyncio.wait_for(machine.run(), timeout=5)

        await machine.stop()

        assert machine.state == SessionState.FAILED

    @pytest.mark.asyncio
    async def test_cleared_run_skips_first_clearance(
        self,
        transport: FakeTransport,
        admission: AdmissionController,
        credentials: CredentialStore,
        clock: FakeClock,
    ) -> None:
        """run(cleared=True) uses the caller's clearance for the first attempt."""
        machine = ConnectionStateMachine(
            Identity(name="bot_9", index=9),
            ServerConfig(),
            transport,
            admission,
            credentials,
            SessionConfig(registration_secret="pw", max_reconnect_attempts=0),
            sleep_fn=clock.sleeper("bot_9"),
        )

        await asyncio.wait_for(machine.run(cleared=True), timeout=5)

        assert transport.open_calls["bot_9"] == 1
        assert admission.grants_for("bot_9") == 0
