"""
Shared fakes for session and supervisor tests.

FakeTransport hands out FakeHandles that replay scripted events, so the
state machine can be driven through whole connect/disconnect cycles
without a network. FakeClock drives both the admission controller and
the machines' sleeps, so backoff and pacing run instantly.
"""

from __future__ import annotations

import asyncio
import random
from collections import defaultdict, deque
from collections.abc import AsyncIterator, Awaitable, Callable
from pathlib import Path
from typing import Any

import pytest

from sessionfleet.connectors.admission import AdmissionConfig, AdmissionController
from sessionfleet.connectors.credentials import CredentialStore
from sessionfleet.connectors.session import ConnectionStateMachine
from sessionfleet.connectors.transport import Established, SessionEnd, SessionEvent
from sessionfleet.connectors.types import Identity, ServerConfig, SessionConfig


class FakeClock:
    """Millisecond clock advanced only by sleeps."""

    def __init__(self, start_ms: int = 1_000_000) -> None:
        self.now_ms = start_ms
        self.sleeps: list[tuple[str, float]] = []

    def time_ms(self) -> int:
        return self.now_ms

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(("admission", seconds))
        self.now_ms += round(seconds * 1000)
        await asyncio.sleep(0)

    def sleeper(self, tag: str) -> Callable[[float], Awaitable[None]]:
        """Sleep function that records under a tag."""

        async def sleep(seconds: float) -> None:
            self.sleeps.append((tag, seconds))
            self.now_ms += round(seconds * 1000)
            await asyncio.sleep(0)

        return sleep

    def sleeps_for(self, tag: str) -> list[float]:
        return [s for t, s in self.sleeps if t == tag]


class FakeHandle:
    """SessionHandle replaying a scripted event list."""

    def __init__(self, identity: Identity, script: list[SessionEvent], *, hold_open: bool) -> None:
        self.identity = identity
        self.script = script
        self.hold_open = hold_open
        self.sent: list[str] = []
        self.close_calls = 0
        self._closed = False
        self._closed_event = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed

    async def events(self) -> AsyncIterator[SessionEvent]:
        for event in self.script:
            if self._closed:
                break
            yield event
            await asyncio.sleep(0)
        if self.hold_open and not self._closed:
            await self._closed_event.wait()
        yield SessionEnd(reason="closed")

    async def send_text(self, text: str) -> None:
        if self._closed:
            raise ConnectionError("closed")
        self.sent.append(text)

    async def close(self) -> None:
        self.close_calls += 1
        self._closed = True
        self._closed_event.set()

    def drop(self) -> None:
        """Simulate the server dropping the connection."""
        self._closed = True
        self._closed_event.set()


class FakeTransport:
    """
    SessionTransport with per-identity scripted plans.

    Each open() consumes the next plan for the identity (falling back to
    the shared plan queue). A plan is a handle script or an exception to
    raise. With no plan left, open() raises ConnectionRefusedError, or
    returns an established handle held open if ``default_hold_open``.
    """

    def __init__(self) -> None:
        self._plans: dict[str | None, deque[Any]] = defaultdict(deque)
        self.handles: dict[str, list[FakeHandle]] = defaultdict(list)
        self.open_calls: dict[str, int] = defaultdict(int)
        self.overlapping_opens = 0
        self.default_hold_open = False
        self.closed = False

    def add_session(
        self,
        *events: SessionEvent,
        identity: str | None = None,
        hold_open: bool = False,
    ) -> None:
        self._plans[identity].append((list(events), hold_open))

    def add_failure(self, exc: BaseException, *, identity: str | None = None) -> None:
        self._plans[identity].append(exc)

    async def open(self, identity: Identity, server: ServerConfig) -> FakeHandle:
        self.open_calls[identity.name] += 1
        if any(not h.closed for h in self.handles[identity.name]):
            self.overlapping_opens += 1

        queue = self._plans[identity.name] or self._plans[None]
        if queue:
            plan = queue.popleft()
        elif self.default_hold_open:
            plan = ([Established()], True)
        else:
            plan = ConnectionRefusedError("connection refused")

        if isinstance(plan, BaseException):
            raise plan
        script, hold_open = plan
        handle = FakeHandle(identity, script, hold_open=hold_open)
        self.handles[identity.name].append(handle)
        return handle

    async def close(self) -> None:
        self.closed = True


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate() is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not reached in time")
        await asyncio.sleep(0.001)


WaitUntil = Callable[..., Awaitable[None]]


@pytest.fixture()
def wait_until() -> WaitUntil:
    return _wait_until


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture()
def admission(clock: FakeClock) -> AdmissionController:
    return AdmissionController(
        config=AdmissionConfig(initial_delay_ms=1500, max_delay_ms=30000),
        _time_fn=clock.time_ms,
        _sleep_fn=clock.sleep,
    )


@pytest.fixture()
def credentials(tmp_path: Path) -> CredentialStore:
    store = CredentialStore(tmp_path / "credentials.json")
    store.load()
    return store


@pytest.fixture()
def session_config() -> SessionConfig:
    return SessionConfig(registration_secret="pw", max_reconnect_attempts=3)


@pytest.fixture()
def make_machine(
    transport: FakeTransport,
    admission: AdmissionController,
    credentials: CredentialStore,
    session_config: SessionConfig,
    clock: FakeClock,
) -> Callable[..., ConnectionStateMachine]:
    """Factory for machines wired to the shared fakes."""

    def factory(name: str = "bot_1", **overrides: Any) -> ConnectionStateMachine:
        identity = Identity(name=name, index=int(name.rsplit("_", 1)[-1]))
        kwargs: dict[str, Any] = {
            "rng": random.Random(42),
            "sleep_fn": clock.sleeper(name),
        }
        config = overrides.pop("config", session_config)
        store = overrides.pop("credentials", credentials)
        kwargs.update(overrides)
        return ConnectionStateMachine(
            identity,
            ServerConfig(),
            transport,
            admission,
            store,
            config,
            **kwargs,
        )

    return factory
