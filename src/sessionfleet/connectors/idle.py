"""
Idle-behavior collaborator.

While an identity is ACTIVE, optional background behaviors run against its
session handle. Their timers are scoped to the ACTIVE period: ``start`` is
called once on entering ACTIVE and ``stop`` once on leaving it, and every
task spawned in between is cancelled by ``stop`` so nothing can fire
against a closed or replaced handle.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from collections.abc import Coroutine
    from typing import Any

    from sessionfleet.connectors.transport import SessionHandle
    from sessionfleet.connectors.types import Identity

logger = logging.getLogger(__name__)


class IdleBehaviors(Protocol):
    """Behaviors run while an identity is ACTIVE."""

    def start(self, identity: Identity, handle: SessionHandle) -> None: ...

    async def stop(self, identity: Identity) -> None: ...


class IdleScope:
    """
    Owner of the tasks started for one ACTIVE period.

    ``cancel()`` cancels and awaits every task still running; the scope
    refuses new work afterwards.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._tasks: set[asyncio.Task[None]] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def task_count(self) -> int:
        """Number of tasks still running in this scope."""
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None] | None:
        """Run a coroutine as a task owned by this scope."""
        if self._closed:
            coro.close()
            return None
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def cancel(self) -> None:
        """Cancel every task in the scope and wait for them to finish."""
        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()


class NoIdleBehaviors:
    """Default collaborator: sessions stay connected and do nothing."""

    def start(self, identity: Identity, handle: SessionHandle) -> None:
        return None

    async def stop(self, identity: Identity) -> None:
        return None


class HeartbeatBehaviors:
    """
    Send a keepalive text at a randomized interval while ACTIVE.

    Args:
        text: Text to send (e.g. a no-op command understood by the server).
        min_interval_ms: Lower bound of the interval between sends.
        max_interval_ms: Upper bound of the interval between sends.
        rng: Optional seeded Random for deterministic intervals.
    """

    def __init__(
        self,
        text: str,
        min_interval_ms: int = 15000,
        max_interval_ms: int = 25000,
        *,
        rng: random.Random | None = None,
    ) -> None:
        if not 0 < min_interval_ms <= max_interval_ms:
            raise ValueError(
                "interval range must satisfy 0 < min <= max, "
                f"got {min_interval_ms}..{max_interval_ms}"
            )
        self._text = text
        self._min_interval_ms = min_interval_ms
        self._max_interval_ms = max_interval_ms
        self._rng = rng or random.Random()
        self._scopes: dict[str, IdleScope] = {}
        self._background_tasks: set[asyncio.Task[None]] = set()
        self.sent: int = 0

    def active_identities(self) -> list[str]:
        """Identities that currently have a running scope."""
        return sorted(self._scopes)

    def start(self, identity: Identity, handle: SessionHandle) -> None:
        previous = self._scopes.pop(identity.name, None)
        if previous is not None:
            # start() without stop(): the old scope must not outlive its period
            task = asyncio.create_task(previous.cancel())
            self._background_tasks.add(task)
            task.add_done_callback(self._background_tasks.discard)
        scope = IdleScope(identity.name)
        self._scopes[identity.name] = scope
        scope.spawn(self._heartbeat_loop(identity, handle))

    async def stop(self, identity: Identity) -> None:
        scope = self._scopes.pop(identity.name, None)
        if scope is not None:
            await scope.cancel()

    async def _heartbeat_loop(self, identity: Identity, handle: SessionHandle) -> None:
        while not handle.closed:
            interval_ms = self._rng.uniform(self._min_interval_ms, self._max_interval_ms)
            await asyncio.sleep(interval_ms / 1000)
            if handle.closed:
                break
            try:
                await handle.send_text(self._text)
                self.sent += 1
            except ConnectionError as e:
                logger.debug(
                    "Heartbeat send failed",
                    extra={"identity": identity.name, "error": str(e)},
                )
                break
