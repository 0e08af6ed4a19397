"""
Fleet supervisor: launches and owns one state machine per identity.

Launch order is strictly sequential over the configured slot range; each
launch waits for admission clearance before its machine starts, so the
initial ramp-up follows the same pacing as reconnects. Machines are fully
independent afterwards: one reaching FAILED never affects the others.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from sessionfleet.connectors.admission import AdmissionController
from sessionfleet.connectors.credentials import CredentialStore
from sessionfleet.connectors.idle import HeartbeatBehaviors, NoIdleBehaviors
from sessionfleet.connectors.session import ConnectionStateMachine
from sessionfleet.connectors.signals import SignalClassifier
from sessionfleet.connectors.types import FleetMetrics, Identity, SessionState
from sessionfleet.logging_config import SYSTEM

if TYPE_CHECKING:
    from sessionfleet.config import FleetConfig
    from sessionfleet.connectors.idle import IdleBehaviors
    from sessionfleet.connectors.session import SleepFn
    from sessionfleet.connectors.transport import SessionTransport

logger = logging.getLogger(__name__)


class FleetSupervisor:
    """
    Owns the fleet: admission controller, credential store and machines.

    Responsibilities:
    - Load credentials once at startup
    - Launch identities in slot order, one admission clearance each
    - Periodic status reporting
    - Clean shutdown of every machine and the transport
    """

    def __init__(
        self,
        config: FleetConfig,
        transport: SessionTransport,
        *,
        admission: AdmissionController | None = None,
        credentials: CredentialStore | None = None,
        idle: IdleBehaviors | None = None,
        classifier: SignalClassifier | None = None,
        rng: random.Random | None = None,
        time_fn: Callable[[], int] | None = None,
        sleep_fn: SleepFn | None = None,
    ) -> None:
        """
        Initialize the supervisor.

        Args:
            config: Fleet configuration.
            transport: Network session collaborator shared by all machines.
            admission: Shared admission controller (default: from config).
            credentials: Credential store (default: at config.credentials_path).
            idle: Idle behaviors (default: heartbeat if configured, else none).
            classifier: Signal classifier shared by all machines.
            rng: Optional seeded Random, shared by machines.
            time_fn: Time provider in ms for deterministic testing.
            sleep_fn: Sleep override passed to machines for deterministic testing.
        """
        self._config = config
        self._transport = transport
        self._admission = admission or AdmissionController(config=config.admission)
        self._credentials = credentials or CredentialStore(config.credentials_path)
        self._classifier = classifier or SignalClassifier()
        self._rng = rng or random.Random()
        self._time_fn = time_fn
        self._sleep_fn = sleep_fn

        if idle is not None:
            self._idle: IdleBehaviors = idle
        elif config.heartbeat_text:
            self._idle = HeartbeatBehaviors(
                config.heartbeat_text,
                config.heartbeat_min_interval_ms,
                config.heartbeat_max_interval_ms,
                rng=self._rng,
            )
        else:
            self._idle = NoIdleBehaviors()

        self._machines: dict[str, ConnectionStateMachine] = {}
        self._tasks: dict[str, asyncio.Task[SessionState]] = {}
        self._status_task: asyncio.Task[None] | None = None
        self._started_ms: int | None = None
        self._running = False
        self._stopped = False

    def _now_ms(self) -> int:
        """Get current time in milliseconds."""
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.monotonic() * 1000)

    @property
    def admission(self) -> AdmissionController:
        """Read-only access to the shared admission controller."""
        return self._admission

    @property
    def credentials(self) -> CredentialStore:
        """Read-only access to the credential store."""
        return self._credentials

    @property
    def machines(self) -> dict[str, ConnectionStateMachine]:
        """Launched machines by identity name."""
        return dict(self._machines)

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """
        Load credentials, launch the configured range and start status reporting.

        Returns after the last identity has been launched.

        Raises:
            CredentialStoreError: If the credential file exists but is unreadable.
        """
        if self._running:
            return

        self._running = True
        self._started_ms = self._now_ms()
        loaded = self._credentials.load()
        logger.log(
            SYSTEM,
            "Starting fleet of %d sessions against %s (%d stored credentials)",
            self._config.total,
            self._config.server.address,
            loaded,
        )

        self._status_task = asyncio.create_task(self._status_loop())
        await self.launch(self._config.start_index, self._config.total)

    async def launch(self, start_index: int, count: int) -> list[str]:
        """
        Launch identities for slots start_index .. start_index + count - 1.

        Each launch is granted its own admission clearance before the
        machine starts, so launches are paced like reconnects.

        Returns:
            Names of identities launched.
        """
        launched: list[str] = []
        try:
            for index in range(start_index, start_index + count):
                if self._stopped:
                    break
                identity = Identity.for_slot(self._config.prefix, index)
                if identity.name in self._machines:
                    logger.warning("Identity already launched", extra={"identity": identity.name})
                    continue

                await self._admission.await_clearance(identity.name)
                if self._stopped:
                    break

                self._start_machine(identity)
                launched.append(identity.name)

                if self._admission.consume_throttle_flag():
                    logger.log(
                        SYSTEM,
                        "Rate limit detected during launch, global delay now %dms",
                        self._admission.current_delay_ms,
                    )
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Fleet launch failed")
            raise

        logger.log(SYSTEM, "Launched %d sessions", len(launched))
        return launched

    def _start_machine(self, identity: Identity) -> None:
        machine = ConnectionStateMachine(
            identity,
            self._config.server,
            self._transport,
            self._admission,
            self._credentials,
            self._config.session,
            idle=self._idle,
            classifier=self._classifier,
            on_state_change=self._handle_state_change,
            rng=self._rng,
            sleep_fn=self._sleep_fn,
        )
        self._machines[identity.name] = machine
        logger.info("Launching session", extra={"identity": identity.name})

        task = asyncio.create_task(machine.run(cleared=True), name=f"session-{identity.name}")
        self._tasks[identity.name] = task
        task.add_done_callback(self._handle_task_done)

    def _handle_state_change(self, name: str, state: SessionState) -> None:
        if state == SessionState.FAILED:
            logger.error("Session failed permanently", extra={"identity": name})

    def _handle_task_done(self, task: asyncio.Task[SessionState]) -> None:
        """Surface unexpected machine crashes; normal exits are FAILED or STOPPED."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Session task crashed: %s",
                exc,
                exc_info=exc,
                extra={"task": task.get_name()},
            )

    async def _status_loop(self) -> None:
        """Log fleet status periodically. Observational only."""
        interval = self._config.status_interval_ms / 1000
        while self._running:
            await asyncio.sleep(interval)
            metrics = self.get_metrics()
            logger.log(
                SYSTEM,
                "Status: %d/%d sessions active, %d failed, uptime %ds, connection delay %dms",
                metrics.active,
                metrics.total,
                metrics.failed,
                int(metrics.uptime_s),
                metrics.current_delay_ms,
            )

    def get_metrics(self) -> FleetMetrics:
        """
        Get aggregated fleet metrics.

        Returns:
            FleetMetrics with per-identity metrics and totals.
        """
        session_metrics = [machine.get_metrics() for machine in self._machines.values()]
        uptime_s = 0.0
        if self._started_ms is not None:
            uptime_s = max(0, self._now_ms() - self._started_ms) / 1000

        return FleetMetrics(
            total=self._config.total,
            launched=len(self._machines),
            active=sum(1 for m in session_metrics if m.state == SessionState.ACTIVE),
            failed=sum(1 for m in session_metrics if m.state == SessionState.FAILED),
            current_delay_ms=self._admission.current_delay_ms,
            clearances_granted=self._admission.clearances_granted,
            total_disconnects=sum(m.disconnects for m in session_metrics),
            total_reconnect_attempts=sum(m.reconnect_attempts for m in session_metrics),
            total_throttle_signals=sum(m.throttle_signals for m in session_metrics),
            uptime_s=uptime_s,
            session_metrics=session_metrics,
        )

    def get_health_info(self) -> dict[str, Any]:
        """Health summary for the /healthz endpoint."""
        metrics = self.get_metrics()
        if not self._running:
            status = "stopped"
        elif metrics.launched > 0 and metrics.failed == metrics.launched:
            status = "failed"
        elif metrics.active < metrics.launched:
            status = "degraded"
        else:
            status = "ok"
        return {
            "status": status,
            "total": metrics.total,
            "launched": metrics.launched,
            "active": metrics.active,
            "failed": metrics.failed,
            "current_delay_ms": metrics.current_delay_ms,
            "uptime_s": round(metrics.uptime_s, 1),
        }

    async def stop(self) -> None:
        """Stop every machine, cancel status reporting and release the transport."""
        if self._stopped:
            return

        logger.log(SYSTEM, "Shutting down...")
        self._stopped = True
        self._running = False

        if self._status_task is not None:
            self._status_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._status_task
            self._status_task = None

        for machine in list(self._machines.values()):
            await machine.stop()

        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self._transport.close()
        logger.log(SYSTEM, "Fleet stopped")
