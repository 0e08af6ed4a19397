"""
Connection state machine: one identity's connect/authenticate/reconnect cycle.

States:
    IDLE -> CONNECTING -> AUTHENTICATING -> ACTIVE -> DISCONNECTED
    DISCONNECTED -> RECONNECTING -> CONNECTING      (budget left)
    DISCONNECTED -> FAILED                          (budget exhausted, terminal)

Every connection attempt waits for clearance from the shared
AdmissionController. Between attempts the identity's own BackoffState
sets the delay. Throttling observed in text, kick reasons or transport
error codes is reported to the AdmissionController and adds a one-off
cooldown before this identity's next attempt.

Authentication is optimistic: after sending register/login the identity
goes ACTIVE immediately. Login results arrive later as free text; failures
are retried a bounded number of times, and an identity that exhausts its
login retries stays connected (logged, not disconnected).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from sessionfleet.connectors.admission import ThrottleSignalKind
from sessionfleet.connectors.backoff import BackoffState
from sessionfleet.connectors.credentials import CredentialStoreError
from sessionfleet.connectors.idle import IdleScope, NoIdleBehaviors
from sessionfleet.connectors.signals import AuthSignal, SignalClassifier, error_code_for
from sessionfleet.connectors.transport import (
    Established,
    InboundText,
    Kicked,
    SessionEnd,
    TransportError,
)
from sessionfleet.connectors.types import SessionMetrics, SessionState
from sessionfleet.logging_config import SUCCESS

if TYPE_CHECKING:
    from sessionfleet.connectors.admission import AdmissionController
    from sessionfleet.connectors.credentials import CredentialStore
    from sessionfleet.connectors.idle import IdleBehaviors
    from sessionfleet.connectors.transport import SessionHandle, SessionTransport
    from sessionfleet.connectors.types import Identity, ServerConfig, SessionConfig

logger = logging.getLogger(__name__)

StateChangeCallback = Callable[[str, SessionState], None]
SleepFn = Callable[[float], Awaitable[None]]


class ConnectionStateMachine:
    """
    Drives one identity through repeated connect/authenticate/active cycles.

    Responsible for:
    - Holding at most one live session handle for the identity
    - Register-once / login-thereafter authentication
    - Bounded login retries on failure markers
    - Reporting throttle signals to the shared admission controller
    - Exponential reconnect backoff with a terminal FAILED state
    """

    def __init__(
        self,
        identity: Identity,
        server: ServerConfig,
        transport: SessionTransport,
        admission: AdmissionController,
        credentials: CredentialStore,
        config: SessionConfig,
        *,
        idle: IdleBehaviors | None = None,
        classifier: SignalClassifier | None = None,
        on_state_change: StateChangeCallback | None = None,
        rng: random.Random | None = None,
        sleep_fn: SleepFn | None = None,
    ) -> None:
        """
        Initialize the state machine.

        Args:
            identity: Identity this machine drives.
            server: Remote server address.
            transport: Network session collaborator.
            admission: Shared admission controller.
            credentials: Shared credential store.
            config: Session behavior configuration.
            idle: Idle-behavior collaborator (default: none).
            classifier: Text/error signal classifier.
            on_state_change: Optional callback for state changes.
            rng: Optional seeded Random for jitter, auth delay and cooldown.
            sleep_fn: Optional sleep override for deterministic testing.
        """
        self._identity = identity
        self._server = server
        self._transport = transport
        self._admission = admission
        self._credentials = credentials
        self._config = config
        self._idle: IdleBehaviors = idle or NoIdleBehaviors()
        self._classifier = classifier or SignalClassifier()
        self._on_state_change = on_state_change
        self._rng = rng or random.Random()
        self._sleep_fn = sleep_fn

        self._state = SessionState.IDLE
        self._handle: SessionHandle | None = None
        self._backoff_state = BackoffState()
        self._login_retries = 0
        self._login_confirmed = False
        self._throttled_episode = False
        self._active_scope: IdleScope | None = None
        self._idle_started = False
        self._stopping = False
        self._run_task: asyncio.Task[SessionState] | None = None

        self._metrics = SessionMetrics(identity=identity.name)
        self._log_extra = {"identity": identity.name}

    @property
    def identity(self) -> Identity:
        """Get the identity driven by this machine."""
        return self._identity

    @property
    def state(self) -> SessionState:
        """Get current state."""
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state == SessionState.ACTIVE

    @property
    def has_live_handle(self) -> bool:
        """Whether an open session handle is currently held."""
        return self._handle is not None and not self._handle.closed

    @property
    def backoff_attempt(self) -> int:
        """Reconnects scheduled since the last stable session."""
        return self._backoff_state.attempt

    @property
    def login_retries(self) -> int:
        """Login failures seen since the last success marker or session start."""
        return self._login_retries

    @property
    def login_confirmed(self) -> bool:
        """Whether a login success marker was seen in the current session."""
        return self._login_confirmed

    def get_metrics(self) -> SessionMetrics:
        """Get current session metrics."""
        self._metrics.state = self._state
        return self._metrics

    def _set_state(self, state: SessionState) -> None:
        """Update state and notify callback."""
        if self._state != state:
            old_state = self._state
            self._state = state
            self._metrics.state = state
            logger.debug(
                "Session state changed",
                extra={
                    "identity": self._identity.name,
                    "old_state": old_state.value,
                    "new_state": state.value,
                },
            )
            if self._on_state_change:
                self._on_state_change(self._identity.name, state)

    async def _sleep(self, seconds: float) -> None:
        if self._sleep_fn is not None:
            await self._sleep_fn(seconds)
        else:
            await asyncio.sleep(seconds)

    async def run(self, *, cleared: bool = False) -> SessionState:
        """
        Run the lifecycle until FAILED or stopped.

        Args:
            cleared: True if the caller already obtained admission clearance
                for the first attempt.

        Returns:
            Final state (FAILED or STOPPED).
        """
        self._run_task = asyncio.current_task()  # type: ignore[assignment]
        try:
            if not cleared:
                await self._admission.await_clearance(self._identity.name)

            while not self._stopping:
                await self._run_episode()
                if self._stopping:
                    break
                if not await self._prepare_reconnect():
                    break
        finally:
            await self._release_session()

        if self._stopping and self._state != SessionState.FAILED:
            self._set_state(SessionState.STOPPED)
        return self._state

    async def stop(self) -> None:
        """
        Stop the lifecycle: cancel pending timers and close the live session.

        Safe to call more than once, and after FAILED.
        """
        self._stopping = True
        task = self._run_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        await self._release_session()
        if self._state != SessionState.FAILED:
            self._set_state(SessionState.STOPPED)

    # ------------------------------------------------------------------
    # Episode: CONNECTING -> ... -> DISCONNECTED
    # ------------------------------------------------------------------

    async def _run_episode(self) -> None:
        """Run one connection from open to disconnect."""
        await self._discard_handle()
        self._login_retries = 0
        self._login_confirmed = False
        self._set_state(SessionState.CONNECTING)
        logger.info("Connecting to %s", self._server.address, extra=self._log_extra)

        try:
            handle = await self._transport.open(self._identity, self._server)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._metrics.connect_failures += 1
            self._metrics.last_error = str(e)
            logger.error("Failed to connect: %s", e, extra=self._log_extra)
            if self._classifier.is_soft_error(error_code_for(e)):
                self._report_throttle(ThrottleSignalKind.SOFT, "Connection reset while connecting")
            self._metrics.disconnects += 1
            self._set_state(SessionState.DISCONNECTED)
            return

        self._handle = handle
        try:
            async with contextlib.aclosing(handle.events()) as events:
                async for event in events:
                    if isinstance(event, Established):
                        await self._on_established(handle)
                    elif isinstance(event, InboundText):
                        await self._on_inbound_text(handle, event.text)
                    elif isinstance(event, TransportError):
                        self._on_transport_error(event)
                    elif isinstance(event, Kicked):
                        self._on_kicked(event)
                    elif isinstance(event, SessionEnd):
                        break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._metrics.last_error = str(e)
            logger.exception("Session error: %s", e, extra=self._log_extra)
            if self._classifier.is_soft_error(error_code_for(e)):
                self._report_throttle(ThrottleSignalKind.SOFT, "Connection reset")
        finally:
            await self._release_session()

        self._metrics.disconnects += 1
        self._set_state(SessionState.DISCONNECTED)
        logger.warning("Disconnected", extra=self._log_extra)

    async def _on_established(self, handle: SessionHandle) -> None:
        """CONNECTING -> AUTHENTICATING -> ACTIVE."""
        self._metrics.connects += 1
        logger.log(SUCCESS, "Session established", extra=self._log_extra)
        self._set_state(SessionState.AUTHENTICATING)

        delay_ms = self._rng.uniform(self._config.auth_delay_min_ms, self._config.auth_delay_max_ms)
        if delay_ms > 0:
            await self._sleep(delay_ms / 1000)
        if handle.closed:
            return

        await self._authenticate(handle)
        if handle.closed:
            return

        self._enter_active(handle)

    async def _authenticate(self, handle: SessionHandle) -> None:
        """Register on first contact, log in with the stored secret thereafter."""
        name = self._identity.name
        secret = self._credentials.get(name)

        if secret is None:
            secret = self._config.registration_secret
            logger.info("Attempting registration", extra=self._log_extra)
            if not await self._send(handle, self._config.format_register(secret)):
                return
            self._metrics.registrations += 1
            try:
                await asyncio.to_thread(self._credentials.set_secret, name, secret)
            except CredentialStoreError as e:
                logger.error("Failed to save credentials: %s", e, extra=self._log_extra)
            else:
                logger.log(SUCCESS, "Registered and credentials saved", extra=self._log_extra)
            return

        logger.info("Attempting login", extra=self._log_extra)
        if await self._send(handle, self._config.format_login(secret)):
            self._metrics.logins += 1

    def _enter_active(self, handle: SessionHandle) -> None:
        """Stable session: forgive prior instability and start idle behaviors."""
        self._backoff_state.reset()
        self._login_retries = 0
        self._active_scope = IdleScope(self._identity.name)
        self._set_state(SessionState.ACTIVE)
        try:
            self._idle.start(self._identity, handle)
            self._idle_started = True
        except Exception as e:
            logger.error("Failed to start idle behaviors: %s", e, extra=self._log_extra)

    async def _on_inbound_text(self, handle: SessionHandle, text: str) -> None:
        """Scan inbound text for throttling and authentication results."""
        logger.info("Message: %s", text, extra=self._log_extra)

        if self._classifier.is_throttle_text(text):
            self._report_throttle(ThrottleSignalKind.EXPLICIT, "Rate limit message detected")

        if self._state != SessionState.ACTIVE:
            return

        signal = self._classifier.classify_auth(text)
        if signal == AuthSignal.SUCCESS:
            logger.log(SUCCESS, "Login successful", extra=self._log_extra)
            self._login_retries = 0
            self._login_confirmed = True
        elif signal == AuthSignal.FAILURE:
            self._on_login_failure(handle)

    def _on_login_failure(self, handle: SessionHandle) -> None:
        """Count a failure marker and resend login while under the limit."""
        self._login_retries += 1
        self._login_confirmed = False
        logger.error("Login failed", extra=self._log_extra)

        max_retries = self._config.max_login_retries
        if self._login_retries < max_retries and self._active_scope is not None:
            self._active_scope.spawn(self._resend_login(handle, self._login_retries))
        else:
            logger.error(
                "Max login retries (%d) reached, staying connected unauthenticated",
                max_retries,
                extra=self._log_extra,
            )

    async def _resend_login(self, handle: SessionHandle, failures: int) -> None:
        """Resend the login command after the retry delay, if still ACTIVE on this handle."""
        await self._sleep(self._config.login_retry_delay_ms / 1000)
        if handle is not self._handle or handle.closed or self._state != SessionState.ACTIVE:
            return
        secret = self._credentials.get(self._identity.name)
        if secret is None:
            return
        logger.warning(
            "Retrying login... (%d/%d)",
            failures + 1,
            self._config.max_login_retries,
            extra=self._log_extra,
        )
        if await self._send(handle, self._config.format_login(secret)):
            self._metrics.login_retries_sent += 1

    def _on_transport_error(self, event: TransportError) -> None:
        self._metrics.last_error = event.message
        logger.error("Error: %s", event.message, extra=self._log_extra)
        if self._classifier.is_soft_error(event.code):
            self._report_throttle(ThrottleSignalKind.SOFT, f"{event.code} detected")

    def _on_kicked(self, event: Kicked) -> None:
        logger.error("Kicked: %s", event.reason, extra=self._log_extra)
        if self._classifier.is_throttle_kick(event.reason):
            self._report_throttle(ThrottleSignalKind.EXPLICIT, "Rate limit kick detected")

    def _report_throttle(self, kind: ThrottleSignalKind, message: str) -> None:
        """Flag this episode as throttled and slow down global admission."""
        self._throttled_episode = True
        self._metrics.throttle_signals += 1
        logger.warning(message, extra=self._log_extra)
        self._admission.report_throttle_signal(kind)

    async def _send(self, handle: SessionHandle, text: str) -> bool:
        """Send text; transport failures are logged and end up as a disconnect."""
        try:
            await handle.send_text(text)
        except (ConnectionError, OSError) as e:
            self._metrics.last_error = str(e)
            logger.error("Send failed: %s", e, extra=self._log_extra)
            return False
        return True

    # ------------------------------------------------------------------
    # Teardown and reconnect
    # ------------------------------------------------------------------

    async def _release_session(self) -> None:
        """Leave ACTIVE: cancel scoped timers, stop idle behaviors, drop the handle."""
        scope = self._active_scope
        self._active_scope = None
        if scope is not None:
            await scope.cancel()

        if self._idle_started:
            self._idle_started = False
            try:
                await self._idle.stop(self._identity)
            except Exception as e:
                logger.error("Failed to stop idle behaviors: %s", e, extra=self._log_extra)

        await self._discard_handle()

    async def _discard_handle(self) -> None:
        """Close and forget the current handle, ignoring close errors."""
        handle = self._handle
        self._handle = None
        if handle is None or handle.closed:
            return
        try:
            await handle.close()
        except Exception as e:
            logger.debug("Ignoring error while closing session: %s", e, extra=self._log_extra)

    async def _prepare_reconnect(self) -> bool:
        """
        DISCONNECTED -> RECONNECTING (after cooldown and backoff) or FAILED.

        Returns:
            True if a new attempt has been cleared, False if FAILED.
        """
        if self._throttled_episode:
            cooldown_ms = self._rng.uniform(
                self._config.throttle_cooldown_min_ms,
                self._config.throttle_cooldown_max_ms,
            )
            logger.warning(
                "Rate limit detected, adding %ds extra delay",
                round(cooldown_ms / 1000),
                extra=self._log_extra,
            )
            await self._sleep(cooldown_ms / 1000)
            self._throttled_episode = False

        max_attempts = self._config.max_reconnect_attempts
        if self._backoff_state.attempt >= max_attempts:
            self._set_state(SessionState.FAILED)
            logger.error(
                "Max reconnection attempts (%d) reached, giving up",
                max_attempts,
                extra=self._log_extra,
            )
            return False

        delay_ms = self._backoff_state.next_delay_ms(self._config.backoff, rng=self._rng)
        self._backoff_state.record_attempt()
        self._metrics.reconnect_attempts += 1
        self._set_state(SessionState.RECONNECTING)
        logger.warning(
            "Reconnecting in %ds (Attempt %d/%d)",
            round(delay_ms / 1000),
            self._backoff_state.attempt,
            max_attempts,
            extra=self._log_extra,
        )

        await self._sleep(delay_ms / 1000)
        await self._admission.await_clearance(self._identity.name)
        return True
