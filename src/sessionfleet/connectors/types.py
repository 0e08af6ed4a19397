"""
Types and configuration for fleet sessions.

One Identity per fleet slot; names are derived from a prefix and the slot
index. Durations are integer milliseconds throughout.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from sessionfleet.connectors.backoff import BackoffConfig


class SessionState(str, Enum):
    """Connection state machine state."""

    IDLE = "IDLE"
    CONNECTING = "CONNECTING"
    AUTHENTICATING = "AUTHENTICATING"
    ACTIVE = "ACTIVE"
    DISCONNECTED = "DISCONNECTED"
    RECONNECTING = "RECONNECTING"
    FAILED = "FAILED"  # Reconnect budget exhausted, terminal
    STOPPED = "STOPPED"  # Shut down by the supervisor


def identity_name(prefix: str, index: int) -> str:
    """Derive the identity name for a fleet slot."""
    return f"{prefix}{index}"


@dataclass(frozen=True)
class Identity:
    """
    One logical fleet member.

    The secret lives in the CredentialStore, not here: it is absent until
    registration succeeds and immutable afterwards.

    Attributes:
        name: Stable identity name (e.g., "bot_3").
        index: Fleet slot index.
    """

    name: str
    index: int

    @classmethod
    def for_slot(cls, prefix: str, index: int) -> Identity:
        """Build the identity for a fleet slot."""
        return cls(name=identity_name(prefix, index), index=index)


@dataclass(frozen=True)
class ServerConfig:
    """
    Remote server address.

    Attributes:
        host: Server hostname.
        port: Server port.
        path: Endpoint path for the session.
        secure: Use wss:// instead of ws://.
    """

    host: str = "127.0.0.1"
    port: int = 8080
    path: str = "/"
    secure: bool = False

    def __post_init__(self) -> None:
        if not self.host:
            raise ValueError("host must not be empty")
        if not 1 <= self.port <= 65535:
            raise ValueError(f"port must be 1..65535, got {self.port}")
        if not self.path.startswith("/"):
            raise ValueError(f"path must start with '/', got {self.path!r}")

    @property
    def url(self) -> str:
        """WebSocket URL for this server."""
        scheme = "wss" if self.secure else "ws"
        return f"{scheme}://{self.host}:{self.port}{self.path}"

    @property
    def address(self) -> str:
        """host:port form used in log lines."""
        return f"{self.host}:{self.port}"


@dataclass
class SessionConfig:
    """
    Per-identity session behavior.

    Defaults mirror the observed production values: 10 reconnect attempts,
    3 login retries 3s apart, a 1.0-1.5s pause before authenticating and a
    5-15s extra cooldown after a throttled disconnect.
    """

    registration_secret: str = ""
    register_command: str = "/register {secret} {secret}"
    login_command: str = "/login {secret}"
    max_reconnect_attempts: int = 10
    max_login_retries: int = 3
    login_retry_delay_ms: int = 3000
    auth_delay_min_ms: int = 1000
    auth_delay_max_ms: int = 1500
    throttle_cooldown_min_ms: int = 5000
    throttle_cooldown_max_ms: int = 15000
    backoff: BackoffConfig = field(default_factory=BackoffConfig)

    def __post_init__(self) -> None:
        if self.max_reconnect_attempts < 0:
            raise ValueError(
                f"max_reconnect_attempts must be >= 0, got {self.max_reconnect_attempts}"
            )
        if self.max_login_retries < 0:
            raise ValueError(f"max_login_retries must be >= 0, got {self.max_login_retries}")
        if self.login_retry_delay_ms < 0:
            raise ValueError(f"login_retry_delay_ms must be >= 0, got {self.login_retry_delay_ms}")
        if not 0 <= self.auth_delay_min_ms <= self.auth_delay_max_ms:
            raise ValueError(
                "auth_delay range must satisfy 0 <= min <= max, "
                f"got {self.auth_delay_min_ms}..{self.auth_delay_max_ms}"
            )
        if not 0 <= self.throttle_cooldown_min_ms <= self.throttle_cooldown_max_ms:
            raise ValueError(
                "throttle_cooldown range must satisfy 0 <= min <= max, "
                f"got {self.throttle_cooldown_min_ms}..{self.throttle_cooldown_max_ms}"
            )
        if "{secret}" not in self.login_command:
            raise ValueError("login_command must contain a {secret} placeholder")
        if "{secret}" not in self.register_command:
            raise ValueError("register_command must contain a {secret} placeholder")

    def format_register(self, secret: str) -> str:
        """Render the registration command."""
        return self.register_command.format(secret=secret)

    def format_login(self, secret: str) -> str:
        """Render the login command."""
        return self.login_command.format(secret=secret)


@dataclass
class SessionMetrics:
    """
    Metrics for a single identity.

    Attributes:
        identity: Identity name.
        state: Current state.
        connects: Successful session establishments.
        connect_failures: Handle creation failures.
        disconnects: Episodes ended (any reason).
        reconnect_attempts: Reconnects scheduled by the backoff policy.
        throttle_signals: Throttle signals reported to the admission controller.
        registrations: Registration commands sent.
        logins: Login commands sent (first attempt per session).
        login_retries_sent: Login commands resent after a failure marker.
        last_error: Last transport error message, if any.
    """

    identity: str
    state: SessionState = SessionState.IDLE
    connects: int = 0
    connect_failures: int = 0
    disconnects: int = 0
    reconnect_attempts: int = 0
    throttle_signals: int = 0
    registrations: int = 0
    logins: int = 0
    login_retries_sent: int = 0
    last_error: str | None = None


@dataclass
class FleetMetrics:
    """
    Aggregated metrics for the fleet.

    Attributes:
        total: Configured fleet size.
        launched: Identities launched so far.
        active: Identities currently ACTIVE.
        failed: Identities in terminal FAILED state.
        current_delay_ms: Admission controller inter-attempt delay.
        clearances_granted: Total clearances granted.
        total_disconnects: Sum of per-identity disconnects.
        total_reconnect_attempts: Sum of per-identity reconnect attempts.
        total_throttle_signals: Sum of per-identity throttle signals.
        uptime_s: Seconds since the supervisor started.
        session_metrics: Per-identity metrics.
    """

    total: int = 0
    launched: int = 0
    active: int = 0
    failed: int = 0
    current_delay_ms: int = 0
    clearances_granted: int = 0
    total_disconnects: int = 0
    total_reconnect_attempts: int = 0
    total_throttle_signals: int = 0
    uptime_s: float = 0.0
    session_metrics: list[SessionMetrics] = field(default_factory=list)
