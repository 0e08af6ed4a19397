"""
Process configuration for a fleet run.

Configuration is read once at startup from a JSON file and treated as
immutable afterwards. The registration secret may come from the file or,
preferably, from the ``FLEET_REGISTRATION_SECRET`` environment variable so
it never has to be committed anywhere.

File layout (every section and key optional unless noted):

    {
      "server": {"host": "127.0.0.1", "port": 8080, "path": "/", "secure": false},
      "prefix": "bot_",
      "start_index": 0,
      "total": 10,
      "registration_secret": "...",          (or env FLEET_REGISTRATION_SECRET)
      "status_interval_ms": 60000,
      "credentials_path": "bots/credentials.json",
      "log_dir": "logs",
      "metrics_port": 0,
      "heartbeat_text": null,
      "heartbeat_min_interval_ms": 15000,
      "heartbeat_max_interval_ms": 25000,
      "admission": {"initial_delay_ms": 1500, "max_delay_ms": 30000, ...},
      "backoff": {"base_delay_ms": 5000, "max_delay_ms": 30000, ...},
      "session": {"max_reconnect_attempts": 10, "max_login_retries": 3, ...}
    }
"""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import orjson

from sessionfleet.connectors.admission import AdmissionConfig
from sessionfleet.connectors.backoff import BackoffConfig
from sessionfleet.connectors.types import ServerConfig, SessionConfig

SECRET_ENV_VAR = "FLEET_REGISTRATION_SECRET"

_TOP_LEVEL_KEYS = frozenset(
    {
        "server",
        "prefix",
        "start_index",
        "total",
        "registration_secret",
        "status_interval_ms",
        "credentials_path",
        "log_dir",
        "metrics_port",
        "heartbeat_text",
        "heartbeat_min_interval_ms",
        "heartbeat_max_interval_ms",
        "admission",
        "backoff",
        "session",
    }
)


@dataclass
class FleetConfig:
    """
    Configuration for one fleet run.

    Attributes:
        server: Remote server address.
        prefix: Identity name prefix; names are prefix + slot index.
        start_index: First slot index to launch.
        total: Number of identities to launch.
        registration_secret: Secret used when registering new identities.
        admission: Shared admission pacing.
        session: Per-identity session behavior (backoff included).
        status_interval_ms: Interval of the periodic status log line.
        credentials_path: Credential store file.
        log_dir: Directory for per-identity log files (None disables them).
        metrics_port: Port for /metrics and /healthz (0 disables the server).
        heartbeat_text: Keepalive text sent while ACTIVE (None disables it).
        heartbeat_min_interval_ms: Lower bound of the keepalive interval.
        heartbeat_max_interval_ms: Upper bound of the keepalive interval.
    """

    server: ServerConfig = field(default_factory=ServerConfig)
    prefix: str = "bot_"
    start_index: int = 0
    total: int = 1
    registration_secret: str = ""
    admission: AdmissionConfig = field(default_factory=AdmissionConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    status_interval_ms: int = 60000
    credentials_path: Path = field(default_factory=lambda: Path("bots/credentials.json"))
    log_dir: Path | None = field(default_factory=lambda: Path("logs"))
    metrics_port: int = 0
    heartbeat_text: str | None = None
    heartbeat_min_interval_ms: int = 15000
    heartbeat_max_interval_ms: int = 25000

    def __post_init__(self) -> None:
        if not self.registration_secret:
            self.registration_secret = os.environ.get(SECRET_ENV_VAR, "")
        if not self.registration_secret:
            raise ValueError(
                f"registration_secret is required (set it in the config or {SECRET_ENV_VAR})"
            )
        if not self.prefix:
            raise ValueError("prefix must not be empty")
        if self.start_index < 0:
            raise ValueError(f"start_index must be >= 0, got {self.start_index}")
        if self.total < 0:
            raise ValueError(f"total must be >= 0, got {self.total}")
        if self.status_interval_ms <= 0:
            raise ValueError(f"status_interval_ms must be > 0, got {self.status_interval_ms}")
        if not 0 <= self.metrics_port <= 65535:
            raise ValueError(f"metrics_port must be 0..65535, got {self.metrics_port}")
        if not 0 < self.heartbeat_min_interval_ms <= self.heartbeat_max_interval_ms:
            raise ValueError(
                "heartbeat interval range must satisfy 0 < min <= max, "
                f"got {self.heartbeat_min_interval_ms}..{self.heartbeat_max_interval_ms}"
            )

        # Sessions register with the fleet's secret
        if self.session.registration_secret != self.registration_secret:
            self.session = dataclasses.replace(
                self.session, registration_secret=self.registration_secret
            )

    @property
    def end_index(self) -> int:
        """One past the last slot index."""
        return self.start_index + self.total

    def summary(self) -> dict[str, Any]:
        """Flat, secret-free view of the configuration for logging."""
        return {
            "server": self.server.address,
            "prefix": self.prefix,
            "start_index": self.start_index,
            "total": self.total,
            "initial_delay_ms": self.admission.initial_delay_ms,
            "max_delay_ms": self.admission.max_delay_ms,
            "max_reconnect_attempts": self.session.max_reconnect_attempts,
            "credentials_path": str(self.credentials_path),
            "log_dir": str(self.log_dir) if self.log_dir is not None else None,
            "metrics_port": self.metrics_port,
        }


def _section(data: dict[str, Any], name: str, cls: type) -> Any:
    """Build a config dataclass from a nested section, rejecting unknown keys."""
    raw = data.get(name, {})
    if not isinstance(raw, dict):
        raise ValueError(f"'{name}' must be an object")
    allowed = {f.name for f in dataclasses.fields(cls)}
    unknown = sorted(set(raw) - allowed)
    if unknown:
        raise ValueError(f"Unknown keys in '{name}': {', '.join(unknown)}")
    try:
        return cls(**raw)
    except TypeError as e:
        raise ValueError(f"Invalid '{name}' section: {e}") from e


def config_from_dict(data: dict[str, Any]) -> FleetConfig:
    """
    Build a FleetConfig from parsed JSON.

    Raises:
        ValueError: On unknown keys or invalid values.
    """
    unknown = sorted(set(data) - _TOP_LEVEL_KEYS)
    if unknown:
        raise ValueError(f"Unknown config keys: {', '.join(unknown)}")

    backoff = _section(data, "backoff", BackoffConfig)
    session_raw = data.get("session", {})
    if isinstance(session_raw, dict) and ({"backoff", "registration_secret"} & set(session_raw)):
        raise ValueError("'session' must not contain 'backoff' or 'registration_secret'")
    session = _section(data, "session", SessionConfig)
    session = dataclasses.replace(session, backoff=backoff)

    top = {k: v for k, v in data.items() if k not in ("server", "admission", "backoff", "session")}
    if "credentials_path" in top:
        top["credentials_path"] = Path(top["credentials_path"])
    if top.get("log_dir") is not None:
        top["log_dir"] = Path(top["log_dir"])

    return FleetConfig(
        server=_section(data, "server", ServerConfig),
        admission=_section(data, "admission", AdmissionConfig),
        session=session,
        **top,
    )


def load_config(path: Path) -> FleetConfig:
    """
    Load fleet configuration from a JSON file.

    Raises:
        ValueError: If the file is unreadable, not a JSON object, or invalid.
    """
    try:
        data = orjson.loads(path.read_bytes())
    except OSError as e:
        raise ValueError(f"Cannot read config file {path}: {e}") from e
    except orjson.JSONDecodeError as e:
        raise ValueError(f"Config file {path} is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a JSON object")
    return config_from_dict(data)
