"""Session fleet connectors.

Admission pacing, reconnect backoff, the per-identity state machine and
the supervisor that owns them.
"""

from sessionfleet.connectors.admission import (
    AdmissionConfig,
    AdmissionController,
    ThrottleSignalKind,
)
from sessionfleet.connectors.backoff import (
    BackoffConfig,
    BackoffState,
    compute_backoff_delay,
)
from sessionfleet.connectors.credentials import CredentialStore, CredentialStoreError
from sessionfleet.connectors.session import ConnectionStateMachine
from sessionfleet.connectors.signals import AuthSignal, SignalClassifier, SignalVocabulary
from sessionfleet.connectors.supervisor import FleetSupervisor
from sessionfleet.connectors.types import (
    FleetMetrics,
    Identity,
    ServerConfig,
    SessionConfig,
    SessionMetrics,
    SessionState,
)

__all__ = [
    "AdmissionConfig",
    "AdmissionController",
    "AuthSignal",
    "BackoffConfig",
    "BackoffState",
    "ConnectionStateMachine",
    "CredentialStore",
    "CredentialStoreError",
    "FleetMetrics",
    "FleetSupervisor",
    "Identity",
    "ServerConfig",
    "SessionConfig",
    "SessionMetrics",
    "SessionState",
    "SignalClassifier",
    "SignalVocabulary",
    "ThrottleSignalKind",
    "compute_backoff_delay",
]
