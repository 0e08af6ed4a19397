"""
Prometheus metrics exporter for sessionfleet.

Exports fleet-level metrics only. Identity names are never used as labels:
a fleet of N identities must not create N time series per metric.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from prometheus_client import Counter, Gauge
from prometheus_client.registry import CollectorRegistry

if TYPE_CHECKING:
    from sessionfleet.connectors.admission import AdmissionController
    from sessionfleet.connectors.types import FleetMetrics


# Labels that would create one series per identity or per server address
FORBIDDEN_LABELS = frozenset(
    {
        "identity",
        "name",
        "bot",
        "host",
        "ip",
        "secret",
    }
)


class MetricsExporter:
    """
    Prometheus metrics exporter for the fleet supervisor.

    Metric families:
    - sessionfleet_sessions_*  : fleet membership gauges
    - sessionfleet_admission_* : admission controller pacing
    - sessionfleet_session_*   : aggregated per-session counters

    Usage:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)
        exporter.update(fleet_metrics=supervisor.get_metrics(), admission=supervisor.admission)
        # generate_latest(registry) -> bytes for /metrics endpoint
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        """
        Initialize metrics exporter.

        Args:
            registry: Prometheus CollectorRegistry. If None, a fresh one is created.
        """
        self._registry = registry or CollectorRegistry()

        # === Fleet gauges (sessionfleet_sessions_*) ===
        self._sessions_total = Gauge(
            "sessionfleet_sessions_total",
            "Configured number of identities in the fleet",
            registry=self._registry,
        )
        self._sessions_launched = Gauge(
            "sessionfleet_sessions_launched",
            "Identities launched so far",
            registry=self._registry,
        )
        self._sessions_active = Gauge(
            "sessionfleet_sessions_active",
            "Identities currently in ACTIVE state",
            registry=self._registry,
        )
        self._sessions_failed = Gauge(
            "sessionfleet_sessions_failed",
            "Identities that exhausted their reconnect budget",
            registry=self._registry,
        )

        # === Admission metrics (sessionfleet_admission_*) ===
        self._admission_current_delay_ms = Gauge(
            "sessionfleet_admission_current_delay_ms",
            "Current minimum spacing between connection attempts in milliseconds",
            registry=self._registry,
        )
        self._admission_clearances = Counter(
            "sessionfleet_admission_clearances",
            "Total connection attempts cleared by the admission controller",
            registry=self._registry,
        )
        self._admission_signals = Counter(
            "sessionfleet_admission_throttle_signals",
            "Total throttle signals reported, by kind",
            ["kind"],
            registry=self._registry,
        )
        # Export both series from the first scrape
        for kind in ("soft", "explicit"):
            self._admission_signals.labels(kind=kind)

        # === Session counters (sessionfleet_session_*) ===
        self._session_disconnects = Counter(
            "sessionfleet_session_disconnects",
            "Total session disconnects across the fleet",
            registry=self._registry,
        )
        self._session_reconnect_attempts = Counter(
            "sessionfleet_session_reconnect_attempts",
            "Total reconnect attempts scheduled across the fleet",
            registry=self._registry,
        )
        self._session_throttle_signals = Counter(
            "sessionfleet_session_throttle_signals",
            "Total throttle signals observed by sessions",
            registry=self._registry,
        )

        # Track last seen values for counter increments (counters are monotonic)
        self._last_clearances = 0
        self._last_signals_soft = 0
        self._last_signals_explicit = 0
        self._last_disconnects = 0
        self._last_reconnect_attempts = 0
        self._last_throttle_signals = 0

    @property
    def registry(self) -> CollectorRegistry:
        """Get the Prometheus CollectorRegistry."""
        return self._registry

    def update(
        self,
        fleet_metrics: FleetMetrics | None = None,
        admission: AdmissionController | None = None,
    ) -> None:
        """
        Sync component state into Prometheus metrics.

        Call before every scrape or on a timer.

        Args:
            fleet_metrics: Aggregated fleet metrics from the supervisor.
            admission: Admission controller for pacing counters.
        """
        if fleet_metrics is not None:
            self._update_fleet_metrics(fleet_metrics)

        if admission is not None:
            self._update_admission_metrics(admission)

    @staticmethod
    def _delta(current: int, last: int) -> int:
        return current - last if current > last else 0

    def _update_fleet_metrics(self, fm: FleetMetrics) -> None:
        """Update fleet gauges and aggregated session counters."""
        # Gauges: set directly
        self._sessions_total.set(fm.total)
        self._sessions_launched.set(fm.launched)
        self._sessions_active.set(fm.active)
        self._sessions_failed.set(fm.failed)
        self._admission_current_delay_ms.set(fm.current_delay_ms)

        # Counters: increment by delta since last update
        delta = self._delta(fm.total_disconnects, self._last_disconnects)
        if delta:
            self._session_disconnects.inc(delta)
        self._last_disconnects = fm.total_disconnects

        delta = self._delta(fm.total_reconnect_attempts, self._last_reconnect_attempts)
        if delta:
            self._session_reconnect_attempts.inc(delta)
        self._last_reconnect_attempts = fm.total_reconnect_attempts

        delta = self._delta(fm.total_throttle_signals, self._last_throttle_signals)
        if delta:
            self._session_throttle_signals.inc(delta)
        self._last_throttle_signals = fm.total_throttle_signals

    def _update_admission_metrics(self, admission: AdmissionController) -> None:
        """Update admission pacing metrics."""
        status = admission.get_status()
        self._admission_current_delay_ms.set(int(status["current_delay_ms"]))

        clearances = int(status["clearances_granted"])
        delta = self._delta(clearances, self._last_clearances)
        if delta:
            self._admission_clearances.inc(delta)
        self._last_clearances = clearances

        soft = int(status["signals_soft"])
        delta = self._delta(soft, self._last_signals_soft)
        if delta:
            self._admission_signals.labels(kind="soft").inc(delta)
        self._last_signals_soft = soft

        explicit = int(status["signals_explicit"])
        delta = self._delta(explicit, self._last_signals_explicit)
        if delta:
            self._admission_signals.labels(kind="explicit").inc(delta)
        self._last_signals_explicit = explicit

    def reset_counter_tracking(self) -> None:
        """
        Reset internal counter tracking.

        Use when components are replaced or for testing.
        Does NOT reset the Prometheus counters themselves.
        """
        self._last_clearances = 0
        self._last_signals_soft = 0
        self._last_signals_explicit = 0
        self._last_disconnects = 0
        self._last_reconnect_attempts = 0
        self._last_throttle_signals = 0


# Metric names that dashboards and alerts rely on
# Note: Counters are exported with _total suffix by prometheus_client
REQUIRED_METRIC_NAMES: frozenset[str] = frozenset(
    {
        # Fleet (Gauges)
        "sessionfleet_sessions_total",
        "sessionfleet_sessions_launched",
        "sessionfleet_sessions_active",
        "sessionfleet_sessions_failed",
        # Admission (Gauge)
        "sessionfleet_admission_current_delay_ms",
        # Admission (Counters - exported with _total suffix)
        "sessionfleet_admission_clearances_total",
        "sessionfleet_admission_throttle_signals_total",
        # Session (Counters - exported with _total suffix)
        "sessionfleet_session_disconnects_total",
        "sessionfleet_session_reconnect_attempts_total",
        "sessionfleet_session_throttle_signals_total",
    }
)
