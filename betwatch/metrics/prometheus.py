"""Prometheus metrics collector for betwatch application stats.

The cycle duration Summary is populated from aggregate statistics
(average * count) rather than individual observations, so only _sum and
_count are exported. Use rate(_sum) / rate(_count) in PromQL for the mean.
"""

from typing import TYPE_CHECKING, Any

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Summary,
    generate_latest,
)

if TYPE_CHECKING:
    from betwatch.app import BetWatch


class MetricsCollector:
    """
    Collects application statistics and exposes them as Prometheus metrics.

    Generates fresh metrics on each collection by calling app.get_stats()
    and transforming the results into Prometheus format.
    """

    def __init__(self, app: "BetWatch") -> None:
        self._app = app

    def collect_metrics(self) -> bytes:
        """
        Collect current stats and return Prometheus text format.

        Creates a fresh registry on each call and populates it with
        current application state.
        """
        # Create fresh registry for this scrape
        registry = CollectorRegistry()

        stats = self._app.get_stats()

        self._collect_application_metrics(registry, stats)
        self._collect_store_metrics(registry, stats)
        self._collect_scheduler_metrics(registry, stats)
        self._collect_refresher_metrics(registry, stats)
        self._collect_stream_metrics(registry, stats)

        return generate_latest(registry)

    def _collect_application_metrics(
        self, registry: CollectorRegistry, stats: dict[str, Any]
    ) -> None:
        running = Gauge(
            "betwatch_application_running",
            "Whether the application is running (1) or stopped (0)",
            registry=registry,
        )
        running.set(1 if stats.get("running") else 0)

    def _collect_store_metrics(
        self, registry: CollectorRegistry, stats: dict[str, Any]
    ) -> None:
        """Collect reconciliation store metrics."""
        store_stats = stats.get("store", {})
        if not store_stats:
            return

        tracked = Gauge(
            "betwatch_store_tracked_bets",
            "Number of bets in the projection",
            registry=registry,
        )
        tracked.set(store_stats.get("tracked_bets", 0))

        pending = Gauge(
            "betwatch_store_pending_mutations",
            "Optimistic mutations awaiting durable confirmation",
            registry=registry,
        )
        pending.set(store_stats.get("pending_mutations", 0))

        version = Gauge(
            "betwatch_store_version",
            "Projection version, incremented on every visible change",
            registry=registry,
        )
        version.set(store_stats.get("version", 0))

    def _collect_scheduler_metrics(
        self, registry: CollectorRegistry, stats: dict[str, Any]
    ) -> None:
        """Collect poll scheduler metrics."""
        scheduler_stats = stats.get("scheduler", {})
        if not scheduler_stats:
            return

        active = Gauge(
            "betwatch_scheduler_active",
            "Whether the poll timer is armed (1) or idle (0)",
            registry=registry,
        )
        active.set(1 if scheduler_stats.get("active") else 0)

        interval = Gauge(
            "betwatch_scheduler_interval_seconds",
            "Current poll interval in seconds",
            registry=registry,
        )
        interval.set(scheduler_stats.get("interval_ms", 0) / 1000.0)

        ticks = Counter(
            "betwatch_scheduler_ticks_total",
            "Timer ticks by outcome",
            ["outcome"],
            registry=registry,
        )
        ticks.labels(outcome="total")._value.set(scheduler_stats.get("ticks", 0))
        ticks.labels(outcome="coalesced")._value.set(
            scheduler_stats.get("ticks_coalesced", 0)
        )

        cycles = Counter(
            "betwatch_scheduler_cycles_total",
            "Poll cycles by result",
            ["result"],
            registry=registry,
        )
        cycles_completed = scheduler_stats.get("cycles_completed", 0)
        cycles_discarded = scheduler_stats.get("cycles_discarded", 0)
        cycles_failed = scheduler_stats.get("cycles_failed", 0)
        cycles.labels(result="completed")._value.set(cycles_completed)
        cycles.labels(result="discarded")._value.set(cycles_discarded)
        cycles.labels(result="failed")._value.set(cycles_failed)

        cycle_summary = Summary(
            "betwatch_scheduler_cycle_seconds",
            "Poll cycle duration distribution in seconds",
            registry=registry,
        )

        finished = cycles_completed + cycles_discarded + cycles_failed
        avg_cycle_seconds = scheduler_stats.get("avg_cycle_seconds", 0.0)

        if finished > 0 and avg_cycle_seconds > 0:
            cycle_summary._sum.set(avg_cycle_seconds * finished)
            cycle_summary._count.set(finished)

    def _collect_refresher_metrics(
        self, registry: CollectorRegistry, stats: dict[str, Any]
    ) -> None:
        refresher_stats = stats.get("refresher", {})
        if not refresher_stats:
            return

        refreshes = Counter(
            "betwatch_refresher_snapshots_total",
            "Snapshot refreshes by result",
            ["result"],
            registry=registry,
        )
        refreshes.labels(result="refreshed")._value.set(
            refresher_stats.get("refreshed", 0)
        )
        refreshes.labels(result="failed")._value.set(refresher_stats.get("failed", 0))

        failure_rate = Gauge(
            "betwatch_refresher_failure_rate",
            "Snapshot refresh failure rate (0.0 to 1.0)",
            registry=registry,
        )
        failure_rate.set(refresher_stats.get("failure_rate", 0.0))

    def _collect_stream_metrics(
        self, registry: CollectorRegistry, stats: dict[str, Any]
    ) -> None:
        """Collect change-stream consumer metrics."""
        stream_stats = stats.get("stream", {})
        if not stream_stats:
            return

        running = Gauge(
            "betwatch_stream_running",
            "Whether the change-stream consumer is running (1) or not (0)",
            registry=registry,
        )
        running.set(1 if stream_stats.get("running") else 0)

        events = Counter(
            "betwatch_stream_events_total",
            "Change events by outcome",
            ["outcome"],
            registry=registry,
        )
        outcomes = {
            "received": "events_received",
            "insert_applied": "inserts_applied",
            "remove_applied": "removes_applied",
            "duplicate": "duplicates_ignored",
            "ignored": "events_ignored",
            "failed": "events_failed",
        }
        for outcome, key in outcomes.items():
            events.labels(outcome=outcome)._value.set(stream_stats.get(key, 0))
