"""Prometheus-backed metrics hooks for the trading cycle and dispatcher."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import REGISTRY, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

METRIC_PREFIX = "autoperp_"


@dataclass
class CycleStats:
    instance_id: str
    status: str
    proposals: int
    approved: int
    executed: int
    auto_exits: int
    duration_seconds: float


class MetricsRecorder:
    """
    Expose per-instance cycle stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors; every
    series carries an ``instance`` label so several traders share one exporter.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        """Ensure only one MetricsRecorder instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._last_cycle_stats: Dict[str, CycleStats] = {}
        self._last_no_trade_reason: Dict[str, str] = {}

        if not self._enabled:
            self._cycle_summary = None
            self._cycle_counter = None
            self._cycle_gauge = None
            self._no_trade_counter = None
            self._rejections_counter = None
            self._equity_gauge = None
            self._positions_gauge = None
            self._breaker_gauge = None
            self._breaker_trips_counter = None
            self._auto_exit_counter = None
            self._proposal_latency = None
            return

        self._cycle_summary = Summary(
            f"{METRIC_PREFIX}cycle_duration_seconds",
            "Duration of a full trading cycle",
            labelnames=("instance",),
        )
        self._cycle_counter = Counter(
            f"{METRIC_PREFIX}cycle_total",
            "Total trading cycles by status",
            labelnames=("instance", "status"),
        )
        self._cycle_gauge = Gauge(
            f"{METRIC_PREFIX}cycle_stage_count",
            "Per-cycle counts (proposals, approved, executed, auto_exits)",
            labelnames=("instance", "stage"),
        )
        self._no_trade_counter = Counter(
            f"{METRIC_PREFIX}no_trade_total",
            "Cycles that placed no orders, grouped by reason",
            labelnames=("instance", "reason"),
        )
        self._rejections_counter = Counter(
            f"{METRIC_PREFIX}intent_rejections_total",
            "Intents rejected by validation",
            labelnames=("instance", "reason"),
        )
        self._equity_gauge = Gauge(
            f"{METRIC_PREFIX}account_equity_usd",
            "Total account equity",
            labelnames=("instance",),
        )
        self._positions_gauge = Gauge(
            f"{METRIC_PREFIX}open_positions",
            "Number of live positions",
            labelnames=("instance",),
        )
        self._breaker_gauge = Gauge(
            f"{METRIC_PREFIX}circuit_breaker_state",
            "Loss circuit breaker state (0=trading, 1=backoff)",
            labelnames=("instance",),
        )
        self._breaker_trips_counter = Counter(
            f"{METRIC_PREFIX}stop_loss_events_total",
            "Closed positions classified as stop-loss",
            labelnames=("instance",),
        )
        self._auto_exit_counter = Counter(
            f"{METRIC_PREFIX}auto_exits_total",
            "Profit/loss controller closes",
            labelnames=("instance", "kind", "outcome"),
        )
        self._proposal_latency = Summary(
            f"{METRIC_PREFIX}proposal_latency_seconds",
            "Latency of proposal source calls",
            labelnames=("instance",),
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None:
            for collector in list(REGISTRY._collector_to_names):
                names = REGISTRY._collector_to_names.get(collector, set())
                if any(name.startswith(METRIC_PREFIX) for name in names):
                    REGISTRY.unregister(collector)

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return

        # Auto-retry on port conflict
        ports_to_try = [self._port, self._port + 1, self._port + 2, self._port + 3]
        last_error = None

        for port in ports_to_try:
            try:
                start_http_server(port)
                self._started = True
                if port != self._port:
                    logger.warning(
                        "Port %s in use, successfully bound to port %s instead",
                        self._port, port
                    )
                    self._port = port
                logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)
                return
            except OSError as exc:
                last_error = exc
                continue

        self._enabled = False
        logger.error(
            "Failed to start metrics exporter after trying ports %s: %s",
            ports_to_try, last_error
        )

    def is_enabled(self) -> bool:
        return self._enabled

    def observe_cycle(self, stats: CycleStats) -> None:
        if self._enabled:
            labels = {"instance": stats.instance_id}
            self._cycle_summary.labels(**labels).observe(stats.duration_seconds)
            self._cycle_counter.labels(status=stats.status, **labels).inc()
            self._cycle_gauge.labels(stage="proposals", **labels).set(stats.proposals)
            self._cycle_gauge.labels(stage="approved", **labels).set(stats.approved)
            self._cycle_gauge.labels(stage="executed", **labels).set(stats.executed)
            self._cycle_gauge.labels(stage="auto_exits", **labels).set(stats.auto_exits)

        self._last_cycle_stats[stats.instance_id] = stats

    def record_no_trade_reason(self, instance_id: str, reason: str) -> None:
        self._last_no_trade_reason[instance_id] = reason
        if self._enabled:
            self._no_trade_counter.labels(instance=instance_id, reason=reason).inc()

    def record_rejection(self, instance_id: str, reason: str) -> None:
        if self._enabled:
            self._rejections_counter.labels(
                instance=instance_id, reason=self._normalize_rejection_reason(reason)
            ).inc()

    def record_account(self, instance_id: str, equity: float, open_positions: int) -> None:
        if self._enabled:
            self._equity_gauge.labels(instance=instance_id).set(equity)
            self._positions_gauge.labels(instance=instance_id).set(max(open_positions, 0))

    def record_breaker_state(self, instance_id: str, active: bool) -> None:
        if self._enabled:
            self._breaker_gauge.labels(instance=instance_id).set(1 if active else 0)

    def record_stop_loss_events(self, instance_id: str, count: int) -> None:
        if self._enabled and count > 0:
            self._breaker_trips_counter.labels(instance=instance_id).inc(count)

    def record_auto_exit(self, instance_id: str, kind: str, success: bool) -> None:
        if self._enabled:
            self._auto_exit_counter.labels(
                instance=instance_id, kind=kind, outcome="success" if success else "failed"
            ).inc()

    def record_proposal_latency(self, instance_id: str, latency_ms: float) -> None:
        if self._enabled:
            self._proposal_latency.labels(instance=instance_id).observe(latency_ms / 1000.0)

    def last_cycle(self, instance_id: str) -> Optional[CycleStats]:
        return self._last_cycle_stats.get(instance_id)

    def last_no_trade_reason(self, instance_id: str) -> Optional[str]:
        return self._last_no_trade_reason.get(instance_id)

    @staticmethod
    def _normalize_rejection_reason(reason: str) -> str:
        """Normalize rejection reasons to keep label cardinality bounded"""
        reason_lower = reason.lower()

        if "leverage" in reason_lower:
            return "leverage"
        elif "notional" in reason_lower or "size" in reason_lower:
            return "size_constraint"
        elif "risk:reward" in reason_lower or "risk/reward" in reason_lower:
            return "risk_reward"
        elif "stop" in reason_lower or "take_profit" in reason_lower or "price" in reason_lower:
            return "price_levels"
        elif "invalidation" in reason_lower:
            return "invalidation"
        elif "action" in reason_lower or "mode" in reason_lower:
            return "action_not_allowed"
        else:
            return "other"


__all__ = ["MetricsRecorder", "CycleStats"]
