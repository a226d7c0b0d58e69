"""Rolling performance metrics, provider health scores and threshold alerts.

Every terminal attempt made by the orchestrator is fed to
``PerformanceMonitor.record``. The monitor folds it into running aggregates,
keeps a bounded history for windowed queries, and raises deduplicated alerts
when a configured threshold is crossed.

Usage:
    from socratic_gateway.core.monitoring import AlertConfig, PerformanceMonitor

    monitor = PerformanceMonitor(AlertConfig.from_settings(settings))
    monitor.subscribe(lambda alert: print(alert.title))
    monitor.record(usage_record)
    print(monitor.get_metrics().total_cost)
"""

from __future__ import annotations

import threading
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from socratic_gateway.core.constants import (
    ACKNOWLEDGED_ALERT_RETENTION_HOURS,
    ALERT_DEDUP_WINDOW_SECONDS,
    DAILY_COST_RETENTION_DAYS,
    HISTORY_RETENTION_DAYS,
    MAX_ALERTS,
    MAX_HISTORY_SIZE,
    PRUNE_INTERVAL_SECONDS,
)
from socratic_gateway.core.llm.models import UsageRecord, utcnow
from socratic_gateway.core.logging import LoggerProtocol, default_logger

if TYPE_CHECKING:
    from socratic_gateway.core.config import Settings

MAX_ERROR_RECORDS = 100

# Health score weights. Success rate scales the whole score.
LATENCY_WEIGHT = 0.3
RECENCY_WEIGHT = 0.1
LATENCY_FLOOR_MS = 1_000.0
LATENCY_SPAN_MS = 10_000.0
RECENCY_SPAN_HOURS = 24.0

TIME_RANGES: dict[str, timedelta] = {
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(days=7),
}

AlertListener = Callable[["Alert"], None]


class AlertType(str, Enum):
    COST = "cost"
    PERFORMANCE = "performance"
    USAGE = "usage"
    ERROR = "error"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class Alert:
    """A raised threshold alert.

    Attributes:
        id: Unique alert identifier
        type: Alert category
        severity: How urgent the alert is
        title: Short fixed title; together with ``type`` it is the dedup key
        message: Human-readable detail with the observed value
        timestamp: When the alert was raised
        data: Observed value and threshold
        acknowledged: Set by ``PerformanceMonitor.acknowledge``
    """

    id: str
    type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    timestamp: datetime
    data: dict[str, Any] = field(default_factory=dict)
    acknowledged: bool = False


@dataclass(frozen=True)
class AlertConfig:
    """Alert thresholds.

    Rate rules (success and error rate) only fire once at least
    ``min_requests_for_rate_alerts`` attempts have been recorded, so a single
    early failure does not page anyone.
    """

    daily_cost: float = 5.00
    hourly_cost: float = 0.50
    max_latency_ms: float = 30_000
    min_success_rate: float = 0.95
    max_error_rate: float = 0.05
    max_tokens_per_hour: int = 100_000
    max_requests_per_minute: int = 60
    min_requests_for_rate_alerts: int = 5
    enable_cost_alerts: bool = True
    enable_performance_alerts: bool = True
    enable_usage_alerts: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> AlertConfig:
        return cls(
            daily_cost=settings.alert_daily_cost,
            hourly_cost=settings.alert_hourly_cost,
            max_latency_ms=settings.alert_max_latency_ms,
            min_success_rate=settings.alert_min_success_rate,
            max_error_rate=settings.alert_max_error_rate,
            max_tokens_per_hour=settings.alert_max_tokens_per_hour,
            max_requests_per_minute=settings.alert_max_requests_per_minute,
        )


@dataclass(frozen=True)
class ProviderHealth:
    """Point-in-time health of one provider; ``health_score`` is 0-100."""

    provider: str
    requests: int
    success_rate: float
    avg_latency_ms: float
    total_cost: float
    tokens_used: int
    last_used: datetime
    health_score: float


@dataclass
class _ProviderStats:
    requests: int = 0
    successes: int = 0
    avg_latency_ms: float = 0.0
    total_cost: float = 0.0
    tokens_used: int = 0
    last_used: datetime | None = None

    def add(self, record: UsageRecord) -> None:
        previous = self.requests
        self.requests += 1
        if record.success:
            self.successes += 1
        self.avg_latency_ms = (self.avg_latency_ms * previous + record.latency_ms) / self.requests
        self.total_cost += record.cost
        self.tokens_used += record.tokens.total
        if self.last_used is None or record.timestamp > self.last_used:
            self.last_used = record.timestamp

    def score(self, now: datetime) -> float:
        # Smoothed so an all-failure provider keeps decreasing towards 0.
        success = (self.successes + 1) / (self.requests + 1)
        latency_penalty = min(
            max(self.avg_latency_ms - LATENCY_FLOOR_MS, 0.0) / LATENCY_SPAN_MS, 1.0
        )
        idle_hours = max((now - self.last_used).total_seconds(), 0.0) / 3600
        recency_penalty = min(idle_hours / RECENCY_SPAN_HOURS, 1.0)
        score = (
            100
            * success
            * (1 - latency_penalty * LATENCY_WEIGHT)
            * (1 - recency_penalty * RECENCY_WEIGHT)
        )
        return max(0.0, min(100.0, score))

    def snapshot(self, provider: str, now: datetime) -> ProviderHealth:
        return ProviderHealth(
            provider=provider,
            requests=self.requests,
            success_rate=self.successes / self.requests if self.requests else 1.0,
            avg_latency_ms=self.avg_latency_ms,
            total_cost=self.total_cost,
            tokens_used=self.tokens_used,
            last_used=self.last_used,
            health_score=self.score(now),
        )


@dataclass(frozen=True)
class MetricsSnapshot:
    """Aggregate view returned by ``PerformanceMonitor.get_metrics``."""

    total_requests: int
    successful_requests: int
    failed_requests: int
    avg_latency_ms: float
    min_latency_ms: float | None
    max_latency_ms: float
    total_tokens: int
    input_tokens: int
    output_tokens: int
    avg_tokens_per_request: float
    total_cost: float
    avg_cost_per_request: float
    cost_by_provider: dict[str, float]
    daily_costs: dict[str, float]
    error_rate: float
    errors_by_type: dict[str, int]
    last_errors: list[dict[str, Any]]
    provider_usage: dict[str, ProviderHealth]
    fallback_count: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class PerformanceMonitor:
    """Records attempts, tracks provider health and raises alerts.

    All state lives in this instance and is guarded by one lock, so a single
    monitor can be shared between threads. Alert listeners are called after
    the lock is released.

    Args:
        config: Alert thresholds (defaults to AlertConfig())
        clock: Returns the current UTC time; tests inject a fake
        logger: Optional logger; raised alerts are logged as warnings
        max_history: Capacity of the attempt history ring buffer
    """

    def __init__(
        self,
        config: AlertConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
        logger: LoggerProtocol | None = None,
        max_history: int = MAX_HISTORY_SIZE,
    ) -> None:
        self.config = config or AlertConfig()
        self._clock = clock
        self._logger = logger or default_logger(__name__)
        self._max_history = max_history
        self._lock = threading.Lock()
        self._listeners: list[AlertListener] = []
        self._init_state()

    def _init_state(self) -> None:
        self._history: deque[UsageRecord] = deque(maxlen=self._max_history)
        self._alerts: list[Alert] = []
        self._providers: dict[str, _ProviderStats] = {}
        self._last_errors: deque[dict[str, Any]] = deque(maxlen=MAX_ERROR_RECORDS)
        self._total_requests = 0
        self._successful = 0
        self._failed = 0
        self._avg_latency = 0.0
        self._min_latency: float | None = None
        self._max_latency = 0.0
        self._input_tokens = 0
        self._output_tokens = 0
        self._total_cost = 0.0
        self._cost_by_provider: dict[str, float] = {}
        self._daily_costs: dict[str, float] = {}
        self._errors_by_type: dict[str, int] = {}
        self._fallback_count = 0
        self._last_prune = self._clock()

    def record(self, record: UsageRecord) -> None:
        """
        Fold one terminal attempt into the metrics and evaluate alert rules.

        Args:
            record: The attempt outcome
        """
        now = self._clock()
        with self._lock:
            self._accumulate(record)
            raised = self._check_alerts(now)
            if (now - self._last_prune).total_seconds() >= PRUNE_INTERVAL_SECONDS:
                self._prune(now)

        for alert in raised:
            self._notify(alert)

    def _accumulate(self, record: UsageRecord) -> None:
        self._total_requests += 1
        if record.success:
            self._successful += 1
            if record.fallback:
                self._fallback_count += 1
        else:
            self._failed += 1
            error_type = record.error_type or "unknown"
            self._errors_by_type[error_type] = self._errors_by_type.get(error_type, 0) + 1
            self._last_errors.appendleft(
                {
                    "timestamp": record.timestamp,
                    "provider": record.provider,
                    "error_type": error_type,
                    "message": record.error_message or "",
                    "cost": record.cost,
                }
            )

        n = self._total_requests
        self._avg_latency = (self._avg_latency * (n - 1) + record.latency_ms) / n
        if self._min_latency is None or record.latency_ms < self._min_latency:
            self._min_latency = record.latency_ms
        self._max_latency = max(self._max_latency, record.latency_ms)

        self._input_tokens += record.tokens.input
        self._output_tokens += record.tokens.output

        self._total_cost += record.cost
        self._cost_by_provider[record.provider] = (
            self._cost_by_provider.get(record.provider, 0.0) + record.cost
        )
        day = record.timestamp.date().isoformat()
        self._daily_costs[day] = self._daily_costs.get(day, 0.0) + record.cost

        self._providers.setdefault(record.provider, _ProviderStats()).add(record)
        self._history.append(record)

    def _check_alerts(self, now: datetime) -> list[Alert]:
        cfg = self.config
        raised: list[Alert] = []

        def emit(alert: Alert | None) -> None:
            if alert is not None:
                raised.append(alert)

        if cfg.enable_cost_alerts:
            daily_cost = self._daily_costs.get(now.date().isoformat(), 0.0)
            if daily_cost > cfg.daily_cost:
                emit(
                    self._create_alert(
                        now,
                        AlertType.COST,
                        AlertSeverity.HIGH,
                        "Daily cost exceeded",
                        f"Cost today ${daily_cost:.4f} exceeds threshold ${cfg.daily_cost}",
                        {"daily_cost": daily_cost, "threshold": cfg.daily_cost},
                    )
                )
            hourly_cost = sum(r.cost for r in self._since(now - timedelta(hours=1)))
            if hourly_cost > cfg.hourly_cost:
                emit(
                    self._create_alert(
                        now,
                        AlertType.COST,
                        AlertSeverity.MEDIUM,
                        "Hourly cost exceeded",
                        f"Cost in the last hour ${hourly_cost:.4f} exceeds threshold ${cfg.hourly_cost}",
                        {"hourly_cost": hourly_cost, "threshold": cfg.hourly_cost},
                    )
                )

        if cfg.enable_performance_alerts:
            if self._avg_latency > cfg.max_latency_ms:
                emit(
                    self._create_alert(
                        now,
                        AlertType.PERFORMANCE,
                        AlertSeverity.MEDIUM,
                        "Response time too high",
                        f"Average latency {self._avg_latency:.0f}ms exceeds threshold {cfg.max_latency_ms:.0f}ms",
                        {"avg_latency_ms": self._avg_latency, "threshold": cfg.max_latency_ms},
                    )
                )
            if self._total_requests >= cfg.min_requests_for_rate_alerts:
                success_rate = self._successful / self._total_requests
                if success_rate < cfg.min_success_rate:
                    emit(
                        self._create_alert(
                            now,
                            AlertType.PERFORMANCE,
                            AlertSeverity.HIGH,
                            "Success rate too low",
                            f"Success rate {success_rate:.2%} is below threshold {cfg.min_success_rate:.2%}",
                            {"success_rate": success_rate, "threshold": cfg.min_success_rate},
                        )
                    )
                error_rate = self._failed / self._total_requests
                if error_rate > cfg.max_error_rate:
                    emit(
                        self._create_alert(
                            now,
                            AlertType.ERROR,
                            AlertSeverity.HIGH,
                            "Error rate too high",
                            f"Error rate {error_rate:.2%} exceeds threshold {cfg.max_error_rate:.2%}",
                            {"error_rate": error_rate, "threshold": cfg.max_error_rate},
                        )
                    )

        if cfg.enable_usage_alerts:
            hourly_tokens = sum(r.tokens.total for r in self._since(now - timedelta(hours=1)))
            if hourly_tokens > cfg.max_tokens_per_hour:
                emit(
                    self._create_alert(
                        now,
                        AlertType.USAGE,
                        AlertSeverity.MEDIUM,
                        "Hourly token usage too high",
                        f"{hourly_tokens} tokens used in the last hour, threshold {cfg.max_tokens_per_hour}",
                        {"hourly_tokens": hourly_tokens, "threshold": cfg.max_tokens_per_hour},
                    )
                )
            per_minute = sum(1 for _ in self._since(now - timedelta(minutes=1)))
            if per_minute > cfg.max_requests_per_minute:
                emit(
                    self._create_alert(
                        now,
                        AlertType.USAGE,
                        AlertSeverity.MEDIUM,
                        "Request rate too high",
                        f"{per_minute} requests in the last minute, threshold {cfg.max_requests_per_minute}",
                        {"requests_per_minute": per_minute, "threshold": cfg.max_requests_per_minute},
                    )
                )

        return raised

    def _since(self, start: datetime):
        return (r for r in self._history if r.timestamp > start)

    def _create_alert(
        self,
        now: datetime,
        alert_type: AlertType,
        severity: AlertSeverity,
        title: str,
        message: str,
        data: dict[str, Any],
    ) -> Alert | None:
        window = timedelta(seconds=ALERT_DEDUP_WINDOW_SECONDS)
        for existing in self._alerts:
            if (
                not existing.acknowledged
                and existing.type is alert_type
                and existing.title == title
                and now - existing.timestamp < window
            ):
                return None

        alert = Alert(
            id=f"alert_{uuid.uuid4().hex[:12]}",
            type=alert_type,
            severity=severity,
            title=title,
            message=message,
            timestamp=now,
            data=data,
        )
        self._alerts.insert(0, alert)
        del self._alerts[MAX_ALERTS:]
        return alert

    def _notify(self, alert: Alert) -> None:
        self._logger.warning(
            f"[{alert.severity.value}] {alert.title}: {alert.message}",
            alert_id=alert.id,
            alert_type=alert.type.value,
        )
        for listener in list(self._listeners):
            try:
                listener(alert)
            except Exception as e:
                self._logger.error(
                    f"Alert listener {listener!r} failed: {e}", alert_id=alert.id
                )

    def subscribe(self, listener: AlertListener) -> Callable[[], None]:
        """
        Register a callable invoked with every newly raised Alert.

        Returns:
            A function that removes the listener again
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def get_metrics(self) -> MetricsSnapshot:
        now = self._clock()
        with self._lock:
            n = self._total_requests
            total_tokens = self._input_tokens + self._output_tokens
            return MetricsSnapshot(
                total_requests=n,
                successful_requests=self._successful,
                failed_requests=self._failed,
                avg_latency_ms=self._avg_latency,
                min_latency_ms=self._min_latency,
                max_latency_ms=self._max_latency,
                total_tokens=total_tokens,
                input_tokens=self._input_tokens,
                output_tokens=self._output_tokens,
                avg_tokens_per_request=total_tokens / n if n else 0.0,
                total_cost=self._total_cost,
                avg_cost_per_request=self._total_cost / n if n else 0.0,
                cost_by_provider=dict(self._cost_by_provider),
                daily_costs=dict(self._daily_costs),
                error_rate=self._failed / n if n else 0.0,
                errors_by_type=dict(self._errors_by_type),
                last_errors=list(self._last_errors),
                provider_usage={
                    pid: stats.snapshot(pid, now) for pid, stats in self._providers.items()
                },
                fallback_count=self._fallback_count,
            )

    def provider_health(self, provider_id: str) -> ProviderHealth | None:
        """Health of one provider scored at the current time, or None if never recorded."""
        now = self._clock()
        with self._lock:
            stats = self._providers.get(provider_id)
            return stats.snapshot(provider_id, now) if stats else None

    def get_alerts(self, include_acknowledged: bool = False) -> list[Alert]:
        """Alerts newest first; copies, so callers cannot mutate monitor state."""
        with self._lock:
            return [
                replace(a, data=dict(a.data))
                for a in self._alerts
                if include_acknowledged or not a.acknowledged
            ]

    def acknowledge(self, alert_id: str) -> bool:
        """
        Mark an alert as acknowledged.

        Returns:
            True if the alert exists
        """
        with self._lock:
            for alert in self._alerts:
                if alert.id == alert_id:
                    alert.acknowledged = True
                    return True
        return False

    def report(self, time_range: str = "day") -> dict[str, Any]:
        """
        Aggregate the history over a trailing window.

        Args:
            time_range: One of 'hour', 'day' or 'week'

        Returns:
            Dictionary with totals plus per-provider and per-error breakdowns

        Raises:
            ValueError: For an unknown time range
        """
        if time_range not in TIME_RANGES:
            raise ValueError(
                f"Invalid time range '{time_range}'. Must be one of: {', '.join(TIME_RANGES)}"
            )
        end = self._clock()
        start = end - TIME_RANGES[time_range]
        with self._lock:
            window = [r for r in self._history if r.timestamp >= start]

        total = len(window)
        successful = sum(1 for r in window if r.success)
        total_cost = sum(r.cost for r in window)
        total_tokens = sum(r.tokens.total for r in window)

        providers: dict[str, dict[str, Any]] = {}
        errors: dict[str, int] = {}
        for r in window:
            entry = providers.setdefault(
                r.provider, {"requests": 0, "successes": 0, "cost": 0.0, "tokens": 0}
            )
            entry["requests"] += 1
            entry["successes"] += int(r.success)
            entry["cost"] += r.cost
            entry["tokens"] += r.tokens.total
            if not r.success:
                key = r.error_type or "unknown"
                errors[key] = errors.get(key, 0) + 1
        for entry in providers.values():
            entry["success_rate"] = entry.pop("successes") / entry["requests"]

        return {
            "time_range": time_range,
            "start_time": start,
            "end_time": end,
            "total_requests": total,
            "successful_requests": successful,
            "success_rate": successful / total if total else 0.0,
            "total_cost": total_cost,
            "avg_cost_per_request": total_cost / total if total else 0.0,
            "total_tokens": total_tokens,
            "avg_tokens_per_request": total_tokens / total if total else 0.0,
            "avg_latency_ms": sum(r.latency_ms for r in window) / total if total else 0.0,
            "provider_breakdown": providers,
            "error_breakdown": errors,
        }

    def prune(self) -> None:
        """Drop expired history, old daily costs and long-acknowledged alerts."""
        now = self._clock()
        with self._lock:
            self._prune(now)

    def _prune(self, now: datetime) -> None:
        history_cutoff = now - timedelta(days=HISTORY_RETENTION_DAYS)
        kept = [r for r in self._history if r.timestamp > history_cutoff]
        self._history = deque(kept, maxlen=self._max_history)

        day_cutoff = (now - timedelta(days=DAILY_COST_RETENTION_DAYS)).date().isoformat()
        for day in [d for d in self._daily_costs if d < day_cutoff]:
            del self._daily_costs[day]

        alert_cutoff = now - timedelta(hours=ACKNOWLEDGED_ALERT_RETENTION_HOURS)
        self._alerts = [
            a for a in self._alerts if not a.acknowledged or a.timestamp > alert_cutoff
        ]
        self._last_prune = now

    def reset(self) -> None:
        """Clear all metrics, history and alerts. Listeners stay subscribed."""
        with self._lock:
            self._init_state()
