"""
Performance Monitoring for the Watchlist Screening System

This module provides:
- Operation timing context manager for slow operation detection
- Prometheus metrics for searches, refresh cycles and the served generation
- Thread-safe per-operation statistics

Usage:
    from monitoring import operation_timer, get_metrics

    with operation_timer("search"):
        results = screener.search(profile)
"""

import logging
import time
import threading
from contextlib import contextmanager
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

from prometheus_client import Counter, Gauge, Histogram

from config_manager import MonitoringConfig

logger = logging.getLogger(__name__)

_config = MonitoringConfig()


def configure_monitoring(config: Optional[MonitoringConfig] = None) -> None:
    """Replace the active monitoring settings"""
    global _config
    _config = config or MonitoringConfig()


# ============================================
# PROMETHEUS METRICS
# ============================================

operation_duration = Histogram(
    'watchlist_operation_duration_seconds',
    'Duration of screening operations in seconds',
    ['operation', 'status'],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 30.0, 120.0)
)

refresh_cycles_total = Counter(
    'watchlist_refresh_cycles_total',
    'Refresh cycles by outcome',
    ['outcome']
)

source_fetch_failures_total = Counter(
    'watchlist_source_fetch_failures_total',
    'Failed source fetches',
    ['source']
)

records_skipped_total = Counter(
    'watchlist_records_skipped_total',
    'Malformed records skipped while building',
    ['source']
)

current_generation = Gauge(
    'watchlist_current_generation',
    'Generation number currently served'
)

current_entities = Gauge(
    'watchlist_current_entities',
    'Entities in the generation currently served'
)


# ============================================
# OPERATION STATS TRACKING
# ============================================

RECENT_WINDOW = 200


@dataclass
class OperationStats:
    """Running totals plus a window of recent durations for one operation"""
    operation: str
    count: int = 0
    total_time_ms: float = 0.0
    max_time_ms: float = 0.0
    errors: int = 0
    slow_operations: int = 0
    last_executed: Optional[datetime] = None
    recent_ms: Deque[float] = field(default_factory=lambda: deque(maxlen=RECENT_WINDOW))

    @property
    def avg_time_ms(self) -> float:
        return self.total_time_ms / self.count if self.count > 0 else 0.0

    @property
    def p95_time_ms(self) -> float:
        """95th percentile over the recent window"""
        if not self.recent_ms:
            return 0.0
        ordered = sorted(self.recent_ms)
        return ordered[min(len(ordered) - 1, int(len(ordered) * 0.95))]

    def record(self, duration_ms: float, error: bool = False, slow: bool = False) -> None:
        self.count += 1
        self.total_time_ms += duration_ms
        self.max_time_ms = max(self.max_time_ms, duration_ms)
        self.recent_ms.append(duration_ms)
        self.last_executed = datetime.now(timezone.utc)
        self.errors += int(error)
        self.slow_operations += int(slow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'operation': self.operation,
            'count': self.count,
            'avg_time_ms': round(self.avg_time_ms, 2),
            'p95_time_ms': round(self.p95_time_ms, 2),
            'max_time_ms': round(self.max_time_ms, 2),
            'errors': self.errors,
            'slow_operations': self.slow_operations,
            'last_executed': self.last_executed.isoformat() if self.last_executed else None
        }


class OperationStatsCollector:
    """Thread-safe registry of OperationStats keyed by operation name"""

    def __init__(self):
        self._stats: Dict[str, OperationStats] = {}
        self._lock = threading.Lock()
        self._since = datetime.now(timezone.utc)

    def record(self, operation: str, duration_ms: float, error: bool = False, slow: bool = False) -> None:
        with self._lock:
            stats = self._stats.setdefault(operation, OperationStats(operation=operation))
            stats.record(duration_ms, error, slow)

    def snapshot(self, operation: Optional[str] = None) -> Dict[str, Any]:
        with self._lock:
            if operation:
                stats = self._stats.get(operation)
                return stats.to_dict() if stats else {}
            return {
                'since': self._since.isoformat(),
                'operations': {name: stats.to_dict() for name, stats in self._stats.items()}
            }

    def slow(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [s.to_dict() for s in self._stats.values() if s.slow_operations]

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()
            self._since = datetime.now(timezone.utc)


_stats_collector = OperationStatsCollector()


def get_metrics(operation: Optional[str] = None) -> Dict[str, Any]:
    """Current operation statistics, for one operation or all of them"""
    return _stats_collector.snapshot(operation)


def get_slow_operation_report() -> List[Dict[str, Any]]:
    return _stats_collector.slow()


def reset_metrics() -> None:
    _stats_collector.reset()


# ============================================
# OPERATION TIMER
# ============================================

@contextmanager
def operation_timer(operation: str):
    """
    Context manager to time and monitor screening operations.

    Logs slow operations and records metrics for monitoring.

    Args:
        operation: Name of the operation (e.g., 'search', 'refresh_cycle')
    """
    start_time = time.perf_counter()
    error_occurred = False

    try:
        yield
    except Exception:
        error_occurred = True
        raise
    finally:
        duration = time.perf_counter() - start_time
        duration_ms = duration * 1000
        is_slow = duration_ms > _config.slow_operation_threshold_ms

        _stats_collector.record(
            operation=operation,
            duration_ms=duration_ms,
            error=error_occurred,
            slow=is_slow
        )

        if _config.enable_prometheus:
            status = "error" if error_occurred else "success"
            operation_duration.labels(operation=operation, status=status).observe(duration)

        if is_slow:
            logger.warning(
                f"SLOW OPERATION: {operation} took {duration_ms:.2f}ms "
                f"(threshold: {_config.slow_operation_threshold_ms}ms)"
            )


def record_published_generation(generation: int, entity_count: int) -> None:
    """Update the served-generation gauges"""
    if _config.enable_prometheus:
        current_generation.set(generation)
        current_entities.set(entity_count)


def record_refresh_outcome(outcome: str) -> None:
    if _config.enable_prometheus:
        refresh_cycles_total.labels(outcome=outcome).inc()


def record_source_failure(source: str) -> None:
    if _config.enable_prometheus:
        source_fetch_failures_total.labels(source=source).inc()


def record_skipped_records(source: str, count: int) -> None:
    if _config.enable_prometheus and count:
        records_skipped_total.labels(source=source).inc(count)
