import time
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Dict, Any, Optional


@dataclass
class QueryMetrics:
    """Counters for one logical query name."""
    query: str
    calls: int = 0
    failures: int = 0
    degraded: int = 0
    total_duration_ms: int = 0
    errors_by_code: Dict[str, int] = field(default_factory=dict)

    @property
    def failure_rate(self) -> float:
        """Share of calls that ended in an error."""
        if self.calls == 0:
            return 0.0
        return self.failures / self.calls

    @property
    def average_duration_ms(self) -> float:
        if self.calls == 0:
            return 0.0
        return self.total_duration_ms / self.calls


class MetricsCollector:
    """Collects process-wide metrics for queries and token handling."""

    def __init__(self):
        """Initialize metrics collector."""
        self.started_at = datetime.now()
        self.queries: Dict[str, QueryMetrics] = {}
        self.upstream_calls = 0
        self.token_refreshes = 0
        self.failed_refreshes = 0
        self.cache_write_failures = 0
        self._lock = threading.Lock()

    def _query(self, name: str) -> QueryMetrics:
        if name not in self.queries:
            self.queries[name] = QueryMetrics(query=name)
        return self.queries[name]

    def record_query(self, name: str, duration_ms: int,
                     error_code: Optional[str] = None, degraded: bool = False) -> None:
        """Record one finished query."""
        with self._lock:
            metrics = self._query(name)
            metrics.calls += 1
            metrics.total_duration_ms += duration_ms
            if degraded:
                metrics.degraded += 1
            if error_code:
                metrics.failures += 1
                metrics.errors_by_code[error_code] = metrics.errors_by_code.get(error_code, 0) + 1

    def record_upstream_call(self) -> None:
        with self._lock:
            self.upstream_calls += 1

    def record_refresh(self, succeeded: bool = True) -> None:
        """Record an access token refresh attempt."""
        with self._lock:
            if succeeded:
                self.token_refreshes += 1
            else:
                self.failed_refreshes += 1

    def record_cache_write_failure(self) -> None:
        with self._lock:
            self.cache_write_failures += 1

    @contextmanager
    def time_query(self, name: str):
        """Context manager timing a query; exceptions are recorded and re-raised."""
        start = time.monotonic()
        outcome = {'error_code': None, 'degraded': False}
        try:
            yield outcome
        except Exception as e:
            outcome['error_code'] = getattr(e, 'code', type(e).__name__)
            raise
        finally:
            duration_ms = int((time.monotonic() - start) * 1000)
            self.record_query(name, duration_ms, outcome['error_code'], outcome['degraded'])

    def to_dict(self) -> Dict[str, Any]:
        """Convert metrics to dictionary for JSON serialization."""
        with self._lock:
            queries = {}
            for name, metrics in self.queries.items():
                data = asdict(metrics)
                data['failure_rate'] = metrics.failure_rate
                data['average_duration_ms'] = metrics.average_duration_ms
                queries[name] = data

            return {
                'started_at': self.started_at.isoformat(),
                'upstream_calls': self.upstream_calls,
                'token_refreshes': self.token_refreshes,
                'failed_refreshes': self.failed_refreshes,
                'cache_write_failures': self.cache_write_failures,
                'queries': queries,
            }

    def reset(self) -> None:
        with self._lock:
            self.started_at = datetime.now()
            self.queries = {}
            self.upstream_calls = 0
            self.token_refreshes = 0
            self.failed_refreshes = 0
            self.cache_write_failures = 0
