"""In-process metrics collector.

Collects request latencies, rate-limit decisions, stream outcomes and
operational errors, and renders them in Prometheus text format.
"""

import asyncio
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from studygate.app.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class RequestMetrics:
    """Metrics for a single endpoint."""

    count: int = 0
    total_duration: float = 0.0
    errors: int = 0


@dataclass
class DecisionMetrics:
    """Rate limit decisions for a single action."""

    admitted: int = 0
    rejected: int = 0
    fail_open: int = 0


@dataclass
class MetricsCollector:
    """Collects and stores service metrics.

    Guarded by an asyncio lock; all mutators are coroutines.
    """

    _requests: Dict[str, RequestMetrics] = field(
        default_factory=lambda: defaultdict(RequestMetrics)
    )
    _decisions: Dict[str, DecisionMetrics] = field(
        default_factory=lambda: defaultdict(DecisionMetrics)
    )
    _streams: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    _errors: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    _start_time: float = field(default_factory=time.time)

    async def record_request(
        self, endpoint: str, duration: float, status_code: int
    ) -> None:
        """Record a request metric.

        Args:
            endpoint: The endpoint path
            duration: Request duration in seconds
            status_code: HTTP status code
        """
        async with self._lock:
            metrics = self._requests[endpoint]
            metrics.count += 1
            metrics.total_duration += duration
            if status_code >= 400:
                metrics.errors += 1

    async def record_decision(
        self, action: str, allowed: bool, fail_open: bool = False
    ) -> None:
        """Record a rate limit decision for an action."""
        async with self._lock:
            metrics = self._decisions[action]
            if fail_open:
                metrics.fail_open += 1
            if allowed:
                metrics.admitted += 1
            else:
                metrics.rejected += 1

    async def record_stream(self, status: str) -> None:
        """Record the terminal status of a relayed stream."""
        async with self._lock:
            self._streams[status] += 1

    async def record_error(self, error_type: str) -> None:
        """Record an operational error by type."""
        async with self._lock:
            self._errors[error_type] += 1

    async def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        async with self._lock:
            total_requests = sum(m.count for m in self._requests.values())
            total_errors = sum(m.errors for m in self._requests.values())

            endpoints = {}
            for endpoint, metrics in self._requests.items():
                if metrics.count > 0:
                    endpoints[endpoint] = {
                        "count": metrics.count,
                        "avg_duration_ms": round(
                            (metrics.total_duration / metrics.count) * 1000, 2
                        ),
                        "error_count": metrics.errors,
                    }

            return {
                "uptime_seconds": round(time.time() - self._start_time, 2),
                "total_requests": total_requests,
                "total_errors": total_errors,
                "endpoints": endpoints,
                "rate_limit": {
                    action: {
                        "admitted": m.admitted,
                        "rejected": m.rejected,
                        "fail_open": m.fail_open,
                    }
                    for action, m in self._decisions.items()
                },
                "streams": dict(self._streams),
                "errors_by_type": dict(self._errors),
            }

    async def get_prometheus_metrics(self) -> str:
        """Get metrics in Prometheus text format."""
        async with self._lock:
            lines = []

            lines.append("# HELP studygate_requests_total Total number of requests")
            lines.append("# TYPE studygate_requests_total counter")
            for endpoint, metrics in self._requests.items():
                lines.append(
                    f'studygate_requests_total{{endpoint="{endpoint}"}} {metrics.count}'
                )

            lines.append(
                "\n# HELP studygate_request_duration_seconds Total request duration"
            )
            lines.append("# TYPE studygate_request_duration_seconds counter")
            for endpoint, metrics in self._requests.items():
                lines.append(
                    f'studygate_request_duration_seconds{{endpoint="{endpoint}"}} {metrics.total_duration}'
                )

            lines.append(
                "\n# HELP studygate_rate_limit_decisions_total Rate limit decisions by action"
            )
            lines.append("# TYPE studygate_rate_limit_decisions_total counter")
            for action, m in self._decisions.items():
                lines.append(
                    f'studygate_rate_limit_decisions_total{{action="{action}",decision="admitted"}} {m.admitted}'
                )
                lines.append(
                    f'studygate_rate_limit_decisions_total{{action="{action}",decision="rejected"}} {m.rejected}'
                )
                lines.append(
                    f'studygate_rate_limit_fail_open_total{{action="{action}"}} {m.fail_open}'
                )

            lines.append("\n# HELP studygate_streams_total Relayed streams by outcome")
            lines.append("# TYPE studygate_streams_total counter")
            for status, count in self._streams.items():
                lines.append(f'studygate_streams_total{{status="{status}"}} {count}')

            lines.append("\n# HELP studygate_errors_total Operational errors by type")
            lines.append("# TYPE studygate_errors_total counter")
            for error_type, count in self._errors.items():
                lines.append(f'studygate_errors_total{{type="{error_type}"}} {count}')

            lines.append("\n# HELP studygate_uptime_seconds Uptime in seconds")
            lines.append("# TYPE studygate_uptime_seconds gauge")
            lines.append(
                f"studygate_uptime_seconds{{}} {round(time.time() - self._start_time, 2)}"
            )

            return "\n".join(lines) + "\n"


# Global metrics collector instance
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector


def reset_metrics_collector() -> None:
    """Reset the global metrics collector (useful for testing)."""
    global _metrics_collector
    _metrics_collector = None
