"""
Proxy request metrics.

Each ``MetricsRecorder`` owns its own Prometheus ``CollectorRegistry`` so that
applications (and tests) built side by side never share counters.
``prometheus_client`` guards every value update with a lock, which makes the
recorder safe to use from concurrent requests.
"""

import time
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    GCCollector,
    Histogram,
    PlatformCollector,
    ProcessCollector,
    generate_latest,
)
from prometheus_client.utils import floatToGoString

DURATION_BUCKETS = (0.1, 0.5, 1, 2, 5, 10)


@dataclass(frozen=True)
class MetricsSnapshot:
    total_requests: float
    # Cumulative counts keyed by upper bound, +Inf included
    duration_buckets: Dict[float, float]
    duration_count: float
    duration_sum: float


class RequestTimer:
    """Counts a request on creation and observes its duration exactly once."""

    def __init__(self, recorder: "MetricsRecorder"):
        self._recorder = recorder
        self._started = time.perf_counter()
        self._finished = False
        recorder.on_request_start()

    @property
    def finished(self) -> bool:
        return self._finished

    def finish(self) -> Optional[float]:
        if self._finished:
            return None
        self._finished = True
        duration = time.perf_counter() - self._started
        self._recorder.on_request_end(duration)
        return duration


class MetricsRecorder:
    def __init__(
        self,
        registry: Optional[CollectorRegistry] = None,
        process_metrics: bool = False,
    ):
        self.registry = registry or CollectorRegistry()
        self.requests = Counter(
            "proxy_requests",
            "Total number of proxy requests",
            registry=self.registry,
        )
        self.duration = Histogram(
            "proxy_request_duration_seconds",
            "Proxy request duration in seconds",
            buckets=DURATION_BUCKETS,
            registry=self.registry,
        )
        if process_metrics:
            ProcessCollector(registry=self.registry)
            PlatformCollector(registry=self.registry)
            GCCollector(registry=self.registry)

    def on_request_start(self) -> None:
        self.requests.inc()

    def on_request_end(self, duration_seconds: float) -> None:
        self.duration.observe(max(0.0, duration_seconds))

    def start_timer(self) -> RequestTimer:
        return RequestTimer(self)

    def _sample(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        return self.registry.get_sample_value(name, labels or {}) or 0.0

    def snapshot(self) -> MetricsSnapshot:
        buckets = {}
        for bound in DURATION_BUCKETS + (float("inf"),):
            buckets[float(bound)] = self._sample(
                "proxy_request_duration_seconds_bucket", {"le": floatToGoString(bound)}
            )
        return MetricsSnapshot(
            total_requests=self._sample("proxy_requests_total"),
            duration_buckets=buckets,
            duration_count=self._sample("proxy_request_duration_seconds_count"),
            duration_sum=self._sample("proxy_request_duration_seconds_sum"),
        )

    def render(self) -> bytes:
        return generate_latest(self.registry)
