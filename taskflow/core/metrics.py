import logging
from typing import Optional, Protocol

from prometheus_client import CollectorRegistry, Counter

logger = logging.getLogger(__name__)


class MetricsSink(Protocol):
    """What the scanner and the worker report to. Injected, never global."""

    def overdue_detected(self, count: int) -> None: ...

    def job_processed(self, job_type: str, status: str) -> None: ...


class PrometheusMetrics:
    """MetricsSink backed by prometheus_client counters on a private registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self.overdue_tasks = Counter(
            'overdue_tasks_total',
            'Total number of overdue tasks detected',
            registry=self.registry,
        )
        self.jobs_processed = Counter(
            'jobs_processed_total',
            'Total number of processed jobs',
            ['jobType', 'status'],
            registry=self.registry,
        )

    def overdue_detected(self, count: int) -> None:
        if count > 0:
            self.overdue_tasks.inc(count)

    def job_processed(self, job_type: str, status: str) -> None:
        self.jobs_processed.labels(jobType=job_type, status=status).inc()
