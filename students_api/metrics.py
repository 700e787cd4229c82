# students_api/metrics.py
from .registry import MetricRegistry

HTTP_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10)
DB_BUCKETS = (0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5)

HTTP_LABELS = ("method", "route", "status")
DB_LABELS = ("operation", "table")


class ServiceMetrics:
    """The service's instruments, registered on the registry passed in."""

    def __init__(self, registry: MetricRegistry):
        self.registry = registry

        self.http_requests_total = registry.counter(
            "http_requests_total", "Total HTTP requests", HTTP_LABELS
        )
        self.http_request_duration = registry.histogram(
            "http_request_duration_seconds", "HTTP request duration in seconds",
            HTTP_LABELS, buckets=HTTP_BUCKETS,
        )
        self.http_requests_errors_total = registry.counter(
            "http_requests_errors_total", "Total failed HTTP requests", HTTP_LABELS
        )
        self.active_requests = registry.gauge(
            "active_requests", "Number of active requests"
        )

        self.db_queries_total = registry.counter(
            "db_queries_total", "Total database queries", DB_LABELS
        )
        self.db_query_duration = registry.histogram(
            "db_query_duration_seconds", "Database query duration in seconds",
            DB_LABELS, buckets=DB_BUCKETS,
        )
        self.db_query_errors_total = registry.counter(
            "db_query_errors_total", "Total failed database queries", DB_LABELS
        )
        self.db_active_connections = registry.gauge(
            "db_active_connections", "Number of active database connections"
        )
        self.db_sampler_skipped_ticks = registry.counter(
            "db_sampler_skipped_ticks_total", "Connection sampler ticks skipped after a failed probe"
        )
