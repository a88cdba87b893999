"""Metrics sink for request and traffic accounting.

All metrics use the ``s3meter_`` prefix. The sink is write-only from the point
of view of the tracker; reading values back is left to the Prometheus scrape
(or to ``CollectorRegistry.get_sample_value`` in tests).
"""

from typing import ContextManager, Dict, Optional, Protocol

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

from s3meter.classify import OperationCategory

# Time to first byte is observed in milliseconds
TTFB_BUCKETS = (1, 5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000)


class MetricsSink(Protocol):
    """Write-only recording interface consumed by the tracker."""

    def in_flight(self, action: str) -> ContextManager: ...

    def observe_latency(self, action: str, bucket: str, seconds: float) -> None: ...

    def count_request(self, action: str, status: int, bucket: str) -> None: ...

    def count_operation(self, category: OperationCategory, bucket: str) -> None: ...

    def observe_time_to_first_byte(self, action: str, bucket: str, millis: float) -> None: ...

    def add_bytes_received(self, bucket: str, amount: int) -> None: ...

    def add_bytes_sent(self, bucket: str, amount: int) -> None: ...

    def add_external_bytes_sent(self, bucket: str, amount: int) -> None: ...

    def record_bucket_active(self, bucket: str) -> None: ...


class PrometheusSink:
    """MetricsSink backed by prometheus_client collectors.

    Each instance registers its collectors in ``registry``; pass a fresh
    ``CollectorRegistry`` when more than one sink lives in a process.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        kwargs = {"registry": registry} if registry is not None else {}

        self.in_flight_requests = Gauge(
            "s3meter_in_flight_requests",
            "Requests currently being served, by action",
            ["action"],
            **kwargs,
        )
        self.request_seconds = Histogram(
            "s3meter_request_seconds",
            "Request latency in seconds",
            ["action", "bucket"],
            **kwargs,
        )
        self.requests = Counter(
            "s3meter_requests_total",
            "Requests by action, status code and bucket",
            ["action", "code", "bucket"],
            **kwargs,
        )
        self.operations: Dict[OperationCategory, Counter] = {
            category: Counter(
                f"s3meter_bucket_{category.value}_operations_total",
                f"Billed {category.value} operations by bucket",
                ["bucket"],
                **kwargs,
            )
            for category in OperationCategory
        }
        self.time_to_first_byte = Histogram(
            "s3meter_time_to_first_byte_milliseconds",
            "Time to first response byte in milliseconds",
            ["action", "bucket"],
            buckets=TTFB_BUCKETS,
            **kwargs,
        )
        self.received_bytes = Counter(
            "s3meter_bucket_received_bytes_total",
            "Request body bytes received by bucket",
            ["bucket"],
            **kwargs,
        )
        self.sent_bytes = Counter(
            "s3meter_bucket_sent_bytes_total",
            "Response body bytes sent by bucket",
            ["bucket"],
            **kwargs,
        )
        self.external_sent_bytes = Counter(
            "s3meter_bucket_external_sent_bytes_total",
            "Response body bytes sent to clients outside the internal networks",
            ["bucket"],
            **kwargs,
        )
        self.bucket_last_active = Gauge(
            "s3meter_bucket_last_active_timestamp_seconds",
            "Unix time of the last request touching the bucket",
            ["bucket"],
            **kwargs,
        )

    def in_flight(self, action: str) -> ContextManager:
        # Decrements on exit, including when the body raises
        return self.in_flight_requests.labels(action).track_inprogress()

    def observe_latency(self, action: str, bucket: str, seconds: float) -> None:
        self.request_seconds.labels(action, bucket).observe(seconds)

    def count_request(self, action: str, status: int, bucket: str) -> None:
        self.requests.labels(action, str(status), bucket).inc()

    def count_operation(self, category: OperationCategory, bucket: str) -> None:
        self.operations[category].labels(bucket).inc()

    def observe_time_to_first_byte(self, action: str, bucket: str, millis: float) -> None:
        self.time_to_first_byte.labels(action, bucket).observe(millis)

    def add_bytes_received(self, bucket: str, amount: int) -> None:
        self.received_bytes.labels(bucket).inc(amount)

    def add_bytes_sent(self, bucket: str, amount: int) -> None:
        self.sent_bytes.labels(bucket).inc(amount)

    def add_external_bytes_sent(self, bucket: str, amount: int) -> None:
        self.external_sent_bytes.labels(bucket).inc(amount)

    def record_bucket_active(self, bucket: str) -> None:
        if not bucket:
            return
        self.bucket_last_active.labels(bucket).set_to_current_time()
