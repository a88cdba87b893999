# src/s3meter/tracking.py
"""
Request instrumentation for S3 handlers.

``Tracker.track`` wraps a Flask view so that every invocation records
in-flight concurrency, latency, a status-coded request count and the
read/write/other billing counters. The traffic entry points
(``time_to_first_byte``, ``bucket_traffic_received``, ``bucket_traffic_sent``)
are called by handler bodies directly.

Recording never changes the response: the view's return value is converted
with ``flask.make_response`` (which Flask would do anyway) only to read its
status code, and exceptions raised by the view propagate untouched.
"""

import functools
import logging
import time
from typing import Callable, Optional, Sequence, Tuple

from flask import make_response, request
from werkzeug.exceptions import HTTPException

from s3meter.bucket import extract_bucket_and_object
from s3meter.cidr import PrefixSet, contains
from s3meter.classify import billing_events, classify, is_conditional
from s3meter.client_ip import client_address
from s3meter.metrics import MetricsSink

logger = logging.getLogger(__name__)

FORBIDDEN = 403


class Tracker:
    """Records per-request metrics into a MetricsSink.

    ``internal_networks`` is built once at startup and only read afterwards,
    so a single Tracker is shared by all request threads.
    """

    def __init__(
        self,
        sink: MetricsSink,
        internal_networks: Optional[PrefixSet] = None,
        domains: Sequence[str] = (),
    ):
        self.sink = sink
        self.internal_networks = internal_networks
        self.domains = tuple(domains)

    def bucket_and_object(self, req) -> Tuple[str, str]:
        return extract_bucket_and_object(req, self.domains)

    def is_internal(self, req) -> bool:
        """True if the request's client address falls in the internal networks."""
        return contains(self.internal_networks, client_address(req))

    def track(self, handler: Callable, action: str) -> Callable:
        """Wrap ``handler`` so each call is recorded under ``action``."""

        @functools.wraps(handler)
        def tracked_handler(*args, **kwargs):
            with self.sink.in_flight(action):
                bucket, _ = self.bucket_and_object(request)
                start = time.monotonic()
                try:
                    response = make_response(handler(*args, **kwargs))
                except HTTPException as e:
                    # abort(Response(...)) carries its status on the response, not e.code
                    self._record(action, bucket, e.get_response().status_code, start)
                    raise
                self._record(action, bucket, response.status_code, start)
                return response

        return tracked_handler

    def tracked(self, action: str) -> Callable[[Callable], Callable]:
        """Decorator form of ``track``."""

        def decorator(handler: Callable) -> Callable:
            return self.track(handler, action)

        return decorator

    def _record(self, action: str, bucket: str, status: int, start: float) -> None:
        elapsed = time.monotonic() - start
        if status == FORBIDDEN:
            # 403s are counted without a bucket label
            bucket = ""

        self.sink.observe_latency(action, bucket, elapsed)
        self.sink.count_request(action, status, bucket)
        self.sink.record_bucket_active(bucket)

        category = classify(action, request.method)
        for event in billing_events(category, is_conditional(request.headers)):
            self.sink.count_operation(event, bucket)

    def time_to_first_byte(self, action: str, start: float, req) -> None:
        """Record milliseconds elapsed since ``start`` (a ``time.monotonic()`` value)."""
        bucket, _ = self.bucket_and_object(req)
        self.sink.observe_time_to_first_byte(action, bucket, (time.monotonic() - start) * 1000)
        self.sink.record_bucket_active(bucket)

    def bucket_traffic_received(self, bytes_received: int, req) -> None:
        bucket, _ = self.bucket_and_object(req)
        self.sink.record_bucket_active(bucket)
        self.sink.add_bytes_received(bucket, bytes_received)

    def bucket_traffic_sent(self, bytes_sent: int, req) -> None:
        """Count sent bytes, and count them again as external egress if the
        client is outside the internal networks."""
        bucket, _ = self.bucket_and_object(req)
        self.sink.record_bucket_active(bucket)

        if not self.is_internal(req):
            self.sink.add_external_bytes_sent(bucket, bytes_sent)
        self.sink.add_bytes_sent(bucket, bytes_sent)
