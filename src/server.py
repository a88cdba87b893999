"""
Server module for the S3 metering gateway using Flask.
"""

import json
import logging
import os
import queue
import signal
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

import graypy
import uuid_utils
from flask import Flask, Response, g, jsonify, request
from flask.logging import create_logger
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest

from s3meter.actions import KNOWN_ACTIONS, UNRECOGNIZED, resolve_action
from s3meter.bucket import parse_domains
from s3meter.cidr import PrefixSet, build_prefix_set, contains
from s3meter.client_ip import client_address, peer_address
from s3meter.handlers import make_handler
from s3meter.metrics import PrometheusSink
from s3meter.tracking import Tracker

# Define a constant for the maximum Graylog payload size (e.g., 1MB)
MAX_GELF_PAYLOAD_SIZE = 1024 * 1024  # 1MB
VERSION = "__VERSION__"  # <-- This will be replaced during the release process

STATUS_PATH = "/s3meter-status"
METRICS_PATH = "/s3meter-metrics"


class Server:
    """Server class fronting S3 requests with metering and configuration."""

    def __init__(self):
        self.app = Flask(__name__)

        # Shutdown tracking
        self._shutdown_in_progress: bool = False

        self.logger = create_logger(self.app)

        # Async GELF logging queue so log shipping never blocks a request
        self.gelf_queue: Optional[queue.Queue] = None
        self.gelf_worker_thread: Optional[threading.Thread] = None
        self.gelf_drops: int = 0  # Track dropped GELF logs due to queue saturation

        self._setup_logging()
        self._setup_gelf_handler()
        self._setup_internal_networks()
        self._setup_healthcheck_allowed()
        self._setup_metrics()
        self._setup_signal_handlers()

        # Flask app configuration
        self.app.before_request(self.before_request)
        self.app.after_request(self.after_request)
        self.app.route(STATUS_PATH, methods=["GET"])(self.s3meter_status)
        self.app.route(METRICS_PATH, methods=["GET"])(self.s3meter_metrics)
        self.app.route("/", defaults={"path": ""}, methods=self.all_methods())(self.dispatch)
        self.app.route("/<path:path>", methods=self.all_methods())(self.dispatch)

    def _setup_logging(self) -> None:
        """Configures the logging for the application."""
        debug_level = os.getenv("DEBUG_LEVEL", "INFO").upper()
        valid_debug_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if debug_level not in valid_debug_levels:
            debug_level = "DEBUG"
        self.logger.setLevel(getattr(logging, debug_level))

    def _setup_gelf_handler(self) -> None:
        """Configures async GELF logging.

        Uses a background thread with a queue so that shipping logs to
        Graylog never blocks request processing.
        """
        gelf_server = os.getenv("GELF_SERVER")
        if gelf_server:
            parsed_url = urlparse(gelf_server)
            gelf_host = parsed_url.hostname
            gelf_port = parsed_url.port

            if parsed_url.scheme == "udp":
                gelf_handler = graypy.GELFUDPHandler(gelf_host, gelf_port)
            elif parsed_url.scheme == "tcp":
                gelf_handler = graypy.GELFTCPHandler(gelf_host, gelf_port)
            else:
                self.logger.error("Unsupported GELF scheme: %s", parsed_url.scheme)
                self.gelf_logger = None
                return

            gelf_logger = logging.getLogger("gelf")
            gelf_logger.setLevel(logging.INFO)
            gelf_logger.addHandler(gelf_handler)
            self.gelf_logger = gelf_logger

            # Bounded to prevent memory exhaustion when Graylog is slow
            self.gelf_queue = queue.Queue(maxsize=10000)

            # Background loggers must never block shutdown; _graceful_shutdown()
            # drains the queue by sending None
            self.gelf_worker_thread = threading.Thread(
                target=self._gelf_worker,
                daemon=True,
                name="gelf-logger",
            )
            self.gelf_worker_thread.start()
            self.logger.info("Async GELF logging enabled with queue size 10000 (daemon=True)")
        else:
            self.logger.warning("No GELF server specified; GELF handler not set up")
            self.gelf_logger = None

    def _gelf_worker(self) -> None:
        """Background worker thread that processes the GELF logging queue."""
        while True:
            try:
                log_item = self.gelf_queue.get(timeout=1.0)

                if log_item is None:  # Shutdown signal
                    break

                message, extra_data = log_item
                self.gelf_logger.info(message, extra=extra_data)
                self.gelf_queue.task_done()

            except queue.Empty:
                continue
            except Exception as e:
                # Log errors but don't crash the worker thread
                self.logger.error(f"Error in GELF worker thread: {e}")
                continue

    def _setup_internal_networks(self) -> None:
        """
        Parse S3_INTERNAL_CIDRS into the internal network set.

        Traffic from these networks is not counted as external egress.
        Entries may be separated by commas, semicolons or whitespace. Invalid
        entries are skipped with a warning; the rest still apply.

        Examples:
            S3_INTERNAL_CIDRS="10.0.0.0/8, 172.16.0.0/12;192.168.0.0/16"
            S3_INTERNAL_CIDRS="fd00::/8 10.20.0.0/16"
        """

        def warn(token: str, error: ValueError) -> None:
            self.logger.warning(f"Invalid CIDR range in S3_INTERNAL_CIDRS: {token} - {error}")

        self.internal_networks: Optional[PrefixSet] = build_prefix_set(
            os.getenv("S3_INTERNAL_CIDRS", ""), on_invalid=warn
        )
        if self.internal_networks is None:
            self.logger.warning(
                "No internal networks configured; all sent bytes are counted as external. "
                "Set S3_INTERNAL_CIDRS to exempt internal traffic, "
                "e.g. S3_INTERNAL_CIDRS='10.0.0.0/8,192.168.0.0/16'"
            )
        else:
            self.logger.info(
                f"Internal networks: {[str(net) for net in self.internal_networks.networks]}"
            )

    def _setup_healthcheck_allowed(self) -> None:
        """Parse HEALTHCHECK_ALLOWED for status and metrics endpoint filtering."""
        allowed_str = os.getenv("HEALTHCHECK_ALLOWED", "0.0.0.0/0,::/0")

        def reject(token: str, error: ValueError) -> None:
            self.logger.error(f"Invalid network in HEALTHCHECK_ALLOWED: {token} - {error}")

        allowed = build_prefix_set(allowed_str, on_invalid=reject)
        if allowed is None:
            # Default to allow all if no valid networks
            allowed = build_prefix_set("0.0.0.0/0,::/0")
            self.logger.warning("No valid networks in HEALTHCHECK_ALLOWED, defaulting to allow all")
        self.healthcheck_allowed_networks: PrefixSet = allowed

    def _is_healthcheck_allowed(self, ip_str: str) -> bool:
        """Check if an IP address may access the status and metrics endpoints."""
        allowed = contains(self.healthcheck_allowed_networks, ip_str)
        if not allowed:
            self.logger.warning(f"Healthcheck denied from {ip_str}")
        return allowed

    def _setup_metrics(self) -> None:
        """Create the metrics registry, the tracker and one tracked handler per action."""
        # Per-instance registry so several servers can coexist in one process
        self.registry = CollectorRegistry()
        self.sink = PrometheusSink(registry=self.registry)
        self.domains = parse_domains(os.getenv("S3_DOMAIN_NAME", ""))
        self.tracker = Tracker(self.sink, self.internal_networks, self.domains)

        self.handlers: Dict[str, Callable[..., Response]] = {
            action: self.tracker.track(make_handler(action, self.tracker), action)
            for action in KNOWN_ACTIONS
        }
        if self.domains:
            self.logger.info(f"Virtual-host bucket domains: {list(self.domains)}")

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown.

        Only register signal handlers when NOT running in test mode.
        Tests need to manage their own lifecycle without signal interference.
        """
        if os.getenv("TESTING") or self.app.config.get("TESTING"):
            self.logger.debug("Skipping signal handlers in test mode")
            return

        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)

        self.logger.info("Signal handlers registered for graceful shutdown")

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals (SIGTERM, SIGINT)."""
        sig_name = signal.Signals(signum).name
        self.logger.info(f"Received {sig_name}, initiating graceful shutdown...")
        self._graceful_shutdown()
        import sys

        sys.exit(0)

    def _graceful_shutdown(self) -> None:
        """Gracefully shutdown the GELF worker and flush its queue."""
        if self._shutdown_in_progress:
            return
        self._shutdown_in_progress = True

        self.logger.info("Starting graceful shutdown...")

        if self.gelf_queue:
            queue_size = self.gelf_queue.qsize()
            if queue_size > 0:
                self.logger.info(f"Flushing {queue_size} GELF log entries...")
            # Signal worker to stop after processing remaining items
            self.gelf_queue.put(None)

            # Wait for queue to drain (max 30 seconds)
            start_time = time.time()
            while not self.gelf_queue.empty() and (time.time() - start_time) < 30:
                time.sleep(0.1)

            remaining = self.gelf_queue.qsize()
            if remaining > 0:
                self.logger.warning(f"Timed out flushing GELF queue, {remaining} entries lost")

        if self.gelf_worker_thread and self.gelf_worker_thread.is_alive():
            self.logger.info("Stopping GELF worker thread...")
            self.gelf_worker_thread.join(timeout=5)
            if self.gelf_worker_thread.is_alive():
                self.logger.warning("GELF worker did not stop cleanly")
            else:
                self.logger.info("GELF worker stopped")

        self.logger.info(f"Graceful shutdown complete. Total GELF drops: {self.gelf_drops}")

    def before_request(self) -> None:
        """Store the start time and generate the request ID."""
        g.start_time = time.time()
        # UUIDv7 (RFC 9562) so request IDs sort by time
        g.request_id = str(uuid_utils.uuid7())

    def after_request(self, response: Response) -> Response:
        """Attach the request ID and log a summary of the request."""
        response.headers["x-amz-request-id"] = g.request_id

        if self._should_skip_logging(request):
            return response

        request_duration = time.time() - g.start_time
        request_data = self._gather_request_data(response, request_duration)
        self.logger.debug(json.dumps(request_data))
        self._send_to_gelf(request_data)
        return response

    def _should_skip_logging(self, request) -> bool:
        """Determine if logging should be skipped for the current request."""
        skip: bool = request.path in (STATUS_PATH, METRICS_PATH)
        return skip

    def _gather_request_data(self, response: Response, request_duration: float) -> Dict[str, Any]:
        """Gathers data about the request and response."""
        client = client_address(request)
        bucket, key = self.tracker.bucket_and_object(request)
        response_size = response.calculate_content_length()
        request_size = request.content_length if request.content_length is not None else 0
        return {
            "request_id": g.request_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": VERSION if VERSION != "__VERSION__" else "dev",
            "hostname": request.host,
            "remote_addr": request.remote_addr,
            "client_addr": str(client) if client is not None else "unknown",
            "internal": contains(self.internal_networks, client),
            "method": request.method,
            "path": request.path,
            "action": getattr(g, "s3_action", UNRECOGNIZED),
            "bucket": bucket,
            "key": key,
            "request_size": request_size,
            "response_status": response.status_code,
            "response_size": response_size if response_size is not None else 0,
            "duration_ms": int(request_duration * 1000),
        }

    def _send_to_gelf(self, data: Dict[str, Any]) -> None:
        """Queue request data for the GELF worker without blocking."""
        if not self.gelf_queue:
            return

        message = (
            f"{data['action']} {data['method']} {data['path']} "
            f"{data['response_status']} {data['duration_ms']}ms"
        )
        gelf_data = data.copy()

        log_entry = json.dumps(gelf_data).encode("utf-8")
        if len(log_entry) > MAX_GELF_PAYLOAD_SIZE:
            self.logger.error("GELF payload size exceeds the limit; removing path and key fields.")
            gelf_data["path"] = "Path too large, removed to prevent payload overflow"
            gelf_data["key"] = ""

        try:
            self.gelf_queue.put_nowait((message, gelf_data))
        except queue.Full:
            # Drop rather than block; report periodically to avoid log spam
            self.gelf_drops += 1
            if self.gelf_drops % 100 == 0:
                self.logger.error(
                    f"GELF QUEUE SATURATION: {self.gelf_drops} total logs dropped! "
                    f"Queue size: {self.gelf_queue.qsize()}/{self.gelf_queue.maxsize}. "
                    "GELF server may be slow or down."
                )
            elif self.gelf_drops == 1:
                self.logger.warning(
                    "GELF queue full, starting to drop log entries. "
                    "Will report every 100 drops to avoid log spam."
                )

    def s3meter_status(self):
        """Endpoint to return service status with IP filtering."""
        peer = peer_address(request)
        if not self._is_healthcheck_allowed(str(peer) if peer else "unknown"):
            # Return 204 No Content to avoid revealing endpoint existence
            return "", 204

        return jsonify(
            {
                "service": "ok",
                "internal_networks": len(self.internal_networks or ()),
            }
        ), 200

    def s3meter_metrics(self):
        """Prometheus exposition of the gateway metrics, with IP filtering."""
        peer = peer_address(request)
        if not self._is_healthcheck_allowed(str(peer) if peer else "unknown"):
            return "", 204

        return Response(generate_latest(self.registry), mimetype=CONTENT_TYPE_LATEST)

    def dispatch(self, path: str) -> Response:
        """Resolve the S3 action for the request and run its tracked handler."""
        bucket, key = self.tracker.bucket_and_object(request)
        action = resolve_action(request.method, bucket, key, request.args, request.headers)
        g.s3_action = action
        self.logger.debug(f"Dispatching {request.method} {request.path} as {action}")
        return self.handlers[action](path)

    @staticmethod
    def all_methods() -> List[str]:
        """Return all HTTP methods allowed for the S3 routes."""
        return ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]

    def run(self) -> None:
        """Run the Flask application."""
        port = int(os.getenv("PORT", 3000))
        self.app.run(host="0.0.0.0", port=port)


def create_app() -> Flask:
    """Application factory for WSGI servers, e.g. ``gunicorn 'server:create_app()'``."""
    return Server().app


if __name__ == "__main__":
    server = Server()
    server.run()
