"""
Tests for shipping request summaries to GELF through the background queue.
graypy's handlers are mocked, so nothing leaves the process.
"""

import queue
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from server import Server


@pytest.fixture
def gelf_server(monkeypatch):
    """A gateway with GELF_SERVER set and the UDP handler mocked."""
    monkeypatch.setenv("GELF_SERVER", "udp://localhost:12201")
    with patch("graypy.GELFUDPHandler"):
        server = Server()
        yield server
        if server.gelf_worker_thread.is_alive():
            server._graceful_shutdown()


@pytest.fixture
def queued(gelf_server):
    """Capture what the gateway hands to the GELF queue."""
    with patch.object(gelf_server.gelf_queue, "put_nowait") as put_nowait:
        yield put_nowait


def summaries(put_nowait):
    return [c.args[0][1] for c in put_nowait.call_args_list]


class TestGELFQueueSetup:
    """The queue and its worker exist only when GELF_SERVER is configured."""

    def test_bounded_queue(self, gelf_server):
        assert isinstance(gelf_server.gelf_queue, queue.Queue)
        assert gelf_server.gelf_queue.maxsize == 10000

    def test_daemon_worker_running(self, gelf_server):
        worker = gelf_server.gelf_worker_thread
        assert isinstance(worker, threading.Thread)
        assert worker.daemon is True
        assert worker.name == "gelf-logger"
        assert worker.is_alive()

    def test_nothing_started_without_gelf_server(self, server):
        assert server.gelf_queue is None
        assert server.gelf_worker_thread is None


class TestRequestSummaries:
    """Each metered S3 request queues one summary without blocking."""

    def test_summary_describes_s3_request(self, gelf_server, queued):
        client = gelf_server.app.test_client()
        client.get("/photos/cat.jpg", environ_base={"REMOTE_ADDR": "10.3.3.3"})

        queued.assert_called_once()
        message, summary = queued.call_args.args[0]
        assert message.startswith("GetObject GET /photos/cat.jpg 200 ")
        assert message.endswith("ms")
        assert summary["action"] == "GetObject"
        assert (summary["bucket"], summary["key"]) == ("photos", "cat.jpg")
        assert summary["client_addr"] == "10.3.3.3"
        assert summary["internal"] is True
        assert summary["response_status"] == 200
        assert summary["request_id"]

    def test_forwarded_client_is_the_logged_client(self, gelf_server, queued):
        """Test that the summary keeps the peer and the forwarded client apart."""
        client = gelf_server.app.test_client()
        client.get(
            "/photos/cat.jpg",
            headers={"X-Forwarded-For": "203.0.113.5, 10.0.0.1"},
            environ_base={"REMOTE_ADDR": "10.0.0.1"},
        )

        [summary] = summaries(queued)
        assert summary["remote_addr"] == "10.0.0.1"
        assert summary["client_addr"] == "203.0.113.5"
        assert summary["internal"] is False

    def test_request_and_response_sizes(self, gelf_server, queued):
        client = gelf_server.app.test_client()
        client.put("/photos/dog.jpg", data=b"woof")

        [summary] = summaries(queued)
        assert summary["action"] == "PutObject"
        assert summary["request_size"] == 4
        assert summary["response_size"] == 0

    def test_gateway_endpoints_not_shipped(self, gelf_server, queued):
        client = gelf_server.app.test_client()
        client.get("/s3meter-status")
        client.get("/s3meter-metrics")

        queued.assert_not_called()

    def test_actions_in_request_order(self, gelf_server, queued):
        client = gelf_server.app.test_client()
        client.get("/photos/cat.jpg")
        client.put("/photos/dog.jpg", data=b"woof")
        client.delete("/photos/dog.jpg")
        client.options("/photos/dog.jpg")

        assert [s["action"] for s in summaries(queued)] == [
            "GetObject",
            "PutObject",
            "DeleteObject",
            "Unrecognized",
        ]

    def test_full_queue_drops_but_serves(self, gelf_server):
        """Test that a saturated queue costs log entries, never responses."""
        client = gelf_server.app.test_client()

        with patch.object(gelf_server.gelf_queue, "put_nowait", side_effect=queue.Full):
            responses = [client.get("/photos/cat.jpg") for _ in range(3)]

        assert [r.status_code for r in responses] == [200, 200, 200]
        assert gelf_server.gelf_drops == 3


class TestGELFWorker:
    """The worker drains the queue into the graypy logger."""

    def test_entries_forwarded_with_extra_fields(self, gelf_server):
        gelf_server.gelf_logger = MagicMock()
        entry = ("PutObject PUT /photos/dog.jpg 200 3ms", {"action": "PutObject", "bucket": "photos"})

        gelf_server.gelf_queue.put(entry)
        gelf_server.gelf_queue.join()

        gelf_server.gelf_logger.info.assert_called_once_with(entry[0], extra=entry[1])

    def test_worker_survives_send_errors(self, gelf_server):
        gelf_server.gelf_logger = MagicMock()
        gelf_server.gelf_logger.info.side_effect = [OSError("graylog unreachable"), None]

        gelf_server.gelf_queue.put(("first", {"bucket": "photos"}))
        gelf_server.gelf_queue.put(("second", {"bucket": "photos"}))

        deadline = time.time() + 2
        while gelf_server.gelf_logger.info.call_count < 2 and time.time() < deadline:
            time.sleep(0.05)

        assert gelf_server.gelf_logger.info.call_count == 2
        assert gelf_server.gelf_worker_thread.is_alive()

    def test_none_stops_worker(self, gelf_server):
        gelf_server.gelf_queue.put(None)
        gelf_server.gelf_worker_thread.join(timeout=2.0)

        assert not gelf_server.gelf_worker_thread.is_alive()

    def test_shutdown_is_idempotent(self, gelf_server):
        gelf_server.gelf_logger = MagicMock()

        gelf_server._graceful_shutdown()
        assert not gelf_server.gelf_worker_thread.is_alive()

        gelf_server._graceful_shutdown()
        assert gelf_server._shutdown_in_progress is True
