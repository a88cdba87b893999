"""
Pytest configuration and fixtures for the s3meter test suite.
"""

from unittest.mock import patch

import pytest
import yaml

from server import Server


@pytest.fixture
def server(set_test_env):
    """Create a Server instance with GELF mocked out."""
    with patch("server.graypy"):  # Mock GELF to avoid network calls
        server = Server()
        server.app.config["TESTING"] = True
        server.app.config["SERVER_INSTANCE"] = server  # Store server instance for tests
        yield server
        # Cleanup: Stop the GELF worker if a test enabled it
        if server.gelf_worker_thread:
            server.gelf_queue.put(None)
            server.gelf_worker_thread.join(timeout=2)


@pytest.fixture
def app(server):
    """The Flask application of the test server."""
    return server.app


@pytest.fixture
def client(app):
    """Create a Flask test client."""
    return app.test_client()


@pytest.fixture
def metric(server):
    """Read a sample value from the test server's metrics registry (0.0 if absent)."""

    def _metric(name, **labels):
        value = server.registry.get_sample_value(name, labels)
        return 0.0 if value is None else value

    return _metric


@pytest.fixture
def sample_responses_yaml(tmp_path):
    """Create a temporary responses.yaml file for testing."""
    responses = {
        "GetObject": {
            "mediatype": "text/plain",
            "base64": False,
            "responsestatus": 200,
            "headers": {"ETag": '"{{ key | md5 }}"'},
            "body": "object {{ key }} in {{ bucket }}",
        },
        "HeadObject": {
            "mediatype": "text/plain",
            "base64": False,
            "responsestatus": 200,
            "body": "",
        },
        "PutObject": {
            "mediatype": "application/xml",
            "base64": False,
            "responsestatus": 200,
            "body": "",
        },
        "CopyObject": {
            "mediatype": "application/xml",
            "base64": False,
            "responsestatus": 200,
            "body": "<CopyObjectResult><ETag>{{ request_id }}</ETag></CopyObjectResult>",
        },
        "GetBucketAcl": {
            "mediatype": "application/xml",
            "base64": False,
            "responsestatus": 403,
            "body": "<Error><Code>AccessDenied</Code></Error>",
        },
        "ListBuckets": {
            "mediatype": "application/octet-stream",
            "base64": True,
            "responsestatus": 200,
            "body": "aGVsbG8=",
        },
    }

    responses_file = tmp_path / "responses.yaml"
    with open(responses_file, "w") as f:
        yaml.dump(responses, f)

    return str(responses_file)


@pytest.fixture(autouse=True)
def set_test_env(monkeypatch, sample_responses_yaml):
    """Set environment variables for testing."""
    monkeypatch.setenv("RESPONSES_FILE", sample_responses_yaml)
    monkeypatch.setenv("DEBUG_LEVEL", "DEBUG")
    monkeypatch.setenv("TESTING", "true")  # Disable signal handlers in tests
    monkeypatch.setenv("S3_INTERNAL_CIDRS", "10.0.0.0/8, 192.168.0.0/16")
    # Don't set GELF_SERVER to avoid network calls in tests
    monkeypatch.delenv("GELF_SERVER", raising=False)
    monkeypatch.delenv("S3_DOMAIN_NAME", raising=False)
    monkeypatch.delenv("HEALTHCHECK_ALLOWED", raising=False)
