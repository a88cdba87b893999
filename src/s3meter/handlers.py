# src/s3meter/handlers.py
"""
Built-in canned-response backend.

Each S3 action can be given a canned response in a YAML file (RESPONSES_FILE):

    GetObject:
      mediatype: application/octet-stream
      base64: false
      responsestatus: 200
      headers:
        ETag: '"5d41402abc4b2a76b9719d911017c592"'
      body: "hello from {{ bucket }}/{{ key }}"

Bodies and header values are Jinja2 templates rendered in a sandbox. Actions without an entry
get an empty 204.
"""

import base64
import hashlib
import logging
import os
import time
from typing import Any, Callable, Dict, Optional

import yaml
from flask import Response, g, request
from jinja2.sandbox import SandboxedEnvironment

from s3meter.tracking import Tracker

logger = logging.getLogger(__name__)


def _md5_filter(value: str) -> str:
    """Jinja2 filter returning the hex MD5 of a string, handy for ETags.

    Example:
        {{ "hello" | md5 }} -> "5d41402abc4b2a76b9719d911017c592"
    """
    if not isinstance(value, str):
        value = str(value)
    return hashlib.md5(value.encode("utf-8")).hexdigest()


# Sandboxed to keep templates from reaching Python internals
_jinja_env = SandboxedEnvironment(autoescape=False)
_jinja_env.globals.clear()
_jinja_env.filters["md5"] = _md5_filter


def load_responses(file_path: str) -> Optional[Dict[str, Any]]:
    """Load the canned response table from a YAML file."""
    if not os.path.exists(file_path):
        return None

    with open(file_path, "r") as file:
        try:
            result = yaml.safe_load(file)
            return result if isinstance(result, dict) else None
        except yaml.YAMLError as e:
            logger.error("Error loading YAML file: %s", e)
            return None


def generate_response(body_template: str, context: Dict[str, Any]) -> str:
    """Render a response body template with the request context."""
    template = _jinja_env.from_string(body_template)
    rendered: str = template.render(**context)
    return rendered


def _template_context(action: str, bucket: str, key: str, tracker: Tracker) -> Dict[str, Any]:
    return {
        "action": action,
        "bucket": bucket,
        "key": key,
        "method": request.method,
        "query": request.args.to_dict(),
        "headers": dict(request.headers),
        "request_id": getattr(g, "request_id", ""),
        "internal": tracker.is_internal(request),
    }


def make_handler(action: str, tracker: Tracker) -> Callable[..., Response]:
    """Build the view serving canned responses for one S3 action."""

    def handle_action(*args, **kwargs) -> Response:
        start = time.monotonic()

        body = request.get_data(cache=True)
        if body:
            tracker.bucket_traffic_received(len(body), request)

        responses_file = os.getenv("RESPONSES_FILE", "responses.yaml")
        config = load_responses(responses_file) or {}
        method_config = config.get(action)
        if not method_config:
            logger.debug(f"No canned response for action {action}")
            return Response("", status=204)

        bucket, key = tracker.bucket_and_object(request)
        context = _template_context(action, bucket, key, tracker)
        body_str = generate_response(str(method_config.get("body", "")), context)

        if method_config.get("base64"):
            payload = base64.b64decode(body_str.encode("utf-8"))
        else:
            payload = body_str.encode("utf-8")

        response = Response(
            response=payload,
            status=method_config.get("responsestatus", 200),
            mimetype=method_config.get("mediatype", "application/octet-stream"),
        )
        for name, value in (method_config.get("headers") or {}).items():
            response.headers[name] = generate_response(str(value), context)

        tracker.time_to_first_byte(action, start, request)
        if request.method != "HEAD":
            tracker.bucket_traffic_sent(len(payload), request)
        return response

    handle_action.__name__ = f"handle_{action}"
    return handle_action
