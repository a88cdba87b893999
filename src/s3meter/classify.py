# src/s3meter/classify.py

from enum import Enum
from typing import List, Tuple


class OperationCategory(str, Enum):
    """Billing category of a request. Values double as metric label values."""

    READ = "read"
    WRITE = "write"
    OTHER = "other"


# Evaluated top to bottom; the first rule whose pattern occurs in the
# lowercased action name wins. Read patterns must stay ahead of write ones.
ACTION_RULES: Tuple[Tuple[Tuple[str, ...], OperationCategory], ...] = (
    (("get", "head"), OperationCategory.READ),
    (
        (
            "put",
            "post",
            "delete",
            "copy",
            "create",
            "complete",
            "abort",
            "uploadpart",
            "list",
            "multipart",
        ),
        OperationCategory.WRITE,
    ),
)

METHOD_RULES: Tuple[Tuple[Tuple[str, ...], OperationCategory], ...] = (
    (("GET", "HEAD"), OperationCategory.READ),
    (("PUT", "POST", "DELETE"), OperationCategory.WRITE),
)

CONDITIONAL_HEADERS: Tuple[str, ...] = (
    "If-Match",
    "If-None-Match",
    "If-Modified-Since",
    "If-Unmodified-Since",
    "x-amz-copy-source-if-match",
    "x-amz-copy-source-if-none-match",
    "x-amz-copy-source-if-modified-since",
    "x-amz-copy-source-if-unmodified-since",
)


def classify(action: str, method: str) -> OperationCategory:
    """Classify a request by action name, falling back to the HTTP method."""
    name = (action or "").lower()
    for patterns, category in ACTION_RULES:
        if any(pattern in name for pattern in patterns):
            return category

    method = (method or "").upper()
    for methods, category in METHOD_RULES:
        if method in methods:
            return category
    return OperationCategory.OTHER


def is_conditional(headers) -> bool:
    """True if the request carries a non-empty precondition header.

    ``headers`` is any mapping with a case-insensitive ``get``, such as
    werkzeug's ``Headers``.
    """
    return any(headers.get(name) for name in CONDITIONAL_HEADERS)


def billing_events(category: OperationCategory, conditional: bool) -> List[OperationCategory]:
    """Counter increments owed for one request.

    A conditional write is billed as a write plus a read.
    """
    if category is OperationCategory.WRITE and conditional:
        return [OperationCategory.WRITE, OperationCategory.READ]
    return [category]
