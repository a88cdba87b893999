# src/s3meter/actions.py
"""
S3 action name resolution.

Maps method, addressed resource and query/header markers to the action name
used to label metrics (``GetObject``, ``UploadPart``, ...). The rule table is
ordered: the first matching rule wins, so more specific rules (multipart,
copy, subresources) sit above the plain method rules.
"""

from typing import Callable, List, Mapping, NamedTuple, Tuple

UNRECOGNIZED = "Unrecognized"

# Query-string subresources and the action suffix they select
SUBRESOURCES: Tuple[Tuple[str, str], ...] = (
    ("acl", "Acl"),
    ("cors", "Cors"),
    ("encryption", "Encryption"),
    ("lifecycle", "LifecycleConfiguration"),
    ("object-lock", "ObjectLockConfiguration"),
    ("policy", "Policy"),
    ("retention", "Retention"),
    ("legal-hold", "LegalHold"),
    ("tagging", "Tagging"),
    ("versioning", "Versioning"),
)

Predicate = Callable[[Mapping[str, str], Mapping[str, str]], bool]


class ActionRule(NamedTuple):
    method: str
    scope: str  # "service", "bucket" or "object"
    when: Predicate
    action: str


def _always(args, headers) -> bool:
    return True


def _has_arg(*names: str) -> Predicate:
    return lambda args, headers: all(name in args for name in names)


def _has_header(name: str) -> Predicate:
    return lambda args, headers: bool(headers.get(name))


def _both(first: Predicate, second: Predicate) -> Predicate:
    return lambda args, headers: first(args, headers) and second(args, headers)


def _subresource_rules() -> List[ActionRule]:
    rules = []
    for arg, suffix in SUBRESOURCES:
        rules.extend(
            [
                ActionRule("GET", "object", _has_arg(arg), f"GetObject{suffix}"),
                ActionRule("PUT", "object", _has_arg(arg), f"PutObject{suffix}"),
                ActionRule("DELETE", "object", _has_arg(arg), f"DeleteObject{suffix}"),
                ActionRule("GET", "bucket", _has_arg(arg), f"GetBucket{suffix}"),
                ActionRule("PUT", "bucket", _has_arg(arg), f"PutBucket{suffix}"),
                ActionRule("DELETE", "bucket", _has_arg(arg), f"DeleteBucket{suffix}"),
            ]
        )
    return rules


ACTION_RULES: Tuple[ActionRule, ...] = tuple(
    [
        # Object level
        ActionRule(
            "PUT",
            "object",
            _both(_has_arg("partNumber", "uploadId"), _has_header("x-amz-copy-source")),
            "UploadPartCopy",
        ),
        ActionRule("PUT", "object", _has_arg("partNumber", "uploadId"), "UploadPart"),
        ActionRule("PUT", "object", _has_header("x-amz-copy-source"), "CopyObject"),
        ActionRule("POST", "object", _has_arg("uploads"), "CreateMultipartUpload"),
        ActionRule("POST", "object", _has_arg("uploadId"), "CompleteMultipartUpload"),
        ActionRule("POST", "object", _has_arg("select"), "SelectObjectContent"),
        ActionRule("POST", "object", _has_arg("restore"), "RestoreObject"),
        ActionRule("DELETE", "object", _has_arg("uploadId"), "AbortMultipartUpload"),
        ActionRule("GET", "object", _has_arg("uploadId"), "ListParts"),
        ActionRule("GET", "object", _has_arg("attributes"), "GetObjectAttributes"),
        # Bucket level
        ActionRule("GET", "bucket", _has_arg("uploads"), "ListMultipartUploads"),
        ActionRule("GET", "bucket", _has_arg("location"), "GetBucketLocation"),
        ActionRule("GET", "bucket", _has_arg("versions"), "ListObjectVersions"),
        ActionRule("POST", "bucket", _has_arg("delete"), "DeleteObjects"),
    ]
    + _subresource_rules()
    + [
        ActionRule("GET", "object", _always, "GetObject"),
        ActionRule("HEAD", "object", _always, "HeadObject"),
        ActionRule("PUT", "object", _always, "PutObject"),
        ActionRule("DELETE", "object", _always, "DeleteObject"),
        ActionRule(
            "GET",
            "bucket",
            lambda args, headers: args.get("list-type") == "2",
            "ListObjectsV2",
        ),
        ActionRule("GET", "bucket", _always, "ListObjects"),
        ActionRule("HEAD", "bucket", _always, "HeadBucket"),
        ActionRule("PUT", "bucket", _always, "CreateBucket"),
        ActionRule("POST", "bucket", _always, "PostObject"),
        ActionRule("DELETE", "bucket", _always, "DeleteBucket"),
        ActionRule("GET", "service", _always, "ListBuckets"),
    ]
)

KNOWN_ACTIONS: Tuple[str, ...] = tuple(dict.fromkeys(rule.action for rule in ACTION_RULES)) + (
    UNRECOGNIZED,
)


def resolve_action(
    method: str,
    bucket: str,
    key: str,
    args: Mapping[str, str],
    headers: Mapping[str, str],
) -> str:
    """Return the S3 action name for a request, or ``UNRECOGNIZED``.

    ``UNRECOGNIZED`` matches none of the billing patterns, so such requests are
    billed by HTTP method alone.
    """
    if key:
        scope = "object"
    elif bucket:
        scope = "bucket"
    else:
        scope = "service"

    method = method.upper()
    for rule in ACTION_RULES:
        if rule.method == method and rule.scope == scope and rule.when(args, headers):
            return rule.action
    return UNRECOGNIZED
