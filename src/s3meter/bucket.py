# src/s3meter/bucket.py

import logging
from typing import Sequence, Tuple

logger = logging.getLogger(__name__)


def parse_domains(value: str) -> Tuple[str, ...]:
    """Parse a comma separated list of virtual-host domains."""
    return tuple(d.strip().lower().strip(".") for d in (value or "").split(",") if d.strip())


def extract_bucket_and_object(request, domains: Sequence[str] = ()) -> Tuple[str, str]:
    """
    Extract the bucket and object key addressed by an S3 request.

    Virtual-host style (``bucket.s3.example.com/key``) is recognised when the
    Host header ends in one of ``domains``; otherwise path style
    (``/bucket/key``) is assumed.

    Never raises: anything unexpected yields ``("", "")``.
    """
    try:
        path = request.path or "/"
        if domains:
            host = (request.host or "").lower()
            if not host.startswith("["):
                host = host.rsplit(":", 1)[0]
            for domain in domains:
                if host.endswith("." + domain):
                    return host[: -len(domain) - 1], path.lstrip("/")

        bucket, _, key = path.lstrip("/").partition("/")
        return bucket, key
    except Exception as e:
        logger.debug(f"Could not extract bucket from request: {e}")
        return "", ""
