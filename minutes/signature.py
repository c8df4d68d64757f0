from __future__ import annotations

import hashlib
import hmac
import time
from typing import Mapping, Optional

from .errors import AuthError

SIGNATURE_VERSION = "v0"
TIMESTAMP_HEADERS = ("x-request-timestamp", "x-slack-request-timestamp")
SIGNATURE_HEADERS = ("x-signature", "x-slack-signature")


def _first_header(headers: Mapping[str, str], names: tuple[str, ...]) -> Optional[str]:
    lowered = {key.lower(): value for key, value in headers.items()}
    for name in names:
        value = lowered.get(name)
        if value:
            return value
    return None


def compute_signature(secret: str, timestamp: str, body: bytes) -> str:
    base = f"{SIGNATURE_VERSION}:{timestamp}:".encode("utf-8") + body
    digest = hmac.new(secret.encode("utf-8"), base, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_VERSION}={digest}"


def verify_signature(
    secret: str,
    headers: Mapping[str, str],
    body: bytes,
    *,
    tolerance_s: int = 300,
    now: Optional[float] = None,
) -> None:
    if not secret:
        raise AuthError("signing secret is not configured")

    timestamp = _first_header(headers, TIMESTAMP_HEADERS)
    signature = _first_header(headers, SIGNATURE_HEADERS)
    if not timestamp or not signature:
        raise AuthError("missing signature headers")

    try:
        ts_value = int(timestamp)
    except ValueError as exc:
        raise AuthError(f"invalid request timestamp: {timestamp!r}") from exc

    current = time.time() if now is None else now
    if abs(current - ts_value) > tolerance_s:
        raise AuthError("request timestamp outside replay window")

    expected = compute_signature(secret, timestamp, body)
    if not hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8")):
        raise AuthError("signature mismatch")
