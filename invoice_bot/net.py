"""Network-related helpers."""

from __future__ import annotations

import errno
import hmac
from typing import Optional

DISCONNECT_ERRNOS = {
    errno.EPIPE,
    errno.ECONNRESET,
    errno.ETIMEDOUT,
}
if hasattr(errno, "WSAECONNRESET"):
    DISCONNECT_ERRNOS.add(errno.WSAECONNRESET)  # pragma: no cover


def is_client_disconnect(exc: BaseException) -> bool:
    if isinstance(exc, (BrokenPipeError, ConnectionResetError, TimeoutError)):
        return True
    return isinstance(exc, OSError) and exc.errno in DISCONNECT_ERRNOS


def is_transient_status(status: Optional[int]) -> bool:
    """HTTP statuses worth retrying: rate limits, timeouts and server errors."""
    if status is None:
        return True
    return status in (408, 425, 429) or 500 <= status <= 599


def secrets_match(expected: str, provided: Optional[str]) -> bool:
    if not expected:
        return True
    if provided is None:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))
