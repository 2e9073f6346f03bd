from __future__ import annotations

from typing import Optional

from playwright.sync_api import Error as PWError, TimeoutError as PWTimeout

from . import config
from .error_codes import ErrorCode, ExportError
from .logging_utils import _export_event

RETRYABLE_ERROR_CODES = {
    ErrorCode.TRANSIENT_NETWORK,
    ErrorCode.FETCH_TIMEOUT,
    ErrorCode.AUTH_EXPIRED,
    ErrorCode.RATE_LIMITED,
    ErrorCode.DOWNLOAD_TIMEOUT,
    # Generic failures get the short-backoff treatment.
    ErrorCode.INTERNAL,
}

NON_RETRYABLE_ERROR_CODES = {
    # Error payload from the thread API.
    ErrorCode.REMOTE_API,
    # Run-scoped environmental failure.
    ErrorCode.FATAL_LOCAL,
    # Degrade instead of retrying.
    ErrorCode.PARSE_AMBIGUOUS,
    ErrorCode.NOT_MEDIA,
    ErrorCode.DOWNLOAD_FAILED,
}

_NETWORK_MARKERS = (
    "net::ERR_",
    "ECONNRESET",
    "ECONNREFUSED",
    "Connection reset",
    "Connection closed",
    "socket hang up",
)


def classify_exception(exc: BaseException) -> str:
    """Map an exception raised while fetching a thread onto an ``ErrorCode``."""

    if isinstance(exc, ExportError):
        return exc.error_code
    if isinstance(exc, PWTimeout):
        return ErrorCode.TRANSIENT_NETWORK
    if isinstance(exc, PWError):
        message = str(exc)
        if any(marker in message for marker in _NETWORK_MARKERS):
            return ErrorCode.TRANSIENT_NETWORK
        return ErrorCode.INTERNAL
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return ErrorCode.TRANSIENT_NETWORK
    return ErrorCode.INTERNAL


def compute_backoff_seconds(attempt_index: int, error_code: Optional[str] = None) -> float:
    """Return the pause before the next attempt (``attempt_index`` is 1-based)."""

    if error_code == ErrorCode.RATE_LIMITED:
        return float(config.RATE_LIMIT_COOLDOWN_SECONDS)
    if error_code == ErrorCode.AUTH_EXPIRED:
        # Re-login already waited for the session to come back.
        return 0.0
    if error_code == ErrorCode.FETCH_TIMEOUT:
        return float(config.FETCH_TIMEOUT_BACKOFF_SECONDS)
    return float(config.RETRY_BACKOFF_SECONDS)


def decide_retry(
    attempt_index: int,
    max_attempts: int,
    error: BaseException | None = None,
    *,
    error_code: Optional[str] = None,
    http_status: Optional[int] = None,
) -> bool:
    """Decide whether a failed attempt should be retried."""

    code = (error_code or "").strip()
    if code in NON_RETRYABLE_ERROR_CODES:
        _export_event(
            "state",
            phase="retry_decision",
            kind="non_retryable",
            error_code=code,
            attempt=attempt_index,
            max_attempts=max_attempts,
            http_status=http_status,
            will_retry=False,
        )
        return False

    if attempt_index >= max_attempts:
        _export_event(
            "state",
            phase="retry_decision",
            kind="capped",
            attempt=attempt_index,
            max_attempts=max_attempts,
            error_code=code or None,
            http_status=http_status,
            will_retry=False,
        )
        return False

    if code in RETRYABLE_ERROR_CODES:
        _export_event(
            "state",
            phase="retry_decision",
            kind="retryable",
            error_code=code,
            attempt=attempt_index,
            max_attempts=max_attempts,
            http_status=http_status,
            will_retry=True,
        )
        return True

    if http_status is not None and (http_status >= 500 or http_status == 429):
        _export_event(
            "state",
            phase="retry_decision",
            kind="retryable",
            error_code=code or None,
            attempt=attempt_index,
            max_attempts=max_attempts,
            http_status=http_status,
            will_retry=True,
        )
        return True

    # Unknown context: be conservative and allow a single retry if available.
    fallback_retry = attempt_index < max_attempts - 1
    _export_event(
        "state",
        phase="retry_decision",
        kind="unknown" if code else "missing_error_code",
        error_code=code or None,
        attempt=attempt_index,
        max_attempts=max_attempts,
        http_status=http_status,
        will_retry=fallback_retry,
        error_repr=repr(error) if error is not None else None,
    )
    return fallback_retry


__all__ = [
    "classify_exception",
    "decide_retry",
    "compute_backoff_seconds",
    "RETRYABLE_ERROR_CODES",
    "NON_RETRYABLE_ERROR_CODES",
]
