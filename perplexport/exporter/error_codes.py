"""Error taxonomy for export failures.

Codes are written to ``errors.json`` / ``skipped.json`` and included in
structured logs so a skipped thread can be explained and retried by hand.
"""

from __future__ import annotations

from typing import Optional


class ErrorCode:
    TRANSIENT_NETWORK = "transient_network"
    FETCH_TIMEOUT = "fetch_timeout"
    AUTH_EXPIRED = "auth_expired"
    RATE_LIMITED = "rate_limited"
    REMOTE_API = "remote_api_error"
    PARSE_AMBIGUOUS = "parse_ambiguous"
    FATAL_LOCAL = "fatal_local"
    DOWNLOAD_FAILED = "download_failed"
    DOWNLOAD_TIMEOUT = "download_timeout"
    NOT_MEDIA = "not_media"
    INTERNAL = "internal_error"


class ExportError(Exception):
    """Base class for classified exporter failures."""

    default_code = ErrorCode.INTERNAL

    def __init__(self, message: str, *, error_code: Optional[str] = None) -> None:
        super().__init__(message)
        self.error_code = error_code or self.default_code

    def __str__(self) -> str:  # pragma: no cover - inherited behaviour
        return str(self.args[0]) if self.args else ""


class RemoteAPIError(ExportError):
    """The thread API answered with its own error payload."""

    default_code = ErrorCode.REMOTE_API


class FetchTimeoutError(ExportError):
    """The thread detail endpoint never answered within the wait budget."""

    default_code = ErrorCode.FETCH_TIMEOUT


class AuthExpiredError(ExportError):
    """The page shows the login surface instead of the requested content."""

    default_code = ErrorCode.AUTH_EXPIRED


class FatalLocalError(ExportError):
    """Local storage failed; the whole run must stop."""

    default_code = ErrorCode.FATAL_LOCAL


class DownloadError(ExportError):
    def __init__(self, error_code: str, message: str, *, http_status: int | None = None) -> None:
        super().__init__(message, error_code=error_code)
        self.http_status = http_status

    @property
    def is_rate_limited(self) -> bool:
        return self.error_code == ErrorCode.RATE_LIMITED


__all__ = [
    "ErrorCode",
    "ExportError",
    "RemoteAPIError",
    "FetchTimeoutError",
    "AuthExpiredError",
    "FatalLocalError",
    "DownloadError",
]
