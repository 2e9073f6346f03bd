"""Correlate browser download events with the action that caused them."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from playwright.sync_api import Download, Page

from . import config
from .error_codes import DownloadError, ErrorCode
from .logging_utils import _export_event
from .utils import log_line, sanitize_filename

IDLE = "idle"
ARMED = "armed"
RESOLVED = "resolved"

_POLL_SECONDS = 0.1
_RATE_LIMIT_MARKERS = ("429", "rate limit", "too many requests")


def classify_download_failure(message: str) -> DownloadError:
    """Turn a cancelled/interrupted download reason into a ``DownloadError``."""

    text = message or "Unknown error"
    lowered = text.lower()
    if any(marker in lowered for marker in _RATE_LIMIT_MARKERS):
        return DownloadError(ErrorCode.RATE_LIMITED, f"Download failed: {text}", http_status=429)
    return DownloadError(ErrorCode.DOWNLOAD_FAILED, f"Download failed: {text}")


@dataclass
class _Signal:
    done: threading.Event = field(default_factory=threading.Event)
    download: Optional[Any] = None
    path: Optional[Path] = None
    error: Optional[DownloadError] = None
    resolved: bool = False
    waiters: int = 0


class DownloadSynchronizer:
    """Single-slot waiter for the next browser download.

    At most one signal is outstanding. ``await_next_download`` arms it
    (``IDLE -> ARMED``), a download event or a timeout resolves it
    (``ARMED -> RESOLVED``) and the slot returns to ``IDLE`` once the outcome
    is delivered. A caller arriving while the slot is armed joins the same
    signal and sees the same path or the same error.

    ``pump(seconds)`` is called while waiting so the browser can dispatch
    events; the sync Playwright API only delivers ``download`` events while
    the driver is inside a Playwright call.
    """

    def __init__(self, download_dir: Path, pump: Optional[Callable[[float], None]] = None) -> None:
        self.download_dir = Path(download_dir)
        self._pump = pump
        self._lock = threading.Lock()
        self._signal: Optional[_Signal] = None
        self._state = IDLE

    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    @property
    def waiter_count(self) -> int:
        with self._lock:
            return self._signal.waiters if self._signal is not None else 0

    def attach(self, page: Page) -> None:
        page.on("download", self.handle_download)
        if self._pump is None:
            self._pump = lambda seconds: page.wait_for_timeout(int(seconds * 1000))

    def handle_download(self, download: Download) -> None:
        """Park an incoming download on the armed signal; the owner saves it."""

        with self._lock:
            signal = self._signal
            if signal is None or signal.resolved or signal.download is not None:
                log_line(f"[DL] Ignoring unsolicited download: {_suggested_name(download)}")
                return
            signal.download = download

    def notify_completed(self, path: Path) -> None:
        self._resolve(path=Path(path))

    def notify_failed(self, message: str) -> None:
        self._resolve(error=classify_download_failure(message))

    def _resolve(self, *, path: Optional[Path] = None, error: Optional[DownloadError] = None) -> None:
        with self._lock:
            signal = self._signal
            if signal is None or signal.resolved:
                return
            signal.path = path
            signal.error = error
            signal.resolved = True
            self._state = RESOLVED
            signal.done.set()

    def _arm(self) -> tuple[_Signal, bool]:
        with self._lock:
            if self._signal is not None and not self._signal.resolved:
                self._signal.waiters += 1
                return self._signal, False
            self._signal = _Signal(waiters=1)
            self._state = ARMED
            return self._signal, True

    def _release(self, signal: _Signal) -> None:
        with self._lock:
            signal.waiters -= 1
            if self._signal is signal and signal.resolved and signal.waiters <= 0:
                self._signal = None
                self._state = IDLE

    def _wait_step(self, signal: _Signal, remaining: float) -> None:
        step = max(0.0, min(_POLL_SECONDS, remaining))
        if self._pump is not None:
            self._pump(step)
        else:
            signal.done.wait(step)

    def _finalize(self, download: Any) -> None:
        try:
            failure = download.failure()
        except Exception as exc:  # noqa: BLE001
            failure = str(exc)
        if failure:
            self.notify_failed(str(failure))
            return
        self.download_dir.mkdir(parents=True, exist_ok=True)
        target = self.download_dir / sanitize_filename(_suggested_name(download))
        try:
            download.save_as(str(target))
        except Exception as exc:  # noqa: BLE001
            self.notify_failed(str(exc))
            return
        self.notify_completed(target)

    def _own(self, signal: _Signal, trigger: Optional[Callable[[], Any]], timeout: float) -> None:
        if trigger is not None:
            try:
                trigger()
            except Exception as exc:  # noqa: BLE001
                self._resolve(
                    error=DownloadError(ErrorCode.DOWNLOAD_FAILED, f"Download trigger failed: {exc}")
                )
                return

        deadline = time.monotonic() + max(0.0, timeout)
        while not signal.resolved:
            if signal.download is not None:
                self._finalize(signal.download)
                return
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._resolve(
                    error=DownloadError(ErrorCode.DOWNLOAD_TIMEOUT, f"Download timeout after {timeout:g}s")
                )
                return
            self._wait_step(signal, remaining)

    def await_next_download(
        self,
        trigger: Optional[Callable[[], Any]] = None,
        *,
        timeout: float = config.DOWNLOAD_TIMEOUT_SECONDS,
    ) -> Path:
        """Wait for the next download and return where it was saved.

        Raises ``DownloadError`` with ``rate_limited`` (HTTP 429),
        ``download_failed`` or ``download_timeout``. A joining caller's
        ``trigger`` and ``timeout`` are ignored; it waits for the owner.
        """

        signal, owner = self._arm()
        _export_event("download", debug=True, step="armed" if owner else "joined", waiters=signal.waiters)
        try:
            if owner:
                try:
                    self._own(signal, trigger, timeout)
                finally:
                    if not signal.resolved:
                        self._resolve(
                            error=DownloadError(ErrorCode.DOWNLOAD_FAILED, "Download wait aborted")
                        )
            else:
                signal.done.wait()

            if signal.error is not None:
                raise signal.error
            if signal.path is None:
                raise DownloadError(ErrorCode.DOWNLOAD_FAILED, "Download resolved without a file")
            return signal.path
        finally:
            self._release(signal)


def _suggested_name(download: Any) -> str:
    try:
        return download.suggested_filename or "download"
    except Exception:  # noqa: BLE001
        return "download"


__all__ = [
    "IDLE",
    "ARMED",
    "RESOLVED",
    "DownloadSynchronizer",
    "classify_download_failure",
]
