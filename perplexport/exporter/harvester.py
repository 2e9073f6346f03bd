"""Passive capture of thread detail responses observed on the page."""

from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional, Set

from playwright.sync_api import Page, Response

from . import config
from .conversation import merge_entries
from .utils import debug_line, log_line

_ARTIFACT_MARKERS = ("/rest/artifact", "/api/v1/artifact")
_REMOTE_FAILURE_STATUSES = {"failed", "error"}


def thread_id_from_api_url(url: str) -> Optional[str]:
    """Return the thread id of a ``/rest/thread/<id>`` URL, else ``None``."""

    if config.THREAD_API_MARKER not in url:
        return None
    tail = url.split(config.THREAD_API_MARKER, 1)[1]
    thread_id = tail.split("?", 1)[0].split("#", 1)[0].strip("/")
    if not thread_id or thread_id in config.NON_THREAD_IDS:
        return None
    return thread_id


def _remote_error_message(payload: Dict[str, Any]) -> Optional[str]:
    status = str(payload.get("status") or "").strip().lower()
    if status in _REMOTE_FAILURE_STATUSES or "error_code" in payload:
        detail = payload.get("error_code") or payload.get("message") or payload.get("error") or status
        return f"Perplexity API Error: {detail}"
    return None


class ResponseHarvester:
    """Reconcile every thread payload the page fetches into one buffer per id.

    The first payload for an id becomes the buffer. Later payloads only add
    entries whose ``uuid`` is unseen, and overwrite the cursor whenever they
    carry pagination info. All access goes through a lock because readers may
    live on a different thread than the Playwright event dispatch.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buffers: Dict[str, Dict[str, Any]] = {}
        self._errors: Dict[str, str] = {}
        self.artifact_urls: Set[str] = set()

    def attach(self, page: Page) -> None:
        page.on("response", self.observe)

    def observe(self, response: Response) -> None:
        try:
            url = response.url
            method = response.request.method
        except Exception as exc:  # noqa: BLE001
            debug_line(f"[API-HARVEST] error reading response: {exc}")
            return

        if method != "GET":
            return

        if any(marker in url for marker in _ARTIFACT_MARKERS):
            with self._lock:
                self.artifact_urls.add(url)
            debug_line(f"[ARTIFACT-INTERCEPT] Caught potential artifact response: {url}")
            return

        thread_id = thread_id_from_api_url(url)
        if thread_id is None:
            return

        try:
            payload = response.json()
        except Exception as exc:  # noqa: BLE001
            debug_line(f"[API-HARVEST] non-JSON response for {thread_id}: {exc}")
            return

        self.ingest(thread_id, payload)

    def ingest(self, thread_id: str, payload: Any) -> None:
        """Fold one decoded payload into the buffer for ``thread_id``."""

        if not isinstance(payload, dict):
            return

        remote_error = _remote_error_message(payload)
        if remote_error:
            with self._lock:
                self._errors[thread_id] = remote_error
            log_line(f"[API-HARVEST] {thread_id}: {remote_error}")
            return

        entries = payload.get("entries")
        if not isinstance(entries, list):
            return

        has_cursor = bool(payload.get("has_next_page") or payload.get("next_cursor"))
        debug_line(
            f"[API-HARVEST] Caught response for {thread_id} "
            f"(Entries: {len(entries)}, hasMore: {has_cursor})"
        )

        with self._lock:
            existing = self._buffers.get(thread_id)
            if existing is None:
                buffer = dict(payload)
                buffer["entries"] = list(entries)
                self._buffers[thread_id] = buffer
                return

            before = len(existing["entries"])
            existing["entries"] = merge_entries(existing["entries"], entries)
            added = len(existing["entries"]) - before
            if has_cursor:
                existing["has_next_page"] = payload.get("has_next_page")
                existing["next_cursor"] = payload.get("next_cursor")

        if added:
            debug_line(f"[API-MERGE] Added {added} new entries to {thread_id}. (Total: {before + added})")

    def get_buffer(self, thread_id: str) -> Optional[Dict[str, Any]]:
        """Return a snapshot of the buffer for ``thread_id`` or ``None``."""

        with self._lock:
            buffer = self._buffers.get(thread_id)
            if buffer is None:
                return None
            snapshot = dict(buffer)
            snapshot["entries"] = list(buffer["entries"])
            return snapshot

    def remote_error(self, thread_id: str) -> Optional[str]:
        with self._lock:
            return self._errors.get(thread_id)

    def discard(self, thread_id: str) -> None:
        with self._lock:
            self._buffers.pop(thread_id, None)
            self._errors.pop(thread_id, None)

    def take_artifact_urls(self) -> List[str]:
        """Return and forget the artifact URLs seen since the last call."""

        with self._lock:
            urls = sorted(self.artifact_urls)
            self.artifact_urls.clear()
        return urls

    def buffered_ids(self) -> List[str]:
        with self._lock:
            return list(self._buffers)


__all__ = ["ResponseHarvester", "thread_id_from_api_url"]
