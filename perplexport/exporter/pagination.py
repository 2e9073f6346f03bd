"""Backward pagination for threads that arrive one page at a time."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote

from playwright.sync_api import Error as PWError, Page

from . import config
from .conversation import merge_entries
from .error_codes import ErrorCode, ExportError
from .logging_utils import _export_event
from .utils import debug_line

PageFetcher = Callable[[str, str], Dict[str, Any]]

_IN_PAGE_FETCH_JS = """
async ({ url }) => {
    try {
        const resp = await fetch(url, {
            method: "GET",
            credentials: "include",
            headers: { "Accept": "application/json" },
        });
        if (!resp.ok) {
            return { error: `HTTP ${resp.status}`, status: resp.status };
        }
        return await resp.json();
    } catch (e) {
        return { error: String(e && e.message ? e.message : e) };
    }
}
"""


class PageFetchError(ExportError):
    default_code = ErrorCode.TRANSIENT_NETWORK


@dataclass
class PaginationResult:
    conversation: Dict[str, Any]
    pages: int
    stopped_reason: str
    error: Optional[str] = None


def make_page_fetcher(page: Page) -> PageFetcher:
    """Return a fetcher that runs ``fetch()`` inside *page*.

    Running in the page means the request carries the browser's cookies and
    session, so older pages load with the same authentication as the first.
    """

    def fetch_page(thread_id: str, cursor: str) -> Dict[str, Any]:
        url = f"{config.THREAD_API_URL}/{thread_id}?cursor={quote(cursor, safe='')}"
        try:
            payload = page.evaluate(_IN_PAGE_FETCH_JS, {"url": url})
        except PWError as exc:
            raise PageFetchError(f"In-page fetch failed: {exc}") from exc
        if not isinstance(payload, dict):
            raise PageFetchError(f"Unexpected page payload: {type(payload).__name__}")
        if payload.get("error"):
            raise PageFetchError(str(payload["error"]))
        return payload

    return fetch_page


def complete_backward_pagination(
    thread_id: str,
    first_page: Dict[str, Any],
    fetch_page: PageFetcher,
    *,
    page_delay: float = config.PAGINATION_DELAY_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> PaginationResult:
    """Walk ``next_cursor`` until the thread is complete.

    Older pages are prepended so the merged entries read oldest first. The
    loop stops on an exhausted cursor, an empty page, a page with nothing new
    and on a ``has_next_page`` flag with no cursor. A failing page request
    stops the walk but keeps everything merged so far
    (``stopped_reason="error"``). The returned conversation never carries a
    cursor.
    """

    entries = list(first_page.get("entries") or [])
    cursor = first_page.get("next_cursor")
    has_next = bool(first_page.get("has_next_page"))
    pages = 1
    stopped_reason = "complete"
    error: Optional[str] = None

    if has_next and not cursor:
        stopped_reason = "missing_cursor"
        debug_line(
            f"[PAGINATION] Thread {thread_id} has no next_cursor on page 1. "
            "Assuming single-page thread."
        )

    while has_next and cursor:
        pages += 1
        debug_line(f"[PAGINATION] Fetching older page {pages} for {thread_id} (cursor: {str(cursor)[:20]}...)")
        sleep(page_delay)

        try:
            payload = fetch_page(thread_id, cursor)
        except Exception as exc:  # noqa: BLE001
            error = str(exc)
            stopped_reason = "error"
            _export_event(
                "error",
                phase="pagination",
                thread_id=thread_id,
                page=pages,
                error=error,
                kept_entries=len(entries),
            )
            break

        page_entries = payload.get("entries") or []
        if not page_entries:
            stopped_reason = "empty_page"
            debug_line(f"[PAGINATION] Page {pages} returned 0 entries. Stopping pagination early.")
            break

        before = len(entries)
        entries = merge_entries(entries, page_entries, prepend=True)
        added = len(entries) - before
        if added == 0:
            stopped_reason = "no_new_entries"
            debug_line(f"[PAGINATION] Page {pages} added nothing new. Stopping pagination.")
            break
        debug_line(f"[PAGINATION] Page {pages}: added {added} older entries.")

        has_next = bool(payload.get("has_next_page"))
        cursor = payload.get("next_cursor")
        if has_next and not cursor:
            stopped_reason = "missing_cursor"
            debug_line(
                f"[PAGINATION] API reports has_next_page but cursor is null for {thread_id}. "
                "Stopping pagination."
            )
            break

    conversation = dict(first_page)
    conversation["entries"] = entries
    conversation["has_next_page"] = False
    conversation["next_cursor"] = None

    _export_event(
        "state",
        phase="pagination",
        debug=True,
        thread_id=thread_id,
        pages=pages,
        entries=len(entries),
        stopped_reason=stopped_reason,
    )
    return PaginationResult(conversation, pages, stopped_reason, error)


__all__ = [
    "PageFetchError",
    "PaginationResult",
    "complete_backward_pagination",
    "make_page_fetcher",
]
