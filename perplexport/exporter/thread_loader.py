"""Load one thread: navigate, harvest, paginate and order its entries."""

from __future__ import annotations

import time
from typing import Callable, Optional

from playwright.sync_api import Error as PWError, Page, TimeoutError as PWTimeout

from . import config
from .artifacts import extract_dom_urls, extract_inline_artifacts
from .conversation import ThreadData, sort_entries, thread_id_from_url
from .error_codes import FetchTimeoutError, RemoteAPIError
from .harvester import ResponseHarvester
from .logging_utils import _export_event
from .pagination import PageFetcher, complete_backward_pagination, make_page_fetcher
from .utils import debug_line, log_line, wait_seconds

_SCROLL_ALL_JS = """
async () => {
    const delay = (ms) => new Promise(res => setTimeout(res, ms));
    const scrollables = () => Array.from(document.querySelectorAll("*")).filter(el =>
        el.scrollHeight > el.clientHeight && el.clientHeight > 0
    );
    let lastTotal = 0;
    for (let i = 0; i < 15; i++) {
        let total = 0;
        for (const el of scrollables()) {
            el.scrollTop = el.scrollHeight;
            total += el.scrollHeight;
        }
        window.scrollTo(0, document.body.scrollHeight);
        total += document.body.scrollHeight;
        await delay(800);
        if (total === lastTotal) break;
        lastTotal = total;
    }
}
"""

_CONTENT_SELECTOR = 'main, [role="main"], .message-item'


class ThreadLoader:
    """Drive the browser to a thread and assemble its complete payload."""

    def __init__(
        self,
        page: Page,
        harvester: ResponseHarvester,
        fetch_page: Optional[PageFetcher] = None,
        *,
        fetch_wait: float = config.FETCH_WAIT_SECONDS,
        page_delay: float = config.PAGINATION_DELAY_SECONDS,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.page = page
        self.harvester = harvester
        self.fetch_page = fetch_page or make_page_fetcher(page)
        self.fetch_wait = fetch_wait
        self.page_delay = page_delay
        self._sleep = sleep or (lambda seconds: wait_seconds(page, seconds))

    def _navigate(self, url: str) -> None:
        try:
            self.page.goto(url, wait_until="domcontentloaded", timeout=config.NAV_TIMEOUT_SECONDS * 1000)
        except (PWTimeout, PWError) as exc:
            # The detail response often arrives even when navigation times out.
            log_line(f"[LOAD] Navigation error for {url}: {exc}")
            return
        self._scroll_to_bottom()

    def _scroll_to_bottom(self) -> None:
        """Trigger lazy loads so every page of the thread gets requested."""

        try:
            self.page.wait_for_selector(_CONTENT_SELECTOR, timeout=10000)
        except (PWTimeout, PWError):
            debug_line("[LOAD] Timed out waiting for thread content, proceeding anyway.")
        try:
            self.page.evaluate(_SCROLL_ALL_JS)
            for _ in range(3):
                self.page.keyboard.press("End")
                self._sleep(0.4)
        except PWError as exc:
            debug_line(f"[LOAD] Scroll helper failed: {exc}")
        # Late API calls land during this soak.
        self._sleep(2)

    def _wait_for_buffer(self, thread_id: str) -> dict:
        deadline = time.monotonic() + self.fetch_wait
        while True:
            remote_error = self.harvester.remote_error(thread_id)
            if remote_error:
                raise RemoteAPIError(remote_error)
            buffer = self.harvester.get_buffer(thread_id)
            if buffer is not None:
                return buffer
            if time.monotonic() >= deadline:
                raise FetchTimeoutError(f"Timeout waiting for API response for {thread_id}")
            debug_line(f"[API-WAIT] Waiting for a thread response for {thread_id}...")
            self._sleep(1)

    def _dom_urls(self) -> list:
        try:
            html = self.page.content()
        except PWError as exc:
            debug_line(f"[LOAD] Unable to read page content: {exc}")
            return []
        return extract_dom_urls(html, base_url=config.BASE_URL)

    def load_thread(self, url: str, on_phase: Optional[Callable[[str], None]] = None) -> ThreadData:
        """Return the complete, time-ordered thread behind ``url``.

        Raises ``RemoteAPIError`` when the API reported a failure for the
        thread and ``FetchTimeoutError`` when no detail response arrived.
        """

        thread_id = thread_id_from_url(url)
        self.harvester.discard(thread_id)
        # Artifact responses from an earlier page belong to that thread.
        self.harvester.take_artifact_urls()
        debug_line(f"[LOAD] Navigating to {url}...")
        self._navigate(url)

        conversation = self._wait_for_buffer(thread_id)
        debug_line(f"[API] Thread {thread_id} harvested with {len(conversation['entries'])} entries.")

        dom_urls = self._dom_urls()
        artifact_urls = self.harvester.take_artifact_urls()

        if conversation.get("has_next_page") or conversation.get("next_cursor"):
            if on_phase is not None:
                on_phase("paginating")
            result = complete_backward_pagination(
                thread_id,
                conversation,
                self.fetch_page,
                page_delay=self.page_delay,
                sleep=self._sleep,
            )
            conversation = result.conversation
            if result.stopped_reason == "error":
                _export_event(
                    "state",
                    phase="partial_thread",
                    thread_id=thread_id,
                    pages=result.pages,
                    entries=len(conversation["entries"]),
                    error=result.error,
                )

        conversation["entries"] = sort_entries(conversation["entries"])
        inline = extract_inline_artifacts(conversation)
        if inline:
            debug_line(f"[ARTIFACT] Found {len(inline)} inline artifact(s) in {thread_id}.")

        return ThreadData(
            id=thread_id,
            conversation=conversation,
            dom_urls=dom_urls,
            inline_artifacts=inline,
            artifact_urls=artifact_urls,
        )


__all__ = ["ThreadLoader"]
