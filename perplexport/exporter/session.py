"""Browser session owned by the orchestrator and reused across records."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Optional

from playwright.sync_api import (
    APIRequestContext,
    Browser,
    BrowserContext,
    Error as PWError,
    Page,
    Playwright,
    sync_playwright,
)

from . import config
from .downloads import DownloadSynchronizer
from .harvester import ResponseHarvester
from .utils import log_line


class BrowserSession:
    """One Chromium instance, one context, one page.

    The harvester and the download synchronizer are attached once when the
    session opens, so reusing the session for another run does not stack
    duplicate listeners. Sync Playwright objects are bound to the thread that
    created them; callers keep every use of a session on that thread.
    """

    def __init__(self, *, headless: bool = False, download_dir: Optional[Path] = None) -> None:
        self.headless = headless
        self.download_dir = Path(download_dir or config.DATA_DIR / "downloads")
        self.harvester = ResponseHarvester()
        self.downloads = DownloadSynchronizer(self.download_dir)
        self.last_used_at = time.monotonic()
        self._pw: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None

    def open(self) -> "BrowserSession":
        if self.is_connected():
            return self
        self.close()
        log_line(f"[BROWSER] Launching Chromium (headless={self.headless})")
        self._pw = sync_playwright().start()
        self._browser = self._pw.chromium.launch(
            headless=self.headless,
            args=[
                "--disable-blink-features=AutomationControlled",
                "--no-sandbox",
                "--disable-dev-shm-usage",
            ],
        )
        self._context = self._browser.new_context(
            user_agent=config.USER_AGENT,
            locale="en-US",
            viewport={"width": 1368, "height": 900},
            accept_downloads=True,
        )
        self._context.add_init_script(
            "Object.defineProperty(navigator, 'webdriver', {get: () => undefined});"
        )
        self._page = self._context.new_page()
        self.harvester.attach(self._page)
        self.downloads.attach(self._page)
        self.touch()
        return self

    def touch(self) -> None:
        self.last_used_at = time.monotonic()

    def idle_seconds(self) -> float:
        return time.monotonic() - self.last_used_at

    def is_connected(self) -> bool:
        if self._browser is None or self._page is None:
            return False
        try:
            return self._browser.is_connected() and not self._page.is_closed()
        except PWError:
            return False

    @property
    def page(self) -> Page:
        if self._page is None:
            raise RuntimeError("Browser session is not open")
        return self._page

    @property
    def request(self) -> APIRequestContext:
        """Request API sharing the browser context's cookie jar."""

        if self._context is None:
            raise RuntimeError("Browser session is not open")
        return self._context.request

    def close(self) -> None:
        for label, closer in (
            ("context", self._context.close if self._context else None),
            ("browser", self._browser.close if self._browser else None),
            ("playwright", self._pw.stop if self._pw else None),
        ):
            if closer is None:
                continue
            try:
                closer()
            except Exception as exc:  # noqa: BLE001
                log_line(f"[BROWSER] Error closing {label}: {exc}")
        if self._browser is not None:
            log_line("[BROWSER] Session closed.")
        self._pw = None
        self._browser = None
        self._context = None
        self._page = None


__all__ = ["BrowserSession"]
