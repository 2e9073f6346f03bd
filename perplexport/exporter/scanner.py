"""Library discovery and change detection."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from playwright.sync_api import Error as PWError, Page, TimeoutError as PWTimeout

from . import config
from .conversation import thread_id_from_url
from .date_utils import parse_iso, parse_listing_timestamp
from .logging_utils import _export_event
from .state import IncrementalState
from .utils import debug_line, log_line, wait_seconds

BROAD_SELECTOR = "__broad__"
THREAD_SELECTORS = (
    'a[href*="/search/"]',
    'a[href*="/thread/"]',
    'a[href*="/page/"]',
)

_COUNT_JS = """
(sel) => {
    if (sel === "__broad__") {
        return Array.from(document.querySelectorAll("a[href]")).filter(a =>
            a.href.includes("perplexity.ai/") && /\\/[a-z0-9-]{20,}$/i.test(a.href)
        ).length;
    }
    return document.querySelectorAll(sel).length;
}
"""

_SCROLL_JS = """
() => {
    const scrollable = Array.from(document.querySelectorAll("*")).find(el => {
        const style = window.getComputedStyle(el);
        return (style.overflowY === "auto" || style.overflowY === "scroll")
            && el.scrollHeight > el.clientHeight;
    });
    if (scrollable) {
        scrollable.scrollTop = scrollable.scrollHeight;
    } else {
        window.scrollTo(0, document.body.scrollHeight);
    }
}
"""

_EXTRACT_JS = """
(sel) => {
    let items;
    if (sel === "__broad__") {
        items = Array.from(document.querySelectorAll("a[href]")).filter(a =>
            a.href.includes("perplexity.ai/") && /\\/[a-z0-9-]{20,}$/i.test(a.href)
        );
    } else {
        items = Array.from(document.querySelectorAll(sel));
    }
    const timeLike = (text) =>
        /\\b(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)\\b/i.test(text)
        || /\\d+[smhd]\\b/i.test(text)
        || /\\d+\\s+(second|minute|hour|day|week|month)s?\\s+ago/i.test(text)
        || /just now|now/i.test(text);
    const seen = new Set();
    const out = [];
    for (const item of items) {
        if (seen.has(item.href)) continue;
        seen.add(item.href);
        let stamp = "";
        let current = item;
        for (let depth = 0; depth < 4 && current && !stamp; depth++) {
            const timeEl = current.querySelector("time");
            if (timeEl) {
                stamp = (timeEl.textContent || "").trim() || timeEl.getAttribute("datetime") || "";
                if (stamp) break;
            }
            for (const el of current.querySelectorAll("span, div, p")) {
                const text = (el.textContent || "").trim();
                if (text.length > 50) continue;
                if (timeLike(text)) {
                    stamp = text.replace(/CCL$/i, "").trim();
                    break;
                }
            }
            current = current.parentElement;
        }
        out.push({
            title: (item.textContent || "").trim() || "Untitled",
            url: item.href,
            libraryTimestamp: stamp,
        });
    }
    return out;
}
"""


@dataclass
class Candidate:
    title: str
    url: str
    library_timestamp: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"title": self.title, "url": self.url, "libraryTimestamp": self.library_timestamp}


@dataclass
class ScanResult:
    to_process: List[Candidate] = field(default_factory=list)
    discovered: List[Candidate] = field(default_factory=list)


def classify(
    candidate: Candidate,
    state: IncrementalState,
    *,
    assume_due_on_unparseable: bool = False,
    now: Optional[datetime] = None,
) -> bool:
    """Return ``True`` when ``candidate`` must be (re-)exported.

    A thread is due when it was never exported, or when its listing time is
    later than the stored ``lastUpdated`` plus a one second buffer. Missing
    listing text means not due. Text that cannot be parsed yields
    ``assume_due_on_unparseable``.
    """

    record = state.get(candidate.url)
    if record is None:
        return True

    if not candidate.library_timestamp:
        return False

    listed_at = parse_listing_timestamp(candidate.library_timestamp, now=now)
    if listed_at is None:
        _export_event(
            "parse",
            phase="classify",
            url=candidate.url,
            library_timestamp=candidate.library_timestamp,
            assumed_due=assume_due_on_unparseable,
        )
        return assume_due_on_unparseable

    stored = parse_iso(record.last_updated) or parse_iso(record.downloaded_at)
    if stored is None:
        # A damaged record is repaired by exporting the thread again.
        return True

    is_newer = listed_at > stored + timedelta(seconds=config.CHANGE_BUFFER_SECONDS)
    if is_newer:
        debug_line(
            f"[SCAN] Change detected for {candidate.url}: listed={listed_at.isoformat()} "
            f"stored={stored.isoformat()}"
        )
    return is_newer


def discover_thread_selector(page: Page) -> tuple[str, int]:
    """Return the first selector matching thread links, or the broad pattern."""

    for selector in THREAD_SELECTORS:
        count = int(page.evaluate(_COUNT_JS, selector) or 0)
        if count > 0:
            debug_line(f"[SCAN] Selector {selector!r} matched {count} link(s) before scroll.")
            return selector, count

    broad = int(page.evaluate(_COUNT_JS, BROAD_SELECTOR) or 0)
    if broad > 0:
        debug_line(f"[SCAN] Broad pattern matched {broad} link(s).")
        return BROAD_SELECTOR, broad
    return "", 0


def scroll_until_stable(
    page: Page,
    selector: str,
    *,
    scroll_delay: float = 2.0,
    scan_mode: str = "full",
    scan_limit: int = 10,
    on_progress: Optional[Callable[[int], None]] = None,
) -> int:
    """Scroll the library until the link count stops growing.

    Stops after the count is unchanged for ``SCAN_STABLE_ROUNDS`` rounds, when
    ``top`` mode has seen ``scan_limit`` links, or at the ``SCAN_MAX_ROUNDS``
    safety cap. Returns the final link count.
    """

    rounds = 0
    previous = 0
    stable = 0
    top_mode = config.is_top_mode(scan_mode)

    while True:
        rounds += 1
        page.evaluate(_SCROLL_JS)
        wait_seconds(page, scroll_delay)

        current = int(page.evaluate(_COUNT_JS, selector) or 0)
        stable = stable + 1 if current == previous else 0
        if rounds % 5 == 0 or current != previous:
            debug_line(f"[SCAN] Scroll round {rounds}: {current} links loaded (was {previous})")
        previous = current
        if on_progress is not None:
            on_progress(current)

        if stable >= config.SCAN_STABLE_ROUNDS:
            debug_line(f"[SCAN] No new links after {stable} consecutive rounds.")
            break
        if top_mode and current >= scan_limit:
            debug_line(f"[SCAN] Scan limit reached ({current} >= {scan_limit}).")
            break
        if rounds >= config.SCAN_MAX_ROUNDS:
            log_line(f"[SCAN] Hit scroll safety limit ({rounds} rounds).")
            break

    return previous


def extract_candidates(page: Page, selector: str) -> List[Candidate]:
    raw: List[Dict[str, Any]] = page.evaluate(_EXTRACT_JS, selector) or []
    candidates: List[Candidate] = []
    seen = set()
    for item in raw:
        url = str(item.get("url") or "")
        thread_id = thread_id_from_url(url) if url else ""
        if not thread_id or thread_id in seen:
            continue
        seen.add(thread_id)
        candidates.append(
            Candidate(
                title=str(item.get("title") or "Untitled"),
                url=url,
                library_timestamp=str(item.get("libraryTimestamp") or ""),
            )
        )
    return candidates


def scan(
    page: Page,
    state: IncrementalState,
    *,
    scan_mode: str = "full",
    scan_limit: int = 10,
    scroll_delay: float = 2.0,
    on_progress: Optional[Callable[[int], None]] = None,
    assume_due_on_unparseable: bool = False,
) -> ScanResult:
    """Discover threads on the library page and pick the ones that are due."""

    if "/library" not in (page.url or ""):
        log_line("[SCAN] Navigating to library...")
        page.goto(config.LIBRARY_URL, wait_until="networkidle", timeout=config.NAV_TIMEOUT_SECONDS * 1000)
    else:
        debug_line("[SCAN] Already on library page, skipping navigation.")

    # Lazy auth modals settle after the first paint.
    wait_seconds(page, 5)

    selector, _ = discover_thread_selector(page)
    if not selector:
        log_line("[SCAN] Could not find any thread links on the library page.")
        return ScanResult()

    if selector != BROAD_SELECTOR:
        try:
            page.wait_for_selector(selector, timeout=15000)
        except (PWTimeout, PWError) as exc:
            debug_line(f"[SCAN] wait_for_selector({selector!r}) failed: {exc}")

    scroll_until_stable(
        page,
        selector,
        scroll_delay=scroll_delay,
        scan_mode=scan_mode,
        scan_limit=scan_limit,
        on_progress=on_progress,
    )

    discovered = extract_candidates(page, selector)
    if config.is_top_mode(scan_mode):
        discovered = discovered[: max(0, int(scan_limit))]

    to_process = [
        candidate
        for candidate in discovered
        if classify(candidate, state, assume_due_on_unparseable=assume_due_on_unparseable)
    ]
    modified = sum(1 for candidate in to_process if state.is_processed(candidate.url))
    _export_event(
        "scan",
        phase="complete",
        discovered=len(discovered),
        due=len(to_process),
        modified=modified,
        selector=selector,
    )
    return ScanResult(to_process=to_process, discovered=discovered)


__all__ = [
    "BROAD_SELECTOR",
    "Candidate",
    "ScanResult",
    "classify",
    "discover_thread_selector",
    "extract_candidates",
    "scan",
    "scroll_until_stable",
]
