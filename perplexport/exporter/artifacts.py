"""Discovery and capture of generated files referenced by a thread."""

from __future__ import annotations

import os
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup
from playwright.sync_api import APIRequestContext, Error as PWError, Page

from . import config
from .downloads import DownloadSynchronizer
from .error_codes import DownloadError, ErrorCode, FatalLocalError
from .logging_utils import _export_event
from .retry_policy import compute_backoff_seconds
from .utils import debug_line, log_line, sanitize_filename

# DOM links only count when they point at hosted pages or generated media.
DOM_GENERATED_MARKERS = ("perplexity.ai/page/", "s3.amazonaws.com", "ppl-ai", "imagedelivery.net")

KNOWN_BLOCK_USAGES = {
    "sources_answer_mode",
    "image_answer_mode",
    "video_answer_mode",
    "plan",
    "media_items",
    "ask_text",
    "pro_search_steps",
    "reasoning_plan",
    "shopping_mode",
    "web_results",
    "assets_answer_mode",
    "answer_assets_preview",
    "answer_tabs",
    "pending_followups",
}

_TRUNCATION_RATIO = 0.9
_TRIPLE_QUOTED = (
    re.compile(r"r?'''([\s\S]*?)'''"),
    re.compile(r'r?"""([\s\S]*?)"""'),
)
_DOWNLOAD_FALLBACK_MARKERS = ("net::ERR_ABORTED", "download")
_EXTENSIONS_BY_TYPE = (
    ("png", ".png"),
    ("jpeg", ".jpg"),
    ("pdf", ".pdf"),
    ("webp", ".webp"),
    ("text/html", ".html"),
    ("image", ".png"),
)

_CLICK_DOWNLOAD_LINK_JS = """
(url) => {
    const link = document.createElement("a");
    link.href = url;
    link.download = "";
    link.style.display = "none";
    document.body.appendChild(link);
    link.click();
    link.remove();
}
"""


@dataclass
class InlineArtifact:
    filename: str
    content: str
    mime_type: str = "text/html"
    file_size: int = 0
    url: Optional[str] = None


@dataclass
class ArtifactCapture:
    local_files: Dict[str, str] = field(default_factory=dict)
    skipped: List[Dict[str, str]] = field(default_factory=list)


def extract_all_urls(obj: Any) -> List[str]:
    """Return every ``http(s)`` string nested anywhere in ``obj``."""

    found: List[str] = []
    stack = [obj]
    while stack:
        item = stack.pop()
        if isinstance(item, str):
            if item.startswith(("http://", "https://")):
                found.append(item)
        elif isinstance(item, dict):
            stack.extend(reversed(list(item.values())))
        elif isinstance(item, (list, tuple)):
            stack.extend(reversed(item))
    return found


def filter_generated_urls(urls: Iterable[str]) -> List[str]:
    """Keep URLs on generated-content hosts, drop common third-party hosts."""

    kept: List[str] = []
    seen = set()
    for url in urls:
        if url in seen:
            continue
        seen.add(url)
        lowered = url.lower()
        if not any(domain in lowered for domain in config.GENERATED_DOMAINS):
            continue
        if any(host in lowered for host in config.SKIPPED_ARTIFACT_HOSTS):
            continue
        kept.append(url)
    return kept


def extract_dom_urls(html: str, base_url: str = config.BASE_URL) -> List[str]:
    """Collect generated-content links and media sources from rendered HTML."""

    soup = BeautifulSoup(html or "", "html5lib")
    found: List[str] = []

    def keep(raw: Optional[str]) -> None:
        if not raw:
            return
        url = urljoin(base_url, raw.strip())
        if any(marker in url for marker in DOM_GENERATED_MARKERS) and url not in found:
            found.append(url)

    for anchor in soup.find_all("a", href=True):
        keep(anchor.get("href"))

    for media in soup.find_all(["img", "video", "iframe", "source"]):
        src = media.get("src")
        if src:
            keep(src)
            continue
        srcset = media.get("srcset") or ""
        # srcset lists "url width" pairs; the first candidate is enough.
        first = srcset.split(",")[0].strip().split(" ")[0] if srcset else ""
        keep(first)

    if found:
        debug_line(f"[DOM] Found {len(found)} potential artifact/media links.")
    return found


def extract_html_from_script(script: str) -> Optional[str]:
    """Return the triple-quoted HTML a ``CODE_ASSET`` script writes out."""

    for pattern in _TRIPLE_QUOTED:
        match = pattern.search(script or "")
        if match and "<" in match.group(1):
            return match.group(1)
    return None


def _assets_for_block(block: Dict[str, Any]) -> List[Dict[str, Any]]:
    usage = block.get("intended_usage") or ""
    assets: List[Dict[str, Any]] = []
    if usage == "pro_search_steps":
        for step in (block.get("plan_block") or {}).get("steps") or []:
            assets.extend(step.get("assets") or [])
    elif usage == "assets_answer_mode":
        assets.extend((block.get("assets_mode_block") or {}).get("assets") or [])
    elif usage == "answer_assets_preview":
        preview = (block.get("inline_entity_block") or {}).get("assets_preview_block") or {}
        assets.extend(preview.get("assets") or [])
    return [asset for asset in assets if isinstance(asset, dict)]


def extract_inline_artifacts(conversation: Dict[str, Any]) -> List[InlineArtifact]:
    """Pull ``CODE_FILE`` assets embedded in the thread payload.

    Files appear in several block kinds at once, so they are deduplicated by
    filename. Content shorter than 90% of the declared size is treated as
    truncated and recovered from a sibling ``CODE_ASSET`` script when that
    yields more text. Files with no content are skipped.
    """

    artifacts: List[InlineArtifact] = []
    seen_filenames = set()

    for entry in conversation.get("entries") or []:
        for block in entry.get("blocks") or []:
            usage = block.get("intended_usage") or ""
            if usage and usage not in KNOWN_BLOCK_USAGES and not usage.startswith("ask_text"):
                debug_line(f"[BLOCK-DISCOVERY] Unknown block type: {usage!r}")

            assets = _assets_for_block(block)
            for asset in assets:
                code_file = asset.get("code_file")
                if asset.get("asset_type") != "CODE_FILE" or not code_file:
                    continue

                filename = code_file.get("filename") or code_file.get("name") or f"artifact_{asset.get('uuid')}"
                if filename in seen_filenames:
                    continue
                seen_filenames.add(filename)

                content = code_file.get("content") or ""
                file_size = int(code_file.get("file_size") or 0)
                if len(content) < file_size * _TRUNCATION_RATIO:
                    debug_line(
                        f"[ARTIFACT] Content for {filename!r} looks truncated "
                        f"({len(content)} chars vs {file_size} bytes)."
                    )
                    for sibling in assets:
                        script = (sibling.get("code") or {}).get("script")
                        if sibling.get("asset_type") != "CODE_ASSET" or not script:
                            continue
                        recovered = extract_html_from_script(script)
                        if recovered and len(recovered) > len(content):
                            content = recovered
                            debug_line(f"[ARTIFACT] Recovered {len(content)} chars from CODE_ASSET script.")
                        break

                if not content:
                    debug_line(f"[ARTIFACT] No content for {filename!r}, skipping.")
                    continue

                download_info = asset.get("download_info") or [{}]
                artifacts.append(
                    InlineArtifact(
                        filename=filename,
                        content=content,
                        mime_type=code_file.get("mime_type") or "text/html",
                        file_size=file_size or len(content),
                        url=code_file.get("url") or (download_info[0] or {}).get("url"),
                    )
                )
    return artifacts


def save_inline_artifacts(
    artifacts: Iterable[InlineArtifact],
    output_dir: Path,
    thread_id: str,
) -> Dict[str, str]:
    """Write inline artifacts under ``files/<thread_id>/``.

    Returns ``{"inline://<filename>": relative_path}`` plus the artifact's own
    download URL when it has one, so the URL capture pass can skip it.
    """

    output_dir = Path(output_dir)
    files_dir = output_dir / "files" / thread_id
    mapping: Dict[str, str] = {}
    for artifact in artifacts:
        files_dir.mkdir(parents=True, exist_ok=True)
        target = files_dir / sanitize_filename(artifact.filename)
        target.write_text(artifact.content, encoding="utf-8")
        relative = target.relative_to(output_dir).as_posix()
        mapping[f"inline://{artifact.filename}"] = relative
        if artifact.url:
            mapping[artifact.url] = relative
        log_line(f"[ARTIFACT] Saved inline artifact {artifact.filename} -> {relative}")
    return mapping


def is_media_content_type(content_type: str, url: str) -> bool:
    lowered = (content_type or "").lower()
    if any(kind in lowered for kind in ("image", "video", "pdf", "application/octet-stream")):
        return True
    return "text/html" in lowered and "perplexity.ai" in url


def derive_filename(url: str, content_type: str) -> str:
    """Pick a local filename from the URL path, falling back on the content type."""

    base = os.path.basename(urlsplit(url).path)
    lowered = (content_type or "").lower()
    if not base or len(base) < 3 or "." not in base:
        stamp = int(time.time() * 1000)
        base = f"artifact_{stamp}.html" if "text/html" in lowered else f"file_{stamp}"
    if not os.path.splitext(base)[1]:
        for marker, ext in _EXTENSIONS_BY_TYPE:
            if marker in lowered:
                base += ext
                break
    return sanitize_filename(base)


def make_link_trigger(page: Page) -> Callable[[str], None]:
    """Return a callable that makes the browser download ``url`` itself."""

    def trigger(url: str) -> None:
        page.evaluate(_CLICK_DOWNLOAD_LINK_JS, url)

    return trigger


def _fetch_to_file(request_context: APIRequestContext, url: str, files_dir: Path) -> Optional[Path]:
    response = request_context.get(url, timeout=config.ARTIFACT_FETCH_TIMEOUT_SECONDS * 1000)
    if not response.ok:
        raise DownloadError(
            ErrorCode.RATE_LIMITED if response.status == 429 else ErrorCode.DOWNLOAD_FAILED,
            f"HTTP {response.status}",
            http_status=response.status,
        )
    content_type = response.headers.get("content-type", "")
    if not is_media_content_type(content_type, url):
        return None
    files_dir.mkdir(parents=True, exist_ok=True)
    target = files_dir / derive_filename(url, content_type)
    target.write_bytes(response.body())
    log_line(f"[DL] Saved content ({content_type}): {target}")
    return target


def _capture_once(
    request_context: APIRequestContext,
    url: str,
    files_dir: Path,
    synchronizer: Optional[DownloadSynchronizer],
    download_trigger: Optional[Callable[[str], None]],
) -> Optional[Path]:
    try:
        return _fetch_to_file(request_context, url, files_dir)
    except PWError as exc:
        message = str(exc)
        if synchronizer is None or not any(m in message for m in _DOWNLOAD_FALLBACK_MARKERS):
            raise
    log_line(f"[DL] Possible file download detected for {url}, attempting capture...")
    trigger = (lambda: download_trigger(url)) if download_trigger is not None else None
    synchronizer.download_dir = files_dir
    return synchronizer.await_next_download(trigger, timeout=config.DOWNLOAD_TIMEOUT_SECONDS)


def _capture_with_cooldown(
    request_context: APIRequestContext,
    url: str,
    files_dir: Path,
    synchronizer: Optional[DownloadSynchronizer],
    download_trigger: Optional[Callable[[str], None]],
    sleep: Callable[[float], None],
    max_attempts: int,
) -> Optional[Path]:
    """Capture ``url``, cooling down and trying again while the server answers 429."""

    attempts = max(1, int(max_attempts))
    for attempt in range(1, attempts + 1):
        try:
            return _capture_once(request_context, url, files_dir, synchronizer, download_trigger)
        except DownloadError as exc:
            if not exc.is_rate_limited or attempt >= attempts:
                raise
            delay = compute_backoff_seconds(attempt, ErrorCode.RATE_LIMITED)
            log_line(f"[DL] Rate limited on {url} (attempt {attempt}/{attempts}). Cooling down {delay:g}s...")
            _export_event(
                "download",
                phase="rate_limited",
                url=url,
                attempt=attempt,
                max_attempts=attempts,
                cooldown=delay,
            )
            sleep(delay)
    return None


def capture_url_artifacts(
    request_context: APIRequestContext,
    conversation: Dict[str, Any],
    output_dir: Path,
    thread_id: str,
    extra_urls: Iterable[str] = (),
    synchronizer: Optional[DownloadSynchronizer] = None,
    *,
    download_trigger: Optional[Callable[[str], None]] = None,
    known: Optional[Dict[str, str]] = None,
    sleep: Callable[[float], None] = time.sleep,
    max_attempts: int = config.MAX_RATE_LIMIT_ATTEMPTS,
) -> ArtifactCapture:
    """Fetch every generated-content URL the thread references.

    Requests go through the browser context's request API so they share the
    session cookies without navigating the page. When a fetch fails because
    the server forces a real download, the synchronizer captures it instead.
    A 429 is retried after the rate-limit cooldown, up to ``max_attempts``.
    Remote failures are recorded per URL; a local write failure raises
    ``FatalLocalError``.
    """

    output_dir = Path(output_dir)
    files_dir = output_dir / "files" / thread_id
    capture = ArtifactCapture()
    known = known or {}

    urls = filter_generated_urls(list(extract_all_urls(conversation)) + list(extra_urls))
    for url in urls:
        if url in known:
            continue
        log_line(f"[DL] Downloading generated file: {url}")
        try:
            saved = _capture_with_cooldown(
                request_context, url, files_dir, synchronizer, download_trigger, sleep, max_attempts
            )
            if saved is None:
                raise DownloadError(ErrorCode.NOT_MEDIA, "Response is not a media file")
            capture.local_files[url] = Path(saved).relative_to(output_dir).as_posix()
            log_line(f"[DL] Completed {url}")
        except OSError as exc:
            raise FatalLocalError(f"Unable to write artifact for {url}: {exc}") from exc
        except (DownloadError, PWError, ValueError) as exc:
            log_line(f"[DL] Skipped {url}: {exc}")
            capture.skipped.append({"url": url, "error": str(exc)})

    return capture


__all__ = [
    "ArtifactCapture",
    "InlineArtifact",
    "capture_url_artifacts",
    "derive_filename",
    "extract_all_urls",
    "extract_dom_urls",
    "extract_html_from_script",
    "extract_inline_artifacts",
    "filter_generated_urls",
    "is_media_content_type",
    "make_link_trigger",
    "save_inline_artifacts",
]
