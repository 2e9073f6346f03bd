"""Export orchestrator: scan the library, then fetch and commit each due thread."""

from __future__ import annotations

import argparse
import json
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from . import config
from .artifacts import capture_url_artifacts, make_link_trigger, save_inline_artifacts
from .config_validation import Entrypoint, validate_config
from .conversation import ThreadData, conversation_title, format_iso, latest_updated, thread_id_from_url
from .error_codes import AuthExpiredError, ErrorCode, FatalLocalError
from .indexer import reindex_all, rerender_all, update_search_index
from .logging_utils import _export_event
from .login import is_login_page, login
from .renderer import render_conversation
from .retry_policy import classify_exception, compute_backoff_seconds, decide_retry
from .scanner import Candidate, ScanResult, scan
from .session import BrowserSession
from .state import IncrementalState
from .status import log_error, log_found_urls, log_skipped_files, update_status
from .telemetry import RunTelemetry
from .thread_loader import ThreadLoader
from .utils import (
    disk_has_room,
    ensure_dirs,
    log_line,
    load_json_file,
    save_json_file,
    set_debug,
    setup_run_logger,
)

TIMEOUT_ERROR_MESSAGE = "Timeout waiting for API response"


class RecordPhase(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    RETRYING = "retrying"
    PAGINATING = "paginating"
    CAPTURING_ARTIFACTS = "capturing_artifacts"
    COMMITTING = "committing"
    DONE = "done"
    SKIPPED = "skipped"


@dataclass
class ExportContext:
    """Everything ``process_record`` needs for one run."""

    cfg: config.ExportConfig
    state: IncrementalState
    session: Any
    loader: Any
    telemetry: Optional[RunTelemetry] = None
    sleep: Callable[[float], None] = time.sleep
    relogin: Callable[[Any, str], None] = login
    is_login: Callable[[Any], bool] = is_login_page
    phases: List[str] = field(default_factory=list)

    def enter(self, url: str, phase: str) -> None:
        phase = RecordPhase(phase).value
        self.phases.append(phase)
        _export_event("record", phase=phase, url=url, debug=True)


def _relogin(page: Any, email: str, relogin: Callable[[Any, str], None]) -> None:
    log_line("[AUTH] Login page detected. Re-authenticating...")
    try:
        relogin(page, email)
    except AuthExpiredError as exc:
        log_line(f"[AUTH] Re-login failed: {exc}")


def fetch_thread_with_retries(
    loader: Any,
    url: str,
    *,
    page: Any,
    email: str = "",
    relogin: Callable[[Any, str], None] = login,
    is_login: Callable[[Any], bool] = is_login_page,
    sleep: Callable[[float], None] = time.sleep,
    max_attempts: int = config.MAX_FETCH_ATTEMPTS,
    on_phase: Optional[Callable[[str], None]] = None,
) -> Optional[ThreadData]:
    """Load ``url`` with bounded retries; ``None`` means the record is skipped.

    Every re-login spends an attempt, so the loop always ends. Failures are
    written to the error log. ``FatalLocalError`` is not caught.
    """

    effective_attempts = max(1, int(max_attempts))
    last_message = ""
    last_code: Optional[str] = None

    for attempt in range(1, effective_attempts + 1):
        if on_phase is not None:
            on_phase(RecordPhase.FETCHING if attempt == 1 else RecordPhase.RETRYING)
        try:
            return loader.load_thread(url, on_phase=on_phase)
        except FatalLocalError:
            raise
        except Exception as exc:  # noqa: BLE001
            last_code = classify_exception(exc)
            last_message = TIMEOUT_ERROR_MESSAGE if last_code == ErrorCode.FETCH_TIMEOUT else str(exc)
            log_line(f"[RUN] Attempt {attempt}/{effective_attempts} failed for {url}: {exc}")

            if last_code == ErrorCode.REMOTE_API:
                log_error(url, str(exc), error_code=last_code)
                return None

            if is_login(page):
                _relogin(page, email, relogin)
                continue

            if not decide_retry(attempt, effective_attempts, exc, error_code=last_code):
                break
            delay = compute_backoff_seconds(attempt, last_code)
            log_line(f"[RUN] Retrying {url} in {delay:g}s...")
            sleep(delay)

    log_error(url, last_message or "Unknown error", error_code=last_code)
    return None


def _write_thread_json(path: Path, conversation: Dict[str, Any]) -> None:
    try:
        save_json_file(path, conversation)
    except OSError as exc:
        raise FatalLocalError(f"Unable to write {path}: {exc}") from exc


def _write_markdown(path: Path, markdown: str) -> None:
    try:
        path.write_text(markdown, encoding="utf-8")
    except OSError as exc:
        raise FatalLocalError(f"Unable to write {path}: {exc}") from exc


def _random_delay_seconds(cfg: config.ExportConfig) -> float:
    return random.uniform(cfg.delay_min_ms, cfg.delay_max_ms) / 1000.0


def commit_thread(ctx: ExportContext, candidate: Candidate, thread: ThreadData) -> str:
    """Persist an exported thread and record it in the state store.

    Returns the ``lastUpdated`` value written to the state store.
    """

    cfg = ctx.cfg
    output_dir = cfg.output_path
    output_dir.mkdir(parents=True, exist_ok=True)
    stem = f"{cfg.file_prefix}{thread.id}"
    conversation = thread.conversation

    _write_thread_json(output_dir / f"{stem}.json", conversation)

    ctx.enter(candidate.url, RecordPhase.CAPTURING_ARTIFACTS)
    local_files = save_inline_artifacts(thread.inline_artifacts, output_dir, thread.id)
    capture = capture_url_artifacts(
        ctx.session.request,
        conversation,
        output_dir,
        thread.id,
        extra_urls=[*thread.dom_urls, *thread.artifact_urls],
        synchronizer=ctx.session.downloads,
        download_trigger=make_link_trigger(ctx.session.page),
        known=local_files,
        sleep=ctx.sleep,
    )
    local_files.update(capture.local_files)
    if capture.skipped:
        log_skipped_files(thread.id, capture.skipped)

    ctx.enter(candidate.url, RecordPhase.COMMITTING)
    _write_markdown(output_dir / f"{stem}.md", render_conversation(conversation, local_files))

    last_updated = format_iso(latest_updated(conversation.get("entries") or []))
    ctx.state.mark_processed(candidate.url, last_updated)
    ctx.state.save()

    update_search_index(thread.id, conversation, f"{stem}.md")
    return last_updated


def process_record(ctx: ExportContext, candidate: Candidate, index: int, total: int) -> bool:
    """Fetch and commit one due thread; returns ``False`` when it was skipped."""

    cfg = ctx.cfg
    output_dir = cfg.output_path
    if not disk_has_room(config.MIN_FREE_MB, output_dir if output_dir.exists() else config.DATA_DIR):
        raise FatalLocalError(f"Less than {config.MIN_FREE_MB} MB free for {output_dir}")

    log_line(f"[RUN] [{index + 1}/{total}] {candidate.title or candidate.url}")
    update_status(index, total, f"Processing {candidate.title or candidate.url}", "downloading")
    thread: Optional[ThreadData] = None
    try:
        thread = fetch_thread_with_retries(
            ctx.loader,
            candidate.url,
            page=ctx.session.page,
            email=cfg.email,
            relogin=ctx.relogin,
            is_login=ctx.is_login,
            sleep=ctx.sleep,
            on_phase=lambda phase: ctx.enter(candidate.url, phase),
        )
        if thread is None:
            ctx.enter(candidate.url, RecordPhase.SKIPPED)
            if ctx.telemetry is not None:
                ctx.telemetry.add("skipped", "fetch_failed", {"url": candidate.url})
            return False

        try:
            last_updated = commit_thread(ctx, candidate, thread)
        except OSError as exc:
            raise FatalLocalError(f"Unable to write output for {thread.id}: {exc}") from exc
        ctx.enter(candidate.url, RecordPhase.DONE)
        if ctx.telemetry is not None:
            ctx.telemetry.add(
                "exported",
                "ok",
                {
                    "url": candidate.url,
                    "thread_id": thread.id,
                    "entries": len(thread.conversation.get("entries") or []),
                    "last_updated": last_updated,
                },
            )
        title = conversation_title(thread.conversation, fallback=candidate.title or thread.id)
        update_status(index + 1, total, f"Exported {title}", "downloading")
        log_line(f"[RUN] Exported {thread.id}")
    finally:
        ctx.session.harvester.discard(thread.id if thread is not None else thread_id_from_url(candidate.url))

    delay = _random_delay_seconds(cfg)
    if delay > 0:
        ctx.sleep(delay)
    return True


def load_manual_candidates(path: Path, state: IncrementalState) -> ScanResult:
    """Read a URL list and keep the threads the state store has never seen.

    Accepts a JSON list of URLs or of ``{"url", "title"}`` objects, or a
    ``found.json`` document. Raises ``ValueError`` when the file is missing
    or malformed.
    """

    try:
        raw = load_json_file(Path(path), default=None)
    except (json.JSONDecodeError, OSError) as exc:
        raise ValueError(f"Could not read {path}: {exc}") from exc
    if raw is None:
        raise ValueError(f"{path} does not exist")
    if isinstance(raw, dict):
        raw = raw.get("urls")
    if not isinstance(raw, list):
        raise ValueError(f"{path} must contain a JSON list of thread URLs")

    discovered: List[Candidate] = []
    seen = set()
    for item in raw:
        if isinstance(item, str):
            url, title = item, ""
        elif isinstance(item, dict):
            url, title = str(item.get("url") or ""), str(item.get("title") or "")
        else:
            continue
        url = url.strip()
        thread_id = thread_id_from_url(url) if url else ""
        if not thread_id or thread_id in seen:
            continue
        seen.add(thread_id)
        discovered.append(Candidate(title=title, url=url))

    to_process = [candidate for candidate in discovered if not state.is_processed(candidate.url)]
    log_line(f"[RUN] Loaded {len(discovered)} URLs from {path}; {len(to_process)} not exported yet.")
    return ScanResult(to_process=to_process, discovered=discovered)


def run_export(
    cfg: Optional[config.ExportConfig] = None,
    *,
    session: Any = None,
    state_path: Optional[Path] = None,
    entrypoint: Entrypoint = "cli",
    sleep: Callable[[float], None] = time.sleep,
    login_fn: Callable[[Any, str], None] = login,
    scan_fn: Callable[..., ScanResult] = scan,
    loader_factory: Optional[Callable[[Any], Any]] = None,
    urls_file: Optional[Path] = None,
) -> Dict[str, Any]:
    """Run one export pass and return its summary.

    A caller-supplied ``session`` is reused; otherwise one is created. The
    session is closed at the end unless ``cfg.keep_browser_open`` is set.
    With ``urls_file`` the library scan is replaced by that URL list and every
    listed thread not yet exported is processed, ignoring ``batch_size``.
    """

    cfg = validate_config(cfg or config.load_config(), entrypoint=entrypoint)
    set_debug(cfg.debug)
    log_path = setup_run_logger()
    ensure_dirs()
    cfg.output_path.mkdir(parents=True, exist_ok=True)

    summary: Dict[str, Any] = {
        "discovered": 0,
        "due": 0,
        "exported": 0,
        "skipped": 0,
        "log_file": str(log_path),
    }
    _export_event("run", phase="start", scan_mode=cfg.scan_mode, batch_size=cfg.batch_size)
    update_status(0, 1, "Starting environment...", "initializing")

    session = session or BrowserSession(headless=cfg.headless)
    telemetry = RunTelemetry(mode=cfg.scan_mode)
    finished = False
    try:
        state = IncrementalState.load(state_path)
        log_line(f"[RUN] Loaded state with {state.processed_count()} processed threads.")

        manual: Optional[ScanResult] = None
        if urls_file is not None:
            update_status(0, 0, "Reading URL list...", "scanning")
            manual = load_manual_candidates(urls_file, state)

        if manual is None or manual.to_process:
            session.open()
            page = session.page
            login_fn(page, cfg.email)

        if manual is not None:
            result = manual
        else:
            def _on_progress(count: int) -> None:
                update_status(count, 0, f"Searching library... ({count} threads found)", "scanning")

            update_status(0, 0, "Searching library...", "scanning")
            result = scan_fn(
                page,
                state,
                scan_mode=cfg.scan_mode,
                scan_limit=cfg.scan_top_limit,
                scroll_delay=cfg.scroll_delay_ms / 1000.0,
                on_progress=_on_progress,
                assume_due_on_unparseable=cfg.assume_due_on_unparseable,
            )
            log_found_urls(result.discovered)
        summary["discovered"] = len(result.discovered)
        summary["due"] = len(result.to_process)

        if not result.to_process:
            log_line("[RUN] No new or updated threads to export.")
            update_status(0, 0, "Idle - Library up to date", "idle")
            finished = True
            return summary

        batch = result.to_process if manual is not None else result.to_process[: cfg.batch_size]
        log_line(f"[RUN] {len(result.to_process)} due; exporting {len(batch)} this run.")
        update_status(0, len(batch), "Initializing export...", "initializing")

        loader = loader_factory(session) if loader_factory else ThreadLoader(page, session.harvester)
        ctx = ExportContext(
            cfg=cfg,
            state=state,
            session=session,
            loader=loader,
            telemetry=telemetry,
            sleep=sleep,
            relogin=login_fn,
        )
        for index, candidate in enumerate(batch):
            if process_record(ctx, candidate, index, len(batch)):
                summary["exported"] += 1
            else:
                summary["skipped"] += 1
            session.touch()

        update_status(len(batch), len(batch), "Batch completed!", "complete")
        finished = True
        return summary
    finally:
        if not finished:
            update_status(0, 0, "Export aborted; see the log for details.", "idle")
        try:
            telemetry.finalize(extra={"result": dict(summary)})
        except OSError as exc:
            log_line(f"[RUN] Unable to write run telemetry: {exc}")
        _export_event("run", phase="end", finished=finished, **summary)
        if not cfg.keep_browser_open:
            session.close()


def _cli_entrypoint(argv: Optional[List[str]] = None) -> None:  # pragma: no cover
    parser = argparse.ArgumentParser(description="Export library threads to Markdown")
    parser.add_argument(
        "command",
        nargs="?",
        choices=["export", "manual", "reindex", "rerender"],
        default="export",
    )
    parser.add_argument("--config", dest="config_path", default=None, help="Path to config.json")
    parser.add_argument("--output", default=None, help="Output directory")
    parser.add_argument("--done-file", default=None, help="Incremental state file")
    parser.add_argument("--urls", default="urls.json", help="URL list for the manual command")
    parser.add_argument("--email", default=None)
    parser.add_argument("--batch-size", type=int, default=None)
    parser.add_argument("--scan-mode", choices=sorted(config.SCAN_MODES), default=None)

    args = parser.parse_args(argv)

    ensure_dirs()
    cfg = config.load_config(Path(args.config_path) if args.config_path else None)
    if args.output:
        cfg.output_dir = args.output
    if args.email:
        cfg.email = args.email
    if args.batch_size is not None:
        cfg.batch_size = args.batch_size
    if args.scan_mode:
        cfg.scan_mode = args.scan_mode

    if args.command == "reindex":
        reindex_all(cfg.output_path, file_prefix=cfg.file_prefix)
        return
    if args.command == "rerender":
        rerender_all(cfg.output_path, file_prefix=cfg.file_prefix)
        return

    summary = run_export(
        cfg,
        state_path=Path(args.done_file) if args.done_file else None,
        entrypoint="cli",
        urls_file=Path(args.urls) if args.command == "manual" else None,
    )
    log_line(
        f"[RUN] Done: {summary['exported']} exported, {summary['skipped']} skipped, "
        f"{summary['discovered']} discovered."
    )


if __name__ == "__main__":  # pragma: no cover
    _cli_entrypoint()

__all__ = [
    "ExportContext",
    "RecordPhase",
    "commit_thread",
    "fetch_thread_with_retries",
    "load_manual_candidates",
    "process_record",
    "run_export",
    "_cli_entrypoint",
]
