"""Run status surface and the append-only error/skip logs."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from . import config
from .utils import append_json_list, load_json_file, log_line, now_iso, save_json_file

PHASES = ("initializing", "scanning", "downloading", "complete", "idle")
_INACTIVE_PHASES = {"complete", "idle"}


def update_status(
    current: int,
    total: int,
    message: str = "",
    phase: str = "downloading",
    *,
    path: Optional[Path] = None,
) -> Dict[str, Any]:
    """Overwrite ``status.json`` with the current progress."""

    if phase not in PHASES:
        raise ValueError(f"Unknown status phase: {phase}")
    status = {
        "current": current,
        "total": total,
        "message": message,
        "phase": phase,
        "timestamp": now_iso(),
        "active": phase not in _INACTIVE_PHASES,
        "type": "export",
    }
    try:
        save_json_file(path or config.STATUS_FILE, status)
    except OSError as exc:
        log_line(f"[STATUS] Unable to write status file: {exc}")
    return status


def read_status(path: Optional[Path] = None) -> Dict[str, Any]:
    target = Path(path or config.STATUS_FILE)
    try:
        return load_json_file(target, default=None) or {
            "current": 0,
            "total": 0,
            "message": "",
            "phase": "idle",
            "active": False,
            "type": "export",
        }
    except (ValueError, OSError) as exc:
        log_line(f"[STATUS] Unable to read status file: {exc}")
        return {"phase": "idle", "active": False, "message": str(exc), "type": "export"}


def log_error(url: str, error: str, *, error_code: Optional[str] = None, path: Optional[Path] = None) -> None:
    """Append ``{url, error, timestamp}`` to ``errors.json``."""

    item: Dict[str, Any] = {"url": url, "error": error, "timestamp": now_iso()}
    if error_code:
        item["error_code"] = error_code
    append_json_list(path or config.ERROR_FILE, item)


def log_skipped_files(thread_id: str, skipped: List[Dict[str, str]], *, path: Optional[Path] = None) -> None:
    """Append ``{threadId, skipped, timestamp}`` to ``skipped.json``."""

    append_json_list(
        path or config.SKIPPED_FILE,
        {"threadId": thread_id, "skipped": list(skipped), "timestamp": now_iso()},
    )


def log_found_urls(candidates: Iterable[Any], *, path: Optional[Path] = None) -> None:
    """Write the list of every thread the last scan discovered."""

    urls = [{"title": c.title, "url": c.url} for c in candidates]
    save_json_file(
        path or config.FOUND_FILE,
        {"count": len(urls), "timestamp": now_iso(), "urls": urls},
    )


__all__ = [
    "PHASES",
    "update_status",
    "read_status",
    "log_error",
    "log_skipped_files",
    "log_found_urls",
]
