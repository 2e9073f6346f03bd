from __future__ import annotations

import json
import logging
import shutil
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from . import config

LOGGER = logging.getLogger("perplexport")
_LOGGER_INITIALISED = False
_DEBUG_ENABLED = False
_CURRENT_LOG_FILE: Path = config.LOG_FILE


def _configure_logger(log_path: Path) -> None:
    """Configure the shared application logger to write to ``log_path``."""

    global _LOGGER_INITIALISED, _CURRENT_LOG_FILE

    log_path.parent.mkdir(parents=True, exist_ok=True)

    for handler in list(LOGGER.handlers):
        LOGGER.removeHandler(handler)
        try:
            handler.close()
        except Exception:  # noqa: BLE001
            continue

    formatter = logging.Formatter(
        fmt="[%(asctime)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)

    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(formatter)

    LOGGER.setLevel(logging.DEBUG if _DEBUG_ENABLED else logging.INFO)
    LOGGER.addHandler(stream_handler)
    LOGGER.addHandler(file_handler)
    LOGGER.propagate = False

    _CURRENT_LOG_FILE = log_path
    _LOGGER_INITIALISED = True


def _ensure_logger() -> None:
    """Initialise the logger lazily using the default log file."""

    if _LOGGER_INITIALISED:
        return
    _configure_logger(config.LOG_FILE)


def set_debug(enabled: bool) -> None:
    """Toggle DEBUG-level output for the shared logger."""

    global _DEBUG_ENABLED
    _DEBUG_ENABLED = bool(enabled)
    LOGGER.setLevel(logging.DEBUG if _DEBUG_ENABLED else logging.INFO)


def setup_run_logger() -> Path:
    """Rotate to a fresh timestamped log file for the current run."""

    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    log_path = config.LOG_DIR / f"export_{timestamp}.log"
    _configure_logger(log_path)
    LOGGER.info("Logging to %s", log_path)
    return log_path


def get_current_log_path() -> Path:
    """Return the path to the log file currently receiving log lines."""

    _ensure_logger()
    return _CURRENT_LOG_FILE


def log_line(message: str) -> None:
    """Write a timestamped log line to stdout and the active log file."""

    _ensure_logger()
    LOGGER.info(message)


def debug_line(message: str) -> None:
    """Write a line that only appears when debug output is enabled."""

    _ensure_logger()
    LOGGER.debug(message)


def wait_seconds(page: Any, seconds: float) -> None:
    """Wait safely for ``seconds`` only if *page* remains open.

    Waiting through the page keeps the Playwright driver dispatching events,
    which a plain ``time.sleep`` would not.
    """

    if page is None:
        return

    if seconds is None or seconds <= 0:
        return

    if not page.is_closed():
        page.wait_for_timeout(int(seconds * 1000))


def ensure_dirs() -> None:
    """Ensure that the application's expected directory structure exists."""

    config.DATA_DIR.mkdir(parents=True, exist_ok=True)
    config.LOG_DIR.mkdir(parents=True, exist_ok=True)


def now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string with milliseconds."""

    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def disk_has_room(min_free_mb: int, path: Path) -> bool:
    """Return ``True`` when the filesystem holding *path* has enough space."""

    try:
        usage = shutil.disk_usage(path)
    except OSError:
        return False
    return usage.free >= int(min_free_mb) * 1024 * 1024


def sanitize_filename(name: str) -> str:
    """
    Return a filesystem-safe filename derived from *name*.
    Keeps only alphanumerics, dot, underscore, dash.
    """
    cleaned = "".join(
        ch if ch.isalnum() or ch in {".", "_", "-"} else "_"
        for ch in name.strip()
    ).strip("._")

    return cleaned or "file"


def load_json_file(path: Path, default: Any = None) -> Any:
    """Return the decoded JSON document at *path*, or *default* when absent."""

    path = Path(path)
    if not path.exists():
        return default
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def save_json_file(path: Path, payload: Any) -> None:
    """Persist *payload* to *path* atomically."""

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, ensure_ascii=False, indent=2)
    tmp_path.replace(path)


def append_json_list(path: Path, item: dict[str, Any]) -> None:
    """Append *item* to the JSON list stored at *path*.

    The file is never truncated: an unreadable file is set aside as
    ``<name>.corrupt`` before a fresh list is started.
    """

    path = Path(path)
    items: list[Any] = []
    if path.exists():
        try:
            loaded = load_json_file(path, default=[])
            if isinstance(loaded, list):
                items = loaded
        except (json.JSONDecodeError, OSError) as exc:
            log_line(f"[LOG] Unable to read {path.name} ({exc}); starting a new list.")
            path.replace(path.with_suffix(path.suffix + ".corrupt"))
    items.append(item)
    save_json_file(path, items)


__all__ = [
    "LOGGER",
    "set_debug",
    "setup_run_logger",
    "get_current_log_path",
    "log_line",
    "debug_line",
    "wait_seconds",
    "ensure_dirs",
    "now_iso",
    "disk_has_room",
    "sanitize_filename",
    "load_json_file",
    "save_json_file",
    "append_json_list",
]
