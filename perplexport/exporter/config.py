"""Configuration constants for the conversation exporter."""
from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

DATA_DIR: Path = Path(os.getenv("PERPLEXPORT_DATA_DIR", "."))
LOG_DIR: Path = DATA_DIR / "logs"
LOG_FILE: Path = LOG_DIR / "latest.log"
CONFIG_FILE: Path = DATA_DIR / "config.json"
DONE_FILE: Path = DATA_DIR / "done.json"
ERROR_FILE: Path = DATA_DIR / "errors.json"
SKIPPED_FILE: Path = DATA_DIR / "skipped.json"
STATUS_FILE: Path = DATA_DIR / "status.json"
FOUND_FILE: Path = DATA_DIR / "found.json"
INDEX_FILE: Path = DATA_DIR / "search-index.json"
RUNS_DIR: Path = DATA_DIR / "runs"

BASE_URL: str = "https://www.perplexity.ai"
LIBRARY_URL: str = f"{BASE_URL}/library"
THREAD_API_MARKER: str = "/rest/thread/"
THREAD_API_URL: str = f"{BASE_URL}/rest/thread"
# Thread ids that share the detail endpoint prefix but are not threads.
NON_THREAD_IDS: frozenset[str] = frozenset({"list_recent"})

# Hosts that serve generated content worth capturing as artifacts.
GENERATED_DOMAINS: tuple[str, ...] = (
    "perplexity.ai",
    "s3.amazonaws.com",
    "ppl-ai",
    "imagedelivery.net",
)
SKIPPED_ARTIFACT_HOSTS: tuple[str, ...] = (
    "google.com",
    "bing.com",
    "youtube.com",
    "twitter.com",
    "facebook.com",
    "linkedin.com",
)


def _parse_seconds(env_var: str, default: float, *, minimum: float = 0.0) -> float:
    """Parse a duration in seconds from the environment with a lower bound."""

    try:
        value = float(os.getenv(env_var, str(default)))
    except ValueError:
        return default
    return max(minimum, value)


# Navigation timeout for page.goto calls.
NAV_TIMEOUT_SECONDS: float = _parse_seconds("PERPLEXPORT_NAV_TIMEOUT_SECONDS", 30, minimum=1)
# Budget for the thread detail endpoint to answer after navigation.
FETCH_WAIT_SECONDS: float = _parse_seconds("PERPLEXPORT_FETCH_WAIT_SECONDS", 30, minimum=1)
# Budget for a browser download event after a fetch was aborted.
DOWNLOAD_TIMEOUT_SECONDS: float = _parse_seconds("PERPLEXPORT_DOWNLOAD_TIMEOUT_SECONDS", 15, minimum=1)
ARTIFACT_FETCH_TIMEOUT_SECONDS: float = _parse_seconds(
    "PERPLEXPORT_ARTIFACT_FETCH_TIMEOUT_SECONDS", 60, minimum=1
)
PAGINATION_DELAY_SECONDS: float = _parse_seconds("PERPLEXPORT_PAGINATION_DELAY_SECONDS", 1.0)
# Pause before retrying a thread that failed for a generic reason.
RETRY_BACKOFF_SECONDS: float = _parse_seconds("PERPLEXPORT_RETRY_BACKOFF_SECONDS", 2)
FETCH_TIMEOUT_BACKOFF_SECONDS: float = _parse_seconds("PERPLEXPORT_FETCH_TIMEOUT_BACKOFF_SECONDS", 3)
RATE_LIMIT_COOLDOWN_SECONDS: float = _parse_seconds(
    "PERPLEXPORT_RATE_LIMIT_COOLDOWN_SECONDS", 300
)

MAX_FETCH_ATTEMPTS: int = int(os.getenv("PERPLEXPORT_MAX_FETCH_ATTEMPTS", "3"))
MAX_RATE_LIMIT_ATTEMPTS: int = int(os.getenv("PERPLEXPORT_MAX_RATE_LIMIT_ATTEMPTS", "4"))
SCAN_STABLE_ROUNDS: int = int(os.getenv("PERPLEXPORT_SCAN_STABLE_ROUNDS", "3"))
SCAN_MAX_ROUNDS: int = int(os.getenv("PERPLEXPORT_SCAN_MAX_ROUNDS", "100"))
# Slack added to the stored remote timestamp before a listing time counts as newer.
CHANGE_BUFFER_SECONDS: float = _parse_seconds("PERPLEXPORT_CHANGE_BUFFER_SECONDS", 1, minimum=1)
MIN_FREE_MB: int = int(os.getenv("PERPLEXPORT_MIN_FREE_MB", "200"))

USER_AGENT: str = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/122.0.0.0 Safari/537.36"
)

SCAN_MODES: frozenset[str] = frozenset({"full", "top"})


@dataclass
class ExportConfig:
    """Runtime settings persisted in ``config.json``."""

    email: str = ""
    delay_min_ms: int = 7000
    delay_max_ms: int = 14000
    file_prefix: str = ""
    batch_size: int = 50
    output_dir: str = "export"
    scroll_delay_ms: int = 2000
    debug: bool = False
    keep_browser_open: bool = False
    browser_inactivity_timeout_minutes: int = 0
    scan_mode: str = "full"
    scan_top_limit: int = 10
    headless: bool = False
    assume_due_on_unparseable: bool = False

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ExportConfig":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (raw or {}).items() if k in known})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @property
    def output_path(self) -> Path:
        path = Path(self.output_dir)
        return path if path.is_absolute() else DATA_DIR / path


def load_config(path: Path | None = None) -> ExportConfig:
    """Load ``config.json``; a missing file yields the defaults."""

    target = Path(path or CONFIG_FILE)
    if not target.exists():
        return ExportConfig()
    with target.open("r", encoding="utf-8") as handle:
        return ExportConfig.from_dict(json.load(handle))


def save_config(cfg: ExportConfig | dict[str, Any], path: Path | None = None) -> None:
    """Persist runtime settings to ``config.json``."""

    target = Path(path or CONFIG_FILE)
    payload = cfg.to_dict() if isinstance(cfg, ExportConfig) else dict(cfg)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def is_top_mode(mode: str) -> bool:
    """Return ``True`` when ``mode`` limits the scan to the newest threads."""

    return str(mode).strip().lower() == "top"
