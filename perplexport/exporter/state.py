"""Persistent record of which threads were exported and when."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from . import config
from .date_utils import parse_iso
from .error_codes import FatalLocalError
from .utils import log_line, now_iso, save_json_file


@dataclass
class ProcessedThread:
    last_updated: str
    downloaded_at: str

    def to_dict(self) -> Dict[str, str]:
        return {"lastUpdated": self.last_updated, "downloadedAt": self.downloaded_at}


class IncrementalState:
    """URL-keyed store of ``{lastUpdated, downloadedAt}`` backed by ``done.json``."""

    def __init__(self, path: Path | None = None, processed: Optional[Dict[str, ProcessedThread]] = None):
        self.path = Path(path or config.DONE_FILE)
        self.processed: Dict[str, ProcessedThread] = dict(processed or {})

    @classmethod
    def load(cls, path: Path | None = None) -> "IncrementalState":
        """Read the state file.

        A missing file is an empty store. The legacy ``processedUrls`` list is
        migrated with ``now`` for both timestamps and written back right away.
        An unreadable file raises :class:`FatalLocalError` so a run never
        starts from a silently emptied history.
        """

        target = Path(path or config.DONE_FILE)
        if not target.exists():
            return cls(target)

        try:
            with target.open("r", encoding="utf-8") as handle:
                raw = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            raise FatalLocalError(f"Unable to read state file {target}: {exc}") from exc

        if not isinstance(raw, dict):
            raise FatalLocalError(f"State file {target} is not a JSON object")

        if "processed" in raw:
            entries = raw.get("processed") or {}
            if not isinstance(entries, dict):
                raise FatalLocalError(f"State file {target} has a malformed 'processed' map")
            processed = {}
            for url, item in entries.items():
                item = item or {}
                processed[url] = ProcessedThread(
                    last_updated=str(item.get("lastUpdated") or ""),
                    downloaded_at=str(item.get("downloadedAt") or ""),
                )
            return cls(target, processed)

        legacy = raw.get("processedUrls")
        if isinstance(legacy, list):
            stamp = now_iso()
            processed = {str(url): ProcessedThread(stamp, stamp) for url in legacy}
            state = cls(target, processed)
            log_line(f"[STATE] Migrated {len(processed)} legacy entries in {target.name}")
            state.save()
            return state

        return cls(target)

    def is_processed(self, url: str) -> bool:
        return url in self.processed

    def get(self, url: str) -> Optional[ProcessedThread]:
        return self.processed.get(url)

    def mark_processed(self, url: str, last_updated: str) -> ProcessedThread:
        """Record a successful export of ``url``.

        ``downloadedAt`` never moves backwards, even if the clock does.
        """

        stamp = now_iso()
        previous = self.processed.get(url)
        if previous is not None:
            prev_dt = parse_iso(previous.downloaded_at)
            new_dt = parse_iso(stamp)
            if prev_dt is not None and new_dt is not None and prev_dt > new_dt:
                stamp = previous.downloaded_at
        record = ProcessedThread(last_updated=last_updated, downloaded_at=stamp)
        self.processed[url] = record
        return record

    def processed_count(self) -> int:
        return len(self.processed)

    def to_dict(self) -> Dict[str, Dict[str, Dict[str, str]]]:
        return {"processed": {url: item.to_dict() for url, item in self.processed.items()}}

    def save(self) -> None:
        try:
            save_json_file(self.path, self.to_dict())
        except OSError as exc:
            raise FatalLocalError(f"Unable to write state file {self.path}: {exc}") from exc


__all__ = ["ProcessedThread", "IncrementalState"]
