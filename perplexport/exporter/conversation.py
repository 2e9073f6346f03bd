"""Helpers for thread payloads and their entries."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlsplit

from .date_utils import parse_iso

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class ThreadData:
    """A fully assembled thread handed from the loader to the orchestrator."""

    id: str
    conversation: Dict[str, Any]
    dom_urls: List[str] = field(default_factory=list)
    inline_artifacts: List[Any] = field(default_factory=list)
    artifact_urls: List[str] = field(default_factory=list)


def thread_id_from_url(url: str) -> str:
    """Return the last path segment of a thread URL, query string dropped."""

    path = urlsplit(url).path.rstrip("/")
    return path.rsplit("/", 1)[-1]


def entry_key(entry: Dict[str, Any]) -> Optional[str]:
    return entry.get("uuid")


def entry_modified_at(entry: Dict[str, Any]) -> datetime:
    """Return the entry's update time; missing or unparseable values sort first."""

    raw = entry.get("updated_datetime") or entry.get("entry_updated_datetime")
    parsed = parse_iso(raw) if isinstance(raw, str) else None
    return parsed or _EPOCH


def sort_entries(entries: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    # sorted() is stable, so ties keep their arrival order.
    return sorted(entries, key=entry_modified_at)


def merge_entries(
    existing: List[Dict[str, Any]],
    incoming: Iterable[Dict[str, Any]],
    *,
    prepend: bool = False,
) -> List[Dict[str, Any]]:
    """Union ``incoming`` into ``existing`` by entry key.

    Entries whose key is already present are dropped. With ``prepend`` the new
    entries go in front, which is how older pages are stitched in.
    """

    seen = {entry_key(item) for item in existing}
    fresh: List[Dict[str, Any]] = []
    for entry in incoming:
        key = entry_key(entry)
        if key in seen:
            continue
        seen.add(key)
        fresh.append(entry)
    return fresh + list(existing) if prepend else list(existing) + fresh


def latest_updated(entries: Iterable[Dict[str, Any]]) -> datetime:
    """Return the newest entry time, or now when no entry carries one."""

    times = [entry_modified_at(entry) for entry in entries]
    times = [moment for moment in times if moment > _EPOCH]
    return max(times) if times else datetime.now(timezone.utc)


def format_iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def conversation_title(conversation: Dict[str, Any], fallback: str = "Untitled") -> str:
    """Return the thread title, taken from the first entry's query."""

    for entry in conversation.get("entries") or []:
        title = entry.get("thread_title") or entry.get("query_str")
        if title:
            return str(title).strip()
    return fallback


__all__ = [
    "ThreadData",
    "thread_id_from_url",
    "entry_key",
    "entry_modified_at",
    "sort_entries",
    "merge_entries",
    "latest_updated",
    "format_iso",
    "conversation_title",
]
