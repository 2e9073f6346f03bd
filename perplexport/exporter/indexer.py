"""Search index maintained alongside the exported threads."""

from __future__ import annotations

import glob
import json
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

from . import config
from .artifacts import extract_all_urls, extract_inline_artifacts, filter_generated_urls
from .renderer import render_conversation
from .utils import load_json_file, log_line, sanitize_filename, save_json_file

_SENTENCE_RE = re.compile(r"[^.!?]+[.!?]+(?=\s|$)")
_MARKDOWN_MARKERS_RE = re.compile(r"[#>*_\[\]!]")
_METADATA_LINE_RE = re.compile(r"^#+\s+|^>\[!.*?\]", re.IGNORECASE)
_PREAMBLES = (
    "to answer your question",
    "you asked about",
    "regarding your question",
    "here is the answer",
    "according to the search",
)
_MAX_TITLE_WORDS = 15
_MAX_TITLE_SENTENCES = 2


def split_title(raw_query: str) -> Tuple[str, str]:
    """Split a long query into a short title and the remaining text."""

    sentences = _SENTENCE_RE.findall(raw_query) or [raw_query]
    sentence_part = " ".join(s.strip() for s in sentences[:_MAX_TITLE_SENTENCES]).strip()
    words = raw_query.split()
    word_part = (" ".join(words[:_MAX_TITLE_WORDS]) if len(words) > _MAX_TITLE_WORDS else raw_query).strip()

    if len(words) <= _MAX_TITLE_WORDS and len(sentences) <= _MAX_TITLE_SENTENCES:
        return raw_query, ""

    title = word_part if len(word_part) < len(sentence_part) else sentence_part
    remaining = raw_query[len(title):].strip() if len(title) < len(raw_query) else ""
    if remaining[:1] in {"?", ".", "!"}:
        title += remaining[0]
        remaining = remaining[1:].strip()
    return title, remaining


def _first_answer(entry: Dict[str, Any]) -> str:
    for block in entry.get("blocks") or []:
        if block.get("intended_usage") == "ask_text":
            return ((block.get("markdown_block") or {}).get("answer") or "").strip()
    return ""


def clean_first_reply(reply: str, raw_query: str) -> str:
    """Strip echoes of the question and stock lead-ins from the first answer."""

    query = raw_query.lower().strip()
    lines = reply.split("\n")
    start = 0
    while start < len(lines):
        line = lines[start].strip()
        if not line:
            start += 1
            continue
        text_only = _MARKDOWN_MARKERS_RE.sub("", line).strip().lower()
        repeats = (
            text_only == query
            or (len(query) > 20 and query in text_only)
            or (len(text_only) > 20 and text_only in query)
        )
        if repeats or (_METADATA_LINE_RE.match(line) and query[:20] in text_only):
            start += 1
        else:
            break
    text = "\n".join(lines[start:]).strip()

    for preamble in _PREAMBLES:
        if text.lower().startswith(preamble):
            newline = text.find("\n")
            if newline != -1:
                text = text[newline + 1:].strip()
            elif len(text) < 100:
                text = ""

    if query and text.lower().startswith(query):
        text = text[len(query):].strip()
        if text[:1] in {":", ".", ","}:
            text = text[1:].strip()
    return text


def build_index_entry(thread_id: str, conversation: Dict[str, Any], filename: str) -> Optional[Dict[str, Any]]:
    entries = conversation.get("entries") or []
    if not entries:
        return None
    first = entries[0]

    thread_title = (first.get("thread_title") or "").strip()
    raw_query = (first.get("query_str") or "Untitled Conversation").strip()
    if thread_title and thread_title != "Untitled Conversation":
        title, remaining = thread_title, ""
    else:
        title, remaining = split_title(raw_query)

    reply = clean_first_reply(_first_answer(first), raw_query)
    snippet = ""
    if remaining:
        snippet = "..." + remaining
    if reply:
        snippet += (" " if remaining else "") + reply

    content = "\n\n".join(f"{e.get('query_str') or ''}\n{_first_answer(e)}" for e in entries)

    return {
        "id": thread_id,
        "title": title,
        "snippet": snippet.strip(),
        "content": content,
        "url": f"{config.BASE_URL}/search/{first.get('thread_url_slug', '')}",
        "filename": filename,
        "date": first.get("updated_datetime"),
    }


def _load_index(path: Path) -> List[Dict[str, Any]]:
    try:
        loaded = load_json_file(path, default=[])
    except (json.JSONDecodeError, OSError) as exc:
        log_line(f"[IDX] Unable to read {path.name} ({exc}); rebuilding.")
        return []
    return loaded if isinstance(loaded, list) else []


def update_search_index(
    thread_id: str,
    conversation: Dict[str, Any],
    filename: str,
    *,
    path: Optional[Path] = None,
) -> Optional[Dict[str, Any]]:
    """Upsert the index entry for ``thread_id``; order of other entries is kept."""

    entry = build_index_entry(thread_id, conversation, filename)
    if entry is None:
        return None

    target = Path(path or config.INDEX_FILE)
    index = _load_index(target)
    for position, item in enumerate(index):
        if item.get("id") == thread_id:
            index[position] = entry
            break
    else:
        index.append(entry)

    save_json_file(target, index)
    log_line(f"[IDX] Updated search index for: {entry['title']}")
    return entry


def _thread_files(output_dir: Path) -> List[Path]:
    return sorted(
        p for p in Path(output_dir).glob("*.json") if "search-index" not in p.name
    )


def _thread_id_for(file: Path, file_prefix: str) -> str:
    stem = file.stem
    if file_prefix and stem.startswith(file_prefix):
        return stem[len(file_prefix):]
    return stem


def reindex_all(output_dir: Path, *, file_prefix: str = "", path: Optional[Path] = None) -> int:
    """Rebuild index entries for every exported thread JSON in ``output_dir``.

    Entries are keyed by thread id, so ``file_prefix`` is stripped from each
    file stem the same way a fresh export names them.
    """

    files = _thread_files(output_dir)
    log_line(f"[IDX] Found {len(files)} threads to re-index.")
    count = 0
    for file in files:
        try:
            conversation = load_json_file(file, default={})
        except (json.JSONDecodeError, OSError) as exc:
            log_line(f"[IDX] Skipping {file.name}: {exc}")
            continue
        thread_id = _thread_id_for(file, file_prefix)
        if update_search_index(thread_id, conversation, f"{file.stem}.md", path=path):
            count += 1
    log_line(f"[IDX] Re-indexing complete ({count} threads).")
    return count


def _find_saved(files_dir: Path, name: str) -> Optional[Path]:
    exact = files_dir / name
    if exact.is_file():
        return exact
    # Extension-less URLs were saved with a suffix taken from the content type.
    matches = sorted(files_dir.glob(f"{glob.escape(name)}.*"))
    return matches[0] if len(matches) == 1 else None


def local_file_map(conversation: Dict[str, Any], output_dir: Path, thread_id: str) -> Dict[str, str]:
    """Rebuild the URL -> local path map from what ``files/<thread_id>/`` holds."""

    output_dir = Path(output_dir)
    files_dir = output_dir / "files" / thread_id
    if not files_dir.is_dir():
        return {}

    mapping: Dict[str, str] = {}
    for artifact in extract_inline_artifacts(conversation):
        saved = _find_saved(files_dir, sanitize_filename(artifact.filename))
        if saved is None:
            continue
        relative = saved.relative_to(output_dir).as_posix()
        mapping[f"inline://{artifact.filename}"] = relative
        if artifact.url:
            mapping[artifact.url] = relative

    for url in filter_generated_urls(extract_all_urls(conversation)):
        if url in mapping:
            continue
        base = os.path.basename(urlsplit(url).path)
        if not base:
            continue
        saved = _find_saved(files_dir, sanitize_filename(base))
        if saved is not None:
            mapping[url] = saved.relative_to(output_dir).as_posix()
    return mapping


def rerender_all(output_dir: Path, *, file_prefix: str = "") -> int:
    """Rewrite every ``<name>.md`` from its ``<name>.json``; manual edits are lost.

    Links point at the artifacts already saved under ``files/<thread_id>/``.
    """

    count = 0
    for file in _thread_files(output_dir):
        try:
            conversation = load_json_file(file, default={})
        except (json.JSONDecodeError, OSError) as exc:
            log_line(f"[RENDER] Skipping {file.name}: {exc}")
            continue
        local_files = local_file_map(conversation, output_dir, _thread_id_for(file, file_prefix))
        file.with_suffix(".md").write_text(render_conversation(conversation, local_files), encoding="utf-8")
        log_line(f"[RENDER] Rendered {file.name} ({len(local_files)} local files)")
        count += 1
    return count


__all__ = [
    "build_index_entry",
    "clean_first_reply",
    "local_file_map",
    "reindex_all",
    "rerender_all",
    "split_title",
    "update_search_index",
]
