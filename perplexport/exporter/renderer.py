"""Render a thread payload to Markdown."""

from __future__ import annotations

import json
import os
import re
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

from .artifacts import extract_all_urls
from .utils import debug_line

_SPECIAL_USAGES = {"sources_answer_mode", "image_answer_mode", "video_answer_mode", "plan"}
_PPLX_LINK_RE = re.compile(r"\[(.*?)\]\(pplx://.*?\)")
_CITATION_RE = re.compile(r"\[(\d+)\]")


def _host_label(url: str) -> str:
    host = urlsplit(url).hostname or ""
    return f"({host.replace('www.', '')})" if host else ""


def _find_block(blocks: List[Dict[str, Any]], usage: str) -> Optional[Dict[str, Any]]:
    for block in blocks:
        if block.get("intended_usage") == usage:
            return block
    return None


def find_deep_text(obj: Any) -> Optional[str]:
    """Return the first answer-like text nested in ``obj``."""

    if not isinstance(obj, dict):
        if isinstance(obj, list):
            for item in obj:
                found = find_deep_text(item)
                if found:
                    return found
        return None

    markdown_block = obj.get("markdown_block")
    if isinstance(markdown_block, dict) and markdown_block.get("answer"):
        return markdown_block["answer"]
    for key in ("markdown", "answer", "text"):
        if isinstance(obj.get(key), str):
            return obj[key]
    for value in obj.values():
        if isinstance(value, (dict, list)):
            found = find_deep_text(value)
            if found:
                return found
    return None


def _is_answer_block(block: Dict[str, Any]) -> bool:
    usage = (block.get("intended_usage") or "").lower()
    if usage in _SPECIAL_USAGES:
        return False
    content = json.dumps(block)
    return (
        usage.startswith("ask_text")
        or "markdown" in usage
        or "answer" in usage
        or '"markdown"' in content
        or '"answer"' in content
    )


def cleanup_answer(answer: str, entry_index: int) -> str:
    text = _PPLX_LINK_RE.sub(r"\1", answer)
    return _CITATION_RE.sub(lambda m: f" [[#^{entry_index + 1}-{m.group(1)}]] ", text)


def render_sources(block: Dict[str, Any], entry_index: int, local_files: Dict[str, str]) -> str:
    rows = block.get("rows") or []
    lines = [f"## {len(rows)} Sources\n"]
    for row in rows:
        web = row.get("web_result") or {}
        url = web.get("url") or ""
        display = local_files.get(url, url)
        name = web.get("name") or url
        if url.startswith("http"):
            line = f"- [{name}]({display}) {_host_label(url)}"
        else:
            line = f"- {name} ({display})"
        if web.get("snippet"):
            line += f"\n    {web['snippet']}"
        if row.get("citation"):
            line += f" ^{entry_index + 1}-{row['citation']}"
        lines.append(line)
    return "\n".join(lines) + "\n"


def render_images(block: Dict[str, Any], local_files: Dict[str, str]) -> str:
    rendered = []
    for item in block.get("media_items") or []:
        height = item.get("image_height") or 100
        width = round((item.get("image_width") or 100) * 100 / height)
        image = local_files.get(item.get("image"), item.get("image"))
        rendered.append(f"[![{item.get('name', '')}|{width}x100]({image})]({item.get('url', '')})")
    return " ".join(rendered) + "\n"


def render_video(block: Dict[str, Any], local_files: Dict[str, str]) -> str:
    lines = []
    for item in block.get("media_items") or []:
        url = item.get("url") or ""
        lines.append(f"- 📺 [{item.get('name', '')}]({local_files.get(url, url)}) {_host_label(url)}")
    return "\n".join(lines) + "\n"


def render_plan(plan: Dict[str, Any], local_files: Dict[str, str]) -> str:
    parts = ["### 🧠 Pro Search Reasoning\n"]
    if plan.get("progress"):
        parts.append(f"**Status:** {plan['progress']}\n")

    goals = plan.get("goals") or []
    if goals:
        parts.append("#### Goals")
        for goal in goals:
            if goal.get("final"):
                icon = "✅"
            elif goal.get("todo_task_status") == "completed":
                icon = "✔️"
            else:
                icon = "⏳"
            parts.append(f"- {icon} {goal.get('description', '')}")
        parts.append("")

    steps = plan.get("steps") or []
    if steps:
        parts.append("#### Steps Taken")
        for idx, step in enumerate(steps, start=1):
            parts.append(f"##### Step {idx}: {step.get('step_type', '')}")
            initial = step.get("initial_query_content")
            if initial:
                parts.append(f"- **Initial Query:** {initial.get('query', '')}")
            searches = step.get("search_web_content")
            if searches:
                parts.append("- **Web Searches:**")
                for query in searches.get("queries") or []:
                    parts.append(f"  - `{query.get('query', '')}` ({query.get('engine', '')})")
            results = step.get("web_results_content")
            if results:
                parts.append(f"- **Found {len(results.get('web_results') or [])} results**")
            if step.get("step_type") == "CODE":
                for asset in step.get("assets") or []:
                    code_file = asset.get("code_file")
                    if asset.get("asset_type") != "CODE_FILE" or not code_file:
                        continue
                    filename = code_file.get("filename") or code_file.get("name") or "artifact"
                    meta = f"({code_file.get('file_size', 0)} bytes, {code_file.get('mime_type') or 'text/html'})"
                    local = local_files.get(f"inline://{filename}")
                    label = f"[{filename}]({local})" if local else filename
                    parts.append(f"- **📄 Generated File:** {label} {meta}")
        parts.append("")

    return "\n".join(parts) + "\n"


def render_related(items: List[Dict[str, Any]]) -> str:
    lines = ["#### 💡 Related Questions\n"]
    lines.extend(f"- {item.get('text', '')}" for item in items)
    return "\n".join(lines) + "\n"


def render_conversation(conversation: Dict[str, Any], local_files: Optional[Dict[str, str]] = None) -> str:
    """Return the Markdown document for a thread.

    ``local_files`` maps remote URLs (or ``inline://<name>`` keys) to paths
    relative to the output directory; mapped links point at the local copy.
    """

    local_files = local_files or {}
    entries = (conversation or {}).get("entries") or []
    if not entries:
        return ""

    items = [
        "---\n"
        f"Perplexity URL: https://www.perplexity.ai/search/{entries[0].get('thread_url_slug', '')}\n"
        f"Last updated: {entries[-1].get('updated_datetime', '')}\n"
        "---"
    ]

    for entry_index, entry in enumerate(entries):
        if entry_index > 0:
            items.append("* * *")

        query = entry.get("query_str") or ""
        items.append(f"# {query.split(chr(10))[0]}")
        items.append(">[!important] " + "\n> ".join(query.split("\n")))

        blocks = entry.get("blocks") or []
        answer_blocks = [block for block in blocks if _is_answer_block(block)]
        if answer_blocks:
            debug_line(f"[RENDER] Aggregating {len(answer_blocks)} answer blocks for entry {entry_index}...")

        sources = (_find_block(blocks, "sources_answer_mode") or {}).get("sources_mode_block")
        images = (_find_block(blocks, "image_answer_mode") or {}).get("image_mode_block")
        videos = (_find_block(blocks, "video_answer_mode") or {}).get("video_mode_block")
        plan = (_find_block(blocks, "plan") or {}).get("plan_block")
        pro_plan = (_find_block(blocks, "pro_search_steps") or {}).get("plan_block")

        if plan:
            items.append(render_plan(plan, local_files))
        if pro_plan and pro_plan != plan:
            items.append(render_plan(pro_plan, local_files))
        if images:
            items.append(render_images(images, local_files))
        if videos:
            items.append(render_video(videos, local_files))

        seen_texts = set()
        for block in answer_blocks:
            text = find_deep_text(block)
            if text and text.strip() and text.strip() not in seen_texts:
                items.append(cleanup_answer(text, entry_index))
                seen_texts.add(text.strip())

        if sources:
            items.append(render_sources(sources, entry_index, local_files))

        related = entry.get("related_query_items") or []
        if related:
            items.append(render_related(related))

    referenced = set(extract_all_urls(conversation))
    supplemental = [url for url in local_files if url not in referenced]
    if supplemental:
        items.append("* * *")
        items.append("## 📎 Supplemental Artifacts")
        for url in supplemental:
            local = local_files[url]
            items.append(f"- [{os.path.basename(local)}]({local})")

    return "\n\n".join(items)


__all__ = ["render_conversation", "cleanup_answer", "find_deep_text"]
