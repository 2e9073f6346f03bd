from typing import Any, Dict, List

import pytest

from perplexport.exporter import pagination
from perplexport.exporter.pagination import PageFetchError, complete_backward_pagination, make_page_fetcher
from tests.fakes import FakePage, make_entry


def _no_sleep(_seconds: float) -> None:
    return None


def _fetcher(pages: Dict[str, Any], calls: List[str]):
    def fetch_page(thread_id: str, cursor: str) -> Dict[str, Any]:
        calls.append(cursor)
        result = pages[cursor]
        if isinstance(result, Exception):
            raise result
        return result

    return fetch_page


def test_has_more_without_cursor_stops_on_first_page() -> None:
    calls: List[str] = []
    first = {"entries": [make_entry("3", "2024-01-03T00:00:00Z")], "has_next_page": True, "next_cursor": None}

    result = complete_backward_pagination("t", first, _fetcher({}, calls), page_delay=0, sleep=_no_sleep)

    assert calls == []
    assert result.pages == 1
    assert result.stopped_reason == "missing_cursor"
    assert [e["uuid"] for e in result.conversation["entries"]] == ["3"]


def test_walks_cursors_and_prepends_older_pages() -> None:
    calls: List[str] = []
    first = {"entries": [make_entry("3", "2024-01-03T00:00:00Z")], "has_next_page": True, "next_cursor": "c1"}
    pages = {
        "c1": {"entries": [make_entry("2", "2024-01-02T00:00:00Z")], "has_next_page": True, "next_cursor": "c2"},
        "c2": {"entries": [make_entry("1", "2024-01-01T00:00:00Z")], "has_next_page": False},
    }

    result = complete_backward_pagination("t", first, _fetcher(pages, calls), page_delay=0, sleep=_no_sleep)

    assert calls == ["c1", "c2"]
    assert result.pages == 3
    assert result.stopped_reason == "complete"
    assert [e["uuid"] for e in result.conversation["entries"]] == ["1", "2", "3"]
    assert result.conversation["next_cursor"] is None
    assert result.conversation["has_next_page"] is False


@pytest.mark.parametrize(
    "payload, reason",
    [
        ({"entries": [], "has_next_page": True, "next_cursor": "c2"}, "empty_page"),
        ({"entries": [make_entry("3", None)], "has_next_page": True, "next_cursor": "c2"}, "no_new_entries"),
    ],
)
def test_stops_early(payload: Dict[str, Any], reason: str) -> None:
    calls: List[str] = []
    first = {"entries": [make_entry("3", None)], "has_next_page": True, "next_cursor": "c1"}

    result = complete_backward_pagination("t", first, _fetcher({"c1": payload}, calls), page_delay=0, sleep=_no_sleep)

    assert calls == ["c1"]
    assert result.stopped_reason == reason


def test_failed_page_keeps_merged_entries() -> None:
    calls: List[str] = []
    first = {"entries": [make_entry("3", None)], "has_next_page": True, "next_cursor": "c1"}
    pages = {
        "c1": {"entries": [make_entry("2", None)], "has_next_page": True, "next_cursor": "c2"},
        "c2": PageFetchError("HTTP 500"),
    }

    result = complete_backward_pagination("t", first, _fetcher(pages, calls), page_delay=0, sleep=_no_sleep)

    assert result.stopped_reason == "error"
    assert result.error == "HTTP 500"
    assert [e["uuid"] for e in result.conversation["entries"]] == ["2", "3"]


def test_page_fetcher_encodes_cursor_and_raises_on_error() -> None:
    seen: List[Any] = []

    def evaluate(script: str, arg: Any) -> Any:
        seen.append(arg)
        return {"error": "HTTP 403", "status": 403} if "bad" in arg["url"] else {"entries": []}

    fetch_page = make_page_fetcher(FakePage(evaluate=evaluate))

    assert fetch_page("abc", "a/b+c") == {"entries": []}
    assert seen[0]["url"] == f"{pagination.config.THREAD_API_URL}/abc?cursor=a%2Fb%2Bc"
    with pytest.raises(PageFetchError):
        fetch_page("abc", "bad")
