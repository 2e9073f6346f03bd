from __future__ import annotations

import json
from pathlib import Path

import pytest

from perplexport.exporter.error_codes import FatalLocalError
from perplexport.exporter.state import IncrementalState


def test_missing_state_file_is_empty(tmp_path: Path) -> None:
    state = IncrementalState.load(tmp_path / "done.json")

    assert state.processed_count() == 0
    assert state.get("https://www.perplexity.ai/search/a") is None


def test_legacy_list_is_migrated_and_written_back(tmp_path: Path) -> None:
    path = tmp_path / "done.json"
    urls = [f"https://www.perplexity.ai/search/thread-{i}" for i in range(4)]
    path.write_text(json.dumps({"processedUrls": urls}), encoding="utf-8")

    state = IncrementalState.load(path)

    assert state.processed_count() == 4
    for url in urls:
        record = state.get(url)
        assert record is not None
        assert record.last_updated == record.downloaded_at
        assert record.last_updated.endswith("Z")

    on_disk = json.loads(path.read_text(encoding="utf-8"))
    assert "processedUrls" not in on_disk
    assert set(on_disk["processed"]) == set(urls)
    assert on_disk["processed"][urls[0]]["lastUpdated"] == on_disk["processed"][urls[0]]["downloadedAt"]


def test_corrupt_state_file_is_fatal(tmp_path: Path) -> None:
    path = tmp_path / "done.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(FatalLocalError):
        IncrementalState.load(path)


def test_malformed_processed_map_is_fatal(tmp_path: Path) -> None:
    path = tmp_path / "done.json"
    path.write_text(json.dumps({"processed": ["a", "b"]}), encoding="utf-8")

    with pytest.raises(FatalLocalError):
        IncrementalState.load(path)


def test_mark_processed_round_trips_through_disk(tmp_path: Path) -> None:
    path = tmp_path / "done.json"
    state = IncrementalState.load(path)
    state.mark_processed("https://www.perplexity.ai/search/x", "2024-05-01T10:00:00.000Z")
    state.save()

    reloaded = IncrementalState.load(path)
    record = reloaded.get("https://www.perplexity.ai/search/x")
    assert record is not None
    assert record.last_updated == "2024-05-01T10:00:00.000Z"
    assert record.downloaded_at


def test_downloaded_at_never_moves_backwards(tmp_path: Path) -> None:
    url = "https://www.perplexity.ai/search/x"
    state = IncrementalState(tmp_path / "done.json")
    state.mark_processed(url, "2024-05-01T10:00:00.000Z")
    # A stored stamp from the future stands in for a clock that jumped back.
    state.processed[url].downloaded_at = "2999-01-01T00:00:00.000Z"

    record = state.mark_processed(url, "2024-05-02T10:00:00.000Z")

    assert record.downloaded_at == "2999-01-01T00:00:00.000Z"
    assert record.last_updated == "2024-05-02T10:00:00.000Z"
