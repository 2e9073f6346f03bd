from __future__ import annotations

import json
from pathlib import Path

import pytest

from perplexport.exporter.scanner import Candidate
from perplexport.exporter.status import log_error, log_found_urls, log_skipped_files, read_status, update_status
from tests.fakes import _configure_temp_paths


def test_update_status_overwrites_and_flags_activity(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data_dir = _configure_temp_paths(tmp_path, monkeypatch)

    update_status(0, 5, "Initializing export...", "initializing")
    update_status(5, 5, "Batch completed!", "complete")

    status = json.loads((data_dir / "status.json").read_text(encoding="utf-8"))
    assert status["current"] == 5
    assert status["phase"] == "complete"
    assert status["active"] is False
    assert status["type"] == "export"
    assert read_status()["message"] == "Batch completed!"


def test_unknown_phase_is_rejected(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)

    with pytest.raises(ValueError):
        update_status(0, 0, "?", "exploding")


def test_read_status_defaults_when_missing(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)

    assert read_status() == {
        "current": 0,
        "total": 0,
        "message": "",
        "phase": "idle",
        "active": False,
        "type": "export",
    }


def test_error_and_skip_logs_append(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data_dir = _configure_temp_paths(tmp_path, monkeypatch)

    log_error("https://www.perplexity.ai/search/a", "boom", error_code="internal_error")
    log_error("https://www.perplexity.ai/search/b", "bang")
    log_skipped_files("a", [{"url": "https://x/y.png", "error": "HTTP 404"}])

    errors = json.loads((data_dir / "errors.json").read_text(encoding="utf-8"))
    skipped = json.loads((data_dir / "skipped.json").read_text(encoding="utf-8"))
    assert [e["url"].rsplit("/", 1)[-1] for e in errors] == ["a", "b"]
    assert errors[0]["error_code"] == "internal_error"
    assert "error_code" not in errors[1]
    assert skipped[0]["threadId"] == "a"
    assert skipped[0]["skipped"][0]["error"] == "HTTP 404"


def test_corrupt_error_log_is_set_aside(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data_dir = _configure_temp_paths(tmp_path, monkeypatch)
    (data_dir / "errors.json").write_text("[{oops", encoding="utf-8")

    log_error("https://www.perplexity.ai/search/a", "boom")

    assert len(json.loads((data_dir / "errors.json").read_text(encoding="utf-8"))) == 1
    assert (data_dir / "errors.json.corrupt").read_text(encoding="utf-8") == "[{oops"


def test_log_found_urls(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data_dir = _configure_temp_paths(tmp_path, monkeypatch)

    log_found_urls([Candidate("A", "https://www.perplexity.ai/search/a", "1h")])

    found = json.loads((data_dir / "found.json").read_text(encoding="utf-8"))
    assert found["count"] == 1
    assert found["urls"] == [{"title": "A", "url": "https://www.perplexity.ai/search/a"}]
