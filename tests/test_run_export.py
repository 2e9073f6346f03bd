from __future__ import annotations

import json
from pathlib import Path
from typing import Any, List, Optional

import pytest

from perplexport.exporter import config, run
from perplexport.exporter.conversation import ThreadData
from perplexport.exporter.downloads import DownloadSynchronizer
from perplexport.exporter.error_codes import FatalLocalError, FetchTimeoutError, RemoteAPIError
from perplexport.exporter.harvester import ResponseHarvester
from perplexport.exporter.run import ExportContext, RecordPhase, fetch_thread_with_retries, process_record, run_export
from perplexport.exporter.scanner import Candidate, ScanResult
from perplexport.exporter.state import IncrementalState
from tests.fakes import FakePage, FakeRequestContext, _configure_temp_paths, make_entry

THREAD_URL = "https://www.perplexity.ai/search/thread-1"


class ScriptedLoader:
    """Replays a list of outcomes: exceptions are raised, anything else returned."""

    def __init__(self, outcomes: List[Any]) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0

    def load_thread(self, url: str, on_phase=None) -> Any:  # noqa: ANN001
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeSession:
    def __init__(self, tmp_path: Path) -> None:
        self.page = FakePage()
        self.harvester = ResponseHarvester()
        self.downloads = DownloadSynchronizer(tmp_path / "downloads")
        self.request = FakeRequestContext({})
        self.opened = 0
        self.closed = 0
        self.touched = 0

    def open(self) -> "FakeSession":
        self.opened += 1
        return self

    def close(self) -> None:
        self.closed += 1

    def touch(self) -> None:
        self.touched += 1

    def is_connected(self) -> bool:
        return self.opened > self.closed


def _thread(thread_id: str = "thread-1") -> ThreadData:
    conversation = {
        "entries": [
            make_entry("e1", "2024-01-01T10:00:00Z", query="What is a tide?", thread_url_slug=thread_id),
            make_entry("e2", "2024-01-05T08:00:00Z", query="And a spring tide?"),
        ]
    }
    return ThreadData(id=thread_id, conversation=conversation)


def _cfg(tmp_path: Path, **overrides: Any) -> config.ExportConfig:
    cfg = config.ExportConfig(delay_min_ms=0, delay_max_ms=0, output_dir=str(tmp_path / "export"), email="me@example.com")
    for key, value in overrides.items():
        setattr(cfg, key, value)
    return cfg


def _errors(data_dir: Path) -> List[dict]:
    path = data_dir / "errors.json"
    return json.loads(path.read_text(encoding="utf-8")) if path.exists() else []


def test_three_transient_failures_skip_record_and_leave_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data_dir = _configure_temp_paths(tmp_path, monkeypatch)
    session = FakeSession(tmp_path)
    loader = ScriptedLoader([RuntimeError("boom")] * 3)
    sleeps: List[float] = []
    state = IncrementalState.load(data_dir / "done.json")
    ctx = ExportContext(
        cfg=_cfg(tmp_path),
        state=state,
        session=session,
        loader=loader,
        sleep=sleeps.append,
        is_login=lambda _page: False,
    )

    exported = process_record(ctx, Candidate("T", THREAD_URL, "1h"), 0, 1)

    assert exported is False
    assert loader.calls == 3
    assert sleeps == [config.RETRY_BACKOFF_SECONDS] * 2
    assert state.processed_count() == 0
    assert not (data_dir / "done.json").exists()
    assert [e["url"] for e in _errors(data_dir)] == [THREAD_URL]
    assert ctx.phases[-1] == RecordPhase.SKIPPED.value


def test_remote_api_error_skips_immediately(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data_dir = _configure_temp_paths(tmp_path, monkeypatch)
    loader = ScriptedLoader([RemoteAPIError("Perplexity API Error: gone")])
    sleeps: List[float] = []

    result = fetch_thread_with_retries(loader, THREAD_URL, page=None, is_login=lambda _p: False, sleep=sleeps.append)

    assert result is None
    assert loader.calls == 1
    assert sleeps == []
    assert _errors(data_dir)[0]["error"] == "Perplexity API Error: gone"
    assert _errors(data_dir)[0]["error_code"] == "remote_api_error"


def test_fetch_timeout_logs_timeout_message(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data_dir = _configure_temp_paths(tmp_path, monkeypatch)
    loader = ScriptedLoader([FetchTimeoutError("Timeout waiting for API response for thread-1")] * 3)
    sleeps: List[float] = []

    result = fetch_thread_with_retries(loader, THREAD_URL, page=None, is_login=lambda _p: False, sleep=sleeps.append)

    assert result is None
    assert sleeps == [config.FETCH_TIMEOUT_BACKOFF_SECONDS] * 2
    assert _errors(data_dir)[0]["error"] == "Timeout waiting for API response"


def test_relogin_consumes_an_attempt(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    thread = _thread()
    loader = ScriptedLoader([FetchTimeoutError("t"), thread])
    logins: List[str] = []

    result = fetch_thread_with_retries(
        loader,
        THREAD_URL,
        page=object(),
        email="me@example.com",
        relogin=lambda _page, email: logins.append(email),
        is_login=lambda _page: True,
        sleep=lambda _s: None,
        max_attempts=2,
    )

    assert result is thread
    assert logins == ["me@example.com"]


def test_login_loop_is_bounded(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data_dir = _configure_temp_paths(tmp_path, monkeypatch)
    loader = ScriptedLoader([FetchTimeoutError("t")] * 3)
    logins: List[str] = []

    result = fetch_thread_with_retries(
        loader,
        THREAD_URL,
        page=object(),
        relogin=lambda _page, email: logins.append(email),
        is_login=lambda _page: True,
        sleep=lambda _s: None,
    )

    assert result is None
    assert len(logins) == 3
    assert len(_errors(data_dir)) == 1


def test_fatal_local_error_propagates(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    loader = ScriptedLoader([FatalLocalError("disk full")])

    with pytest.raises(FatalLocalError):
        fetch_thread_with_retries(loader, THREAD_URL, page=None, is_login=lambda _p: False)


def test_process_record_commits_outputs(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data_dir = _configure_temp_paths(tmp_path, monkeypatch)
    session = FakeSession(tmp_path)
    session.harvester.ingest("thread-1", {"entries": [make_entry("e1", None)]})
    state = IncrementalState.load(data_dir / "done.json")
    cfg = _cfg(tmp_path, file_prefix="pplx-")
    ctx = ExportContext(cfg=cfg, state=state, session=session, loader=ScriptedLoader([_thread()]), sleep=lambda _s: None)

    assert process_record(ctx, Candidate("Tides", THREAD_URL, "1h"), 0, 1) is True

    out = cfg.output_path
    assert json.loads((out / "pplx-thread-1.json").read_text(encoding="utf-8"))["entries"][0]["uuid"] == "e1"
    markdown = (out / "pplx-thread-1.md").read_text(encoding="utf-8")
    assert "# What is a tide?" in markdown

    saved = json.loads((data_dir / "done.json").read_text(encoding="utf-8"))
    assert saved["processed"][THREAD_URL]["lastUpdated"] == "2024-01-05T08:00:00.000Z"

    index = json.loads((data_dir / "search-index.json").read_text(encoding="utf-8"))
    assert index[0]["id"] == "thread-1"
    assert index[0]["filename"] == "pplx-thread-1.md"

    status = json.loads((data_dir / "status.json").read_text(encoding="utf-8"))
    assert status["current"] == 1
    assert status["phase"] == "downloading"

    assert session.harvester.get_buffer("thread-1") is None
    assert ctx.phases == ["fetching", "capturing_artifacts", "committing", "done"]


def _scan_returning(*candidates: Candidate):
    def _scan(page, state, **_kwargs) -> ScanResult:  # noqa: ANN001
        return ScanResult(to_process=list(candidates), discovered=list(candidates))

    return _scan


def test_run_export_processes_batch_and_closes_session(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data_dir = _configure_temp_paths(tmp_path, monkeypatch)
    session = FakeSession(tmp_path)
    candidates = [
        Candidate("One", THREAD_URL, "1h"),
        Candidate("Two", "https://www.perplexity.ai/search/thread-2", "2h"),
        Candidate("Three", "https://www.perplexity.ai/search/thread-3", "3h"),
    ]
    loader = ScriptedLoader([_thread("thread-1"), RemoteAPIError("gone")])
    logins: List[Optional[str]] = []

    summary = run_export(
        _cfg(tmp_path, batch_size=2),
        session=session,
        entrypoint="tests",
        sleep=lambda _s: None,
        login_fn=lambda _page, email: logins.append(email),
        scan_fn=_scan_returning(*candidates),
        loader_factory=lambda _session: loader,
    )

    assert summary["discovered"] == 3
    assert summary["due"] == 3
    assert summary["exported"] == 1
    assert summary["skipped"] == 1
    assert logins == ["me@example.com"]
    assert session.opened == 1
    assert session.closed == 1
    assert session.touched == 2

    found = json.loads((data_dir / "found.json").read_text(encoding="utf-8"))
    assert found["count"] == 3
    status = json.loads((data_dir / "status.json").read_text(encoding="utf-8"))
    assert status["phase"] == "complete"
    assert status["active"] is False
    assert list((data_dir / "runs").glob("run_*.json"))


def test_run_export_keeps_browser_open_when_configured(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data_dir = _configure_temp_paths(tmp_path, monkeypatch)
    session = FakeSession(tmp_path)

    summary = run_export(
        _cfg(tmp_path, keep_browser_open=True),
        session=session,
        entrypoint="tests",
        login_fn=lambda _page, _email: None,
        scan_fn=_scan_returning(),
    )

    assert summary["due"] == 0
    assert session.closed == 0
    status = json.loads((data_dir / "status.json").read_text(encoding="utf-8"))
    assert status["phase"] == "idle"
    assert status["message"] == "Idle - Library up to date"


def test_run_export_corrupt_state_aborts(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data_dir = _configure_temp_paths(tmp_path, monkeypatch)
    (data_dir / "done.json").write_text("{broken", encoding="utf-8")
    session = FakeSession(tmp_path)

    with pytest.raises(FatalLocalError):
        run_export(_cfg(tmp_path), session=session, entrypoint="tests", scan_fn=_scan_returning())

    assert session.closed == 1
    status = json.loads((data_dir / "status.json").read_text(encoding="utf-8"))
    assert status["active"] is False


def test_run_export_rejects_invalid_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)

    with pytest.raises(ValueError):
        run_export(_cfg(tmp_path, delay_min_ms=10, delay_max_ms=5), session=FakeSession(tmp_path), entrypoint="tests")


def test_cli_reindex_command(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    calls: List[Path] = []
    monkeypatch.setattr(run, "reindex_all", lambda output, **_kw: calls.append(output) or 0)

    run._cli_entrypoint(["reindex", "--output", str(tmp_path / "out")])

    assert calls == [tmp_path / "out"]


def _no_scan(*_args: Any, **_kwargs: Any) -> ScanResult:
    raise AssertionError("library scan must not run for a URL list")


def test_manual_urls_skip_exported_threads_and_ignore_batch_size(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data_dir = _configure_temp_paths(tmp_path, monkeypatch)
    done = IncrementalState(data_dir / "done.json")
    done.mark_processed("https://www.perplexity.ai/search/old", "2024-01-01T00:00:00.000Z")
    done.save()
    urls_file = tmp_path / "urls.json"
    urls_file.write_text(
        json.dumps(
            [
                "https://www.perplexity.ai/search/old",
                THREAD_URL,
                {"url": "https://www.perplexity.ai/search/thread-2", "title": "Second"},
                THREAD_URL + "?s=1",
            ]
        ),
        encoding="utf-8",
    )
    session = FakeSession(tmp_path)
    loader = ScriptedLoader([_thread("thread-1"), _thread("thread-2")])

    summary = run_export(
        _cfg(tmp_path, batch_size=1),
        session=session,
        entrypoint="tests",
        sleep=lambda _s: None,
        login_fn=lambda _page, _email: None,
        scan_fn=_no_scan,
        loader_factory=lambda _session: loader,
        urls_file=urls_file,
    )

    assert summary["discovered"] == 3
    assert summary["due"] == 2
    assert summary["exported"] == 2
    assert loader.calls == 2
    saved = json.loads((data_dir / "done.json").read_text(encoding="utf-8"))
    assert set(saved["processed"]) == {
        "https://www.perplexity.ai/search/old",
        THREAD_URL,
        "https://www.perplexity.ai/search/thread-2",
    }


def test_manual_urls_with_nothing_new_never_open_the_browser(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data_dir = _configure_temp_paths(tmp_path, monkeypatch)
    done = IncrementalState(data_dir / "done.json")
    done.mark_processed(THREAD_URL, "2024-01-01T00:00:00.000Z")
    done.save()
    urls_file = tmp_path / "urls.json"
    urls_file.write_text(json.dumps({"count": 1, "urls": [{"title": "T", "url": THREAD_URL}]}), encoding="utf-8")
    session = FakeSession(tmp_path)

    summary = run_export(_cfg(tmp_path), session=session, entrypoint="tests", scan_fn=_no_scan, urls_file=urls_file)

    assert summary["due"] == 0
    assert session.opened == 0


def test_manual_url_file_must_be_a_list(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data_dir = _configure_temp_paths(tmp_path, monkeypatch)
    state = IncrementalState(data_dir / "done.json")
    bad = tmp_path / "urls.json"
    bad.write_text('{"url": "x"}', encoding="utf-8")

    with pytest.raises(ValueError):
        run.load_manual_candidates(tmp_path / "missing.json", state)
    with pytest.raises(ValueError):
        run.load_manual_candidates(bad, state)


def test_cli_manual_command_passes_url_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    seen: List[Any] = []

    def _fake_run(cfg, **kwargs):  # noqa: ANN001
        seen.append(kwargs["urls_file"])
        return {"exported": 0, "skipped": 0, "discovered": 0}

    monkeypatch.setattr(run, "run_export", _fake_run)

    run._cli_entrypoint(["manual", "--urls", str(tmp_path / "list.json")])

    assert seen == [tmp_path / "list.json"]
