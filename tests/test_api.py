from __future__ import annotations

import importlib
import json
import sys
from pathlib import Path
from typing import Any, Dict, List

import pytest

from tests.fakes import _configure_temp_paths


def _reload_main_module():
    if "perplexport.main" in sys.modules:
        del sys.modules["perplexport.main"]
    return importlib.import_module("perplexport.main")


class FakeSession:
    def __init__(self, **_kwargs: Any) -> None:
        self.connected = True
        self.closed = 0
        self.idle = 0.0

    def is_connected(self) -> bool:
        return self.connected

    def touch(self) -> None:
        self.idle = 0.0

    def idle_seconds(self) -> float:
        return self.idle

    def close(self) -> None:
        self.closed += 1
        self.connected = False


def _worker(main, runs: List[Dict[str, Any]]):  # noqa: ANN001
    def _run(cfg, session=None, entrypoint="cli"):  # noqa: ANN001
        runs.append({"cfg": cfg, "session": session, "entrypoint": entrypoint})
        return {"exported": 0}

    return main.ExportWorker(run=_run, session_factory=FakeSession)


def test_config_round_trip(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data_dir = _configure_temp_paths(tmp_path, monkeypatch)
    main = _reload_main_module()
    client = main.app.test_client()

    resp = client.post("/api/config", json={"email": "me@example.com", "batch_size": 3})
    assert resp.status_code == 200
    assert resp.get_json()["batch_size"] == 3

    assert client.get("/api/config").get_json()["email"] == "me@example.com"
    assert json.loads((data_dir / "config.json").read_text(encoding="utf-8"))["batch_size"] == 3


def test_invalid_config_is_rejected(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    main = _reload_main_module()
    client = main.app.test_client()

    resp = client.post("/api/config", json={"delay_min_ms": 10, "delay_max_ms": 1})

    assert resp.status_code == 400
    assert "delay_min_ms" in resp.get_json()["error"]


def test_export_starts_in_background_and_rejects_overlap(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    main = _reload_main_module()
    runs: List[Dict[str, Any]] = []
    monkeypatch.setattr(main, "worker", _worker(main, runs))
    client = main.app.test_client()

    resp = client.post("/api/export")
    assert resp.status_code == 202
    main.worker.wait_idle()
    assert runs[0]["entrypoint"] == "ui"
    assert runs[0]["session"] is None

    monkeypatch.setattr(main.worker, "is_busy", lambda: True)
    busy = client.post("/api/export")
    assert busy.status_code == 429
    assert busy.get_json()["error"] == "Export already in progress"


def test_worker_reuses_open_session_and_closes_when_idle(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    main = _reload_main_module()
    runs: List[Dict[str, Any]] = []
    worker = _worker(main, runs)
    cfg = main.config.ExportConfig(keep_browser_open=True, browser_inactivity_timeout_minutes=5)

    assert worker.submit(cfg)
    worker.wait_idle()
    assert worker.submit(cfg)
    worker.wait_idle()

    session = runs[0]["session"]
    assert isinstance(session, FakeSession)
    assert runs[1]["session"] is session
    assert worker.session is session
    assert worker._idle_timeout() == pytest.approx(300.0)

    session.idle = 301.0
    worker._close_idle_session()
    assert session.closed == 1
    assert worker.session is None


def test_status_index_and_health(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data_dir = _configure_temp_paths(tmp_path, monkeypatch)
    (data_dir / "search-index.json").write_text(json.dumps([{"id": "a"}]), encoding="utf-8")
    main = _reload_main_module()
    client = main.app.test_client()

    assert client.get("/api/status").get_json()["phase"] == "idle"
    assert client.get("/api/index").get_json() == [{"id": "a"}]

    health = client.get("/api/health")
    assert health.status_code == 200
    assert health.get_json()["ok"] is True


def test_reindex_route(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    main = _reload_main_module()
    monkeypatch.setattr(main, "reindex_all", lambda output, **_kw: 4)
    client = main.app.test_client()

    resp = client.post("/api/reindex")

    assert resp.status_code == 200
    assert resp.get_json() == {"reindexed": 4}


def test_files_route_stays_inside_output(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data_dir = _configure_temp_paths(tmp_path, monkeypatch)
    out = tmp_path / "export"
    out.mkdir()
    (out / "a.md").write_text("# A", encoding="utf-8")
    (data_dir / "config.json").write_text(json.dumps({"output_dir": str(out)}), encoding="utf-8")
    main = _reload_main_module()
    client = main.app.test_client()

    assert client.get("/files/a.md").data == b"# A"
    assert client.get("/files/missing.md").status_code == 404
    assert client.get("/files/../data/config.json").status_code in {400, 404}
