from __future__ import annotations

import os
import queue
import threading
import time
from typing import Any, Callable, Dict, Generator, Optional

from flask import Flask, Response, jsonify, request, send_file

from perplexport.exporter import config
from perplexport.exporter.config_validation import validate_config
from perplexport.exporter.healthcheck import run_health_checks
from perplexport.exporter.indexer import reindex_all
from perplexport.exporter.run import run_export
from perplexport.exporter.session import BrowserSession
from perplexport.exporter.status import read_status
from perplexport.exporter.utils import ensure_dirs, get_current_log_path, load_json_file, log_line
from perplexport.exporter.logging_utils import _export_event

app = Flask(__name__)
app.secret_key = os.environ.get("SECRET_KEY", "dev-secret-change-me")

# Storage paths must exist before the first request, WSGI entrypoints included.
ensure_dirs()


class ExportWorker:
    """Run exports on one long-lived thread that owns the browser session.

    Playwright's sync objects only work on the thread that created them, so
    the session kept open between runs is created, reused and closed here.
    An idle session is closed after ``browser_inactivity_timeout_minutes``.
    """

    def __init__(
        self,
        run: Callable[..., Dict[str, Any]] = run_export,
        session_factory: Callable[..., Any] = BrowserSession,
    ) -> None:
        self._run = run
        self._session_factory = session_factory
        self._jobs: "queue.Queue[Optional[config.ExportConfig]]" = queue.Queue()
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._busy = False
        self._inactivity_minutes = 0
        self.session: Any = None
        self.last_summary: Optional[Dict[str, Any]] = None
        self.last_error: Optional[str] = None

    def is_busy(self) -> bool:
        with self._lock:
            return self._busy

    def submit(self, cfg: config.ExportConfig) -> bool:
        """Queue an export; returns ``False`` when one is already running."""

        with self._lock:
            if self._busy:
                return False
            self._busy = True
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(target=self._loop, name="export-worker", daemon=True)
                self._thread.start()
        self._jobs.put(cfg)
        return True

    def wait_idle(self) -> None:
        self._jobs.join()

    def shutdown(self) -> None:
        self._jobs.put(None)

    def _idle_timeout(self) -> Optional[float]:
        if self.session is None or self._inactivity_minutes <= 0:
            return None
        return max(1.0, self._inactivity_minutes * 60 - self.session.idle_seconds())

    def _close_idle_session(self) -> None:
        if self.session is None or self.session.idle_seconds() < self._inactivity_minutes * 60:
            return
        log_line(f"[BROWSER] Closing browser after {self._inactivity_minutes} minutes of inactivity.")
        self._close_session()

    def _close_session(self) -> None:
        session, self.session = self.session, None
        if session is not None:
            session.close()

    def _loop(self) -> None:
        while True:
            try:
                cfg = self._jobs.get(timeout=self._idle_timeout())
            except queue.Empty:
                self._close_idle_session()
                continue
            try:
                if cfg is None:
                    self._close_session()
                    return
                self._run_job(cfg)
            finally:
                with self._lock:
                    self._busy = False
                self._jobs.task_done()

    def _run_job(self, cfg: config.ExportConfig) -> None:
        session = None
        if cfg.keep_browser_open:
            session = self.session or self._session_factory(headless=cfg.headless)
        elif self.session is not None:
            self._close_session()

        try:
            self.last_summary = self._run(cfg, session=session, entrypoint="ui")
            self.last_error = None
        except Exception as exc:  # noqa: BLE001
            self.last_error = str(exc)
            log_line(f"Export thread failed: {exc}")
            _export_event("error", context="ui_export", error=str(exc))

        if session is not None and session.is_connected():
            self.session = session
            self._inactivity_minutes = int(cfg.browser_inactivity_timeout_minutes or 0)
            session.touch()
        else:
            self.session = None


worker = ExportWorker()


def _tail_log_generator() -> Generator[str, None, None]:
    """Yield Server-Sent Event messages for appended log lines."""

    ensure_dirs()
    current_path = get_current_log_path()
    current_path.parent.mkdir(parents=True, exist_ok=True)
    current_path.touch(exist_ok=True)

    handle = current_path.open("r", encoding="utf-8", errors="ignore")
    handle.seek(0, os.SEEK_END)

    try:
        while True:
            latest_path = get_current_log_path()
            if latest_path != current_path:
                handle.close()
                current_path = latest_path
                current_path.parent.mkdir(parents=True, exist_ok=True)
                current_path.touch(exist_ok=True)
                handle = current_path.open("r", encoding="utf-8", errors="ignore")
                handle.seek(0, os.SEEK_END)

            line = handle.readline()
            if line:
                yield f"data: {line.rstrip()}\n\n"
            else:
                time.sleep(1)
                yield ": heartbeat\n\n"
    finally:
        handle.close()


@app.get("/api/config")
def api_get_config() -> Response:
    return jsonify(config.load_config().to_dict())


@app.post("/api/config")
def api_save_config() -> Response:
    """Merge the posted fields into ``config.json``."""

    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return jsonify({"error": "Expected a JSON object"}), 400

    merged = {**config.load_config().to_dict(), **payload}
    try:
        cfg = validate_config(config.ExportConfig.from_dict(merged), entrypoint="ui")
    except (TypeError, ValueError) as exc:
        return jsonify({"error": str(exc)}), 400

    config.save_config(cfg)
    return jsonify(cfg.to_dict())


@app.post("/api/export")
def api_start_export() -> Response:
    """Start an export run in the background."""

    if worker.is_busy():
        return jsonify({"error": "Export already in progress"}), 429

    try:
        cfg = validate_config(config.load_config(), entrypoint="ui")
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400

    if not worker.submit(cfg):
        return jsonify({"error": "Export already in progress"}), 429
    return jsonify({"started": True}), 202


@app.get("/api/status")
def api_status() -> Response:
    status = read_status()
    if worker.last_error:
        status["last_error"] = worker.last_error
    return jsonify(status)


@app.get("/api/index")
def api_index() -> Response:
    try:
        index = load_json_file(config.INDEX_FILE, default=[])
    except ValueError as exc:
        return jsonify({"error": f"Search index is unreadable: {exc}"}), 500
    return jsonify(index if isinstance(index, list) else [])


@app.post("/api/reindex")
def api_reindex() -> Response:
    if worker.is_busy():
        return jsonify({"error": "Export already in progress"}), 429
    cfg = config.load_config()
    count = reindex_all(cfg.output_path, file_prefix=cfg.file_prefix)
    return jsonify({"reindexed": count})


@app.get("/api/health")
def api_health() -> Response:
    """Return a JSON health summary for configuration, filesystem, and state."""

    result = run_health_checks(entrypoint="ui")
    status = 200 if result.ok else 503
    return jsonify({"ok": result.ok, "checks": result.checks}), status


@app.get("/logs/stream")
def logs_stream() -> Response:
    """Stream log updates to the browser using SSE."""

    response = Response(_tail_log_generator(), mimetype="text/event-stream")
    response.headers["Cache-Control"] = "no-cache"
    response.headers["X-Accel-Buffering"] = "no"
    return response


@app.get("/files/<path:filename>")
def download_file(filename: str) -> Response:
    """Serve an exported file from the output directory."""

    output_root = config.load_config().output_path.resolve()
    target = (output_root / filename).resolve()
    if not str(target).startswith(str(output_root)):
        return Response("Invalid path", status=400)
    if not target.exists() or not target.is_file():
        return Response("File not found", status=404)
    return send_file(target, download_name=target.name)
