from perplexport.exporter import logging_utils


def test_export_event_label_and_phase(monkeypatch):
    events: list[str] = []
    monkeypatch.setattr(logging_utils, "log_line", lambda msg: events.append(msg))

    logging_utils._export_event("state", phase="pagination", kind="summary")

    assert events
    line = events[-1]
    assert line.startswith("[EXPORT][STATE]")
    assert "phase='pagination'" in line
    assert "kind='summary'" in line


def test_export_event_phase_only(monkeypatch):
    events: list[str] = []
    monkeypatch.setattr(logging_utils, "log_line", lambda msg: events.append(msg))

    logging_utils._export_event(phase="retry_decision", will_retry=False)

    assert events[-1] == "[EXPORT][RETRY_DECISION] will_retry=False"


def test_export_event_debug_routes_to_debug_line(monkeypatch):
    infos: list[str] = []
    debugs: list[str] = []
    monkeypatch.setattr(logging_utils, "log_line", lambda msg: infos.append(msg))
    monkeypatch.setattr(logging_utils, "debug_line", lambda msg: debugs.append(msg))

    logging_utils._export_event("download", debug=True, step="armed")

    assert infos == []
    assert debugs == ["[EXPORT][DOWNLOAD] step='armed'"]


def test_export_event_never_raises(monkeypatch):
    def _boom(_msg):
        raise RuntimeError("handler gone")

    monkeypatch.setattr(logging_utils, "log_line", _boom)

    logging_utils._export_event("state", value=1)
