from __future__ import annotations

from typing import Any

from .utils import debug_line, log_line


def _export_event(label: str = "", *, phase: str | None = None, debug: bool = False, **fields: Any) -> None:
    """Emit a structured exporter log line.

    ``phase`` may be used as a keyword alias for the label. When both ``label``
    and ``phase`` are provided, ``phase`` is emitted as part of the payload so
    the caller still captures the event stage. ``debug=True`` routes the line
    to the DEBUG level.
    """

    try:
        phase_label = label or (phase or "")
        if phase and label:
            fields.setdefault("phase", phase)
        payload = ", ".join(f"{k}={repr(v)}" for k, v in sorted(fields.items()))
        line = f"[EXPORT][{phase_label.upper()}] {payload}"
        if debug:
            debug_line(line)
        else:
            log_line(line)
    except Exception:
        # Never let logging break the exporter.
        return


__all__ = ["_export_event"]
