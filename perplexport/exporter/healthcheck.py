from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from . import config
from .config_validation import validate_config
from .conversation import thread_id_from_url
from .error_codes import FatalLocalError
from .logging_utils import _export_event
from .state import IncrementalState
from .utils import disk_has_room, ensure_dirs, log_line


@dataclass
class HealthResult:
    ok: bool
    checks: dict[str, dict[str, Any]]


def compare_state_vs_output(state: IncrementalState, output_dir: Path, prefix: str = "") -> dict[str, Any]:
    """Report processed threads whose exported JSON is missing from ``output_dir``."""

    missing = [
        url
        for url in state.processed
        if not (Path(output_dir) / f"{prefix}{thread_id_from_url(url)}.json").exists()
    ]
    return {
        "ok": not missing,
        "processed": state.processed_count(),
        "missing_count": len(missing),
        "missing": missing[:20],
    }


def run_health_checks(
    entrypoint: str = "cli",
    *,
    config_path: Optional[Path] = None,
    state_path: Optional[Path] = None,
) -> HealthResult:
    checks: dict[str, dict[str, Any]] = {}

    cfg = config.ExportConfig()
    try:
        cfg = validate_config(config.load_config(config_path), entrypoint=entrypoint or "cli")
        checks["config"] = {"ok": True}
    except (ValueError, OSError) as exc:
        checks["config"] = {"ok": False, "error": str(exc)}

    ensure_dirs()
    fs_ok = disk_has_room(config.MIN_FREE_MB, config.DATA_DIR)
    checks["filesystem"] = {
        "ok": fs_ok,
        "data_dir": str(config.DATA_DIR),
        "min_free_mb": config.MIN_FREE_MB,
    }

    state: Optional[IncrementalState] = None
    try:
        state = IncrementalState.load(state_path)
        checks["state"] = {"ok": True, "processed": state.processed_count()}
    except FatalLocalError as exc:
        checks["state"] = {"ok": False, "error": str(exc)}

    if state is not None:
        checks["consistency"] = compare_state_vs_output(state, cfg.output_path, cfg.file_prefix)

    # Missing exports are reported but only fail the CLI check.
    strict_consistency = entrypoint == "cli"
    overall_ok = all(
        check.get("ok", False)
        for name, check in checks.items()
        if strict_consistency or name != "consistency"
    )

    _export_event(
        "state" if overall_ok else "error",
        phase="health",
        context="healthcheck",
        ok=overall_ok,
        checks=checks,
    )

    return HealthResult(ok=overall_ok, checks=checks)


if __name__ == "__main__":  # pragma: no cover
    result = run_health_checks(entrypoint="cli")
    for name, info in result.checks.items():
        status = "OK" if info.get("ok") else "FAIL"
        log_line(f"[HEALTH] {name}: {status} {info}")
    raise SystemExit(0 if result.ok else 1)
