from __future__ import annotations

from typing import Literal

from . import config
from .config import ExportConfig
from .logging_utils import _export_event
from .utils import log_line

Entrypoint = Literal["ui", "cli", "tests"]


def _raise_config_error(message: str, *, entrypoint: Entrypoint, error: str) -> None:
    _export_event(
        "error",
        phase="config",
        context="runtime_validation",
        error=error,
        entrypoint=entrypoint,
    )
    log_line(f"[CONFIG] {message} (entrypoint={entrypoint})")
    raise ValueError(message)


def _clamp(cfg: ExportConfig, field: str, adjusted: int, *, entrypoint: Entrypoint, reason: str) -> None:
    _export_event(
        "state",
        phase="config",
        context="runtime_validation",
        kind="config_adjustment",
        field=field,
        value=getattr(cfg, field),
        adjusted=adjusted,
        entrypoint=entrypoint,
    )
    log_line(f"[CONFIG] {reason}; clamping {field} to {adjusted}.")
    setattr(cfg, field, adjusted)


def validate_config(cfg: ExportConfig, entrypoint: Entrypoint = "cli") -> ExportConfig:
    """Validate runtime settings before a run.

    Raises ``ValueError`` when a blocking misconfiguration is detected.
    Non-fatal adjustments are applied in place and logged.
    """

    if cfg.delay_min_ms < 0 or cfg.delay_max_ms < 0:
        _raise_config_error(
            "delay_min_ms and delay_max_ms must be non-negative.",
            entrypoint=entrypoint,
            error="negative_delay",
        )

    if cfg.delay_min_ms > cfg.delay_max_ms:
        _raise_config_error(
            "delay_min_ms must not exceed delay_max_ms.",
            entrypoint=entrypoint,
            error="delay_range_inverted",
        )

    if str(cfg.scan_mode).strip().lower() not in config.SCAN_MODES:
        _raise_config_error(
            f"scan_mode must be one of {sorted(config.SCAN_MODES)}.",
            entrypoint=entrypoint,
            error="unknown_scan_mode",
        )

    if cfg.batch_size < 1:
        _raise_config_error(
            "batch_size must be at least 1.",
            entrypoint=entrypoint,
            error="batch_size_invalid",
        )

    if cfg.scan_top_limit < 1:
        _clamp(cfg, "scan_top_limit", 1, entrypoint=entrypoint, reason="scan_top_limit < 1")

    if cfg.scroll_delay_ms < 0:
        _clamp(cfg, "scroll_delay_ms", 0, entrypoint=entrypoint, reason="scroll_delay_ms < 0")

    if cfg.browser_inactivity_timeout_minutes < 0:
        _clamp(
            cfg,
            "browser_inactivity_timeout_minutes",
            0,
            entrypoint=entrypoint,
            reason="browser_inactivity_timeout_minutes < 0",
        )

    if config.MIN_FREE_MB < 0:
        _raise_config_error(
            "MIN_FREE_MB must be non-negative.",
            entrypoint=entrypoint,
            error="min_free_mb_invalid",
        )

    return cfg


__all__ = ["validate_config", "Entrypoint"]
