# settings.py
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_TIMEOUT_MINUTES = 60.0
# budget for always steps once a job has failed or timed out
DEFAULT_CLEANUP_TIMEOUT_MINUTES = 5.0


@dataclass(frozen=True)
class Settings:
    home: Path                      # state dir: run reports, staging, bundles
    timeout_minutes: float          # job timeout when neither job nor stage sets one
    cleanup_timeout_minutes: float  # always steps after a failure or timeout
    max_workers: Optional[int]      # None -> cpu_count - 1
    report_api: Optional[str]       # audit service base URL


def _float(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = environ.get(key)
    if raw in (None, ""):
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{key} must be a number of minutes, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{key} must be positive, got {raw!r}")
    return value


def _int_or_none(environ: Mapping[str, str], key: str) -> Optional[int]:
    raw = environ.get(key)
    if raw in (None, ""):
        return None
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from None
    return max(1, value)


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if environ is None else environ
    return Settings(
        home=Path(env.get("EDGECI_HOME") or ".edgeci"),
        timeout_minutes=_float(env, "EDGECI_TIMEOUT_MINUTES", DEFAULT_TIMEOUT_MINUTES),
        cleanup_timeout_minutes=_float(env, "EDGECI_CLEANUP_TIMEOUT_MINUTES", DEFAULT_CLEANUP_TIMEOUT_MINUTES),
        max_workers=_int_or_none(env, "EDGECI_MAX_WORKERS"),
        report_api=env.get("EDGECI_REPORT_API") or None,
    )
