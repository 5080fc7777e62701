from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from mediaworker.core.utils.imports import resolve_engine_script

LOG_LEVELS = ("debug", "warn", "error", "none")


@dataclass(frozen=True)
class WorkerSettings:
    """Launch contract for one engine subprocess."""

    engine_script: Optional[str] = None
    python: str = sys.executable
    log_level: str = "error"
    call_timeout: Optional[float] = 15.0
    shutdown_grace: float = 2.0
    extra_env: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.log_level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {LOG_LEVELS}, got {self.log_level!r}")
        if self.call_timeout is not None and self.call_timeout <= 0:
            raise ValueError("call_timeout must be positive")
        if self.shutdown_grace < 0:
            raise ValueError("shutdown_grace must not be negative")

    def command(self) -> List[str]:
        """Executable and arguments used to spawn the engine."""
        if not self.engine_script:
            raise ValueError("engine_script is not configured (set MEDIAWORKER_ENGINE_SCRIPT)")
        script = resolve_engine_script(self.engine_script)
        return [self.python, script, f"--logLevel={self.log_level}"]

    def environment(self) -> Dict[str, str]:
        env = dict(os.environ)
        env["PYTHONUNBUFFERED"] = "1"
        env.update(self.extra_env)
        return env


def _float_env(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    if raw.strip().lower() == "none":
        return None
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def load_settings(env_file: Optional[str] = None, **overrides: Any) -> WorkerSettings:
    """Build settings from the environment (and an optional .env file).

    Keyword overrides win over environment values.
    """
    load_dotenv(env_file, override=False)
    base = WorkerSettings(
        engine_script=os.getenv("MEDIAWORKER_ENGINE_SCRIPT") or None,
        python=os.getenv("MEDIAWORKER_PYTHON") or sys.executable,
        log_level=(os.getenv("MEDIAWORKER_LOG_LEVEL") or "error").lower(),
        call_timeout=_float_env("MEDIAWORKER_CALL_TIMEOUT", 15.0),
        shutdown_grace=_float_env("MEDIAWORKER_SHUTDOWN_GRACE", 2.0) or 0.0,
    )
    return replace(base, **overrides) if overrides else base
