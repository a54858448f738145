"""Runtime settings, read from the environment and an optional local .env."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

_DOTENV_LOADED = False

# Field name -> environment variable.
_ENV_VARS: dict[str, str] = {
    "llm_model": "NUDGE_LLM_MODEL",
    "llm_api_base": "NUDGE_LLM_API_BASE",
    "llm_api_key": "NUDGE_LLM_API_KEY",
    "llm_timeout_s": "NUDGE_LLM_TIMEOUT_S",
    "llm_max_tokens": "NUDGE_LLM_MAX_TOKENS",
    "llm_temperature": "NUDGE_LLM_TEMPERATURE",
    "llm_top_p": "NUDGE_LLM_TOP_P",
    "max_attempts": "NUDGE_MAX_ATTEMPTS",
    "backoff_base_s": "NUDGE_BACKOFF_BASE_S",
    "backoff_jitter_s": "NUDGE_BACKOFF_JITTER_S",
    "circuit_failure_threshold": "NUDGE_CIRCUIT_THRESHOLD",
    "circuit_reset_s": "NUDGE_CIRCUIT_RESET_S",
    "cooldown_s": "NUDGE_COOLDOWN_S",
    "rate_limit_per_minute": "NUDGE_RATE_LIMIT_PER_MINUTE",
}


def load_dotenv(*, override: bool = False) -> Path | None:
    """
    Load the nearest .env file, searching from the current directory upward.

    Real environment variables win unless ``override`` is set. Returns the
    file that was read, if any.
    """
    global _DOTENV_LOADED
    if _DOTENV_LOADED and not override:
        return None

    env_path = _find_env_file()
    _DOTENV_LOADED = True
    if env_path is None:
        return None

    for raw_line in env_path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        line = line.removeprefix("export ").strip()
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            continue

        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]

        if override or key not in os.environ:
            os.environ[key] = value

    logger.debug("Loaded environment from %s", env_path)
    return env_path


def _find_env_file() -> Path | None:
    cwd = Path.cwd()
    for base in [cwd, *cwd.parents]:
        candidate = base / ".env"
        if candidate.is_file():
            return candidate
    return None


class NudgeSettings(BaseModel):
    """Tunables for the generation client, breaker, cooldown and rate limit."""

    llm_model: str = "gemini/gemini-1.5-flash"
    llm_api_base: str | None = None
    llm_api_key: str | None = None
    llm_timeout_s: float = Field(default=20.0, gt=0.0, le=600.0)
    llm_max_tokens: int = Field(default=256, gt=0, le=32768)
    llm_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    llm_top_p: float = Field(default=0.95, gt=0.0, le=1.0)

    max_attempts: int = Field(default=3, ge=1, le=10)
    backoff_base_s: float = Field(default=1.0, ge=0.0)
    backoff_jitter_s: float = Field(default=0.25, ge=0.0)
    circuit_failure_threshold: int = Field(default=3, ge=1)
    circuit_reset_s: float = Field(default=30.0, gt=0.0)
    cooldown_s: float = Field(default=30.0, ge=0.0)
    # Nudge requests per client per minute; 0 disables the limit.
    rate_limit_per_minute: int = Field(default=5, ge=0)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> NudgeSettings:
        """Build settings from ``environ`` (defaults to ``os.environ`` after .env)."""
        if environ is None:
            load_dotenv()
            environ = dict(os.environ)

        values: dict[str, str] = {}
        for field_name, env_var in _ENV_VARS.items():
            raw = environ.get(env_var)
            if raw is not None and raw.strip():
                values[field_name] = raw.strip()
        return cls.model_validate(values)
