"""
Runtime configuration, read from the environment.

Entry points (main.py, api.py) load a `.env` file first, so every value
here can live there during development.

    OPENAI_API_KEY                    Vision model credentials (unset → degrade mode)
    AUDITOR_MODEL                     Model identifier (default: gpt-5)
    AUDITOR_REQUEST_TIMEOUT_SECONDS   Deadline for one whole diagnosis (default: 120)
    AUDITOR_LLM_TIMEOUT_SECONDS       Deadline for one model call (default: 60)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-5"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 120.0
DEFAULT_LLM_TIMEOUT_SECONDS = 60.0


@dataclass(frozen=True)
class AuditorSettings:
    openai_api_key: str | None = None
    model: str = DEFAULT_MODEL
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    llm_timeout_seconds: float = DEFAULT_LLM_TIMEOUT_SECONDS

    @classmethod
    def from_env(cls) -> AuditorSettings:
        return cls(
            openai_api_key=os.environ.get("OPENAI_API_KEY") or None,
            model=os.environ.get("AUDITOR_MODEL") or DEFAULT_MODEL,
            request_timeout_seconds=_env_float(
                "AUDITOR_REQUEST_TIMEOUT_SECONDS", DEFAULT_REQUEST_TIMEOUT_SECONDS
            ),
            llm_timeout_seconds=_env_float(
                "AUDITOR_LLM_TIMEOUT_SECONDS", DEFAULT_LLM_TIMEOUT_SECONDS
            ),
        )


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r (not a number); using %s", name, raw, default)
        return default
    if value <= 0:
        logger.warning("Ignoring %s=%r (must be positive); using %s", name, raw, default)
        return default
    return value
