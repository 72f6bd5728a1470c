from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

_ENV_PREFIX = "PROGRESSPATH_"


def _project_root() -> Path:
    # progresspath/internal_core/config.py -> progresspath -> repo root
    return Path(__file__).resolve().parents[2]


def _env_name(name: str) -> str:
    return f"{_ENV_PREFIX}{name}"


def _getenv_str(name: str, default: str) -> str:
    value = os.getenv(_env_name(name))
    return default if value is None else value


def _getenv_int(name: str, default: int) -> int:
    value = os.getenv(_env_name(name))
    if value is None or value == "":
        return default
    return int(value)


def _getenv_opt_int(name: str) -> Optional[int]:
    value = os.getenv(_env_name(name))
    if value is None or value == "":
        return None
    return int(value)


def _getenv_bool(name: str, default: bool) -> bool:
    value = os.getenv(_env_name(name))
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _getenv_float(name: str, default: float) -> float:
    value = os.getenv(_env_name(name))
    if value is None or value == "":
        return default
    return float(value)


def _resolve_existing_path_or_empty(candidates: list[Path]) -> str:
    for candidate in candidates:
        try:
            resolved = candidate.expanduser().resolve()
        except Exception:
            continue
        if resolved.exists():
            return str(resolved)
    return ""


@dataclass(frozen=True)
class AppConfig:
    LLM_BACKEND: str
    LLM_MODEL: str
    LLM_API_KEY: str
    LLM_BASE_URL: str
    LLM_TIMEOUT_SECONDS: float
    LLM_MAX_ATTEMPTS: int
    LLM_BACKOFF_SECONDS: float
    LLM_MAX_TOKENS: int
    LLAMA_CPP_MODEL: str
    LLAMA_CPP_N_CTX: int
    LLAMA_CPP_N_GPU_LAYERS: int
    LLAMA_CPP_N_THREADS: Optional[int]
    HISTORY_MAX_MESSAGES: int
    HISTORY_MAX_TOKENS: int
    HISTORY_TAIL_MESSAGES: int
    INACTIVITY_THRESHOLD_SECONDS: int
    WATCHDOG_INTERVAL_SECONDS: float
    WATCHDOG_ENABLED: bool
    GOAL_MAX_CHARS: int
    LOG_LEVEL: str

    @property
    def llm_configured(self) -> bool:
        if self.LLM_BACKEND == "llama_cpp":
            return bool(self.LLAMA_CPP_MODEL)
        return bool(self.LLM_MODEL.strip()) and bool(self.LLM_API_KEY.strip())


def load_config() -> AppConfig:
    project_root = _project_root()
    default_gguf = _resolve_existing_path_or_empty(
        [
            project_root / "models" / "tutor.gguf",
            project_root.parent / "models" / "tutor.gguf",
        ]
    )

    history_max_messages = max(2, _getenv_int("HISTORY_MAX_MESSAGES", 50))
    history_tail = _getenv_int("HISTORY_TAIL_MESSAGES", 40)
    # The verbatim tail must leave something to summarize.
    history_tail = max(1, min(history_tail, history_max_messages - 1))

    return AppConfig(
        LLM_BACKEND=_getenv_str("LLM_BACKEND", "openai").strip().lower(),
        LLM_MODEL=_getenv_str("LLM_MODEL", "gpt-4o-mini"),
        LLM_API_KEY=_getenv_str("LLM_API_KEY", os.getenv("OPENAI_API_KEY", "")),
        LLM_BASE_URL=_getenv_str("LLM_BASE_URL", ""),
        LLM_TIMEOUT_SECONDS=_getenv_float("LLM_TIMEOUT_SECONDS", 30.0),
        LLM_MAX_ATTEMPTS=max(1, _getenv_int("LLM_MAX_ATTEMPTS", 3)),
        LLM_BACKOFF_SECONDS=max(0.0, _getenv_float("LLM_BACKOFF_SECONDS", 1.0)),
        LLM_MAX_TOKENS=_getenv_int("LLM_MAX_TOKENS", 800),
        LLAMA_CPP_MODEL=_getenv_str("LLAMA_CPP_MODEL", default_gguf),
        LLAMA_CPP_N_CTX=_getenv_int("LLAMA_CPP_N_CTX", 8192),
        LLAMA_CPP_N_GPU_LAYERS=_getenv_int("LLAMA_CPP_N_GPU_LAYERS", -1),
        LLAMA_CPP_N_THREADS=_getenv_opt_int("LLAMA_CPP_N_THREADS"),
        HISTORY_MAX_MESSAGES=history_max_messages,
        HISTORY_MAX_TOKENS=_getenv_int("HISTORY_MAX_TOKENS", 8000),
        HISTORY_TAIL_MESSAGES=history_tail,
        INACTIVITY_THRESHOLD_SECONDS=_getenv_int("INACTIVITY_THRESHOLD_SECONDS", 600),
        WATCHDOG_INTERVAL_SECONDS=_getenv_float("WATCHDOG_INTERVAL_SECONDS", 60.0),
        WATCHDOG_ENABLED=_getenv_bool("WATCHDOG_ENABLED", True),
        GOAL_MAX_CHARS=_getenv_int("GOAL_MAX_CHARS", 500),
        LOG_LEVEL=_getenv_str("LOG_LEVEL", "INFO").upper(),
    )
