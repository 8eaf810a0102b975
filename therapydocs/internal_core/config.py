from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from therapydocs.utils.model_paths import resolve_narrative_gguf_path

_EDIT_POLICIES = {"direct-edit", "amendment-required"}
_NARRATIVE_BACKENDS = {"mock", "http", "llama_cpp"}


class ConfigurationError(RuntimeError):
    """Raised for contradictory runtime flags; the application must not start."""


def _getenv_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return default if value is None else value


def _getenv_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _getenv_opt_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return int(value)


def _getenv_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _getenv_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


@dataclass(frozen=True)
class AppConfig:
    THERAPYDOCS_LOG_LEVEL: str
    THERAPYDOCS_USE_MOCK_API: bool
    THERAPYDOCS_DEBUG_MODE: bool
    THERAPYDOCS_AUTOSAVE_DELAY_SECONDS: float
    THERAPYDOCS_ORPHAN_THRESHOLD_HOURS: int
    THERAPYDOCS_SAVED_DRAFT_RETENTION_DAYS: int
    THERAPYDOCS_DRAFT_DIR: str
    THERAPYDOCS_EDIT_POLICY: str
    THERAPYDOCS_NARRATIVE_BACKEND: str
    THERAPYDOCS_NARRATIVE_ENDPOINT: str
    THERAPYDOCS_NARRATIVE_TIMEOUT_SECONDS: float
    THERAPYDOCS_NARRATIVE_MODEL_ID: str
    THERAPYDOCS_NARRATIVE_MODEL_PATH: str
    THERAPYDOCS_NARRATIVE_CHAT_FORMAT: str
    THERAPYDOCS_NARRATIVE_N_CTX: int
    THERAPYDOCS_NARRATIVE_N_GPU_LAYERS: int
    THERAPYDOCS_NARRATIVE_N_THREADS: Optional[int]
    THERAPYDOCS_NARRATIVE_DEBUG_LOG: str
    THERAPYDOCS_MOCK_STREAM_DELAY_SECONDS: float

    def draft_dir_path(self, repo_root: Path) -> Optional[Path]:
        if not self.THERAPYDOCS_DRAFT_DIR:
            return None
        return (repo_root / self.THERAPYDOCS_DRAFT_DIR).resolve()


def load_config() -> AppConfig:
    use_mock_api = _getenv_bool("THERAPYDOCS_USE_MOCK_API", True)
    return AppConfig(
        THERAPYDOCS_LOG_LEVEL=_getenv_str("THERAPYDOCS_LOG_LEVEL", "INFO"),
        THERAPYDOCS_USE_MOCK_API=use_mock_api,
        THERAPYDOCS_DEBUG_MODE=_getenv_bool("THERAPYDOCS_DEBUG_MODE", False),
        THERAPYDOCS_AUTOSAVE_DELAY_SECONDS=_getenv_float("THERAPYDOCS_AUTOSAVE_DELAY_SECONDS", 2.0),
        THERAPYDOCS_ORPHAN_THRESHOLD_HOURS=_getenv_int("THERAPYDOCS_ORPHAN_THRESHOLD_HOURS", 24),
        THERAPYDOCS_SAVED_DRAFT_RETENTION_DAYS=_getenv_int("THERAPYDOCS_SAVED_DRAFT_RETENTION_DAYS", 7),
        THERAPYDOCS_DRAFT_DIR=_getenv_str("THERAPYDOCS_DRAFT_DIR", ""),
        THERAPYDOCS_EDIT_POLICY=_getenv_str("THERAPYDOCS_EDIT_POLICY", "direct-edit"),
        THERAPYDOCS_NARRATIVE_BACKEND=_getenv_str(
            "THERAPYDOCS_NARRATIVE_BACKEND", "mock" if use_mock_api else "http"
        ),
        THERAPYDOCS_NARRATIVE_ENDPOINT=_getenv_str("THERAPYDOCS_NARRATIVE_ENDPOINT", ""),
        THERAPYDOCS_NARRATIVE_TIMEOUT_SECONDS=_getenv_float("THERAPYDOCS_NARRATIVE_TIMEOUT_SECONDS", 120.0),
        THERAPYDOCS_NARRATIVE_MODEL_ID=_getenv_str("THERAPYDOCS_NARRATIVE_MODEL_ID", ""),
        THERAPYDOCS_NARRATIVE_MODEL_PATH=resolve_narrative_gguf_path(
            os.getenv("THERAPYDOCS_NARRATIVE_MODEL_PATH", "").strip()
        ),
        THERAPYDOCS_NARRATIVE_CHAT_FORMAT=_getenv_str("THERAPYDOCS_NARRATIVE_CHAT_FORMAT", "gemma"),
        THERAPYDOCS_NARRATIVE_N_CTX=_getenv_int("THERAPYDOCS_NARRATIVE_N_CTX", 8192),
        THERAPYDOCS_NARRATIVE_N_GPU_LAYERS=_getenv_int("THERAPYDOCS_NARRATIVE_N_GPU_LAYERS", -1),
        THERAPYDOCS_NARRATIVE_N_THREADS=_getenv_opt_int("THERAPYDOCS_NARRATIVE_N_THREADS"),
        THERAPYDOCS_NARRATIVE_DEBUG_LOG=_getenv_str("THERAPYDOCS_NARRATIVE_DEBUG_LOG", ""),
        THERAPYDOCS_MOCK_STREAM_DELAY_SECONDS=_getenv_float("THERAPYDOCS_MOCK_STREAM_DELAY_SECONDS", 0.02),
    )


def validate_config(config: AppConfig) -> AppConfig:
    if config.THERAPYDOCS_DEBUG_MODE and not config.THERAPYDOCS_USE_MOCK_API:
        raise ConfigurationError(
            "FATAL: THERAPYDOCS_DEBUG_MODE=true with THERAPYDOCS_USE_MOCK_API=false is not allowed. "
            "This would bypass authentication while using the real API."
        )
    if config.THERAPYDOCS_EDIT_POLICY not in _EDIT_POLICIES:
        raise ConfigurationError(
            f"Unsupported THERAPYDOCS_EDIT_POLICY={config.THERAPYDOCS_EDIT_POLICY!r}. "
            f"Expected one of {sorted(_EDIT_POLICIES)}."
        )
    if config.THERAPYDOCS_NARRATIVE_BACKEND not in _NARRATIVE_BACKENDS:
        raise ConfigurationError(
            f"Unsupported THERAPYDOCS_NARRATIVE_BACKEND={config.THERAPYDOCS_NARRATIVE_BACKEND!r}. "
            f"Expected one of {sorted(_NARRATIVE_BACKENDS)}."
        )
    if config.THERAPYDOCS_AUTOSAVE_DELAY_SECONDS < 0:
        raise ConfigurationError("THERAPYDOCS_AUTOSAVE_DELAY_SECONDS cannot be negative.")
    return config


def configure_logging(config: AppConfig) -> None:
    level = getattr(logging, str(config.THERAPYDOCS_LOG_LEVEL or "INFO").upper(), logging.INFO)
    logging.getLogger("therapydocs").setLevel(level)
