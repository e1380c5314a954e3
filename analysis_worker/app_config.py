from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv


# =========================
# env helpers
# =========================
def _env(key: str, default: str | None = None) -> str | None:
    v = os.getenv(key)
    if v is None or str(v).strip() == "":
        return default
    return v


def _env_flag(key: str, default: bool = False) -> bool:
    v = _env(key)
    if v is None:
        return default
    return str(v).strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(key: str, default: int) -> int:
    v = _env(key)
    if v is None:
        return default
    try:
        return int(v)
    except (TypeError, ValueError):
        return default


def _env_float(key: str, default: float) -> float:
    v = _env(key)
    if v is None:
        return default
    try:
        return float(v)
    except (TypeError, ValueError):
        return default


# =========================
# LLM provider
# =========================
@dataclass(frozen=True)
class LLMConfig:
    api_key: str | None
    base_url: str | None
    model: str
    temperature: float
    timeout: int
    api_retry: int
    provider: str

    @staticmethod
    def from_env() -> "LLMConfig":
        return LLMConfig(
            api_key=_env("OPENAI_API_KEY"),
            base_url=_env("OPENAI_BASE_URL"),
            model=_env("LLM_MODEL", "gpt-4o") or "gpt-4o",
            temperature=_env_float("LLM_TEMPERATURE", 0.2),
            timeout=_env_int("LLM_TIMEOUT", 180),
            api_retry=max(1, _env_int("LLM_API_RETRY", 2)),
            provider=(_env("LLM_PROVIDER", "openai") or "openai").strip().lower(),
        )


# =========================
# Pipeline
# =========================
@dataclass(frozen=True)
class PipelineConfig:
    """
    Stage retry policy.

    Each stage gets ``max_retries + 1`` attempts; the wait before attempt
    ``n + 1`` is ``backoff_base * 2 ** (n - 1)`` seconds.
    """

    max_retries: int
    backoff_base: float

    @staticmethod
    def from_env() -> "PipelineConfig":
        return PipelineConfig(
            max_retries=max(0, _env_int("ANALYSIS_MAX_RETRIES", 2)),
            backoff_base=max(0.0, _env_float("ANALYSIS_BACKOFF_BASE", 1.0)),
        )


# =========================
# Django callback
# =========================
@dataclass(frozen=True)
class CallbackConfig:
    url: str
    token: str
    retry: int
    backoff: float
    timeout: int

    @staticmethod
    def from_env() -> "CallbackConfig":
        url = _env("DJANGO_CALLBACK_URL", "http://127.0.0.1:8000/documents/api/analysis/update/") or ""
        return CallbackConfig(
            url=url.strip().rstrip("/") + "/",
            token=(_env("WORKER_TOKEN", "") or "").strip(),
            retry=max(1, _env_int("WORKER_CALLBACK_RETRY", 3)),
            backoff=_env_float("WORKER_CALLBACK_BACKOFF", 1.0),
            timeout=_env_int("WORKER_CALLBACK_TIMEOUT", 20),
        )


# =========================
# AppConfig
# =========================
@dataclass(frozen=True)
class AppConfig:
    project_root: Path
    llm: LLMConfig
    pipeline: PipelineConfig
    callback: CallbackConfig

    @staticmethod
    def load(project_root: Path) -> "AppConfig":
        return AppConfig(
            project_root=project_root,
            llm=LLMConfig.from_env(),
            pipeline=PipelineConfig.from_env(),
            callback=CallbackConfig.from_env(),
        )


# =========================
# bootstrap / singleton
# =========================
@lru_cache(maxsize=1)
def get_config(project_root: Path) -> AppConfig:
    return AppConfig.load(project_root)


def bootstrap(project_root: Path) -> AppConfig:
    """Load ``<project_root>/.env`` once, then build the cached AppConfig."""
    env_path = project_root / ".env"
    if env_path.exists():
        load_dotenv(dotenv_path=env_path, override=False)
    return get_config(project_root)
