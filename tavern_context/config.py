from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


load_dotenv()


def _env_lookup(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    for key in (name, *aliases):
        # Be tolerant to UTF-8 BOM accidentally saved in .env key names.
        for candidate in (key, f"﻿{key}"):
            raw = os.getenv(candidate)
            if raw is not None:
                return raw
    return None


def _env_bool(name: str, default: bool, aliases: tuple[str, ...] = ()) -> bool:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, aliases: tuple[str, ...] = ()) -> int:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float, aliases: tuple[str, ...] = ()) -> float:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str, aliases: tuple[str, ...] = ()) -> str:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


@dataclass(slots=True)
class ContextConfig:
    max_context_length: int = 8000
    summary_threshold: float = 0.8
    min_recent_pairs: int = 2
    tokens_per_message: float = 10.0
    tokens_per_char: float = 0.25

    @property
    def summary_trigger_tokens(self) -> float:
        return self.max_context_length * self.summary_threshold


@dataclass(slots=True)
class Settings:
    sqlite_path: Path
    store_busy_timeout_ms: int

    gemini_api_key: str
    gemini_base_url: str
    gemini_model: str
    gemini_timeout_seconds: int
    gemini_temperature: float
    gemini_max_output_tokens: int

    default_api_family: str

    context: ContextConfig
    summary_enabled: bool
    summary_timeout_seconds: float

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            sqlite_path=Path(_env_str("SQLITE_PATH", "./data/tavern_context.db")).expanduser(),
            store_busy_timeout_ms=_env_int("STORE_SQLITE_BUSY_TIMEOUT_MS", 5000),
            gemini_api_key=_env_str("GEMINI_API_KEY", ""),
            gemini_base_url=_env_str("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com"),
            gemini_model=_env_str("GEMINI_MODEL", "gemini-2.5-flash"),
            gemini_timeout_seconds=_env_int("GEMINI_TIMEOUT_SECONDS", 90),
            gemini_temperature=_env_float("GEMINI_TEMPERATURE", 0.3),
            gemini_max_output_tokens=_env_int("GEMINI_MAX_OUTPUT_TOKENS", 0),
            default_api_family=_env_str("DEFAULT_API_FAMILY", "gemini", aliases=("API_TYPE",)),
            context=ContextConfig(
                max_context_length=_env_int("CONTEXT_MAX_LENGTH", 8000, aliases=("MAX_CONTEXT_LENGTH",)),
                summary_threshold=_env_float("CONTEXT_SUMMARY_THRESHOLD", 0.8),
                min_recent_pairs=_env_int("CONTEXT_MIN_RECENT_PAIRS", 2),
                tokens_per_message=_env_float("CONTEXT_TOKENS_PER_MESSAGE", 10.0),
                tokens_per_char=_env_float("CONTEXT_TOKENS_PER_CHAR", 0.25),
            ),
            summary_enabled=_env_bool("SUMMARY_ENABLED", True),
            summary_timeout_seconds=_env_float("SUMMARY_TIMEOUT_SECONDS", 60.0),
        )

    def validate(self, require_llm: bool = True) -> None:
        if require_llm and self.summary_enabled:
            if not self.gemini_api_key:
                raise ValueError("GEMINI_API_KEY is required when SUMMARY_ENABLED=1")
            if self.gemini_api_key == "put_your_gemini_api_key_here":
                raise ValueError("GEMINI_API_KEY is still placeholder")

        if self.gemini_timeout_seconds < 5:
            raise ValueError("GEMINI_TIMEOUT_SECONDS must be >= 5")
        if self.gemini_max_output_tokens < 0:
            raise ValueError("GEMINI_MAX_OUTPUT_TOKENS must be >= 0 (0 disables explicit cap)")
        if self.store_busy_timeout_ms < 0:
            raise ValueError("STORE_SQLITE_BUSY_TIMEOUT_MS must be >= 0")
        if not self.default_api_family.strip():
            raise ValueError("DEFAULT_API_FAMILY cannot be empty")

        ctx = self.context
        if ctx.max_context_length < 256:
            raise ValueError("CONTEXT_MAX_LENGTH must be >= 256")
        if not 0.0 < ctx.summary_threshold <= 1.0:
            raise ValueError("CONTEXT_SUMMARY_THRESHOLD must be in (0, 1]")
        if ctx.min_recent_pairs < 1:
            raise ValueError("CONTEXT_MIN_RECENT_PAIRS must be >= 1")
        if ctx.tokens_per_message < 0:
            raise ValueError("CONTEXT_TOKENS_PER_MESSAGE must be >= 0")
        if ctx.tokens_per_char <= 0:
            raise ValueError("CONTEXT_TOKENS_PER_CHAR must be > 0")
        if self.summary_timeout_seconds <= 0:
            raise ValueError("SUMMARY_TIMEOUT_SECONDS must be > 0")
