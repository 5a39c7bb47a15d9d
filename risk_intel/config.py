from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


SCANNER_MODES = {"ai", "keyword-only"}
DEFAULT_MODEL = "claude-3-5-haiku-latest"


def _env_str(name: str, default: str) -> str:
    return str(os.environ.get(name, "")).strip() or default


def _env_int(name: str, default: int, *, minimum: int = 0) -> int:
    try:
        return max(minimum, int(str(os.environ.get(name, "")).strip()))
    except ValueError:
        return default


def _env_float(name: str, default: float, *, minimum: float = 0.0, maximum: float | None = None) -> float:
    try:
        v = float(str(os.environ.get(name, "")).strip())
    except ValueError:
        return default
    v = max(minimum, v)
    if maximum is not None:
        v = min(maximum, v)
    return v


def normalize_scanner_mode(v: str | None, default: str = "ai") -> str:
    vv = str(v or "").strip().lower().replace("_", "-")
    return vv if vv in SCANNER_MODES else default


@dataclass(frozen=True)
class PipelineSettings:
    fetch_timeout_seconds: int = 10
    fetch_retries: int = 1
    fetch_max_workers: int = 4
    items_per_feed: int = 10
    max_feeds_per_run: int = 0
    ai_call_delay_seconds: float = 1.0
    analyze_batch_limit: int = 50
    run_deadline_seconds: float = 0.0
    default_scanner_mode: str = "ai"
    default_min_confidence: float = 0.6
    default_lookback_days: int = 7
    fallback_confidence: float = 0.5
    anthropic_api_key: str = ""
    model_name: str = DEFAULT_MODEL
    model_timeout_seconds: float = 20.0
    model_temperature: float = 0.2
    model_max_tokens: int = 1024
    persist_retry_backoff_seconds: float = 0.5
    run_lock_dir: str = "data/locks"
    prefilter_min_score: float = 0.0
    dedup_similarity: float = 0.7
    dedup_window_days: int = 7

    @property
    def lock_dir(self) -> Path:
        return Path(self.run_lock_dir)


def get_pipeline_settings() -> PipelineSettings:
    return PipelineSettings(
        fetch_timeout_seconds=_env_int("FETCH_TIMEOUT_SECONDS", 10, minimum=1),
        fetch_retries=_env_int("FETCH_RETRIES", 1),
        fetch_max_workers=max(1, min(16, _env_int("FETCH_MAX_WORKERS", 4, minimum=1))),
        items_per_feed=_env_int("ITEMS_PER_FEED", 10, minimum=1),
        max_feeds_per_run=_env_int("MAX_FEEDS_PER_RUN", 0),
        ai_call_delay_seconds=_env_float("AI_CALL_DELAY_SECONDS", 1.0),
        analyze_batch_limit=_env_int("ANALYZE_BATCH_LIMIT", 50, minimum=1),
        run_deadline_seconds=_env_float("RUN_DEADLINE_SECONDS", 0.0),
        default_scanner_mode=normalize_scanner_mode(os.environ.get("DEFAULT_SCANNER_MODE")),
        default_min_confidence=_env_float("DEFAULT_MIN_CONFIDENCE", 0.6, maximum=1.0),
        default_lookback_days=_env_int("DEFAULT_LOOKBACK_DAYS", 7, minimum=1),
        fallback_confidence=_env_float("FALLBACK_CONFIDENCE", 0.5, maximum=1.0),
        anthropic_api_key=_env_str("ANTHROPIC_API_KEY", ""),
        model_name=_env_str("RISK_INTEL_MODEL", DEFAULT_MODEL),
        model_timeout_seconds=_env_float("MODEL_TIMEOUT_SECONDS", 20.0, minimum=1.0),
        model_temperature=_env_float("MODEL_TEMPERATURE", 0.2, maximum=1.0),
        model_max_tokens=_env_int("MODEL_MAX_TOKENS", 1024, minimum=64),
        persist_retry_backoff_seconds=_env_float("PERSIST_RETRY_BACKOFF_SECONDS", 0.5),
        run_lock_dir=_env_str("RUN_LOCK_DIR", "data/locks"),
        prefilter_min_score=_env_float("PREFILTER_MIN_SCORE", 0.0),
        dedup_similarity=_env_float("DEDUP_SIMILARITY", 0.7, maximum=1.0),
        dedup_window_days=_env_int("DEDUP_WINDOW_DAYS", 7, minimum=1),
    )
