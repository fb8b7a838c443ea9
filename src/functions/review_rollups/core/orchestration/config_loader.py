"""Utility helpers to construct pipeline configuration from the environment."""

from __future__ import annotations

import logging
import os
from typing import Dict, Optional

from src.shared.utils.config_validator import (
    ConfigurationError,
    require_any_env,
    require_env,
    validate_bool_env,
    validate_float_env,
    validate_int_env,
)

from ..contracts.config import OpenAISettings, PipelineConfig, SupabaseSettings, TriggerSettings

logger = logging.getLogger(__name__)


def _int_override(overrides: Dict[str, object], key: str) -> Optional[int]:
    value = overrides.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ValueError(f"'{key}' must be an integer")
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"'{key}' must be an integer") from exc


def _bool_override(overrides: Dict[str, object], key: str) -> Optional[bool]:
    value = overrides.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in {"1", "true", "yes", "0", "false", "no"}:
        return value.lower() in {"1", "true", "yes"}
    raise ValueError(f"'{key}' must be a boolean")


def build_pipeline_config(overrides: Optional[Dict[str, object]] = None) -> PipelineConfig:
    """Limits from the environment, optionally overridden per invocation.

    Raises ConfigurationError for bad environment values and ValueError for
    bad overrides.
    """

    overrides = overrides or {}

    max_subjects = _int_override(overrides, "max_subjects")
    if max_subjects is None:
        max_subjects = validate_int_env("MAX_SUBJECTS_PER_RUN", 5, min_value=0, max_value=100)
    max_jobs = _int_override(overrides, "max_jobs")
    if max_jobs is None:
        max_jobs = validate_int_env("MAX_JOBS_PER_RUN", 50, min_value=0, max_value=1000)
    run_parallel = _bool_override(overrides, "parallel")
    if run_parallel is None:
        run_parallel = validate_bool_env("PIPELINE_PARALLEL", False)
    max_workers = _int_override(overrides, "max_workers")
    if max_workers is None:
        max_workers = validate_int_env("PIPELINE_MAX_WORKERS", 4, min_value=1, max_value=16)
    dry_run = bool(_bool_override(overrides, "dry_run") or validate_bool_env("PIPELINE_DRY_RUN", False))
    process_subjects = _bool_override(overrides, "process_subjects")
    process_jobs = _bool_override(overrides, "process_jobs")

    return PipelineConfig(
        max_subjects_per_run=max_subjects,
        max_jobs_per_run=max_jobs,
        max_new_reviews_for_summary=validate_int_env(
            "MAX_NEW_REVIEWS_FOR_SUMMARY", 30, min_value=1, max_value=200
        ),
        max_body_chars_for_summary=validate_int_env("MAX_BODY_CHARS_FOR_SUMMARY", 1200, min_value=50),
        max_embed_chars=validate_int_env("MAX_EMBED_CHARS", 8000, min_value=100),
        embedding_batch_size=validate_int_env("EMBEDDING_BATCH_SIZE", 16, min_value=1, max_value=256),
        lock_stale_minutes=validate_int_env("LOCK_STALE_MINUTES", 15, min_value=1),
        run_parallel=run_parallel,
        max_workers=max_workers,
        dry_run=dry_run,
        process_subjects=True if process_subjects is None else process_subjects,
        process_jobs=True if process_jobs is None else process_jobs,
    )


def build_supabase_settings(overrides: Optional[Dict[str, object]] = None) -> SupabaseSettings:
    """Build Supabase settings with validation."""

    overrides = overrides or {}
    try:
        url = overrides.get("url") or require_env("SUPABASE_URL", "Supabase project URL")
        key = overrides.get("key") or require_any_env(
            ("SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_KEY"),
            "Supabase service role key",
        )
    except ConfigurationError as exc:
        raise ConfigurationError(
            f"{exc}\nRequired for the review rollup pipeline."
        ) from exc

    return SupabaseSettings(
        url=url,
        key=key,
        schema_name=overrides.get("schema") or os.getenv("SUPABASE_SCHEMA", "public"),
    )


def build_openai_settings(overrides: Optional[Dict[str, object]] = None) -> OpenAISettings:
    """OpenAI credentials; dedicated per-capability keys win over OPENAI_API_KEY."""

    overrides = overrides or {}
    summary_key = overrides.get("summary_api_key") or require_any_env(
        ("OPENAI_API_KEY_SUMMARY", "OPENAI_API_KEY"),
        "OpenAI key for summaries",
    )
    embedding_key = overrides.get("embedding_api_key") or require_any_env(
        ("OPENAI_API_KEY_EMBEDDINGS", "OPENAI_API_KEY"),
        "OpenAI key for embeddings",
    )
    return OpenAISettings(
        summary_api_key=summary_key,
        embedding_api_key=embedding_key,
        summary_model=os.getenv("OPENAI_SUMMARY_MODEL") or "gpt-5-mini",
        embedding_model=os.getenv("OPENAI_EMBEDDING_MODEL") or "text-embedding-3-small",
        timeout_seconds=validate_float_env("OPENAI_TIMEOUT_SECONDS", 60.0, min_value=1.0),
        max_retries=validate_int_env("OPENAI_MAX_RETRIES", 3, min_value=1, max_value=10),
    )


def build_trigger_settings() -> TriggerSettings:
    token = os.getenv("BATCH_TOKEN") or None
    if token is None:
        logger.warning("BATCH_TOKEN is not set; HTTP trigger will refuse all requests")
    return TriggerSettings(
        batch_token=token,
        default_runner=os.getenv("BATCH_RUNNER_NAME") or os.getenv("K_REVISION") or "unknown-runner",
    )
