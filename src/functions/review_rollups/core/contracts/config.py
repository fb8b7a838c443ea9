"""Configuration models for the review rollup pipeline."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, HttpUrl


class SupabaseSettings(BaseModel):
    """Settings required to interact with the rollup tables."""

    model_config = ConfigDict(frozen=True)

    url: HttpUrl = Field(..., description="Supabase project URL")
    key: str = Field(..., min_length=10, description="Supabase service role key")
    schema_name: str = Field(default="public", description="Target database schema")
    reviews_table: str = Field(default="course_reviews")
    bodies_table: str = Field(default="course_review_bodies")
    rollups_table: str = Field(default="subject_rollups")
    jobs_table: str = Field(default="embedding_jobs")
    review_embeddings_table: str = Field(default="course_review_embeddings")
    rollup_embeddings_table: str = Field(default="subject_rollup_embeddings")
    stats_function: str = Field(
        default="subject_review_stats",
        description="RPC returning one aggregate row for a subject",
    )
    id_chunk_size: int = Field(
        default=200,
        ge=1,
        le=1000,
        description="Maximum identifiers per in() filter",
    )


class OpenAISettings(BaseModel):
    """Credentials and models for the summarisation and embedding capabilities."""

    model_config = ConfigDict(frozen=True)

    summary_api_key: str = Field(..., min_length=1, repr=False)
    embedding_api_key: str = Field(..., min_length=1, repr=False)
    summary_model: str = Field(default="gpt-5-mini")
    embedding_model: str = Field(default="text-embedding-3-small")
    timeout_seconds: float = Field(default=60.0, gt=0)
    max_retries: int = Field(default=3, ge=1, le=10)


class PipelineConfig(BaseModel):
    """Operational limits for one bounded pass."""

    model_config = ConfigDict(frozen=True)

    max_subjects_per_run: int = Field(default=5, ge=0, le=100)
    max_jobs_per_run: int = Field(default=50, ge=0, le=1000)
    max_new_reviews_for_summary: int = Field(default=30, ge=1, le=200)
    max_body_chars_for_summary: int = Field(default=1200, ge=50)
    max_embed_chars: int = Field(default=8000, ge=100)
    embedding_batch_size: int = Field(default=16, ge=1, le=256)
    lock_stale_minutes: int = Field(default=15, ge=1)
    run_parallel: bool = Field(default=False)
    max_workers: int = Field(default=4, ge=1, le=16)
    dry_run: bool = Field(
        default=False,
        description="Select work and report it without claiming, calling services or writing",
    )
    process_subjects: bool = Field(default=True)
    process_jobs: bool = Field(default=True)

    @property
    def lock_staleness(self) -> timedelta:
        return timedelta(minutes=self.lock_stale_minutes)

    def stale_before(self, now: datetime) -> datetime:
        """Locks stamped before this instant are considered abandoned."""

        return now - self.lock_staleness

    def snapshot(self) -> Dict[str, object]:
        """Return a serialisable snapshot for reporting."""

        return self.model_dump()


class TriggerSettings(BaseModel):
    """Secret guarding the HTTP trigger."""

    model_config = ConfigDict(frozen=True)

    batch_token: Optional[str] = Field(default=None, repr=False)
    default_runner: str = Field(default="unknown-runner")
