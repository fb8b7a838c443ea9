"""Result models for the review rollup pipeline."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FailureDetail(BaseModel):
    """Represents a failure encountered during a pipeline stage."""

    stage: str = Field(..., description="Name of the stage that failed")
    message: str = Field(..., description="Human readable error message")
    kind: str = Field(
        default="transient",
        description="transient | data_integrity | store | conflict",
    )
    retryable: bool = Field(
        default=True,
        description="Whether the failure is likely recoverable on a later run",
    )

    @field_validator("stage")
    @classmethod
    def _validate_stage(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            msg = "stage must be a non-empty string"
            raise ValueError(msg)
        return cleaned


class SubjectProcessingResult(BaseModel):
    """Outcome for a single claimed subject."""

    subject_id: str = Field(..., min_length=1)
    status: str = Field(
        default="skipped",
        description="Outcome status (success|kept_dirty|failed|skipped)",
    )
    review_count: int = Field(default=0, ge=0)
    stats_updated: bool = Field(default=False)
    summary_updated: bool = Field(default=False)
    cursor_reset: bool = Field(
        default=False,
        description="The stored cursor pointed at a missing review and was rebuilt",
    )
    new_reviews: int = Field(default=0, ge=0, description="Reviews folded into the summary")
    has_more: bool = Field(default=False, description="Backlog remained beyond this batch")
    cursor_review_id: Optional[str] = Field(default=None)
    embedding_status: Optional[str] = Field(
        default=None,
        description="Rollup embedding outcome (embedded|unchanged|cleared|failed)",
    )
    is_dirty: bool = Field(default=True, description="Dirty flag left on the rollup")
    durations: Dict[str, float] = Field(default_factory=dict)
    errors: List[FailureDetail] = Field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def add_stage_duration(self, stage: str, duration: float) -> None:
        """Record the elapsed time for a stage."""

        if duration < 0:
            return
        previous = self.durations.get(stage, 0.0)
        self.durations[stage] = round(previous + duration, 4)

    def add_error(self, detail: FailureDetail) -> None:
        """Attach a failure detail to the result."""

        self.errors.append(detail)
        self.status = "failed"

    def resolve(self, *, is_dirty: bool) -> None:
        """Set the final status from the dirty flag that was written."""

        self.is_dirty = is_dirty
        if self.errors:
            self.status = "failed"
        elif is_dirty:
            self.status = "kept_dirty"
        else:
            self.status = "success"


class JobCounts(BaseModel):
    """Counters for review embedding work items."""

    picked: int = Field(default=0, ge=0)
    done: int = Field(default=0, ge=0)
    skipped: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    missing_body: int = Field(default=0, ge=0)

    def merge(self, other: JobCounts) -> None:
        self.picked += other.picked
        self.done += other.done
        self.skipped += other.skipped
        self.failed += other.failed
        self.missing_body += other.missing_body


class PipelineMetrics(BaseModel):
    """Aggregated numeric metrics for a pipeline run."""

    start_time: datetime = Field(default_factory=_utcnow)
    end_time: Optional[datetime] = Field(default=None)
    summary_calls: int = Field(default=0, ge=0)
    embedding_calls: int = Field(default=0, ge=0)
    embedded_units: int = Field(default=0, ge=0)
    reviews_folded: int = Field(default=0, ge=0)
    stage_durations: Dict[str, float] = Field(default_factory=dict)

    def set_end_time(self) -> None:
        """Mark the end time of the pipeline run."""

        self.end_time = _utcnow()

    def record_stage_duration(self, stage: str, duration: float) -> None:
        """Record duration for a named stage."""

        if duration < 0:
            return
        self.stage_durations[stage] = round(duration, 4)

    @property
    def duration_seconds(self) -> float:
        """Return total runtime in seconds."""

        if not self.end_time:
            return 0.0
        delta = self.end_time - self.start_time
        return round(delta.total_seconds(), 4)


class PipelineResult(BaseModel):
    """Container for the overall pipeline execution outcome."""

    runner: str = Field(default="unknown-runner")
    dry_run: bool = Field(default=False)
    jobs: JobCounts = Field(default_factory=JobCounts)
    subjects_selected: int = Field(default=0, ge=0)
    kept_dirty: int = Field(default=0, ge=0)
    rollups_updated: int = Field(default=0, ge=0)
    summaries_updated: int = Field(default=0, ge=0)
    rollup_embeddings: int = Field(default=0, ge=0)
    subject_failures: int = Field(default=0, ge=0)
    planned_subjects: List[str] = Field(
        default_factory=list,
        description="Subjects that would be processed (dry runs only)",
    )
    planned_jobs: List[str] = Field(
        default_factory=list,
        description="Review ids that would be embedded (dry runs only)",
    )
    config_snapshot: Dict[str, object] = Field(default_factory=dict)
    results: List[SubjectProcessingResult] = Field(default_factory=list)
    metrics: PipelineMetrics = Field(default_factory=PipelineMetrics)
    error_records: List[Dict[str, object]] = Field(default_factory=list)

    def add_result(self, result: SubjectProcessingResult) -> None:
        """Add a subject result and update counters."""

        self.results.append(result)
        if result.stats_updated:
            self.rollups_updated += 1
        if result.summary_updated:
            self.summaries_updated += 1
        if result.embedding_status == "embedded" or result.embedding_status == "cleared":
            self.rollup_embeddings += 1
        if result.status == "failed":
            self.subject_failures += 1
        if result.is_dirty:
            self.kept_dirty += 1

    def counts(self) -> Dict[str, int]:
        return {
            "picked": self.jobs.picked,
            "done": self.jobs.done,
            "skipped": self.jobs.skipped,
            "failed": self.jobs.failed,
            "missing_body": self.jobs.missing_body,
            "subjects": len(self.results),
            "subjects_failed": self.subject_failures,
            "kept_dirty": self.kept_dirty,
            "rollups_updated": self.rollups_updated,
            "summaries_updated": self.summaries_updated,
            "rollup_embeddings": self.rollup_embeddings,
        }

    def to_dict(self) -> Dict[str, object]:
        """Return a JSON-serialisable representation."""

        metrics_dump = self.metrics.model_dump()
        start_time = metrics_dump.get("start_time")
        end_time = metrics_dump.get("end_time")
        if start_time is not None:
            metrics_dump["start_time"] = start_time.isoformat()
        if end_time is not None:
            metrics_dump["end_time"] = end_time.isoformat()

        payload: Dict[str, object] = {
            "status": "success",
            "runner": self.runner,
            "dry_run": self.dry_run,
            "counts": self.counts(),
            "subjects": [result.model_dump() for result in self.results],
            "config": self.config_snapshot,
            "metrics": {**metrics_dump, "duration_seconds": self.metrics.duration_seconds},
            "errors": self.error_records,
        }
        if self.dry_run:
            payload["planned"] = {
                "subjects": list(self.planned_subjects),
                "jobs": list(self.planned_jobs),
            }
        return payload
