"""
Row contracts for the review rollup tables.

Every row coming back from Supabase is parsed into one of these records
before it is used; anything that does not match the expected shape raises
RowValidationError instead of leaking loosely typed dicts inward.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from dateutil import parser as date_parser

from .errors import RowValidationError

RATING_METRICS = (
    "credit_ease",
    "class_difficulty",
    "assignment_load",
    "attendance_strictness",
    "satisfaction",
    "recommendation",
)

# performance_self value -> rollup bucket column
OUTCOME_BUCKETS = {
    1: "count_performance_unknown",
    2: "count_no_credit",
    3: "count_credit_normal",
    4: "count_credit_high",
}

JOB_QUEUED = "queued"
JOB_PROCESSING = "processing"
JOB_DONE = "done"
JOB_FAILED = "failed"
JOB_STATUSES = (JOB_QUEUED, JOB_PROCESSING, JOB_DONE, JOB_FAILED)
SELECTABLE_JOB_STATUSES = (JOB_QUEUED, JOB_FAILED)


def parse_timestamp(value: Any, field_name: str) -> Optional[datetime]:
    """Parse a Supabase timestamp into an aware datetime (UTC if naive)."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = date_parser.isoparse(value)
        except ValueError as exc:
            raise RowValidationError(f"Invalid timestamp for {field_name}: {value!r}") from exc
    else:
        raise RowValidationError(f"Unexpected type for {field_name}: {type(value).__name__}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime) -> str:
    """Render a datetime the way it is written to Supabase."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _require(row: Mapping[str, Any], key: str, table: str) -> Any:
    if not isinstance(row, Mapping):
        raise RowValidationError(f"{table}: expected an object row, got {type(row).__name__}")
    value = row.get(key)
    if value is None:
        raise RowValidationError(f"{table}: missing required column '{key}'")
    return value


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def _number(value: Any, field_name: str) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise RowValidationError(f"{field_name}: boolean is not a number")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise RowValidationError(f"{field_name}: not a number: {value!r}") from exc


def _count(value: Any, field_name: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        raise RowValidationError(f"{field_name}: boolean is not a count")
    try:
        count = int(value)
    except (TypeError, ValueError) as exc:
        raise RowValidationError(f"{field_name}: not an integer: {value!r}") from exc
    if count < 0:
        raise RowValidationError(f"{field_name}: negative count {count}")
    return count


@dataclass(frozen=True)
class ReviewRef:
    """Position of a review in a subject's timeline: the cursor's unit."""

    id: str
    created_at: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> ReviewRef:
        review_id = str(_require(row, "id", "course_reviews"))
        created_at = parse_timestamp(_require(row, "created_at", "course_reviews"), "created_at")
        return cls(id=review_id, created_at=created_at)

    def sort_key(self) -> tuple:
        return (self.created_at, self.id)


@dataclass(frozen=True)
class RollupRecord:
    """The subject_rollups columns the pipeline reads before processing."""

    subject_id: str
    is_dirty: bool
    summary: str
    cursor_review_id: Optional[str]
    updated_at: Optional[datetime]
    locked_at: Optional[datetime] = None
    locked_by: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> RollupRecord:
        subject_id = str(_require(row, "subject_id", "subject_rollups"))
        summary = row.get("summary_1000") or ""
        if not isinstance(summary, str):
            raise RowValidationError("subject_rollups: summary_1000 must be text")
        return cls(
            subject_id=subject_id,
            is_dirty=bool(row.get("is_dirty", False)),
            summary=summary,
            cursor_review_id=_optional_str(row.get("last_processed_review_id")),
            updated_at=parse_timestamp(row.get("updated_at"), "updated_at"),
            locked_at=parse_timestamp(row.get("locked_at"), "locked_at"),
            locked_by=_optional_str(row.get("locked_by")),
        )


@dataclass(frozen=True)
class SubjectStats:
    """Result row of the subject_review_stats RPC."""

    review_count: int
    averages: Dict[str, Optional[float]]
    outcome_counts: Dict[str, int]
    latest_review_id: Optional[str]
    latest_created_at: Optional[datetime]

    @property
    def is_empty(self) -> bool:
        return self.review_count == 0

    @classmethod
    def empty(cls) -> SubjectStats:
        return cls(
            review_count=0,
            averages={metric: None for metric in RATING_METRICS},
            outcome_counts={column: 0 for column in OUTCOME_BUCKETS.values()},
            latest_review_id=None,
            latest_created_at=None,
        )

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> SubjectStats:
        if not isinstance(row, Mapping):
            raise RowValidationError("subject_review_stats: expected a single object row")
        averages = {
            metric: _number(row.get(f"avg_{metric}"), f"avg_{metric}")
            for metric in RATING_METRICS
        }
        outcome_counts = {
            column: _count(row.get(column), column) for column in OUTCOME_BUCKETS.values()
        }
        review_count = _count(row.get("review_count"), "review_count")
        latest_review_id = _optional_str(row.get("latest_review_id"))
        if review_count > 0 and not latest_review_id:
            raise RowValidationError("subject_review_stats: reviews counted but no latest_review_id")
        return cls(
            review_count=review_count,
            averages=averages,
            outcome_counts=outcome_counts,
            latest_review_id=latest_review_id,
            latest_created_at=parse_timestamp(row.get("latest_created_at"), "latest_created_at"),
        )

    def to_rollup_columns(self) -> Dict[str, Any]:
        columns: Dict[str, Any] = {"review_count": self.review_count}
        for metric in RATING_METRICS:
            columns[f"avg_{metric}"] = self.averages.get(metric)
        columns.update(self.outcome_counts)
        return columns


@dataclass(frozen=True)
class WorkItem:
    """A row of embedding_jobs."""

    review_id: str
    status: str
    attempt_count: int
    locked_at: Optional[datetime]
    locked_by: Optional[str]
    last_error: Optional[str] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> WorkItem:
        status = str(_require(row, "status", "embedding_jobs"))
        if status not in JOB_STATUSES:
            raise RowValidationError(f"embedding_jobs: unknown status {status!r}")
        return cls(
            review_id=str(_require(row, "review_id", "embedding_jobs")),
            status=status,
            attempt_count=_count(row.get("attempt_count"), "attempt_count"),
            locked_at=parse_timestamp(row.get("locked_at"), "locked_at"),
            locked_by=_optional_str(row.get("locked_by")),
            last_error=_optional_str(row.get("last_error")),
            updated_at=parse_timestamp(row.get("updated_at"), "updated_at"),
        )

    def is_selectable(self, stale_before: datetime) -> bool:
        """True when no fresh lock protects this item."""

        if self.status in SELECTABLE_JOB_STATUSES:
            return True
        if self.status == JOB_PROCESSING:
            return self.locked_at is None or self.locked_at < stale_before
        return False


@dataclass(frozen=True)
class EmbeddingRecord:
    """Vector row for one embeddable unit (review body or rollup summary)."""

    owner_id: str
    embedding: Optional[List[float]]
    model: str
    content_hash: str
    updated_at: datetime

    def to_row(self, key_column: str) -> Dict[str, Any]:
        return {
            key_column: self.owner_id,
            "embedding": self.embedding,
            "model": self.model,
            "content_hash": self.content_hash,
            "updated_at": format_timestamp(self.updated_at),
        }
