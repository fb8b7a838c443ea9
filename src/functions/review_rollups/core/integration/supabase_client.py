"""Supabase access for the review rollup pipeline.

All reads and writes against the review, rollup, job and embedding tables go
through :class:`SupabaseRollupStore`. Rows are validated into the records in
``contracts.records`` on the way in and every PostgREST or transport failure
is re-raised as :class:`StoreError`.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

import httpx
from postgrest.exceptions import APIError as PostgrestAPIError

from src.shared.db.connection import SupabaseConfig as SharedSupabaseConfig
from src.shared.db.connection import get_supabase_client

from ..contracts.config import SupabaseSettings
from ..contracts.errors import RowValidationError, StoreError
from ..contracts.records import (
    JOB_PROCESSING,
    JOB_QUEUED,
    OUTCOME_BUCKETS,
    RATING_METRICS,
    EmbeddingRecord,
    ReviewRef,
    RollupRecord,
    SubjectStats,
    WorkItem,
    format_timestamp,
)

logger = logging.getLogger(__name__)

ROLLUP_COLUMNS = (
    "subject_id,is_dirty,summary_1000,last_processed_review_id,updated_at,locked_at,locked_by"
)
JOB_COLUMNS = "review_id,status,attempt_count,last_error,locked_at,locked_by,updated_at"


def stale_lock_filter(stale_before: datetime) -> str:
    """PostgREST ``or`` filter matching rows with no lock or an abandoned one."""

    return f'locked_at.is.null,locked_at.lt."{format_timestamp(stale_before)}"'


def selectable_job_filter(stale_before: datetime) -> str:
    """PostgREST ``or`` filter for embedding jobs a runner may pick up."""

    return (
        "status.in.(queued,failed),"
        f"and(status.eq.{JOB_PROCESSING},or({stale_lock_filter(stale_before)}))"
    )


def after_cursor_filter(cursor: ReviewRef) -> str:
    """PostgREST ``or`` filter for reviews strictly after *cursor* in (created_at, id) order."""

    ts = format_timestamp(cursor.created_at)
    return f'created_at.gt."{ts}",and(created_at.eq."{ts}",id.gt.{cursor.id})'


def up_to_filter(upper: ReviewRef) -> str:
    """PostgREST ``or`` filter for reviews at or before *upper* in (created_at, id) order."""

    ts = format_timestamp(upper.created_at)
    return f'created_at.lt."{ts}",and(created_at.eq."{ts}",id.lte.{upper.id})'


def review_window_filter(cursor: Optional[ReviewRef], upper: Optional[ReviewRef]) -> Optional[str]:
    """Combine the cursor and upper bounds into a single ``or`` filter value."""

    if cursor is None and upper is None:
        return None
    if upper is None:
        return after_cursor_filter(cursor)
    if cursor is None:
        return up_to_filter(upper)
    return f"and(or({after_cursor_filter(cursor)}),or({up_to_filter(upper)}))"


def _chunks(values: Sequence[str], size: int) -> Iterator[List[str]]:
    for start in range(0, len(values), size):
        yield list(values[start : start + size])


class SupabaseRollupStore:
    """Thin wrapper around the Supabase Python SDK for the rollup tables."""

    def __init__(self, settings: SupabaseSettings, *, client: Any = None) -> None:
        self.settings = settings
        self._client = client

    @property
    def client(self):
        """Return the underlying Supabase client, creating it on demand."""

        if self._client is None:
            config = SharedSupabaseConfig(
                url=str(self.settings.url).rstrip("/"),
                key=self.settings.key,
                schema=self.settings.schema_name,
            )
            self._client = get_supabase_client(config)
        return self._client

    def _execute(self, query: Any, stage: str) -> List[Dict[str, Any]]:
        try:
            response = query.execute()
        except PostgrestAPIError as exc:
            logger.error("Supabase rejected %s: %s", stage, exc.message)
            raise StoreError(
                f"{stage} failed: {exc.message}",
                stage=stage,
                code=exc.code,
                details=exc.details,
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("Supabase request for %s failed: %s", stage, exc)
            raise StoreError(f"{stage} failed: {exc}", stage=stage) from exc
        data = getattr(response, "data", None)
        if data is None:
            return []
        if isinstance(data, dict):
            return [data]
        if not isinstance(data, list):
            raise RowValidationError(f"{stage}: unexpected response payload", stage=stage)
        return data

    # ------------------------------------------------------------------
    # Subjects
    # ------------------------------------------------------------------
    def select_dirty_subjects(self, limit: int, stale_before: datetime) -> List[RollupRecord]:
        """Dirty rollups with no fresh lock, oldest update first."""

        if limit <= 0:
            return []
        query = (
            self.client.table(self.settings.rollups_table)
            .select(ROLLUP_COLUMNS)
            .eq("is_dirty", True)
            .or_(stale_lock_filter(stale_before))
            .order("updated_at")
            .limit(limit)
        )
        rows = self._execute(query, "select_dirty_subjects")
        return [RollupRecord.from_row(row) for row in rows]

    def claim_subjects(
        self,
        subject_ids: Sequence[str],
        runner: str,
        now: datetime,
        stale_before: datetime,
    ) -> List[RollupRecord]:
        """Stamp the lock on subjects that are still dirty and unlocked.

        Returns only the rows this runner actually claimed.
        """

        if not subject_ids:
            return []
        query = (
            self.client.table(self.settings.rollups_table)
            .update({"locked_at": format_timestamp(now), "locked_by": runner})
            .in_("subject_id", list(subject_ids))
            .eq("is_dirty", True)
            .or_(stale_lock_filter(stale_before))
        )
        rows = self._execute(query, "claim_subjects")
        return [RollupRecord.from_row(row) for row in rows]

    def release_subject(self, subject_id: str, *, runner: str, is_dirty: bool, now: datetime) -> bool:
        """Write the resolved dirty flag and drop the subject lock.

        Returns False when *runner* no longer holds the lock.
        """

        query = (
            self.client.table(self.settings.rollups_table)
            .update(
                {
                    "is_dirty": is_dirty,
                    "locked_at": None,
                    "locked_by": None,
                    "updated_at": format_timestamp(now),
                }
            )
            .eq("subject_id", subject_id)
            .eq("locked_by", runner)
        )
        rows = self._execute(query, "release_subject")
        return bool(rows)

    def mark_dirty(self, subject_id: str, now: datetime) -> None:
        query = (
            self.client.table(self.settings.rollups_table)
            .update({"is_dirty": True, "updated_at": format_timestamp(now)})
            .eq("subject_id", subject_id)
        )
        self._execute(query, "mark_dirty")

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------
    def fetch_subject_stats(self, subject_id: str) -> SubjectStats:
        query = self.client.rpc(self.settings.stats_function, {"p_subject_id": subject_id})
        rows = self._execute(query, "fetch_subject_stats")
        if not rows:
            return SubjectStats.empty()
        if len(rows) > 1:
            raise RowValidationError(
                f"{self.settings.stats_function} returned {len(rows)} rows for {subject_id}",
                stage="fetch_subject_stats",
            )
        return SubjectStats.from_row(rows[0])

    def update_rollup_stats(self, subject_id: str, stats: SubjectStats, now: datetime) -> None:
        payload = stats.to_rollup_columns()
        payload["updated_at"] = format_timestamp(now)
        query = (
            self.client.table(self.settings.rollups_table)
            .update(payload)
            .eq("subject_id", subject_id)
        )
        self._execute(query, "update_rollup_stats")

    def reset_rollup(self, subject_id: str, now: datetime) -> None:
        """Zero the aggregates and drop the summary and cursor of a subject."""

        payload: Dict[str, Any] = {"review_count": 0}
        for metric in RATING_METRICS:
            payload[f"avg_{metric}"] = None
        for column in OUTCOME_BUCKETS.values():
            payload[column] = 0
        payload.update(
            {
                "summary_1000": "",
                "last_processed_review_id": None,
                "updated_at": format_timestamp(now),
            }
        )
        query = (
            self.client.table(self.settings.rollups_table)
            .update(payload)
            .eq("subject_id", subject_id)
        )
        self._execute(query, "reset_rollup")

    # ------------------------------------------------------------------
    # Reviews and summary cursor
    # ------------------------------------------------------------------
    def fetch_review_ref(self, subject_id: str, review_id: str) -> Optional[ReviewRef]:
        """Resolve a cursor id to its position, or None if the review is gone."""

        query = (
            self.client.table(self.settings.reviews_table)
            .select("id,created_at")
            .eq("id", review_id)
            .eq("subject_id", subject_id)
            .limit(1)
        )
        rows = self._execute(query, "fetch_review_ref")
        if not rows:
            return None
        return ReviewRef.from_row(rows[0])

    def fetch_reviews_after(
        self,
        subject_id: str,
        cursor: Optional[ReviewRef],
        limit: int,
        upper: Optional[ReviewRef] = None,
    ) -> List[ReviewRef]:
        """Reviews strictly after *cursor* and at or before *upper*, ascending by (created_at, id)."""

        query = (
            self.client.table(self.settings.reviews_table)
            .select("id,created_at")
            .eq("subject_id", subject_id)
        )
        window = review_window_filter(cursor, upper)
        if window is not None:
            query = query.or_(window)
        query = query.order("created_at").order("id").limit(limit)
        rows = self._execute(query, "fetch_reviews_after")
        return [ReviewRef.from_row(row) for row in rows]

    def has_reviews_after(self, subject_id: str, cursor: Optional[ReviewRef]) -> bool:
        return bool(self.fetch_reviews_after(subject_id, cursor, 1))

    def fetch_bodies(self, review_ids: Sequence[str]) -> Dict[str, str]:
        """Return ``review_id -> body_main`` for the reviews that have a body row."""

        bodies: Dict[str, str] = {}
        for chunk in _chunks(list(review_ids), self.settings.id_chunk_size):
            query = (
                self.client.table(self.settings.bodies_table)
                .select("review_id,body_main")
                .in_("review_id", chunk)
            )
            for row in self._execute(query, "fetch_bodies"):
                review_id = row.get("review_id")
                if review_id is None:
                    raise RowValidationError("course_review_bodies: missing review_id", stage="fetch_bodies")
                body = row.get("body_main")
                if body is not None and not isinstance(body, str):
                    raise RowValidationError(
                        f"course_review_bodies: body_main for {review_id} is not text",
                        stage="fetch_bodies",
                    )
                bodies[str(review_id)] = body or ""
        return bodies

    def compare_and_set_cursor(
        self,
        subject_id: str,
        *,
        expected_cursor_id: Optional[str],
        new_cursor_id: Optional[str],
        now: datetime,
        summary: Optional[str] = None,
    ) -> bool:
        """Advance the cursor (and optionally the summary) if nobody moved it first.

        Returns False when the stored cursor no longer equals *expected_cursor_id*.
        """

        payload: Dict[str, Any] = {
            "last_processed_review_id": new_cursor_id,
            "updated_at": format_timestamp(now),
        }
        if summary is not None:
            payload["summary_1000"] = summary
        query = (
            self.client.table(self.settings.rollups_table)
            .update(payload)
            .eq("subject_id", subject_id)
        )
        if expected_cursor_id is None:
            query = query.is_("last_processed_review_id", "null")
        else:
            query = query.eq("last_processed_review_id", expected_cursor_id)
        rows = self._execute(query, "compare_and_set_cursor")
        return bool(rows)

    # ------------------------------------------------------------------
    # Embedding jobs
    # ------------------------------------------------------------------
    def ensure_embedding_jobs(self, review_ids: Iterable[str], now: datetime) -> None:
        """Create queued jobs for reviews that do not have one yet."""

        ids = sorted({str(value) for value in review_ids if value})
        if not ids:
            return
        stamp = format_timestamp(now)
        for chunk in _chunks(ids, self.settings.id_chunk_size):
            rows = [
                {"review_id": review_id, "status": JOB_QUEUED, "updated_at": stamp}
                for review_id in chunk
            ]
            query = self.client.table(self.settings.jobs_table).upsert(
                rows,
                on_conflict="review_id",
                ignore_duplicates=True,
            )
            self._execute(query, "ensure_embedding_jobs")

    def select_embedding_jobs(self, limit: int, stale_before: datetime) -> List[WorkItem]:
        if limit <= 0:
            return []
        query = (
            self.client.table(self.settings.jobs_table)
            .select(JOB_COLUMNS)
            .or_(selectable_job_filter(stale_before))
            .order("updated_at")
            .limit(limit)
        )
        rows = self._execute(query, "select_embedding_jobs")
        return [WorkItem.from_row(row) for row in rows]

    def claim_embedding_jobs(
        self,
        review_ids: Sequence[str],
        runner: str,
        now: datetime,
        stale_before: datetime,
    ) -> List[WorkItem]:
        """Move still-selectable jobs to ``processing`` under this runner's lock."""

        if not review_ids:
            return []
        stamp = format_timestamp(now)
        claimed: List[WorkItem] = []
        for chunk in _chunks(list(review_ids), self.settings.id_chunk_size):
            query = (
                self.client.table(self.settings.jobs_table)
                .update(
                    {
                        "status": JOB_PROCESSING,
                        "locked_at": stamp,
                        "locked_by": runner,
                        "updated_at": stamp,
                    }
                )
                .in_("review_id", chunk)
                .or_(selectable_job_filter(stale_before))
            )
            rows = self._execute(query, "claim_embedding_jobs")
            claimed.extend(WorkItem.from_row(row) for row in rows)
        return claimed

    def resolve_embedding_job(
        self,
        item: WorkItem,
        *,
        status: str,
        runner: str,
        now: datetime,
        error: Optional[str] = None,
    ) -> bool:
        """Finish one claimed job; False if another runner has taken it over."""

        query = (
            self.client.table(self.settings.jobs_table)
            .update(
                {
                    "status": status,
                    "attempt_count": item.attempt_count + 1,
                    "last_error": error,
                    "locked_at": None,
                    "locked_by": None,
                    "updated_at": format_timestamp(now),
                }
            )
            .eq("review_id", item.review_id)
            .eq("locked_by", runner)
        )
        rows = self._execute(query, "resolve_embedding_job")
        return bool(rows)

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------
    def _fetch_hashes(self, table: str, key_column: str, ids: Sequence[str], stage: str) -> Dict[str, str]:
        hashes: Dict[str, str] = {}
        for chunk in _chunks(list(ids), self.settings.id_chunk_size):
            query = (
                self.client.table(table)
                .select(f"{key_column},content_hash")
                .in_(key_column, chunk)
            )
            for row in self._execute(query, stage):
                owner = row.get(key_column)
                content_hash = row.get("content_hash")
                if owner is None:
                    raise RowValidationError(f"{table}: missing {key_column}", stage=stage)
                if content_hash is not None:
                    hashes[str(owner)] = str(content_hash)
        return hashes

    def fetch_review_embedding_hashes(self, review_ids: Sequence[str]) -> Dict[str, str]:
        return self._fetch_hashes(
            self.settings.review_embeddings_table,
            "review_id",
            review_ids,
            "fetch_review_embedding_hashes",
        )

    def fetch_rollup_embedding_hashes(self, subject_ids: Sequence[str]) -> Dict[str, str]:
        return self._fetch_hashes(
            self.settings.rollup_embeddings_table,
            "subject_id",
            subject_ids,
            "fetch_rollup_embedding_hashes",
        )

    def upsert_review_embeddings(self, records: Sequence[EmbeddingRecord]) -> None:
        if not records:
            return
        query = self.client.table(self.settings.review_embeddings_table).upsert(
            [record.to_row("review_id") for record in records],
            on_conflict="review_id",
        )
        self._execute(query, "upsert_review_embeddings")

    def upsert_rollup_embeddings(self, records: Sequence[EmbeddingRecord]) -> None:
        if not records:
            return
        query = self.client.table(self.settings.rollup_embeddings_table).upsert(
            [record.to_row("subject_id") for record in records],
            on_conflict="subject_id",
        )
        self._execute(query, "upsert_rollup_embeddings")
