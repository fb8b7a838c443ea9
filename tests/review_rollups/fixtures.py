"""In-memory fakes shared by the review rollup tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from src.functions.review_rollups.core.contracts.config import PipelineConfig
from src.functions.review_rollups.core.contracts.errors import (
    EmbeddingServiceError,
    StoreError,
    SummarizationError,
)
from src.functions.review_rollups.core.contracts.records import (
    JOB_PROCESSING,
    JOB_QUEUED,
    OUTCOME_BUCKETS,
    RATING_METRICS,
    ReviewRef,
    RollupRecord,
    SubjectStats,
    WorkItem,
)
from src.functions.review_rollups.core.orchestration.pipeline import build_pipeline

T0 = datetime(2025, 4, 1, 9, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeStore:
    """Dict-backed store with the same conditional-update semantics as Supabase."""

    def __init__(self, clock: Clock):
        self.clock = clock
        self.reviews: Dict[str, dict] = {}
        self.bodies: Dict[str, str] = {}
        self.rollups: Dict[str, dict] = {}
        self.jobs: Dict[str, dict] = {}
        self.review_embeddings: Dict[str, dict] = {}
        self.rollup_embeddings: Dict[str, dict] = {}
        self.fail_on: Dict[str, int] = {}
        self.calls: List[str] = []

    # -- test helpers -------------------------------------------------
    def add_subject(self, subject_id: str, *, dirty: bool = True, summary: str = "", cursor=None):
        self.rollups[subject_id] = {
            "subject_id": subject_id,
            "review_count": 0,
            **{f"avg_{metric}": None for metric in RATING_METRICS},
            **{column: 0 for column in OUTCOME_BUCKETS.values()},
            "summary_1000": summary,
            "last_processed_review_id": cursor,
            "is_dirty": dirty,
            "locked_at": None,
            "locked_by": None,
            "updated_at": self.clock(),
        }

    def add_review(
        self,
        subject_id: str,
        review_id: str,
        *,
        body: Optional[str] = "良い授業でした",
        created_at: Optional[datetime] = None,
        rating: int = 3,
        performance: int = 3,
        enqueue: bool = True,
    ):
        """Simulate the write path: review, body, queued job and dirty flag."""

        self.reviews[review_id] = {
            "id": review_id,
            "subject_id": subject_id,
            "created_at": created_at or self.clock(),
            **{metric: rating for metric in RATING_METRICS},
            "performance_self": performance,
        }
        if body is not None:
            self.bodies[review_id] = body
        if enqueue:
            self.jobs.setdefault(
                review_id,
                {
                    "review_id": review_id,
                    "status": JOB_QUEUED,
                    "attempt_count": 0,
                    "last_error": None,
                    "locked_at": None,
                    "locked_by": None,
                    "updated_at": self.clock(),
                },
            )
        if subject_id not in self.rollups:
            self.add_subject(subject_id)
        self.rollups[subject_id]["is_dirty"] = True

    def fail(self, method: str, times: int = 1) -> None:
        self.fail_on[method] = times

    def _check(self, method: str) -> None:
        self.calls.append(method)
        remaining = self.fail_on.get(method, 0)
        if remaining:
            self.fail_on[method] = remaining - 1
            raise StoreError(f"{method} failed", stage=method)

    def _ordered_reviews(self, subject_id: str) -> List[dict]:
        rows = [row for row in self.reviews.values() if row["subject_id"] == subject_id]
        return sorted(rows, key=lambda row: (row["created_at"], row["id"]))

    @staticmethod
    def _unlocked(row: dict, stale_before: datetime) -> bool:
        return row["locked_at"] is None or row["locked_at"] < stale_before

    # -- subjects -----------------------------------------------------
    def select_dirty_subjects(self, limit, stale_before):
        self._check("select_dirty_subjects")
        rows = [
            row for row in self.rollups.values() if row["is_dirty"] and self._unlocked(row, stale_before)
        ]
        rows.sort(key=lambda row: row["updated_at"])
        return [RollupRecord.from_row(row) for row in rows[:limit]]

    def claim_subjects(self, subject_ids, runner, now, stale_before):
        self._check("claim_subjects")
        claimed = []
        for subject_id in subject_ids:
            row = self.rollups.get(subject_id)
            if row and row["is_dirty"] and self._unlocked(row, stale_before):
                row["locked_at"] = now
                row["locked_by"] = runner
                claimed.append(RollupRecord.from_row(row))
        return claimed

    def release_subject(self, subject_id, *, runner, is_dirty, now):
        self._check("release_subject")
        row = self.rollups[subject_id]
        if row["locked_by"] != runner:
            return False
        row.update({"is_dirty": is_dirty, "locked_at": None, "locked_by": None, "updated_at": now})
        return True

    def mark_dirty(self, subject_id, now):
        self._check("mark_dirty")
        self.rollups[subject_id].update({"is_dirty": True, "updated_at": now})

    # -- stats --------------------------------------------------------
    def fetch_subject_stats(self, subject_id):
        self._check("fetch_subject_stats")
        rows = self._ordered_reviews(subject_id)
        if not rows:
            return SubjectStats.empty()
        payload = {"review_count": len(rows)}
        for metric in RATING_METRICS:
            payload[f"avg_{metric}"] = sum(row[metric] for row in rows) / len(rows)
        for value, column in OUTCOME_BUCKETS.items():
            payload[column] = sum(1 for row in rows if row["performance_self"] == value)
        payload["latest_review_id"] = rows[-1]["id"]
        payload["latest_created_at"] = rows[-1]["created_at"].isoformat()
        return SubjectStats.from_row(payload)

    def update_rollup_stats(self, subject_id, stats, now):
        self._check("update_rollup_stats")
        self.rollups[subject_id].update(stats.to_rollup_columns())
        self.rollups[subject_id]["updated_at"] = now

    def reset_rollup(self, subject_id, now):
        self._check("reset_rollup")
        self.rollups[subject_id].update(SubjectStats.empty().to_rollup_columns())
        self.rollups[subject_id].update(
            {"summary_1000": "", "last_processed_review_id": None, "updated_at": now}
        )

    # -- reviews ------------------------------------------------------
    def fetch_review_ref(self, subject_id, review_id):
        self._check("fetch_review_ref")
        row = self.reviews.get(review_id)
        if row is None or row["subject_id"] != subject_id:
            return None
        return ReviewRef(id=row["id"], created_at=row["created_at"])

    def fetch_reviews_after(self, subject_id, cursor, limit, upper=None):
        self._check("fetch_reviews_after")
        refs = [ReviewRef(id=row["id"], created_at=row["created_at"]) for row in self._ordered_reviews(subject_id)]
        if cursor is not None:
            refs = [ref for ref in refs if ref.sort_key() > cursor.sort_key()]
        if upper is not None:
            refs = [ref for ref in refs if ref.sort_key() <= upper.sort_key()]
        return refs[:limit]

    def has_reviews_after(self, subject_id, cursor):
        return bool(self.fetch_reviews_after(subject_id, cursor, 1))

    def fetch_bodies(self, review_ids):
        self._check("fetch_bodies")
        return {review_id: self.bodies[review_id] for review_id in review_ids if review_id in self.bodies}

    def compare_and_set_cursor(self, subject_id, *, expected_cursor_id, new_cursor_id, now, summary=None):
        self._check("compare_and_set_cursor")
        row = self.rollups[subject_id]
        if row["last_processed_review_id"] != expected_cursor_id:
            return False
        row["last_processed_review_id"] = new_cursor_id
        row["updated_at"] = now
        if summary is not None:
            row["summary_1000"] = summary
        return True

    # -- jobs ---------------------------------------------------------
    def ensure_embedding_jobs(self, review_ids, now):
        self._check("ensure_embedding_jobs")
        for review_id in review_ids:
            self.jobs.setdefault(
                review_id,
                {
                    "review_id": review_id,
                    "status": JOB_QUEUED,
                    "attempt_count": 0,
                    "last_error": None,
                    "locked_at": None,
                    "locked_by": None,
                    "updated_at": now,
                },
            )

    def select_embedding_jobs(self, limit, stale_before):
        self._check("select_embedding_jobs")
        items = [WorkItem.from_row(row) for row in self.jobs.values()]
        items = [item for item in items if item.is_selectable(stale_before)]
        items.sort(key=lambda item: item.updated_at)
        return items[:limit]

    def claim_embedding_jobs(self, review_ids, runner, now, stale_before):
        self._check("claim_embedding_jobs")
        claimed = []
        for review_id in review_ids:
            row = self.jobs.get(review_id)
            if row is None or not WorkItem.from_row(row).is_selectable(stale_before):
                continue
            row.update({"status": JOB_PROCESSING, "locked_at": now, "locked_by": runner, "updated_at": now})
            claimed.append(WorkItem.from_row(row))
        return claimed

    def resolve_embedding_job(self, item, *, status, runner, now, error=None):
        self._check("resolve_embedding_job")
        row = self.jobs[item.review_id]
        if row["locked_by"] != runner:
            return False
        row.update(
            {
                "status": status,
                "attempt_count": item.attempt_count + 1,
                "last_error": error,
                "locked_at": None,
                "locked_by": None,
                "updated_at": now,
            }
        )
        return True

    # -- embeddings ---------------------------------------------------
    def fetch_review_embedding_hashes(self, review_ids):
        self._check("fetch_review_embedding_hashes")
        return {
            review_id: self.review_embeddings[review_id]["content_hash"]
            for review_id in review_ids
            if review_id in self.review_embeddings
        }

    def fetch_rollup_embedding_hashes(self, subject_ids):
        self._check("fetch_rollup_embedding_hashes")
        return {
            subject_id: self.rollup_embeddings[subject_id]["content_hash"]
            for subject_id in subject_ids
            if subject_id in self.rollup_embeddings
        }

    def upsert_review_embeddings(self, records):
        self._check("upsert_review_embeddings")
        for record in records:
            self.review_embeddings[record.owner_id] = record.to_row("review_id")

    def upsert_rollup_embeddings(self, records):
        self._check("upsert_rollup_embeddings")
        for record in records:
            self.rollup_embeddings[record.owner_id] = record.to_row("subject_id")


class FakeSummaryClient:
    model = "fake-summary"

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: List[tuple] = []

    def summarize(self, previous_summary, new_reviews):
        self.calls.append((previous_summary, list(new_reviews)))
        if self.fail:
            raise SummarizationError("summary service unavailable")
        merged = " / ".join(part for part in [previous_summary, *new_reviews] if part)
        return f"要約: {merged}"[:1000]


class FakeEmbeddingClient:
    model = "fake-embedding"

    def __init__(self, fail_calls=()):
        self.fail_calls = set(fail_calls)
        self.calls: List[List[str]] = []

    def embed_batch(self, texts):
        call_index = len(self.calls)
        self.calls.append(list(texts))
        if call_index in self.fail_calls:
            raise EmbeddingServiceError("embedding service unavailable")
        return [[float(len(text)), 0.5, -0.5] for text in texts]

    @property
    def embedded_texts(self) -> List[str]:
        return [text for call in self.calls for text in call]


def make_config(**overrides) -> PipelineConfig:
    return PipelineConfig(**overrides)


def make_pipeline(store, clock, *, config=None, summary=None, embedder=None, runner="test-runner"):
    return build_pipeline(
        config=config or make_config(),
        runner=runner,
        store=store,
        summary_client=summary or FakeSummaryClient(),
        embedding_client=embedder or FakeEmbeddingClient(),
        now_fn=clock,
    )
