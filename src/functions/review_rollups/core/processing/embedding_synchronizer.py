"""
Keeps review and rollup embeddings in step with their source text.

The text sent for embedding is normalised and hashed. A stored record with the
same hash is left alone and no request is made. Pending units are embedded in
batches of ``embedding_batch_size``; a batch that fails (request error, bad
vectors, or a rejected upsert) marks only its own units failed and the next
batch still runs.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from ..contracts.config import PipelineConfig
from ..contracts.errors import DataIntegrityError, PipelineError
from ..contracts.pipeline_result import JobCounts
from ..contracts.records import JOB_DONE, JOB_FAILED, EmbeddingRecord, WorkItem
from ..db.lock_coordinator import LockCoordinator
from ..monitoring.error_handler import ErrorHandler
from ..monitoring.metrics_collector import MetricsCollector
from .text import EMPTY_CONTENT_HASH, content_hash, normalize_text

logger = logging.getLogger(__name__)

MISSING_BODY = "missing_body"

ROLLUP_EMBEDDED = "embedded"
ROLLUP_UNCHANGED = "unchanged"
ROLLUP_CLEARED = "cleared"
ROLLUP_FAILED = "failed"


@dataclass(frozen=True)
class EmbeddingUnit:
    owner_id: str
    text: str
    content_hash: str


def _batches(units: Sequence[EmbeddingUnit], size: int) -> Iterator[List[EmbeddingUnit]]:
    for start in range(0, len(units), size):
        yield list(units[start : start + size])


class EmbeddingSynchronizer:
    def __init__(
        self,
        *,
        store,
        embedder,
        config: PipelineConfig,
        model: str,
        errors: ErrorHandler,
        metrics: MetricsCollector,
        now_fn: Callable[[], datetime],
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._batch_size = config.embedding_batch_size
        self._max_chars = config.max_embed_chars
        self._model = model
        self._errors = errors
        self._metrics = metrics
        self._now = now_fn

    def build_unit(self, owner_id: str, text: Optional[str]) -> EmbeddingUnit:
        normalised = normalize_text(text, self._max_chars)
        return EmbeddingUnit(owner_id=owner_id, text=normalised, content_hash=content_hash(normalised))

    def _embed(self, batch: Sequence[EmbeddingUnit]) -> List[EmbeddingRecord]:
        start = time.perf_counter()
        vectors = self._embedder.embed_batch([unit.text for unit in batch])
        self._metrics.record_stage_duration("embedding_request", time.perf_counter() - start)
        self._metrics.record_embedding_call(len(batch))
        now = self._now()
        return [
            EmbeddingRecord(
                owner_id=unit.owner_id,
                embedding=vector,
                model=self._model,
                content_hash=unit.content_hash,
                updated_at=now,
            )
            for unit, vector in zip(batch, vectors)
        ]

    # ------------------------------------------------------------------
    # Review bodies
    # ------------------------------------------------------------------
    def sync_review_jobs(self, items: Sequence[WorkItem], coordinator: LockCoordinator) -> JobCounts:
        """Embed claimed review jobs and resolve every one of them."""

        counts = JobCounts(picked=len(items))
        if not items:
            return counts
        by_id = {item.review_id: item for item in items}
        ids = list(by_id)

        try:
            bodies = self._store.fetch_bodies(ids)
            stored_hashes = self._store.fetch_review_embedding_hashes(ids)
        except PipelineError as exc:
            logger.error("Could not load review bodies or hashes: %s", exc)
            self._errors.record("embedding_jobs", "load_bodies", exc)
            for item in items:
                self._resolve(coordinator, item, JOB_FAILED, counts, error=str(exc))
            return counts

        pending: List[EmbeddingUnit] = []
        for review_id in ids:
            item = by_id[review_id]
            unit = self.build_unit(review_id, bodies.get(review_id))
            if not unit.text:
                logger.warning("missing_body: review %s has no body to embed", review_id)
                self._errors.record(
                    review_id,
                    "review_embedding",
                    DataIntegrityError(MISSING_BODY, stage="review_embedding"),
                )
                counts.missing_body += 1
                self._resolve(coordinator, item, JOB_FAILED, counts, error=MISSING_BODY)
            elif stored_hashes.get(review_id) == unit.content_hash:
                counts.skipped += 1
                self._resolve(coordinator, item, JOB_DONE, counts, skipped=True)
            else:
                pending.append(unit)

        for batch in _batches(pending, self._batch_size):
            try:
                records = self._embed(batch)
                self._store.upsert_review_embeddings(records)
            except PipelineError as exc:
                logger.error("Embedding batch of %s reviews failed: %s", len(batch), exc)
                self._errors.record(
                    ",".join(unit.owner_id for unit in batch),
                    "review_embedding",
                    exc,
                )
                for unit in batch:
                    self._resolve(coordinator, by_id[unit.owner_id], JOB_FAILED, counts, error=str(exc))
                continue
            for unit in batch:
                self._resolve(coordinator, by_id[unit.owner_id], JOB_DONE, counts)

        logger.info(
            "Embedding jobs: picked=%s done=%s skipped=%s failed=%s",
            counts.picked,
            counts.done,
            counts.skipped,
            counts.failed,
        )
        return counts

    def _resolve(
        self,
        coordinator: LockCoordinator,
        item: WorkItem,
        status: str,
        counts: JobCounts,
        *,
        error: Optional[str] = None,
        skipped: bool = False,
    ) -> None:
        try:
            coordinator.resolve_job(item, status, self._now(), error=error)
        except PipelineError as exc:
            # The lock goes stale and the job is picked up again later.
            logger.error("Could not resolve embedding job %s: %s", item.review_id, exc)
            self._errors.record(item.review_id, "resolve_job", exc)
            counts.failed += 1
            return
        if status == JOB_FAILED:
            counts.failed += 1
        elif not skipped:
            counts.done += 1

    # ------------------------------------------------------------------
    # Rollup summaries
    # ------------------------------------------------------------------
    def sync_rollups(self, summaries: Sequence[Tuple[str, str]]) -> Dict[str, str]:
        """Embed changed rollup summaries; returns ``subject_id -> outcome``."""

        outcomes: Dict[str, str] = {}
        if not summaries:
            return outcomes
        units = [self.build_unit(subject_id, text) for subject_id, text in summaries]
        ids = [unit.owner_id for unit in units]
        try:
            stored_hashes = self._store.fetch_rollup_embedding_hashes(ids)
        except PipelineError as exc:
            logger.error("Could not load rollup embedding hashes: %s", exc)
            for subject_id in ids:
                self._errors.record(subject_id, "rollup_embedding", exc)
                outcomes[subject_id] = ROLLUP_FAILED
            return outcomes

        cleared: List[EmbeddingUnit] = []
        pending: List[EmbeddingUnit] = []
        for unit in units:
            if stored_hashes.get(unit.owner_id) == unit.content_hash:
                outcomes[unit.owner_id] = ROLLUP_UNCHANGED
            elif not unit.text:
                cleared.append(unit)
            else:
                pending.append(unit)

        if cleared:
            now = self._now()
            records = [
                EmbeddingRecord(
                    owner_id=unit.owner_id,
                    embedding=None,
                    model=self._model,
                    content_hash=EMPTY_CONTENT_HASH,
                    updated_at=now,
                )
                for unit in cleared
            ]
            try:
                self._store.upsert_rollup_embeddings(records)
            except PipelineError as exc:
                self._fail_rollups(cleared, exc, outcomes)
            else:
                for unit in cleared:
                    outcomes[unit.owner_id] = ROLLUP_CLEARED

        for batch in _batches(pending, self._batch_size):
            try:
                records = self._embed(batch)
                self._store.upsert_rollup_embeddings(records)
            except PipelineError as exc:
                logger.error("Rollup embedding batch of %s subjects failed: %s", len(batch), exc)
                self._fail_rollups(batch, exc, outcomes)
                continue
            for unit in batch:
                outcomes[unit.owner_id] = ROLLUP_EMBEDDED
        return outcomes

    def _fail_rollups(
        self,
        units: Sequence[EmbeddingUnit],
        exc: PipelineError,
        outcomes: Dict[str, str],
    ) -> None:
        for unit in units:
            self._errors.record(unit.owner_id, "rollup_embedding", exc)
            outcomes[unit.owner_id] = ROLLUP_FAILED
