"""
Incremental fold of new review bodies into a subject's rolling summary.

The rollup row carries a cursor, the id of the last review already folded in.
Each pass reads at most ``max_new_reviews_for_summary`` reviews strictly after
the cursor in ``(created_at, id)`` order and folds them into the previous
summary with one summarisation call. Reviews newer than the stats snapshot taken
earlier in the pass are not folded; the dirty re-check after release picks
them up on the next run.

A cursor that points at a review which no longer exists, or no cursor at all,
means the summary is rebuilt from scratch: the stored summary is discarded and
reviews are read again from the oldest one, batch by batch.

Summary and cursor are written together with a compare-and-set on the cursor
value read at the start of the pass. If another runner moved the cursor in
the meantime the write matches no row and SummaryConflictError is raised; the
subject stays dirty and is picked up again later.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from ..contracts.config import PipelineConfig
from ..contracts.errors import SummaryConflictError
from ..contracts.records import ReviewRef, RollupRecord, SubjectStats
from .text import normalize_text

logger = logging.getLogger(__name__)

FOLDED = "folded"
UP_TO_DATE = "up_to_date"
NO_USABLE_BODIES = "no_usable_bodies"


@dataclass
class SummaryOutcome:
    status: str
    summary: str
    cursor: Optional[ReviewRef]
    has_more: bool = False
    cursor_reset: bool = False
    summary_changed: bool = False
    folded_review_ids: List[str] = field(default_factory=list)
    missing_body_ids: List[str] = field(default_factory=list)


class IncrementalSummarizer:
    def __init__(self, store, summarizer, config: PipelineConfig) -> None:
        self._store = store
        self._summarizer = summarizer
        self._max_new = config.max_new_reviews_for_summary
        self._max_body_chars = config.max_body_chars_for_summary

    def _resolve_cursor(self, rollup: RollupRecord) -> tuple[Optional[ReviewRef], bool]:
        """Return ``(cursor, reset)``; reset is True when the stored cursor is dangling."""

        if not rollup.cursor_review_id:
            return None, False
        ref = self._store.fetch_review_ref(rollup.subject_id, rollup.cursor_review_id)
        if ref is None:
            logger.warning(
                "Cursor %s of subject %s no longer exists; rebuilding summary from scratch",
                rollup.cursor_review_id,
                rollup.subject_id,
            )
            return None, True
        return ref, False

    def summarize(self, rollup: RollupRecord, stats: SubjectStats, now: datetime) -> SummaryOutcome:
        subject_id = rollup.subject_id
        cursor, reset = self._resolve_cursor(rollup)
        rebuilding = cursor is None
        previous_summary = "" if rebuilding else rollup.summary
        expected_cursor_id = rollup.cursor_review_id

        # Only fold what the stats snapshot counted; later reviews are left to the dirty re-check.
        upper = None
        if stats.latest_review_id and stats.latest_created_at is not None:
            upper = ReviewRef(id=stats.latest_review_id, created_at=stats.latest_created_at)
        rows = self._store.fetch_reviews_after(subject_id, cursor, self._max_new + 1, upper=upper)
        has_more = len(rows) > self._max_new
        batch = rows[: self._max_new]

        if not batch:
            # Nothing after the cursor: it already points at the latest review.
            new_cursor_id = cursor.id if cursor is not None else None
            discard_summary = rebuilding and (reset or bool(rollup.summary))
            if discard_summary or new_cursor_id != expected_cursor_id:
                self._write(
                    subject_id,
                    expected_cursor_id,
                    new_cursor_id,
                    now,
                    summary="" if rebuilding else None,
                )
            if stats.latest_review_id and new_cursor_id != stats.latest_review_id:
                logger.info(
                    "Subject %s latest review %s not visible after cursor %s",
                    subject_id,
                    stats.latest_review_id,
                    new_cursor_id,
                )
            return SummaryOutcome(
                status=UP_TO_DATE,
                summary=previous_summary,
                cursor=cursor,
                cursor_reset=reset,
                summary_changed=rebuilding and bool(rollup.summary),
            )

        ids = [row.id for row in batch]
        bodies = self._store.fetch_bodies(ids)
        usable_ids: List[str] = []
        texts: List[str] = []
        missing: List[str] = []
        for review_id in ids:
            text = normalize_text(bodies.get(review_id), self._max_body_chars)
            if text:
                usable_ids.append(review_id)
                texts.append(text)
            else:
                missing.append(review_id)
        if missing:
            logger.warning(
                "missing_body: subject %s has %s reviews without usable body: %s",
                subject_id,
                len(missing),
                ", ".join(missing),
            )

        new_cursor_id = batch[-1].id
        if not texts:
            self._write(
                subject_id,
                expected_cursor_id,
                new_cursor_id,
                now,
                summary="" if rebuilding else None,
            )
            return SummaryOutcome(
                status=NO_USABLE_BODIES,
                summary=previous_summary,
                cursor=batch[-1],
                has_more=has_more,
                cursor_reset=reset,
                summary_changed=rebuilding and bool(rollup.summary),
                missing_body_ids=missing,
            )

        summary = self._summarizer.summarize(previous_summary, texts)
        self._store.ensure_embedding_jobs(usable_ids, now)
        self._write(subject_id, expected_cursor_id, new_cursor_id, now, summary=summary)
        logger.info(
            "Subject %s: folded %s reviews into summary (cursor %s, has_more=%s)",
            subject_id,
            len(texts),
            new_cursor_id,
            has_more,
        )
        return SummaryOutcome(
            status=FOLDED,
            summary=summary,
            cursor=batch[-1],
            has_more=has_more,
            cursor_reset=reset,
            summary_changed=summary != rollup.summary,
            folded_review_ids=usable_ids,
            missing_body_ids=missing,
        )

    def _write(
        self,
        subject_id: str,
        expected_cursor_id: Optional[str],
        new_cursor_id: Optional[str],
        now: datetime,
        *,
        summary: Optional[str],
    ) -> None:
        stored = self._store.compare_and_set_cursor(
            subject_id,
            expected_cursor_id=expected_cursor_id,
            new_cursor_id=new_cursor_id,
            now=now,
            summary=summary,
        )
        if not stored:
            raise SummaryConflictError(
                f"Cursor of subject {subject_id} moved away from {expected_cursor_id!r}",
                stage="summary",
            )
