"""Per-subject orchestration: stats, summary, then dirty-flag resolution."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from ..contracts.errors import PipelineError
from ..contracts.pipeline_result import FailureDetail, SubjectProcessingResult
from ..contracts.records import ReviewRef, RollupRecord
from ..db.lock_coordinator import LockCoordinator
from ..monitoring.error_handler import ErrorHandler
from ..monitoring.metrics_collector import MetricsCollector
from ..processing.embedding_synchronizer import ROLLUP_FAILED
from ..processing.incremental_summarizer import FOLDED, IncrementalSummarizer
from ..processing.stats_aggregator import StatsAggregator

logger = logging.getLogger(__name__)


@dataclass
class SubjectWork:
    """A processed subject waiting for its rollup embedding and release."""

    result: SubjectProcessingResult
    cursor: Optional[ReviewRef] = None
    summary: Optional[str] = None
    embed: bool = False


class SubjectProcessor:
    """Coordinates the stages for a single claimed subject."""

    def __init__(
        self,
        *,
        store,
        stats: StatsAggregator,
        summarizer: IncrementalSummarizer,
        metrics: MetricsCollector,
        error_handler: ErrorHandler,
        now_fn: Callable[[], datetime],
    ) -> None:
        self._store = store
        self._stats = stats
        self._summarizer = summarizer
        self._metrics = metrics
        self._errors = error_handler
        self._now = now_fn

    def _fail(self, result: SubjectProcessingResult, stage: str, exc: Exception) -> None:
        recorded = self._errors.record(result.subject_id, stage, exc)
        result.add_error(
            FailureDetail(
                stage=stage,
                message=str(exc),
                kind=recorded.kind,
                retryable=recorded.retryable,
            )
        )

    def process(self, rollup: RollupRecord) -> SubjectWork:
        """Run stats and summary for one subject; failures are recorded, never raised."""

        subject_id = rollup.subject_id
        logger.info("Processing subject %s", subject_id)
        result = SubjectProcessingResult(subject_id=subject_id, cursor_review_id=rollup.cursor_review_id)
        work = SubjectWork(result=result)

        stage_start = time.perf_counter()
        try:
            stats = self._stats.recompute(subject_id, self._now())
        except PipelineError as exc:
            logger.error("Stats failed for subject %s: %s", subject_id, exc)
            self._fail(result, "stats", exc)
            return work
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error computing stats for subject %s", subject_id)
            self._fail(result, "stats", exc)
            return work
        finally:
            result.add_stage_duration("stats", time.perf_counter() - stage_start)
        result.stats_updated = True
        result.review_count = stats.review_count

        if stats.is_empty:
            result.cursor_review_id = None
            result.summary_updated = bool(rollup.summary)
            return work

        stage_start = time.perf_counter()
        try:
            outcome = self._summarizer.summarize(rollup, stats, self._now())
        except PipelineError as exc:
            logger.error("Summary failed for subject %s: %s", subject_id, exc)
            self._fail(result, "summary", exc)
            return work
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error summarising subject %s", subject_id)
            self._fail(result, "summary", exc)
            return work
        finally:
            result.add_stage_duration("summary", time.perf_counter() - stage_start)

        result.has_more = outcome.has_more
        result.cursor_reset = outcome.cursor_reset
        result.cursor_review_id = outcome.cursor.id if outcome.cursor else None
        result.new_reviews = len(outcome.folded_review_ids)
        result.summary_updated = outcome.status == FOLDED or outcome.summary_changed
        work.cursor = outcome.cursor
        work.summary = outcome.summary
        work.embed = True
        return work

    def apply_embedding_outcome(self, work: SubjectWork, outcome: Optional[str]) -> None:
        work.result.embedding_status = outcome
        if outcome == ROLLUP_FAILED:
            work.result.add_error(
                FailureDetail(stage="rollup_embedding", message="rollup embedding failed")
            )

    def resolve(self, work: SubjectWork, coordinator: LockCoordinator) -> None:
        """Write the dirty flag for a processed subject and release its lock.

        Failures or backlog keep the subject dirty. A cleared flag is followed
        by a check for reviews newer than the cursor; if one turned up the
        flag is set again.
        """

        result = work.result
        subject_id = result.subject_id
        keep_dirty = result.has_errors or result.has_more
        try:
            released = coordinator.release_subject(subject_id, is_dirty=keep_dirty, now=self._now())
            if not released:
                # The new owner writes the flag; ours was not applied.
                keep_dirty = True
            elif not keep_dirty and self._store.has_reviews_after(subject_id, work.cursor):
                logger.info("Subject %s received new reviews during processing; keeping dirty", subject_id)
                self._store.mark_dirty(subject_id, self._now())
                keep_dirty = True
        except PipelineError as exc:
            logger.error("Bookkeeping failed for subject %s: %s", subject_id, exc)
            self._force_dirty(result, exc)
            keep_dirty = True
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected bookkeeping error for subject %s", subject_id)
            self._force_dirty(result, exc)
            keep_dirty = True
        result.resolve(is_dirty=keep_dirty)
        self._metrics.record_subject(result)

    def _force_dirty(self, result: SubjectProcessingResult, exc: Exception) -> None:
        subject_id = result.subject_id
        self._fail(result, "resolve", exc)
        try:
            self._store.mark_dirty(subject_id, self._now())
        except Exception as retry_exc:  # noqa: BLE001
            # The lock is left in place and expires after the staleness window.
            logger.error("Could not force subject %s dirty: %s", subject_id, retry_exc)
            self._errors.record(subject_id, "resolve", retry_exc)
