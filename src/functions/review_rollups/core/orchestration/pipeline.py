"""Pipeline entry point: one bounded pass over dirty subjects and embedding jobs."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from ..contracts.config import OpenAISettings, PipelineConfig, SupabaseSettings
from ..contracts.errors import PipelineError
from ..contracts.pipeline_result import JobCounts, PipelineResult
from ..db.lock_coordinator import LockCoordinator
from ..db.work_selector import WorkSelector
from ..integration.supabase_client import SupabaseRollupStore
from ..llm.openai_client import OpenAIEmbeddingClient, OpenAISummaryClient
from ..monitoring.error_handler import ErrorHandler
from ..monitoring.metrics_collector import MetricsCollector
from ..processing.embedding_synchronizer import ROLLUP_FAILED, EmbeddingSynchronizer
from ..processing.incremental_summarizer import IncrementalSummarizer
from ..processing.stats_aggregator import StatsAggregator
from .parallel_executor import ParallelExecutor
from .subject_processor import SubjectProcessor, SubjectWork

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Pipeline:
    """Selects and claims work, delegates processing and reports counters."""

    def __init__(
        self,
        *,
        selector: WorkSelector,
        coordinator: LockCoordinator,
        subject_processor: SubjectProcessor,
        synchronizer: EmbeddingSynchronizer,
        metrics: MetricsCollector,
        errors: ErrorHandler,
        config: PipelineConfig,
        now_fn: Callable[[], datetime] = utcnow,
    ) -> None:
        self._selector = selector
        self._coordinator = coordinator
        self._processor = subject_processor
        self._synchronizer = synchronizer
        self._metrics = metrics
        self._errors = errors
        self._config = config
        self._now = now_fn

    def run(self) -> PipelineResult:
        """Execute one pass and return a structured result."""

        start_time = utcnow()
        result = PipelineResult(
            runner=self._coordinator.runner,
            dry_run=self._config.dry_run,
            config_snapshot=self._config.snapshot(),
        )
        logger.info(
            "Starting review rollup pass (runner=%s, dry_run=%s)",
            self._coordinator.runner,
            self._config.dry_run,
        )

        if self._config.process_subjects:
            stage_start = time.perf_counter()
            self._run_subjects(result)
            self._metrics.record_stage_duration("subjects_total", time.perf_counter() - stage_start)
        if self._config.process_jobs:
            stage_start = time.perf_counter()
            self._run_jobs(result)
            self._metrics.record_stage_duration("jobs_total", time.perf_counter() - stage_start)

        metrics_snapshot = self._metrics.build_snapshot()
        metrics_snapshot.start_time = start_time
        metrics_snapshot.set_end_time()
        result.metrics = metrics_snapshot
        result.error_records = self._errors.as_dict()

        counts = result.counts()
        logger.info(
            "PASS COMPLETE: subjects=%d kept_dirty=%d failed_subjects=%d jobs picked=%d done=%d skipped=%d failed=%d",
            counts["subjects"],
            counts["kept_dirty"],
            counts["subjects_failed"],
            counts["picked"],
            counts["done"],
            counts["skipped"],
            counts["failed"],
        )
        return result

    def _run_subjects(self, result: PipelineResult) -> None:
        try:
            candidates = self._selector.select_subjects(self._now())
        except PipelineError as exc:
            logger.error("Selecting dirty subjects failed: %s", exc)
            self._errors.record("subjects", "select_subjects", exc)
            return
        result.subjects_selected = len(candidates)
        if self._config.dry_run:
            result.planned_subjects = [candidate.subject_id for candidate in candidates]
            logger.info("Dry run: would process %s subjects", len(candidates))
            return
        if not candidates:
            return

        try:
            claimed = self._coordinator.claim_subjects(candidates, self._now())
        except PipelineError as exc:
            logger.error("Claiming subjects failed: %s", exc)
            self._errors.record("subjects", "claim_subjects", exc)
            return

        if self._config.run_parallel and len(claimed) > 1:
            executor = ParallelExecutor(self._config.max_workers)
            works: List[SubjectWork] = executor.map(claimed, self._processor.process)
        else:
            works = [self._processor.process(rollup) for rollup in claimed]

        to_embed = [
            (work.result.subject_id, work.summary or "")
            for work in works
            if work.embed and not work.result.has_errors
        ]
        stage_start = time.perf_counter()
        try:
            outcomes = self._synchronizer.sync_rollups(to_embed)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error embedding rollup summaries")
            self._errors.record("rollups", "rollup_embedding", exc)
            outcomes = {subject_id: ROLLUP_FAILED for subject_id, _ in to_embed}
        self._metrics.record_stage_duration("rollup_embedding", time.perf_counter() - stage_start)

        for work in works:
            self._processor.apply_embedding_outcome(work, outcomes.get(work.result.subject_id))
            self._processor.resolve(work, self._coordinator)
            result.add_result(work.result)

    def _run_jobs(self, result: PipelineResult) -> None:
        try:
            candidates = self._selector.select_jobs(self._now())
        except PipelineError as exc:
            logger.error("Selecting embedding jobs failed: %s", exc)
            self._errors.record("embedding_jobs", "select_jobs", exc)
            return
        if self._config.dry_run:
            result.planned_jobs = [candidate.review_id for candidate in candidates]
            logger.info("Dry run: would embed %s reviews", len(candidates))
            return
        if not candidates:
            return

        try:
            claimed = self._coordinator.claim_jobs(candidates, self._now())
        except PipelineError as exc:
            logger.error("Claiming embedding jobs failed: %s", exc)
            self._errors.record("embedding_jobs", "claim_jobs", exc)
            return
        try:
            counts = self._synchronizer.sync_review_jobs(claimed, self._coordinator)
        except Exception as exc:  # noqa: BLE001
            # Claimed jobs stay in processing until their locks go stale.
            logger.exception("Unexpected error embedding review jobs")
            self._errors.record("embedding_jobs", "review_embedding", exc)
            counts = JobCounts(picked=len(claimed), failed=len(claimed))
        result.jobs.merge(counts)


def build_pipeline(
    *,
    config: PipelineConfig,
    runner: str,
    supabase_settings: Optional[SupabaseSettings] = None,
    openai_settings: Optional[OpenAISettings] = None,
    store: Any = None,
    summary_client: Any = None,
    embedding_client: Any = None,
    now_fn: Callable[[], datetime] = utcnow,
) -> Pipeline:
    """Wire the components for one pass.

    Collaborators that are not passed in are built from the settings.
    """

    if store is None:
        if supabase_settings is None:
            raise ValueError("supabase_settings is required when no store is given")
        store = SupabaseRollupStore(supabase_settings)
    if summary_client is None or embedding_client is None:
        if openai_settings is None:
            raise ValueError("openai_settings is required when no OpenAI clients are given")
        summary_client = summary_client or OpenAISummaryClient.from_settings(openai_settings)
        embedding_client = embedding_client or OpenAIEmbeddingClient.from_settings(openai_settings)
    model = getattr(embedding_client, "model", None) or (
        openai_settings.embedding_model if openai_settings else "unknown"
    )

    metrics = MetricsCollector()
    errors = ErrorHandler()
    coordinator = LockCoordinator(store, runner, config)
    processor = SubjectProcessor(
        store=store,
        stats=StatsAggregator(store),
        summarizer=IncrementalSummarizer(store, summary_client, config),
        metrics=metrics,
        error_handler=errors,
        now_fn=now_fn,
    )
    synchronizer = EmbeddingSynchronizer(
        store=store,
        embedder=embedding_client,
        config=config,
        model=model,
        errors=errors,
        metrics=metrics,
        now_fn=now_fn,
    )
    return Pipeline(
        selector=WorkSelector(store, config),
        coordinator=coordinator,
        subject_processor=processor,
        synchronizer=synchronizer,
        metrics=metrics,
        errors=errors,
        config=config,
        now_fn=now_fn,
    )
