"""
Soft timestamp locks for subjects and embedding jobs.

A claim is one conditional update that only matches rows which are still
selectable, so the rows it returns are exactly the ones this runner owns.
Candidates missing from that set were taken by someone else and are dropped
without error. Locks older than the configured staleness are reclaimable by
any runner; there is no hard mutual exclusion.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional, Sequence

from ..contracts.config import PipelineConfig
from ..contracts.records import RollupRecord, WorkItem

logger = logging.getLogger(__name__)


class LockCoordinator:
    def __init__(self, store, runner: str, config: PipelineConfig) -> None:
        self._store = store
        self.runner = runner
        self._config = config

    def claim_subjects(self, candidates: Sequence[RollupRecord], now: datetime) -> List[RollupRecord]:
        if not candidates:
            return []
        ids = [candidate.subject_id for candidate in candidates]
        claimed = self._store.claim_subjects(ids, self.runner, now, self._config.stale_before(now))
        by_id = {record.subject_id: record for record in claimed}
        dropped = [subject_id for subject_id in ids if subject_id not in by_id]
        if dropped:
            logger.info("Subjects claimed by another runner, skipping: %s", ", ".join(dropped))
        return [by_id[subject_id] for subject_id in ids if subject_id in by_id]

    def claim_jobs(self, candidates: Sequence[WorkItem], now: datetime) -> List[WorkItem]:
        if not candidates:
            return []
        ids = [candidate.review_id for candidate in candidates]
        claimed = self._store.claim_embedding_jobs(ids, self.runner, now, self._config.stale_before(now))
        by_id = {item.review_id: item for item in claimed}
        dropped = len(ids) - len(by_id)
        if dropped:
            logger.info("%s embedding jobs were claimed by another runner", dropped)
        return [by_id[review_id] for review_id in ids if review_id in by_id]

    def release_subject(self, subject_id: str, *, is_dirty: bool, now: datetime) -> bool:
        """Release a subject this runner still holds; False if it was reclaimed."""

        released = self._store.release_subject(
            subject_id,
            runner=self.runner,
            is_dirty=is_dirty,
            now=now,
        )
        if not released:
            logger.warning(
                "Subject %s was reclaimed by another runner before it was released",
                subject_id,
            )
        return released

    def resolve_job(
        self,
        item: WorkItem,
        status: str,
        now: datetime,
        error: Optional[str] = None,
    ) -> bool:
        """Finish a claimed job and release its lock."""

        resolved = self._store.resolve_embedding_job(
            item,
            status=status,
            runner=self.runner,
            now=now,
            error=error,
        )
        if not resolved:
            logger.warning(
                "Embedding job %s was reclaimed by another runner before it resolved",
                item.review_id,
            )
        return resolved
