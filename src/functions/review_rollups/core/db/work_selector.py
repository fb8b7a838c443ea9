"""Selection of pending subjects and embedding jobs."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from ..contracts.config import PipelineConfig
from ..contracts.records import RollupRecord, WorkItem

logger = logging.getLogger(__name__)


class WorkSelector:
    """Reads the next batch of work without side effects."""

    def __init__(self, store, config: PipelineConfig) -> None:
        self._store = store
        self._config = config

    def select_subjects(self, now: datetime, limit: Optional[int] = None) -> List[RollupRecord]:
        """Dirty subjects whose lock is absent or stale, oldest update first."""

        limit = self._config.max_subjects_per_run if limit is None else limit
        stale_before = self._config.stale_before(now)
        records = self._store.select_dirty_subjects(limit, stale_before)
        selected = [
            record
            for record in records
            if record.is_dirty and (record.locked_at is None or record.locked_at < stale_before)
        ]
        logger.info("Selected %s dirty subjects (limit %s)", len(selected), limit)
        return selected[:limit]

    def select_jobs(self, now: datetime, limit: Optional[int] = None) -> List[WorkItem]:
        """Queued or failed jobs plus processing jobs whose lock went stale."""

        limit = self._config.max_jobs_per_run if limit is None else limit
        stale_before = self._config.stale_before(now)
        items = self._store.select_embedding_jobs(limit, stale_before)
        selected = [item for item in items if item.is_selectable(stale_before)]
        if len(selected) != len(items):
            logger.warning(
                "Store returned %s non-selectable embedding jobs; ignoring them",
                len(items) - len(selected),
            )
        logger.info("Selected %s embedding jobs (limit %s)", len(selected), limit)
        return selected[:limit]
