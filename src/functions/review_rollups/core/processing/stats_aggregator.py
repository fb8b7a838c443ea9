"""Recomputes per-subject aggregate statistics."""

from __future__ import annotations

import logging
from datetime import datetime

from ..contracts.records import SubjectStats

logger = logging.getLogger(__name__)


class StatsAggregator:
    """One aggregation RPC per subject, written back onto the rollup row.

    A dirty subject with no reviews at all is reset to zero counts, null
    averages, an empty summary and no cursor. That is a terminal state, not a
    failure; the caller clears the dirty flag and skips embedding.
    """

    def __init__(self, store) -> None:
        self._store = store

    def recompute(self, subject_id: str, now: datetime) -> SubjectStats:
        stats = self._store.fetch_subject_stats(subject_id)
        if stats.is_empty:
            logger.info("Subject %s has no reviews; resetting rollup", subject_id)
            self._store.reset_rollup(subject_id, now)
            return stats
        self._store.update_rollup_stats(subject_id, stats, now)
        logger.debug("Subject %s stats updated (%s reviews)", subject_id, stats.review_count)
        return stats
