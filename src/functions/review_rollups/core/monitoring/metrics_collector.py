"""Metrics collection utilities for the review rollup pipeline."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict

from ..contracts.pipeline_result import PipelineMetrics, SubjectProcessingResult


@dataclass
class _MutableMetrics:
    summary_calls: int = 0
    embedding_calls: int = 0
    embedded_units: int = 0
    reviews_folded: int = 0


class MetricsCollector:
    """Aggregates counters across pipeline stages with thread safety."""

    def __init__(self) -> None:
        self._metrics = _MutableMetrics()
        self._stage_durations: Dict[str, float] = {}
        self._lock = threading.Lock()

    def record_subject(self, result: SubjectProcessingResult) -> None:
        """Accumulate metrics from a subject result."""

        with self._lock:
            self._metrics.reviews_folded += result.new_reviews
            if result.summary_updated:
                self._metrics.summary_calls += 1
            for stage, duration in result.durations.items():
                current = self._stage_durations.get(stage, 0.0)
                self._stage_durations[stage] = round(current + duration, 4)

    def record_embedding_call(self, units: int) -> None:
        with self._lock:
            self._metrics.embedding_calls += 1
            self._metrics.embedded_units += units

    def record_stage_duration(self, stage: str, duration: float) -> None:
        if duration < 0:
            return
        with self._lock:
            current = self._stage_durations.get(stage, 0.0)
            self._stage_durations[stage] = round(current + duration, 4)

    def build_snapshot(self) -> PipelineMetrics:
        """Produce an immutable snapshot for reporting."""

        with self._lock:
            metrics = PipelineMetrics()
            metrics.summary_calls = self._metrics.summary_calls
            metrics.embedding_calls = self._metrics.embedding_calls
            metrics.embedded_units = self._metrics.embedded_units
            metrics.reviews_folded = self._metrics.reviews_folded
            metrics.stage_durations = dict(self._stage_durations)
        return metrics
