"""Error aggregation utilities for the review rollup pipeline."""

from __future__ import annotations

import logging
import threading
import traceback
from dataclasses import dataclass
from typing import List, Optional

from ..contracts.errors import KIND_TRANSIENT, PipelineError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RecordedError:
    """Structured representation of a captured pipeline error."""

    unit: str
    stage: str
    kind: str
    message: str
    retryable: bool
    exception_type: str
    traceback: Optional[str]


def classify(exc: BaseException) -> tuple[str, bool]:
    """Return ``(kind, retryable)`` for an exception."""

    if isinstance(exc, PipelineError):
        return exc.kind, exc.retryable
    return KIND_TRANSIENT, False


class ErrorHandler:
    """Collects and categorises errors encountered during pipeline execution."""

    def __init__(self, *, include_traceback: bool = True) -> None:
        self._errors: List[RecordedError] = []
        self._include_traceback = include_traceback
        self._lock = threading.Lock()

    def record(self, unit: str, stage: str, exc: BaseException) -> RecordedError:
        """Record an error for later reporting."""

        kind, retryable = classify(exc)
        tb = None
        if self._include_traceback and exc.__traceback__ is not None:
            tb = "".join(traceback.format_exception(exc)).strip() or None
        logger.debug("Recording %s error at stage %s for %s: %s", kind, stage, unit, exc)
        recorded = RecordedError(
            unit=unit,
            stage=stage,
            kind=kind,
            message=str(exc),
            retryable=retryable,
            exception_type=type(exc).__name__,
            traceback=tb,
        )
        with self._lock:
            self._errors.append(recorded)
        return recorded

    @property
    def errors(self) -> List[RecordedError]:
        """Return collected error records."""

        with self._lock:
            return list(self._errors)

    def count(self, kind: Optional[str] = None) -> int:
        with self._lock:
            if kind is None:
                return len(self._errors)
            return sum(1 for error in self._errors if error.kind == kind)

    def as_dict(self) -> List[dict]:
        """Serialise errors for JSON responses."""

        return [
            {
                "unit": error.unit,
                "stage": error.stage,
                "kind": error.kind,
                "message": error.message,
                "retryable": error.retryable,
                "exception_type": error.exception_type,
                "traceback": error.traceback,
            }
            for error in self.errors
        ]
