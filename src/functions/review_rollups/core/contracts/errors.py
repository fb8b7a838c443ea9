"""Exception taxonomy for the review rollup pipeline."""

from __future__ import annotations

from typing import Optional

# Values of FailureDetail.kind / RecordedError.kind
KIND_TRANSIENT = "transient"
KIND_INTEGRITY = "data_integrity"
KIND_STORE = "store"
KIND_CONFLICT = "conflict"


class PipelineError(RuntimeError):
    """Base class for failures attributed to a single unit or subject."""

    kind = KIND_TRANSIENT
    retryable = True

    def __init__(self, message: str, *, stage: Optional[str] = None) -> None:
        super().__init__(message)
        self.stage = stage


class UnauthorizedTriggerError(RuntimeError):
    """Raised when the trigger token is missing or wrong."""


class TransientServiceError(PipelineError):
    """Network, timeout or rate-limit failure of an external capability."""


class SummarizationError(TransientServiceError):
    """The summarisation capability failed or returned an unusable response."""


class EmbeddingServiceError(TransientServiceError):
    """The embedding capability failed for a whole batch."""


class ContractViolationError(TransientServiceError):
    """An external payload did not match the expected shape."""


class DataIntegrityError(PipelineError):
    """Stored data is inconsistent (e.g. a review without a body).

    Retried like a transient failure, but will not heal without a data fix.
    """

    kind = KIND_INTEGRITY


class StoreError(PipelineError):
    """Supabase rejected a read or a write."""

    kind = KIND_STORE

    def __init__(
        self,
        message: str,
        *,
        stage: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[str] = None,
    ) -> None:
        super().__init__(message, stage=stage)
        self.code = code
        self.details = details


class RowValidationError(StoreError):
    """A row returned by the store is missing fields or has the wrong types."""


class SummaryConflictError(PipelineError):
    """Another run advanced the summary cursor first; this fold was discarded."""

    kind = KIND_CONFLICT
