"""
OpenAI clients for the rolling summary and for embeddings.

Both clients disable the SDK's own retries and retry rate limits, timeouts,
connection drops and API errors here with exponential backoff. Responses are
validated before they leave this module; anything malformed raises
ContractViolationError.
"""

from __future__ import annotations

import logging
import math
import time
from typing import Any, Callable, List, Optional, Sequence, Type

from openai import APIConnectionError, APIError, APITimeoutError, OpenAI, RateLimitError

from ..contracts.config import OpenAISettings
from ..contracts.errors import (
    ContractViolationError,
    EmbeddingServiceError,
    SummarizationError,
    TransientServiceError,
)
from .prompts import SUMMARY_CHAR_LIMIT, build_summary_messages

logger = logging.getLogger(__name__)


def _backoff_seconds(exc: BaseException, attempt: int) -> int:
    # Rate limits and connection drops wait one step longer than timeouts and API errors.
    if isinstance(exc, RateLimitError):
        return 2 ** (attempt + 1)
    if isinstance(exc, APITimeoutError):
        return 2 ** attempt
    if isinstance(exc, APIConnectionError):
        return 2 ** (attempt + 1)
    return 2 ** attempt


class _RetryingOpenAIClient:
    """Shared retry loop and usage counters."""

    error_class: Type[TransientServiceError] = TransientServiceError

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        timeout: float,
        max_retries: int,
        client: Any = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.model = model
        self.max_retries = max(1, max_retries)
        self.timeout = timeout
        self._sleep = sleep
        self.client = client or OpenAI(
            api_key=api_key,
            timeout=timeout,
            max_retries=0,  # retried by _call
        )
        self.total_requests = 0
        self.failed_requests = 0
        self.total_tokens = 0

    def _call(self, label: str, func: Callable[[], Any]) -> Any:
        for attempt in range(self.max_retries):
            try:
                response = func()
            except (RateLimitError, APITimeoutError, APIConnectionError, APIError) as exc:
                self.failed_requests += 1
                logger.warning(
                    "%s failed (attempt %s/%s): %s",
                    label,
                    attempt + 1,
                    self.max_retries,
                    exc,
                )
                if attempt < self.max_retries - 1:
                    sleep_time = _backoff_seconds(exc, attempt)
                    logger.info("Retrying %s in %s seconds...", label, sleep_time)
                    self._sleep(sleep_time)
                    continue
                raise self.error_class(
                    f"{label} failed after {self.max_retries} attempts: {exc}"
                ) from exc
            self.total_requests += 1
            usage = getattr(response, "usage", None)
            tokens = getattr(usage, "total_tokens", None)
            if isinstance(tokens, int):
                self.total_tokens += tokens
            return response
        raise self.error_class(f"{label} was not attempted")

    def get_usage_stats(self) -> dict:
        return {
            "model": self.model,
            "total_requests": self.total_requests,
            "failed_requests": self.failed_requests,
            "total_tokens": self.total_tokens,
        }


class OpenAISummaryClient(_RetryingOpenAIClient):
    """Folds new review bodies into the previous summary via the Responses API."""

    error_class = SummarizationError

    @classmethod
    def from_settings(cls, settings: OpenAISettings, **kwargs: Any) -> OpenAISummaryClient:
        return cls(
            api_key=settings.summary_api_key,
            model=settings.summary_model,
            timeout=settings.timeout_seconds,
            max_retries=settings.max_retries,
            **kwargs,
        )

    def summarize(self, previous_summary: str, new_reviews: Sequence[str]) -> str:
        """Return the merged summary text; raises SummarizationError on failure."""

        if not new_reviews:
            raise ValueError("new_reviews must not be empty")
        messages = build_summary_messages(previous_summary, new_reviews)
        response = self._call(
            "summary request",
            lambda: self.client.responses.create(model=self.model, input=messages),
        )
        text = getattr(response, "output_text", None)
        if not isinstance(text, str):
            raise SummarizationError("Summary response carried no output_text")
        text = text.strip()
        if not text:
            raise SummarizationError("Summary response was empty")
        if len(text) > SUMMARY_CHAR_LIMIT:
            logger.warning(
                "Summary exceeds %s characters (%s); storing as returned",
                SUMMARY_CHAR_LIMIT,
                len(text),
            )
        logger.debug("Generated summary of %s chars from %s reviews", len(text), len(new_reviews))
        return text


class OpenAIEmbeddingClient(_RetryingOpenAIClient):
    """Embeds a batch of texts in one request and validates the vectors."""

    error_class = EmbeddingServiceError

    @classmethod
    def from_settings(cls, settings: OpenAISettings, **kwargs: Any) -> OpenAIEmbeddingClient:
        return cls(
            api_key=settings.embedding_api_key,
            model=settings.embedding_model,
            timeout=settings.timeout_seconds,
            max_retries=settings.max_retries,
            **kwargs,
        )

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """Return one vector per input text, in input order."""

        if not texts:
            return []
        if any(not text for text in texts):
            raise ValueError("Cannot embed empty text")
        response = self._call(
            f"embedding request ({len(texts)} texts)",
            lambda: self.client.embeddings.create(
                model=self.model,
                input=list(texts),
                encoding_format="float",
            ),
        )
        return self._validate(response, len(texts))

    @staticmethod
    def _validate(response: Any, expected: int) -> List[List[float]]:
        data = getattr(response, "data", None)
        if not isinstance(data, list):
            raise ContractViolationError("Embedding response has no data list")
        if len(data) != expected:
            raise ContractViolationError(
                f"Embedding count mismatch: expected {expected}, got {len(data)}"
            )

        items = []
        for item in data:
            index = getattr(item, "index", None)
            if not isinstance(index, int) or isinstance(index, bool):
                raise ContractViolationError("Embedding item is missing its index")
            items.append((index, getattr(item, "embedding", None)))
        items.sort(key=lambda pair: pair[0])
        if [index for index, _ in items] != list(range(expected)):
            raise ContractViolationError("Embedding indices do not cover the input")

        vectors: List[List[float]] = []
        dimension: Optional[int] = None
        for index, vector in items:
            if not isinstance(vector, list) or not vector:
                raise ContractViolationError(f"Embedding {index} is not a non-empty list")
            if not all(
                isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)
                for value in vector
            ):
                raise ContractViolationError(f"Embedding {index} contains non-numeric values")
            if dimension is None:
                dimension = len(vector)
            elif len(vector) != dimension:
                raise ContractViolationError(
                    f"Embedding {index} has dimension {len(vector)}, expected {dimension}"
                )
            vectors.append([float(value) for value in vector])
        return vectors
