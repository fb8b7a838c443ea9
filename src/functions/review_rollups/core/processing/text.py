"""Text normalisation and content hashing shared by summaries and embeddings."""

from __future__ import annotations

import hashlib
import re

ELLIPSIS = "…"

_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str | None, max_chars: int) -> str:
    """Strip, collapse whitespace runs to one space and cap at *max_chars*.

    Over-long text is cut to *max_chars* characters and gets a trailing ellipsis.
    """

    if not text:
        return ""
    collapsed = _WHITESPACE.sub(" ", text).strip()
    if len(collapsed) <= max_chars:
        return collapsed
    return collapsed[:max_chars] + ELLIPSIS


def content_hash(text: str) -> str:
    """SHA-256 hex digest of the exact text sent for embedding."""

    return hashlib.sha256(text.encode("utf-8")).hexdigest()


EMPTY_CONTENT_HASH = content_hash("")
