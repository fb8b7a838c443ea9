"""Utilities for parallel subject processing."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


class ParallelExecutor:
    """Simple wrapper around ThreadPoolExecutor that keeps input order."""

    def __init__(self, max_workers: int) -> None:
        self._max_workers = max_workers

    def map(self, items: Sequence[T], func: Callable[[T], R]) -> List[R]:
        """Run *func* for each item concurrently; results follow *items* order."""

        if not items:
            return []
        with ThreadPoolExecutor(max_workers=min(self._max_workers, len(items))) as executor:
            futures = [executor.submit(func, item) for item in items]
            return [future.result() for future in futures]
