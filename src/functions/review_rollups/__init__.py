"""
Review Rollups Module

Keeps the derived artifacts of the course-review app converged with the
append-only stream of submitted reviews:

- per-subject statistics (counts, metric averages, outcome buckets)
- an incrementally folded natural-language summary per subject
- vector embeddings for review bodies and rollup summaries

Work is driven by subject dirty flags and embedding job rows, claimed with
soft timestamp locks, and every external call is guarded by a content hash
so repeated invocations converge without redoing paid work.
"""

__version__ = "1.0.0"
