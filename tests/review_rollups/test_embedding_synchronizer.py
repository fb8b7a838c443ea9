from src.functions.review_rollups.core.db.lock_coordinator import LockCoordinator
from src.functions.review_rollups.core.monitoring.error_handler import ErrorHandler
from src.functions.review_rollups.core.monitoring.metrics_collector import MetricsCollector
from src.functions.review_rollups.core.processing.embedding_synchronizer import (
    ROLLUP_CLEARED,
    ROLLUP_EMBEDDED,
    ROLLUP_FAILED,
    ROLLUP_UNCHANGED,
    EmbeddingSynchronizer,
)
from src.functions.review_rollups.core.processing.text import EMPTY_CONTENT_HASH, content_hash
from tests.review_rollups.fixtures import Clock, FakeEmbeddingClient, FakeStore, make_config


def _synchronizer(store, clock, embedder, **config):
    errors = ErrorHandler()
    synchronizer = EmbeddingSynchronizer(
        store=store,
        embedder=embedder,
        config=make_config(**config),
        model="test-model",
        errors=errors,
        metrics=MetricsCollector(),
        now_fn=clock,
    )
    return synchronizer, errors


def test_empty_rollup_summary_stores_null_vector_with_empty_hash():
    clock = Clock()
    store = FakeStore(clock)
    embedder = FakeEmbeddingClient()
    synchronizer, _ = _synchronizer(store, clock, embedder)

    outcomes = synchronizer.sync_rollups([("S", "")])

    assert outcomes == {"S": ROLLUP_CLEARED}
    assert embedder.calls == []
    record = store.rollup_embeddings["S"]
    assert record["embedding"] is None
    assert record["content_hash"] == EMPTY_CONTENT_HASH
    assert record["model"] == "test-model"

    assert synchronizer.sync_rollups([("S", "")]) == {"S": ROLLUP_UNCHANGED}


def test_rollups_are_batched_and_failures_stay_in_their_batch():
    clock = Clock()
    store = FakeStore(clock)
    embedder = FakeEmbeddingClient(fail_calls={1})
    synchronizer, errors = _synchronizer(store, clock, embedder, embedding_batch_size=2)

    outcomes = synchronizer.sync_rollups([(f"S{index}", f"summary {index}") for index in range(5)])

    assert [len(call) for call in embedder.calls] == [2, 2, 1]
    assert outcomes == {
        "S0": ROLLUP_EMBEDDED,
        "S1": ROLLUP_EMBEDDED,
        "S2": ROLLUP_FAILED,
        "S3": ROLLUP_FAILED,
        "S4": ROLLUP_EMBEDDED,
    }
    assert {error.unit for error in errors.errors} == {"S2", "S3"}
    assert store.rollup_embeddings["S4"]["content_hash"] == content_hash("summary 4")


def test_upsert_failure_marks_batch_failed():
    clock = Clock()
    store = FakeStore(clock)
    for index in range(3):
        clock.advance(minutes=1)
        store.add_review("S", f"r{index}", body=f"body {index}")
    store.fail("upsert_review_embeddings")
    synchronizer, errors = _synchronizer(store, clock, FakeEmbeddingClient())
    coordinator = LockCoordinator(store, "runner", make_config())
    claimed = coordinator.claim_jobs(store.select_embedding_jobs(10, clock()), clock())

    counts = synchronizer.sync_review_jobs(claimed, coordinator)

    assert counts.picked == 3
    assert counts.failed == 3
    assert {job["status"] for job in store.jobs.values()} == {"failed"}
    assert errors.errors[0].kind == "store"


def test_embedding_text_is_capped_before_hashing():
    clock = Clock()
    store = FakeStore(clock)
    embedder = FakeEmbeddingClient()
    synchronizer, _ = _synchronizer(store, clock, embedder, max_embed_chars=100)

    synchronizer.sync_rollups([("S", "x" * 150)])

    assert embedder.calls == [["x" * 100 + "…"]]
    assert store.rollup_embeddings["S"]["content_hash"] == content_hash("x" * 100 + "…")
