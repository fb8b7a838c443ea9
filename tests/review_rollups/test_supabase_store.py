from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from postgrest.exceptions import APIError

from src.functions.review_rollups.core.contracts.config import SupabaseSettings
from src.functions.review_rollups.core.contracts.errors import RowValidationError, StoreError
from src.functions.review_rollups.core.contracts.records import ReviewRef, WorkItem
from src.functions.review_rollups.core.integration.supabase_client import (
    SupabaseRollupStore,
    after_cursor_filter,
    selectable_job_filter,
)

NOW = datetime(2025, 4, 1, 9, 0, tzinfo=timezone.utc)
STALE = datetime(2025, 4, 1, 8, 45, tzinfo=timezone.utc)


class _Query:
    def __init__(self, client, *ops):
        self.client = client
        self.ops = [ops]
        client.queries.append(self)

    def __getattr__(self, name):
        def method(*args, **kwargs):
            self.ops.append((name, args, kwargs))
            return self

        return method

    def execute(self):
        if self.client.error is not None:
            raise self.client.error
        data = self.client.responses.pop(0) if self.client.responses else []
        return SimpleNamespace(data=data)

    def calls(self, name):
        return [op for op in self.ops if op[0] == name]


class _FakeSupabaseClient:
    def __init__(self, responses=None, error=None):
        self.responses = list(responses or [])
        self.error = error
        self.queries = []

    def table(self, name):
        return _Query(self, "table", name)

    def rpc(self, name, params):
        return _Query(self, "rpc", name, params)


def _store(**kwargs):
    client = _FakeSupabaseClient(**kwargs)
    settings = SupabaseSettings(url="https://example.supabase.co", key="service-role-key")
    return SupabaseRollupStore(settings, client=client), client


def test_select_dirty_subjects_filters_on_dirty_and_lock_age():
    store, client = _store(
        responses=[[{"subject_id": "S", "is_dirty": True, "summary_1000": None, "updated_at": "2025-04-01T08:00:00+00:00"}]]
    )

    records = store.select_dirty_subjects(5, STALE)

    query = client.queries[0]
    assert query.ops[0] == ("table", "subject_rollups")
    assert query.calls("eq") == [("eq", ("is_dirty", True), {})]
    assert query.calls("or_") == [
        ("or_", ('locked_at.is.null,locked_at.lt."2025-04-01T08:45:00+00:00"',), {})
    ]
    assert query.calls("order") == [("order", ("updated_at",), {})]
    assert query.calls("limit") == [("limit", (5,), {})]
    assert records[0].subject_id == "S"
    assert records[0].summary == ""


def test_selectable_job_filter_includes_stale_processing():
    assert selectable_job_filter(STALE) == (
        "status.in.(queued,failed),"
        'and(status.eq.processing,or(locked_at.is.null,locked_at.lt."2025-04-01T08:45:00+00:00"))'
    )


def test_after_cursor_filter_breaks_timestamp_ties_by_id():
    cursor = ReviewRef(id="abc", created_at=NOW)
    assert after_cursor_filter(cursor) == (
        'created_at.gt."2025-04-01T09:00:00+00:00",'
        'and(created_at.eq."2025-04-01T09:00:00+00:00",id.gt.abc)'
    )


def test_claim_embedding_jobs_is_a_conditional_update():
    row = {
        "review_id": "r1",
        "status": "processing",
        "attempt_count": 2,
        "locked_at": NOW.isoformat(),
        "locked_by": "runner",
        "updated_at": NOW.isoformat(),
    }
    store, client = _store(responses=[[row]])

    claimed = store.claim_embedding_jobs(["r1", "r2"], "runner", NOW, STALE)

    query = client.queries[0]
    (_, (payload,), _) = query.calls("update")[0]
    assert payload["status"] == "processing"
    assert payload["locked_by"] == "runner"
    assert query.calls("in_") == [("in_", ("review_id", ["r1", "r2"]), {})]
    assert query.calls("or_")[0][1][0] == selectable_job_filter(STALE)
    assert [item.review_id for item in claimed] == ["r1"]
    assert claimed[0].attempt_count == 2


def test_compare_and_set_cursor_matches_null_cursor_with_is():
    store, client = _store(responses=[[{"subject_id": "S"}], []])

    assert store.compare_and_set_cursor(
        "S", expected_cursor_id=None, new_cursor_id="r5", now=NOW, summary="new"
    ) is True
    assert store.compare_and_set_cursor("S", expected_cursor_id="r5", new_cursor_id="r6", now=NOW) is False

    first, second = client.queries
    assert first.calls("is_") == [("is_", ("last_processed_review_id", "null"), {})]
    assert first.calls("update")[0][1][0]["summary_1000"] == "new"
    assert ("eq", ("last_processed_review_id", "r5"), {}) in second.calls("eq")
    assert "summary_1000" not in second.calls("update")[0][1][0]


def test_resolve_embedding_job_increments_attempts_and_checks_owner():
    store, client = _store(responses=[[{"review_id": "r1"}]])
    item = WorkItem(review_id="r1", status="processing", attempt_count=3, locked_at=NOW, locked_by="runner")

    assert store.resolve_embedding_job(item, status="failed", runner="runner", now=NOW, error="boom")

    query = client.queries[0]
    payload = query.calls("update")[0][1][0]
    assert payload["attempt_count"] == 4
    assert payload["last_error"] == "boom"
    assert payload["locked_at"] is None
    assert ("eq", ("locked_by", "runner"), {}) in query.calls("eq")


def test_ensure_embedding_jobs_ignores_existing_rows():
    store, client = _store()

    store.ensure_embedding_jobs(["r2", "r1", "r2"], NOW)

    (_, (rows,), kwargs) = client.queries[0].calls("upsert")[0]
    assert [row["review_id"] for row in rows] == ["r1", "r2"]
    assert kwargs == {"on_conflict": "review_id", "ignore_duplicates": True}


def test_stats_rpc_without_rows_means_empty_subject():
    store, client = _store(responses=[[]])

    stats = store.fetch_subject_stats("S")

    assert client.queries[0].ops[0] == ("rpc", "subject_review_stats", {"p_subject_id": "S"})
    assert stats.is_empty
    assert stats.averages["satisfaction"] is None


def test_stats_rpc_rejects_inconsistent_row():
    store, _ = _store(responses=[[{"review_count": 3, "latest_review_id": None}]])

    with pytest.raises(RowValidationError):
        store.fetch_subject_stats("S")


def test_postgrest_errors_become_store_errors():
    error = APIError({"message": "permission denied", "code": "42501", "details": None, "hint": None})
    store, _ = _store(error=error)

    with pytest.raises(StoreError) as excinfo:
        store.fetch_bodies(["r1"])

    assert excinfo.value.code == "42501"
    assert excinfo.value.stage == "fetch_bodies"


def test_fetch_bodies_is_chunked():
    store, client = _store(responses=[[{"review_id": "r1", "body_main": "a"}], [{"review_id": "r3", "body_main": None}]])
    store.settings = store.settings.model_copy(update={"id_chunk_size": 2})

    bodies = store.fetch_bodies(["r1", "r2", "r3"])

    assert len(client.queries) == 2
    assert bodies == {"r1": "a", "r3": ""}


def test_release_subject_only_matches_the_lock_owner():
    store, client = _store(responses=[[]])

    assert store.release_subject("S", runner="runner", is_dirty=False, now=NOW) is False

    query = client.queries[0]
    payload = query.calls("update")[0][1][0]
    assert payload["is_dirty"] is False
    assert payload["locked_by"] is None
    assert ("eq", ("locked_by", "runner"), {}) in query.calls("eq")


def test_reviews_are_bounded_by_the_stats_snapshot():
    store, client = _store(responses=[[]])
    cursor = ReviewRef(id="r1", created_at=STALE)
    upper = ReviewRef(id="r9", created_at=NOW)

    store.fetch_reviews_after("S", cursor, 31, upper=upper)

    (window,) = client.queries[0].calls("or_")[0][1]
    assert window == (
        'and(or(created_at.gt."2025-04-01T08:45:00+00:00",'
        'and(created_at.eq."2025-04-01T08:45:00+00:00",id.gt.r1)),'
        'or(created_at.lt."2025-04-01T09:00:00+00:00",'
        'and(created_at.eq."2025-04-01T09:00:00+00:00",id.lte.r9)))'
    )
