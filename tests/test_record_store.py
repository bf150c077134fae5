from __future__ import annotations

import json
from datetime import timedelta

import pytest

from reportstore.errors import AccessDenied, InvalidTransition, RecordNotFound, TransientStoreError, ValidationError
from reportstore.object_storage import InMemoryObjectStorage
from reportstore.record_store import AnalysisRecordStore, latest_per_key


class FlakyStorage(InMemoryObjectStorage):
    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.failing_keys: set[str] = set()

    def get_object(self, *, url: str) -> bytes:
        if any(f"/{key}#" in url for key in self.failing_keys):
            raise TransientStoreError("simulated outage")
        return super().get_object(url=url)


def _put_raw(store: AnalysisRecordStore, *, key: str, body: dict) -> None:
    store.storage.put_object(key=key, content_bytes=json.dumps(body).encode("utf-8"))


def test_create_then_get_returns_processing_record(store):
    created = store.create(owner="1", request_id="r1", initial_fields={"company_name": "Acme"})
    assert created.id == "req_r1"

    record = store.get(owner="1", id="req_r1")
    assert record is not None
    assert record.is_processing
    assert record.to_json_dict()["processing"] is True
    assert record.payload["company_name"] == "Acme"


def test_create_twice_keeps_one_logical_record(store):
    first = store.create(owner="1", request_id="r1")
    second = store.create(owner="1", request_id="r1")
    assert first.id == second.id
    assert [r.id for r in store.get_all(owner="1")] == ["req_r1"]


def test_create_ignores_header_fields_in_initial_fields(store):
    store.create(owner="1", request_id="r1", initial_fields={"owner": "2", "user_id": "3", "processed": True})
    record = store.get(owner="1", id="req_r1")
    assert record.owner == "1"
    assert record.is_processing
    assert "user_id" not in record.payload


def test_other_owner_cannot_read_record(store):
    store.create(owner="1", request_id="r1")
    assert store.get(owner="2", id="req_r1") is None
    assert store.get_all(owner="2") == []
    with pytest.raises(RecordNotFound):
        store.require(owner="2", id="req_r1")


def test_tenant_prefix_does_not_match_longer_owner(store):
    store.create(owner="1", request_id="a")
    store.create(owner="10", request_id="b")
    assert [r.id for r in store.get_all(owner="1")] == ["req_a"]
    assert [r.id for r in store.get_all(owner="10")] == ["req_b"]
    assert store.get(owner="1", id="req_b") is None


def test_record_id_prefix_does_not_match_longer_id(store):
    store.create(owner="1", request_id="r10", initial_fields={"company_symbol": "TEN"})
    assert store.get(owner="1", id="req_r1") is None

    store.create(owner="1", request_id="r1", initial_fields={"company_symbol": "ONE"})
    assert store.get(owner="1", id="req_r1").payload["company_symbol"] == "ONE"

    assert store.delete(owner="1", id="req_r1") is True
    assert store.get(owner="1", id="req_r10") is not None


def test_body_owner_mismatch_is_reported_as_absent(store):
    key = store.record_key(owner="1", record_id="req_x")
    _put_raw(store, key=key, body={"id": "req_x", "owner": "2", "createdAt": "2025-01-01T00:00:00+00:00"})

    assert store.get(owner="1", id="req_x") is None
    listing = store.get_all_with_failures(owner="1")
    assert listing.records == []
    assert [f.error for f in listing.failures] == ["owner mismatch"]


def test_updates_collapse_to_latest_version(store):
    store.create(owner="1", request_id="r1")
    for n in range(3):
        store.update(owner="1", id="req_r1", fields={"revision": n})

    records = store.get_all(owner="1")
    assert len(records) == 1
    assert records[0].payload["revision"] == 2
    versions = list(store.storage.list_objects(prefix=store.tenant_prefix("1")))
    assert len(versions) == 4


def test_latest_per_key_breaks_timestamp_ties_by_url(storage):
    a = storage.put_object(key="k", content_bytes=b"1")
    b = storage.put_object(key="k", content_bytes=b"2")
    assert a.uploaded_at == b.uploaded_at
    assert latest_per_key([b, a])["k"] == b


def test_latest_version_wins_even_when_listed_first(store, clock):
    store.create(owner="1", request_id="r1")
    clock.advance(seconds=5)
    store.mark_completed(owner="1", id="req_r1", payload={"summary": "done"})
    record = store.get(owner="1", id="req_r1")
    assert record.is_completed
    assert record.payload["summary"] == "done"


def test_update_cannot_change_identity_fields(store):
    store.create(owner="1", request_id="r1")
    updated = store.update(
        owner="1",
        id="req_r1",
        fields={"owner": "2", "id": "req_other", "createdAt": "2000-01-01T00:00:00+00:00", "note": "kept"},
    )
    assert updated.owner == "1"
    assert updated.id == "req_r1"
    record = store.get(owner="1", id="req_r1")
    assert record.owner == "1"
    assert record.payload["note"] == "kept"
    assert store.get(owner="2", id="req_r1") is None


def test_update_missing_record_raises_not_found(store):
    with pytest.raises(RecordNotFound):
        store.update(owner="1", id="req_missing", fields={"note": "x"})


def test_error_update_replaces_completed_lifecycle(store):
    store.create(owner="1", request_id="r1")
    store.update(owner="1", id="req_r1", fields={"processed": True, "processing": False})
    assert store.get(owner="1", id="req_r1").is_completed

    store.update(owner="1", id="req_r1", fields={"error": "x"})
    record = store.get(owner="1", id="req_r1")
    body = record.to_json_dict()
    assert record.is_failed
    assert body["error"] == "x"
    assert body["processed"] is False
    assert body["processing"] is False


def test_mark_completed_only_from_processing(store):
    store.create(owner="1", request_id="r1")
    completed = store.mark_completed(owner="1", id="req_r1", payload={"summary": "ok", "owner": "9"})
    assert completed.is_completed
    assert completed.owner == "1"

    with pytest.raises(InvalidTransition):
        store.mark_completed(owner="1", id="req_r1")
    with pytest.raises(InvalidTransition):
        store.mark_failed(owner="1", id="req_r1", error="late failure")


def test_mark_failed_requires_error_message(store):
    store.create(owner="1", request_id="r1")
    with pytest.raises(ValidationError):
        store.mark_failed(owner="1", id="req_r1", error="  ")
    failed = store.mark_failed(owner="1", id="req_r1", error="parser crashed")
    assert failed.error == "parser crashed"
    with pytest.raises(InvalidTransition):
        store.mark_completed(owner="1", id="req_r1")


def test_transition_on_missing_record_raises_not_found(store):
    with pytest.raises(RecordNotFound):
        store.mark_completed(owner="1", id="req_nope")


def test_delete_removes_every_version(store):
    store.create(owner="1", request_id="r1")
    store.update(owner="1", id="req_r1", fields={"revision": 1})
    store.mark_completed(owner="1", id="req_r1")

    assert store.delete(owner="1", id="req_r1") is True
    assert store.get(owner="1", id="req_r1") is None
    assert store.get_all(owner="1") == []
    assert list(store.storage.list_objects(prefix=store.tenant_prefix("1"))) == []
    assert store.delete(owner="1", id="req_r1") is False


def test_deleted_record_stays_gone_with_stale_listing(clock):
    storage = InMemoryObjectStorage(clock=clock, stale_listing=True)
    store = AnalysisRecordStore(storage=storage, clock=clock)
    store.create(owner="1", request_id="r1")
    store.update(owner="1", id="req_r1", fields={"revision": 1})
    store.delete(owner="1", id="req_r1")

    # the listing still reports both versions, their bodies are gone
    assert len(list(storage.list_objects(prefix=store.tenant_prefix("1")))) == 2
    assert store.get(owner="1", id="req_r1") is None
    listing = store.get_all_with_failures(owner="1")
    assert listing.records == []
    assert len(listing.failures) == 1

    storage.settle()
    assert store.get_all_with_failures(owner="1").failures == []


def test_other_owner_cannot_delete(store):
    store.create(owner="1", request_id="r1")
    assert store.delete(owner="2", id="req_r1") is False
    assert store.get(owner="1", id="req_r1") is not None


def test_delete_stale_removes_only_old_processing_records(store, clock):
    old = clock() - timedelta(minutes=45)
    store.create(owner="1", request_id="old", created_at=old)
    store.create(owner="1", request_id="fresh", created_at=clock() - timedelta(minutes=5))
    store.create(owner="1", request_id="done", created_at=old)
    store.mark_completed(owner="1", id="req_done")
    store.create(owner="2", request_id="other", created_at=old)

    assert store.delete_stale(owner="1") == 1
    assert store.delete_stale(owner="1") == 0
    assert sorted(r.id for r in store.get_all(owner="1")) == ["req_done", "req_fresh"]
    assert store.get(owner="2", id="req_other") is not None


def test_delete_stale_honours_explicit_threshold(store, clock):
    store.create(owner="1", request_id="r1", created_at=clock() - timedelta(minutes=12))
    assert store.find_stale(owner="1") == []
    assert [r.id for r in store.find_stale(owner="1", max_age_minutes=10)] == ["req_r1"]
    assert store.delete_stale(owner="1", max_age_minutes=10) == 1


def test_clear_user_only_touches_that_tenant(store):
    store.create(owner="1", request_id="a")
    store.create(owner="1", request_id="b")
    store.create(owner="2", request_id="c")
    assert store.clear_user(owner="1") == 2
    assert store.get_all(owner="1") == []
    assert len(store.get_all(owner="2")) == 1


def test_listing_skips_unreadable_records(clock):
    storage = FlakyStorage(clock=clock)
    store = AnalysisRecordStore(storage=storage, clock=clock)
    store.create(owner="1", request_id="good")
    store.create(owner="1", request_id="bad")
    storage.failing_keys.add(store.record_key(owner="1", record_id="req_bad"))

    listing = store.get_all_with_failures(owner="1")
    assert [r.id for r in listing.records] == ["req_good"]
    assert [f.obj.key for f in listing.failures] == [store.record_key(owner="1", record_id="req_bad")]
    assert listing.failures[0].error == "simulated outage"

    with pytest.raises(TransientStoreError):
        store.get(owner="1", id="req_bad")


def test_listing_skips_corrupt_bodies(store):
    store.create(owner="1", request_id="good")
    store.storage.put_object(key=store.record_key(owner="1", record_id="req_bad"), content_bytes=b"{oops")
    listing = store.get_all_with_failures(owner="1")
    assert [r.id for r in listing.records] == ["req_good"]
    assert len(listing.failures) == 1
    assert store.get(owner="1", id="req_bad") is None


def test_get_all_is_newest_first(store, clock):
    store.create(owner="1", request_id="older", created_at=clock() - timedelta(minutes=3))
    store.create(owner="1", request_id="newer")
    assert [r.id for r in store.get_all(owner="1")] == ["req_newer", "req_older"]


def test_legacy_body_under_tenant_prefix_is_readable(store):
    _put_raw(
        store,
        key=store.record_key(owner="1", record_id="req_legacy"),
        body={"id": "req_legacy", "user_id": "1", "created_at": "2024-01-01T00:00:00", "company_symbol": "LGC"},
    )
    record = store.get(owner="1", id="req_legacy")
    assert record is not None
    assert record.is_completed
    assert [r.id for r in store.get_by_company(owner="1", symbol="lgc").records] == ["req_legacy"]


def test_stats_and_status_summary(store, clock):
    store.create(owner="1", request_id="running")
    store.create(owner="1", request_id="stuck", created_at=clock() - timedelta(hours=2))
    store.create(owner="1", request_id="ok")
    store.mark_completed(owner="1", id="req_ok")
    store.create(owner="1", request_id="bad")
    store.mark_failed(owner="1", id="req_bad", error="boom")

    stats = store.stats(owner="1")
    assert stats.as_dict() == {"total": 4, "processing": 1, "completed": 1, "failed": 1, "stale": 1}

    summary = store.status_summary(owner="1")
    assert summary["processingCount"] == 1
    assert summary["totalCount"] == 4
    assert [s["id"] for s in summary["stale"]] == ["req_stuck"]
    assert summary["errors"][0]["error"] == "boom"


@pytest.mark.parametrize("owner", ["", "  ", "../1", "a/b", None])
def test_invalid_owner_is_rejected(store, owner):
    with pytest.raises(ValidationError):
        store.get(owner=owner, id="req_r1")


@pytest.mark.parametrize("request_id", ["", "../x", "a/b", "a#b"])
def test_invalid_request_id_is_rejected(store, request_id):
    with pytest.raises(ValidationError):
        store.create(owner="1", request_id=request_id)


def test_writes_to_foreign_body_are_denied(store):
    key = store.record_key(owner="1", record_id="req_x")
    body = {"id": "req_x", "owner": "2", "createdAt": "2025-01-01T00:00:00+00:00", "processing": True}
    _put_raw(store, key=key, body=body)

    with pytest.raises(AccessDenied):
        store.update(owner="1", id="req_x", fields={"note": "x"})
    with pytest.raises(RecordNotFound):
        store.mark_completed(owner="1", id="req_x")


def test_clear_user_removes_unreadable_objects_too(store):
    store.create(owner="1", request_id="a")
    store.update(owner="1", id="req_a", fields={"note": "x"})
    store.storage.put_object(key=store.record_key(owner="1", record_id="req_bad"), content_bytes=b"{oops")

    assert store.clear_user(owner="1") == 2
    assert list(store.storage.list_objects(prefix=store.tenant_prefix("1"))) == []
