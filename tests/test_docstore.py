from __future__ import annotations

from datetime import datetime

import pytest

from campusconnect.docstore import (
    SERVER_TIMESTAMP,
    DocumentNotFoundError,
    Query,
    StoreError,
    apply_updates,
    array_remove,
    array_union,
    increment,
)


def test_add_assigns_id_and_get_returns_copy(store):
    doc_id = store.add("events", {"title": "Open Mic", "rsvp": []})

    snapshot = store.get("events", doc_id)
    assert snapshot is not None
    assert snapshot.id == doc_id
    assert snapshot.get("title") == "Open Mic"

    snapshot.data["title"] = "Changed locally"
    assert store.get("events", doc_id).get("title") == "Open Mic"


def test_get_is_scoped_to_collection(store):
    doc_id = store.add("events", {"title": "Open Mic"})
    assert store.get("clubs", doc_id) is None


def test_transforms_apply_set_semantics_and_counters(store):
    doc_id = store.add("events", {"rsvp": ["a"], "current_attendees": 1})

    store.update(
        "events",
        doc_id,
        {"rsvp": array_union("a", "b"), "current_attendees": increment(1)},
    )
    data = store.get("events", doc_id).data
    assert data["rsvp"] == ["a", "b"]
    assert data["current_attendees"] == 2

    store.update(
        "events",
        doc_id,
        {"rsvp": array_remove("a", "b", "zzz"), "current_attendees": increment(-5, minimum=0)},
    )
    data = store.get("events", doc_id).data
    assert data["rsvp"] == []
    assert data["current_attendees"] == 0


def test_increment_on_missing_field_starts_from_zero():
    assert apply_updates({}, {"share_count": increment(2)}) == {"share_count": 2}


def test_server_timestamp_uses_write_time():
    now = datetime(2026, 1, 2, 3, 4, 5)
    result = apply_updates({"title": "x"}, {"updated_at": SERVER_TIMESTAMP}, now=now)
    assert result == {"title": "x", "updated_at": "2026-01-02T03:04:05"}


def test_update_missing_document_raises(store):
    with pytest.raises(DocumentNotFoundError):
        store.update("events", "missing", {"title": "nope"})


def test_delete_missing_document_is_noop(store):
    store.delete("events", "missing")


def test_id_collision_across_collections_is_rejected(store):
    store.set("events", "shared-id", {"title": "Event"})
    with pytest.raises(StoreError):
        store.set("clubs", "shared-id", {"name": "Club"})


def test_query_filters_orders_and_limits(store):
    store.set("events", "e1", {"title": "B", "event_date": "2026-05-02T10:00:00", "is_public": True})
    store.set("events", "e2", {"title": "A", "event_date": "2026-05-01T10:00:00", "is_public": True})
    store.set("events", "e3", {"title": "C", "event_date": None, "is_public": True})
    store.set("events", "e4", {"title": "Hidden", "event_date": "2026-04-01T10:00:00", "is_public": False})

    query = Query("events").where("is_public", "==", True).ordered("event_date")
    assert [s.id for s in store.query(query)] == ["e2", "e1", "e3"]
    assert [s.id for s in store.query(query.limited(1))] == ["e2"]

    newest_first = Query("events").ordered("event_date", descending=True)
    assert [s.id for s in store.query(newest_first)] == ["e1", "e2", "e4", "e3"]


def test_query_in_and_array_contains(store):
    store.set("events", "e1", {"tags": ["music", "outdoor"], "category": "arts"})
    store.set("events", "e2", {"tags": ["tech"], "category": "academic"})

    assert [s.id for s in store.query(Query("events").where("tags", "array_contains", "music"))] == ["e1"]
    in_query = Query("events").where("category", "in", ["academic", "sports"])
    assert [s.id for s in store.query(in_query)] == ["e2"]


def test_unknown_filter_operator_rejected():
    with pytest.raises(ValueError):
        Query("events").where("title", "like", "x")


def test_batch_commits_atomically(store):
    store.set("events", "e1", {"title": "Keep"})
    batch = store.batch()
    batch.set("events", "e2", {"title": "New"})
    batch.update("events", "missing", {"title": "boom"})

    with pytest.raises(DocumentNotFoundError):
        batch.commit()

    assert store.get("events", "e2") is None
    with pytest.raises(StoreError):
        batch.commit()


def test_batch_delete_matching_counts_removed_documents(store):
    store.set("activity_logs", "l1", {"event_id": "e1"})
    store.set("activity_logs", "l2", {"event_id": "e1"})
    store.set("activity_logs", "l3", {"event_id": "e2"})
    store.set("events", "e1", {"title": "Gone"})

    batch = store.batch()
    batch.delete("events", "e1")
    batch.delete("events", "never-existed")
    batch.delete_matching(Query("activity_logs").where("event_id", "==", "e1"))

    assert batch.commit() == [1, 0, 2]
    assert [s.id for s in store.query(Query("activity_logs"))] == ["l3"]


def test_subscribe_delivers_initial_and_change_snapshots(store):
    received: list[list[str]] = []
    query = Query("events").where("is_public", "==", True)

    unsubscribe = store.subscribe(query, lambda snaps: received.append([s.id for s in snaps]))
    store.set("events", "e1", {"is_public": True})
    store.set("clubs", "c1", {"name": "Chess"})
    store.set("events", "e2", {"is_public": False})
    unsubscribe()
    store.set("events", "e3", {"is_public": True})

    assert received == [[], ["e1"], ["e1"]]
    assert store.listener_count() == 0


def test_listener_errors_do_not_reach_writer(store):
    def broken(_snapshots):
        raise RuntimeError("listener bug")

    store.subscribe(Query("events"), broken)
    store.set("events", "e1", {"title": "Still written"})
    assert store.get("events", "e1").get("title") == "Still written"
