import threading

import pytest
from conftest import make_event, make_participation, make_user
from errors import NotFound, RebuildError, TransientIOFailure


def summary_for(store, user_id):
    return store.user_registrations.get(user_id)


def test_event_deletion_cascade_then_rebuild(store, integrity, aggregator):
    make_user(store, 5)
    make_event(store, 1)
    make_participation(store, 10, user_id=5, event_id=1)

    store.events.remove(1)
    removed = integrity.purge_participations_of_event(1)
    aggregator.rebuild()

    assert removed == [10]
    with pytest.raises(NotFound):
        store.participations.get(10)
    assert summary_for(store, 5)["totalRegistrations"] == 0
    assert summary_for(store, 5)["registeredEvents"] == []


def test_purge_of_event_leaves_other_events_alone(store, integrity):
    make_event(store, 1)
    make_event(store, 2)
    make_participation(store, 10, 5, 1)
    make_participation(store, 11, 6, 1)
    make_participation(store, 12, 5, 2)

    store.events.remove(1)
    integrity.purge_participations_of_event(1)

    assert [p["id"] for p in store.participations.list()] == [12]


def test_null_event_id_is_orphaned(store, integrity):
    make_event(store, 1)
    make_participation(store, 11, 5, None)
    make_participation(store, 12, 5, 1)

    assert integrity.purge_all_orphans() == [11]
    assert [p["id"] for p in store.participations.list()] == [12]


def test_missing_event_id_field_is_orphaned(store, integrity):
    store.participations.insert({"id": 13, "userId": 5, "status": "Pending", "registrationDate": "2024-01-01"})

    assert integrity.purge_all_orphans() == [13]


def test_unknown_event_is_orphaned(store, integrity):
    make_event(store, 1)
    make_participation(store, 10, 5, 99)

    assert integrity.purge_all_orphans() == [10]


def test_sweep_is_idempotent(store, integrity):
    make_event(store, 1)
    make_participation(store, 10, 5, 1)
    make_participation(store, 11, 5, None)
    make_participation(store, 12, 5, 7)

    assert sorted(integrity.purge_all_orphans()) == [11, 12]
    assert integrity.purge_all_orphans() == []
    assert [p["id"] for p in store.participations.list()] == [10]


def test_event_id_zero_is_a_real_reference(store, integrity, aggregator):
    make_user(store, 5)
    make_event(store, 0, title="Zero")
    make_participation(store, 10, 5, 0)

    assert integrity.purge_all_orphans() == []
    aggregator.rebuild()
    assert summary_for(store, 5)["registeredEvents"][0]["eventTitle"] == "Zero"


def test_sweep_continues_after_a_failed_removal(store, integrity, monkeypatch):
    for pid in range(1, 6):
        make_participation(store, pid, 5, None)
    original_remove = store.participations.remove

    def flaky_remove(record_id):
        if record_id == 3:
            raise TransientIOFailure("store unreachable")
        original_remove(record_id)

    monkeypatch.setattr(store.participations, "remove", flaky_remove)
    assert integrity.purge_all_orphans() == [1, 2, 4, 5]
    assert [p["id"] for p in store.participations.list()] == [3]

    monkeypatch.setattr(store.participations, "remove", original_remove)
    assert integrity.purge_all_orphans() == [3]


def test_concurrently_removed_participation_counts_as_clean(store, integrity, monkeypatch):
    make_participation(store, 1, 5, None)
    make_participation(store, 2, 5, None)
    original_remove = store.participations.remove

    def remove_racing_another_writer(record_id):
        if record_id == 1:
            original_remove(record_id)
        original_remove(record_id)

    monkeypatch.setattr(store.participations, "remove", remove_racing_another_writer)
    assert integrity.purge_all_orphans() == [2]
    assert store.participations.list() == []


def test_unreadable_store_skips_sweep(store, integrity, monkeypatch):
    def unreachable(**filters):
        raise TransientIOFailure("down")

    monkeypatch.setattr(store.participations, "list", unreachable)
    assert integrity.purge_all_orphans() == []
    assert integrity.purge_participations_of_event(1) == []


def test_summary_keeps_attendance_only_for_registered(store, aggregator):
    make_user(store, 7)
    make_event(store, 1, title="Workshop A")
    make_event(store, 2, title="Meetup B")
    make_participation(store, 20, 7, 1, status="Registered", attendance="Attended")
    make_participation(store, 21, 7, 2, status="Pending")

    aggregator.rebuild()
    summary = summary_for(store, 7)

    assert summary["totalRegistrations"] == 2
    registered, pending = summary["registeredEvents"]
    assert registered["attendance"] == "Attended"
    assert registered["eventTitle"] == "Workshop A"
    assert "attendance" not in pending


def test_stale_attendance_on_pending_is_suppressed(store, aggregator):
    make_user(store, 7)
    make_event(store, 1)
    make_participation(store, 20, 7, 1, status="Assigned", attendance="Completed")

    aggregator.rebuild()

    assert "attendance" not in summary_for(store, 7)["registeredEvents"][0]


def test_summary_covers_every_regular_user_and_skips_admins(store, aggregator):
    make_user(store, 1, role="admin")
    make_user(store, 2)
    make_user(store, 3)
    make_event(store, 1)
    make_participation(store, 10, 2, 1)
    make_participation(store, 11, 1, 1)

    summaries = aggregator.rebuild()

    assert sorted(s["userId"] for s in summaries) == [2, 3]
    assert summary_for(store, 2)["totalRegistrations"] == 1
    assert summary_for(store, 3)["totalRegistrations"] == 0
    with pytest.raises(NotFound):
        summary_for(store, 1)


def test_unresolved_event_is_dropped_from_summary(store, aggregator):
    make_user(store, 2)
    make_event(store, 1)
    make_participation(store, 10, 2, 1)
    make_participation(store, 11, 2, 42)

    aggregator.rebuild()

    assert summary_for(store, 2)["totalRegistrations"] == 1


def test_duplicate_participations_are_all_counted(store, aggregator):
    make_user(store, 2)
    make_event(store, 1)
    make_participation(store, 10, 2, 1)
    make_participation(store, 11, 2, 1, registration_date="2024-02-01")

    aggregator.rebuild()

    assert summary_for(store, 2)["totalRegistrations"] == 2


def test_rebuild_replaces_the_whole_summary(store, aggregator):
    make_user(store, 2)
    make_user(store, 3)
    aggregator.rebuild()

    store.users.remove(3)
    aggregator.rebuild()

    assert [s["userId"] for s in store.user_registrations.list()] == [2]


def test_rebuild_is_idempotent(store, aggregator):
    make_user(store, 2)
    make_event(store, 1)
    make_participation(store, 10, 2, 1, attendance="Completed")

    first = aggregator.rebuild()
    second = aggregator.rebuild()

    assert first == second == store.user_registrations.list()


def test_rebuild_fails_when_sources_are_unreadable(store, aggregator, monkeypatch):
    def unreachable(**filters):
        raise TransientIOFailure("down")

    monkeypatch.setattr(store.users, "list", unreachable)
    with pytest.raises(RebuildError):
        aggregator.rebuild()


def test_leftover_participation_stays_orphaned_after_new_event(store, integrity, aggregator, monkeypatch):
    make_user(store, 5)
    event = store.events.insert({"title": "Old", "capacity": 10})
    make_participation(store, 10, 5, event["id"])
    store.events.remove(event["id"])

    def unreachable(record_id):
        raise TransientIOFailure("store unreachable")

    monkeypatch.setattr(store.participations, "remove", unreachable)
    assert integrity.purge_participations_of_event(event["id"]) == []
    monkeypatch.undo()

    newer = store.events.insert({"title": "Brand New", "capacity": 10})
    assert newer["id"] != event["id"]
    assert integrity.purge_all_orphans() == [10]
    aggregator.rebuild()
    assert summary_for(store, 5)["registeredEvents"] == []


def test_slow_rebuild_cannot_overwrite_a_newer_one(store, aggregator, monkeypatch):
    make_user(store, 5)
    make_event(store, 1)
    sources_read = threading.Event()
    release = threading.Event()
    original_compute = aggregator.compute
    calls = []

    def stalled_compute():
        result = original_compute()
        calls.append(result)
        if len(calls) == 1:
            sources_read.set()
            release.wait(timeout=5)
        return result

    monkeypatch.setattr(aggregator, "compute", stalled_compute)
    slow = threading.Thread(target=aggregator.rebuild)
    slow.start()
    assert sources_read.wait(timeout=5)

    make_participation(store, 10, 5, 1)
    fast = threading.Thread(target=aggregator.rebuild)
    fast.start()
    fast.join(timeout=0.5)
    release.set()
    slow.join(timeout=5)
    fast.join(timeout=5)

    assert store.participations.count(userId=5) == 1
    assert summary_for(store, 5)["totalRegistrations"] == 1
