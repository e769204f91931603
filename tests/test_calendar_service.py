from datetime import timedelta

import pytest

from conftest import FakeMonitor, remote_event, utc
from services.calendar_service import CalendarService
from services.remote_types import RemoteErrorKind
from services.sync_engine import SyncEngine


START = utc(2026, 3, 2, 9)


@pytest.fixture()
def service(client, store, monitor):
    return CalendarService(client, store, monitor)


def _input(summary="Planning", **extra):
    data = {"summary": summary, "start": START, "end": START + timedelta(hours=1), "calendar_id": "cal-1"}
    data.update(extra)
    return data


def test_create_online_goes_straight_to_remote(service, client, store):
    event = service.create_event(_input(attendees=["ann@example.com"]))

    assert event.remote_id == "remote-1"
    assert event.local_only is False
    assert store.queue_count() == 0
    assert [a.email for a in store.get_attendees(event.id)] == ["ann@example.com"]


def test_create_offline_is_queued(store, client):
    service = CalendarService(client, store, FakeMonitor(online=False))

    event = service.create_event(_input())

    assert event.local_only is True
    assert event.pending_action == "create"
    assert client.calls == []
    [entry] = store.list_queue()
    assert (entry.event_ref, entry.action, entry.calendar_id) == (event.id, "create", "cal-1")


def test_create_falls_back_when_remote_fails(service, client, store, monitor):
    client.failures[("create_event", "Planning")] = RemoteErrorKind.NETWORK

    event = service.create_event(_input())

    assert event.local_only is True
    assert store.queue_count() == 1
    assert monitor.reports == ["offline"]


def test_offline_edit_of_unsynced_event_reaches_remote_on_drain(store, client):
    offline = FakeMonitor(online=False)
    service = CalendarService(client, store, offline)
    event = service.create_event(_input())
    service.update_event(event.id, {"summary": "Planning (v2)"})
    assert store.queue_count() == 1

    offline.is_online = True
    SyncEngine(client, store, offline).drain_queue()

    assert [c[2] for c in client.calls if c[0] == "create_event"] == ["Planning (v2)"]
    assert store.get_event(event.id).summary == "Planning (v2)"


def test_update_online_uses_remote_result(service, client, store):
    remote = remote_event("r1", START, calendar_id="cal-1")
    client.events["r1"] = remote
    local_id = store.upsert_event(remote)

    updated = service.update_event(local_id, {"summary": "Renamed"})

    assert updated.summary == "Renamed"
    assert updated.etag == "etag-r1+"
    assert store.queue_count() == 0


def test_update_offline_marks_pending_and_queues(store, client):
    local_id = store.upsert_event(remote_event("r1", START, calendar_id="cal-1"))
    service = CalendarService(client, store, FakeMonitor(online=False))

    updated = service.update_event(local_id, {"summary": "Renamed"})

    assert updated.summary == "Renamed"
    assert updated.pending_action == "update"
    [entry] = store.list_queue()
    assert entry.payload == {"summary": "Renamed", "remote_id": "r1"}


def test_update_unknown_event_raises(service):
    with pytest.raises(ValueError):
        service.update_event("missing", {"summary": "x"})


def test_delete_online_removes_both_sides(service, client, store):
    remote = remote_event("r1", START, calendar_id="cal-1")
    client.events["r1"] = remote
    local_id = store.upsert_event(remote)

    assert service.delete_event(local_id) is True
    assert "r1" not in client.events
    assert store.get_event(local_id) is None


def test_delete_offline_queues_remote_delete(store, client):
    local_id = store.upsert_event(remote_event("r1", START, calendar_id="cal-1"))
    service = CalendarService(client, store, FakeMonitor(online=False))

    service.delete_event(local_id)

    assert store.get_event(local_id).pending_action == "delete"
    [entry] = store.list_queue()
    assert (entry.action, entry.payload) == ("delete", {"remote_id": "r1"})


def test_delete_of_unsynced_event_drops_queued_create(store, client):
    service = CalendarService(client, store, FakeMonitor(online=False))
    event = service.create_event(_input())

    service.delete_event(event.id)

    assert store.get_event(event.id) is None
    assert store.queue_count() == 0


def test_rsvp_online_refetches(service, client, store):
    remote = remote_event("r1", START, calendar_id="cal-1")
    client.events["r1"] = remote
    local_id = store.upsert_event(remote)

    event = service.rsvp(local_id, "declined")

    assert event.self_response == "declined"
    assert store.queue_count() == 0


def test_rsvp_offline_updates_locally_and_queues(store, client):
    local_id = store.upsert_event(remote_event("r1", START, calendar_id="cal-1"))
    service = CalendarService(client, store, FakeMonitor(online=False))

    event = service.rsvp(local_id, "tentative")

    assert event.self_response == "tentative"
    [entry] = store.list_queue()
    assert entry.payload == {"remote_id": "r1", "response": "tentative"}


def test_rsvp_rejects_unknown_response(service, store):
    local_id = store.upsert_event(remote_event("r1", START))
    with pytest.raises(ValueError):
        service.rsvp(local_id, "maybe")


def test_free_busy_degrades_to_empty(store, client, monitor):
    service = CalendarService(client, store, monitor)
    assert service.get_free_busy(["cal-1"], START, START + timedelta(hours=8)) == {
        "cal-1": {"busy": [], "errors": []}
    }

    client.failures[("get_free_busy", None)] = RemoteErrorKind.NETWORK
    assert service.get_free_busy(["cal-1"], START, START + timedelta(hours=8)) == {}
    assert monitor.reports == ["offline"]

    offline = CalendarService(client, store, FakeMonitor(online=False))
    assert offline.get_free_busy(["cal-1"], START, START + timedelta(hours=8)) == {}
