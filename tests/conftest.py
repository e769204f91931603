import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# keep the default database, token and logs out of the real user data dir
os.environ.setdefault("CALMIRROR_DATA_DIR", tempfile.mkdtemp(prefix="calmirror-tests-"))

import pytest
from sqlmodel import Session

from models.calendar import Calendar
from services.local_store import LocalStore
from services.remote_types import EventPage, RemoteAttendee, RemoteCalendarError, RemoteErrorKind, RemoteEvent
from storage.db import init_db, make_engine


@pytest.fixture()
def session_factory():
    engine = make_engine("sqlite://")
    init_db(engine)

    def factory():
        return Session(engine, expire_on_commit=False)

    return factory


@pytest.fixture()
def store(session_factory):
    return LocalStore(session_factory=session_factory)


def remote_event(remote_id, start, *, calendar_id="cal-1", minutes=60, **fields):
    return RemoteEvent(
        remote_id=remote_id,
        calendar_id=calendar_id,
        start=start,
        end=start + timedelta(minutes=minutes),
        summary=fields.pop("summary", f"Event {remote_id}"),
        etag=fields.pop("etag", f"etag-{remote_id}"),
        **fields,
    )


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


class FakeMonitor:
    def __init__(self, online=True):
        self.is_online = online
        self.reports = []
        self.listeners = []

    def report_online(self):
        self.reports.append("online")

    def report_offline(self):
        self.reports.append("offline")

    def on_online(self, callback):
        self.listeners.append(callback)

    def step(self, now=None):
        return None


class FakeRemoteClient:
    """In-memory remote calendar.

    ``failures`` maps ``(method, key)`` to a :class:`RemoteErrorKind` raised on
    every matching call until the entry is removed.
    """

    def __init__(self, calendars=None, authorized=True):
        self.authorized = authorized
        self.calendars = calendars if calendars is not None else [
            Calendar(id="cal-1", summary="Work", primary_calendar=True)
        ]
        self.events = {}
        self.pages = {}
        self.token_pages = {}
        self.failures = {}
        self.calls = []
        self._next_id = 1

    def _maybe_fail(self, method, key):
        kind = self.failures.get((method, key))
        if kind is not None:
            raise RemoteCalendarError(kind, f"{method} {key} failed")

    def is_authorized(self):
        return self.authorized

    def list_calendars(self):
        self.calls.append(("list_calendars",))
        self._maybe_fail("list_calendars", None)
        return list(self.calendars)

    def list_events(self, calendar_id, *, time_min=None, time_max=None, sync_token=None, single_events=True):
        self.calls.append(("list_events", calendar_id, sync_token))
        if sync_token:
            self._maybe_fail("list_events_token", calendar_id)
            return self.token_pages.get(calendar_id, EventPage(events=[], next_sync_token=sync_token))
        self._maybe_fail("list_events", calendar_id)
        return self.pages.get(calendar_id, EventPage(events=[], next_sync_token=f"token-{calendar_id}"))

    def get_event(self, calendar_id, event_id):
        self.calls.append(("get_event", calendar_id, event_id))
        self._maybe_fail("get_event", event_id)
        return self.events[event_id]

    def create_event(self, calendar_id, data):
        self.calls.append(("create_event", calendar_id, data.get("summary")))
        self._maybe_fail("create_event", data.get("summary"))
        remote_id = f"remote-{self._next_id}"
        self._next_id += 1
        start = data.get("start")
        if isinstance(start, str):
            start = datetime.fromisoformat(start)
        event = remote_event(
            remote_id,
            start,
            calendar_id=calendar_id,
            summary=data.get("summary") or "",
            attendees=[RemoteAttendee(email=email) for email in data.get("attendees") or []],
        )
        self.events[remote_id] = event
        return event

    def update_event(self, calendar_id, event_id, updates):
        self.calls.append(("update_event", calendar_id, event_id))
        self._maybe_fail("update_event", event_id)
        event = self.events[event_id]
        if updates.get("summary") is not None:
            event.summary = updates["summary"]
        event.etag = f"{event.etag}+"
        return event

    def delete_event(self, calendar_id, event_id):
        self.calls.append(("delete_event", calendar_id, event_id))
        self._maybe_fail("delete_event", event_id)
        if event_id not in self.events:
            raise RemoteCalendarError(RemoteErrorKind.NOT_FOUND, "gone", 404)
        del self.events[event_id]

    def rsvp(self, calendar_id, event_id, response):
        self.calls.append(("rsvp", calendar_id, event_id, response))
        self._maybe_fail("rsvp", event_id)
        self.events[event_id].self_response = response
        return None

    def get_free_busy(self, calendar_ids, time_min, time_max):
        self.calls.append(("get_free_busy", tuple(calendar_ids)))
        self._maybe_fail("get_free_busy", None)
        return {cid: {"busy": [], "errors": []} for cid in calendar_ids}


@pytest.fixture()
def monitor():
    return FakeMonitor()


@pytest.fixture()
def client():
    return FakeRemoteClient()
