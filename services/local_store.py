"""Durable local mirror of calendars, events, attendees and the mutation queue."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from sqlalchemy import delete, func, or_
from sqlmodel import Session, select

from core.settings import GOOGLE, SYNC
from models.calendar import Calendar
from models.event import PENDING_ACTIONS, Attendee, Event, new_local_id
from models.sync_queue import QUEUE_ACTIONS, SyncQueueItem
from services.remote_types import RemoteAttendee, RemoteEvent
from storage.db import get_session
from utils.datetime_utils import day_bounds, ensure_utc, midnight_utc, parse_date, parse_rfc3339, utc_now


logger = logging.getLogger("calmirror.store")

# fields owned by the remote provider; everything else on Event is local state
REMOTE_EVENT_FIELDS = (
    "calendar_id",
    "summary",
    "description",
    "location",
    "start",
    "end",
    "start_date",
    "end_date",
    "all_day",
    "time_zone",
    "status",
    "self_response",
    "organizer_email",
    "organizer_name",
    "is_organizer",
    "recurrence_rule",
    "recurring_event_id",
    "html_link",
    "hangout_link",
    "transparency",
    "visibility",
    "color_id",
    "etag",
)

REMOTE_CALENDAR_FIELDS = (
    "summary",
    "description",
    "color_id",
    "background_color",
    "foreground_color",
    "access_role",
    "primary_calendar",
    "time_zone",
)


def _json_default(value: Any):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def dumps(payload: Any) -> Optional[str]:
    if payload is None:
        return None
    return json.dumps(payload, ensure_ascii=False, default=_json_default)


def loads(payload: Optional[str]) -> Any:
    if not payload:
        return None
    try:
        return json.loads(payload)
    except json.JSONDecodeError:
        return None


@dataclass
class QueueEntry:
    id: int
    event_ref: str
    calendar_id: str
    action: str
    payload: Dict[str, Any]
    attempts: int
    last_error: Optional[str]
    created_at: datetime


def _as_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return parse_date(value)


def _input_times(data: Dict[str, Any]):
    """Return ``(start, end, start_date, end_date)`` for a create/update input."""

    all_day = bool(data.get("all_day"))
    raw_start, raw_end = data.get("start"), data.get("end")
    if all_day:
        start_day, end_day = _as_date(raw_start), _as_date(raw_end)
        if start_day is None:
            return None, None, None, None
        end_day = end_day or start_day + timedelta(days=1)
        return midnight_utc(start_day), midnight_utc(end_day), start_day, end_day

    start = ensure_utc(raw_start) if isinstance(raw_start, datetime) else parse_rfc3339(raw_start)
    end = ensure_utc(raw_end) if isinstance(raw_end, datetime) else parse_rfc3339(raw_end)
    if start is not None and end is None:
        end = start
    return start, end, None, None


class LocalStore:
    """Single source of truth for everything the UI reads.

    Writes are serialised through one re-entrant lock so an upsert keyed by
    remote id can never interleave with a reconciliation delete.
    """

    def __init__(self, session_factory: Callable[[], Session] = get_session):
        self._session_factory = session_factory
        self._write_lock = threading.RLock()

    # ----- calendars -----
    def upsert_calendar(self, calendar: Calendar) -> None:
        with self._write_lock, self._session_factory() as session:
            row = session.get(Calendar, calendar.id)
            if row is None:
                row = Calendar(
                    id=calendar.id,
                    visible=calendar.visible,
                    color_override=calendar.color_override,
                )
            for name in REMOTE_CALENDAR_FIELDS:
                setattr(row, name, getattr(calendar, name))
            row.updated_at = utc_now()
            session.add(row)
            session.commit()

    def get_calendars(self) -> List[Calendar]:
        with self._session_factory() as session:
            stmt = select(Calendar).order_by(Calendar.primary_calendar.desc(), Calendar.summary.asc())
            return list(session.exec(stmt))

    def get_visible_calendars(self) -> List[Calendar]:
        with self._session_factory() as session:
            stmt = (
                select(Calendar)
                .where(Calendar.visible == True)  # noqa: E712
                .order_by(Calendar.primary_calendar.desc(), Calendar.summary.asc())
            )
            return list(session.exec(stmt))

    def get_calendar(self, calendar_id: str) -> Optional[Calendar]:
        with self._session_factory() as session:
            return session.get(Calendar, calendar_id)

    def get_primary_calendar_id(self) -> Optional[str]:
        with self._session_factory() as session:
            stmt = select(Calendar.id).where(Calendar.primary_calendar == True).limit(1)  # noqa: E712
            return session.exec(stmt).first()

    def set_calendar_visibility(self, calendar_id: str, visible: bool) -> None:
        self._update_calendar(calendar_id, visible=visible)

    def set_calendar_color(self, calendar_id: str, color: Optional[str]) -> None:
        self._update_calendar(calendar_id, color_override=color)

    def update_calendar_sync_token(self, calendar_id: str, token: str) -> None:
        self._update_calendar(calendar_id, sync_token=token, last_synced_at=utc_now())

    def clear_calendar_sync_token(self, calendar_id: str) -> None:
        self._update_calendar(calendar_id, sync_token=None)

    def _update_calendar(self, calendar_id: str, **fields) -> None:
        with self._write_lock, self._session_factory() as session:
            row = session.get(Calendar, calendar_id)
            if row is None:
                return
            for key, value in fields.items():
                setattr(row, key, value)
            row.updated_at = utc_now()
            session.add(row)
            session.commit()

    # ----- events -----
    def upsert_event(self, remote: RemoteEvent, *, clear_pending: bool = False) -> str:
        """Insert or update the row for ``remote.remote_id`` and return its local id.

        Pending state survives unless ``clear_pending`` is set.
        """

        if not remote.remote_id:
            raise ValueError("remote event without an id")
        with self._write_lock, self._session_factory() as session:
            row = session.exec(select(Event).where(Event.remote_id == remote.remote_id)).first()
            if row is None:
                row = Event(id=new_local_id(), remote_id=remote.remote_id, calendar_id=remote.calendar_id,
                            start=remote.start, end=remote.end)
            for name in REMOTE_EVENT_FIELDS:
                setattr(row, name, getattr(remote, name))
            # a queued RSVP wins over the remote copy until the drain sends it
            queued_response = None if clear_pending else self._queued_response(session, row.id)
            if queued_response:
                row.self_response = queued_response
            row.start = ensure_utc(remote.start)
            row.end = ensure_utc(remote.end)
            row.conference_data = dumps(remote.conference_data)
            row.reminders = dumps(remote.reminders)
            row.attachments = dumps(remote.attachments)
            if clear_pending:
                row.local_only = False
                row.pending_action = None
                row.pending_payload = None
            row.updated_at = utc_now()
            session.add(row)
            session.commit()
            return row.id

    def upsert_attendees(self, event_id: str, attendees: Iterable[RemoteAttendee]) -> None:
        with self._write_lock, self._session_factory() as session:
            queued_response = self._queued_response(session, event_id)
            session.execute(delete(Attendee).where(Attendee.event_id == event_id))
            seen: Set[str] = set()
            for attendee in attendees:
                email = (attendee.email or "").strip()
                if not email or email.lower() in seen:
                    continue
                seen.add(email.lower())
                response = attendee.response_status or "needsAction"
                if attendee.is_self and queued_response:
                    response = queued_response
                session.add(
                    Attendee(
                        event_id=event_id,
                        email=email,
                        display_name=attendee.display_name,
                        response_status=response,
                        is_organizer=attendee.is_organizer,
                        is_self=attendee.is_self,
                    )
                )
            session.commit()

    def _queued_response(self, session: Session, event_id: str) -> Optional[str]:
        stmt = (
            select(SyncQueueItem.payload)
            .where(SyncQueueItem.event_ref == event_id, SyncQueueItem.action == "rsvp")
            .order_by(SyncQueueItem.created_at.desc(), SyncQueueItem.id.desc())
        )
        payload = loads(session.exec(stmt).first()) or {}
        return payload.get("response")

    def create_local_event(self, data: Dict[str, Any]) -> Event:
        """Persist a user-created event that the remote side has not confirmed yet."""

        start, end, start_date, end_date = _input_times(data)
        if start is None:
            raise ValueError("event input needs a start")
        calendar_id = data.get("calendar_id") or self.get_primary_calendar_id() or GOOGLE.default_calendar_id
        now = utc_now()
        with self._write_lock, self._session_factory() as session:
            event = Event(
                id=new_local_id(),
                calendar_id=calendar_id,
                summary=data.get("summary") or "",
                description=data.get("description") or "",
                location=data.get("location") or "",
                start=start,
                end=end,
                start_date=start_date,
                end_date=end_date,
                all_day=bool(data.get("all_day")),
                time_zone=data.get("time_zone"),
                status="confirmed",
                is_organizer=True,
                transparency=data.get("transparency") or "opaque",
                visibility=data.get("visibility") or "default",
                reminders=dumps(data.get("reminders")),
                local_only=True,
                pending_action="create",
                pending_payload=dumps(data),
                created_at=now,
                updated_at=now,
            )
            session.add(event)
            session.commit()
            event_id = event.id

        emails = data.get("attendees") or []
        if emails:
            self.upsert_attendees(event_id, [RemoteAttendee(email=email) for email in emails])
        return self.get_event(event_id)

    def apply_local_update(self, event_id: str, updates: Dict[str, Any]) -> Optional[Event]:
        with self._write_lock, self._session_factory() as session:
            row = session.get(Event, event_id)
            if row is None:
                return None
            for key in ("summary", "description", "location", "transparency", "visibility"):
                if updates.get(key) is not None:
                    setattr(row, key, updates[key])
            if updates.get("start") is not None or updates.get("end") is not None:
                merged = {
                    "all_day": updates.get("all_day", row.all_day),
                    "start": updates.get("start") or (row.start_date if row.all_day else row.start),
                    "end": updates.get("end") or (row.end_date if row.all_day else row.end),
                }
                start, end, start_date, end_date = _input_times(merged)
                if start is not None:
                    row.start, row.end = start, end
                    row.start_date, row.end_date = start_date, end_date
                    row.all_day = bool(merged["all_day"])
            row.updated_at = utc_now()
            session.add(row)
            session.commit()
        return self.get_event(event_id)

    def set_self_response(self, event_id: str, response: str) -> None:
        with self._write_lock, self._session_factory() as session:
            row = session.get(Event, event_id)
            if row is None:
                return
            row.self_response = response
            for attendee in session.exec(
                select(Attendee).where(Attendee.event_id == event_id, Attendee.is_self == True)  # noqa: E712
            ):
                attendee.response_status = response
                session.add(attendee)
            row.updated_at = utc_now()
            session.add(row)
            session.commit()

    def mark_event_pending(self, event_id: str, action: str, payload: Any = None) -> None:
        """Record ``action`` as the single outstanding mutation of the event."""

        if action not in PENDING_ACTIONS:
            raise ValueError(f"Unsupported pending action: {action}")
        with self._write_lock, self._session_factory() as session:
            row = session.get(Event, event_id)
            if row is None:
                return
            row.pending_action = action
            row.pending_payload = payload if isinstance(payload, str) or payload is None else dumps(payload)
            row.updated_at = utc_now()
            session.add(row)
            session.commit()

    def mark_event_synced(self, event_id: str, remote_id: str, etag: Optional[str]) -> None:
        with self._write_lock, self._session_factory() as session:
            row = session.get(Event, event_id)
            if row is None:
                return
            row.remote_id = remote_id
            row.etag = etag
            row.local_only = False
            row.pending_action = None
            row.pending_payload = None
            row.updated_at = utc_now()
            session.add(row)
            session.commit()

    def delete_event(self, event_id: str) -> None:
        with self._write_lock, self._session_factory() as session:
            session.execute(delete(Attendee).where(Attendee.event_id == event_id))
            session.execute(delete(Event).where(Event.id == event_id))
            session.commit()

    def delete_cancelled_event(self, remote_id: str) -> bool:
        """Delete by remote id; cancellation notices may repeat, so no match is fine."""

        with self._write_lock, self._session_factory() as session:
            row = session.exec(select(Event).where(Event.remote_id == remote_id)).first()
            if row is None:
                logger.warning("delete_cancelled_event: no match for remote_id=%s", remote_id)
                return False
            session.execute(delete(Attendee).where(Attendee.event_id == row.id))
            session.delete(row)
            session.commit()
            return True

    def reconcile_calendar_range(
        self,
        calendar_id: str,
        live_remote_ids: Set[str],
        range_start: datetime,
        range_end: datetime,
        *,
        listed_before: Optional[datetime] = None,
    ) -> int:
        """Remove confirmed events in the range that the live set no longer reports.

        With ``listed_before`` only rows last written before that moment are
        candidates, so events stored while the listing was in flight survive.
        """

        start, end = ensure_utc(range_start), ensure_utc(range_end)
        with self._write_lock, self._session_factory() as session:
            stmt = select(Event.id, Event.remote_id).where(
                Event.calendar_id == calendar_id,
                Event.local_only == False,  # noqa: E712
                Event.pending_action.is_(None),
                Event.remote_id.is_not(None),
                Event.start >= start,
                Event.start < end,
            )
            if listed_before is not None:
                stmt = stmt.where(Event.updated_at < ensure_utc(listed_before))
            orphans = [row_id for row_id, remote_id in session.exec(stmt) if remote_id not in live_remote_ids]
            if orphans:
                session.execute(delete(Attendee).where(Attendee.event_id.in_(orphans)))
                session.execute(delete(Event).where(Event.id.in_(orphans)))
                session.commit()
        if orphans:
            logger.info("Reconciled %s: removed %d orphaned events", calendar_id, len(orphans))
        return len(orphans)

    def get_event(self, event_id: str) -> Optional[Event]:
        with self._session_factory() as session:
            return session.get(Event, event_id)

    def get_event_by_remote_id(self, remote_id: str) -> Optional[Event]:
        if not remote_id:
            return None
        with self._session_factory() as session:
            return session.exec(select(Event).where(Event.remote_id == remote_id)).first()

    def get_attendees(self, event_id: str) -> List[Attendee]:
        with self._session_factory() as session:
            stmt = select(Attendee).where(Attendee.event_id == event_id).order_by(Attendee.id)
            return list(session.exec(stmt))

    def get_pending_events(self) -> List[Event]:
        with self._session_factory() as session:
            stmt = select(Event).where(Event.pending_action.is_not(None)).order_by(Event.updated_at, Event.id)
            return list(session.exec(stmt))

    def get_events_in_range(
        self,
        range_start: datetime,
        range_end: datetime,
        calendar_ids: Optional[Iterable[str]] = None,
        *,
        include_declined: bool = False,
    ) -> List[Event]:
        start, end = ensure_utc(range_start), ensure_utc(range_end)
        with self._session_factory() as session:
            stmt = (
                select(Event)
                .outerjoin(Calendar, Calendar.id == Event.calendar_id)
                .where(
                    or_(Calendar.visible.is_(None), Calendar.visible == True),  # noqa: E712
                    Event.status != "cancelled",
                    or_(Event.pending_action.is_(None), Event.pending_action != "delete"),
                    Event.start < end,
                    Event.end > start,
                )
            )
            if not include_declined:
                stmt = stmt.where(or_(Event.self_response.is_(None), Event.self_response != "declined"))
            ids = list(calendar_ids or [])
            if ids:
                stmt = stmt.where(Event.calendar_id.in_(ids))
            stmt = stmt.order_by(Event.all_day.desc(), Event.start.asc(), Event.id.asc())
            return list(session.exec(stmt))

    def get_today_events(self, now: Optional[datetime] = None) -> List[Event]:
        today = (ensure_utc(now) or utc_now()).date()
        return self.get_events_in_range(*day_bounds(today))

    def get_agenda(self, day: date, days: int = 7) -> List[Event]:
        return self.get_events_in_range(*day_bounds(day, days))

    def search_contacts(self, query: str, limit: int = 10) -> List[Dict[str, Any]]:
        pattern = f"%{query}%"
        with self._session_factory() as session:
            count = func.count(Attendee.id)
            stmt = (
                select(Attendee.email, func.max(Attendee.display_name), count)
                .where(
                    or_(Attendee.email.like(pattern), Attendee.display_name.like(pattern)),
                    Attendee.is_self == False,  # noqa: E712
                )
                .group_by(Attendee.email)
                .order_by(count.desc(), Attendee.email.asc())
                .limit(limit)
            )
            return [
                {"email": email, "display_name": name, "count": int(total)}
                for email, name, total in session.exec(stmt)
            ]

    def get_upcoming_event_count(self, minutes_ahead: int = 15, now: Optional[datetime] = None) -> int:
        start = ensure_utc(now) or utc_now()
        end = start + timedelta(minutes=minutes_ahead)
        with self._session_factory() as session:
            stmt = (
                select(func.count(Event.id))
                .outerjoin(Calendar, Calendar.id == Event.calendar_id)
                .where(
                    or_(Calendar.visible.is_(None), Calendar.visible == True),  # noqa: E712
                    Event.status == "confirmed",
                    or_(Event.pending_action.is_(None), Event.pending_action != "delete"),
                    Event.all_day == False,  # noqa: E712
                    Event.start >= start,
                    Event.start <= end,
                )
            )
            return int(session.exec(stmt).one())

    # ----- queue -----
    def enqueue(self, event_ref: str, calendar_id: str, action: str, payload: Any) -> int:
        if action not in QUEUE_ACTIONS:
            raise ValueError(f"Unsupported queue action: {action}")
        with self._write_lock, self._session_factory() as session:
            item = SyncQueueItem(
                event_ref=event_ref,
                calendar_id=calendar_id,
                action=action,
                payload=dumps(payload or {}),
                created_at=utc_now(),
            )
            session.add(item)
            session.commit()
            session.refresh(item)
            return item.id

    def list_queue(self) -> List[QueueEntry]:
        with self._session_factory() as session:
            stmt = select(SyncQueueItem).order_by(SyncQueueItem.created_at.asc(), SyncQueueItem.id.asc())
            rows = list(session.exec(stmt))
        return [
            QueueEntry(
                id=row.id,
                event_ref=row.event_ref,
                calendar_id=row.calendar_id,
                action=row.action,
                payload=loads(row.payload) or {},
                attempts=row.attempts,
                last_error=row.last_error,
                created_at=row.created_at,
            )
            for row in rows
        ]

    def queue_count(self) -> int:
        with self._session_factory() as session:
            return int(session.exec(select(func.count()).select_from(SyncQueueItem)).one())

    def queued_event_refs(self) -> Set[str]:
        with self._session_factory() as session:
            return set(session.exec(select(SyncQueueItem.event_ref)))

    def mark_queue_item_done(self, item_id: int) -> None:
        with self._write_lock, self._session_factory() as session:
            session.execute(delete(SyncQueueItem).where(SyncQueueItem.id == item_id))
            session.commit()

    def mark_queue_item_failed(self, item_id: int, error: str) -> None:
        with self._write_lock, self._session_factory() as session:
            item = session.get(SyncQueueItem, item_id)
            if item is None:
                return
            item.attempts += 1
            item.last_error = (error or "")[: SYNC.max_error_length]
            session.add(item)
            session.commit()

    def drop_queued_for(self, event_ref: str) -> int:
        with self._write_lock, self._session_factory() as session:
            result = session.execute(delete(SyncQueueItem).where(SyncQueueItem.event_ref == event_ref))
            session.commit()
            return result.rowcount or 0


__all__ = ["LocalStore", "QueueEntry", "REMOTE_EVENT_FIELDS", "dumps", "loads"]
