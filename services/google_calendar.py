"""Google Calendar v3 adapter implementing the remote calendar contract."""

from __future__ import annotations

import logging
import re
import socket
import uuid
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import httplib2
from google.auth.exceptions import RefreshError, TransportError
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from core.settings import GOOGLE, SYNC
from models.calendar import Calendar
from services.remote_types import (
    CalendarNotAuthorized,
    EventPage,
    RemoteAttendee,
    RemoteCalendarError,
    RemoteErrorKind,
    RemoteEvent,
)
from utils.datetime_utils import parse_date, parse_event_time, parse_rfc3339, to_rfc3339_utc


logger = logging.getLogger("calmirror.google")

NETWORK_EXCEPTIONS = (
    httplib2.ServerNotFoundError,
    TransportError,
    ConnectionError,
    socket.timeout,
    TimeoutError,
    socket.gaierror,
)

_MEETING_PROVIDERS = (
    (re.compile(r"https?://teams\.microsoft\.com/[^\s<)\"']+", re.I), "Microsoft Teams"),
    (re.compile(r"https?://[\w.-]*zoom\.us/j/[^\s<)\"']+", re.I), "Zoom"),
    (re.compile(r"https?://[\w.-]*webex\.com/[^\s<)\"']+", re.I), "Webex"),
)


def http_status(exc: BaseException) -> Optional[int]:
    status = getattr(exc, "resp", None) and getattr(exc.resp, "status", None)
    try:
        return int(status) if status else None
    except (TypeError, ValueError):
        return None


def classify_error(exc: BaseException) -> RemoteCalendarError:
    """Map a transport or API exception onto a :class:`RemoteCalendarError`."""

    if isinstance(exc, RemoteCalendarError):
        return exc
    if isinstance(exc, HttpError):
        status = http_status(exc)
        if status == 410:
            kind = RemoteErrorKind.TOKEN_EXPIRED
        elif status in (401, 403):
            kind = RemoteErrorKind.AUTH
        elif status == 404:
            kind = RemoteErrorKind.NOT_FOUND
        else:
            kind = RemoteErrorKind.OTHER
        return RemoteCalendarError(kind, str(exc), status)
    if isinstance(exc, RefreshError):
        return RemoteCalendarError(RemoteErrorKind.AUTH, str(exc))
    if isinstance(exc, NETWORK_EXCEPTIONS) or isinstance(exc, OSError):
        return RemoteCalendarError(RemoteErrorKind.NETWORK, str(exc) or type(exc).__name__)
    return RemoteCalendarError(RemoteErrorKind.OTHER, str(exc) or type(exc).__name__)


def extract_conference_from_text(description: str, location: str) -> Optional[Dict[str, Any]]:
    text = f"{location or ''}\n{description or ''}"
    for pattern, name in _MEETING_PROVIDERS:
        match = pattern.search(text)
        if match:
            return {
                "conferenceSolution": {"name": name},
                "entryPoints": [{"entryPointType": "video", "uri": match.group(0)}],
            }
    return None


def parse_google_event(item: Dict[str, Any], calendar_id: str) -> RemoteEvent:
    start, start_date = parse_event_time(item.get("start"))
    end, end_date = parse_event_time(item.get("end"))
    all_day = bool(item.get("start")) and not (item.get("start") or {}).get("dateTime")
    if start is not None and end is None:
        end = start + (timedelta(days=1) if all_day else timedelta(0))

    conference = item.get("conferenceData")
    if conference:
        conference = {
            key: conference[key]
            for key in ("conferenceId", "conferenceSolution", "entryPoints")
            if key in conference
        }
    elif not item.get("hangoutLink"):
        conference = extract_conference_from_text(item.get("description") or "", item.get("location") or "")

    attendees = [
        RemoteAttendee(
            email=a.get("email") or "",
            display_name=a.get("displayName"),
            response_status=a.get("responseStatus") or "needsAction",
            is_organizer=bool(a.get("organizer")),
            is_self=bool(a.get("self")),
        )
        for a in item.get("attendees") or []
        if a.get("email")
    ]
    self_attendee = next((a for a in attendees if a.is_self), None)
    organizer = item.get("organizer") or {}
    overrides = (item.get("reminders") or {}).get("overrides")
    attachments = item.get("attachments")

    return RemoteEvent(
        remote_id=item.get("id") or "",
        calendar_id=calendar_id,
        start=start,
        end=end,
        summary=item.get("summary") or "",
        description=item.get("description") or "",
        location=item.get("location") or "",
        start_date=start_date if all_day else None,
        end_date=end_date if all_day else None,
        all_day=all_day,
        time_zone=(item.get("start") or {}).get("timeZone"),
        status=item.get("status") or "confirmed",
        self_response=self_attendee.response_status if self_attendee else None,
        organizer_email=organizer.get("email"),
        organizer_name=organizer.get("displayName"),
        is_organizer=bool(organizer.get("self")),
        recurrence_rule="\n".join(item.get("recurrence") or []) or None,
        recurring_event_id=item.get("recurringEventId"),
        html_link=item.get("htmlLink"),
        hangout_link=item.get("hangoutLink"),
        conference_data=conference or None,
        transparency=item.get("transparency") or "opaque",
        visibility=item.get("visibility") or "default",
        color_id=item.get("colorId"),
        reminders=[
            {"method": r.get("method"), "minutes": r.get("minutes") or 0} for r in overrides
        ]
        if overrides
        else None,
        attachments=[
            {
                "fileUrl": a.get("fileUrl") or "",
                "title": a.get("title") or "Untitled",
                "mimeType": a.get("mimeType"),
                "fileId": a.get("fileId"),
            }
            for a in attachments
        ]
        if attachments
        else None,
        etag=item.get("etag"),
        attendees=attendees,
    )


def _time_field(value: Any, all_day: bool, time_zone: Optional[str] = None) -> Dict[str, Any]:
    if all_day:
        if isinstance(value, datetime):
            return {"date": value.date().isoformat()}
        if isinstance(value, date):
            return {"date": value.isoformat()}
        return {"date": str(value)[:10]}
    payload: Dict[str, Any] = {"dateTime": to_rfc3339_utc(value) or str(value)}
    if time_zone:
        payload["timeZone"] = time_zone
    return payload


def build_event_body(data: Dict[str, Any], *, partial: bool = False) -> Dict[str, Any]:
    """Translate a create/update input mapping into a Google event resource."""

    body: Dict[str, Any] = {}
    for key in ("summary", "description", "location", "transparency", "visibility"):
        if data.get(key) is not None:
            body[key] = data[key]
    all_day = bool(data.get("all_day"))
    time_zone = data.get("time_zone")
    if data.get("start") is not None:
        body["start"] = _time_field(data["start"], all_day, time_zone)
    if data.get("end") is not None:
        body["end"] = _time_field(data["end"], all_day, time_zone)
    if data.get("recurrence"):
        body["recurrence"] = list(data["recurrence"])
    attendees = data.get("attendees")
    if attendees is not None and (attendees or partial):
        body["attendees"] = [{"email": email} for email in attendees]
    reminders = data.get("reminders")
    if reminders:
        body["reminders"] = {
            "useDefault": False,
            "overrides": [{"method": r["method"], "minutes": r["minutes"]} for r in reminders],
        }
    if data.get("add_conferencing"):
        body["conferenceData"] = {
            "createRequest": {
                "requestId": str(uuid.uuid4()),
                "conferenceSolutionKey": {"type": "hangoutsMeet"},
            }
        }
    return body


def _calendar_from_entry(entry: Dict[str, Any]) -> Calendar:
    return Calendar(
        id=entry.get("id") or "",
        summary=entry.get("summary") or "",
        description=entry.get("description"),
        color_id=entry.get("colorId"),
        background_color=entry.get("backgroundColor"),
        foreground_color=entry.get("foregroundColor"),
        access_role=entry.get("accessRole") or "reader",
        primary_calendar=bool(entry.get("primary")),
        visible=entry.get("selected") is not False,
        time_zone=entry.get("timeZone"),
    )


class GoogleCalendar:
    """Authorized Google Calendar client.

    Every failure leaves this class as a :class:`RemoteCalendarError`.
    """

    def __init__(self, auth=None, *, service=None):
        self.auth = auth
        self.service = service

    # ----- service -----
    def is_authorized(self) -> bool:
        if self.service is not None:
            return True
        return bool(self.auth is not None and self.auth.is_authorized())

    def _ensure_service(self):
        if self.service is not None:
            return self.service
        creds = self.auth.get_credentials() if self.auth is not None else None
        if creds is None:
            raise CalendarNotAuthorized()
        self.service = build("calendar", "v3", credentials=creds, cache_discovery=False)
        return self.service

    def _execute(self, request):
        try:
            return request.execute()
        except Exception as exc:
            raise classify_error(exc) from exc

    # ----- calendars -----
    def list_calendars(self) -> List[Calendar]:
        service = self._ensure_service()
        calendars: List[Calendar] = []
        page_token: Optional[str] = None
        while True:
            response = self._execute(
                service.calendarList().list(
                    minAccessRole=GOOGLE.min_access_role, pageToken=page_token
                )
            )
            for entry in response.get("items", []):
                if entry.get("hidden") or not entry.get("id"):
                    continue
                calendars.append(_calendar_from_entry(entry))
            page_token = response.get("nextPageToken")
            if not page_token:
                break
        return calendars

    # ----- events -----
    def list_events(
        self,
        calendar_id: str,
        *,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None,
        sync_token: Optional[str] = None,
        single_events: bool = True,
    ) -> EventPage:
        service = self._ensure_service()
        params: Dict[str, Any] = dict(
            calendarId=calendar_id,
            singleEvents=single_events,
            maxResults=SYNC.page_size,
            supportsAttachments=True,
        )
        if sync_token:
            params["syncToken"] = sync_token
        else:
            if single_events:
                params["orderBy"] = "startTime"
            if time_min is not None:
                params["timeMin"] = to_rfc3339_utc(time_min)
            if time_max is not None:
                params["timeMax"] = to_rfc3339_utc(time_max)

        items: List[Dict[str, Any]] = []
        next_sync_token: Optional[str] = None
        while True:
            response = self._execute(service.events().list(**params))
            items.extend(response.get("items", []))
            page_token = response.get("nextPageToken")
            if page_token:
                params["pageToken"] = page_token
                logger.debug("Fetching next page for %s (%d events so far)", calendar_id, len(items))
                continue
            next_sync_token = response.get("nextSyncToken")
            break

        logger.info("Fetched %d events from %s", len(items), calendar_id)
        events = [parse_google_event(item, calendar_id) for item in items if item.get("id")]
        return EventPage(events=events, next_sync_token=next_sync_token)

    def get_event(self, calendar_id: str, event_id: str) -> RemoteEvent:
        service = self._ensure_service()
        item = self._execute(service.events().get(calendarId=calendar_id, eventId=event_id))
        return parse_google_event(item, calendar_id)

    def create_event(self, calendar_id: str, data: Dict[str, Any]) -> RemoteEvent:
        service = self._ensure_service()
        body = build_event_body(data)
        extra: Dict[str, Any] = {}
        if "conferenceData" in body:
            extra["conferenceDataVersion"] = 1
        item = self._execute(
            service.events().insert(
                calendarId=calendar_id,
                body=body,
                sendUpdates="all" if data.get("attendees") else "none",
                **extra,
            )
        )
        return parse_google_event(item, calendar_id)

    def update_event(self, calendar_id: str, event_id: str, updates: Dict[str, Any]) -> RemoteEvent:
        service = self._ensure_service()
        body = build_event_body(updates, partial=True)
        item = self._execute(
            service.events().patch(
                calendarId=calendar_id,
                eventId=event_id,
                body=body,
                sendUpdates="all" if updates.get("attendees") is not None else "none",
            )
        )
        return parse_google_event(item, calendar_id)

    def delete_event(self, calendar_id: str, event_id: str) -> None:
        service = self._ensure_service()
        self._execute(
            service.events().delete(calendarId=calendar_id, eventId=event_id, sendUpdates="all")
        )

    def rsvp(self, calendar_id: str, event_id: str, response: str) -> Optional[str]:
        """Set the self attendee's response; recurring instances answer for the series.

        Returns the parent event id when the RSVP was applied to a series.
        """

        service = self._ensure_service()
        item = self._execute(service.events().get(calendarId=calendar_id, eventId=event_id))
        parent_id = item.get("recurringEventId")
        target_id = parent_id or event_id
        if parent_id:
            item = self._execute(service.events().get(calendarId=calendar_id, eventId=parent_id))

        attendees = item.get("attendees") or []
        for attendee in attendees:
            if attendee.get("self"):
                attendee["responseStatus"] = response
                break
        else:
            raise RemoteCalendarError(
                RemoteErrorKind.OTHER, "Could not find yourself in the attendee list"
            )

        self._execute(
            service.events().patch(
                calendarId=calendar_id,
                eventId=target_id,
                body={"attendees": attendees},
                sendUpdates="all",
            )
        )
        return parent_id

    # ----- availability -----
    def get_free_busy(
        self, calendar_ids: Iterable[str], time_min: datetime | str, time_max: datetime | str
    ) -> Dict[str, Dict[str, Any]]:
        service = self._ensure_service()
        body = {
            "timeMin": _rfc3339_bound(time_min),
            "timeMax": _rfc3339_bound(time_max),
            "items": [{"id": cid} for cid in calendar_ids],
        }
        response = self._execute(service.freebusy().query(body=body))
        result: Dict[str, Dict[str, Any]] = {}
        for cid, data in (response.get("calendars") or {}).items():
            result[cid] = {
                "busy": [
                    {"start": parse_rfc3339(b.get("start")), "end": parse_rfc3339(b.get("end"))}
                    for b in data.get("busy") or []
                ],
                "errors": [
                    {"domain": e.get("domain") or "", "reason": e.get("reason") or ""}
                    for e in data.get("errors") or []
                ],
            }
        return result


def _rfc3339_bound(value: datetime | str) -> Optional[str]:
    if isinstance(value, str):
        day = parse_date(value) if len(value.strip()) == 10 else None
        if day is not None:
            return f"{day.isoformat()}T00:00:00Z"
    return to_rfc3339_utc(value)


__all__ = [
    "GoogleCalendar",
    "build_event_body",
    "classify_error",
    "extract_conference_from_text",
    "parse_google_event",
]
