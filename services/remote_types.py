"""Types crossing the remote calendar boundary."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class RemoteErrorKind(str, Enum):
    NETWORK = "network"
    AUTH = "auth"
    TOKEN_EXPIRED = "token_expired"
    NOT_FOUND = "not_found"
    OTHER = "other"


class RemoteCalendarError(Exception):
    """Failure reported by the remote calendar client, classified by kind."""

    def __init__(self, kind: RemoteErrorKind, message: str = "", status: Optional[int] = None):
        super().__init__(message or kind.value)
        self.kind = kind
        self.status = status

    @property
    def is_network(self) -> bool:
        return self.kind is RemoteErrorKind.NETWORK

    def __str__(self) -> str:
        base = super().__str__()
        if self.status:
            return f"[{self.kind.value} {self.status}] {base}"
        return f"[{self.kind.value}] {base}"


class CalendarNotAuthorized(RemoteCalendarError):
    def __init__(self, message: str = "Not authorized"):
        super().__init__(RemoteErrorKind.AUTH, message)


@dataclass
class RemoteAttendee:
    email: str
    display_name: Optional[str] = None
    response_status: str = "needsAction"
    is_organizer: bool = False
    is_self: bool = False


@dataclass
class RemoteEvent:
    """An event as reported by the remote provider."""

    remote_id: str
    calendar_id: str
    start: Optional[datetime]
    end: Optional[datetime]
    summary: str = ""
    description: str = ""
    location: str = ""
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    all_day: bool = False
    time_zone: Optional[str] = None
    status: str = "confirmed"
    self_response: Optional[str] = None
    organizer_email: Optional[str] = None
    organizer_name: Optional[str] = None
    is_organizer: bool = False
    recurrence_rule: Optional[str] = None
    recurring_event_id: Optional[str] = None
    html_link: Optional[str] = None
    hangout_link: Optional[str] = None
    conference_data: Optional[Dict[str, Any]] = None
    transparency: str = "opaque"
    visibility: str = "default"
    color_id: Optional[str] = None
    reminders: Optional[List[Dict[str, Any]]] = None
    attachments: Optional[List[Dict[str, Any]]] = None
    etag: Optional[str] = None
    attendees: List[RemoteAttendee] = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        return self.status == "cancelled"


@dataclass
class EventPage:
    events: List[RemoteEvent]
    next_sync_token: Optional[str] = None


__all__ = [
    "CalendarNotAuthorized",
    "EventPage",
    "RemoteAttendee",
    "RemoteCalendarError",
    "RemoteErrorKind",
    "RemoteEvent",
]
