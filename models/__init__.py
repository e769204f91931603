"""ORM models exposed by the CalMirror application."""
from .calendar import Calendar
from .event import Attendee, Event
from .sync_queue import SyncQueueItem

__all__ = ["Attendee", "Calendar", "Event", "SyncQueueItem"]
