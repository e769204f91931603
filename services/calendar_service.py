from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from core.settings import GOOGLE
from models.event import RESPONSE_STATUSES, Event
from services.local_store import LocalStore, loads
from services.remote_types import RemoteCalendarError, RemoteErrorKind


logger = logging.getLogger("calmirror.service")


class CalendarService:
    """User-facing event operations.

    Each mutation goes to the remote calendar first when it is reachable and
    falls back to the local store plus the outbound queue otherwise.
    """

    def __init__(self, client, store: LocalStore, monitor):
        self.client = client
        self.store = store
        self.monitor = monitor

    def _can_reach(self) -> bool:
        return self.monitor.is_online and self.client.is_authorized()

    def _remote_failed(self, operation: str, exc: RemoteCalendarError) -> None:
        logger.warning("%s failed remotely, queueing: %s", operation, exc)
        if exc.is_network:
            self.monitor.report_offline()

    def _require(self, event_id: str) -> Event:
        event = self.store.get_event(event_id)
        if event is None:
            raise ValueError(f"Unknown event: {event_id}")
        return event

    # ----- mutations -----
    def create_event(self, data: Dict[str, Any]) -> Event:
        calendar_id = data.get("calendar_id") or self.store.get_primary_calendar_id() or GOOGLE.default_calendar_id
        body = {k: v for k, v in data.items() if k != "calendar_id"}
        if self._can_reach():
            try:
                remote = self.client.create_event(calendar_id, body)
            except RemoteCalendarError as exc:
                self._remote_failed("Create", exc)
            else:
                local_id = self.store.upsert_event(remote, clear_pending=True)
                self.store.upsert_attendees(local_id, remote.attendees)
                return self.store.get_event(local_id)

        event = self.store.create_local_event({**body, "calendar_id": calendar_id})
        self.store.enqueue(event.id, calendar_id, "create", body)
        logger.info("Event %s created locally, waiting for sync", event.id)
        return event

    def update_event(self, event_id: str, updates: Dict[str, Any]) -> Event:
        event = self._require(event_id)
        if event.remote_id and self._can_reach():
            try:
                remote = self.client.update_event(event.calendar_id, event.remote_id, updates)
            except RemoteCalendarError as exc:
                self._remote_failed("Update", exc)
            else:
                local_id = self.store.upsert_event(remote, clear_pending=True)
                self.store.upsert_attendees(local_id, remote.attendees)
                return self.store.get_event(local_id)

        self.store.apply_local_update(event_id, updates)
        if not event.remote_id:
            # still unconfirmed: fold the edit into the pending creation
            create_payload = loads(event.pending_payload) or {}
            create_payload.update({k: v for k, v in updates.items() if v is not None})
            self.store.mark_event_pending(event_id, "create", create_payload)
            return self.store.get_event(event_id)

        self.store.mark_event_pending(event_id, "update", updates)
        self.store.enqueue(event_id, event.calendar_id, "update", {**updates, "remote_id": event.remote_id})
        return self.store.get_event(event_id)

    def delete_event(self, event_id: str) -> bool:
        event = self.store.get_event(event_id)
        if event is None:
            return False
        if event.remote_id and self._can_reach():
            try:
                self.client.delete_event(event.calendar_id, event.remote_id)
            except RemoteCalendarError as exc:
                if exc.kind is not RemoteErrorKind.NOT_FOUND:
                    self._remote_failed("Delete", exc)
                else:
                    self.store.delete_event(event_id)
                    return True
            else:
                self.store.delete_event(event_id)
                return True

        if event.remote_id:
            payload = {"remote_id": event.remote_id}
            self.store.mark_event_pending(event_id, "delete", payload)
            self.store.enqueue(event_id, event.calendar_id, "delete", payload)
            return True

        self.store.delete_event(event_id)
        dropped = self.store.drop_queued_for(event_id)
        logger.info("Discarded unsynced event %s (%d queued changes dropped)", event_id, dropped)
        return True

    def rsvp(self, event_id: str, response: str) -> Event:
        if response not in RESPONSE_STATUSES:
            raise ValueError(f"Unsupported response: {response}")
        event = self._require(event_id)
        if event.remote_id and self._can_reach():
            try:
                self.client.rsvp(event.calendar_id, event.remote_id, response)
                remote = self.client.get_event(event.calendar_id, event.remote_id)
            except RemoteCalendarError as exc:
                self._remote_failed("RSVP", exc)
            else:
                local_id = self.store.upsert_event(remote)
                self.store.upsert_attendees(local_id, remote.attendees)
                return self.store.get_event(local_id)

        if event.remote_id:
            self.store.enqueue(
                event_id, event.calendar_id, "rsvp", {"remote_id": event.remote_id, "response": response}
            )
        self.store.set_self_response(event_id, response)
        return self.store.get_event(event_id)

    # ----- reads -----
    def get_free_busy(
        self, calendar_ids: Iterable[str], time_min: datetime | str, time_max: datetime | str
    ) -> Dict[str, Dict[str, Any]]:
        if not self._can_reach():
            return {}
        try:
            return self.client.get_free_busy(list(calendar_ids), time_min, time_max)
        except RemoteCalendarError as exc:
            logger.warning("Free/busy lookup failed: %s", exc)
            if exc.is_network:
                self.monitor.report_offline()
            return {}

    def get_event(self, event_id: str) -> Optional[Event]:
        return self.store.get_event(event_id)


__all__ = ["CalendarService"]
