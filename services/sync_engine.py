from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from logging.handlers import RotatingFileHandler
from typing import Any, Callable, Dict, List, Optional, Set

from sqlalchemy.exc import SQLAlchemyError

from core.settings import SYNC, SYNC_LOG_PATH, SyncSettings
from models.calendar import Calendar
from models.event import Event
from services.local_store import LocalStore, QueueEntry, loads
from services.remote_types import RemoteCalendarError, RemoteErrorKind, RemoteEvent
from utils.datetime_utils import sync_window, to_rfc3339_utc, utc_now


def _ensure_logger() -> logging.Logger:
    logger = logging.getLogger("calmirror.sync")
    if not logger.handlers:
        SYNC_LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(SYNC_LOG_PATH, maxBytes=1_000_000, backupCount=3, encoding="utf-8")
        formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return logger


class SyncStatus(str, Enum):
    SYNCED = "synced"
    SYNCING = "syncing"
    OFFLINE = "offline"
    ERROR = "error"


@dataclass
class SyncState:
    status: SyncStatus = SyncStatus.SYNCED
    last_sync: Optional[datetime] = None
    last_error: Optional[str] = None


@dataclass
class SyncReport:
    calendars: int = 0
    upserted: int = 0
    deleted: int = 0
    reconciled: int = 0
    failed_calendars: List[str] = field(default_factory=list)


@dataclass
class DrainResult:
    succeeded: int = 0
    failed: int = 0


class SyncEngine:
    """Moves data between the remote calendar and the local store.

    Every pass (full, incremental, drain) takes the same non-blocking lock; a
    pass requested while another one runs is skipped.
    """

    def __init__(self, client, store: LocalStore, monitor, settings: SyncSettings = SYNC):
        self.client = client
        self.store = store
        self.monitor = monitor
        self.settings = settings
        self.logger = _ensure_logger()
        self.state = SyncState()
        self._in_flight = threading.Lock()
        self._state_lock = threading.Lock()
        self._subscribers: List[Callable[[Dict[str, Any]], None]] = []
        self._went_offline = False

    # ------------------------------------------------------------------
    # Observers
    def subscribe(self, callback: Callable[[Dict[str, Any]], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def snapshot(self) -> Dict[str, Any]:
        with self._state_lock:
            status, last_sync = self.state.status, self.state.last_sync
        return {
            "status": status.value,
            "last_sync": to_rfc3339_utc(last_sync),
            "pending_count": self.pending_count(),
            "authorized": self.client.is_authorized(),
        }

    def pending_count(self) -> int:
        queued = self.store.queued_event_refs()
        unqueued = [event for event in self.store.get_pending_events() if event.id not in queued]
        return self.store.queue_count() + len(unqueued)

    def _set_status(self, status: SyncStatus, *, error: Optional[str] = None, completed: bool = False) -> None:
        with self._state_lock:
            self.state.status = status
            self.state.last_error = error
            if completed:
                self.state.last_sync = utc_now()
        snapshot = self.snapshot()
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception:
                self.logger.exception("Sync state subscriber failed")

    # ------------------------------------------------------------------
    # Public passes
    def full_sync(self) -> Optional[SyncReport]:
        return self._guarded("full", self._full_pass)

    def incremental_sync(self) -> Optional[SyncReport]:
        return self._guarded("incremental", self._incremental_pass)

    def drain_queue(self) -> DrainResult:
        result = self._guarded("drain", self._drain_pass)
        return result if result is not None else DrainResult()

    def _guarded(self, name: str, body: Callable[[], Any]):
        if not self._in_flight.acquire(blocking=False):
            self.logger.info("Skipping %s sync: another pass is running", name)
            return None
        try:
            return self._run_pass(name, body)
        finally:
            self._in_flight.release()

    def _run_pass(self, name: str, body: Callable[[], Any]):
        if not self.client.is_authorized():
            self.logger.info("Skipping %s sync: not authorized", name)
            return None
        if not self.monitor.is_online:
            self.logger.info("Skipping %s sync: offline", name)
            self._set_status(SyncStatus.OFFLINE)
            return None

        self._went_offline = False
        self._set_status(SyncStatus.SYNCING)
        try:
            result = body()
        except RemoteCalendarError as exc:
            if exc.is_network:
                self.logger.warning("%s sync interrupted, network unavailable: %s", name.capitalize(), exc)
                self.monitor.report_offline()
                self._set_status(SyncStatus.OFFLINE, error=str(exc))
            else:
                self.logger.error("%s sync failed: %s", name.capitalize(), exc)
                self._set_status(SyncStatus.ERROR, error=str(exc))
            return None
        except SQLAlchemyError as exc:
            self.logger.error("%s sync failed on local store: %s", name.capitalize(), exc)
            self._set_status(SyncStatus.ERROR, error=str(exc))
            raise
        except Exception as exc:
            self.logger.exception("%s sync crashed", name.capitalize())
            self._set_status(SyncStatus.ERROR, error=str(exc))
            raise

        if self._went_offline:
            self._set_status(SyncStatus.OFFLINE, error="network unavailable")
        else:
            self.monitor.report_online()
            self._set_status(SyncStatus.SYNCED, completed=True)
        return result

    # ------------------------------------------------------------------
    # Full / incremental
    def _full_pass(self) -> SyncReport:
        self.logger.info("Full sync started")
        report = SyncReport()
        for calendar in self.client.list_calendars():
            self.store.upsert_calendar(calendar)
        calendars = self.store.get_visible_calendars()
        report.calendars = len(calendars)
        for calendar in calendars:
            try:
                self._windowed_sync(calendar, report)
            except RemoteCalendarError as exc:
                if exc.is_network:
                    raise
                self.logger.error("Full sync of %s failed: %s", calendar.id, exc)
                report.failed_calendars.append(calendar.id)
        self.logger.info(
            "Full sync finished: %d upserted, %d deleted, %d reconciled",
            report.upserted,
            report.deleted,
            report.reconciled,
        )
        return report

    def _incremental_pass(self) -> SyncReport:
        report = SyncReport()
        calendars = self.store.get_visible_calendars()
        report.calendars = len(calendars)
        for calendar in calendars:
            try:
                if calendar.sync_token:
                    self._token_sync(calendar, report)
                else:
                    self._windowed_sync(calendar, report)
            except RemoteCalendarError as exc:
                if exc.is_network:
                    raise
                self.logger.error("Incremental sync of %s failed: %s", calendar.id, exc)
                report.failed_calendars.append(calendar.id)
        if report.upserted or report.deleted:
            self.logger.info("Incremental sync: %d upserted, %d deleted", report.upserted, report.deleted)
        return report

    def _token_sync(self, calendar: Calendar, report: SyncReport) -> None:
        try:
            page = self.client.list_events(calendar.id, sync_token=calendar.sync_token)
        except RemoteCalendarError as exc:
            if exc.kind is not RemoteErrorKind.TOKEN_EXPIRED:
                raise
            self.logger.warning("Sync token expired for %s, falling back to windowed listing", calendar.id)
            self.store.clear_calendar_sync_token(calendar.id)
            self._windowed_sync(calendar, report)
            return
        self._apply_events(calendar.id, page.events, report)
        if page.next_sync_token:
            self.store.update_calendar_sync_token(calendar.id, page.next_sync_token)

    def _windowed_sync(self, calendar: Calendar, report: SyncReport) -> None:
        time_min, time_max = sync_window(
            past_days=self.settings.window_past_days,
            future_days=self.settings.window_future_days,
        )
        listed_at = utc_now()
        page = self.client.list_events(calendar.id, time_min=time_min, time_max=time_max)
        live: Set[str] = set()
        self._apply_events(calendar.id, page.events, report, live)
        report.reconciled += self.store.reconcile_calendar_range(
            calendar.id, live, time_min, time_max, listed_before=listed_at
        )
        if page.next_sync_token:
            self.store.update_calendar_sync_token(calendar.id, page.next_sync_token)

    def _apply_events(
        self,
        calendar_id: str,
        events: List[RemoteEvent],
        report: SyncReport,
        live: Optional[Set[str]] = None,
    ) -> None:
        for remote in events:
            try:
                if remote.cancelled:
                    if self.store.delete_cancelled_event(remote.remote_id):
                        report.deleted += 1
                    continue
                local_id = self.store.upsert_event(remote)
                self.store.upsert_attendees(local_id, remote.attendees)
                report.upserted += 1
                if live is not None:
                    live.add(remote.remote_id)
            except Exception:
                self.logger.exception("Failed to store event %s from %s", remote.remote_id, calendar_id)

    # ------------------------------------------------------------------
    # Queue drain
    def _drain_pass(self) -> DrainResult:
        result = DrainResult()
        for entry in self.store.list_queue():
            if self._drain_item(entry):
                result.succeeded += 1
            else:
                result.failed += 1

        queued = self.store.queued_event_refs()
        for event in self.store.get_pending_events():
            if event.id in queued:
                continue
            if self._push_pending_event(event):
                result.succeeded += 1
            else:
                result.failed += 1

        if result.succeeded or result.failed:
            self.logger.info("Queue drain: %d succeeded, %d failed", result.succeeded, result.failed)
        return result

    def _drain_item(self, entry: QueueEntry) -> bool:
        try:
            self._dispatch(entry.action, entry.event_ref, entry.calendar_id, entry.payload)
        except (RemoteCalendarError, ValueError) as exc:
            self.logger.warning("Queue item %s (%s %s) failed: %s", entry.id, entry.action, entry.event_ref, exc)
            self.store.mark_queue_item_failed(entry.id, str(exc))
            self._note_failure(exc)
            return False
        except Exception as exc:
            self.logger.exception("Queue item %s (%s %s) crashed", entry.id, entry.action, entry.event_ref)
            self.store.mark_queue_item_failed(entry.id, f"{type(exc).__name__}: {exc}")
            return False
        self.store.mark_queue_item_done(entry.id)
        return True

    def _push_pending_event(self, event: Event) -> bool:
        payload = loads(event.pending_payload) or {}
        if event.pending_action in ("create", "update") and not payload:
            payload = _event_input(event)
        if event.pending_action == "delete" and event.remote_id:
            payload = {"remote_id": event.remote_id}
        try:
            self._dispatch(event.pending_action, event.id, event.calendar_id, payload)
        except (RemoteCalendarError, ValueError) as exc:
            self.logger.warning("Pending %s for %s failed: %s", event.pending_action, event.id, exc)
            self._note_failure(exc)
            return False
        except Exception:
            self.logger.exception("Pending %s for %s crashed", event.pending_action, event.id)
            return False
        return True

    def _note_failure(self, exc: Exception) -> None:
        if isinstance(exc, RemoteCalendarError) and exc.is_network:
            self.monitor.report_offline()
            self._went_offline = True

    def _dispatch(self, action: str, event_ref: str, calendar_id: str, payload: Dict[str, Any]) -> None:
        if action == "create":
            event = self.store.get_event(event_ref)
            if event is not None and event.pending_action == "create" and event.pending_payload:
                # offline edits are folded into the event row, not the queue item
                payload = loads(event.pending_payload) or payload
            payload = {k: v for k, v in payload.items() if k != "calendar_id"}
            remote = self.client.create_event(calendar_id, payload)
            self.store.mark_event_synced(event_ref, remote.remote_id, remote.etag)
            local_id = self.store.upsert_event(remote, clear_pending=True)
            self.store.upsert_attendees(local_id, remote.attendees)
        elif action == "update":
            remote_id = self._remote_id_for(event_ref, payload)
            updates = {k: v for k, v in payload.items() if k != "remote_id"}
            remote = self.client.update_event(calendar_id, remote_id, updates)
            local_id = self.store.upsert_event(remote, clear_pending=True)
            self.store.upsert_attendees(local_id, remote.attendees)
        elif action == "delete":
            event = self.store.get_event(event_ref)
            remote_id = payload.get("remote_id") or (event.remote_id if event else None)
            if remote_id:
                try:
                    self.client.delete_event(calendar_id, remote_id)
                except RemoteCalendarError as exc:
                    if exc.kind is not RemoteErrorKind.NOT_FOUND:
                        raise
                    self.logger.info("Event %s already gone remotely", remote_id)
            self.store.delete_event(event_ref)
        elif action == "rsvp":
            remote_id = self._remote_id_for(event_ref, payload)
            self.client.rsvp(calendar_id, remote_id, payload["response"])
            remote = self.client.get_event(calendar_id, remote_id)
            local_id = self.store.upsert_event(remote)
            self.store.upsert_attendees(local_id, remote.attendees)
        else:
            raise ValueError(f"Unsupported action: {action}")

    def _remote_id_for(self, event_ref: str, payload: Dict[str, Any]) -> str:
        remote_id = payload.get("remote_id")
        if not remote_id:
            event = self.store.get_event(event_ref)
            remote_id = event.remote_id if event else None
        if not remote_id:
            raise ValueError(f"Event {event_ref} has no remote id")
        return remote_id


def _event_input(event: Event) -> Dict[str, Any]:
    """Rebuild a create/update input from a stored event row."""

    data: Dict[str, Any] = {
        "summary": event.summary,
        "description": event.description,
        "location": event.location,
        "all_day": event.all_day,
        "time_zone": event.time_zone,
        "transparency": event.transparency,
        "visibility": event.visibility,
    }
    if event.all_day:
        data["start"], data["end"] = event.start_date, event.end_date
    else:
        data["start"], data["end"] = event.start, event.end
    return data


__all__ = ["DrainResult", "SyncEngine", "SyncReport", "SyncState", "SyncStatus"]
