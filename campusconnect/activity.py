"""Append-only activity log of user interactions with events."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from .config import settings
from .docstore import DocumentStore, Query
from .entities import ACTIVITY_LOGS, EVENTS, ActivityAction, ActivityLog, Event, UserRef
from .utils import format_timestamp, utcnow

logger = logging.getLogger("uvicorn.error")


class ActivityLogger:
    """Writes and reads activity records.

    Writing is best-effort: a failed write is reported to the log and never
    surfaces to the caller, so the interaction that triggered it still succeeds.
    """

    def __init__(
        self, store: DocumentStore, *, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self._store = store
        self._clock = clock

    def log(
        self,
        event_id: str,
        event_title: str,
        user_id: str,
        user_name: str,
        action: ActivityAction | str,
        *,
        user_photo_url: str | None = None,
        details: str | None = None,
    ) -> str | None:
        """Record one interaction and return the new entry id, or ``None`` on failure."""
        try:
            action_value = ActivityAction(action).value
            return self._store.add(
                ACTIVITY_LOGS,
                {
                    "event_id": event_id,
                    "event_title": event_title,
                    "user_id": user_id,
                    "user_name": user_name,
                    "user_photo_url": user_photo_url,
                    "action": action_value,
                    "timestamp": format_timestamp(self._clock()),
                    "details": details,
                },
            )
        except Exception:
            logger.exception(
                "Failed to log %s activity for event %s by user %s",
                action,
                event_id,
                user_id,
            )
            return None

    def record(
        self,
        event: Event,
        actor: UserRef,
        action: ActivityAction,
        details: str | None = None,
    ) -> str | None:
        return self.log(
            event.id,
            event.title,
            actor.id,
            actor.name,
            action,
            user_photo_url=actor.photo_url,
            details=details,
        )

    def for_event(self, event_id: str, limit: int | None = None) -> list[ActivityLog]:
        """Return the newest entries for one event."""
        query = (
            Query(ACTIVITY_LOGS)
            .where("event_id", "==", event_id)
            .ordered("timestamp", descending=True)
            .limited(limit or settings.activity_log_limit)
        )
        return [ActivityLog.from_document(s) for s in self._store.query(query)]

    def for_organizer(
        self, organizer_id: str, limit: int | None = None
    ) -> list[ActivityLog]:
        """Return the newest entries across every event the organizer owns."""
        events = self._store.query(Query(EVENTS).where("organizer_id", "==", organizer_id))
        event_ids = [snapshot.id for snapshot in events]
        if not event_ids:
            return []
        query = (
            Query(ACTIVITY_LOGS)
            .where("event_id", "in", event_ids)
            .ordered("timestamp", descending=True)
            .limited(limit or settings.organizer_activity_limit)
        )
        return [ActivityLog.from_document(s) for s in self._store.query(query)]

    def watch_event(
        self,
        event_id: str,
        callback: Callable[[list[ActivityLog]], None],
        limit: int | None = None,
    ) -> Callable[[], None]:
        """Push the event's newest entries to ``callback`` on every change."""
        query = (
            Query(ACTIVITY_LOGS)
            .where("event_id", "==", event_id)
            .ordered("timestamp", descending=True)
            .limited(limit or settings.activity_log_limit)
        )
        return self._store.subscribe(
            query,
            lambda snapshots: callback([ActivityLog.from_document(s) for s in snapshots]),
        )
