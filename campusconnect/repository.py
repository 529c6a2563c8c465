"""Event repository: guarded writes against the store plus a local mirror.

Every mutating operation re-reads the event, checks its preconditions against
that fresh copy, then issues a single update built from field transforms. The
same transforms are applied to the local mirror so readers see the change
before the next snapshot arrives. Snapshots always replace the mirror outright.
"""

from __future__ import annotations

import logging
import secrets
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from .activity import ActivityLogger
from .config import settings
from .docstore import (
    SERVER_TIMESTAMP,
    DocumentSnapshot,
    DocumentStore,
    Query,
    array_remove,
    array_union,
    increment,
)
from .entities import ACTIVITY_LOGS, EVENTS, ActivityAction, Comment, Event, UserRef
from .errors import ErrorKind, OperationError, OperationResult, operation
from .reactive import ObservableState
from .utils import format_timestamp, new_id, parse_timestamp, unique, utcnow

logger = logging.getLogger("uvicorn.error")

LOAD_ERROR_MESSAGE = "Failed to load events from database"

EDITABLE_FIELDS = frozenset(
    {
        "title",
        "description",
        "venue",
        "category",
        "tags",
        "image_url",
        "event_date",
        "end_date",
        "max_attendees",
        "is_public",
        "rsvp_open",
        "allow_comments",
        "trending",
        "featured",
        "club_id",
    }
)
BOOLEAN_FIELDS = frozenset(
    {"is_public", "rsvp_open", "allow_comments", "trending", "featured"}
)
DATE_FIELDS = frozenset({"event_date", "end_date"})


@dataclass(frozen=True)
class EventsState:
    events: tuple[Event, ...] = ()
    loading: bool = True
    error: str | None = None


def _clean_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Validate editable fields and return them in stored form."""
    rejected = sorted(set(fields) - EDITABLE_FIELDS)
    if rejected:
        raise OperationError(
            ErrorKind.INVALID_INPUT, f"Cannot update fields: {', '.join(rejected)}"
        )
    cleaned: dict[str, Any] = {}
    for key, value in fields.items():
        if key == "title":
            title = (value or "").strip() if isinstance(value, str) else ""
            if not title:
                raise OperationError(ErrorKind.INVALID_INPUT, "Title is required")
            cleaned[key] = title
        elif key in DATE_FIELDS:
            if value in (None, ""):
                cleaned[key] = None
                continue
            parsed = parse_timestamp(value)
            if parsed is None:
                raise OperationError(ErrorKind.INVALID_INPUT, f"Invalid {key}")
            cleaned[key] = format_timestamp(parsed)
        elif key == "max_attendees":
            if value is None:
                cleaned[key] = None
            elif isinstance(value, int) and not isinstance(value, bool) and value > 0:
                cleaned[key] = value
            else:
                raise OperationError(
                    ErrorKind.INVALID_INPUT, "Max attendees must be a positive number"
                )
        elif key in BOOLEAN_FIELDS:
            if not isinstance(value, bool):
                raise OperationError(ErrorKind.INVALID_INPUT, f"{key} must be true or false")
            cleaned[key] = value
        elif key == "tags":
            cleaned[key] = list(unique(value))
        else:
            cleaned[key] = value
    return cleaned


class EventRepository:
    """Owns the local mirror of public events and every event mutation."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        activity: ActivityLogger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._clock = clock
        self.activity = activity or ActivityLogger(store, clock=clock)
        self._state: ObservableState[EventsState] = ObservableState(EventsState())
        self._lock = threading.RLock()
        self._snapshot_seq = 0
        self._unsubscribe: Callable[[], None] | None = None

    # Reactive reads

    @property
    def state(self) -> EventsState:
        return self._state.value

    @property
    def events(self) -> tuple[Event, ...]:
        return self._state.value.events

    @property
    def loading(self) -> bool:
        return self._state.value.loading

    @property
    def error(self) -> str | None:
        return self._state.value.error

    def subscribe(
        self, callback: Callable[[EventsState], None], *, replay: bool = True
    ) -> Callable[[], None]:
        return self._state.subscribe(callback, replay=replay)

    def events_for(self, viewer_id: str | None) -> tuple[Event, ...]:
        return tuple(event.for_viewer(viewer_id) for event in self.events)

    def find(self, event_id: str) -> Event | None:
        return next((e for e in self.events if e.id == event_id), None)

    # Subscription lifecycle

    def start(self) -> None:
        if self._unsubscribe is not None:
            return
        query = Query(EVENTS).where("is_public", "==", True).ordered("event_date")
        self._state.update(lambda state: replace(state, loading=True))
        self._unsubscribe = self._store.subscribe(
            query, self._apply_snapshot, self._snapshot_failed
        )
        logger.info("Listening for public event changes")

    def stop(self) -> None:
        if self._unsubscribe is None:
            return
        self._unsubscribe()
        self._unsubscribe = None
        logger.info("Stopped listening for public event changes")

    def _apply_snapshot(self, snapshots: list[DocumentSnapshot]) -> None:
        events = tuple(Event.from_document(s) for s in snapshots)
        with self._lock:
            self._snapshot_seq += 1
            self._state.set(EventsState(events=events, loading=False, error=None))

    def _snapshot_failed(self, exc: Exception) -> None:
        logger.error("Error loading events: %s", exc)
        self._state.update(
            lambda state: replace(state, loading=False, error=LOAD_ERROR_MESSAGE)
        )

    def _patch_local(
        self, event_id: str, patch: Callable[[Event], Event | None], seen_seq: int
    ) -> None:
        """Apply ``patch`` to the mirrored event; ``None`` drops it.

        Skipped when a snapshot landed after ``seen_seq`` was read, since that
        snapshot already reflects the write.
        """

        def apply(state: EventsState) -> EventsState:
            if not any(e.id == event_id for e in state.events):
                return state
            events = []
            for event in state.events:
                if event.id == event_id:
                    event = patch(event)
                    if event is None:
                        continue
                events.append(event)
            return replace(state, events=tuple(events))

        with self._lock:
            if self._snapshot_seq != seen_seq:
                return
            self._state.update(apply)

    # Shared steps

    def _load(self, event_id: str) -> Event:
        snapshot = self._store.get(EVENTS, event_id)
        if snapshot is None:
            raise OperationError(ErrorKind.NOT_FOUND)
        return Event.from_document(snapshot)

    def _write(
        self, event: Event, updates: Mapping[str, Any], viewer_id: str | None = None
    ) -> Event:
        seen_seq = self._snapshot_seq
        self._store.update(EVENTS, event.id, updates)
        self._patch_local(event.id, lambda e: e.apply(updates), seen_seq)
        return event.apply(updates).for_viewer(viewer_id)

    def _record(
        self,
        event: Event,
        user_id: str,
        actor: UserRef | None,
        action: ActivityAction,
        details: str | None = None,
    ) -> None:
        self.activity.record(event, actor or UserRef(user_id), action, details)

    # Reads

    @operation("get event")
    def get(self, event_id: str, viewer_id: str | None = None) -> OperationResult:
        return OperationResult.ok(self._load(event_id).for_viewer(viewer_id))

    # Lifecycle

    @operation("create event")
    def create(self, fields: Mapping[str, Any], organizer: UserRef) -> OperationResult:
        if "title" not in fields:
            raise OperationError(ErrorKind.INVALID_INPUT, "Title is required")
        cleaned = _clean_fields(fields)
        now = self._clock()
        draft = Event(
            id="",
            title=cleaned["title"],
            organizer=organizer,
            created_at=now,
            updated_at=now,
            qr_code=secrets.token_urlsafe(12),
        )
        document = {**draft.to_document(), **cleaned}
        event_id = self._store.add(EVENTS, document)
        logger.info("Event %s created by %s", event_id, organizer.id)
        return OperationResult.ok(Event.from_data(event_id, document))

    @operation("update event")
    def update(self, event_id: str, fields: Mapping[str, Any]) -> OperationResult:
        cleaned = _clean_fields(fields)
        event = self._load(event_id)
        updates = {**cleaned, "updated_at": SERVER_TIMESTAMP}
        return OperationResult.ok(self._write(event, updates))

    @operation("delete event")
    def delete(self, event_id: str) -> OperationResult:
        self._load(event_id)
        # Logs are matched inside the commit so none written meanwhile survive.
        batch = self._store.batch()
        batch.delete(EVENTS, event_id)
        batch.delete_matching(Query(ACTIVITY_LOGS).where("event_id", "==", event_id))
        seen_seq = self._snapshot_seq
        _, deleted_logs = batch.commit()
        self._patch_local(event_id, lambda e: None, seen_seq)
        return OperationResult.ok({"id": event_id, "deleted_logs": deleted_logs})

    # Attendance

    @operation("rsvp")
    def rsvp(
        self, event_id: str, user_id: str, *, actor: UserRef | None = None
    ) -> OperationResult:
        event = self._load(event_id)
        if user_id in event.rsvp:
            raise OperationError(ErrorKind.ALREADY_RSVPD)
        if not event.rsvp_open:
            raise OperationError(ErrorKind.RSVP_CLOSED)
        # Not transactional: concurrent requests can both pass this check.
        if event.is_full:
            raise OperationError(ErrorKind.EVENT_FULL)
        updated = self._write(
            event,
            {"rsvp": array_union(user_id), "current_attendees": increment(1)},
            user_id,
        )
        self._record(event, user_id, actor, ActivityAction.RSVP)
        return OperationResult.ok(updated)

    @operation("cancel rsvp")
    def cancel_rsvp(
        self, event_id: str, user_id: str, *, actor: UserRef | None = None
    ) -> OperationResult:
        event = self._load(event_id)
        if user_id not in event.rsvp:
            raise OperationError(ErrorKind.NOT_RSVPD)
        updated = self._write(
            event,
            {
                "rsvp": array_remove(user_id),
                "current_attendees": increment(-1, minimum=0),
            },
            user_id,
        )
        self._record(event, user_id, actor, ActivityAction.CANCEL_RSVP)
        return OperationResult.ok(updated)

    @operation("check in")
    def check_in(
        self,
        event_id: str,
        user_id: str,
        presented_code: str | None = None,
        *,
        actor: UserRef | None = None,
    ) -> OperationResult:
        event = self._load(event_id)
        if presented_code is not None and (
            not event.qr_code
            or not secrets.compare_digest(
                presented_code.encode("utf-8"), event.qr_code.encode("utf-8")
            )
        ):
            raise OperationError(ErrorKind.INVALID_CODE)
        if user_id not in event.rsvp:
            raise OperationError(ErrorKind.RSVP_REQUIRED)
        if user_id in event.checked_in_attendees:
            raise OperationError(ErrorKind.ALREADY_CHECKED_IN)
        updated = self._write(
            event, {"checked_in_attendees": array_union(user_id)}, user_id
        )
        self._record(event, user_id, actor, ActivityAction.CHECKIN)
        return OperationResult.ok(updated)

    # Reactions

    def _toggle(
        self,
        event_id: str,
        user_id: str,
        field_name: str,
        add: bool,
        action: ActivityAction,
        actor: UserRef | None,
    ) -> OperationResult:
        event = self._load(event_id)
        transform = array_union(user_id) if add else array_remove(user_id)
        updated = self._write(event, {field_name: transform}, user_id)
        self._record(event, user_id, actor, action)
        return OperationResult.ok(updated)

    @operation("like")
    def like(
        self, event_id: str, user_id: str, *, actor: UserRef | None = None
    ) -> OperationResult:
        return self._toggle(event_id, user_id, "likes", True, ActivityAction.LIKE, actor)

    @operation("unlike")
    def unlike(
        self, event_id: str, user_id: str, *, actor: UserRef | None = None
    ) -> OperationResult:
        return self._toggle(
            event_id, user_id, "likes", False, ActivityAction.UNLIKE, actor
        )

    @operation("save")
    def save(
        self, event_id: str, user_id: str, *, actor: UserRef | None = None
    ) -> OperationResult:
        return self._toggle(event_id, user_id, "saves", True, ActivityAction.SAVE, actor)

    @operation("unsave")
    def unsave(
        self, event_id: str, user_id: str, *, actor: UserRef | None = None
    ) -> OperationResult:
        return self._toggle(
            event_id, user_id, "saves", False, ActivityAction.UNSAVE, actor
        )

    @operation("comment")
    def add_comment(
        self,
        event_id: str,
        user_id: str,
        text: str,
        *,
        actor: UserRef | None = None,
    ) -> OperationResult:
        event = self._load(event_id)
        if not event.allow_comments:
            raise OperationError(ErrorKind.COMMENTS_DISABLED)
        body = (text or "").strip()
        if not body:
            raise OperationError(ErrorKind.INVALID_INPUT, "Comment cannot be empty")
        if len(body) > settings.comment_max_length:
            raise OperationError(
                ErrorKind.INVALID_INPUT,
                f"Comments are limited to {settings.comment_max_length} characters",
            )
        author = actor or UserRef(user_id)
        comment = Comment(
            id=new_id(),
            user_id=user_id,
            user_name=author.name,
            user_photo_url=author.photo_url,
            text=body,
            created_at=self._clock(),
        )
        updated = self._write(
            event, {"comments": array_union(comment.to_dict())}, user_id
        )
        self._record(event, user_id, author, ActivityAction.COMMENT, body)
        return OperationResult.ok(updated)

    # Counters

    @operation("share")
    def share(self, event_id: str, *, actor: UserRef | None = None) -> OperationResult:
        event = self._load(event_id)
        updated = self._write(
            event, {"share_count": increment(1)}, actor.id if actor else None
        )
        if actor is not None:
            self.activity.record(event, actor, ActivityAction.SHARE)
        return OperationResult.ok(updated)

    @operation("record view")
    def record_view(
        self, event_id: str, viewer_id: str | None = None
    ) -> OperationResult:
        event = self._load(event_id)
        return OperationResult.ok(
            self._write(event, {"view_count": increment(1)}, viewer_id)
        )
