"""Read-only projections over the mirrored event collection.

Everything here is a pure function of its inputs except :class:`EventFeed`,
which binds those functions to a repository and recomputes on change.
"""

from __future__ import annotations

import base64
import binascii
import json
import threading
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from .config import settings
from .entities import Event
from .reactive import ObservableState
from .utils import utcnow

EPOCH = datetime(1970, 1, 1)


class SortKey(str, Enum):
    DATE = "date"
    POPULARITY = "popularity"
    TRENDING = "trending"
    RECENT = "recent"
    SAVES = "saves"


class FeedFilter(str, Enum):
    ALL = "all"
    TRENDING = "trending"
    UPCOMING = "upcoming"
    FEATURED = "featured"


@dataclass(frozen=True)
class FeedQuery:
    search: str = ""
    category: str | None = None
    flag: FeedFilter = FeedFilter.ALL
    sort: SortKey = SortKey.DATE


def popularity_score(event: Event) -> int:
    return len(event.rsvp) + len(event.likes)


def trending_score(event: Event) -> int:
    return 2 * len(event.rsvp) + len(event.likes) + event.share_count


def _is_upcoming(event: Event, now: datetime) -> bool:
    return event.event_date is not None and event.event_date > now


def _matches_search(event: Event, term: str) -> bool:
    haystacks = [event.title, event.description, event.venue, *event.tags]
    return any(term in (text or "").lower() for text in haystacks)


def filter_events(
    events: Iterable[Event], query: FeedQuery, now: datetime | None = None
) -> tuple[Event, ...]:
    now = now or utcnow()
    term = query.search.strip().lower()
    category = None if query.category in (None, "", "all") else query.category
    result = []
    for event in events:
        if term and not _matches_search(event, term):
            continue
        if category is not None and event.category != category:
            continue
        if query.flag is FeedFilter.TRENDING and not event.trending:
            continue
        if query.flag is FeedFilter.FEATURED and not event.featured:
            continue
        if query.flag is FeedFilter.UPCOMING and not _is_upcoming(event, now):
            continue
        result.append(event)
    return tuple(result)


def _seconds(value: datetime) -> float:
    return (value - EPOCH).total_seconds()


def sort_value(event: Event, sort: SortKey) -> Any:
    """The value an event is ordered by under ``sort``."""
    if sort is SortKey.DATE:
        return event.event_date
    if sort is SortKey.RECENT:
        return event.created_at
    if sort is SortKey.POPULARITY:
        return popularity_score(event)
    if sort is SortKey.TRENDING:
        return trending_score(event)
    return len(event.saves)


def _rank(sort: SortKey, value: Any, entity_id: str) -> tuple:
    # Ascending tuples; missing dates sort last, ids break ties.
    if sort is SortKey.DATE:
        return (value is None, _seconds(value) if value else 0.0, entity_id)
    if sort is SortKey.RECENT:
        return (value is None, -_seconds(value) if value else 0.0, entity_id)
    return (False, -(value or 0), entity_id)


def _event_rank(event: Event, sort: SortKey) -> tuple:
    return _rank(sort, sort_value(event, sort), event.id)


def sort_events(events: Iterable[Event], sort: SortKey) -> tuple[Event, ...]:
    return tuple(sorted(events, key=lambda e: _event_rank(e, sort)))


# Cursors


@dataclass(frozen=True)
class KeysetCursor:
    """Position after the last item of a page in a given sort order."""

    sort_value: Any
    entity_id: str
    sort_field: str


def encode_cursor(cursor: KeysetCursor) -> str:
    """Encode a cursor payload using URL-safe base64."""

    value = cursor.sort_value
    if isinstance(value, datetime):
        payload = {"v": value.isoformat(), "t": "datetime"}
    elif isinstance(value, (int, float)):
        payload = {"v": value, "t": "number"}
    elif value is None:
        payload = {"v": None, "t": "null"}
    else:
        payload = {"v": str(value), "t": "string"}
    payload.update({"id": cursor.entity_id, "f": cursor.sort_field})
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_cursor(value: str) -> KeysetCursor:
    """Decode a cursor string produced by :func:`encode_cursor`."""

    try:
        raw = base64.urlsafe_b64decode(value.encode("ascii"))
        payload = json.loads(raw.decode("utf-8"))
    except (ValueError, UnicodeError, binascii.Error) as exc:
        raise ValueError("invalid_cursor") from exc
    if not isinstance(payload, dict):
        raise ValueError("invalid_cursor")
    sort_type = payload.get("t")
    sort_value: Any
    try:
        if sort_type == "datetime":
            sort_value = datetime.fromisoformat(payload["v"])
        elif sort_type == "number":
            sort_value = payload["v"]
            if not isinstance(sort_value, (int, float)):
                raise ValueError("invalid_cursor")
        elif sort_type == "null":
            sort_value = None
        else:
            sort_value = str(payload.get("v", ""))
    except (KeyError, TypeError) as exc:
        raise ValueError("invalid_cursor") from exc
    entity_id = payload.get("id")
    if not entity_id or not isinstance(entity_id, str):
        raise ValueError("invalid_cursor")
    sort_field = str(payload.get("f") or SortKey.DATE.value)
    return KeysetCursor(sort_value=sort_value, entity_id=entity_id, sort_field=sort_field)


@dataclass(frozen=True)
class Page:
    items: tuple[Event, ...]
    next_cursor: str | None = None


def paginate(
    events: Sequence[Event],
    sort: SortKey,
    cursor: str | None = None,
    limit: int | None = None,
) -> Page:
    """Return the page after ``cursor`` from ``events`` already sorted by ``sort``."""
    limit = limit or settings.events_per_page
    remaining: Sequence[Event] = events
    if cursor:
        position = decode_cursor(cursor)
        if position.sort_field != sort.value:
            raise ValueError("invalid_cursor")
        start = _rank(sort, position.sort_value, position.entity_id)
        remaining = [e for e in events if _event_rank(e, sort) > start]
    items = tuple(remaining[:limit])
    next_cursor = None
    if len(remaining) > limit and items:
        last = items[-1]
        next_cursor = encode_cursor(
            KeysetCursor(sort_value(last, sort), last.id, sort.value)
        )
    return Page(items=items, next_cursor=next_cursor)


# Bound feed


@dataclass(frozen=True)
class FeedState:
    items: tuple[Event, ...] = ()
    next_cursor: str | None = None
    total: int = 0

    @property
    def has_more(self) -> bool:
        return self.next_cursor is not None


class EventFeed:
    """A paged, filtered and sorted view of a repository's events.

    The source collection is never modified. Loaded pages are kept across
    source changes; a new query starts again from the first page.
    """

    def __init__(
        self,
        source,
        query: FeedQuery | None = None,
        *,
        viewer_id: str | None = None,
        page_size: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._query = query or FeedQuery()
        self._viewer_id = viewer_id
        self._page_size = page_size or settings.events_per_page
        self._clock = clock
        self._source: tuple[Event, ...] = ()
        self._results: tuple[Event, ...] = ()
        self._pages = 1
        self._lock = threading.RLock()
        self._state: ObservableState[FeedState] = ObservableState(FeedState())
        self._unsubscribe = source.subscribe(self._on_source)

    @property
    def query(self) -> FeedQuery:
        return self._query

    @property
    def state(self) -> FeedState:
        return self._state.value

    @property
    def items(self) -> tuple[Event, ...]:
        return self._state.value.items

    @property
    def has_more(self) -> bool:
        return self._state.value.has_more

    def subscribe(
        self, callback: Callable[[FeedState], None], *, replay: bool = True
    ) -> Callable[[], None]:
        return self._state.subscribe(callback, replay=replay)

    def set_query(self, query: FeedQuery) -> None:
        with self._lock:
            self._query = query
            self._pages = 1
            self._rebuild()

    def update_query(self, **changes: Any) -> None:
        self.set_query(replace(self._query, **changes))

    def fetch_more(self) -> tuple[Event, ...]:
        """Append the next page and return just the new items."""
        with self._lock:
            current = self._state.value
            if current.next_cursor is None:
                return ()
            page = paginate(
                self._results, self._query.sort, current.next_cursor, self._page_size
            )
            self._pages += 1
            items = tuple(e.for_viewer(self._viewer_id) for e in page.items)
            self._state.set(
                replace(
                    current,
                    items=current.items + items,
                    next_cursor=page.next_cursor,
                )
            )
            return items

    def close(self) -> None:
        self._unsubscribe()

    def _on_source(self, source_state) -> None:
        with self._lock:
            self._source = tuple(source_state.events)
            self._rebuild()

    def _rebuild(self) -> None:
        filtered = filter_events(self._source, self._query, self._clock())
        self._results = sort_events(filtered, self._query.sort)
        items: list[Event] = []
        cursor = None
        for _ in range(self._pages):
            page = paginate(self._results, self._query.sort, cursor, self._page_size)
            items.extend(page.items)
            cursor = page.next_cursor
            if cursor is None:
                break
        self._state.set(
            FeedState(
                items=tuple(e.for_viewer(self._viewer_id) for e in items),
                next_cursor=cursor,
                total=len(self._results),
            )
        )


# Dashboards


@dataclass(frozen=True)
class EventStats:
    event_id: str
    title: str
    attendees: int
    checked_in: int
    likes: int
    attendance_rate: float


@dataclass(frozen=True)
class OrganizerAnalytics:
    total_events: int = 0
    total_attendees: int = 0
    total_likes: int = 0
    upcoming_events: int = 0
    average_attendees: int = 0
    total_check_ins: int = 0
    total_shares: int = 0
    total_views: int = 0
    total_saves: int = 0
    events: tuple[EventStats, ...] = field(default_factory=tuple)


def organizer_analytics(
    events: Iterable[Event], organizer_id: str, now: datetime | None = None
) -> OrganizerAnalytics:
    now = now or utcnow()
    owned = [e for e in events if e.organizer_id == organizer_id]
    if not owned:
        return OrganizerAnalytics()
    total_attendees = sum(len(e.rsvp) for e in owned)
    stats = tuple(
        EventStats(
            event_id=e.id,
            title=e.title,
            attendees=len(e.rsvp),
            checked_in=len(e.checked_in_attendees),
            likes=len(e.likes),
            attendance_rate=(
                round(len(e.checked_in_attendees) / len(e.rsvp), 2) if e.rsvp else 0.0
            ),
        )
        for e in owned
    )
    return OrganizerAnalytics(
        total_events=len(owned),
        total_attendees=total_attendees,
        total_likes=sum(len(e.likes) for e in owned),
        upcoming_events=sum(1 for e in owned if _is_upcoming(e, now)),
        # Half rounds up.
        average_attendees=int(total_attendees / len(owned) + 0.5),
        total_check_ins=sum(len(e.checked_in_attendees) for e in owned),
        total_shares=sum(e.share_count for e in owned),
        total_views=sum(e.view_count for e in owned),
        total_saves=sum(len(e.saves) for e in owned),
        events=stats,
    )


def top_trending(
    events: Iterable[Event], now: datetime | None = None, limit: int = 3
) -> tuple[Event, ...]:
    """Upcoming events with the most RSVPs plus likes."""
    now = now or utcnow()
    upcoming = [e for e in events if _is_upcoming(e, now)]
    return sort_events(upcoming, SortKey.POPULARITY)[:limit]


@dataclass(frozen=True)
class MemberSchedule:
    upcoming: tuple[Event, ...] = ()
    attended: tuple[Event, ...] = ()


def member_schedule(
    events: Iterable[Event],
    user_id: str,
    now: datetime | None = None,
    limit: int = 5,
) -> MemberSchedule:
    """A member's next RSVP'd events (soonest first) and past ones (latest first)."""
    now = now or utcnow()
    mine = [e for e in events if user_id in e.rsvp and e.event_date is not None]
    upcoming = sorted((e for e in mine if e.event_date > now), key=lambda e: e.event_date)
    past = sorted(
        (e for e in mine if e.event_date <= now),
        key=lambda e: e.event_date,
        reverse=True,
    )
    return MemberSchedule(
        upcoming=tuple(e.for_viewer(user_id) for e in upcoming[:limit]),
        attended=tuple(e.for_viewer(user_id) for e in past[:limit]),
    )
