from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from campusconnect.entities import Event, UserRef
from campusconnect.reactive import ObservableState
from campusconnect.repository import EventsState
from campusconnect.views import (
    EventFeed,
    FeedFilter,
    FeedQuery,
    KeysetCursor,
    SortKey,
    decode_cursor,
    encode_cursor,
    filter_events,
    member_schedule,
    organizer_analytics,
    paginate,
    sort_events,
    top_trending,
    trending_score,
)

NOW = datetime(2026, 3, 1, 12, 0, 0)
ORGANIZER = UserRef("org-1", "Olive")


def _event(event_id, **overrides):
    overrides.setdefault("title", event_id.title())
    overrides.setdefault("event_date", NOW + timedelta(days=1))
    return Event(id=event_id, organizer=ORGANIZER, **overrides)


def _users(n, prefix="u"):
    return tuple(f"{prefix}{i}" for i in range(n))


def test_trending_sort_weights_rsvps_double():
    a = _event("a", rsvp=_users(3), likes=_users(1))
    b = _event("b", rsvp=_users(1), likes=_users(5))

    assert trending_score(a) == 7
    assert trending_score(b) == 6
    assert [e.id for e in sort_events([b, a], SortKey.TRENDING)] == ["a", "b"]


def test_date_sort_ignores_engagement():
    early = _event("early", event_date=NOW + timedelta(days=1))
    late = _event("late", event_date=NOW + timedelta(days=3), rsvp=_users(50))
    undated = _event("undated", event_date=None)

    ordered = sort_events([undated, late, early], SortKey.DATE)
    assert [e.id for e in ordered] == ["early", "late", "undated"]


def test_other_sort_keys():
    old = _event("old", created_at=NOW - timedelta(days=5), saves=_users(3))
    new = _event("new", created_at=NOW, likes=_users(2), rsvp=_users(2))

    assert [e.id for e in sort_events([old, new], SortKey.RECENT)] == ["new", "old"]
    assert [e.id for e in sort_events([old, new], SortKey.POPULARITY)] == ["new", "old"]
    assert [e.id for e in sort_events([new, old], SortKey.SAVES)] == ["old", "new"]


def test_sort_does_not_mutate_source():
    source = [_event("b", rsvp=_users(1)), _event("a", rsvp=_users(2))]
    sort_events(source, SortKey.POPULARITY)
    assert [e.id for e in source] == ["b", "a"]


def test_filter_by_search_category_and_flags():
    events = [
        _event("jazz", title="Jazz Night", category="arts", tags=("music",)),
        _event("code", title="Code Jam", description="Bring a laptop", category="tech", featured=True),
        _event("past", title="Old Talk", event_date=NOW - timedelta(days=1), trending=True),
    ]

    def ids(query):
        return [e.id for e in filter_events(events, query, NOW)]

    assert ids(FeedQuery(search="MUSIC")) == ["jazz"]
    assert ids(FeedQuery(search="laptop")) == ["code"]
    assert ids(FeedQuery(category="tech")) == ["code"]
    assert ids(FeedQuery(category="all")) == ["jazz", "code", "past"]
    assert ids(FeedQuery(flag=FeedFilter.UPCOMING)) == ["jazz", "code"]
    assert ids(FeedQuery(flag=FeedFilter.TRENDING)) == ["past"]
    assert ids(FeedQuery(flag=FeedFilter.FEATURED)) == ["code"]


def test_cursor_round_trip_preserves_types():
    for value in (NOW, 7, None, "text"):
        cursor = KeysetCursor(sort_value=value, entity_id="e1", sort_field="date")
        assert decode_cursor(encode_cursor(cursor)) == cursor


@pytest.mark.parametrize("raw", ["not base64!", "bm90IGpzb24=", "e30="])
def test_decode_cursor_rejects_garbage(raw):
    with pytest.raises(ValueError):
        decode_cursor(raw)


def test_paginate_walks_all_items_once():
    events = sort_events(
        [_event(f"e{i}", event_date=NOW + timedelta(days=i % 3)) for i in range(7)],
        SortKey.DATE,
    )
    seen = []
    cursor = None
    while True:
        page = paginate(events, SortKey.DATE, cursor, limit=3)
        seen.extend(e.id for e in page.items)
        cursor = page.next_cursor
        if cursor is None:
            break

    assert seen == [e.id for e in events]


def test_paginate_rejects_cursor_from_other_sort():
    events = sort_events([_event("a"), _event("b")], SortKey.DATE)
    cursor = paginate(events, SortKey.DATE, limit=1).next_cursor
    with pytest.raises(ValueError):
        paginate(events, SortKey.TRENDING, cursor, limit=1)


class _Source:
    """Stand-in for a repository's reactive state."""

    def __init__(self, events):
        self.state = ObservableState(EventsState(events=tuple(events), loading=False))

    def subscribe(self, callback, *, replay=True):
        return self.state.subscribe(callback, replay=replay)

    def push(self, events):
        self.state.set(EventsState(events=tuple(events), loading=False))


def test_feed_fetch_more_appends_and_query_change_resets():
    events = [_event(f"e{i}", event_date=NOW + timedelta(hours=i)) for i in range(5)]
    source = _Source(events)
    feed = EventFeed(source, page_size=2, clock=lambda: NOW)

    assert [e.id for e in feed.items] == ["e0", "e1"]
    assert [e.id for e in feed.fetch_more()] == ["e2", "e3"]
    assert [e.id for e in feed.items] == ["e0", "e1", "e2", "e3"]
    assert feed.has_more

    feed.update_query(search="e4")
    assert [e.id for e in feed.items] == ["e4"]
    assert not feed.has_more
    assert feed.fetch_more() == ()
    feed.close()


def test_feed_recomputes_on_source_change_and_keeps_pages():
    events = [_event(f"e{i}", event_date=NOW + timedelta(hours=i)) for i in range(4)]
    source = _Source(events)
    feed = EventFeed(source, page_size=2, viewer_id="u1", clock=lambda: NOW)
    feed.fetch_more()

    liked = replace(events[3], likes=("u1",))
    source.push([*events[:3], liked, _event("e9", event_date=NOW - timedelta(hours=1))])

    assert [e.id for e in feed.items] == ["e9", "e0", "e1", "e2"]
    assert feed.state.total == 5
    assert feed.fetch_more()[0].user_has_liked
    assert [e.id for e in source.state.value.events][:3] == ["e0", "e1", "e2"]


def test_organizer_analytics_totals():
    events = [
        _event("a", rsvp=_users(3), likes=_users(2), checked_in_attendees=_users(2), share_count=1, view_count=10),
        _event("b", rsvp=_users(2), saves=_users(1), event_date=NOW - timedelta(days=1)),
        Event(id="c", title="Someone else's", organizer=UserRef("org-2"), rsvp=_users(9)),
    ]

    stats = organizer_analytics(events, "org-1", NOW)

    assert stats.total_events == 2
    assert stats.total_attendees == 5
    assert stats.total_likes == 2
    assert stats.upcoming_events == 1
    assert stats.average_attendees == 3
    assert stats.total_check_ins == 2
    assert stats.total_shares == 1
    assert stats.total_views == 10
    assert stats.total_saves == 1
    assert stats.events[0].attendance_rate == 0.67
    assert stats.events[1].attendance_rate == 0.0
    assert organizer_analytics(events, "nobody", NOW).total_events == 0


def test_top_trending_picks_upcoming_by_popularity():
    events = [
        _event("quiet"),
        _event("busy", rsvp=_users(4)),
        _event("past", rsvp=_users(10), event_date=NOW - timedelta(days=1)),
        _event("liked", likes=_users(2)),
    ]
    assert [e.id for e in top_trending(events, NOW, limit=2)] == ["busy", "liked"]


def test_member_schedule_splits_upcoming_and_attended():
    events = [
        _event("soon", rsvp=("u1",), event_date=NOW + timedelta(days=1)),
        _event("later", rsvp=("u1",), event_date=NOW + timedelta(days=5)),
        _event("yesterday", rsvp=("u1",), event_date=NOW - timedelta(days=1)),
        _event("lastweek", rsvp=("u1",), event_date=NOW - timedelta(days=7)),
        _event("notmine", rsvp=("u2",)),
    ]

    schedule = member_schedule(events, "u1", NOW)

    assert [e.id for e in schedule.upcoming] == ["soon", "later"]
    assert [e.id for e in schedule.attended] == ["yesterday", "lastweek"]
    assert all(e.user_has_rsvpd for e in schedule.upcoming)
