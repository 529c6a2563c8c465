from __future__ import annotations

from datetime import timedelta

from campusconnect import scheduler
from campusconnect.entities import EVENTS
from campusconnect.trending import refresh_trending


def _trending(store, event_id):
    return store.get(EVENTS, event_id).get("trending")


def test_refresh_flags_top_upcoming_events(repo, store, make_event, now):
    hot = make_event(title="Hot")
    warm = make_event(title="Warm")
    cold = make_event(title="Cold")
    past = make_event(title="Past", event_date=now - timedelta(days=1))
    for user in ("u1", "u2", "u3"):
        repo.rsvp(hot.id, user)
        repo.rsvp(past.id, user)
    repo.rsvp(warm.id, "u1")
    repo.like(warm.id, "u2")
    repo.update(cold.id, {"trending": True})

    stats = refresh_trending(store, now=now, limit=1, min_score=3)

    assert _trending(store, hot.id) is True
    assert _trending(store, warm.id) is False
    assert _trending(store, cold.id) is False
    assert _trending(store, past.id) is False
    assert stats["candidates"] == 3
    assert stats["flagged"] == 1
    assert stats["unflagged"] == 1


def test_refresh_respects_minimum_score(repo, store, make_event, now):
    event = make_event()
    repo.like(event.id, "u1")

    stats = refresh_trending(store, now=now, limit=5, min_score=3)

    assert stats["flagged"] == 0
    assert _trending(store, event.id) is False


def test_private_events_are_never_flagged(repo, store, make_event, now):
    event = make_event(is_public=False)
    for user in ("u1", "u2", "u3"):
        repo.rsvp(event.id, user)

    refresh_trending(store, now=now, limit=5, min_score=0)

    assert _trending(store, event.id) is False


def test_refresh_reaches_started_repository_mirror(repo, store, make_event, now):
    repo.start()
    event = make_event()
    for user in ("u1", "u2"):
        repo.rsvp(event.id, user)
    assert repo.find(event.id).trending is False

    refresh_trending(store, now=now, limit=5, min_score=3)

    assert repo.find(event.id).trending is True
    repo.stop()


def test_scheduler_registers_refresh_job(monkeypatch):
    started = {}

    class FakeScheduler:
        running = False

        def __init__(self, **kwargs):
            started["kwargs"] = kwargs
            self.jobs = []

        def add_job(self, func, trigger, **kwargs):
            self.jobs.append((func, trigger, kwargs))

        def start(self):
            self.running = True
            started["scheduler"] = self

        def shutdown(self, wait=True):
            self.running = False

    monkeypatch.setattr(scheduler, "BackgroundScheduler", FakeScheduler)
    monkeypatch.setattr(scheduler, "_scheduler", None)

    store = object()
    instance = scheduler.start_scheduler(store)
    assert scheduler.start_scheduler(store) is instance
    func, trigger, kwargs = instance.jobs[0]
    assert func is refresh_trending
    assert trigger == "interval"
    assert kwargs["args"] == [store]
    assert kwargs["id"] == "trending-refresh"

    scheduler.stop_scheduler()
    assert not instance.running
    assert scheduler._scheduler is None
