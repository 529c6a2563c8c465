"""APScheduler integration."""

from __future__ import annotations

from apscheduler.schedulers.background import BackgroundScheduler

from .config import settings
from .docstore import DocumentStore
from .trending import refresh_trending

_scheduler: BackgroundScheduler | None = None


def start_scheduler(store: DocumentStore) -> BackgroundScheduler:
    """Run the trending refresh against ``store`` so its listeners see the writes."""
    global _scheduler
    if _scheduler and _scheduler.running:
        return _scheduler
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        refresh_trending,
        "interval",
        minutes=settings.trending_refresh_minutes,
        args=[store],
        id="trending-refresh",
        max_instances=1,
        replace_existing=True,
    )
    scheduler.start()
    _scheduler = scheduler
    return scheduler


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        _scheduler = None
