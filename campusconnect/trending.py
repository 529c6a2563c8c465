"""Periodic refresh of the ``trending`` flag on public events."""

from __future__ import annotations

import logging
from datetime import datetime

from .config import settings
from .docstore import DocumentStore, Query
from .entities import EVENTS, Event
from .utils import utcnow
from .views import SortKey, sort_events, trending_score

logger = logging.getLogger("uvicorn.error")


def refresh_trending(
    store: DocumentStore,
    *,
    now: datetime | None = None,
    limit: int | None = None,
    min_score: int | None = None,
) -> dict:
    """Flag the highest-scoring upcoming public events and unflag the rest."""
    now = now or utcnow()
    limit = settings.trending_limit if limit is None else limit
    min_score = settings.trending_min_score if min_score is None else min_score
    stats = {"candidates": 0, "flagged": 0, "unflagged": 0, "unchanged": 0}

    logger.info(
        "Trending refresh started (limit=%d, min_score=%d)", limit, min_score
    )
    events = [
        Event.from_document(s)
        for s in store.query(Query(EVENTS).where("is_public", "==", True))
    ]
    upcoming = [e for e in events if e.event_date is not None and e.event_date > now]
    stats["candidates"] = len(upcoming)
    ranked = sort_events(upcoming, SortKey.TRENDING)
    chosen = {e.id for e in ranked[:limit] if trending_score(e) >= min_score}

    batch = store.batch()
    for event in events:
        should_trend = event.id in chosen
        if event.trending == should_trend:
            stats["unchanged"] += 1
            continue
        batch.update(EVENTS, event.id, {"trending": should_trend})
        stats["flagged" if should_trend else "unflagged"] += 1
    if len(batch):
        batch.commit()

    logger.info(
        "Trending refresh finished: %d candidates, %d flagged, %d unflagged, %d unchanged",
        stats["candidates"],
        stats["flagged"],
        stats["unflagged"],
        stats["unchanged"],
    )
    return stats
