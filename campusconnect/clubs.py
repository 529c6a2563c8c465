"""Club membership, mirrored the same way as events."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from .docstore import DocumentSnapshot, DocumentStore, Query, array_remove, array_union, increment
from .entities import CLUBS, Club, UserRef
from .errors import ErrorKind, OperationError, OperationResult, operation
from .reactive import ObservableState
from .utils import utcnow

logger = logging.getLogger("uvicorn.error")

CLUB_NOT_FOUND = "Club not found"
CLUB_FIELDS = frozenset({"name", "description", "category", "logo_url", "cover_image_url"})


@dataclass(frozen=True)
class ClubsState:
    clubs: tuple[Club, ...] = ()
    loading: bool = True
    error: str | None = None


class ClubRepository:
    def __init__(
        self, store: DocumentStore, *, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self._store = store
        self._clock = clock
        self._state: ObservableState[ClubsState] = ObservableState(ClubsState())
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def state(self) -> ClubsState:
        return self._state.value

    @property
    def clubs(self) -> tuple[Club, ...]:
        return self._state.value.clubs

    def subscribe(
        self, callback: Callable[[ClubsState], None], *, replay: bool = True
    ) -> Callable[[], None]:
        return self._state.subscribe(callback, replay=replay)

    def start(self) -> None:
        if self._unsubscribe is not None:
            return
        query = (
            Query(CLUBS)
            .where("is_active", "==", True)
            .ordered("created_at", descending=True)
        )
        self._unsubscribe = self._store.subscribe(
            query, self._apply_snapshot, self._snapshot_failed
        )

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _apply_snapshot(self, snapshots: list[DocumentSnapshot]) -> None:
        clubs = tuple(Club.from_document(s) for s in snapshots)
        self._state.set(ClubsState(clubs=clubs, loading=False))

    def _snapshot_failed(self, exc: Exception) -> None:
        logger.error("Error loading clubs: %s", exc)
        self._state.update(
            lambda state: replace(state, loading=False, error="Failed to load clubs")
        )

    def _load(self, club_id: str) -> Club:
        snapshot = self._store.get(CLUBS, club_id)
        if snapshot is None:
            raise OperationError(ErrorKind.NOT_FOUND, CLUB_NOT_FOUND)
        return Club.from_document(snapshot)

    @operation("create club")
    def create(self, fields: Mapping[str, Any], creator: UserRef) -> OperationResult:
        """Create a club with ``creator`` as its first and only member."""
        rejected = sorted(set(fields) - CLUB_FIELDS)
        if rejected:
            raise OperationError(
                ErrorKind.INVALID_INPUT, f"Unknown club fields: {', '.join(rejected)}"
            )
        name = fields.get("name")
        if not isinstance(name, str) or not name.strip():
            raise OperationError(ErrorKind.INVALID_INPUT, "Club name is required")
        club = Club(
            id="",
            name=name.strip(),
            created_by=creator.id,
            description=fields.get("description") or "",
            category=fields.get("category") or "",
            logo_url=fields.get("logo_url"),
            cover_image_url=fields.get("cover_image_url"),
            members=(creator.id,),
            member_count=1,
            is_active=True,
            created_at=self._clock(),
        )
        club_id = self._store.add(CLUBS, club.to_document())
        return OperationResult.ok(replace(club, id=club_id))

    @operation("join club", not_found=CLUB_NOT_FOUND)
    def join(self, club_id: str, user_id: str) -> OperationResult:
        club = self._load(club_id)
        if user_id in club.members:
            raise OperationError(ErrorKind.ALREADY_MEMBER)
        self._store.update(
            CLUBS,
            club_id,
            {"members": array_union(user_id), "member_count": increment(1)},
        )
        return OperationResult.ok(
            replace(club, members=club.members + (user_id,), member_count=club.member_count + 1)
        )

    @operation("leave club", not_found=CLUB_NOT_FOUND)
    def leave(self, club_id: str, user_id: str) -> OperationResult:
        club = self._load(club_id)
        if user_id not in club.members:
            raise OperationError(ErrorKind.NOT_MEMBER)
        self._store.update(
            CLUBS,
            club_id,
            {"members": array_remove(user_id), "member_count": increment(-1, minimum=0)},
        )
        return OperationResult.ok(
            replace(
                club,
                members=tuple(m for m in club.members if m != user_id),
                member_count=max(club.member_count - 1, 0),
            )
        )
