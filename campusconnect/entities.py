"""Domain entities mirrored from the document store.

Entities are immutable; every change produces a new instance. Interaction
collections are tuples with set semantics (no duplicates), except ``comments``
which keeps insertion order.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any

from .docstore import DocumentSnapshot, apply_updates
from .utils import format_timestamp, parse_timestamp, unique

EVENTS = "events"
ACTIVITY_LOGS = "activity_logs"
CLUBS = "clubs"


def _int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return int(value)
    return default


def _optional_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def _bool(value: Any, default: bool) -> bool:
    return value if isinstance(value, bool) else default


def _text(value: Any, default: str = "") -> str:
    return value if isinstance(value, str) else default


@dataclass(frozen=True)
class UserRef:
    """Display identity of a user, as supplied by the auth provider."""

    id: str
    name: str = "Anonymous"
    photo_url: str | None = None


@dataclass(frozen=True)
class Comment:
    id: str
    user_id: str
    user_name: str
    text: str
    created_at: datetime | None = None
    user_photo_url: str | None = None
    likes: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Comment:
        return cls(
            id=_text(data.get("id")),
            user_id=_text(data.get("user_id")),
            user_name=_text(data.get("user_name"), "Anonymous"),
            text=_text(data.get("text")),
            created_at=parse_timestamp(data.get("created_at")),
            user_photo_url=data.get("user_photo_url"),
            likes=unique(data.get("likes")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "user_photo_url": self.user_photo_url,
            "text": self.text,
            "created_at": format_timestamp(self.created_at),
            "likes": list(self.likes),
        }


@dataclass(frozen=True)
class Event:
    id: str
    title: str
    description: str = ""
    venue: str = ""
    category: str = ""
    tags: tuple[str, ...] = ()
    image_url: str | None = None
    event_date: datetime | None = None
    end_date: datetime | None = None
    organizer: UserRef | None = None
    club_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    max_attendees: int | None = None
    current_attendees: int = 0
    share_count: int = 0
    view_count: int = 0
    is_public: bool = True
    rsvp_open: bool = True
    allow_comments: bool = True
    trending: bool = False
    featured: bool = False
    qr_code: str | None = None
    rsvp: tuple[str, ...] = ()
    likes: tuple[str, ...] = ()
    saves: tuple[str, ...] = ()
    checked_in_attendees: tuple[str, ...] = ()
    comments: tuple[Comment, ...] = ()
    user_has_rsvpd: bool = False
    user_has_liked: bool = False
    user_has_saved: bool = False
    user_has_checked_in: bool = False

    @property
    def organizer_id(self) -> str | None:
        return self.organizer.id if self.organizer else None

    @property
    def is_full(self) -> bool:
        return self.max_attendees is not None and len(self.rsvp) >= self.max_attendees

    @property
    def spots_left(self) -> int | None:
        if self.max_attendees is None:
            return None
        return max(self.max_attendees - len(self.rsvp), 0)

    @classmethod
    def from_document(cls, snapshot: DocumentSnapshot) -> Event:
        return cls.from_data(snapshot.id, snapshot.data)

    @classmethod
    def from_data(cls, event_id: str, data: Mapping[str, Any]) -> Event:
        organizer_id = data.get("organizer_id")
        organizer_info = data.get("organizer") or {}
        organizer = None
        if organizer_id:
            organizer = UserRef(
                id=organizer_id,
                name=_text(organizer_info.get("name"), "Anonymous"),
                photo_url=organizer_info.get("avatar_url"),
            )
        raw_comments = data.get("comments")
        comments = tuple(
            Comment.from_dict(c)
            for c in (raw_comments if isinstance(raw_comments, list) else [])
            if isinstance(c, Mapping)
        )
        return cls(
            id=event_id,
            title=_text(data.get("title")),
            description=_text(data.get("description")),
            venue=_text(data.get("venue")),
            category=_text(data.get("category")),
            tags=unique(data.get("tags")),
            image_url=data.get("image_url"),
            event_date=parse_timestamp(data.get("event_date")),
            end_date=parse_timestamp(data.get("end_date")),
            organizer=organizer,
            club_id=data.get("club_id"),
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
            max_attendees=_optional_int(data.get("max_attendees")),
            current_attendees=_int(data.get("current_attendees")),
            share_count=_int(data.get("share_count")),
            view_count=_int(data.get("view_count")),
            is_public=_bool(data.get("is_public"), True),
            rsvp_open=_bool(data.get("rsvp_open"), True),
            allow_comments=_bool(data.get("allow_comments"), True),
            trending=_bool(data.get("trending"), False),
            featured=_bool(data.get("featured"), False),
            qr_code=data.get("qr_code"),
            rsvp=unique(data.get("rsvp")),
            likes=unique(data.get("likes")),
            saves=unique(data.get("saves")),
            checked_in_attendees=unique(data.get("checked_in_attendees")),
            comments=comments,
        )

    def to_document(self) -> dict[str, Any]:
        """Return the persisted fields; viewer flags are never stored."""
        organizer = None
        if self.organizer:
            organizer = {
                "name": self.organizer.name,
                "avatar_url": self.organizer.photo_url,
            }
        return {
            "title": self.title,
            "description": self.description,
            "venue": self.venue,
            "category": self.category,
            "tags": list(self.tags),
            "image_url": self.image_url,
            "event_date": format_timestamp(self.event_date),
            "end_date": format_timestamp(self.end_date),
            "organizer_id": self.organizer_id,
            "organizer": organizer,
            "club_id": self.club_id,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "max_attendees": self.max_attendees,
            "current_attendees": self.current_attendees,
            "share_count": self.share_count,
            "view_count": self.view_count,
            "is_public": self.is_public,
            "rsvp_open": self.rsvp_open,
            "allow_comments": self.allow_comments,
            "trending": self.trending,
            "featured": self.featured,
            "qr_code": self.qr_code,
            "rsvp": list(self.rsvp),
            "likes": list(self.likes),
            "saves": list(self.saves),
            "checked_in_attendees": list(self.checked_in_attendees),
            "comments": [c.to_dict() for c in self.comments],
        }

    def apply(self, updates: Mapping[str, Any]) -> Event:
        """Return this event with store-style ``updates`` applied locally."""
        patched = Event.from_data(self.id, apply_updates(self.to_document(), updates))
        return replace(
            patched,
            user_has_rsvpd=self.user_has_rsvpd,
            user_has_liked=self.user_has_liked,
            user_has_saved=self.user_has_saved,
            user_has_checked_in=self.user_has_checked_in,
        )

    def for_viewer(self, user_id: str | None) -> Event:
        if not user_id:
            return replace(
                self,
                user_has_rsvpd=False,
                user_has_liked=False,
                user_has_saved=False,
                user_has_checked_in=False,
            )
        return replace(
            self,
            user_has_rsvpd=user_id in self.rsvp,
            user_has_liked=user_id in self.likes,
            user_has_saved=user_id in self.saves,
            user_has_checked_in=user_id in self.checked_in_attendees,
        )


class ActivityAction(str, Enum):
    RSVP = "rsvp"
    CANCEL_RSVP = "cancel_rsvp"
    LIKE = "like"
    UNLIKE = "unlike"
    SAVE = "save"
    UNSAVE = "unsave"
    CHECKIN = "checkin"
    COMMENT = "comment"
    SHARE = "share"


@dataclass(frozen=True)
class ActivityLog:
    id: str
    event_id: str
    event_title: str
    user_id: str
    user_name: str
    action: ActivityAction
    timestamp: datetime | None
    user_photo_url: str | None = None
    details: str | None = None

    @classmethod
    def from_document(cls, snapshot: DocumentSnapshot) -> ActivityLog:
        data = snapshot.data
        return cls(
            id=snapshot.id,
            event_id=_text(data.get("event_id")),
            event_title=_text(data.get("event_title")),
            user_id=_text(data.get("user_id")),
            user_name=_text(data.get("user_name"), "Anonymous"),
            action=ActivityAction(data.get("action")),
            timestamp=parse_timestamp(data.get("timestamp")),
            user_photo_url=data.get("user_photo_url"),
            details=data.get("details"),
        )


@dataclass(frozen=True)
class Club:
    id: str
    name: str
    created_by: str
    description: str = ""
    category: str = ""
    logo_url: str | None = None
    cover_image_url: str | None = None
    members: tuple[str, ...] = ()
    member_count: int = 0
    is_active: bool = True
    created_at: datetime | None = None

    @classmethod
    def from_document(cls, snapshot: DocumentSnapshot) -> Club:
        data = snapshot.data
        return cls(
            id=snapshot.id,
            name=_text(data.get("name")),
            created_by=_text(data.get("created_by")),
            description=_text(data.get("description")),
            category=_text(data.get("category")),
            logo_url=data.get("logo_url"),
            cover_image_url=data.get("cover_image_url"),
            members=unique(data.get("members")),
            member_count=_int(data.get("member_count")),
            is_active=_bool(data.get("is_active"), True),
            created_at=parse_timestamp(data.get("created_at")),
        )

    def to_document(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "created_by": self.created_by,
            "description": self.description,
            "category": self.category,
            "logo_url": self.logo_url,
            "cover_image_url": self.cover_image_url,
            "members": list(self.members),
            "member_count": self.member_count,
            "is_active": self.is_active,
            "created_at": format_timestamp(self.created_at),
        }
