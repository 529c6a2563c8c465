"""FastAPI application for CampusConnect."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
from typing import Any, Callable
import tomllib

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from .assistant import CampusAssistant, feed_context
from .clubs import ClubRepository
from .config import settings
from .docstore import DocumentStore, StoreError
from .docstore import Query as StoreQuery
from .entities import EVENTS, ActivityLog, Club, Comment, Event, UserRef
from .errors import ErrorKind, OperationResult
from .repository import EventRepository
from .scheduler import start_scheduler, stop_scheduler
from .storage import init_db
from .utils import format_timestamp, utcnow
from .views import (
    FeedFilter,
    FeedQuery,
    SortKey,
    filter_events,
    member_schedule,
    organizer_analytics,
    paginate,
    sort_events,
    top_trending,
)

# Use uvicorn's error logger so messages get the level prefix in the default log
# format.
logger = logging.getLogger("uvicorn.error")

ERROR_STATUS: dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.ALREADY_RSVPD: 409,
    ErrorKind.NOT_RSVPD: 409,
    ErrorKind.RSVP_CLOSED: 403,
    ErrorKind.EVENT_FULL: 400,
    ErrorKind.INVALID_CODE: 400,
    ErrorKind.RSVP_REQUIRED: 403,
    ErrorKind.ALREADY_CHECKED_IN: 409,
    ErrorKind.COMMENTS_DISABLED: 403,
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.ALREADY_MEMBER: 409,
    ErrorKind.NOT_MEMBER: 409,
    ErrorKind.REMOTE_FAILURE: 503,
}


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("campusconnect")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()

store = DocumentStore()
events_repository = EventRepository(store)
clubs_repository = ClubRepository(store)
assistant = CampusAssistant()


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    events_repository.start()
    clubs_repository.start()
    if settings.enable_scheduler:
        start_scheduler(store)
    try:
        yield
    finally:
        stop_scheduler()
        clubs_repository.stop()
        events_repository.stop()


app = FastAPI(title="CampusConnect", version=APP_VERSION, lifespan=lifespan)


# -------- Error handling --------


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"detail": exc.detail}, status_code=exc.status_code)


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    logger.error(
        "Document store error on %s %s: %s", request.method, request.url.path, exc
    )
    return JSONResponse(
        {"detail": "The database is busy at the moment. Please try again."},
        status_code=503,
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse({"detail": exc.errors()}, status_code=422)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Gracefully handle unexpected errors."""
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    return JSONResponse({"detail": "Internal server error"}, status_code=500)


def _respond(
    result: OperationResult,
    serialize: Callable[[Any], Any],
    *,
    status_code: int = 200,
):
    if not result.success:
        return JSONResponse(result.as_payload(), status_code=ERROR_STATUS[result.error])
    return JSONResponse(serialize(result.data), status_code=status_code)


# -------- Identity --------


def current_user(
    x_user_id: str | None = Header(None),
    x_user_name: str | None = Header(None),
    x_user_photo: str | None = Header(None),
) -> UserRef | None:
    """Identity forwarded by the auth gateway, if any."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        return None
    return UserRef(
        id=user_id,
        name=(x_user_name or "").strip() or "Anonymous",
        photo_url=x_user_photo or None,
    )


def require_user(user: UserRef | None = Depends(current_user)) -> UserRef:
    if user is None:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return user


# -------- Serialization --------


def _serialize_comment(comment: Comment) -> dict:
    return {
        "id": comment.id,
        "user_id": comment.user_id,
        "user_name": comment.user_name,
        "user_photo_url": comment.user_photo_url,
        "text": comment.text,
        "created_at": format_timestamp(comment.created_at),
        "likes": len(comment.likes),
    }


def _serialize_event(event: Event) -> dict:
    organizer = None
    if event.organizer:
        organizer = {
            "id": event.organizer.id,
            "name": event.organizer.name,
            "avatar_url": event.organizer.photo_url,
        }
    return {
        "id": event.id,
        "title": event.title,
        "description": event.description,
        "venue": event.venue,
        "category": event.category,
        "tags": list(event.tags),
        "image_url": event.image_url,
        "event_date": format_timestamp(event.event_date),
        "end_date": format_timestamp(event.end_date),
        "organizer": organizer,
        "club_id": event.club_id,
        "created_at": format_timestamp(event.created_at),
        "updated_at": format_timestamp(event.updated_at),
        "max_attendees": event.max_attendees,
        "spots_left": event.spots_left,
        "current_attendees": event.current_attendees,
        "like_count": len(event.likes),
        "save_count": len(event.saves),
        "checked_in_count": len(event.checked_in_attendees),
        "share_count": event.share_count,
        "view_count": event.view_count,
        "is_public": event.is_public,
        "rsvp_open": event.rsvp_open,
        "allow_comments": event.allow_comments,
        "trending": event.trending,
        "featured": event.featured,
        "comments": [_serialize_comment(c) for c in event.comments],
        "user_has_rsvpd": event.user_has_rsvpd,
        "user_has_liked": event.user_has_liked,
        "user_has_saved": event.user_has_saved,
        "user_has_checked_in": event.user_has_checked_in,
    }


def _serialize_owned_event(event: Event) -> dict:
    """Organizer view: includes the check-in code."""
    payload = _serialize_event(event)
    payload["qr_code"] = event.qr_code
    return payload


def _serialize_log(entry: ActivityLog) -> dict:
    return {
        "id": entry.id,
        "event_id": entry.event_id,
        "event_title": entry.event_title,
        "user_id": entry.user_id,
        "user_name": entry.user_name,
        "user_photo_url": entry.user_photo_url,
        "action": entry.action.value,
        "timestamp": format_timestamp(entry.timestamp),
        "details": entry.details,
    }


def _serialize_club(club: Club, viewer: UserRef | None = None) -> dict:
    return {
        "id": club.id,
        "name": club.name,
        "description": club.description,
        "category": club.category,
        "logo_url": club.logo_url,
        "cover_image_url": club.cover_image_url,
        "created_by": club.created_by,
        "member_count": club.member_count,
        "is_active": club.is_active,
        "created_at": format_timestamp(club.created_at),
        "user_is_member": bool(viewer and viewer.id in club.members),
    }


# -------- Payloads --------


class EventCreatePayload(BaseModel):
    title: str
    description: str = ""
    venue: str = ""
    category: str = ""
    tags: list[str] = Field(default_factory=list)
    image_url: str | None = None
    event_date: datetime | None = Field(None, description="ISO datetime string")
    end_date: datetime | None = Field(None, description="ISO datetime string")
    max_attendees: int | None = Field(None, ge=1)
    is_public: bool = True
    rsvp_open: bool = True
    allow_comments: bool = True
    club_id: str | None = None


class EventUpdatePayload(BaseModel):
    title: str | None = None
    description: str | None = None
    venue: str | None = None
    category: str | None = None
    tags: list[str] | None = None
    image_url: str | None = None
    event_date: datetime | None = None
    end_date: datetime | None = None
    max_attendees: int | None = Field(None, ge=1)
    is_public: bool | None = None
    rsvp_open: bool | None = None
    allow_comments: bool | None = None
    trending: bool | None = None
    featured: bool | None = None
    club_id: str | None = None


class CheckInPayload(BaseModel):
    code: str | None = None


class CommentPayload(BaseModel):
    text: str


class ClubCreatePayload(BaseModel):
    name: str
    description: str = ""
    category: str = ""
    logo_url: str | None = None
    cover_image_url: str | None = None


class ChatPayload(BaseModel):
    message: str
    context: str | None = None


class RecommendationPayload(BaseModel):
    profile: dict[str, Any] = Field(default_factory=dict)
    history: list[str] = Field(default_factory=list)


class QuestionPayload(BaseModel):
    question: str


# -------- JSON API (v1) --------


@app.get("/api/v1/events")
def api_list_events(
    q: str = Query(""),
    category: str | None = Query(None),
    flag: FeedFilter = Query(FeedFilter.ALL, alias="filter"),
    sort: SortKey = Query(SortKey.DATE),
    cursor: str | None = Query(None),
    limit: int = Query(settings.events_per_page, ge=1, le=50),
    user: UserRef | None = Depends(current_user),
):
    query = FeedQuery(search=q, category=category, flag=flag, sort=sort)
    results = sort_events(filter_events(events_repository.events, query), sort)
    try:
        page = paginate(results, sort, cursor, limit)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid cursor") from exc
    viewer_id = user.id if user else None
    return {
        "events": [_serialize_event(e.for_viewer(viewer_id)) for e in page.items],
        "next_cursor": page.next_cursor,
        "total": len(results),
        "loading": events_repository.loading,
        "error": events_repository.error,
    }


@app.post("/api/v1/events", status_code=201)
def api_create_event(payload: EventCreatePayload, user: UserRef = Depends(require_user)):
    result = events_repository.create(payload.model_dump(), user)
    return _respond(result, _serialize_owned_event, status_code=201)


@app.get("/api/v1/events/trending")
def api_trending_events(limit: int = Query(3, ge=1, le=20)):
    return {"events": [_serialize_event(e) for e in top_trending(events_repository.events, limit=limit)]}


@app.get("/api/v1/events/{event_id}")
def api_get_event(event_id: str, user: UserRef | None = Depends(current_user)):
    viewer_id = user.id if user else None
    result = events_repository.record_view(event_id, viewer_id)
    if result.success and result.data.organizer_id == viewer_id:
        return _respond(result, _serialize_owned_event)
    return _respond(result, _serialize_event)


@app.patch("/api/v1/events/{event_id}")
def api_update_event(
    event_id: str, payload: EventUpdatePayload, _: UserRef = Depends(require_user)
):
    result = events_repository.update(event_id, payload.model_dump(exclude_unset=True))
    return _respond(result, _serialize_owned_event)


@app.delete("/api/v1/events/{event_id}", status_code=204)
def api_delete_event(event_id: str, _: UserRef = Depends(require_user)):
    result = events_repository.delete(event_id)
    if not result.success:
        return _respond(result, dict)
    return Response(status_code=204)


@app.post("/api/v1/events/{event_id}/rsvp", status_code=201)
def api_rsvp(event_id: str, user: UserRef = Depends(require_user)):
    result = events_repository.rsvp(event_id, user.id, actor=user)
    return _respond(result, _serialize_event, status_code=201)


@app.delete("/api/v1/events/{event_id}/rsvp")
def api_cancel_rsvp(event_id: str, user: UserRef = Depends(require_user)):
    result = events_repository.cancel_rsvp(event_id, user.id, actor=user)
    return _respond(result, _serialize_event)


@app.post("/api/v1/events/{event_id}/likes")
def api_like(event_id: str, user: UserRef = Depends(require_user)):
    return _respond(events_repository.like(event_id, user.id, actor=user), _serialize_event)


@app.delete("/api/v1/events/{event_id}/likes")
def api_unlike(event_id: str, user: UserRef = Depends(require_user)):
    return _respond(events_repository.unlike(event_id, user.id, actor=user), _serialize_event)


@app.post("/api/v1/events/{event_id}/saves")
def api_save(event_id: str, user: UserRef = Depends(require_user)):
    return _respond(events_repository.save(event_id, user.id, actor=user), _serialize_event)


@app.delete("/api/v1/events/{event_id}/saves")
def api_unsave(event_id: str, user: UserRef = Depends(require_user)):
    return _respond(events_repository.unsave(event_id, user.id, actor=user), _serialize_event)


@app.post("/api/v1/events/{event_id}/checkin")
def api_check_in(
    event_id: str,
    payload: CheckInPayload | None = None,
    user: UserRef = Depends(require_user),
):
    code = payload.code if payload else None
    result = events_repository.check_in(event_id, user.id, code, actor=user)
    return _respond(result, _serialize_event)


@app.post("/api/v1/events/{event_id}/comments", status_code=201)
def api_add_comment(
    event_id: str, payload: CommentPayload, user: UserRef = Depends(require_user)
):
    result = events_repository.add_comment(event_id, user.id, payload.text, actor=user)
    return _respond(result, _serialize_event, status_code=201)


@app.post("/api/v1/events/{event_id}/share")
def api_share(event_id: str, user: UserRef | None = Depends(current_user)):
    return _respond(events_repository.share(event_id, actor=user), _serialize_event)


@app.get("/api/v1/events/{event_id}/activity")
def api_event_activity(
    event_id: str, limit: int = Query(settings.activity_log_limit, ge=1, le=500)
):
    logs = events_repository.activity.for_event(event_id, limit)
    return {"activity": [_serialize_log(entry) for entry in logs]}


@app.post("/api/v1/events/{event_id}/questions")
def api_event_question(event_id: str, payload: QuestionPayload):
    result = events_repository.get(event_id)
    if not result.success:
        return _respond(result, dict)
    return {"answer": assistant.answer_question(payload.question, result.data)}


# Organizer and member dashboards


def _organizer_events(organizer_id: str) -> list[Event]:
    snapshots = store.query(
        StoreQuery(EVENTS).where("organizer_id", "==", organizer_id)
    )
    return [Event.from_document(s) for s in snapshots]


@app.get("/api/v1/organizers/me/analytics")
def api_organizer_analytics(user: UserRef = Depends(require_user)):
    stats = organizer_analytics(_organizer_events(user.id), user.id, utcnow())
    return {
        "total_events": stats.total_events,
        "total_attendees": stats.total_attendees,
        "total_likes": stats.total_likes,
        "upcoming_events": stats.upcoming_events,
        "average_attendees": stats.average_attendees,
        "total_check_ins": stats.total_check_ins,
        "total_shares": stats.total_shares,
        "total_views": stats.total_views,
        "total_saves": stats.total_saves,
        "events": [
            {
                "event_id": s.event_id,
                "title": s.title,
                "attendees": s.attendees,
                "checked_in": s.checked_in,
                "likes": s.likes,
                "attendance_rate": s.attendance_rate,
            }
            for s in stats.events
        ],
    }


@app.get("/api/v1/organizers/me/activity")
def api_organizer_activity(
    limit: int = Query(settings.organizer_activity_limit, ge=1, le=1000),
    user: UserRef = Depends(require_user),
):
    logs = events_repository.activity.for_organizer(user.id, limit)
    return {"activity": [_serialize_log(entry) for entry in logs]}


@app.get("/api/v1/me/schedule")
def api_member_schedule(user: UserRef = Depends(require_user)):
    schedule = member_schedule(events_repository.events, user.id)
    return {
        "upcoming": [_serialize_event(e) for e in schedule.upcoming],
        "attended": [_serialize_event(e) for e in schedule.attended],
    }


# Clubs


@app.get("/api/v1/clubs")
def api_list_clubs(user: UserRef | None = Depends(current_user)):
    return {"clubs": [_serialize_club(c, user) for c in clubs_repository.clubs]}


@app.post("/api/v1/clubs", status_code=201)
def api_create_club(payload: ClubCreatePayload, user: UserRef = Depends(require_user)):
    result = clubs_repository.create(payload.model_dump(), user)
    return _respond(result, lambda club: _serialize_club(club, user), status_code=201)


@app.post("/api/v1/clubs/{club_id}/members")
def api_join_club(club_id: str, user: UserRef = Depends(require_user)):
    result = clubs_repository.join(club_id, user.id)
    return _respond(result, lambda club: _serialize_club(club, user))


@app.delete("/api/v1/clubs/{club_id}/members")
def api_leave_club(club_id: str, user: UserRef = Depends(require_user)):
    result = clubs_repository.leave(club_id, user.id)
    return _respond(result, lambda club: _serialize_club(club, user))


# Assistant


@app.post("/api/v1/assistant/chat")
def api_assistant_chat(payload: ChatPayload, user: UserRef | None = Depends(current_user)):
    context = payload.context or feed_context(
        events_repository.events, user.id if user else None
    )
    return {"reply": assistant.chat(payload.message, context)}


@app.post("/api/v1/assistant/recommendations")
def api_assistant_recommendations(
    payload: RecommendationPayload, user: UserRef = Depends(require_user)
):
    now = utcnow()
    candidates = [
        e
        for e in events_repository.events
        if e.event_date is not None and e.event_date > now and user.id not in e.rsvp
    ]
    titles = assistant.recommend(payload.profile, payload.history, candidates)
    by_title = {e.title: e for e in candidates}
    return {
        "titles": titles,
        "events": [_serialize_event(by_title[t].for_viewer(user.id)) for t in titles],
    }
