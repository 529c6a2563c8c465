"""Operation outcomes and failure kinds shared by the repositories."""

from __future__ import annotations

import functools
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .docstore import DocumentNotFoundError, StoreError

logger = logging.getLogger("uvicorn.error")


class ErrorKind(Enum):
    """Failure kinds reported by repository operations."""

    NOT_FOUND = "NotFound"
    ALREADY_RSVPD = "AlreadyRsvpd"
    NOT_RSVPD = "NotRsvpd"
    RSVP_CLOSED = "RsvpClosed"
    EVENT_FULL = "EventFull"
    INVALID_CODE = "InvalidCode"
    RSVP_REQUIRED = "RsvpRequired"
    ALREADY_CHECKED_IN = "AlreadyCheckedIn"
    COMMENTS_DISABLED = "CommentsDisabled"
    INVALID_INPUT = "InvalidInput"
    ALREADY_MEMBER = "AlreadyMember"
    NOT_MEMBER = "NotMember"
    REMOTE_FAILURE = "RemoteFailure"


DEFAULT_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.NOT_FOUND: "Event not found",
    ErrorKind.ALREADY_RSVPD: "Already RSVP'd to this event",
    ErrorKind.NOT_RSVPD: "Not RSVP'd to this event",
    ErrorKind.RSVP_CLOSED: "RSVPs are closed for this event",
    ErrorKind.EVENT_FULL: "This event has reached its maximum number of attendees.",
    ErrorKind.INVALID_CODE: "Invalid check-in code",
    ErrorKind.RSVP_REQUIRED: "You must RSVP before checking in",
    ErrorKind.ALREADY_CHECKED_IN: "Already checked in to this event",
    ErrorKind.COMMENTS_DISABLED: "Comments are disabled for this event",
    ErrorKind.INVALID_INPUT: "Invalid input",
    ErrorKind.ALREADY_MEMBER: "Already a member of this club",
    ErrorKind.NOT_MEMBER: "Not a member of this club",
    ErrorKind.REMOTE_FAILURE: "Something went wrong while saving. Please try again.",
}


class OperationError(Exception):
    """Raised inside an operation when a precondition fails."""

    def __init__(self, kind: ErrorKind, message: str | None = None) -> None:
        self.kind = kind
        self.message = message or DEFAULT_MESSAGES[kind]
        super().__init__(f"{kind.value}: {self.message}")


@dataclass(frozen=True)
class OperationResult:
    """Outcome of a repository operation; failures carry a user-facing message."""

    success: bool
    error: ErrorKind | None = None
    message: str | None = None
    data: Any = None

    @classmethod
    def ok(cls, data: Any = None) -> OperationResult:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, kind: ErrorKind, message: str | None = None) -> OperationResult:
        return cls(success=False, error=kind, message=message or DEFAULT_MESSAGES[kind])

    @classmethod
    def from_error(cls, exc: OperationError) -> OperationResult:
        return cls.fail(exc.kind, exc.message)

    def as_payload(self) -> dict[str, str]:
        """Return the ``{"error", "message"}`` body used by the HTTP layer."""
        if self.success or self.error is None:
            return {}
        return {"error": self.error.value, "message": self.message or ""}


def operation(name: str, *, not_found: str | None = None):
    """Turn a repository method that raises into one that returns a result.

    The wrapped method receives the subject id as its first argument after
    ``self``; it is used only for log lines.
    """

    def decorator(method: Callable[..., OperationResult]):
        @functools.wraps(method)
        def wrapper(self, *args: Any, **kwargs: Any) -> OperationResult:
            subject = args[0] if args else None
            try:
                result = method(self, *args, **kwargs)
            except OperationError as exc:
                logger.info("%s rejected for %s: %s", name, subject, exc.kind.value)
                return OperationResult.from_error(exc)
            except DocumentNotFoundError:
                logger.info("%s target %s disappeared before the write", name, subject)
                return OperationResult.fail(ErrorKind.NOT_FOUND, not_found)
            except StoreError:
                logger.exception("%s failed for %s", name, subject)
                return OperationResult.fail(ErrorKind.REMOTE_FAILURE)
            logger.info("%s succeeded for %s", name, subject)
            return result

        return wrapper

    return decorator
