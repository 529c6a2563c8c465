"""Campus assistant backed by the OpenAI Responses API.

Replies are best-effort: when the assistant is disabled, has no API key, or the
call fails, chat falls back to fixed text and recommendations come back empty.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from openai import OpenAI, OpenAIError

from .config import settings
from .entities import Event
from .utils import format_timestamp

logger = logging.getLogger("uvicorn.error")

NOT_CONFIGURED_REPLY = (
    "I'm sorry, the AI assistant is not configured. Please contact support."
)
CHAT_FAILURE_REPLY = (
    "I'm having trouble processing your request right now. "
    "Please try again later or contact support."
)
QUESTION_FAILURE_REPLY = (
    "I'm sorry, I couldn't process your question right now. "
    "Please try asking the event organizer directly."
)
MAX_RECOMMENDATIONS = 5

CHAT_PROMPT = """You are CampusConnect AI, a helpful assistant for a college event platform.

Context: {context}

User message: {message}

Answer questions about campus events, RSVPs, clubs, or campus life in a friendly,
conversational tone in under 150 words. If you don't know something specific,
suggest contacting the event organizer or checking the event details."""

RECOMMEND_PROMPT = """Recommend events for a student.

User profile: {profile}
Past events: {history}
Available events: {candidates}

Return the titles of the {count} most relevant available events as a single
comma-separated list and nothing else. Only use titles from the available list."""

QUESTION_PROMPT = """You are a helpful campus event assistant. Answer this question about an event.

Question: {question}
Event details: {details}

Answer directly in under 100 words. If the details don't cover it, suggest
contacting the organizer."""


class CampusAssistant:
    def __init__(
        self,
        client: Any | None = None,
        *,
        model: str | None = None,
        enabled: bool | None = None,
    ) -> None:
        self._client = client
        self.model = model or settings.assistant_model
        self.enabled = settings.assistant_enabled if enabled is None else enabled
        self.last_error: str | None = None

    def _get_client(self) -> Any | None:
        if self._client is None:
            try:
                self._client = OpenAI()
            except OpenAIError as exc:
                logger.warning("Assistant client unavailable: %s", exc)
                return None
        return self._client

    def _complete(self, prompt: str) -> str | None:
        """Return the model's reply, or ``None`` when there is none to give."""
        if not self.enabled:
            return None
        client = self._get_client()
        if client is None:
            return None
        try:
            response = client.responses.create(model=self.model, input=prompt)
            text = str(response.output_text).strip()
        except Exception as exc:
            self.last_error = repr(exc)
            logger.exception("Assistant request failed")
            return None
        self.last_error = None
        return text or None

    @property
    def available(self) -> bool:
        return self.enabled and self._get_client() is not None

    def chat(self, message: str, context: str | None = None) -> str:
        if not self.available:
            return NOT_CONFIGURED_REPLY
        reply = self._complete(
            CHAT_PROMPT.format(
                context=context or "General campus event assistance",
                message=message,
            )
        )
        return reply or CHAT_FAILURE_REPLY

    def recommend(
        self,
        profile: Mapping[str, Any],
        history: Sequence[str],
        candidates: Iterable[Event],
    ) -> list[str]:
        """Return up to five candidate titles chosen by the model."""
        candidates = list(candidates)
        if not candidates:
            return []
        reply = self._complete(
            RECOMMEND_PROMPT.format(
                profile=json.dumps(dict(profile), default=str),
                history=", ".join(history) or "none",
                candidates=", ".join(f"{e.title} ({e.category})" for e in candidates),
                count=MAX_RECOMMENDATIONS,
            )
        )
        if not reply:
            return []
        known = {e.title.lower(): e.title for e in candidates}
        titles: list[str] = []
        for raw in reply.split(","):
            title = known.get(raw.strip().strip('"').lower())
            if title and title not in titles:
                titles.append(title)
        return titles[:MAX_RECOMMENDATIONS]

    def answer_question(self, question: str, event: Event) -> str:
        details = "; ".join(
            f"{label}: {value}"
            for label, value in (
                ("Title", event.title),
                ("Description", event.description),
                ("Venue", event.venue),
                ("Date", format_timestamp(event.event_date)),
                ("Category", event.category),
                ("Spots left", event.spots_left),
            )
            if value not in (None, "")
        )
        reply = self._complete(QUESTION_PROMPT.format(question=question, details=details))
        return reply or QUESTION_FAILURE_REPLY


def feed_context(events: Sequence[Event], user_id: str | None = None) -> str:
    """Summarise the current feed for the chat prompt."""
    parts = [f"{len(events)} events are listed"]
    trending = [e.title for e in events if e.trending][:3]
    if trending:
        parts.append("trending now: " + ", ".join(trending))
    if user_id:
        going = sum(1 for e in events if user_id in e.rsvp)
        saved = sum(1 for e in events if user_id in e.saves)
        parts.append(f"the user has RSVP'd to {going} and saved {saved}")
    return "; ".join(parts) + "."
