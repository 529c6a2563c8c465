"""SQLAlchemy models backing the document store."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Index, String
from sqlalchemy.orm import declarative_base

from .utils import utcnow

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return utcnow()


class Document(Base):
    """A schemaless JSON document living in a named collection."""

    __tablename__ = "documents"

    id = Column(String(36), primary_key=True, default=_uuid)
    collection = Column(String(64), nullable=False)
    data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    __table_args__ = (Index("ix_documents_collection", "collection"),)
