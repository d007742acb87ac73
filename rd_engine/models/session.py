from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class SessionMessage(BaseModel):
    role: str
    content: str
    timestamp: datetime


class Session(BaseModel):
    """Committed state of one session key. Replaced, never mutated in place."""

    session_id: str
    created_at: datetime
    messages: list[SessionMessage] = Field(default_factory=list)
    research_ids: list[str] = Field(default_factory=list)
