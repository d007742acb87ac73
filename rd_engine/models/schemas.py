from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from rd_engine.models.session import SessionMessage


# --- Requests ---


class ResearchRequest(BaseModel):
    query: str
    session_id: str | None = None
    request_id: str | None = None


class MessageRequest(BaseModel):
    role: str
    content: str


class AddResearchRequest(BaseModel):
    request_id: str


# --- Responses ---


class SessionResponse(BaseModel):
    session_id: str
    created_at: datetime
    message_count: int
    research_ids: list[str]


class HistoryResponse(BaseModel):
    session_id: str
    messages: list[SessionMessage]
