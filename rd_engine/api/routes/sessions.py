from __future__ import annotations

from fastapi import APIRouter, HTTPException

from rd_engine.models.schemas import (
    AddResearchRequest,
    HistoryResponse,
    MessageRequest,
    SessionResponse,
)
from rd_engine.models.session import Session
from rd_engine.services.session_store import get_session_manager

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


def _to_response(session: Session) -> SessionResponse:
    return SessionResponse(
        session_id=session.session_id,
        created_at=session.created_at,
        message_count=len(session.messages),
        research_ids=session.research_ids,
    )


@router.post("/{session_id}", response_model=SessionResponse)
async def create_session(session_id: str):
    """Create the session, or reset it if it already exists."""
    session = await get_session_manager().create_session(session_id)
    return _to_response(session)


@router.post("/{session_id}/messages", response_model=SessionResponse)
async def add_message(session_id: str, request: MessageRequest):
    if not request.content.strip():
        raise HTTPException(status_code=400, detail="Message content is required")
    session = await get_session_manager().add_message(session_id, request.role, request.content)
    return _to_response(session)


@router.post("/{session_id}/research", response_model=SessionResponse)
async def add_research(session_id: str, request: AddResearchRequest):
    session = await get_session_manager().add_research(session_id, request.request_id)
    return _to_response(session)


@router.get("/{session_id}/history", response_model=HistoryResponse)
async def get_history(session_id: str):
    manager = get_session_manager()
    if manager.get_session_info(session_id) is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return HistoryResponse(session_id=session_id, messages=manager.get_history(session_id))


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str):
    session = get_session_manager().get_session_info(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return _to_response(session)
