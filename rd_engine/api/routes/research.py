from __future__ import annotations

from fastapi import APIRouter, HTTPException

from rd_engine.exceptions import (
    RequestConflictError,
    ResearchTimeoutError,
    StageFailedError,
    TerminalError,
)
from rd_engine.models.research import ResearchRunResult, RunStatus
from rd_engine.models.schemas import ResearchRequest
from rd_engine.workflow.orchestrator import get_engine

router = APIRouter(prefix="/api/research", tags=["research"])


@router.post("", response_model=ResearchRunResult)
async def run_research(request: ResearchRequest):
    """Run the pipeline to completion; pass a previous request_id to resume it."""
    try:
        return await get_engine().run_research(
            request.query,
            session_id=request.session_id,
            request_id=request.request_id,
        )
    except RequestConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except TerminalError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StageFailedError as exc:
        raise HTTPException(
            status_code=503,
            detail={"message": str(exc), "stage": exc.stage, "retryable": exc.retryable},
        ) from exc
    except ResearchTimeoutError as exc:
        raise HTTPException(
            status_code=504, detail={"message": str(exc), "stage": exc.stage}
        ) from exc


@router.get("/{request_id}", response_model=RunStatus)
async def get_research_status(request_id: str):
    status = await get_engine().get_run_status(request_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Research run not found")
    return status
