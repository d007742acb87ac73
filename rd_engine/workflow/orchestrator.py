"""Durable research pipeline.

One call to ``ResearchEngine.run_research`` drives a run through five named
steps. Each step result is committed to the run's checkpoint journal before
the next step starts, so calling again with the same request id resumes after
the last committed step instead of repeating it:

    L0_query_planning -> L1_discovery -> L2_aggregation -> L3_synthesis -> L4_output

The whole run is bounded by ``settings.pipeline_deadline_seconds``.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from collections import Counter
from datetime import UTC, datetime
from typing import Any, Optional

from loguru import logger

from rd_engine.agents.discovery import DiscoveryCoordinator
from rd_engine.agents.query_planner import QueryPlanner
from rd_engine.agents.synthesis import SynthesisLoop
from rd_engine.config import settings
from rd_engine.exceptions import (
    InvalidQueryError,
    RequestConflictError,
    ResearchTimeoutError,
    StageFailedError,
    TerminalError,
)
from rd_engine.models.research import (
    AggregationResult,
    FieldReport,
    FinalOutput,
    OutputMetadata,
    ResearchPlan,
    ResearchRunResult,
    ResearchState,
    ResearchStatus,
    RunStatus,
    SynthesisOutcome,
)
from rd_engine.services import logger as log_service
from rd_engine.services.aggregation import aggregate_findings
from rd_engine.services.embeddings import EmbeddingService
from rd_engine.services.session_store import SessionManager, get_session_manager
from rd_engine.workflow.checkpoints import CheckpointStore, get_checkpoint_store
from rd_engine.workflow.context import WorkflowContext

STAGE_PLANNING = "L0_query_planning"
STAGE_DISCOVERY = "L1_discovery"
STAGE_AGGREGATION = "L2_aggregation"
STAGE_SYNTHESIS = "L3_synthesis"
STAGE_OUTPUT = "L4_output"

PIPELINE_STAGES = (
    STAGE_PLANNING,
    STAGE_DISCOVERY,
    STAGE_AGGREGATION,
    STAGE_SYNTHESIS,
    STAGE_OUTPUT,
)

_STAGE_BY_STATUS = {
    ResearchStatus.PLANNING: STAGE_PLANNING,
    ResearchStatus.DISCOVERING: STAGE_DISCOVERY,
    ResearchStatus.AGGREGATING: STAGE_AGGREGATION,
    ResearchStatus.SYNTHESIZING: STAGE_SYNTHESIS,
    ResearchStatus.FORMATTING: STAGE_OUTPUT,
}


def new_request_id() -> str:
    return f"research-{uuid.uuid4()}"


class ResearchEngine:
    def __init__(
        self,
        *,
        planner: QueryPlanner | None = None,
        discovery: DiscoveryCoordinator | None = None,
        synthesis: SynthesisLoop | None = None,
        embedder: EmbeddingService | None = None,
        store: CheckpointStore | None = None,
        sessions: SessionManager | None = None,
        deadline_seconds: float | None = None,
    ):
        self.planner = planner or QueryPlanner()
        self.discovery = discovery or DiscoveryCoordinator()
        self.synthesis = synthesis or SynthesisLoop()
        self.embedder = embedder
        self.store = store
        self.sessions = sessions
        self.deadline_seconds = deadline_seconds or settings.pipeline_deadline_seconds

    def _embedder(self) -> EmbeddingService:
        if self.embedder is None:
            from rd_engine.tools.voyage_embeddings import get_embedding_provider

            self.embedder = EmbeddingService(get_embedding_provider())
        return self.embedder

    def _store(self) -> CheckpointStore:
        if self.store is None:
            self.store = get_checkpoint_store()
        return self.store

    def _sessions(self) -> SessionManager:
        if self.sessions is None:
            self.sessions = get_session_manager()
        return self.sessions

    @staticmethod
    def health() -> dict[str, str]:
        return {"status": "healthy", "timestamp": datetime.now(UTC).isoformat()}

    async def run_research(
        self,
        query: str,
        session_id: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> ResearchRunResult:
        """Run (or resume) the full pipeline for one query.

        Raises:
            InvalidQueryError: the query is empty; nothing external was called.
            RequestConflictError: ``request_id`` already belongs to another query.
            StageFailedError: a step exhausted its retries or raised an error it
                does not translate; ``.stage`` names it.
            ResearchTimeoutError: the global pipeline deadline elapsed.
        """
        query = (query or "").strip()
        if not query:
            raise InvalidQueryError("Query is required")

        request_id = request_id or new_request_id()
        store = self._store()
        journal = await store.load(request_id)
        if journal is not None:
            recorded = journal.get("meta", {}).get("query")
            if recorded and recorded != query:
                raise RequestConflictError(
                    f"Request {request_id} already belongs to a different query"
                )

        ctx = WorkflowContext(request_id, store, journal=journal)
        state = ResearchState(request_id=request_id, query=query, session_id=session_id)
        await store.set_meta(
            request_id, query=query, session_id=session_id, status=state.status.value
        )
        log_service.log_event(
            event_type="research_started",
            message=f"Research {request_id} started",
            request_id=request_id,
            resumed_steps=ctx.committed_steps,
        )

        started = time.monotonic()
        deadline = asyncio.timeout(self.deadline_seconds)
        try:
            async with deadline:
                output = await self._execute(ctx, state, started)
        except TimeoutError as exc:
            if not deadline.expired():
                raise await self._fail_unexpected(state, exc) from exc
            stage = _STAGE_BY_STATUS.get(state.status)
            await self._finish(state, ResearchStatus.FAILED, failed_stage=stage, error="deadline exceeded")
            raise ResearchTimeoutError(request_id, self.deadline_seconds, stage) from exc
        except asyncio.CancelledError:
            stage = _STAGE_BY_STATUS.get(state.status)
            log_service.log_research_step(request_id, stage or "run", "cancelled")
            await self._finish(state, ResearchStatus.CANCELLED, failed_stage=stage)
            raise
        except StageFailedError as exc:
            await self._finish(state, ResearchStatus.FAILED, failed_stage=exc.stage, error=str(exc))
            raise
        except TerminalError as exc:
            await self._finish(
                state,
                ResearchStatus.FAILED,
                failed_stage=_STAGE_BY_STATUS.get(state.status),
                error=str(exc),
            )
            raise
        except Exception as exc:
            raise await self._fail_unexpected(state, exc) from exc

        if session_id and STAGE_OUTPUT not in ctx.replayed:
            self._sessions().send_add_research(session_id, request_id)

        await self._finish(state, ResearchStatus.COMPLETED)
        duration = time.monotonic() - started
        return ResearchRunResult(
            request_id=request_id,
            output=output,
            stages_completed=list(state.stages_completed),
            duration_seconds=round(duration, 3),
            tokens_used=state.tokens_used,
        )

    async def _execute(
        self, ctx: WorkflowContext, state: ResearchState, started: float
    ) -> FinalOutput:
        await self._advance(state, ResearchStatus.PLANNING)
        state.plan = plan = await ctx.run(
            STAGE_PLANNING,
            lambda: self.planner.plan_query(state.query),
            ResearchPlan,
        )
        _record_step(ctx, state, STAGE_PLANNING, plan.tokens_used)

        await self._advance(state, ResearchStatus.DISCOVERING)
        state.field_reports = reports = await ctx.run(
            STAGE_DISCOVERY,
            lambda: self.discovery.run_discovery(plan.agents),
            list[FieldReport],
        )
        _record_step(ctx, state, STAGE_DISCOVERY, sum(r.tokens_used for r in reports))

        await self._advance(state, ResearchStatus.AGGREGATING)
        findings = [finding for report in reports for finding in report.findings]
        state.aggregation = aggregation = await ctx.run(
            STAGE_AGGREGATION,
            lambda: aggregate_findings(
                findings,
                embedder=self._embedder(),
                threshold=settings.dedup_threshold,
                max_findings=settings.max_findings,
                text_max_chars=settings.embedding_text_max_chars,
            ),
            AggregationResult,
        )
        _record_step(ctx, state, STAGE_AGGREGATION)

        # The generate/verify phases retry individually; the stage itself runs once.
        await self._advance(state, ResearchStatus.SYNTHESIZING)
        outcome = await ctx.run(
            STAGE_SYNTHESIS,
            lambda: self.synthesis.synthesize_and_verify(
                aggregation.findings, plan.goal_objective, steps=ctx
            ),
            SynthesisOutcome,
            max_attempts=1,
        )
        state.synthesis = outcome.synthesis
        state.verification = outcome.verification
        _record_step(ctx, state, STAGE_SYNTHESIS, outcome.synthesis.tokens_used)

        await self._advance(state, ResearchStatus.FORMATTING)

        async def _assemble() -> FinalOutput:
            return build_final_output(state, duration_seconds=time.monotonic() - started)

        state.output = await ctx.run(STAGE_OUTPUT, _assemble, FinalOutput)
        _record_step(ctx, state, STAGE_OUTPUT)
        return state.output

    async def _fail_unexpected(self, state: ResearchState, exc: Exception) -> StageFailedError:
        """Record an error no step translated and tag it with the running stage."""
        stage = _STAGE_BY_STATUS.get(state.status, STAGE_PLANNING)
        logger.opt(exception=exc).error(f"Research {state.request_id} crashed in {stage}")
        await self._finish(state, ResearchStatus.FAILED, failed_stage=stage, error=str(exc))
        return StageFailedError(stage, 1, exc)

    async def _advance(self, state: ResearchState, status: ResearchStatus) -> None:
        state.status = status
        await self._store().set_meta(state.request_id, status=status.value)

    async def _finish(
        self,
        state: ResearchState,
        status: ResearchStatus,
        *,
        failed_stage: str | None = None,
        error: str | None = None,
    ) -> None:
        state.status = status
        state.failed_stage = failed_stage
        state.error = error
        await self._store().set_meta(
            state.request_id, status=status.value, failed_stage=failed_stage, error=error
        )
        log_service.log_event(
            event_type=f"research_{status.value}",
            message=f"Research {state.request_id} {status.value}",
            request_id=state.request_id,
            failed_stage=failed_stage,
            error=error,
        )

    async def get_run_status(self, request_id: str) -> RunStatus | None:
        journal = await self._store().load(request_id)
        if journal is None:
            return None
        meta: dict[str, Any] = journal.get("meta", {})
        steps: dict[str, Any] = journal.get("steps", {})
        return RunStatus(
            request_id=request_id,
            query=meta.get("query") or "",
            session_id=meta.get("session_id"),
            status=meta.get("status") or ResearchStatus.PENDING,
            stages_completed=[s for s in PIPELINE_STAGES if s in steps],
            layer_timings={
                s: int(steps[s].get("duration_ms", 0)) for s in PIPELINE_STAGES if s in steps
            },
            failed_stage=meta.get("failed_stage"),
            error=meta.get("error"),
            updated_at=meta.get("updated_at"),
        )


def _record_step(ctx: WorkflowContext, state: ResearchState, stage: str, tokens: int = 0) -> None:
    """Fold a committed (or replayed) step into the run's running totals."""
    state.stages_completed.append(stage)
    state.layer_timings[stage] = ctx.duration_ms(stage)
    state.tokens_used += tokens


def build_final_output(state: ResearchState, *, duration_seconds: float) -> FinalOutput:
    """Assemble the caller-facing report from a run's recorded stage results."""
    plan, synthesis, verification = state.plan, state.synthesis, state.verification
    if plan is None or synthesis is None or verification is None or state.aggregation is None:
        raise RuntimeError(f"Research {state.request_id} has no synthesis to format")

    contributions = Counter()
    for report in state.field_reports:
        contributions[report.agent_name] += len(report.findings)

    logger.info(
        f"Research {state.request_id}: verdict {verification.verdict.value}, "
        f"{len(state.aggregation.findings)} sources, {state.tokens_used} tokens"
    )
    return FinalOutput(
        request_id=state.request_id,
        query=state.query,
        goal=plan.goal_objective,
        executive_summary=synthesis.executive_summary,
        detailed_analysis=synthesis.detailed_analysis,
        themes=synthesis.themes,
        contradictions=synthesis.contradictions,
        open_questions=synthesis.open_questions,
        verification=verification,
        sources=state.aggregation.findings,
        metadata=OutputMetadata(
            duration_seconds=round(duration_seconds, 3),
            tokens_used=state.tokens_used,
            layer_timings=dict(state.layer_timings),
            agent_contributions=dict(contributions),
            confidence=verification.adjusted_confidence,
            iterations_used=synthesis.iterations_used,
        ),
    )


_engine: ResearchEngine | None = None


def get_engine() -> ResearchEngine:
    global _engine
    if _engine is None:
        _engine = ResearchEngine()
    return _engine
