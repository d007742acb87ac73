from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Protocol

from loguru import logger

from rd_engine.config import settings
from rd_engine.llm_client import Completion
from rd_engine.models.research import AgentConfig, FieldReport, Finding, Persona
from rd_engine.services import logger as log_service
from rd_engine.services.json_payload import (
    clean_text,
    extract_json_value,
    normalize_text_list,
    unit_float,
)
from rd_engine.services.prompt_store import render_prompt

DEGRADED_CLAIM_CHARS = 500


class KnowledgeSearch(Protocol):
    async def query(
        self, text: str, *, system_prompt: str, max_tokens: int, caller: str = ...
    ) -> Completion: ...


def persona_prompt(persona: Persona) -> str:
    return render_prompt(f"discovery.personas.{persona.value}")


class DiscoveryCoordinator:
    """L1: runs every planned agent concurrently and keeps the reports that settle successfully."""

    name = "discovery"

    def __init__(
        self,
        search: KnowledgeSearch | None = None,
        *,
        max_tokens: int | None = None,
        agent_timeout: float | None = None,
    ):
        self.search = search
        self.max_tokens = max_tokens or settings.discovery_max_tokens
        self.agent_timeout = agent_timeout or settings.discovery_agent_timeout_seconds

    def _search_client(self) -> KnowledgeSearch:
        if self.search is None:
            from rd_engine.tools import grok_search

            self.search = grok_search.client()
        return self.search

    async def run_agent(self, agent: AgentConfig) -> FieldReport:
        started = time.monotonic()
        completion = await asyncio.wait_for(
            self._search_client().query(
                render_prompt("discovery.user", query=agent.query),
                system_prompt=persona_prompt(agent.persona),
                max_tokens=self.max_tokens,
                caller=f"{self.name}.{agent.persona.value}",
            ),
            timeout=self.agent_timeout,
        )
        findings, gaps = parse_findings(agent, completion.text)
        return FieldReport(
            agent_id=agent.id,
            agent_name=f"Grok {agent.persona.value}",
            persona=agent.persona,
            findings=findings,
            gaps=gaps,
            confidence=0.8 if findings else 0.3,
            tokens_used=completion.total_tokens,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    async def run_discovery(self, agents: list[AgentConfig]) -> list[FieldReport]:
        if not agents:
            return []

        # Settle-all: one agent failing must not cancel its siblings. Cancelling
        # this coroutine still cancels every outstanding agent call.
        outcomes = await asyncio.gather(
            *(self.run_agent(agent) for agent in agents),
            return_exceptions=True,
        )

        reports: list[FieldReport] = []
        for agent, outcome in zip(agents, outcomes):
            if isinstance(outcome, BaseException):
                reason = "timeout" if isinstance(outcome, TimeoutError) else str(outcome)
                log_service.log_event(
                    event_type="discovery_agent_failed",
                    message=f"Agent {agent.id} failed",
                    agent_id=agent.id,
                    persona=agent.persona.value,
                    error=reason or outcome.__class__.__name__,
                )
                continue
            reports.append(outcome)

        logger.info(f"Discovery: {len(reports)}/{len(agents)} agents succeeded")
        return reports


def parse_findings(agent: AgentConfig, content: str) -> tuple[list[Finding], list[str]]:
    """Parse an agent's JSON findings, degrading to one low-confidence finding."""
    try:
        parsed = extract_json_value(content)
    except json.JSONDecodeError:
        return [_degraded_finding(agent, content)], []

    gaps: list[str] = []
    if isinstance(parsed, dict):
        gaps = normalize_text_list(parsed.get("gaps"), max_items=20)
        parsed = parsed.get("findings")
    if not isinstance(parsed, list):
        return [_degraded_finding(agent, content)], gaps

    findings: list[Finding] = []
    for idx, raw in enumerate(parsed):
        finding = _finding_from_payload(agent, idx, raw)
        if finding is not None:
            findings.append(finding)
    if parsed and not findings:
        # JSON, but none of it is shaped like a finding (e.g. a citation list).
        return [_degraded_finding(agent, content)], gaps
    return findings, gaps


def _finding_from_payload(agent: AgentConfig, idx: int, raw: Any) -> Finding | None:
    if not isinstance(raw, dict):
        return None
    claim = clean_text(raw.get("claim"))
    if not claim:
        return None
    source_url = clean_text(raw.get("source_url") or raw.get("url")) or None
    return Finding(
        id=f"{agent.id}_{idx}",
        claim=claim,
        evidence=clean_text(raw.get("evidence")),
        source=clean_text(raw.get("source")) or "Unknown",
        source_url=source_url,
        confidence=unit_float(raw.get("confidence"), 0.7),
        relevance=unit_float(raw.get("relevance"), 0.7),
    )


def _degraded_finding(agent: AgentConfig, content: str) -> Finding:
    return Finding(
        id=f"{agent.id}_0",
        claim=content[:DEGRADED_CLAIM_CHARS],
        evidence=content,
        source="Grok Analysis",
        confidence=0.6,
        relevance=0.6,
    )
