from __future__ import annotations

import hashlib
import json
from typing import Any

from loguru import logger

from rd_engine.config import settings
from rd_engine.exceptions import InvalidQueryError, PlanningError
from rd_engine.llm_client import LanguageModelAdapter, client as llm_client
from rd_engine.models.research import REQUIRED_PERSONAS, AgentConfig, Persona, ResearchPlan
from rd_engine.services.json_payload import clean_text, extract_json_object, normalize_text_list
from rd_engine.services.prompt_store import render_prompt

LOWEST_PRIORITY = len(REQUIRED_PERSONAS)


def goal_hash(clarified_query: str) -> str:
    return hashlib.sha256(clarified_query.encode("utf-8")).hexdigest()[:16]


class QueryPlanner:
    """L0: one model call that clarifies the query and assigns the discovery team."""

    name = "query_planner"

    def __init__(
        self,
        llm: LanguageModelAdapter | None = None,
        *,
        max_tokens: int | None = None,
        thinking_budget: int | None = None,
    ):
        self.llm = llm
        self.max_tokens = max_tokens or settings.planner_max_tokens
        self.thinking_budget = (
            settings.planner_thinking_budget if thinking_budget is None else thinking_budget
        )

    async def plan_query(self, query: str) -> ResearchPlan:
        query = (query or "").strip()
        if not query:
            raise InvalidQueryError("Query is required")

        active_llm = self.llm or llm_client()
        prompt = render_prompt(
            "planner.user",
            instructions=render_prompt("planner.instructions"),
            query=query,
        )
        completion = await active_llm.complete(
            prompt,
            max_tokens=self.max_tokens,
            thinking_budget=self.thinking_budget,
            caller=self.name,
        )

        try:
            payload = extract_json_object(completion.text)
        except json.JSONDecodeError as exc:
            raise PlanningError(f"Planner response is not a JSON object: {exc}") from exc

        plan = build_plan(query, payload)
        plan.tokens_used = completion.total_tokens
        logger.info(
            f"Research plan {plan.goal_hash}: {len(plan.agents)} agents, clarity {plan.clarity_score}"
        )
        return plan


def build_plan(query: str, payload: dict[str, Any]) -> ResearchPlan:
    """Validate the planner payload and enforce one agent per persona."""
    clarified = clean_text(payload.get("clarified_query")) or query
    goal = clean_text(payload.get("goal_objective")) or query

    agents = _parse_agents(payload.get("grok_agents"), clarified)
    covered = {agent.persona for agent in agents}
    for persona in REQUIRED_PERSONAS:
        if persona in covered:
            continue
        agents.append(
            AgentConfig(
                id=f"{persona.value}_auto",
                persona=persona,
                query=f"{clarified} - {persona.value} perspective",
                priority=LOWEST_PRIORITY,
            )
        )

    return ResearchPlan(
        clarified_query=clarified,
        goal_objective=goal,
        goal_hash=goal_hash(clarified),
        clarity_score=_clarity(payload.get("clarity_score")),
        agents=agents,
        search_queries=_parse_search_queries(payload.get("search_queries")),
    )


def _parse_agents(raw_agents: Any, clarified: str) -> list[AgentConfig]:
    if not isinstance(raw_agents, list):
        return []
    agents: list[AgentConfig] = []
    seen: set[Persona] = set()
    for idx, raw in enumerate(raw_agents):
        if not isinstance(raw, dict):
            continue
        try:
            persona = Persona(str(raw.get("persona", "")).strip().lower())
        except ValueError:
            logger.debug(f"Dropping planner agent with unknown persona: {raw.get('persona')!r}")
            continue
        if persona in seen:
            continue
        seen.add(persona)
        priority = raw.get("priority")
        if isinstance(priority, bool) or not isinstance(priority, (int, float)):
            priority = LOWEST_PRIORITY
        agents.append(
            AgentConfig(
                id=clean_text(raw.get("id")) or f"{persona.value}_{idx + 1}",
                persona=persona,
                query=clean_text(raw.get("query")) or f"{clarified} - {persona.value} perspective",
                priority=min(max(int(priority), 1), LOWEST_PRIORITY),
            )
        )
    return agents


def _parse_search_queries(raw: Any) -> dict[str, list[str]]:
    if not isinstance(raw, dict):
        return {}
    queries: dict[str, list[str]] = {}
    for angle, phrases in raw.items():
        cleaned = normalize_text_list(phrases, max_items=10)
        if isinstance(angle, str) and cleaned:
            queries[angle] = cleaned
    return queries


def _clarity(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not value:
        return 7
    return min(max(int(round(value)), 1), 10)
