from __future__ import annotations

from collections import Counter

import pytest

from rd_engine.agents.query_planner import QueryPlanner, build_plan, goal_hash
from rd_engine.exceptions import InvalidQueryError, PlanningError, RetryableError
from rd_engine.models.research import REQUIRED_PERSONAS, Persona
from tests.fakes import FakeLLM, planner_payload


def _persona_counts(plan) -> Counter:
    return Counter(agent.persona for agent in plan.agents)


@pytest.mark.asyncio
async def test_plan_query_keeps_model_agents_when_all_personas_present():
    llm = FakeLLM([planner_payload()])
    plan = await QueryPlanner(llm).plan_query("quantum computing trends")

    assert _persona_counts(plan) == Counter(REQUIRED_PERSONAS)
    assert [a.id for a in plan.agents] == [f"{p.value}_1" for p in REQUIRED_PERSONAS]
    assert plan.clarified_query == "Current quantum computing trends"
    assert plan.goal_hash == goal_hash(plan.clarified_query)
    assert len(plan.goal_hash) == 16
    assert plan.clarity_score == 8
    assert plan.search_queries == {"primary": ["quantum computing trends"]}
    assert plan.tokens_used == 150
    assert llm.calls[0]["caller"] == "query_planner"
    assert "quantum computing trends" in llm.calls[0]["prompt"]


@pytest.mark.asyncio
async def test_plan_query_fills_every_persona_when_model_returns_none():
    llm = FakeLLM(['```json\n{"clarified_query": "solid state batteries"}\n```'])
    plan = await QueryPlanner(llm).plan_query("batteries")

    assert _persona_counts(plan) == Counter(REQUIRED_PERSONAS)
    for agent in plan.agents:
        assert agent.id == f"{agent.persona.value}_auto"
        assert agent.priority == 5
        assert agent.query == f"solid state batteries - {agent.persona.value} perspective"
    assert plan.goal_objective == "batteries"
    assert plan.clarity_score == 7


def test_build_plan_drops_unknown_and_duplicate_personas():
    payload = {
        "grok_agents": [
            {"id": "a", "persona": "Tech", "query": "chips", "priority": 1},
            {"id": "b", "persona": "tech", "query": "second tech", "priority": 2},
            {"id": "c", "persona": "astrology", "query": "stars"},
            {"id": "d", "persona": "news", "priority": "high"},
            "not an agent",
        ],
        "clarity_score": 42,
    }
    plan = build_plan("semiconductors", payload)

    assert _persona_counts(plan) == Counter(REQUIRED_PERSONAS)
    by_persona = {agent.persona: agent for agent in plan.agents}
    assert by_persona[Persona.TECH].id == "a"
    assert by_persona[Persona.TECH].query == "chips"
    assert by_persona[Persona.NEWS].priority == 5
    assert by_persona[Persona.NEWS].query == "semiconductors - news perspective"
    assert by_persona[Persona.ACADEMIC].id == "academic_auto"
    assert plan.clarity_score == 10


@pytest.mark.asyncio
async def test_plan_query_raises_retryable_planning_error_on_non_json():
    llm = FakeLLM(["I could not produce a plan today."])

    with pytest.raises(PlanningError) as exc_info:
        await QueryPlanner(llm).plan_query("quantum computing trends")

    assert isinstance(exc_info.value, RetryableError)


@pytest.mark.asyncio
@pytest.mark.parametrize("query", ["", "   ", None])
async def test_plan_query_rejects_empty_query_without_calling_model(query):
    llm = FakeLLM([])

    with pytest.raises(InvalidQueryError):
        await QueryPlanner(llm).plan_query(query)

    assert llm.calls == []
