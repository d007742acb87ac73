from __future__ import annotations

import json

import pytest

from rd_engine.exceptions import AdapterTransportError, InvalidQueryError, StageFailedError
from rd_engine.models.research import AgentConfig, Persona
from rd_engine.workflow.checkpoints import FileCheckpointStore, MemoryCheckpointStore
from rd_engine.workflow.context import WorkflowContext


def _ctx(store, run_id: str = "run-1", **kwargs) -> WorkflowContext:
    kwargs.setdefault("base_delay", 0)
    kwargs.setdefault("max_delay", 0)
    return WorkflowContext(run_id, store, **kwargs)


class Flaky:
    def __init__(self, failures: list[Exception], result):
        self.failures = list(failures)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


@pytest.mark.asyncio
async def test_run_commits_result_and_replays_without_calling_again():
    store = MemoryCheckpointStore()
    agent = AgentConfig(id="tech_1", persona=Persona.TECH, query="chips")
    action = Flaky([], agent)

    first = await _ctx(store).run("L0_query_planning", action, AgentConfig)
    resumed = WorkflowContext("run-1", store, journal=await store.load("run-1"))
    second = await resumed.run("L0_query_planning", action, AgentConfig)

    assert action.calls == 1
    assert first == agent
    assert second == agent
    assert resumed.replayed == {"L0_query_planning"}
    assert resumed.committed_steps == ["L0_query_planning"]


@pytest.mark.asyncio
async def test_retryable_errors_are_retried_until_success():
    store = MemoryCheckpointStore()
    action = Flaky([AdapterTransportError("anthropic", "reset")] * 2, [1, 2, 3])

    result = await _ctx(store).run("L1_discovery", action, list[int])

    assert result == [1, 2, 3]
    assert action.calls == 3
    journal = await store.load("run-1")
    assert journal["steps"]["L1_discovery"]["attempts"] == 3


@pytest.mark.asyncio
async def test_exhausted_retries_raise_stage_failed_with_stage_name():
    store = MemoryCheckpointStore()
    action = Flaky([AdapterTransportError("xai", "down")] * 5, "never")

    with pytest.raises(StageFailedError) as exc_info:
        await _ctx(store, max_attempts=3).run("L2_aggregation", action, str)

    assert exc_info.value.stage == "L2_aggregation"
    assert exc_info.value.attempts == 3
    assert action.calls == 3
    assert await store.load("run-1") is None


@pytest.mark.asyncio
async def test_terminal_errors_are_not_retried():
    action = Flaky([InvalidQueryError("bad")], "never")

    with pytest.raises(InvalidQueryError):
        await _ctx(MemoryCheckpointStore()).run("L0_query_planning", action, str)

    assert action.calls == 1


def test_backoff_is_exponential_and_capped():
    ctx = WorkflowContext("r", MemoryCheckpointStore(), base_delay=1.0, max_delay=5.0)

    assert [ctx.backoff(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


@pytest.mark.asyncio
async def test_commit_is_first_writer_wins():
    store = MemoryCheckpointStore()

    first = await store.commit("run-1", "L1_discovery", {"value": "a", "duration_ms": 5})
    second = await store.commit("run-1", "L1_discovery", {"value": "b", "duration_ms": 9})

    assert first["value"] == "a"
    assert second["value"] == "a"
    journal = await store.load("run-1")
    assert journal["steps"]["L1_discovery"]["value"] == "a"


@pytest.mark.asyncio
async def test_file_store_persists_journal_across_instances(tmp_path):
    store = FileCheckpointStore(str(tmp_path))
    await store.set_meta("research/42", query="quantum", status="planning")
    await store.commit("research/42", "L0_query_planning", {"value": {"x": 1}, "duration_ms": 12})

    reopened = FileCheckpointStore(str(tmp_path))
    journal = await reopened.load("research/42")

    assert journal["meta"]["query"] == "quantum"
    assert journal["steps"]["L0_query_planning"]["value"] == {"x": 1}
    files = sorted(p.name for p in tmp_path.iterdir())
    assert files == ["research_42.json"]
    assert json.loads((tmp_path / "research_42.json").read_text())["run_id"] == "research/42"


@pytest.mark.asyncio
async def test_loaded_memory_journal_is_a_copy():
    store = MemoryCheckpointStore()
    await store.commit("run-1", "s", {"value": [1]})

    journal = await store.load("run-1")
    journal["steps"]["s"]["value"].append(2)

    assert (await store.load("run-1"))["steps"]["s"]["value"] == [1]
