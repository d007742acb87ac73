from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, TypeVar

from pydantic import TypeAdapter

from rd_engine.config import settings
from rd_engine.exceptions import RetryableError, StageFailedError
from rd_engine.services import logger as log_service
from rd_engine.workflow.checkpoints import CheckpointStore

T = TypeVar("T")


class WorkflowContext:
    """Runs named steps of one research run with replay, retry and commit.

    A step whose result is already in the journal is replayed from it and its
    action is not called again. Otherwise the action runs under the retry
    policy (only ``RetryableError`` is retried, with capped exponential
    backoff) and its result is committed before being returned.
    """

    def __init__(
        self,
        run_id: str,
        store: CheckpointStore,
        *,
        journal: dict[str, Any] | None = None,
        max_attempts: int | None = None,
        base_delay: float | None = None,
        max_delay: float | None = None,
    ):
        self.run_id = run_id
        self.store = store
        self._committed: dict[str, dict[str, Any]] = dict((journal or {}).get("steps", {}))
        self.max_attempts = max(max_attempts or settings.step_max_attempts, 1)
        self.base_delay = (
            settings.step_retry_base_delay_seconds if base_delay is None else base_delay
        )
        self.max_delay = settings.step_retry_max_delay_seconds if max_delay is None else max_delay
        self.replayed: set[str] = set()

    @classmethod
    async def open(cls, run_id: str, store: CheckpointStore, **kwargs: Any) -> "WorkflowContext":
        journal = await store.load(run_id)
        return cls(run_id, store, journal=journal, **kwargs)

    def is_committed(self, step: str) -> bool:
        return step in self._committed

    @property
    def committed_steps(self) -> list[str]:
        return list(self._committed)

    def duration_ms(self, step: str) -> int:
        return int(self._committed.get(step, {}).get("duration_ms", 0))

    def backoff(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    async def run(
        self,
        step: str,
        action: Callable[[], Awaitable[T]],
        result_type: Any,
        *,
        max_attempts: int | None = None,
    ) -> T:
        adapter = TypeAdapter(result_type)
        if step in self._committed:
            self.replayed.add(step)
            log_service.log_research_step(self.run_id, step, "replayed")
            return adapter.validate_python(self._committed[step]["value"])

        attempts = max(max_attempts or self.max_attempts, 1)
        started = time.monotonic()
        for attempt in range(1, attempts + 1):
            log_service.log_research_step(self.run_id, step, "started", {"attempt": attempt})
            try:
                result = await action()
                break
            except RetryableError as exc:
                if attempt >= attempts:
                    log_service.log_research_step(
                        self.run_id, step, "failed", {"attempt": attempt, "error": str(exc)}
                    )
                    raise StageFailedError(step, attempt, exc) from exc
                delay = self.backoff(attempt)
                log_service.log_research_step(
                    self.run_id,
                    step,
                    "retry",
                    {"attempt": attempt, "error": str(exc), "delay_seconds": delay},
                )
                await asyncio.sleep(delay)

        entry = {
            "value": adapter.dump_python(result, mode="json"),
            "duration_ms": int((time.monotonic() - started) * 1000),
            "attempts": attempt,
        }
        committed = await self.store.commit(self.run_id, step, entry)
        self._committed[step] = committed
        log_service.log_research_step(
            self.run_id, step, "committed", {"duration_ms": committed.get("duration_ms", 0)}
        )
        return adapter.validate_python(committed["value"])
