"""Per-session state behind a single writer per key.

Every session key gets its own queue and worker task. Writes for one key are
applied strictly in submission order by that worker, while different keys
progress independently. The worker publishes a new ``Session`` snapshot after
each write, so readers only ever see committed state and never wait on a
writer. A worker that sees no writes for ``idle_timeout`` seconds exits;
the next write for its key starts a new one.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Callable, Optional

from loguru import logger

from rd_engine.config import settings
from rd_engine.models.session import Session, SessionMessage
from rd_engine.services import logger as log_service

Mutation = Callable[[Optional[Session]], Session]


@dataclass
class _Write:
    op: str
    apply: Mutation
    done: asyncio.Future


def _now() -> datetime:
    return datetime.now(UTC)


def _fresh(session_id: str) -> Session:
    return Session(session_id=session_id, created_at=_now())


class SessionManager:
    def __init__(self, *, idle_timeout: float | None = None) -> None:
        self.idle_timeout = idle_timeout or settings.session_worker_idle_seconds
        self._committed: dict[str, Session] = {}
        self._queues: dict[str, asyncio.Queue[_Write]] = {}
        self._workers: dict[str, asyncio.Task] = {}

    # --- writes ---

    async def create_session(self, session_id: str) -> Session:
        """Initialize (or reset) the session to an empty history."""
        return await self._submit(session_id, "create_session", lambda _: _fresh(session_id))

    async def add_message(self, session_id: str, role: str, content: str) -> Session:
        message = SessionMessage(role=role, content=content, timestamp=_now())

        def _apply(current: Optional[Session]) -> Session:
            base = current or _fresh(session_id)
            return base.model_copy(update={"messages": [*base.messages, message]})

        return await self._submit(session_id, "add_message", _apply)

    async def add_research(self, session_id: str, request_id: str) -> Session:
        return await self._submit(
            session_id, "add_research", self._research_mutation(session_id, request_id)
        )

    def send_add_research(self, session_id: str, request_id: str) -> asyncio.Future:
        """Enqueue ``add_research`` without waiting for it to be applied."""
        done = self._enqueue(
            session_id, "add_research", self._research_mutation(session_id, request_id)
        )

        def _report(fut: asyncio.Future) -> None:
            if fut.cancelled():
                return
            exc = fut.exception()
            if exc is not None:
                log_service.log_event(
                    event_type="session_write_failed",
                    message=f"Recording research {request_id} failed",
                    session_id=session_id,
                    error=str(exc),
                )

        done.add_done_callback(_report)
        return done

    @staticmethod
    def _research_mutation(session_id: str, request_id: str) -> Mutation:
        def _apply(current: Optional[Session]) -> Session:
            base = current or _fresh(session_id)
            return base.model_copy(update={"research_ids": [*base.research_ids, request_id]})

        return _apply

    # --- reads (committed state only, never queued) ---

    def get_history(self, session_id: str) -> list[SessionMessage]:
        session = self._committed.get(session_id)
        return list(session.messages) if session else []

    def get_session_info(self, session_id: str) -> Optional[Session]:
        return self._committed.get(session_id)

    # --- worker plumbing ---

    async def _submit(self, session_id: str, op: str, apply: Mutation) -> Session:
        return await self._enqueue(session_id, op, apply)

    def _enqueue(self, session_id: str, op: str, apply: Mutation) -> asyncio.Future:
        if not session_id:
            raise ValueError("session_id is required")
        done = asyncio.get_running_loop().create_future()
        self._queue_for(session_id).put_nowait(_Write(op=op, apply=apply, done=done))
        return done

    def _queue_for(self, session_id: str) -> asyncio.Queue[_Write]:
        queue = self._queues.get(session_id)
        worker = self._workers.get(session_id)
        if queue is None or worker is None or worker.done():
            queue = asyncio.Queue()
            self._queues[session_id] = queue
            self._workers[session_id] = asyncio.create_task(
                self._worker(session_id, queue), name=f"session-{session_id}"
            )
        return queue

    async def _worker(self, session_id: str, queue: asyncio.Queue[_Write]) -> None:
        while True:
            try:
                write = await asyncio.wait_for(queue.get(), self.idle_timeout)
            except TimeoutError:
                if not queue.empty():
                    continue
                # Idle: retire so the next write for this key starts a fresh worker.
                if self._queues.get(session_id) is queue:
                    del self._queues[session_id]
                    self._workers.pop(session_id, None)
                logger.debug(f"Session {session_id} worker idle, exiting")
                return
            try:
                if write.done.cancelled():
                    continue
                try:
                    updated = write.apply(self._committed.get(session_id))
                except Exception as exc:
                    logger.exception(f"Session {session_id} {write.op} failed")
                    write.done.set_exception(exc)
                    continue
                self._committed[session_id] = updated
                write.done.set_result(updated)
            finally:
                queue.task_done()

    async def drain(self, session_id: Optional[str] = None) -> None:
        """Wait until every queued write (for one key or all keys) is applied."""
        if session_id is None:
            queues = list(self._queues.values())
        else:
            queues = [self._queues[session_id]] if session_id in self._queues else []
        for queue in queues:
            await queue.join()

    async def close(self) -> None:
        await self.drain()
        workers = list(self._workers.values())
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
        self._queues.clear()


_manager: SessionManager | None = None


def get_session_manager() -> SessionManager:
    global _manager
    if _manager is None:
        _manager = SessionManager()
    return _manager
