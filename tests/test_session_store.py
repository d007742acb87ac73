from __future__ import annotations

import asyncio

import pytest

from rd_engine.services.session_store import SessionManager


@pytest.mark.asyncio
async def test_writes_for_one_key_apply_in_submission_order():
    manager = SessionManager()
    await manager.create_session("s1")

    await asyncio.gather(*(manager.add_message("s1", "user", f"m{i}") for i in range(20)))

    assert [m.content for m in manager.get_history("s1")] == [f"m{i}" for i in range(20)]
    await manager.close()


@pytest.mark.asyncio
async def test_create_session_is_idempotent_reset():
    manager = SessionManager()
    await manager.create_session("s1")
    await manager.add_message("s1", "user", "hello")
    await manager.add_research("s1", "research-1")

    session = await manager.create_session("s1")

    assert session.messages == []
    assert session.research_ids == []
    assert manager.get_history("s1") == []
    await manager.close()


@pytest.mark.asyncio
async def test_first_write_creates_the_session():
    manager = SessionManager()

    session = await manager.add_research("fresh", "research-9")

    assert session.session_id == "fresh"
    assert session.research_ids == ["research-9"]
    assert manager.get_session_info("fresh").created_at is not None
    await manager.close()


@pytest.mark.asyncio
async def test_send_add_research_does_not_wait_but_is_applied_in_order():
    manager = SessionManager()
    await manager.create_session("s1")

    pending = manager.send_add_research("s1", "research-a")
    manager.send_add_research("s1", "research-b")

    assert not pending.done()
    assert manager.get_session_info("s1").research_ids == []

    await manager.drain("s1")
    assert manager.get_session_info("s1").research_ids == ["research-a", "research-b"]
    await manager.close()


@pytest.mark.asyncio
async def test_readers_see_only_committed_snapshots():
    manager = SessionManager()
    await manager.create_session("s1")
    before = manager.get_session_info("s1")

    await manager.add_message("s1", "assistant", "report")

    assert before.messages == []
    assert [m.role for m in manager.get_history("s1")] == ["assistant"]
    assert manager.get_session_info("unknown") is None
    assert manager.get_history("unknown") == []
    await manager.close()


@pytest.mark.asyncio
async def test_sessions_progress_independently():
    manager = SessionManager()

    await asyncio.gather(
        manager.add_message("a", "user", "one"),
        manager.add_message("b", "user", "two"),
    )

    assert [m.content for m in manager.get_history("a")] == ["one"]
    assert [m.content for m in manager.get_history("b")] == ["two"]
    await manager.close()


@pytest.mark.asyncio
async def test_close_flushes_queued_writes():
    manager = SessionManager()
    manager.send_add_research("s1", "research-z")

    await manager.close()

    assert manager.get_session_info("s1").research_ids == ["research-z"]


@pytest.mark.asyncio
async def test_empty_session_key_is_rejected():
    manager = SessionManager()
    with pytest.raises(ValueError):
        await manager.add_message("", "user", "x")


@pytest.mark.asyncio
async def test_idle_worker_exits_and_next_write_restarts_it():
    manager = SessionManager(idle_timeout=0.05)
    await manager.add_message("s1", "user", "first")
    worker = manager._workers["s1"]

    await asyncio.wait_for(worker, timeout=1)

    assert "s1" not in manager._workers
    assert "s1" not in manager._queues
    await manager.add_message("s1", "user", "second")
    assert [m.content for m in manager.get_history("s1")] == ["first", "second"]
    await manager.close()
