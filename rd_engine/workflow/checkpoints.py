"""Durable per-run step journals.

Each run id owns one journal: run metadata plus the committed result of every
completed step. Commits are first-writer-wins, so a step that was already
committed is never overwritten by a replay racing with the original.
"""
from __future__ import annotations

import asyncio
import copy
import json
import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from rd_engine.config import settings


class CheckpointStore(Protocol):
    async def load(self, run_id: str) -> dict[str, Any] | None: ...
    async def commit(self, run_id: str, step: str, entry: dict[str, Any]) -> dict[str, Any]: ...
    async def set_meta(self, run_id: str, **fields: Any) -> None: ...


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _empty_journal(run_id: str) -> dict[str, Any]:
    return {"run_id": run_id, "meta": {"created_at": _now()}, "steps": {}}


def _commit_into(journal: dict[str, Any], step: str, entry: dict[str, Any]) -> dict[str, Any]:
    steps = journal.setdefault("steps", {})
    if step in steps:
        return steps[step]
    committed = {**entry, "committed_at": _now()}
    steps[step] = committed
    journal.setdefault("meta", {})["updated_at"] = committed["committed_at"]
    return committed


class MemoryCheckpointStore:
    """Process-local journals; survives task restarts but not process restarts."""

    def __init__(self) -> None:
        self._journals: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def load(self, run_id: str) -> dict[str, Any] | None:
        async with self._lock:
            journal = self._journals.get(run_id)
            return copy.deepcopy(journal) if journal is not None else None

    async def commit(self, run_id: str, step: str, entry: dict[str, Any]) -> dict[str, Any]:
        async with self._lock:
            journal = self._journals.setdefault(run_id, _empty_journal(run_id))
            return copy.deepcopy(_commit_into(journal, step, entry))

    async def set_meta(self, run_id: str, **fields: Any) -> None:
        async with self._lock:
            journal = self._journals.setdefault(run_id, _empty_journal(run_id))
            journal["meta"].update(fields, updated_at=_now())


class FileCheckpointStore:
    """One JSON journal per run under ``persist_dir``, replaced atomically on write."""

    def __init__(self, persist_dir: str):
        self.persist_dir = Path(persist_dir)
        self.persist_dir.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _path(self, run_id: str) -> Path:
        return self.persist_dir / f"{_safe_name(run_id)}.json"

    def _read(self, run_id: str) -> dict[str, Any] | None:
        path = self._path(run_id)
        if not path.exists():
            return None
        payload = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ValueError(f"Corrupt checkpoint journal: {path}")
        return payload

    def _write(self, run_id: str, journal: dict[str, Any]) -> None:
        path = self._path(run_id)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(journal, indent=2), encoding="utf-8")
        tmp_path.replace(path)

    async def load(self, run_id: str) -> dict[str, Any] | None:
        async with self._lock:
            return await asyncio.to_thread(self._read, run_id)

    async def commit(self, run_id: str, step: str, entry: dict[str, Any]) -> dict[str, Any]:
        def _sync_commit() -> dict[str, Any]:
            journal = self._read(run_id) or _empty_journal(run_id)
            committed = _commit_into(journal, step, entry)
            self._write(run_id, journal)
            return committed

        async with self._lock:
            return await asyncio.to_thread(_sync_commit)

    async def set_meta(self, run_id: str, **fields: Any) -> None:
        def _sync_set() -> None:
            journal = self._read(run_id) or _empty_journal(run_id)
            journal.setdefault("meta", {}).update(fields, updated_at=_now())
            self._write(run_id, journal)

        async with self._lock:
            await asyncio.to_thread(_sync_set)


def _safe_name(run_id: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "_", run_id)


_store: CheckpointStore | None = None


def get_checkpoint_store() -> CheckpointStore:
    global _store
    if _store is None:
        backend = settings.checkpoint_backend.lower().strip()
        if backend == "file":
            _store = FileCheckpointStore(settings.checkpoint_dir)
        elif backend == "memory":
            _store = MemoryCheckpointStore()
        else:
            raise ValueError(f"Unsupported CHECKPOINT_BACKEND: {settings.checkpoint_backend}")
    return _store
