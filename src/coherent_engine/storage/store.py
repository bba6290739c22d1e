"""Run persistence: the contract the engine writes through.

A run is created once, then each chunk step appends exactly one
:class:`ChunkRecord` and replaces the run's current state.  Records are
immutable; a run that fails keeps every record written before the
failure, so partial output can always be recovered.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from coherent_engine.config import CoherenceMode
from coherent_engine.errors import RunNotFoundError, RunStoreError
from coherent_engine.models.base import ChunkRecord, DocumentRun, RunStatus
from coherent_engine.models.skeleton import DocumentSkeleton
from coherent_engine.models.state import CoherenceState

logger = logging.getLogger(__name__)


class RunStore(Protocol):
    """Protocol for run persistence backends."""

    async def create_run(
        self,
        run_id: str,
        mode: CoherenceMode,
        state: CoherenceState,
        total_chunks: int,
        *,
        word_count: int = 0,
    ) -> DocumentRun: ...
    async def read_run(self, run_id: str) -> DocumentRun: ...
    async def read_run_state(self, run_id: str) -> CoherenceState: ...
    async def replace_run_state(
        self, run_id: str, state: CoherenceState, *, increment: bool = True,
    ) -> None: ...
    async def append_chunk_record(self, record: ChunkRecord) -> None: ...
    async def list_chunk_records(self, run_id: str) -> list[ChunkRecord]: ...
    async def mark_run_completed(self, run_id: str) -> None: ...
    async def mark_run_failed(self, run_id: str, reason: str) -> None: ...
    async def create_skeleton(self, skeleton: DocumentSkeleton) -> None: ...
    async def read_skeleton(self, planning_id: str) -> DocumentSkeleton | None: ...


class InMemoryRunStore:
    """Process-local store.

    Every read and write deep-copies, so callers can never mutate stored
    state through a returned object.  A single lock serialises writes.
    """

    def __init__(self) -> None:
        self._runs: dict[str, DocumentRun] = {}
        self._records: dict[str, dict[int, ChunkRecord]] = {}
        self._skeletons: dict[str, DocumentSkeleton] = {}
        self._lock = asyncio.Lock()

    def _get(self, run_id: str) -> DocumentRun:
        try:
            return self._runs[run_id]
        except KeyError:
            raise RunNotFoundError(run_id) from None

    # ── Runs ────────────────────────────────────────────────────────

    async def create_run(
        self,
        run_id: str,
        mode: CoherenceMode,
        state: CoherenceState,
        total_chunks: int,
        *,
        word_count: int = 0,
    ) -> DocumentRun:
        async with self._lock:
            if run_id in self._runs:
                raise RunStoreError(f"Run {run_id!r} already exists.")
            run = DocumentRun(
                run_id=run_id,
                mode=mode,
                total_chunks=total_chunks,
                word_count=word_count,
                state=state.model_copy(deep=True),
            )
            self._runs[run_id] = run
            self._records[run_id] = {}
        logger.debug("Created run %s (%s, %d chunks).", run_id, mode.value, total_chunks)
        return run.model_copy(deep=True)

    async def read_run(self, run_id: str) -> DocumentRun:
        return self._get(run_id).model_copy(deep=True)

    async def read_run_state(self, run_id: str) -> CoherenceState:
        return self._get(run_id).state.model_copy(deep=True)

    async def replace_run_state(
        self, run_id: str, state: CoherenceState, *, increment: bool = True,
    ) -> None:
        async with self._lock:
            run = self._get(run_id)
            if state.mode != run.state.mode:
                raise RunStoreError(
                    f"Run {run_id!r} is {run.state.mode}, cannot store a {state.mode} state."
                )
            self._runs[run_id] = run.model_copy(update={
                "state": state.model_copy(deep=True),
                "processed_chunks": run.processed_chunks + (1 if increment else 0),
            })

    async def mark_run_completed(self, run_id: str) -> None:
        await self._set_status(run_id, RunStatus.COMPLETED, None)

    async def mark_run_failed(self, run_id: str, reason: str) -> None:
        await self._set_status(run_id, RunStatus.FAILED, reason)

    async def _set_status(self, run_id: str, status: RunStatus, reason: str | None) -> None:
        async with self._lock:
            run = self._get(run_id)
            self._runs[run_id] = run.model_copy(
                update={"status": status, "failure_reason": reason},
            )

    # ── Chunk records ───────────────────────────────────────────────

    async def append_chunk_record(self, record: ChunkRecord) -> None:
        async with self._lock:
            self._get(record.run_id)
            records = self._records[record.run_id]
            if record.index in records:
                raise RunStoreError(
                    f"Chunk {record.index} of run {record.run_id!r} is already recorded."
                )
            records[record.index] = record.model_copy(deep=True)

    async def list_chunk_records(self, run_id: str) -> list[ChunkRecord]:
        self._get(run_id)
        records = self._records[run_id]
        return [records[i].model_copy(deep=True) for i in sorted(records)]

    # ── Skeletons ───────────────────────────────────────────────────

    async def create_skeleton(self, skeleton: DocumentSkeleton) -> None:
        if not skeleton.planning_id:
            raise RunStoreError("Skeleton has no planning id.")
        async with self._lock:
            self._skeletons[skeleton.planning_id] = skeleton.model_copy(deep=True)

    async def read_skeleton(self, planning_id: str) -> DocumentSkeleton | None:
        skeleton = self._skeletons.get(planning_id)
        return skeleton.model_copy(deep=True) if skeleton else None
