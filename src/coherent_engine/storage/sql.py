"""SQLAlchemy-backed :class:`RunStore`.

Three tables: ``coherence_run`` (one row per run, current state as
JSON), ``coherence_chunk`` (append-only, unique on run and index) and
``document_skeleton``.  The engine is synchronous; every store method
runs its session in a worker thread via :func:`asyncio.to_thread`.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, TypeVar

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from coherent_engine.config import CoherenceMode
from coherent_engine.errors import RunNotFoundError, RunStoreError
from coherent_engine.models.base import ChunkRecord, DocumentRun, RunStatus
from coherent_engine.models.skeleton import DocumentSkeleton
from coherent_engine.models.state import CoherenceState, state_from_dict, state_to_dict

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


# =====================================================================
# Tables
# =====================================================================

class RunRow(Base):
    __tablename__ = "coherence_run"

    run_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    mode: Mapped[CoherenceMode] = mapped_column(
        Enum(CoherenceMode, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False)
    processed_chunks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    word_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[RunStatus] = mapped_column(
        Enum(RunStatus, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=RunStatus.IN_PROGRESS,
    )
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    state: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now,
    )


class ChunkRow(Base):
    __tablename__ = "coherence_chunk"
    __table_args__ = (
        UniqueConstraint("run_id", "chunk_index", name="uq_coherence_chunk_run_index"),
    )

    chunk_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("coherence_run.run_id", ondelete="CASCADE"), nullable=False,
    )
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    input_text: Mapped[str] = mapped_column(Text, nullable=False)
    output_text: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="preserved")
    violations: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    repairs: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    state_after: Mapped[dict] = mapped_column(JSON, nullable=False)
    parse_failed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class SkeletonRow(Base):
    __tablename__ = "document_skeleton"

    planning_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    tier: Mapped[str] = mapped_column(String(16), nullable=False)
    total_word_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skeleton: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


# =====================================================================
# Row <-> model conversion
# =====================================================================

def _run_from_row(row: RunRow) -> DocumentRun:
    return DocumentRun(
        run_id=row.run_id,
        mode=row.mode,
        total_chunks=row.total_chunks,
        processed_chunks=row.processed_chunks,
        word_count=row.word_count,
        status=row.status,
        failure_reason=row.failure_reason,
        state=state_from_dict(row.state),
    )


def _record_from_row(row: ChunkRow) -> ChunkRecord:
    return ChunkRecord(
        run_id=row.run_id,
        index=row.chunk_index,
        input_text=row.input_text,
        output_text=row.output_text,
        status=row.status,
        violations=row.violations,
        repairs=row.repairs,
        state_after=state_from_dict(row.state_after),
        parse_failed=row.parse_failed,
    )


# =====================================================================
# Store
# =====================================================================

class SqlRunStore:
    """Run store on any SQLAlchemy-supported database.

    Args:
        url: Database URL (e.g. ``sqlite:///runs.db``,
            ``postgresql+psycopg://...``).  Ignored when *engine* is given.
        engine: Pre-built engine.
        create_tables: Create missing tables on construction.
    """

    def __init__(
        self,
        url: str | None = None,
        *,
        engine: Engine | None = None,
        create_tables: bool = True,
    ) -> None:
        if engine is None:
            if url is None:
                raise ValueError("SqlRunStore needs a database url or an engine.")
            engine = create_engine(url, pool_pre_ping=True)
        self._engine = engine
        self._sessions = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        if create_tables:
            Base.metadata.create_all(engine)

    def close(self) -> None:
        self._engine.dispose()

    async def _run(self, fn: Callable[[Session], T]) -> T:
        def work() -> T:
            with self._sessions.begin() as session:
                return fn(session)
        return await asyncio.to_thread(work)

    @staticmethod
    def _get(session: Session, run_id: str) -> RunRow:
        row = session.get(RunRow, run_id)
        if row is None:
            raise RunNotFoundError(run_id)
        return row

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
        def work(session: Session) -> DocumentRun:
            if session.get(RunRow, run_id) is not None:
                raise RunStoreError(f"Run {run_id!r} already exists.")
            row = RunRow(
                run_id=run_id,
                mode=mode,
                total_chunks=total_chunks,
                processed_chunks=0,
                word_count=word_count,
                status=RunStatus.IN_PROGRESS,
                state=state_to_dict(state),
            )
            session.add(row)
            session.flush()
            return _run_from_row(row)

        run = await self._run(work)
        logger.debug("Created run %s (%s, %d chunks).", run_id, mode.value, total_chunks)
        return run

    async def read_run(self, run_id: str) -> DocumentRun:
        return await self._run(lambda s: _run_from_row(self._get(s, run_id)))

    async def read_run_state(self, run_id: str) -> CoherenceState:
        return await self._run(lambda s: state_from_dict(self._get(s, run_id).state))

    async def replace_run_state(
        self, run_id: str, state: CoherenceState, *, increment: bool = True,
    ) -> None:
        def work(session: Session) -> None:
            row = self._get(session, run_id)
            if row.state.get("mode") != state.mode:
                raise RunStoreError(
                    f"Run {run_id!r} is {row.state.get('mode')}, cannot store a {state.mode} state."
                )
            values: dict[str, Any] = {"state": state_to_dict(state), "updated_at": _now()}
            if increment:
                values["processed_chunks"] = RunRow.processed_chunks + 1
            session.execute(update(RunRow).where(RunRow.run_id == run_id).values(**values))

        await self._run(work)

    async def mark_run_completed(self, run_id: str) -> None:
        await self._set_status(run_id, RunStatus.COMPLETED, None)

    async def mark_run_failed(self, run_id: str, reason: str) -> None:
        await self._set_status(run_id, RunStatus.FAILED, reason)

    async def _set_status(self, run_id: str, status: RunStatus, reason: str | None) -> None:
        def work(session: Session) -> None:
            row = self._get(session, run_id)
            row.status = status
            row.failure_reason = reason

        await self._run(work)

    # ── Chunk records ───────────────────────────────────────────────

    async def append_chunk_record(self, record: ChunkRecord) -> None:
        def work(session: Session) -> None:
            self._get(session, record.run_id)
            session.add(ChunkRow(
                run_id=record.run_id,
                chunk_index=record.index,
                input_text=record.input_text,
                output_text=record.output_text,
                status=record.status,
                violations=[v.model_dump(mode="json") for v in record.violations],
                repairs=[r.model_dump(mode="json") for r in record.repairs],
                state_after=state_to_dict(record.state_after),
                parse_failed=record.parse_failed,
            ))
            session.flush()

        try:
            await self._run(work)
        except IntegrityError as e:
            raise RunStoreError(
                f"Chunk {record.index} of run {record.run_id!r} is already recorded."
            ) from e

    async def list_chunk_records(self, run_id: str) -> list[ChunkRecord]:
        def work(session: Session) -> list[ChunkRecord]:
            self._get(session, run_id)
            rows = session.scalars(
                select(ChunkRow)
                .where(ChunkRow.run_id == run_id)
                .order_by(ChunkRow.chunk_index)
            ).all()
            return [_record_from_row(r) for r in rows]

        return await self._run(work)

    # ── Skeletons ───────────────────────────────────────────────────

    async def create_skeleton(self, skeleton: DocumentSkeleton) -> None:
        if not skeleton.planning_id:
            raise RunStoreError("Skeleton has no planning id.")

        def work(session: Session) -> None:
            session.merge(SkeletonRow(
                planning_id=skeleton.planning_id,
                tier=skeleton.tier,
                total_word_count=skeleton.total_word_count,
                skeleton=skeleton.model_dump(mode="json"),
            ))

        await self._run(work)

    async def read_skeleton(self, planning_id: str) -> DocumentSkeleton | None:
        def work(session: Session) -> DocumentSkeleton | None:
            row = session.get(SkeletonRow, planning_id)
            return DocumentSkeleton.model_validate(row.skeleton) if row else None

        return await self._run(work)
