"""Sequential processor: the chunk-by-chunk coherence loop.

The engine wires together:
- ``detect_mode`` / ``extract_initial_state``: oracle calls that pick
  the mode and seed its state from the first chunk.
- ``SkeletonPlanner``: optional whole-document plan embedded in every
  chunk prompt.
- ``OracleGateway``: timeout and retry around each oracle call.
- ``detect_violations`` and ``merge_state``: plain functions applied to
  every chunk's partial state update.
- ``RunStore``: one record append and one state replacement per chunk.

Run lifecycle::

    detecting -> extracting-initial-state -> [skeleton] -> processing(0..n-1) -> completed
                                      \\_____________ any unrecoverable error _____/-> failed

Chunks are processed strictly in order: chunk ``i``'s prompt embeds the
state merged after chunk ``i-1``.  A reply that cannot be parsed
degrades that chunk to pass-through (output = input, empty update) and
the run continues; only fatal or exhausted oracle failures (and
cancellation) end a run early.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import math
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Union

from coherent_engine.agents import prompts
from coherent_engine.agents.gateway import Oracle, OracleGateway
from coherent_engine.agents.mode_detector import detect_mode, extract_initial_state
from coherent_engine.config import CoherenceMode, EngineConfig, TaskKind
from coherent_engine.errors import EmptyDocumentError, ParseError
from coherent_engine.executors.merge import combine_updates, merge_state
from coherent_engine.executors.skeleton import SkeletonPlanner
from coherent_engine.models.base import (
    ChunkRecord,
    ProgressEvent,
    Repair,
    RunPhase,
    RunStatus,
    Violation,
)
from coherent_engine.models.skeleton import DocumentSkeleton
from coherent_engine.models.state import CoherenceState, PhilosophicalState
from coherent_engine.storage.store import InMemoryRunStore, RunStore
from coherent_engine.utils.chunking import Chunk, chunk_document, word_count
from coherent_engine.utils.json_parse import parse_json_object
from coherent_engine.validation.rules import detect_violations

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], Union[Awaitable[None], None]]

AUTO = "auto"
_CHUNK_STATUSES = ("preserved", "weakened", "broken")


# ── Helpers ─────────────────────────────────────────────────────────

class ProgressReporter:
    """Builds :class:`ProgressEvent` objects and hands them to a callback.

    The callback may be a plain function or a coroutine function.
    """

    def __init__(self, callback: ProgressCallback | None, run_id: str, total: int) -> None:
        self._callback = callback
        self.run_id = run_id
        self.total = total

    async def __call__(
        self,
        phase: RunPhase,
        message: str,
        *,
        current: int | None = None,
        content: str | None = None,
    ) -> None:
        if self._callback is None:
            return
        event = ProgressEvent(
            phase=phase,
            message=message,
            run_id=self.run_id,
            current_chunk=current,
            total_chunks=self.total,
            content=content,
        )
        result = self._callback(event)
        if inspect.isawaitable(result):
            await result


@dataclass
class ChunkOutcome:
    """Interpreted oracle reply for one chunk."""

    output: str
    update: dict[str, Any] = field(default_factory=dict)
    status: str = "preserved"
    violations: list[Violation] = field(default_factory=list)
    repairs: list[Repair] = field(default_factory=list)
    parse_failed: bool = False


def _validated(items: Any, model: type) -> list[Any]:
    """Validate each dict in *items* against *model*, skipping bad ones."""
    if not isinstance(items, list):
        return []
    valid = []
    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            valid.append(model.model_validate(item))
        except ValueError:
            logger.debug("Skipping malformed %s: %r", model.__name__, item)
    return valid


def parse_chunk_reply(reply: str, task: TaskKind, chunk_text: str) -> ChunkOutcome:
    """Interpret an oracle reply; raises :class:`ParseError` if it has no JSON object."""
    data = parse_json_object(reply)
    update = data.get("state_update")
    update = update if isinstance(update, dict) else {}

    if task is TaskKind.EVALUATE:
        status = str(data.get("status") or "").strip().lower()
        return ChunkOutcome(
            output=chunk_text,
            update=update,
            status=status if status in _CHUNK_STATUSES else "preserved",
            violations=_validated(data.get("violations"), Violation),
            repairs=_validated(data.get("repairs"), Repair),
        )

    text = data.get("rewritten_text")
    return ChunkOutcome(
        output=text if isinstance(text, str) and text.strip() else chunk_text,
        update=update,
    )


def _chunk_target(target_total: int | None, produced: int, remaining_chunks: int) -> int | None:
    """Words to ask of the next chunk so the run converges on *target_total*."""
    if not target_total or remaining_chunks < 1:
        return None
    left = target_total - produced
    return math.ceil(left / remaining_chunks) if left > 0 else None


@dataclass
class ProcessingResult:
    """Result of one sequential-processing run."""

    run_id: str
    mode: CoherenceMode
    final_text: str
    final_state: CoherenceState
    chunk_count: int
    records: list[ChunkRecord] = field(default_factory=list)
    skeleton: DocumentSkeleton | None = None

    @property
    def violations_count(self) -> int:
        return sum(len(r.violations) for r in self.records)

    @property
    def parse_failures(self) -> int:
        return sum(1 for r in self.records if r.parse_failed)


# ── Engine ──────────────────────────────────────────────────────────

class CoherenceEngine:
    """Main sequential-processing orchestrator.

    Args:
        oracle: Text-generation capability (``async complete(prompt)``).
        store: Run persistence; defaults to :class:`InMemoryRunStore`.
        config: Engine configuration.
    """

    def __init__(
        self,
        oracle: Oracle,
        store: RunStore | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self._config = config or EngineConfig()
        self._store: RunStore = store if store is not None else InMemoryRunStore()
        self.gateway = OracleGateway.from_config(oracle, self._config)
        self.planner = SkeletonPlanner(self.gateway, self._store, self._config)

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def store(self) -> RunStore:
        return self._store

    # ── Public API ──────────────────────────────────────────────────

    def process(
        self,
        text: str,
        mode: CoherenceMode | str | None = None,
        task: TaskKind | str = TaskKind.REWRITE,
        instructions: str | None = None,
        on_progress: ProgressCallback | None = None,
        **kwargs: Any,
    ) -> ProcessingResult:
        """Process *text* (sync entry point)."""
        return asyncio.run(self.process_async(
            text, mode, task, instructions, on_progress, **kwargs,
        ))

    async def process_async(
        self,
        text: str,
        mode: CoherenceMode | str | None = None,
        task: TaskKind | str = TaskKind.REWRITE,
        instructions: str | None = None,
        on_progress: ProgressCallback | None = None,
        *,
        numbered_sections: bool | None = None,
        run_id: str | None = None,
    ) -> ProcessingResult:
        """Process *text* chunk by chunk (async entry point).

        Args:
            text: The full document.
            mode: A coherence mode, or ``None``/``"auto"`` to detect it.
            task: ``rewrite`` (produce new text) or ``evaluate`` (report
                status, violations and repairs; output is the input).
            instructions: Free-form task instructions.  A target length
                ("about 3,000 words") is honoured for rewrites.
            on_progress: Sync or async callback receiving
                :class:`ProgressEvent` objects.
            numbered_sections: Keep chapter numbering continuous across
                chunks (philosophical mode).  ``None`` infers it from
                the instructions.
            run_id: Explicit run identifier (generated when omitted).

        Raises:
            EmptyDocumentError: If *text* has no words.
            FatalOracleError, OracleExhaustedError: The run is marked
                ``failed``; records written so far are kept.
        """
        total_words = word_count(text)
        if total_words == 0:
            raise EmptyDocumentError("Cannot process an empty document.")

        task = TaskKind(task)
        run_id = run_id or uuid.uuid4().hex
        chunks = chunk_document(text, run_id, max_words=self._config.chunk_words)
        progress = ProgressReporter(on_progress, run_id, len(chunks))
        run_created = False

        try:
            await progress(RunPhase.DETECTING, f"Detecting mode ({total_words} words, {len(chunks)} chunks)...")
            coherence_mode = await self._resolve_mode(mode, text)

            await progress(
                RunPhase.EXTRACTING_INITIAL_STATE,
                f"Mode: {coherence_mode.value}. Extracting initial state...",
            )
            state = await extract_initial_state(self.gateway, coherence_mode, chunks[0].text)

            skeleton = None
            if self._config.skeleton_context:
                await progress(RunPhase.SKELETON, "Planning document skeleton...")
                skeleton = await self.planner.plan(text, planning_id=run_id)

            await self._store.create_run(
                run_id, coherence_mode, state, len(chunks), word_count=total_words,
            )
            run_created = True
            logger.info("Run %s started: %s, %d chunks.", run_id, coherence_mode.value, len(chunks))

            outputs, final_state = await self._process_chunks(
                run_id, chunks, 0, state, skeleton, task, instructions,
                numbered=self._numbered(numbered_sections, instructions),
                produced=0,
                progress=progress,
            )
            await self._store.mark_run_completed(run_id)
        except asyncio.CancelledError:
            if run_created:
                await self._store.mark_run_failed(run_id, "cancelled")
            logger.warning("Run %s cancelled.", run_id)
            raise
        except Exception as e:
            if run_created:
                await self._store.mark_run_failed(run_id, f"{type(e).__name__}: {e}")
            logger.error("Run %s failed: %s", run_id, e)
            await progress(RunPhase.FAILED, f"Run failed: {e}")
            raise

        await progress(RunPhase.COMPLETED, f"Completed {len(chunks)} chunks.", current=len(chunks))
        return ProcessingResult(
            run_id=run_id,
            mode=coherence_mode,
            final_text="\n\n".join(outputs),
            final_state=final_state,
            chunk_count=len(chunks),
            records=await self._store.list_chunk_records(run_id),
            skeleton=skeleton,
        )

    def resume(self, run_id: str, text: str, **kwargs: Any) -> ProcessingResult:
        """Resume an interrupted run (sync entry point)."""
        return asyncio.run(self.resume_async(run_id, text, **kwargs))

    async def resume_async(
        self,
        run_id: str,
        text: str,
        task: TaskKind | str = TaskKind.REWRITE,
        instructions: str | None = None,
        on_progress: ProgressCallback | None = None,
        *,
        numbered_sections: bool | None = None,
    ) -> ProcessingResult:
        """Continue *run_id* from the chunk after its last stored record.

        *text* must be the same document the run was started on; it is
        re-chunked and its chunk count checked against the run.  State is
        restored from the last Chunk Record.

        Raises:
            RunNotFoundError: If the run does not exist.
            ValueError: If *text* does not chunk like the original input.
        """
        task = TaskKind(task)
        run = await self._store.read_run(run_id)
        chunks = chunk_document(text, run_id, max_words=self._config.chunk_words)
        if len(chunks) != run.total_chunks:
            raise ValueError(
                f"Run {run_id!r} has {run.total_chunks} chunks, the given text has {len(chunks)}."
            )

        records = await self._store.list_chunk_records(run_id)
        if [r.index for r in records] != list(range(len(records))):
            raise ValueError(f"Run {run_id!r} has non-contiguous chunk records.")

        state = records[-1].state_after if records else run.state
        # A crash between record append and state replacement leaves the
        # run's counter behind its records.
        for _ in range(len(records) - run.processed_chunks):
            await self._store.replace_run_state(run_id, state, increment=True)

        progress = ProgressReporter(on_progress, run_id, len(chunks))
        logger.info("Resuming run %s at chunk %d/%d.", run_id, len(records) + 1, len(chunks))

        outputs = [r.output_text for r in records]
        skeleton = None
        try:
            if run.status is not RunStatus.COMPLETED and len(records) < len(chunks):
                if self._config.skeleton_context:
                    await progress(RunPhase.SKELETON, "Loading document skeleton...")
                    skeleton = await self.planner.get_or_create_skeleton(run_id, text)
                new_outputs, state = await self._process_chunks(
                    run_id, chunks, len(records), state, skeleton, task, instructions,
                    numbered=self._numbered(numbered_sections, instructions),
                    produced=sum(word_count(o) for o in outputs),
                    progress=progress,
                )
                outputs.extend(new_outputs)
            await self._store.mark_run_completed(run_id)
        except asyncio.CancelledError:
            await self._store.mark_run_failed(run_id, "cancelled")
            raise
        except Exception as e:
            await self._store.mark_run_failed(run_id, f"{type(e).__name__}: {e}")
            logger.error("Resumed run %s failed: %s", run_id, e)
            await progress(RunPhase.FAILED, f"Run failed: {e}")
            raise

        await progress(RunPhase.COMPLETED, f"Completed {len(chunks)} chunks.", current=len(chunks))
        return ProcessingResult(
            run_id=run_id,
            mode=run.mode,
            final_text="\n\n".join(outputs),
            final_state=state,
            chunk_count=len(chunks),
            records=await self._store.list_chunk_records(run_id),
            skeleton=skeleton,
        )

    # ── Internal ────────────────────────────────────────────────────

    async def _resolve_mode(self, mode: CoherenceMode | str | None, text: str) -> CoherenceMode:
        if mode is None or mode == AUTO:
            return await detect_mode(
                self.gateway,
                text,
                self._config.default_mode,
                max_chars=self._config.detection_excerpt_chars,
            )
        return CoherenceMode(mode)

    @staticmethod
    def _numbered(flag: bool | None, instructions: str | None) -> bool:
        return prompts.wants_numbered_sections(instructions) if flag is None else flag

    async def _process_chunks(
        self,
        run_id: str,
        chunks: list[Chunk],
        start: int,
        state: CoherenceState,
        skeleton: DocumentSkeleton | None,
        task: TaskKind,
        instructions: str | None,
        *,
        numbered: bool,
        produced: int,
        progress: ProgressReporter,
    ) -> tuple[list[str], CoherenceState]:
        cfg = self._config
        target_total = (
            prompts.parse_target_word_count(instructions) if task is TaskKind.REWRITE else None
        )
        outputs: list[str] = []

        for chunk in chunks[start:]:
            n, total = chunk.index + 1, len(chunks)
            target = _chunk_target(target_total, produced, total - chunk.index)
            await progress(
                RunPhase.PROCESSING,
                f"Processing chunk {n} of {total}"
                + (f" (target: ~{target} words)" if target else "") + "...",
                current=n,
            )

            prompt = self._chunk_prompt(
                state, chunk, total, skeleton, task, instructions,
                numbered=numbered, target_words=target,
            )
            reply = await self.gateway.call(prompt)

            try:
                outcome = parse_chunk_reply(reply, task, chunk.text)
            except ParseError as e:
                logger.warning("Chunk %d/%d: unparsable reply (%s); passing input through.", n, total, e)
                await progress(
                    RunPhase.PROCESSING,
                    f"Chunk {n}: oracle reply was not valid JSON; kept original text.",
                    current=n,
                )
                outcome = ChunkOutcome(output=chunk.text, parse_failed=True)

            if numbered and isinstance(state, PhilosophicalState) and not outcome.parse_failed:
                outcome.update = combine_updates(outcome.update, _chapter_update(outcome))

            violations = [*outcome.violations, *detect_violations(state, outcome.update, cfg)]
            new_state = merge_state(state, outcome.update)

            await self._store.append_chunk_record(ChunkRecord(
                run_id=run_id,
                index=chunk.index,
                input_text=chunk.text,
                output_text=outcome.output,
                status=outcome.status,
                violations=violations,
                repairs=outcome.repairs,
                state_after=new_state,
                parse_failed=outcome.parse_failed,
            ))
            await self._store.replace_run_state(run_id, new_state, increment=True)
            state = new_state

            outputs.append(outcome.output)
            produced += word_count(outcome.output)
            logger.info(
                "Chunk %d/%d done: %d words out, %d violation(s).",
                n, total, word_count(outcome.output), len(violations),
            )
            await progress(
                RunPhase.PROCESSING,
                f"Chunk {n} of {total} complete"
                + (f" ({len(violations)} violation(s) flagged)" if violations else "") + ".",
                current=n,
                content=outcome.output,
            )

            if cfg.inter_chunk_delay_s > 0 and n < total:
                await asyncio.sleep(cfg.inter_chunk_delay_s)

        return outputs, state

    def _chunk_prompt(
        self,
        state: CoherenceState,
        chunk: Chunk,
        total: int,
        skeleton: DocumentSkeleton | None,
        task: TaskKind,
        instructions: str | None,
        *,
        numbered: bool,
        target_words: int | None,
    ) -> str:
        skeleton_section = f"\n{skeleton.to_prompt_section()}\n" if skeleton else ""
        common = {
            "mode": state.mode,
            "state": prompts.render_state(state),
            "skeleton_section": skeleton_section,
            "number": chunk.index + 1,
            "total": total,
            "chunk": chunk.text,
            "instructions_section": prompts.instructions_section(task.value, instructions),
            "update_hint": prompts.update_hint(state.coherence_mode),
        }
        if task is TaskKind.EVALUATE:
            return prompts.EVALUATE_CHUNK.format(**common)

        numbering = ""
        if numbered and isinstance(state, PhilosophicalState):
            numbering = prompts.numbering_section(chunk.index, state.last_chapter_number)
        length = prompts.LENGTH_SECTION.format(words=target_words) if target_words else ""
        return prompts.REWRITE_CHUNK.format(
            **common, numbering_section=numbering, length_section=length,
        )


def _chapter_update(outcome: ChunkOutcome) -> dict[str, Any]:
    """Highest chapter number in the output or the reply, as a state update."""
    found = prompts.max_chapter_number(outcome.output)
    reported = outcome.update.pop("lastChapterNumber", outcome.update.get("last_chapter_number"))
    try:
        reported_n = int(reported) if reported is not None else 0
    except (TypeError, ValueError):
        reported_n = 0
    highest = max(found, reported_n)
    return {"last_chapter_number": highest} if highest else {}
