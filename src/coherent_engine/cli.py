from __future__ import annotations

import json
import logging
from pathlib import Path

import typer

from coherent_engine.agents.openai_oracle import OpenAIOracle
from coherent_engine.config import CoherenceMode, EngineConfig, EntityKind, TaskKind
from coherent_engine.models.base import ProgressEvent
from coherent_engine.storage.sql import SqlRunStore
from coherent_engine.storage.store import InMemoryRunStore, RunStore
from coherent_engine.utils.chunking import should_use_coherent_processing
from coherent_engine.workflow.extraction import (
    ExtractionOptions,
    extract,
    render_entities_markdown,
)
from coherent_engine.workflow.pipeline import AUTO, CoherenceEngine

app = typer.Typer(help="Coherence-preserving processing of long documents.")


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _read(path: Path) -> str:
    return path.read_text(encoding="utf-8")


def _engine(model: str, db: str | None, skeleton: bool = True) -> CoherenceEngine:
    config = EngineConfig(model=model, skeleton_context=skeleton)
    store: RunStore = SqlRunStore(db) if db else InMemoryRunStore()
    return CoherenceEngine(OpenAIOracle(config), store=store, config=config)


def _echo_progress(event: ProgressEvent) -> None:
    position = f"[{event.current_chunk}/{event.total_chunks}] " if event.current_chunk else ""
    typer.echo(f"{event.phase.value}: {position}{event.message}", err=True)


def _write(out: Path | None, content: str) -> None:
    if out is None:
        typer.echo(content)
    else:
        out.write_text(content, encoding="utf-8")
        typer.echo(f"written: {out}", err=True)


@app.command()
def process(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True),
    *,
    mode: str = typer.Option(AUTO, help="Coherence mode, or 'auto' to detect it."),
    task: TaskKind = typer.Option(TaskKind.REWRITE, help="rewrite or evaluate."),
    instructions: str | None = typer.Option(None, help="Free-form instructions (e.g. target length)."),
    numbered: bool | None = typer.Option(
        None, "--numbered/--no-numbered", help="Keep chapter numbering continuous across chunks.",
    ),
    skeleton: bool = typer.Option(True, "--skeleton/--no-skeleton", help="Plan a document skeleton first."),
    model: str = typer.Option("gpt-4o", help="Chat model."),
    db: str | None = typer.Option(None, help="SQLAlchemy URL for run storage (default: in memory)."),
    out: Path | None = typer.Option(None, help="Write the final text here instead of stdout."),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """
    Process FILE chunk by chunk, carrying coherence state across chunks.
    """
    _setup_logging(verbose)
    if mode != AUTO and mode not in CoherenceMode._value2member_map_:
        raise typer.BadParameter(
            f"unknown mode {mode!r}; choose one of: auto, "
            + ", ".join(m.value for m in CoherenceMode)
        )

    engine = _engine(model, db, skeleton)
    text = _read(file)
    if not should_use_coherent_processing(text, engine.config.coherent_threshold_words):
        typer.echo(
            f"note: document is under {engine.config.coherent_threshold_words} words; "
            "a single oracle call would usually do.",
            err=True,
        )
    result = engine.process(
        text, mode, task, instructions, _echo_progress, numbered_sections=numbered,
    )
    typer.echo(
        f"run: {result.run_id}  mode: {result.mode.value}  chunks: {result.chunk_count}  "
        f"violations: {result.violations_count}",
        err=True,
    )
    if task is TaskKind.EVALUATE:
        report = [
            {
                "chunk": r.index + 1,
                "status": r.status,
                "violations": [v.model_dump(mode="json") for v in r.violations],
                "repairs": [rp.model_dump(mode="json") for rp in r.repairs],
            }
            for r in result.records
        ]
        _write(out, json.dumps(report, indent=2, ensure_ascii=False))
    else:
        _write(out, result.final_text)


@app.command()
def resume(
    run_id: str,
    file: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True),
    *,
    db: str = typer.Option(..., help="SQLAlchemy URL of the store holding the run."),
    task: TaskKind = typer.Option(TaskKind.REWRITE),
    instructions: str | None = typer.Option(None),
    model: str = typer.Option("gpt-4o"),
    out: Path | None = typer.Option(None),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """
    Resume an interrupted run from its last stored chunk.
    """
    _setup_logging(verbose)
    engine = _engine(model, db)
    result = engine.resume(
        run_id, _read(file), task=task, instructions=instructions, on_progress=_echo_progress,
    )
    _write(out, result.final_text)


@app.command("extract")
def extract_cmd(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True),
    *,
    kind: EntityKind = typer.Option(EntityKind.CLAIM, help="quote, claim or argument."),
    author: str | None = typer.Option(None, help="Author label for every entity."),
    depth: int = typer.Option(5, min=1, help="Items requested per chunk."),
    show_minor: bool = typer.Option(False, "--show-minor", help="Keep a longer ranked list."),
    refine: bool = typer.Option(True, "--refine/--no-refine", help="Oracle ranking pass."),
    as_json: bool = typer.Option(False, "--json", help="Emit JSON instead of markdown."),
    model: str = typer.Option("gpt-4o", help="Chat model."),
    db: str | None = typer.Option(None, help="SQLAlchemy URL for skeleton storage."),
    out: Path | None = typer.Option(None),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """
    Extract quotes, positions or arguments from FILE.
    """
    _setup_logging(verbose)
    engine = _engine(model, db)
    result = extract(
        engine,
        _read(file),
        ExtractionOptions(
            kind=kind, author=author, depth=depth, show_minor=show_minor, refine=refine,
        ),
        _echo_progress,
    )
    if as_json:
        payload = {
            "run_id": result.run_id,
            "skeleton": result.skeleton.model_dump(mode="json"),
            "entities": [e.model_dump(mode="json") for e in result.entities],
        }
        _write(out, json.dumps(payload, indent=2, ensure_ascii=False))
    else:
        _write(out, render_entities_markdown(result))


if __name__ == "__main__":
    app()
