"""Pytest configuration and shared fakes.

``FakeOracle`` answers by prompt kind: every prompt opens with a
``TASK: <KIND>`` line, and each kind has a scripted default reply that a
test can override with a string, a list of replies (consumed in order),
or a callable ``(prompt) -> str`` which may also raise.
"""

from __future__ import annotations

import json
import re
from typing import Any, Callable

import pytest

from coherent_engine.config import EngineConfig
from coherent_engine.models.base import ProgressEvent

_CHUNK_RE = re.compile(r"CHUNK (\d+) OF (\d+)")

THESIS = "Coherence across chunks requires explicit accumulated state"


def chunk_number(prompt: str) -> int:
    """1-based chunk number embedded in a chunk prompt (0 when absent)."""
    match = _CHUNK_RE.search(prompt)
    return int(match.group(1)) if match else 0


def prompt_kind(prompt: str) -> str:
    first = prompt.split("\n", 1)[0]
    return first.removeprefix("TASK:").strip()


def _rewrite(prompt: str) -> str:
    n = chunk_number(prompt)
    return json.dumps({
        "rewritten_text": f"Rewritten chunk {n}.",
        "state_update": {
            "assertions_made": [f"claim from chunk {n}"],
            "current_stage": "support",
        },
    })


DEFAULT_REPLIES: dict[str, Any] = {
    "DETECT MODE": "logical-cohesiveness",
    "INITIAL STATE": json.dumps({"thesis": THESIS, "current_stage": "setup"}),
    "REWRITE CHUNK": _rewrite,
    "EVALUATE CHUNK": json.dumps({
        "status": "preserved", "violations": [], "repairs": [], "state_update": {},
    }),
    "DOCUMENT SKELETON": json.dumps({
        "main_thesis": THESIS,
        "overarching_theme": "Continuity",
        "sections": [
            {"index": 0, "title": "Opening", "role": "introduction", "key_points": ["setup"]},
            {"index": 1, "title": "Body", "role": "argument", "key_points": ["support"]},
        ],
        "key_arguments": ["State must be threaded"],
        "central_concepts": ["state", "chunk"],
        "narrative_arc": "From problem to solution",
    }),
    "SKELETON SYNTHESIS": json.dumps({
        "main_thesis": THESIS,
        "sections": [{"index": 0, "title": "Whole", "role": "argument"}],
    }),
    "EXTRACT QUOTES": "[]",
    "EXTRACT POSITIONS": "[]",
    "EXTRACT ARGUMENTS": "[]",
    "RANK ENTITIES": "[1]",
}


class FakeOracle:
    """Scripted oracle; records every prompt it receives."""

    def __init__(self, **overrides: Any) -> None:
        self.replies: dict[str, Any] = dict(DEFAULT_REPLIES)
        for key, value in overrides.items():
            self.replies[key.replace("_", " ").upper()] = value
        self.prompts: list[str] = []

    def calls(self, kind: str) -> list[str]:
        return [p for p in self.prompts if prompt_kind(p) == kind]

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        kind = prompt_kind(prompt)
        reply = self.replies[kind]
        if isinstance(reply, list):
            reply = reply.pop(0) if len(reply) > 1 else reply[0]
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            return reply(prompt)
        return reply


class ProgressRecorder:
    """Progress callback that keeps every event."""

    def __init__(self) -> None:
        self.events: list[ProgressEvent] = []

    def __call__(self, event: ProgressEvent) -> None:
        self.events.append(event)

    def phases(self) -> list[str]:
        return [e.phase.value for e in self.events]


def make_document(n_words: int, prefix: str = "word") -> str:
    return " ".join(f"{prefix}{i}" for i in range(n_words))


@pytest.fixture
def config() -> EngineConfig:
    """Config with no delays, for fast deterministic runs."""
    return EngineConfig(
        inter_chunk_delay_s=0,
        backoff_base_s=0,
        backoff_cap_s=0,
        oracle_timeout_s=5,
    )


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def progress() -> ProgressRecorder:
    return ProgressRecorder()


@pytest.fixture
def document() -> Callable[..., str]:
    return make_document
