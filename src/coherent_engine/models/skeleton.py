"""Document skeleton: a whole-document plan computed once per document.

The oracle is asked for snake_case keys but older prompt variants (and
some models) answer in camelCase, so every field accepts both.  All
fields default to empty: a skeleton with gaps is still useful context.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class SectionRole(str, Enum):
    INTRODUCTION = "introduction"
    ARGUMENT = "argument"
    EVIDENCE = "evidence"
    OBJECTION = "objection"
    REPLY = "reply"
    CONCLUSION = "conclusion"
    TRANSITION = "transition"


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class SkeletonSection(BaseModel):
    """One section of the plan, in document order."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    index: int = 0
    title: str = ""
    role: SectionRole = SectionRole.ARGUMENT
    key_points: list[str] = Field(
        default_factory=list, validation_alias=_alias("key_points", "keyPoints"),
    )
    relation_to_thesis: str = Field(
        default="", validation_alias=_alias("relation_to_thesis", "relationToThesis"),
    )
    word_range: tuple[int, int] | None = Field(
        default=None, validation_alias=_alias("word_range", "wordRange"),
    )

    @field_validator("role", mode="before")
    @classmethod
    def _coerce_role(cls, v: Any) -> Any:
        # "argument|evidence" or unknown tags fall back to the first valid
        # role mentioned, else ARGUMENT.
        if isinstance(v, SectionRole):
            return v
        text = str(v or "").strip().lower()
        for part in text.replace("/", "|").split("|"):
            part = part.strip()
            if part in SectionRole._value2member_map_:
                return part
        return SectionRole.ARGUMENT

    @field_validator("title", "relation_to_thesis", mode="before")
    @classmethod
    def _text_or_empty(cls, v: Any) -> Any:
        return "" if v is None else str(v)

    @field_validator("word_range", mode="before")
    @classmethod
    def _range_or_none(cls, v: Any) -> Any:
        if isinstance(v, (list, tuple)) and len(v) == 2 and all(isinstance(n, int) for n in v):
            return v
        return None

    @field_validator("key_points", mode="before")
    @classmethod
    def _stringify_points(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [v]
        if not isinstance(v, list):
            return []
        return [str(item) for item in v if item]


class DocumentSkeleton(BaseModel):
    """Thesis, theme and section map for a whole document."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    planning_id: str = ""
    main_thesis: str = Field(
        default="", validation_alias=_alias("main_thesis", "mainThesis", "thesis"),
    )
    overarching_theme: str = Field(
        default="", validation_alias=_alias("overarching_theme", "overarchingTheme", "theme"),
    )
    sections: list[SkeletonSection] = Field(default_factory=list)
    key_arguments: list[str] = Field(
        default_factory=list, validation_alias=_alias("key_arguments", "keyArguments"),
    )
    central_concepts: list[str] = Field(
        default_factory=list, validation_alias=_alias("central_concepts", "centralConcepts"),
    )
    narrative_arc: str = Field(
        default="", validation_alias=_alias("narrative_arc", "narrativeArc"),
    )
    total_word_count: int = Field(
        default=0, validation_alias=_alias("total_word_count", "totalWordCount"),
    )
    tier: Literal["single", "two-tier"] = "single"

    @field_validator("sections", mode="before")
    @classmethod
    def _drop_malformed_sections(cls, v: Any) -> Any:
        if not isinstance(v, list):
            return []
        return [s for s in v if isinstance(s, (dict, SkeletonSection))]

    @field_validator("main_thesis", "overarching_theme", "narrative_arc", mode="before")
    @classmethod
    def _flatten_text(cls, v: Any) -> Any:
        # Models sometimes answer a list of theses, or null.
        if v is None:
            return ""
        if isinstance(v, list):
            return "; ".join(str(item) for item in v if item)
        return v if isinstance(v, str) else str(v)

    @field_validator("key_arguments", "central_concepts", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> Any:
        if not isinstance(v, list):
            return []
        return [str(item) for item in v if item]

    def section_for(self, chunk_index: int) -> SkeletonSection | None:
        """Section whose index matches *chunk_index*, else the first one."""
        for section in self.sections:
            if section.index == chunk_index:
                return section
        return self.sections[0] if self.sections else None

    def to_prompt_section(self) -> str:
        """Format as a text block for injection into chunk prompts."""
        lines = [
            "## Document skeleton",
            f"- Main thesis: {self.main_thesis or '(unknown)'}",
            f"- Overarching theme: {self.overarching_theme or '(unknown)'}",
        ]
        if self.key_arguments:
            lines.append(f"- Key arguments: {'; '.join(self.key_arguments[:8])}")
        if self.central_concepts:
            lines.append(f"- Central concepts: {', '.join(self.central_concepts[:12])}")
        if self.sections:
            lines.append("- Sections:")
            for s in self.sections:
                title = s.title or f"Section {s.index + 1}"
                lines.append(f"  {s.index + 1}. {title} [{s.role.value}]")
        return "\n".join(lines)
