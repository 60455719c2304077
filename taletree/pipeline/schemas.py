"""
Typed shapes for model output.

`RawChapter` and `BibleDraft` accept the camelCase JSON the prompts ask for
and tolerate missing optional fields. `Chapter` is the validated tagged
union the rest of the pipeline works with.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel

EMOTIONAL_WEIGHTS = ("hope", "fear", "anger", "determination", "despair", "curiosity")


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# ---------------------------------------------------------------------------
# Bible
# ---------------------------------------------------------------------------


class BibleCharacter(_CamelModel):
    name: str = Field(min_length=1)
    role: str = "supporting"
    appearance: str = ""
    personality: str = ""
    background: str = ""
    arc: str = ""


class BibleLocation(_CamelModel):
    name: str = ""
    description: str = ""
    atmosphere: str = ""


class BibleSetting(_CamelModel):
    world: str = ""
    time_period: str = ""
    locations: list[BibleLocation] = Field(default_factory=list)
    atmosphere: str = ""


class BibleArtStyle(_CamelModel):
    style: str = ""
    color_palette: str = ""
    line_work: str = ""
    influences: list[str] = Field(default_factory=list)
    lighting: str = ""
    mood: str = ""


class PossibleEnding(_CamelModel):
    type: str = ""
    description: str = ""


class BibleNarrative(_CamelModel):
    genre: str = ""
    tone: str = ""
    themes: list[str] = Field(default_factory=list)
    plot_outline: str = ""
    total_chapters: int | None = None
    possible_endings: list[PossibleEnding] = Field(default_factory=list)


class BibleDraft(_CamelModel):
    title: str | None = None
    description: str | None = None
    story_context: str | None = None
    characters: list[BibleCharacter] = Field(default_factory=list)
    setting: BibleSetting = Field(default_factory=BibleSetting)
    art_style: BibleArtStyle = Field(default_factory=BibleArtStyle)
    narrative: BibleNarrative = Field(default_factory=BibleNarrative)
    style_prompt_prefix: str = ""
    character_prompt_map: dict[str, str] = Field(default_factory=dict)

    @field_validator("style_prompt_prefix", mode="before")
    @classmethod
    def _none_prefix_is_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("character_prompt_map", mode="before")
    @classmethod
    def _none_map_is_empty(cls, value: Any) -> Any:
        return {} if value is None else value

    def character_names(self) -> list[str]:
        return [character.name for character in self.characters]


# ---------------------------------------------------------------------------
# Chapters
# ---------------------------------------------------------------------------


class RawChoice(_CamelModel):
    text: str = ""
    consequence_hint: str | None = None
    emotional_weight: str | None = None
    generation_priority: int | None = None


class RawChapter(_CamelModel):
    """Chapter JSON as the model returned it, before pacing is applied."""

    title: str | None = None
    content: str = ""
    panel_description: str | None = None
    chapter_summary: str | None = None
    characters_present: list[str] | None = None
    is_ending: bool = False
    ending_type: str | None = None
    choices: list[RawChoice] = Field(default_factory=list)

    @field_validator("choices", mode="before")
    @classmethod
    def _drop_malformed_choices(cls, value: Any) -> Any:
        if value is None:
            return []
        if not isinstance(value, list):
            return value
        normalized = []
        for item in value:
            if isinstance(item, str):
                normalized.append({"text": item})
            elif isinstance(item, dict):
                # older prompt versions used "hint"
                if "hint" in item and "consequenceHint" not in item:
                    item = {**item, "consequenceHint": item["hint"]}
                normalized.append(item)
        return normalized


class ChapterChoice(BaseModel):
    text: str = Field(min_length=1)
    consequence_hint: str | None = None
    emotional_weight: str = "curiosity"
    generation_priority: int | None = Field(default=None, ge=1, le=3)

    @field_validator("emotional_weight", mode="before")
    @classmethod
    def _normalize_weight(cls, value: Any) -> str:
        if isinstance(value, str) and value.lower() in EMOTIONAL_WEIGHTS:
            return value.lower()
        return "curiosity"


class _ChapterBase(BaseModel):
    title: str | None = None
    content: str = Field(min_length=1)
    summary: str
    panel_description: str
    characters_present: list[str] = Field(default_factory=list)


class ContinuingChapter(_ChapterBase):
    kind: Literal["continuing"] = "continuing"
    choices: list[ChapterChoice] = Field(min_length=2, max_length=3)

    @property
    def is_ending(self) -> bool:
        return False

    @property
    def ending_type(self) -> None:
        return None


class EndingChapter(_ChapterBase):
    kind: Literal["ending"] = "ending"
    ending_type: str = Field(min_length=1)

    @property
    def is_ending(self) -> bool:
        return True

    @property
    def choices(self) -> list[ChapterChoice]:
        return []


Chapter = Annotated[Union[ContinuingChapter, EndingChapter], Field(discriminator="kind")]
ChapterAdapter: TypeAdapter[ContinuingChapter | EndingChapter] = TypeAdapter(Chapter)


class ContextEntry(BaseModel):
    """One ancestor chapter as stored in a placeholder's context chain."""

    node_key: str
    title: str | None = None
    summary: str
    characters_present: list[str] = Field(default_factory=list)
    choice_made: str | None = None
