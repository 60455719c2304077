"""
Chapter generation with audience pacing.

`depth` is the zero-based distance from the opening chapter. Against the
audience's `[min_chapters, max_chapters]` window it decides whether the
prompt forbids, encourages or demands an ending, and `build_chapter` enforces
the same rule on whatever the model actually returned.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from enum import Enum
from typing import Any

from pydantic import ValidationError

from taletree.core.audiences import Audience, AudienceProfile, get_audience_profile
from taletree.core.exceptions import GenerationError, InsufficientChoicesError, ParseError
from taletree.core.metrics import record_pacing_override
from taletree.core.settings import settings
from taletree.pipeline.json_parser import parse_json_object
from taletree.pipeline.runtime import TextGenerator, call_with_timeout, get_collaborators
from taletree.pipeline.schemas import (
    BibleDraft,
    ChapterChoice,
    ContextEntry,
    ContinuingChapter,
    EndingChapter,
    RawChapter,
)
from taletree.prompts.loader import render_prompt

logger = logging.getLogger(__name__)

MAX_CHOICES = 3
MIN_CHOICES = 2
SUMMARY_FALLBACK_CHARS = 100
PANEL_FALLBACK_CHARS = 200


class Pacing(str, Enum):
    FORBID_ENDING = "forbid_ending"
    DEVELOP = "develop"
    ENCOURAGE_ENDING = "encourage_ending"
    REQUIRE_ENDING = "require_ending"


def pacing_for(depth: int, profile: AudienceProfile) -> Pacing:
    if depth < profile.min_chapters:
        return Pacing.FORBID_ENDING
    if depth >= profile.max_chapters:
        return Pacing.REQUIRE_ENDING
    if depth >= profile.max_chapters - 2:
        return Pacing.ENCOURAGE_ENDING
    return Pacing.DEVELOP


def _derive_summary(content: str) -> str:
    if len(content) <= SUMMARY_FALLBACK_CHARS:
        return content
    return content[:SUMMARY_FALLBACK_CHARS] + "..."


def _characters_mentioned(content: str, names: Sequence[str]) -> list[str]:
    lowered = content.lower()
    return [name for name in names if name and name.lower() in lowered]


def _to_choices(raw_choices: Sequence[Any]) -> list[ChapterChoice]:
    choices = []
    for index, raw in enumerate(raw_choices):
        priority = raw.generation_priority if raw.generation_priority is not None else index + 1
        choices.append(
            ChapterChoice(
                text=raw.text.strip(),
                consequence_hint=raw.consequence_hint,
                emotional_weight=raw.emotional_weight,
                generation_priority=min(MAX_CHOICES, max(1, priority)),
            )
        )
    return choices


def build_chapter(
    data: dict[str, Any],
    *,
    depth: int,
    profile: AudienceProfile,
    character_names: Sequence[str] = (),
) -> ContinuingChapter | EndingChapter:
    """Turn parsed model JSON into a validated chapter, applying pacing overrides.

    Raises:
        ParseError: The JSON does not describe a chapter.
        InsufficientChoicesError: A continuing chapter has fewer than two choices.
    """
    try:
        raw = RawChapter.model_validate(data)
    except ValidationError as exc:
        raise ParseError(f"chapter JSON failed validation: {exc.error_count()} error(s)", detail=str(exc)) from exc

    content = raw.content.strip()
    if not content:
        raise ParseError("chapter JSON has no content", detail="invalid chapter: missing content")

    summary = (raw.chapter_summary or "").strip() or _derive_summary(content)
    panel_description = (raw.panel_description or "").strip() or content[:PANEL_FALLBACK_CHARS]
    if raw.characters_present is None:
        characters = _characters_mentioned(content, character_names)
    else:
        characters = [name for name in raw.characters_present if name]

    choices = [choice for choice in raw.choices if choice.text and choice.text.strip()]
    pacing = pacing_for(depth, profile)
    is_ending = raw.is_ending
    ending_type = (raw.ending_type or "").strip().lower().replace(" ", "_") or None

    if pacing is Pacing.FORBID_ENDING and is_ending:
        if len(choices) < MIN_CHOICES:
            raise InsufficientChoicesError(len(choices))
        logger.info("pacing_override", extra={"override": "forced_continuation", "depth": depth})
        record_pacing_override("forced_continuation")
        is_ending = False
    elif pacing is Pacing.REQUIRE_ENDING and not is_ending:
        logger.info("pacing_override", extra={"override": "forced_ending", "depth": depth})
        record_pacing_override("forced_ending")
        is_ending = True
        ending_type = profile.default_ending_type

    common = {
        "title": (raw.title or "").strip() or None,
        "content": content,
        "summary": summary,
        "panel_description": panel_description,
        "characters_present": characters,
    }

    if is_ending:
        if ending_type not in profile.ending_types:
            if ending_type:
                logger.info("ending_type_replaced", extra={"returned": ending_type[:64], "depth": depth})
            ending_type = profile.default_ending_type
        return EndingChapter(ending_type=ending_type, **common)

    if len(choices) < MIN_CHOICES:
        raise InsufficientChoicesError(len(choices))
    if len(choices) > MAX_CHOICES:
        logger.info("choices_truncated", extra={"returned": len(choices), "kept": MAX_CHOICES})
        choices = choices[:MAX_CHOICES]

    return ContinuingChapter(choices=_to_choices(choices), **common)


def _normalize_chain(context_chain: Sequence[ContextEntry | dict[str, Any]]) -> list[ContextEntry]:
    return [
        entry if isinstance(entry, ContextEntry) else ContextEntry.model_validate(entry)
        for entry in context_chain
    ]


async def generate_chapter(
    bible: BibleDraft,
    context_chain: Sequence[ContextEntry | dict[str, Any]],
    depth: int,
    chosen_choice: str | None = None,
    *,
    audience: Audience | str,
    story_title: str | None = None,
    previous_content: str | None = None,
    text_generator: TextGenerator | None = None,
    max_attempts: int | None = None,
) -> ContinuingChapter | EndingChapter:
    """Generate one chapter at `depth`, retrying malformed output.

    Raises:
        GenerationError: Every attempt failed; the last error is re-raised.
    """
    profile = get_audience_profile(audience)
    generator = text_generator or get_collaborators().text
    chain = _normalize_chain(context_chain)
    pacing = pacing_for(depth, profile)
    is_opening = depth == 0 and not chain
    chapter_number = depth + 1

    system_prompt = render_prompt(
        "prompt_chapter_system",
        age_range=profile.age_range,
        content_rules=profile.content_rules,
        chapter_length=profile.chapter_length,
        min_chapters=profile.min_chapters,
        max_chapters=profile.max_chapters,
        ending_types=profile.ending_types,
        chapter_number=chapter_number,
        pacing=pacing.value,
    )
    user_prompt = render_prompt(
        "prompt_chapter_user",
        title=story_title or "Untitled",
        genre=bible.narrative.genre or "interactive fiction",
        tone=bible.narrative.tone or profile.default_tone,
        world=bible.setting.world or "unspecified",
        themes=bible.narrative.themes,
        characters=[character.model_dump() for character in bible.characters],
        context_chain=[entry.model_dump() for entry in chain],
        previous_content=profile.trim_context(previous_content) if previous_content else None,
        chosen_choice=chosen_choice,
        chapter_number=chapter_number,
        is_opening=is_opening,
        ending_types=profile.ending_types,
    )
    temperature = profile.opening_temperature if is_opening else profile.temperature
    max_tokens = profile.max_tokens + (profile.opening_extra_tokens if is_opening else 0)

    attempts = max_attempts or settings.chapter_max_attempts
    last_error: GenerationError | None = None
    for attempt in range(1, attempts + 1):
        try:
            raw = await call_with_timeout(
                generator.complete(system_prompt, user_prompt, temperature=temperature, max_tokens=max_tokens),
                "chapter generation",
            )
            return build_chapter(
                parse_json_object(raw),
                depth=depth,
                profile=profile,
                character_names=bible.character_names(),
            )
        except GenerationError as exc:
            last_error = exc
            logger.warning(
                "chapter_attempt_failed",
                extra={
                    "attempt": attempt,
                    "max_attempts": attempts,
                    "depth": depth,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )

    if last_error is None:
        raise GenerationError("chapter generation was not attempted", detail="no generation attempts")
    raise last_error
