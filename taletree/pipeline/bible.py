"""
Story bible generation.

The bible is produced once per story, before the opening chapter, and is
attached to every later generation request so characters and art direction
stay consistent across branches.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from taletree.core.audiences import Audience, get_audience_profile
from taletree.core.comic_styles import get_comic_style
from taletree.core.exceptions import InvalidBibleError
from taletree.db.models import StoryBible
from taletree.pipeline.json_parser import parse_json_object
from taletree.pipeline.runtime import TextGenerator, call_with_timeout, get_collaborators
from taletree.pipeline.schemas import BibleArtStyle, BibleDraft
from taletree.prompts.loader import render_prompt

logger = logging.getLogger(__name__)

BIBLE_TEMPERATURE = 0.7
BIBLE_MAX_TOKENS = 2500

_AUDIENCE_LABELS = {
    Audience.CHILD: "Children",
    Audience.YOUNG_ADULT: "Young adults",
    Audience.ADULT: "Mature adults",
}


def finalize_bible(data: dict[str, Any], *, fallback_art_style: dict[str, Any] | None = None) -> BibleDraft:
    """Validate parsed bible JSON and fill derivable gaps.

    Raises:
        InvalidBibleError: No characters, or an empty style prompt prefix.
    """
    try:
        draft = BibleDraft.model_validate(data)
    except ValidationError as exc:
        raise InvalidBibleError(f"bible failed validation: {exc.error_count()} error(s)", detail=str(exc)) from exc

    if not draft.characters:
        raise InvalidBibleError("bible has no characters", detail="invalid story bible: missing characters")
    if not draft.style_prompt_prefix.strip():
        raise InvalidBibleError("bible has no style prompt prefix", detail="invalid story bible: missing style prefix")

    for character in draft.characters:
        if not draft.character_prompt_map.get(character.name):
            draft.character_prompt_map[character.name] = character.appearance

    if fallback_art_style and not draft.art_style.style:
        draft.art_style = BibleArtStyle.model_validate(fallback_art_style)

    return draft


async def generate_bible(
    premise: str,
    audience: Audience | str,
    comic_style: str | None = None,
    *,
    tone: str | None = None,
    text_generator: TextGenerator | None = None,
) -> BibleDraft:
    """Generate and validate the consistency bible for a new story.

    Raises:
        GenerationError: The call failed, timed out, or returned an unusable bible.
    """
    profile = get_audience_profile(audience)
    style_id = comic_style or profile.default_comic_style
    preset = get_comic_style(style_id, default=profile.default_comic_style)
    generator = text_generator or get_collaborators().text

    system_prompt = render_prompt(
        "prompt_bible_system",
        age_range=profile.age_range,
        content_rules=profile.content_rules,
        min_chapters=profile.min_chapters,
        max_chapters=profile.max_chapters,
    )
    user_prompt = render_prompt(
        "prompt_bible_user",
        premise=premise,
        comic_style=style_id,
        preset=preset,
        tone=tone or profile.default_tone,
        audience_label=_AUDIENCE_LABELS[profile.audience],
        age_range=profile.age_range,
        ending_types=profile.ending_types,
        max_chapters=profile.max_chapters,
        style_prompt_prefix=preset.style_prompt_prefix(),
    )

    raw = await call_with_timeout(
        generator.complete(
            system_prompt,
            user_prompt,
            temperature=BIBLE_TEMPERATURE,
            max_tokens=BIBLE_MAX_TOKENS,
        ),
        "bible generation",
    )
    draft = finalize_bible(parse_json_object(raw), fallback_art_style=preset.as_art_style())
    logger.info(
        "bible_generated",
        extra={
            "audience": profile.audience.value,
            "comic_style": style_id,
            "character_count": len(draft.characters),
        },
    )
    return draft


def bible_row_values(draft: BibleDraft) -> dict[str, Any]:
    """Column values for persisting a draft as a `StoryBible` row."""
    return {
        "characters": [character.model_dump(by_alias=True) for character in draft.characters],
        "setting": draft.setting.model_dump(by_alias=True),
        "art_style": draft.art_style.model_dump(by_alias=True),
        "narrative": draft.narrative.model_dump(by_alias=True),
        "style_prompt_prefix": draft.style_prompt_prefix,
        "character_prompt_map": dict(draft.character_prompt_map),
    }


def bible_from_row(row: StoryBible) -> BibleDraft:
    return BibleDraft.model_validate(
        {
            "characters": row.characters,
            "setting": row.setting,
            "artStyle": row.art_style,
            "narrative": row.narrative,
            "stylePromptPrefix": row.style_prompt_prefix,
            "characterPromptMap": row.character_prompt_map,
        }
    )
