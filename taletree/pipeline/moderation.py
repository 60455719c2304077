from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from taletree.core.audiences import Audience, get_audience_profile
from taletree.core.exceptions import ModerationRejectedError
from taletree.core.metrics import record_moderation_verdict
from taletree.core.settings import settings
from taletree.pipeline.chapter import generate_chapter
from taletree.pipeline.runtime import INAPPROPRIATE, Moderator, TextGenerator, call_with_timeout, get_collaborators
from taletree.pipeline.schemas import BibleDraft, ContextEntry, ContinuingChapter, EndingChapter

logger = logging.getLogger(__name__)


async def is_appropriate(content: str, *, age_range: str = "5-10", moderator: Moderator | None = None) -> bool:
    """Ask the moderation collaborator for a verdict. Fails open."""
    try:
        gate = moderator or get_collaborators().moderator
        verdict = await call_with_timeout(gate.classify(content, age_range=age_range), "moderation")
    except Exception as exc:  # noqa: BLE001
        logger.warning("moderation_unavailable", extra={"error": repr(exc)})
        record_moderation_verdict("error")
        return True

    approved = verdict.strip().lower() != INAPPROPRIATE
    record_moderation_verdict("appropriate" if approved else "inappropriate")
    return approved


async def generate_approved_chapter(
    bible: BibleDraft,
    context_chain: Sequence[ContextEntry | dict[str, Any]],
    depth: int,
    chosen_choice: str | None = None,
    *,
    audience: Audience | str,
    story_title: str | None = None,
    previous_content: str | None = None,
    text_generator: TextGenerator | None = None,
    moderator: Moderator | None = None,
) -> tuple[ContinuingChapter | EndingChapter, int]:
    """Generate a chapter and, for the child tier, gate it through moderation.

    Returns the chapter and the number of generation rounds it took.

    Raises:
        ModerationRejectedError: Every round was vetoed.
        GenerationError: Generation itself failed.
    """
    profile = get_audience_profile(audience)
    rounds = 1 + (settings.moderation_max_retries if profile.requires_moderation else 0)

    for round_number in range(1, rounds + 1):
        chapter = await generate_chapter(
            bible,
            context_chain,
            depth,
            chosen_choice,
            audience=profile.audience,
            story_title=story_title,
            previous_content=previous_content,
            text_generator=text_generator,
        )
        if not profile.requires_moderation:
            return chapter, round_number
        if await is_appropriate(chapter.content, age_range=profile.age_range, moderator=moderator):
            return chapter, round_number
        logger.warning(
            "chapter_rejected_by_moderation",
            extra={"round": round_number, "max_rounds": rounds, "depth": depth},
        )

    raise ModerationRejectedError(
        f"content rejected by moderation after {rounds} attempt(s)",
        detail="content rejected by moderation",
    )
