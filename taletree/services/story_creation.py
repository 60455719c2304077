import logging
import uuid
from dataclasses import dataclass

from taletree.core.audiences import Audience, get_audience_profile
from taletree.core.comic_styles import has_comic_style
from taletree.core.exceptions import GenerationError
from taletree.core.request_context import log_context
from taletree.db.models import GenerationStatus, MediaTier, Story
from taletree.db.session import session_scope
from taletree.pipeline.bible import generate_bible
from taletree.pipeline.media import media_fanout
from taletree.pipeline.moderation import generate_approved_chapter
from taletree.pipeline.progress import mark_generation_failed, set_status
from taletree.services import job_queue
from taletree.services.story_tree import StoryTreeStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreatedStory:
    story_id: uuid.UUID
    root_node_id: uuid.UUID
    queue_entry_id: uuid.UUID
    submitted: bool


async def create_story(
    premise: str,
    audience: Audience | str,
    *,
    comic_style: str | None = None,
    media_tier: MediaTier | str = MediaTier.STANDARD,
    tone: str | None = None,
    owner_id: str | None = None,
) -> CreatedStory:
    """Create a story with its bible and opening chapter, then queue expansion.

    The bible and the opening chapter are generated synchronously; everything
    below the first level of choices is left to the background workers.

    Raises:
        ValueError: Unknown comic style.
        GenerationError: Bible or opening generation failed. The story row is
            kept with status `generation_failed`.
    """
    profile = get_audience_profile(audience)
    if comic_style is not None and not has_comic_style(comic_style):
        raise ValueError(f"unknown comic style: {comic_style}")
    tier = MediaTier(media_tier)

    with session_scope() as db:
        story = Story(
            owner_id=owner_id,
            premise=premise,
            audience=profile.audience.value,
            comic_style=comic_style or profile.default_comic_style,
            media_tier=tier.value,
            generation_status=GenerationStatus.PENDING.value,
        )
        db.add(story)
        db.flush()
        story_id = story.story_id
        style_id = story.comic_style

    with log_context(story_id=story_id):
        logger.info("story_created", extra={"audience": profile.audience.value, "comic_style": style_id})
        try:
            bible = await generate_bible(premise, profile.audience, style_id, tone=tone)

            with session_scope() as db:
                store = StoryTreeStore(db)
                story = store.get_story(story_id)
                store.save_bible(story_id, bible)
                story.title = (bible.title or "").strip() or premise[:80]
                story.description = bible.description
                story.story_context = bible.story_context or ""
                title = story.title

            opening, _ = await generate_approved_chapter(
                bible,
                [],
                0,
                audience=profile.audience,
                story_title=title,
            )
        except GenerationError as exc:
            mark_generation_failed(story_id, f"{type(exc).__name__}: {exc}")
            raise

        with session_scope() as db:
            store = StoryTreeStore(db)
            story = store.get_story(story_id)
            root = store.create_root(story, opening)
            store.create_child_placeholders(root, opening.choices)
            entry, _ = job_queue.enqueue_story_expansion(db, story_id, user_id=owner_id)
            set_status(db, story_id, GenerationStatus.GENERATING_BACKGROUND)
            root_id = root.node_id
            entry_id = entry.entry_id

        media_fanout.fan_out(root_id)
        media_fanout.schedule_cover(story_id)
        submitted = job_queue.submit(story_id)
        logger.info("story_opening_ready", extra={"submitted": submitted})

    return CreatedStory(story_id=story_id, root_node_id=root_id, queue_entry_id=entry_id, submitted=submitted)
