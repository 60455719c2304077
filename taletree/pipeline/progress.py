from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from taletree.core.exceptions import EntityNotFoundError
from taletree.db.models import GenerationStatus, Story
from taletree.db.session import session_scope

logger = logging.getLogger(__name__)

MIN_PLANNED_NODES = 40
RUNNING_PROGRESS_CAP = 95


def planned_node_total(max_depth: int, branching_factor: int) -> int:
    """Planned size of a full tree of `max_depth` levels below the root."""
    full_tree = sum(branching_factor**depth for depth in range(max_depth + 1))
    return max(MIN_PLANNED_NODES, full_tree)


def compute_progress(nodes_generated: int, total_planned: int) -> int:
    """Progress while running: never above 95 until the story is complete."""
    if total_planned <= 0:
        return 0
    return min(RUNNING_PROGRESS_CAP, math.floor(nodes_generated / total_planned * 100))


@dataclass(frozen=True)
class GenerationStatusView:
    status: str
    progress: int
    nodes_generated: int
    total_planned: int
    nodes_failed: int = 0
    error: str | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def refresh_progress(story: Story) -> None:
    """Recompute `generation_progress` from the story's counters."""
    if story.generation_status == GenerationStatus.FULLY_GENERATED.value:
        story.generation_progress = 100
    else:
        story.generation_progress = compute_progress(story.nodes_generated, story.total_nodes_planned)
    story.progress_updated_at = _utcnow()


def _load_story(db: Session, story_id: uuid.UUID) -> Story:
    story = db.get(Story, story_id)
    if story is None:
        raise EntityNotFoundError("story", story_id)
    return story


def get_generation_status(story_id: uuid.UUID, db: Session | None = None) -> GenerationStatusView:
    if db is None:
        with session_scope() as scoped:
            return get_generation_status(story_id, scoped)

    story = _load_story(db, story_id)
    return GenerationStatusView(
        status=story.generation_status,
        progress=story.generation_progress,
        nodes_generated=story.nodes_generated,
        total_planned=story.total_nodes_planned,
        nodes_failed=story.nodes_failed,
        error=story.generation_error,
    )


def set_status(db: Session, story_id: uuid.UUID, status: GenerationStatus, *, error: str | None = None) -> Story:
    """Move a story to `status`, stamping the matching timestamps."""
    story = _load_story(db, story_id)
    previous = story.generation_status
    story.generation_status = status.value
    now = _utcnow()

    if status is GenerationStatus.GENERATING_BACKGROUND and story.generation_started_at is None:
        story.generation_started_at = now
    if status is GenerationStatus.FULLY_GENERATED:
        story.generation_error = None
        story.generation_completed_at = now
    if status is GenerationStatus.GENERATION_FAILED:
        story.generation_error = error
        story.generation_completed_at = now

    refresh_progress(story)
    logger.info(
        "story_status_changed",
        extra={"story_id": str(story_id), "from_status": previous, "to_status": status.value},
    )
    return story


def mark_generation_failed(story_id: uuid.UUID, error: str) -> None:
    with session_scope() as db:
        set_status(db, story_id, GenerationStatus.GENERATION_FAILED, error=error)
