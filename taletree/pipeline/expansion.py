"""
Breadth-first tree expansion.

`process_story` is the worker-pool handler. It walks the story's unresolved
placeholders in (depth, sequence) order, fills each one, creates the next
level of placeholders and schedules media. The persisted placeholders are
the cursor, so a re-delivered story resumes where the last run stopped.

Database sessions are opened around each read or write and never held while
a generation call is awaited.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass

from taletree.core.exceptions import EntityNotFoundError, GenerationError, NodeBusyError
from taletree.core.metrics import observe_expansion, record_node_outcome
from taletree.core.request_context import log_context
from taletree.core.settings import settings
from taletree.db.models import GenerationStatus, QueueStatus, StoryNode
from taletree.db.session import session_scope
from taletree.pipeline.bible import bible_from_row
from taletree.pipeline.media import media_fanout
from taletree.pipeline.moderation import generate_approved_chapter
from taletree.pipeline.progress import set_status
from taletree.pipeline.schemas import BibleDraft
from taletree.services import job_queue
from taletree.services.story_tree import StoryTreeStore

logger = logging.getLogger(__name__)

# nodes being generated on demand; the scheduler leaves them alone
_claimed: set[uuid.UUID] = set()


@dataclass(frozen=True)
class _StoryContext:
    story_id: uuid.UUID
    audience: str
    title: str | None
    bible: BibleDraft


@dataclass(frozen=True)
class _NodeSnapshot:
    node_id: uuid.UUID
    node_key: str
    depth: int
    context_chain: list[dict]
    previous_content: str | None

    @property
    def chosen_choice(self) -> str | None:
        if not self.context_chain:
            return None
        return self.context_chain[-1].get("choice_made")


def _load_story_context(story_id: uuid.UUID) -> _StoryContext:
    with session_scope() as db:
        store = StoryTreeStore(db)
        story = store.get_story(story_id)
        bible_row = store.get_bible(story_id)
        if bible_row is None:
            raise EntityNotFoundError("story bible", story_id)
        return _StoryContext(
            story_id=story_id,
            audience=story.audience,
            title=story.title,
            bible=bible_from_row(bible_row),
        )


def _snapshot(store: StoryTreeStore, node: StoryNode) -> _NodeSnapshot:
    return _NodeSnapshot(
        node_id=node.node_id,
        node_key=node.node_key,
        depth=node.depth,
        context_chain=list(node.context_chain or []),
        previous_content=store.parent_content_of(node),
    )


async def _generate_and_fill(context: _StoryContext, snapshot: _NodeSnapshot) -> list[uuid.UUID]:
    """Generate content for a placeholder, fill it and create its children.

    Raises:
        GenerationError: Generation or moderation failed; nothing was written.
    """
    chapter, rounds = await generate_approved_chapter(
        context.bible,
        snapshot.context_chain,
        snapshot.depth,
        snapshot.chosen_choice,
        audience=context.audience,
        story_title=context.title,
        previous_content=snapshot.previous_content,
    )

    with session_scope() as db:
        store = StoryTreeStore(db)
        node = store.fill_node(snapshot.node_id, chapter, attempts=rounds)
        children = [] if chapter.is_ending else store.create_child_placeholders(node, chapter.choices)
        child_ids = [child.node_id for child in children]

    logger.info(
        "node_filled",
        extra={"is_ending": chapter.is_ending, "children": len(child_ids), "rounds": rounds},
    )
    media_fanout.fan_out(snapshot.node_id)
    return child_ids


async def _expand_node(context: _StoryContext, node_id: uuid.UUID) -> list[uuid.UUID]:
    with session_scope() as db:
        store = StoryTreeStore(db)
        node = db.get(StoryNode, node_id)
        # re-delivery guard
        if node is None or not node.is_placeholder or node.generation_failed or node_id in _claimed:
            record_node_outcome("skipped")
            return []
        if node.depth > settings.expansion_max_depth:
            record_node_outcome("frontier")
            return []
        snapshot = _snapshot(store, node)

    with log_context(node_key=snapshot.node_key):
        try:
            child_ids = await _generate_and_fill(context, snapshot)
        except GenerationError as exc:
            with session_scope() as db:
                StoryTreeStore(db).mark_failed(snapshot.node_id, str(exc))
            record_node_outcome("failed")
            return []

    record_node_outcome("filled")
    return child_ids


async def expand_story(story_id: uuid.UUID) -> None:
    """Fill every reachable placeholder down to `expansion_max_depth`."""
    context = _load_story_context(story_id)
    with session_scope() as db:
        seed = [node.node_id for node in StoryTreeStore(db).pending_placeholders(story_id)]

    queue: deque[uuid.UUID] = deque(seed)
    logger.info("expansion_started", extra={"seeded": len(seed), "max_depth": settings.expansion_max_depth})
    while queue:
        queue.extend(await _expand_node(context, queue.popleft()))


async def process_story(story_id: uuid.UUID) -> None:
    """Worker-pool handler: run one expansion for the story's active entry."""
    started = time.perf_counter()
    with log_context(story_id=story_id):
        with session_scope() as db:
            if job_queue.begin_entry(db, story_id) is None:
                logger.info("expansion_without_active_entry")
                return
            set_status(db, story_id, GenerationStatus.GENERATING_FULL_STORY)

        try:
            await expand_story(story_id)
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            logger.exception("expansion_aborted")
            with session_scope() as db:
                set_status(db, story_id, GenerationStatus.GENERATION_FAILED, error=error)
                job_queue.finish_entry(db, story_id, QueueStatus.FAILED, error=error)
            observe_expansion("failed", time.perf_counter() - started)
            raise

        with session_scope() as db:
            story = set_status(db, story_id, GenerationStatus.FULLY_GENERATED)
            job_queue.finish_entry(db, story_id, QueueStatus.DONE)
            logger.info(
                "expansion_completed",
                extra={"nodes_generated": story.nodes_generated, "nodes_failed": story.nodes_failed},
            )
        observe_expansion("done", time.perf_counter() - started)
        # no-op once the story has a cover
        media_fanout.schedule_cover(story_id)


async def generate_on_demand(node_id: uuid.UUID) -> uuid.UUID:
    """Fill a single placeholder the reader reached before background expansion.

    A filled node is returned as-is. Frontier placeholders (deeper than
    `expansion_max_depth`) are always eligible; shallower ones only while no
    expansion is active for the story. One level of child placeholders is
    created.

    Raises:
        NodeNotFoundError: Unknown node.
        NodeBusyError: The node failed, is already being generated, or belongs
            to a story that is still expanding.
        GenerationError: Generation failed; the node stays a placeholder.
    """
    with session_scope() as db:
        store = StoryTreeStore(db)
        node = store.get_node(node_id)
        if not node.is_placeholder:
            return node.node_id
        if node.generation_failed:
            raise NodeBusyError(node_id, "node generation failed")
        story_id = node.story_id
        frontier = node.depth > settings.expansion_max_depth
        if not frontier and (
            job_queue.get_active_entry(db, story_id) is not None or job_queue.is_story_active(story_id)
        ):
            raise NodeBusyError(node_id, "story is still expanding")
        if node_id in _claimed:
            raise NodeBusyError(node_id, "node is already being generated")
        snapshot = _snapshot(store, node)

    _claimed.add(node_id)
    try:
        context = _load_story_context(story_id)
        with log_context(story_id=story_id, node_key=snapshot.node_key):
            try:
                await _generate_and_fill(context, snapshot)
            except GenerationError:
                record_node_outcome("on_demand_failed")
                raise
            record_node_outcome("on_demand_filled")
    finally:
        _claimed.discard(node_id)
    return node_id
