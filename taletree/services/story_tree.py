import logging
import uuid

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from taletree.core.exceptions import (
    BibleAlreadyExistsError,
    EntityNotFoundError,
    NodeAlreadyFilledError,
    NodeNotFoundError,
)
from taletree.db.models import Story, StoryBible, StoryChoice, StoryNode
from taletree.pipeline.bible import bible_row_values
from taletree.pipeline.progress import refresh_progress
from taletree.pipeline.schemas import BibleDraft, ChapterChoice, ContextEntry, ContinuingChapter, EndingChapter

logger = logging.getLogger(__name__)

ROOT_NODE_KEY = "start"


def child_node_key(parent_key: str, choice_order: int) -> str:
    return f"{parent_key}.{choice_order + 1}"


def context_entry_for(node: StoryNode, choice_made: str | None = None) -> dict:
    return ContextEntry(
        node_key=node.node_key,
        title=node.title,
        summary=node.summary or node.content[:100],
        characters_present=list(node.characters_present or []),
        choice_made=choice_made,
    ).model_dump()


class StoryTreeStore:
    """Persistence for the branching node graph of a story.

    Writes flush but never commit; the caller owns the transaction.
    """

    def __init__(self, db: Session):
        self.db = db

    # -- reads -----------------------------------------------------------------

    def get_story(self, story_id: uuid.UUID) -> Story:
        story = self.db.get(Story, story_id)
        if story is None:
            raise EntityNotFoundError("story", story_id)
        return story

    def get_node(self, node_id: uuid.UUID) -> StoryNode:
        node = self.db.get(StoryNode, node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        return node

    def get_node_by_key(self, story_id: uuid.UUID, node_key: str) -> StoryNode:
        node = self.db.execute(
            select(StoryNode).where(StoryNode.story_id == story_id, StoryNode.node_key == node_key)
        ).scalar_one_or_none()
        if node is None:
            raise NodeNotFoundError(f"{story_id}/{node_key}")
        return node

    def get_choices_of(self, node_id: uuid.UUID) -> list[StoryChoice]:
        stmt = (
            select(StoryChoice)
            .where(StoryChoice.from_node_id == node_id)
            .order_by(StoryChoice.choice_order.asc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def pending_placeholders(self, story_id: uuid.UUID) -> list[StoryNode]:
        """Unresolved placeholders in breadth-first order."""
        stmt = (
            select(StoryNode)
            .where(
                StoryNode.story_id == story_id,
                StoryNode.is_placeholder.is_(True),
                StoryNode.generation_failed.is_(False),
            )
            .order_by(StoryNode.depth.asc(), StoryNode.sequence.asc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def parent_of(self, node: StoryNode) -> StoryNode | None:
        choice = self.db.execute(
            select(StoryChoice).where(StoryChoice.to_node_id == node.node_id)
        ).scalar_one_or_none()
        if choice is None:
            return None
        return self.db.get(StoryNode, choice.from_node_id)

    def parent_content_of(self, node: StoryNode) -> str | None:
        parent = self.parent_of(node)
        return parent.content if parent is not None else None

    def cover_image_of(self, story: Story) -> str | None:
        """The story's cover, else the opening chapter's illustration."""
        if story.cover_image_url:
            return story.cover_image_url
        return self.db.execute(
            select(StoryNode.image_url).where(
                StoryNode.story_id == story.story_id,
                StoryNode.node_key == ROOT_NODE_KEY,
            )
        ).scalar_one_or_none()

    def get_bible(self, story_id: uuid.UUID) -> StoryBible | None:
        return self.db.execute(
            select(StoryBible).where(StoryBible.story_id == story_id)
        ).scalar_one_or_none()

    # -- writes ----------------------------------------------------------------

    def save_bible(self, story_id: uuid.UUID, draft: BibleDraft) -> StoryBible:
        if self.get_bible(story_id) is not None:
            raise BibleAlreadyExistsError(story_id)
        row = StoryBible(story_id=story_id, **bible_row_values(draft))
        self.db.add(row)
        self.db.flush()
        return row

    def _next_sequence(self, story_id: uuid.UUID) -> int:
        current = self.db.execute(
            select(func.max(StoryNode.sequence)).where(StoryNode.story_id == story_id)
        ).scalar_one_or_none()
        return 0 if current is None else current + 1

    def _apply_chapter(self, node: StoryNode, chapter: ContinuingChapter | EndingChapter) -> None:
        node.title = chapter.title
        node.content = chapter.content
        node.summary = chapter.summary
        node.panel_description = chapter.panel_description
        node.characters_present = list(chapter.characters_present)
        node.is_ending = chapter.is_ending
        node.ending_type = chapter.ending_type
        node.is_placeholder = False

    def create_root(self, story: Story, chapter: ContinuingChapter | EndingChapter) -> StoryNode:
        node = StoryNode(
            story_id=story.story_id,
            node_key=ROOT_NODE_KEY,
            depth=0,
            sequence=self._next_sequence(story.story_id),
            context_chain=[],
            generation_attempts=1,
        )
        self._apply_chapter(node, chapter)
        self.db.add(node)
        story.nodes_generated += 1
        refresh_progress(story)
        self.db.flush()
        return node

    def create_placeholder(
        self,
        story_id: uuid.UUID,
        *,
        node_key: str,
        depth: int,
        context_chain: list[dict],
    ) -> StoryNode:
        node = StoryNode(
            story_id=story_id,
            node_key=node_key,
            depth=depth,
            sequence=self._next_sequence(story_id),
            context_chain=list(context_chain),
            is_placeholder=True,
        )
        self.db.add(node)
        self.db.flush()
        return node

    def attach_choice(
        self,
        from_node: StoryNode,
        to_placeholder: StoryNode,
        choice: ChapterChoice,
        order: int,
    ) -> StoryChoice:
        row = StoryChoice(
            from_node_id=from_node.node_id,
            to_node_id=to_placeholder.node_id,
            choice_text=choice.text,
            consequence_hint=choice.consequence_hint,
            choice_order=order,
            generation_priority=choice.generation_priority,
            emotional_weight=choice.emotional_weight,
        )
        self.db.add(row)
        self.db.flush()
        return row

    def create_child_placeholders(
        self,
        parent: StoryNode,
        choices: list[ChapterChoice],
    ) -> list[StoryNode]:
        """One placeholder per choice, keyed and ordered by `choice_order`."""
        children = []
        for order, choice in enumerate(choices):
            chain = list(parent.context_chain or []) + [context_entry_for(parent, choice.text)]
            child = self.create_placeholder(
                parent.story_id,
                node_key=child_node_key(parent.node_key, order),
                depth=parent.depth + 1,
                context_chain=chain,
            )
            self.attach_choice(parent, child, choice, order)
            children.append(child)
        return children

    def fill_node(
        self,
        node_id: uuid.UUID,
        chapter: ContinuingChapter | EndingChapter,
        *,
        attempts: int = 1,
    ) -> StoryNode:
        """Write generated content into a placeholder.

        Raises:
            NodeNotFoundError: Unknown node id.
            NodeAlreadyFilledError: The node already has content; it is left unchanged.
        """
        node = self.get_node(node_id)
        if not node.is_placeholder:
            raise NodeAlreadyFilledError(node_id)

        story = self.get_story(node.story_id)
        if node.generation_failed:
            story.nodes_failed = max(0, story.nodes_failed - 1)
        self._apply_chapter(node, chapter)
        node.generation_failed = False
        node.failure_reason = None
        node.generation_attempts += attempts

        story.nodes_generated += 1
        refresh_progress(story)
        self.db.flush()
        return node

    def mark_failed(self, node_id: uuid.UUID, reason: str, *, attempts: int = 1) -> StoryNode:
        node = self.get_node(node_id)
        if not node.is_placeholder:
            raise NodeAlreadyFilledError(node_id)

        node.generation_attempts += attempts
        node.failure_reason = reason
        if not node.generation_failed:
            node.generation_failed = True
            story = self.get_story(node.story_id)
            story.nodes_failed += 1
            refresh_progress(story)
        self.db.flush()
        logger.warning("node_failed", extra={"node_key": node.node_key, "reason": reason})
        return node
