from __future__ import annotations

import uuid
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql.sqltypes import Uuid

from taletree.db.base import Base


class GenerationStatus(str, Enum):
    PENDING = "pending"
    GENERATING_BACKGROUND = "generating_background"
    GENERATING_FULL_STORY = "generating_full_story"
    FULLY_GENERATED = "fully_generated"
    GENERATION_FAILED = "generation_failed"


class QueueStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"


ACTIVE_QUEUE_STATUSES = (QueueStatus.PENDING.value, QueueStatus.IN_PROGRESS.value)


class MediaTier(str, Enum):
    STANDARD = "standard"
    PREMIUM = "premium"


class Story(Base):
    __tablename__ = "stories"

    story_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    premise: Mapped[str] = mapped_column(Text, nullable=False)
    audience: Mapped[str] = mapped_column(String(32), nullable=False)
    comic_style: Mapped[str | None] = mapped_column(String(32), nullable=True)
    media_tier: Mapped[str] = mapped_column(String(16), nullable=False, default=MediaTier.STANDARD.value)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    story_context: Mapped[str] = mapped_column(Text, nullable=False, default="")
    cover_image_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    generation_status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=GenerationStatus.PENDING.value
    )
    generation_progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    nodes_generated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_nodes_planned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    nodes_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    generation_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    generation_started_at: Mapped[object | None] = mapped_column(DateTime(timezone=True), nullable=True)
    generation_completed_at: Mapped[object | None] = mapped_column(DateTime(timezone=True), nullable=True)
    progress_updated_at: Mapped[object | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[object] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[object] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    nodes: Mapped[list["StoryNode"]] = relationship(back_populates="story", cascade="all, delete-orphan")
    bible: Mapped["StoryBible | None"] = relationship(
        back_populates="story", cascade="all, delete-orphan", uselist=False
    )


class StoryNode(Base):
    __tablename__ = "story_nodes"
    __table_args__ = (
        UniqueConstraint("story_id", "node_key", name="uq_story_nodes_story_key"),
        Index("ix_story_nodes_pending", "story_id", "is_placeholder", "depth", "sequence"),
    )

    node_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    story_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("stories.story_id"), nullable=False, index=True)
    node_key: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    panel_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    characters_present: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    is_placeholder: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_ending: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    ending_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    depth: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    context_chain: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    audio_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    video_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    generation_failed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    generation_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[object] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[object] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    story: Mapped[Story] = relationship(back_populates="nodes")
    choices: Mapped[list["StoryChoice"]] = relationship(
        back_populates="from_node",
        foreign_keys="StoryChoice.from_node_id",
        order_by="StoryChoice.choice_order",
        cascade="all, delete-orphan",
    )


class StoryChoice(Base):
    __tablename__ = "story_choices"
    __table_args__ = (UniqueConstraint("from_node_id", "choice_order", name="uq_story_choices_order"),)

    choice_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    from_node_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("story_nodes.node_id"), nullable=False, index=True)
    to_node_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("story_nodes.node_id"), nullable=False, unique=True)
    choice_text: Mapped[str] = mapped_column(Text, nullable=False)
    consequence_hint: Mapped[str | None] = mapped_column(Text, nullable=True)
    choice_order: Mapped[int] = mapped_column(Integer, nullable=False)
    generation_priority: Mapped[int | None] = mapped_column(Integer, nullable=True)
    emotional_weight: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[object] = mapped_column(DateTime(timezone=True), server_default=func.now())

    from_node: Mapped[StoryNode] = relationship(back_populates="choices", foreign_keys=[from_node_id])
    to_node: Mapped[StoryNode] = relationship(foreign_keys=[to_node_id])


class StoryBible(Base):
    __tablename__ = "story_bibles"

    bible_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    story_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("stories.story_id"), nullable=False, unique=True)
    characters: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    setting: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    art_style: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    narrative: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    style_prompt_prefix: Mapped[str] = mapped_column(Text, nullable=False)
    character_prompt_map: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[object] = mapped_column(DateTime(timezone=True), server_default=func.now())

    story: Mapped[Story] = relationship(back_populates="bible")


class GenerationQueueEntry(Base):
    __tablename__ = "generation_queue"
    __table_args__ = (
        # one active entry per story
        Index(
            "uq_generation_queue_active_story",
            "story_id",
            unique=True,
            sqlite_where=text("status IN ('pending', 'in_progress')"),
            postgresql_where=text("status IN ('pending', 'in_progress')"),
        ),
    )

    entry_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    story_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("stories.story_id"), nullable=False, index=True)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=QueueStatus.PENDING.value)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[object] = mapped_column(DateTime(timezone=True), server_default=func.now())
    started_at: Mapped[object | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[object | None] = mapped_column(DateTime(timezone=True), nullable=True)
