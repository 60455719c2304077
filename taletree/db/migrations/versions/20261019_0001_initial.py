"""initial

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None

_ACTIVE_QUEUE_WHERE = sa.text("status IN ('pending', 'in_progress')")


def upgrade() -> None:
    op.create_table(
        "stories",
        sa.Column("story_id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("owner_id", sa.String(length=255), nullable=True),
        sa.Column("premise", sa.Text(), nullable=False),
        sa.Column("audience", sa.String(length=32), nullable=False),
        sa.Column("comic_style", sa.String(length=32), nullable=True),
        sa.Column("media_tier", sa.String(length=16), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("story_context", sa.Text(), nullable=False),
        sa.Column("cover_image_url", sa.Text(), nullable=True),
        sa.Column("generation_status", sa.String(length=32), nullable=False),
        sa.Column("generation_progress", sa.Integer(), nullable=False),
        sa.Column("nodes_generated", sa.Integer(), nullable=False),
        sa.Column("total_nodes_planned", sa.Integer(), nullable=False),
        sa.Column("nodes_failed", sa.Integer(), nullable=False),
        sa.Column("generation_error", sa.Text(), nullable=True),
        sa.Column("generation_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("generation_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("progress_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
    )

    op.create_table(
        "story_nodes",
        sa.Column("node_id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("story_id", sa.Uuid(as_uuid=True), sa.ForeignKey("stories.story_id"), nullable=False),
        sa.Column("node_key", sa.String(length=255), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("panel_description", sa.Text(), nullable=True),
        sa.Column("characters_present", sa.JSON(), nullable=False),
        sa.Column("is_placeholder", sa.Boolean(), nullable=False),
        sa.Column("is_ending", sa.Boolean(), nullable=False),
        sa.Column("ending_type", sa.String(length=32), nullable=True),
        sa.Column("depth", sa.Integer(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("context_chain", sa.JSON(), nullable=False),
        sa.Column("image_url", sa.Text(), nullable=True),
        sa.Column("image_prompt", sa.Text(), nullable=True),
        sa.Column("audio_url", sa.Text(), nullable=True),
        sa.Column("video_url", sa.Text(), nullable=True),
        sa.Column("generation_failed", sa.Boolean(), nullable=False),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("generation_attempts", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.UniqueConstraint("story_id", "node_key", name="uq_story_nodes_story_key"),
    )
    op.create_index("ix_story_nodes_story_id", "story_nodes", ["story_id"])
    op.create_index(
        "ix_story_nodes_pending",
        "story_nodes",
        ["story_id", "is_placeholder", "depth", "sequence"],
    )

    op.create_table(
        "story_choices",
        sa.Column("choice_id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("from_node_id", sa.Uuid(as_uuid=True), sa.ForeignKey("story_nodes.node_id"), nullable=False),
        sa.Column("to_node_id", sa.Uuid(as_uuid=True), sa.ForeignKey("story_nodes.node_id"), nullable=False),
        sa.Column("choice_text", sa.Text(), nullable=False),
        sa.Column("consequence_hint", sa.Text(), nullable=True),
        sa.Column("choice_order", sa.Integer(), nullable=False),
        sa.Column("generation_priority", sa.Integer(), nullable=True),
        sa.Column("emotional_weight", sa.String(length=32), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.UniqueConstraint("from_node_id", "choice_order", name="uq_story_choices_order"),
        sa.UniqueConstraint("to_node_id"),
    )
    op.create_index("ix_story_choices_from_node_id", "story_choices", ["from_node_id"])

    op.create_table(
        "story_bibles",
        sa.Column("bible_id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("story_id", sa.Uuid(as_uuid=True), sa.ForeignKey("stories.story_id"), nullable=False),
        sa.Column("characters", sa.JSON(), nullable=False),
        sa.Column("setting", sa.JSON(), nullable=False),
        sa.Column("art_style", sa.JSON(), nullable=False),
        sa.Column("narrative", sa.JSON(), nullable=False),
        sa.Column("style_prompt_prefix", sa.Text(), nullable=False),
        sa.Column("character_prompt_map", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.UniqueConstraint("story_id"),
    )

    op.create_table(
        "generation_queue",
        sa.Column("entry_id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("story_id", sa.Uuid(as_uuid=True), sa.ForeignKey("stories.story_id"), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_generation_queue_story_id", "generation_queue", ["story_id"])
    op.create_index(
        "uq_generation_queue_active_story",
        "generation_queue",
        ["story_id"],
        unique=True,
        sqlite_where=_ACTIVE_QUEUE_WHERE,
        postgresql_where=_ACTIVE_QUEUE_WHERE,
    )


def downgrade() -> None:
    op.drop_index("uq_generation_queue_active_story", table_name="generation_queue")
    op.drop_index("ix_generation_queue_story_id", table_name="generation_queue")
    op.drop_table("generation_queue")
    op.drop_table("story_bibles")
    op.drop_index("ix_story_choices_from_node_id", table_name="story_choices")
    op.drop_table("story_choices")
    op.drop_index("ix_story_nodes_pending", table_name="story_nodes")
    op.drop_index("ix_story_nodes_story_id", table_name="story_nodes")
    op.drop_table("story_nodes")
    op.drop_table("stories")
