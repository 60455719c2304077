import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from taletree.core.audiences import Audience
from taletree.db.models import MediaTier


class StoryCreate(BaseModel):
    premise: str = Field(min_length=1, max_length=4000)
    audience: Audience = Audience.YOUNG_ADULT
    comic_style: str | None = Field(default=None, max_length=32)
    media_tier: MediaTier = MediaTier.STANDARD
    tone: str | None = Field(default=None, max_length=64)
    owner_id: str | None = Field(default=None, max_length=255)


class StoryCreateResponse(BaseModel):
    story_id: uuid.UUID
    root_node_id: uuid.UUID
    queue_entry_id: uuid.UUID
    generation_status: str


class StoryRead(BaseModel):
    story_id: uuid.UUID
    owner_id: str | None = None
    premise: str
    audience: str
    comic_style: str | None = None
    media_tier: str
    title: str | None = None
    description: str | None = None
    story_context: str = ""
    cover_image_url: str | None = None
    generation_status: str
    generation_progress: int
    generation_error: str | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class BibleRead(BaseModel):
    story_id: uuid.UUID
    characters: list[dict[str, Any]]
    setting: dict[str, Any]
    art_style: dict[str, Any]
    narrative: dict[str, Any]
    style_prompt_prefix: str
    character_prompt_map: dict[str, str]

    model_config = {"from_attributes": True}


class GenerationStatusRead(BaseModel):
    status: str
    progress: int = Field(ge=0, le=100)
    nodes_generated: int
    total_planned: int
    nodes_failed: int = 0
    error: str | None = None

    model_config = {"from_attributes": True}


class QueueEntryRead(BaseModel):
    entry_id: uuid.UUID
    story_id: uuid.UUID
    status: str
    priority: int
    attempts: int
    last_error: str | None = None
    created_at: datetime | None = None
    submitted: bool = False

    model_config = {"from_attributes": True}


class ExpandRequest(BaseModel):
    priority: int = Field(default=0, ge=0, le=10)
    user_id: str | None = Field(default=None, max_length=255)


class ChoiceRead(BaseModel):
    choice_id: uuid.UUID
    from_node_id: uuid.UUID
    to_node_id: uuid.UUID
    choice_text: str
    consequence_hint: str | None = None
    choice_order: int
    generation_priority: int | None = None
    emotional_weight: str | None = None

    model_config = {"from_attributes": True}


class NodeRead(BaseModel):
    node_id: uuid.UUID
    story_id: uuid.UUID
    node_key: str
    title: str | None = None
    content: str
    summary: str | None = None
    panel_description: str | None = None
    characters_present: list[str] = Field(default_factory=list)
    is_placeholder: bool
    is_ending: bool
    ending_type: str | None = None
    depth: int
    image_url: str | None = None
    audio_url: str | None = None
    video_url: str | None = None
    generation_failed: bool = False
    choices: list[ChoiceRead] = Field(default_factory=list)

    model_config = {"from_attributes": True}
