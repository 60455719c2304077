import logging
import uuid

from fastapi import APIRouter, HTTPException

from taletree.api.deps import DbSessionDep, StoryTreeDep
from taletree.api.v1.schemas import (
    BibleRead,
    ExpandRequest,
    GenerationStatusRead,
    NodeRead,
    QueueEntryRead,
    StoryCreate,
    StoryCreateResponse,
    StoryRead,
)
from taletree.core.comic_styles import has_comic_style
from taletree.db.models import GenerationStatus
from taletree.db.session import session_scope
from taletree.pipeline.progress import get_generation_status
from taletree.services import job_queue
from taletree.services.story_creation import create_story as create_story_with_opening
from taletree.services.story_tree import StoryTreeStore


router = APIRouter(tags=["stories"])
logger = logging.getLogger(__name__)


@router.post("/stories", response_model=StoryCreateResponse, status_code=201)
async def create_story(payload: StoryCreate):
    if payload.comic_style and not has_comic_style(payload.comic_style):
        raise HTTPException(status_code=400, detail="unknown comic_style")

    created = await create_story_with_opening(
        payload.premise,
        payload.audience,
        comic_style=payload.comic_style,
        media_tier=payload.media_tier,
        tone=payload.tone,
        owner_id=payload.owner_id,
    )
    return StoryCreateResponse(
        story_id=created.story_id,
        root_node_id=created.root_node_id,
        queue_entry_id=created.queue_entry_id,
        generation_status=GenerationStatus.GENERATING_BACKGROUND.value,
    )


@router.get("/stories/{story_id}", response_model=StoryRead)
def get_story(story_id: uuid.UUID, store=StoryTreeDep):
    story = store.get_story(story_id)
    response = StoryRead.model_validate(story)
    response.cover_image_url = store.cover_image_of(story)
    return response


@router.get("/stories/{story_id}/bible", response_model=BibleRead)
def get_story_bible(story_id: uuid.UUID, store=StoryTreeDep):
    store.get_story(story_id)
    bible = store.get_bible(story_id)
    if bible is None:
        raise HTTPException(status_code=404, detail="story bible not found")
    return bible


@router.get("/stories/{story_id}/generation-status", response_model=GenerationStatusRead)
def get_story_generation_status(story_id: uuid.UUID, db=DbSessionDep):
    return get_generation_status(story_id, db)


@router.post("/stories/{story_id}/expand", response_model=QueueEntryRead, status_code=202)
async def expand_story(story_id: uuid.UUID, payload: ExpandRequest | None = None):
    payload = payload or ExpandRequest()
    with session_scope() as db:
        StoryTreeStore(db).get_story(story_id)
        entry, created = job_queue.enqueue_story_expansion(
            db,
            story_id,
            user_id=payload.user_id,
            priority=payload.priority,
        )
        response = QueueEntryRead.model_validate(entry)

    response.submitted = job_queue.submit(story_id)
    logger.info("expansion_requested", extra={"story_id": str(story_id), "entry_created": created})
    return response


@router.get("/stories/{story_id}/nodes/{node_key}", response_model=NodeRead)
def get_story_node_by_key(story_id: uuid.UUID, node_key: str, store=StoryTreeDep):
    return store.get_node_by_key(story_id, node_key)
