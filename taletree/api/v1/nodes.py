import uuid

from fastapi import APIRouter

from taletree.api.deps import StoryTreeDep
from taletree.api.v1.schemas import ChoiceRead, NodeRead
from taletree.db.session import session_scope
from taletree.pipeline.expansion import generate_on_demand
from taletree.services.story_tree import StoryTreeStore


router = APIRouter(tags=["nodes"])


@router.get("/nodes/{node_id}", response_model=NodeRead)
def get_node(node_id: uuid.UUID, store=StoryTreeDep):
    return store.get_node(node_id)


@router.get("/nodes/{node_id}/choices", response_model=list[ChoiceRead])
def get_node_choices(node_id: uuid.UUID, store=StoryTreeDep):
    store.get_node(node_id)
    return store.get_choices_of(node_id)


@router.post("/nodes/{node_id}/generate", response_model=NodeRead)
async def generate_node(node_id: uuid.UUID):
    filled_id = await generate_on_demand(node_id)
    with session_scope() as db:
        node = StoryTreeStore(db).get_node(filled_id)
        return NodeRead.model_validate(node)
