from fastapi import APIRouter

from taletree.api.v1 import nodes, stories


api_router = APIRouter(prefix="/v1")

api_router.include_router(stories.router)
api_router.include_router(nodes.router)
