from collections.abc import Generator

from fastapi import Depends
from sqlalchemy.orm import Session

from taletree.db.session import get_db
from taletree.services.story_tree import StoryTreeStore


def db_session() -> Generator[Session, None, None]:
    yield from get_db()


def story_tree_store(db: Session = Depends(db_session)) -> StoryTreeStore:
    return StoryTreeStore(db)


DbSessionDep = Depends(db_session)
StoryTreeDep = Depends(story_tree_store)
