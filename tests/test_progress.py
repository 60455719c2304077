import uuid

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from taletree.core.exceptions import EntityNotFoundError
from taletree.db.models import GenerationStatus, Story
from taletree.db.session import session_scope
from taletree.pipeline.progress import (
    compute_progress,
    get_generation_status,
    planned_node_total,
    set_status,
)


class TestPlannedNodeTotal:
    def test_small_trees_use_floor(self):
        # 1 + 3 + 9 + 27 = 40
        assert planned_node_total(3, 3) == 40
        assert planned_node_total(2, 2) == 40

    def test_large_tree(self):
        assert planned_node_total(4, 3) == 121


class TestComputeProgress:
    def test_capped_while_running(self):
        assert compute_progress(38, 40) == 95
        assert compute_progress(40, 40) == 95

    def test_floors(self):
        assert compute_progress(1, 40) == 2

    def test_zero_total(self):
        assert compute_progress(5, 0) == 0


@pytest.mark.property
@settings(suppress_health_check=[HealthCheck.function_scoped_fixture])
@given(generated=st.integers(min_value=0, max_value=500), total=st.integers(min_value=1, max_value=500))
def test_running_progress_is_bounded(generated, total):
    progress = compute_progress(generated, total)
    assert 0 <= progress <= 95


def _story(nodes_generated: int, total: int):
    with session_scope() as db:
        story = Story(
            premise="p",
            audience="adult",
            nodes_generated=nodes_generated,
            total_nodes_planned=total,
        )
        db.add(story)
        db.flush()
        return story.story_id


def test_progress_reaches_100_only_on_completion():
    story_id = _story(38, 40)

    with session_scope() as db:
        set_status(db, story_id, GenerationStatus.GENERATING_FULL_STORY)
    view = get_generation_status(story_id)
    assert view.status == "generating_full_story"
    assert view.progress == 95
    assert view.nodes_generated == 38
    assert view.total_planned == 40

    with session_scope() as db:
        set_status(db, story_id, GenerationStatus.FULLY_GENERATED)
    view = get_generation_status(story_id)
    assert view.status == "fully_generated"
    assert view.progress == 100


def test_failed_status_records_error():
    story_id = _story(3, 40)
    with session_scope() as db:
        set_status(db, story_id, GenerationStatus.GENERATION_FAILED, error="DatabaseError: boom")
        story = db.get(Story, story_id)
        assert story.generation_completed_at is not None

    view = get_generation_status(story_id)
    assert view.status == "generation_failed"
    assert view.error == "DatabaseError: boom"
    assert view.progress == 7


def test_unknown_story():
    with pytest.raises(EntityNotFoundError):
        get_generation_status(uuid.uuid4())
