import asyncio
import uuid

import pytest

from taletree.core.settings import settings
from taletree.db.session import session_scope
from taletree.pipeline.media import media_fanout
from taletree.services.story_tree import StoryTreeStore
from tests.fakes import BIBLE


@pytest.fixture(autouse=True)
def _shallow_tree(monkeypatch):
    monkeypatch.setattr(settings, "expansion_max_depth", 1)


async def _create(client, **overrides):
    payload = {"premise": "A lantern drifts out to sea.", "audience": "young_adult"}
    payload.update(overrides)
    resp = await client.post("/v1/stories", json=payload)
    assert resp.status_code == 201, resp.text
    return resp.json()


async def _wait_until_done(client, story_id):
    for _ in range(200):
        resp = await client.get(f"/v1/stories/{story_id}/generation-status")
        body = resp.json()
        if body["status"] in ("fully_generated", "generation_failed"):
            return body
        await asyncio.sleep(0.02)
    raise AssertionError("expansion did not finish")


@pytest.mark.anyio
async def test_create_story_and_wait_for_expansion(client):
    created = await _create(client, comic_style="noir", tone="melancholic")
    story_id = created["story_id"]
    assert created["generation_status"] == "generating_background"

    status = await _wait_until_done(client, story_id)
    assert status["status"] == "fully_generated"
    assert status["progress"] == 100
    assert status["nodes_generated"] == 3
    await media_fanout.drain()

    story = (await client.get(f"/v1/stories/{story_id}")).json()
    assert story["title"] == BIBLE["title"]
    assert story["comic_style"] == "noir"
    assert story["cover_image_url"].startswith(f"/media/{story_id}/")

    bible = (await client.get(f"/v1/stories/{story_id}/bible")).json()
    assert bible["style_prompt_prefix"] == BIBLE["stylePromptPrefix"]
    assert set(bible["character_prompt_map"]) == {"Mira", "Oswin"}

    root = (await client.get(f"/v1/nodes/{created['root_node_id']}")).json()
    assert root["node_key"] == "start"
    assert root["is_placeholder"] is False
    assert len(root["choices"]) == 2

    choices = (await client.get(f"/v1/nodes/{created['root_node_id']}/choices")).json()
    assert [choice["choice_order"] for choice in choices] == [0, 1]

    child = (await client.get(f"/v1/stories/{story_id}/nodes/start.2")).json()
    assert child["node_id"] == choices[1]["to_node_id"]
    assert child["depth"] == 1
    assert child["is_placeholder"] is False


@pytest.mark.anyio
async def test_unknown_story_is_404(client):
    resp = await client.get(f"/v1/stories/{uuid.uuid4()}")
    assert resp.status_code == 404
    body = resp.json()
    assert body["detail"] == "story not found"
    assert body["request_id"]


@pytest.mark.anyio
async def test_unknown_node_key_is_404(client):
    created = await _create(client)
    resp = await client.get(f"/v1/stories/{created['story_id']}/nodes/start.9")
    assert resp.status_code == 404


@pytest.mark.anyio
async def test_unknown_comic_style_is_rejected(client):
    resp = await client.post("/v1/stories", json={"premise": "p", "comic_style": "baroque"})
    assert resp.status_code == 400


@pytest.mark.anyio
async def test_invalid_audience_is_rejected(client):
    resp = await client.post("/v1/stories", json={"premise": "p", "audience": "toddler"})
    assert resp.status_code == 422


@pytest.mark.anyio
async def test_failed_bible_generation_is_502(client, text_generator):
    text_generator.bible = "not a bible"
    resp = await client.post("/v1/stories", json={"premise": "p"})
    assert resp.status_code == 502


@pytest.mark.anyio
async def test_expand_after_completion_queues_a_new_entry(client):
    created = await _create(client)
    story_id = created["story_id"]
    await _wait_until_done(client, story_id)

    resp = await client.post(f"/v1/stories/{story_id}/expand", json={"priority": 3})
    assert resp.status_code == 202
    entry = resp.json()
    assert entry["entry_id"] != created["queue_entry_id"]
    assert entry["priority"] == 3
    assert entry["submitted"] is True

    status = await _wait_until_done(client, story_id)
    assert status["status"] == "fully_generated"


@pytest.mark.anyio
async def test_expand_unknown_story_is_404(client):
    resp = await client.post(f"/v1/stories/{uuid.uuid4()}/expand")
    assert resp.status_code == 404


@pytest.mark.anyio
async def test_generate_frontier_node(client):
    created = await _create(client)
    story_id = created["story_id"]
    await _wait_until_done(client, story_id)

    frontier = (await client.get(f"/v1/stories/{story_id}/nodes/start.1.2")).json()
    assert frontier["is_placeholder"] is True

    resp = await client.post(f"/v1/nodes/{frontier['node_id']}/generate")
    assert resp.status_code == 200
    node = resp.json()
    assert node["is_placeholder"] is False
    assert len(node["choices"]) == 2


@pytest.mark.anyio
async def test_generate_failed_node_is_409(client):
    created = await _create(client)
    story_id = created["story_id"]
    await _wait_until_done(client, story_id)

    frontier = (await client.get(f"/v1/stories/{story_id}/nodes/start.1.1")).json()
    with session_scope() as db:
        StoryTreeStore(db).mark_failed(uuid.UUID(frontier["node_id"]), "timed out")

    resp = await client.post(f"/v1/nodes/{frontier['node_id']}/generate")
    assert resp.status_code == 409
    assert resp.json()["detail"] == "node generation failed"


@pytest.mark.anyio
async def test_generate_unknown_node_is_404(client):
    resp = await client.post(f"/v1/nodes/{uuid.uuid4()}/generate")
    assert resp.status_code == 404
