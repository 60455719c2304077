from unittest.mock import AsyncMock

import httpx
import pytest

from taletree.core import settings as settings_module
from taletree.db.base import Base
from taletree.db.session import get_engine, init_engine
from taletree.main import app
from taletree.pipeline import expansion
from taletree.pipeline.runtime import Collaborators, set_collaborators
from taletree.services.gemini import MediaPayload
from taletree.services.storage import LocalMediaStore
from tests.fakes import FakeModerator, FakeTextGenerator


@pytest.fixture(autouse=True)
def _use_test_db(tmp_path, monkeypatch):
    db_path = tmp_path / "test.db"
    database_url = f"sqlite+pysqlite:///{db_path}"

    monkeypatch.setattr(settings_module.settings, "database_url", database_url)
    monkeypatch.setattr(settings_module.settings, "db_auto_create", True)
    monkeypatch.setattr(settings_module.settings, "media_root", str(tmp_path / "media"))
    monkeypatch.setattr(settings_module.settings, "external_call_timeout_seconds", 5.0)

    init_engine(database_url)
    Base.metadata.create_all(bind=get_engine())

    yield


@pytest.fixture()
def text_generator():
    return FakeTextGenerator()


@pytest.fixture()
def moderator():
    return FakeModerator()


@pytest.fixture(autouse=True)
def collaborators(tmp_path, text_generator, moderator):
    fakes = Collaborators(
        text=text_generator,
        moderator=moderator,
        image=AsyncMock(),
        speech=AsyncMock(),
        video=AsyncMock(),
        media_store=LocalMediaStore(str(tmp_path / "media"), "/media"),
    )
    fakes.image.generate.return_value = MediaPayload(mime_type="image/png", data=b"\x89PNG")
    fakes.speech.synthesize.return_value = MediaPayload(mime_type="audio/wav", data=b"RIFF")
    fakes.video.generate.return_value = MediaPayload(mime_type="video/mp4", url="https://cdn.example/clip.mp4")
    set_collaborators(fakes)
    expansion._claimed.clear()
    yield fakes
    set_collaborators(None)


@pytest.fixture()
async def client():
    async with app.router.lifespan_context(app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            yield client


@pytest.fixture()
def anyio_backend():
    return "asyncio"
