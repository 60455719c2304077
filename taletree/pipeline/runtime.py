"""
External collaborators used by the generation pipeline.

The pipeline talks to protocol types only. `get_collaborators()` lazily wires
the Gemini-backed implementations; tests install doubles with
`set_collaborators()`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Protocol, TypeVar

from taletree.core.exceptions import GenerationError
from taletree.core.gemini_factory import build_gemini_client
from taletree.core.settings import settings
from taletree.prompts.loader import render_prompt
from taletree.services.gemini import GeminiClient, GeminiError, MediaPayload
from taletree.services.storage import LocalMediaStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

APPROPRIATE = "appropriate"
INAPPROPRIATE = "inappropriate"


class TextGenerator(Protocol):
    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        temperature: float,
        max_tokens: int,
    ) -> str: ...


class Moderator(Protocol):
    async def classify(self, text: str, *, age_range: str) -> str: ...


class ImageGenerator(Protocol):
    async def generate(self, prompt: str) -> MediaPayload: ...


class SpeechGenerator(Protocol):
    async def synthesize(self, text: str, *, voice: str, style_hint: str | None = None) -> MediaPayload: ...


class VideoGenerator(Protocol):
    async def generate(self, prompt: str) -> MediaPayload: ...


async def call_with_timeout(awaitable: Awaitable[T], operation: str, timeout: float | None = None) -> T:
    """Await an external call, converting a timeout into a `GenerationError`."""
    limit = timeout if timeout is not None else settings.external_call_timeout_seconds
    try:
        return await asyncio.wait_for(awaitable, timeout=limit)
    except asyncio.TimeoutError as exc:
        raise GenerationError(
            f"{operation} timed out after {limit:g}s",
            detail=f"{operation} timed out",
        ) from exc


# ---------------------------------------------------------------------------
# Gemini-backed implementations
# ---------------------------------------------------------------------------


class GeminiTextGenerator:
    def __init__(self, client: GeminiClient, model: str | None = None):
        self._client = client
        self._model = model

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        temperature: float,
        max_tokens: int,
    ) -> str:
        try:
            return await asyncio.to_thread(
                self._client.generate_text,
                user_prompt,
                system_prompt=system_prompt,
                temperature=temperature,
                max_output_tokens=max_tokens,
                model=self._model,
            )
        except GeminiError as exc:
            raise GenerationError(str(exc), detail="text generation failed") from exc


class GeminiModerator:
    """Single-word YES/NO verdict from a small model."""

    def __init__(self, client: GeminiClient, model: str):
        self._client = client
        self._model = model

    async def classify(self, text: str, *, age_range: str) -> str:
        answer = await asyncio.to_thread(
            self._client.generate_text,
            render_prompt("prompt_moderation_user", age_range=age_range, content=text),
            system_prompt=render_prompt("prompt_moderation_system", age_range=age_range),
            temperature=0.3,
            max_output_tokens=10,
            model=self._model,
            use_fallback=False,
        )
        return APPROPRIATE if "YES" in answer.strip().upper() else INAPPROPRIATE


class GeminiImageGenerator:
    def __init__(self, client: GeminiClient):
        self._client = client

    async def generate(self, prompt: str) -> MediaPayload:
        return await asyncio.to_thread(self._client.generate_image, prompt)


class GeminiSpeechGenerator:
    def __init__(self, client: GeminiClient):
        self._client = client

    async def synthesize(self, text: str, *, voice: str, style_hint: str | None = None) -> MediaPayload:
        return await asyncio.to_thread(self._client.generate_speech, text, voice=voice, style_hint=style_hint)


class GeminiVideoGenerator:
    def __init__(self, client: GeminiClient):
        self._client = client

    async def generate(self, prompt: str) -> MediaPayload:
        return await asyncio.to_thread(self._client.generate_video, prompt)


@dataclass
class Collaborators:
    text: TextGenerator
    moderator: Moderator
    image: ImageGenerator
    speech: SpeechGenerator
    video: VideoGenerator | None
    media_store: LocalMediaStore


def build_gemini_collaborators() -> Collaborators:
    """Wire every collaborator to one shared Gemini client.

    Raises:
        GeminiNotConfiguredError: If no Gemini credentials are configured.
    """
    client = build_gemini_client()
    return Collaborators(
        text=GeminiTextGenerator(client),
        moderator=GeminiModerator(client, settings.gemini_moderation_model),
        image=GeminiImageGenerator(client),
        speech=GeminiSpeechGenerator(client),
        video=GeminiVideoGenerator(client) if settings.video_enabled else None,
        media_store=LocalMediaStore(settings.media_root, settings.media_url_prefix),
    )


_collaborators: Collaborators | None = None


def get_collaborators() -> Collaborators:
    global _collaborators
    if _collaborators is None:
        _collaborators = build_gemini_collaborators()
        logger.info("collaborators_initialized", extra={"backend": "gemini"})
    return _collaborators


def set_collaborators(collaborators: Collaborators | None) -> None:
    """Install collaborators explicitly; `None` re-enables lazy Gemini wiring."""
    global _collaborators
    _collaborators = collaborators
