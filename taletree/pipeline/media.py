"""
Media fan-out for filled story nodes.

Narration, the panel illustration and (premium tier only) a short video clip
are produced independently once a node has text, and the story gets one
cover illustration once its opening exists. Each runs as a tracked
asyncio task; the caller never awaits them. Failures are logged and counted
and leave the media column null.
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select

from taletree.core.audiences import Audience, get_audience_profile
from taletree.core.comic_styles import get_comic_style, has_comic_style
from taletree.core.exceptions import MediaFailure
from taletree.core.metrics import record_media_result
from taletree.core.request_context import log_context
from taletree.core.settings import settings
from taletree.db.models import MediaTier, Story, StoryBible, StoryNode
from taletree.db.session import session_scope
from taletree.pipeline.bible import bible_from_row
from taletree.pipeline.runtime import call_with_timeout, get_collaborators
from taletree.pipeline.schemas import BibleDraft
from taletree.prompts.loader import get_prompt_data, render_prompt
from taletree.services.gemini import GeminiQuotaError, MediaPayload

logger = logging.getLogger(__name__)

MAX_IMAGE_PROMPT_CHARS = 3800

AUDIO = "audio"
IMAGE = "image"
VIDEO = "video"
COVER = "cover"

COVER_CONTEXT_NODES = 5
COVER_CONTEXT_CHARS = 800

_MEDIA_COLUMNS = {AUDIO: "audio_url", IMAGE: "image_url", VIDEO: "video_url"}

SENSITIVE_TERMS: dict[str, str] = {
    # historical figures
    "kennedy": "a distinguished political leader",
    "jfk": "a distinguished political leader",
    "john f kennedy": "a distinguished political leader",
    "john fitzgerald kennedy": "a distinguished political leader",
    "hitler": "a stern military leader",
    "nazi": "authoritarian regime",
    "nazis": "authoritarian soldiers",
    "holocaust": "historical tragedy",
    "stalin": "a cold authoritarian leader",
    "mussolini": "a dictatorial figure",
    "robespierre": "a revolutionary leader in period clothing",
    "guillotine": "execution platform",
    "mao": "an eastern political leader",
    "pol pot": "a ruthless leader",
    "bin laden": "a bearded extremist figure",
    "isis": "militant group",
    "al qaeda": "terrorist organization",
    "kkk": "hooded figures",
    "ku klux": "hooded figures",
    # wars and atrocities
    "world war": "great historical conflict",
    "ww2": "mid-century conflict",
    "ww1": "early century conflict",
    "genocide": "mass tragedy",
    "massacre": "tragic event",
    "concentration camp": "detention facility",
    "gas chamber": "dark chamber",
    "atomic bomb": "devastating weapon",
    "nuclear bomb": "powerful explosion",
    # violence
    "murder": "dramatic confrontation",
    "killing": "intense conflict",
    "torture": "interrogation",
    "execution": "fateful moment",
    "assassination": "targeted attack",
    "terrorist": "extremist",
    "terrorism": "extremism",
    # political symbols
    "swastika": "authoritarian symbol",
    "confederate": "historical faction",
    "slavery": "historical oppression",
    "slave": "oppressed person",
}

# applied after SENSITIVE_TERMS, on whatever violent vocabulary is left
_SOFTENING_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\b(kill|killed|kills|death|dead|die|dies|dying)\b", re.IGNORECASE), "fall"),
    (re.compile(r"\b(blood|bloody|bleeding)\b", re.IGNORECASE), "red"),
    (re.compile(r"\b(corpse|body|bodies)\b", re.IGNORECASE), "figure"),
    (re.compile(r"\b(gun|guns|weapon|weapons|rifle|pistol)\b", re.IGNORECASE), "object"),
    (re.compile(r"\b(shoot|shooting|shot)\b", re.IGNORECASE), "action"),
    (re.compile(r"\b(bomb|bombs|explosion|explosions)\b", re.IGNORECASE), "dramatic event"),
    (re.compile(r"\b(war|battle|fight|fighting)\b", re.IGNORECASE), "conflict"),
)


def _sensitive_term_pattern() -> re.Pattern[str]:
    # longest first so "john f kennedy" wins over "kennedy"
    terms = sorted(SENSITIVE_TERMS, key=len, reverse=True)
    return re.compile(r"\b(" + "|".join(re.escape(term) for term in terms) + r")\b", re.IGNORECASE)


_SENSITIVE_RE = _sensitive_term_pattern()


def soften_image_prompt(prompt: str) -> str:
    """Replace terms image models commonly refuse with neutral stand-ins."""
    softened = _SENSITIVE_RE.sub(lambda match: SENSITIVE_TERMS[match.group(0).lower()], prompt)
    for pattern, replacement in _SOFTENING_PATTERNS:
        softened = pattern.sub(replacement, softened)
    return softened


def build_image_prompt(
    bible: BibleDraft,
    scene: str,
    characters_present: Sequence[str],
    audience: Audience | str,
) -> str:
    profile = get_audience_profile(audience)
    parts = [bible.style_prompt_prefix.strip()]
    for name in characters_present:
        description = bible.character_prompt_map.get(name)
        if description:
            parts.append(f"Character {name}: {description.strip().rstrip('.')}.")
    parts.append(f"SCENE: {scene.strip()}")

    suffixes = get_prompt_data("image_audience_suffix")
    suffix = suffixes.get(profile.audience.value) if isinstance(suffixes, dict) else None
    if suffix:
        parts.append(suffix.strip())

    prompt = " ".join(part for part in parts if part)
    if profile.softens_image_prompts:
        prompt = soften_image_prompt(prompt)
    return prompt[:MAX_IMAGE_PROMPT_CHARS]


def build_cover_prompt(
    bible: BibleDraft,
    title: str | None,
    description: str | None,
    opening: str,
    audience: Audience | str,
) -> str:
    """Cover illustration prompt: the panel prompt rules applied to the story as a whole."""
    protagonists = [c.name for c in bible.characters if c.role.lower() == "protagonist"]
    scene = render_prompt(
        "prompt_cover_image",
        title=title or "Untitled",
        description=description or "",
        opening=opening[:COVER_CONTEXT_CHARS],
    )
    return build_image_prompt(bible, scene, protagonists or bible.character_names(), audience)


@dataclass(frozen=True)
class _MediaTarget:
    node_id: uuid.UUID
    story_id: uuid.UUID
    node_key: str
    audience: str
    comic_style: str | None
    media_tier: str
    content: str
    summary: str | None
    panel_description: str | None
    characters_present: list[str]
    audio_url: str | None
    image_url: str | None
    video_url: str | None


def _load_target(node_id: uuid.UUID) -> _MediaTarget | None:
    with session_scope() as db:
        node = db.get(StoryNode, node_id)
        if node is None or node.is_placeholder:
            return None
        story = db.get(Story, node.story_id)
        if story is None:
            return None
        return _MediaTarget(
            node_id=node.node_id,
            story_id=node.story_id,
            node_key=node.node_key,
            audience=story.audience,
            comic_style=story.comic_style,
            media_tier=story.media_tier,
            content=node.content,
            summary=node.summary,
            panel_description=node.panel_description,
            characters_present=list(node.characters_present or []),
            audio_url=node.audio_url,
            image_url=node.image_url,
            video_url=node.video_url,
        )


@dataclass(frozen=True)
class _CoverTarget:
    story_id: uuid.UUID
    audience: str
    title: str | None
    description: str | None
    cover_image_url: str | None
    opening: str


def _load_cover_target(story_id: uuid.UUID) -> _CoverTarget | None:
    """None until the story has at least one filled chapter to draw from."""
    with session_scope() as db:
        story = db.get(Story, story_id)
        if story is None:
            return None
        contents = db.execute(
            select(StoryNode.content)
            .where(StoryNode.story_id == story_id, StoryNode.is_placeholder.is_(False))
            .order_by(StoryNode.depth.asc(), StoryNode.sequence.asc())
            .limit(COVER_CONTEXT_NODES)
        ).scalars().all()
        if not contents:
            return None
        return _CoverTarget(
            story_id=story.story_id,
            audience=story.audience,
            title=story.title,
            description=story.description,
            cover_image_url=story.cover_image_url,
            opening="\n\n".join(contents),
        )


def _load_bible(story_id: uuid.UUID) -> BibleDraft | None:
    with session_scope() as db:
        row = db.execute(select(StoryBible).where(StoryBible.story_id == story_id)).scalar_one_or_none()
        return bible_from_row(row) if row is not None else None


def _write_cover_url(story_id: uuid.UUID, url: str) -> bool:
    with session_scope() as db:
        story = db.get(Story, story_id)
        if story is None or story.cover_image_url is not None:
            return False
        story.cover_image_url = url
        return True


def _write_media_url(node_id: uuid.UUID, kind: str, url: str, **extra: Any) -> bool:
    """Set the media column for `kind` unless another writer got there first."""
    column = _MEDIA_COLUMNS[kind]
    with session_scope() as db:
        node = db.get(StoryNode, node_id)
        if node is None or getattr(node, column) is not None:
            return False
        setattr(node, column, url)
        for key, value in extra.items():
            setattr(node, key, value)
        return True


def _voice_for(target: _MediaTarget) -> tuple[str, str]:
    """Narration voice and style hint from the comic style, else the audience."""
    profile = get_audience_profile(target.audience)
    if has_comic_style(target.comic_style):
        preset = get_comic_style(target.comic_style)
        voice, speed, mood = preset.voice, preset.voice_speed, preset.mood
    else:
        voice, speed, mood = profile.default_voice, profile.default_voice_speed, profile.default_tone
    return voice, render_prompt("prompt_narration_style", speed=speed, mood=mood)


def video_allowed(media_tier: str) -> bool:
    if media_tier != MediaTier.PREMIUM.value or not settings.video_enabled:
        return False
    return get_collaborators().video is not None


class MediaFanout:
    """Tracks fire-and-forget media tasks so they can be drained on shutdown."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()
        self._inflight: set[tuple[uuid.UUID, str]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def _spawn(
        self,
        owner_id: uuid.UUID,
        kind: str,
        factory: Callable[[], Awaitable[Any]],
    ) -> asyncio.Task | None:
        key = (owner_id, kind)
        if key in self._inflight:
            return None
        self._inflight.add(key)
        task = asyncio.create_task(factory(), name=f"media-{kind}-{owner_id}")
        self._tasks.add(task)

        def _done(finished: asyncio.Task) -> None:
            self._tasks.discard(finished)
            self._inflight.discard(key)

        task.add_done_callback(_done)
        return task

    def fan_out(self, node_id: uuid.UUID) -> list[asyncio.Task]:
        """Schedule every media call whose column is still empty."""
        target = _load_target(node_id)
        if target is None:
            return []

        scheduled: list[asyncio.Task | None] = []
        if target.audio_url is None:
            scheduled.append(self._spawn(node_id, AUDIO, lambda: self.attach_audio(node_id, target.content)))
        if target.image_url is None:
            scene = target.panel_description or target.summary or target.content
            scheduled.append(self._spawn(node_id, IMAGE, lambda: self.attach_image(node_id, scene)))
        if target.video_url is None and video_allowed(target.media_tier):
            summary = target.summary or target.content
            scheduled.append(self._spawn(node_id, VIDEO, lambda: self.attach_video(node_id, summary)))

        tasks = [task for task in scheduled if task is not None]
        logger.debug("media_fanout_scheduled", extra={"node_id": str(node_id), "task_count": len(tasks)})
        return tasks

    async def _store(self, payload: MediaPayload, story_id: uuid.UUID) -> str:
        if payload.data:
            store = get_collaborators().media_store
            _, url = await asyncio.to_thread(
                store.save_media_bytes,
                payload.data,
                payload.mime_type,
                folder=str(story_id),
            )
            return url
        if payload.url:
            return payload.url
        raise MediaFailure("media payload carried neither bytes nor a url")

    async def _run(
        self,
        kind: str,
        story_id: uuid.UUID,
        node_key: str | None,
        call: Callable[[], Awaitable[MediaPayload]],
        write: Callable[[str], bool],
    ) -> str | None:
        with log_context(story_id=story_id, node_key=node_key):
            try:
                payload = await call_with_timeout(call(), f"{kind} generation")
                url = await self._store(payload, story_id)
            except GeminiQuotaError as exc:
                logger.warning("media_quota_rejected", extra={"kind": kind, "error": str(exc)})
                record_media_result(kind, "quota")
                return None
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "media_generation_failed",
                    extra={"kind": kind, "error_type": type(exc).__name__, "error": str(exc)},
                )
                record_media_result(kind, "failed")
                return None

            if not write(url):
                logger.info("media_already_attached", extra={"kind": kind})
                record_media_result(kind, "skipped")
                return None

            logger.info("media_attached", extra={"kind": kind, "url": url})
            record_media_result(kind, "attached")
            return url

    async def _run_for_node(
        self,
        kind: str,
        target: _MediaTarget,
        call: Callable[[], Awaitable[MediaPayload]],
        **extra: Any,
    ) -> str | None:
        return await self._run(
            kind,
            target.story_id,
            target.node_key,
            call,
            lambda url: _write_media_url(target.node_id, kind, url, **extra),
        )

    async def attach_audio(self, node_id: uuid.UUID, content: str) -> str | None:
        target = _load_target(node_id)
        if target is None or target.audio_url is not None:
            return None
        voice, style_hint = _voice_for(target)
        speech = get_collaborators().speech
        return await self._run_for_node(
            AUDIO, target, lambda: speech.synthesize(content, voice=voice, style_hint=style_hint)
        )

    async def attach_image(self, node_id: uuid.UUID, scene: str, bible: BibleDraft | None = None) -> str | None:
        target = _load_target(node_id)
        if target is None or target.image_url is not None:
            return None
        bible = bible or _load_bible(target.story_id)
        if bible is None:
            logger.warning("media_bible_missing", extra={"kind": IMAGE, "story_id": str(target.story_id)})
            record_media_result(IMAGE, "failed")
            return None

        prompt = build_image_prompt(bible, scene, target.characters_present, target.audience)
        image = get_collaborators().image
        return await self._run_for_node(IMAGE, target, lambda: image.generate(prompt), image_prompt=prompt)

    async def attach_video(self, node_id: uuid.UUID, summary: str) -> str | None:
        target = _load_target(node_id)
        if target is None or target.video_url is not None:
            return None
        video = get_collaborators().video
        if video is None or not video_allowed(target.media_tier):
            return None
        bible = _load_bible(target.story_id)
        prompt = render_prompt(
            "prompt_video",
            style_prompt_prefix=bible.style_prompt_prefix if bible else "",
            summary=summary,
        )
        return await self._run_for_node(VIDEO, target, lambda: video.generate(prompt))

    def schedule_cover(self, story_id: uuid.UUID) -> asyncio.Task | None:
        """Schedule the story cover unless one exists or is already being drawn."""
        target = _load_cover_target(story_id)
        if target is None or target.cover_image_url is not None:
            return None
        return self._spawn(story_id, COVER, lambda: self.attach_cover(story_id))

    async def attach_cover(self, story_id: uuid.UUID, bible: BibleDraft | None = None) -> str | None:
        target = _load_cover_target(story_id)
        if target is None or target.cover_image_url is not None:
            return None
        bible = bible or _load_bible(story_id)
        if bible is None:
            logger.warning("media_bible_missing", extra={"kind": COVER, "story_id": str(story_id)})
            record_media_result(COVER, "failed")
            return None

        prompt = build_cover_prompt(bible, target.title, target.description, target.opening, target.audience)
        image = get_collaborators().image
        return await self._run(
            COVER,
            story_id,
            None,
            lambda: image.generate(prompt),
            lambda url: _write_cover_url(story_id, url),
        )

    async def drain(self, timeout: float | None = None) -> int:
        """Wait for outstanding media tasks; cancel what is left after `timeout`.

        Returns the number of tasks that had to be cancelled.
        """
        if not self._tasks:
            return 0
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("media_tasks_cancelled", extra={"count": len(pending)})
        return len(pending)


media_fanout = MediaFanout()
