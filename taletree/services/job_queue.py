"""
Story expansion queue.

`GenerationQueueEntry` rows are the durable trigger: at most one active
(pending or in-progress) entry exists per story. The in-process worker pool
below consumes story ids; `recover_pending()` re-delivers active entries after
a restart.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from taletree.core.exceptions import EntityNotFoundError
from taletree.core.request_context import log_context
from taletree.core.settings import settings
from taletree.db.models import ACTIVE_QUEUE_STATUSES, GenerationQueueEntry, QueueStatus, Story
from taletree.db.session import session_scope
from taletree.pipeline.progress import planned_node_total, refresh_progress

logger = logging.getLogger(__name__)

StoryHandler = Callable[[uuid.UUID], Awaitable[None]]

_queue: asyncio.Queue[uuid.UUID] | None = None
_workers: list[asyncio.Task] = []
_handler: StoryHandler | None = None
_accepting = False
_queued: set[uuid.UUID] = set()
_active: set[uuid.UUID] = set()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Durable entries
# ---------------------------------------------------------------------------


def get_active_entry(db: Session, story_id: uuid.UUID) -> GenerationQueueEntry | None:
    stmt = select(GenerationQueueEntry).where(
        GenerationQueueEntry.story_id == story_id,
        GenerationQueueEntry.status.in_(ACTIVE_QUEUE_STATUSES),
    )
    return db.execute(stmt).scalars().first()


def enqueue_story_expansion(
    db: Session,
    story_id: uuid.UUID,
    *,
    user_id: str | None = None,
    priority: int = 0,
) -> tuple[GenerationQueueEntry, bool]:
    """Create the queue entry that triggers background expansion.

    Returns the entry and whether it was newly created; an already-active
    entry is returned unchanged.
    """
    existing = get_active_entry(db, story_id)
    if existing is not None:
        return existing, False

    story = db.get(Story, story_id)
    if story is None:
        raise EntityNotFoundError("story", story_id)

    story.total_nodes_planned = planned_node_total(
        settings.expansion_max_depth,
        settings.expansion_branching_factor,
    )
    refresh_progress(story)

    entry = GenerationQueueEntry(
        story_id=story_id,
        user_id=user_id,
        status=QueueStatus.PENDING.value,
        priority=priority,
        attempts=0,
    )
    db.add(entry)
    db.flush()
    logger.info(
        "expansion_enqueued",
        extra={"story_id": str(story_id), "entry_id": str(entry.entry_id), "total_planned": story.total_nodes_planned},
    )
    return entry, True


def begin_entry(db: Session, story_id: uuid.UUID) -> GenerationQueueEntry | None:
    entry = get_active_entry(db, story_id)
    if entry is None:
        return None
    entry.status = QueueStatus.IN_PROGRESS.value
    entry.attempts += 1
    entry.started_at = _utcnow()
    db.flush()
    return entry


def finish_entry(db: Session, story_id: uuid.UUID, status: QueueStatus, *, error: str | None = None) -> None:
    entry = get_active_entry(db, story_id)
    if entry is None:
        return
    entry.status = status.value
    entry.last_error = error
    entry.finished_at = _utcnow()
    db.flush()


# ---------------------------------------------------------------------------
# Worker pool
# ---------------------------------------------------------------------------


def is_running() -> bool:
    return _queue is not None and _accepting


def is_story_active(story_id: uuid.UUID) -> bool:
    return story_id in _active or story_id in _queued


def submit(story_id: uuid.UUID) -> bool:
    """Hand a story to the worker pool. Must be called on the event loop.

    Returns False when the pool is stopped, full, or already holds the story;
    the durable entry stays active and is picked up by `recover_pending()`.
    """
    if _queue is None or not _accepting:
        logger.warning("expansion_submit_rejected", extra={"story_id": str(story_id), "reason": "not_running"})
        return False
    if is_story_active(story_id):
        return False
    try:
        _queue.put_nowait(story_id)
    except asyncio.QueueFull:
        logger.warning("expansion_submit_rejected", extra={"story_id": str(story_id), "reason": "queue_full"})
        return False
    _queued.add(story_id)
    return True


async def _worker_loop(index: int) -> None:
    assert _queue is not None
    while True:
        story_id = await _queue.get()
        _queued.discard(story_id)
        if story_id in _active or _handler is None:
            _queue.task_done()
            continue

        _active.add(story_id)
        try:
            with log_context(story_id=story_id):
                await _handler(story_id)
        except Exception:  # noqa: BLE001
            logger.exception("story_expansion_crashed", extra={"worker": index})
        finally:
            _active.discard(story_id)
            _queue.task_done()


async def start_worker(
    handler: StoryHandler,
    *,
    concurrency: int | None = None,
    maxsize: int | None = None,
) -> None:
    global _queue, _handler, _accepting
    if _queue is not None:
        return
    _handler = handler
    _queue = asyncio.Queue(maxsize=maxsize or settings.worker_queue_maxsize)
    _accepting = True
    for index in range(concurrency or settings.worker_concurrency):
        _workers.append(asyncio.create_task(_worker_loop(index), name=f"expansion-worker-{index}"))
    logger.info("expansion_workers_started", extra={"workers": len(_workers)})


async def stop_worker(grace_seconds: float | None = None) -> None:
    """Stop accepting, let queued stories drain for a grace period, then cancel."""
    global _queue, _handler, _accepting
    if _queue is None:
        return
    _accepting = False
    grace = settings.shutdown_grace_seconds if grace_seconds is None else grace_seconds
    try:
        await asyncio.wait_for(_queue.join(), timeout=grace)
    except asyncio.TimeoutError:
        logger.warning("expansion_shutdown_timeout", extra={"unfinished": sorted(str(s) for s in _active | _queued)})

    for task in _workers:
        task.cancel()
    await asyncio.gather(*_workers, return_exceptions=True)
    _workers.clear()
    _queued.clear()
    _active.clear()
    _queue = None
    _handler = None


def recover_pending() -> int:
    """Re-submit stories whose entries were left active by a previous process."""
    with session_scope() as db:
        stmt = (
            select(GenerationQueueEntry.story_id)
            .where(GenerationQueueEntry.status.in_(ACTIVE_QUEUE_STATUSES))
            .order_by(GenerationQueueEntry.priority.desc(), GenerationQueueEntry.created_at.asc())
        )
        story_ids = list(db.execute(stmt).scalars().all())

    submitted = sum(1 for story_id in story_ids if submit(story_id))
    if story_ids:
        logger.info("expansion_recovered", extra={"found": len(story_ids), "submitted": submitted})
    return submitted
