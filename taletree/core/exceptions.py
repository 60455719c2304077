"""
Application-level exception types.

Generation failures recovered per node derive from `GenerationError`;
everything else propagates to the caller.
"""

from __future__ import annotations


class AppError(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        self.detail = detail or message
        super().__init__(message)


class GenerationError(AppError):
    """Raised when a collaborator call fails or returns unusable content."""


class ParseError(GenerationError):
    """Raised when no JSON object can be extracted from model output."""


class InsufficientChoicesError(GenerationError):
    """Raised when a non-ending chapter carries fewer than two choices."""

    def __init__(self, choice_count: int) -> None:
        super().__init__(
            f"non-ending chapter returned {choice_count} choice(s); at least 2 are required",
            detail="insufficient choices",
        )
        self.choice_count = choice_count


class ModerationRejectedError(GenerationError):
    """Raised when every attempt for a node was vetoed by moderation."""


class InvalidBibleError(GenerationError):
    """Raised when a generated bible lacks characters or a style prefix."""


class MediaFailure(AppError):
    """Raised inside media fan-out; never propagates past it."""


class ConfigurationError(AppError):
    """Raised when required configuration is missing or invalid."""


class EntityNotFoundError(AppError):
    """Raised when a database entity cannot be found."""

    def __init__(self, entity_type: str, entity_id: object) -> None:
        super().__init__(
            f"{entity_type} not found: {entity_id}",
            detail=f"{entity_type} not found",
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


class NodeNotFoundError(EntityNotFoundError):
    def __init__(self, node_id: object) -> None:
        super().__init__("story node", node_id)


class NodeAlreadyFilledError(AppError):
    """Raised when filling a node whose placeholder flag is already cleared."""

    def __init__(self, node_id: object) -> None:
        super().__init__(f"story node already filled: {node_id}", detail="story node already filled")
        self.node_id = node_id


class NodeBusyError(AppError):
    """Raised when a node cannot be generated on demand right now."""

    def __init__(self, node_id: object, reason: str) -> None:
        super().__init__(f"story node {node_id} is busy: {reason}", detail=reason)
        self.node_id = node_id
        self.reason = reason


class BibleAlreadyExistsError(AppError):
    """Raised on a second bible write for the same story."""

    def __init__(self, story_id: object) -> None:
        super().__init__(f"bible already exists for story {story_id}", detail="bible already exists")
        self.story_id = story_id
