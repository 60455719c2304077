import contextvars
from contextlib import contextmanager
import uuid

request_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("request_id", default=None)
story_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("story_id", default=None)
node_key_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("node_key", default=None)


def set_request_id(request_id: str) -> contextvars.Token:
    """Store the current request ID in a context variable."""
    return request_id_var.set(request_id)


def reset_request_id(token: contextvars.Token) -> None:
    request_id_var.reset(token)


def get_request_id() -> str | None:
    return request_id_var.get()


def get_story_id() -> str | None:
    return story_id_var.get()


def get_node_key() -> str | None:
    return node_key_var.get()


def _normalize_id(value: uuid.UUID | str | None) -> str | None:
    if value is None:
        return None
    return str(value)


@contextmanager
def log_context(
    story_id: uuid.UUID | str | None = None,
    node_key: str | None = None,
):
    """Temporarily scope story/node context for structured logs."""
    tokens: list[tuple[contextvars.ContextVar[str | None], contextvars.Token]] = []
    if story_id is not None:
        tokens.append((story_id_var, story_id_var.set(_normalize_id(story_id))))
    if node_key is not None:
        tokens.append((node_key_var, node_key_var.set(node_key)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)
