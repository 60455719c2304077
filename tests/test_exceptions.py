"""Tests for application-level exception types."""

import pytest

from taletree.core.exceptions import (
    AppError,
    BibleAlreadyExistsError,
    ConfigurationError,
    EntityNotFoundError,
    GenerationError,
    InsufficientChoicesError,
    InvalidBibleError,
    MediaFailure,
    ModerationRejectedError,
    NodeAlreadyFilledError,
    NodeBusyError,
    NodeNotFoundError,
    ParseError,
)
from taletree.core.gemini_factory import GeminiNotConfiguredError


class TestAppError:
    def test_message_and_detail(self):
        err = AppError("something broke", detail="user-friendly msg")
        assert str(err) == "something broke"
        assert err.detail == "user-friendly msg"

    def test_detail_defaults_to_message(self):
        err = AppError("fallback message")
        assert err.detail == "fallback message"


class TestGenerationErrors:
    @pytest.mark.parametrize(
        "exc_class",
        [ParseError, InsufficientChoicesError, ModerationRejectedError, InvalidBibleError],
    )
    def test_recoverable_per_node(self, exc_class):
        assert issubclass(exc_class, GenerationError)

    @pytest.mark.parametrize(
        "exc_class",
        [NodeAlreadyFilledError, NodeBusyError, BibleAlreadyExistsError, MediaFailure, ConfigurationError],
    )
    def test_not_generation_errors(self, exc_class):
        assert issubclass(exc_class, AppError)
        assert not issubclass(exc_class, GenerationError)

    def test_insufficient_choices_keeps_count(self):
        err = InsufficientChoicesError(1)
        assert err.choice_count == 1
        assert err.detail == "insufficient choices"


class TestEntityNotFoundError:
    def test_includes_entity_type_and_id(self):
        err = EntityNotFoundError("story", "abc-123")
        assert "story" in str(err)
        assert "abc-123" in str(err)
        assert err.entity_type == "story"
        assert err.entity_id == "abc-123"

    def test_detail_is_user_friendly(self):
        assert EntityNotFoundError("story", 42).detail == "story not found"

    def test_node_not_found(self):
        err = NodeNotFoundError("n-1")
        assert isinstance(err, EntityNotFoundError)
        assert err.detail == "story node not found"


def test_node_busy_detail_is_reason():
    err = NodeBusyError("n-1", "story is still expanding")
    assert err.detail == "story is still expanding"
    assert "n-1" in str(err)


def test_gemini_not_configured_is_configuration_error():
    err = GeminiNotConfiguredError()
    assert isinstance(err, ConfigurationError)
    assert "GEMINI_API_KEY" in str(err)
    assert "GOOGLE_CLOUD_PROJECT" in str(err)
