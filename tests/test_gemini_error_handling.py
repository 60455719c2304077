"""Tests for Gemini client error handling and graceful degradation."""

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

from taletree.core.exceptions import GenerationError
from taletree.pipeline.runtime import APPROPRIATE, INAPPROPRIATE, GeminiModerator, GeminiTextGenerator
from taletree.services.gemini import (
    CircuitBreakerState,
    GeminiClient,
    GeminiCircuitOpenError,
    GeminiContentFilterError,
    GeminiError,
    GeminiModelUnavailableError,
    GeminiQuotaError,
    pcm_to_wav,
)


def _client(**overrides):
    options = {
        "project": None,
        "location": None,
        "api_key": "test-key",
        "text_model": "test-model",
        "image_model": "test-image-model",
        "tts_model": "test-tts-model",
        "initial_backoff_seconds": 0,
    }
    options.update(overrides)
    with patch("taletree.services.gemini.genai"):
        return GeminiClient(**options)


class TestCircuitBreakerState:
    """Tests for CircuitBreakerState."""

    def test_initial_state_is_closed(self):
        cb = CircuitBreakerState()
        assert not cb.is_open
        assert not cb.is_half_open
        assert cb.failure_count == 0

    def test_opens_after_threshold_failures(self):
        cb = CircuitBreakerState(failure_threshold=3)

        cb.record_failure()
        cb.record_failure()
        assert not cb.is_open
        cb.record_failure()
        assert cb.is_open

    def test_half_open_after_timeout(self):
        cb = CircuitBreakerState(failure_threshold=2, recovery_timeout_seconds=1)
        cb.record_failure()
        cb.record_failure()
        assert cb.is_open

        # Simulate time passing
        cb.circuit_open_until = datetime.now(timezone.utc) - timedelta(seconds=1)
        assert not cb.is_open
        assert cb.is_half_open

    def test_closes_after_successes_in_half_open(self):
        cb = CircuitBreakerState(
            failure_threshold=2,
            recovery_timeout_seconds=1,
            half_open_success_threshold=2,
        )
        cb.record_failure()
        cb.record_failure()
        cb.circuit_open_until = datetime.now(timezone.utc) - timedelta(seconds=1)

        cb.record_success()
        assert cb.is_half_open
        cb.record_success()
        assert not cb.is_half_open
        assert cb.failure_count == 0

    def test_check_circuit_raises_when_open(self):
        cb = CircuitBreakerState(failure_threshold=1)
        cb.record_failure()

        with pytest.raises(GeminiCircuitOpenError) as exc_info:
            cb.check_circuit()

        assert "Circuit breaker is open" in str(exc_info.value)
        assert exc_info.value.retry_after is not None


class TestGeminiClientErrorClassification:
    """Tests for error classification in GeminiClient."""

    @pytest.fixture
    def client(self):
        return _client()

    @pytest.mark.parametrize(
        "error_text, expected",
        [
            ("RESOURCE_EXHAUSTED", ("rate_limit", True)),
            ("429 Too Many Requests", ("rate_limit", True)),
            ("RESOURCE_EXHAUSTED: quota exceeded for project", ("quota", False)),
            ("402 Payment Required", ("quota", False)),
            ("billing account is disabled", ("quota", False)),
            ("Content blocked by SAFETY filter", ("content_filter", False)),
            ("Request timeout after 60s", ("timeout", True)),
            ("503 Service Unavailable", ("model_unavailable", True)),
            ("400 Invalid request: malformed prompt", ("invalid_request", False)),
            ("connection reset by peer", ("unknown", True)),
        ],
    )
    def test_classification(self, client, error_text, expected):
        assert client._classify_error(Exception(error_text), error_text) == expected


class TestGeminiClientRetry:
    def test_quota_errors_are_not_retried(self):
        client = _client(max_retries=3)
        func = MagicMock(side_effect=Exception("billing account is disabled"))

        with pytest.raises(GeminiQuotaError):
            client._retry(func, model_name="test-image-model", request_type="generate_image")

        assert func.call_count == 1
        assert client.last_error_type == "quota"

    def test_retryable_errors_exhaust_attempts(self):
        client = _client(max_retries=2)
        func = MagicMock(side_effect=Exception("503 Service Unavailable"))

        with pytest.raises(GeminiModelUnavailableError):
            client._retry(func, model_name="test-model", request_type="generate_text")

        assert func.call_count == 2

    def test_open_circuit_short_circuits(self):
        client = _client(circuit_breaker_threshold=1)
        client._circuit_breakers["generate_text"].record_failure()
        func = MagicMock()

        with pytest.raises(GeminiCircuitOpenError):
            client._retry(func, model_name="test-model", request_type="generate_text")
        func.assert_not_called()

    def test_text_falls_back_to_alternate_model(self, monkeypatch):
        client = _client(max_retries=1, fallback_text_model="fallback-model")
        calls = []

        def generate_content(model, contents, config):
            calls.append(model)
            if model == "test-model":
                raise Exception("503 Service Unavailable")
            return MagicMock()

        client._client.models.generate_content.side_effect = generate_content
        monkeypatch.setattr(client, "_extract_text_from_response", lambda response: "fallback text")

        assert client.generate_text("prompt") == "fallback text"
        assert calls == ["test-model", "fallback-model"]

    def test_content_filter_is_not_retried_on_fallback(self):
        client = _client(max_retries=1, fallback_text_model="fallback-model")
        client._client.models.generate_content.side_effect = Exception("Content blocked by SAFETY filter")

        with pytest.raises(GeminiContentFilterError):
            client.generate_text("prompt")
        assert client._client.models.generate_content.call_count == 1


class TestGeminiClientCircuitBreaker:
    def test_every_operation_has_a_breaker(self):
        client = _client()
        assert set(client._circuit_breakers) == {"generate_text", "generate_image", "generate_speech", "generate_video"}

    def test_breakers_are_isolated_per_operation(self):
        client = _client(circuit_breaker_threshold=1)
        client._circuit_breakers["generate_text"].record_failure()
        func = MagicMock(return_value="ok")

        assert client._retry(func, model_name="test-image-model", request_type="generate_image") == "ok"
        with pytest.raises(GeminiCircuitOpenError):
            client._retry(func, model_name="test-model", request_type="generate_text")
        assert func.call_count == 1


def test_speech_requires_tts_model():
    client = _client(tts_model=None)
    with pytest.raises(GeminiError):
        client.generate_speech("hello", voice="Puck")


def test_pcm_is_wrapped_in_wav():
    wav = pcm_to_wav(b"\x00\x00" * 10)
    assert wav[:4] == b"RIFF"
    assert wav[8:12] == b"WAVE"


class TestAdapters:
    @pytest.mark.anyio
    async def test_text_errors_become_generation_errors(self):
        client = MagicMock()
        client.generate_text.side_effect = GeminiModelUnavailableError("Model test-model is unavailable")

        with pytest.raises(GenerationError):
            await GeminiTextGenerator(client).complete("system", "user", temperature=0.8, max_tokens=100)

    @pytest.mark.anyio
    @pytest.mark.parametrize("answer, verdict", [("YES", APPROPRIATE), (" yes.", APPROPRIATE), ("NO", INAPPROPRIATE)])
    async def test_moderator_verdicts(self, answer, verdict):
        client = MagicMock()
        client.generate_text.return_value = answer

        result = await GeminiModerator(client, "mod-model").classify("A bunny hops.", age_range="5-10")

        assert result == verdict
        assert client.generate_text.call_args.kwargs["use_fallback"] is False
