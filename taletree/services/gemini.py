import io
import logging
import time
import uuid
import wave
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, TypeVar

from google import genai
from google.genai import types

from taletree.core.metrics import track_gemini_call

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Error types
# ---------------------------------------------------------------------------


class GeminiError(Exception):
    """Base exception for Gemini-related errors."""

    def __init__(self, message: str, request_id: str | None = None, model: str | None = None):
        super().__init__(message)
        self.request_id = request_id
        self.model = model


class GeminiRateLimitError(GeminiError):
    """Raised when rate limit is exceeded."""

    pass


class GeminiQuotaError(GeminiError):
    """Raised when the project is out of quota or billing rejects the call."""

    pass


class GeminiContentFilterError(GeminiError):
    """Raised when content is blocked by safety filters."""

    def __init__(
        self,
        message: str,
        request_id: str | None = None,
        model: str | None = None,
        blocked_categories: list[str] | None = None,
    ):
        super().__init__(message, request_id, model)
        self.blocked_categories = blocked_categories or []


class GeminiTimeoutError(GeminiError):
    """Raised when request times out."""

    pass


class GeminiCircuitOpenError(GeminiError):
    """Raised when circuit breaker is open (too many failures)."""

    def __init__(self, message: str, retry_after: datetime | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class GeminiModelUnavailableError(GeminiError):
    """Raised when the model is unavailable."""

    pass


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------


@dataclass
class CircuitBreakerState:
    """Tracks circuit breaker state for a specific operation type."""

    failure_count: int = 0
    last_failure_time: datetime | None = None
    circuit_open_until: datetime | None = None
    consecutive_successes: int = 0

    failure_threshold: int = 5
    recovery_timeout_seconds: int = 60
    half_open_success_threshold: int = 2

    def record_failure(self) -> None:
        self.failure_count += 1
        self.consecutive_successes = 0
        self.last_failure_time = datetime.now(timezone.utc)

        if self.failure_count >= self.failure_threshold:
            self.circuit_open_until = datetime.now(timezone.utc) + timedelta(
                seconds=self.recovery_timeout_seconds
            )
            logger.warning(
                "Circuit breaker OPEN: %d failures, retry after %s",
                self.failure_count,
                self.circuit_open_until.isoformat(),
            )

    def record_success(self) -> None:
        self.consecutive_successes += 1

        if self.is_half_open and self.consecutive_successes >= self.half_open_success_threshold:
            recovered_after = self.consecutive_successes
            self.reset()
            logger.info("Circuit breaker CLOSED: recovered after %d successes", recovered_after)
        elif not self.is_open and not self.is_half_open:
            self.failure_count = 0

    def reset(self) -> None:
        self.failure_count = 0
        self.last_failure_time = None
        self.circuit_open_until = None
        self.consecutive_successes = 0

    @property
    def is_open(self) -> bool:
        if self.circuit_open_until is None:
            return False
        return datetime.now(timezone.utc) < self.circuit_open_until

    @property
    def is_half_open(self) -> bool:
        if self.circuit_open_until is None:
            return False
        return datetime.now(timezone.utc) >= self.circuit_open_until and self.failure_count > 0

    def check_circuit(self) -> None:
        """Raise `GeminiCircuitOpenError` while the circuit is open."""
        if self.is_open:
            raise GeminiCircuitOpenError(
                f"Circuit breaker is open due to {self.failure_count} consecutive failures. "
                f"Retry after {self.circuit_open_until.isoformat() if self.circuit_open_until else 'unknown'}",
                retry_after=self.circuit_open_until,
            )


@dataclass
class MediaPayload:
    """Media returned by an image, speech or video call.

    Exactly one of `data` and `url` is set.
    """

    mime_type: str
    data: bytes | None = None
    url: str | None = None


_DEFAULT_IMAGE_CONFIG = types.ImageConfig(aspect_ratio="9:16")
_OPERATIONS = ("generate_text", "generate_image", "generate_speech", "generate_video")
_TTS_SAMPLE_RATE = 24000
_ERROR_CLASSES: dict[str, type[GeminiError]] = {
    "quota": GeminiQuotaError,
    "rate_limit": GeminiRateLimitError,
    "content_filter": GeminiContentFilterError,
    "timeout": GeminiTimeoutError,
    "model_unavailable": GeminiModelUnavailableError,
}


def pcm_to_wav(pcm: bytes, *, sample_rate: int = _TTS_SAMPLE_RATE) -> bytes:
    """Wrap raw 16-bit mono PCM (Gemini TTS output) in a WAV container."""
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav:
        wav.setnchannels(1)
        wav.setsampwidth(2)
        wav.setframerate(sample_rate)
        wav.writeframes(pcm)
    return buffer.getvalue()


class GeminiClient:
    def __init__(
        self,
        project: str | None,
        location: str | None,
        api_key: str | None,
        text_model: str,
        image_model: str,
        tts_model: str | None = None,
        video_model: str | None = None,
        timeout_seconds: float = 60.0,
        max_retries: int = 3,
        initial_backoff_seconds: float = 0.8,
        rate_limit_backoff_seconds: list[float] | None = None,
        fallback_text_model: str | None = None,
        fallback_image_model: str | None = None,
        circuit_breaker_threshold: int = 5,
        circuit_breaker_timeout: int = 60,
        video_poll_interval_seconds: float = 5.0,
        video_max_polls: int = 60,
    ):
        if not api_key and (not project or not location):
            raise RuntimeError(
                "Either GEMINI_API_KEY or both GOOGLE_CLOUD_PROJECT and GOOGLE_CLOUD_LOCATION must be configured"
            )

        self._text_model = text_model
        self._image_model = image_model
        self._tts_model = tts_model
        self._video_model = video_model
        self._fallback_text_model = fallback_text_model
        self._fallback_image_model = fallback_image_model
        self._timeout_seconds = timeout_seconds
        self._max_retries = max_retries
        self._initial_backoff_seconds = initial_backoff_seconds
        self._rate_limit_backoff_seconds = rate_limit_backoff_seconds or [5, 10, 30, 60, 120, 300]
        self._video_poll_interval_seconds = video_poll_interval_seconds
        self._video_max_polls = video_max_polls

        self.last_request_id: str | None = None
        self.last_model: str | None = None
        self.last_usage: dict | None = None
        self.last_error_type: str | None = None

        self._circuit_breakers: dict[str, CircuitBreakerState] = {
            operation: CircuitBreakerState(
                failure_threshold=circuit_breaker_threshold,
                recovery_timeout_seconds=circuit_breaker_timeout,
            )
            for operation in _OPERATIONS
        }

        http_options = types.HttpOptions(timeout=int(timeout_seconds * 1000))
        if project and location:
            self._client = genai.Client(
                vertexai=True,
                project=project,
                location=location,
                http_options=http_options,
            )
        else:
            self._client = genai.Client(api_key=api_key, http_options=http_options)

    def _classify_error(self, exc: Exception, error_text: str) -> tuple[str, bool]:
        """Classify error type and determine if retryable.

        Returns:
            Tuple of (error_type, is_retryable)
        """
        lowered = error_text.lower()
        if "quota" in lowered or "billing" in lowered or "402" in error_text:
            return "quota", False
        if "RESOURCE_EXHAUSTED" in error_text or "429" in error_text:
            return "rate_limit", True
        if "SAFETY" in error_text.upper() or "blocked" in lowered:
            return "content_filter", False
        if "timeout" in lowered or "deadline" in lowered:
            return "timeout", True
        if "unavailable" in lowered or "503" in error_text:
            return "model_unavailable", True
        if "invalid" in lowered or "400" in error_text:
            return "invalid_request", False
        return "unknown", True

    def _check_response_safety(
        self,
        response: types.GenerateContentResponse,
        request_id: str,
        model_name: str,
    ) -> None:
        candidate = (response.candidates or [None])[0]
        if candidate is None:
            return

        finish_reason = getattr(candidate, "finish_reason", None)
        if finish_reason and "SAFETY" in str(finish_reason).upper():
            blocked_categories = []
            safety_ratings = getattr(candidate, "safety_ratings", None)
            if safety_ratings:
                for rating in safety_ratings:
                    if getattr(rating, "blocked", False):
                        category = getattr(rating, "category", "UNKNOWN")
                        blocked_categories.append(str(category))

            raise GeminiContentFilterError(
                f"Content blocked by safety filters: {blocked_categories}",
                request_id=request_id,
                model=model_name,
                blocked_categories=blocked_categories,
            )

    def _retry(
        self,
        func: Callable[[], T],
        model_name: str,
        request_type: str,
    ) -> T:
        """Execute function with retry logic, circuit breaker, and error classification."""
        circuit_breaker = self._circuit_breakers.get(request_type)
        if circuit_breaker:
            circuit_breaker.check_circuit()

        last_exc: Exception | None = None
        last_error_type: str = "unknown"
        request_id = str(uuid.uuid4())
        attempt = 0
        max_attempts = self._max_retries

        while attempt < max_attempts:
            try:
                with track_gemini_call(request_type):
                    response = func()
                self.last_request_id = getattr(response, "response_id", None) or request_id
                self.last_model = model_name
                self.last_error_type = None

                usage = getattr(response, "usage_metadata", None)
                self.last_usage = usage.model_dump() if usage else {"model": model_name}

                if isinstance(response, types.GenerateContentResponse):
                    self._check_response_safety(response, request_id, model_name)

                if circuit_breaker:
                    circuit_breaker.record_success()

                return response

            except GeminiContentFilterError:
                self.last_error_type = "content_filter"
                if circuit_breaker:
                    circuit_breaker.record_failure()
                raise

            except Exception as exc:  # noqa: BLE001
                last_exc = exc
                error_text = str(exc)
                error_type, is_retryable = self._classify_error(exc, error_text)
                last_error_type = error_type
                self.last_error_type = error_type

                if not is_retryable:
                    logger.error(
                        "gemini_call_rejected op=%s request_id=%s model=%s type=%s error=%r",
                        request_type,
                        request_id,
                        model_name,
                        error_type,
                        exc,
                    )
                    break

                if error_type == "rate_limit":
                    max_attempts = max(max_attempts, len(self._rate_limit_backoff_seconds) + 1)
                backoff = self._backoff_for(error_type, attempt)
                logger.warning(
                    "gemini_call_retry op=%s request_id=%s model=%s attempt=%s/%s type=%s backoff=%.1fs error=%r",
                    request_type,
                    request_id,
                    model_name,
                    attempt + 1,
                    max_attempts,
                    error_type,
                    backoff,
                    exc,
                )

                if attempt + 1 >= max_attempts:
                    break

                time.sleep(backoff)
                attempt += 1

        if circuit_breaker:
            circuit_breaker.record_failure()

        self.last_request_id = request_id
        self.last_model = model_name

        error_cls = _ERROR_CLASSES.get(last_error_type, GeminiError)
        raise error_cls(
            f"gemini {request_type} gave up after {attempt + 1} attempt(s) "
            f"type={last_error_type} model={model_name}: {last_exc!r}",
            request_id=request_id,
            model=model_name,
        )

    def _backoff_for(self, error_type: str, attempt: int) -> float:
        if error_type == "rate_limit":
            schedule = self._rate_limit_backoff_seconds
            return schedule[min(attempt, len(schedule) - 1)]
        return self._initial_backoff_seconds * (2**attempt)

    def _first_parts(self, response: types.GenerateContentResponse) -> list[Any]:
        candidate = (response.candidates or [None])[0]
        if candidate is None or not candidate.content or not candidate.content.parts:
            raise GeminiError("Gemini returned empty content")
        return list(candidate.content.parts)

    def _extract_text_from_response(self, response: types.GenerateContentResponse) -> str:
        texts = [part.text for part in self._first_parts(response) if part.text]
        if not texts:
            raise GeminiError("Gemini returned no textual content")
        return "\n".join(texts).strip()

    def _extract_inline_data(self, response: types.GenerateContentResponse, default_mime: str) -> tuple[bytes, str]:
        for part in self._first_parts(response):
            inline_data = part.inline_data
            if inline_data and inline_data.data:
                return inline_data.data, inline_data.mime_type or default_mime
        raise GeminiError("Gemini returned no inline media data")

    def generate_text(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_output_tokens: int | None = None,
        model: str | None = None,
        use_fallback: bool = True,
    ) -> str:
        """Generate text with optional fallback to an alternate model.

        Raises:
            GeminiError: On failure (with specific subclass for error type)
        """
        model_name = model or self._text_model
        config = types.GenerateContentConfig(
            system_instruction=system_prompt,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
        )

        def call(target_model: str) -> str:
            response = self._retry(
                func=lambda: self._client.models.generate_content(
                    model=target_model,
                    contents=[prompt],
                    config=config,
                ),
                model_name=target_model,
                request_type="generate_text",
            )
            return self._extract_text_from_response(response)

        try:
            return call(model_name)
        except (GeminiModelUnavailableError, GeminiRateLimitError, GeminiTimeoutError) as exc:
            fallback = self._fallback_text_model
            if use_fallback and fallback and fallback != model_name:
                logger.warning(
                    "Primary model %s failed, trying fallback %s: %s",
                    model_name,
                    fallback,
                    exc,
                )
                return call(fallback)
            raise

    def generate_image(
        self,
        prompt: str,
        model: str | None = None,
        use_fallback: bool = True,
    ) -> MediaPayload:
        """Generate a single illustration.

        Raises:
            GeminiError: On failure (with specific subclass for error type)
        """
        model_name = model or self._image_model
        config = types.GenerateContentConfig(image_config=_DEFAULT_IMAGE_CONFIG)

        def call(target_model: str) -> MediaPayload:
            response = self._retry(
                func=lambda: self._client.models.generate_content(
                    model=target_model,
                    contents=[prompt],
                    config=config,
                ),
                model_name=target_model,
                request_type="generate_image",
            )
            data, mime_type = self._extract_inline_data(response, "image/png")
            return MediaPayload(mime_type=mime_type, data=data)

        try:
            return call(model_name)
        except (GeminiModelUnavailableError, GeminiRateLimitError, GeminiTimeoutError) as exc:
            fallback = self._fallback_image_model
            if use_fallback and fallback and fallback != model_name:
                logger.warning(
                    "Primary image model %s failed, trying fallback %s: %s",
                    model_name,
                    fallback,
                    exc,
                )
                return call(fallback)
            raise

    def generate_speech(self, text: str, *, voice: str, style_hint: str | None = None) -> MediaPayload:
        """Narrate `text` with a prebuilt voice and return a WAV payload."""
        if not self._tts_model:
            raise GeminiError("Gemini TTS model is not configured")
        model_name = self._tts_model
        spoken = f"{style_hint}: {text}" if style_hint else text
        config = types.GenerateContentConfig(
            response_modalities=["AUDIO"],
            speech_config=types.SpeechConfig(
                voice_config=types.VoiceConfig(
                    prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=voice),
                )
            ),
        )
        response = self._retry(
            func=lambda: self._client.models.generate_content(
                model=model_name,
                contents=[spoken],
                config=config,
            ),
            model_name=model_name,
            request_type="generate_speech",
        )
        pcm, mime_type = self._extract_inline_data(response, "audio/L16")
        if mime_type.startswith("audio/L16") or "pcm" in mime_type:
            return MediaPayload(mime_type="audio/wav", data=pcm_to_wav(pcm))
        return MediaPayload(mime_type=mime_type, data=pcm)

    def generate_video(self, prompt: str, *, duration_seconds: int = 8) -> MediaPayload:
        """Start a video generation and poll the long-running operation until it finishes."""
        if not self._video_model:
            raise GeminiError("Gemini video model is not configured")
        model_name = self._video_model

        operation = self._retry(
            func=lambda: self._client.models.generate_videos(
                model=model_name,
                prompt=prompt,
                config=types.GenerateVideosConfig(
                    number_of_videos=1,
                    aspect_ratio="9:16",
                    duration_seconds=duration_seconds,
                ),
            ),
            model_name=model_name,
            request_type="generate_video",
        )

        polls = 0
        while not operation.done:
            if polls >= self._video_max_polls:
                raise GeminiTimeoutError(
                    f"Video generation did not finish after {polls} polls",
                    model=model_name,
                )
            time.sleep(self._video_poll_interval_seconds)
            operation = self._client.operations.get(operation)
            polls += 1

        if operation.error:
            error_text = str(operation.error)
            error_type, _ = self._classify_error(RuntimeError(error_text), error_text)
            if error_type == "quota":
                raise GeminiQuotaError(f"Video generation rejected: {error_text}", model=model_name)
            raise GeminiError(f"Video generation failed: {error_text}", model=model_name)

        result = operation.response or getattr(operation, "result", None)
        videos = getattr(result, "generated_videos", None) or []
        if not videos or videos[0].video is None:
            raise GeminiError("Gemini returned no video", model=model_name)
        video = videos[0].video
        mime_type = video.mime_type or "video/mp4"
        if video.video_bytes:
            return MediaPayload(mime_type=mime_type, data=video.video_bytes)
        if video.uri:
            return MediaPayload(mime_type=mime_type, url=video.uri)
        raise GeminiError("Gemini returned a video without bytes or uri", model=model_name)
