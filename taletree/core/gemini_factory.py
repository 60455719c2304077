"""
Centralized Gemini client factory.

Every collaborator adapter builds its client here so credentials and
retry tuning come from one place.
"""

from __future__ import annotations

from taletree.core.exceptions import ConfigurationError
from taletree.core.settings import settings
from taletree.services.gemini import GeminiClient


class GeminiNotConfiguredError(ConfigurationError):
    """Raised when Gemini API credentials are missing."""

    def __init__(self) -> None:
        super().__init__(
            "Gemini is not configured. Set GEMINI_API_KEY or GOOGLE_CLOUD_PROJECT.",
            detail="generation backend is not configured",
        )


def gemini_configured() -> bool:
    return bool(settings.google_cloud_project or settings.gemini_api_key)


def build_gemini_client() -> GeminiClient:
    """Build a GeminiClient from application settings.

    Raises:
        GeminiNotConfiguredError: If neither API key nor GCP project is set.
    """
    if not gemini_configured():
        raise GeminiNotConfiguredError()

    return GeminiClient(
        project=settings.google_cloud_project,
        location=settings.google_cloud_location,
        api_key=settings.gemini_api_key,
        text_model=settings.gemini_text_model,
        image_model=settings.gemini_image_model,
        tts_model=settings.gemini_tts_model,
        video_model=settings.gemini_video_model,
        timeout_seconds=settings.gemini_timeout_seconds,
        max_retries=settings.gemini_max_retries,
        initial_backoff_seconds=settings.gemini_initial_backoff_seconds,
        fallback_text_model=settings.gemini_fallback_text_model,
        fallback_image_model=settings.gemini_fallback_image_model,
        circuit_breaker_threshold=settings.gemini_circuit_breaker_threshold,
        circuit_breaker_timeout=settings.gemini_circuit_breaker_timeout,
        video_poll_interval_seconds=settings.video_poll_interval_seconds,
        video_max_polls=settings.video_max_polls,
    )
