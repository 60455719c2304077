"""Tests for the centralized Gemini client factory."""

import pytest
from unittest.mock import patch

from taletree.core import settings as settings_module
from taletree.core.gemini_factory import (
    GeminiNotConfiguredError,
    build_gemini_client,
    gemini_configured,
)
from taletree.pipeline.runtime import build_gemini_collaborators


@pytest.fixture(autouse=True)
def _no_network():
    with patch("taletree.services.gemini.genai"):
        yield


class TestBuildGeminiClient:
    def test_raises_when_no_credentials(self, monkeypatch):
        monkeypatch.setattr(settings_module.settings, "google_cloud_project", None)
        monkeypatch.setattr(settings_module.settings, "gemini_api_key", None)

        assert not gemini_configured()
        with pytest.raises(GeminiNotConfiguredError):
            build_gemini_client()

    def test_builds_client_with_api_key(self, monkeypatch):
        monkeypatch.setattr(settings_module.settings, "google_cloud_project", None)
        monkeypatch.setattr(settings_module.settings, "gemini_api_key", "test-key")
        monkeypatch.setattr(settings_module.settings, "gemini_text_model", "gemini-2.5-flash")
        monkeypatch.setattr(settings_module.settings, "gemini_tts_model", "tts-model")

        client = build_gemini_client()
        assert client._text_model == "gemini-2.5-flash"
        assert client._tts_model == "tts-model"

    def test_builds_client_with_gcp_project(self, monkeypatch):
        monkeypatch.setattr(settings_module.settings, "google_cloud_project", "test-project")
        monkeypatch.setattr(settings_module.settings, "gemini_api_key", None)
        monkeypatch.setattr(settings_module.settings, "google_cloud_location", "us-central1")

        assert build_gemini_client() is not None

    def test_passes_fallback_models(self, monkeypatch):
        monkeypatch.setattr(settings_module.settings, "google_cloud_project", None)
        monkeypatch.setattr(settings_module.settings, "gemini_api_key", "test-key")
        monkeypatch.setattr(settings_module.settings, "gemini_fallback_text_model", "gemini-2.0-flash")
        monkeypatch.setattr(settings_module.settings, "gemini_fallback_image_model", None)

        client = build_gemini_client()
        assert client._fallback_text_model == "gemini-2.0-flash"
        assert client._fallback_image_model is None


class TestCollaborators:
    def test_video_collaborator_follows_setting(self, monkeypatch):
        monkeypatch.setattr(settings_module.settings, "gemini_api_key", "test-key")
        monkeypatch.setattr(settings_module.settings, "video_enabled", False)
        assert build_gemini_collaborators().video is None

        monkeypatch.setattr(settings_module.settings, "video_enabled", True)
        assert build_gemini_collaborators().video is not None

    def test_media_store_uses_settings(self, monkeypatch, tmp_path):
        monkeypatch.setattr(settings_module.settings, "gemini_api_key", "test-key")
        monkeypatch.setattr(settings_module.settings, "media_url_prefix", "/files")

        store = build_gemini_collaborators().media_store
        assert store.url_prefix == "/files"
