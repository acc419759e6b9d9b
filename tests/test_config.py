"""
test_config.py — Unit tests for config.py validation and ClipSettings
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from config import ClipSettings, Config, MAX_IMAGES_LIMIT


class TestConfigValidate:
    """Test Config.validate() method."""

    def test_validate_passes_when_all_set(self, monkeypatch):
        monkeypatch.setattr(Config, "MOWEN_API_KEY", "key-123")
        monkeypatch.setattr(Config, "MAX_IMAGES", 50)
        monkeypatch.setattr(Config, "SAFE_CONTENT_LENGTH", 19000)
        monkeypatch.setattr(Config, "RATE_LIMIT_INTERVAL", 1.1)
        assert Config.validate() == []

    def test_validate_fails_missing_api_key(self, monkeypatch):
        monkeypatch.setattr(Config, "MOWEN_API_KEY", "")
        errors = Config.validate()
        assert any("MOWEN_API_KEY" in e for e in errors)

    def test_validate_fails_image_cap_out_of_range(self, monkeypatch):
        monkeypatch.setattr(Config, "MOWEN_API_KEY", "key-123")
        monkeypatch.setattr(Config, "MAX_IMAGES", MAX_IMAGES_LIMIT + 1)
        errors = Config.validate()
        assert any("MOWEN_MAX_IMAGES" in e for e in errors)

    def test_validate_fails_non_positive_split_budget(self, monkeypatch):
        monkeypatch.setattr(Config, "MOWEN_API_KEY", "key-123")
        monkeypatch.setattr(Config, "SAFE_CONTENT_LENGTH", 0)
        errors = Config.validate()
        assert any("SAFE_CONTENT_LENGTH" in e for e in errors)

    def test_validate_multiple_errors(self, monkeypatch):
        monkeypatch.setattr(Config, "MOWEN_API_KEY", "")
        monkeypatch.setattr(Config, "MAX_IMAGES", -1)
        monkeypatch.setattr(Config, "SAFE_CONTENT_LENGTH", 19000)
        monkeypatch.setattr(Config, "RATE_LIMIT_INTERVAL", -0.5)
        errors = Config.validate()
        assert len(errors) == 3


class TestConfigSettings:
    """Test Config.settings() building the user settings object."""

    def test_settings_mirror_environment(self, monkeypatch):
        monkeypatch.setattr(Config, "MOWEN_API_KEY", "key-123")
        monkeypatch.setattr(Config, "DEFAULT_PUBLIC", True)
        monkeypatch.setattr(Config, "MAX_IMAGES", 10)
        settings = Config.settings()
        assert settings.api_key == "key-123"
        assert settings.default_public is True
        assert settings.max_images == 10

    def test_settings_clamp_image_cap(self, monkeypatch):
        monkeypatch.setattr(Config, "MAX_IMAGES", 999)
        assert Config.settings().max_images == MAX_IMAGES_LIMIT


class TestClipSettings:
    """Test ClipSettings parsing."""

    def test_defaults(self):
        settings = ClipSettings()
        assert settings.api_key == ""
        assert settings.default_public is False
        assert settings.default_include_images is True
        assert settings.max_images == 50
        assert settings.create_index_note is True
        assert settings.enable_auto_tag is False

    def test_accepts_camel_case_keys(self):
        settings = ClipSettings.model_validate({
            "apiKey": "abc",
            "defaultPublic": True,
            "defaultIncludeImages": False,
            "maxImages": 5,
            "createIndexNote": False,
            "enableAutoTag": True,
        })
        assert settings.api_key == "abc"
        assert settings.default_public is True
        assert settings.default_include_images is False
        assert settings.max_images == 5
        assert settings.create_index_note is False
        assert settings.enable_auto_tag is True

    def test_accepts_snake_case_names(self):
        settings = ClipSettings(api_key="abc", max_images=0)
        assert settings.api_key == "abc"
        assert settings.max_images == 0

    def test_ignores_unknown_keys(self):
        settings = ClipSettings.model_validate({"apiKey": "abc", "theme": "dark"})
        assert settings.api_key == "abc"

    def test_rejects_image_cap_above_limit(self):
        with pytest.raises(ValidationError):
            ClipSettings(maxImages=MAX_IMAGES_LIMIT + 1)

    def test_rejects_negative_image_cap(self):
        with pytest.raises(ValidationError):
            ClipSettings(maxImages=-1)
