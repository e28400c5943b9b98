import pytest
from pydantic import ValidationError

from susi_auth.config import Settings, get_settings, reset_settings_cache


def test_from_env_reads_declared_names(monkeypatch):
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "30")
    monkeypatch.setenv("REQUIRE_TOTP", "true")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example,")

    settings = Settings.from_env()

    assert settings.access_token_ttl_minutes == 30
    assert settings.require_totp is True
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]


def test_short_jwt_secret_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="too-short")


def test_blank_jwt_secret_means_generated(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", "   ")
    assert Settings.from_env().jwt_secret is None


def test_default_page_size_bounded_by_max():
    with pytest.raises(ValidationError):
        Settings(default_page_size=50, max_page_size=20)


def test_store_timeout_must_be_positive():
    with pytest.raises(ValidationError):
        Settings(store_timeout_seconds=0)


def test_settings_cache_reset(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first

    monkeypatch.setenv("TOTP_ISSUER", "OtherApp")
    reset_settings_cache()
    assert get_settings().totp_issuer == "OtherApp"
    reset_settings_cache()
