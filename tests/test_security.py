"""Tests for API key checks, sender validation, rate limiting and settings."""

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from fee_reconciliation.api import app
from fee_reconciliation.auth import (
    DomainSenderValidator,
    check_api_key,
    limiter,
    verify_api_key,
)
from fee_reconciliation.config import Settings, get_settings


class TestAPIKeyAuthentication:
    """Tests for the shared API key."""

    def test_valid_key(self, mock_api_key):
        """The configured key is accepted."""
        assert check_api_key(mock_api_key) == mock_api_key

    def test_invalid_key(self):
        """A wrong key is rejected with 401."""
        with pytest.raises(HTTPException) as exc_info:
            check_api_key("wrong_key")
        assert exc_info.value.status_code == 401
        assert exc_info.value.detail == "Invalid API key"

    def test_missing_key(self):
        """No key at all is rejected with 401."""
        with pytest.raises(HTTPException) as exc_info:
            check_api_key(None)
        assert exc_info.value.status_code == 401

    def test_unconfigured_server(self, monkeypatch):
        """Without API_KEY the server refuses every request."""
        monkeypatch.delenv("API_KEY", raising=False)
        get_settings.cache_clear()

        with pytest.raises(HTTPException) as exc_info:
            check_api_key("anything")
        assert exc_info.value.status_code == 500

    async def test_bearer_credentials(self, mock_api_key):
        """verify_api_key reads the bearer token."""
        credentials = HTTPAuthorizationCredentials(scheme="Bearer", credentials=mock_api_key)
        assert await verify_api_key(credentials) == mock_api_key


class TestSenderValidation:
    """Tests for the sender-domain allow-list."""

    def test_default_domains(self):
        validator = DomainSenderValidator()
        assert validator.is_trusted_sender("alerts@standardbank.co.za")
        assert validator.is_trusted_sender("Notifications <ib@SBSA.co.za>")
        assert validator.is_trusted_sender("no-reply@standard-bank.example")

    def test_untrusted(self):
        validator = DomainSenderValidator()
        assert not validator.is_trusted_sender("alerts@phish.example")

    def test_blank(self):
        validator = DomainSenderValidator()
        assert not validator.is_trusted_sender(None)
        assert not validator.is_trusted_sender("   ")

    def test_custom_domains(self):
        validator = DomainSenderValidator(["mybank.test", " "])
        assert validator.trusted_domains == ["mybank.test"]
        assert validator.is_trusted_sender("alerts@mybank.test")
        assert not validator.is_trusted_sender("alerts@standardbank.co.za")

    def test_domains_from_environment(self, monkeypatch):
        monkeypatch.setenv("TRUSTED_SENDER_DOMAINS", "Bank-A.test, bank-b.test")
        get_settings.cache_clear()

        validator = DomainSenderValidator()
        assert validator.is_trusted_sender("x@bank-a.test")
        assert not validator.is_trusted_sender("x@standardbank.co.za")


class TestRateLimiting:
    """Tests for rate limiting configuration."""

    def test_limiter_is_configured(self):
        assert app.state.limiter is limiter

    def test_webhook_limit_setting(self, monkeypatch):
        monkeypatch.setenv("WEBHOOK_RATE_LIMIT", "5/second")
        get_settings.cache_clear()
        assert get_settings().webhook_rate_limit == "5/second"


class TestSettings:
    """Tests for reading settings from the environment."""

    def test_defaults(self, monkeypatch):
        for name in ("DATABASE_URL", "NOTIFICATION_WORKERS", "STATEMENT_CONTENT_DEDUP", "LOG_LEVEL"):
            monkeypatch.delenv(name, raising=False)

        settings = Settings.from_env()

        assert settings.database_url == "sqlite+aiosqlite:///./fee_reconciliation.db"
        assert settings.notification_workers == 4
        assert settings.statement_content_dedup is True
        assert settings.log_level == "INFO"

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("NOTIFICATION_WORKERS", "8")
        monkeypatch.setenv("NOTIFICATION_QUEUE_SIZE", "100")
        monkeypatch.setenv("STATEMENT_CONTENT_DEDUP", "false")
        monkeypatch.setenv("LOG_LEVEL", "debug")

        settings = Settings.from_env()

        assert settings.notification_workers == 8
        assert settings.notification_queue_size == 100
        assert settings.statement_content_dedup is False
        assert settings.log_level == "DEBUG"

    def test_invalid_worker_count(self, monkeypatch):
        monkeypatch.setenv("NOTIFICATION_WORKERS", "0")
        with pytest.raises(ValueError):
            Settings.from_env()

    def test_cached(self):
        assert get_settings() is get_settings()
