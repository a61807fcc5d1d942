import logging
from types import SimpleNamespace

import pytest

from promptforge.core.config import validate_config
from promptforge.core.validation import EnvValidationError, validate_env


def make_settings(**overrides):
    base = {
        "ENV": "production",
        "SUPABASE_URL": "https://project.supabase.co",
        "SUPABASE_SERVICE_ROLE_KEY": "service-role",
        "SUPABASE_JWT_SECRET": "jwt-secret",
        "STRIPE_SECRET_KEY": "sk_live_123",
        "STRIPE_WEBHOOK_SECRET": "whsec_123",
        "ADMIN_KEY": "admin",
        "TELEGRAM_ENABLED": False,
        "TELEGRAM_BOT_TOKEN": None,
        "CONFIG_STRICT": False,
    }
    base.update(overrides)
    return SimpleNamespace(**base)


@pytest.fixture(autouse=True)
def enforce_validation(monkeypatch):
    monkeypatch.delenv("SKIP_ENV_VALIDATION", raising=False)


def test_production_settings_pass():
    assert validate_env(settings_obj=make_settings()) is True


def test_production_requires_secrets():
    with pytest.raises(EnvValidationError, match="STRIPE_WEBHOOK_SECRET is required in production"):
        validate_env(settings_obj=make_settings(STRIPE_WEBHOOK_SECRET=None))


def test_production_requires_https_backend():
    with pytest.raises(EnvValidationError, match="https"):
        validate_env(settings_obj=make_settings(SUPABASE_URL="http://project.supabase.co"))


def test_production_rejects_test_stripe_key():
    with pytest.raises(EnvValidationError, match="live key"):
        validate_env(settings_obj=make_settings(STRIPE_SECRET_KEY="sk_test_123"))


def test_malformed_backend_url_rejected_everywhere():
    with pytest.raises(EnvValidationError, match="valid URL"):
        validate_env(settings_obj=make_settings(ENV="development", SUPABASE_URL="not-a-url"))


def test_development_allows_missing_secrets():
    settings = make_settings(ENV="development", SUPABASE_URL=None, STRIPE_SECRET_KEY=None, ADMIN_KEY=None)
    assert validate_env(settings_obj=settings) is True


def test_telegram_needs_token():
    with pytest.raises(EnvValidationError, match="TELEGRAM_BOT_TOKEN"):
        validate_env(settings_obj=make_settings(ENV="development", TELEGRAM_ENABLED=True))


def test_skip_flag(monkeypatch):
    monkeypatch.setenv("SKIP_ENV_VALIDATION", "1")
    assert validate_env(settings_obj=make_settings(STRIPE_SECRET_KEY=None)) is True


def test_validate_config_warns_when_not_strict(caplog):
    logger = logging.getLogger("promptforge.tests.config")
    with caplog.at_level(logging.WARNING, logger="promptforge.tests.config"):
        assert validate_config(strict=False, settings_obj=make_settings(ADMIN_KEY=None), logger=logger) is True
    assert "ADMIN_KEY" in caplog.text


def test_validate_config_strict_raises():
    with pytest.raises(RuntimeError, match="SUPABASE_JWT_SECRET"):
        validate_config(strict=True, settings_obj=make_settings(SUPABASE_JWT_SECRET=None))


def test_all_problems_reported_together():
    with pytest.raises(EnvValidationError) as excinfo:
        validate_env(settings_obj=make_settings(ADMIN_KEY=None, STRIPE_SECRET_KEY="sk_test_1", SLACK_WEBHOOK_URL="http://hooks"))

    problems = excinfo.value.problems
    assert "ADMIN_KEY is required in production" in problems
    assert "STRIPE_SECRET_KEY must be a live key in production" in problems
    assert "SLACK_WEBHOOK_URL must be an https URL" in problems
