"""Tests for startup configuration validation."""

from types import SimpleNamespace
from unittest.mock import patch

import pytest

from shared.startup_validator import StartupValidationError, validate_startup_config

MODULE = "shared.startup_validator"


def _settings(**overrides):
    values = {
        "JWT_SECRET": "x" * 64,
        "EVOLUTION_API_KEY": "evo-key",
        "GOOGLE_CLIENT_ID": "client-id",
        "GOOGLE_CLIENT_SECRET": "client-secret",
        "DATABASE_URL": "postgresql+asyncpg://agenda:agenda@db/agenda",
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def test_complete_configuration_passes():
    with patch(f"{MODULE}.get_settings", return_value=_settings()):
        results = validate_startup_config()

    assert all(results.values())


def test_placeholder_jwt_secret_blocks_startup():
    with patch(f"{MODULE}.get_settings", return_value=_settings(JWT_SECRET="change-this-jwt-secret")):
        with pytest.raises(StartupValidationError, match="JWT_SECRET"):
            validate_startup_config()


def test_missing_integrations_only_warn():
    settings = _settings(EVOLUTION_API_KEY="placeholder", GOOGLE_CLIENT_ID="placeholder")

    with patch(f"{MODULE}.get_settings", return_value=settings):
        results = validate_startup_config()

    assert results["jwt_secret"] is True
    assert results["evolution_api_key"] is False
    assert results["google_oauth_client"] is False


def test_sync_driver_flagged():
    with patch(f"{MODULE}.get_settings", return_value=_settings(DATABASE_URL="postgresql://db/agenda")):
        assert validate_startup_config()["database_url_format"] is False
