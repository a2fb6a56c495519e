"""Tests for application startup and the health endpoint."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from kin.core.config import Settings
from kin.main import app, lifespan, validate_startup_configuration


def test_startup_fails_without_openrouter_key() -> None:
    """Test that startup exits when the judge credential is missing."""
    with patch("kin.main.settings", Settings(_env_file=None, openrouter_api_key=None)):
        with pytest.raises(SystemExit) as exc_info:
            validate_startup_configuration()

    assert exc_info.value.code == 1


def test_startup_fails_with_empty_openrouter_key() -> None:
    with patch("kin.main.settings", Settings(_env_file=None, openrouter_api_key="")):
        with pytest.raises(SystemExit):
            validate_startup_configuration()


def test_startup_succeeds_with_valid_credentials() -> None:
    """Test that validation passes when the credential is set."""
    with patch("kin.main.settings", Settings(_env_file=None, openrouter_api_key="sk-test")):
        validate_startup_configuration()


@pytest.mark.unit
def test_health_endpoint_returns_healthy() -> None:
    """Test that health endpoint returns healthy status."""
    response = TestClient(app).get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


@pytest.mark.unit
def test_completion_routes_are_mounted() -> None:
    paths = {route.path for route in app.routes}

    assert "/v1/completions" in paths
    assert "/v1/sessions/{session_id}/actions/{action}" in paths


@pytest.mark.unit
class TestLifespan:
    @pytest.mark.asyncio
    async def test_database_closed_when_startup_fails(self) -> None:
        db = MagicMock()
        db.close = AsyncMock()
        with (
            patch("kin.main.settings", Settings(_env_file=None, openrouter_api_key="sk-test")),
            patch("kin.main.configure_logfire"),
            patch("kin.main.DBClient", return_value=db),
            patch("kin.main.init_db", AsyncMock(side_effect=RuntimeError("disk full"))),
        ):
            with pytest.raises(RuntimeError, match="disk full"):
                async with lifespan(app):
                    pass

        db.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_database_closed_when_shutdown_raises(self) -> None:
        db = MagicMock()
        db.close = AsyncMock()
        with (
            patch("kin.main.settings", Settings(_env_file=None, openrouter_api_key="sk-test")),
            patch("kin.main.configure_logfire"),
            patch("kin.main.instrument_pydantic_ai"),
            patch("kin.main.DBClient", return_value=db),
            patch("kin.main.init_db", AsyncMock()),
            patch("kin.main.VerificationAgent.from_settings"),
        ):
            with pytest.raises(ValueError, match="boom"):
                async with lifespan(app):
                    raise ValueError("boom")

        db.close.assert_awaited_once()
