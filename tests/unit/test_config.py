"""Unit tests for core configuration."""

from visualflow.core.config import Settings, settings


def test_settings_initialization():
    """Test settings are initialized properly."""
    assert settings.APP_NAME == "VisualFlow Pipeline Orchestrator"
    assert settings.API_PREFIX == "/api"


def test_settings_execution_defaults():
    """Test stage execution defaults."""
    fresh = Settings(_env_file=None)
    assert fresh.STAGE_DEFAULT_TIMEOUT_MS == 120_000
    assert fresh.PIPELINE_CONCURRENT_STAGES is False
    assert fresh.EXECUTION_DEADLINE_S is None
    assert fresh.ROUTER_EXCLUDE_UNHEALTHY is False
    assert fresh.SYSTEM_USER_ID == "system"


def test_settings_storage_defaults_to_memory():
    """Test no database URL means in-memory storage."""
    assert Settings(_env_file=None).DATABASE_URL is None


def test_settings_env_override(monkeypatch):
    """Test VISUALFLOW_-prefixed environment variables override defaults."""
    monkeypatch.setenv("VISUALFLOW_STAGE_DEFAULT_TIMEOUT_MS", "500")
    monkeypatch.setenv("VISUALFLOW_PIPELINE_CONCURRENT_STAGES", "true")
    monkeypatch.setenv("VISUALFLOW_DATABASE_URL", "sqlite+aiosqlite:///./visualflow.db")

    overridden = Settings(_env_file=None)

    assert overridden.STAGE_DEFAULT_TIMEOUT_MS == 500
    assert overridden.PIPELINE_CONCURRENT_STAGES is True
    assert overridden.DATABASE_URL == "sqlite+aiosqlite:///./visualflow.db"


def test_settings_environment_flag():
    """Test development detection."""
    assert Settings(_env_file=None, ENVIRONMENT="development").is_development
    assert not Settings(_env_file=None, ENVIRONMENT="production").is_development
