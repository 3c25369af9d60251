"""Test sync settings loading from the environment."""

import pytest
from pydantic import ValidationError

from drms_sync.config import Settings, get_settings


class TestSyncSettings:
    """Test settings defaults, overrides and validation."""

    def test_defaults(self):
        """Test the documented defaults."""
        settings = Settings()

        assert settings.sync_batch_size == 50
        assert settings.max_attempts == 3
        assert settings.retry_initial_delay_seconds == 30.0
        assert settings.retry_exponential_base == 2.0
        assert settings.retry_max_delay_seconds == 900.0
        assert settings.auto_sync_interval_minutes == 5.0
        assert settings.conflict_strategy == "last_write_wins"
        assert settings.database_url.startswith("sqlite:///")

    def test_environment_overrides(self, monkeypatch):
        """Test ``DRMS_SYNC_`` variables override defaults."""
        monkeypatch.setenv("DRMS_SYNC_SYNC_BATCH_SIZE", "25")
        monkeypatch.setenv("DRMS_SYNC_CONFLICT_STRATEGY", "MANUAL")
        monkeypatch.setenv("DRMS_SYNC_API_BASE_URL", "https://drms.example.org/api/v1/")

        settings = Settings()

        assert settings.sync_batch_size == 25
        assert settings.conflict_strategy == "manual"
        assert settings.api_base_url == "https://drms.example.org/api/v1"

    def test_batch_size_bounds(self):
        """Test batch size must stay within 1..100."""
        with pytest.raises(ValidationError):
            Settings(sync_batch_size=0)
        with pytest.raises(ValidationError):
            Settings(sync_batch_size=101)

    def test_unknown_conflict_strategy(self):
        """Test only implemented strategies are accepted."""
        with pytest.raises(ValidationError):
            Settings(conflict_strategy="merge_fields")

    def test_unknown_log_format(self):
        """Test only console and json renderers are accepted."""
        with pytest.raises(ValidationError):
            Settings(log_format="xml")

    def test_is_production(self):
        """Test production detection."""
        assert Settings(environment="staging").is_production is True
        assert Settings(environment="development").is_production is False

    def test_get_settings_is_cached(self):
        """Test the loader returns one shared instance."""
        get_settings.cache_clear()

        assert get_settings() is get_settings()
        get_settings.cache_clear()
