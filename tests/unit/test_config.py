"""Test Settings loading and cross-field validation."""

import pytest

from report_aggregator.core.config import DEFAULT_SUBJECTS, Settings, load_settings
from report_aggregator.core.enums import BusBackend, LedgerBackend, StorageBackend
from report_aggregator.core.errors import ConfigError


class TestDefaults:
    def test_default_settings(self):
        settings = Settings()
        assert settings.bus.backend == BusBackend.MEMORY
        assert settings.storage.backend == StorageBackend.MEMORY
        assert settings.storage.ledger_backend == LedgerBackend.STORE
        assert settings.bus.subjects == DEFAULT_SUBJECTS
        assert settings.timezone == "UTC"

    def test_default_dead_letter_threshold(self):
        assert Settings().bus.max_handler_retries == 5

    def test_defaults_validate(self):
        Settings().validate_settings()  # Should not raise


class TestLoadSettings:
    def test_toml_file(self, tmp_path):
        path = tmp_path / "agg.toml"
        path.write_text(
            'timezone = "Europe/Paris"\n'
            "[bus]\n"
            'subjects = ["orders.created"]\n'
            "workers = 2\n"
            "[storage]\n"
            'backend = "postgres"\n'
        )
        settings = load_settings(path)
        assert settings.timezone == "Europe/Paris"
        assert settings.bus.subjects == ["orders.created"]
        assert settings.bus.workers == 2
        assert settings.storage.backend == StorageBackend.POSTGRES

    def test_missing_file_uses_defaults(self, tmp_path):
        assert load_settings(tmp_path / "nope.toml").bus.workers == 4

    def test_overrides_win(self):
        settings = load_settings(overrides={"bus": {"workers": 9}})
        assert settings.bus.workers == 9

    def test_overrides_extend_toml_section(self, tmp_path):
        path = tmp_path / "agg.toml"
        path.write_text(
            "[bus]\n"
            'backend = "redis"\n'
            'redis_url = "redis://bus:6379/0"\n'
            "[storage]\n"
            'backend = "postgres"\n'
        )
        settings = load_settings(path, overrides={"bus": {"workers": 8}})
        assert settings.bus.workers == 8
        assert settings.bus.backend == BusBackend.REDIS
        assert settings.bus.redis_url == "redis://bus:6379/0"
        assert settings.storage.backend == StorageBackend.POSTGRES

    def test_env_vars(self, monkeypatch):
        monkeypatch.setenv("AGGREGATOR_TIMEZONE", "Asia/Tokyo")
        monkeypatch.setenv("AGGREGATOR_BUS__WORKERS", "7")
        settings = Settings()
        assert settings.timezone == "Asia/Tokyo"
        assert settings.bus.workers == 7


class TestValidateSettings:
    def test_unknown_zone(self):
        with pytest.raises(ConfigError, match="time zone"):
            Settings(timezone="Mars/Olympus").validate_settings()

    def test_redis_ledger_needs_url(self):
        settings = Settings(storage={"ledger_backend": "redis"})
        with pytest.raises(ConfigError, match="ledger_redis_url"):
            settings.validate_settings()

    def test_memory_store_with_redis_bus(self):
        with pytest.raises(ConfigError):
            Settings(bus={"backend": "redis"}).validate_settings()

    def test_postgres_store_with_redis_bus(self):
        Settings(
            bus={"backend": "redis"}, storage={"backend": "postgres"},
        ).validate_settings()

    def test_workers_at_least_one(self):
        with pytest.raises(ConfigError, match="workers"):
            Settings(bus={"workers": 0}).validate_settings()

    def test_tz_property(self):
        assert Settings(timezone="Europe/Paris").tz.key == "Europe/Paris"
