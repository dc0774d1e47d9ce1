"""Tests for configuration loading."""

import pytest

from preview_sandbox.config import Config, ConfigError


class TestConfig:
    """Tests for Config."""

    def test_defaults(self):
        config = Config(load_env=False)

        assert config.port_range == range(5000, 5050)
        assert config.ttl_minutes == 120
        assert config.health_failure_threshold == 3
        assert config.registry_file is None

    def test_environment_overrides_defaults(self, monkeypatch):
        monkeypatch.setenv("SANDBOX_TTL_MINUTES", "30")
        monkeypatch.setenv("SANDBOX_CLEANUP_DELETE_RECORDS", "yes")
        monkeypatch.setenv("SANDBOX_REGISTRY_FILE", "/tmp/registry.json")

        config = Config(load_env=False)

        assert config.ttl_minutes == 30
        assert config.cleanup_delete_records is True
        assert str(config.registry_file) == "/tmp/registry.json"

    def test_keyword_overrides(self):
        config = Config(load_env=False, port_range_start=6000, port_range_end=6010)
        assert config.port_range == range(6000, 6010)

    def test_unknown_override_rejected(self):
        with pytest.raises(ConfigError):
            Config(load_env=False, not_a_setting=1)

    def test_non_integer_environment_value(self, monkeypatch):
        monkeypatch.setenv("SANDBOX_PORT_RANGE_START", "abc")
        with pytest.raises(ConfigError):
            Config(load_env=False)

    def test_inverted_port_range_rejected(self):
        with pytest.raises(ConfigError, match="PORT_RANGE_END"):
            Config(load_env=False, port_range_start=6000, port_range_end=5000)

    def test_provisioning_timeout_defaults_to_provider_budget(self):
        config = Config(load_env=False)

        # (300 local + 2 x 30 hosted + 10 static) x 2 attempts
        assert config.provider_budget_seconds == 740
        assert config.provisioning_timeout_seconds == 740

    def test_provider_budget_counts_enabled_providers(self):
        config = Config(load_env=False, e2b_api_key="key", enable_stackblitz=False, provider_retries=0)
        assert config.provider_budget_seconds == 300 + 2 * 30 + 10

    def test_provisioning_timeout_shorter_than_budget_rejected(self):
        with pytest.raises(ConfigError, match="PROVISIONING_TIMEOUT"):
            Config(load_env=False, provisioning_timeout_seconds=600)

    def test_longer_provisioning_timeout_accepted(self, monkeypatch):
        monkeypatch.setenv("SANDBOX_PROVISIONING_TIMEOUT_SECONDS", "900")
        assert Config(load_env=False).provisioning_timeout_seconds == 900
