"""Tests for autoheal configuration."""

from autoheal.config import Settings


class TestSettings:
    """Test Settings loads from environment."""

    def test_defaults(self, settings_env):
        s = Settings()
        assert s.port == 8910
        assert s.reconcile_interval_seconds == 300
        assert s.problem_fetch_limit == 10
        assert s.command_max_retries == 3
        assert s.retry_base_delay_seconds == 30
        assert s.retry_max_delay_seconds == 900

    def test_env_prefix(self, settings_env, monkeypatch):
        monkeypatch.setenv("AUTOHEAL_PORT", "9999")
        monkeypatch.setenv("AUTOHEAL_STORE_TIMEOUT_SECONDS", "0.5")
        s = Settings()
        assert s.port == 9999
        assert s.store_timeout_seconds == 0.5

    def test_protected_namespaces(self, settings_env):
        s = Settings()
        assert "kube-system" in s.protected_namespaces

    def test_protected_namespaces_from_json_env(self, settings_env, monkeypatch):
        monkeypatch.setenv("AUTOHEAL_PROTECTED_NAMESPACES", '["infra"]')
        assert Settings().protected_namespaces == ["infra"]

    def test_notification_channels_off_by_default(self, settings_env):
        s = Settings()
        assert s.slack_webhook_url is None
        assert s.pagerduty_integration_key is None
        assert s.custom_webhook_url is None
        assert s.custom_webhook_template is None


class TestConfigureLogging:
    def test_json_and_console_modes(self):
        import structlog

        from autoheal.logging_config import configure_logging

        configure_logging("debug", debug=True)
        assert isinstance(structlog.get_config()["processors"][-1], structlog.dev.ConsoleRenderer)

        configure_logging("info", debug=False)
        assert isinstance(
            structlog.get_config()["processors"][-1], structlog.processors.JSONRenderer
        )
