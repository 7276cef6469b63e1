"""Tests for application settings."""
import pytest


class TestSettings:
    """Test defaults and environment overrides."""

    def test_cascade_defaults(self):
        """Steps poll every second for up to 30 seconds."""
        from powerchain.config.settings import CascadeSettings

        cascade = CascadeSettings()
        assert cascade.step_timeout_seconds == 30.0
        assert cascade.poll_interval_seconds == 1.0
        assert cascade.reconcile_on_startup is True

    def test_monitor_defaults(self):
        """The monitor ticks once a minute."""
        from powerchain.config.settings import MonitorSettings

        monitor = MonitorSettings()
        assert monitor.enabled is True
        assert monitor.interval_seconds == 60
        assert monitor.default_cpu_threshold == 0.5

    def test_connector_defaults(self):
        """WoL goes to the broadcast address on the discard port."""
        from powerchain.config.settings import ConnectorSettings

        connectors = ConnectorSettings()
        assert connectors.wol_broadcast_address == "255.255.255.255"
        assert connectors.wol_port == 9
        assert connectors.proxmox_default_port == 8006

    def test_groups_in_main_settings(self):
        """Every group is reachable from the main settings."""
        from powerchain.config.settings import Settings

        settings = Settings()
        assert settings.database.url.startswith("sqlite+aiosqlite://")
        assert settings.cascade.step_timeout_seconds > 0
        assert settings.monitor.interval_seconds > 0
        assert settings.connectors.ssh_shutdown_command

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch):
        """Nested values are read from POWERCHAIN_<GROUP>__<FIELD>."""
        from powerchain.config.settings import Settings

        monkeypatch.setenv("POWERCHAIN_PORT", "9000")
        monkeypatch.setenv("POWERCHAIN_CASCADE__STEP_TIMEOUT_SECONDS", "120")
        monkeypatch.setenv("POWERCHAIN_MONITOR__ENABLED", "false")

        settings = Settings()
        assert settings.port == 9000
        assert settings.cascade.step_timeout_seconds == 120.0
        assert settings.monitor.enabled is False
