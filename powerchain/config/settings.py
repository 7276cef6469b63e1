"""Application settings using Pydantic."""
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Database settings."""
    url: str = "sqlite+aiosqlite:///./data/powerchain.db"
    echo: bool = False  # Log SQL statements


class CascadeSettings(BaseSettings):
    """Cascade engine timing.

    Each cascade step polls the node's connector every ``poll_interval_seconds``
    until the node reaches the target state or ``step_timeout_seconds`` elapses.
    """
    step_timeout_seconds: float = 30.0
    poll_interval_seconds: float = 1.0
    # Mark cascades left running by a previous process as failed on startup
    reconcile_on_startup: bool = True


class MonitorSettings(BaseSettings):
    """Inactivity monitor settings."""
    enabled: bool = True
    interval_seconds: int = 60
    ssh_timeout_seconds: float = 5.0

    # Thresholds used when a rule does not set its own.
    # SSH checks compare cpu against the 1-minute load average, platform
    # checks compare against fractional CPU usage.
    default_cpu_threshold: float = 0.5
    default_ram_threshold: float = 0.5


class ConnectorSettings(BaseSettings):
    """Remote control protocol settings."""
    ssh_connect_timeout_seconds: float = 10.0
    ssh_shutdown_command: str = "sudo shutdown -h now"

    wol_broadcast_address: str = "255.255.255.255"
    wol_port: int = 9

    proxmox_timeout_seconds: float = 30.0
    proxmox_default_port: int = 8006

    docker_timeout_seconds: float = 15.0
    docker_api_version: str = "v1.45"

    # Reachability probe used by status-only host connectors
    ping_timeout_seconds: float = 5.0


class Settings(BaseSettings):
    """Main application settings."""
    model_config = SettingsConfigDict(
        env_prefix="POWERCHAIN_",
        env_nested_delimiter="__",
    )

    host: str = "0.0.0.0"
    port: int = 8080
    debug: bool = False

    # Secret key for credential encryption (MUST be set in production)
    secret_key: str = "CHANGE_ME_IN_PRODUCTION_32_CHARS!"

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    cascade: CascadeSettings = Field(default_factory=CascadeSettings)
    monitor: MonitorSettings = Field(default_factory=MonitorSettings)
    connectors: ConnectorSettings = Field(default_factory=ConnectorSettings)


settings = Settings()
