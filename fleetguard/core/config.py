from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="FLEETGUARD_", extra="ignore")

    app_name: str = "FleetGuard Orchestrator"

    # Liveness sweep
    sweep_interval_seconds: int = 300
    initial_sweep_delay_seconds: int = 5

    # Liveness thresholds (minutes since last heartbeat)
    offline_threshold_minutes: float = 10
    emergency_threshold_minutes: float = 60
    escalation_interval_minutes: float = 30
    max_escalations: int = 5

    # Command delivery
    command_max_retries: int = 3

    # Critical conditions assessed when a device drops offline
    critical_temperature_c: float = 35.0
    critical_soil_moisture: float = 20.0
    min_tank_for_irrigation: float = 15.0  # below this there is nothing to pump
    critical_tank_level: float = 10.0

    # Manual override expiry when the caller gives no duration
    default_override_seconds: int = 3600

    # Storage: "sqlite" or "memory"
    storage_mode: str = "sqlite"
    sqlite_path: str = Field(default="fleetguard.db")

    # Events
    event_buffer_size: int = 500
    event_webhook_url: str | None = None
    event_webhook_timeout_seconds: float = 5.0

    # Logging
    log_file: str = "fleetguard.log"
    log_level: str = "INFO"


settings = Settings()
