"""
config.py

Centralized configuration management using pydantic-settings.
All modules must import settings from this file.
Direct os.getenv() calls are prohibited elsewhere.
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application-wide settings loaded from .env file."""

    # Remote C2 API
    api_base_url: str = "http://localhost:8000/api"
    request_timeout_s: float = Field(default=30.0, gt=0)
    single_flight_refresh: bool = True
    # Optional service account; when set the station logs in at startup
    api_username: str = ""
    api_password: str = ""

    # Presence tracking
    liveness_window_s: int = Field(default=300, gt=0)

    # Scheduled operations (tick must be no coarser than one minute)
    schedule_tick_interval_s: float = Field(default=60.0, gt=0, le=60)
    operation_retention_hours: int = Field(default=168, ge=0)

    # Database (operation history)
    mysql_host: str = "127.0.0.1"
    mysql_port: int = 3306
    mysql_user: str = "station"
    mysql_password: str = ""
    mysql_db: str = "c2_station"

    # HTTP service
    station_host: str = "0.0.0.0"
    station_port: int = 8000

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }


settings = Settings()
