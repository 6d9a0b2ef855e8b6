from typing import List, Optional

from pydantic import ConfigDict, Field
from pydantic_settings import BaseSettings

DEFAULT_BLACKLISTED_FILES = [
    ".env",
    ".env.*",
    "*.pem",
    "*.key",
    "*.secret",
    "**/secrets/**",
    "**/credentials/**",
]


class ClientSettings(BaseSettings):
    """Editor agent settings, read from ``DEVRADAR_*`` environment variables."""

    server_url: str = "http://localhost:8000"
    ws_url: str = "ws://localhost:8000/ws"
    token: Optional[str] = None

    # Reporting
    privacy_mode: bool = False
    show_file_name: bool = True
    show_project: bool = True
    show_language: bool = True
    blacklisted_files: List[str] = Field(default_factory=lambda: list(DEFAULT_BLACKLISTED_FILES))
    blacklisted_workspaces: List[str] = Field(default_factory=list)
    idle_timeout_seconds: float = 300.0
    idle_check_interval_seconds: float = 30.0
    update_debounce_seconds: float = 1.0
    session_report_interval_seconds: float = 300.0

    # Connection
    heartbeat_interval_seconds: float = 30.0
    reconnect_initial_delay_seconds: float = 1.0
    reconnect_max_delay_seconds: float = 30.0
    reconnect_multiplier: float = 2.0
    reconnect_max_attempts: int = 10
    queue_max_size: int = 100
    queue_max_age_seconds: float = 60.0

    model_config = ConfigDict(
        env_prefix="DEVRADAR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
