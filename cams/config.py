from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Storage (SQLite file for schedules + result history)
    db_path: str = "data/cams.db"

    # Applications + connections registry (absolute or relative to CWD)
    connections_file: str = "connections.yaml"

    # Scheduler
    scheduler_enabled: bool = True
    scheduler_tick_seconds: float = 30.0
    scheduler_max_concurrency: int = 5  # simultaneous probes across all targets

    # Probes
    probe_timeout_seconds: float = 10.0

    # Results kept per application for trend display
    history_limit: int = 50

    # Logging
    log_level: str = "INFO"


settings = Settings()
