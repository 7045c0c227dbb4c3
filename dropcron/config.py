"""Application settings loaded from environment variables."""

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """Scheduler configuration. All values come from environment variables."""

    # Database (shared by every worker in the pool)
    database_path: Path = Field(default=Path("data/dropcron.db"))

    # Scheduler
    scheduler_timezone: str = Field(default="UTC")
    scheduler_lock_ttl_ms: int = Field(default=60_000)
    trigger_max_instances: int = Field(default=10)

    # Worker topology: only the executor worker fires callbacks
    worker_id: int = Field(default=1)
    executor_worker_id: int = Field(default=1)

    # Extensions (plugins and theme), as importable module paths
    active_plugins: str = Field(default="")
    active_theme: str = Field(default="")

    # Jobs
    job_retention_days: int = Field(default=7)

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(env_file=_env_file(), env_file_encoding="utf-8")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)

    def is_executor(self) -> bool:
        """True when this worker is the one allowed to fire scheduled tasks."""
        return self.worker_id == self.executor_worker_id

    def get_active_plugins(self) -> list[str]:
        """Parse ACTIVE_PLUGINS into a list of module paths."""
        if not self.active_plugins.strip():
            return []
        return [name.strip() for name in self.active_plugins.split(",") if name.strip()]


settings = Settings()
