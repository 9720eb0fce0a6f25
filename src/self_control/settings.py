import json
from pathlib import Path

from loguru import logger
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from self_control.utils.paths import (
    get_default_data_dir,
    get_default_hosts_file,
    get_default_log_dir,
)


class Settings(BaseSettings):
    """Application-wide settings managed via .env, SELFCONTROL_* and settings.json."""

    app_name: str = "selfcontrol"
    debug: bool = Field(default=False, description="Master toggle for verbose logging")

    # Paths
    data_dir: Path = Field(default_factory=get_default_data_dir)
    log_dir: Path = Field(default_factory=get_default_log_dir)
    hosts_file: Path = Field(default_factory=get_default_hosts_file)

    # Process signals, set in the environment of a relaunched instance
    background: bool = Field(
        default=False, description="Running as the headless background worker"
    )
    startup: bool = Field(default=False, description="Invoked at OS startup")

    # Timers
    poll_interval: float = 1.0
    stop_timeout: float = 10.0

    model_config = SettingsConfigDict(
        env_prefix="SELFCONTROL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def model_post_init(self, __context):
        # Ensure paths are absolute
        self.data_dir = self.data_dir.resolve()
        self.log_dir = self.log_dir.resolve()

    @property
    def config_file(self) -> Path:
        return self.data_dir / "config.yaml"

    @property
    def sites_file(self) -> Path:
        return self.data_dir / "blocked-sites.yaml"

    @property
    def schedules_file(self) -> Path:
        return self.data_dir / "schedules.yaml"

    @property
    def lock_file(self) -> Path:
        return self.data_dir / "selfcontrol.lock"

    @property
    def password_file(self) -> Path:
        return self.data_dir / "password.hash"

    @property
    def background_log(self) -> Path:
        return self.log_dir / "background.log"


def load_settings() -> Settings:
    """
    Environment and .env first, then overrides from settings.json in the data
    directory. An unreadable settings.json is ignored with a warning.
    """
    base = Settings()
    overrides_file = base.data_dir / "settings.json"
    if not overrides_file.exists():
        return base

    try:
        overrides = json.loads(overrides_file.read_text())
        return Settings(**{**base.model_dump(), **overrides})
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring {overrides_file}: {e}")
        return base


settings = load_settings()
