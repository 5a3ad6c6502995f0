from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .utils import DEFAULT_DELIMITER


class Settings(BaseSettings):
    """Runtime settings from JOBQUEUE_* environment variables or a .env file."""

    model_config = SettingsConfigDict(
        env_prefix="JOBQUEUE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    home: Path = Field(default_factory=lambda: Path.home() / ".jobqueue")
    queue_file: str = "queue.sqlite"
    delimiter: str = DEFAULT_DELIMITER
    log_level: str = "INFO"
    log_file: Optional[Path] = None
    stale_minutes: int = Field(default=60, gt=0)
    command_timeout: Optional[float] = Field(default=None, gt=0)

    @field_validator("delimiter")
    @classmethod
    def _single_char(cls, v: str) -> str:
        if len(v) != 1:
            raise ValueError("delimiter must be a single character")
        return v

    @property
    def queue_path(self) -> Path:
        return self.home / self.queue_file


@lru_cache
def get_settings() -> Settings:
    return Settings()
