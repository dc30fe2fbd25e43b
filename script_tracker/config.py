from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOCK_STRATEGIES = ("auto", "advisory", "named_mutex", "uniqueness")


class Settings(BaseSettings):
    """Script tracker settings from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SCRIPT_TRACKER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    database_url: str = Field(default="sqlite+aiosqlite:///./script_tracker.db")

    # Where discoverable script files live
    scripts_path: Path = Field(default=Path("scripts"))

    # Execution
    default_timeout_seconds: float = Field(default=300, ge=0)  # 0 disables the guard
    stale_after_minutes: int = Field(default=60, gt=0)
    lock_strategy: str = Field(default="auto")

    # Application
    debug: bool = Field(default=False)

    @field_validator("lock_strategy")
    @classmethod
    def _known_lock_strategy(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in LOCK_STRATEGIES:
            raise ValueError(f"lock_strategy must be one of {', '.join(LOCK_STRATEGIES)}")
        return value
