from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = "sqlite:///./training-log.db"
    log_level: str = "INFO"
    log_format: str = "text"  # "text" or "json"
    backup_warning_days: int = 30
    recent_log_count: int = 3
    seed_body_parts: list[str] = ["Chest", "Back", "Shoulders", "Arms", "Legs", "Abs"]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="TRAINING_LOG_",
        case_sensitive=False,
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
