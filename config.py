from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent / ".env"


class Settings(BaseSettings):
    # Database
    DB_NAME: str = "contacts.db"
    DB_BUSY_TIMEOUT: float = 5.0  # seconds a writer waits for the lock

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Retry of a whole /identify submission after a lost write race
    CONSOLIDATE_MAX_ATTEMPTS: int = 5
    CONSOLIDATE_BASE_BACKOFF: float = 0.05
    CONSOLIDATE_MAX_BACKOFF: float = 1.0

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()
