from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="GAP_SCAN_",
        env_file=str(Path.cwd() / ".env"),
        extra="ignore",
    )

    API_BASE: str = "http://localhost:3001/api"
    REQUEST_TIMEOUT: float = 30.0


def get_settings() -> Settings:
    return Settings()
