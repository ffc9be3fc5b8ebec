from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_FETCH_INTERVAL_MINUTES = 10


class Settings(BaseSettings):
    database_url: str = ""
    internal_job_token: str | None = None
    app_env: str = "dev"
    fetch_url: str = (
        "https://ws.hsinchu.gov.tw/001/Upload/1/opendata/8774/341/b95a118f-e411-4cb3-a990-99c67407fa87.json"
    )
    fetch_source_id: str | None = None
    fetch_interval_minutes: int = MIN_FETCH_INTERVAL_MINUTES
    fetch_timeout_sec: float = 30.0
    fetch_max_retries: int = 2
    fetch_backoff_sec: float = 1.0
    country_mapping_path: str | None = None
    summary_history_limit: int = 12
    api_read_cache_ttl_sec: int = 0
    auto_apply_schema_on_startup: bool = False

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @field_validator("fetch_interval_minutes")
    @classmethod
    def _clamp_fetch_interval(cls, value: int) -> int:
        return max(value, MIN_FETCH_INTERVAL_MINUTES)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
