import logging
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "shareaudit"
    app_env: str = "dev"
    database_path: str = "data/shareaudit.db"
    storage_dir: str = "data/objects"
    public_base_url: str | None = None
    min_expiry_days: int = 1
    max_expiry_days: int = 30
    token_bytes: int = 24
    token_max_attempts: int = 5
    password_hash_iterations: int = 210_000
    db_timeout_seconds: float = 5.0
    storage_retry_attempts: int = 1
    geoip_url_template: str | None = None
    geoip_timeout_seconds: float = 1.0
    trust_forwarded_for: bool = False
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_prefix="SHAREAUDIT_")


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("shareaudit").setLevel(level.upper())
