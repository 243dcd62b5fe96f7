from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = "sqlite:///./data/dispatch.db"
    debug: bool = False
    log_level: str = "INFO"

    # "db" = relational store, "file" = JSON files under data_dir
    storage_backend: str = "db"
    data_dir: str = "./data"

    outbox_worker_enabled: bool = True
    outbox_worker_interval_seconds: float = 5.0
    outbox_process_limit: int = 25
    outbox_immediate_delivery: bool = False
    outbox_dry_run: bool = False

    default_pace_profile: str = "safe"
    send_window_enabled: bool = False
    send_window_start: str = "09:00"
    send_window_end: str = "19:00"
    send_window_timezone: str = "America/Sao_Paulo"

    evolution_base_url: Optional[str] = None
    evolution_instance: Optional[str] = None
    evolution_api_key: Optional[str] = None

    admin_token: Optional[str] = None

    alert_bot_token: Optional[str] = None
    alert_chat_id: Optional[str] = None

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    return Settings()
