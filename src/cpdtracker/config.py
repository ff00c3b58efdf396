from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./cpdtracker.db"

    # Sync backend: "" (local only), "pocketbase" or "supabase"
    sync_backend: str = ""
    backend_url: str = ""
    backend_key: str = ""  # Supabase anon key; unused by PocketBase
    auth_token: str = ""
    owner_id: str = ""

    sync_interval_minutes: int = 5
    sync_timeout_seconds: float = 300.0
    request_timeout_seconds: float = 10.0
    health_timeout_seconds: float = 5.0
    page_size: int = 100
    retry_attempts: int = 3
    retry_wait_seconds: float = 0.5

    log_level: str = "INFO"

    class Config:
        env_prefix = "CPD_"
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
