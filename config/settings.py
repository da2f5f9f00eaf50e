"""Configuration management using pydantic-settings."""
from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Supabase project
    supabase_url: str = "http://localhost:54321"
    supabase_anon_key: Optional[str] = None
    supabase_access_token: Optional[str] = None
    request_timeout_seconds: float = 15.0

    # Cache settings
    cache_namespace: str = "bpf_cache_"
    cache_backend: Literal["memory", "sqlite"] = "memory"
    cache_db_path: Path = Path("./data/cache.db")
    # Browsers give localStorage roughly 5 MiB per origin
    cache_quota_bytes: Optional[int] = 5 * 1024 * 1024
    cache_single_flight: bool = False

    # Error reporting
    error_report_url: Optional[str] = None
    app_env: str = "staging"

    # Retry policy for transient backend failures
    retry_max_attempts: int = 3
    retry_base_seconds: float = 0.5
    retry_max_seconds: float = 10.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
