from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "DocHub"
    app_env: str = "development"
    app_host: str = "127.0.0.1"
    app_port: int = 8788
    log_level: str = "INFO"

    database_url: str = "sqlite:///./data/dochub.db"
    data_dir: Path = Path("./data")
    letters_dir: Path = Path("./data/letters")
    previews_dir: Path = Path("./data/previews")
    signatures_dir: Path = Path("./data/signatures")
    outbox_dir: Path = Path("./data/outbox")

    bulk_max_workers: int = 4
    render_timeout_sec: float = 30.0
    dispatch_timeout_sec: float = 30.0
    max_send_retries: int = 3
    bulk_retry_lease_sec: float = 3600.0

    email_provider: str = "outbox"
    sendgrid_api_key: str = ""
    sendgrid_base_url: str = "https://api.sendgrid.com/v3"
    email_from_address: str = "hr@example.com"
    email_from_name: str = "HR Department"
    email_subject_template: str = "{letter_type} - {employee_name}"

    default_actor: str = "System"
    cors_origins: str = "http://127.0.0.1:8788"

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, value: str) -> str:
        allowed = {"development", "staging", "production", "test"}
        if value not in allowed:
            raise ValueError(f"app_env must be one of {sorted(allowed)}")
        return value

    @field_validator("email_provider")
    @classmethod
    def validate_email_provider(cls, value: str) -> str:
        allowed = {"outbox", "sendgrid"}
        if value not in allowed:
            raise ValueError(f"email_provider must be one of {sorted(allowed)}")
        return value

    @field_validator("bulk_max_workers", "max_send_retries")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("value must be at least 1")
        return value

    @property
    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
