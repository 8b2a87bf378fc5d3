"""OrderDesk settings, read from the environment (and ``.env``) via pydantic-settings.

Code reads ``settings`` instead of calling ``os.getenv``.
"""

import warnings
from functools import lru_cache
from typing import List, Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SECRET_KEY = "change-me-in-production"
MIN_SECRET_KEY_LENGTH = 32
LOCAL_HOSTS = ("localhost", "127.0.0.1", "0.0.0.0")


def _split_origins(raw: str) -> List[str]:
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def _is_local(origin: str) -> bool:
    return any(host in origin for host in LOCAL_HOSTS)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "OrderDesk"
    database_url: str = "sqlite:///./orderdesk.db"

    # Tokens
    secret_key: str = DEFAULT_SECRET_KEY
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 240

    # Comma separated; "*" only while developing
    cors_origins: str = "http://localhost:3000,http://localhost:8000"

    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    api_v1_prefix: str = "/api/v1"
    rate_limit_enabled: bool = True

    # ==========================================================================
    # Print dispatch
    # ==========================================================================
    print_dispatcher_enabled: bool = True
    print_max_attempts: int = 3
    print_backoff_base_seconds: float = 2.0
    print_backoff_max_seconds: float = 60.0
    print_send_timeout_seconds: float = 10.0
    printer_test_timeout_seconds: float = 5.0
    print_stale_job_seconds: int = 120
    print_dispatcher_poll_seconds: float = 5.0

    # Bluetooth printers: RFCOMM channel for addressed printers, serial
    # device for printers paired at the OS level
    bluetooth_rfcomm_channel: int = 1
    bluetooth_default_device: str = "/dev/rfcomm0"

    @field_validator("secret_key")
    @classmethod
    def warn_on_weak_secret(cls, v: str) -> str:
        if v == DEFAULT_SECRET_KEY:
            warnings.warn("SECRET_KEY is the shipped default; tokens can be forged.", UserWarning, stacklevel=2)
        elif len(v) < MIN_SECRET_KEY_LENGTH:
            warnings.warn(
                f"SECRET_KEY is shorter than {MIN_SECRET_KEY_LENGTH} characters.", UserWarning, stacklevel=2
            )
        return v

    @field_validator("print_max_attempts")
    @classmethod
    def validate_max_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("PRINT_MAX_ATTEMPTS must be at least 1")
        return v

    @model_validator(mode="after")
    def check_backoff_bounds(self) -> "Settings":
        if self.print_backoff_base_seconds <= 0:
            raise ValueError("PRINT_BACKOFF_BASE_SECONDS must be positive")
        if self.print_backoff_max_seconds < self.print_backoff_base_seconds:
            raise ValueError("PRINT_BACKOFF_MAX_SECONDS cannot be below PRINT_BACKOFF_BASE_SECONDS")
        return self

    @model_validator(mode="after")
    def refuse_unsafe_production(self) -> "Settings":
        """With DEBUG off the secret must be real; local CORS origins only warn."""
        if self.debug:
            return self

        if self.secret_key == DEFAULT_SECRET_KEY or len(self.secret_key) < MIN_SECRET_KEY_LENGTH:
            raise ValueError(
                f"Refusing to start with DEBUG off: SECRET_KEY must be set to a value of at least "
                f"{MIN_SECRET_KEY_LENGTH} characters (got {len(self.secret_key)})."
            )

        local = [o for o in _split_origins(self.cors_origins) if _is_local(o)]
        if local:
            warnings.warn(f"Local CORS origins are ignored with DEBUG off: {local}", UserWarning, stacklevel=2)
        return self

    @property
    def cors_origins_list(self) -> List[str]:
        if self.cors_origins == "*":
            return ["*"]
        origins = _split_origins(self.cors_origins)
        if not self.debug:
            origins = [o for o in origins if not _is_local(o)]
        return origins


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
