# src/clinic_backend/config.py

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, List, Literal, Optional, Union

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# .env is at the service root, two levels up from src/clinic_backend/
CONFIG_FILE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT_DIR = CONFIG_FILE_DIR.parent.parent
ENV_FILE_PATH = PROJECT_ROOT_DIR / ".env"

if ENV_FILE_PATH.exists():
    load_dotenv(dotenv_path=ENV_FILE_PATH, override=False)
    logger.info("Loaded .env file from: %s", ENV_FILE_PATH)
else:
    logger.debug(".env file not found at %s. Relying on environment variables.", ENV_FILE_PATH)

DEFAULT_DEV_REDIRECT_ORIGINS = [
    "http://localhost:5173",
    "https://localhost:5173",
    "http://localhost:5174",
    "https://localhost:5174",
    "http://127.0.0.1:5173",
    "http://127.0.0.1:5174",
]


def _split_comma_separated(v: Any, field_name: str) -> List[str]:
    if isinstance(v, str):
        return [item.strip() for item in v.split(",") if item.strip()]
    if isinstance(v, (list, tuple)):
        return [str(item).strip() for item in v if str(item).strip()]
    raise TypeError(f"{field_name}: Expected a comma-separated string or a list, got {type(v)}")


class Settings(BaseSettings):
    # === Google OAuth client ===
    # Left optional so the service boots without credentials; the login
    # endpoints answer 500 until they are configured.
    GOOGLE_CLIENT_ID: Optional[str] = None
    GOOGLE_CLIENT_SECRET: Optional[str] = None
    GOOGLE_REDIRECT_URI: Optional[str] = None

    # === HTTP surface ===
    API_PREFIX: str = "/api"
    CORS_ALLOWED_ORIGINS: Union[str, List[str]] = ["*"]
    DEV_REDIRECT_ORIGINS: Union[str, List[str]] = DEFAULT_DEV_REDIRECT_ORIGINS

    # === Session Management ===
    SESSION_COOKIE_NAME: str = "SESSION"
    SESSION_COOKIE_SECURE: bool = False
    SESSION_COOKIE_SAMESITE: Literal["lax", "strict", "none"] = "lax"
    SESSION_DEFAULT_MAX_INACTIVE_SECONDS: int = 1800
    SESSION_AUTHENTICATED_MAX_INACTIVE_SECONDS: int = 3600
    SESSION_BACKEND: Literal["memory", "redis"] = "memory"
    REDIS_URL: str = "redis://localhost:6379/0"
    SESSION_REDIS_PREFIX: str = "clinic:session"
    SESSION_SWEEP_INTERVAL_SECONDS: int = 300

    # === Identity provider calls ===
    PROVIDER_HTTP_TIMEOUT_SECONDS: float = 5.0
    ID_TOKEN_VERIFICATION: Literal["introspection", "jwks"] = "introspection"

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    @field_validator("CORS_ALLOWED_ORIGINS", "DEV_REDIRECT_ORIGINS", mode="before")
    @classmethod
    def parse_origin_lists(cls, v: Any, info) -> List[str]:
        return [origin.rstrip("/") for origin in _split_comma_separated(v, info.field_name)]

    @field_validator("API_PREFIX")
    @classmethod
    def normalize_api_prefix(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if v and not v.startswith("/"):
            v = "/" + v
        return v


@lru_cache()
def get_settings() -> Settings:
    return Settings()
