from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "https://iglesiatech.app",
    "https://www.iglesiatech.app",
    "https://churchadmin.app",
    "https://www.churchadmin.app",
]


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required from .env
    DATABASE_URL: str

    LOG_LEVEL: str = "INFO"

    # Twilio credentials; the SMS provider stays disabled while these are empty
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_PHONE_NUMBER: str = ""

    # Reject inbound webhooks whose X-Twilio-Signature does not verify
    TWILIO_VALIDATE_WEBHOOK: bool = False

    # Known origins are echoed back; anything else matching the fallback
    # pattern is allowed too (".*" keeps the wildcard behaviour)
    CORS_ALLOWED_ORIGINS: List[str] = DEFAULT_ALLOWED_ORIGINS
    CORS_FALLBACK_ORIGIN_REGEX: str = ".*"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
