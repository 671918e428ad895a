# Settings management (reads env vars/secrets)
# backend/app/core/config.py

import json
import logging
import os
from functools import lru_cache
from typing import Annotated, List, Optional, Union

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)


def _split_csv(v: Union[str, List[str], None]) -> List[str]:
    if v is None:
        return []
    if isinstance(v, str) and not v.startswith("["):
        return [i.strip() for i in v.split(",") if i.strip()]
    if isinstance(v, str):
        return json.loads(v)
    if isinstance(v, list):
        return v
    raise ValueError(f"Invalid list format: {v}")


class Settings(BaseSettings):
    """
    Application configuration settings loaded from environment variables or .env file.
    """
    # --- Project Info ---
    PROJECT_NAME: str = Field("Streaming Media API", validation_alias="PROJECT_NAME")
    API_V1_STR: str = Field("/api", validation_alias="API_V1_STR")
    VERSION: str = Field("1.0.0", validation_alias="APP_VERSION")

    # --- Logging ---
    LOG_LEVEL: str = Field("INFO", validation_alias="LOG_LEVEL")

    # --- Database (MongoDB) ---
    # Use SecretStr to prevent accidental logging of the URI
    MONGODB_URI: SecretStr = Field(..., validation_alias="MONGODB_URI")
    MEDIA_DB_NAME: str = Field("Media", validation_alias="MEDIA_DB_NAME")
    USERS_DB_NAME: str = Field("Users", validation_alias="USERS_DB_NAME")

    # --- Cache (Redis) ---
    REDIS_URL: SecretStr = Field(..., validation_alias="REDIS_URL")

    # --- Mobile / TV sign-in ---
    MOBILE_JWT_SECRET: SecretStr = Field(..., validation_alias="MOBILE_JWT_SECRET")
    JWT_ALGORITHM: str = Field("HS256", validation_alias="JWT_ALGORITHM")
    MOBILE_TOKEN_TTL_SECONDS: int = Field(300, validation_alias="MOBILE_TOKEN_TTL_SECONDS")
    USED_TOKEN_RETENTION_HOURS: int = Field(24, validation_alias="USED_TOKEN_RETENTION_HOURS")
    AUTH_SESSION_TTL_MINUTES: int = Field(30, validation_alias="AUTH_SESSION_TTL_MINUTES")
    QR_SESSION_TTL_MINUTES: int = Field(10, validation_alias="QR_SESSION_TTL_MINUTES")
    QR_SESSION_COMPLETE_TTL_DAYS: int = Field(
        30,
        validation_alias="QR_SESSION_COMPLETE_TTL_DAYS",
        description="Lifetime of an approved QR session, so TV clients can keep refreshing tokens."
    )
    QR_SESSION_EXPIRED_GRACE_SECONDS: int = Field(
        3600,
        validation_alias="QR_SESSION_EXPIRED_GRACE_SECONDS",
        description="How long an expired QR session is kept, so polling TV clients can see it expire."
    )
    SESSION_COOKIE_NAMES: Annotated[List[str], NoDecode] = Field(
        default=["authjs.session-token", "__Secure-authjs.session-token"],
        validation_alias="SESSION_COOKIE_NAMES"
    )
    PUBLIC_HOST: str = Field("localhost:3232", validation_alias="PUBLIC_HOST")

    # --- Access control ---
    ADMIN_USER_EMAILS: Annotated[List[str], NoDecode] = Field(default=[], validation_alias="ADMIN_USER_EMAILS")
    VALID_WEBHOOK_IDS: Annotated[List[str], NoDecode] = Field(default=[], validation_alias="VALID_WEBHOOK_IDS")

    # --- Outbound HTTP ---
    HTTP_TIMEOUT_SECONDS: float = Field(5.0, validation_alias="HTTP_TIMEOUT_SECONDS")
    HTTP_RETRY_LIMIT: int = Field(3, validation_alias="HTTP_RETRY_LIMIT")
    HTTP_RETRY_BASE_DELAY: float = Field(1.0, validation_alias="HTTP_RETRY_BASE_DELAY")
    HTTP_RETRY_MAX_DELAY: float = Field(10.0, validation_alias="HTTP_RETRY_MAX_DELAY")
    HTTP_RETRY_JITTER: float = Field(1.0, validation_alias="HTTP_RETRY_JITTER")
    HTTP_CACHE_TTL_SECONDS: int = Field(
        default=3600,  # 1 hour
        validation_alias="HTTP_CACHE_TTL_SECONDS",
        description="Time-to-live for conditional HTTP cache entries in seconds"
    )

    # --- Integrations ---
    SONARR_ICAL_LINK: Optional[str] = Field(None, validation_alias="SONARR_ICAL_LINK")
    RADARR_ICAL_LINK: Optional[str] = Field(None, validation_alias="RADARR_ICAL_LINK")
    TMDB_IMAGE_BASE_URL: str = Field("https://image.tmdb.org/t/p", validation_alias="TMDB_IMAGE_BASE_URL")

    # --- Cache Settings ---
    CACHE_TTL_MEDIA_STATS: int = Field(
        default=300,  # 5 minutes
        validation_alias="CACHE_TTL_MEDIA_STATS",
        description="Time-to-live for cached counts, genres and last-updated stamps in seconds"
    )

    # --- Account deletion ---
    DELETION_GRACE_PERIOD_DAYS: int = Field(30, validation_alias="DELETION_GRACE_PERIOD_DAYS")
    DELETION_TOKEN_TTL_HOURS: int = Field(24, validation_alias="DELETION_TOKEN_TTL_HOURS")
    DELETION_REQUESTS_PER_IP_PER_HOUR: int = Field(3, validation_alias="DELETION_REQUESTS_PER_IP_PER_HOUR")
    DELETION_STATUS_CHECKS_PER_IP_PER_HOUR: int = Field(10, validation_alias="DELETION_STATUS_CHECKS_PER_IP_PER_HOUR")
    DELETION_VERIFICATIONS_PER_IP_PER_HOUR: int = Field(5, validation_alias="DELETION_VERIFICATIONS_PER_IP_PER_HOUR")

    # --- Rate limiting ---
    RATE_LIMIT_ENABLED: bool = Field(True, validation_alias="RATE_LIMIT_ENABLED")

    # --- Outbound email (SMTP). Messages are only logged while SMTP_HOST is unset. ---
    SMTP_HOST: Optional[str] = Field(None, validation_alias="SMTP_HOST")
    SMTP_PORT: int = Field(587, validation_alias="SMTP_PORT")
    SMTP_USER: Optional[str] = Field(None, validation_alias="SMTP_USER")
    SMTP_PASSWORD: Optional[SecretStr] = Field(None, validation_alias="SMTP_PASSWORD")
    SMTP_FROM: Optional[str] = Field(None, validation_alias="SMTP_FROM")
    SMTP_USE_TLS: bool = Field(True, validation_alias="SMTP_USE_TLS")

    # --- CORS ---
    # Expects a comma-separated string in env var like "http://localhost:3000,https://*.example.com"
    BACKEND_CORS_ORIGINS: Annotated[List[str], NoDecode] = Field(
        default=["*"],
        validation_alias="BACKEND_CORS_ORIGINS"
    )

    @field_validator("BACKEND_CORS_ORIGINS", mode='before')
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if v == "*":
            return ["*"]
        return _split_csv(v)

    @field_validator("ADMIN_USER_EMAILS", "VALID_WEBHOOK_IDS", "SESSION_COOKIE_NAMES", mode='before')
    @classmethod
    def assemble_csv_lists(cls, v: Union[str, List[str], None]) -> List[str]:
        return _split_csv(v)

    @field_validator("ADMIN_USER_EMAILS", mode='after')
    @classmethod
    def lowercase_admin_emails(cls, v: List[str]) -> List[str]:
        return [email.lower() for email in v]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding='utf-8',
        case_sensitive=False,
        extra='ignore'
    )


# Use lru_cache to create a singleton instance of the settings
@lru_cache()
def get_settings() -> Settings:
    """Returns the application settings instance."""
    logger.info("Attempting to load application settings...")
    try:
        settings_instance = Settings()
        logger.info(f"Settings loaded successfully for Project: {settings_instance.PROJECT_NAME}")
        logger.info(f"Log Level: {settings_instance.LOG_LEVEL}")
        logger.info(f"CORS Origins: {settings_instance.BACKEND_CORS_ORIGINS}")
        logger.info(f"Databases: media='{settings_instance.MEDIA_DB_NAME}', users='{settings_instance.USERS_DB_NAME}'")
        logger.info(f"Admin emails configured: {len(settings_instance.ADMIN_USER_EMAILS)}")
        # DO NOT log SecretStr values directly in production logs!
        return settings_instance
    except Exception as e:
        logger.critical(f"CRITICAL ERROR: Failed to load application settings: {e}", exc_info=True)
        raise RuntimeError(f"Could not load settings: {e}")


# Create a single settings instance to be imported by other modules
settings: Settings = get_settings()
