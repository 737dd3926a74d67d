"""Help desk configuration loaded from environment variables."""

from __future__ import annotations

import json
from pydantic_settings import BaseSettings
from pydantic import Field, AliasChoices

DEFAULT_JWT_SECRET = "change-me-in-production-helpdesk"


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./helpdesk.db",
        alias="DATABASE_URL",
    )
    auto_create_schema: bool = Field(default=True, alias="AUTO_CREATE_SCHEMA")

    # Server
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    cors_origins: str = Field(default='["http://localhost:3000"]', alias="CORS_ORIGINS")
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    strict_startup_validation: bool = Field(default=False, alias="STRICT_STARTUP_VALIDATION")
    rate_limit_default: str = Field(default="200/minute", alias="RATE_LIMIT_DEFAULT")

    # Tenancy: requests on this host never resolve a tenant from the subdomain.
    main_app_host: str = Field(
        default="",
        validation_alias=AliasChoices("MAIN_APP_HOST", "MAIN_APP_DOMAIN"),
    )
    frontend_url: str = Field(default="http://localhost:3000", alias="FRONTEND_URL")

    # Tokens
    jwt_secret: str = Field(default=DEFAULT_JWT_SECRET, alias="JWT_SECRET")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    jwt_expire_minutes: int = Field(default=60 * 24 * 7, alias="JWT_EXPIRE_MINUTES")
    otp_ttl_minutes: int = Field(default=10, alias="OTP_TTL_MINUTES")
    reset_token_ttl_minutes: int = Field(default=60, alias="RESET_TOKEN_TTL_MINUTES")

    # Email: local SMTP relay (maildev) in development, Resend otherwise
    use_maildev: bool = Field(default=False, alias="USE_MAILDEV")
    maildev_host: str = Field(default="localhost", alias="MAILDEV_HOST")
    maildev_smtp_port: int = Field(default=1025, alias="MAILDEV_SMTP_PORT")
    resend_api_key: str = Field(default="", alias="RESEND_API_KEY")
    mail_from_email: str = Field(
        default="support@helpdesk.local",
        validation_alias=AliasChoices("MAIL_FROM_EMAIL", "EMAIL_FROM"),
    )
    mail_queue_size: int = Field(default=1000, alias="MAIL_QUEUE_SIZE")

    # Attachments
    upload_dir: str = Field(default="./uploads", alias="UPLOAD_DIR")
    max_upload_bytes: int = Field(default=20 * 1024 * 1024, alias="MAX_UPLOAD_BYTES")

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() in {"production", "prod"}

    @property
    def is_development(self) -> bool:
        return self.app_env.lower() in {"development", "dev"}

    @property
    def uses_smtp_relay(self) -> bool:
        return self.use_maildev or self.is_development

    @property
    def cors_origins_list(self) -> list[str]:
        raw = (self.cors_origins or "").strip()
        if not raw:
            return []

        # Supports JSON list format and comma-separated format.
        if raw.startswith("["):
            try:
                parsed = json.loads(raw)
                if isinstance(parsed, list):
                    return [str(origin).strip() for origin in parsed if str(origin).strip()]
            except json.JSONDecodeError:
                pass

        return [origin.strip() for origin in raw.split(",") if origin.strip()]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()


def get_settings() -> Settings:
    """Dependency returning the process-wide settings built at import time."""
    return settings
