from dataclasses import dataclass
from typing import List
from pydantic import AnyHttpUrl, computed_field
from pydantic_core import MultiHostUrl
from pydantic_settings import BaseSettings, SettingsConfigDict


class ChatSettings(BaseSettings):
    """Chat feature flags. Read on their own so they can be reloaded cheaply."""

    CHAT_ENABLED: bool = False
    CHAT_REDACT_MESSAGES: bool = True
    CHAT_SIGNED_URL_TTL: int = 900

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")


class Settings(ChatSettings):
    # Application
    PROJECT_NAME: str = "Home Care Chat"
    VERSION: str = "1.0.0"
    API_V1_STR: str = "/api/v1"
    APP_ENV: str = "development"

    # Security
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7

    # Validation
    BACKEND_CORS_ORIGINS: List[AnyHttpUrl] = []

    # Chat uploads
    CHAT_ALLOWED_IMAGE_MIME: str = "image/jpeg,image/png,image/webp"
    CHAT_MAX_UPLOAD_BYTES: int = 15 * 1024 * 1024

    # Storage
    STORAGE_BACKEND: str = "local"
    UPLOAD_DIR: str = "static/chat_media"
    STORAGE_PUBLIC_BASE_URL: str | None = None
    S3_BUCKET: str | None = None
    S3_ACCESS_KEY: str | None = None
    S3_SECRET_KEY: str | None = None
    S3_REGION: str | None = None
    S3_ENDPOINT_URL: str | None = None

    # Background jobs
    JOB_WORKER_ENABLED: bool = True
    JOB_WORKER_CONCURRENCY: int = 1
    JOB_POLL_INTERVAL_SECONDS: float = 2.0

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Database
    DATABASE_URL: str | None = None
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = "homecare"

    @computed_field
    @property
    def SQLALCHEMY_DATABASE_URI(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return str(MultiHostUrl.build(
            scheme="postgresql+asyncpg",
            username=self.POSTGRES_USER,
            password=self.POSTGRES_PASSWORD,
            host=self.POSTGRES_HOST,
            port=self.POSTGRES_PORT,
            path=self.POSTGRES_DB,
        ))

    @property
    def chat_allowed_image_mime(self) -> list[str]:
        return [mime.strip() for mime in self.CHAT_ALLOWED_IMAGE_MIME.split(",") if mime.strip()]

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

settings = Settings()  # type: ignore


@dataclass(frozen=True)
class ChatConfig:
    enabled: bool = False
    redact_messages: bool = True
    signed_url_ttl: int = 900

    @classmethod
    def from_settings(cls, source: ChatSettings) -> "ChatConfig":
        return cls(
            enabled=source.CHAT_ENABLED,
            redact_messages=source.CHAT_REDACT_MESSAGES,
            signed_url_ttl=source.CHAT_SIGNED_URL_TTL,
        )


def get_chat_config() -> ChatConfig:
    # Re-reads the environment and .env on every call, so a running worker
    # follows flag changes from its next job on.
    return ChatConfig.from_settings(ChatSettings())
