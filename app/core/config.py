from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    PROJECT_NAME: str = "waste-chat-api"
    VERSION: str = "0.1.0"
    ENV: str = "development"
    PORT: int = 8000

    # CORS
    CORS_ORIGINS: List[str] = ["*"]

    # Logging
    LOG_DIR: str = "logs"
    LOG_FILE: str = "waste-chat.log"
    LOG_LEVEL: str = "INFO"

    # Document store: "mongo" or "memory" (in-process, lost on restart)
    STORE_BACKEND: str = "mongo"
    MONGO_URI: str = "mongodb://localhost:27017/?replicaSet=rs0"
    MONGO_DB: str = "waste2worth"
    # In-process backend only. Orderings listed here behave as if the store
    # had no index for them, e.g. "messages.createdAt".
    STORE_UNINDEXED_ORDERINGS: List[str] = []
    STORE_LIVE_QUERIES: bool = True

    # Chat
    ECHO_TIMEOUT_SECONDS: float = 30.0
    ECHO_MATCH_WINDOW_SECONDS: float = 120.0

    # Collection confirmation
    OTP_REQUIRED: bool = True
    OTP_TTL_SECONDS: int = 600
    OTP_MAX_ATTEMPTS: int = 5
    OTP_RELAY_URL: str = Field(default="http://localhost:5174")

    # Profiles (empty -> in-memory directory)
    PROFILE_SERVICE_URL: str = Field(default="")

    # Mail relay
    SMTP_HOST: str = "smtp.gmail.com"
    SMTP_PORT: int = 587
    SMTP_EMAIL: str = ""
    SMTP_PASSWORD: str = ""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()
