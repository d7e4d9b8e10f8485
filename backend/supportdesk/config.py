from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict

_env_path = Path(__file__).resolve().parent.parent.parent / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(_env_path),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    DATABASE_URL: str
    REDIS_URL: str
    GOOGLE_CLIENT_ID: str
    GOOGLE_CLIENT_SECRET: str
    GOOGLE_PUBSUB_TOPIC: str
    GOOGLE_PUBSUB_CLAIM_EMAIL: str
    ENCRYPTION_KEY: str
    ANTHROPIC_API_KEY: str

    CLASSIFICATION_MODEL: str = "claude-haiku-4-5-20251001"
    CLASSIFICATION_TIMEOUT_SECONDS: float = 20.0
    EMAIL_UNDO_COUNTDOWN_SECONDS: int = 15

    S3_BUCKET: str = "supportdesk-files"
    S3_REGION: str = "us-east-1"
    AWS_ACCESS_KEY_ID: str | None = None
    AWS_SECRET_ACCESS_KEY: str | None = None

    LOG_LEVEL: str = "INFO"


settings = Settings()
