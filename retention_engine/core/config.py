"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"
    VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "sqlite:///./retention.db"

    # Storage collaborator ("local", "s3" or "memory")
    STORAGE_BACKEND: str = "local"
    STORAGE_LOCAL_DIR: str = "./storage"
    STORAGE_LOCAL_ANONYMIZE: bool = False
    S3_BUCKET: str = ""
    S3_REGION: str = ""
    S3_ENDPOINT_URL: str = ""
    AWS_ACCESS_KEY_ID: str = ""
    AWS_SECRET_ACCESS_KEY: str = ""

    # Every storage call is bounded; a timeout counts as a storage failure
    STORAGE_TIMEOUT_SECONDS: float = 30.0

    # Executor
    EXECUTOR_BATCH_SIZE: int = 50
    DELETION_MAX_ATTEMPTS: int = 3
    RETRY_BACKOFF_SECONDS: int = 300
    STALE_CLAIM_SECONDS: int = 900

    # Scheduler
    SCHEDULER_BATCH_SIZE: int = 500
    USER_REQUEST_GRACE_HOURS: int = 24
    GDPR_REQUEST_GRACE_HOURS: int = 0

    # Worker loop
    WORKER_POLL_INTERVAL: int = 30
    WORKER_ID: str = ""

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")


settings = Settings()
