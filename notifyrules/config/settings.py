from typing import List, Union
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Application
    ENVIRONMENT: str = "development"
    NAME: str = "Notify Rules"
    VERSION: str = "1.0.0"
    API_PREFIX: str = "/api/v1"
    """Pydantic v2 doesn't support parsing List[str] from a plain comma-separated string by default anymore."""
    ALLOWED_HOSTS: Union[str, List[str]] = "http://localhost:3000"
    LOGGING_CONFIG_PATH: str = "logging_config.json"

    # Database
    DATABASE_URL: str = "sqlite+pysqlite:///./notifyrules.db"

    # Redis & Celery
    REDIS_PASSWORD: str = ""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0

    # Rule engine
    RULE_EVALUATION_CONCURRENCY: int = 4
    RULE_EVALUATION_TIMEOUT_SECONDS: float = 30.0
    RULE_DUE_BATCH_SIZE: int = 500
    # "after": evaluate first, gate actions on the launch cap
    # "before": gate evaluation itself on the launch cap
    RULE_LAUNCH_CHECK: str = "after"
    RULE_MINIMUM_RUNTIME_SECONDS: int = 86400

    @field_validator("ALLOWED_HOSTS", mode="before")
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if not v:
            return []
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",")]
        return v

    @field_validator("RULE_LAUNCH_CHECK", mode="before")
    def validate_launch_check(cls, v: str) -> str:
        value = str(v).strip().lower()
        if value not in ("after", "before"):
            raise ValueError("RULE_LAUNCH_CHECK must be 'after' or 'before'")
        return value

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()
