"""Application configuration."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_parse_none_str="null",
        populate_by_name=True,
    )

    # Application
    app_name: str = Field(default="Appointment Saga API", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")
    api_v1_prefix: str = Field(default="/api/v1", alias="API_V1_PREFIX")

    # Server
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    reload: bool = Field(default=False, alias="RELOAD")

    # Backends ("redis" or "memory")
    store_backend: str = Field(default="redis", alias="STORE_BACKEND")
    broker_backend: str = Field(default="redis", alias="BROKER_BACKEND")

    # Redis
    redis_host: str = Field(default="localhost", alias="REDIS_HOST")
    redis_port: int = Field(default=6379, alias="REDIS_PORT")
    redis_username: str = Field(default="default", alias="REDIS_USERNAME")
    redis_password: str = Field(default="", alias="REDIS_PASSWORD")
    appointments_key_prefix: str = Field(default="appointment", alias="APPOINTMENTS_KEY_PREFIX")

    # Topics and queues
    queue_pe_name: str = Field(default="appointments:queue:pe", alias="QUEUE_PE_NAME")
    queue_cl_name: str = Field(default="appointments:queue:cl", alias="QUEUE_CL_NAME")
    confirmation_queue_name: str = Field(
        default="appointments:queue:confirmations",
        alias="CONFIRMATION_QUEUE_NAME",
    )
    error_stream_name: str = Field(default="appointments:errors", alias="ERROR_STREAM_NAME")
    event_bus_name: str = Field(default="appointment-bus", alias="EVENT_BUS_NAME")
    consumer_group: str = Field(default="appointment-saga", alias="CONSUMER_GROUP")
    consumer_name: str = Field(default="worker-1", alias="CONSUMER_NAME")

    # Delivery policy
    visibility_timeout_seconds: int = Field(default=180, alias="VISIBILITY_TIMEOUT_SECONDS")
    max_receive_count: int = Field(default=3, alias="MAX_RECEIVE_COUNT")
    # 14 days
    message_retention_seconds: int = Field(default=1_209_600, alias="MESSAGE_RETENTION_SECONDS")
    batch_size: int = Field(default=10, ge=1, le=10, alias="BATCH_SIZE")
    invocation_timeout_seconds: float = Field(default=30.0, alias="INVOCATION_TIMEOUT_SECONDS")
    ack_mode: str = Field(default="batch", alias="ACK_MODE")
    poll_interval_seconds: float = Field(default=1.0, alias="POLL_INTERVAL_SECONDS")

    # Intake
    conflict_check_fail_open: bool = Field(default=True, alias="CONFLICT_CHECK_FAIL_OPEN")

    # Regional databases
    rds_driver: str = Field(default="postgresql+asyncpg", alias="RDS_DRIVER")
    rds_pe_url: str | None = Field(default=None, alias="RDS_PE_URL")
    rds_pe_host: str = Field(default="localhost", alias="RDS_PE_HOST")
    rds_pe_port: int = Field(default=5432, alias="RDS_PE_PORT")
    rds_pe_user: str = Field(default="admin", alias="RDS_PE_USER")
    rds_pe_password: str = Field(default="password", alias="RDS_PE_PASSWORD")
    rds_pe_database: str = Field(default="appointments_pe", alias="RDS_PE_DATABASE")
    rds_cl_url: str | None = Field(default=None, alias="RDS_CL_URL")
    rds_cl_host: str = Field(default="localhost", alias="RDS_CL_HOST")
    rds_cl_port: int = Field(default=5432, alias="RDS_CL_PORT")
    rds_cl_user: str = Field(default="admin", alias="RDS_CL_USER")
    rds_cl_password: str = Field(default="password", alias="RDS_CL_PASSWORD")
    rds_cl_database: str = Field(default="appointments_cl", alias="RDS_CL_DATABASE")

    # CORS
    cors_origins_str: str = Field(
        default="http://localhost:3000",
        alias="CORS_ORIGINS",
    )
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")

    @property
    def cors_origins(self) -> list[str]:
        """Get CORS origins as a list."""
        return [origin.strip() for origin in self.cors_origins_str.split(",") if origin.strip()]

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: str = Field(default="json", alias="LOG_FORMAT")

    def regional_database_url(self, country: str) -> str:
        """
        Build the regional database URL for a country.

        Args:
            country: Country ISO code (PE or CL)

        Returns:
            SQLAlchemy connection URL
        """
        prefix = f"rds_{country.lower()}"
        override = getattr(self, f"{prefix}_url", None)
        if override:
            return override

        return (
            f"{self.rds_driver}://"
            f"{getattr(self, f'{prefix}_user')}:{getattr(self, f'{prefix}_password')}"
            f"@{getattr(self, f'{prefix}_host')}:{getattr(self, f'{prefix}_port')}"
            f"/{getattr(self, f'{prefix}_database')}"
        )

    def country_queue_name(self, country: str) -> str:
        """Get the queue name subscribed to a country's created events."""
        return getattr(self, f"queue_{country.lower()}_name")

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
