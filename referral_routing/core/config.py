from functools import lru_cache
from urllib.parse import quote_plus

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_name: str = "Referral Routing"
    database_url: str = Field(
        default="sqlite+aiosqlite:///./referral_routing.db",
        description="SQLAlchemy database URL",
        validation_alias=AliasChoices("DATABASE_URL", "database_url"),
    )
    mysql_host: str | None = Field(
        default=None,
        description="MySQL host",
        validation_alias="REFERRAL_ROUTING_MYSQL_HOST",
    )
    mysql_port: int = Field(
        default=3306,
        description="MySQL port",
        validation_alias="REFERRAL_ROUTING_MYSQL_PORT",
    )
    mysql_username: str | None = Field(
        default=None,
        description="MySQL username",
        validation_alias="REFERRAL_ROUTING_MYSQL_USER",
    )
    mysql_password: str | None = Field(
        default=None,
        description="MySQL password",
        validation_alias="REFERRAL_ROUTING_MYSQL_PASSWORD",
    )
    mysql_database: str | None = Field(
        default=None,
        description="MySQL database name",
        validation_alias="REFERRAL_ROUTING_MYSQL_DATABASE",
    )
    log_level: str = Field(
        default="INFO",
        description="Log level applied to the referral_routing logger tree",
        validation_alias="REFERRAL_ROUTING_LOG_LEVEL",
    )
    forward_max_attempts: int = Field(
        default=25,
        description="Optimistic retries before a contended ticket mutation gives up",
        validation_alias="REFERRAL_ROUTING_FORWARD_MAX_ATTEMPTS",
    )
    smtp_host: str | None = Field(
        default=None,
        description="SMTP host used for ticket notifications",
        validation_alias="REFERRAL_ROUTING_SMTP_HOST",
    )
    smtp_port: int = Field(
        default=587,
        description="SMTP port",
        validation_alias="REFERRAL_ROUTING_SMTP_PORT",
    )
    smtp_username: str | None = Field(
        default=None,
        description="SMTP username",
        validation_alias="REFERRAL_ROUTING_SMTP_USERNAME",
    )
    smtp_password: str | None = Field(
        default=None,
        description="SMTP password",
        validation_alias="REFERRAL_ROUTING_SMTP_PASSWORD",
    )
    smtp_sender: str | None = Field(
        default=None,
        description="Sender address for ticket notifications",
        validation_alias="REFERRAL_ROUTING_SMTP_SENDER",
    )
    smtp_use_tls: bool = Field(
        default=True,
        description="Enable STARTTLS when connecting to SMTP",
        validation_alias="REFERRAL_ROUTING_SMTP_USE_TLS",
    )
    smtp_use_ssl: bool = Field(
        default=False,
        description="Use implicit TLS when connecting to SMTP",
        validation_alias="REFERRAL_ROUTING_SMTP_USE_SSL",
    )
    webhook_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout applied to each outbound webhook request",
        validation_alias="REFERRAL_ROUTING_WEBHOOK_TIMEOUT",
    )
    webhook_user_agent: str = Field(
        default="Referral-Routing-Webhooks/1.0",
        description="User-Agent header sent with webhook deliveries",
        validation_alias="REFERRAL_ROUTING_WEBHOOK_USER_AGENT",
    )
    outbox_worker_enabled: bool = Field(
        default=True,
        description="Run the side-effect outbox worker inside the API process",
        validation_alias="REFERRAL_ROUTING_OUTBOX_WORKER_ENABLED",
    )
    outbox_poll_interval_seconds: float = Field(
        default=5.0,
        description="Seconds the outbox worker sleeps between polls when idle",
        validation_alias="REFERRAL_ROUTING_OUTBOX_POLL_INTERVAL",
    )
    outbox_batch_size: int = Field(
        default=20,
        description="Maximum outbox entries claimed per drain",
        validation_alias="REFERRAL_ROUTING_OUTBOX_BATCH_SIZE",
    )
    outbox_max_attempts: int = Field(
        default=5,
        description="Delivery attempts before an outbox entry is marked failed",
        validation_alias="REFERRAL_ROUTING_OUTBOX_MAX_ATTEMPTS",
    )
    outbox_processing_lease_seconds: float = Field(
        default=300.0,
        description="Seconds a claimed outbox entry may stay in processing before it is reclaimed",
        validation_alias="REFERRAL_ROUTING_OUTBOX_PROCESSING_LEASE",
    )
    outbox_backoff_base_seconds: float = Field(
        default=30.0,
        description="Initial retry delay for a failed side effect",
        validation_alias="REFERRAL_ROUTING_OUTBOX_BACKOFF_BASE",
    )
    outbox_backoff_max_seconds: float = Field(
        default=3600.0,
        description="Upper bound on the retry delay for a failed side effect",
        validation_alias="REFERRAL_ROUTING_OUTBOX_BACKOFF_MAX",
    )

    @property
    def resolved_database_url(self) -> str:
        if all([self.mysql_host, self.mysql_username, self.mysql_password, self.mysql_database]):
            user = quote_plus(self.mysql_username)
            password = quote_plus(self.mysql_password)
            return (
                f"mysql+aiomysql://{user}:{password}@{self.mysql_host}:{self.mysql_port}/{self.mysql_database}"
            )
        return self.database_url


@lru_cache()
def get_settings() -> Settings:
    return Settings()
