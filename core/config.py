from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field, AliasChoices
from pydantic_settings import BaseSettings


load_dotenv()


class AppSettings(BaseSettings):
    # Pydantic v2 settings configuration

    mongo_uri: str = Field(default="mongodb://localhost:27017", alias="MONGO_URI")
    # Accept MONGO_DB_NAME (preferred) or DATABASE_NAME (legacy)
    database_name: str = Field(
        default="clinic-booking",
        validation_alias=AliasChoices("MONGO_DB_NAME", "DATABASE_NAME"),
    )
    # "memory" keeps everything in-process (single worker / local dev only)
    store_backend: Literal["mongo", "memory"] = Field(default="mongo", alias="STORE_BACKEND")

    # Scheduling rules
    clinic_timezone: str = Field(default="UTC", alias="CLINIC_TIMEZONE")
    slot_granularity_minutes: int = Field(default=15, alias="SLOT_GRANULARITY_MINUTES")
    default_duration_minutes: int = Field(default=30, alias="DEFAULT_DURATION_MINUTES")
    min_duration_minutes: int = Field(default=15, alias="MIN_DURATION_MINUTES")
    max_duration_minutes: int = Field(default=120, alias="MAX_DURATION_MINUTES")
    max_advance_days: int = Field(default=90, alias="MAX_ADVANCE_DAYS")

    # Cancellation policy
    cancellation_notice_hours: int = Field(default=24, alias="CANCELLATION_NOTICE_HOURS")
    cancellation_flat_fee: Decimal = Field(default=Decimal("0"), alias="CANCELLATION_FLAT_FEE")
    late_cancellation_refund_percent: Decimal = Field(
        default=Decimal("100"), alias="LATE_CANCELLATION_REFUND_PERCENT"
    )

    # Conflict guard / ledger
    conflict_retry_attempts: int = Field(default=5, alias="CONFLICT_RETRY_ATTEMPTS")
    claim_grace_seconds: int = Field(default=60, alias="CLAIM_GRACE_SECONDS")

    # Refund outbox
    refund_max_attempts: int = Field(default=10, alias="REFUND_MAX_ATTEMPTS")
    refund_retry_base_seconds: int = Field(default=30, alias="REFUND_RETRY_BASE_SECONDS")
    refund_retry_batch_size: int = Field(default=50, alias="REFUND_RETRY_BATCH_SIZE")

    # Payment collaborator
    payment_service_url: Optional[str] = Field(default=None, alias="PAYMENT_SERVICE_URL")
    payment_api_key: Optional[str] = Field(default=None, alias="PAYMENT_API_KEY")
    payment_timeout_seconds: float = Field(default=10.0, alias="PAYMENT_TIMEOUT_SECONDS")

    # Notifications
    notifier: Literal["log", "email"] = Field(default="log", alias="NOTIFIER")
    smtp_host: str = Field(default="smtp.gmail.com", alias="SMTP_HOST")
    smtp_port: int = Field(default=587, alias="SMTP_PORT")
    smtp_username: Optional[str] = Field(default=None, alias="SMTP_USERNAME")
    smtp_password: Optional[str] = Field(default=None, alias="SMTP_PASSWORD")
    smtp_from_email: Optional[str] = Field(default=None, alias="SMTP_FROM_EMAIL")
    smtp_from_name: str = Field(default="Clinic", alias="SMTP_FROM_NAME")

    allowed_origins: str = Field(default="http://localhost:3000", alias="ALLOWED_ORIGINS")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    environment: Literal["development", "production", "test"] = Field(
        default="development", alias="ENVIRONMENT"
    )


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return AppSettings()


settings = get_settings()
