"""Configuration management for clinic_os."""

from functools import lru_cache
from typing import TYPE_CHECKING, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from clinic_os.scheduling.models import WorkingHoursPolicy


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/clinic.db",
        description="SQLAlchemy async URL for the session store",
    )

    # API Settings
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8080)
    api_key: str = Field(
        default="",
        description="API key for authenticating requests",
    )

    # CORS
    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        description="Allowed CORS origins",
    )

    # Debug
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode (exposes error details in responses)",
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")

    # Working hours (single global policy for every practitioner)
    work_day_start_hour: int = Field(default=9, ge=0, le=23)
    work_day_end_hour: int = Field(default=18, ge=1, le=24)
    lunch_start_hour: int = Field(default=13, ge=0, le=23)
    lunch_end_hour: int = Field(default=14, ge=0, le=24)
    slot_granularity_minutes: int = Field(default=30, ge=5)
    clinic_timezone: str = Field(
        default="UTC",
        description="IANA zone in which working hours and calendar dates are interpreted",
    )
    default_slot_duration_minutes: int = Field(
        default=60,
        description="Slot length used when neither a therapy nor a duration is given",
    )

    # Booking rules
    duration_tolerance: float = Field(
        default=0.2,
        ge=0.0,
        lt=1.0,
        description="Allowed relative deviation from the therapy's nominal duration",
    )
    min_cancellation_reason_length: int = Field(default=10)
    preserve_confirmation_on_practitioner_reschedule: bool = Field(
        default=False,
        description="Keep 'confirmed' when the practitioner moves their own session",
    )

    # Periodic sweep
    no_show_grace_minutes: int = Field(default=30)
    auto_complete_buffer_minutes: int = Field(default=15)
    stuck_session_days: int = Field(default=3)
    sweep_interval_minutes: int = Field(default=30)

    # Concurrency
    commit_retry_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts for the atomic check-and-write before giving up",
    )

    # Slot reallocation after cancellations
    reallocation_lookback_days: int = Field(default=90)
    reallocation_max_recipients: int = Field(default=10)

    # Notifications
    notification_webhook_url: str = Field(
        default="",
        description="If set, notifications are POSTed here instead of only logged",
    )
    notification_timeout: float = Field(default=5.0)

    @property
    def has_notification_webhook(self) -> bool:
        """Check if a notification webhook is configured."""
        return bool(self.notification_webhook_url)

    def working_hours(self) -> "WorkingHoursPolicy":
        """Build the working-hours policy consumed by the availability resolver."""
        from clinic_os.scheduling.models import WorkingHoursPolicy

        return WorkingHoursPolicy(
            start_hour=self.work_day_start_hour,
            end_hour=self.work_day_end_hour,
            lunch_start_hour=self.lunch_start_hour,
            lunch_end_hour=self.lunch_end_hour,
            granularity_minutes=self.slot_granularity_minutes,
            timezone=self.clinic_timezone,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
