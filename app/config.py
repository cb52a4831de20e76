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
    )

    # Application
    app_name: str = Field(default="ClinicFlow API", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")
    api_v1_prefix: str = Field(default="/api/v1", alias="API_V1_PREFIX")

    # Server
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    reload: bool = Field(default=False, alias="RELOAD")

    # Database
    database_url: str = Field(..., alias="DATABASE_URL")

    # Redis
    redis_host: str = Field(..., alias="REDIS_HOST")
    redis_port: int = Field(..., alias="REDIS_PORT")
    redis_username: str = Field(default="default", alias="REDIS_USERNAME")
    redis_password: str = Field(default="", alias="REDIS_PASSWORD")
    redis_decode_responses: bool = Field(default=True, alias="REDIS_DECODE_RESPONSES")

    # Firebase
    firebase_credentials_path: str | None = Field(
        default=None,
        alias="FIREBASE_CREDENTIALS_PATH",
        description="Path to Firebase service account JSON file",
    )

    firebase_config_json: str | None = Field(
        default=None,
        alias="FIREBASE_CONFIG_JSON",
        description="Raw JSON string of the Firebase service account",
    )

    # CORS
    cors_origins_str: str = Field(
        default="http://localhost:3000",
        alias="CORS_ORIGINS",
    )
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")

    @property
    def cors_origins(self) -> list[str]:
        """Get CORS origins as a list."""
        if isinstance(self.cors_origins_str, str):
            return [origin.strip() for origin in self.cors_origins_str.split(",") if origin.strip()]
        return [self.cors_origins_str]

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: str = Field(default="json", alias="LOG_FORMAT")

    # Clinic
    clinic_timezone: str = Field(default="Asia/Kolkata", alias="CLINIC_TIMEZONE")

    # Tokens and queue
    token_grace_hours: int = Field(default=2, alias="TOKEN_GRACE_HOURS")
    token_issue_attempts: int = Field(default=5, alias="TOKEN_ISSUE_ATTEMPTS")
    default_consultation_minutes: int = Field(default=15, alias="DEFAULT_CONSULTATION_MINUTES")
    minutes_per_patient: int = Field(default=15, alias="MINUTES_PER_PATIENT")
    queue_expiry_interval_seconds: int = Field(default=300, alias="QUEUE_EXPIRY_INTERVAL_SECONDS")
    queue_alert_position: int = Field(default=2, alias="QUEUE_ALERT_POSITION")

    # Wait-time prediction
    transition_buffer_minutes: float = Field(default=1.5, alias="TRANSITION_BUFFER_MINUTES")
    duration_cache_ttl_seconds: int = Field(default=3600, alias="DURATION_CACHE_TTL_SECONDS")
    duration_history_days: int = Field(default=30, alias="DURATION_HISTORY_DAYS")
    duration_min_samples: int = Field(default=5, alias="DURATION_MIN_SAMPLES")

    # Online consultation links
    meet_link_lead_minutes: int = Field(default=18, alias="MEET_LINK_LEAD_MINUTES")
    meet_link_sweep_interval_seconds: int = Field(
        default=3600, alias="MEET_LINK_SWEEP_INTERVAL_SECONDS"
    )
    google_meet_access_token: str = Field(default="", alias="GOOGLE_MEET_ACCESS_TOKEN")
    google_calendar_id: str = Field(default="primary", alias="GOOGLE_CALENDAR_ID")
    jitsi_base_url: str = Field(default="https://meet.jit.si", alias="JITSI_BASE_URL")

    # Refund policy
    refund_full_window_hours: float = Field(default=6, alias="REFUND_FULL_WINDOW_HOURS")
    refund_gateway_fee_percentage: float = Field(default=2.5, alias="REFUND_GATEWAY_FEE_PERCENTAGE")
    refund_partial_percentage: int = Field(default=50, alias="REFUND_PARTIAL_PERCENTAGE")
    refund_compensation_credit: int = Field(default=50, alias="REFUND_COMPENSATION_CREDIT")
    refund_minimum_amount: int = Field(default=1, alias="REFUND_MINIMUM_AMOUNT")

    # Payment gateway
    razorpay_key_id: str = Field(default="", alias="RAZORPAY_KEY_ID")
    razorpay_key_secret: str = Field(default="", alias="RAZORPAY_KEY_SECRET")
    razorpay_api_url: str = Field(default="https://api.razorpay.com/v1", alias="RAZORPAY_API_URL")

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment.lower() == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()  # type: ignore[call-arg]


# Global settings instance
settings = get_settings()
