"""Application configuration."""

from decimal import Decimal
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
    app_name: str = Field(default="ClinicDesk API", alias="APP_NAME")
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
    redis_host: str = Field(default="localhost", alias="REDIS_HOST")
    redis_port: int = Field(default=6379, alias="REDIS_PORT")
    redis_username: str = Field(default="default", alias="REDIS_USERNAME")
    redis_password: str = Field(default="", alias="REDIS_PASSWORD")
    redis_decode_responses: bool = Field(default=True, alias="REDIS_DECODE_RESPONSES")

    # JWT (tokens are issued by the identity service, verified here)
    jwt_secret_key: str = Field(..., alias="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(default=30, alias="ACCESS_TOKEN_EXPIRE_MINUTES")

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

    # Scheduling
    cancel_cutoff_hours: int = Field(default=12, alias="CANCEL_CUTOFF_HOURS")
    slot_minutes: int = Field(default=30, alias="SLOT_MINUTES")
    default_day_start_hour: int = Field(default=9, alias="DEFAULT_DAY_START_HOUR")
    default_day_end_hour: int = Field(default=17, alias="DEFAULT_DAY_END_HOUR")
    clinic_timezone: str = Field(default="UTC", alias="CLINIC_TIMEZONE")
    slot_cache_ttl: int = Field(default=60, alias="SLOT_CACHE_TTL")

    # Billing
    billing_default_base_fee: Decimal = Field(
        default=Decimal("2000"),
        alias="BILLING_DEFAULT_BASE_FEE",
        description="Consultation fee used when no billing.base_fee config entry exists",
    )
    insurance_discount_rate: Decimal = Field(
        default=Decimal("0.25"),
        alias="INSURANCE_DISCOUNT_RATE",
    )

    # Payments
    payment_gateway_mode: str = Field(
        default="mock",
        alias="PAYMENT_GATEWAY_MODE",
        description="mock (test card matrix) or http",
    )
    payment_gateway_url: str = Field(default="", alias="PAYMENT_GATEWAY_URL")
    payment_gateway_api_key: str = Field(default="", alias="PAYMENT_GATEWAY_API_KEY")
    payment_gateway_timeout_seconds: float = Field(
        default=10.0, alias="PAYMENT_GATEWAY_TIMEOUT_SECONDS"
    )
    mock_gateway_latency_ms: int = Field(default=0, alias="MOCK_GATEWAY_LATENCY_MS")
    payment_rate_limit_per_minute: int = Field(default=10, alias="PAYMENT_RATE_LIMIT_PER_MINUTE")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()  # type: ignore[call-arg]


# Global settings instance
settings = get_settings()
