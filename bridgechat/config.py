from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.

    Carrier and auth secrets default to empty strings so a missing value
    surfaces as a per-request configuration error (HTTP 500) and as a
    failed readiness probe, rather than a crash at import time.
    """

    # Pydantic v2 settings config
    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required from .env
    DATABASE_URL: str

    LOG_LEVEL: str = "INFO"

    # "development" disables carrier signature checks
    ENVIRONMENT: str = "production"

    # Carrier gateway (Twilio-compatible)
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_WEBHOOK_URL: str = ""
    TWILIO_STATUS_CALLBACK_URL: str = ""
    TWILIO_API_BASE_URL: str = "https://api.twilio.com"
    TWILIO_TIMEOUT_SECONDS: float = 10.0

    # End-user tokens are issued by the external auth provider
    AUTH_JWT_SECRET: str = ""
    AUTH_JWT_ALG: str = "HS256"

    # Trusted internal callers (dispatch trigger)
    SERVICE_ROLE_KEY: str = ""

    DEFAULT_COUNTRY_CODE: str = "1"
    DEFAULT_SENDER_NAME: str = "Someone"

    @property
    def signature_checks_enabled(self) -> bool:
        return self.ENVIRONMENT.lower() != "development"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
