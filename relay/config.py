from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Storage - one JSON document per collection lives here
    DATA_DIR: str = "./data"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Branding used in notification titles and SMS bodies
    APP_NAME: str = "Code-Baba"

    # Web Push (VAPID) contact claim
    VAPID_SUBJECT: str = "mailto:admin@code-baba.com"

    # Twilio SMS - channel is enabled only when all three are set
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_PHONE_NUMBER: str = ""
    TWILIO_API_URL: str = "https://api.twilio.com/2010-04-01"

    # Upper bound for a single push or SMS attempt
    DELIVERY_TIMEOUT_SECONDS: float = 10.0

    # What happens to a member whose push subscription is gone for good
    EXPIRED_PUSH_POLICY: Literal["clear", "remove"] = "clear"

    CORS_ORIGINS: str = "*"

    HOST: str = "0.0.0.0"
    PORT: int = 3000

    @property
    def sms_enabled(self) -> bool:
        return bool(self.TWILIO_ACCOUNT_SID and self.TWILIO_AUTH_TOKEN and self.TWILIO_PHONE_NUMBER)

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()
