from functools import lru_cache
from typing import Optional

from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from sms_forwarder.errors import ConfigurationError


DEFAULT_PUSH_SERVICE_URL = "https://exp.host/--/api/v2/push/send"


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.

    Two telephony credential schemes are accepted:
    - API key: TWILIO_API_KEY_SID + TWILIO_API_KEY_SECRET + TWILIO_ACCOUNT_SID
    - Auth token: TWILIO_ACCOUNT_SID + TWILIO_AUTH_TOKEN
    The API key scheme wins when both are complete.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Telephony credentials
    TWILIO_ACCOUNT_SID: Optional[str] = None
    TWILIO_AUTH_TOKEN: Optional[str] = None
    TWILIO_API_KEY_SID: Optional[str] = None
    TWILIO_API_KEY_SECRET: Optional[str] = None

    # Forwarding - required
    FORWARD_TO_NUMBER: str
    WEBHOOK_URL: str

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 3000
    LOG_LEVEL: str = "INFO"

    # Persistence
    MESSAGES_FILE: str = "messages.json"
    PUSH_TOKENS_FILE: str = "push-tokens.json"

    # Outbound delivery
    PUSH_SERVICE_URL: str = DEFAULT_PUSH_SERVICE_URL
    HTTP_TIMEOUT_SECONDS: float = Field(10.0, gt=0)
    DIAL_TIMEOUT_SECONDS: int = Field(30, gt=0)

    @model_validator(mode="after")
    def check_credentials(self) -> "Settings":
        if self.credential_scheme is None:
            raise ValueError(
                "Missing Twilio credentials. Need either "
                "TWILIO_API_KEY_SID + TWILIO_API_KEY_SECRET + TWILIO_ACCOUNT_SID "
                "or TWILIO_ACCOUNT_SID + TWILIO_AUTH_TOKEN"
            )
        return self

    @property
    def credential_scheme(self) -> Optional[str]:
        """Name of the credential scheme in use, or None if neither is complete."""
        if not self.TWILIO_ACCOUNT_SID:
            return None
        if self.TWILIO_API_KEY_SID and self.TWILIO_API_KEY_SECRET:
            return "api_key"
        if self.TWILIO_AUTH_TOKEN:
            return "auth_token"
        return None


def load_settings(**overrides) -> Settings:
    """
    Build and validate settings once.

    Raises:
        ConfigurationError: if credentials or required variables are missing
    """
    try:
        return Settings(**overrides)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'settings'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigurationError(f"Invalid configuration: {problems}") from e


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file more than once per process.
    """
    return load_settings()
