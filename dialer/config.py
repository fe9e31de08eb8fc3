"""
Configuration module for the VoIP dialer.
Centralizes all environment variables and configuration settings.
"""

from typing import Optional, List, Dict
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field, field_validator, ValidationInfo
from enum import Enum


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class CallControlProviderType(str, Enum):
    CPAAS = "cpaas"


class LineCredentials(BaseModel):
    """Provider credentials for one outbound line (CLI number)."""
    username: str
    password: str


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server Configuration
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = False

    # Session client (browser side of the proxy)
    backend_base_url: str = "http://localhost:8000"
    auth_token_path: str = "/auth-token"
    call_action_path: str = "/call-action"
    upload_voice_path: str = "/upload-voice"
    call_logs_path: str = "/call-logs"
    request_timeout: int = 30

    # Call-control provider
    call_control_provider: CallControlProviderType = CallControlProviderType.CPAAS
    cpaas_base_url: str = "https://cts.myvi.in:8443/Cpaas/api/clicktocall"
    cpaas_username: Optional[str] = None
    cpaas_password: Optional[str] = None
    line_credentials: Dict[str, LineCredentials] = Field(default_factory=dict)
    default_line: Optional[str] = None

    # Call lifecycle
    redial_min_interval: float = 3.0
    ended_clear_delay: float = 2.0
    pingback_keepalive_interval: float = 15.0

    # Pingback stream reconnects
    pingback_reconnect_attempts: int = 10
    pingback_reconnect_base_delay: float = 1.0
    pingback_reconnect_max_delay: float = 30.0

    # Security
    enable_cors: bool = True
    cors_origins: List[str] = ["*"]

    # Monitoring
    log_call_payloads: bool = False

    @field_validator(
        "redial_min_interval",
        "ended_clear_delay",
        "pingback_keepalive_interval",
        "pingback_reconnect_base_delay",
        "pingback_reconnect_max_delay",
    )
    @classmethod
    def validate_positive_interval(cls, v):
        if v < 0:
            raise ValueError("Intervals must not be negative")
        return v

    @field_validator("cpaas_base_url")
    @classmethod
    def validate_cpaas_base_url(cls, v, info: ValidationInfo):
        """Provider traffic carries credentials, so production must use HTTPS."""
        if info.data.get("environment") == Environment.PRODUCTION and not v.startswith("https://"):
            raise ValueError("Provider base URL must use HTTPS in production")
        return v.rstrip("/")

    def get_line_credentials(self, line_id: Optional[str] = None) -> Optional[LineCredentials]:
        """
        Resolve provider credentials for a line.

        A requested line with its own credentials wins; otherwise the
        environment-level credentials are used. When no line is requested
        the configured default line is tried before the environment pair.
        """
        if line_id and line_id in self.line_credentials:
            return self.line_credentials[line_id]

        if self.cpaas_username and self.cpaas_password:
            return LineCredentials(username=self.cpaas_username, password=self.cpaas_password)

        if not line_id and self.default_line in self.line_credentials:
            return self.line_credentials[self.default_line]

        return None


# Global settings instance
settings = Settings()
