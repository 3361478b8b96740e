"""
Environment configuration loader using Pydantic BaseSettings.

This module centralizes all environment configuration for the webhook renewal
service: provider OAuth credentials, subscription lease policy, renewal
scheduling, storage and logging. All settings are validated at startup to fail
fast with clear errors.
"""

import secrets
from datetime import timedelta
from typing import Annotated, Any, List, Optional

import structlog
from pydantic import (
    AliasChoices,
    BeforeValidator,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = structlog.get_logger(__name__)


def parse_string_list(v: Any) -> List[str]:
    """
    Parse string lists from various input formats.

    Supports:
    - Native Python list (from code/tests)
    - Space or comma separated string: 'Mail.Read offline_access'
    - Empty string or None: returns empty list
    """
    if isinstance(v, list):
        return v
    if isinstance(v, str):
        return [item for item in v.replace(",", " ").split() if item]
    if v is None:
        return []
    return v


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Priority order for loading values:
    1. Environment variables (highest priority)
    2. .env file
    3. Default values defined here
    """

    # ===== Application Settings =====
    app_env: str = Field(
        default="development",
        description="Application environment (development/staging/production/test)",
    )

    app_name: str = Field(
        default="Webhook Renewal Service",
        description="Application name for logging and identification",
    )

    app_version: str = Field(default="0.1.0", description="Application version")

    log_level: str = Field(
        default="INFO", description="Logging level (DEBUG/INFO/WARNING/ERROR)"
    )

    # ===== Server Configuration =====
    host: str = Field(default="0.0.0.0", description="Host to bind the server to")

    port: int = Field(
        default=3000, description="Port to bind the server to", ge=1, le=65535
    )

    app_url: str = Field(
        default="http://localhost:3000",
        description="Public base URL of this service (used for callback and webhook URLs)",
    )

    webhook_url: Optional[str] = Field(
        default=None,
        description="Notification URL registered with the provider (defaults to {app_url}/webhook)",
    )

    webhook_secret: str = Field(
        default="",
        description="Shared secret sent as clientState and checked on every notification",
    )

    # ===== Database Configuration =====
    database_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("DATABASE_URL", "DB_URL"),
        description="Database URL; unset keeps subscriptions and tokens in memory",
    )

    database_pool_size: int = Field(
        default=5, description="Database connection pool size", ge=1, le=100
    )

    # ===== Microsoft Graph OAuth =====
    graph_client_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("GRAPH_CLIENT_ID", "CLIENT_ID"),
        description="Azure AD application (client) ID",
    )

    graph_client_secret: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("GRAPH_CLIENT_SECRET", "CLIENT_SECRET"),
        description="Azure AD application client secret",
    )

    graph_tenant: str = Field(
        default="common", description="Azure AD tenant used for authorize/token URLs"
    )

    graph_authority_url: str = Field(
        default="https://login.microsoftonline.com",
        description="Identity provider base URL",
    )

    graph_api_url: str = Field(
        default="https://graph.microsoft.com/v1.0",
        description="Provider API base URL",
    )

    graph_scopes: Annotated[List[str], NoDecode, BeforeValidator(parse_string_list)] = (
        Field(
            default=["https://graph.microsoft.com/Mail.ReadWrite", "offline_access"],
            description="Scopes requested at login and on every token refresh",
        )
    )

    # ===== Subscription Policy =====
    subscription_resource: str = Field(
        default="/me/messages", description="Provider resource to watch"
    )

    subscription_change_type: str = Field(
        default="created", description="Change types to be notified about"
    )

    subscription_lease_minutes: int = Field(
        default=4230,
        description="Lease requested on create/renew (provider maximum for mail is 4230)",
        ge=5,
        le=43200,
    )

    # ===== Renewal Engine =====
    renewal_enabled: bool = Field(
        default=True, description="Start the renewal engine with the application"
    )

    renewal_tick_interval_seconds: int = Field(
        default=3600, description="Seconds between renewal passes", ge=1
    )

    renewal_lookahead_hours: float = Field(
        default=24,
        description="Subscriptions expiring within this horizon are renewed",
        gt=0,
    )

    renewal_max_concurrent_users: int = Field(
        default=5,
        description="Users whose subscriptions are renewed in parallel",
        ge=1,
        le=100,
    )

    # ===== Token Refresh =====
    token_refresh_buffer_seconds: int = Field(
        default=300,
        description="Refresh access tokens this many seconds before they expire",
        ge=0,
        le=3600,
    )

    provider_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout for each provider and identity-provider call",
        gt=0,
        le=120,
    )

    # ===== Security & Encryption =====
    fernet_key: Optional[str] = Field(
        default=None,
        description="Fernet key for tokens at rest and session cookies (auto-generated if not provided)",
    )

    session_max_age_seconds: int = Field(
        default=7 * 24 * 3600,
        description="Lifetime of the session cookie",
        ge=60,
    )

    session_cookie_secure: bool = Field(
        default=False, description="Mark session cookies Secure (enable behind HTTPS)"
    )

    # ===== Validators =====

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper

    @field_validator("app_env")
    @classmethod
    def validate_app_env(cls, v: str) -> str:
        """Ensure app environment is valid."""
        valid_envs = ["development", "staging", "production", "test"]
        v_lower = v.lower()
        if v_lower not in valid_envs:
            raise ValueError(f"Invalid app_env: {v}. Must be one of {valid_envs}")
        return v_lower

    @field_validator("app_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("fernet_key", mode="before")
    @classmethod
    def generate_fernet_key_if_needed(cls, v: Optional[str]) -> str:
        """Generate Fernet key if not provided."""
        if v is None or v == "":
            from cryptography.fernet import Fernet

            key = Fernet.generate_key().decode()
            logger.warning(
                "Generated new Fernet key - save this in .env for persistence"
            )
            return key
        return v

    @field_validator("webhook_secret", mode="before")
    @classmethod
    def generate_webhook_secret_if_needed(cls, v: Optional[str]) -> str:
        """Generate a clientState secret if not provided."""
        if v is None or v == "":
            logger.warning(
                "Generated new webhook secret - existing subscriptions will reject notifications after restart"
            )
            return secrets.token_urlsafe(32)
        return v

    @model_validator(mode="after")
    def validate_renewal_timing(self) -> "Settings":
        """
        Enforce tick interval < lookahead window < lease duration.

        A lookahead shorter than the tick interval lets subscriptions expire
        between passes; a lease shorter than the lookahead makes every pass
        renew every subscription.
        """
        if self.tick_interval >= self.lookahead_window:
            raise ValueError(
                "renewal_tick_interval_seconds must be shorter than renewal_lookahead_hours"
            )
        if self.lookahead_window >= self.lease_duration:
            raise ValueError(
                "renewal_lookahead_hours must be shorter than subscription_lease_minutes"
            )
        return self

    # ===== Derived values =====

    @property
    def tick_interval(self) -> timedelta:
        return timedelta(seconds=self.renewal_tick_interval_seconds)

    @property
    def lookahead_window(self) -> timedelta:
        return timedelta(hours=self.renewal_lookahead_hours)

    @property
    def lease_duration(self) -> timedelta:
        return timedelta(minutes=self.subscription_lease_minutes)

    @property
    def token_refresh_buffer(self) -> timedelta:
        return timedelta(seconds=self.token_refresh_buffer_seconds)

    @property
    def notification_url(self) -> str:
        return self.webhook_url or f"{self.app_url}/webhook"

    @property
    def redirect_uri(self) -> str:
        return f"{self.app_url}/auth/callback"

    @property
    def token_url(self) -> str:
        return f"{self.graph_authority_url}/{self.graph_tenant}/oauth2/v2.0/token"

    @property
    def authorize_url(self) -> str:
        return f"{self.graph_authority_url}/{self.graph_tenant}/oauth2/v2.0/authorize"

    # ===== Pydantic Config =====

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,  # Accept GRAPH_CLIENT_ID or graph_client_id
        extra="ignore",
        populate_by_name=True,
    )

    def log_config(self) -> None:
        """Log configuration (with secrets masked)."""
        config_dict = self.model_dump()

        sensitive_fields = [
            "graph_client_secret",
            "webhook_secret",
            "fernet_key",
            "database_url",
        ]

        for field in sensitive_fields:
            if field in config_dict and config_dict[field]:
                value = str(config_dict[field])
                if len(value) > 8:
                    config_dict[field] = f"{value[:4]}...{value[-4:]}"
                else:
                    config_dict[field] = "***"

        logger.info("Configuration loaded", **config_dict)

    def validate_required_for_production(self) -> None:
        """Additional validation for production environment."""
        if self.app_env == "production":
            errors = []

            if not self.database_url:
                errors.append("DATABASE_URL is required in production")
            elif self.database_url.startswith("sqlite"):
                errors.append("SQLite is not supported in production")

            if not self.graph_client_id or not self.graph_client_secret:
                errors.append("Graph OAuth credentials required in production")

            if not self.app_url.startswith("https://"):
                errors.append("APP_URL must be https in production")

            if self.log_level == "DEBUG":
                logger.warning(
                    "DEBUG log level in production - consider using INFO or higher"
                )

            if errors:
                raise ValueError(
                    f"Production configuration errors: {'; '.join(errors)}"
                )


# ===== Global Settings Instance =====

_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the global settings instance (singleton pattern).

    Use this function as a FastAPI dependency for injecting settings.
    """
    global _settings
    if _settings is None:
        try:
            _settings = Settings()
            _settings.validate_required_for_production()
            logger.info(
                "Settings loaded successfully",
                app_env=_settings.app_env,
                app_version=_settings.app_version,
            )
        except ValidationError as e:
            logger.error("Failed to load settings", errors=e.errors())
            raise
        except Exception as e:
            logger.error("Unexpected error loading settings", error=str(e))
            raise

    return _settings


def reset_settings() -> None:
    """Reset settings (useful for testing)."""
    global _settings
    _settings = None
