"""
Commerce Tracking Service
Centralized Configuration Management

Settings are loaded from environment variables (and an optional ``.env``
file) through Pydantic settings. Credentials, spreadsheet identifiers, the
CMS endpoint, the webhook secret and SMTP settings have no defaults: a
missing variable fails at startup.
"""

from functools import lru_cache
from typing import Dict, List, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GoogleSheetsSettings(BaseSettings):
    """Google service account used for the spreadsheet store"""

    model_config = SettingsConfigDict(env_prefix="GOOGLE_", env_file=".env", extra="ignore")

    client_email: str = Field(description="Service account e-mail")
    private_key: SecretStr = Field(description="Service account private key (PEM)")
    project_id: str = Field(description="Google Cloud project id")
    token_uri: str = Field(default="https://oauth2.googleapis.com/token", description="OAuth token endpoint")
    api_url: str = Field(default="https://sheets.googleapis.com/v4/spreadsheets", description="Sheets API base URL")
    timeout_seconds: float = Field(default=30.0, description="HTTP timeout for Sheets calls")

    @field_validator("private_key", mode="before")
    @classmethod
    def unescape_newlines(cls, v):
        """Keys passed through env files usually carry literal ``\\n`` sequences"""
        if isinstance(v, str):
            return v.replace("\\n", "\n")
        return v

    def service_account_info(self) -> Dict[str, str]:
        """Service account info in the shape google-auth expects"""
        return {
            "type": "service_account",
            "client_email": self.client_email,
            "private_key": self.private_key.get_secret_value(),
            "project_id": self.project_id,
            "token_uri": self.token_uri,
        }


class SpreadsheetSettings(BaseSettings):
    """Per-domain spreadsheet identifiers"""

    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")

    orders_spreadsheet_id: str = Field(description="Orders spreadsheet")
    analytics_spreadsheet_id: str = Field(description="User analytics spreadsheet")
    support_spreadsheet_id: str = Field(description="Customer support spreadsheet")
    inventory_spreadsheet_id: str = Field(description="Inventory spreadsheet")
    business_intelligence_spreadsheet_id: str = Field(description="Business intelligence spreadsheet")

    def by_domain(self) -> Dict[str, str]:
        return {
            "orders": self.orders_spreadsheet_id,
            "analytics": self.analytics_spreadsheet_id,
            "support": self.support_spreadsheet_id,
            "inventory": self.inventory_spreadsheet_id,
            "business_intelligence": self.business_intelligence_spreadsheet_id,
        }


class StrapiSettings(BaseSettings):
    """Upstream CMS configuration"""

    model_config = SettingsConfigDict(env_prefix="STRAPI_", env_file=".env", extra="ignore")

    api_url: str = Field(description="Strapi base URL")
    api_token: SecretStr = Field(description="Strapi API token")
    timeout_seconds: float = Field(default=30.0, description="HTTP timeout for CMS calls")

    @field_validator("api_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class WebhookSettings(BaseSettings):
    """Webhook ingress configuration"""

    model_config = SettingsConfigDict(env_prefix="WEBHOOK_", env_file=".env", extra="ignore")

    port: int = Field(description="Port the webhook server listens on")
    secret: SecretStr = Field(description="Shared HMAC secret")
    host: str = Field(default="0.0.0.0", description="Bind address")
    delivery_ttl_seconds: int = Field(default=86400, description="How long delivery ids are remembered")


class EmailSettings(BaseSettings):
    """SMTP and notification recipients"""

    model_config = SettingsConfigDict(env_prefix="SMTP_", env_file=".env", extra="ignore")

    host: str = Field(description="SMTP host")
    port: int = Field(description="SMTP port")
    user: str = Field(description="SMTP username")
    password: SecretStr = Field(alias="SMTP_PASS", description="SMTP password")
    from_address: str = Field(alias="NOTIFICATION_EMAIL", description="Sender and default recipient")
    timeout_seconds: float = Field(default=30.0, description="SMTP timeout")

    brand: str = Field(default="Commerce Tracking", alias="NOTIFICATION_BRAND", description="Subject prefix")
    alert_recipients: List[str] = Field(default_factory=list, alias="ALERT_RECIPIENTS")
    report_recipients: List[str] = Field(default_factory=list, alias="REPORT_RECIPIENTS")
    tech_recipients: List[str] = Field(default_factory=list, alias="TECH_RECIPIENTS")
    management_recipients: List[str] = Field(default_factory=list, alias="MANAGEMENT_RECIPIENTS")

    def recipients(self, group: str) -> List[str]:
        """Recipients for a group, falling back to the notification address"""
        configured = getattr(self, f"{group}_recipients")
        return list(configured) if configured else [self.from_address]


class SyncSettings(BaseSettings):
    """Sync scheduler configuration"""

    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")

    interval_minutes: int = Field(default=5, alias="SYNC_INTERVAL_MINUTES", description="Realtime sync interval")
    batch_size: int = Field(default=100, alias="BATCH_SIZE", description="CMS page size")
    lease_seconds: int = Field(default=3600, alias="SYNC_LEASE_SECONDS", description="Max lease held by a sync run")

    @field_validator("interval_minutes", "batch_size")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v


class RedisSettings(BaseSettings):
    """Optional Redis used for sync leases and delivery ids"""

    model_config = SettingsConfigDict(env_prefix="REDIS_", env_file=".env", extra="ignore")

    url: Optional[str] = Field(default=None, alias="REDIS_URL", description="Redis URL; unset keeps state in-process")
    socket_timeout: int = Field(default=5, description="Socket timeout in seconds")
    key_prefix: str = Field(default="commerce-tracking", description="Namespace for keys")


class MonitoringSettings(BaseSettings):
    """Logging configuration"""

    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Logging level")
    log_format: str = Field(default="json", alias="LOG_FORMAT", description="Log format: json or console")


class Settings(BaseSettings):
    """
    Main Application Settings

    Aggregates all configuration sections and provides a single entry point
    for accessing application configuration.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="commerce-tracking", alias="APP_NAME", description="Service name")
    app_env: str = Field(default="development", alias="APP_ENV", description="Environment")
    version: str = Field(default="1.0.0", description="Application version")
    tracking_enabled: bool = Field(default=True, alias="TRACKING_ENABLED", description="Run the sync scheduler")
    store_backend: str = Field(default="sheets", alias="STORE_BACKEND", description="sheets or memory")

    # Subsystem configurations
    google: GoogleSheetsSettings = Field(default_factory=GoogleSheetsSettings)
    spreadsheets: SpreadsheetSettings = Field(default_factory=SpreadsheetSettings)
    strapi: StrapiSettings = Field(default_factory=StrapiSettings)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    email: EmailSettings = Field(default_factory=EmailSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment value"""
        allowed = ["development", "staging", "production", "testing"]
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()

    @field_validator("store_backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        if v.lower() not in ("sheets", "memory"):
            raise ValueError("STORE_BACKEND must be 'sheets' or 'memory'")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.app_env == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development"""
        return self.app_env == "development"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Raises pydantic's ValidationError when a required variable is missing,
    which stops the process before anything is wired.

    Returns:
        Settings: Application settings instance
    """
    return Settings()
