"""Core configuration with Pydantic v2 Settings."""

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = "development"
    log_level: str = "INFO"
    # Optional file sink in addition to stdout, e.g. logs/dunning.log
    LOG_FILE: str = ""

    # Tenant (shop) definitions: JSON or YAML file
    DUNNING_SHOPS_CONFIG: str = "config/shops.json"
    DUNNING_TEMPLATES_DIR: str = "templates"
    DUNNING_DRY_RUN_DIR: str = "dry-run"

    # Loop settings
    DUNNING_RUN_MODE: Literal["service", "oneshot"] = "service"
    DUNNING_CYCLE_INTERVAL_SEC: int = 3600
    DUNNING_ORDER_DELAY_MS: int = 50
    DUNNING_TENANT_DELAY_MS: int = 100
    DUNNING_PAGE_SIZE: int = 50

    # Dunning rules
    DUNNING_DUE_DAYS_POLICY: Literal["reject", "coerce"] = "reject"
    DUNNING_IGNORE_TAG: str = "Mahnlauf ignorieren"
    # Sent-at custom fields are named <prefix>_<stage key>_sent_at
    DUNNING_MARKER_PREFIX: str = "junu_dunning"
    # Treat stage tags without a timestamp custom field as markers set at epoch 0
    DUNNING_LEGACY_TAG_MARKERS: bool = True

    # Shopware Admin API
    SHOPWARE_TIMEOUT_SEC: float = 10.0
    SHOPWARE_RETRY_MAX: int = 3
    SHOPWARE_BACKOFF_BASE_MS: int = 100
    SHOPWARE_TOKEN_EXPIRY_BUFFER_SEC: int = 60

    # Brevo transactional email
    BREVO_BASE_URL: str = "https://api.brevo.com/v3"
    BREVO_TIMEOUT_SEC: float = 30.0


# Global settings instance
settings = Settings()
