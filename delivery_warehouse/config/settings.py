"""
Food Delivery Warehouse
Centralized Configuration Management

Pydantic settings with environment variable and ``.env`` support for the
warehouse connection, the staging source, the merge engine and logging.
"""

from functools import lru_cache
from typing import Optional, List
from pydantic import Field, field_validator, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Warehouse Database Configuration"""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_", populate_by_name=True)

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    db: str = Field(default="food_delivery_dw", description="Database name")
    user: str = Field(default="warehouse", description="Database user")
    password: SecretStr = Field(default="secure_password", description="Database password")
    echo: bool = Field(default=False, description="Echo SQL queries")
    url: Optional[str] = Field(default=None, alias="WAREHOUSE_URL", description="Full SQLAlchemy URL (overrides host/port)")

    @property
    def async_url(self) -> str:
        """Async database URL - uses WAREHOUSE_URL if set, otherwise asyncpg from host/port"""
        if self.url:
            return self.url
        return f"postgresql+asyncpg://{self.user}:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"


class StagingSettings(BaseSettings):
    """Staging Area Configuration"""

    model_config = SettingsConfigDict(env_prefix="STAGING_")

    source_dir: str = Field(default="./data/staging", description="Directory holding staged CSV extracts")
    url: Optional[str] = Field(default=None, description="SQLAlchemy URL of a staging database")

    # CSV extracts
    users_file: str = Field(default="users.csv", description="Customer extract")
    restaurant_file: str = Field(default="restaurant.csv", description="Restaurant extract")
    orders_file: str = Field(default="orders.csv", description="Order extract")
    location_file: str = Field(default="location.csv", description="Location extract")

    # Staging tables
    users_table: str = Field(default="stg_users", description="Customer staging table")
    restaurant_table: str = Field(default="stg_restaurant", description="Restaurant staging table")
    orders_table: str = Field(default="stg_orders", description="Order staging table")
    location_table: str = Field(default="stg_location", description="Location staging table")

    null_values: List[str] = Field(
        default=["", "NULL", "null", "None", "NA", "N/A"],
        description="Tokens read as null",
    )


class MergeSettings(BaseSettings):
    """Merge Engine Configuration"""

    model_config = SettingsConfigDict(env_prefix="MERGE_")

    usd_to_inr_rate: float = Field(default=87.0, description="Conversion constant applied to USD amounts")
    source_currency: str = Field(default="USD", description="Currency converted on load")
    target_currency: str = Field(default="INR", description="Currency written in place of the source currency")
    invalid_amounts: List[float] = Field(
        default=[0.0, -1.0],
        description="Sentinel amounts marking unusable fact rows",
    )
    batch_size: int = Field(default=500, description="Rows per upsert statement")

    @field_validator("usd_to_inr_rate")
    @classmethod
    def validate_rate(cls, v: float) -> float:
        """Conversion rate must be positive"""
        if v <= 0:
            raise ValueError("Conversion rate must be positive")
        return v

    @field_validator("batch_size")
    @classmethod
    def validate_batch_size(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Batch size must be at least 1")
        return v


class MonitoringSettings(BaseSettings):
    """Logging Configuration"""

    model_config = SettingsConfigDict(env_prefix="")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Logging level")
    log_format: str = Field(default="json", description="Log format: json or text")


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

    app_name: str = Field(default="food-delivery-warehouse", alias="APP_NAME", description="Application name")
    app_env: str = Field(default="development", alias="APP_ENV", description="Environment")
    version: str = Field(default="1.0.0", description="Application version")

    # Subsystem configurations
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    staging: StagingSettings = Field(default_factory=StagingSettings)
    merge: MergeSettings = Field(default_factory=MergeSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment value"""
        allowed = ["development", "staging", "production", "testing"]
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.app_env == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Uses LRU cache to ensure settings are only loaded once.

    Returns:
        Settings: Application settings instance
    """
    return Settings()
