from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Map the env var named DATABASE_URL to this field
    database_url: str = Field(alias="DATABASE_URL")

    # Empty address -> no reconciliation poller is started
    accrual_system_address: str = Field(default="", alias="ACCRUAL_SYSTEM_ADDRESS")
    accrual_timeout_seconds: float = Field(default=3.0, gt=0, alias="ACCRUAL_TIMEOUT_SECONDS")

    poll_interval_seconds: float = Field(default=5.0, gt=0, alias="POLL_INTERVAL_SECONDS")
    poller_batch_size: int = Field(default=10, gt=0, alias="POLLER_BATCH_SIZE")
    poller_enabled: bool = Field(default=True, alias="POLLER_ENABLED")

    currency: str = Field(default="POINTS", alias="LOYALTY_CURRENCY")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    db_pool_size: int = Field(default=5, gt=0, alias="DB_POOL_SIZE")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

settings = Settings()
