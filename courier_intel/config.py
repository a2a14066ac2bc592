"""
Configuration management for Courier Intelligence
"""
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """Application settings"""

    # Application
    app_name: str = "Courier Intelligence"
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"
    log_dir: str = "logs"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Database
    database_url: str = "sqlite:///./courier_intel.db"

    # Pseudonymization
    # Must be identical on every storefront plugin and on this server,
    # otherwise the same customer hashes differently per shop.
    customer_hash_salt: Optional[str] = None

    # Webhook authentication
    replay_window_seconds: int = 300

    # Ingestion
    ingest_timeout_seconds: float = 30.0

    # Risk policy
    late_delivery_threshold_days: int = 5
    risk_return_weight: int = 20
    risk_late_delivery_weight: int = 10
    risk_green_max: int = 30
    risk_yellow_max: int = 60

    # Courier status refresh
    # e.g. "acs=couriers.acs:AcsClient,elta=couriers.elta:EltaClient"
    courier_clients: str = ""
    voucher_refresh_batch_size: int = 100
    courier_max_attempts: int = 3
    courier_retry_base_delay: float = 2.0

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
