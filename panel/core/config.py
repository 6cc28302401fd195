from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "VPS Panel Billing"
    environment: str = "development"
    api_v1_prefix: str = "/api/v1"
    log_level: str = "INFO"

    # Admin / owner-action API
    admin_api_token: str

    # Database
    database_url: str
    db_pool_size: int = 5
    db_max_overflow: int = 5
    db_pool_timeout: int = 15
    db_pool_recycle: int = 1200
    db_pool_pre_ping: bool = True

    # VirtFusion (hypervisor control panel)
    virtfusion_panel_url: str
    virtfusion_api_token: str
    virtfusion_timeout_seconds: int = 20
    virtfusion_retry_count: int = 2
    virtfusion_users_page_size: int = 50

    # Auth0 (identity provider)
    auth0_domain: str
    auth0_client_id: str
    auth0_client_secret: str
    auth0_timeout_seconds: int = 10
    auth0_exists_cache_ttl_seconds: int = 300
    auth0_not_exists_cache_ttl_seconds: int = 30
    # ext_relation_id values on the hypervisor that belong to our identity provider.
    identity_ext_relation_pattern: str = r"^auth0\|[A-Za-z0-9]+$"

    # Stripe (payment gateway)
    stripe_secret_key: str
    stripe_webhook_secret: Optional[str] = None
    currency: str = "aud"
    topup_min_amount: int = 500
    topup_max_amount: int = 50000

    # Billing policy (amounts are minor currency units)
    unpaid_grace_days: int = 5
    overdue_cancel_days: int = 7
    immediate_cancellation_minutes: int = 5
    grace_cancellation_days: int = 30

    # Scheduler
    scheduler_enabled: bool = True
    billing_interval_seconds: int = 600
    cancellation_interval_seconds: int = 30
    orphan_sweep_interval_seconds: int = 3600
    orphan_sweep_initial_delay_seconds: int = 300
    orphan_check_delay_seconds: float = 0.1
    cache_eviction_interval_seconds: int = 60

    auto_create_tables: bool = False

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)


@lru_cache
def get_settings() -> Settings:
    return Settings()
