from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str | None = None
    supabase_url: str | None = None
    supabase_service_role_key: str | None = None
    internal_scheduler_secret: str | None = None
    cors_origins: str = ""
    rate_limit_enabled: bool = True
    subscribe_rate_limit: str = "10/minute"

    keap_client_id: str | None = None
    keap_client_secret: str | None = None
    keap_refresh_token: str | None = None
    keap_webhook_secret: str | None = None
    keap_timeout_seconds: float = 12.0

    meta_access_token: str | None = None
    meta_access_tokens: dict[str, str] = {}
    meta_pixel_ids: dict[str, str] = {}
    meta_test_event_code: str | None = None
    meta_timeout_seconds: float = 10.0

    retry_worker_enabled: bool = True
    retry_worker_interval_seconds: float = 30.0
    retry_worker_batch_size: int = 50
    dispatcher_max_workers: int = 8
    delivery_pending_lease_seconds: float = 60.0

    dedup_window_minutes: int = 30
    reconcile_global_lookback_minutes: int = 10
    reconcile_global_limit: int = 50
    reconcile_contact_limit: int = 10

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
