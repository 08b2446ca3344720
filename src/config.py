from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    shopify_webhook_secret: str | None = None
    shopify_store: str | None = None
    shopify_admin_api_token: str | None = None
    shopify_api_version: str = "2024-10"
    shopify_api_timeout_seconds: float = 10.0
    order_status_guard_mode: str = "monotonic"  # monotonic | last_write_wins
    internal_api_secret: str | None = None

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
