from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    supabase_url: str
    supabase_service_role_key: str
    beacon_api_key: str | None = None
    beacon_api_url: str | None = None
    beacon_hot_lead_threshold: int = 70
    beacon_timeout_seconds: float = 12.0
    internal_scheduler_secret: str | None = None
    app_base_path: str = "/prospect-appraisals"
    observability_export_url: str | None = None
    observability_export_bearer_token: str | None = None
    observability_export_timeout_seconds: float = 3.0

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
