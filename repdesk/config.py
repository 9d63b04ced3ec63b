from pydantic_settings import BaseSettings, SettingsConfigDict

import os

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = "sqlite:///./repdesk.db"
    timezone: str = "America/Detroit"

    # MUST be set in production so OAuth redirect URIs resolve
    public_base_url: str = os.getenv("BASE_URL", "http://localhost:8000")

    secret_key: str = "change-me-in-production-for-jwt"
    admin_api_key: str | None = None
    superadmin_email: str | None = None
    superadmin_password: str | None = None

    # Meta App Dashboard -> Settings -> Basic -> App Secret (not the Instagram app secret)
    meta_app_secret: str | None = None
    meta_webhook_verify_token: str | None = None
    meta_webhook_debug_capture: bool = False

    instagram_app_id: str | None = None
    instagram_app_secret: str | None = None
    graph_api_version: str = "v24.0"

    gbp_client_id: str | None = None
    gbp_client_secret: str | None = None
    gbp_redirect_uri: str | None = None

    openai_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"

    scheduler_enabled: bool = True
    sync_interval_minutes: int = 15

    log_level: str = "INFO"
    axiom_token: str | None = None
    axiom_dataset: str | None = None
    axiom_url: str = "https://api.axiom.co"
    axiom_org_id: str | None = None

settings = Settings()
