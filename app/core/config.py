from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_env: str = "local"
    api_v1_prefix: str = "/api/v1"
    log_level: str = "INFO"

    # Security
    secret_key: str = "changeme"  # override in .env
    access_token_expire_minutes: int = 60

    # Database
    database_url: str = "sqlite:///./clinical_portal.db"

    # Redis
    redis_url: str | None = None

    # Guest portal
    guest_portal_base_url: str = "http://localhost:5173"

    # AI completion gateway (OpenAI-compatible)
    ai_gateway_url: str = "https://ai.gateway.example.com/v1"
    ai_gateway_api_key: str | None = None
    ai_chat_model: str = "google/gemini-2.5-flash"
    ai_fast_model: str = "google/gemini-2.5-flash-lite"
    ai_timeout_seconds: float = 60.0

    # External registries
    topus_api_url: str = "https://topus.com.co/ApiRest/request_ss"
    topus_api_token: str | None = None
    hismart_api_url: str | None = None
    hismart_api_token: str | None = None
    rethus_api_url: str | None = None
    rethus_api_key: str | None = None
    registry_timeout_seconds: float = 30.0
    registry_cache_ttl_seconds: int = 600

    # Chat context bounds
    chat_history_limit: int = 50
    chat_document_limit: int = 20
    chat_document_char_budget: int = 1500
    chat_structured_char_budget: int = 800

    # Clinic admin tooling
    bulk_upload_row_delay_seconds: float = 0.5

    # Platform bootstrap (scripts/setup_platform.py)
    super_admin_email: str | None = None
    super_admin_password: str | None = None
    super_admin_full_name: str = "Platform Admin"

    # File storage
    file_storage_root: str = "uploads"

    # Pydantic v2 style config
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Cached settings instance so the .env is parsed once.
    """
    return Settings()
