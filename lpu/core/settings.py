# lpu/core/settings.py
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    APP_NAME: str = "lpu-pricing"

    # --- Database ---
    DATABASE_URL: str = "sqlite:///./lpu.db"

    # --- Rule engine ---
    RULE_ENGINE_MAX_WORKERS: int = 4
    RULE_ENGINE_SAVE_TIMEOUT_SECONDS: float = 30.0
    RULE_ENGINE_LOCK_TIMEOUT_SECONDS: float = 10.0
    DEFAULT_CURRENCY: str = "BRL"

    # Optional YAML rule file; when set it replaces the database rule store
    RULES_YAML_PATH: Optional[str] = None

    # --- Item attribute cache (owned by the context resolver) ---
    ITEM_CACHE_MAX_ENTRIES: int = 5000
    ITEM_CACHE_TTL_SECONDS: float = 300.0

    # --- Audit ---
    AUDIT_ENABLED: bool = True

    ALLOWED_ORIGINS: list[str] = ["http://localhost:5173"]
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()  # leest .env
