from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    # ──────────────────────────────────────────────────────────────
    # Local cache (SQLite)
    # ──────────────────────────────────────────────────────────────

    cache_enabled: bool = Field(default=True, alias="CACHE_ENABLED")
    cache_db_path: str = Field(default="app_data/place_cache.db", alias="CACHE_DB_PATH")
    cache_duration_minutes: int = Field(default=60, alias="CACHE_DURATION_MINUTES")

    # ──────────────────────────────────────────────────────────────
    # Remote row store
    # "supabase" → PostgREST over HTTPS, "postgres" → direct PostGIS
    # ──────────────────────────────────────────────────────────────

    remote_backend: str = Field(default="supabase", alias="REMOTE_BACKEND")

    supa_url: str | None = Field(default=None, alias="SUPA_URL")
    supa_anon_key: str | None = Field(default=None, alias="SUPA_ANON_KEY")

    database_url: str | None = Field(default=None, alias="DATABASE_URL")

    remote_timeout_s: float = Field(default=20.0, alias="REMOTE_TIMEOUT_S")
    remote_row_limit: int = Field(default=5000, alias="REMOTE_ROW_LIMIT")

    # ──────────────────────────────────────────────────────────────
    # Schema
    # Review tables are tried in order; the first one that answers wins.
    # ──────────────────────────────────────────────────────────────

    places_table: str = Field(default="Place", alias="PLACES_TABLE")
    review_tables: str = Field(default="Reviews,reviews", alias="REVIEW_TABLES")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    def review_table_names(self) -> list[str]:
        out = [t.strip() for t in self.review_tables.split(",")]
        return [t for t in out if t]


settings = Settings()
