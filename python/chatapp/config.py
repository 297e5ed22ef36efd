"""Client settings loaded from environment variables.

Environment Configuration:
    CHATAPP_ENV: Deployment environment (local | test | staging | prod)
    TREE_STORE_BACKEND: Realtime tree store backend (memory | sql)
    DATABASE_URL: SQLAlchemy connection string for the sql backend

Blob Storage Configuration (required in staging/prod):
    SUPABASE_URL: Supabase project URL
    SUPABASE_SERVICE_KEY: Supabase service role key
    STORAGE_BUCKET: Bucket holding chat and profile images

Core Behaviour:
    CONTACT_MATCH_TIMEOUT_S: Upper wait bound for contact matching (default 10s)
    UPLOAD_MAX_RETRIES / UPLOAD_RETRY_BACKOFF_S: Upload retry policy
    DETERMINISTIC_CONVERSATION_IDS: Derive conversation ids from the participant pair
    LOG_JSON: Render logs as JSON (true) or console-friendly text (false)
"""

from enum import Enum
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


class Environment(str, Enum):
    """Valid deployment environments."""

    LOCAL = "local"
    TEST = "test"
    STAGING = "staging"
    PROD = "prod"


class TreeStoreBackend(str, Enum):
    """Available realtime tree store implementations."""

    MEMORY = "memory"
    SQL = "sql"


class Settings(BaseSettings):
    """Client configuration.

    Validation rules:
    - DATABASE_URL must be non-empty when TREE_STORE_BACKEND=sql
    - SUPABASE_URL and SUPABASE_SERVICE_KEY are required in staging and prod
    - Timeouts must be positive, retry counts and backoff non-negative
    """

    chatapp_env: Environment = Field(default=Environment.LOCAL, alias="CHATAPP_ENV")
    tree_store_backend: TreeStoreBackend = Field(
        default=TreeStoreBackend.MEMORY, alias="TREE_STORE_BACKEND"
    )
    database_url: str = Field(default="sqlite+pysqlite:///:memory:", alias="DATABASE_URL")

    # Supabase Storage settings
    supabase_url: str | None = Field(default=None, alias="SUPABASE_URL")
    supabase_service_key: str | None = Field(default=None, alias="SUPABASE_SERVICE_KEY")
    storage_bucket: str = Field(default="chat-media", alias="STORAGE_BUCKET")

    contact_match_timeout_s: float = Field(default=10.0, alias="CONTACT_MATCH_TIMEOUT_S")
    upload_max_retries: int = Field(default=2, alias="UPLOAD_MAX_RETRIES")
    upload_retry_backoff_s: float = Field(default=1.0, alias="UPLOAD_RETRY_BACKOFF_S")
    deterministic_conversation_ids: bool = Field(
        default=True, alias="DETERMINISTIC_CONVERSATION_IDS"
    )

    log_json: bool = Field(default=True, alias="LOG_JSON")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @model_validator(mode="after")
    def validate_required_settings(self) -> "Settings":
        """Ensure backend-specific settings are present and bounds are sane."""
        if self.tree_store_backend == TreeStoreBackend.SQL and not self.database_url:
            raise ValueError("DATABASE_URL is required when TREE_STORE_BACKEND=sql")

        if self.chatapp_env in (Environment.STAGING, Environment.PROD):
            missing = []
            if not self.supabase_url:
                missing.append("SUPABASE_URL")
            if not self.supabase_service_key:
                missing.append("SUPABASE_SERVICE_KEY")
            if missing:
                raise ValueError(
                    f"Missing required storage settings for CHATAPP_ENV="
                    f"{self.chatapp_env.value}: {', '.join(missing)}"
                )

        if self.contact_match_timeout_s <= 0:
            raise ValueError("CONTACT_MATCH_TIMEOUT_S must be > 0")
        if self.upload_max_retries < 0:
            raise ValueError("UPLOAD_MAX_RETRIES must be >= 0")
        if self.upload_retry_backoff_s < 0:
            raise ValueError("UPLOAD_RETRY_BACKOFF_S must be >= 0")

        return self

    @property
    def has_remote_storage(self) -> bool:
        """Whether real Supabase storage credentials are configured."""
        return bool(self.supabase_url and self.supabase_service_key)


@lru_cache
def get_settings() -> Settings:
    """Get cached client settings.

    Returns:
        Settings instance loaded from environment.

    Raises:
        ValidationError: If settings are missing or invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache. Useful for testing."""
    get_settings.cache_clear()
