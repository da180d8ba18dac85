"""Environment-driven configuration with Pydantic v2."""

from typing import Dict, Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Worker settings driven entirely by environment variables."""

    # Ops server (health / stats API)
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8010, ge=1024, le=65535)
    debug: bool = Field(default=False)

    # Database Configuration
    database_url: str = Field(default="sqlite+aiosqlite:///./data/flowqueue.db")
    database_echo: bool = Field(default=False)
    database_pool_size: int = Field(default=10, ge=1, le=100)
    database_max_overflow: int = Field(default=20, ge=0, le=100)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")
    log_file: Optional[str] = Field(default=None)

    # Worker loop
    worker_id: Optional[str] = Field(default=None)
    worker_batch_size: int = Field(default=5, ge=1, le=100)
    worker_sleep_interval: float = Field(default=2.0, ge=0.1, le=60.0)
    worker_lock_timeout: int = Field(default=600, ge=30)
    worker_max_attempts: int = Field(default=3, ge=1, le=20)
    worker_error_backoff: float = Field(default=5.0, ge=0.1, le=300.0)

    # Queue retry
    queue_retry_delay: int = Field(default=30, ge=1)

    # External task polling
    poll_interval: int = Field(default=10, ge=1)
    poll_retry_delay: int = Field(default=30, ge=1)
    poll_max_polls: int = Field(default=60, ge=1)
    poll_stale_after: int = Field(default=3600, ge=60)
    poll_priority: int = Field(default=5)

    # Node execution
    node_priority: int = Field(default=1)
    node_processing_guard: int = Field(default=300, ge=1)
    delay_default_seconds: int = Field(default=5, ge=0)
    delay_max_seconds: int = Field(default=60, ge=0)
    max_repeat_count: int = Field(default=100, ge=1, le=1000)

    # Recovery sweeper
    recovery_enabled: bool = Field(default=True)
    recovery_interval: int = Field(default=60, ge=5)
    recovery_grace_seconds: int = Field(default=900, ge=60)

    # Providers and plugins
    rhub_api_url: str = Field(default="https://www.runninghub.ai/openapi/v2/query")
    provider_timeout: float = Field(default=30.0, ge=1.0, le=300.0)
    integration_keys: Dict[str, str] = Field(default_factory=dict)
    provider_base_urls: Dict[str, str] = Field(default_factory=dict)
    plugin_api_timeout: float = Field(default=120.0, ge=1.0)
    plugins_dir: Optional[str] = Field(default=None)

    # Artifact storage
    object_storage_url: Optional[str] = Field(default=None)
    object_storage_zone: Optional[str] = Field(default=None)
    object_storage_access_key: Optional[str] = Field(default=None)
    cdn_url: Optional[str] = Field(default=None)
    upload_dir: str = Field(default="./uploads")
    app_url: str = Field(default="http://localhost:8010")
    storage_timeout: float = Field(default=120.0, ge=1.0)

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite") and ":memory:" not in v:
            if ":///" in v:
                db_path = v.split("///")[1]
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @property
    def object_storage_enabled(self) -> bool:
        """Whether remote object storage credentials are configured."""
        return bool(
            self.object_storage_url
            and self.object_storage_zone
            and self.object_storage_access_key
            and self.cdn_url
        )

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "forbid",
        "env_parse_none_str": "none",
        "env_nested_delimiter": "__",
    }
