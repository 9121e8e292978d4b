# feedbackspec/config/settings.py
from pydantic_settings import BaseSettings
from pathlib import Path
from typing import Optional

# Get project root (2 levels up from this file)
PROJECT_ROOT = Path(__file__).parent.parent.parent

class Settings(BaseSettings):
    # OpenAI
    openai_api_key: Optional[str] = None
    openai_llm_model: str = "gpt-4o-mini"
    upstream_max_retries: int = 2
    upstream_retry_base_delay: float = 1.0

    # Gateway limits
    rate_limit_per_hour: int = 100
    rate_limit_window_seconds: int = 3600
    rate_limit_idle_seconds: int = 7200
    cache_ttl_seconds: int = 3600
    cache_max_entries: int = 1000
    maintenance_interval_seconds: int = 3600

    # Timeouts (seconds)
    request_timeout_seconds: float = 30.0
    analysis_timeout_seconds: float = 20.0
    duplicate_timeout_seconds: float = 20.0
    clustering_timeout_seconds: float = 30.0

    # Analysis / clustering
    max_batch_size: int = 50
    duplicate_window: int = 20
    clustering_stale_after_hours: int = 24
    clustering_retry_backoff_seconds: int = 300
    cluster_match_strategy: str = "theme"
    cluster_match_threshold: float = 0.3

    # PostgreSQL (feedback + cluster rows)
    postgres_host: Optional[str] = None
    postgres_port: int = 5432
    postgres_database: Optional[str] = None
    postgres_username: Optional[str] = None
    postgres_password: Optional[str] = None
    postgres_sslmode: str = "require"

    @property
    def ai_configured(self) -> bool:
        """True when an OpenAI credential is present."""
        return bool(self.openai_api_key and self.openai_api_key.strip())

    class Config:
        env_file = str(PROJECT_ROOT / ".env")
        case_sensitive = False
