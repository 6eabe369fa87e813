from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="NOTE_IMPORTER_", extra="ignore")

    database_url: str = "sqlite:///note_importer_queue.db"
    api_host: str = "127.0.0.1"
    api_port: int = 8000
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: Optional[str] = None
    debug: bool = False

    # Stage 1 (extraction + analysis)
    max_concurrent_analysis: int = 3
    analysis_cache_ttl_hours: float = 24.0

    # Stage 2 (upload worker)
    upload_retry_base_delay: float = 5.0
    max_upload_retries: int = 3
    rate_limit_buffer: float = 2.0
    poll_interval: float = 1.0
    keep_completed_records: bool = False

    # Cleanup of kept records
    cleanup_batch_size: int = 10
    cleanup_batch_delay: float = 1.0

    metrics_enabled: bool = True


settings = Settings()
