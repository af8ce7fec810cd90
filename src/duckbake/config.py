"""
Environment-driven settings.

Every value can be set through a ``DUCKBAKE_``-prefixed environment variable
or a ``.env`` file. Pillars accept explicit constructor arguments that take
precedence over these defaults.
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="DUCKBAKE_", env_file=".env", extra="ignore"
    )

    # Inference
    ollama_host: str = "http://localhost:11434"
    model: str = "llama3.1"
    embedding_model: str = "nomic-embed-text"

    # Streaming buffer: flush every interval or once this many bytes are pending
    coalesce_interval_ms: float = 16.0
    coalesce_max_bytes: Optional[int] = 4096

    # Timeouts in seconds; 0 or None disables
    stream_idle_timeout: Optional[float] = 120.0
    query_timeout: Optional[float] = 30.0

    # Context building
    row_search_limit: int = 5
    document_search_limit: int = 5
    sample_rows: int = 3
    history_limit: Optional[int] = None

    data_dir: Path = Path.home() / ".duckbake" / "projects"
    log_level: str = "INFO"

    @field_validator("stream_idle_timeout", "query_timeout", mode="after")
    @classmethod
    def zero_disables(cls, v):
        """A timeout of 0 means no timeout."""
        if v is not None and v <= 0:
            return None
        return v


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: Optional[str] = None) -> None:
    """Install a basic handler for applications embedding duckbake."""
    logging.basicConfig(
        level=(level or get_settings().log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
