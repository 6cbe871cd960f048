"""Runtime configuration for convo-search."""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_DIR = Path.home() / ".local" / "share" / "convo-search"
INDEX_FILENAME = "index.db"


class Settings(BaseSettings):
    # input
    archive_path: Path = Field(default=Path("conversations.json"))
    data_dir: Path = Field(default=DEFAULT_DATA_DIR)

    # indexing
    ngram_size: int = Field(default=2, ge=1)

    # querying
    snippet_window: int = Field(default=80, ge=0)
    default_limit: int = Field(default=50, ge=1)
    max_limit: int = Field(default=500, ge=1)
    # skip n-grams found in more than this fraction of records (None = keep all)
    max_document_ratio: float | None = Field(default=None, gt=0, le=1)
    cache_size: int = Field(default=128, ge=0)

    # service
    host: str = "127.0.0.1"
    port: int = 8080
    max_concurrency: int = Field(default=8, ge=1)
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="CONVO_SEARCH_",
        env_file=".env",
        extra="ignore",
    )

    @property
    def index_path(self) -> Path:
        return self.data_dir / INDEX_FILENAME


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the process settings (cached)."""
    return Settings()
