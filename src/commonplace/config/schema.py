"""Typed settings for every component.

Each section is a pydantic model nested under ``AppConfig``. Values come from
the TOML file (see ``commonplace.example.toml``) and can be overridden with
``COMMONPLACE_<SECTION>__<KEY>`` environment variables.
"""

from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DIMENSION = 1536


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class EmbeddingProviderType(str, Enum):
    """Supported embedding providers."""

    OPENAI = "openai"
    LOCAL = "local"


class EntryStoreType(str, Enum):
    """Supported entry stores."""

    SQLITE = "sqlite"
    MEMORY = "memory"


class EmbeddingConfig(BaseModel):
    """Which model embeds highlights and which one reads images."""

    provider: EmbeddingProviderType = EmbeddingProviderType.OPENAI
    model_name: str = "text-embedding-3-small"
    api_key: Optional[str] = None
    dimension: int = Field(default=DEFAULT_DIMENSION, gt=0)
    vision_model: str = "gpt-4o-mini"
    extra_params: dict[str, Any] = Field(default_factory=dict)


class StorageConfig(BaseModel):
    """Entry store configuration.

    ``dimension`` is the system-wide embedding length D. AppConfig keeps it
    in sync with ``embedding.dimension``.
    """

    store_type: EntryStoreType = EntryStoreType.SQLITE
    connection_string: Optional[str] = "sqlite:///~/.commonplace/entries.db"
    dimension: int = Field(default=DEFAULT_DIMENSION, gt=0)
    extra_params: dict[str, Any] = Field(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        """Expand ~ in connection string."""
        if self.connection_string and "~" in self.connection_string:
            self.connection_string = self.connection_string.replace(
                "~", str(Path.home())
            )


class IndexConfig(BaseModel):
    """Similarity index configuration.

    Below ``exact_threshold`` entries every search is an exact scan of the
    store. Above it, searches go through an HNSW snapshot held in an
    in-memory chromadb collection; the ``hnsw_*`` values are passed to it.
    """

    exact_threshold: int = Field(default=2000, ge=0)
    hnsw_m: int = Field(default=16, gt=1, description="Graph links per node")
    hnsw_construction_ef: int = Field(default=100, gt=0)
    hnsw_search_ef: int = Field(default=100, gt=0, description="Candidates explored per query")
    max_k: int = Field(default=100, gt=0)
    rebuild_interval_seconds: Optional[float] = Field(default=None, gt=0)


class LayoutConfig(BaseModel):
    """2D layout (UMAP-style projection) configuration."""

    min_dist: float = Field(default=0.3, gt=0.0)
    spread: float = Field(default=2.0, gt=0.0)
    min_neighbors: int = Field(default=2, gt=0)
    max_neighbors: int = Field(default=8, gt=0)
    neighbor_fraction: float = Field(default=0.1, gt=0.0, le=1.0)
    min_epochs: int = Field(default=50, gt=0)
    max_epochs: int = Field(default=100, gt=0)
    learning_rate: float = Field(default=1.0, gt=0.0)
    negative_sample_rate: int = Field(default=5, ge=0)
    random_state: Optional[int] = 42
    fallback_radius: float = Field(default=3.0, gt=0.0)
    max_entries: int = Field(default=5000, gt=0)


class JoinConfig(BaseModel):
    """Join graph configuration."""

    max_retries: int = Field(default=3, ge=0)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: LogLevel = LogLevel.INFO
    json_logs: bool = False
    enable_file: bool = False
    log_dir: Path = Field(default=Path.home() / ".commonplace" / "logs")
    max_days: int = Field(default=30, gt=0)

    def model_post_init(self, __context: Any) -> None:
        self.log_dir = self.log_dir.expanduser()


class AppConfig(BaseSettings):
    """Main application configuration.

    Loads from:
    1. Config file (TOML)
    2. Environment variables (prefixed with COMMONPLACE_)
    3. .env file
    """

    model_config = SettingsConfigDict(
        env_prefix="COMMONPLACE_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    # Application settings
    app_name: str = "commonplace"
    data_dir: Path = Field(default=Path.home() / ".commonplace")

    # Component configurations
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    index: IndexConfig = Field(default_factory=IndexConfig)
    layout: LayoutConfig = Field(default_factory=LayoutConfig)
    joins: JoinConfig = Field(default_factory=JoinConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        """Environment variables override values read from the config file."""
        return env_settings, init_settings, dotenv_settings, file_secret_settings

    @model_validator(mode="after")
    def sync_dimension(self) -> "AppConfig":
        """The store validates vectors against the provider's dimension."""
        self.storage.dimension = self.embedding.dimension
        return self

    def model_post_init(self, __context: Any) -> None:
        """Create the data directory so the default SQLite path is writable."""
        self.data_dir = self.data_dir.expanduser()
        self.data_dir.mkdir(parents=True, exist_ok=True)
