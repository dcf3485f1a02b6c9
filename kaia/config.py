"""Central Configuration System for Kaia.

This module is the single source of truth for engine configuration. Every
module that needs settings imports from here.

The configuration system supports:
- Multi-source configuration (environment variables > config file > defaults)
- Validation of every value through pydantic
- Graceful degradation: a missing or malformed config file falls back to defaults

Example:
    >>> from kaia.config import get_config
    >>>
    >>> cfg = get_config()
    >>> print(cfg.timeline.default_page_size)  # 20 by default

Config File Format (YAML):
    ```yaml
    timeline:
      default_page_size: 20
      max_page_size: 200
      default_sort_order: chronological-desc

    export:
      output_dir: ./exports
      max_workers: 2
      templates: [classic, minimal, scrapbook]
      max_items_per_page: 6

    logging:
      level: INFO
      file: ~/.kaia/kaia.log

    debug: false
    ```

Environment variables use the ``KAIA_`` prefix and ``__`` for nesting, e.g.
``KAIA_EXPORT__MAX_WORKERS=4``.
"""

from __future__ import annotations

import functools
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from kaia.core.models import SortOrder

logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================


class ConfigError(Exception):
    """Base exception for configuration errors."""

    pass


class ConfigFileError(ConfigError):
    """Exception raised for YAML config file issues.

    Raised when an explicitly requested config file does not exist or cannot
    be read. Files found in default locations never raise; they fall back to
    defaults with a warning.
    """

    pass


# =============================================================================
# Sections
# =============================================================================


class TimelineConfig(BaseModel):
    """Pagination settings for timeline views.

    Attributes:
        default_page_size: Items per page when the caller does not say.
        max_page_size: Largest page a caller may request.
        default_sort_order: Order used by the CLI when none is given.
    """

    default_page_size: int = Field(default=20, ge=1)
    max_page_size: int = Field(default=200, ge=1)
    default_sort_order: SortOrder = SortOrder.CHRONOLOGICAL_DESC

    @model_validator(mode="after")
    def check_page_bounds(self) -> "TimelineConfig":
        if self.default_page_size > self.max_page_size:
            raise ValueError(
                f"default_page_size ({self.default_page_size}) exceeds "
                f"max_page_size ({self.max_page_size})"
            )
        return self


class ExportConfig(BaseModel):
    """Settings for the export job manager and the default renderer.

    Attributes:
        output_dir: Root directory for rendered books, one subdirectory per owner.
        max_workers: Worker threads rendering exports (one owner renders at a time).
        templates: Layout templates the renderer accepts.
        max_items_per_page: Upper bound for ``LayoutStyle.items_per_page``.
    """

    output_dir: Path = Field(default=Path("./exports"))
    max_workers: int = Field(default=2, ge=1)
    templates: list[str] = Field(default_factory=lambda: ["classic", "minimal", "scrapbook"])
    max_items_per_page: int = Field(default=6, ge=1)

    @field_validator("output_dir", mode="before")
    @classmethod
    def expand_path(cls, v: Any) -> Path:
        return Path(v).expanduser()


class LoggingConfig(BaseModel):
    """Logging settings consumed by ``kaia.utils.logging.setup_logging``."""

    level: str = "INFO"
    file: Path | None = None

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator("file", mode="before")
    @classmethod
    def expand_file(cls, v: Any) -> Path | None:
        if v is None or v == "":
            return None
        return Path(v).expanduser()


class AppConfig(BaseSettings):
    """Top-level application configuration.

    Configuration priority (highest wins):
    1. Environment variables (KAIA_*)
    2. Config file (YAML)
    3. In-code defaults
    """

    timeline: TimelineConfig = Field(default_factory=TimelineConfig)
    export: ExportConfig = Field(default_factory=ExportConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    debug: bool = Field(default=False, description="Enable debug mode.")

    model_config = SettingsConfigDict(
        env_prefix="KAIA_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Environment beats values read from the YAML file (passed as init kwargs)
        return env_settings, init_settings, dotenv_settings, file_secret_settings


# =============================================================================
# Loading
# =============================================================================


DEFAULT_SEARCH_PATHS = (
    Path("./kaia.yaml"),
    Path("./kaia.yml"),
    Path.home() / ".kaia" / "config.yaml",
)


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigFileError(f"Cannot read config file {path}: {e}") from e

    try:
        loaded = yaml.safe_load(content) if content.strip() else None
    except yaml.YAMLError as e:
        logger.warning(f"Failed to parse config file {path}: {e}. Using defaults.")
        return {}

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        logger.warning(f"Config file {path} has unexpected format. Using defaults.")
        return {}
    return loaded


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration from file, environment, and defaults.

    If no config file is found, uses defaults only (not an error). If the
    config file is malformed or holds invalid values, logs a warning and
    uses defaults.

    Args:
        path: Optional path to config file. If None, searches default locations.

    Returns:
        Fully-populated AppConfig instance.

    Raises:
        ConfigFileError: If ``path`` is given but does not exist or cannot be read.
    """
    if path is not None and not path.exists():
        raise ConfigFileError(f"Config file not found: {path}")

    config_file = path
    if config_file is None:
        config_file = next((p for p in DEFAULT_SEARCH_PATHS if p.exists()), None)

    config_data: dict[str, Any] = {}
    if config_file is not None:
        config_data = _read_yaml(config_file)
        logger.debug(f"Loaded config file {config_file}")

    try:
        return AppConfig(**config_data)
    except ValidationError as e:
        logger.warning(f"Error parsing config values: {e}. Using defaults.")
        return AppConfig()


@functools.lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """Get the cached configuration singleton.

    Loads configuration once and returns the same instance on subsequent calls.
    """
    return load_config()


def reset_config() -> None:
    """Clear the configuration cache for testing.

    After calling this, the next call to get_config() will reload
    configuration from sources.
    """
    get_config.cache_clear()
