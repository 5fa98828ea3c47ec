"""Configuration settings for rootfsgen.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_REGISTRY_URL = "https://registry.rootfsgen.dev"


def _default_cache_dir() -> Path:
    """Return the default cache directory (build cache, registry cache)."""
    return Path.home() / ".cache" / "rootfsgen"


def _default_data_dir() -> Path:
    """Return the default data directory (downloads, cache index)."""
    return Path.home() / ".local" / "share" / "rootfsgen"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = _default_data_dir() / "cache-index.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the ROOTFSGEN_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="ROOTFSGEN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Root directory for the shared build cache",
    )
    data_dir: Path = Field(
        default_factory=_default_data_dir,
        description="Root directory for the shared download store",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Cache index database connection URL",
    )

    # Registry
    registry_url: str = Field(
        default=DEFAULT_REGISTRY_URL,
        description="Base URL of the package registry",
    )
    offline: bool = Field(
        default=False,
        description="Offline mode - only use cached registry data and downloads",
    )

    # Operational modes
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Builds
    jobs: int = Field(
        default=4,
        ge=1,
        le=256,
        description="Maximum number of packages built concurrently",
    )
    sandbox: bool = Field(
        default=False,
        description="Run build steps inside a container by default",
    )
    container_image: str = Field(
        default="alpine:latest",
        description="Container image used for sandboxed builds",
    )
    toolchain_version: str = Field(
        default="0.13.0",
        description="Toolchain version folded into every cache key",
    )
    default_target: str = Field(
        default="x86_64-linux-musl",
        description="Target triple used when the project has no board",
    )

    # Timeouts (in seconds)
    registry_timeout: int = Field(
        default=30,
        ge=1,
        description="Timeout for registry metadata requests",
    )
    download_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for source downloads",
    )

    @property
    def downloads_dir(self) -> Path:
        """Directory holding verified source downloads."""
        return self.data_dir / "downloads"

    @property
    def build_cache_dir(self) -> Path:
        """Directory holding cached build outputs."""
        return self.cache_dir / "build-cache"

    @property
    def registry_cache_dir(self) -> Path:
        """Directory holding cached registry responses."""
        return self.cache_dir / "registry"


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["DEFAULT_REGISTRY_URL", "Settings", "get_settings", "print_settings_json"]
