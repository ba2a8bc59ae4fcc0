"""Configuration loading from environment variables and storyforge.toml."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

from storyforge.exceptions import ConfigError

_DEFAULT_DATA_DIR = Path.home() / ".storyforge" / "data"
_CONFIG_FILENAME = "storyforge.toml"

# Idea generation and first-pass feedback must always be fresh.
DEFAULT_NO_CACHE_MODES = ("inspiration", "editor_feedback")


@dataclass
class GeneratorConfig:
    """Configuration for the remote text/image generator."""

    name: str = "proxy"
    base_url: str = "http://localhost:3000"
    model: str | None = None
    timeout: int = 60
    temperature: float = 0.8


@dataclass
class StorageConfig:
    """Persistence backend configuration."""

    backend: str = "auto"
    root: Path = _DEFAULT_DATA_DIR
    prefix: str = "storyforge_"
    quota_bytes: int = 5 * 1024 * 1024
    cache_ttl_seconds: int = 3600


@dataclass
class RetryConfig:
    """Backoff settings for remote calls."""

    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_jitter_ms: int = 1000


@dataclass
class CacheConfig:
    """In-memory response cache settings."""

    max_entries: int = 50
    no_cache_modes: list[str] = field(default_factory=lambda: list(DEFAULT_NO_CACHE_MODES))


@dataclass
class ReporterConfig:
    """Error reporting configuration."""

    collector_url: str | None = None
    max_logged: int = 50


@dataclass
class IllustrationConfig:
    """Picture-book generation limits."""

    max_pages: int = 12
    concurrency: int = 2
    constrained: bool = False

    @property
    def effective_concurrency(self) -> int:
        return 1 if self.constrained else max(1, self.concurrency)


@dataclass
class StoryForgeConfig:
    """Top-level StoryForge configuration."""

    generator: GeneratorConfig = field(default_factory=GeneratorConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    reporter: ReporterConfig = field(default_factory=ReporterConfig)
    illustration: IllustrationConfig = field(default_factory=IllustrationConfig)
    autosave_interval: int = 30
    max_revisions: int = 4
    log_level: str = "INFO"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_config(config_path: Path | None = None) -> StoryForgeConfig:
    """Load configuration from environment variables and optional storyforge.toml.

    Priority: environment variables > storyforge.toml > defaults.
    """
    file_data: dict = {}
    try:
        if config_path and config_path.exists():
            file_data = tomllib.loads(config_path.read_text())
        else:
            # Search current dir and ~/.storyforge/
            for candidate in [
                Path.cwd() / _CONFIG_FILENAME,
                Path.home() / ".storyforge" / _CONFIG_FILENAME,
            ]:
                if candidate.exists():
                    file_data = tomllib.loads(candidate.read_text())
                    break
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid {_CONFIG_FILENAME}: {e}") from e

    generator_data = file_data.get("generator", {})
    storage_data = file_data.get("storage", {})
    retry_data = file_data.get("retry", {})
    cache_data = file_data.get("cache", {})
    reporter_data = file_data.get("reporter", {})
    illustration_data = file_data.get("illustration", {})

    try:
        config = StoryForgeConfig(
            generator=GeneratorConfig(
                name=os.getenv("STORYFORGE_GENERATOR", generator_data.get("name", "proxy")),
                base_url=os.getenv(
                    "STORYFORGE_BASE_URL", generator_data.get("base_url", "http://localhost:3000")
                ),
                model=os.getenv("STORYFORGE_MODEL", generator_data.get("model")),
                timeout=int(os.getenv("STORYFORGE_TIMEOUT", generator_data.get("timeout", 60))),
                temperature=float(generator_data.get("temperature", 0.8)),
            ),
            storage=StorageConfig(
                backend=os.getenv("STORYFORGE_BACKEND", storage_data.get("backend", "auto")),
                root=Path(
                    os.getenv("STORYFORGE_DATA_DIR", storage_data.get("root", str(_DEFAULT_DATA_DIR)))
                ).expanduser(),
                prefix=storage_data.get("prefix", "storyforge_"),
                quota_bytes=int(storage_data.get("quota_bytes", 5 * 1024 * 1024)),
                cache_ttl_seconds=int(storage_data.get("cache_ttl_seconds", 3600)),
            ),
            retry=RetryConfig(
                max_attempts=int(retry_data.get("max_attempts", 3)),
                base_delay_ms=int(retry_data.get("base_delay_ms", 1000)),
                max_jitter_ms=int(retry_data.get("max_jitter_ms", 1000)),
            ),
            cache=CacheConfig(
                max_entries=int(cache_data.get("max_entries", 50)),
                no_cache_modes=list(cache_data.get("no_cache_modes", DEFAULT_NO_CACHE_MODES)),
            ),
            reporter=ReporterConfig(
                collector_url=os.getenv(
                    "STORYFORGE_COLLECTOR_URL", reporter_data.get("collector_url")
                ),
                max_logged=int(reporter_data.get("max_logged", 50)),
            ),
            illustration=IllustrationConfig(
                max_pages=int(illustration_data.get("max_pages", 12)),
                concurrency=int(illustration_data.get("concurrency", 2)),
                constrained=_env_bool(
                    "STORYFORGE_CONSTRAINED", bool(illustration_data.get("constrained", False))
                ),
            ),
            autosave_interval=int(file_data.get("autosave_interval", 30)),
            max_revisions=int(file_data.get("max_revisions", 4)),
            log_level=os.getenv("STORYFORGE_LOG_LEVEL", file_data.get("log_level", "INFO")),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}") from e

    if config.storage.backend not in ("auto", "flat", "collections"):
        raise ConfigError(f"Unknown storage backend: {config.storage.backend}")
    return config
