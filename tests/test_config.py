"""Tests for configuration loading."""

import pytest
from pathlib import Path

from storyforge.config import load_config
from storyforge.exceptions import ConfigError

ENV_KEYS = [
    "STORYFORGE_GENERATOR",
    "STORYFORGE_BASE_URL",
    "STORYFORGE_MODEL",
    "STORYFORGE_TIMEOUT",
    "STORYFORGE_BACKEND",
    "STORYFORGE_DATA_DIR",
    "STORYFORGE_COLLECTOR_URL",
    "STORYFORGE_CONSTRAINED",
    "STORYFORGE_LOG_LEVEL",
]


@pytest.fixture(autouse=True)
def clean_env(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


class TestConfig:
    def test_defaults(self):
        config = load_config()
        assert config.generator.name == "proxy"
        assert config.generator.timeout == 60
        assert config.storage.backend == "auto"
        assert config.retry.max_attempts == 3
        assert config.retry.base_delay_ms == 1000
        assert config.cache.max_entries == 50
        assert "inspiration" in config.cache.no_cache_modes
        assert "editor_feedback" in config.cache.no_cache_modes
        assert config.illustration.max_pages == 12
        assert config.illustration.effective_concurrency == 2

    def test_env_override(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("STORYFORGE_GENERATOR", "anthropic_api")
        monkeypatch.setenv("STORYFORGE_TIMEOUT", "15")
        monkeypatch.setenv("STORYFORGE_DATA_DIR", str(tmp_path / "data"))

        config = load_config()
        assert config.generator.name == "anthropic_api"
        assert config.generator.timeout == 15
        assert config.storage.root == tmp_path / "data"

    def test_toml_file(self, tmp_path: Path):
        toml_path = tmp_path / "storyforge.toml"
        toml_path.write_text("""
autosave_interval = 10

[generator]
base_url = "http://proxy:8080"

[storage]
backend = "flat"

[retry]
max_attempts = 5

[illustration]
constrained = true
""")
        config = load_config(toml_path)
        assert config.generator.base_url == "http://proxy:8080"
        assert config.storage.backend == "flat"
        assert config.retry.max_attempts == 5
        assert config.autosave_interval == 10
        assert config.illustration.effective_concurrency == 1

    def test_toml_discovered_in_cwd(self, tmp_path: Path):
        (tmp_path / "storyforge.toml").write_text('[generator]\nname = "anthropic_api"\n')
        config = load_config()
        assert config.generator.name == "anthropic_api"

    def test_env_overrides_toml(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("STORYFORGE_BACKEND", "collections")

        toml_path = tmp_path / "storyforge.toml"
        toml_path.write_text('[storage]\nbackend = "flat"\n')
        config = load_config(toml_path)
        assert config.storage.backend == "collections"  # env wins

    def test_constrained_env(self, monkeypatch):
        monkeypatch.setenv("STORYFORGE_CONSTRAINED", "yes")
        assert load_config().illustration.effective_concurrency == 1

    def test_unknown_backend_rejected(self, monkeypatch):
        monkeypatch.setenv("STORYFORGE_BACKEND", "redis")
        with pytest.raises(ConfigError, match="Unknown storage backend"):
            load_config()

    def test_invalid_toml(self, tmp_path: Path):
        toml_path = tmp_path / "storyforge.toml"
        toml_path.write_text("[generator\nname = ")
        with pytest.raises(ConfigError, match="Invalid"):
            load_config(toml_path)

    def test_invalid_number(self, monkeypatch):
        monkeypatch.setenv("STORYFORGE_TIMEOUT", "soon")
        with pytest.raises(ConfigError, match="Invalid configuration value"):
            load_config()
