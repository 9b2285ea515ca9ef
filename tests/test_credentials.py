"""Tests for collector credential storage."""

import stat
import tomllib
from pathlib import Path

import pytest

from aiobscura.collector.credentials import CredentialStore
from aiobscura.exceptions import ConfigError


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    return tmp_path / "config" / "config.toml"


class TestCredentialStore:
    def test_no_file_means_no_credentials(self, config_path: Path):
        store = CredentialStore(config_path)

        assert store.get() is None
        assert not store.has_credentials()

    def test_store_creates_owner_only_file(self, config_path: Path):
        store = CredentialStore(config_path)

        store.store("https://collector.test", "col-1", "cs_live_secret", workspace_id="ws-1")

        assert stat.S_IMODE(config_path.stat().st_mode) == 0o600
        credential = store.get()
        assert credential.collector_id == "col-1"
        assert credential.api_key == "cs_live_secret"
        assert credential.workspace_id == "ws-1"
        with open(config_path, "rb") as f:
            assert tomllib.load(f)["collector"]["enabled"] is True

    def test_other_sections_and_comments_survive(self, config_path: Path):
        config_path.parent.mkdir(parents=True)
        config_path.write_text(
            "# my settings\n[analytics]\ntool_call_threshold = 7\n\n"
            "[collector]\nbatch_size = 50\n"
        )

        CredentialStore(config_path).store("https://collector.test", "col-1", "key")

        content = config_path.read_text()
        assert "# my settings" in content
        data = tomllib.loads(content)
        assert data["analytics"]["tool_call_threshold"] == 7
        assert data["collector"]["batch_size"] == 50
        assert data["collector"]["collector_id"] == "col-1"

    def test_existing_credentials_need_force(self, config_path: Path):
        store = CredentialStore(config_path)
        store.store("https://collector.test", "col-1", "key-1")

        with pytest.raises(ConfigError, match="already exist"):
            store.store("https://collector.test", "col-2", "key-2")

        store.store("https://collector.test", "col-2", "key-2", force=True)
        assert store.get().collector_id == "col-2"

    def test_incomplete_credentials_are_ignored(self, config_path: Path):
        config_path.parent.mkdir(parents=True)
        config_path.write_text('[collector]\ncollector_id = "col-1"\n')

        assert CredentialStore(config_path).get() is None

    def test_invalid_toml(self, config_path: Path):
        config_path.parent.mkdir(parents=True)
        config_path.write_text("[collector\n")

        with pytest.raises(ConfigError, match="Invalid TOML"):
            CredentialStore(config_path).get()

    def test_defaults_to_xdg_config_path(self, isolated_env: Path):
        store = CredentialStore()

        assert store.config_path == isolated_env / ".config" / "aiobscura" / "config.toml"
