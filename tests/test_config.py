"""Tests for ferry.config."""

import stat
from pathlib import Path

import pytest
import yaml

from ferry.config import (
    FerryConfig,
    ProjectConfig,
    coerce_config_value,
    ensure_directories,
    get_project,
    load_projects,
    remove_project,
    save_project,
)


class TestFerryConfig:
    """Tests for loading and saving tuning values."""

    def test_defaults_when_missing(self, tmp_path: Path):
        """No config file means defaults."""
        assert FerryConfig.load(tmp_path) == FerryConfig()

    def test_load_overrides(self, tmp_path: Path):
        """Known keys override defaults."""
        (tmp_path / "config.yaml").write_text("page_size: 25\nproxy_fallback: true\n")

        cfg = FerryConfig.load(tmp_path)

        assert cfg.page_size == 25
        assert cfg.proxy_fallback is True
        assert cfg.max_workers == FerryConfig().max_workers

    def test_unknown_keys_ignored(self, tmp_path: Path):
        """Keys from newer or older versions are ignored with a warning."""
        (tmp_path / "config.yaml").write_text("page_size: 10\nembedding_model: old\n")

        cfg = FerryConfig.load(tmp_path)

        assert cfg.page_size == 10
        assert not hasattr(cfg, "embedding_model")

    def test_empty_file(self, tmp_path: Path):
        """An empty file is the same as no file."""
        (tmp_path / "config.yaml").write_text("")

        assert FerryConfig.load(tmp_path) == FerryConfig()

    def test_save_writes_only_changes(self, tmp_path: Path):
        """Only non-default values end up in the file."""
        result = FerryConfig(max_workers=8).save(tmp_path)

        assert result.is_ok()
        assert yaml.safe_load((tmp_path / "config.yaml").read_text()) == {"max_workers": 8}

    def test_save_defaults_writes_marker(self, tmp_path: Path):
        """Saving pure defaults still produces a loadable file."""
        FerryConfig().save(tmp_path)

        assert FerryConfig.load(tmp_path) == FerryConfig()

    def test_save_then_load(self, tmp_path: Path):
        cfg = FerryConfig(page_size=50, backup_bucket_id="nightly")
        cfg.save(tmp_path)

        assert FerryConfig.load(tmp_path) == cfg

    def test_load_uses_ferry_home(self, ferry_home: Path):
        """Without an argument the ferry home directory is used."""
        ferry_home.mkdir()
        (ferry_home / "config.yaml").write_text("max_retries: 1\n")

        assert FerryConfig.load().max_retries == 1


class TestCoerceConfigValue:
    """Tests for coerce_config_value()."""

    @pytest.mark.parametrize(
        ("key", "raw", "expected"),
        [
            ("page_size", "50", 50),
            ("retry_backoff", "0.5", 0.5),
            ("proxy_fallback", "yes", True),
            ("proxy_fallback", "Off", False),
            ("proxy_role", "source", "source"),
        ],
    )
    def test_converts_to_field_type(self, key: str, raw: str, expected):
        assert coerce_config_value(key, raw) == expected

    def test_unknown_key(self):
        with pytest.raises(KeyError):
            coerce_config_value("nope", "1")

    @pytest.mark.parametrize(("key", "raw"), [("page_size", "many"), ("proxy_fallback", "maybe")])
    def test_bad_value(self, key: str, raw: str):
        with pytest.raises(ValueError):
            coerce_config_value(key, raw)


class TestProjectRegistry:
    """Tests for the projects.yaml registry."""

    def _project(self, name: str = "prod") -> ProjectConfig:
        return ProjectConfig(name=name, endpoint="https://cloud.example.com/v1/", project_id=f"{name}-id", api_key="secret")

    def test_empty_registry(self, ferry_home: Path):
        assert load_projects() == {}
        assert get_project("prod") is None

    def test_save_and_get(self, ferry_home: Path):
        """A saved project can be looked up by name."""
        assert save_project(self._project()).is_ok()

        project = get_project("prod")
        assert project == self._project()
        assert project.base_url == "https://cloud.example.com/v1"

    def test_registry_is_owner_only(self, ferry_home: Path):
        """projects.yaml holds API keys and is written 0600."""
        save_project(self._project())

        mode = (ferry_home / "projects.yaml").stat().st_mode
        assert mode & stat.S_IRWXG == 0
        assert mode & stat.S_IRWXO == 0

    def test_save_replaces_same_name(self, ferry_home: Path):
        save_project(self._project())
        save_project(ProjectConfig("prod", "https://other.example.com/v1", "prod-id", "rotated"))

        assert load_projects()["prod"].api_key == "rotated"
        assert len(load_projects()) == 1

    def test_remove(self, ferry_home: Path):
        """remove_project reports whether something was removed."""
        save_project(self._project("prod"))
        save_project(self._project("staging"))

        assert remove_project("prod").unwrap() is True
        assert remove_project("prod").unwrap() is False
        assert list(load_projects()) == ["staging"]

    def test_malformed_entry_skipped(self, ferry_home: Path):
        """Entries missing fields are skipped instead of failing the whole file."""
        ferry_home.mkdir()
        (ferry_home / "projects.yaml").write_text(
            yaml.safe_dump(
                {
                    "projects": {
                        "good": {"endpoint": "https://e", "project_id": "p", "api_key": "k"},
                        "bad": {"endpoint": "https://e"},
                    }
                }
            )
        )

        assert list(load_projects()) == ["good"]


class TestEnsureDirectories:
    def test_creates_layout(self, ferry_home: Path):
        ensure_directories()

        assert (ferry_home / "checkpoints").is_dir()
        assert (ferry_home / "logs").is_dir()
