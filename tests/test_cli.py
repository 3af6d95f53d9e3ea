"""Tests for the ferry command line."""

from pathlib import Path
from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner

from ferry.checkpoints import CheckpointStore
from ferry.cli import main
from ferry.config import ProjectConfig, get_project, save_project
from ferry.plan import load_plan

from tests.fakes import FakeProject


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def registered(ferry_home: Path, source: FakeProject, destination: FakeProject):
    """Register "src" and "dst" and route their clients to the in-memory fakes."""
    ferry_home.mkdir()
    (ferry_home / "config.yaml").write_text("schema_settle_delay: 0\nretry_backoff: 0.01\n")
    save_project(ProjectConfig("src", "https://eu.example.com/v1", "src", "k1"))
    save_project(ProjectConfig("dst", "https://us.example.com/v1", "dst", "k2"))
    clients = {"src": source, "dst": destination}

    with patch("ferry.cli.RestClient.from_project", side_effect=lambda project, config: clients[project.name]):
        yield clients


class TestProjectsCommands:
    """Tests for `ferry projects`."""

    def test_add_prompts_for_key(self, runner: CliRunner, ferry_home: Path):
        result = runner.invoke(
            main,
            ["projects", "add", "prod", "--endpoint", "https://cloud.example.com/v1", "--project-id", "p1"],
            input="secret\n",
        )

        assert result.exit_code == 0, result.output
        assert get_project("prod").api_key == "secret"

    def test_list_and_remove(self, runner: CliRunner, registered):
        listed = runner.invoke(main, ["projects", "list"])
        removed = runner.invoke(main, ["projects", "rm", "src"])

        assert listed.exit_code == 0
        assert "src" in listed.output
        assert removed.exit_code == 0
        assert get_project("src") is None

    def test_list_empty(self, runner: CliRunner, ferry_home: Path):
        result = runner.invoke(main, ["projects", "list"])

        assert "No projects registered" in result.output

    def test_unknown_project(self, runner: CliRunner, ferry_home: Path):
        result = runner.invoke(main, ["scan", "nope"])

        assert result.exit_code == 1
        assert "Unknown project" in result.output


class TestPlanCommands:
    """Tests for scan, toggle and edit."""

    def test_scan_saves_plan(self, runner: CliRunner, registered, tmp_path: Path):
        out = tmp_path / "plan.yaml"

        result = runner.invoke(main, ["scan", "src", "--out", str(out), "--no-users"])

        assert result.exit_code == 0, result.output
        plan = load_plan(out).unwrap()
        assert [d.source_id for d in plan.databases] == ["db-A", "db-B"]
        assert plan.users == ()
        assert plan.options.include_users is False

    def test_scan_failure(self, runner: CliRunner, registered, source: FakeProject):
        source.fail("list_databases", status=401)

        result = runner.invoke(main, ["scan", "src"])

        assert result.exit_code == 1
        assert "SCAN_FAILED" in result.output

    def test_toggle_and_edit(self, runner: CliRunner, registered, tmp_path: Path):
        out = tmp_path / "plan.yaml"
        runner.invoke(main, ["scan", "src", "--out", str(out)])

        toggled = runner.invoke(main, ["toggle", str(out), "databases/db-B"])
        edited = runner.invoke(main, ["edit", str(out), "databases/db-A/customers", "--target-id", "clients"])

        assert toggled.exit_code == 0, toggled.output
        assert edited.exit_code == 0, edited.output
        plan = load_plan(out).unwrap()
        assert plan.find(("databases", "db-B")).enabled is False
        assert plan.find(("databases", "db-B", "logs")).enabled is False
        assert plan.find(("databases", "db-A", "customers")).target_id == "clients"

    def test_bad_path(self, runner: CliRunner, registered, tmp_path: Path):
        out = tmp_path / "plan.yaml"
        runner.invoke(main, ["scan", "src", "--out", str(out)])

        wrong_category = runner.invoke(main, ["toggle", str(out), "widgets/x"])
        missing_node = runner.invoke(main, ["toggle", str(out), "buckets/nope"])

        assert wrong_category.exit_code == 1
        assert missing_node.exit_code == 1

    def test_edit_requires_a_change(self, runner: CliRunner, registered, tmp_path: Path):
        out = tmp_path / "plan.yaml"
        runner.invoke(main, ["scan", "src", "--out", str(out)])

        result = runner.invoke(main, ["edit", str(out), "buckets/media"])

        assert result.exit_code == 1


class TestMigrateCommand:
    """Tests for `ferry migrate`."""

    def test_full_migration(self, runner: CliRunner, registered, destination: FakeProject):
        result = runner.invoke(main, ["migrate", "src", "dst", "--fresh"])

        assert result.exit_code == 0, result.output
        assert "Completed" in result.output
        assert set(destination.databases) == {"db-A", "db-B"}
        assert destination.file_contents[("media", "f1")] == b"one"

    def test_edited_plan(self, runner: CliRunner, registered, destination: FakeProject, tmp_path: Path):
        out = tmp_path / "plan.yaml"
        runner.invoke(main, ["scan", "src", "--out", str(out)])
        runner.invoke(main, ["toggle", str(out), "databases/db-B"])

        result = runner.invoke(main, ["migrate", "src", "dst", "--plan", str(out), "--fresh"])

        assert result.exit_code == 0, result.output
        assert set(destination.databases) == {"db-A"}

    def test_failure_then_resume_prompt(self, runner: CliRunner, registered, destination: FakeProject):
        """A failed run offers a resume, and the next run asks before resuming."""
        destination.fail("create_team", status=500, times=1)

        failed = runner.invoke(main, ["migrate", "src", "dst"])

        assert failed.exit_code == 1
        assert "CREATION_FAILED" in failed.output
        assert "--resume" in failed.output

        destination.calls.clear()
        resumed = runner.invoke(main, ["migrate", "src", "dst"], input="y\n")

        assert resumed.exit_code == 0, resumed.output
        assert "Resume it?" in resumed.output
        assert destination.writes("create_database") == []
        assert "staff" in destination.teams
        assert set(destination.users) == {"u1", "u2"}

    def test_fresh_skips_prompt(self, runner: CliRunner, registered):
        CheckpointStore.default().mark_complete("src", "dst", "team:old", "old")

        result = runner.invoke(main, ["migrate", "src", "dst", "--fresh"])

        assert "Resume it?" not in result.output


class TestCheckpointsCommands:
    """Tests for `ferry checkpoints`."""

    def test_show_counts_by_type(self, runner: CliRunner, ferry_home: Path):
        store = CheckpointStore.default()
        store.mark_complete("src", "dst", "database:db-A", "db-A")
        store.mark_complete("src", "dst", "user:u1", "u1")

        result = runner.invoke(main, ["checkpoints", "show", "src", "dst"])

        assert result.exit_code == 0
        assert "database" in result.output
        assert "user" in result.output

    def test_show_empty(self, runner: CliRunner, ferry_home: Path):
        result = runner.invoke(main, ["checkpoints", "show", "src", "dst"])

        assert "No checkpoint" in result.output

    def test_clear(self, runner: CliRunner, ferry_home: Path):
        CheckpointStore.default().mark_complete("src", "dst", "database:db-A", "db-A")

        result = runner.invoke(main, ["checkpoints", "clear", "src", "dst", "--force"])

        assert result.exit_code == 0
        assert CheckpointStore.default().has_any("src", "dst") is False

    def test_clear_can_be_cancelled(self, runner: CliRunner, ferry_home: Path):
        CheckpointStore.default().mark_complete("src", "dst", "database:db-A", "db-A")

        runner.invoke(main, ["checkpoints", "clear", "src", "dst"], input="n\n")

        assert CheckpointStore.default().has_any("src", "dst") is True


class TestBackupCommands:
    """Tests for `ferry backup`."""

    def test_create_list_download(self, runner: CliRunner, registered, source: FakeProject, tmp_path: Path):
        created = runner.invoke(main, ["backup", "create", "src"])
        listed = runner.invoke(main, ["backup", "list", "src"])
        (file_id,) = source.files["ferry-backups"]
        out = tmp_path / "local.json.gz"
        downloaded = runner.invoke(main, ["backup", "download", "src", file_id, "--out", str(out)])

        assert created.exit_code == 0, created.output
        assert listed.exit_code == 0
        assert "No backups found" not in listed.output
        assert downloaded.exit_code == 0, downloaded.output
        assert out.read_bytes() == source.file_contents[("ferry-backups", file_id)]

    def test_list_empty(self, runner: CliRunner, registered):
        result = runner.invoke(main, ["backup", "list", "src"])

        assert "No backups found" in result.output

    def test_restore_into_other_project(self, runner: CliRunner, registered, source: FakeProject, destination: FakeProject):
        runner.invoke(main, ["backup", "create", "src"])
        (file_id,) = source.files["ferry-backups"]

        result = runner.invoke(main, ["backup", "restore", "src", file_id, "--into", "dst", "--yes"])

        assert result.exit_code == 0, result.output
        assert set(destination.users) == {"u1", "u2"}
        assert "ferry-backups" not in destination.buckets

    def test_restore_missing_backup(self, runner: CliRunner, registered):
        result = runner.invoke(main, ["backup", "restore", "src", "nope", "--yes"])

        assert result.exit_code == 1


class TestConfigCommands:
    """Tests for `ferry config`."""

    def test_set_and_show(self, runner: CliRunner, ferry_home: Path):
        set_result = runner.invoke(main, ["config", "set", "max-workers", "8"])
        show_result = runner.invoke(main, ["config", "show"])

        assert set_result.exit_code == 0, set_result.output
        assert yaml.safe_load((ferry_home / "config.yaml").read_text()) == {"max_workers": 8}
        assert "max_workers: 8" in show_result.output

    def test_unknown_key(self, runner: CliRunner, ferry_home: Path):
        result = runner.invoke(main, ["config", "set", "nope", "1"])

        assert result.exit_code == 1
        assert "Unknown config key" in result.output

    def test_bad_value(self, runner: CliRunner, ferry_home: Path):
        result = runner.invoke(main, ["config", "set", "proxy_fallback", "maybe"])

        assert result.exit_code == 1
