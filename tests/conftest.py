"""Shared fixtures: populated projects, fast config and a temporary ferry home."""

from pathlib import Path
from unittest.mock import patch

import pytest

from ferry.config import FerryConfig

from tests.fakes import FakeProject


@pytest.fixture
def source() -> FakeProject:
    """A populated source project."""
    project = FakeProject("src")
    project.add_database("db-A", "Main")
    project.add_collection(
        "db-A",
        "orders",
        "Orders",
        attributes=[
            {"key": "total", "type": "integer", "required": True},
            {
                "key": "customer",
                "type": "relationship",
                "relatedCollection": "customers",
                "relationType": "manyToOne",
            },
        ],
        indexes=[{"key": "by_total", "type": "key", "attributes": ["total"]}],
    )
    project.add_collection("db-A", "customers", "Customers", attributes=[{"key": "email", "type": "string"}])
    project.add_document("db-A", "orders", "o1", total=10)
    project.add_document("db-A", "orders", "o2", total=20)
    project.add_document("db-A", "customers", "c1", email="a@example.com")
    project.add_database("db-B", "Archive")
    project.add_collection("db-B", "logs", "Logs")
    project.add_document("db-B", "logs", "l1", line="hello")

    project.add_bucket("media", "Media")
    project.add_file("media", "f1", b"one", "one.txt")
    project.add_file("media", "f2", b"two", "two.txt")

    project.add_function("fn-1", "Mailer")
    project.add_variable("fn-1", "SMTP_HOST", "smtp.example.com")
    project.add_deployment("fn-1", b"code-1", entrypoint="main.py")

    project.add_team("staff", "Staff")
    project.add_membership("staff", "mem-1", "alice@example.com", ["owner"])

    project.add_user("u1", "alice@example.com", "Alice")
    project.add_user("u2", "bob@example.com")
    project.calls.clear()
    return project


@pytest.fixture
def destination() -> FakeProject:
    """An empty destination project."""
    return FakeProject("dst")


@pytest.fixture
def fast_config() -> FerryConfig:
    """Config without delays."""
    return FerryConfig(schema_settle_delay=0, retry_backoff=0.01, proxy_poll_interval=0)


@pytest.fixture
def ferry_home(tmp_path: Path):
    """Point the ferry home directory at a temporary directory."""
    home = tmp_path / ".ferry"
    with patch("ferry.config.FERRY_DIR", home):
        yield home
