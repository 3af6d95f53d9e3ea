"""Tests for ferry.archive."""

import base64
import gzip
import json

import pytest

from ferry.archive import ARCHIVE_FORMAT, ArchiveSourceClient, pack, unpack
from ferry.checkpoints import CheckpointStore, MemoryBackend
from ferry.client import ApiError, paginate
from ferry.config import FerryConfig
from ferry.errors import ArchiveError, ScanError
from ferry.executor import RunStatus, TransferExecutor
from ferry.plan import Options

from tests.fakes import FakeProject


def _document(data: bytes) -> dict:
    return json.loads(gzip.decompress(data))


def _archive_bytes(**content) -> bytes:
    return gzip.compress(json.dumps({"format": ARCHIVE_FORMAT, "version": 1, **content}).encode())


class TestPack:
    """Tests for pack()."""

    def test_embeds_nested_content(self, source: FakeProject, fast_config: FerryConfig):
        """Documents, variables, deployment code and memberships are inlined."""
        doc = _document(pack(source, config=fast_config))

        assert doc["format"] == ARCHIVE_FORMAT
        assert doc["project_id"] == "src"
        orders = doc["databases"][0]["_collections"][0]
        assert [d["$id"] for d in orders["_documents"]] == ["o1", "o2"]
        fn = doc["functions"][0]
        assert fn["_variables"][0]["key"] == "SMTP_HOST"
        assert base64.b64decode(fn["_deployment"]["code"]) == b"code-1"
        assert doc["teams"][0]["_memberships"][0]["userEmail"] == "alice@example.com"
        assert [u["$id"] for u in doc["users"]] == ["u1", "u2"]

    def test_never_embeds_files(self, source: FakeProject, fast_config: FerryConfig):
        """Bucket metadata is kept but file contents are not read."""
        doc = _document(pack(source, Options(include_files=True, use_cloud_proxy=True), fast_config))

        assert [b["$id"] for b in doc["buckets"]] == ["media"]
        assert doc["options"]["include_files"] is False
        assert doc["options"]["use_cloud_proxy"] is False
        assert not any(method in ("list_files", "get_file_download") for method, _ in source.calls)

    def test_options_respected(self, source: FakeProject, fast_config: FerryConfig):
        doc = _document(pack(source, Options(include_documents=False, include_function_code=False), fast_config))

        assert "_documents" not in doc["databases"][0]["_collections"][0]
        assert "_deployment" not in doc["functions"][0]

    def test_excluded_bucket(self, source: FakeProject, fast_config: FerryConfig):
        source.add_bucket("ferry-backups")

        doc = _document(pack(source, config=fast_config, exclude_buckets=["ferry-backups"]))

        assert [b["$id"] for b in doc["buckets"]] == ["media"]

    def test_read_failure_is_scan_error(self, source: FakeProject, fast_config: FerryConfig):
        source.fail("list_documents", status=500)

        with pytest.raises(ScanError):
            pack(source, config=fast_config)


class TestUnpack:
    """Tests for unpack()."""

    def test_round_trip_metadata(self, source: FakeProject, fast_config: FerryConfig):
        archive = unpack(pack(source, config=fast_config))

        assert archive.project_id == "src"
        assert archive.created_at
        assert archive.options.include_files is False

    @pytest.mark.parametrize(
        "data",
        [
            b"not gzip",
            gzip.compress(b"not json"),
            gzip.compress(b"[1, 2]"),
            gzip.compress(json.dumps({"format": "other"}).encode()),
        ],
    )
    def test_rejects_foreign_data(self, data: bytes):
        with pytest.raises(ArchiveError) as exc:
            unpack(data)

        assert exc.value.error.code == "ARCHIVE_INVALID"

    def test_rejects_unknown_version(self):
        data = gzip.compress(json.dumps({"format": ARCHIVE_FORMAT, "version": 99}).encode())

        with pytest.raises(ArchiveError, match="version"):
            unpack(data)

    def test_plan_has_every_node_enabled(self, source: FakeProject, fast_config: FerryConfig):
        plan = unpack(pack(source, config=fast_config)).plan()

        assert plan.name == "restore-src"
        assert [c.source_id for c in plan.find(("databases", "db-A")).children] == ["orders", "customers"]
        assert plan.find(("users", "u2")).source_name == "bob@example.com"
        assert all(n.enabled for n in plan.iter_nodes())
        assert "_collections" not in plan.find(("databases", "db-A")).data


class TestArchiveSourceClient:
    """The archive serves the read side like a live project."""

    def test_pages_by_cursor(self):
        users = [{"$id": f"u{i}"} for i in range(5)]
        client = ArchiveSourceClient(unpack(_archive_bytes(users=users)))

        assert [u["$id"] for u in paginate(client.list_users, page_size=2)] == [f"u{i}" for i in range(5)]
        assert client.list_users(cursor="u3", limit=10) == [{"$id": "u4"}]

    def test_strips_nested_keys(self, source: FakeProject, fast_config: FerryConfig):
        client = unpack(pack(source, config=fast_config)).source_client()

        collection = client.list_collections("db-A")[0]
        assert "_documents" not in collection
        assert [d["$id"] for d in client.list_documents("db-A", "orders")] == ["o1", "o2"]

    def test_missing_items_are_404(self):
        client = ArchiveSourceClient(unpack(_archive_bytes()))

        for call in (
            lambda: client.list_collections("nope"),
            lambda: client.list_documents("nope", "nope"),
            lambda: client.list_variables("nope"),
            lambda: client.list_memberships("nope"),
            lambda: client.get_file_download("media", "f1"),
        ):
            with pytest.raises(ApiError) as exc:
                call()
            assert exc.value.is_not_found

    def test_no_files(self):
        client = ArchiveSourceClient(unpack(_archive_bytes(buckets=[{"$id": "media"}])))

        assert client.list_files("media") == []

    def test_deployment(self):
        functions = [{"$id": "fn-1", "_deployment": {"$id": "dep-1", "entrypoint": "index.js", "code": base64.b64encode(b"tar").decode()}}]
        client = ArchiveSourceClient(unpack(_archive_bytes(functions=functions)))

        assert client.get_latest_deployment({"$id": "fn-1"}) == {"$id": "dep-1", "entrypoint": "index.js"}
        assert client.get_deployment_download("fn-1", "dep-1") == b"tar"
        assert client.get_latest_deployment({"$id": "fn-2"}) is None

    def test_corrupt_deployment_code(self):
        functions = [{"$id": "fn-1", "_deployment": {"$id": "dep-1", "code": "!!not base64!!"}}]
        client = ArchiveSourceClient(unpack(_archive_bytes(functions=functions)))

        with pytest.raises(ArchiveError):
            client.get_deployment_download("fn-1", "dep-1")


class TestRestoreFromArchive:
    """An archive drives the executor like a live source."""

    def test_restores_into_empty_project(self, source: FakeProject, destination: FakeProject, fast_config: FerryConfig):
        archive = unpack(pack(source, config=fast_config))
        executor = TransferExecutor(
            archive.source_client(),
            destination,
            CheckpointStore(MemoryBackend()),
            source_id="archive",
            dest_id="dst",
            config=fast_config,
            sleep=lambda _: None,
        )

        result = executor.run(archive.plan())

        assert result.status == RunStatus.COMPLETED
        assert set(destination.documents[("db-A", "orders")]) == {"o1", "o2"}
        assert destination.documents[("db-B", "logs")]["l1"]["line"] == "hello"
        assert "media" in destination.buckets
        assert destination.files["media"] == {}
        assert destination.variables["fn-1"][0]["value"] == "smtp.example.com"
        deployment_id = destination.deployments["fn-1"][0]["$id"]
        assert destination.deployment_code[("fn-1", deployment_id)] == b"code-1"
        assert destination.memberships["staff"][0]["userEmail"] == "alice@example.com"
        assert set(destination.users) == {"u1", "u2"}
