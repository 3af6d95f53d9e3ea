"""Archive codec: a whole project in one file.

``pack`` walks the same resource tree as the scanner and writes one gzipped
JSON document:

    {
      "format": "ferry-archive",
      "version": 1,
      "created_at": "...",
      "project_id": "...",
      "options": {...},
      "databases": [{...metadata, "_collections": [{..., "_documents": [...]}]}],
      "buckets":   [{...metadata}],
      "functions": [{..., "_variables": [...], "_deployment": {..., "code": base64}}],
      "teams":     [{..., "_memberships": [...]}],
      "users":     [{...}]
    }

Keys starting with "_" hold nested content and never reach the API.
Bucket metadata is archived but file contents are not.

``unpack`` reverses it into an Archive, which exposes the plan to restore
and a read-only client (``ArchiveSourceClient``) serving the same read
calls as a live project. The transfer executor cannot tell the difference.
"""

from __future__ import annotations

import base64
import binascii
import gzip
import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from functools import partial
from typing import Any

from ferry.client import ApiError, call_with_retry, paginate
from ferry.config import FerryConfig
from ferry.errors import ArchiveError, ScanError
from ferry.plan import MigrationPlan, Options, ResourceNode, ResourceType
from ferry.scanner import scan

logger = logging.getLogger(__name__)

ARCHIVE_FORMAT = "ferry-archive"
ARCHIVE_VERSION = 1


def _strip(item: dict[str, Any]) -> dict[str, Any]:
    """Metadata of an archived item without its nested content."""
    return {k: v for k, v in item.items() if not k.startswith("_")}


def pack(
    client: Any,
    options: Options | None = None,
    config: FerryConfig | None = None,
    exclude_buckets: Iterable[str] = (),
    sleep: Callable[[float], None] | None = None,
) -> bytes:
    """Serialize a project into archive bytes.

    Args:
        client: Read side of the project to archive
        options: Which resource types to include (files are never embedded)
        config: Page size and retry tuning
        exclude_buckets: Bucket ids left out (the backup bucket itself)
        sleep: Backoff sleep override (tests)

    Raises:
        ScanError: The project could not be read
    """
    options = replace(options or Options(), include_files=False, use_cloud_proxy=False)
    config = config or FerryConfig()
    retry_kwargs: dict[str, Any] = {
        "retries": config.max_retries,
        "backoff": config.retry_backoff,
        "backoff_max": config.retry_backoff_max,
    }
    if sleep is not None:
        retry_kwargs["sleep"] = sleep

    def call(fn: Callable[..., Any], *args: Any) -> Any:
        return call_with_retry(fn, *args, **retry_kwargs)

    def list_all(method: Callable[..., list[dict[str, Any]]], *args: str) -> list[dict[str, Any]]:
        def fetch(cursor: str | None, limit: int) -> list[dict[str, Any]]:
            return call_with_retry(partial(method, *args), cursor=cursor, limit=limit, **retry_kwargs)

        return list(paginate(fetch, config.page_size))

    plan = scan(client, options, config, exclude_buckets=exclude_buckets, sleep=sleep)
    project = getattr(client, "project_id", "source")

    try:
        databases = []
        for db in plan.databases:
            collections = []
            for col in db.children:
                entry = dict(col.data)
                if options.include_documents:
                    entry["_documents"] = list_all(client.list_documents, db.source_id, col.source_id)
                collections.append(entry)
            databases.append({**db.data, "_collections": collections})

        functions = []
        for fn in plan.functions:
            entry = dict(fn.data)
            entry["_variables"] = list_all(client.list_variables, fn.source_id)
            if options.include_function_code:
                deployment = call(client.get_latest_deployment, fn.data)
                if deployment:
                    code = call(client.get_deployment_download, fn.source_id, deployment["$id"])
                    entry["_deployment"] = {
                        "$id": deployment["$id"],
                        "entrypoint": deployment.get("entrypoint"),
                        "commands": deployment.get("commands"),
                        "code": base64.b64encode(code).decode("ascii"),
                    }
            functions.append(entry)

        teams = [
            {**team.data, "_memberships": list_all(client.list_memberships, team.source_id)}
            for team in plan.teams
        ]
    except ApiError as e:
        raise ScanError(f"Failed to archive project {project}: {e}", project=project, status=e.status) from e

    document = {
        "format": ARCHIVE_FORMAT,
        "version": ARCHIVE_VERSION,
        "created_at": datetime.now(UTC).isoformat(),
        "project_id": project,
        "options": options.to_dict(),
        "databases": databases,
        "buckets": [b.data for b in plan.buckets],
        "functions": functions,
        "teams": teams,
        "users": [u.data for u in plan.users],
    }
    data = gzip.compress(json.dumps(document, default=str).encode("utf-8"))
    logger.info(f"Packed {project}: {len(data)} bytes")
    return data


@dataclass(frozen=True)
class Archive:
    """A decoded archive."""

    project_id: str
    created_at: str
    options: Options
    content: dict[str, Any] = field(repr=False)

    def plan(self, name: str | None = None) -> MigrationPlan:
        """Plan restoring everything in the archive, every node enabled."""
        c = self.content
        databases = tuple(
            ResourceNode.from_remote(
                ResourceType.DATABASE,
                _strip(db),
                children=tuple(
                    ResourceNode.from_remote(ResourceType.COLLECTION, _strip(col))
                    for col in db.get("_collections") or []
                ),
            )
            for db in c.get("databases") or []
        )
        return MigrationPlan(
            name=name or f"restore-{self.project_id}",
            options=self.options,
            databases=databases,
            buckets=tuple(ResourceNode.from_remote(ResourceType.BUCKET, b) for b in c.get("buckets") or []),
            functions=tuple(
                ResourceNode.from_remote(ResourceType.FUNCTION, _strip(f)) for f in c.get("functions") or []
            ),
            teams=tuple(ResourceNode.from_remote(ResourceType.TEAM, _strip(t)) for t in c.get("teams") or []),
            users=tuple(
                ResourceNode.from_remote(ResourceType.USER, u, name=u.get("name") or u.get("email") or u["$id"])
                for u in c.get("users") or []
            ),
        )

    def source_client(self) -> ArchiveSourceClient:
        return ArchiveSourceClient(self)


def unpack(data: bytes) -> Archive:
    """Decode archive bytes.

    Raises:
        ArchiveError: Not a readable ferry archive
    """
    try:
        content = json.loads(gzip.decompress(data).decode("utf-8"))
    except (OSError, EOFError, UnicodeDecodeError, ValueError) as e:
        raise ArchiveError(f"Archive is not gzipped JSON: {e}") from e

    if not isinstance(content, dict) or content.get("format") != ARCHIVE_FORMAT:
        raise ArchiveError("Not a ferry archive")
    version = content.get("version")
    if version != ARCHIVE_VERSION:
        raise ArchiveError(f"Unsupported archive version: {version}", version=version)

    return Archive(
        project_id=str(content.get("project_id", "")),
        created_at=str(content.get("created_at", "")),
        options=Options.from_dict(content.get("options")),
        content=content,
    )


def _page(items: list[dict[str, Any]], cursor: str | None, limit: int) -> list[dict[str, Any]]:
    start = 0
    if cursor:
        for i, item in enumerate(items):
            if item["$id"] == cursor:
                start = i + 1
                break
    return [_strip(item) for item in items[start : start + limit]]


class ArchiveSourceClient:
    """Read side of the client interface, served from an Archive."""

    def __init__(self, archive: Archive):
        self.archive = archive
        self.project_id = archive.project_id
        c = archive.content
        self._databases = {db["$id"]: db for db in c.get("databases") or []}
        self._functions = {fn["$id"]: fn for fn in c.get("functions") or []}
        self._teams = {t["$id"]: t for t in c.get("teams") or []}

    def _not_found(self, what: str) -> ApiError:
        return ApiError(404, f"{what} not found in archive")

    def _collection(self, database_id: str, collection_id: str) -> dict[str, Any]:
        db = self._databases.get(database_id)
        for col in (db or {}).get("_collections") or []:
            if col["$id"] == collection_id:
                return col
        raise self._not_found(f"Collection {database_id}/{collection_id}")

    def list_databases(self, *, cursor: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        return _page(list(self._databases.values()), cursor, limit)

    def list_collections(self, database_id: str, *, cursor: str | None = None, limit: int = 100):
        if database_id not in self._databases:
            raise self._not_found(f"Database {database_id}")
        return _page(self._databases[database_id].get("_collections") or [], cursor, limit)

    def list_documents(self, database_id: str, collection_id: str, *, cursor: str | None = None, limit: int = 100):
        return _page(self._collection(database_id, collection_id).get("_documents") or [], cursor, limit)

    def list_buckets(self, *, cursor: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        return _page(self.archive.content.get("buckets") or [], cursor, limit)

    def list_files(self, bucket_id: str, *, cursor: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        return []

    def get_file_download(self, bucket_id: str, file_id: str) -> bytes:
        raise self._not_found(f"File {bucket_id}/{file_id}")

    def list_functions(self, *, cursor: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        return _page(list(self._functions.values()), cursor, limit)

    def list_variables(self, function_id: str, *, cursor: str | None = None, limit: int = 100):
        fn = self._functions.get(function_id)
        if fn is None:
            raise self._not_found(f"Function {function_id}")
        return _page(fn.get("_variables") or [], cursor, limit)

    def get_latest_deployment(self, function: dict[str, Any]) -> dict[str, Any] | None:
        deployment = (self._functions.get(function["$id"]) or {}).get("_deployment")
        if not deployment:
            return None
        return {k: v for k, v in deployment.items() if k != "code"}

    def get_deployment_download(self, function_id: str, deployment_id: str) -> bytes:
        deployment = (self._functions.get(function_id) or {}).get("_deployment")
        if not deployment or deployment.get("$id") != deployment_id:
            raise self._not_found(f"Deployment {function_id}/{deployment_id}")
        try:
            return base64.b64decode(deployment["code"], validate=True)
        except (KeyError, binascii.Error) as e:
            raise ArchiveError(f"Corrupt deployment code for {function_id}", function_id=function_id) from e

    def list_teams(self, *, cursor: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        return _page(list(self._teams.values()), cursor, limit)

    def list_memberships(self, team_id: str, *, cursor: str | None = None, limit: int = 100):
        team = self._teams.get(team_id)
        if team is None:
            raise self._not_found(f"Team {team_id}")
        return _page(team.get("_memberships") or [], cursor, limit)

    def list_users(self, *, cursor: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        return _page(self.archive.content.get("users") or [], cursor, limit)
