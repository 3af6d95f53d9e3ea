"""Remote API client for Appwrite-style backend projects.

The engine never talks HTTP itself. Scanner, executor, proxy and backup
code call the methods below, which any object can provide:

Read side (source):
    list_databases, list_collections, list_documents, list_buckets,
    list_files, get_file_download, list_functions, list_variables,
    get_latest_deployment, get_deployment_download, list_teams,
    list_memberships, list_users

Write side (destination):
    create_database, create_collection, create_attribute, create_index,
    create_document, get_bucket, create_bucket, create_file,
    create_function, delete_function, create_variable, create_deployment,
    get_deployment, create_execution, get_execution, create_team,
    create_membership, create_user, update_user

Every ``list_*`` method takes keyword-only ``cursor`` / ``limit`` and
returns one page as a list of dicts; ``paginate()`` hides the paging.
Remote failures are raised as ``ApiError``.

RestClient implements both sides over HTTP with ``requests``. Tests use an
in-memory fake, restores use ``archive.ArchiveSourceClient``.
"""

from __future__ import annotations

import json
import logging
import math
import time
from collections.abc import Callable, Iterator
from typing import Any, TypeVar

import requests

from ferry.config import FerryConfig, ProjectConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Uploads above this size are sent in Content-Range chunks
CHUNK_SIZE = 5 * 1024 * 1024

# Metadata keys that are server-assigned and must not be sent back on create
DOCUMENT_SYSTEM_KEYS = frozenset(
    {"$id", "$sequence", "$databaseId", "$collectionId", "$createdAt", "$updatedAt", "$permissions"}
)


class ApiError(Exception):
    """A remote call failed.

    ``status`` is the HTTP status, or 0 when the endpoint could not be
    reached at all.
    """

    def __init__(
        self,
        status: int,
        message: str,
        error_type: str = "",
        retry_after: float | None = None,
    ):
        super().__init__(f"[{status}] {message}" if status else message)
        self.status = status
        self.message = message
        self.error_type = error_type
        self.retry_after = retry_after

    @property
    def is_rate_limited(self) -> bool:
        return self.status == 429

    @property
    def is_not_found(self) -> bool:
        return self.status == 404

    @property
    def is_unauthorized(self) -> bool:
        return self.status in (401, 403)

    @property
    def is_conflict(self) -> bool:
        return self.status == 409


def iter_pages(
    fetch: Callable[..., list[dict[str, Any]]], page_size: int = 100
) -> Iterator[list[dict[str, Any]]]:
    """Yield the non-empty pages of a cursor-paginated listing.

    Args:
        fetch: Callable accepting ``cursor`` and ``limit`` keywords
        page_size: Items requested per page
    """
    cursor = None
    while True:
        page = fetch(cursor=cursor, limit=page_size)
        if page:
            yield page
        if len(page) < page_size:
            return
        cursor = page[-1]["$id"]


def paginate(fetch: Callable[..., list[dict[str, Any]]], page_size: int = 100) -> Iterator[dict[str, Any]]:
    """Yield every item of a cursor-paginated listing."""
    for page in iter_pages(fetch, page_size):
        yield from page


def call_with_retry(
    fn: Callable[..., T],
    *args: Any,
    retries: int = 5,
    backoff: float = 1.0,
    backoff_max: float = 30.0,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> T:
    """Call fn, backing off and retrying while the remote rate-limits us.

    Only HTTP 429 is retried. Any other ApiError, or a 429 after
    ``retries`` extra attempts, propagates to the caller.
    """
    attempt = 0
    while True:
        try:
            return fn(*args, **kwargs)
        except ApiError as e:
            if not e.is_rate_limited or attempt >= retries:
                raise
            delay = e.retry_after if e.retry_after is not None else backoff * (2**attempt)
            delay = min(delay, backoff_max)
            attempt += 1
            logger.warning(f"Rate limited, retry {attempt}/{retries} in {delay:.1f}s")
            sleep(delay)


def sanitize_int(value: Any) -> int | None:
    """Coerce an attribute bound to an int, or None when it is not usable.

    Source metadata sometimes carries null-ish strings, booleans or
    non-finite numbers for min/max/default; the API rejects those.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped or stripped.lower() in ("null", "undefined"):
            return None
        try:
            value = float(stripped)
        except ValueError:
            return None
    if not isinstance(value, (int, float)) or not math.isfinite(value):
        return None
    return int(value)


def attribute_kind(attribute: dict[str, Any]) -> str:
    """Endpoint kind for an attribute (string attributes may carry a format)."""
    kind = attribute.get("type", "string")
    if kind == "string" and attribute.get("format"):
        return attribute["format"]
    return kind


def is_two_way_child(attribute: dict[str, Any]) -> bool:
    """Whether a relationship attribute is the generated side of a two-way pair."""
    return (
        attribute.get("type") == "relationship"
        and bool(attribute.get("twoWay"))
        and attribute.get("side") == "child"
    )


def attribute_payload(attribute: dict[str, Any]) -> dict[str, Any]:
    """Request body re-creating an attribute from its source metadata."""
    kind = attribute_kind(attribute)
    required = bool(attribute.get("required", False))
    # Required attributes cannot declare a default
    default = None if required else attribute.get("default")

    if kind == "relationship":
        body = {
            "relatedCollectionId": attribute.get("relatedCollection"),
            "type": attribute.get("relationType"),
            "twoWay": attribute.get("twoWay", False),
            "key": attribute["key"],
            "twoWayKey": attribute.get("twoWayKey"),
            "onDelete": attribute.get("onDelete", "restrict"),
        }
    else:
        body = {
            "key": attribute["key"],
            "required": required,
            "default": default,
            "array": attribute.get("array", False),
        }
        if kind == "string":
            body["size"] = sanitize_int(attribute.get("size")) or 255
        elif kind == "integer":
            body["min"] = sanitize_int(attribute.get("min"))
            body["max"] = sanitize_int(attribute.get("max"))
            body["default"] = sanitize_int(default)
        elif kind == "float":
            body["min"] = attribute.get("min")
            body["max"] = attribute.get("max")
        elif kind == "enum":
            body["elements"] = list(attribute.get("elements") or [])

    return {k: v for k, v in body.items() if v is not None}


def document_body(document: dict[str, Any]) -> dict[str, Any]:
    """User data of a document, without server-assigned $ keys."""
    return {k: v for k, v in document.items() if k not in DOCUMENT_SYSTEM_KEYS}


def _query(method: str, values: list[Any] | None = None, attribute: str | None = None) -> str:
    query: dict[str, Any] = {"method": method}
    if attribute is not None:
        query["attribute"] = attribute
    if values is not None:
        query["values"] = values
    return json.dumps(query)


def _pick(settings: dict[str, Any], mapping: dict[str, str]) -> dict[str, Any]:
    """Copy source metadata fields to request fields, skipping absent ones."""
    return {dst: settings[src] for src, dst in mapping.items() if settings.get(src) is not None}


class RestClient:
    """HTTP client for one project (both read and write side)."""

    def __init__(
        self,
        project: ProjectConfig,
        timeout: float = 60.0,
        session: requests.Session | None = None,
        chunk_retries: int = 5,
        chunk_backoff: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.project = project
        self.timeout = timeout
        self.chunk_retries = chunk_retries
        self.chunk_backoff = chunk_backoff
        self._sleep = sleep
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "X-Appwrite-Project": project.project_id,
                "X-Appwrite-Key": project.api_key,
            }
        )

    @classmethod
    def from_project(cls, project: ProjectConfig, config: FerryConfig | None = None) -> RestClient:
        config = config or FerryConfig()
        return cls(
            project,
            timeout=config.request_timeout,
            chunk_retries=config.max_retries,
            chunk_backoff=config.retry_backoff,
        )

    @property
    def project_id(self) -> str:
        return self.project.project_id

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
        files: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        raw: bool = False,
    ) -> Any:
        url = f"{self.project.base_url}{path}"
        try:
            response = self.session.request(
                method,
                url,
                params=params,
                json=json_body,
                data=data,
                files=files,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ApiError(0, f"Connection to {self.project.base_url} failed: {e}") from e

        if response.status_code >= 400:
            message, error_type = response.text, ""
            try:
                body = response.json()
                message = body.get("message", message)
                error_type = body.get("type", "")
            except ValueError:
                pass
            retry_after = response.headers.get("Retry-After")
            raise ApiError(
                response.status_code,
                message,
                error_type,
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )

        if raw:
            return response.content
        if not response.content:
            return {}
        return response.json()

    def _list(
        self,
        path: str,
        key: str,
        cursor: str | None,
        limit: int,
        extra: tuple[str, ...] = (),
    ) -> list[dict[str, Any]]:
        queries = [_query("limit", [limit]), *extra]
        if cursor:
            queries.append(_query("cursorAfter", [cursor]))
        return self._request("GET", path, params={"queries[]": queries}).get(key, [])

    def _upload(
        self,
        path: str,
        field: str,
        filename: str,
        content: bytes,
        data: dict[str, Any],
    ) -> dict[str, Any]:
        """Multipart upload, chunked with Content-Range above CHUNK_SIZE.

        Each chunk is retried on its own while rate limited, so a 429 in
        the middle never restarts the upload from the first chunk.
        """
        total = len(content)
        if total <= CHUNK_SIZE:
            return self._request("POST", path, data=data, files={field: (filename, content)})

        result: dict[str, Any] = {}
        upload_id = None
        for start in range(0, total, CHUNK_SIZE):
            end = min(start + CHUNK_SIZE, total) - 1
            headers = {"Content-Range": f"bytes {start}-{end}/{total}"}
            if upload_id:
                headers["X-Appwrite-ID"] = upload_id
            result = call_with_retry(
                self._request,
                "POST",
                path,
                data=data,
                files={field: (filename, content[start : end + 1])},
                headers=headers,
                retries=self.chunk_retries,
                backoff=self.chunk_backoff,
                sleep=self._sleep,
            )
            upload_id = upload_id or result.get("$id")
        return result

    # ------------------------------------------------------------------
    # Databases
    # ------------------------------------------------------------------

    def list_databases(self, *, cursor: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        return self._list("/databases", "databases", cursor, limit)

    def create_database(self, database_id: str, name: str) -> dict[str, Any]:
        return self._request("POST", "/databases", json_body={"databaseId": database_id, "name": name})

    def list_collections(
        self, database_id: str, *, cursor: str | None = None, limit: int = 100
    ) -> list[dict[str, Any]]:
        return self._list(f"/databases/{database_id}/collections", "collections", cursor, limit)

    def create_collection(
        self, database_id: str, collection_id: str, name: str, settings: dict[str, Any]
    ) -> dict[str, Any]:
        body = {"collectionId": collection_id, "name": name}
        body.update(
            _pick(
                settings,
                {"$permissions": "permissions", "documentSecurity": "documentSecurity", "enabled": "enabled"},
            )
        )
        return self._request("POST", f"/databases/{database_id}/collections", json_body=body)

    def create_attribute(
        self, database_id: str, collection_id: str, attribute: dict[str, Any]
    ) -> dict[str, Any]:
        kind = attribute_kind(attribute)
        return self._request(
            "POST",
            f"/databases/{database_id}/collections/{collection_id}/attributes/{kind}",
            json_body=attribute_payload(attribute),
        )

    def create_index(self, database_id: str, collection_id: str, index: dict[str, Any]) -> dict[str, Any]:
        body = {
            "key": index["key"],
            "type": index.get("type", "key"),
            "attributes": list(index.get("attributes") or []),
            "orders": list(index.get("orders") or []),
        }
        return self._request(
            "POST", f"/databases/{database_id}/collections/{collection_id}/indexes", json_body=body
        )

    def list_documents(
        self, database_id: str, collection_id: str, *, cursor: str | None = None, limit: int = 100
    ) -> list[dict[str, Any]]:
        return self._list(
            f"/databases/{database_id}/collections/{collection_id}/documents", "documents", cursor, limit
        )

    def create_document(
        self,
        database_id: str,
        collection_id: str,
        document_id: str,
        data: dict[str, Any],
        permissions: list[str] | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"documentId": document_id, "data": data}
        if permissions is not None:
            body["permissions"] = permissions
        return self._request(
            "POST", f"/databases/{database_id}/collections/{collection_id}/documents", json_body=body
        )

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def list_buckets(self, *, cursor: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        return self._list("/storage/buckets", "buckets", cursor, limit)

    def get_bucket(self, bucket_id: str) -> dict[str, Any]:
        return self._request("GET", f"/storage/buckets/{bucket_id}")

    def create_bucket(self, bucket_id: str, name: str, settings: dict[str, Any]) -> dict[str, Any]:
        body = {"bucketId": bucket_id, "name": name}
        body.update(
            _pick(
                settings,
                {
                    "$permissions": "permissions",
                    "fileSecurity": "fileSecurity",
                    "enabled": "enabled",
                    "maximumFileSize": "maximumFileSize",
                    "allowedFileExtensions": "allowedFileExtensions",
                    "compression": "compression",
                    "encryption": "encryption",
                    "antivirus": "antivirus",
                },
            )
        )
        return self._request("POST", "/storage/buckets", json_body=body)

    def list_files(self, bucket_id: str, *, cursor: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        return self._list(f"/storage/buckets/{bucket_id}/files", "files", cursor, limit)

    def get_file_download(self, bucket_id: str, file_id: str) -> bytes:
        return self._request("GET", f"/storage/buckets/{bucket_id}/files/{file_id}/download", raw=True)

    def create_file(
        self,
        bucket_id: str,
        file_id: str,
        filename: str,
        content: bytes,
        permissions: list[str] | None = None,
    ) -> dict[str, Any]:
        data: dict[str, Any] = {"fileId": file_id}
        if permissions:
            data["permissions[]"] = permissions
        return self._upload(f"/storage/buckets/{bucket_id}/files", "file", filename, content, data)

    # ------------------------------------------------------------------
    # Functions
    # ------------------------------------------------------------------

    def list_functions(self, *, cursor: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        return self._list("/functions", "functions", cursor, limit)

    def create_function(self, function_id: str, name: str, settings: dict[str, Any]) -> dict[str, Any]:
        body = {"functionId": function_id, "name": name}
        body.update(
            _pick(
                settings,
                {
                    "runtime": "runtime",
                    "execute": "execute",
                    "events": "events",
                    "schedule": "schedule",
                    "timeout": "timeout",
                    "enabled": "enabled",
                    "logging": "logging",
                    "entrypoint": "entrypoint",
                    "commands": "commands",
                    "scopes": "scopes",
                },
            )
        )
        return self._request("POST", "/functions", json_body=body)

    def delete_function(self, function_id: str) -> None:
        self._request("DELETE", f"/functions/{function_id}")

    def list_variables(self, function_id: str, *, cursor: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        # Variables are not cursor-paginated remotely; return everything on the first page
        if cursor:
            return []
        return self._request("GET", f"/functions/{function_id}/variables").get("variables", [])

    def create_variable(self, function_id: str, key: str, value: str) -> dict[str, Any]:
        return self._request(
            "POST", f"/functions/{function_id}/variables", json_body={"key": key, "value": value}
        )

    def get_latest_deployment(self, function: dict[str, Any]) -> dict[str, Any] | None:
        """The function's active deployment, or its newest one, or None."""
        function_id = function["$id"]
        deployment_id = function.get("deployment") or function.get("deploymentId")
        if deployment_id:
            return self.get_deployment(function_id, deployment_id)

        deployments = self._list(
            f"/functions/{function_id}/deployments",
            "deployments",
            None,
            1,
            extra=(_query("orderDesc", attribute="$createdAt"),),
        )
        return deployments[0] if deployments else None

    def get_deployment(self, function_id: str, deployment_id: str) -> dict[str, Any]:
        return self._request("GET", f"/functions/{function_id}/deployments/{deployment_id}")

    def get_deployment_download(self, function_id: str, deployment_id: str) -> bytes:
        return self._request(
            "GET", f"/functions/{function_id}/deployments/{deployment_id}/download", raw=True
        )

    def create_deployment(
        self,
        function_id: str,
        code: bytes,
        entrypoint: str | None = None,
        commands: str | None = None,
        activate: bool = True,
    ) -> dict[str, Any]:
        data: dict[str, Any] = {"activate": "true" if activate else "false"}
        if entrypoint:
            data["entrypoint"] = entrypoint
        if commands:
            data["commands"] = commands
        return self._upload(f"/functions/{function_id}/deployments", "code", "code.tar.gz", code, data)

    def create_execution(self, function_id: str, body: str, run_async: bool = True) -> dict[str, Any]:
        return self._request(
            "POST",
            f"/functions/{function_id}/executions",
            json_body={"body": body, "async": run_async},
        )

    def get_execution(self, function_id: str, execution_id: str) -> dict[str, Any]:
        return self._request("GET", f"/functions/{function_id}/executions/{execution_id}")

    # ------------------------------------------------------------------
    # Teams
    # ------------------------------------------------------------------

    def list_teams(self, *, cursor: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        return self._list("/teams", "teams", cursor, limit)

    def create_team(self, team_id: str, name: str) -> dict[str, Any]:
        return self._request("POST", "/teams", json_body={"teamId": team_id, "name": name})

    def list_memberships(
        self, team_id: str, *, cursor: str | None = None, limit: int = 100
    ) -> list[dict[str, Any]]:
        return self._list(f"/teams/{team_id}/memberships", "memberships", cursor, limit)

    def create_membership(
        self,
        team_id: str,
        roles: list[str],
        email: str,
        name: str | None = None,
        url: str = "http://localhost",
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"email": email, "roles": roles, "url": url}
        if name:
            body["name"] = name
        return self._request("POST", f"/teams/{team_id}/memberships", json_body=body)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def list_users(self, *, cursor: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        return self._list("/users", "users", cursor, limit)

    def create_user(self, user_id: str, profile: dict[str, Any]) -> dict[str, Any]:
        """Create a user account (one request; see ``update_user`` for the rest).

        Users with an argon2 or bcrypt password hash keep their password.
        Other users are created without one.
        """
        password, hash_type = profile.get("password"), profile.get("hash")
        base = {"userId": user_id, "email": profile.get("email"), "name": profile.get("name")}

        if password and hash_type in ("argon2", "bcrypt"):
            body = {k: v for k, v in {**base, "password": password}.items() if v}
            user = self._request("POST", f"/users/{hash_type}", json_body=body)
        else:
            body = {k: v for k, v in {**base, "phone": profile.get("phone")}.items() if v}
            user = self._request("POST", "/users", json_body=body)
        return user

    def update_user(self, user_id: str, profile: dict[str, Any]) -> None:
        """Copy status, verification, labels and prefs onto an existing user.

        Every request sets absolute values, so repeating the call is safe.
        """
        if profile.get("status") is False:
            self._request("PATCH", f"/users/{user_id}/status", json_body={"status": False})
        if profile.get("emailVerification"):
            self._request("PATCH", f"/users/{user_id}/verification", json_body={"emailVerification": True})
        if profile.get("phoneVerification"):
            self._request(
                "PATCH", f"/users/{user_id}/verification/phone", json_body={"phoneVerification": True}
            )
        if profile.get("labels"):
            self._request("PUT", f"/users/{user_id}/labels", json_body={"labels": profile["labels"]})
        if profile.get("prefs"):
            self._request("PATCH", f"/users/{user_id}/prefs", json_body={"prefs": profile["prefs"]})
