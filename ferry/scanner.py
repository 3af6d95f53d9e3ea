"""Resource scanner: enumerate a source project into a MigrationPlan.

Only the resource types switched on in Options are listed. Every listing
is fully paginated before the plan is returned, and any remote failure
aborts the scan with ScanError. A partial plan is never returned.

Each node proposes the identity mapping (target id/name = source id/name);
the user may edit it before execution.
"""

import logging
from collections.abc import Callable, Iterable
from functools import partial
from typing import Any

from ferry.client import ApiError, call_with_retry, paginate
from ferry.config import FerryConfig
from ferry.errors import ScanError
from ferry.plan import MigrationPlan, Options, ResourceNode, ResourceType

logger = logging.getLogger(__name__)


def scan(
    client: Any,
    options: Options,
    config: FerryConfig | None = None,
    name: str | None = None,
    exclude_buckets: Iterable[str] = (),
    sleep: Callable[[float], None] | None = None,
) -> MigrationPlan:
    """Build a plan from the source project.

    Args:
        client: Source-side remote client
        options: Which resource types to enumerate
        config: Page size and retry tuning
        name: Plan name (defaults to "<project>-plan")
        exclude_buckets: Bucket ids to leave out (e.g. the backup bucket)
        sleep: Backoff sleep override (tests)

    Returns:
        A MigrationPlan with every node enabled

    Raises:
        ScanError: Source unreachable, unauthorized, or a listing failed
    """
    config = config or FerryConfig()
    retry_kwargs: dict[str, Any] = {
        "retries": config.max_retries,
        "backoff": config.retry_backoff,
        "backoff_max": config.retry_backoff_max,
    }
    if sleep is not None:
        retry_kwargs["sleep"] = sleep

    def list_all(method: Callable[..., list[dict[str, Any]]], *args: str) -> list[dict[str, Any]]:
        def fetch(cursor: str | None, limit: int) -> list[dict[str, Any]]:
            return call_with_retry(partial(method, *args), cursor=cursor, limit=limit, **retry_kwargs)

        return list(paginate(fetch, config.page_size))

    project = getattr(client, "project_id", "source")
    logger.info(f"Scanning {project}")

    try:
        databases: list[ResourceNode] = []
        if options.include_databases:
            for db in list_all(client.list_databases):
                collections = tuple(
                    ResourceNode.from_remote(ResourceType.COLLECTION, col)
                    for col in list_all(client.list_collections, db["$id"])
                )
                databases.append(ResourceNode.from_remote(ResourceType.DATABASE, db, children=collections))

        buckets: list[ResourceNode] = []
        if options.include_storage_metadata:
            excluded = set(exclude_buckets)
            buckets = [
                ResourceNode.from_remote(ResourceType.BUCKET, b)
                for b in list_all(client.list_buckets)
                if b["$id"] not in excluded
            ]

        functions: list[ResourceNode] = []
        if options.include_functions:
            functions = [ResourceNode.from_remote(ResourceType.FUNCTION, f) for f in list_all(client.list_functions)]

        teams: list[ResourceNode] = []
        if options.include_teams:
            teams = [ResourceNode.from_remote(ResourceType.TEAM, t) for t in list_all(client.list_teams)]

        users: list[ResourceNode] = []
        if options.include_users:
            users = [
                ResourceNode.from_remote(
                    ResourceType.USER, u, name=u.get("name") or u.get("email") or u["$id"]
                )
                for u in list_all(client.list_users)
            ]

    except ApiError as e:
        if e.status == 0:
            message = f"Source project {project} is unreachable: {e.message}"
        elif e.is_unauthorized:
            message = f"Source project {project} rejected the credentials: {e.message}"
        else:
            message = f"Failed to scan source project {project}: {e}"
        raise ScanError(message, project=project, status=e.status) from e

    plan = MigrationPlan(
        name=name or f"{project}-plan",
        options=options,
        databases=tuple(databases),
        buckets=tuple(buckets),
        functions=tuple(functions),
        teams=tuple(teams),
        users=tuple(users),
    )
    logger.info(
        f"Scan complete: {len(databases)} databases, {len(buckets)} buckets, "
        f"{len(functions)} functions, {len(teams)} teams, {len(users)} users"
    )
    return plan
