"""Plan model: what a run will transfer and where it lands.

A MigrationPlan holds one list of ResourceNodes per top-level category
(databases, buckets, functions, teams, users) plus the Options that
produced it. Databases carry their collections as children; documents,
files, attributes and the other leaf payloads are not plan rows, they are
enumerated while the plan executes.

Plans are immutable. Editing is done with pure functions that return a new
plan (``apply_toggle``, ``apply_edit``), so a UI, the CLI and tests all go
through the same code.

Plans can be saved as YAML and edited by hand:

    name: prod-to-staging
    options:
      include_databases: true
      ...
    databases:
      - type: database
        source_id: main
        target_id: main
        enabled: true
        children: [...]
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import asdict, dataclass, field, fields, replace
from enum import StrEnum
from pathlib import Path
from typing import Any

import yaml

from ferry.atomic import atomic_write_yaml
from ferry.errors import Err, FerryError, Ok, Result
from ferry.types import NodeKey

logger = logging.getLogger(__name__)


class ResourceType(StrEnum):
    """Kinds of resources the engine knows how to transfer."""

    DATABASE = "database"
    COLLECTION = "collection"
    ATTRIBUTE = "attribute"
    INDEX = "index"
    DOCUMENT = "document"
    BUCKET = "bucket"
    FILE = "file"
    FUNCTION = "function"
    VARIABLE = "variable"
    DEPLOYMENT = "deployment"
    TEAM = "team"
    MEMBERSHIP = "membership"
    USER = "user"


# Top-level categories in the order they appear in a plan
CATEGORIES: tuple[str, ...] = ("databases", "buckets", "functions", "teams", "users")

CATEGORY_TYPES: dict[str, ResourceType] = {
    "databases": ResourceType.DATABASE,
    "buckets": ResourceType.BUCKET,
    "functions": ResourceType.FUNCTION,
    "teams": ResourceType.TEAM,
    "users": ResourceType.USER,
}


def node_key(resource_type: ResourceType | str, *source_path: str) -> NodeKey:
    """Build the checkpoint key of a node from its source id path.

    Example:
        node_key(ResourceType.COLLECTION, "main", "orders") == "collection:main/orders"
    """
    return NodeKey(f"{ResourceType(resource_type).value}:{'/'.join(source_path)}")


@dataclass(frozen=True)
class Options:
    """Switches deciding which resource types a scan enumerates.

    Options are consumed at scan time. Changing them requires a new scan.
    """

    include_databases: bool = True
    include_documents: bool = True
    include_storage_metadata: bool = True
    include_files: bool = True
    include_functions: bool = True
    include_function_code: bool = True
    include_users: bool = True
    include_teams: bool = True
    use_cloud_proxy: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Options:
        valid = {f.name for f in fields(cls)}
        return cls(**{k: bool(v) for k, v in (data or {}).items() if k in valid})

    def to_dict(self) -> dict[str, bool]:
        return asdict(self)


@dataclass(frozen=True)
class ResourceNode:
    """One migratable item and its destination mapping."""

    resource_type: ResourceType
    source_id: str
    source_name: str
    target_id: str
    target_name: str
    enabled: bool = True
    children: tuple[ResourceNode, ...] = ()
    # Source metadata (permissions, attributes, runtime, ...) needed to re-create it
    data: dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_remote(
        cls,
        resource_type: ResourceType,
        item: dict[str, Any],
        name: str | None = None,
        children: tuple[ResourceNode, ...] = (),
    ) -> ResourceNode:
        """Create a node proposing the identity mapping (target = source)."""
        source_id = item["$id"]
        source_name = name if name is not None else item.get("name") or source_id
        return cls(
            resource_type=resource_type,
            source_id=source_id,
            source_name=source_name,
            target_id=source_id,
            target_name=source_name,
            children=children,
            data=dict(item),
        )

    def child(self, source_id: str) -> ResourceNode | None:
        for c in self.children:
            if c.source_id == source_id:
                return c
        return None


@dataclass(frozen=True)
class MigrationPlan:
    """The full, user-approved set of nodes for one run."""

    name: str
    options: Options = field(default_factory=Options)
    databases: tuple[ResourceNode, ...] = ()
    buckets: tuple[ResourceNode, ...] = ()
    functions: tuple[ResourceNode, ...] = ()
    teams: tuple[ResourceNode, ...] = ()
    users: tuple[ResourceNode, ...] = ()

    def category(self, name: str) -> tuple[ResourceNode, ...]:
        if name not in CATEGORIES:
            raise KeyError(f"Unknown plan category: {name}")
        return getattr(self, name)

    def iter_nodes(self) -> Iterator[ResourceNode]:
        """All nodes, depth first, in plan order."""
        for name in CATEGORIES:
            for node in self.category(name):
                yield node
                yield from node.children

    def enabled_count(self) -> int:
        """Number of nodes that would run (a disabled parent hides its children)."""
        count = 0
        for name in CATEGORIES:
            for node in self.category(name):
                if node.enabled:
                    count += 1 + sum(1 for c in node.children if c.enabled)
        return count

    def find(self, path: tuple[str, ...]) -> ResourceNode:
        """Look up a node by (category, source_id[, child_source_id]).

        Raises:
            KeyError: No node at that path
        """
        if len(path) not in (2, 3):
            raise KeyError(f"Invalid node path: {path}")
        for node in self.category(path[0]):
            if node.source_id != path[1]:
                continue
            if len(path) == 2:
                return node
            found = node.child(path[2])
            if found is not None:
                return found
        raise KeyError(f"No node at path: {'/'.join(path)}")


# ============================================================================
# Pure edits
# ============================================================================


def _update_at(plan: MigrationPlan, path: tuple[str, ...], update) -> MigrationPlan:
    """Return a copy of plan with the node at path replaced by update(node)."""
    plan.find(path)  # raises KeyError for unknown paths

    category = path[0]
    rebuilt = []
    for node in plan.category(category):
        if node.source_id != path[1]:
            rebuilt.append(node)
        elif len(path) == 2:
            rebuilt.append(update(node))
        else:
            children = tuple(update(c) if c.source_id == path[2] else c for c in node.children)
            rebuilt.append(replace(node, children=children))
    return replace(plan, **{category: tuple(rebuilt)})


def apply_toggle(plan: MigrationPlan, path: tuple[str, ...], enabled: bool) -> MigrationPlan:
    """Set ``enabled`` on one node, cascading from a database to its collections.

    Toggling a database overwrites the enabled flag of every child
    collection with the new value, in both directions. Any per-collection
    choice made before the toggle is discarded. Toggling a collection never
    touches its database.
    """

    def toggle(node: ResourceNode) -> ResourceNode:
        if node.resource_type == ResourceType.DATABASE:
            children = tuple(replace(c, enabled=enabled) for c in node.children)
            return replace(node, enabled=enabled, children=children)
        return replace(node, enabled=enabled)

    return _update_at(plan, path, toggle)


def apply_edit(
    plan: MigrationPlan,
    path: tuple[str, ...],
    target_id: str | None = None,
    target_name: str | None = None,
) -> MigrationPlan:
    """Change the destination id and/or name of one node."""

    def edit(node: ResourceNode) -> ResourceNode:
        return replace(
            node,
            target_id=target_id if target_id is not None else node.target_id,
            target_name=target_name if target_name is not None else node.target_name,
        )

    return _update_at(plan, path, edit)


# ============================================================================
# YAML persistence
# ============================================================================


def _node_to_dict(node: ResourceNode) -> dict[str, Any]:
    data: dict[str, Any] = {
        "type": node.resource_type.value,
        "source_id": node.source_id,
        "source_name": node.source_name,
        "target_id": node.target_id,
        "target_name": node.target_name,
        "enabled": node.enabled,
    }
    if node.children:
        data["children"] = [_node_to_dict(c) for c in node.children]
    if node.data:
        data["data"] = node.data
    return data


def _node_from_dict(data: dict[str, Any]) -> ResourceNode:
    source_id = str(data["source_id"])
    source_name = str(data.get("source_name", source_id))
    return ResourceNode(
        resource_type=ResourceType(data["type"]),
        source_id=source_id,
        source_name=source_name,
        target_id=str(data.get("target_id", source_id)),
        target_name=str(data.get("target_name", source_name)),
        enabled=bool(data.get("enabled", True)),
        children=tuple(_node_from_dict(c) for c in data.get("children") or []),
        data=dict(data.get("data") or {}),
    )


def plan_to_dict(plan: MigrationPlan) -> dict[str, Any]:
    out: dict[str, Any] = {"name": plan.name, "options": plan.options.to_dict()}
    for name in CATEGORIES:
        out[name] = [_node_to_dict(n) for n in plan.category(name)]
    return out


def plan_from_dict(data: dict[str, Any]) -> MigrationPlan:
    """Rebuild a plan from its dict form.

    Raises:
        KeyError, ValueError, TypeError: Malformed plan data
    """
    categories = {name: tuple(_node_from_dict(n) for n in data.get(name) or []) for name in CATEGORIES}
    return MigrationPlan(
        name=str(data.get("name", "plan")),
        options=Options.from_dict(data.get("options")),
        **categories,
    )


def save_plan(plan: MigrationPlan, path: Path) -> Result[Path, FerryError]:
    """Write a plan to a YAML file (atomic)."""
    return atomic_write_yaml(path, plan_to_dict(plan), mode=0o644)


def load_plan(path: Path) -> Result[MigrationPlan, FerryError]:
    """Read a plan from a YAML file."""
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return Ok(plan_from_dict(data))
    except FileNotFoundError:
        return Err(FerryError(code="PLAN_NOT_FOUND", message=f"Plan file not found: {path}"))
    except (yaml.YAMLError, AttributeError, KeyError, ValueError, TypeError) as e:
        logger.warning(f"Invalid plan file {path}: {e}")
        return Err(
            FerryError(
                code="PLAN_INVALID",
                message=f"Invalid plan file {path}: {e}",
                context={"path": str(path)},
            )
        )
