"""Ferry: cross-project migration and backup engine for backend projects."""

__version__ = "0.4.0"

# Branded types for type-safe IDs
from ferry.types import NodeKey, ProjectId, ResourceId

__all__ = [
    "__version__",
    "NodeKey",
    "ProjectId",
    "ResourceId",
]
