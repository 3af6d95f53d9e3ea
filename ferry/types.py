"""Branded identifier types.

These are plain strings at runtime; the NewType wrappers only exist so a
type checker can tell a project identifier from a resource identifier.
"""

from typing import NewType

# Identifier of a remote project (or of an archive acting as one)
ProjectId = NewType("ProjectId", str)

# Identifier of a single remote resource ($id)
ResourceId = NewType("ResourceId", str)

# Checkpoint key of a node, e.g. "collection:db-A/orders"
NodeKey = NewType("NodeKey", str)
