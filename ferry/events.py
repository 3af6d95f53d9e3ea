"""Progress events emitted by a transfer run.

Events are immutable and delivered in order, first to the optional
``on_event`` callback of the executor, then appended to
``RunHandle.events``. The CLI renders them; tests assert on them.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class RunStarted:
    """A run began.

    Attributes:
        source: Source identity
        destination: Destination identity
        resumed: Whether completed checkpoints are being skipped
    """

    source: str
    destination: str
    resumed: bool


@dataclass(frozen=True)
class PhaseStarted:
    """A category of the fixed order began (databases, documents, ...)."""

    phase: str


@dataclass(frozen=True)
class NodeCreated:
    """A resource was materialized on the destination and checkpointed."""

    node_key: str
    target_id: str


@dataclass(frozen=True)
class NodeSkipped:
    """A resource was not created.

    Attributes:
        node_key: Checkpoint key of the node
        reason: "checkpoint" (done in a prior run) or "missing" (nothing to copy)
    """

    node_key: str
    reason: str


@dataclass(frozen=True)
class PayloadTransferred:
    """A binary payload was copied.

    Attributes:
        node_key: Checkpoint key of the file or deployment
        size: Bytes moved through this process (0 when proxied)
        via: "local" or "proxy"
    """

    node_key: str
    size: int
    via: str


@dataclass(frozen=True)
class ProxyDeployed:
    """The proxy worker is ready in the given project."""

    function_id: str
    project: str


@dataclass(frozen=True)
class ProxyFallback:
    """Proxy deploy failed and configuration allowed local transfer instead."""

    reason: str


@dataclass(frozen=True)
class RunFinished:
    """A run reached its terminal status."""

    status: str
    created: int
    skipped: int
    message: str = ""


RunEvent = (
    RunStarted
    | PhaseStarted
    | NodeCreated
    | NodeSkipped
    | PayloadTransferred
    | ProxyDeployed
    | ProxyFallback
    | RunFinished
)
