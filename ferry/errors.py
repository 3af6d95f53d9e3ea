"""Error types for Ferry.

Two layers:

- ``FerryError`` is a plain record (code, message, context) that can be
  logged, shown in the CLI, or carried inside a ``Result``.
- ``FerryException`` subclasses are raised by the engine when a run or a
  scan must end. Each one carries a ``FerryError`` so callers can report it
  uniformly.

Result types (``Ok`` / ``Err``) are used by the file persistence helpers,
which report failures instead of raising.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

T = TypeVar("T")
E = TypeVar("E")


@dataclass(frozen=True)
class FerryError:
    """A structured, displayable error."""

    code: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful result."""

    value: T

    @property
    def ok(self) -> bool:
        return True

    @property
    def error(self) -> None:
        return None

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_err(self):
        raise ValueError("Called unwrap_err() on an Ok result")


@dataclass(frozen=True)
class Err(Generic[E]):
    """Failed result."""

    error: E

    @property
    def ok(self) -> bool:
        return False

    @property
    def value(self) -> None:
        return None

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self):
        raise ValueError(f"Called unwrap() on an Err result: {self.error}")

    def unwrap_err(self) -> E:
        return self.error


Result = Ok[T] | Err[E]


def ok(value: T) -> Ok[T]:
    return Ok(value)


def err(error: E) -> Err[E]:
    return Err(error)


def format_error(error: FerryError) -> str:
    """Format an error for terminal output."""
    text = f"Error [{error.code}]: {error.message}"
    node = error.context.get("node_key")
    if node:
        text += f" (at {node})"
    return text


# ============================================================================
# Engine exceptions
# ============================================================================


class FerryException(Exception):
    """Base class for exceptions raised by the engine."""

    code = "FERRY_ERROR"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.error = FerryError(code=self.code, message=message, context=context)


class ScanError(FerryException):
    """The source project could not be enumerated. No plan was produced."""

    code = "SCAN_FAILED"


class CreationError(FerryException):
    """A destination write failed. The run is aborted, checkpoints are kept."""

    code = "CREATION_FAILED"

    def __init__(self, message: str, node_key: str, **context: Any):
        super().__init__(message, node_key=node_key, **context)
        self.node_key = node_key


class ForceStopped(FerryException):
    """Cancellation was observed at a node boundary."""

    code = "FORCE_STOPPED"


class ProxyUnavailable(FerryException):
    """The proxy worker could not be deployed or invoked."""

    code = "PROXY_UNAVAILABLE"


class ArchiveError(FerryException):
    """A backup archive could not be read."""

    code = "ARCHIVE_INVALID"
