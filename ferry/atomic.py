"""Crash-safe file writes.

Plan files, the project registry and downloaded archives are written with
the temp file + rename pattern, so a crash mid-write leaves either the old
file or the new one, never a truncated mix.

Security:
- Files are created with 0o600 permissions by default (projects.yaml holds keys)
- Parent directories are created with 0o700 permissions
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Any

import yaml

from ferry.errors import Err, FerryError, Ok, Result

logger = logging.getLogger(__name__)


def atomic_write_bytes(
    path: Path,
    content: bytes,
    mode: int = 0o600,
) -> Result[Path, FerryError]:
    """Atomically write binary content to a file.

    Args:
        path: Target file path
        content: Bytes to write
        mode: File permissions (default 0o600)

    Returns:
        Ok(path) on success, Err(FerryError) on failure
    """
    path = Path(path)
    temp_path: str | None = None

    try:
        path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)

        # Temp file must live in the target directory for rename to be atomic
        fd, temp_path = tempfile.mkstemp(
            dir=path.parent,
            prefix=f".{path.stem}_",
            suffix=f"{path.suffix}.tmp",
        )
        with os.fdopen(fd, "wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())

        os.chmod(temp_path, mode)
        os.replace(temp_path, path)
        temp_path = None

        logger.debug(f"Atomic write complete: {path} ({len(content)} bytes)")
        return Ok(path)

    except PermissionError as e:
        logger.error(f"Permission denied writing {path}: {e}")
        return Err(
            FerryError(
                code="ATOMIC_PERMISSION_DENIED",
                message=f"Permission denied writing to {path}",
                context={"path": str(path)},
            )
        )

    except OSError as e:
        logger.error(f"OS error writing {path}: {e}")
        return Err(
            FerryError(
                code="ATOMIC_WRITE_FAILED",
                message=f"Failed to write {path}: {e}",
                context={"path": str(path), "error": str(e)},
            )
        )

    finally:
        _cleanup_temp(temp_path)


def atomic_write_text(path: Path, content: str, mode: int = 0o600) -> Result[Path, FerryError]:
    """Atomically write UTF-8 text to a file."""
    return atomic_write_bytes(path, content.encode("utf-8"), mode)




def atomic_write_yaml(
    path: Path,
    data: Any,
    mode: int = 0o600,
) -> Result[Path, FerryError]:
    """Atomically write YAML data to a file.

    Uses yaml.safe_dump, so only plain data (dicts, lists, scalars) is accepted.
    """
    try:
        content = yaml.safe_dump(
            data,
            default_flow_style=False,
            sort_keys=False,
            allow_unicode=True,
        )
    except yaml.YAMLError as e:
        logger.error(f"YAML serialization failed: {e}")
        return Err(
            FerryError(
                code="YAML_SERIALIZATION_FAILED",
                message=f"Failed to serialize data to YAML: {e}",
                context={"error": str(e)},
            )
        )

    return atomic_write_text(path, content, mode)


def _cleanup_temp(temp_path: str | None) -> None:
    """Remove a leftover temp file, ignoring errors."""
    if temp_path is None:
        return

    try:
        os.unlink(temp_path)
        logger.debug(f"Cleaned up temp file: {temp_path}")
    except OSError:
        # Already gone
        pass
