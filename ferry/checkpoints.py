"""Checkpoint store: durable per-node completion records.

A checkpoint says "node K was already materialized on destination D when
copying from source S, and it got target id T". Records are keyed by the
ordered (source, destination) pair, so two destinations fed from the same
source never see each other's progress.

Storage goes through a small backend interface so tests can use memory
and the CLI can use files:

- MemoryBackend: dict of lists, lost on exit (tests, restore runs)
- JsonlFileBackend: one append-only JSON Lines journal per pair in
  ~/.ferry/checkpoints/<source>__<dest>-<digest>.jsonl

Entries are only ever appended during a run. A later record for the same
node key wins, which is how a fresh run overwrites stale entries without
clearing them first. ``clear()`` is the only way to drop a pair.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from ferry.config import checkpoints_dir
from ferry.types import NodeKey

logger = logging.getLogger(__name__)


class CheckpointBackend(Protocol):
    """Key -> append-only list of records."""

    def read(self, key: str) -> list[dict[str, Any]]: ...

    def append(self, key: str, record: dict[str, Any]) -> None: ...

    def delete(self, key: str) -> None: ...

    def exists(self, key: str) -> bool: ...


class MemoryBackend:
    """Non-durable backend for tests and one-shot runs."""

    def __init__(self) -> None:
        self._data: dict[str, list[dict[str, Any]]] = {}

    def read(self, key: str) -> list[dict[str, Any]]:
        return list(self._data.get(key, []))

    def append(self, key: str, record: dict[str, Any]) -> None:
        self._data.setdefault(key, []).append(dict(record))

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def exists(self, key: str) -> bool:
        return bool(self._data.get(key))


def _sanitize_component(value: str) -> str:
    """Make an identifier safe to use in a file name (no path traversal)."""
    sanitized = re.sub(r"[^a-zA-Z0-9_-]+", "-", value).strip("-")
    return sanitized or "unnamed"


class JsonlFileBackend:
    """Durable backend: one JSON Lines journal per key.

    Each append is a single line followed by flush + fsync, so a crash can
    at worst leave one partial trailing line, which ``read`` skips. The next
    append starts on a fresh line.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.jsonl"

    def read(self, key: str) -> list[dict[str, Any]]:
        path = self._path(key)
        if not path.exists():
            return []

        records = []
        with open(path, encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.warning(f"Skipping corrupt checkpoint line {path}:{line_no}")
        return records

    def append(self, key: str, record: dict[str, Any]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True, mode=0o700)
        path = self._path(key)
        line = (json.dumps(record, ensure_ascii=False) + "\n").encode("utf-8")
        with open(path, "a+b") as f:
            if f.seek(0, os.SEEK_END) > 0:
                f.seek(-1, os.SEEK_END)
                if f.read(1) != b"\n":
                    # Terminate a line torn by an earlier crash
                    line = b"\n" + line
            f.write(line)
            f.flush()
            os.fsync(f.fileno())

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass

    def exists(self, key: str) -> bool:
        path = self._path(key)
        return path.exists() and path.stat().st_size > 0


class CheckpointStore:
    """Completion records for (source, destination) pairs.

    Thread-safe: concurrent leaf transfers call ``mark_complete`` from
    worker threads and every write goes through one lock.
    """

    def __init__(self, backend: CheckpointBackend):
        self.backend = backend
        self._lock = threading.Lock()
        self._cache: dict[str, dict[NodeKey, str]] = {}

    @classmethod
    def default(cls) -> CheckpointStore:
        """File-backed store under the Ferry home directory."""
        return cls(JsonlFileBackend(checkpoints_dir()))

    @staticmethod
    def pair_key(source_id: str, dest_id: str) -> str:
        """File-safe key for an ordered pair.

        The readable prefix is lossy, so a digest of the exact pair keeps
        distinct pairs apart.
        """
        digest = hashlib.sha256(json.dumps([source_id, dest_id]).encode("utf-8")).hexdigest()[:16]
        return f"{_sanitize_component(source_id)}__{_sanitize_component(dest_id)}-{digest}"

    def _load(self, pair: str) -> dict[NodeKey, str]:
        # Caller holds the lock
        if pair not in self._cache:
            completed: dict[NodeKey, str] = {}
            for record in self.backend.read(pair):
                key = record.get("key")
                if key:
                    completed[NodeKey(key)] = record.get("target_id", "")
            self._cache[pair] = completed
        return self._cache[pair]

    def get(self, source_id: str, dest_id: str) -> dict[NodeKey, str]:
        """Completed node keys mapped to the target id each one was given."""
        with self._lock:
            return dict(self._load(self.pair_key(source_id, dest_id)))

    def is_complete(self, source_id: str, dest_id: str, key: NodeKey) -> bool:
        with self._lock:
            return key in self._load(self.pair_key(source_id, dest_id))

    def assigned_target(self, source_id: str, dest_id: str, key: NodeKey) -> str | None:
        with self._lock:
            return self._load(self.pair_key(source_id, dest_id)).get(key)

    def mark_complete(
        self,
        source_id: str,
        dest_id: str,
        key: NodeKey,
        assigned_target_id: str,
    ) -> None:
        """Record that a node was materialized. Later records win."""
        pair = self.pair_key(source_id, dest_id)
        record = {
            "key": key,
            "target_id": assigned_target_id,
            "ts": datetime.now(UTC).isoformat(),
        }
        with self._lock:
            self.backend.append(pair, record)
            self._load(pair)[key] = assigned_target_id

    def has_any(self, source_id: str, dest_id: str) -> bool:
        pair = self.pair_key(source_id, dest_id)
        with self._lock:
            if self._cache.get(pair):
                return True
            return self.backend.exists(pair)

    def clear(self, source_id: str, dest_id: str) -> None:
        """Drop every record for the pair. Explicit user action only."""
        pair = self.pair_key(source_id, dest_id)
        with self._lock:
            self.backend.delete(pair)
            self._cache.pop(pair, None)
        logger.info(f"Cleared checkpoints for {source_id} -> {dest_id}")
