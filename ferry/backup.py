"""Project backups stored inside the project itself.

Backups are archive files (see ``ferry.archive``) kept in a dedicated
bucket, ``FerryConfig.backup_bucket_id``, created the first time a backup
is written. Each backup is one file named
``backup_<project>_<timestamp>.json.gz``.

A restore replays an archive through the transfer executor with the
archive as the source. Every restore starts from scratch: its checkpoints
live in memory only, so archives never depend on each other.
"""

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from functools import partial
from typing import Any

from ferry.archive import Archive, pack, unpack
from ferry.checkpoints import CheckpointStore, MemoryBackend
from ferry.client import ApiError, call_with_retry, paginate
from ferry.config import FerryConfig
from ferry.events import RunEvent
from ferry.executor import RunHandle, TransferExecutor
from ferry.plan import MigrationPlan, Options

logger = logging.getLogger(__name__)

BACKUP_BUCKET_NAME = "Ferry Backups"
BACKUP_PREFIX = "backup_"


@dataclass(frozen=True)
class ArchiveRef:
    """A stored backup."""

    bucket_id: str
    file_id: str
    name: str
    size: int = 0
    created_at: str = ""

    @classmethod
    def from_file(cls, bucket_id: str, item: dict[str, Any]) -> "ArchiveRef":
        return cls(
            bucket_id=bucket_id,
            file_id=item["$id"],
            name=item.get("name", item["$id"]),
            size=int(item.get("sizeOriginal") or 0),
            created_at=item.get("$createdAt", ""),
        )


def backup_file_name(project_id: str, now: datetime | None = None) -> str:
    now = now or datetime.now(UTC)
    return f"{BACKUP_PREFIX}{project_id}_{now.strftime('%Y%m%dT%H%M%SZ')}.json.gz"


class BackupService:
    """Create, list and restore backups of one project."""

    def __init__(
        self,
        client: Any,
        config: FerryConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.config = config or FerryConfig()
        self.sleep = sleep

    @property
    def project_id(self) -> str:
        return getattr(self.client, "project_id", "project")

    @property
    def bucket_id(self) -> str:
        return self.config.backup_bucket_id

    def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return call_with_retry(
            fn,
            *args,
            retries=self.config.max_retries,
            backoff=self.config.retry_backoff,
            backoff_max=self.config.retry_backoff_max,
            sleep=self.sleep,
            **kwargs,
        )

    def ensure_bucket(self) -> str:
        """Create the backup bucket if it does not exist yet."""
        try:
            self._call(self.client.get_bucket, self.bucket_id)
            return self.bucket_id
        except ApiError as e:
            if not e.is_not_found:
                raise

        logger.info(f"Creating backup bucket {self.bucket_id} in {self.project_id}")
        self._call(
            self.client.create_bucket,
            self.bucket_id,
            BACKUP_BUCKET_NAME,
            {"fileSecurity": False, "enabled": True},
        )
        return self.bucket_id

    def create_backup(self, options: Options | None = None) -> ArchiveRef:
        """Archive the project and upload the archive to the backup bucket.

        Raises:
            ScanError: The project could not be read
            ApiError: The bucket or upload failed
        """
        data = pack(
            self.client,
            options,
            self.config,
            exclude_buckets=(self.bucket_id,),
            sleep=self.sleep,
        )
        bucket_id = self.ensure_bucket()
        name = backup_file_name(self.project_id)
        created = self._call(self.client.create_file, bucket_id, uuid.uuid4().hex, name, data, None)
        ref = ArchiveRef(
            bucket_id=bucket_id,
            file_id=created.get("$id", ""),
            name=name,
            size=len(data),
            created_at=created.get("$createdAt", ""),
        )
        logger.info(f"Backup {ref.name} stored as {ref.file_id} ({ref.size} bytes)")
        return ref

    def list_backups(self) -> list[ArchiveRef]:
        """Stored backups, newest first. Empty if the bucket does not exist."""

        def fetch(cursor: str | None, limit: int) -> list[dict[str, Any]]:
            return self._call(partial(self.client.list_files, self.bucket_id), cursor=cursor, limit=limit)

        try:
            files = list(paginate(fetch, self.config.page_size))
        except ApiError as e:
            if e.is_not_found:
                return []
            raise

        refs = [ArchiveRef.from_file(self.bucket_id, f) for f in files if f.get("name", "").startswith(BACKUP_PREFIX)]
        return sorted(refs, key=lambda r: (r.created_at, r.name), reverse=True)

    def download(self, file_id: str) -> bytes:
        """Raw archive bytes of one backup."""
        return self._call(self.client.get_file_download, self.bucket_id, file_id)

    def load(self, file_id: str) -> Archive:
        """Download and decode one backup.

        Raises:
            ApiError: Download failed
            ArchiveError: The file is not a readable archive
        """
        return unpack(self.download(file_id))

    def restore(
        self,
        file_id: str,
        destination: Any = None,
        plan: MigrationPlan | None = None,
        on_event: Callable[[RunEvent], None] | None = None,
    ) -> RunHandle:
        """Start restoring a backup.

        Args:
            file_id: Backup file id in the backup bucket
            destination: Client to restore into (defaults to this project)
            plan: Edited restore plan (defaults to everything in the archive)
            on_event: Progress callback

        Returns:
            Handle of the running restore
        """
        archive = self.load(file_id)
        destination = destination if destination is not None else self.client
        plan = plan or archive.plan()
        # Archives carry no file contents and are already local
        plan = replace(plan, options=replace(plan.options, include_files=False, use_cloud_proxy=False))

        executor = TransferExecutor(
            archive.source_client(),
            destination,
            CheckpointStore(MemoryBackend()),
            source_id=f"archive-{file_id}",
            dest_id=getattr(destination, "project_id", self.project_id),
            config=self.config,
            on_event=on_event,
            sleep=self.sleep,
        )
        logger.info(f"Restoring backup {file_id} into {executor.dest_id}")
        return executor.execute(plan, resume=False)
