"""Transfer executor: run an approved plan against a destination.

The executor walks a MigrationPlan in a fixed dependency order and creates
each enabled node on the destination, recording a checkpoint after every
successful creation:

    databases + collections (+ attributes, relationships, indexes)
    -> documents -> buckets -> files
    -> functions (metadata, variables, deployment)
    -> teams -> memberships -> users

Later categories may reference earlier ones by id, so the order is never
changed. Rules:

- Disabled nodes and everything under them are skipped entirely and
  never checkpointed.
- With ``resume=True`` a node already checkpointed for this
  source/destination pair is not re-created, but its children and
  payloads are still visited.
- Any creation failure aborts the run (fail-fast). Checkpoints written so
  far are kept so a resumed run continues past the failure.
- ``RunHandle.cancel()`` is observed before each node starts. An in-flight
  call finishes; nothing new starts. The run ends "stopped".
- Documents, files and memberships are created page by page, up to
  ``max_workers`` at a time.
- Each remote request is retried with backoff on HTTP 429 before it counts
  as a failure. Steps made of several requests retry them one by one.

Usage:
    executor = TransferExecutor(src_client, dst_client, CheckpointStore.default(),
                                source_id="prod", dest_id="staging")
    handle = executor.execute(plan, resume=executor.has_prior_checkpoint())
    result = handle.wait()
"""

from __future__ import annotations

import io
import logging
import tarfile
import threading
import time
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import StrEnum
from functools import partial
from typing import Any

from ferry.checkpoints import CheckpointStore
from ferry.client import ApiError, call_with_retry, document_body, is_two_way_child, iter_pages
from ferry.config import FerryConfig
from ferry.errors import CreationError, FerryError, FerryException, ForceStopped, ProxyUnavailable
from ferry.events import (
    NodeCreated,
    NodeSkipped,
    PayloadTransferred,
    PhaseStarted,
    ProxyDeployed,
    ProxyFallback,
    RunEvent,
    RunFinished,
    RunStarted,
)
from ferry.plan import MigrationPlan, ResourceNode, ResourceType, node_key
from ferry.proxy import ProxyWorker, TransferTask
from ferry.types import NodeKey

logger = logging.getLogger(__name__)


class RunStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass(frozen=True)
class RunResult:
    """Terminal outcome of a run."""

    status: RunStatus
    created: int = 0
    skipped: int = 0
    error: FerryError | None = None
    has_checkpoint: bool = False

    @property
    def resumable(self) -> bool:
        """Whether offering "resume" makes sense."""
        return self.status in (RunStatus.STOPPED, RunStatus.ERROR) and self.has_checkpoint


class RunHandle:
    """Control and observe one run.

    Returned by ``TransferExecutor.execute``. Safe to use from any thread.
    """

    def __init__(self) -> None:
        self._cancel = threading.Event()
        self._done = threading.Event()
        self._lock = threading.Lock()
        self._status = RunStatus.PENDING
        self._result: RunResult | None = None
        self._thread: threading.Thread | None = None
        self.events: list[RunEvent] = []

    def cancel(self) -> None:
        """Request a stop. Takes effect before the next node starts."""
        if not self._done.is_set() and not self._cancel.is_set():
            logger.info("Force stop requested, stopping after current operation")
            self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def status(self) -> RunStatus:
        with self._lock:
            return self._status

    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> RunResult | None:
        """Block until the run ends. Returns None if the timeout expires first."""
        self._done.wait(timeout)
        return self._result

    @property
    def result(self) -> RunResult | None:
        return self._result

    def _set_status(self, status: RunStatus) -> None:
        with self._lock:
            self._status = status

    def _finish(self, result: RunResult) -> None:
        with self._lock:
            self._result = result
            self._status = result.status
        self._done.set()


def default_build_commands(runtime: str, code: bytes) -> str | None:
    """Build command to use when a deployment declares none.

    Node bundles that ship a package.json need ``npm install`` on the
    destination even when the source built them implicitly.
    """
    if not runtime.startswith("node"):
        return None
    try:
        with tarfile.open(fileobj=io.BytesIO(code), mode="r:*") as tar:
            names = {name.removeprefix("./") for name in tar.getnames()}
    except tarfile.TarError:
        return None
    return "npm install" if "package.json" in names else None


class TransferExecutor:
    """Runs plans from one source to one destination."""

    def __init__(
        self,
        source: Any,
        destination: Any,
        store: CheckpointStore,
        source_id: str,
        dest_id: str,
        config: FerryConfig | None = None,
        proxy: ProxyWorker | None = None,
        on_event: Callable[[RunEvent], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.source = source
        self.destination = destination
        self.store = store
        self.source_id = source_id
        self.dest_id = dest_id
        self.config = config or FerryConfig()
        self.proxy = proxy
        self.on_event = on_event
        self.sleep = sleep

    def has_prior_checkpoint(self, source_id: str | None = None, dest_id: str | None = None) -> bool:
        """Whether any checkpoint exists for the pair (defaults to this executor's pair)."""
        return self.store.has_any(source_id or self.source_id, dest_id or self.dest_id)

    def execute(self, plan: MigrationPlan, resume: bool = False) -> RunHandle:
        """Start a run in a background thread and return its handle.

        The plan is used exactly as given; nothing is re-scanned.
        """
        handle = RunHandle()
        run = _Run(self, plan, resume, handle)
        thread = threading.Thread(
            target=run.run,
            name=f"ferry-run-{self.source_id}-{self.dest_id}",
            daemon=True,
        )
        handle._thread = thread
        thread.start()
        return handle

    def run(self, plan: MigrationPlan, resume: bool = False) -> RunResult:
        """Execute a plan and block until it finishes.

        Raises:
            FerryException: The run thread exited without reporting a result
        """
        result = self.execute(plan, resume).wait()
        if result is None:
            raise FerryException(
                f"Run {self.source_id} -> {self.dest_id} ended without a result",
                source=self.source_id,
                dest=self.dest_id,
            )
        return result


class _Run:
    """State of a single execution."""

    def __init__(self, executor: TransferExecutor, plan: MigrationPlan, resume: bool, handle: RunHandle):
        self.ex = executor
        self.plan = plan
        self.resume = resume
        self.handle = handle
        self.config = executor.config
        self.src = executor.source
        self.dst = executor.destination
        self.created = 0
        self.skipped = 0
        self._lock = threading.Lock()
        self._proxy_checked = False
        self.proxy_active = False

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def run(self) -> None:
        self.handle._set_status(RunStatus.RUNNING)
        logger.info(
            f"{'Resuming' if self.resume else 'Starting'} run {self.ex.source_id} -> {self.ex.dest_id}"
        )

        status, error = RunStatus.COMPLETED, None
        try:
            self._emit(RunStarted(self.ex.source_id, self.ex.dest_id, self.resume))
            self._run_phases()
        except ForceStopped as e:
            status, error = RunStatus.STOPPED, e.error
        except FerryException as e:
            status, error = RunStatus.ERROR, e.error
        except ApiError as e:
            # Source listings and downloads outside a single node's creation
            status = RunStatus.ERROR
            error = FerryError(code="REMOTE_CALL_FAILED", message=str(e), context={"status": e.status})
        except Exception as e:
            logger.exception("Run failed unexpectedly")
            status = RunStatus.ERROR
            error = FerryError(code="UNEXPECTED_ERROR", message=f"{type(e).__name__}: {e}")
        finally:
            self._teardown_proxy()

        if error is not None:
            logger.error(f"Run ended {status}: {error.message}")
        else:
            logger.info(f"Run completed: {self.created} created, {self.skipped} skipped")

        result = RunResult(
            status=status,
            created=self.created,
            skipped=self.skipped,
            error=error,
            has_checkpoint=self.ex.store.has_any(self.ex.source_id, self.ex.dest_id),
        )
        try:
            self._emit(RunFinished(status.value, self.created, self.skipped, error.message if error else ""))
        finally:
            self.handle._finish(result)

    def _run_phases(self) -> None:
        opts = self.plan.options
        databases = [d for d in self.plan.databases if d.enabled]
        buckets = [b for b in self.plan.buckets if b.enabled]
        functions = [f for f in self.plan.functions if f.enabled]
        teams = [t for t in self.plan.teams if t.enabled]
        users = [u for u in self.plan.users if u.enabled]

        # source db id -> (target db id, {source collection id: target collection id})
        db_targets: dict[str, tuple[str, dict[str, str]]] = {}
        if databases:
            self._phase("databases")
            for db in databases:
                db_targets[db.source_id] = self._transfer_database(db)

        if opts.include_documents and databases:
            self._phase("documents")
            for db in databases:
                db_target, col_targets = db_targets[db.source_id]
                for col in db.children:
                    if col.enabled:
                        self._transfer_documents(db, col, db_target, col_targets[col.source_id])

        bucket_targets: dict[str, str] = {}
        if buckets:
            self._phase("buckets")
            for bucket in buckets:
                bucket_targets[bucket.source_id] = self._materialize(
                    node_key(ResourceType.BUCKET, bucket.source_id),
                    partial(self._call, self.dst.create_bucket, bucket.target_id, bucket.target_name, bucket.data),
                    bucket.target_id,
                )

        if opts.include_files and buckets:
            self._phase("files")
            self._ensure_proxy()
            for bucket in buckets:
                self._transfer_files(bucket, bucket_targets[bucket.source_id])

        if functions:
            self._phase("functions")
            if opts.include_function_code:
                self._ensure_proxy()
            for fn in functions:
                self._transfer_function(fn)

        team_targets: dict[str, str] = {}
        if teams:
            self._phase("teams")
            for team in teams:
                team_targets[team.source_id] = self._materialize(
                    node_key(ResourceType.TEAM, team.source_id),
                    partial(self._call, self.dst.create_team, team.target_id, team.target_name),
                    team.target_id,
                )

            self._phase("memberships")
            for team in teams:
                self._transfer_memberships(team, team_targets[team.source_id])

        if users:
            self._phase("users")
            for user in users:
                self._materialize(
                    node_key(ResourceType.USER, user.source_id),
                    partial(self._create_user, user),
                    user.target_id,
                )

    # ------------------------------------------------------------------
    # Node primitives
    # ------------------------------------------------------------------

    def _emit(self, event: RunEvent) -> None:
        with self._lock:
            self.handle.events.append(event)
            if self.ex.on_event is not None:
                self.ex.on_event(event)

    def _phase(self, name: str) -> None:
        self._check_stop()
        logger.info(f"Phase: {name}")
        self._emit(PhaseStarted(name))

    def _check_stop(self) -> None:
        if self.handle.cancelled:
            raise ForceStopped("Run force stopped by user")

    def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return call_with_retry(
            fn,
            *args,
            retries=self.config.max_retries,
            backoff=self.config.retry_backoff,
            backoff_max=self.config.retry_backoff_max,
            sleep=self.ex.sleep,
            **kwargs,
        )

    def _skip_if_done(self, key: NodeKey) -> str | None:
        """On resume, the target id of an already-completed node, else None."""
        self._check_stop()
        if not self.resume:
            return None
        assigned = self.ex.store.assigned_target(self.ex.source_id, self.ex.dest_id, key)
        if assigned is None:
            return None
        with self._lock:
            self.skipped += 1
        logger.debug(f"Skipping {key} (checkpointed)")
        self._emit(NodeSkipped(key, "checkpoint"))
        return assigned

    def _materialize(
        self,
        key: NodeKey,
        create: Callable[[], Any],
        target_id: str | None = None,
    ) -> str:
        """Create one node unless a resumed run already did.

        Args:
            key: Checkpoint key
            create: Performs the destination write(s)
            target_id: Id the node gets; taken from create()'s "$id" when None

        Returns:
            The node's target id on the destination
        """
        assigned = self._skip_if_done(key)
        if assigned is not None:
            return assigned or (target_id or "")

        try:
            created = create()
        except ApiError as e:
            raise CreationError(f"Failed to create {key}: {e.message}", node_key=key, status=e.status) from e

        if target_id is None:
            target_id = (created or {}).get("$id", "") if isinstance(created, dict) else ""
        self.ex.store.mark_complete(self.ex.source_id, self.ex.dest_id, key, target_id)
        with self._lock:
            self.created += 1
        logger.debug(f"Created {key} -> {target_id}")
        self._emit(NodeCreated(key, target_id))
        return target_id

    def _iter_pages(self, fetch: Callable[..., list[dict[str, Any]]]) -> Iterator[list[dict[str, Any]]]:
        return iter_pages(partial(self._call, fetch), self.config.page_size)

    def _transfer_leaves(
        self,
        fetch: Callable[..., list[dict[str, Any]]],
        build: Callable[[dict[str, Any]], tuple[NodeKey, Callable[[], Any], str | None]],
    ) -> None:
        """Create every item of a source listing, one page per batch."""
        for page in self._iter_pages(fetch):
            # No new batch after a cancellation
            self._check_stop()
            self._run_batch([build(item) for item in page])

    def _run_batch(self, tasks: list[tuple[NodeKey, Callable[[], Any], str | None]]) -> None:
        workers = max(1, self.config.max_workers)
        if workers == 1 or len(tasks) <= 1:
            for key, create, target_id in tasks:
                self._materialize(key, create, target_id)
            return

        abort = threading.Event()

        def work(task: tuple[NodeKey, Callable[[], Any], str | None]) -> None:
            if abort.is_set():
                return
            self._materialize(*task)

        failure: BaseException | None = None
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ferry-leaf") as pool:
            futures = [pool.submit(work, task) for task in tasks]
            for future in as_completed(futures):
                try:
                    future.result()
                except Exception as e:
                    abort.set()
                    # A real failure outranks a stop observed by a sibling
                    if failure is None or (isinstance(failure, ForceStopped) and not isinstance(e, ForceStopped)):
                        failure = e
        if failure is not None:
            raise failure

    # ------------------------------------------------------------------
    # Databases
    # ------------------------------------------------------------------

    def _transfer_database(self, db: ResourceNode) -> tuple[str, dict[str, str]]:
        logger.info(f"Database: {db.source_name} -> {db.target_name}")
        db_target = self._materialize(
            node_key(ResourceType.DATABASE, db.source_id),
            partial(self._call, self.dst.create_database, db.target_id, db.target_name),
            db.target_id,
        )

        collections = [c for c in db.children if c.enabled]
        col_targets: dict[str, str] = {}
        for col in collections:
            col_targets[col.source_id] = self._materialize(
                node_key(ResourceType.COLLECTION, db.source_id, col.source_id),
                partial(self._call, self.dst.create_collection, db_target, col.target_id, col.target_name, col.data),
                col.target_id,
            )

        # Plain attributes first, then relationships (they point at sibling collections)
        for relationships in (False, True):
            for col in collections:
                attributes = [
                    a for a in col.data.get("attributes") or [] if (a.get("type") == "relationship") == relationships
                ]
                for attribute in attributes:
                    if is_two_way_child(attribute):
                        # Created by the server along with the parent side
                        continue
                    related = attribute.get("relatedCollection")
                    if attribute.get("type") == "relationship":
                        attribute = {**attribute, "relatedCollection": col_targets.get(related, related)}
                    self._materialize(
                        node_key(ResourceType.ATTRIBUTE, db.source_id, col.source_id, attribute["key"]),
                        partial(
                            self._call,
                            self.dst.create_attribute,
                            db_target,
                            col_targets[col.source_id],
                            attribute,
                        ),
                        attribute["key"],
                    )
                    if attribute.get("twoWay") and attribute.get("twoWayKey") and related in col_targets:
                        self.ex.store.mark_complete(
                            self.ex.source_id,
                            self.ex.dest_id,
                            node_key(ResourceType.ATTRIBUTE, db.source_id, related, attribute["twoWayKey"]),
                            attribute["twoWayKey"],
                        )
                if attributes and self.config.schema_settle_delay > 0:
                    self.ex.sleep(self.config.schema_settle_delay)

        for col in collections:
            for index in col.data.get("indexes") or []:
                self._materialize(
                    node_key(ResourceType.INDEX, db.source_id, col.source_id, index["key"]),
                    partial(self._call, self.dst.create_index, db_target, col_targets[col.source_id], index),
                    index["key"],
                )

        return db_target, col_targets

    def _transfer_documents(self, db: ResourceNode, col: ResourceNode, db_target: str, col_target: str) -> None:
        logger.info(f"Documents: {db.source_id}/{col.source_id}")

        def build(doc: dict[str, Any]):
            return (
                node_key(ResourceType.DOCUMENT, db.source_id, col.source_id, doc["$id"]),
                partial(
                    self._call,
                    self.dst.create_document,
                    db_target,
                    col_target,
                    doc["$id"],
                    document_body(doc),
                    doc.get("$permissions"),
                ),
                doc["$id"],
            )

        self._transfer_leaves(partial(self.src.list_documents, db.source_id, col.source_id), build)

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def _transfer_files(self, bucket: ResourceNode, bucket_target: str) -> None:
        logger.info(f"Files: {bucket.source_name} -> {bucket.target_name}")

        def build(item: dict[str, Any]):
            key = node_key(ResourceType.FILE, bucket.source_id, item["$id"])
            return key, partial(self._copy_file, key, bucket, bucket_target, item), item["$id"]

        self._transfer_leaves(partial(self.src.list_files, bucket.source_id), build)

    def _copy_file(self, key: NodeKey, bucket: ResourceNode, bucket_target: str, item: dict[str, Any]) -> None:
        if self.proxy_active:
            task = TransferTask(
                kind="file",
                source_ref={"bucketId": bucket.source_id, "fileId": item["$id"]},
                dest_ref={"bucketId": bucket_target, "fileId": item["$id"]},
            )
            self.ex.proxy.invoke(task)
            self._emit(PayloadTransferred(key, 0, "proxy"))
            return

        content = self._call(self.src.get_file_download, bucket.source_id, item["$id"])
        self._call(
            self.dst.create_file,
            bucket_target,
            item["$id"],
            item.get("name") or item["$id"],
            content,
            item.get("$permissions"),
        )
        self._emit(PayloadTransferred(key, len(content), "local"))

    # ------------------------------------------------------------------
    # Functions
    # ------------------------------------------------------------------

    def _transfer_function(self, fn: ResourceNode) -> None:
        logger.info(f"Function: {fn.source_name} -> {fn.target_name}")
        fn_target = self._materialize(
            node_key(ResourceType.FUNCTION, fn.source_id),
            partial(self._call, self.dst.create_function, fn.target_id, fn.target_name, fn.data),
            fn.target_id,
        )

        for page in self._iter_pages(partial(self.src.list_variables, fn.source_id)):
            for variable in page:
                self._materialize(
                    node_key(ResourceType.VARIABLE, fn.source_id, variable["key"]),
                    partial(self._call, self.dst.create_variable, fn_target, variable["key"], variable.get("value", "")),
                    variable["key"],
                )

        if self.plan.options.include_function_code:
            self._transfer_deployment(fn, fn_target)

    def _transfer_deployment(self, fn: ResourceNode, fn_target: str) -> None:
        key = node_key(ResourceType.DEPLOYMENT, fn.source_id)
        if self._skip_if_done(key) is not None:
            return

        deployment = self._call(self.src.get_latest_deployment, {**fn.data, "$id": fn.source_id})
        if not deployment:
            logger.info(f"No deployment found for {fn.source_id}, skipping code")
            with self._lock:
                self.skipped += 1
            self._emit(NodeSkipped(key, "missing"))
            return

        self._materialize(key, partial(self._copy_deployment, key, fn, fn_target, deployment))

    def _copy_deployment(
        self, key: NodeKey, fn: ResourceNode, fn_target: str, deployment: dict[str, Any]
    ) -> dict[str, Any]:
        entrypoint = deployment.get("entrypoint") or fn.data.get("entrypoint")
        commands = deployment.get("commands") or fn.data.get("commands")

        if self.proxy_active:
            task = TransferTask(
                kind="deployment",
                source_ref={"functionId": fn.source_id, "deploymentId": deployment["$id"]},
                dest_ref={"functionId": fn_target, "entrypoint": entrypoint, "commands": commands},
            )
            response = self.ex.proxy.invoke(task)
            self._emit(PayloadTransferred(key, 0, "proxy"))
            return {"$id": response.get("deploymentId", "")}

        code = self._call(self.src.get_deployment_download, fn.source_id, deployment["$id"])
        if not commands:
            commands = default_build_commands(fn.data.get("runtime") or "", code)
            if commands:
                logger.info(f"Using build command '{commands}' for {fn.source_id}")
        created = self._call(self.dst.create_deployment, fn_target, code, entrypoint, commands, True)
        self._emit(PayloadTransferred(key, len(code), "local"))
        return created

    # ------------------------------------------------------------------
    # Teams
    # ------------------------------------------------------------------

    def _transfer_memberships(self, team: ResourceNode, team_target: str) -> None:
        def build(membership: dict[str, Any]):
            return (
                node_key(ResourceType.MEMBERSHIP, team.source_id, membership["$id"]),
                partial(
                    self._call,
                    self.dst.create_membership,
                    team_target,
                    list(membership.get("roles") or []),
                    membership.get("userEmail"),
                    membership.get("userName"),
                ),
                None,
            )

        self._transfer_leaves(partial(self.src.list_memberships, team.source_id), build)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def _create_user(self, user: ResourceNode) -> dict[str, Any]:
        # Retried separately so a rate-limited update never replays the create
        created = self._call(self.dst.create_user, user.target_id, user.data)
        self._call(self.dst.update_user, user.target_id, user.data)
        return created

    # ------------------------------------------------------------------
    # Proxy
    # ------------------------------------------------------------------

    def _ensure_proxy(self) -> None:
        """Deploy the proxy once, the first time a payload phase needs it."""
        if self._proxy_checked or not self.plan.options.use_cloud_proxy:
            return
        self._proxy_checked = True

        proxy = self.ex.proxy
        try:
            if proxy is None:
                raise ProxyUnavailable("Cloud proxy requested but no proxy worker is configured")
            function_id = proxy.deploy(self.config.proxy_role)
        except ProxyUnavailable as e:
            if not self.config.proxy_fallback:
                raise
            logger.warning(f"{e.error.message}. Falling back to local transfer.")
            self._emit(ProxyFallback(e.error.message))
            return

        self.proxy_active = True
        self._emit(ProxyDeployed(function_id, proxy.host_project or ""))

    def _teardown_proxy(self) -> None:
        # A failed deploy can still leave a half-built function behind
        if self._proxy_checked and self.ex.proxy is not None:
            self.ex.proxy.teardown()
        self.proxy_active = False
