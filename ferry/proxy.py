"""Proxy worker: server-to-server payload transfer.

Copying a file through the local process means downloading it from the
source and uploading it to the destination over the operator's link. The
proxy worker instead deploys a short-lived function into one of the two
projects; each transfer task is submitted as an asynchronous execution of
that function, which streams the bytes directly between the endpoints.

Lifecycle (one per run):
1. deploy(role)   - create function, upload bundle, poll build until ready
2. invoke(task)   - submit an async execution, poll until it finishes
3. teardown()     - delete the function (failures are logged only)

The worker source lives in ``ferry/worker/main.py`` and is shipped as data;
it is never imported by the engine.
"""

from __future__ import annotations

import io
import json
import logging
import tarfile
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from importlib import resources
from typing import Any

from ferry.client import ApiError, RestClient, call_with_retry
from ferry.config import FerryConfig, ProjectConfig
from ferry.errors import ProxyUnavailable

logger = logging.getLogger(__name__)

WORKER_NAME = "Ferry Transfer Worker"
WORKER_RUNTIME = "python-3.12"
WORKER_ENTRYPOINT = "src/main.py"
WORKER_COMMANDS = "pip install -r requirements.txt"
WORKER_REQUIREMENTS = "requests>=2.31\n"

# Execution states reported by the remote runtime
_EXECUTION_DONE = ("completed", "failed")


@dataclass(frozen=True)
class TransferTask:
    """One payload to move.

    Attributes:
        kind: "file" or "deployment"
        source_ref: Where the bytes are, e.g. {"bucketId": ..., "fileId": ...}
        dest_ref: Where they go, e.g. {"bucketId": ..., "fileId": ...}
    """

    kind: str
    source_ref: dict[str, Any] = field(default_factory=dict)
    dest_ref: dict[str, Any] = field(default_factory=dict)

    def to_payload(self, source: ProjectConfig, destination: ProjectConfig) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "source": {
                "endpoint": source.base_url,
                "project": source.project_id,
                "key": source.api_key,
            },
            "destination": {
                "endpoint": destination.base_url,
                "project": destination.project_id,
                "key": destination.api_key,
            },
            "sourceRef": self.source_ref,
            "destinationRef": self.dest_ref,
        }


def build_worker_bundle() -> bytes:
    """Package the worker source as a gzipped tarball."""
    main_py = resources.files("ferry.worker").joinpath("main.py").read_bytes()
    files = {
        "src/main.py": main_py,
        "requirements.txt": WORKER_REQUIREMENTS.encode("utf-8"),
    }

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for name, content in files.items():
            info = tarfile.TarInfo(name=name)
            info.size = len(content)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


class ProxyWorker:
    """Deploys and drives the transfer function for one source/destination pair."""

    def __init__(
        self,
        source: ProjectConfig,
        destination: ProjectConfig,
        config: FerryConfig | None = None,
        client_factory: Callable[[ProjectConfig, FerryConfig], Any] = RestClient.from_project,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.source = source
        self.destination = destination
        self.config = config or FerryConfig()
        self._client_factory = client_factory
        self._sleep = sleep
        self._clock = clock
        self._client: Any = None
        self.function_id: str | None = None
        self.host_project: str | None = None

    @property
    def deployed(self) -> bool:
        return self.function_id is not None

    def _retry(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """One remote request, retried on its own while rate limited."""
        return call_with_retry(
            fn,
            *args,
            retries=self.config.max_retries,
            backoff=self.config.retry_backoff,
            backoff_max=self.config.retry_backoff_max,
            sleep=self._sleep,
            **kwargs,
        )

    def deploy(self, role: str = "destination") -> str:
        """Provision the worker in the source or destination project.

        Returns:
            The worker's function id

        Raises:
            ProxyUnavailable: Creation, upload or build failed, or timed out
        """
        if role not in ("source", "destination"):
            raise ValueError(f"Proxy role must be 'source' or 'destination', got {role!r}")

        host = self.destination if role == "destination" else self.source
        client = self._client_factory(host, self.config)
        function_id = f"ferry-proxy-{uuid.uuid4().hex[:12]}"
        logger.info(f"Deploying proxy worker {function_id} to {host.project_id}")

        try:
            client.create_function(
                function_id,
                WORKER_NAME,
                {
                    "runtime": WORKER_RUNTIME,
                    "execute": [],
                    "timeout": int(self.config.proxy_execution_timeout),
                    "enabled": True,
                    "logging": True,
                    "entrypoint": WORKER_ENTRYPOINT,
                    "commands": WORKER_COMMANDS,
                },
            )
            # From here on teardown() must remove the function, even if the build fails
            self._client, self.function_id, self.host_project = client, function_id, host.project_id

            deployment = client.create_deployment(
                function_id,
                build_worker_bundle(),
                entrypoint=WORKER_ENTRYPOINT,
                commands=WORKER_COMMANDS,
                activate=True,
            )
            self._wait_until_ready(deployment["$id"])
        except ApiError as e:
            raise ProxyUnavailable(
                f"Failed to deploy proxy worker to {host.project_id}: {e}",
                project=host.project_id,
            ) from e

        logger.info(f"Proxy worker {function_id} ready")
        return function_id

    def _wait_until_ready(self, deployment_id: str) -> None:
        deadline = self._clock() + self.config.proxy_deploy_timeout
        while True:
            status = self._retry(self._client.get_deployment, self.function_id, deployment_id).get("status")
            if status == "ready":
                return
            if status in ("failed", "canceled"):
                raise ProxyUnavailable(
                    f"Proxy worker build {status}",
                    function_id=self.function_id,
                    deployment_id=deployment_id,
                )
            if self._clock() >= deadline:
                raise ProxyUnavailable(
                    f"Proxy worker build timed out after {self.config.proxy_deploy_timeout:.0f}s",
                    function_id=self.function_id,
                )
            self._sleep(self.config.proxy_poll_interval)

    def invoke(self, task: TransferTask) -> dict[str, Any]:
        """Run one transfer task and wait for it to finish.

        Returns:
            The worker's JSON response (``success`` is always true)

        Raises:
            ProxyUnavailable: Worker missing, crashed, timed out, unreadable,
                or still rate limited after retries
            ApiError: The worker ran but the transfer itself was rejected

        Submitting and polling are retried separately, so the task is
        submitted exactly once.
        """
        if self.function_id is None:
            raise ProxyUnavailable("Proxy worker is not deployed")

        body = json.dumps(task.to_payload(self.source, self.destination))
        try:
            execution = self._retry(self._client.create_execution, self.function_id, body, run_async=True)
            execution = self._await_execution(execution)
        except ApiError as e:
            raise ProxyUnavailable(f"Proxy worker call failed: {e}", function_id=self.function_id) from e

        if execution.get("status") == "failed":
            detail = execution.get("errors") or execution.get("responseBody") or "runtime crashed"
            raise ProxyUnavailable(f"Proxy worker execution failed: {detail}", function_id=self.function_id)

        try:
            response = json.loads(execution.get("responseBody") or "")
        except ValueError as e:
            raise ProxyUnavailable(
                f"Unreadable proxy worker response: {execution.get('responseBody')!r}",
                function_id=self.function_id,
            ) from e

        if not response.get("success"):
            raise ApiError(int(response.get("status") or 500), response.get("error") or "Worker reported a failure")
        return response

    def _await_execution(self, execution: dict[str, Any]) -> dict[str, Any]:
        """Poll an async execution until it completes or fails."""
        deadline = self._clock() + self.config.proxy_execution_timeout
        while execution.get("status") not in _EXECUTION_DONE:
            if self._clock() >= deadline:
                raise ProxyUnavailable(
                    f"Proxy transfer timed out after {self.config.proxy_execution_timeout:.0f}s",
                    execution_id=execution.get("$id"),
                )
            self._sleep(self.config.proxy_poll_interval)
            execution = self._retry(self._client.get_execution, self.function_id, execution["$id"])
        return execution

    def teardown(self) -> None:
        """Delete the worker function. Never raises."""
        if self.function_id is None:
            return
        try:
            self._client.delete_function(self.function_id)
            logger.info(f"Removed proxy worker {self.function_id}")
        except ApiError as e:
            logger.warning(f"Failed to remove proxy worker {self.function_id}: {e}")
        finally:
            self.function_id = None
