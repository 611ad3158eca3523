from __future__ import annotations

import re
from threading import Lock
from typing import Protocol

import docker
from docker.errors import DockerException, NotFound

from .db import EventLog
from .errors import TransientPlacementFailure
from .models import Backend, Revision
from .settings import Settings, settings as default_settings


WORKLOAD_NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")


def validate_workload_name(name: str) -> None:
    if not WORKLOAD_NAME_RE.match(name):
        raise ValueError(
            "Invalid workload name. Use lowercase letters/numbers and hyphen, starting with a letter (max 63 chars)."
        )


class BackendLauncher(Protocol):
    def launch(self, backend: Backend, revision: Revision) -> str:
        """Start an instance; returns its address. Raises TransientPlacementFailure."""

    def terminate(self, backend: Backend) -> None: ...


class InMemoryLauncher:
    """Launcher for simulations and tests: no processes, synthetic addresses.

    Zones listed in ``fail_zones`` refuse placement, which exercises the
    orchestrator's retry path.
    """

    def __init__(self, port: int = 8080) -> None:
        self.port = port
        self.fail_zones: set[str] = set()
        self.running: dict[str, Backend] = {}
        self.launches = 0
        self._lock = Lock()

    def launch(self, backend: Backend, revision: Revision) -> str:
        with self._lock:
            self.launches += 1
            if backend.zone_id in self.fail_zones:
                raise TransientPlacementFailure(f"Zone '{backend.zone_id}' refused placement.")
            self.running[backend.id] = backend
        return f"{backend.id}.{backend.zone_id}.internal:{self.port}"

    def terminate(self, backend: Backend) -> None:
        with self._lock:
            self.running.pop(backend.id, None)


class DockerLauncher:
    """Run each backend as a labelled container on the control plane network.

    Containers are labeled so they can be re-discovered after restarts.
    """

    def __init__(self, events: EventLog, cfg: Settings | None = None, client: docker.DockerClient | None = None) -> None:
        self.events = events
        self.cfg = cfg or default_settings
        self._client = client

    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def available(self) -> bool:
        try:
            self.client().ping()
            return True
        except DockerException:
            return False

    def ensure_network(self) -> None:
        c = self.client()
        try:
            c.networks.get(self.cfg.docker_network)
        except NotFound:
            c.networks.create(self.cfg.docker_network, driver="bridge")
            self.events.log("INFO", f"Created docker network '{self.cfg.docker_network}'.")

    def launch(self, backend: Backend, revision: Revision) -> str:
        validate_workload_name(backend.workload)
        labels = {
            "acp.workload": backend.workload,
            "acp.revision": backend.revision_id,
            "acp.zone": backend.zone_id,
            "acp.backend": backend.id,
        }
        try:
            self.ensure_network()
            self.client().containers.run(
                revision.artifact_ref,
                detach=True,
                name=backend.id,
                environment={"ACP_ZONE": backend.zone_id, "ACP_REVISION": backend.revision_id},
                network=self.cfg.docker_network,
                labels=labels,
                # Restarts are the control plane's decision; keep Docker's policy off.
                restart_policy={"Name": "no"},
            )
        except DockerException as e:
            raise TransientPlacementFailure(f"Docker refused {backend.id}: {e}") from e

        self.events.log("INFO", f"Started container {backend.id} from {revision.artifact_ref}", backend.id)
        return f"{backend.id}:{int(self.cfg.backend_port)}"

    def terminate(self, backend: Backend) -> None:
        try:
            self.client().containers.get(backend.id).remove(force=True)
        except NotFound:
            return
        self.events.log("INFO", f"Removed container {backend.id}", backend.id)
