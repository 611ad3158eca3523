from __future__ import annotations

from threading import Lock

from .errors import UnknownBackend
from .models import Backend


class Inventory:
    """In-memory state shared by routing, zone tracking and rollouts.

    Backends are added and removed only by their workload's orchestrator; every
    other component reads them here.
    """

    def __init__(self) -> None:
        self.lock = Lock()
        self._backends: dict[str, Backend] = {}
        self._in_flight: dict[str, int] = {}  # backend_id -> routed, not yet released
        self._rr_index: dict[str, int] = {}  # key -> idx
        self._weights: dict[str, dict[str, int]] = {}  # workload -> revision_id -> weight
        self._active: dict[str, str] = {}  # workload -> active revision_id

    def add_backend(self, backend: Backend) -> None:
        with self.lock:
            self._backends[backend.id] = backend
            self._in_flight.setdefault(backend.id, 0)

    def remove_backend(self, backend_id: str) -> Backend | None:
        with self.lock:
            self._in_flight.pop(backend_id, None)
            return self._backends.pop(backend_id, None)

    def get_backend(self, backend_id: str) -> Backend:
        with self.lock:
            b = self._backends.get(backend_id)
        if b is None:
            raise UnknownBackend(backend_id)
        return b

    def backends(
        self,
        workload: str | None = None,
        revision_id: str | None = None,
        zone_id: str | None = None,
    ) -> list[Backend]:
        with self.lock:
            out = list(self._backends.values())
        if workload is not None:
            out = [b for b in out if b.workload == workload]
        if revision_id is not None:
            out = [b for b in out if b.revision_id == revision_id]
        if zone_id is not None:
            out = [b for b in out if b.zone_id == zone_id]
        return out

    def next_index(self, key: str, n: int) -> int:
        with self.lock:
            if n <= 0:
                return 0
            i = self._rr_index.get(key, 0) % n
            self._rr_index[key] = (i + 1) % n
            return i

    def acquire(self, backend_id: str) -> int:
        with self.lock:
            self._in_flight[backend_id] = self._in_flight.get(backend_id, 0) + 1
            return self._in_flight[backend_id]

    def release(self, backend_id: str) -> int:
        with self.lock:
            if backend_id not in self._in_flight:
                return 0
            self._in_flight[backend_id] = max(0, self._in_flight[backend_id] - 1)
            return self._in_flight[backend_id]

    def in_flight(self, backend_id: str) -> int:
        with self.lock:
            return self._in_flight.get(backend_id, 0)

    def set_weights(self, workload: str, weights: dict[str, int] | None) -> None:
        with self.lock:
            if weights is None:
                self._weights.pop(workload, None)
            else:
                self._weights[workload] = {rev: max(0, int(w)) for rev, w in weights.items()}

    def get_weights(self, workload: str) -> dict[str, int] | None:
        with self.lock:
            w = self._weights.get(workload)
            return dict(w) if w is not None else None

    def set_active(self, workload: str, revision_id: str | None) -> None:
        with self.lock:
            if revision_id is None:
                self._active.pop(workload, None)
            else:
                self._active[workload] = revision_id

    def active_revisions(self) -> dict[str, str]:
        with self.lock:
            return dict(self._active)
