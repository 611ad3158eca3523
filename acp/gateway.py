from __future__ import annotations

from collections import defaultdict
from functools import reduce
from math import gcd
from threading import Lock

from .errors import NoBackendAvailable
from .health import HealthRegistry
from .models import Backend, Health, Request, RouteEntry
from .runtime import Inventory
from .zones import FailureDomainManager


def _host_rank(pattern_host: str | None, host: str) -> int | None:
    """2 for an exact host match, 1 for a wildcard match, 0 for any host."""
    if pattern_host is None:
        return 0
    if pattern_host == host:
        return 2
    if pattern_host.startswith("*.") and host.endswith(pattern_host[1:]) and host != pattern_host[2:]:
        return 1
    return None


def _path_matches(prefix: str, path: str) -> bool:
    if prefix == "/":
        return True
    return path == prefix or path.startswith(prefix + "/")


class RouteTable:
    """Host/path patterns mapped to workload tiers."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._entries: list[RouteEntry] = []

    def add(self, pattern: str, target_tier: str) -> RouteEntry:
        entry = RouteEntry(pattern=pattern.strip(), target_tier=target_tier)
        with self._lock:
            self._entries = [e for e in self._entries if e.pattern != entry.pattern]
            self._entries.append(entry)
        return entry

    def remove(self, pattern: str) -> bool:
        with self._lock:
            before = len(self._entries)
            self._entries = [e for e in self._entries if e.pattern != pattern.strip()]
            return len(self._entries) != before

    def entries(self) -> list[RouteEntry]:
        with self._lock:
            return list(self._entries)

    def match(self, request: Request) -> RouteEntry | None:
        """Most specific entry: host first, then the longest path prefix."""
        host = request.host.split(":", 1)[0].lower()
        path = request.path or "/"
        best: tuple[int, int] | None = None
        chosen: RouteEntry | None = None
        for e in self.entries():
            rank = _host_rank(e.host, host)
            if rank is None or not _path_matches(e.path_prefix, path):
                continue
            key = (rank, len(e.path_prefix))
            if best is None or key > best:
                best, chosen = key, e
        return chosen


class TrafficRouter:
    """Select a Ready backend in a Healthy zone for an inbound request.

    Strategy:
      1) Resolve the request to a tier (workload) through the RouteTable
      2) Select a revision by weight (per-revision weight, equal by default)
      3) Round-robin across eligible backends within that revision

    The eligible set is recomputed on every call from live health and zone
    state. Route never blocks on anything but short-lived locks.
    """

    def __init__(
        self,
        table: RouteTable,
        inventory: Inventory,
        registry: HealthRegistry,
        zones: FailureDomainManager,
    ) -> None:
        self.table = table
        self.inventory = inventory
        self.registry = registry
        self.zones = zones

    def set_weights(self, workload: str, weights: dict[str, int] | None) -> None:
        self.inventory.set_weights(workload, weights)

    def eligible(self, workload: str) -> list[Backend]:
        healthy_zones = set(self.zones.healthy_zones())
        out: list[Backend] = []
        for b in self.inventory.backends(workload=workload):
            if b.zone_id not in healthy_zones:
                continue
            if self.registry.status(b.id) is not Health.READY:
                continue
            out.append(b)
        return sorted(out, key=lambda b: b.id)

    def route(self, request: Request) -> Backend:
        entry = self.table.match(request)
        if entry is None:
            raise NoBackendAvailable(f"No route for host '{request.host}' path '{request.path}'.")
        return self.select(entry.target_tier)

    def select(self, workload: str) -> Backend:
        backend = self._pick(workload)
        self.inventory.acquire(backend.id)
        return backend

    def release(self, backend_id: str) -> int:
        return self.inventory.release(backend_id)

    def in_flight(self, backend_id: str) -> int:
        return self.inventory.in_flight(backend_id)

    def _pick(self, workload: str) -> Backend:
        self.zones.ensure_service_available()
        targets = self.eligible(workload)
        if not targets:
            raise NoBackendAvailable(f"No healthy backends for '{workload}'.")

        by_revision: dict[str, list[Backend]] = defaultdict(list)
        for b in targets:
            by_revision[b.revision_id].append(b)

        override = self.inventory.get_weights(workload)
        if override is None:
            weight_by_revision = {rev: 1 for rev in by_revision}
        else:
            weight_by_revision = {rev: w for rev, w in override.items() if w > 0}

        slots = self.slots(weight_by_revision)
        if not slots:
            raise NoBackendAvailable(f"No routable revisions for '{workload}'.")

        chosen = slots[self.inventory.next_index(f"{workload}:rev", len(slots))]
        backends = by_revision.get(chosen, [])
        if not backends:
            # Weighted revision has nothing eligible; fall back to any routable one.
            for rev in sorted(weight_by_revision):
                if by_revision.get(rev):
                    chosen, backends = rev, by_revision[rev]
                    break
        if not backends:
            raise NoBackendAvailable(f"No healthy backends for the routable revisions of '{workload}'.")
        idx = self.inventory.next_index(f"{workload}:inst:{chosen}", len(backends))
        return backends[idx]

    @staticmethod
    def slots(weights: dict[str, int]) -> list[str]:
        """Expand weights into a round-robin slot list, reduced by their gcd."""
        positive = {rev: w for rev, w in weights.items() if w > 0}
        if not positive:
            return []
        g = reduce(gcd, positive.values())
        out: list[str] = []
        for rev, w in sorted(positive.items()):
            out.extend([rev] * (w // g))
        return out
