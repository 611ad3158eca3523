from __future__ import annotations

import time
from collections import deque
from threading import Lock, RLock
from typing import Callable

from .db import EventLog
from .errors import ServiceUnavailable, TransientPlacementFailure, ZoneUnreachable
from .models import Backend, Health, Zone, ZoneStatus
from .runtime import Inventory
from .settings import Settings, settings as default_settings


class FailureDomainManager:
    """Aggregates backend health per zone and vetoes placement into bad zones.

    A zone's Ready fraction counts only backends of each workload's active
    revision that have finished starting (Ready or Unready). A zone with no
    such backends has nothing failing in it and is Healthy.

    Status changes are made under a short lock; the resulting transition
    events are published after it is released.
    """

    def __init__(
        self,
        inventory: Inventory,
        events: EventLog,
        cfg: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        cfg = cfg or default_settings
        self.inventory = inventory
        self.events = events
        self.degraded_threshold = cfg.degraded_threshold
        self.grace_s = cfg.unreachable_grace_s
        self.clock = clock
        self._lock = RLock()
        self._outbox: deque[tuple[str, str | None, str, str, str]] = deque()
        self._publish_lock = Lock()
        self._zones: dict[str, Zone] = {}
        self._zero_since: dict[str, float] = {}
        self._service_down = False
        for i, zid in enumerate(cfg.zones):
            self.add_zone(zid, egress_address=f"198.51.100.{10 + i}")

    def add_zone(self, zone_id: str, egress_address: str | None = None) -> Zone:
        with self._lock:
            z = self._zones.get(zone_id)
            if z is None:
                z = Zone(id=zone_id, egress_address=egress_address)
                self._zones[zone_id] = z
                self._outbox.append((f"zone/{zone_id}", None, z.status.value, "topology init", "INFO"))
        self._publish()
        return z

    def zones(self) -> list[Zone]:
        with self._lock:
            return [Zone(z.id, z.status, z.egress_address) for z in sorted(self._zones.values(), key=lambda z: z.id)]

    def zone_status(self, zone_id: str) -> ZoneStatus:
        with self._lock:
            z = self._zones.get(zone_id)
            if z is None:
                raise KeyError(zone_id)
            return z.status

    def healthy_zones(self) -> list[str]:
        with self._lock:
            return sorted(z.id for z in self._zones.values() if z.status is ZoneStatus.HEALTHY)

    def on_backend_health_changed(self, backend_id: str, health: Health) -> None:
        try:
            b = self.inventory.get_backend(backend_id)
        except KeyError:
            return
        self._evaluate_zone(b.zone_id, self.clock(), f"backend {backend_id} is {Health(health).value}")

    def health_listener(self, backend: Backend, old: Health, new: Health, reason: str) -> None:
        """HealthRegistry subscriber."""
        self.on_backend_health_changed(backend.id, new)

    def evaluate(self, now: float | None = None) -> None:
        """Re-evaluate every zone; expires the zero-Ready grace period."""
        now = self.clock() if now is None else now
        with self._lock:
            ids = list(self._zones)
        for zid in ids:
            self._evaluate_zone(zid, now, "periodic evaluation")

    def _counts(self, zone_id: str) -> tuple[int, int]:
        active = self.inventory.active_revisions()
        ready = counted = 0
        for b in self.inventory.backends(zone_id=zone_id):
            if active.get(b.workload) != b.revision_id:
                continue
            if b.health is Health.READY:
                ready += 1
                counted += 1
            elif b.health is Health.UNREADY:
                counted += 1
        return ready, counted

    def _evaluate_zone(self, zone_id: str, now: float, reason: str) -> None:
        ready, counted = self._counts(zone_id)
        with self._lock:
            z = self._zones.get(zone_id)
            if z is None:
                return
            if counted == 0:
                # Nothing of an active revision is failing here.
                self._zero_since.pop(zone_id, None)
                new = ZoneStatus.HEALTHY
                reason = f"no active backends ({reason})"
            elif ready == 0:
                since = self._zero_since.setdefault(zone_id, now)
                if now - since > self.grace_s:
                    new = ZoneStatus.UNREACHABLE
                    reason = f"zero Ready backends for {now - since:.0f}s"
                else:
                    new = ZoneStatus.UNREACHABLE if z.status is ZoneStatus.UNREACHABLE else ZoneStatus.DEGRADED
            else:
                self._zero_since.pop(zone_id, None)
                frac = ready / counted
                new = ZoneStatus.DEGRADED if frac < self.degraded_threshold else ZoneStatus.HEALTHY
                reason = f"{ready}/{counted} Ready ({reason})"
            self._set(z, new, reason)
        self._publish()

    def _set(self, z: Zone, new: ZoneStatus, reason: str) -> None:
        # Caller holds self._lock; events are queued and published once it is released.
        if z.status is new:
            return
        old = z.status
        z.status = new
        level = "WARN" if new is not ZoneStatus.HEALTHY else "INFO"
        self._outbox.append((f"zone/{z.id}", old.value, new.value, reason, level))
        self._check_service()

    def _check_service(self) -> None:
        down = bool(self._zones) and all(z.status is ZoneStatus.UNREACHABLE for z in self._zones.values())
        if down and not self._service_down:
            self._outbox.append(("service", "Available", "ServiceUnavailable", "all zones unreachable", "ERROR"))
        elif self._service_down and not down:
            self._outbox.append(("service", "ServiceUnavailable", "Available", "a zone recovered", "INFO"))
        self._service_down = down

    def _publish(self) -> None:
        """Write queued transitions to the event log, in the order they happened.

        Runs without self._lock so slow sinks (SMTP) never hold up routing.
        """
        with self._publish_lock:
            while True:
                try:
                    entity_id, old, new, reason, level = self._outbox.popleft()
                except IndexError:
                    return
                self.events.transition(entity_id, old, new, reason, level=level)

    def restore(self, zone_id: str, reason: str = "operator restore") -> Zone:
        """Operator action: put a zone back into service."""
        with self._lock:
            z = self._zones[zone_id]
            self._zero_since.pop(zone_id, None)
            self._set(z, ZoneStatus.HEALTHY, reason)
            out = Zone(z.id, z.status, z.egress_address)
        self._publish()
        return out

    def ensure_service_available(self) -> None:
        with self._lock:
            if self._zones and all(z.status is ZoneStatus.UNREACHABLE for z in self._zones.values()):
                raise ServiceUnavailable("All zones are unreachable.")

    def admit(self, zone_id: str) -> None:
        """Veto placement into a zone that is not Healthy."""
        status = self.zone_status(zone_id)
        if status is ZoneStatus.UNREACHABLE:
            raise ZoneUnreachable(f"Zone '{zone_id}' is unreachable.")
        if status is not ZoneStatus.HEALTHY:
            raise TransientPlacementFailure(f"Zone '{zone_id}' is {status.value}.")

    def pick_zone(self, load: dict[str, int] | None = None) -> str:
        """Least loaded Healthy zone; ties broken by zone id."""
        load = load or {}
        healthy = self.healthy_zones()
        if not healthy:
            raise TransientPlacementFailure("No healthy zone available for placement.")
        return min(healthy, key=lambda zid: (load.get(zid, 0), zid))
