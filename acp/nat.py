from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from threading import Event, Lock, Thread
from typing import Callable

from .db import EventLog
from .errors import CapacityExceeded, UnknownBackend
from .models import Destination, Health, NATSession, SessionHandle
from .runtime import Inventory
from .settings import Settings, settings as default_settings


@dataclass
class _Shard:
    """Session table for one zone's egress point."""

    zone_id: str
    capacity: int
    port_base: int
    lock: Lock = field(default_factory=Lock)
    sessions: dict[str, NATSession] = field(default_factory=dict)
    by_return_path: dict[tuple[Destination, int], str] = field(default_factory=dict)
    free_ports: list[int] = field(default_factory=list)
    dropped_inbound: int = 0

    def __post_init__(self) -> None:
        # Lowest port first; freed ports go to the back so they are reused last.
        self.free_ports = list(range(self.port_base, self.port_base + self.capacity))


class ConnectionTracker:
    """Outbound-only NAT state, sharded per zone.

    Sessions exist only because a backend opened them. Inbound traffic is
    delivered only when it matches an open session's return path; anything else
    is dropped. Each zone shard has its own lock, so reaping one zone never
    blocks opens in another.
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
        self.capacity = max(1, cfg.max_sessions_per_zone)
        self.port_base = cfg.nat_port_base
        self.idle_timeout_s = cfg.nat_idle_timeout_s
        self.clock = clock
        self._lock = Lock()
        self._shards: dict[str, _Shard] = {}
        for zid in cfg.zones:
            self._shard(zid)

    def _shard(self, zone_id: str) -> _Shard:
        with self._lock:
            s = self._shards.get(zone_id)
            if s is None:
                s = _Shard(zone_id=zone_id, capacity=self.capacity, port_base=self.port_base)
                self._shards[zone_id] = s
            return s

    def open(self, source_backend_id: str, destination: Destination) -> SessionHandle:
        """Translate a new outbound connection from a backend.

        Raises CapacityExceeded when the zone's table is full; the caller must
        push back on the originating backend.
        """
        backend = self.inventory.get_backend(source_backend_id)
        if backend.health is Health.TERMINATING:
            raise UnknownBackend(f"Backend '{source_backend_id}' is terminating.")
        host, port = destination
        destination = (str(host).lower(), int(port))

        shard = self._shard(backend.zone_id)
        now = self.clock()
        with shard.lock:
            if not shard.free_ports:
                raise CapacityExceeded(
                    f"NAT table for zone '{shard.zone_id}' is full ({shard.capacity} sessions)."
                )
            port_out = shard.free_ports.pop(0)
            handle = SessionHandle(id=secrets.token_hex(6), zone_id=shard.zone_id, egress_port=port_out)
            shard.sessions[handle.id] = NATSession(
                handle=handle,
                source_zone=shard.zone_id,
                source_backend_id=backend.id,
                destination=destination,
                established_at=now,
                last_seen_at=now,
            )
            shard.by_return_path[(destination, port_out)] = handle.id

        self.events.transition(
            f"nat/{handle.zone_id}/{handle.id}",
            None,
            "Open",
            f"{backend.id} -> {destination[0]}:{destination[1]} via :{port_out}",
        )
        return handle

    def touch(self, handle: SessionHandle) -> bool:
        shard = self._shard(handle.zone_id)
        with shard.lock:
            sess = shard.sessions.get(handle.id)
            if sess is None:
                return False
            sess.last_seen_at = self.clock()
            return True

    def close(self, handle: SessionHandle, reason: str = "closed") -> bool:
        shard = self._shard(handle.zone_id)
        with shard.lock:
            closed = self._drop(shard, handle.id)
        if closed:
            self.events.transition(f"nat/{handle.zone_id}/{handle.id}", "Open", "Closed", reason)
        return closed

    def _drop(self, shard: _Shard, session_id: str) -> bool:
        # Caller holds shard.lock.
        sess = shard.sessions.pop(session_id, None)
        if sess is None:
            return False
        shard.by_return_path.pop((sess.destination, sess.handle.egress_port), None)
        shard.free_ports.append(sess.handle.egress_port)
        return True

    def deliver_inbound(self, zone_id: str, egress_port: int, source: Destination) -> str | None:
        """Route a response packet back to the backend that opened the session.

        Returns the backend id, or None when the packet was dropped because no
        open session matches. Never creates a session.
        """
        shard = self._shard(zone_id)
        key = ((str(source[0]).lower(), int(source[1])), int(egress_port))
        with shard.lock:
            sid = shard.by_return_path.get(key)
            sess = shard.sessions.get(sid) if sid else None
            if sess is None:
                shard.dropped_inbound += 1
                return None
            sess.last_seen_at = self.clock()
            return sess.source_backend_id

    def close_backend(self, backend_id: str) -> int:
        """Close every session opened by a backend (called on termination)."""
        closed: list[SessionHandle] = []
        with self._lock:
            shards = list(self._shards.values())
        for shard in shards:
            with shard.lock:
                for sid, sess in list(shard.sessions.items()):
                    if sess.source_backend_id == backend_id and self._drop(shard, sid):
                        closed.append(sess.handle)
        for h in closed:
            self.events.transition(f"nat/{h.zone_id}/{h.id}", "Open", "Closed", f"backend {backend_id} terminated")
        return len(closed)

    def reap_idle(self, now: float | None = None) -> int:
        now = self.clock() if now is None else now
        reaped: list[SessionHandle] = []
        with self._lock:
            shards = list(self._shards.values())
        for shard in shards:
            with shard.lock:
                for sid, sess in list(shard.sessions.items()):
                    if now - sess.last_seen_at > self.idle_timeout_s and self._drop(shard, sid):
                        reaped.append(sess.handle)
        for h in reaped:
            self.events.transition(f"nat/{h.zone_id}/{h.id}", "Open", "Reaped", "idle timeout")
        return len(reaped)

    def sessions(self, zone_id: str | None = None) -> list[NATSession]:
        with self._lock:
            shards = [s for s in self._shards.values() if zone_id is None or s.zone_id == zone_id]
        out: list[NATSession] = []
        for shard in shards:
            with shard.lock:
                out.extend(shard.sessions.values())
        return out

    def stats(self) -> dict[str, dict[str, int]]:
        with self._lock:
            shards = list(self._shards.values())
        out: dict[str, dict[str, int]] = {}
        for shard in shards:
            with shard.lock:
                out[shard.zone_id] = {
                    "open": len(shard.sessions),
                    "capacity": shard.capacity,
                    "dropped_inbound": shard.dropped_inbound,
                }
        return out


class NatReaper:
    """NAT-session-reaper loop."""

    def __init__(self, tracker: ConnectionTracker, events: EventLog, interval_s: float) -> None:
        self.tracker = tracker
        self.events = events
        self.interval_s = interval_s
        self._stop = Event()
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, name="acp-nat-reaper", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()

    def _loop(self) -> None:
        while not self._stop.wait(max(0.1, self.interval_s)):
            try:
                self.tracker.reap_idle()
            except Exception as e:
                self.events.log("ERROR", f"NAT reaper sweep failed: {type(e).__name__}: {e}")
