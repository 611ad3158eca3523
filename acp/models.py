from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class ZoneStatus(str, Enum):
    HEALTHY = "Healthy"
    DEGRADED = "Degraded"
    UNREACHABLE = "Unreachable"


class Health(str, Enum):
    UNKNOWN = "Unknown"
    STARTING = "Starting"
    READY = "Ready"
    UNREADY = "Unready"
    TERMINATING = "Terminating"


class CheckResult(str, Enum):
    PASS = "Pass"
    FAIL = "Fail"


class RolloutPhase(str, Enum):
    STABLE = "Stable"
    ROLLING_OUT = "RollingOut"
    VERIFYING = "Verifying"
    ROLLING_BACK = "RollingBack"


@dataclass
class Zone:
    id: str
    status: ZoneStatus = ZoneStatus.HEALTHY
    egress_address: str | None = None


@dataclass
class Backend:
    id: str
    workload: str
    zone_id: str
    revision_id: str
    health: Health = Health.UNKNOWN
    address: str | None = None
    created_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "workload": self.workload,
            "zone_id": self.zone_id,
            "revision_id": self.revision_id,
            "health": self.health.value,
            "address": self.address,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class Revision:
    id: str
    workload: str
    artifact_ref: str
    desired_count: int
    created_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "workload": self.workload,
            "artifact_ref": self.artifact_ref,
            "desired_count": self.desired_count,
            "created_at": self.created_at,
        }


@dataclass
class RolloutState:
    workload: str
    current_revision: str | None = None
    target_revision: str | None = None
    phase: RolloutPhase = RolloutPhase.STABLE
    healthy_target_count: int = 0
    started_at: float | None = None
    target_weight: int = 0
    reason: str = ""

    def to_dict(self) -> dict:
        return {
            "workload": self.workload,
            "current_revision": self.current_revision,
            "target_revision": self.target_revision,
            "phase": self.phase.value,
            "healthy_target_count": self.healthy_target_count,
            "started_at": self.started_at,
            "target_weight": self.target_weight,
            "reason": self.reason,
        }


# (host, port) of the remote end of an outbound connection.
Destination = tuple[str, int]


@dataclass(frozen=True)
class SessionHandle:
    id: str
    zone_id: str
    egress_port: int


@dataclass
class NATSession:
    handle: SessionHandle
    source_zone: str
    source_backend_id: str
    destination: Destination
    established_at: float
    last_seen_at: float

    def to_dict(self) -> dict:
        return {
            "id": self.handle.id,
            "source_zone": self.source_zone,
            "source_backend_id": self.source_backend_id,
            "destination": f"{self.destination[0]}:{self.destination[1]}",
            "egress_port": self.handle.egress_port,
            "established_at": self.established_at,
            "last_seen_at": self.last_seen_at,
        }


_PATTERN_RE = re.compile(r"^(?P<host>[^/]*)(?P<path>/.*)?$")


@dataclass(frozen=True)
class RouteEntry:
    """One RouteTable row.

    ``pattern`` is ``host[/path]``, ``*.domain[/path]`` or ``/path``. The set of
    eligible backends is never stored here; it is computed per routing decision.
    """

    pattern: str
    target_tier: str

    @property
    def host(self) -> str | None:
        m = _PATTERN_RE.match(self.pattern)
        host = (m.group("host") if m else "").lower()
        return host or None

    @property
    def path_prefix(self) -> str:
        m = _PATTERN_RE.match(self.pattern)
        path = m.group("path") if m else None
        if not path:
            return "/"
        return path.rstrip("/") or "/"


@dataclass(frozen=True)
class Request:
    host: str = ""
    path: str = "/"


@dataclass(frozen=True)
class TransitionEvent:
    entity_id: str
    from_state: str | None
    to_state: str
    reason: str = ""
    timestamp: str = field(default_factory=utc_now)
