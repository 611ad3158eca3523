import pytest

from acp.db import EventLog
from acp.launcher import InMemoryLauncher
from acp.models import CheckResult
from acp.plane import ControlPlane
from acp.settings import Settings


def digest_ref(name: str, fill: str) -> str:
    return f"registry.local/{name}@sha256:{fill * 64}"


V1 = digest_ref("web", "1")
V2 = digest_ref("web", "2")
V3 = digest_ref("web", "3")


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cfg(tmp_path):
    return Settings(
        db_path=str(tmp_path / "events.db"),
        zones=("zone-a", "zone-b", "zone-c"),
        hold_interval_s=30.0,
        placement_backoff_s=0.0,
        placement_attempts=3,
        max_sessions_per_zone=4,
        enable_email=False,
        admin_user=None,
        admin_password=None,
    )


@pytest.fixture
def events(cfg):
    return EventLog(cfg.db_path)


@pytest.fixture
def launcher():
    return InMemoryLauncher()


@pytest.fixture
def plane(cfg, events, launcher, clock):
    p = ControlPlane(cfg, events=events, launcher=launcher, clock=clock, sleep=lambda s: None, background=False)
    yield p
    p.stop()


def make_ready(registry, backend_ids, passes: int = 3):
    for bid in backend_ids:
        for _ in range(passes):
            registry.report(bid, CheckResult.PASS)


def fail(registry, backend_id, times: int = 2):
    for _ in range(times):
        registry.report(backend_id, CheckResult.FAIL)


def run_until_stable(plane, orch, clock, max_steps: int = 20):
    """Drive a rollout to completion, holding each weight step for the hold interval."""
    for _ in range(max_steps):
        st = orch.status()
        if st.phase.value == "Stable":
            return st
        if st.target_revision:
            make_ready(plane.registry, [b.id for b in plane.inventory.backends(revision_id=st.target_revision, workload=orch.workload)])
        orch.advance()
        clock.advance(plane.cfg.hold_interval_s)
    return orch.status()
