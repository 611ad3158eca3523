import httpx
import pytest

from acp import health as health_mod
from acp.errors import HealthCheckTimeout
from acp.health import HealthProber, HealthRegistry, check_health
from acp.models import Backend, CheckResult, Health
from acp.runtime import Inventory
from acp.settings import Settings

P, F = CheckResult.PASS, CheckResult.FAIL


@pytest.fixture
def registry(events, cfg, clock):
    return HealthRegistry(events, cfg, clock=clock)


def _backend(bid="b1", zone="zone-a", rev="r1"):
    return Backend(id=bid, workload="web", zone_id=zone, revision_id=rev)


def test_track_puts_backend_in_starting(registry):
    b = _backend()
    assert registry.status("b1") is Health.UNKNOWN
    registry.track(b)
    assert registry.status("b1") is Health.STARTING
    assert b.health is Health.STARTING


def test_ready_after_three_consecutive_passes(registry):
    registry.track(_backend())
    assert registry.report("b1", P) is Health.STARTING
    assert registry.report("b1", P) is Health.STARTING
    assert registry.report("b1", P) is Health.READY


def test_fail_restarts_pass_count_while_starting(registry):
    registry.track(_backend())
    registry.report("b1", P)
    registry.report("b1", P)
    registry.report("b1", F)
    registry.report("b1", P)
    registry.report("b1", P)
    assert registry.status("b1") is Health.STARTING
    registry.report("b1", P)
    assert registry.status("b1") is Health.READY


def test_single_fail_does_not_flap_ready(registry):
    registry.track(_backend())
    for _ in range(3):
        registry.report("b1", P)
    assert registry.report("b1", F) is Health.READY
    assert registry.report("b1", P) is Health.READY
    assert registry.report("b1", F) is Health.READY


def test_two_consecutive_fails_make_ready_unready(registry):
    registry.track(_backend())
    for _ in range(3):
        registry.report("b1", P)
    registry.report("b1", F)
    assert registry.report("b1", F) is Health.UNREADY


def test_unready_needs_full_pass_streak_again(registry):
    registry.track(_backend())
    for r in (P, P, P, F, F):
        registry.report("b1", r)
    assert registry.report("b1", P) is Health.UNREADY
    assert registry.report("b1", P) is Health.UNREADY
    assert registry.report("b1", P) is Health.READY


def test_passes_outside_window_restart_streak(events, clock):
    reg = HealthRegistry(events, Settings(db_path=events.db_path, pass_window_s=10.0), clock=clock)
    reg.track(_backend())
    reg.report("b1", P)
    reg.report("b1", P)
    clock.advance(11)
    reg.report("b1", P)
    assert reg.status("b1") is Health.STARTING
    reg.report("b1", P)
    assert reg.report("b1", P) is Health.READY


@pytest.mark.parametrize(
    "sequence",
    [
        [P, F, P, P, F, P, P, P],
        [F, F, F, P, P, P],
        [P, P, P, F, F, P, F, P, P, P],
        [P, P, F, P, P, F, P, P],
    ],
)
def test_ready_iff_three_passes_since_last_fail(registry, sequence):
    registry.track(_backend())
    streak = 0
    was_ready = False
    for r in sequence:
        before = registry.status("b1")
        after = registry.report("b1", r)
        streak = streak + 1 if r is P else 0
        if after is Health.READY and before is not Health.READY:
            assert streak >= 3
        if after is not Health.READY and before is not Health.READY:
            assert streak < 3
        was_ready = was_ready or after is Health.READY
    assert was_ready == any(
        sequence[i : i + 3] == [P, P, P] for i in range(len(sequence) - 2)
    )


def test_terminating_ignores_reports(registry):
    registry.track(_backend())
    registry.mark_terminating("b1")
    for _ in range(5):
        assert registry.report("b1", P) is Health.TERMINATING


def test_unknown_backend_report_is_ignored(registry):
    assert registry.report("nope", P) is Health.UNKNOWN


def test_snapshot_and_ready_ids(registry):
    registry.track(_backend("a1", "zone-a", "r1"))
    registry.track(_backend("a2", "zone-a", "r2"))
    registry.track(_backend("b1", "zone-b", "r1"))
    for bid in ("a1", "a2", "b1"):
        for _ in range(3):
            registry.report(bid, P)
    registry.report("a2", F)
    registry.report("a2", F)
    assert registry.snapshot("zone-a") == {"a1"}
    assert registry.ready_ids(revision_id="r1") == {"a1", "b1"}


def test_transitions_are_recorded_and_listeners_called(registry, events):
    seen = []
    registry.subscribe(lambda b, old, new, reason: seen.append((b.id, old, new)))
    registry.track(_backend())
    for _ in range(3):
        registry.report("b1", P)
    assert seen == [("b1", Health.UNKNOWN, Health.STARTING), ("b1", Health.STARTING, Health.READY)]
    assert events.transitions("b1") == [("Unknown", "Starting"), ("Starting", "Ready")]


def test_prober_converts_timeout_to_fail(events, clock, tmp_path):
    cfg = Settings(db_path=str(tmp_path / "p.db"), probe_enabled=True)
    inv = Inventory()
    reg = HealthRegistry(events, cfg, clock=clock)
    b = _backend()
    b.address = "b1.internal:8080"
    inv.add_backend(b)
    reg.track(b)
    for _ in range(3):
        reg.report("b1", P)

    def probe(url, timeout):
        raise HealthCheckTimeout(url)

    ticks = []
    prober = HealthProber(inv, reg, events, cfg, probe=probe, after_tick=lambda: ticks.append(1))
    prober.tick()
    prober.tick()
    assert reg.status("b1") is Health.UNREADY
    assert ticks == [1, 1]


def test_prober_reports_pass_from_probe(events, clock, tmp_path):
    cfg = Settings(db_path=str(tmp_path / "p.db"), probe_enabled=True, health_path="/healthz")
    inv = Inventory()
    reg = HealthRegistry(events, cfg, clock=clock)
    b = _backend()
    b.address = "b1.internal:8080"
    inv.add_backend(b)
    reg.track(b)
    urls = []

    def probe(url, timeout):
        urls.append(url)
        return True, "Healthy", 1.0

    prober = HealthProber(inv, reg, events, cfg, probe=probe)
    for _ in range(3):
        prober.tick()
    assert reg.status("b1") is Health.READY
    assert urls[0] == "http://b1.internal:8080/healthz"


def test_check_health_parses_payload(monkeypatch):
    def handler(request):
        if request.url.path == "/ok":
            return httpx.Response(200, json={"status": "healthy"})
        if request.url.path == "/bad":
            return httpx.Response(200, json={"status": "sick"})
        return httpx.Response(503)

    transport = httpx.MockTransport(handler)
    real_client = httpx.Client

    def client_factory(*args, **kwargs):
        kwargs["transport"] = transport
        return real_client(*args, **kwargs)

    monkeypatch.setattr(health_mod.httpx, "Client", client_factory)
    assert check_health("http://svc/ok")[0] is True
    ok, msg, _ = check_health("http://svc/bad")
    assert ok is False and "Unhealthy" in msg
    ok, msg, _ = check_health("http://svc/down")
    assert ok is False and msg == "HTTP 503"


def test_check_health_timeout_raises(monkeypatch):
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    transport = httpx.MockTransport(handler)
    real_client = httpx.Client
    monkeypatch.setattr(health_mod.httpx, "Client", lambda *a, **kw: real_client(*a, transport=transport, **kw))
    with pytest.raises(HealthCheckTimeout):
        check_health("http://svc/health")
