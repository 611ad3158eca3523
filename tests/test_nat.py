import random
from threading import Thread

import pytest

from acp.errors import CapacityExceeded, UnknownBackend
from acp.models import Backend, Health
from acp.nat import ConnectionTracker
from acp.runtime import Inventory

DEST = ("api.partner.example", 443)


@pytest.fixture
def inv():
    inv = Inventory()
    inv.add_backend(Backend(id="web-1", workload="web", zone_id="zone-a", revision_id="r1", health=Health.READY))
    inv.add_backend(Backend(id="web-2", workload="web", zone_id="zone-b", revision_id="r1", health=Health.READY))
    return inv


@pytest.fixture
def tracker(inv, events, cfg, clock):
    return ConnectionTracker(inv, events, cfg, clock=clock)


def test_open_allocates_egress_port_in_backend_zone(tracker, cfg):
    h = tracker.open("web-1", DEST)
    assert h.zone_id == "zone-a"
    assert h.egress_port == cfg.nat_port_base
    (sess,) = tracker.sessions("zone-a")
    assert sess.source_backend_id == "web-1"
    assert sess.destination == DEST


def test_inbound_reply_reaches_opener_only_while_open(tracker):
    h = tracker.open("web-1", DEST)
    assert tracker.deliver_inbound("zone-a", h.egress_port, DEST) == "web-1"
    tracker.close(h)
    assert tracker.deliver_inbound("zone-a", h.egress_port, DEST) is None
    assert tracker.stats()["zone-a"]["dropped_inbound"] == 1


def test_unsolicited_inbound_is_dropped_and_creates_nothing(tracker, cfg):
    assert tracker.deliver_inbound("zone-a", cfg.nat_port_base, ("attacker.example", 4444)) is None
    h = tracker.open("web-1", DEST)
    # Right port, wrong remote.
    assert tracker.deliver_inbound("zone-a", h.egress_port, ("attacker.example", 443)) is None
    # Right remote, other zone's egress.
    assert tracker.deliver_inbound("zone-b", h.egress_port, DEST) is None
    assert len(tracker.sessions()) == 1


def test_capacity_is_per_zone(tracker):
    for i in range(4):
        tracker.open("web-1", ("10.0.0.1", 8000 + i))
    with pytest.raises(CapacityExceeded):
        tracker.open("web-1", ("10.0.0.1", 9000))
    # zone-b has its own table
    tracker.open("web-2", ("10.0.0.1", 9000))


def test_close_frees_capacity(tracker):
    handles = [tracker.open("web-1", ("10.0.0.1", 8000 + i)) for i in range(4)]
    tracker.close(handles[0])
    assert tracker.close(handles[0]) is False
    tracker.open("web-1", ("10.0.0.2", 80))


def test_idle_sessions_are_reaped(tracker, clock, cfg):
    old = tracker.open("web-1", DEST)
    clock.advance(cfg.nat_idle_timeout_s - 10)
    fresh = tracker.open("web-1", ("10.1.1.1", 53))
    clock.advance(20)
    assert tracker.touch(fresh)
    assert tracker.reap_idle() == 1
    assert tracker.touch(old) is False
    assert tracker.deliver_inbound("zone-a", old.egress_port, DEST) is None


def test_inbound_traffic_keeps_session_alive(tracker, clock, cfg):
    h = tracker.open("web-1", DEST)
    clock.advance(cfg.nat_idle_timeout_s - 1)
    tracker.deliver_inbound("zone-a", h.egress_port, DEST)
    clock.advance(cfg.nat_idle_timeout_s - 1)
    assert tracker.reap_idle() == 0


def test_close_backend_drops_all_its_sessions(tracker):
    tracker.open("web-1", DEST)
    tracker.open("web-1", ("10.0.0.9", 22))
    tracker.open("web-2", DEST)
    assert tracker.close_backend("web-1") == 2
    assert [s.source_backend_id for s in tracker.sessions()] == ["web-2"]


def test_terminating_or_unknown_backend_cannot_open(tracker, inv):
    inv.get_backend("web-1").health = Health.TERMINATING
    with pytest.raises(UnknownBackend):
        tracker.open("web-1", DEST)
    with pytest.raises(UnknownBackend):
        tracker.open("ghost", DEST)


def test_outbound_only_under_random_interleavings(tracker):
    rng = random.Random(7)
    open_handles = {}
    for _ in range(300):
        op = rng.choice(["open", "close", "inbound"])
        dest = ("10.9.9.9", rng.randint(1, 3))
        if op == "open":
            try:
                h = tracker.open("web-1", dest)
            except CapacityExceeded:
                continue
            open_handles[h.id] = (h, dest)
        elif op == "close" and open_handles:
            hid = rng.choice(sorted(open_handles))
            tracker.close(open_handles.pop(hid)[0])
        else:
            port = tracker.port_base + rng.randint(0, 3)
            delivered = tracker.deliver_inbound("zone-a", port, dest)
            expected = any(h.egress_port == port and d == dest for h, d in open_handles.values())
            assert (delivered == "web-1") == expected


def test_reaping_concurrently_with_open(tracker, clock):
    errors = []

    def opener():
        try:
            for i in range(50):
                try:
                    h = tracker.open("web-2", ("10.2.0.1", i))
                    tracker.close(h)
                except CapacityExceeded:
                    pass
        except Exception as e:  # pragma: no cover - failure path
            errors.append(e)

    threads = [Thread(target=opener) for _ in range(4)]
    for t in threads:
        t.start()
    for _ in range(50):
        tracker.reap_idle(now=clock() + 10_000)
    for t in threads:
        t.join()
    assert errors == []
    assert tracker.stats()["zone-b"]["open"] <= 4
