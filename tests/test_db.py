from acp import alerts
from acp.db import EventLog
from acp.models import TransitionEvent
from acp.settings import Settings


def test_transitions_are_persisted_in_order(events):
    events.transition("zone/zone-a", "Healthy", "Degraded", "1/3 Ready")
    events.transition("zone/zone-a", "Degraded", "Healthy", "3/3 Ready")
    events.log("INFO", "not a transition", "zone/zone-a")
    assert events.transitions("zone/zone-a") == [("Healthy", "Degraded"), ("Degraded", "Healthy")]


def test_latest_is_newest_first_and_filtered(events):
    events.log("INFO", "first", "a")
    events.log("warn", "second", "b")
    rows = events.latest(10)
    assert [r["message"] for r in rows[:2]] == ["second", "first"]
    assert rows[0]["level"] == "WARN"
    assert [r["message"] for r in events.latest(10, entity_id="a")] == ["first"]


def test_subscribers_receive_transition_events(events):
    seen = []
    events.subscribe(seen.append)
    ev = events.transition("b1", "Starting", "Ready", "3 passes")
    assert seen == [ev]
    assert isinstance(ev, TransitionEvent)
    assert ev.timestamp


def test_failing_sink_does_not_block_transition(events):
    def broken(ev):
        raise RuntimeError("smtp down")

    later = []
    events.subscribe(broken)
    events.subscribe(later.append)
    events.transition("rollout/web", "Verifying", "RollingBack", "error rate")
    assert events.sink_failures == 1
    assert len(later) == 1
    assert events.transitions("rollout/web") == [("Verifying", "RollingBack")]
    errors = [r for r in events.latest(10) if r["level"] == "ERROR"]
    assert "smtp down" in errors[0]["message"]


def test_directory_db_path_gets_a_file(tmp_path):
    log = EventLog(str(tmp_path))
    assert log.db_path == str(tmp_path / "acp.db")
    log.log("INFO", "hello")
    assert log.latest(1)[0]["message"] == "hello"


def test_alerter_mails_only_alert_states(monkeypatch, tmp_path):
    sent = []
    monkeypatch.setattr(alerts, "send_email", lambda subject, body, cfg=None: sent.append(subject) or True)
    cfg = Settings(db_path=str(tmp_path / "a.db"))
    alert = alerts.transition_alerter(cfg)
    alert(TransitionEvent("b1", "Starting", "Ready", ""))
    alert(TransitionEvent("rollout/web", "Verifying", "RollingBack", "zone-c failing"))
    alert(TransitionEvent("service", "Available", "ServiceUnavailable", "all zones"))
    assert sent == ["ACP RollingBack: rollout/web", "ACP ServiceUnavailable: service"]


def test_send_email_disabled_is_a_no_op(tmp_path):
    assert alerts.send_email("s", "b", Settings(db_path=str(tmp_path / "a.db"), enable_email=False)) is False
