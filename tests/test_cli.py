import pytest

import cli

from conftest import V1


class FakeResponse:
    def __init__(self, body, status_code=200):
        self._body = body
        self.status_code = status_code
        self.text = str(body)

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


@pytest.fixture
def calls(monkeypatch):
    seen = []
    responses = []

    def fake(method):
        def _call(url, **kwargs):
            seen.append((method, url, kwargs))
            return responses.pop(0) if responses else FakeResponse({"code": 0})

        return _call

    monkeypatch.setattr(cli.requests, "post", fake("POST"))
    monkeypatch.setattr(cli.requests, "get", fake("GET"))
    return seen, responses


def test_deploy_posts_and_exits_zero(calls, capsys):
    seen, _ = calls
    rc = cli.main(["--api", "http://cp:8000/", "deploy", "--workload", "web", "--artifact-ref", V1, "--desired-count", "3"])
    assert rc == 0
    method, url, kwargs = seen[0]
    assert (method, url) == ("POST", "http://cp:8000/workloads/web/deploy")
    assert kwargs["json"] == {"artifact_ref": V1, "desired_count": 3}
    assert kwargs["auth"] is None
    assert '"code": 0' in capsys.readouterr().out


def test_exit_code_follows_response_code(calls):
    _, responses = calls
    responses.append(FakeResponse({"code": 1, "error": "ConflictingRollout"}, status_code=409))
    assert cli.main(["deploy", "--workload", "web", "--artifact-ref", V1]) == 1
    responses.append(FakeResponse({"code": 2}, status_code=503))
    assert cli.main(["status"]) == 2


def test_non_json_error_exits_one(calls):
    _, responses = calls
    responses.append(FakeResponse(None, status_code=502))
    assert cli.main(["zones"]) == 1


def test_rollback_sends_credentials(calls):
    seen, _ = calls
    cli.main(["--user", "ops", "--password", "pw", "rollback", "--workload", "web", "--to-revision", "v1"])
    _, url, kwargs = seen[0]
    assert url.endswith("/workloads/web/rollback")
    assert kwargs["json"] == {"to_revision": "v1"}
    assert kwargs["auth"] == ("ops", "pw")


def test_status_and_events_urls(calls):
    seen, _ = calls
    cli.main(["status", "--workload", "web"])
    cli.main(["events", "--limit", "5", "--entity", "rollout/web"])
    assert seen[0][1] == "http://localhost:8000/workloads/web/status"
    assert seen[1][1] == "http://localhost:8000/events"
    assert seen[1][2]["params"] == {"limit": 5, "entity_id": "rollout/web"}
