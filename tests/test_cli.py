import cli


class _Resp:
    def __init__(self, payload, ok=True):
        self._payload = payload
        self.ok = ok

    def json(self):
        return self._payload


def test_apply_sends_spec_with_auth(monkeypatch, capsys):
    calls = []

    def fake_put(url, json=None, auth=None, timeout=None):
        calls.append((url, json, auth))
        return _Resp({"name": "nb"})

    monkeypatch.setattr(cli.requests, "put", fake_put)

    rc = cli.main(["--namespace", "ovn", "--user", "ops", "--password", "pw", "apply", "nb", "--replicas", "3"])

    assert rc == 0
    url, body, auth = calls[0]
    assert url == "http://localhost:8000/clusters/ovn/nb"
    assert body["replicas"] == 3
    assert body["db_type"] == "NB"
    assert auth == ("ops", "pw")
    assert '"name": "nb"' in capsys.readouterr().out


def test_report_member_status(monkeypatch):
    calls = []

    def fake_put(url, json=None, auth=None, timeout=None):
        calls.append((url, json))
        return _Resp({}, ok=False)

    monkeypatch.setattr(cli.requests, "put", fake_put)

    rc = cli.main(
        ["report", "nb", "nb-0", "--available", "--cluster-id", "7f2b", "--raft-address", "tcp:10.0.0.10:6643"]
    )

    assert rc == 1
    url, body = calls[0]
    assert url == "http://localhost:8000/clusters/default/nb/members/nb-0/status"
    assert body == {
        "available": True,
        "failed": False,
        "message": "",
        "cluster_id": "7f2b",
        "raft_address": "tcp:10.0.0.10:6643",
    }


def test_events_passes_filters(monkeypatch):
    seen = {}

    def fake_get(url, params=None, timeout=None):
        seen["url"] = url
        seen["params"] = params
        return _Resp([])

    monkeypatch.setattr(cli.requests, "get", fake_get)

    assert cli.main(["events", "--limit", "5", "--cluster", "nb"]) == 0
    assert seen == {"url": "http://localhost:8000/events", "params": {"limit": 5, "cluster": "nb"}}
