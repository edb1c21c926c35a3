import base64

import pytest
from fastapi.testclient import TestClient

import main


def _basic_auth(user: str, password: str) -> dict:
    token = base64.b64encode(f"{user}:{password}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


AUTH = _basic_auth(main.settings.admin_user, main.settings.admin_password)


@pytest.fixture
def client(monkeypatch):
    # Avoid the background threads; tests drive cycles through the API.
    monkeypatch.setattr(main.reconciler, "start", lambda: None)
    monkeypatch.setattr(main.instance_runtime, "start", lambda: None)
    with TestClient(main.app) as c:
        yield c


def _apply(client, name="nb", **body):
    return client.put(f"/clusters/ovn/{name}", json=body, headers=AUTH)


def _reconcile(client, name="nb"):
    r = client.post(f"/clusters/ovn/{name}/reconcile", headers=AUTH)
    assert r.status_code == 200
    return r.json()


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "healthy"}


def test_mutations_require_basic_auth(client):
    assert client.put("/clusters/ovn/nb", json={}).status_code == 401
    r = client.put("/clusters/ovn/nb", json={}, headers=_basic_auth("admin", "wrong"))
    assert r.status_code == 401


def test_apply_creates_then_updates(client):
    r = _apply(client, replicas=3, db_type="SB")
    assert r.status_code == 200
    assert r.json()["spec"]["replicas"] == 3
    assert r.json()["spec"]["db_type"] == "SB"

    r = _apply(client, replicas=5, db_type="SB")
    assert r.status_code == 200
    assert r.json()["resource_version"] == 2

    clusters = client.get("/clusters").json()
    assert [(c["namespace"], c["name"], c["spec"]["replicas"]) for c in clusters] == [("ovn", "nb", 5)]


@pytest.mark.parametrize(
    "body",
    [{"replicas": 99}, {"replicas": -1}, {"db_type": "XX"}],
)
def test_apply_validates_body(client, body):
    assert _apply(client, **body).status_code == 422


def test_apply_rejects_bad_names(client):
    assert _apply(client, name="Bad_Name").status_code == 400


def test_unknown_cluster_is_404(client):
    assert client.get("/clusters/ovn/nope").status_code == 404
    assert client.post("/clusters/ovn/nope/scale", json={"replicas": 1}, headers=AUTH).status_code == 404
    assert client.post("/clusters/ovn/nope/reconcile", headers=AUTH).status_code == 404


def test_bootstrap_through_the_api(client):
    _apply(client, replicas=1)

    assert _reconcile(client) == {"status_changed": True, "actions": []}
    assert _reconcile(client)["actions"] == [{"verb": "create", "kind": "Member", "name": "nb-0"}]

    r = client.put(
        "/clusters/ovn/nb/members/nb-0/status",
        json={"available": True, "cluster_id": "7f2b", "raft_address": "tcp:10.0.0.10:6643"},
        headers=AUTH,
    )
    assert r.status_code == 200
    assert r.json()["status"]["raft_address"] == "tcp:10.0.0.10:6643"

    assert _reconcile(client)["status_changed"] is True
    assert _reconcile(client)["actions"] == [{"verb": "create", "kind": "Instance", "name": "nb-0"}]

    body = client.get("/clusters/ovn/nb").json()
    assert body["cluster"]["status"]["cluster_id"] == "7f2b"
    assert [m["name"] for m in body["members"]] == ["nb-0"]
    assert [i["name"] for i in body["instances"]] == ["nb-0"]
    assert body["instances"][0]["spec"]["cluster_id"] == "7f2b"


def test_member_failure_is_reported_on_the_cluster(client):
    _apply(client, replicas=1)
    _reconcile(client)
    _reconcile(client)

    client.put(
        "/clusters/ovn/nb/members/nb-0/status",
        json={"failed": True, "message": "ovsdb-tool create-cluster failed"},
        headers=AUTH,
    )
    _reconcile(client)

    conds = client.get("/clusters/ovn/nb").json()["cluster"]["status"]["conditions"]
    failed = [c for c in conds if c["type"] == "Failed"]
    assert failed and failed[0]["reason"] == "ClusterBootstrap"
    assert "nb-0" in failed[0]["message"]


def test_member_status_for_wrong_cluster_is_404(client):
    _apply(client, name="nb", replicas=1)
    _apply(client, name="sb", replicas=1, db_type="SB")
    _reconcile(client, "nb")
    _reconcile(client, "nb")

    r = client.put("/clusters/ovn/sb/members/nb-0/status", json={"available": True}, headers=AUTH)
    assert r.status_code == 404


def test_db_type_is_fixed_after_bootstrap(client):
    _apply(client, replicas=1)
    _reconcile(client)
    _reconcile(client)
    client.put("/clusters/ovn/nb/members/nb-0/status", json={"available": True, "cluster_id": "7f2b"}, headers=AUTH)
    _reconcile(client)

    assert _apply(client, replicas=1, db_type="SB").status_code == 400


def test_scale(client):
    _apply(client, replicas=1)
    r = client.post("/clusters/ovn/nb/scale", json={"replicas": 3}, headers=AUTH)
    assert r.status_code == 200
    assert r.json()["spec"]["replicas"] == 3
    assert client.post("/clusters/ovn/nb/scale", json={"replicas": 16}, headers=AUTH).status_code == 422


def test_delete_removes_members_and_instances(client):
    _apply(client, replicas=1)
    _reconcile(client)
    _reconcile(client)

    r = client.delete("/clusters/ovn/nb", headers=AUTH)
    assert r.status_code == 200
    assert client.get("/clusters/ovn/nb").status_code == 404
    assert main.db.list_objects(main.Member) == []


def test_events(client):
    _apply(client, replicas=1)
    _reconcile(client)
    _reconcile(client)

    events = client.get("/events", params={"limit": 5, "cluster": "nb"}).json()
    messages = [e["message"] for e in events]
    assert any(m.startswith("Created server nb-0") for m in messages)
    assert any(m.startswith("Cluster created by admin") for m in messages)
