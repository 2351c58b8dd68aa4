import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from collab_notifier import db
from collab_notifier.server import AUTH_CLOSE_CODE, build_services, create_app

from conftest import RecordingMailer


@pytest.fixture
def client(app_config, seeded):
    services = build_services(app_config, conn=seeded, mailer=RecordingMailer())
    app = create_app(app_config, services=services, start_scheduler=False)
    with TestClient(app) as client:
        yield client


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _seed_notifications(conn, user_id, count):
    rows = [(user_id, "digest", f"n{i}", "message", {}, "medium") for i in range(count)]
    return db.insert_notifications(conn, rows)


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "connections": 0}


def test_api_requires_bearer_token(client):
    assert client.get("/api/notifications").status_code == 401
    assert client.get("/api/notifications", headers=_auth("nonsense")).status_code == 401


def test_list_and_unread_count(client, seeded, tokens):
    _seed_notifications(seeded, "bob", 3)
    _seed_notifications(seeded, "carol", 1)

    listed = client.get("/api/notifications?limit=2", headers=_auth(tokens["bob"]))
    count = client.get("/api/notifications/unread-count", headers=_auth(tokens["bob"]))

    assert listed.status_code == 200
    body = listed.json()
    assert body["page"] == 1 and body["limit"] == 2
    assert len(body["notifications"]) == 2
    assert all(n["user_id"] == "bob" for n in body["notifications"])
    assert count.json() == {"count": 3}


def test_list_rejects_oversized_page(client, tokens):
    response = client.get("/api/notifications?limit=500", headers=_auth(tokens["bob"]))

    assert response.status_code == 422


def test_mark_one_read_and_back(client, seeded, tokens):
    notification = _seed_notifications(seeded, "bob", 1)[0]
    url = f"/api/notifications/{notification.id}"

    read = client.put(url, headers=_auth(tokens["bob"]))
    again = client.put(url, headers=_auth(tokens["bob"]))
    unread = client.put(url, json={"read": False}, headers=_auth(tokens["bob"]))

    assert read.status_code == 200 and read.json()["read"] is True
    assert again.status_code == 200 and again.json()["read"] is True
    assert unread.json()["read"] is False


def test_other_users_notification_is_not_found(client, seeded, tokens):
    notification = _seed_notifications(seeded, "bob", 1)[0]

    response = client.put(f"/api/notifications/{notification.id}", headers=_auth(tokens["carol"]))
    deleted = client.delete(f"/api/notifications/{notification.id}", headers=_auth(tokens["carol"]))

    assert response.status_code == 404
    assert deleted.status_code == 404
    assert db.get_notification(seeded, notification.id, "bob").read is False


def test_mark_all_read_then_delete(client, seeded, tokens):
    created = _seed_notifications(seeded, "bob", 2)

    marked = client.put("/api/notifications/mark-all-read", headers=_auth(tokens["bob"]))
    deleted = client.delete(f"/api/notifications/{created[0].id}", headers=_auth(tokens["bob"]))
    missing = client.delete(f"/api/notifications/{created[0].id}", headers=_auth(tokens["bob"]))

    assert marked.json() == {"updated": 2}
    assert deleted.json() == {"deleted": True}
    assert missing.status_code == 404
    assert db.count_unread(seeded, "bob") == 0


def test_websocket_rejects_bad_credential(client):
    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect("/ws?token=bad"):
            pass

    assert excinfo.value.code == AUTH_CLOSE_CODE


def test_websocket_join_and_presence(client, tokens):
    with client.websocket_connect(f"/ws?token={tokens['alice']}") as alice:
        alice.send_json({"event": "join_project", "data": {"projectId": "proj-1"}})
        assert alice.receive_json() == {"event": "joined_project", "data": {"projectId": "proj-1"}}

        with client.websocket_connect("/ws", headers=_auth(tokens["bob"])) as bob:
            bob.send_json({"event": "join_project", "data": "proj-1"})
            assert bob.receive_json()["event"] == "joined_project"
            joined = alice.receive_json()
            assert joined["event"] == "user_joined_project"
            assert joined["data"]["userId"] == "bob"

            assert client.get("/health").json()["connections"] == 2


def test_websocket_denied_join_keeps_connection_open(client, tokens):
    with client.websocket_connect(f"/ws?token={tokens['carol']}") as carol:
        carol.send_json({"event": "join_project", "data": {"projectId": "proj-1"}})
        assert carol.receive_json() == {"event": "error", "data": {"message": "Access denied to project"}}

        carol.send_text("{not json")
        assert carol.receive_json() == {"event": "error", "data": {"message": "Malformed message"}}

        carol.send_json({"event": "join_user_room", "data": "carol"})
        assert carol.receive_json() == {"event": "joined_user_room", "data": {"userId": "carol"}}


def test_removing_member_evicts_live_connection(client, seeded, tokens):
    with client.websocket_connect(f"/ws?token={tokens['bob']}") as bob:
        bob.send_json({"event": "join_project", "data": {"projectId": "proj-1"}})
        assert bob.receive_json()["event"] == "joined_project"

        denied = client.delete("/api/projects/proj-1/members/bob", headers=_auth(tokens["carol"]))
        removed = client.delete("/api/projects/proj-1/members/bob", headers=_auth(tokens["alice"]))

        assert denied.status_code == 403
        assert removed.json() == {"removed": True, "evicted": 1}
        evicted = bob.receive_json()
        assert evicted["event"] == "error"
        assert evicted["data"]["projectId"] == "proj-1"

    assert not db.has_project_access(seeded, "proj-1", "bob")
