"""
End-to-end tests through the FastAPI app: HTTP commands, state reads,
WebSocket pushes and acks, provisioning and startup restore
"""
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from fightcard import state
from fightcard.main import create_app
from fightcard.models import MirrorSettings, Settings


ADMIN = {"x-admin-password": "letmein"}


def make_settings(tmp_path, **overrides) -> Settings:
    mirror = MirrorSettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/api.db",
        file_dir=str(tmp_path / "cards"),
        backoff_seconds=0,
    )
    return Settings(mirror=mirror, **overrides)


@pytest.fixture
def client(tmp_path):
    with TestClient(create_app(make_settings(tmp_path))) as test_client:
        yield test_client


def post_command(client, payload, path="/admin/action", headers=ADMIN):
    return client.post(path, json=payload, headers=headers)


def fight(a, b, **extra):
    return {"type": "createFight", "data": {"a": a, "b": b, **extra}}


# ==================== HTTP COMMANDS ====================

def test_root_health(client):
    body = client.get("/").json()
    assert body["status"] == "ok"
    assert body["cards"] == 1


def test_fresh_card_state(client):
    body = client.get("/state").json()
    assert body["fights"] == []
    assert body["current"] == 0
    assert body["standby"] is True


def test_command_requires_token(client):
    response = post_command(client, fight("Smith", "Jones"), headers={})
    assert response.status_code == 401
    response = post_command(client, fight("Smith", "Jones"), headers={"x-admin-password": "letmein2"})
    assert response.status_code == 401
    assert client.get("/state").json()["fights"] == []


@pytest.mark.parametrize("headers,path", [
    ({"Authorization": "Bearer letmein"}, "/admin/action"),
    ({}, "/admin/action?token=letmein"),
])
def test_token_transports(client, headers, path):
    response = post_command(client, fight("Smith", "Jones"), path=path, headers=headers)
    assert response.status_code == 200


def test_create_fight_on_empty_card(client):
    """Scenario: Smith vs Jones becomes fight 1 and the card goes live"""
    response = post_command(client, fight("Smith", "Jones", weight="70kg"))
    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["broadcastId"] == 1
    assert body["fight"]["id"] == 1

    card = client.get("/state").json()
    assert card["fights"] == [{"id": 1, "a": "Smith", "b": "Jones", "weight": "70kg",
                               "klass": "", "aGym": "", "bGym": ""}]
    assert card["fightsVisible"] is True
    assert card["standby"] is False


def test_set_live_scenario(client):
    for n in range(5):
        post_command(client, fight(f"A{n}", f"B{n}"))
    post_command(client, {"type": "setStandby", "on": True})
    response = post_command(client, {"type": "setLive", "index": 2})
    assert response.status_code == 200
    card = client.get("/state").json()
    assert card["current"] == 2
    assert card["standby"] is False


def test_invalid_command_is_rejected(client):
    response = post_command(client, {"type": "setCurrent", "index": 3})
    assert response.status_code == 400
    assert response.json()["detail"]["field"] == "index"

    response = post_command(client, {"type": "fireworks"})
    assert response.status_code == 400

    response = client.post("/admin/action", content=b"not json", headers=ADMIN)
    assert response.status_code == 400

    response = post_command(client, {"type": ["setCurrent"], "index": 0})
    assert response.status_code == 400
    assert response.json()["detail"]["field"] == "type"


def test_duplicate_request_id_over_http(client):
    first = post_command(client, {**fight("Smith", "Jones"), "rid": "r-1"}).json()
    second = post_command(client, {**fight("Smith", "Jones"), "rid": "r-1"}).json()
    assert first["duplicate"] is False
    assert second["duplicate"] is True
    assert second["broadcastId"] == first["broadcastId"]
    assert second["fight"] == first["fight"]
    assert len(client.get("/state").json()["fights"]) == 1


def test_audit_requires_admin(client):
    assert client.get("/admin/audit").status_code == 401
    response = client.get("/admin/audit", headers=ADMIN)
    assert response.status_code == 200
    assert response.json()["card"] == "default"


# ==================== WEBSOCKET ====================

def test_ws_initial_push_and_ack(client):
    with client.websocket_connect("/ws") as ws:
        first = ws.receive_json()
        assert first["type"] == "state"
        assert first["broadcastId"] == 0

        post_command(client, fight("Smith", "Jones"))
        pushed = ws.receive_json()
        assert pushed["broadcastId"] == 1
        assert pushed["state"]["fights"][0]["a"] == "Smith"

        assert client.get("/health").json()["pending"] == 1
        ws.send_json({"type": "ack", "broadcastId": 1})
        # the pong is queued after the ack was processed
        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"type": "pong"}

        health = client.get("/health").json()
        assert health["sessions"] == 1
        assert health["lastBroadcastId"] == 1
        assert health["pending"] == 0


def test_ws_root_path_and_request_state(client):
    with client.websocket_connect("/") as ws:
        assert ws.receive_json()["type"] == "state"
        ws.send_json({"type": "requestState"})
        again = ws.receive_json()
        assert again["type"] == "state"
        assert again["broadcastId"] == 0


def test_ws_viewer_cannot_send_commands(client):
    with client.websocket_connect("/ws") as ws:
        ws.receive_json()
        ws.send_json(fight("Smith", "Jones"))
        reply = ws.receive_json()
        assert reply["type"] == "error"
        assert reply["status"] == 401
    assert client.get("/state").json()["fights"] == []


def test_ws_admin_envelope_shares_idempotency_with_http(client):
    post_command(client, {**fight("Smith", "Jones"), "rid": "r-9"})
    with client.websocket_connect("/ws") as ws:
        assert ws.receive_json()["broadcastId"] == 1
        ws.send_json({"type": "admin", "token": "letmein",
                      "payload": {**fight("Smith", "Jones"), "rid": "r-9"}})
        reply = ws.receive_json()
        assert reply["type"] == "result"
        assert reply["duplicate"] is True
        assert reply["rid"] == "r-9"
    assert len(client.get("/state").json()["fights"]) == 1


def test_ws_auth_message(client):
    with client.websocket_connect("/ws") as ws:
        ws.receive_json()
        ws.send_json({"type": "auth", "token": "wrong"})
        assert ws.receive_json()["status"] == 401
        ws.send_json({"type": "auth", "token": "letmein"})
        assert ws.receive_json() == {"type": "auth", "admin": True}
        assert client.get("/health").json()["admins"] == 1


def test_last_admin_leaving_puts_viewers_in_standby(client):
    with client.websocket_connect("/ws") as viewer:
        viewer.receive_json()
        with client.websocket_connect("/ws?token=letmein") as admin:
            admin.receive_json()
            admin.send_json({**fight("Smith", "Jones"), "rid": "w-1"})
            assert admin.receive_json()["type"] == "state"
            result = admin.receive_json()
            assert result["type"] == "result"
            assert result["broadcastId"] == 1

            live = viewer.receive_json()
            assert live["state"]["standby"] is False

        standby = viewer.receive_json()
        assert standby["broadcastId"] == 2
        assert standby["state"]["standby"] is True



def test_ws_malformed_type_keeps_connection(client):
    with client.websocket_connect("/ws?token=letmein") as admin:
        admin.receive_json()
        admin.send_json({"type": {"name": "setCurrent"}, "index": 0})
        reply = admin.receive_json()
        assert reply["type"] == "error"
        assert reply["status"] == 400
        admin.send_json({"type": "ping"})
        assert admin.receive_json() == {"type": "pong"}

# ==================== CARDS ====================

def test_whoami(client):
    assert client.get("/whoami").json() == {"admin": False}
    assert client.get("/whoami?token=letmein").json() == {"admin": True}


def test_provision_card(client):
    response = client.post("/cards", headers=ADMIN, json={
        "club": "Loyalty Muay Thai", "eventName": "Spring Gala", "friendlySlug": True, "ttlHours": 500,
    })
    assert response.status_code == 200
    body = response.json()
    assert body["slug"] == "spring-gala"
    assert body["expiresAt"] - body["createdAt"] == 72 * 3600
    assert body["adminUrl"].endswith("/c/spring-gala/admin?token=letmein")

    card = client.get("/c/spring-gala/state").json()
    assert card["eventName"] == "Spring Gala"
    assert client.get("/state").json()["eventName"] == ""

    response = post_command(client, fight("Smith", "Jones"), path="/c/spring-gala/admin/action")
    assert response.json()["broadcastId"] == 2
    assert client.get("/state").json()["fights"] == []
    assert client.get("/c/spring-gala/health").json()["lastBroadcastId"] == 2


def test_provision_requires_admin(client):
    assert client.post("/cards", json={"club": "X"}).status_code == 401


def test_unknown_and_expired_cards(client):
    assert client.get("/c/nope/state").status_code == 404

    slug = client.post("/cards", headers=ADMIN, json={"club": "X"}).json()["slug"]
    state.REGISTRY.entries[slug].info.expires_at = 0.0
    assert client.get(f"/c/{slug}/state").status_code == 410
    assert post_command(client, fight("A", "B"), path=f"/c/{slug}/admin/action").status_code == 410

    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect(f"/c/{slug}/ws") as ws:
            ws.receive_json()
    assert exc.value.code == 4410


# ==================== RESTART ====================

def test_state_survives_restart(tmp_path):
    with TestClient(create_app(make_settings(tmp_path))) as client:
        post_command(client, fight("Smith", "Jones"))
        post_command(client, fight("Lee", "Kim"))
        post_command(client, {"type": "deleteFight", "index": 1})
        post_command(client, {"type": "setEventMeta", "name": "Spring Gala"})
        before = client.get("/state").json()

    with TestClient(create_app(make_settings(tmp_path))) as client:
        assert client.get("/state").json() == before
        created = post_command(client, fight("New", "Pair")).json()
        # ids are not reused after a restart
        assert created["fight"]["id"] == 3


def test_start_empty_clears_restored_fights(tmp_path):
    with TestClient(create_app(make_settings(tmp_path))) as client:
        post_command(client, fight("Smith", "Jones"))
        post_command(client, {"type": "setEventMeta", "name": "Spring Gala"})

    with TestClient(create_app(make_settings(tmp_path, start_empty=True))) as client:
        card = client.get("/state").json()
        assert card["fights"] == []
        assert card["eventName"] == "Spring Gala"

    with TestClient(create_app(make_settings(tmp_path))) as client:
        assert client.get("/state").json()["fights"] == []


def test_provisioned_cards_survive_restart(tmp_path):
    with TestClient(create_app(make_settings(tmp_path))) as client:
        slug = client.post("/cards", headers=ADMIN, json={"club": "Loyalty", "eventName": "Gala",
                                                          "friendlySlug": True}).json()["slug"]
        post_command(client, fight("Smith", "Jones"), path=f"/c/{slug}/admin/action")

    with TestClient(create_app(make_settings(tmp_path))) as client:
        card = client.get(f"/c/{slug}/state").json()
        assert card["eventName"] == "Gala"
        assert len(card["fights"]) == 1
