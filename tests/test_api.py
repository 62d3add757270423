import pytest
from fastapi.testclient import TestClient

from atsight.core.settings import settings
from atsight.main import app
from atsight.services import alert_service, emergency, event_store, monitor, pairing, push_service


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'api.db'}")
    monkeypatch.setattr(settings, "CREATE_TABLES", True)
    monkeypatch.setattr(settings, "BACKEND_BASE_URL", "")
    for module, name in [
        (alert_service, "_alert_manager"),
        (alert_service, "_sse_manager"),
        (monitor, "_registry"),
        (emergency, "_emergency_registry"),
        (pairing, "_pairing_service"),
        (event_store, "_event_store"),
        (push_service, "_push_service"),
    ]:
        monkeypatch.setattr(module, name, None)

    with TestClient(app) as test_client:
        yield test_client


def _pair(client, child_id="c1", guardian_id="g1", child_name="Sam"):
    client.post(f"/watch/{child_id}/start", json={"child_name": child_name})
    pin = client.post(f"/watch/{child_id}/pairing-screen").json()["pin"]
    response = client.post(
        "/pairing/link",
        json={"pin": pin, "guardian_id": guardian_id, "guardian_name": "Dana", "child_name": child_name},
    )
    return pin, response


def test_health(client):
    body = client.get("/health").json()
    assert body["database"] is True
    assert body["scheduler"]["running"] is True


def test_zone_configuration(client):
    zones = [
        {"id": "home", "lat": 32.08, "lon": 34.78, "radius_meters": 100, "name": "Home", "is_safe": True},
        {"id": "road", "lat": 32.09, "lon": 34.79, "radius_meters": 30, "name": "Road", "is_safe": False},
    ]
    assert client.put("/children/c1/zones", json=zones).status_code == 200
    assert [z["id"] for z in client.get("/children/c1/zones").json()] == ["home", "road"]

    assert client.put("/children/c1/zones", json=[zones[0], zones[0]]).status_code == 400
    bad = dict(zones[0], radius_meters=-1)
    assert client.put("/children/c1/zones", json=[bad]).status_code == 422


def test_notification_settings_round_trip(client):
    defaults = client.get("/children/c1/settings").json()
    assert defaults["lowBatteryThreshold"] == 20

    saved = client.put(
        "/children/c1/settings",
        json={"lowBatteryAlert": False, "lowBatteryThreshold": 90, "sound": "bell_sound"},
    ).json()
    assert saved["lowBatteryThreshold"] == 50
    fetched = client.get("/children/c1/settings").json()
    assert fetched["lowBatteryAlert"] is False
    assert fetched["sound"] == "bell_sound"


def test_child_name(client):
    assert client.get("/children/c9").status_code == 404
    assert client.put("/children/c9/name", json={"name": "  "}).status_code == 400
    client.put("/children/c9/name", json={"name": "Noa"})
    assert client.get("/children/c9").json() == {"child_id": "c9", "name": "Noa"}


def test_watch_endpoints_require_running_monitor(client):
    assert client.post("/watch/nobody/battery", json={"level": 50}).status_code == 404
    assert client.get("/watch/nobody/status").status_code == 404


def test_monitor_lifecycle_and_readings(client):
    started = client.post("/watch/c1/start", json={"child_name": "Sam"}).json()
    assert started["running"] and started["child_name"] == "Sam"

    assert client.post("/watch/c1/battery", json={"level": 150}).status_code == 400
    assert client.post("/watch/c1/battery", json={"level": 80}).json()["alert_emitted"] is False
    assert client.post("/watch/c1/motion", json={"magnitude": 1.5}).json()["moving"] is True
    assert client.post("/watch/c1/heart-rate", json={"bpm": 72}).json()["action"] == "none"
    status = client.get("/watch/c1/status").json()
    assert status["battery_percent"] == 80
    assert status["pairing_dismissed"] is False

    assert client.post("/watch/c1/stop").json()["stopped"] is True
    assert client.post("/watch/c1/stop").json()["stopped"] is False
    assert client.post("/watch/c1/motion", json={"magnitude": 1.5}).status_code == 404


def test_first_guardian_pairs_as_admin(client):
    pin, response = _pair(client)
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "linked"
    assert body["guardian_id"] == "g1"

    assert client.get("/pairing/check", params={"pin": pin}).json()["status"] == "linked"
    assert client.get("/pairing/link", params={"guardian_id": "g1", "child_id": "c1"}).status_code == 200
    guardians = client.get("/children/c1/guardians").json()
    assert [(g["guardian_id"], g["is_admin"]) for g in guardians] == [("g1", True)]
    assert client.get("/children/c1").json()["name"] == "Sam"


def test_second_guardian_needs_admin_approval(client):
    _pair(client)
    pin = client.post("/watch/c1/pairing-screen").json()["pin"]
    waiting = client.post("/pairing/link", json={"pin": pin, "guardian_id": "g2", "guardian_name": "Lee"})
    assert waiting.json()["status"] == "waiting_for_approval"

    history = client.get("/alerts/history", params={"guardian_id": "g1"}).json()
    assert [a["kind"] for a in history["alerts"]] == ["connection_request"]

    forbidden = client.post("/pairing/decide", json={"pin": pin, "admin_guardian_id": "g2", "approve": True})
    assert forbidden.status_code == 403
    approved = client.post("/pairing/decide", json={"pin": pin, "admin_guardian_id": "g1", "approve": True})
    assert approved.json()["status"] == "linked"


def test_invalid_pin(client):
    assert client.post("/pairing/link", json={"pin": "12", "guardian_id": "g1"}).status_code == 404
    assert client.post("/pairing/register", json={"pin": "abc", "child_id": "c1"}).status_code == 422


def test_unlink(client):
    _pair(client)
    assert client.delete("/pairing/link", params={"guardian_id": "g1", "child_id": "c1"}).status_code == 200
    assert client.delete("/pairing/link", params={"guardian_id": "g1", "child_id": "c1"}).status_code == 404
    assert client.get("/pairing/link", params={"guardian_id": "g1", "child_id": "c1"}).status_code == 404


def test_sos_requires_a_linked_guardian(client):
    assert client.post("/watch/c1/sos").status_code == 409

    _pair(client)
    response = client.post("/watch/c1/sos")
    assert response.status_code == 200
    assert response.json()["notified"] == 1

    history = client.get("/alerts/history", params={"guardian_id": "g1"}).json()
    assert history["alerts"][0]["kind"] == "sos"
    assert history["alerts"][0]["payload"]["child_name"] == "Sam"


def test_halt_is_recorded_for_the_watch(client):
    _pair(client)
    sent = client.post("/alerts/halt", json={"guardian_id": "g1", "child_id": "c1"}).json()

    status = client.get("/alerts/halt/status", params={"child_id": "c1"}).json()
    assert status["pending"] is True
    assert status["alert"]["id"] == sent["id"]

    later = client.get("/alerts/halt/status", params={"child_id": "c1", "since": sent["ts"]}).json()
    assert later["pending"] is False

    watch = client.get("/watch/c1/halt").json()
    assert watch["active"] is False
    assert client.post("/watch/c1/halt/dismiss").json() == {"dismissed": False}


def test_alert_documents_and_feed(client):
    assert client.post("/alerts", json={"kind": "teleport", "child_id": "c1", "guardian_id": "g1", "ts": 1}).status_code == 422
    assert client.post("/alerts", json={"kind": "sos", "child_id": "c1", "guardian_id": "g1", "ts": 1}).status_code == 422

    doc = {"id": "a1", "kind": "sos", "child_id": "c1", "guardian_id": "g1", "ts": 100.0, "payload": {}}
    created = client.post("/alerts", json=doc)
    assert created.status_code == 201
    assert created.json() == {"id": "a1"}

    feed = client.get("/alerts/feed", params={"since": 50, "kinds": "sos,halt"}).json()
    assert [d["id"] for d in feed] == ["a1"]
    assert client.get("/alerts/feed", params={"since": 100}).json() == []

    assert client.post("/alerts/a1/processed", params={"guardian_id": "g2"}).status_code == 404
    assert client.post("/alerts/a1/processed", params={"guardian_id": "g1"}).status_code == 200


def test_watermarks_only_move_forward(client):
    assert client.get("/alerts/watermarks/g1").json() == {"ts": None}
    assert client.put("/alerts/watermarks/g1", json={"ts": 200.0}).json() == {"ts": 200.0}
    assert client.put("/alerts/watermarks/g1", json={"ts": 150.0}).json() == {"ts": 200.0}
    assert client.put("/alerts/watermarks/g1", json={}).status_code == 400


def test_acknowledge_and_sos_state(client):
    body = client.post("/alerts/acknowledge", json={"child_id": "c1", "guardian_id": "g1"}).json()
    assert body == {"acknowledged": True, "marked_processed": True}
    assert client.get("/alerts/sos", params={"guardian_id": "g1"}).json() == {"active": False, "alert": None}
    assert client.post("/alerts/sos/dismiss", params={"guardian_id": "g1"}).json() == {"dismissed": False}


def test_push_without_vapid(client):
    assert client.get("/push/vapid-key").json()["configured"] is False
    response = client.post(
        "/push/subscribe",
        params={"recipient_id": "g1"},
        json={"endpoint": "https://push.example/1", "keys": {"p256dh": "a", "auth": "b"}},
    )
    assert response.status_code == 503


def test_history_total_counts_beyond_the_page(client):
    for i in range(3):
        doc = {"id": f"a{i}", "kind": "halt", "child_id": "c1", "guardian_id": "g1", "ts": 100.0 + i, "payload": {}}
        assert client.post("/alerts", json=doc).status_code == 201

    page = client.get("/alerts/history", params={"guardian_id": "g1", "limit": 2}).json()
    assert [a["id"] for a in page["alerts"]] == ["a2", "a1"]
    assert page["total_count"] == 3
