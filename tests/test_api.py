"""
HTTP / WebSocket 端對端測試

這裡的請求都用伺服器當下的時間，所以只檢查流程與事件，不檢查金額。
"""
import api.lanes
from core.broadcaster import CHECKOUT_CHANNEL, broadcaster, lane_channel


def _checkin_over_http(client, lane_id, customer_name):
    started = client.post(f"/v1/checkin/lane/{lane_id}/start", json={"customer_name": customer_name})
    assert started.status_code == 200, started.text

    client.post(
        f"/v1/checkin/lane/{lane_id}/propose-selection",
        json={"rental_type": "STANDARD", "proposed_by": "CUSTOMER"},
    ).raise_for_status()
    client.post(
        f"/v1/checkin/lane/{lane_id}/confirm-selection", json={"confirmed_by": "EMPLOYEE"}
    ).raise_for_status()

    intent = client.post(f"/v1/checkin/lane/{lane_id}/create-payment-intent")
    assert intent.status_code == 200, intent.text
    paid = client.post(f"/v1/payments/{intent.json()['payment_intent_id']}/mark-paid", json={"method": "CASH"})
    assert paid.status_code == 200, paid.text
    assert paid.json()["status"] == "PAID"

    signed = client.post(
        f"/v1/checkin/lane/{lane_id}/sign-agreement",
        json={"session_id": started.json()["session_id"], "signature": "data:image/png;base64,AAAA"},
    )
    assert signed.status_code == 200, signed.text
    return started.json(), signed.json()


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}


def test_full_checkin_publishes_a_snapshot_per_command(client, inventory, events):
    lane_events = events(lane_channel("L1"))

    started, signed = _checkin_over_http(client, "L1", "Jordan Lee")

    assert signed["resource_type"] == "room"
    assert signed["number"] == 210
    # start, propose, confirm, payment intent, mark paid, sign
    assert len(lane_events) == 6
    assert {event["type"] for event in lane_events} == {"SESSION_UPDATED"}
    assert lane_events[0]["payload"]["customerName"] == "Jordan Lee"
    assert lane_events[-1]["payload"]["stage"]["key"] == "COMPLETE"
    assert lane_events[-1]["payload"]["assignedResourceNumber"] == "210"

    snapshot = client.get("/v1/checkin/lane/L1/snapshot").json()
    assert snapshot["sessionId"] == started["session_id"]
    assert snapshot["agreementSigned"] is True


def test_failed_command_returns_kind_status_and_publishes_nothing(client, inventory, events):
    lane_events = events(lane_channel("L1"))

    response = client.post("/v1/checkin/lane/L1/set-language", json={"language": "EN"})

    assert response.status_code == 404
    assert response.json()["detail"]["kind"] == "NOT_FOUND"
    assert lane_events == []


def test_customer_already_inside_gets_conflict_with_active_checkin(client, inventory):
    started, signed = _checkin_over_http(client, "L1", "Jordan Lee")

    response = client.post("/v1/checkin/lane/L2/start", json={"customer_id": started["customer_id"]})

    assert response.status_code == 409
    detail = response.json()["detail"]
    assert detail["code"] == "ALREADY_CHECKED_IN"
    assert detail["active_checkin"]["visitId"] == signed["visit_id"]
    assert detail["active_checkin"]["assignedResourceNumber"] == "210"


def test_lane_sessions_overview(client, inventory):
    client.post("/v1/checkin/lane/L1/start", json={"customer_name": "Jordan Lee"}).raise_for_status()
    client.post("/v1/checkin/lane/L2/start", json={"customer_name": "Sam Park"}).raise_for_status()

    sessions = client.get("/v1/checkin/lane-sessions").json()

    assert [(s["lane_id"], s["customer_name"]) for s in sessions] == [("L1", "Jordan Lee"), ("L2", "Sam Park")]


def test_checkout_over_http_publishes_request_events(client, inventory, events):
    checkout_events = events(CHECKOUT_CHANNEL)
    _, signed = _checkin_over_http(client, "L1", "Jordan Lee")

    submitted = client.post(
        "/v1/checkout/requests",
        json={"occupancy_id": signed["checkin_block_id"], "kiosk_device_id": "kiosk-1"},
    )
    assert submitted.status_code == 200, submitted.text
    request_id = submitted.json()["request_id"]
    assert submitted.json()["summary"]["roomNumber"] == "210"

    assert client.post(f"/v1/checkout/requests/{request_id}/claim", json={"staff_id": "staff-a"}).status_code == 200
    assert client.post(f"/v1/checkout/requests/{request_id}/claim", json={"staff_id": "staff-b"}).status_code == 409
    assert client.post(f"/v1/checkout/requests/{request_id}/complete", json={"staff_id": "staff-a"}).status_code == 400
    assert client.post(f"/v1/checkout/requests/{request_id}/complete", json={"staff_id": "staff-b"}).status_code == 403

    client.post(f"/v1/checkout/requests/{request_id}/confirm-items", json={"staff_id": "staff-a"}).raise_for_status()
    completed = client.post(f"/v1/checkout/requests/{request_id}/complete", json={"staff_id": "staff-a"})
    assert completed.status_code == 200, completed.text
    assert completed.json()["visit_id"] == signed["visit_id"]

    assert [event["type"] for event in checkout_events] == [
        "CHECKOUT_REQUESTED",
        "CHECKOUT_CLAIMED",
        "CHECKOUT_UPDATED",
        "CHECKOUT_COMPLETED",
    ]
    assert checkout_events[-1]["payload"]["kioskDeviceId"] == "kiosk-1"
    assert checkout_events[-1]["payload"]["status"] == "VERIFIED"
    assert client.get("/v1/checkout/requests").json() == []


def test_resolve_unknown_key_tag(client, inventory):
    response = client.get("/v1/checkout/resolve-key", params={"token": "NOPE"})
    assert response.status_code == 404


def test_manual_resolve_requires_an_identifier(client, inventory):
    assert client.post("/v1/checkout/manual-resolve", json={}).status_code == 400


def test_lane_websocket_receives_updates(client, inventory):
    with client.websocket_connect("/ws/lanes/L9") as ws:
        assert ws.receive_json() == {"type": "SUBSCRIBED", "payload": {"laneId": "L9"}}

        client.post("/v1/checkin/lane/L9/start", json={"customer_name": "Sam Park"}).raise_for_status()

        event = ws.receive_json()
        assert event["type"] == "SESSION_UPDATED"
        assert event["payload"]["laneId"] == "L9"
        assert event["payload"]["customerName"] == "Sam Park"


def test_lane_websocket_sends_current_snapshot_on_connect(client, inventory):
    client.post("/v1/checkin/lane/L9/start", json={"customer_name": "Sam Park"}).raise_for_status()

    with client.websocket_connect("/ws/lanes/L9") as ws:
        event = ws.receive_json()
        assert event["type"] == "SESSION_UPDATED"
        assert event["payload"]["customerName"] == "Sam Park"


def test_checkout_websocket_subscribes(client):
    with client.websocket_connect("/ws/checkout") as ws:
        assert ws.receive_json() == {"type": "SUBSCRIBED", "payload": {"channel": CHECKOUT_CHANNEL}}


def test_lane_command_still_succeeds_when_snapshot_publish_fails(client, inventory, monkeypatch):
    def broken_snapshot(db, session_id):
        raise RuntimeError("snapshot unavailable")

    monkeypatch.setattr(api.lanes, "build_session_snapshot", broken_snapshot)

    started = client.post("/v1/checkin/lane/L1/start", json={"customer_name": "Jordan Lee"})
    assert started.status_code == 200, started.text

    monkeypatch.undo()
    snapshot = client.get("/v1/checkin/lane/L1/snapshot").json()
    assert snapshot["sessionId"] == started.json()["session_id"]
    assert snapshot["customerName"] == "Jordan Lee"


def test_checkout_still_completes_when_event_publish_fails(client, inventory, monkeypatch):
    _, signed = _checkin_over_http(client, "L1", "Jordan Lee")

    def broken_publish(event_type, payload):
        raise RuntimeError("broadcast down")

    monkeypatch.setattr(broadcaster, "publish_checkout_event", broken_publish)

    submitted = client.post(
        "/v1/checkout/requests",
        json={"occupancy_id": signed["checkin_block_id"], "kiosk_device_id": "kiosk-1"},
    )
    assert submitted.status_code == 200, submitted.text
    assert submitted.json()["summary"]["roomNumber"] == "210"
    request_id = submitted.json()["request_id"]

    assert client.post(f"/v1/checkout/requests/{request_id}/claim", json={"staff_id": "staff-a"}).status_code == 200
    client.post(f"/v1/checkout/requests/{request_id}/confirm-items", json={"staff_id": "staff-a"}).raise_for_status()
    completed = client.post(f"/v1/checkout/requests/{request_id}/complete", json={"staff_id": "staff-a"})
    assert completed.status_code == 200, completed.text
    assert client.get("/v1/checkout/requests").json() == []


def test_manual_checkout_still_completes_when_event_publish_fails(client, inventory, monkeypatch):
    _, signed = _checkin_over_http(client, "L1", "Jordan Lee")

    def broken_publish(event_type, payload):
        raise RuntimeError("broadcast down")

    monkeypatch.setattr(broadcaster, "publish_checkout_event", broken_publish)

    completed = client.post(
        "/v1/checkout/manual-complete",
        json={"occupancy_id": signed["checkin_block_id"], "staff_id": "staff-a"},
    )
    assert completed.status_code == 200, completed.text
    assert completed.json()["already_checked_out"] is False
