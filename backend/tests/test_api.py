import os
import sys
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from app.main import app

client = TestClient(app)


def _login(user_id: str, **names) -> dict:
    response = client.post("/auth/login", json={"user_id": user_id, "password": "seva-demo", **names})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def _approved_priest() -> tuple[str, dict, str]:
    user_id = f"priest_{uuid4().hex[:8]}"
    headers = _login(user_id, first_name="Hari", last_name="Joshi")
    assert client.post("/providers/apply", headers=headers).status_code == 200
    decision = client.post(
        f"/admin/profiles/{user_id}/decision",
        json={"decision": "approved"},
        headers=_login("admin_1"),
    )
    assert decision.status_code == 200
    return user_id, headers, decision.json()["provider_profile_id"]


def _create_booking(headers: dict, provider_id: str, **overrides) -> dict:
    body = {
        "provider_id": provider_id,
        "scheduled_at": (datetime.now(timezone.utc) + timedelta(days=3)).isoformat(),
        "purpose": "Vastu Shanti",
        "address": "7 Ashram Marg",
        "price": 0,
    }
    body.update(overrides)
    return client.post("/bookings", json=body, headers=headers)


def test_health_ok():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_ready_reports_sync_ladder():
    response = client.get("/ready")
    assert response.status_code == 200
    assert response.json()["sync_ladder_seconds"] == [0.01, 0.02, 0.03]


def test_auth_login_and_me():
    headers = _login("user_2")
    me = client.get("/auth/me", headers=headers)
    assert me.status_code == 200
    assert me.json() == {"user_id": "user_2", "is_admin": False, "is_provider": False}


def test_auth_rejects_bad_credentials():
    bad = client.post("/auth/login", json={"user_id": "user_2", "password": "wrong"})
    assert bad.status_code == 401
    assert client.get("/auth/me").status_code == 401
    assert client.get("/auth/me", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_admin_routes_require_admin():
    headers = _login(f"devotee_{uuid4().hex[:8]}")
    assert client.get("/admin/profiles", headers=headers).status_code == 403
    assert client.get("/admin/bookings", headers=headers).status_code == 403
    assert client.post("/admin/profiles/user_2/revoke", headers=headers).status_code == 403


def test_admin_cannot_drop_own_admin_flag():
    response = client.post("/admin/profiles/admin_1/admin", json={"is_admin": False}, headers=_login("admin_1"))
    assert response.status_code == 400


def test_admin_sees_new_accounts():
    user_id = f"devotee_{uuid4().hex[:8]}"
    admin = _login("admin_1")
    assert client.get("/admin/profiles", headers=admin).status_code == 200

    _login(user_id)
    ids = [row["id"] for row in client.get("/admin/profiles", headers=admin).json()]
    assert user_id in ids


def test_approval_flow_lists_provider():
    user_id, headers, profile_id = _approved_priest()

    assert client.post("/providers/apply", headers=headers).status_code == 409
    me = client.get("/auth/me", headers=headers).json()
    assert me["is_provider"] is True
    listed = [row["id"] for row in client.get("/providers").json()]
    assert profile_id in listed
    assert client.get(f"/providers/{profile_id}").json()["name"] == "Hari Joshi"

    revoked = client.post(f"/admin/profiles/{user_id}/revoke", headers=_login("admin_1"))
    assert revoked.status_code == 200
    assert revoked.json()["provider_profile_id"] == profile_id
    assert profile_id not in [row["id"] for row in client.get("/providers").json()]
    assert client.post("/providers/me/update", json={"description": "x"}, headers=headers).status_code == 403


def test_decision_for_unknown_user_is_404():
    response = client.post(
        "/admin/profiles/ghost_user/decision",
        json={"decision": "approved"},
        headers=_login("admin_1"),
    )
    assert response.status_code == 404


def test_booking_validation_errors():
    _user_id, _headers, profile_id = _approved_priest()
    devotee = _login(f"devotee_{uuid4().hex[:8]}")

    past = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
    assert _create_booking(devotee, profile_id, scheduled_at=past).status_code == 400
    assert _create_booking(devotee, profile_id, purpose=" ").status_code == 400
    assert _create_booking(devotee, "pp_missing").status_code == 404
    assert client.get("/bookings/bk_missing", headers=devotee).status_code == 404
    assert client.get("/bookings", params={"role": "owner"}, headers=devotee).status_code == 400


def test_booking_transitions_and_permissions():
    _priest_id, priest, profile_id = _approved_priest()
    devotee = _login(f"devotee_{uuid4().hex[:8]}")
    stranger = _login(f"stranger_{uuid4().hex[:8]}")

    created = _create_booking(devotee, profile_id)
    assert created.status_code == 200
    booking = created.json()
    assert booking["status"] == "pending"

    assert client.get(f"/bookings/{booking['id']}", headers=stranger).status_code == 403
    assert client.post(f"/bookings/{booking['id']}/complete", headers=devotee).status_code == 403
    assert client.post(f"/bookings/{booking['id']}/complete", headers=priest).status_code == 409

    confirmed = client.post(
        f"/bookings/{booking['id']}/transition",
        json={"status": "confirmed", "expected_version": 1},
        headers=priest,
    )
    assert confirmed.status_code == 200
    assert confirmed.json()["version"] == 2

    stale = client.post(
        f"/bookings/{booking['id']}/transition",
        json={"status": "cancelled", "expected_version": 1},
        headers=devotee,
    )
    assert stale.status_code == 409

    listed = client.get("/bookings", params={"role": "provider"}, headers=priest).json()
    assert [row["status"] for row in listed if row["id"] == booking["id"]] == ["confirmed"]

    assert client.post(f"/bookings/{booking['id']}/complete", headers=priest).json()["status"] == "completed"
    assert client.post(f"/bookings/{booking['id']}/cancel", headers=devotee).status_code == 409


def test_priced_booking_is_not_confirmed_without_payment():
    _priest_id, priest, profile_id = _approved_priest()
    devotee = _login(f"devotee_{uuid4().hex[:8]}")
    booking = _create_booking(devotee, profile_id, price=1100).json()

    assert client.post(f"/bookings/{booking['id']}/confirm", headers=devotee).status_code == 403
    requester_transition = client.post(
        f"/bookings/{booking['id']}/transition",
        json={"status": "confirmed"},
        headers=devotee,
    )
    assert requester_transition.status_code == 403
    assert client.post(f"/bookings/{booking['id']}/confirm", headers=priest).status_code == 409
    assert client.get(f"/bookings/{booking['id']}", headers=devotee).json()["status"] == "pending"


def test_payment_confirms_booking():
    _priest_id, _priest, profile_id = _approved_priest()
    devotee = _login(f"devotee_{uuid4().hex[:8]}")
    booking = _create_booking(devotee, profile_id, price=1100).json()

    failed = client.post(f"/bookings/{booking['id']}/payment", json={"outcome": "failed"}, headers=devotee)
    assert failed.json()["status"] == "pending"

    paid = client.post(
        f"/bookings/{booking['id']}/payment",
        json={"outcome": "succeeded", "payment_reference": "pay_api_1"},
        headers=devotee,
    )
    assert paid.status_code == 200
    assert paid.json()["status"] == "confirmed"
    assert paid.json()["payment_reference"] == "pay_api_1"


def test_tracking_only_accepts_positions_while_en_route():
    _priest_id, priest, profile_id = _approved_priest()
    devotee = _login(f"devotee_{uuid4().hex[:8]}")
    booking = _create_booking(devotee, profile_id, payment_reference="pay_api_2").json()
    url = f"/tracking/{booking['id']}"

    assert client.post(f"{url}/location", json={"latitude": 10.0, "longitude": 76.0}, headers=devotee).status_code == 403
    early = client.post(f"{url}/location", json={"latitude": 10.0, "longitude": 76.0}, headers=priest)
    assert early.json() == {"accepted": False, "booking_id": booking["id"]}

    assert client.post(f"/bookings/{booking['id']}/journey/start", json={}, headers=devotee).status_code == 403
    started = client.post(f"/bookings/{booking['id']}/journey/start", json={}, headers=priest)
    assert started.json()["journey_started"] is True

    bad = client.post(f"{url}/location", json={"latitude": 100.0, "longitude": 76.0}, headers=priest)
    assert bad.status_code == 400
    accepted = client.post(f"{url}/location", json={"latitude": 10.01, "longitude": 76.02, "speed": 7.5}, headers=priest)
    assert accepted.json()["accepted"] is True

    status = client.get(url, headers=devotee).json()
    assert status["phase"] == "en_route"
    assert status["last_sample"]["latitude"] == 10.01
    assert status["eta_estimate"] in {"30 min", "29 min"}


def test_requester_reviews_completed_booking():
    _priest_id, priest, profile_id = _approved_priest()
    devotee = _login(f"devotee_{uuid4().hex[:8]}")
    booking = _create_booking(devotee, profile_id).json()
    review_url = f"/bookings/{booking['id']}/review"

    assert client.post(review_url, json={"rating": 5}, headers=devotee).status_code == 409
    client.post(f"/bookings/{booking['id']}/confirm", headers=priest)
    client.post(f"/bookings/{booking['id']}/complete", headers=priest)

    assert client.post(review_url, json={"rating": 5}, headers=priest).status_code == 403
    assert client.post(review_url, json={"rating": 0}, headers=devotee).status_code == 400
    created = client.post(review_url, json={"rating": 4, "comment": "Calm and precise"}, headers=devotee)
    assert created.status_code == 200
    assert client.post(review_url, json={"rating": 3}, headers=devotee).status_code == 409

    assert client.get(f"/providers/{profile_id}").json()["rating"] == 4.0
    reviews = client.get(f"/providers/{profile_id}/reviews").json()
    assert [row["comment"] for row in reviews] == ["Calm and precise"]
