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
    payload = response.json()
    return {"Authorization": f"Bearer {payload['access_token']}"}


def test_golden_path_apply_approve_book_pay_track_complete():
    priest_user = f"golden_priest_{uuid4().hex[:8]}"
    devotee_user = f"golden_devotee_{uuid4().hex[:8]}"

    priest = _login(priest_user, first_name="Lakshmi", last_name="Narayan")
    devotee = _login(devotee_user)
    admin = _login("admin_1")

    applied = client.post("/providers/apply", headers=priest)
    assert applied.status_code == 200
    assert applied.json()["provider_status"] == "pending"

    pending_ids = [row["id"] for row in client.get("/admin/profiles", headers=admin).json() if row["provider_status"] == "pending"]
    assert priest_user in pending_ids

    decision = client.post(
        f"/admin/profiles/{priest_user}/decision",
        json={"decision": "approved"},
        headers=admin,
    )
    assert decision.status_code == 200
    assert decision.json()["warnings"] == []
    provider_id = decision.json()["provider_profile_id"]

    updated = client.post(
        "/providers/me/update",
        json={"description": "Vedic ceremonies in Sanskrit and Tamil", "specialties": ["Vivah", "Havan"]},
        headers=priest,
    )
    assert updated.status_code == 200
    assert updated.json()["specialties"] == ["Vivah", "Havan"]
    assert client.get("/providers/me", headers=priest).json()["id"] == provider_id

    created = client.post(
        "/bookings",
        json={
            "provider_id": provider_id,
            "scheduled_at": (datetime.now(timezone.utc) + timedelta(days=5)).isoformat(),
            "purpose": "Vivah",
            "address": "21 Marigold Avenue",
            "price": 2100,
            "notes": "Bring samagri",
        },
        headers=devotee,
    )
    assert created.status_code == 200
    booking_id = created.json()["id"]
    assert created.json()["status"] == "pending"

    paid = client.post(
        f"/bookings/{booking_id}/payment",
        json={"outcome": "succeeded", "payment_reference": "pay_golden"},
        headers=devotee,
    )
    assert paid.status_code == 200
    assert paid.json()["status"] == "confirmed"

    assert client.get(f"/tracking/{booking_id}", headers=devotee).json()["phase"] == "preparing"

    journey = client.post(f"/bookings/{booking_id}/journey/start", json={}, headers=priest)
    assert journey.status_code == 200

    report = client.post(
        f"/tracking/{booking_id}/location",
        json={"latitude": 13.08, "longitude": 80.27, "speed": 11.0, "heading": 90.0},
        headers=priest,
    )
    assert report.json()["accepted"] is True

    tracking = client.get(f"/tracking/{booking_id}", headers=devotee).json()
    assert tracking["phase"] == "en_route"
    assert tracking["last_sample"]["heading"] == 90.0

    completed = client.post(f"/bookings/{booking_id}/complete", headers=priest)
    assert completed.status_code == 200
    assert completed.json()["journey_started"] is False

    late = client.post(
        f"/tracking/{booking_id}/location",
        json={"latitude": 13.09, "longitude": 80.28},
        headers=priest,
    )
    assert late.json()["accepted"] is False
    assert client.get(f"/tracking/{booking_id}", headers=devotee).json()["phase"] == "arrived"

    my_bookings = client.get("/bookings", params={"role": "requester"}, headers=devotee).json()
    assert [row["status"] for row in my_bookings] == ["completed"]
    assert booking_id in [row["id"] for row in client.get("/admin/bookings", headers=admin).json()]

    devotee_inbox = client.get("/notifications", headers=devotee).json()
    assert devotee_inbox[0]["category"] == "booking"
    assert devotee_inbox[0]["deep_link"] == f"booking:{booking_id}"
    priest_inbox = client.get("/notifications", headers=priest).json()
    assert priest_inbox[0]["category"] == "application"

    marked = client.post(f"/notifications/{devotee_inbox[0]['id']}/read", headers=devotee)
    assert marked.status_code == 200
    assert client.get("/notifications", params={"unread_only": True}, headers=devotee).json() == []
