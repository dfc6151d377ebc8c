"""HTTP surface tests: status codes and error bodies over the in-memory service."""

import pytest
from fastapi.testclient import TestClient

from main import create_app
from tests.conftest import TUESDAY


@pytest.fixture
def client(service):
    with TestClient(create_app(service=service)) as test_client:
        yield test_client


def book(client, **overrides):
    body = {
        "patient_id": "pat-1",
        "doctor_id": "doc-1",
        "date": TUESDAY.isoformat(),
        "time": "10:00",
        "duration_minutes": 30,
        "reason_for_visit": "Persistent headache",
    }
    body.update(overrides)
    return client.post("/api/v1/appointments", json=body)


class TestHealth:
    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestBookingEndpoints:
    def test_book_returns_201(self, client):
        response = book(client)
        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "pending-payment"
        assert data["payment_status"] == "pending"
        assert data["time"] == "10:00"
        assert data["end_time"] == "10:30"
        assert data["version"] == 0

    def test_conflict_returns_409_with_error_body(self, client):
        assert book(client).status_code == 201
        response = book(client, patient_id="pat-2", time="10:15")
        assert response.status_code == 409
        data = response.json()
        assert data["error"] == "SlotUnavailable"
        assert data["retryable"] is True
        assert data["details"] == {"date": TUESDAY.isoformat(), "time": "10:15"}

    def test_book_with_visit_details(self, client):
        response = book(client, appointment_type="follow-up", priority="urgent", symptoms=["fever"])
        assert response.status_code == 201
        data = response.json()
        assert data["appointment_type"] == "follow-up"
        assert data["priority"] == "urgent"
        assert data["symptoms"] == ["fever"]

    def test_unknown_appointment_type_returns_422(self, client):
        response = book(client, appointment_type="surgery")
        assert response.status_code == 422

    def test_missing_field_returns_422(self, client):
        response = client.post("/api/v1/appointments", json={"patient_id": "pat-1", "doctor_id": "doc-1"})
        assert response.status_code == 422
        data = response.json()
        assert data["error"] == "ValidationError"
        assert data["retryable"] is False
        fields = {e["field"] for e in data["details"]["errors"]}
        assert {"date", "time", "reason_for_visit"} <= fields

    def test_business_validation_returns_422(self, client):
        response = book(client, time="10:05")
        assert response.status_code == 422
        assert response.json()["error"] == "ValidationError"

    def test_unknown_doctor_returns_404(self, client):
        response = book(client, doctor_id="nobody")
        assert response.status_code == 404
        assert response.json()["error"] == "DoctorNotFound"

    def test_unknown_appointment_returns_404(self, client):
        response = client.get("/api/v1/appointments/missing")
        assert response.status_code == 404
        assert response.json()["error"] == "AppointmentNotFound"


class TestSlotsEndpoint:
    def test_lists_slots(self, client):
        book(client)
        response = client.get(
            "/api/v1/doctors/doc-1/slots", params={"date": TUESDAY.isoformat(), "duration_minutes": 30}
        )
        assert response.status_code == 200
        data = response.json()
        assert data["duration_minutes"] == 30
        assert len(data["slots"]) == 16
        assert {"time": "10:00", "end_time": "10:30", "available": False} in data["slots"]

    def test_only_available(self, client):
        book(client)
        response = client.get(
            "/api/v1/doctors/doc-1/slots",
            params={"date": TUESDAY.isoformat(), "duration_minutes": 30, "only_available": "true"},
        )
        slots = response.json()["slots"]
        assert len(slots) == 15
        assert all(s["available"] for s in slots)

    def test_bad_date_returns_422(self, client):
        response = client.get("/api/v1/doctors/doc-1/slots", params={"date": "tomorrow"})
        assert response.status_code == 422


class TestLifecycleEndpoints:
    def test_pay_check_in_and_complete(self, client):
        appointment_id = book(client).json()["id"]
        paid = client.post(
            f"/api/v1/appointments/{appointment_id}/confirm-payment",
            json={"method": "card", "actor_id": "pat-1"},
        )
        assert paid.status_code == 200
        assert paid.json()["payment_status"] == "paid"

        again = client.post(f"/api/v1/appointments/{appointment_id}/confirm-payment", json={"actor_id": "pat-1"})
        assert again.status_code == 409
        assert again.json()["error"] == "AlreadyPaid"

        for step, expected in (("check-in", "confirmed"), ("start", "in-progress"), ("complete", "completed")):
            response = client.post(f"/api/v1/appointments/{appointment_id}/{step}", json={"actor_id": "doc-1"})
            assert response.status_code == 200
            assert response.json()["status"] == expected

    def test_check_in_without_payment_returns_402(self, client):
        appointment_id = book(client).json()["id"]
        response = client.post(f"/api/v1/appointments/{appointment_id}/check-in", json={"actor_id": "staff-1"})
        assert response.status_code == 402
        assert response.json()["error"] == "PaymentRequired"

    def test_get_with_actor_lists_actions(self, client):
        appointment_id = book(client).json()["id"]
        response = client.get(f"/api/v1/appointments/{appointment_id}", params={"actor_id": "pat-1"})
        assert response.status_code == 200
        assert response.json()["actions"] == ["confirm-payment", "pay-later", "cancel"]

    def test_get_as_other_patient_is_forbidden(self, client):
        appointment_id = book(client).json()["id"]
        response = client.get(f"/api/v1/appointments/{appointment_id}", params={"actor_id": "pat-2"})
        assert response.status_code == 403

    def test_reschedule_and_cancel(self, client):
        appointment_id = book(client).json()["id"]
        client.post(f"/api/v1/appointments/{appointment_id}/pay-later", json={"actor_id": "pat-1"})
        moved = client.post(
            f"/api/v1/appointments/{appointment_id}/reschedule",
            json={"actor_id": "pat-1", "date": TUESDAY.isoformat(), "time": "11:00"},
        )
        assert moved.status_code == 200
        assert moved.json()["time"] == "11:00"
        assert moved.json()["status"] == "scheduled"

        cancelled = client.post(
            f"/api/v1/appointments/{appointment_id}/cancel",
            json={"actor_id": "pat-1", "reason": "Feeling better"},
        )
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "cancelled"

        listed = client.get("/api/v1/patients/pat-1/appointments", params={"status": "cancelled"})
        assert [a["id"] for a in listed.json()] == [appointment_id]
        by_day = client.get("/api/v1/doctors/doc-1/appointments", params={"date": TUESDAY.isoformat()})
        assert [a["id"] for a in by_day.json()] == [appointment_id]

    def test_cancellation_preview(self, client):
        appointment_id = book(client).json()["id"]
        client.post(f"/api/v1/appointments/{appointment_id}/confirm-payment", json={"actor_id": "pat-1"})
        response = client.get(f"/api/v1/appointments/{appointment_id}/cancellation", params={"actor_id": "pat-1"})
        assert response.status_code == 200
        data = response.json()
        assert data["eligible"] is True
        assert data["refund_amount"] == "50.00"
        assert data["hours_until"] == 28
        assert client.get(f"/api/v1/appointments/{appointment_id}").json()["status"] == "scheduled"

    def test_cancellation_preview_for_doctor_is_forbidden(self, client):
        appointment_id = book(client).json()["id"]
        response = client.get(f"/api/v1/appointments/{appointment_id}/cancellation", params={"actor_id": "doc-1"})
        assert response.status_code == 403
