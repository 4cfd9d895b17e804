"""
Tests for the HTTP layer: tenant/actor headers, domain error -> status
mapping, and request validation.

Service functions are patched where the routers import them; the database
dependency is overridden, so no database is needed.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

TENANT = uuid4()
HEADERS = {"X-Tenant-Id": str(TENANT)}


# ===================================================================
# Fixtures
# ===================================================================


@pytest.fixture()
def client():
    """TestClient with the DB session dependency replaced by a mock.
    Not used as a context manager, so the lifespan (expiry sweep) never starts."""
    from clinic_outreach.database import get_db
    from clinic_outreach.main import app

    async def _fake_db():
        yield AsyncMock()

    app.dependency_overrides[get_db] = _fake_db
    yield TestClient(app)
    app.dependency_overrides.clear()


# ===================================================================
# Tenant and actor headers
# ===================================================================


class TestTenantHeader:

    def test_missing_tenant_rejected(self, client):
        resp = client.get("/api/recall/dashboard")
        assert resp.status_code == 400
        assert "X-Tenant-Id" in resp.json()["detail"]

    def test_malformed_tenant_rejected(self, client):
        resp = client.get("/api/recall/dashboard", headers={"X-Tenant-Id": "clinic-42"})
        assert resp.status_code == 400

    def test_actor_header_passed_to_service(self, client):
        from clinic_outreach.services.audit_service import Actor

        actor_id = uuid4()
        rp_id = uuid4()
        with patch(
            "clinic_outreach.routes.recall.RecallService.dismiss",
            new=AsyncMock(side_effect=_not_found("Recall patient not found")),
        ) as dismiss:
            client.post(
                f"/api/recall/patients/{rp_id}/dismiss",
                json={"reason": "Moved away"},
                headers={**HEADERS, "X-Actor-Id": str(actor_id)},
            )
        assert dismiss.await_args.kwargs["actor"] == Actor(actor_id=actor_id, actor_type="user")

    def test_request_id_echoed(self, client):
        with patch(
            "clinic_outreach.routes.recall.RecallService.get_dashboard",
            new=AsyncMock(return_value={"total_patients": 0}),
        ):
            resp = client.get("/api/recall/dashboard", headers={**HEADERS, "X-Request-ID": "req-123"})
        assert resp.status_code == 200
        assert resp.headers["X-Request-ID"] == "req-123"


def _not_found(message):
    from clinic_outreach.exceptions import NotFoundError

    return NotFoundError(message)


# ===================================================================
# Error mapping
# ===================================================================


class TestErrorMapping:

    def test_not_found_is_404(self, client):
        with patch(
            "clinic_outreach.routes.waitlist.get_waitlist_entry",
            new=AsyncMock(side_effect=_not_found("Waitlist entry not found")),
        ):
            resp = client.get(f"/api/waitlist/{uuid4()}", headers=HEADERS)
        assert resp.status_code == 404
        assert resp.json() == {"detail": "Waitlist entry not found"}

    def test_invalid_state_is_409(self, client):
        from clinic_outreach.exceptions import InvalidStateError

        with patch(
            "clinic_outreach.routes.waitlist.process_waitlist_response",
            new=AsyncMock(side_effect=InvalidStateError("Notification already processed", {"response": "accepted"})),
        ):
            resp = client.post(
                f"/api/waitlist/notifications/{uuid4()}/respond",
                json={"accepted": True},
                headers=HEADERS,
            )
        assert resp.status_code == 409
        assert resp.json() == {"detail": "Notification already processed"}

    def test_duplicate_enrollment_is_409(self, client):
        from clinic_outreach.exceptions import DuplicateEnrollmentError

        with patch(
            "clinic_outreach.routes.recall.RecallService.add_patient_to_recall",
            new=AsyncMock(side_effect=DuplicateEnrollmentError("Patient is already active in this campaign")),
        ):
            resp = client.post(
                "/api/recall/patients",
                json={"campaign_id": str(uuid4()), "patient_id": str(uuid4())},
                headers=HEADERS,
            )
        assert resp.status_code == 409

    def test_invalid_criteria_is_400(self, client):
        from clinic_outreach.exceptions import CriteriaValidationError

        with patch(
            "clinic_outreach.routes.recall.RecallService.update_campaign",
            new=AsyncMock(side_effect=CriteriaValidationError("Invalid target criteria")),
        ):
            resp = client.patch(
                f"/api/recall/campaigns/{uuid4()}",
                json={"name": "Renamed"},
                headers=HEADERS,
            )
        assert resp.status_code == 400
        assert resp.json() == {"detail": "Invalid target criteria"}


# ===================================================================
# Request validation
# ===================================================================


class TestRequestValidation:

    def test_unknown_status_filter(self, client):
        resp = client.get("/api/waitlist/?status=waiting", headers=HEADERS)
        assert resp.status_code == 400

    def test_unknown_recall_status_filter(self, client):
        resp = client.get("/api/recall/patients?status=lost", headers=HEADERS)
        assert resp.status_code == 400

    def test_unknown_criteria_key_rejected_by_schema(self, client):
        resp = client.post(
            "/api/recall/campaigns",
            json={
                "name": "Sneaky",
                "recall_type": "custom",
                "target_criteria": {"customQuery": "SELECT 1"},
            },
            headers=HEADERS,
        )
        assert resp.status_code == 422

    def test_respond_requires_explicit_answer(self, client):
        resp = client.post(
            f"/api/recall/patients/{uuid4()}/respond",
            json={"response": "maybe"},
            headers=HEADERS,
        )
        assert resp.status_code == 422

    def test_expire_notifications_scoped_to_tenant(self, client):
        with patch(
            "clinic_outreach.routes.waitlist.expire_old_notifications",
            new=AsyncMock(return_value=3),
        ) as expire:
            resp = client.post("/api/waitlist/expire-notifications", headers=HEADERS)
        assert resp.status_code == 200
        assert resp.json() == {"expired": 3}
        assert expire.await_args.args[1] == TENANT


# ===================================================================
# Scheduler integration hooks
# ===================================================================


class TestIntegrationHooks:

    def test_appointment_completed(self, client):
        appointment_id = uuid4()
        with patch(
            "clinic_outreach.routes.integration.RecallService.complete_for_appointment",
            new=AsyncMock(return_value=2),
        ):
            resp = client.post(
                "/api/integration/appointment-completed",
                json={"appointment_id": str(appointment_id)},
                headers=HEADERS,
            )
        assert resp.status_code == 200
        assert resp.json() == {"appointment_id": str(appointment_id), "recalls_completed": 2}

    def test_appointment_cancelled_triggers_auto_fill(self, client):
        appointment_id = uuid4()
        summary = {
            "appointment_id": str(appointment_id),
            "matches_found": 0,
            "notifications_sent": 0,
            "notifications": [],
            "errors": [],
        }
        with patch(
            "clinic_outreach.routes.integration.auto_fill_cancelled_slot",
            new=AsyncMock(return_value=summary),
        ) as auto_fill:
            resp = client.post(
                "/api/integration/appointment-cancelled",
                json={"appointment_id": str(appointment_id)},
                headers=HEADERS,
            )
        assert resp.status_code == 200
        assert resp.json()["matches_found"] == 0
        assert auto_fill.await_args.args[2] == appointment_id

    def test_sms_reply_routed_to_waitlist(self, client):
        with patch(
            "clinic_outreach.routes.integration.process_sms_reply",
            new=AsyncMock(return_value={"matched": True, "action": "accepted", "outcome": "accepted"}),
        ) as reply:
            resp = client.post(
                "/api/integration/sms-reply",
                json={"from_number": "+15551234567", "body": "YES"},
                headers=HEADERS,
            )
        assert resp.status_code == 200
        assert resp.json()["action"] == "accepted"
        assert reply.await_args.args[1:] == (TENANT, "+15551234567", "YES")

    def test_sms_reply_requires_sender(self, client):
        resp = client.post("/api/integration/sms-reply", json={"from_number": "", "body": "YES"}, headers=HEADERS)
        assert resp.status_code == 422


class TestNotifyRoute:

    def test_actor_and_clinic_local_slot_passed(self, client, monkeypatch):
        from clinic_outreach.config import clear_settings_cache
        from clinic_outreach.services.audit_service import Actor

        monkeypatch.setenv("CLINIC_TIMEZONE", "America/Chicago")
        clear_settings_cache()
        actor_id = uuid4()
        try:
            with patch(
                "clinic_outreach.routes.waitlist.notify_waitlist_patient",
                new=AsyncMock(side_effect=_not_found("Waitlist entry not found")),
            ) as notify:
                resp = client.post(
                    f"/api/waitlist/{uuid4()}/notify",
                    json={"slot": {"scheduled_start": "2026-10-20T09:00:00", "scheduled_end": "2026-10-20T09:30:00"}},
                    headers={**HEADERS, "X-Actor-Id": str(actor_id)},
                )
        finally:
            clear_settings_cache()

        assert resp.status_code == 404
        assert notify.await_args.kwargs["actor"] == Actor(actor_id=actor_id, actor_type="user")
        slot = notify.await_args.args[3]
        assert slot.scheduled_start.utcoffset() == timedelta(hours=-5)
