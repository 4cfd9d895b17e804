"""
Tests for clinic_outreach.services.waitlist_service.

Covers:
  - add_to_waitlist / remove_from_waitlist  (validation, terminal entries, open offers)
  - match_waitlist_to_slot                  (ranking order, match limit)
  - notify_waitlist_patient                 (state guard, offer fields, delivery failure, audit)
  - offer rate limit                        (hourly, daily, cooldown)
  - eligible_entries_query                  (candidate predicate, compiled)
  - process_sms_reply                       (YES/NO routing to the latest pending offer)
  - process_waitlist_response               (accept, decline, expired, slot filled, double answer)
  - auto_fill_cancelled_slot                (cancelled-only, per-offer isolation, clinic time zone)
  - expire_old_notifications                (sweep writes nothing when idle)
  - get_waitlist_stats                      (empty tenant)

All tests run against a mocked AsyncSession; no database or SMS provider.
"""

import re
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest
from sqlalchemy.dialects import postgresql

TENANT = uuid4()
NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
SLOT_START = datetime(2026, 10, 20, 9, 0)


# ===================================================================
# Fixtures
# ===================================================================


def _assign_id(obj):
    if getattr(obj, "id", None) is None:
        obj.id = uuid4()


@pytest.fixture()
def mock_db():
    """Mock AsyncSession.  ``add`` assigns ids the way a flush would."""
    db = AsyncMock()
    db.execute = AsyncMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    db.flush = AsyncMock()
    db.refresh = AsyncMock()
    db.add = MagicMock(side_effect=_assign_id)
    db.begin_nested = MagicMock()
    return db


@pytest.fixture()
def _new_york(monkeypatch):
    """Clinic on America/New_York; clears the settings cache so it takes effect."""
    monkeypatch.setenv("CLINIC_TIMEZONE", "America/New_York")
    from clinic_outreach.config import clear_settings_cache
    clear_settings_cache()
    yield
    clear_settings_cache()


def _make_row(**kwargs):
    """Helper: MagicMock standing in for a SQLAlchemy Row."""
    row = MagicMock()
    for key, value in kwargs.items():
        setattr(row, key, value)
    return row


def _result(first=None, scalar=None, scalars=None, all_rows=None, one=None):
    result = MagicMock()
    result.first.return_value = first
    result.scalar_one_or_none.return_value = scalar
    result.scalars.return_value.all.return_value = scalars or []
    result.all.return_value = all_rows or []
    result.one.return_value = one
    return result


def _slot(**overrides):
    from clinic_outreach.services.waitlist_scoring import AvailableSlot

    fields = {
        "provider_id": uuid4(),
        "location_id": uuid4(),
        "appointment_type_id": None,
        "scheduled_start": SLOT_START,
        "scheduled_end": SLOT_START + timedelta(minutes=30),
        "provider_name": "Dr. Patel",
    }
    fields.update(overrides)
    return AvailableSlot(**fields)


def _entry(**overrides):
    fields = {
        "id": uuid4(),
        "patient_id": uuid4(),
        "provider_id": None,
        "appointment_type_id": None,
        "location_id": None,
        "preferred_times": {"morning": True, "afternoon": True, "evening": False},
        "preferred_days_of_week": [],
        "priority": "normal",
        "status": "active",
        "notes": None,
        "notified_at": None,
        "scheduled_at": None,
        "scheduled_appointment_id": None,
        "created_at": NOW - timedelta(days=1),
    }
    fields.update(overrides)
    return SimpleNamespace(**fields)


def _notification(entry, **overrides):
    fields = {
        "id": uuid4(),
        "waitlist_entry_id": entry.id,
        "slot_offered": _slot().snapshot(),
        "offered_at": NOW - timedelta(hours=2),
        "expires_at": NOW + timedelta(hours=22),
        "response": "pending",
        "responded_at": None,
        "response_notes": None,
        "notification_channel": "sms",
        "notification_sent": True,
        "notification_error": None,
    }
    fields.update(overrides)
    return SimpleNamespace(**fields)


def _added(mock_db, cls):
    return [c.args[0] for c in mock_db.add.call_args_list if isinstance(c.args[0], cls)]


# ===================================================================
# Add / remove
# ===================================================================


class TestAddToWaitlist:

    @pytest.mark.asyncio
    async def test_invalid_priority_rejected_without_query(self, mock_db):
        from clinic_outreach.exceptions import InvalidInputError
        from clinic_outreach.services.waitlist_service import add_to_waitlist

        with pytest.raises(InvalidInputError):
            await add_to_waitlist(mock_db, TENANT, uuid4(), priority="asap")
        mock_db.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_patient(self, mock_db):
        from clinic_outreach.exceptions import NotFoundError
        from clinic_outreach.services.waitlist_service import add_to_waitlist

        mock_db.execute = AsyncMock(return_value=_result(scalar=None))
        with pytest.raises(NotFoundError, match="Patient not found"):
            await add_to_waitlist(mock_db, TENANT, uuid4())
        mock_db.rollback.assert_awaited_once()
        mock_db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_creates_active_entry_with_defaults(self, mock_db):
        from clinic_outreach.models.waitlist import WaitlistEntry
        from clinic_outreach.services.waitlist_service import add_to_waitlist

        patient_id = uuid4()
        mock_db.execute = AsyncMock(return_value=_result(scalar=patient_id))

        entry = await add_to_waitlist(mock_db, TENANT, patient_id, priority="high", reason="Rash flare")

        assert isinstance(entry, WaitlistEntry)
        assert entry.status == "active"
        assert entry.priority == "high"
        assert entry.preferred_times == {"morning": True, "afternoon": True, "evening": False}
        assert entry.preferred_days_of_week == ["monday", "tuesday", "wednesday", "thursday", "friday"]
        mock_db.commit.assert_awaited_once()


class TestRemoveFromWaitlist:

    @pytest.mark.asyncio
    async def test_terminal_entry_rejected(self, mock_db):
        from clinic_outreach.exceptions import InvalidStateError
        from clinic_outreach.services.waitlist_service import remove_from_waitlist

        entry = _entry(status="scheduled")
        mock_db.execute = AsyncMock(return_value=_result(scalar=entry))

        with pytest.raises(InvalidStateError, match="already scheduled"):
            await remove_from_waitlist(mock_db, TENANT, entry.id)
        assert entry.status == "scheduled"
        mock_db.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_notified_entry_cancelled_and_offers_closed(self, mock_db):
        from clinic_outreach.services.waitlist_service import remove_from_waitlist

        entry = _entry(status="notified", notes="Prefers Dr. Patel")
        mock_db.execute = AsyncMock(side_effect=[_result(scalar=entry), _result()])

        result = await remove_from_waitlist(mock_db, TENANT, entry.id, reason="Booked elsewhere", now=NOW)

        assert result.status == "cancelled"
        assert result.notes == "Prefers Dr. Patel\nRemoved: Booked elsewhere"
        # entry lock + pending-offer close
        assert mock_db.execute.await_count == 2
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_missing_entry(self, mock_db):
        from clinic_outreach.exceptions import NotFoundError
        from clinic_outreach.services.waitlist_service import remove_from_waitlist

        mock_db.execute = AsyncMock(return_value=_result(scalar=None))
        with pytest.raises(NotFoundError):
            await remove_from_waitlist(mock_db, TENANT, uuid4())


# ===================================================================
# Matching
# ===================================================================


class TestMatchWaitlistToSlot:

    @pytest.mark.asyncio
    async def test_urgent_first_then_longest_waiting(self, mock_db):
        from clinic_outreach.services.waitlist_service import match_waitlist_to_slot

        same_time = NOW - timedelta(days=2)
        normal_old = _entry(created_at=same_time - timedelta(hours=1))
        normal_new = _entry(created_at=same_time)
        urgent_new = _entry(priority="urgent", created_at=NOW)
        rows = [
            (normal_new, "Ana", "Diaz", "+15551230001", None),
            (urgent_new, "Ben", "Cole", "+15551230002", None),
            (normal_old, "Cara", "Moss", None, "cara@example.com"),
        ]
        mock_db.execute = AsyncMock(return_value=_result(all_rows=rows))

        matches = await match_waitlist_to_slot(mock_db, TENANT, _slot(), max_matches=10, now=NOW)

        assert [m["entry_id"] for m in matches] == [
            str(urgent_new.id), str(normal_old.id), str(normal_new.id),
        ]
        assert matches[0]["patient_name"] == "Ben Cole"
        assert matches[2]["patient_email"] is None

    @pytest.mark.asyncio
    async def test_limit_applies_after_ranking(self, mock_db):
        from clinic_outreach.services.waitlist_service import match_waitlist_to_slot

        low = _entry(priority="low")
        high = _entry(priority="high")
        rows = [(low, "A", "B", None, None), (high, "C", "D", None, None)]
        mock_db.execute = AsyncMock(return_value=_result(all_rows=rows))

        matches = await match_waitlist_to_slot(mock_db, TENANT, _slot(), max_matches=1, now=NOW)

        assert len(matches) == 1
        assert matches[0]["entry_id"] == str(high.id)


class TestEligibleEntriesQuery:
    """The candidate query compiled against the PostgreSQL dialect."""

    def _compile(self, slot):
        from clinic_outreach.services.waitlist_service import eligible_entries_query

        compiled = eligible_entries_query(TENANT, slot, NOW).compile(dialect=postgresql.dialect())
        return str(compiled), compiled.params

    def _bound(self, pattern, sql, params):
        found = re.search(pattern, sql)
        assert found, f"{pattern!r} not in query"
        return params[found.group(1)]

    def test_only_active_entries_of_tenant(self):
        sql, params = self._compile(_slot())

        assert self._bound(r"waitlist_entries\.status = %\((\w+)\)s", sql, params) == "active"
        assert self._bound(r"waitlist_entries\.tenant_id = %\((\w+)\)s", sql, params) == TENANT

    def test_provider_and_type_unconstrained_or_equal(self):
        slot = _slot(appointment_type_id=uuid4())
        sql, params = self._compile(slot)

        provider = self._bound(
            r"waitlist_entries\.provider_id IS NULL OR waitlist_entries\.provider_id = %\((\w+)\)s", sql, params,
        )
        appointment_type = self._bound(
            r"waitlist_entries\.appointment_type_id IS NULL "
            r"OR waitlist_entries\.appointment_type_id = %\((\w+)\)s",
            sql, params,
        )
        assert provider == slot.provider_id
        assert appointment_type == slot.appointment_type_id

    def test_entries_holding_an_open_offer_excluded(self):
        sql, params = self._compile(_slot())

        assert "NOT (EXISTS (SELECT waitlist_notifications.id" in sql
        assert "waitlist_notifications.waitlist_entry_id = waitlist_entries.id" in sql
        assert self._bound(r"waitlist_notifications\.response = %\((\w+)\)s", sql, params) == "pending"
        assert self._bound(r"waitlist_notifications\.expires_at > %\((\w+)\)s", sql, params) == NOW

    def test_oldest_entries_first(self):
        sql, _ = self._compile(_slot())

        assert sql.endswith("ORDER BY waitlist_entries.created_at ASC, waitlist_entries.id ASC")


# ===================================================================
# Offers
# ===================================================================


class TestNotifyWaitlistPatient:

    @pytest.mark.asyncio
    async def test_entry_not_active(self, mock_db):
        from clinic_outreach.exceptions import InvalidStateError
        from clinic_outreach.services.waitlist_service import notify_waitlist_patient

        entry = _entry(status="notified")
        mock_db.execute = AsyncMock(return_value=_result(first=(entry, "+15551234567", None)))

        with pytest.raises(InvalidStateError, match="Waitlist entry is not active"):
            await notify_waitlist_patient(mock_db, TENANT, entry.id, _slot(), now=NOW)
        mock_db.commit.assert_not_awaited()
        mock_db.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_offer_recorded_sent_and_audited(self, mock_db):
        from clinic_outreach.models.audit_log import AuditLog
        from clinic_outreach.services.audit_service import Actor
        from clinic_outreach.services.waitlist_service import notify_waitlist_patient

        entry = _entry()
        staff = Actor(actor_id=uuid4(), actor_type="user")
        mock_db.execute = AsyncMock(side_effect=[
            _result(first=(entry, "+15551234567", None)),
            _result(one=(0, 1, NOW - timedelta(hours=5))),  # earlier offer, outside limits
        ])
        receipt = {"external_id": "SM123", "status": "sent", "error": None}

        with patch(
            "clinic_outreach.services.messaging.send_message", new=AsyncMock(return_value=receipt)
        ) as send:
            notification = await notify_waitlist_patient(
                mock_db, TENANT, entry.id, _slot(), expiration_hours=24, actor=staff, now=NOW,
            )

        assert notification.response == "pending"
        assert notification.expires_at == NOW + timedelta(hours=24)
        assert notification.notification_sent is True
        assert notification.external_message_id == "SM123"
        assert entry.status == "notified"
        assert entry.notified_at == NOW
        channel, to, body = send.await_args.args
        assert (channel, to) == ("sms", "+15551234567")
        assert "Dr. Patel" in body
        assert "within 24 hours" in body
        # offer commit + delivery commit
        assert mock_db.commit.await_count == 2

        (audit,) = _added(mock_db, AuditLog)
        assert audit.action == "waitlist_offer_sent"
        assert audit.actor_id == staff.actor_id
        assert audit.actor_type == "user"
        assert audit.resource_id == entry.id
        assert audit.details["notification_id"] == str(notification.id)

    @pytest.mark.asyncio
    async def test_delivery_failure_keeps_offer(self, mock_db):
        from clinic_outreach.services.waitlist_service import notify_waitlist_patient

        entry = _entry()
        mock_db.execute = AsyncMock(side_effect=[
            _result(first=(entry, None, None)),
            _result(one=(0, 0, None)),
        ])
        receipt = {"external_id": None, "status": "failed", "error": "Patient has no phone number on file"}

        with patch("clinic_outreach.services.messaging.send_message", new=AsyncMock(return_value=receipt)):
            notification = await notify_waitlist_patient(mock_db, TENANT, entry.id, _slot(), now=NOW)

        assert notification.notification_sent is False
        assert notification.notification_error == "Patient has no phone number on file"
        assert notification.response == "pending"
        assert entry.status == "notified"

    @pytest.mark.asyncio
    async def test_non_positive_expiration(self, mock_db):
        from clinic_outreach.exceptions import InvalidInputError
        from clinic_outreach.services.waitlist_service import notify_waitlist_patient

        with pytest.raises(InvalidInputError):
            await notify_waitlist_patient(mock_db, TENANT, uuid4(), _slot(), expiration_hours=0)


class TestOfferRateLimit:
    """Per-patient limits: 1 offer per hour, 3 per day, 60 minute cooldown by default."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("counts, reason", [
        ((1, 1, NOW - timedelta(minutes=30)), "Hourly offer limit reached (1/1)"),
        ((0, 3, NOW - timedelta(hours=3)), "Daily offer limit reached (3/3)"),
    ])
    async def test_limit_refuses_offer(self, mock_db, counts, reason):
        from clinic_outreach.exceptions import InvalidStateError
        from clinic_outreach.models.waitlist import WaitlistNotification
        from clinic_outreach.services.waitlist_service import notify_waitlist_patient

        entry = _entry()
        mock_db.execute = AsyncMock(side_effect=[
            _result(first=(entry, "+15551234567", None)),
            _result(one=counts),
        ])

        with patch("clinic_outreach.services.messaging.send_message", new=AsyncMock()) as send:
            with pytest.raises(InvalidStateError, match="rate limit") as exc_info:
                await notify_waitlist_patient(mock_db, TENANT, entry.id, _slot(), now=NOW)

        assert exc_info.value.context["reason"] == reason
        assert _added(mock_db, WaitlistNotification) == []
        assert entry.status == "active"
        send.assert_not_awaited()
        mock_db.commit.assert_not_awaited()
        mock_db.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cooldown_since_last_offer(self, mock_db, monkeypatch):
        from clinic_outreach.config import clear_settings_cache
        from clinic_outreach.exceptions import InvalidStateError
        from clinic_outreach.services.waitlist_service import notify_waitlist_patient

        monkeypatch.setenv("WAITLIST_MAX_OFFERS_PER_HOUR", "0")
        monkeypatch.setenv("WAITLIST_OFFER_COOLDOWN_MINUTES", "120")
        clear_settings_cache()
        try:
            entry = _entry()
            mock_db.execute = AsyncMock(side_effect=[
                _result(first=(entry, "+15551234567", None)),
                _result(one=(1, 1, NOW - timedelta(minutes=90))),
            ])

            with pytest.raises(InvalidStateError) as exc_info:
                await notify_waitlist_patient(mock_db, TENANT, entry.id, _slot(), now=NOW)
        finally:
            clear_settings_cache()

        assert exc_info.value.context["reason"] == "Offer cooldown active (90/120 minutes)"

    @pytest.mark.asyncio
    async def test_limits_disabled_skip_the_query(self, mock_db, monkeypatch):
        from clinic_outreach.config import clear_settings_cache
        from clinic_outreach.services.waitlist_service import notify_waitlist_patient

        for name in ("WAITLIST_MAX_OFFERS_PER_HOUR", "WAITLIST_MAX_OFFERS_PER_DAY", "WAITLIST_OFFER_COOLDOWN_MINUTES"):
            monkeypatch.setenv(name, "0")
        clear_settings_cache()
        try:
            entry = _entry()
            mock_db.execute = AsyncMock(return_value=_result(first=(entry, "+15551234567", None)))
            receipt = {"external_id": "SM1", "status": "sent", "error": None}

            with patch("clinic_outreach.services.messaging.send_message", new=AsyncMock(return_value=receipt)):
                await notify_waitlist_patient(mock_db, TENANT, entry.id, _slot(), now=NOW)
        finally:
            clear_settings_cache()

        assert mock_db.execute.await_count == 1
        assert entry.status == "notified"


# ===================================================================
# Responses
# ===================================================================


class TestProcessWaitlistResponse:

    @pytest.mark.asyncio
    async def test_accept_books_one_appointment(self, mock_db):
        from clinic_outreach.models.clinical import Appointment
        from clinic_outreach.services.waitlist_service import process_waitlist_response

        entry = _entry(status="notified", notified_at=NOW - timedelta(hours=2))
        notification = _notification(entry)
        mock_db.execute = AsyncMock(side_effect=[
            _result(first=(notification, entry)),
            _result(),  # advisory lock
            _result(scalar=None),  # slot free
        ])

        outcome = await process_waitlist_response(mock_db, TENANT, notification.id, True, now=NOW)

        appointments = _added(mock_db, Appointment)
        assert len(appointments) == 1
        assert appointments[0].patient_id == entry.patient_id
        assert appointments[0].scheduled_start == SLOT_START
        assert outcome["success"] is True
        assert outcome["outcome"] == "accepted"
        assert outcome["appointment_id"] == str(appointments[0].id)
        assert notification.response == "accepted"
        assert notification.responded_at == NOW
        assert entry.status == "scheduled"
        assert entry.scheduled_appointment_id == appointments[0].id

    @pytest.mark.asyncio
    async def test_second_answer_rejected(self, mock_db):
        from clinic_outreach.exceptions import InvalidStateError
        from clinic_outreach.models.clinical import Appointment
        from clinic_outreach.services.waitlist_service import process_waitlist_response

        entry = _entry(status="scheduled")
        notification = _notification(entry, response="accepted")
        mock_db.execute = AsyncMock(return_value=_result(first=(notification, entry)))

        with pytest.raises(InvalidStateError, match="Notification already processed"):
            await process_waitlist_response(mock_db, TENANT, notification.id, True, now=NOW)
        assert _added(mock_db, Appointment) == []
        mock_db.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_expired_offer_returns_entry_to_pool(self, mock_db):
        from clinic_outreach.models.clinical import Appointment
        from clinic_outreach.services.waitlist_service import process_waitlist_response

        entry = _entry(status="notified", notified_at=NOW - timedelta(hours=25))
        notification = _notification(entry, expires_at=NOW - timedelta(minutes=1))
        mock_db.execute = AsyncMock(return_value=_result(first=(notification, entry)))

        outcome = await process_waitlist_response(mock_db, TENANT, notification.id, True, now=NOW)

        assert outcome["outcome"] == "expired"
        assert outcome["success"] is True
        assert outcome["message"] == "Offer expired"
        assert outcome["appointment_id"] is None
        assert notification.response == "expired"
        assert entry.status == "active"
        assert entry.notified_at is None
        assert _added(mock_db, Appointment) == []
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_decline_keeps_patient_waiting(self, mock_db):
        from clinic_outreach.services.waitlist_service import process_waitlist_response

        entry = _entry(status="notified")
        notification = _notification(entry)
        mock_db.execute = AsyncMock(return_value=_result(first=(notification, entry)))

        outcome = await process_waitlist_response(
            mock_db, TENANT, notification.id, False, notes="Cannot make Tuesday", now=NOW,
        )

        assert outcome["outcome"] == "declined"
        assert notification.response == "declined"
        assert notification.response_notes == "Cannot make Tuesday"
        assert entry.status == "active"

    @pytest.mark.asyncio
    async def test_slot_already_filled(self, mock_db):
        from clinic_outreach.models.clinical import Appointment
        from clinic_outreach.services.waitlist_service import process_waitlist_response

        entry = _entry(status="notified")
        notification = _notification(entry)
        mock_db.execute = AsyncMock(side_effect=[
            _result(first=(notification, entry)),
            _result(),
            _result(scalar=uuid4()),
        ])

        outcome = await process_waitlist_response(mock_db, TENANT, notification.id, True, now=NOW)

        assert outcome["success"] is False
        assert outcome["outcome"] == "slot_filled"
        assert notification.response == "expired"
        assert entry.status == "active"
        assert _added(mock_db, Appointment) == []

    @pytest.mark.asyncio
    async def test_unknown_notification(self, mock_db):
        from clinic_outreach.exceptions import NotFoundError
        from clinic_outreach.services.waitlist_service import process_waitlist_response

        mock_db.execute = AsyncMock(return_value=_result(first=None))
        with pytest.raises(NotFoundError):
            await process_waitlist_response(mock_db, TENANT, uuid4(), True, now=NOW)


class TestProcessSmsReply:

    @pytest.mark.asyncio
    async def test_unrecognised_text_ignored_without_query(self, mock_db):
        from clinic_outreach.services.waitlist_service import process_sms_reply

        result = await process_sms_reply(mock_db, TENANT, "+15551234567", "what time is it?")

        assert result == {"matched": False, "action": None}
        mock_db.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_pending_offer_for_number(self, mock_db):
        from clinic_outreach.services.waitlist_service import process_sms_reply

        mock_db.execute = AsyncMock(return_value=_result(first=None))

        with patch(
            "clinic_outreach.services.waitlist_service.process_waitlist_response", new=AsyncMock(),
        ) as respond:
            result = await process_sms_reply(mock_db, TENANT, "+15559999999", "YES")

        assert result["matched"] is False
        respond.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_yes_accepts_latest_pending_offer(self, mock_db):
        from clinic_outreach.services.audit_service import Actor
        from clinic_outreach.services.waitlist_service import process_sms_reply

        notification_id, patient_id = uuid4(), uuid4()
        mock_db.execute = AsyncMock(return_value=_result(first=(notification_id, patient_id)))
        outcome = {"success": True, "outcome": "accepted", "appointment_id": str(uuid4())}

        with patch(
            "clinic_outreach.services.waitlist_service.process_waitlist_response",
            new=AsyncMock(return_value=outcome),
        ) as respond:
            result = await process_sms_reply(mock_db, TENANT, " +15551234567 ", " yes\n", now=NOW)

        args, kwargs = respond.await_args
        assert args == (mock_db, TENANT, notification_id, True)
        assert kwargs["actor"] == Actor(actor_id=patient_id, actor_type="patient")
        assert kwargs["notes"] == "SMS reply: YES"
        assert result["matched"] is True
        assert result["action"] == "accepted"
        assert result["outcome"] == "accepted"

        stmt = mock_db.execute.await_args.args[0]
        compiled = stmt.compile(dialect=postgresql.dialect())
        assert "+15551234567" in compiled.params.values()
        assert "ORDER BY waitlist_notifications.offered_at DESC" in str(compiled)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", ["NO", "n", "Decline"])
    async def test_no_declines(self, mock_db, body):
        from clinic_outreach.services.waitlist_service import process_sms_reply

        mock_db.execute = AsyncMock(return_value=_result(first=(uuid4(), uuid4())))

        with patch(
            "clinic_outreach.services.waitlist_service.process_waitlist_response",
            new=AsyncMock(return_value={"success": True, "outcome": "declined"}),
        ) as respond:
            result = await process_sms_reply(mock_db, TENANT, "+15551234567", body)

        assert respond.await_args.args[3] is False
        assert result["action"] == "declined"


# ===================================================================
# Auto-fill
# ===================================================================


class TestAutoFillCancelledSlot:

    @pytest.mark.asyncio
    async def test_appointment_must_be_cancelled(self, mock_db):
        from clinic_outreach.exceptions import InvalidStateError
        from clinic_outreach.services.waitlist_service import auto_fill_cancelled_slot

        appointment = SimpleNamespace(id=uuid4(), status="scheduled")
        mock_db.execute = AsyncMock(return_value=_result(scalar=appointment))

        with pytest.raises(InvalidStateError, match="not cancelled"):
            await auto_fill_cancelled_slot(mock_db, TENANT, appointment.id, now=NOW)

    @pytest.mark.asyncio
    async def test_one_failed_offer_does_not_stop_others(self, mock_db):
        from clinic_outreach.exceptions import InvalidStateError
        from clinic_outreach.services.waitlist_service import auto_fill_cancelled_slot

        appointment = SimpleNamespace(
            id=uuid4(),
            status="cancelled",
            provider_id=uuid4(),
            location_id=None,
            appointment_type_id=None,
            scheduled_start=SLOT_START,
            scheduled_end=SLOT_START + timedelta(minutes=30),
        )
        mock_db.execute = AsyncMock(return_value=_result(scalar=appointment))

        entries = [_entry(), _entry(), _entry()]
        matches = [{"entry_id": str(e.id), "score": 60.0 - i} for i, e in enumerate(entries)]
        sent = _notification(entries[0])

        with patch(
            "clinic_outreach.services.waitlist_service.match_waitlist_to_slot",
            new=AsyncMock(return_value=matches),
        ), patch(
            "clinic_outreach.services.waitlist_service.notify_waitlist_patient",
            new=AsyncMock(side_effect=[sent, InvalidStateError("Waitlist entry is not active")]),
        ) as notify:
            result = await auto_fill_cancelled_slot(mock_db, TENANT, appointment.id, max_notifications=2, now=NOW)

        assert notify.await_count == 2
        assert notify.await_args_list[0].kwargs["channel"] == "auto"
        assert result["matches_found"] == 3
        assert result["notifications_sent"] == 1
        assert result["notifications"][0]["score"] == 60.0
        assert len(result["errors"]) == 1
        assert "not active" in result["errors"][0]

    @pytest.mark.asyncio
    async def test_slot_read_on_clinic_wall_clock(self, mock_db, _new_york):
        from clinic_outreach.services.waitlist_scoring import score_entry
        from clinic_outreach.services.waitlist_service import _offer_message, auto_fill_cancelled_slot

        # 13:00 UTC is 9:00 AM in New York (EDT)
        start = datetime(2026, 10, 20, 13, 0, tzinfo=timezone.utc)
        appointment = SimpleNamespace(
            id=uuid4(),
            status="cancelled",
            provider_id=uuid4(),
            location_id=None,
            appointment_type_id=None,
            scheduled_start=start,
            scheduled_end=start + timedelta(minutes=30),
        )
        mock_db.execute = AsyncMock(return_value=_result(scalar=appointment))

        with patch(
            "clinic_outreach.services.waitlist_service.match_waitlist_to_slot",
            new=AsyncMock(return_value=[]),
        ) as match:
            await auto_fill_cancelled_slot(mock_db, TENANT, appointment.id, now=NOW)

        slot = match.await_args.args[2]
        assert slot.scheduled_start == start
        morning_only = _entry(preferred_times={"morning": True, "afternoon": False, "evening": False})
        details = score_entry(morning_only, slot, NOW)["match_details"]
        assert details["time_of_day"] == "morning"
        assert details["time_of_day_match"] is True
        assert details["day_of_week"] == "tuesday"
        assert "on Tuesday, October 20 at 9:00 AM." in _offer_message(slot, 24)


# ===================================================================
# Expiry sweep and stats
# ===================================================================


class TestExpireOldNotifications:

    @pytest.mark.asyncio
    async def test_nothing_to_expire_writes_nothing(self, mock_db):
        from clinic_outreach.services.waitlist_service import expire_old_notifications

        mock_db.execute = AsyncMock(return_value=_result(scalars=[]))

        assert await expire_old_notifications(mock_db, now=NOW) == 0
        assert mock_db.execute.await_count == 1
        mock_db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_expired_offers_release_entries(self, mock_db):
        from clinic_outreach.services.waitlist_service import expire_old_notifications

        entry_ids = [uuid4(), uuid4()]
        mock_db.execute = AsyncMock(side_effect=[_result(scalars=entry_ids), _result()])

        assert await expire_old_notifications(mock_db, tenant_id=TENANT, now=NOW) == 2
        assert mock_db.execute.await_count == 2
        mock_db.commit.assert_awaited_once()


class TestWaitlistStats:

    @pytest.mark.asyncio
    async def test_empty_tenant(self, mock_db):
        from clinic_outreach.lifecycle import WaitlistStatus
        from clinic_outreach.services.waitlist_service import get_waitlist_stats

        row = _make_row(
            total=0,
            urgent_count=0,
            high_count=0,
            avg_created_epoch=None,
            filled_this_week=0,
            filled_this_month=0,
            **{s.value: 0 for s in WaitlistStatus},
        )
        mock_db.execute = AsyncMock(return_value=_result(one=row))

        stats = await get_waitlist_stats(mock_db, TENANT, now=NOW)

        assert stats["total"] == 0
        assert stats["conversion_rate"] == 0.0
        assert stats["average_wait_days"] == 0.0
        assert stats["active"] == 0

    @pytest.mark.asyncio
    async def test_conversion_and_average_wait(self, mock_db):
        from clinic_outreach.lifecycle import WaitlistStatus
        from clinic_outreach.services.waitlist_service import get_waitlist_stats

        counts = {s.value: 0 for s in WaitlistStatus}
        counts.update(active=3, scheduled=1)
        row = _make_row(
            total=4,
            urgent_count=1,
            high_count=0,
            avg_created_epoch=(NOW - timedelta(days=3)).timestamp(),
            filled_this_week=1,
            filled_this_month=1,
            **counts,
        )
        mock_db.execute = AsyncMock(return_value=_result(one=row))

        stats = await get_waitlist_stats(mock_db, TENANT, now=NOW)

        assert stats["conversion_rate"] == 25.0
        assert stats["average_wait_days"] == 3.0
        assert stats["urgent_count"] == 1
