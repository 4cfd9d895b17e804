"""
Tests for clinic_outreach.services.waitlist_scoring.

Covers:
  - score_entry   (component bonuses, priority multiplier, waiting bonus cap)
  - time_of_day   (bucket boundaries)
  - rank_key      (score ordering and deterministic tiebreak)
  - AvailableSlot (snapshot stored on offers)
  - clinic time zone (wall-clock buckets, naive request times)

Scoring is pure, so entries are plain namespaces; no database needed.
"""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from uuid import UUID, uuid4

import pytest

# Tuesday
SLOT_START = datetime(2026, 10, 20, 9, 0)
NOW = datetime(2026, 10, 18, 12, 0)


def _slot(**overrides):
    from clinic_outreach.services.waitlist_scoring import AvailableSlot

    fields = {
        "provider_id": uuid4(),
        "location_id": uuid4(),
        "appointment_type_id": uuid4(),
        "scheduled_start": SLOT_START,
        "scheduled_end": SLOT_START + timedelta(minutes=30),
    }
    fields.update(overrides)
    return AvailableSlot(**fields)


def _entry(**overrides):
    fields = {
        "id": uuid4(),
        "provider_id": None,
        "appointment_type_id": None,
        "location_id": None,
        "preferred_times": {"morning": False, "afternoon": False, "evening": False},
        "preferred_days_of_week": ["monday", "wednesday"],
        "priority": "normal",
        "created_at": NOW,
    }
    fields.update(overrides)
    return SimpleNamespace(**fields)


# ===================================================================
# score_entry
# ===================================================================


class TestScoreEntry:
    """Component bonuses and the final formula."""

    def test_urgent_flexible_entry_waiting_ten_days(self):
        from clinic_outreach.services.waitlist_scoring import score_entry

        entry = _entry(priority="urgent", created_at=NOW - timedelta(days=10))
        match = score_entry(entry, _slot(), NOW)

        # (10 + 20 + 15 + 10) * 2.0 + 10 * 0.5
        assert match["score"] == 115.0
        details = match["match_details"]
        assert details["time_of_day"] == "morning"
        assert details["time_of_day_match"] is False
        assert details["day_of_week"] == "tuesday"
        assert details["day_of_week_match"] is False
        assert details["priority_multiplier"] == 2.0
        assert details["waiting_days"] == 10

    def test_exact_matches_beat_flexible(self):
        from clinic_outreach.services.waitlist_scoring import score_entry

        slot = _slot()
        exact = _entry(
            provider_id=slot.provider_id,
            appointment_type_id=slot.appointment_type_id,
            location_id=slot.location_id,
        )
        match = score_entry(exact, slot, NOW)
        # 10 + 40 + 25 + 15
        assert match["score"] == 90.0
        assert match["match_details"]["provider_match"] is True
        assert match["match_details"]["location_match"] is True

    def test_location_mismatch_is_penalised(self):
        from clinic_outreach.services.waitlist_scoring import score_entry

        match = score_entry(_entry(location_id=uuid4()), _slot(), NOW)
        # 10 + 20 + 15 - 5
        assert match["score"] == 40.0
        assert match["match_details"]["location_match"] is False

    def test_preferred_time_and_day_bonuses(self):
        from clinic_outreach.services.waitlist_scoring import score_entry

        entry = _entry(
            preferred_times={"morning": True, "afternoon": False, "evening": False},
            preferred_days_of_week=["tuesday"],
        )
        match = score_entry(entry, _slot(), NOW)
        # 55 + 10 + 5
        assert match["score"] == 70.0
        assert match["match_details"]["time_of_day_match"] is True
        assert match["match_details"]["day_of_week_match"] is True

    def test_no_weekday_preference_counts_as_match(self):
        from clinic_outreach.services.waitlist_scoring import score_entry

        match = score_entry(_entry(preferred_days_of_week=[]), _slot(), NOW)
        assert match["score"] == 60.0
        assert match["match_details"]["day_of_week_match"] is True

    def test_priority_multiplies_whole_score(self):
        from clinic_outreach.services.waitlist_scoring import score_entry

        slot = _slot()
        high = score_entry(_entry(priority="high"), slot, NOW)
        low = score_entry(_entry(priority="low"), slot, NOW)
        assert high["score"] == 82.5
        assert low["score"] == 41.25

    def test_urgent_flexible_outranks_low_exact(self):
        from clinic_outreach.services.waitlist_scoring import score_entry

        slot = _slot()
        urgent = score_entry(_entry(priority="urgent"), slot, NOW)
        low_exact = score_entry(
            _entry(
                priority="low",
                provider_id=slot.provider_id,
                appointment_type_id=slot.appointment_type_id,
                location_id=slot.location_id,
                preferred_times={"morning": True},
                preferred_days_of_week=["tuesday"],
            ),
            slot,
            NOW,
        )
        assert urgent["score"] > low_exact["score"]

    def test_waiting_bonus_is_capped(self):
        from clinic_outreach.services.waitlist_scoring import score_entry

        match = score_entry(_entry(created_at=NOW - timedelta(days=200)), _slot(), NOW)
        assert match["score"] == 65.0

    def test_entry_created_in_future_gets_no_waiting_bonus(self):
        from clinic_outreach.services.waitlist_scoring import score_entry

        match = score_entry(_entry(created_at=NOW + timedelta(hours=3)), _slot(), NOW)
        assert match["score"] == 55.0


class TestTimeOfDay:
    """Slot start hour -> preference bucket."""

    @pytest.mark.parametrize(
        "hour,minute,bucket",
        [
            (6, 0, "morning"),
            (11, 59, "morning"),
            (12, 0, "afternoon"),
            (16, 59, "afternoon"),
            (17, 0, "evening"),
            (5, 59, "evening"),
        ],
    )
    def test_bucket_boundaries(self, hour, minute, bucket):
        from clinic_outreach.services.waitlist_scoring import time_of_day

        assert time_of_day(datetime(2026, 10, 20, hour, minute)) == bucket


# ===================================================================
# Ranking
# ===================================================================


class TestRankKey:
    """Highest score first, then longest waiting, then entry id."""

    def test_equal_scores_prefer_older_entry(self):
        from clinic_outreach.services.waitlist_scoring import rank_key

        older = _entry(created_at=NOW - timedelta(days=3))
        newer = _entry(created_at=NOW - timedelta(days=1))
        pairs = [
            (rank_key({"score": 60.0}, newer), "newer"),
            (rank_key({"score": 60.0}, older), "older"),
        ]
        assert [label for _, label in sorted(pairs)] == ["older", "newer"]

    def test_same_age_falls_back_to_id(self):
        from clinic_outreach.services.waitlist_scoring import rank_key

        a = _entry(id=UUID("00000000-0000-0000-0000-000000000001"))
        b = _entry(id=UUID("00000000-0000-0000-0000-000000000002"))
        assert rank_key({"score": 60.0}, a) < rank_key({"score": 60.0}, b)

    def test_higher_score_wins_over_age(self):
        from clinic_outreach.services.waitlist_scoring import rank_key

        old_low = rank_key({"score": 50.0}, _entry(created_at=NOW - timedelta(days=30)))
        new_high = rank_key({"score": 51.0}, _entry(created_at=NOW))
        assert new_high < old_low


class TestAvailableSlotSnapshot:
    """Offers store the slot as JSON and rebuild it on acceptance."""

    def test_snapshot_is_json_safe_and_rebuilds(self):
        from clinic_outreach.services.waitlist_scoring import AvailableSlot

        slot = _slot(location_id=None, provider_name="Dr. Patel")
        data = slot.snapshot()

        assert data["location_id"] is None
        assert data["scheduled_start"] == "2026-10-20T09:00:00"
        assert isinstance(data["provider_id"], str)
        assert AvailableSlot.from_snapshot(data) == slot


class TestClinicTimeZone:
    """Buckets and weekdays follow CLINIC_TIMEZONE, not UTC."""

    @pytest.fixture()
    def _los_angeles(self, monkeypatch):
        monkeypatch.setenv("CLINIC_TIMEZONE", "America/Los_Angeles")
        from clinic_outreach.config import clear_settings_cache
        clear_settings_cache()
        yield
        clear_settings_cache()

    def test_aware_utc_start_converted(self, _los_angeles):
        from clinic_outreach.services.waitlist_scoring import time_of_day, weekday_name

        # Wednesday 01:30 UTC is Tuesday 18:30 in Los Angeles (PDT)
        start = datetime(2026, 10, 21, 1, 30, tzinfo=timezone.utc)
        assert time_of_day(start) == "evening"
        assert weekday_name(start) == "tuesday"

    def test_naive_start_is_clinic_local(self, _los_angeles):
        from clinic_outreach.services.waitlist_scoring import time_of_day, to_clinic_time

        local = to_clinic_time(SLOT_START)
        assert local.hour == 9
        assert local.utcoffset() == timedelta(hours=-7)
        assert time_of_day(SLOT_START) == "morning"

    def test_naive_request_times_stored_as_clinic_local(self, _los_angeles):
        from clinic_outreach.schemas.waitlist import SlotRequest

        request = SlotRequest(
            scheduled_start=SLOT_START,
            scheduled_end=SLOT_START + timedelta(minutes=30),
        )
        slot = request.to_slot()

        assert slot.scheduled_start.astimezone(timezone.utc) == datetime(2026, 10, 20, 16, 0, tzinfo=timezone.utc)
        assert slot.snapshot()["scheduled_start"] == "2026-10-20T09:00:00-07:00"

    def test_unknown_zone_rejected(self, monkeypatch):
        from clinic_outreach.config import clear_settings_cache, get_settings

        monkeypatch.setenv("CLINIC_TIMEZONE", "Mars/Olympus_Mons")
        clear_settings_cache()
        try:
            with pytest.raises(RuntimeError, match="CLINIC_TIMEZONE"):
                get_settings()
        finally:
            clear_settings_cache()
