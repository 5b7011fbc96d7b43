"""State machine tests.

The state machine is pure: every test builds a record dict and an event
and checks the returned Transition.
"""
from datetime import datetime

import pytest

from funnel.events import InboundEvent, IdentityKeys, KIND_BOOKING, KIND_BOOKING_DELETED
from funnel.state_machine import (
    Attendance, StaffInfo, classify_attendance, determine_state,
    guard_client_state, decide_booking, decide_booking_deleted,
)

NOW = datetime(2024, 5, 10, 12, 0)
PAST = datetime(2024, 5, 8, 11, 0)
EARLIER = datetime(2024, 5, 1, 11, 0)
FUTURE = datetime(2024, 5, 15, 11, 0)
LATER = datetime(2024, 5, 20, 11, 0)

CONSULTATION = [{"title": "Консультація", "cost": 0}]
HAIR_EXTENSION = [{"title": "Нарощування волосся", "cost": 9000}]
OTHER = [{"title": "Корекція", "cost": 1200}, {"title": "Догляд", "cost": 300}]

MASTER = StaffInfo(name="Olena", is_admin=False, master_id=3)
ADMIN = StaffInfo(name="Admin", is_admin=True, master_id=9)


def make_record(**overrides):
    record = {
        "id": 1,
        "state": "message",
        "consultation_booking_at": None,
        "consultation_date": None,
        "consultation_attended": None,
        "consultation_cancelled": False,
        "consultation_master_id": None,
        "consultation_master_name": None,
        "paid_service_at": None,
        "paid_service_attended": None,
        "paid_service_cancelled": False,
        "paid_service_total_cost": None,
        "paid_service_deleted_upstream": False,
        "paid_service_is_repeat": None,
        "master_id": None,
        "master_manually_set": False,
    }
    record.update(overrides)
    return record


def booking(services, at, attendance=0):
    return InboundEvent(
        received_at=NOW,
        kind=KIND_BOOKING,
        identity=IdentityKeys(external_booking_id=100),
        services=services,
        appointment_at=at,
        attendance_code=attendance,
    )


# ============================================================
# Helpers
# ============================================================
class TestClassification:
    """Tests for attendance codes, service routing and the client guard."""

    @pytest.mark.parametrize("code, expected", [
        (1, Attendance.ATTENDED),
        (2, Attendance.ATTENDED),
        ("1", Attendance.ATTENDED),
        (0, Attendance.PENDING),
        (None, Attendance.PENDING),
        (-1, Attendance.NO_SHOW),
    ])
    def test_classify_attendance(self, code, expected):
        assert classify_attendance(code) is expected

    def test_determine_state(self):
        assert determine_state(CONSULTATION) is None
        assert determine_state(CONSULTATION + HAIR_EXTENSION) is None
        assert determine_state(HAIR_EXTENSION) == "hair-extension"
        assert determine_state(OTHER + [{"title": "Hair Extension"}]) == "hair-extension"
        assert determine_state(OTHER) == "other-services"
        assert determine_state([]) is None

    def test_client_guard(self):
        assert guard_client_state("client", "message", []) == "client"
        assert guard_client_state("client", "consultation-booked", ["consultation-booked", "client"]) \
            == "consultation-booked"
        assert guard_client_state("client", "client", ["client"]) == "client"
        assert guard_client_state("lead", "client", ["client"]) == "message"


# ============================================================
# Consultation sub-flow
# ============================================================
class TestConsultation:
    """Tests for the consultation sub-flow."""

    def test_first_booking(self):
        record = make_record(paid_service_at=EARLIER, paid_service_total_cost=5000)
        transition = decide_booking(record, booking(CONSULTATION, FUTURE), ["message"], None, NOW)

        assert transition.new_state == "consultation-booked"
        assert transition.reason == "consultation-booked"
        assert transition.changes["consultation_booking_at"] == FUTURE
        assert transition.changes["paid_service_at"] is None
        assert transition.changes["paid_service_total_cost"] is None

    def test_replay_is_noop(self):
        record = make_record(state="consultation-booked", consultation_booking_at=FUTURE)
        history = ["consultation-booked", "message"]
        transition = decide_booking(record, booking(CONSULTATION, FUTURE), history, None, NOW)
        assert transition.is_empty()

    def test_date_change_updates_stamp_only(self):
        record = make_record(state="consultation-booked", consultation_booking_at=FUTURE)
        transition = decide_booking(
            record, booking(CONSULTATION, LATER), ["consultation-booked"], None, NOW
        )
        assert transition.changes == {"consultation_booking_at": LATER}

    def test_missing_stamp_is_backfilled(self):
        record = make_record(state="hair-extension")
        history = ["hair-extension", "consultation-booked"]
        transition = decide_booking(record, booking(CONSULTATION, PAST), history, None, NOW)
        assert transition.changes == {"consultation_booking_at": PAST}

    def test_attended(self):
        record = make_record(state="consultation-booked", consultation_booking_at=PAST)
        transition = decide_booking(
            record, booking(CONSULTATION, PAST, attendance=1), ["consultation-booked"], MASTER, NOW
        )
        assert transition.new_state is None
        assert transition.changes["consultation_attended"] is True
        assert transition.changes["consultation_date"] == PAST
        assert transition.changes["consultation_master_name"] == "Olena"
        assert transition.changes["consultation_master_id"] == 3
        assert transition.changes["master_id"] == 3

    def test_attended_respects_manual_master(self):
        record = make_record(state="consultation-booked", master_id=5, master_manually_set=True)
        transition = decide_booking(
            record, booking(CONSULTATION, PAST, attendance=2), ["consultation-booked"], MASTER, NOW
        )
        assert transition.changes["consultation_attended"] is True
        assert "master_id" not in transition.changes

    @pytest.mark.parametrize("staff, at, already", [
        (ADMIN, PAST, None),
        (None, PAST, None),
        (MASTER, FUTURE, None),
        (MASTER, PAST, True),
    ])
    def test_attended_is_ignored(self, staff, at, already):
        record = make_record(state="consultation-booked", consultation_booking_at=at,
                             consultation_attended=already)
        transition = decide_booking(
            record, booking(CONSULTATION, at, attendance=1), ["consultation-booked"], staff, NOW
        )
        assert transition.is_empty()

    def test_no_show_in_past(self):
        record = make_record(state="consultation-booked", consultation_booking_at=PAST)
        transition = decide_booking(
            record, booking(CONSULTATION, PAST, attendance=-1), ["consultation-booked"], MASTER, NOW
        )
        assert transition.new_state == "consultation-no-show"
        assert transition.changes["consultation_attended"] is False

    def test_no_show_in_future_is_cancellation(self):
        record = make_record(state="consultation-booked", consultation_booking_at=FUTURE)
        transition = decide_booking(
            record, booking(CONSULTATION, FUTURE, attendance=-1), ["consultation-booked"], None, NOW
        )
        assert transition.changes == {"consultation_cancelled": True}

    def test_reschedule_after_no_show(self):
        record = make_record(state="consultation-no-show", consultation_booking_at=PAST,
                             consultation_attended=False)
        history = ["consultation-no-show", "consultation-booked"]
        transition = decide_booking(record, booking(CONSULTATION, FUTURE), history, None, NOW)

        assert transition.new_state == "consultation-rescheduled"
        assert transition.changes["consultation_booking_at"] == FUTURE
        assert transition.changes["consultation_attended"] is None

    def test_consultation_without_datetime(self):
        transition = decide_booking(make_record(), booking(CONSULTATION, None), [], None, NOW)
        assert transition.is_empty()


# ============================================================
# Paid-service sub-flow
# ============================================================
class TestPaidService:
    """Tests for the paid-service sub-flow."""

    def test_future_booking(self):
        record = make_record(state="consultation-booked")
        transition = decide_booking(record, booking(HAIR_EXTENSION, FUTURE), [], None, NOW)

        assert transition.new_state == "hair-extension"
        assert transition.reason == "paid-service-state"
        assert transition.changes["paid_service_at"] == FUTURE
        assert transition.changes["paid_service_total_cost"] == 9000

    def test_older_past_date_is_not_stamped(self):
        record = make_record(state="other-services", paid_service_at=PAST)
        transition = decide_booking(record, booking(OTHER, EARLIER), [], None, NOW)
        assert transition.is_empty()

    def test_newer_past_date_with_attendance(self):
        record = make_record(state="hair-extension", paid_service_at=EARLIER)
        transition = decide_booking(record, booking(HAIR_EXTENSION, PAST, attendance=1), [], None, NOW)

        assert transition.changes["paid_service_at"] == PAST
        assert transition.changes["paid_service_attended"] is True
        assert transition.changes["paid_service_total_cost"] == 9000
        assert transition.new_state is None
        assert transition.reason == "paid-service-booked"

    def test_other_services_are_not_stamped(self):
        """Only hair extension tracks the paid date, cost and attendance."""
        record = make_record(state="client")
        transition = decide_booking(record, booking(OTHER, PAST, attendance=1), [], None, NOW)

        assert transition.changes == {"state": "other-services"}
        assert transition.reason == "paid-service-state"

    def test_state_change_names_the_reason(self):
        """When the state moves, the history reason is the state change, not the field update."""
        record = make_record(state="message")
        transition = decide_booking(record, booking(HAIR_EXTENSION, PAST, attendance=1), [], None, NOW)

        assert transition.new_state == "hair-extension"
        assert transition.changes["paid_service_attended"] is True
        assert transition.reason == "paid-service-state"

    def test_no_show_on_current_paid_date(self):
        record = make_record(state="hair-extension", paid_service_at=PAST, paid_service_total_cost=9000)
        transition = decide_booking(record, booking(HAIR_EXTENSION, PAST, attendance=-1), [], None, NOW)
        assert transition.changes == {"paid_service_attended": False}

    def test_deleted_upstream_skips_date(self):
        record = make_record(state="message", paid_service_deleted_upstream=True)
        transition = decide_booking(record, booking(HAIR_EXTENSION, FUTURE), [], None, NOW)
        assert "paid_service_at" not in transition.changes
        assert transition.new_state == "hair-extension"

    def test_master_auto_assignment(self):
        transition = decide_booking(make_record(), booking(OTHER, FUTURE), [], MASTER, NOW)
        assert transition.changes["master_id"] == 3

        manual = make_record(master_id=5, master_manually_set=True)
        transition = decide_booking(manual, booking(OTHER, FUTURE), [], MASTER, NOW)
        assert "master_id" not in transition.changes

    def test_replay_is_noop(self):
        record = make_record(state="hair-extension", paid_service_at=FUTURE, paid_service_total_cost=9000)
        transition = decide_booking(record, booking(HAIR_EXTENSION, FUTURE), [], None, NOW)
        assert transition.is_empty()

    def test_no_services(self):
        transition = decide_booking(make_record(), booking([], FUTURE), [], None, NOW)
        assert transition.is_empty()


class TestBookingDeleted:
    """Tests for decide_booking_deleted."""

    @staticmethod
    def deleted(at):
        return InboundEvent(
            received_at=NOW,
            kind=KIND_BOOKING_DELETED,
            identity=IdentityKeys(external_booking_id=100),
            appointment_at=at,
        )

    def test_deleting_current_paid_booking(self):
        record = make_record(
            state="hair-extension", paid_service_at=FUTURE, paid_service_total_cost=9000,
        )
        transition = decide_booking_deleted(record, self.deleted(FUTURE))

        assert transition.changes == {
            "paid_service_deleted_upstream": True,
            "paid_service_at": None,
            "paid_service_total_cost": None,
        }
        assert transition.reason == "paid-service-deleted-upstream"
        assert transition.new_state is None

    def test_other_booking_is_ignored(self):
        record = make_record(state="hair-extension", paid_service_at=FUTURE)
        assert decide_booking_deleted(record, self.deleted(LATER)).is_empty()
        assert decide_booking_deleted(record, self.deleted(None)).is_empty()

    def test_no_paid_booking(self):
        assert decide_booking_deleted(make_record(), self.deleted(FUTURE)).is_empty()
