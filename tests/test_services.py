"""
Tests des services métier de check-in et de planification.

Services câblés sur `FakeBackend` et un dépôt de brouillons en mémoire (voir conftest).
"""

from __future__ import annotations

from datetime import date
from unittest.mock import Mock

import pytest

from flightops.domain import draft as drafting
from flightops.domain.entities import Chargeable, DraftStatus, Occurrence
from flightops.domain.errors import (
    BookingConflictError,
    BookingValidationError,
    CheckinStateError,
    CheckinValidationError,
)
from flightops.infra.backend_client import BackendHTTPError, BackendNetworkError
from tests.fakes import AIRCRAFT_RATE, INSTRUCTOR_RATE

BOOKING_ID = "b-1"
FIELDS = {
    "aircraft_id": "ac-1",
    "instructor_id": "inst-1",
    "flight_type_id": "ft-1",
    "instruction_type": "dual",
    "hobbs_start": 100.0,
    "hobbs_end": 102.0,
    "tach_start": 80.0,
    "tach_end": 81.6,
}


def _open_and_calculate(service):
    service.open_checkin(BOOKING_ID, dict(FIELDS))
    return service.calculate(BOOKING_ID)


def test_open_checkin_loads_rates_and_tax(checkin_service, fake_backend) -> None:
    fake_backend.tax_rate = 0.125
    state = checkin_service.open_checkin(BOOKING_ID, dict(FIELDS))
    assert state.inputs.booking_id == BOOKING_ID
    assert state.inputs.aircraft_charge_rate == AIRCRAFT_RATE
    assert state.inputs.instructor_charge_rate == INSTRUCTOR_RATE
    assert state.inputs.tax_rate == 0.125
    assert checkin_service.get_state(BOOKING_ID) == state


def test_explicit_tax_rate_wins(checkin_service) -> None:
    state = checkin_service.open_checkin(BOOKING_ID, {**FIELDS, "tax_rate": 0.0})
    assert state.inputs.tax_rate == 0.0


def test_tax_lookup_failure_falls_back_to_default(checkin_service, fake_backend) -> None:
    fake_backend.get_default_tax_rate = Mock(side_effect=BackendNetworkError("timeout"))
    state = checkin_service.open_checkin(BOOKING_ID, dict(FIELDS))
    assert state.inputs.tax_rate == 0.15


def test_school_tax_outside_unit_range_falls_back_to_default(
    checkin_service, fake_backend
) -> None:
    fake_backend.tax_rate = 15
    state = checkin_service.open_checkin(BOOKING_ID, dict(FIELDS))
    assert state.inputs.tax_rate == 0.15


def test_missing_rate_is_rejected_on_calculate(checkin_service, fake_backend) -> None:
    fake_backend.aircraft_rates = {}
    checkin_service.open_checkin(BOOKING_ID, dict(FIELDS))
    with pytest.raises(CheckinValidationError, match="Aircraft charge rate is not configured"):
        checkin_service.calculate(BOOKING_ID)
    assert checkin_service.get_state(BOOKING_ID).draft is None


def test_unknown_draft_raises_key_error(checkin_service) -> None:
    with pytest.raises(KeyError):
        checkin_service.get_state("missing")


def test_calculate_persists_draft(checkin_service) -> None:
    state = _open_and_calculate(checkin_service)
    assert state.draft.totals.total_amount == 460.0
    assert checkin_service.get_state(BOOKING_ID).draft == state.draft


def test_rate_refetched_only_when_resource_changes(checkin_service, fake_backend) -> None:
    checkin_service.open_checkin(BOOKING_ID, dict(FIELDS))
    lookups = len(fake_backend.rate_lookups)

    checkin_service.update_inputs(BOOKING_ID, {"hobbs_end": 102.5})
    assert len(fake_backend.rate_lookups) == lookups

    fake_backend.aircraft_rates["ac-2"] = AIRCRAFT_RATE.model_copy(
        update={"id": "rate-ac-2", "rate_per_hour": "150"}
    )
    state = checkin_service.update_inputs(BOOKING_ID, {"aircraft_id": "ac-2"})
    assert fake_backend.rate_lookups[-1] == ("ac-2", "ft-1")
    assert state.inputs.aircraft_charge_rate.id == "rate-ac-2"


def test_input_change_marks_draft_stale(checkin_service) -> None:
    _open_and_calculate(checkin_service)
    state = checkin_service.update_inputs(BOOKING_ID, {"hobbs_end": 102.5})
    assert drafting.draft_status(state) == DraftStatus.STALE
    state = checkin_service.update_inputs(BOOKING_ID, {"hobbs_end": 102.0})
    assert drafting.draft_status(state) == DraftStatus.CALCULATED


def test_label_change_does_not_refetch_or_stale(checkin_service, fake_backend) -> None:
    _open_and_calculate(checkin_service)
    lookups = len(fake_backend.rate_lookups)
    state = checkin_service.update_inputs(BOOKING_ID, {"aircraft_label": "ZK-XYZ"})
    assert len(fake_backend.rate_lookups) == lookups
    assert drafting.draft_status(state) == DraftStatus.CALCULATED


def test_line_edit_through_service(checkin_service) -> None:
    _open_and_calculate(checkin_service)
    item_id = drafting.invoice_lines(checkin_service.get_state(BOOKING_ID))[1].id
    checkin_service.begin_line_edit(BOOKING_ID, item_id)
    state = checkin_service.save_line_edit(BOOKING_ID, 1.0, 92.0)
    assert state.editing is None
    edited = next(line for line in drafting.invoice_lines(state) if line.id == item_id)
    assert edited.unit_price == 80.0
    assert edited.line_total == 92.0


def test_approve_commits_draft(checkin_service, fake_backend) -> None:
    _open_and_calculate(checkin_service)
    state = checkin_service.approve(BOOKING_ID)
    assert state.invoice_id == "inv-1"
    assert drafting.draft_status(state) == DraftStatus.COMMITTED
    booking_id, payload = fake_backend.approvals[0]
    assert booking_id == BOOKING_ID
    assert payload["billing_basis"] == "hobbs"
    assert payload["billing_hours"] == 2.0
    assert payload["due_date"] == "2025-03-17T09:00:00+00:00"
    assert len(payload["items"]) == 2


def test_committed_draft_is_read_only(checkin_service) -> None:
    _open_and_calculate(checkin_service)
    checkin_service.approve(BOOKING_ID)
    with pytest.raises(CheckinStateError, match="already approved"):
        checkin_service.update_inputs(BOOKING_ID, {"hobbs_end": 103.0})
    # Réouvrir un check-in approuvé renvoie l'état figé.
    reopened = checkin_service.open_checkin(BOOKING_ID, dict(FIELDS))
    assert reopened.invoice_id == "inv-1"


def test_approve_failure_leaves_draft_unchanged(checkin_service, fake_backend) -> None:
    before = _open_and_calculate(checkin_service)
    fake_backend.approve_error = BackendHTTPError(409, "Check-in already approved")
    with pytest.raises(BackendHTTPError):
        checkin_service.approve(BOOKING_ID)
    assert checkin_service.get_state(BOOKING_ID) == before
    assert fake_backend.approvals == []


def test_suggested_rate_uses_draft_tax(checkin_service) -> None:
    checkin_service.open_checkin(BOOKING_ID, dict(FIELDS))
    fee = Chargeable(id="ch-1", name="Landing", rate=20.0)
    assert checkin_service.suggested_rate(BOOKING_ID, "other", fee) == 23.0


def test_discard(checkin_service) -> None:
    checkin_service.open_checkin(BOOKING_ID, dict(FIELDS))
    assert checkin_service.discard(BOOKING_ID) is True
    assert checkin_service.discard(BOOKING_ID) is False


def test_correct_submits_payload_and_deltas(checkin_service, fake_backend) -> None:
    fake_backend.booking = {
        "hobbs_start": 100.0,
        "hobbs_end": 102.0,
        "tach_start": 80.0,
        "tach_end": 81.6,
    }
    result = checkin_service.correct(BOOKING_ID, 102.3, None, "  Misread hobbs meter ")
    assert result["hobbs_delta"] == 2.3
    assert result["tach_delta"] is None
    booking_id, payload = fake_backend.corrections[0]
    assert booking_id == BOOKING_ID
    assert payload["correction_reason"] == "Misread hobbs meter"
    assert payload["hobbs_end"] == 102.3


def test_correct_rejects_short_reason(checkin_service, fake_backend) -> None:
    fake_backend.booking = {"hobbs_start": 100.0, "hobbs_end": 102.0}
    with pytest.raises(CheckinValidationError, match="at least 10 characters"):
        checkin_service.correct(BOOKING_ID, 102.3, None, "typo")
    assert fake_backend.corrections == []


def test_invoice_view(checkin_service, fake_backend) -> None:
    fake_backend.invoice = {"id": "inv-1", "invoice_number": "INV-0001"}
    fake_backend.invoice_items = [
        {"amount": 200.0, "tax_amount": 30.0, "line_total": 230.0},
        {"amount": 60.0, "tax_amount": 9.0, "line_total": 69.0},
    ]
    fake_backend.tenant = {
        "tenant": {"name": "Aero Club", "contact_email": "ops@aero.test"},
        "tenant_settings": {"settings": {"invoicing": {"payment_terms_days": 14}}},
    }
    view = checkin_service.invoice_view("inv-1")
    assert view["invoice"]["invoice_number"] == "INV-0001"
    assert view["totals"] == {"subtotal": 260.0, "tax_total": 39.0, "total_amount": 299.0}
    assert view["settings"]["school_name"] == "Aero Club"
    assert view["settings"]["contact_email"] == "ops@aero.test"
    assert view["settings"]["payment_terms"] == "Payment terms: Net 14 days."


def test_single_occurrence(booking_service) -> None:
    occurrence = booking_service.single_occurrence(date(2025, 3, 10), "09:00", "10:30")
    assert occurrence == Occurrence(
        date="2025-03-10",
        start_iso="2025-03-09T20:00:00.000Z",
        end_iso="2025-03-09T21:30:00.000Z",
    )
    with pytest.raises(BookingValidationError, match="End time must be after start time"):
        booking_service.single_occurrence(date(2025, 3, 10), "10:00", "09:00")
    with pytest.raises(BookingValidationError, match="Invalid HH:mm time"):
        booking_service.single_occurrence(date(2025, 3, 10), "25:00", "26:00")


def test_occurrences_validation(booking_service) -> None:
    with pytest.raises(BookingValidationError, match="Select at least one day"):
        booking_service.occurrences(date(2025, 3, 10), [], "09:00", "10:00", date(2025, 3, 31))
    occurrences = booking_service.occurrences(
        date(2025, 3, 10), [1], "09:00", "10:00", date(2025, 3, 31)
    )
    assert [occ.date for occ in occurrences] == [
        "2025-03-10",
        "2025-03-17",
        "2025-03-24",
        "2025-03-31",
    ]


def test_create_refuses_conflicts(booking_service, fake_backend) -> None:
    occurrence = booking_service.single_occurrence(date(2025, 3, 10), "09:00", "10:00")
    fake_backend.unavailable = {occurrence.start_iso: {"aircraft": ["ac-1"]}}
    with pytest.raises(BookingConflictError):
        booking_service.create([occurrence], {"aircraft_id": "ac-1"})
    assert fake_backend.created == []


def test_create_batch_reports_partial_failure(booking_service, fake_backend) -> None:
    occurrences = booking_service.occurrences(
        date(2025, 3, 10), [1], "09:00", "10:00", date(2025, 3, 24)
    )
    fake_backend.fail_create_at = 2
    result = booking_service.create(
        occurrences, {"aircraft_id": "ac-1", "user_id": "u-1", "status": "confirmed"}
    )
    assert result.complete is False
    assert len(result.succeeded) == 2
    assert result.failed.occurrence == occurrences[2]
    assert fake_backend.created[0]["start_time"] == occurrences[0].start_iso
    assert fake_backend.created[0]["user_id"] == "u-1"


def test_create_requires_occurrences(booking_service) -> None:
    with pytest.raises(BookingValidationError):
        booking_service.create([], {})


ROSTER = [
    {"instructor_id": "inst-1", "day_of_week": 1, "start_time": "08:00", "end_time": "09:30"}
]


def test_end_time_suggestion_is_capped_by_roster(booking_service, fake_backend) -> None:
    fake_backend.roster_rules = ROSTER
    monday = date(2025, 3, 10)
    assert booking_service.suggest_end_time(monday, "08:30", 120) == "10:30"
    assert booking_service.suggest_end_time(monday, "08:30", 120, "inst-1") == "09:30"
    with pytest.raises(BookingValidationError, match="only available until 09:30"):
        booking_service.local_time_range(monday, "08:30", "10:00", "inst-1")


def test_unreadable_roster_does_not_block_booking(booking_service, fake_backend) -> None:
    fake_backend.roster_rules = ROSTER
    fake_backend.roster_error = BackendNetworkError("timeout")
    monday = date(2025, 3, 10)
    assert booking_service.roster_windows("2025-03-10") == {}
    assert booking_service.suggest_end_time(monday, "08:30", 120, "inst-1") == "10:30"
    assert booking_service.local_time_range(monday, "8:30", "10:00", "inst-1") == (
        "08:30",
        "10:00",
    )
