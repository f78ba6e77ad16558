"""
Tests de la machine à états du brouillon de facture (calcul, obsolescence, édition, approbation).
"""

from __future__ import annotations

import math
from datetime import UTC, datetime

import pytest

from flightops.domain import draft as drafting
from flightops.domain.billing import GENERATED_AIRCRAFT_ITEM_ID, GENERATED_INSTRUCTOR_ITEM_ID
from flightops.domain.entities import (
    BookingMeters,
    Chargeable,
    ChargeRate,
    CheckinInputs,
    DraftStatus,
)
from flightops.domain.errors import (
    CheckinStateError,
    CheckinValidationError,
    DraftStaleError,
    LineItemNotFoundError,
)

NOW = datetime(2025, 3, 10, 9, 0, tzinfo=UTC)


def _inputs(**overrides) -> CheckinInputs:
    values = {
        "booking_id": "b-1",
        "aircraft_id": "ac-1",
        "instructor_id": "inst-1",
        "flight_type_id": "ft-1",
        "instruction_type": "dual",
        "hobbs_start": 100.0,
        "hobbs_end": 102.0,
        "tach_start": 80.0,
        "tach_end": 81.6,
        "aircraft_charge_rate": ChargeRate(id="rate-ac", rate_per_hour="120", charge_hobbs=True),
        "instructor_charge_rate": ChargeRate(id="rate-inst", rate_per_hour=80),
        "tax_rate": 0.15,
        "aircraft_label": "ZK-ABC",
    }
    values.update(overrides)
    return CheckinInputs(**values)


def _calculated(**overrides):
    return drafting.calculate_draft(drafting.new_state(_inputs(**overrides)), NOW)


def test_new_state_is_empty() -> None:
    state = drafting.new_state(_inputs())
    assert drafting.draft_status(state) == DraftStatus.EMPTY
    assert drafting.invoice_lines(state) == []
    assert drafting.is_stale(state) is False


def test_calculate_dual_flight() -> None:
    state = _calculated()
    draft = state.draft
    assert drafting.draft_status(state) == DraftStatus.CALCULATED
    assert draft.billing_basis.value == "hobbs"
    assert draft.billing_hours == 2.0
    assert (draft.dual_time, draft.solo_time) == (2.0, 0.0)
    assert [item.id for item in draft.items] == [
        GENERATED_AIRCRAFT_ITEM_ID,
        GENERATED_INSTRUCTOR_ITEM_ID,
    ]
    assert draft.lines[0].line_total == 276.0
    assert draft.totals.subtotal == 400.0
    assert draft.totals.tax_total == 60.0
    assert draft.totals.total_amount == 460.0
    assert draft.calculated_at == NOW.isoformat()


def test_calculate_handoff_bills_total_and_dual_instructor_time() -> None:
    state = _calculated(
        hobbs_start=50.0, hobbs_end=51.5, solo_end_hobbs=53.0, has_solo_at_end=True
    )
    aircraft, instructor = state.draft.items
    assert state.draft.billing_hours == 3.0
    assert aircraft.quantity == 3.0
    assert instructor.quantity == 1.5
    assert state.draft.solo_time == 1.5


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        (
            {"has_solo_at_end": True, "solo_end_hobbs": 101.0},
            "Solo end cannot be less than dual end.",
        ),
        ({"aircraft_id": None}, "Aircraft is required"),
        ({"flight_type_id": None}, "Flight type is required"),
        ({"aircraft_charge_rate": None}, "Aircraft charge rate is not configured"),
        (
            {"aircraft_charge_rate": ChargeRate(id="r", rate_per_hour=100)},
            "Aircraft charge rate is not configured",
        ),
        (
            {"aircraft_charge_rate": ChargeRate(id="r", rate_per_hour=1, charge_airswitch=True)},
            "Airswitch billing is not supported in this check-in UI",
        ),
        ({"hobbs_end": 100.0}, "Billing hours must be greater than zero"),
        (
            {"aircraft_charge_rate": ChargeRate(id="r", rate_per_hour=0, charge_hobbs=True)},
            "No generated invoice items to calculate",
        ),
    ],
)
def test_calculate_rejections(overrides, message) -> None:
    state = drafting.new_state(_inputs(**overrides))
    with pytest.raises(CheckinValidationError) as exc:
        drafting.calculate_draft(state, NOW)
    assert exc.value.message == message


def test_solo_flight_never_has_handoff() -> None:
    inputs = _inputs(instruction_type="solo", has_solo_at_end=True, solo_end_hobbs=105.0)
    assert inputs.has_solo_at_end is False
    assert inputs.solo_end_hobbs is None
    state = drafting.calculate_draft(drafting.new_state(inputs), NOW)
    assert [item.id for item in state.draft.items] == [GENERATED_AIRCRAFT_ITEM_ID]
    assert state.draft.solo_time == 2.0


def test_signature_ignores_labels_and_inactive_solo_ends() -> None:
    base = drafting.compute_signature(_inputs())
    assert drafting.compute_signature(_inputs(aircraft_label="Other")) == base
    assert drafting.compute_signature(_inputs(solo_end_hobbs=101.0)) == base
    assert drafting.compute_signature(_inputs(has_solo_at_end=True, solo_end_hobbs=103.0)) != base
    numeric_rate = ChargeRate(id="rate-ac", rate_per_hour=120, charge_hobbs=True)
    assert drafting.compute_signature(_inputs(aircraft_charge_rate=numeric_rate)) == base


def test_staleness_and_revert() -> None:
    state = _calculated()
    changed = drafting.update_inputs(state, hobbs_end=102.5)
    assert drafting.is_stale(changed) is True
    assert drafting.draft_status(changed) == DraftStatus.STALE
    reverted = drafting.update_inputs(changed, hobbs_end=102.0)
    assert drafting.is_stale(reverted) is False
    assert drafting.draft_status(reverted) == DraftStatus.CALCULATED


def test_tax_rate_change_makes_draft_stale() -> None:
    state = drafting.update_inputs(_calculated(), tax_rate=0.1)
    assert drafting.is_stale(state) is True


@pytest.mark.parametrize("reading", [math.nan, math.inf, -math.inf])
def test_non_finite_reading_marks_draft_stale_without_raising(reading) -> None:
    state = drafting.update_inputs(_calculated(), hobbs_end=reading)
    assert drafting.draft_status(state) == DraftStatus.STALE
    assert drafting.compute_signature(state.inputs) == drafting.compute_signature(
        _inputs(hobbs_end=None)
    )
    assert drafting.derive_billing(state.inputs).billing_hours == 0.0
    with pytest.raises(CheckinValidationError):
        drafting.calculate_draft(state, NOW)


@pytest.mark.parametrize(
    ("tax_rate", "message"),
    [
        (15, "Invalid tax_rate: Input should be less than or equal to 1"),
        (-0.1, "Invalid tax_rate: Input should be greater than or equal to 0"),
        (None, "Invalid tax_rate: Input should be a valid number"),
    ],
)
def test_invalid_tax_rate_is_a_validation_error(tax_rate, message) -> None:
    state = _calculated()
    with pytest.raises(CheckinValidationError) as excinfo:
        drafting.update_inputs(state, tax_rate=tax_rate)
    assert excinfo.value.message == message


def test_failed_calculation_leaves_state_unchanged() -> None:
    state = _calculated()
    broken = drafting.update_inputs(state, hobbs_end=99.0)
    with pytest.raises(CheckinValidationError):
        drafting.calculate_draft(broken, NOW)
    assert broken.draft == state.draft


def test_failed_recalculation_keeps_edits_and_reports_stale() -> None:
    state = drafting.begin_line_edit(_calculated(), GENERATED_AIRCRAFT_ITEM_ID)
    state = drafting.save_line_edit(state, 2.5, 138.0)
    state = drafting.remove_line(state, GENERATED_INSTRUCTOR_ITEM_ID)
    broken = drafting.update_inputs(state, hobbs_end=99.0)
    with pytest.raises(CheckinValidationError):
        drafting.calculate_draft(broken, NOW)
    assert GENERATED_AIRCRAFT_ITEM_ID in broken.overrides
    assert broken.removed_ids == frozenset({GENERATED_INSTRUCTOR_ITEM_ID})
    assert drafting.draft_status(broken) == DraftStatus.STALE


def test_override_pruned_when_values_return_to_base() -> None:
    state = drafting.begin_line_edit(_calculated(), GENERATED_AIRCRAFT_ITEM_ID)
    assert state.editing.quantity == 2.0
    assert state.editing.rate_inclusive == 138.0

    state = drafting.save_line_edit(state, 2.5, 138.0)
    assert state.overrides[GENERATED_AIRCRAFT_ITEM_ID].quantity == 2.5
    assert state.overrides[GENERATED_AIRCRAFT_ITEM_ID].unit_price == 120.0
    assert state.editing is None
    assert drafting.invoice_lines(state)[0].line_total == 345.0

    state = drafting.begin_line_edit(state, GENERATED_AIRCRAFT_ITEM_ID)
    state = drafting.save_line_edit(state, 2.0, 138.0)
    assert GENERATED_AIRCRAFT_ITEM_ID not in state.overrides
    assert state.overrides == {}


def test_single_line_edit_at_a_time() -> None:
    state = drafting.begin_line_edit(_calculated(), GENERATED_AIRCRAFT_ITEM_ID)
    with pytest.raises(CheckinStateError):
        drafting.begin_line_edit(state, GENERATED_INSTRUCTOR_ITEM_ID)
    state = drafting.cancel_line_edit(state)
    assert drafting.begin_line_edit(state, GENERATED_INSTRUCTOR_ITEM_ID).editing is not None


def test_save_line_edit_validation() -> None:
    state = drafting.begin_line_edit(_calculated(), GENERATED_AIRCRAFT_ITEM_ID)
    with pytest.raises(CheckinValidationError, match="Quantity must be greater than zero"):
        drafting.save_line_edit(state, 0, 138.0)
    with pytest.raises(CheckinValidationError, match="Rate cannot be negative"):
        drafting.save_line_edit(state, 1, -1.0)
    with pytest.raises(CheckinStateError):
        drafting.save_line_edit(_calculated(), 1, 1.0)


def test_recalculation_resets_overrides_and_removals() -> None:
    state = drafting.begin_line_edit(_calculated(), GENERATED_AIRCRAFT_ITEM_ID)
    state = drafting.save_line_edit(state, 3.0, 138.0)
    state = drafting.remove_line(state, GENERATED_INSTRUCTOR_ITEM_ID)
    state = drafting.calculate_draft(state, NOW)
    assert state.overrides == {}
    assert state.removed_ids == frozenset()


def test_remove_generated_line_clears_override() -> None:
    state = drafting.begin_line_edit(_calculated(), GENERATED_AIRCRAFT_ITEM_ID)
    state = drafting.save_line_edit(state, 3.0, 138.0)
    state = drafting.remove_line(state, GENERATED_AIRCRAFT_ITEM_ID)
    assert GENERATED_AIRCRAFT_ITEM_ID in state.removed_ids
    assert state.overrides == {}
    assert [line.id for line in drafting.invoice_lines(state)] == [GENERATED_INSTRUCTOR_ITEM_ID]
    with pytest.raises(LineItemNotFoundError):
        drafting.begin_line_edit(state, GENERATED_AIRCRAFT_ITEM_ID)


def test_remove_line_closes_its_editor_and_rejects_unknown() -> None:
    state = drafting.begin_line_edit(_calculated(), GENERATED_AIRCRAFT_ITEM_ID)
    state = drafting.remove_line(state, GENERATED_AIRCRAFT_ITEM_ID)
    assert state.editing is None
    with pytest.raises(LineItemNotFoundError, match="Line item not found"):
        drafting.remove_line(state, "missing")


def test_manual_items() -> None:
    landing = Chargeable(id="ch-1", name="Landing NZAA", rate=20.0)
    state = drafting.add_manual_item(
        _calculated(), "landing_fee", landing, 2, 23.0, item_id="manual-1"
    )
    item = state.manual_items[0]
    assert item.unit_price == 20.0
    assert item.tax_rate == 0.15
    assert item.manual_group == "landing_fee"
    assert drafting.invoice_totals(state).total_amount == 506.0
    assert [group.id for group in drafting.invoice_line_groups(state)] == [
        "generated",
        "manual-landing_fee",
    ]

    state = drafting.begin_line_edit(state, "manual-1")
    state = drafting.save_line_edit(state, 1, 34.5)
    assert state.manual_items[0].unit_price == 30.0
    assert state.manual_items[0].quantity == 1.0
    assert state.overrides == {}

    state = drafting.remove_line(state, "manual-1")
    assert state.manual_items == ()


def test_manual_item_validation_and_untaxed() -> None:
    state = _calculated()
    with pytest.raises(CheckinValidationError, match="Select a landing fee item"):
        drafting.add_manual_item(state, "landing_fee", None, 1, 10.0)
    fee = Chargeable(id="ch-2", name="Airways", rate=12.0, is_taxable=False)
    with pytest.raises(CheckinValidationError, match="Quantity must be greater than zero"):
        drafting.add_manual_item(state, "airways_fee", fee, 0, 12.0)
    state = drafting.add_manual_item(state, "airways_fee", fee, 1, 12.0)
    item = state.manual_items[0]
    assert item.id.startswith("manual-")
    assert item.tax_rate == 0.0
    assert item.unit_price == 12.0


def test_approval_preconditions() -> None:
    with pytest.raises(CheckinValidationError, match="Calculate flight charges before approval"):
        drafting.ensure_approvable(drafting.new_state(_inputs()))

    editing = drafting.begin_line_edit(_calculated(), GENERATED_AIRCRAFT_ITEM_ID)
    with pytest.raises(CheckinStateError):
        drafting.ensure_approvable(editing)

    stale = drafting.update_inputs(_calculated(), hobbs_end=103.0)
    with pytest.raises(DraftStaleError, match="Recalculate before approving"):
        drafting.ensure_approvable(stale)

    empty = drafting.remove_line(_calculated(), GENERATED_AIRCRAFT_ITEM_ID)
    empty = drafting.remove_line(empty, GENERATED_INSTRUCTOR_ITEM_ID)
    with pytest.raises(CheckinValidationError, match="Add at least one invoice line item"):
        drafting.ensure_approvable(empty)


def test_approval_payload() -> None:
    state = _calculated(
        hobbs_start=50.0, hobbs_end=51.5, solo_end_hobbs=53.0, has_solo_at_end=True
    )
    payload = drafting.build_approval_payload(state, NOW, due_days=7)
    assert payload.checked_out_aircraft_id == "ac-1"
    assert payload.checked_out_instructor_id == "inst-1"
    assert payload.billing_basis.value == "hobbs"
    assert payload.billing_hours == 3.0
    assert payload.dual_time == 1.5
    assert payload.solo_time == 1.5
    assert payload.solo_end_hobbs == 53.0
    assert payload.solo_end_tach is None
    assert payload.due_date == "2025-03-17T09:00:00+00:00"
    assert payload.reference == "Booking b-1 check-in"
    assert [item.description for item in payload.items] == [
        "Aircraft Hire (ZK-ABC)",
        "Instructor Rate (Instructor)",
    ]


def test_committed_draft_is_frozen() -> None:
    state = drafting.mark_committed(_calculated(), "inv-1")
    assert drafting.draft_status(state) == DraftStatus.COMMITTED
    with pytest.raises(CheckinStateError, match="already approved"):
        drafting.calculate_draft(state, NOW)
    with pytest.raises(CheckinStateError):
        drafting.update_inputs(state, hobbs_end=105.0)
    with pytest.raises(CheckinStateError):
        drafting.build_approval_payload(state, NOW)


def test_correction_payload() -> None:
    meters = BookingMeters(hobbs_start=100.0, hobbs_end=102.0, tach_start=80.0, tach_end=81.6)
    with pytest.raises(CheckinValidationError, match="Change at least one end reading"):
        drafting.build_correction_payload(meters, 102.0, 81.6, "Typo on the hobbs end")
    with pytest.raises(CheckinValidationError, match="at least 10 characters"):
        drafting.build_correction_payload(meters, 102.3, None, "  typo    ")
    payload = drafting.build_correction_payload(meters, 102.3, None, "  Misread hobbs meter ")
    assert payload.hobbs_end == 102.3
    assert payload.correction_reason == "Misread hobbs meter"


def test_correction_delta() -> None:
    assert drafting.correction_delta(100.0, 102.3) == 2.3
    assert drafting.correction_delta(100.0, 99.0) is None
    assert drafting.correction_delta(None, 99.0) is None
