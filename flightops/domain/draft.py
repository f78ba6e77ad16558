"""
Machine à états du brouillon de facture d'un check-in.

Le brouillon est une valeur immuable (`DraftState`); chaque action (calcul, édition de ligne,
suppression, ajout manuel, approbation) est une fonction pure qui renvoie un nouvel état ou lève
une `CheckinError` portant le message affiché à l'utilisateur. L'état courant n'est jamais modifié
en cas d'erreur.

Cycle de vie: EMPTY -> CALCULATED -> STALE -> (CALCULATED | COMMITTED). L'obsolescence est dérivée:
elle compare la signature stockée à celle des entrées courantes.
"""

from __future__ import annotations

import hashlib
import json
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog
from pydantic import ValidationError

from flightops.domain.billing import (
    build_generated_invoice_items,
    calculate_invoice_line,
    charge_basis_warnings,
    compute_billing_hours,
    compute_split_times,
    compute_totals,
    derive_billing_basis,
    effective_tax_rate,
    group_invoice_lines,
    hourly_rate,
    meter_total_hours,
)
from flightops.domain.entities import (
    MANUAL_GROUP_LABELS,
    ApprovalItem,
    ApprovalPayload,
    BookingMeters,
    CalculatedInvoiceLine,
    Chargeable,
    ChargeBasis,
    ChargeRate,
    CheckinInputs,
    CorrectionPayload,
    DraftCalculation,
    DraftState,
    DraftStatus,
    DraftTotals,
    InvoiceBuilderItem,
    ItemOverride,
    LineEdit,
    LineGroup,
    SplitTimes,
)
from flightops.domain.errors import (
    CheckinStateError,
    CheckinValidationError,
    DraftStaleError,
    LineItemNotFoundError,
)
from flightops.domain.invoice_calculations import (
    exclusive_to_inclusive,
    inclusive_to_exclusive,
    round_to_tenth,
    round_to_two_decimals,
)

log = structlog.get_logger(__name__).bind(component="draft")

ALREADY_APPROVED = "Check-in is already approved"
EDIT_IN_PROGRESS = "Save or cancel the current line item edit first"
QUANTITY_NOT_POSITIVE = "Quantity must be greater than zero"
RATE_NEGATIVE = "Rate cannot be negative"

CHECKIN_REFERENCE = "Booking {booking_id} check-in"
CHECKIN_NOTES = "Auto-generated from booking check-in."


@dataclass(frozen=True)
class BillingSnapshot:
    """Valeurs de facturation dérivées des entrées courantes (non persistées)."""

    basis: ChargeBasis | None
    warnings: list[str]
    split: SplitTimes
    hobbs_hours: float
    tacho_hours: float
    billing_hours: float
    items: list[InvoiceBuilderItem]


def _rate_signature(rate: ChargeRate | None) -> dict[str, Any] | None:
    if rate is None:
        return None
    return {
        "id": rate.id,
        "rate_per_hour": hourly_rate(rate),
        "charge_hobbs": rate.charge_hobbs,
        "charge_tacho": rate.charge_tacho,
        "charge_airswitch": rate.charge_airswitch,
    }


def _finite(value: float | None) -> float | None:
    # Relevé transitoire (NaN, infini): traité comme absent.
    if value is None or not math.isfinite(value):
        return None
    return value


def compute_signature(inputs: CheckinInputs) -> str:
    """Empreinte SHA-256 de toutes les entrées qui influencent le brouillon.

    JSON canonique (clés triées, sans espaces). Les fins solo ne comptent que si le passage
    double -> solo est actif; les libellés d'affichage ne comptent pas. Les valeurs non finies
    sont signées comme absentes.
    """
    handoff = inputs.has_solo_at_end
    tracked = {
        "booking_id": inputs.booking_id,
        "aircraft_id": inputs.aircraft_id,
        "instructor_id": inputs.instructor_id,
        "flight_type_id": inputs.flight_type_id,
        "hobbs_start": _finite(inputs.hobbs_start),
        "hobbs_end": _finite(inputs.hobbs_end),
        "tach_start": _finite(inputs.tach_start),
        "tach_end": _finite(inputs.tach_end),
        "solo_end_hobbs": _finite(inputs.solo_end_hobbs) if handoff else None,
        "solo_end_tach": _finite(inputs.solo_end_tach) if handoff else None,
        "has_solo_at_end": handoff,
        "instruction_type": inputs.instruction_type,
        "aircraft_charge_rate": _rate_signature(inputs.aircraft_charge_rate),
        "instructor_charge_rate": _rate_signature(inputs.instructor_charge_rate),
        "tax_rate": _finite(inputs.tax_rate),
    }
    canonical = json.dumps(tracked, sort_keys=True, separators=(",", ":"), allow_nan=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def derive_billing(inputs: CheckinInputs) -> BillingSnapshot:
    """Calcule base, répartition, heures facturables et lignes générées."""
    basis = derive_billing_basis(inputs.aircraft_charge_rate)
    warnings = charge_basis_warnings(inputs.aircraft_charge_rate)
    handoff = inputs.has_solo_at_end and inputs.instruction_type != "solo"

    split = compute_split_times(
        basis,
        inputs.instruction_type,
        handoff,
        starts={ChargeBasis.HOBBS: inputs.hobbs_start, ChargeBasis.TACHO: inputs.tach_start},
        ends={ChargeBasis.HOBBS: inputs.hobbs_end, ChargeBasis.TACHO: inputs.tach_end},
        solo_ends={
            ChargeBasis.HOBBS: inputs.solo_end_hobbs,
            ChargeBasis.TACHO: inputs.solo_end_tach,
        },
    )
    hobbs_hours = meter_total_hours(
        inputs.hobbs_start,
        inputs.hobbs_end,
        inputs.solo_end_hobbs,
        handoff_on_this_meter=handoff and basis == ChargeBasis.HOBBS,
    )
    tacho_hours = meter_total_hours(
        inputs.tach_start,
        inputs.tach_end,
        inputs.solo_end_tach,
        handoff_on_this_meter=handoff and basis == ChargeBasis.TACHO,
    )
    billing_hours = compute_billing_hours(basis, hobbs_hours, tacho_hours)
    items = build_generated_invoice_items(
        booking_id=inputs.booking_id,
        basis=basis,
        aircraft_rate=inputs.aircraft_charge_rate,
        billing_hours=billing_hours,
        split=split,
        tax_rate=inputs.tax_rate,
        aircraft_label=inputs.aircraft_label,
        instructor_id=inputs.instructor_id,
        instructor_rate=inputs.instructor_charge_rate,
        instructor_label=inputs.instructor_label,
        instruction_type=inputs.instruction_type,
    )
    return BillingSnapshot(
        basis=basis,
        warnings=warnings,
        split=split,
        hobbs_hours=hobbs_hours,
        tacho_hours=tacho_hours,
        billing_hours=billing_hours,
        items=items,
    )


def is_stale(state: DraftState) -> bool:
    if state.draft is None:
        return False
    return state.draft.signature != compute_signature(state.inputs)


def draft_status(state: DraftState) -> DraftStatus:
    if state.invoice_id:
        return DraftStatus.COMMITTED
    if state.draft is None:
        return DraftStatus.EMPTY
    if is_stale(state):
        return DraftStatus.STALE
    return DraftStatus.CALCULATED


def _ensure_open(state: DraftState) -> None:
    if state.invoice_id:
        raise CheckinStateError(ALREADY_APPROVED)


def build_inputs(values: dict[str, Any]) -> CheckinInputs:
    """Valide les entrées d'un check-in.

    Raises:
        CheckinValidationError: champ invalide (taux de taxe hors de [0, 1], type...).
    """
    try:
        return CheckinInputs.model_validate(values)
    except ValidationError as exc:
        error = exc.errors()[0]
        field = ".".join(str(part) for part in error["loc"]) or "inputs"
        raise CheckinValidationError(f"Invalid {field}: {error['msg']}") from exc


def new_state(inputs: CheckinInputs) -> DraftState:
    return DraftState(inputs=inputs)


def update_inputs(state: DraftState, **changes: Any) -> DraftState:
    """Applique des changements d'entrées; le brouillon existant devient éventuellement obsolète.

    Les entrées sont revalidées (un vol solo n'a jamais de passage en fin de vol).
    """
    _ensure_open(state)
    merged = {**state.inputs.model_dump(), **changes}
    return state.model_copy(update={"inputs": build_inputs(merged)})


def calculate_draft(state: DraftState, now: datetime) -> DraftState:
    """Calcule (ou recalcule) le brouillon et réinitialise overrides, suppressions et édition.

    Un calcul refusé ne touche pas à l'état: le brouillon précédent, ses overrides et ses
    suppressions restent en place, signalés `stale` si les entrées ont changé. Ils ne sont
    pas effacés, pour que l'opérateur garde ses corrections en réparant les relevés.

    Raises:
        CheckinValidationError: première précondition non remplie, dans l'ordre d'affichage.
    """
    _ensure_open(state)
    inputs = state.inputs
    billing = derive_billing(inputs)

    if billing.split.error:
        raise CheckinValidationError(billing.split.error)
    if not inputs.aircraft_id:
        raise CheckinValidationError("Aircraft is required")
    if not inputs.flight_type_id:
        raise CheckinValidationError("Flight type is required")
    if inputs.aircraft_charge_rate is None or billing.basis is None:
        raise CheckinValidationError("Aircraft charge rate is not configured")
    if billing.basis == ChargeBasis.AIRSWITCH:
        raise CheckinValidationError("Airswitch billing is not supported in this check-in UI")
    if billing.billing_hours <= 0:
        raise CheckinValidationError("Billing hours must be greater than zero")
    if not billing.items:
        raise CheckinValidationError("No generated invoice items to calculate")

    lines = [calculate_invoice_line(item, inputs.tax_rate) for item in billing.items]
    draft = DraftCalculation(
        signature=compute_signature(inputs),
        calculated_at=now.isoformat(),
        billing_basis=billing.basis,
        billing_hours=billing.billing_hours,
        dual_time=billing.split.dual,
        solo_time=billing.split.solo,
        items=billing.items,
        lines=lines,
        totals=compute_totals(lines),
    )
    log.info(
        "draft_calculated",
        booking_id=inputs.booking_id,
        basis=billing.basis.value,
        billing_hours=billing.billing_hours,
        total_amount=draft.totals.total_amount,
    )
    return state.model_copy(
        update={"draft": draft, "overrides": {}, "removed_ids": frozenset(), "editing": None}
    )


def generated_items(state: DraftState) -> list[InvoiceBuilderItem]:
    """Lignes générées du brouillon, sans les supprimées, avec overrides appliqués."""
    if state.draft is None:
        return []
    items = []
    for item in state.draft.items:
        if item.id in state.removed_ids:
            continue
        override = state.overrides.get(item.id)
        if override is not None:
            item = item.model_copy(
                update={"quantity": override.quantity, "unit_price": override.unit_price}
            )
        items.append(item)
    return items


def _is_valid_manual_item(item: InvoiceBuilderItem) -> bool:
    if not item.description.strip():
        return False
    if not math.isfinite(item.quantity) or item.quantity <= 0:
        return False
    return math.isfinite(item.unit_price) and item.unit_price >= 0


def invoice_lines(state: DraftState) -> list[CalculatedInvoiceLine]:
    tax_rate = state.inputs.tax_rate
    items = [*generated_items(state), *state.manual_items]
    return [calculate_invoice_line(item, tax_rate) for item in items]


def invoice_line_groups(state: DraftState) -> list[LineGroup]:
    return group_invoice_lines(invoice_lines(state))


def invoice_totals(state: DraftState) -> DraftTotals:
    return compute_totals(invoice_lines(state))


def approval_items(state: DraftState) -> list[InvoiceBuilderItem]:
    """Lignes envoyées à l'approbation: générées (hors supprimées) puis manuelles valides."""
    if state.draft is None:
        return []
    manual = [item for item in state.manual_items if _is_valid_manual_item(item)]
    return [*generated_items(state), *manual]


def _find_item(state: DraftState, item_id: str) -> InvoiceBuilderItem:
    for item in [*generated_items(state), *state.manual_items]:
        if item.id == item_id:
            return item
    raise LineItemNotFoundError("Line item not found")


def begin_line_edit(state: DraftState, item_id: str) -> DraftState:
    """Ouvre l'édition d'une ligne (une seule à la fois), pré-remplie en taux TTC."""
    _ensure_open(state)
    if state.editing is not None and state.editing.item_id != item_id:
        raise CheckinStateError(EDIT_IN_PROGRESS)
    item = _find_item(state, item_id)
    tax_rate = effective_tax_rate(item, state.inputs.tax_rate)
    editing = LineEdit(
        item_id=item.id,
        quantity=item.quantity,
        rate_inclusive=exclusive_to_inclusive(item.unit_price, tax_rate),
    )
    return state.model_copy(update={"editing": editing})


def cancel_line_edit(state: DraftState) -> DraftState:
    return state.model_copy(update={"editing": None})


def _validate_quantity_and_rate(quantity: float | None, rate_inclusive: float | None) -> None:
    if quantity is None or not math.isfinite(quantity) or quantity <= 0:
        raise CheckinValidationError(QUANTITY_NOT_POSITIVE)
    if rate_inclusive is None or not math.isfinite(rate_inclusive) or rate_inclusive < 0:
        raise CheckinValidationError(RATE_NEGATIVE)


def save_line_edit(state: DraftState, quantity: float, rate_inclusive: float) -> DraftState:
    """Enregistre l'édition en cours.

    Ligne manuelle: modifiée directement. Ligne générée: stockée en override, supprimé si les
    valeurs reviennent exactement à celles du calcul.
    """
    _ensure_open(state)
    if state.editing is None:
        raise CheckinStateError("No line item is being edited")
    _validate_quantity_and_rate(quantity, rate_inclusive)
    item_id = state.editing.item_id
    default_tax = state.inputs.tax_rate

    for index, manual in enumerate(state.manual_items):
        if manual.id != item_id:
            continue
        updated = manual.model_copy(
            update={
                "quantity": round_to_two_decimals(quantity),
                "unit_price": inclusive_to_exclusive(
                    rate_inclusive, effective_tax_rate(manual, default_tax)
                ),
            }
        )
        manual_items = (*state.manual_items[:index], updated, *state.manual_items[index + 1 :])
        return state.model_copy(update={"manual_items": manual_items, "editing": None})

    base = None
    if state.draft is not None:
        base = next((item for item in state.draft.items if item.id == item_id), None)
    if base is None:
        return state.model_copy(update={"editing": None})

    next_quantity = round_to_two_decimals(quantity)
    next_unit_price = inclusive_to_exclusive(rate_inclusive, effective_tax_rate(base, default_tax))
    overrides = dict(state.overrides)
    unchanged = next_quantity == round_to_two_decimals(
        base.quantity
    ) and next_unit_price == round_to_two_decimals(base.unit_price)
    if unchanged:
        overrides.pop(item_id, None)
    else:
        overrides[item_id] = ItemOverride(quantity=next_quantity, unit_price=next_unit_price)
    return state.model_copy(update={"overrides": overrides, "editing": None})


def remove_line(state: DraftState, item_id: str) -> DraftState:
    """Supprime une ligne: une ligne générée est masquée (et perd son override), une manuelle
    est effacée. Ferme l'éditeur s'il portait sur cette ligne."""
    _ensure_open(state)
    editing = None if state.editing and state.editing.item_id == item_id else state.editing
    manual_ids = {item.id for item in state.manual_items}
    if item_id in manual_ids:
        manual_items = tuple(item for item in state.manual_items if item.id != item_id)
        return state.model_copy(update={"manual_items": manual_items, "editing": editing})

    generated_ids = {item.id for item in state.draft.items} if state.draft else set()
    if item_id not in generated_ids:
        raise LineItemNotFoundError("Line item not found")
    overrides = {key: value for key, value in state.overrides.items() if key != item_id}
    return state.model_copy(
        update={
            "removed_ids": state.removed_ids | {item_id},
            "overrides": overrides,
            "editing": editing,
        }
    )


def add_manual_item(
    state: DraftState,
    group: str,
    chargeable: Chargeable | None,
    quantity: float | None,
    rate_inclusive: float | None,
    item_id: str | None = None,
) -> DraftState:
    """Ajoute un frais du catalogue (taxe d'atterrissage, airways, divers).

    Le taux saisi est TTC; le prix stocké est HT. Un article non taxable a un taux de 0.
    """
    _ensure_open(state)
    if chargeable is None:
        label = MANUAL_GROUP_LABELS.get(group, MANUAL_GROUP_LABELS["other"])
        raise CheckinValidationError(f"Select a {label.lower()} item")
    _validate_quantity_and_rate(quantity, rate_inclusive)

    item_tax_rate = state.inputs.tax_rate if chargeable.is_taxable else 0.0
    item = InvoiceBuilderItem(
        id=item_id or f"manual-{uuid.uuid4().hex}",
        chargeable_id=chargeable.id,
        description=chargeable.name,
        quantity=round_to_two_decimals(quantity),
        unit_price=inclusive_to_exclusive(rate_inclusive, item_tax_rate),
        tax_rate=item_tax_rate,
        source="manual",
        manual_group=group,
        chargeable_type_id=chargeable.chargeable_type_id,
        chargeable_type_code=chargeable.chargeable_type_code,
    )
    return state.model_copy(update={"manual_items": (*state.manual_items, item)})


def ensure_approvable(state: DraftState) -> None:
    """Vérifie les préconditions d'approbation, dans l'ordre des messages affichés."""
    _ensure_open(state)
    inputs = state.inputs
    if state.draft is None:
        raise CheckinValidationError("Calculate flight charges before approval")
    if state.editing is not None:
        raise CheckinStateError("Save or cancel the current line item edit before approving.")
    if is_stale(state):
        raise DraftStaleError("Draft is out of date. Recalculate before approving.")
    if not approval_items(state):
        raise CheckinValidationError("Add at least one invoice line item before approving.")
    if not inputs.aircraft_id or not inputs.flight_type_id:
        raise CheckinValidationError("Aircraft and flight type are required")
    if derive_billing_basis(inputs.aircraft_charge_rate) is None:
        raise CheckinValidationError("No aircraft billing basis configured")


def build_approval_payload(state: DraftState, now: datetime, due_days: int = 7) -> ApprovalPayload:
    """Construit la charge utile de l'approbation atomique (après `ensure_approvable`)."""
    ensure_approvable(state)
    inputs = state.inputs
    draft = state.draft
    basis = draft.billing_basis
    handoff = inputs.has_solo_at_end
    return ApprovalPayload(
        checked_out_aircraft_id=inputs.aircraft_id,
        checked_out_instructor_id=inputs.instructor_id,
        flight_type_id=inputs.flight_type_id,
        hobbs_start=inputs.hobbs_start,
        hobbs_end=inputs.hobbs_end,
        tach_start=inputs.tach_start,
        tach_end=inputs.tach_end,
        airswitch_start=None,
        airswitch_end=None,
        solo_end_hobbs=inputs.solo_end_hobbs if basis == ChargeBasis.HOBBS and handoff else None,
        solo_end_tach=inputs.solo_end_tach if basis == ChargeBasis.TACHO and handoff else None,
        dual_time=draft.dual_time if draft.dual_time > 0 else None,
        solo_time=draft.solo_time if draft.solo_time > 0 else None,
        billing_basis=basis,
        billing_hours=draft.billing_hours,
        tax_rate=inputs.tax_rate,
        due_date=(now + timedelta(days=due_days)).isoformat(),
        reference=CHECKIN_REFERENCE.format(booking_id=inputs.booking_id),
        notes=CHECKIN_NOTES,
        items=[
            ApprovalItem(
                chargeable_id=item.chargeable_id,
                description=item.description,
                quantity=item.quantity,
                unit_price=item.unit_price,
                tax_rate=item.tax_rate,
                notes=item.notes,
            )
            for item in approval_items(state)
        ],
    )


def mark_committed(state: DraftState, invoice_id: str) -> DraftState:
    _ensure_open(state)
    return state.model_copy(update={"invoice_id": invoice_id, "editing": None})


def correction_delta(start: float | None, end: float | None) -> float | None:
    """Écart corrigé au dixième, ou None si un relevé manque ou si l'écart est négatif."""
    if start is None or end is None:
        return None
    delta = end - start
    return round_to_tenth(delta) if delta >= 0 else None


def build_correction_payload(
    meters: BookingMeters,
    hobbs_end: float | None,
    tach_end: float | None,
    reason: str,
    min_reason_length: int = 10,
) -> CorrectionPayload:
    """Valide une correction de relevés après approbation.

    Au moins une fin de relevé doit différer de la valeur enregistrée et le motif (sans espaces
    de bord) doit compter au moins `min_reason_length` caractères.
    """
    hobbs_changed = (
        meters.hobbs_end is not None and hobbs_end is not None and hobbs_end != meters.hobbs_end
    )
    tach_changed = (
        meters.tach_end is not None and tach_end is not None and tach_end != meters.tach_end
    )
    if not hobbs_changed and not tach_changed:
        raise CheckinValidationError("Change at least one end reading to submit a correction")
    trimmed = (reason or "").strip()
    if len(trimmed) < min_reason_length:
        raise CheckinValidationError(
            f"Correction reason must be at least {min_reason_length} characters"
        )
    return CorrectionPayload(
        hobbs_end=hobbs_end,
        tach_end=tach_end,
        airswitch_end=None,
        correction_reason=trimmed,
    )
