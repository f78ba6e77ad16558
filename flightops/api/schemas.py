# Schémas Pydantic exposés par l'API (requêtes et réponses).

import datetime as dt
from typing import Any, Literal

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field

from flightops.domain import draft as drafting
from flightops.domain.entities import (
    BatchCreateResult,
    Chargeable,
    DraftState,
    InstructionType,
    LandingFeeRate,
    ManualItemGroup,
    Occurrence,
)


class _CheckinRequest(BaseModel):
    # Relevés et montants: NaN et infini refusés (422).
    model_config = ConfigDict(allow_inf_nan=False)


class CheckinOpenRequest(_CheckinRequest):
    """Ouverture du check-in d'une réservation.

    Champs:
    - aircraft_id / instructor_id / flight_type_id: ressources effectivement utilisées
    - instruction_type: dual | solo | trial
    - hobbs_* / tach_*: relevés de compteurs (heures décimales)
    - solo_end_*: relevés au passage double -> solo (si has_solo_at_end)
    - tax_rate: taux de taxe (sinon taux par défaut de l'école)
    """

    aircraft_id: str | None = None
    instructor_id: str | None = None
    flight_type_id: str | None = None
    instruction_type: InstructionType | None = None
    hobbs_start: float | None = None
    hobbs_end: float | None = None
    tach_start: float | None = None
    tach_end: float | None = None
    solo_end_hobbs: float | None = None
    solo_end_tach: float | None = None
    has_solo_at_end: bool = False
    tax_rate: float | None = Field(default=None, ge=0, le=1)
    aircraft_label: str | None = None
    instructor_label: str | None = None


class CheckinInputsPatch(_CheckinRequest):
    """Modification partielle des entrées: seuls les champs envoyés sont appliqués."""

    aircraft_id: str | None = None
    instructor_id: str | None = None
    flight_type_id: str | None = None
    instruction_type: InstructionType | None = None
    hobbs_start: float | None = None
    hobbs_end: float | None = None
    tach_start: float | None = None
    tach_end: float | None = None
    solo_end_hobbs: float | None = None
    solo_end_tach: float | None = None
    has_solo_at_end: bool | None = None
    tax_rate: float | None = Field(default=None, ge=0, le=1)
    aircraft_label: str | None = None
    instructor_label: str | None = None


class LineEditRequest(_CheckinRequest):
    quantity: float
    rate_inclusive: float


class ManualItemRequest(_CheckinRequest):
    """Ajout d'un frais manuel; le tarif proposé est utilisé si `rate_inclusive` est absent."""

    group: ManualItemGroup
    chargeable: Chargeable | None = None
    quantity: float | None = 1.0
    rate_inclusive: float | None = None
    aircraft_type_id: str | None = None
    landing_fee_rates: list[LandingFeeRate] | None = None


class CorrectionRequest(_CheckinRequest):
    hobbs_end: float | None = None
    tach_end: float | None = None
    reason: str = ""


class RecurrenceRequest(BaseModel):
    """Plage horaire locale (fuseau de l'école), unique ou répétée chaque semaine.

    `weekdays`: 0 = dimanche ... 6 = samedi. Sans `repeat_until`, une seule occurrence.
    """

    date: dt.date
    start_time: str
    end_time: str
    recurring: bool = False
    weekdays: list[int] = Field(default_factory=list)
    repeat_until: dt.date | None = None


class ConflictCheckRequest(RecurrenceRequest):
    aircraft_id: str | None = None
    instructor_id: str | None = None


class BookingCreateRequest(ConflictCheckRequest):
    """Création d'une réservation (ou d'une série); champs communs relayés au backend."""

    flight_type_id: str | None = None
    user_id: str | None = None
    booking_type: Literal["flight", "groundwork", "maintenance", "other"] = "flight"
    status: Literal["unconfirmed", "confirmed"] = "unconfirmed"
    purpose: str | None = None
    remarks: str | None = None

    def booking_fields(self) -> dict[str, Any]:
        return self.model_dump(
            exclude={"date", "start_time", "end_time", "recurring", "weekdays", "repeat_until"}
        )


class EndTimeRequest(BaseModel):
    """Heure de début locale et durée souhaitée (minutes) pour proposer une heure de fin."""

    date: dt.date
    start_time: str
    duration_minutes: int = Field(default=60, gt=0)
    instructor_id: str | None = None


class LayoutRequest(BaseModel):
    booking_start: AwareDatetime
    booking_end: AwareDatetime
    timeline_start: AwareDatetime
    timeline_end: AwareDatetime


class OccurrencesResponse(BaseModel):
    occurrences: list[Occurrence]


class BatchCreateResponse(BaseModel):
    result: BatchCreateResult
    complete: bool


def draft_state_response(state: DraftState) -> dict[str, Any]:
    """Vue JSON du constructeur de facture: entrées, statut, aperçu, lignes groupées, totaux."""
    billing = drafting.derive_billing(state.inputs)
    return {
        "booking_id": state.inputs.booking_id,
        "status": drafting.draft_status(state).value,
        "inputs": state.inputs.model_dump(mode="json"),
        "preview": {
            "billing_basis": billing.basis.value if billing.basis else None,
            "warnings": billing.warnings,
            "hobbs_hours": billing.hobbs_hours,
            "tacho_hours": billing.tacho_hours,
            "billing_hours": billing.billing_hours,
            "split": billing.split.model_dump(),
        },
        "draft": state.draft.model_dump(mode="json") if state.draft else None,
        "groups": [group.model_dump(mode="json") for group in drafting.invoice_line_groups(state)],
        "totals": drafting.invoice_totals(state).model_dump(),
        "editing": state.editing.model_dump() if state.editing else None,
        "invoice_id": state.invoice_id,
    }
