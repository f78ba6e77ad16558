"""
Entités du domaine métier.

Ce module définit les modèles de données utilisés par le calculateur de facturation du check-in
et par la logique de planification (tarifs, relevés de compteurs, lignes de facture, brouillon,
occurrences de réservation, fenêtres de disponibilité).
"""

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

InstructionType = Literal["dual", "solo", "trial"]
ManualItemGroup = Literal["landing_fee", "airways_fee", "other"]
ItemSource = Literal["generated", "manual"]

MANUAL_GROUP_LABELS: dict[str, str] = {
    "landing_fee": "Landing Fee",
    "airways_fee": "Airways Fee",
    "other": "Other",
}
MANUAL_GROUP_ORDER: tuple[str, ...] = ("landing_fee", "airways_fee", "other")


class ChargeBasis(str, Enum):
    """Compteur servant de base à la facturation des heures de vol."""

    HOBBS = "hobbs"
    TACHO = "tacho"
    AIRSWITCH = "airswitch"


class DraftStatus(str, Enum):
    """États du brouillon de facture d'un check-in."""

    EMPTY = "empty"
    CALCULATED = "calculated"
    STALE = "stale"
    COMMITTED = "committed"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class ChargeRate(_Frozen):
    """Tarif horaire (avion ou instructeur) et drapeaux de base de facturation.

    `rate_per_hour` arrive du backend sous forme de nombre ou de chaîne décimale.
    """

    id: str
    rate_per_hour: float | str | None = None
    charge_hobbs: bool = False
    charge_tacho: bool = False
    charge_airswitch: bool = False


class SplitTimes(_Frozen):
    """Répartition double commande / solo, arrondie au dixième d'heure."""

    total: float = 0.0
    dual: float = 0.0
    solo: float = 0.0
    error: str | None = None


class InvoiceBuilderItem(_Frozen):
    """Ligne de facture éditable (générée depuis les tarifs ou saisie manuellement).

    `unit_price` est toujours hors taxe.
    """

    id: str
    chargeable_id: str | None = None
    description: str
    quantity: float
    unit_price: float
    tax_rate: float | None = None
    notes: str | None = None
    source: ItemSource
    manual_group: ManualItemGroup | None = None
    chargeable_type_id: str | None = None
    chargeable_type_code: str | None = None


class CalculatedInvoiceLine(InvoiceBuilderItem):
    """Ligne de facture enrichie des montants calculés (2 décimales)."""

    amount: float
    tax_amount: float
    rate_inclusive: float
    line_total: float


class LineGroup(_Frozen):
    """Groupe d'affichage des lignes (location de vol, taxes d'atterrissage...)."""

    id: str
    label: str
    lines: list[CalculatedInvoiceLine]


class DraftTotals(_Frozen):
    subtotal: float = 0.0
    tax_total: float = 0.0
    total_amount: float = 0.0


class DraftCalculation(_Frozen):
    """Résultat figé d'un calcul de brouillon, daté et signé."""

    signature: str
    calculated_at: str
    billing_basis: ChargeBasis
    billing_hours: float
    dual_time: float
    solo_time: float
    items: list[InvoiceBuilderItem]
    lines: list[CalculatedInvoiceLine]
    totals: DraftTotals


class ItemOverride(_Frozen):
    quantity: float
    unit_price: float


class LineEdit(_Frozen):
    """Ligne en cours d'édition et valeurs de pré-remplissage (taux TTC)."""

    item_id: str
    quantity: float
    rate_inclusive: float


class CheckinInputs(_Frozen):
    """Entrées du calcul de facturation d'un check-in.

    Les libellés (`aircraft_label`, `instructor_label`) servent uniquement aux descriptions de
    lignes et ne participent pas à la signature du brouillon.
    """

    booking_id: str
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
    aircraft_charge_rate: ChargeRate | None = None
    instructor_charge_rate: ChargeRate | None = None
    tax_rate: float = Field(default=0.15, ge=0, le=1)
    aircraft_label: str | None = None
    instructor_label: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _solo_flights_have_no_handoff(cls, data):
        # Un vol solo n'a pas de passage double -> solo en fin de vol.
        if isinstance(data, dict) and data.get("instruction_type") == "solo":
            data = {
                **data,
                "has_solo_at_end": False,
                "solo_end_hobbs": None,
                "solo_end_tach": None,
            }
        return data


class DraftState(_Frozen):
    """État complet et immuable du constructeur de facture d'un check-in."""

    inputs: CheckinInputs
    draft: DraftCalculation | None = None
    overrides: dict[str, ItemOverride] = Field(default_factory=dict)
    removed_ids: frozenset[str] = frozenset()
    manual_items: tuple[InvoiceBuilderItem, ...] = ()
    editing: LineEdit | None = None
    invoice_id: str | None = None


class Chargeable(_Frozen):
    """Article facturable du catalogue (taxe d'atterrissage, airways, divers)."""

    id: str
    name: str
    rate: float = 0.0
    is_taxable: bool = True
    chargeable_type_id: str | None = None
    chargeable_type_code: str | None = None


class LandingFeeRate(_Frozen):
    aircraft_type_id: str
    chargeable_id: str
    rate: float


class ApprovalItem(_Frozen):
    chargeable_id: str | None = None
    description: str
    quantity: float
    unit_price: float
    tax_rate: float | None = None
    notes: str | None = None


class ApprovalPayload(_Frozen):
    """Charge utile de l'appel atomique d'approbation du check-in."""

    checked_out_aircraft_id: str
    checked_out_instructor_id: str | None = None
    flight_type_id: str
    hobbs_start: float | None = None
    hobbs_end: float | None = None
    tach_start: float | None = None
    tach_end: float | None = None
    airswitch_start: float | None = None
    airswitch_end: float | None = None
    solo_end_hobbs: float | None = None
    solo_end_tach: float | None = None
    dual_time: float | None = None
    solo_time: float | None = None
    billing_basis: ChargeBasis
    billing_hours: float
    tax_rate: float
    due_date: str
    reference: str
    notes: str
    items: list[ApprovalItem]


class BookingMeters(_Frozen):
    """Relevés enregistrés d'une réservation déjà approuvée."""

    hobbs_start: float | None = None
    hobbs_end: float | None = None
    tach_start: float | None = None
    tach_end: float | None = None


class CorrectionPayload(_Frozen):
    hobbs_end: float | None = None
    tach_end: float | None = None
    airswitch_end: float | None = None
    correction_reason: str


class Occurrence(_Frozen):
    """Occurrence d'une réservation (date locale, bornes UTC ISO-8601)."""

    date: str
    start_iso: str
    end_iso: str


class OccurrenceConflict(_Frozen):
    aircraft: bool = False
    instructor: bool = False


class MinutesWindow(_Frozen):
    """Fenêtre semi-ouverte [start_min, end_min) en minutes depuis minuit."""

    start_min: int
    end_min: int


class BookingLayout(_Frozen):
    left_pct: float
    width_pct: float


class TimelineConfig(_Frozen):
    start_min: int
    end_min: int
    interval_minutes: int


class BusinessHours(_Frozen):
    open_time: str = "07:00"
    close_time: str = "19:00"
    is_closed: bool = False
    is_24_hours: bool = False


class FailedOccurrence(_Frozen):
    occurrence: Occurrence
    error: str


class BatchCreateResult(_Frozen):
    """Bilan d'une création en série: créées, en échec, non tentées."""

    succeeded: list[Occurrence] = Field(default_factory=list)
    failed: FailedOccurrence | None = None
    skipped: list[Occurrence] = Field(default_factory=list)

    @property
    def complete(self) -> bool:
        return self.failed is None and not self.skipped
