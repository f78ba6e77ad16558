"""
Calcul des heures facturables et des lignes générées d'un check-in.

Objectif: à partir des relevés de compteurs (Hobbs/Tacho), de la configuration des tarifs et des
règles de répartition double/solo, dériver de façon déterministe la base de facturation, les
heures facturées, la répartition double/solo et les lignes "Aircraft Hire" / "Instructor Rate".

Toutes les fonctions sont pures; aucune ne lève d'exception sur des saisies transitoires
invalides (valeurs manquantes ou non finies): elles renvoient zéro ou une liste vide.
"""

import math
from collections.abc import Mapping
from typing import Any

import structlog

from flightops.domain.entities import (
    MANUAL_GROUP_LABELS,
    MANUAL_GROUP_ORDER,
    CalculatedInvoiceLine,
    ChargeBasis,
    Chargeable,
    ChargeRate,
    DraftTotals,
    InvoiceBuilderItem,
    LandingFeeRate,
    LineGroup,
    SplitTimes,
)
from flightops.domain.invoice_calculations import (
    calculate_item_amounts,
    exclusive_to_inclusive,
    round_to_tenth,
    round_to_two_decimals,
)

log = structlog.get_logger(__name__).bind(component="billing")

GENERATED_AIRCRAFT_ITEM_ID = "generated-aircraft-hire"
GENERATED_INSTRUCTOR_ITEM_ID = "generated-instructor-hire"

SPLIT_MISSING_READINGS = "Solo split requires start, dual end, and solo end."
SPLIT_DUAL_BEFORE_START = "Dual end cannot be less than start."
SPLIT_SOLO_BEFORE_DUAL = "Solo end cannot be less than dual end."


def parse_number_like(value: Any) -> float | None:
    """Nombre ou chaîne numérique -> float fini, sinon None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            parsed = float(text)
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def hourly_rate(rate: ChargeRate | None) -> float | None:
    """Tarif horaire HT d'un `ChargeRate`, ou None s'il est absent/illisible."""
    if rate is None:
        return None
    return parse_number_like(rate.rate_per_hour)


def derive_billing_basis(rate: ChargeRate | None) -> ChargeBasis | None:
    """Déduit la base de facturation des drapeaux du tarif.

    Un seul drapeau actif: il est retenu. Plusieurs: priorité hobbs > tacho > airswitch
    (voir `charge_basis_warnings`). Aucun: None, aucune facture ne peut être générée.
    """
    if rate is None:
        return None
    flags = (
        (ChargeBasis.HOBBS, rate.charge_hobbs),
        (ChargeBasis.TACHO, rate.charge_tacho),
        (ChargeBasis.AIRSWITCH, rate.charge_airswitch),
    )
    for basis, enabled in flags:
        if enabled:
            return basis
    return None


def charge_basis_warnings(rate: ChargeRate | None) -> list[str]:
    """Avertissements de configuration quand plusieurs bases sont cochées."""
    if rate is None:
        return []
    enabled = [
        basis.value
        for basis, flag in (
            (ChargeBasis.HOBBS, rate.charge_hobbs),
            (ChargeBasis.TACHO, rate.charge_tacho),
            (ChargeBasis.AIRSWITCH, rate.charge_airswitch),
        )
        if flag
    ]
    if len(enabled) <= 1:
        return []
    chosen = enabled[0]
    log.warning("charge_basis_ambiguous", rate_id=rate.id, enabled=enabled, chosen=chosen)
    return [
        f"Charge rate {rate.id} has multiple billing bases ({', '.join(enabled)}); "
        f"billing by {chosen}."
    ]


def compute_flight_hours(start: float | None, end: float | None) -> float:
    """Heures entre deux relevés, arrondies au dixième; 0 si invalide ou end < start."""
    if start is None or end is None:
        return 0.0
    if not math.isfinite(start) or not math.isfinite(end) or end < start:
        return 0.0
    return round_to_tenth(end - start)


def meter_total_hours(
    start: float | None,
    end: float | None,
    solo_end: float | None,
    *,
    handoff_on_this_meter: bool,
) -> float:
    """Heures totales d'un compteur; la fin solo remplace la fin quand le passage est actif."""
    effective_end = solo_end if handoff_on_this_meter else end
    return compute_flight_hours(start, effective_end)


def compute_split_times(
    basis: ChargeBasis | None,
    instruction_type: str | None,
    has_solo_at_end: bool,
    starts: Mapping[ChargeBasis, float | None],
    ends: Mapping[ChargeBasis, float | None],
    solo_ends: Mapping[ChargeBasis, float | None],
) -> SplitTimes:
    """Répartit le temps de vol entre double commande et solo.

    - base absente ou airswitch: résultat nul sans erreur (l'appelant bloque en amont);
    - vol solo: tout le temps est solo;
    - sans passage solo en fin de vol: tout le temps est en double;
    - avec passage: double = fin double - début, solo = fin solo - fin double.
    """
    if basis is None or basis == ChargeBasis.AIRSWITCH:
        return SplitTimes()

    start = starts.get(basis)
    dual_end = ends.get(basis)

    if instruction_type == "solo":
        total = compute_flight_hours(start, dual_end)
        return SplitTimes(total=total, dual=0.0, solo=total)

    if has_solo_at_end:
        final_end = solo_ends.get(basis)
        if start is None or dual_end is None or final_end is None:
            return SplitTimes(error=SPLIT_MISSING_READINGS)
        if dual_end < start:
            return SplitTimes(error=SPLIT_DUAL_BEFORE_START)
        if final_end < dual_end:
            return SplitTimes(error=SPLIT_SOLO_BEFORE_DUAL)
        dual = round_to_tenth(dual_end - start)
        solo = round_to_tenth(final_end - dual_end)
        return SplitTimes(total=round_to_tenth(dual + solo), dual=dual, solo=solo)

    total = compute_flight_hours(start, dual_end)
    return SplitTimes(total=total, dual=total, solo=0.0)


def compute_billing_hours(
    basis: ChargeBasis | None, hobbs_hours: float, tacho_hours: float
) -> float:
    if basis == ChargeBasis.HOBBS:
        return hobbs_hours
    if basis == ChargeBasis.TACHO:
        return tacho_hours
    return 0.0


def build_generated_invoice_items(
    *,
    booking_id: str,
    basis: ChargeBasis | None,
    aircraft_rate: ChargeRate | None,
    billing_hours: float,
    split: SplitTimes,
    tax_rate: float,
    aircraft_label: str | None = None,
    instructor_id: str | None = None,
    instructor_rate: ChargeRate | None = None,
    instructor_label: str | None = None,
    instruction_type: str | None = None,
) -> list[InvoiceBuilderItem]:
    """Construit les lignes générées (location avion, puis instructeur si double).

    Liste vide si le tarif avion est absent ou nul, si la base est airswitch/absente, ou si
    aucune heure n'est facturable. Le temps solo n'est jamais facturé à l'instructeur.
    """
    if aircraft_rate is None or basis is None or basis == ChargeBasis.AIRSWITCH:
        return []
    if billing_hours <= 0:
        return []
    aircraft_per_hour = hourly_rate(aircraft_rate)
    if aircraft_per_hour is None or aircraft_per_hour <= 0:
        return []

    items = [
        InvoiceBuilderItem(
            id=GENERATED_AIRCRAFT_ITEM_ID,
            description=f"Aircraft Hire ({aircraft_label or 'Aircraft'})",
            quantity=billing_hours,
            unit_price=aircraft_per_hour,
            tax_rate=tax_rate,
            notes=(
                f"Booking {booking_id}; basis={basis.value}; total={billing_hours:.1f}h; "
                f"dual={split.dual:.1f}h; solo={split.solo:.1f}h"
            ),
            source="generated",
        )
    ]

    instructor_per_hour = hourly_rate(instructor_rate)
    if (
        instructor_id
        and instructor_per_hour is not None
        and instruction_type != "solo"
        and split.dual > 0
    ):
        items.append(
            InvoiceBuilderItem(
                id=GENERATED_INSTRUCTOR_ITEM_ID,
                description=f"Instructor Rate ({instructor_label or 'Instructor'})",
                quantity=split.dual,
                unit_price=instructor_per_hour,
                tax_rate=tax_rate,
                notes=f"Booking {booking_id}; dual_time={split.dual:.1f}h",
                source="generated",
            )
        )
    return items


def effective_tax_rate(item: InvoiceBuilderItem, default_tax_rate: float) -> float:
    """Taux propre à la ligne s'il est valide, sinon le taux par défaut de l'école."""
    rate = item.tax_rate
    if rate is not None and math.isfinite(rate) and 0 <= rate <= 1:
        return rate
    return default_tax_rate


def calculate_invoice_line(
    item: InvoiceBuilderItem, default_tax_rate: float
) -> CalculatedInvoiceLine:
    """Calcule les montants d'une ligne; montants nuls si quantité ou prix invalides."""
    quantity_ok = math.isfinite(item.quantity) and item.quantity > 0
    price_ok = math.isfinite(item.unit_price) and item.unit_price >= 0
    if not quantity_ok or not price_ok:
        return CalculatedInvoiceLine(
            **item.model_dump(), amount=0.0, tax_amount=0.0, rate_inclusive=0.0, line_total=0.0
        )
    calculated = calculate_item_amounts(
        item.quantity, item.unit_price, effective_tax_rate(item, default_tax_rate)
    )
    return CalculatedInvoiceLine(
        **item.model_dump(),
        amount=calculated.amount,
        tax_amount=calculated.tax_amount,
        rate_inclusive=calculated.rate_inclusive,
        line_total=calculated.line_total,
    )


def compute_totals(lines: list[CalculatedInvoiceLine]) -> DraftTotals:
    return DraftTotals(
        subtotal=round_to_two_decimals(sum(line.amount for line in lines)),
        tax_total=round_to_two_decimals(sum(line.tax_amount for line in lines)),
        total_amount=round_to_two_decimals(sum(line.line_total for line in lines)),
    )


def group_invoice_lines(lines: list[CalculatedInvoiceLine]) -> list[LineGroup]:
    """Regroupe les lignes: location de vol d'abord, puis les frais manuels par catégorie."""
    groups: list[LineGroup] = []
    generated = [line for line in lines if line.source == "generated"]
    if generated:
        groups.append(LineGroup(id="generated", label="Flight Hire", lines=generated))
    for group in MANUAL_GROUP_ORDER:
        grouped = [
            line
            for line in lines
            if line.source == "manual" and (line.manual_group or "other") == group
        ]
        if grouped:
            groups.append(
                LineGroup(id=f"manual-{group}", label=MANUAL_GROUP_LABELS[group], lines=grouped)
            )
    return groups


def default_inclusive_rate(
    chargeable: Chargeable,
    group: str,
    tax_rate: float,
    aircraft_type_id: str | None = None,
    landing_fee_rates: list[LandingFeeRate] | None = None,
) -> float:
    """Tarif TTC proposé pour un article du catalogue.

    Pour une taxe d'atterrissage, le tarif spécifique au type d'avion prime sur le tarif de base.
    """
    rate = chargeable.rate if math.isfinite(chargeable.rate) else 0.0
    if group == "landing_fee" and aircraft_type_id:
        for fee in landing_fee_rates or []:
            if (
                fee.aircraft_type_id == aircraft_type_id
                and fee.chargeable_id == chargeable.id
                and math.isfinite(fee.rate)
            ):
                rate = fee.rate
                break
    item_tax_rate = tax_rate if chargeable.is_taxable else 0.0
    return exclusive_to_inclusive(rate, item_tax_rate)
