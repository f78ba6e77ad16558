"""
Primitives de calcul monétaire des factures.

Arrondis commerciaux (demi vers le haut) au centime et au dixième d'heure, calcul des montants
d'une ligne, totaux d'une facture et conversions TTC <-> HT.

Ordre de calcul d'une ligne (attendu par l'interface de facturation):
1) taux TTC arrondi à 2 décimales,
2) total ligne = quantité x taux TTC (2 décimales),
3) montant HT recalculé depuis le total (2 décimales),
4) taxe = total - HT (2 décimales).
"""

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

_CENT = Decimal("0.01")
_TENTH = Decimal("0.1")


def _round_half_up(value: float, quantum: Decimal) -> float:
    if not math.isfinite(value):
        return value
    # repr() donne la plus courte écriture décimale du flottant (1.005 -> "1.005").
    return float(Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def round_to_two_decimals(value: float) -> float:
    """Arrondit au centime (demi vers le haut)."""
    return _round_half_up(value, _CENT)


def round_to_tenth(value: float) -> float:
    """Arrondit au dixième (heures de vol)."""
    return _round_half_up(value, _TENTH)


@dataclass(frozen=True)
class ItemAmounts:
    amount: float
    tax_amount: float
    rate_inclusive: float
    line_total: float


def calculate_item_amounts(quantity: float, unit_price: float, tax_rate: float) -> ItemAmounts:
    """Calcule les montants d'une ligne.

    Raises:
        ValueError: quantité <= 0, prix négatif ou taux hors de [0, 1].
    """
    if quantity <= 0:
        raise ValueError("Quantity must be positive")
    if unit_price < 0:
        raise ValueError("Unit price cannot be negative")
    if tax_rate < 0 or tax_rate > 1:
        raise ValueError("Tax rate must be between 0 and 1")

    rate_inclusive = round_to_two_decimals(unit_price * (1 + tax_rate))
    line_total = round_to_two_decimals(quantity * rate_inclusive)
    amount = round_to_two_decimals(line_total / (1 + tax_rate))
    tax_amount = round_to_two_decimals(line_total - amount)
    return ItemAmounts(
        amount=amount,
        tax_amount=tax_amount,
        rate_inclusive=rate_inclusive,
        line_total=line_total,
    )


def calculate_invoice_totals(items: Iterable[Mapping[str, Any]]) -> dict[str, float]:
    """Totaux d'une facture persistée (les lignes supprimées sont ignorées).

    Les montants stockés sont prioritaires; sinon ils sont recalculés depuis quantité, prix et
    taux.
    """
    subtotal = 0.0
    tax_total = 0.0
    for item in items:
        if item.get("deleted_at"):
            continue
        amount = item.get("amount")
        if amount is None:
            amount = round_to_two_decimals(float(item["quantity"]) * float(item["unit_price"]))
        tax_amount = item.get("tax_amount")
        if tax_amount is None:
            tax_amount = round_to_two_decimals(float(amount) * float(item.get("tax_rate") or 0))
        subtotal = round_to_two_decimals(subtotal + float(amount))
        tax_total = round_to_two_decimals(tax_total + float(tax_amount))
    return {
        "subtotal": subtotal,
        "tax_total": tax_total,
        "total_amount": round_to_two_decimals(subtotal + tax_total),
    }


def exclusive_to_inclusive(unit_price: float, tax_rate: float) -> float:
    """Prix HT -> prix TTC (2 décimales)."""
    if tax_rate <= 0:
        return round_to_two_decimals(unit_price)
    return round_to_two_decimals(unit_price * (1 + tax_rate))


def inclusive_to_exclusive(rate_inclusive: float, tax_rate: float) -> float:
    """Prix TTC -> prix HT (2 décimales)."""
    if tax_rate <= 0:
        return round_to_two_decimals(rate_inclusive)
    return round_to_two_decimals(rate_inclusive / (1 + tax_rate))
