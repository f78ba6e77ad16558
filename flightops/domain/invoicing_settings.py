"""Résolution des paramètres d'en-tête et de pied de facture de l'école.

Les paramètres sont lus dans le JSON de configuration du tenant (puis dans l'ancien format), en
cherchant d'abord dans les sous-objets `invoicing` et `invoice`, puis à la racine. Plusieurs
alias de clés sont acceptés par champ; à défaut, on retombe sur les champs d'identité du tenant
puis sur des valeurs par défaut.
"""

import math
from typing import Any

from pydantic import BaseModel, ConfigDict

DEFAULT_SCHOOL_NAME = "Flight School"
DEFAULT_INVOICE_FOOTER = "Thank you for your business."
DEFAULT_PAYMENT_TERMS = "Payment terms: Net 30 days."

SCHOOL_NAME_KEYS = ("school_name", "schoolName", "business_name", "businessName")
BILLING_ADDRESS_KEYS = ("billing_address", "billingAddress", "address", "school_address")
CONTACT_EMAIL_KEYS = (
    "contact_email",
    "contactEmail",
    "email_from_address",
    "email_reply_to",
    "invoice_email",
)
CONTACT_PHONE_KEYS = ("contact_phone", "contactPhone", "phone", "invoice_phone")
GST_NUMBER_KEYS = ("gst_number", "gstNumber", "tax_number", "taxNumber")
PAYMENT_TERMS_DAYS_KEYS = ("payment_terms_days", "paymentTermsDays")
PAYMENT_TERMS_KEYS = (
    "payment_terms_message",
    "payment_terms",
    "paymentTerms",
    "invoice_payment_terms",
)
INVOICE_FOOTER_KEYS = ("invoice_footer_message", "invoice_footer", "invoiceFooter")


class InvoicingSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    school_name: str = DEFAULT_SCHOOL_NAME
    billing_address: str = ""
    gst_number: str = ""
    contact_phone: str = ""
    contact_email: str = ""
    invoice_footer: str = DEFAULT_INVOICE_FOOTER
    payment_terms: str = DEFAULT_PAYMENT_TERMS


def _normalize(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def _containers(settings: Any) -> list[dict[str, Any]]:
    if not isinstance(settings, dict):
        return []
    found = [
        settings[key] for key in ("invoicing", "invoice") if isinstance(settings.get(key), dict)
    ]
    found.append(settings)
    return found


def _read_string(containers: list[dict[str, Any]], keys: tuple[str, ...]) -> str | None:
    for container in containers:
        for key in keys:
            value = _normalize(container.get(key))
            if value:
                return value
    return None


def _read_number(containers: list[dict[str, Any]], keys: tuple[str, ...]) -> float | None:
    for container in containers:
        for key in keys:
            value = container.get(key)
            if isinstance(value, bool):
                continue
            if isinstance(value, int | float) and math.isfinite(value):
                return float(value)
            if isinstance(value, str):
                try:
                    parsed = float(value)
                except ValueError:
                    continue
                if math.isfinite(parsed):
                    return parsed
    return None


def resolve_invoicing_settings(
    tenant_settings: Any = None,
    legacy_tenant_settings: Any = None,
    *,
    tenant_name: str | None = None,
    tenant_billing_address: str | None = None,
    tenant_address: str | None = None,
    tenant_contact_email: str | None = None,
    tenant_contact_phone: str | None = None,
    tenant_gst_number: str | None = None,
) -> InvoicingSettings:
    containers = _containers(tenant_settings) + _containers(legacy_tenant_settings)

    days = _read_number(containers, PAYMENT_TERMS_DAYS_KEYS)
    payment_terms = _read_string(containers, PAYMENT_TERMS_KEYS)
    if payment_terms is None:
        payment_terms = (
            f"Payment terms: Net {max(0, int(math.floor(days + 0.5)))} days."
            if days is not None
            else DEFAULT_PAYMENT_TERMS
        )

    return InvoicingSettings(
        school_name=_read_string(containers, SCHOOL_NAME_KEYS)
        or _normalize(tenant_name)
        or DEFAULT_SCHOOL_NAME,
        billing_address=_read_string(containers, BILLING_ADDRESS_KEYS)
        or _normalize(tenant_billing_address)
        or _normalize(tenant_address)
        or "",
        gst_number=_read_string(containers, GST_NUMBER_KEYS) or _normalize(tenant_gst_number) or "",
        contact_phone=_read_string(containers, CONTACT_PHONE_KEYS)
        or _normalize(tenant_contact_phone)
        or "",
        contact_email=_read_string(containers, CONTACT_EMAIL_KEYS)
        or _normalize(tenant_contact_email)
        or "",
        invoice_footer=_read_string(containers, INVOICE_FOOTER_KEYS) or DEFAULT_INVOICE_FOOTER,
        payment_terms=payment_terms,
    )


def settings_from_tenant_record(record: dict[str, Any]) -> InvoicingSettings:
    """Résout les paramètres depuis la réponse brute `{tenant, tenant_settings}` du backend."""
    tenant = record.get("tenant")
    if not isinstance(tenant, dict):
        return InvoicingSettings()
    tenant_settings = record.get("tenant_settings") or {}
    return resolve_invoicing_settings(
        tenant_settings.get("settings") if isinstance(tenant_settings, dict) else None,
        tenant.get("settings"),
        tenant_name=tenant.get("name"),
        tenant_billing_address=tenant.get("billing_address"),
        tenant_address=tenant.get("address"),
        tenant_contact_email=tenant.get("contact_email"),
        tenant_contact_phone=tenant.get("contact_phone"),
        tenant_gst_number=tenant.get("gst_number"),
    )
