"""
Route de consultation d'une facture persistée (en-tête école, lignes, totaux recalculés).
"""

from fastapi import APIRouter

from flightops.core.container import container
from flightops.domain.services import CheckinService

router = APIRouter(prefix="/invoices", tags=["invoices"])
service = CheckinService(container.backend, container.draft_repo, container.settings)


@router.get("/{invoice_id}")
def get_invoice(invoice_id: str):
    """Facture, lignes actives, totaux et paramètres de facturation de l'école."""
    return service.invoice_view(invoice_id)
