"""
Routes du check-in: constructeur de facture d'une réservation.

Ce module regroupe les endpoints `/bookings/{booking_id}/checkin` pour ouvrir le check-in, modifier
les entrées, calculer le brouillon, éditer les lignes, approuver et corriger les relevés.
"""

from fastapi import APIRouter, HTTPException

from flightops.api.schemas import (
    CheckinInputsPatch,
    CheckinOpenRequest,
    CorrectionRequest,
    LineEditRequest,
    ManualItemRequest,
    draft_state_response,
)
from flightops.core.container import container
from flightops.core.http_constants import HTTP_NOT_FOUND
from flightops.domain.services import CheckinService

router = APIRouter(prefix="/bookings/{booking_id}/checkin", tags=["checkin"])
service = CheckinService(container.backend, container.draft_repo, container.settings)


def _not_found() -> HTTPException:
    return HTTPException(status_code=HTTP_NOT_FOUND, detail="Check-in draft not found")


@router.post("")
def open_checkin(booking_id: str, payload: CheckinOpenRequest):
    """
    Ouvre (ou réinitialise) le check-in d'une réservation.

    Les tarifs de l'avion et de l'instructeur sont chargés depuis le backend; le taux de taxe par
    défaut de l'école est utilisé si `tax_rate` n'est pas fourni.
    """
    state = service.open_checkin(booking_id, payload.model_dump(exclude_none=True))
    return draft_state_response(state)


@router.get("")
def get_checkin(booking_id: str):
    try:
        return draft_state_response(service.get_state(booking_id))
    except KeyError as err:
        raise _not_found() from err


@router.patch("/inputs")
def patch_inputs(booking_id: str, payload: CheckinInputsPatch):
    """Modifie les entrées; un brouillon calculé devient obsolète si la signature change."""
    try:
        state = service.update_inputs(booking_id, payload.model_dump(exclude_unset=True))
    except KeyError as err:
        raise _not_found() from err
    return draft_state_response(state)


@router.post("/calculate")
def calculate(booking_id: str):
    try:
        return draft_state_response(service.calculate(booking_id))
    except KeyError as err:
        raise _not_found() from err


@router.post("/lines/{item_id}/edit")
def begin_line_edit(booking_id: str, item_id: str):
    try:
        return draft_state_response(service.begin_line_edit(booking_id, item_id))
    except KeyError as err:
        raise _not_found() from err


@router.put("/lines/edit")
def save_line_edit(booking_id: str, payload: LineEditRequest):
    """Enregistre la ligne en cours d'édition (quantité, tarif TTC)."""
    try:
        state = service.save_line_edit(booking_id, payload.quantity, payload.rate_inclusive)
    except KeyError as err:
        raise _not_found() from err
    return draft_state_response(state)


@router.delete("/lines/edit")
def cancel_line_edit(booking_id: str):
    try:
        return draft_state_response(service.cancel_line_edit(booking_id))
    except KeyError as err:
        raise _not_found() from err


@router.delete("/lines/{item_id}")
def remove_line(booking_id: str, item_id: str):
    try:
        return draft_state_response(service.remove_line(booking_id, item_id))
    except KeyError as err:
        raise _not_found() from err


@router.post("/manual-items")
def add_manual_item(booking_id: str, payload: ManualItemRequest):
    """Ajoute un frais manuel (atterrissage, airways, divers)."""
    try:
        rate_inclusive = payload.rate_inclusive
        if rate_inclusive is None and payload.chargeable is not None:
            rate_inclusive = service.suggested_rate(
                booking_id,
                payload.group,
                payload.chargeable,
                payload.aircraft_type_id,
                payload.landing_fee_rates,
            )
        state = service.add_manual_item(
            booking_id, payload.group, payload.chargeable, payload.quantity, rate_inclusive
        )
    except KeyError as err:
        raise _not_found() from err
    return draft_state_response(state)


@router.post("/approve")
def approve(booking_id: str):
    """
    Approuve le check-in et crée la facture via la procédure atomique du backend.

    Retour: vue du brouillon figé, avec `invoice_id` renseigné.
    """
    try:
        return draft_state_response(service.approve(booking_id))
    except KeyError as err:
        raise _not_found() from err


@router.post("/correct")
def correct(booking_id: str, payload: CorrectionRequest):
    """Corrige les relevés de fin d'un check-in déjà approuvé (motif obligatoire)."""
    return service.correct(booking_id, payload.hobbs_end, payload.tach_end, payload.reason)


@router.delete("")
def discard(booking_id: str):
    if not service.discard(booking_id):
        raise HTTPException(status_code=HTTP_NOT_FOUND, detail="Check-in draft not found")
    return {"discarded": True}
