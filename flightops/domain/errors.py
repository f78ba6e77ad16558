"""Exceptions métier du check-in et de la planification.

Chaque exception porte un message destiné à l'utilisateur final; la couche API les traduit en
enveloppes d'erreur standard (voir `flightops.apigw.errors`).
"""


class CheckinError(Exception):
    """Erreur métier de base (message affichable tel quel)."""

    code = "CHECKIN_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class CheckinValidationError(CheckinError):
    """Entrée invalide ou précondition non remplie; corrigeable par l'utilisateur."""

    code = "VALIDATION_ERROR"


class CheckinStateError(CheckinError):
    """Transition refusée dans l'état courant (édition en cours, déjà approuvé...)."""

    code = "INVALID_STATE"


class DraftStaleError(CheckinStateError):
    """Le brouillon ne correspond plus aux entrées courantes."""

    code = "DRAFT_STALE"


class LineItemNotFoundError(CheckinError):
    code = "LINE_ITEM_NOT_FOUND"


class BookingConflictError(CheckinError):
    """Au moins une occurrence est en conflit avec une réservation existante."""

    code = "RESOURCE_CONFLICT"

    def __init__(self, message: str, conflicts: dict | None = None) -> None:
        super().__init__(message)
        self.conflicts = conflicts or {}


class BookingValidationError(CheckinError):
    """Saisie de réservation invalide (récurrence, plage horaire)."""

    code = "VALIDATION_ERROR"
