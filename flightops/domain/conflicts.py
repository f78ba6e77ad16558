"""
Détection des conflits de ressources (avion, instructeur) et création de réservations en série.

Chaque occurrence est vérifiée sur sa plage exacte [début, fin) auprès du service de
disponibilité du backend, qui définit le chevauchement (intersection d'intervalles semi-ouverts).
"""

from collections.abc import Callable
from typing import Any

import structlog

from flightops.domain.entities import (
    BatchCreateResult,
    FailedOccurrence,
    Occurrence,
    OccurrenceConflict,
)
from flightops.domain.errors import BookingConflictError
from flightops.infra.backend_client import BackendError

RESOLVE_CONFLICTS_MESSAGE = "Please resolve the resource conflicts before saving."


class ConflictChecker:
    """Vérifie la disponibilité d'un avion et d'un instructeur sur une ou plusieurs plages."""

    def __init__(self, backend):
        self.backend = backend
        self._log = structlog.get_logger(__name__).bind(component="conflict_checker")

    def check_range(
        self,
        start_iso: str,
        end_iso: str,
        aircraft_id: str | None,
        instructor_id: str | None,
    ) -> OccurrenceConflict:
        availability = self.backend.get_availability(start_iso, end_iso)
        aircraft = bool(aircraft_id) and aircraft_id in availability["unavailableAircraftIds"]
        instructor = (
            bool(instructor_id) and instructor_id in availability["unavailableInstructorIds"]
        )
        return OccurrenceConflict(aircraft=aircraft, instructor=instructor)

    def check_occurrences(
        self,
        occurrences: list[Occurrence],
        aircraft_id: str | None,
        instructor_id: str | None,
    ) -> dict[str, OccurrenceConflict]:
        """Conflits par occurrence, indexés par début ISO; seules les occurrences en conflit
        figurent dans le résultat. Une vérification en échec est ignorée et journalisée."""
        conflicts: dict[str, OccurrenceConflict] = {}
        for occurrence in occurrences:
            try:
                result = self.check_range(
                    occurrence.start_iso, occurrence.end_iso, aircraft_id, instructor_id
                )
            except BackendError as exc:
                self._log.warning(
                    "availability_check_failed", start=occurrence.start_iso, error=str(exc)
                )
                continue
            if result.aircraft or result.instructor:
                conflicts[occurrence.start_iso] = result
        if conflicts:
            self._log.info("occurrence_conflicts", count=len(conflicts))
        return conflicts

    def assert_no_conflicts(
        self,
        occurrences: list[Occurrence],
        aircraft_id: str | None,
        instructor_id: str | None,
    ) -> None:
        conflicts = self.check_occurrences(occurrences, aircraft_id, instructor_id)
        if conflicts:
            raise BookingConflictError(
                RESOLVE_CONFLICTS_MESSAGE,
                {key: value.model_dump() for key, value in conflicts.items()},
            )


def create_occurrences(
    backend,
    occurrences: list[Occurrence],
    make_payload: Callable[[Occurrence], dict[str, Any]],
) -> BatchCreateResult:
    """Crée une réservation par occurrence, dans l'ordre, et s'arrête au premier échec.

    Aucune annulation des réservations déjà créées: le bilan indique celles qui ont réussi,
    celle qui a échoué et celles qui n'ont jamais été envoyées.
    """
    log = structlog.get_logger(__name__).bind(component="batch_create")
    succeeded: list[Occurrence] = []
    for index, occurrence in enumerate(occurrences):
        try:
            backend.create_booking(make_payload(occurrence))
        except BackendError as exc:
            log.error(
                "occurrence_create_failed",
                start=occurrence.start_iso,
                created=len(succeeded),
                error=str(exc),
            )
            return BatchCreateResult(
                succeeded=succeeded,
                failed=FailedOccurrence(occurrence=occurrence, error=str(exc)),
                skipped=occurrences[index + 1 :],
            )
        succeeded.append(occurrence)
    log.info("occurrences_created", count=len(succeeded))
    return BatchCreateResult(succeeded=succeeded)
