"""
Routes de planification: occurrences, conflits, création de réservations et frise horaire.

Les heures saisies sont locales au fuseau de l'école; toutes les bornes renvoyées sont en UTC
(ISO-8601, suffixe `Z`).
"""

from fastapi import APIRouter

from flightops.api.schemas import (
    BatchCreateResponse,
    BookingCreateRequest,
    ConflictCheckRequest,
    EndTimeRequest,
    LayoutRequest,
    OccurrencesResponse,
    RecurrenceRequest,
)
from flightops.core.container import container
from flightops.domain.entities import BusinessHours, Occurrence
from flightops.domain.scheduling import get_booking_layout
from flightops.domain.services import BookingService
from flightops.domain.timezone import to_utc_iso

router = APIRouter(tags=["scheduling"])
service = BookingService(container.backend, container.settings)


def _occurrences(payload: RecurrenceRequest) -> list[Occurrence]:
    # Seules les requêtes avec instructeur sont bornées par son roster.
    instructor_id = getattr(payload, "instructor_id", None)
    if payload.recurring:
        return service.occurrences(
            payload.date,
            payload.weekdays,
            payload.start_time,
            payload.end_time,
            payload.repeat_until,
            instructor_id,
        )
    return [
        service.single_occurrence(
            payload.date, payload.start_time, payload.end_time, instructor_id
        )
    ]


@router.post("/bookings/occurrences", response_model=OccurrencesResponse)
def preview_occurrences(payload: RecurrenceRequest):
    """Développe une plage (unique ou hebdomadaire) en occurrences UTC."""
    return {"occurrences": _occurrences(payload)}


@router.post("/bookings/conflicts")
def check_conflicts(payload: ConflictCheckRequest):
    """
    Vérifie la disponibilité de l'avion et de l'instructeur pour chaque occurrence.

    Retour: `{occurrences, conflicts}` où `conflicts` est indexé par début ISO de l'occurrence.
    """
    occurrences = _occurrences(payload)
    conflicts = service.check_conflicts(occurrences, payload.aircraft_id, payload.instructor_id)
    return {
        "occurrences": [occurrence.model_dump() for occurrence in occurrences],
        "conflicts": {key: value.model_dump() for key, value in conflicts.items()},
    }


@router.post("/bookings", response_model=BatchCreateResponse)
def create_bookings(payload: BookingCreateRequest):
    """Crée une réservation par occurrence, après vérification des conflits."""
    result = service.create(_occurrences(payload), payload.booking_fields())
    return {"result": result, "complete": result.complete}


def _hours(open_time: str, close_time: str, is_closed: bool, is_24_hours: bool) -> BusinessHours:
    return BusinessHours(
        open_time=open_time,
        close_time=close_time,
        is_closed=is_closed,
        is_24_hours=is_24_hours,
    )


def _timeline_response(view: dict) -> dict:
    return {
        "day": view["day"],
        "config": view["config"].model_dump(),
        "start": to_utc_iso(view["start"]),
        "end": to_utc_iso(view["end"]),
        "slots": [to_utc_iso(slot) for slot in view["slots"]],
    }


@router.get("/scheduling/timeline")
def timeline(
    day: str | None = None,
    open_time: str = "07:00",
    close_time: str = "19:00",
    is_closed: bool = False,
    is_24_hours: bool = False,
):
    """Bornes UTC et créneaux de la frise d'une journée selon les horaires d'ouverture.

    Un `day` absent ou illisible désigne la date du jour dans le fuseau de l'école.
    """
    view = service.timeline(day, _hours(open_time, close_time, is_closed, is_24_hours))
    return _timeline_response(view)


@router.get("/scheduling/day")
def scheduler_day(
    day: str | None = None,
    open_time: str = "07:00",
    close_time: str = "19:00",
    is_closed: bool = False,
    is_24_hours: bool = False,
):
    """
    Journée du planning: frise, réservations existantes et instructeurs rostérés.

    Retour: la frise de `/scheduling/timeline` plus `bookings` et `instructors`, indexé par
    instructeur avec ses fenêtres de service et les créneaux UTC réservables.
    """
    view = service.scheduler_day(day, _hours(open_time, close_time, is_closed, is_24_hours))
    return {
        **_timeline_response(view),
        "bookings": view["bookings"],
        "instructors": {
            instructor_id: {
                "windows": [window.model_dump() for window in entry["windows"]],
                "slots": [to_utc_iso(slot) for slot in entry["slots"]],
            }
            for instructor_id, entry in view["instructors"].items()
        },
    }


@router.post("/scheduling/end-time")
def suggest_end_time(payload: EndTimeRequest):
    """Heure de fin proposée pour un début et une durée, dans la limite du roster."""
    end_time = service.suggest_end_time(
        payload.date, payload.start_time, payload.duration_minutes, payload.instructor_id
    )
    return {"end_time": end_time}


@router.post("/scheduling/layout")
def layout(payload: LayoutRequest):
    """Position d'une réservation sur la frise (pourcentages), ou `null` si hors fenêtre."""
    result = get_booking_layout(
        payload.booking_start,
        payload.booking_end,
        payload.timeline_start,
        payload.timeline_end,
    )
    return {"layout": result.model_dump() if result else None}
