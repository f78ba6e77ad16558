"""
Géométrie de la frise de planification et règles de réservation.

- placement proportionnel d'une réservation sur une frise (pourcentages, découpage aux bornes);
- configuration de la frise à partir des horaires d'ouverture;
- fenêtres de disponibilité des instructeurs (intervalles semi-ouverts en minutes);
- expansion et validation des réservations récurrentes.
"""

from collections.abc import Iterable, Mapping
from datetime import date, datetime, timedelta

from flightops.domain.entities import (
    BookingLayout,
    BusinessHours,
    MinutesWindow,
    Occurrence,
    TimelineConfig,
)
from flightops.domain.timezone import (
    MINUTES_PER_DAY,
    minutes_in_zone,
    minutes_to_hhmm,
    parse_time_to_minutes,
    to_utc_iso,
    zoned_datetime_to_utc,
)

INTERVAL_MINUTES = 30
MIN_SLOT_MINUTES = 5
DEFAULT_OPEN_MINUTES = 7 * 60
DEFAULT_CLOSE_MINUTES = 19 * 60


def get_booking_layout(
    booking_start: datetime,
    booking_end: datetime,
    timeline_start: datetime,
    timeline_end: datetime,
) -> BookingLayout | None:
    """Position d'une réservation sur la frise, en pourcentage de la durée affichée.

    La réservation est découpée à la fenêtre [timeline_start, timeline_end); None si la frise est
    vide ou si l'intersection est vide.
    """
    duration = (timeline_end - timeline_start).total_seconds()
    if duration <= 0:
        return None
    start = max(booking_start, timeline_start)
    end = min(booking_end, timeline_end)
    if end <= start:
        return None
    return BookingLayout(
        left_pct=(start - timeline_start).total_seconds() / duration * 100,
        width_pct=(end - start).total_seconds() / duration * 100,
    )


def build_time_slots(start: datetime, end: datetime, interval_minutes: int) -> list[datetime]:
    """Créneaux [start, end) espacés d'au moins 5 minutes."""
    step = timedelta(minutes=max(MIN_SLOT_MINUTES, interval_minutes))
    slots = []
    current = start
    while current < end:
        slots.append(current)
        current += step
    return slots


def _parse_business_minutes(value: str) -> int | None:
    # 24:00 est accepté comme fin de journée.
    if value.strip() in ("24:00", "24:00:00"):
        return MINUTES_PER_DAY
    return parse_time_to_minutes(value)


def build_timeline_config(hours: BusinessHours) -> TimelineConfig:
    """Bornes de la frise à partir des horaires d'ouverture.

    Fermé ou ouvert 24h: journée complète. Heures illisibles: 07:00-19:00. Fermeture avant
    ouverture (nuit): journée complète.
    """
    full_day = TimelineConfig(
        start_min=0, end_min=MINUTES_PER_DAY, interval_minutes=INTERVAL_MINUTES
    )
    if hours.is_closed or hours.is_24_hours:
        return full_day
    open_min = _parse_business_minutes(hours.open_time)
    close_min = _parse_business_minutes(hours.close_time)
    if open_min is None or close_min is None:
        return TimelineConfig(
            start_min=DEFAULT_OPEN_MINUTES,
            end_min=DEFAULT_CLOSE_MINUTES,
            interval_minutes=INTERVAL_MINUTES,
        )
    if close_min <= open_min:
        return full_day
    return TimelineConfig(start_min=open_min, end_min=close_min, interval_minutes=INTERVAL_MINUTES)


def timeline_bounds(day: str, config: TimelineConfig, tz_name: str) -> tuple[datetime, datetime]:
    """Instants UTC de début et de fin de la frise pour une journée locale."""
    start = zoned_datetime_to_utc(day, minutes_to_hhmm(config.start_min), tz_name)
    if config.end_min >= MINUTES_PER_DAY:
        next_day = (date.fromisoformat(day) + timedelta(days=1)).isoformat()
        end = zoned_datetime_to_utc(next_day, "00:00", tz_name)
    else:
        end = zoned_datetime_to_utc(day, minutes_to_hhmm(config.end_min), tz_name)
    return start, end


def is_minute_within_window(minute: int, window: MinutesWindow) -> bool:
    return window.start_min <= minute < window.end_min


def is_minutes_within_any_window(minute: int, windows: Iterable[MinutesWindow]) -> bool:
    return any(is_minute_within_window(minute, window) for window in windows)


def roster_windows_by_instructor(rules: Iterable[Mapping]) -> dict[str, list[MinutesWindow]]:
    """Fenêtres de service du jour par instructeur, depuis les règles de roster.

    Les règles dont une heure est illisible ou vide sont ignorées.
    """
    windows: dict[str, list[MinutesWindow]] = {}
    for rule in rules:
        instructor_id = rule.get("instructor_id")
        start_min = parse_time_to_minutes(rule.get("start_time"))
        end_min = parse_time_to_minutes(rule.get("end_time"))
        if not instructor_id or start_min is None or end_min is None or end_min <= start_min:
            continue
        windows.setdefault(instructor_id, []).append(
            MinutesWindow(start_min=start_min, end_min=end_min)
        )
    return windows


def rostered_slots(
    slots: Iterable[datetime], windows: Iterable[MinutesWindow], tz_name: str
) -> list[datetime]:
    """Créneaux dont l'heure locale tombe dans une fenêtre de service."""
    windows = list(windows)
    return [
        slot
        for slot in slots
        if is_minutes_within_any_window(minutes_in_zone(slot, tz_name), windows)
    ]


def roster_max_end_minutes(
    start_hhmm: str,
    instructor_id: str | None,
    windows_by_instructor: Mapping[str, list[MinutesWindow]] | None,
) -> int | None:
    """Fin de la fenêtre de service contenant l'heure de début, ou None."""
    if not instructor_id or not windows_by_instructor:
        return None
    windows = windows_by_instructor.get(instructor_id) or []
    start_min = parse_time_to_minutes(start_hhmm)
    if start_min is None:
        return None
    for window in windows:
        if is_minute_within_window(start_min, window):
            return window.end_min
    return None


def clamp_end_to_roster(
    start_hhmm: str,
    end_hhmm: str,
    instructor_id: str | None,
    windows_by_instructor: Mapping[str, list[MinutesWindow]] | None,
) -> str:
    """Ramène l'heure de fin à la fin de service de l'instructeur si elle la dépasse."""
    max_end = roster_max_end_minutes(start_hhmm, instructor_id, windows_by_instructor)
    end_min = parse_time_to_minutes(end_hhmm)
    if max_end is None or end_min is None or end_min <= max_end:
        return end_hhmm
    return minutes_to_hhmm(max_end)


def is_valid_time_range(start_hhmm: str, end_hhmm: str) -> bool:
    start = parse_time_to_minutes(start_hhmm)
    end = parse_time_to_minutes(end_hhmm)
    return start is not None and end is not None and end > start


def expand_recurring_occurrences(
    start_date: date,
    weekdays: Iterable[int],
    start_hhmm: str,
    end_hhmm: str,
    until: date | None,
    tz_name: str,
) -> list[Occurrence]:
    """Une occurrence par date de [start_date, until] dont le jour (0 = dimanche) est choisi.

    Les dates calendaires sont parcourues directement; chaque occurrence est ensuite convertie
    en UTC dans le fuseau de l'école, ce qui évite tout saut ou doublon aux changements d'heure.
    """
    selected = set(weekdays)
    if not selected or until is None or not is_valid_time_range(start_hhmm, end_hhmm):
        return []
    occurrences = []
    current = start_date
    while current <= until:
        if (current.weekday() + 1) % 7 in selected:
            key = current.isoformat()
            occurrences.append(
                Occurrence(
                    date=key,
                    start_iso=to_utc_iso(zoned_datetime_to_utc(key, start_hhmm, tz_name)),
                    end_iso=to_utc_iso(zoned_datetime_to_utc(key, end_hhmm, tz_name)),
                )
            )
        current += timedelta(days=1)
    return occurrences


def validate_recurrence(
    start_date: date, weekdays: Iterable[int], until: date | None
) -> dict[str, str]:
    """Erreurs de saisie d'une récurrence, indexées par champ (vide si valide)."""
    errors: dict[str, str] = {}
    if not list(weekdays):
        errors["recurring_days"] = "Select at least one day"
    if until is None:
        errors["repeat_until"] = "Repeat until date is required"
    elif until <= start_date:
        errors["repeat_until"] = "Repeat until date must be after the booking date"
    return errors
