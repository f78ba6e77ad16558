"""
Utilitaires de dates locales de l'école et de conversion vers UTC.

Les dates circulent sous forme de clés `YYYY-MM-DD` et les heures sous forme `HH:MM`, toujours
interprétées dans le fuseau IANA de l'école. Les instants échangés avec le backend sont des
chaînes ISO-8601 UTC.
"""

import re
from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo

DATE_KEY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
TIME_HHMM_PATTERN = re.compile(r"^\d{2}:\d{2}$")
TIME_FLEXIBLE_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")

MINUTES_PER_DAY = 24 * 60
LATEST_END_MINUTES = 23 * 60 + 30


def parse_date_key(value: str) -> date | None:
    """`YYYY-MM-DD` -> date, ou None si le format ou la date est invalide (ex: 2025-02-30)."""
    if not isinstance(value, str) or not DATE_KEY_PATTERN.match(value):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def is_valid_date_key(value: str) -> bool:
    return parse_date_key(value) is not None


def _require_date(value: str) -> date:
    parsed = parse_date_key(value)
    if parsed is None:
        raise ValueError(f"Invalid date key: {value}")
    return parsed


def add_days(date_key: str, days: int) -> str:
    return (_require_date(date_key) + timedelta(days=days)).isoformat()


def day_of_week(date_key: str) -> int:
    """Jour de la semaine, 0 = dimanche ... 6 = samedi."""
    return (_require_date(date_key).weekday() + 1) % 7


def _parse_hhmm(value: str) -> tuple[int, int]:
    if not isinstance(value, str) or not TIME_HHMM_PATTERN.match(value):
        raise ValueError(f"Invalid HH:mm time: {value}")
    hour, minute = (int(part) for part in value.split(":"))
    if hour > 23 or minute > 59:
        raise ValueError(f"Invalid HH:mm time: {value}")
    return hour, minute


def zoned_datetime_to_utc(date_key: str, time_hhmm: str, tz_name: str) -> datetime:
    """Heure murale locale -> instant UTC.

    Une heure inexistante (saut de l'heure d'été) est décalée vers l'avant de la durée du saut.
    """
    day = _require_date(date_key)
    hour, minute = _parse_hhmm(time_hhmm)
    tz = ZoneInfo(tz_name)
    local = datetime(day.year, day.month, day.day, hour, minute, tzinfo=tz)
    return local.astimezone(UTC)


def to_utc_iso(value: datetime) -> str:
    """Format ISO-8601 UTC en millisecondes avec suffixe `Z`."""
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def zoned_day_range_utc_iso(date_key: str, tz_name: str) -> tuple[str, str]:
    """Bornes UTC [minuit local, minuit local du lendemain) d'une journée."""
    start = zoned_datetime_to_utc(date_key, "00:00", tz_name)
    end = zoned_datetime_to_utc(add_days(date_key, 1), "00:00", tz_name)
    return to_utc_iso(start), to_utc_iso(end)


def zoned_today(tz_name: str, now: datetime | None = None) -> str:
    current = now or datetime.now(UTC)
    return current.astimezone(ZoneInfo(tz_name)).date().isoformat()


def minutes_in_zone(value: datetime, tz_name: str) -> int:
    """Minutes depuis minuit, heure murale de l'école, d'un instant."""
    local = value.astimezone(ZoneInfo(tz_name))
    return local.hour * 60 + local.minute


def resolve_date_key(value: str | None, tz_name: str) -> str:
    """Clé fournie si valide, sinon la date du jour dans le fuseau de l'école."""
    if value and is_valid_date_key(value):
        return value
    return zoned_today(tz_name)


def _match_time(value: str | None) -> tuple[int, int, int] | None:
    if not value:
        return None
    match = TIME_FLEXIBLE_PATTERN.match(value.strip())
    if not match:
        return None
    hours = int(match.group(1))
    minutes = int(match.group(2))
    seconds = int(match.group(3) or 0)
    if hours > 23 or minutes > 59 or seconds > 59:
        return None
    return hours, minutes, seconds


def parse_time_to_minutes(value: str | None) -> int | None:
    """"H:MM" ou "HH:MM:SS" -> minutes depuis minuit (secondes ignorées)."""
    parts = _match_time(value)
    if parts is None:
        return None
    hours, minutes, _ = parts
    return hours * 60 + minutes


def minutes_to_hhmm(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def add_minutes_to_hhmm(time_hhmm: str, minutes_to_add: int) -> str:
    """Ajoute des minutes à une heure, plafonné à 23:30; une heure invalide est renvoyée telle
    quelle."""
    start = parse_time_to_minutes(time_hhmm)
    if start is None:
        return time_hhmm
    return minutes_to_hhmm(min(start + minutes_to_add, LATEST_END_MINUTES))
