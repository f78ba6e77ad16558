from datetime import UTC, date, datetime
from typing import Any

import structlog

from flightops.app.metrics import (
    BACKEND_REQUEST_ERRORS,
    BOOKING_BATCH_CREATIONS,
    BOOKING_CONFLICTS,
    CHECKIN_APPROVALS,
    CHECKIN_CALCULATION_REJECTED,
    CHECKIN_CORRECTIONS,
    CHECKIN_DRAFTS_CALCULATED,
)
from flightops.domain import draft as drafting
from flightops.domain.billing import default_inclusive_rate
from flightops.domain.conflicts import ConflictChecker, create_occurrences
from flightops.domain.entities import (
    BatchCreateResult,
    BookingMeters,
    BusinessHours,
    Chargeable,
    DraftState,
    LandingFeeRate,
    MinutesWindow,
    Occurrence,
    OccurrenceConflict,
)
from flightops.domain.errors import BookingValidationError, CheckinValidationError
from flightops.domain.invoice_calculations import calculate_invoice_totals
from flightops.domain.invoicing_settings import settings_from_tenant_record
from flightops.domain.scheduling import (
    build_time_slots,
    build_timeline_config,
    clamp_end_to_roster,
    expand_recurring_occurrences,
    roster_max_end_minutes,
    roster_windows_by_instructor,
    rostered_slots,
    timeline_bounds,
    validate_recurrence,
)
from flightops.domain.timezone import (
    add_minutes_to_hhmm,
    day_of_week,
    minutes_to_hhmm,
    parse_time_to_minutes,
    resolve_date_key,
    to_utc_iso,
    zoned_datetime_to_utc,
    zoned_day_range_utc_iso,
)
from flightops.infra.backend_client import BackendError

RATE_FIELDS = ("aircraft_id", "instructor_id", "flight_type_id")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CheckinService:
    """Service métier du check-in d'une réservation.

    Responsabilités:
    - Charger tarifs et taux de taxe depuis le backend et les injecter dans les entrées.
    - Appliquer les transitions du brouillon (`flightops.domain.draft`) et le persister via
      `drafts` (mémoire ou Redis).
    - Appeler la procédure atomique d'approbation et la correction de relevés.

    En cas d'échec d'un appel externe, le brouillon stocké reste inchangé.
    """

    def __init__(self, backend, drafts, settings, clock=_utcnow):
        """Initialise le service.

        Paramètres:
        - backend: client REST du backend géré (`BackendClient`).
        - drafts: dépôt de brouillons (`InMemoryDraftRepo` / `RedisDraftRepo`).
        - settings: configuration applicative (taux par défaut, échéance, fuseau...).
        - clock: fonction renvoyant l'instant courant (UTC).
        """
        self.backend = backend
        self.drafts = drafts
        self.settings = settings
        self.clock = clock
        self._log = structlog.get_logger(__name__).bind(component="checkin_service")

    # Chargement des entrées

    def _lookup_rate(self, fetch, resource_id: str | None, flight_type_id: str | None):
        if not resource_id or not flight_type_id:
            return None
        try:
            return fetch(resource_id, flight_type_id)
        except BackendError as exc:
            BACKEND_REQUEST_ERRORS.labels("charge_rate").inc()
            self._log.warning("charge_rate_lookup_failed", resource_id=resource_id, error=str(exc))
            return None

    def _default_tax_rate(self) -> float:
        try:
            rate = self.backend.get_default_tax_rate()
        except BackendError as exc:
            BACKEND_REQUEST_ERRORS.labels("tax_rate").inc()
            self._log.warning("tax_rate_lookup_failed", error=str(exc))
            rate = None
        if rate is not None and not 0 <= rate <= 1:
            self._log.warning("tax_rate_out_of_range", rate=rate)
            rate = None
        return rate if rate is not None else self.settings.DEFAULT_TAX_RATE

    def _with_rates(self, fields: dict[str, Any]) -> dict[str, Any]:
        flight_type_id = fields.get("flight_type_id")
        return {
            **fields,
            "aircraft_charge_rate": self._lookup_rate(
                self.backend.get_aircraft_charge_rate, fields.get("aircraft_id"), flight_type_id
            ),
            "instructor_charge_rate": self._lookup_rate(
                self.backend.get_instructor_charge_rate,
                fields.get("instructor_id"),
                flight_type_id,
            ),
        }

    def get_state(self, booking_id: str) -> DraftState:
        state = self.drafts.get(booking_id)
        if state is None:
            raise KeyError("draft_not_found")
        return state

    def open_checkin(self, booking_id: str, fields: dict[str, Any]) -> DraftState:
        """Crée (ou remplace) le brouillon d'une réservation avec tarifs et taxe chargés."""
        existing = self.drafts.get(booking_id)
        if existing is not None and existing.invoice_id:
            return existing
        values = self._with_rates({**fields, "booking_id": booking_id})
        values.setdefault("tax_rate", self._default_tax_rate())
        state = drafting.new_state(drafting.build_inputs(values))
        self._log.info("checkin_opened", booking_id=booking_id)
        return self.drafts.save(state)

    def update_inputs(self, booking_id: str, changes: dict[str, Any]) -> DraftState:
        """Modifie les entrées; recharge les tarifs si avion, instructeur ou type de vol change."""
        state = self.get_state(booking_id)
        changes = {key: value for key, value in changes.items() if key != "booking_id"}
        if any(field in changes for field in RATE_FIELDS):
            merged = {**state.inputs.model_dump(), **changes}
            rates = self._with_rates(merged)
            changes["aircraft_charge_rate"] = rates["aircraft_charge_rate"]
            changes["instructor_charge_rate"] = rates["instructor_charge_rate"]
        return self.drafts.save(drafting.update_inputs(state, **changes))

    # Transitions du brouillon

    def calculate(self, booking_id: str) -> DraftState:
        state = self.get_state(booking_id)
        try:
            new_state = drafting.calculate_draft(state, self.clock())
        except CheckinValidationError:
            CHECKIN_CALCULATION_REJECTED.inc()
            raise
        CHECKIN_DRAFTS_CALCULATED.labels(new_state.draft.billing_basis.value).inc()
        return self.drafts.save(new_state)

    def begin_line_edit(self, booking_id: str, item_id: str) -> DraftState:
        return self.drafts.save(drafting.begin_line_edit(self.get_state(booking_id), item_id))

    def save_line_edit(self, booking_id: str, quantity: float, rate_inclusive: float) -> DraftState:
        state = self.get_state(booking_id)
        return self.drafts.save(drafting.save_line_edit(state, quantity, rate_inclusive))

    def cancel_line_edit(self, booking_id: str) -> DraftState:
        return self.drafts.save(drafting.cancel_line_edit(self.get_state(booking_id)))

    def remove_line(self, booking_id: str, item_id: str) -> DraftState:
        return self.drafts.save(drafting.remove_line(self.get_state(booking_id), item_id))

    def add_manual_item(
        self,
        booking_id: str,
        group: str,
        chargeable: Chargeable | None,
        quantity: float | None,
        rate_inclusive: float | None,
    ) -> DraftState:
        state = self.get_state(booking_id)
        return self.drafts.save(
            drafting.add_manual_item(state, group, chargeable, quantity, rate_inclusive)
        )

    def suggested_rate(
        self,
        booking_id: str,
        group: str,
        chargeable: Chargeable,
        aircraft_type_id: str | None = None,
        landing_fee_rates: list[LandingFeeRate] | None = None,
    ) -> float:
        """Tarif TTC proposé pour un frais du catalogue, au taux de taxe du brouillon."""
        state = self.get_state(booking_id)
        return default_inclusive_rate(
            chargeable, group, state.inputs.tax_rate, aircraft_type_id, landing_fee_rates
        )

    def discard(self, booking_id: str) -> bool:
        return self.drafts.delete(booking_id)

    # Approbation et correction

    def approve(self, booking_id: str) -> DraftState:
        """Approuve le check-in: crée la facture côté backend puis fige le brouillon.

        Raises:
            CheckinError: précondition d'approbation non remplie.
            BackendError: refus ou indisponibilité du backend (brouillon inchangé).
        """
        state = self.get_state(booking_id)
        payload = drafting.build_approval_payload(
            state, self.clock(), due_days=self.settings.CHECKIN_DUE_DAYS
        )
        try:
            invoice_id = self.backend.approve_checkin(booking_id, payload.model_dump(mode="json"))
        except BackendError:
            CHECKIN_APPROVALS.labels("failed").inc()
            raise
        CHECKIN_APPROVALS.labels("approved").inc()
        self._log.info("checkin_approved", booking_id=booking_id, invoice_id=invoice_id)
        return self.drafts.save(drafting.mark_committed(state, invoice_id))

    def correct(
        self,
        booking_id: str,
        hobbs_end: float | None,
        tach_end: float | None,
        reason: str,
    ) -> dict[str, Any]:
        """Corrige les relevés de fin d'une réservation déjà approuvée."""
        meters = BookingMeters.model_validate(self.backend.get_booking(booking_id))
        payload = drafting.build_correction_payload(
            meters,
            hobbs_end,
            tach_end,
            reason,
            min_reason_length=self.settings.CORRECTION_REASON_MIN_LEN,
        )
        result = self.backend.correct_checkin(booking_id, payload.model_dump(mode="json"))
        CHECKIN_CORRECTIONS.inc()
        self._log.info("checkin_corrected", booking_id=booking_id)
        return {
            "result": result,
            "hobbs_delta": drafting.correction_delta(meters.hobbs_start, hobbs_end),
            "tach_delta": drafting.correction_delta(meters.tach_start, tach_end),
        }

    def invoice_view(self, invoice_id: str) -> dict[str, Any]:
        """Facture persistée, ses lignes, ses totaux recalculés et l'en-tête de l'école."""
        invoice = self.backend.get_invoice(invoice_id)
        items = self.backend.get_invoice_items(invoice_id)
        settings = settings_from_tenant_record(self.backend.get_tenant_settings())
        return {
            "invoice": invoice,
            "items": items,
            "totals": calculate_invoice_totals(items),
            "settings": settings.model_dump(),
        }


class BookingService:
    """Service de planification: occurrences, conflits et création de réservations."""

    def __init__(self, backend, settings):
        self.backend = backend
        self.settings = settings
        self.conflicts = ConflictChecker(backend)
        self._log = structlog.get_logger(__name__).bind(component="booking_service")

    # Roster des instructeurs

    def roster_windows(self, day_key: str) -> dict[str, list[MinutesWindow]]:
        """Fenêtres de service du jour par instructeur; vide si le roster est illisible."""
        try:
            rules = self.backend.get_roster_rules(day_key, day_of_week(day_key))
        except BackendError as exc:
            BACKEND_REQUEST_ERRORS.labels("roster").inc()
            self._log.warning("roster_lookup_failed", day=day_key, error=str(exc))
            return {}
        return roster_windows_by_instructor(rules)

    def local_time_range(
        self, day: date, start_time: str, end_time: str, instructor_id: str | None = None
    ) -> tuple[str, str]:
        """Valide une plage locale et la normalise en `HH:MM`.

        Avec un instructeur rostéré ce jour-là, la fin ne peut dépasser sa fin de service.

        Raises:
            BookingValidationError: heure illisible, fin avant le début ou après le roster.
        """
        start_min = parse_time_to_minutes(start_time)
        end_min = parse_time_to_minutes(end_time)
        if start_min is None:
            raise BookingValidationError(f"Invalid HH:mm time: {start_time}")
        if end_min is None:
            raise BookingValidationError(f"Invalid HH:mm time: {end_time}")
        if end_min <= start_min:
            raise BookingValidationError("End time must be after start time")
        start_hhmm = minutes_to_hhmm(start_min)
        if instructor_id:
            windows = self.roster_windows(day.isoformat())
            max_end = roster_max_end_minutes(start_hhmm, instructor_id, windows)
            if max_end is not None and end_min > max_end:
                raise BookingValidationError(
                    f"Instructor is only available until {minutes_to_hhmm(max_end)}"
                )
        return start_hhmm, minutes_to_hhmm(end_min)

    def suggest_end_time(
        self,
        day: date,
        start_time: str,
        duration_minutes: int,
        instructor_id: str | None = None,
    ) -> str:
        """Fin proposée: début + durée (au plus 23:30), ramenée à la fin de service."""
        if parse_time_to_minutes(start_time) is None:
            raise BookingValidationError(f"Invalid HH:mm time: {start_time}")
        end_hhmm = add_minutes_to_hhmm(start_time, duration_minutes)
        if not instructor_id:
            return end_hhmm
        return clamp_end_to_roster(
            start_time, end_hhmm, instructor_id, self.roster_windows(day.isoformat())
        )

    # Occurrences

    def occurrences(
        self,
        start_date: date,
        weekdays: list[int],
        start_time: str,
        end_time: str,
        until: date | None,
        instructor_id: str | None = None,
    ) -> list[Occurrence]:
        errors = validate_recurrence(start_date, weekdays, until)
        if errors:
            raise BookingValidationError(next(iter(errors.values())))
        start_hhmm, end_hhmm = self.local_time_range(
            start_date, start_time, end_time, instructor_id
        )
        return expand_recurring_occurrences(
            start_date, weekdays, start_hhmm, end_hhmm, until, self.settings.SCHOOL_TIMEZONE
        )

    def single_occurrence(
        self, day: date, start_time: str, end_time: str, instructor_id: str | None = None
    ) -> Occurrence:
        start_hhmm, end_hhmm = self.local_time_range(day, start_time, end_time, instructor_id)
        key = day.isoformat()
        tz_name = self.settings.SCHOOL_TIMEZONE
        start = zoned_datetime_to_utc(key, start_hhmm, tz_name)
        end = zoned_datetime_to_utc(key, end_hhmm, tz_name)
        if end <= start:
            # plage entièrement dans le saut de l'heure d'été
            raise BookingValidationError("End time must be after start time")
        return Occurrence(date=key, start_iso=to_utc_iso(start), end_iso=to_utc_iso(end))

    # Frise

    def timeline(self, day: str | None, hours: BusinessHours) -> dict[str, Any]:
        """Bornes UTC et créneaux de la frise d'une journée locale (aujourd'hui par défaut)."""
        tz_name = self.settings.SCHOOL_TIMEZONE
        day_key = resolve_date_key(day, tz_name)
        config = build_timeline_config(hours)
        start, end = timeline_bounds(day_key, config, tz_name)
        return {
            "day": day_key,
            "config": config,
            "start": start,
            "end": end,
            "slots": build_time_slots(start, end, config.interval_minutes),
        }

    def scheduler_day(self, day: str | None, hours: BusinessHours) -> dict[str, Any]:
        """Vue d'une journée: frise, réservations qui la chevauchent, instructeurs rostérés.

        Pour chaque instructeur: ses fenêtres de service et les créneaux réservables.
        """
        view = self.timeline(day, hours)
        tz_name = self.settings.SCHOOL_TIMEZONE
        start_iso, end_iso = zoned_day_range_utc_iso(view["day"], tz_name)
        view["bookings"] = self.backend.get_bookings(start_iso, end_iso)
        view["instructors"] = {
            instructor_id: {
                "windows": windows,
                "slots": rostered_slots(view["slots"], windows, tz_name),
            }
            for instructor_id, windows in self.roster_windows(view["day"]).items()
        }
        return view

    def check_conflicts(
        self,
        occurrences: list[Occurrence],
        aircraft_id: str | None,
        instructor_id: str | None,
    ) -> dict[str, OccurrenceConflict]:
        conflicts = self.conflicts.check_occurrences(occurrences, aircraft_id, instructor_id)
        for conflict in conflicts.values():
            if conflict.aircraft:
                BOOKING_CONFLICTS.labels("aircraft").inc()
            if conflict.instructor:
                BOOKING_CONFLICTS.labels("instructor").inc()
        return conflicts

    def create(
        self, occurrences: list[Occurrence], booking: dict[str, Any]
    ) -> BatchCreateResult:
        """Vérifie les conflits puis crée une réservation par occurrence.

        `booking` porte les champs communs (avion, instructeur, type, membre, statut...);
        les bornes de chaque occurrence sont ajoutées à chaque appel.
        """
        if not occurrences:
            raise BookingValidationError("No booking occurrences to create")
        aircraft_id = booking.get("aircraft_id")
        instructor_id = booking.get("instructor_id")
        self.conflicts.assert_no_conflicts(occurrences, aircraft_id, instructor_id)

        def make_payload(occurrence: Occurrence) -> dict[str, Any]:
            return {
                **booking,
                "start_time": occurrence.start_iso,
                "end_time": occurrence.end_iso,
            }

        result = create_occurrences(self.backend, occurrences, make_payload)
        BOOKING_BATCH_CREATIONS.labels("complete" if result.complete else "partial").inc()
        return result
