"""Client REST du backend géré de l'école (tarifs, disponibilités, factures, procédures).

Objectif du module
------------------
- Encapsuler les appels HTTP (httpx) vers les endpoints générés et les procédures atomiques.
- Extraire un message lisible des réponses d'erreur (`error` + premier élément de `details`).
- Rejouer les lectures en cas d'erreur 5xx ou réseau (backoff exponentiel + jitter). Les
  écritures (approbation, création, correction) ne sont jamais rejouées automatiquement.
"""

from __future__ import annotations

import random as _rand
import time as _t
from collections.abc import Callable
from typing import Any

import httpx
import structlog

from flightops.core.http_constants import (
    HTTP_STATUS_SERVER_ERROR_MAX,
    HTTP_STATUS_SERVER_ERROR_MIN,
    MAX_RETRY_ATTEMPTS,
    RETRY_BASE_DELAY,
    RETRY_RANDOM_FACTOR,
)
from flightops.domain.entities import ChargeRate

DEFAULT_ERROR_MESSAGE = "Request failed"


class BackendError(RuntimeError):
    """Erreur de base des appels au backend."""


class BackendHTTPError(BackendError):
    """Réponse non-2xx du backend (message extrait du corps)."""

    def __init__(self, status_code: int, message: str | None = None) -> None:
        self.status_code = status_code
        self.message = message or DEFAULT_ERROR_MESSAGE
        super().__init__(self.message)


class BackendNetworkError(BackendError):
    """Échec de transport (timeout, connexion) après épuisement des tentatives."""


def extract_error_message(response: httpx.Response) -> str:
    """Message d'erreur du corps JSON: `error`, complété par `path - message` du premier détail."""
    try:
        data = response.json()
    except ValueError:
        return DEFAULT_ERROR_MESSAGE
    if not isinstance(data, dict):
        return DEFAULT_ERROR_MESSAGE
    message = data["error"] if isinstance(data.get("error"), str) else DEFAULT_ERROR_MESSAGE
    details = data.get("details")
    if isinstance(details, list) and details:
        first = details[0] if isinstance(details[0], dict) else {}
        path = first.get("path")
        issue = first.get("message")
        if isinstance(issue, str):
            if isinstance(path, list) and path:
                message = f"{message}: {'.'.join(str(p) for p in path)} - {issue}"
            else:
                message = f"{message}: {issue}"
    return message


class BackendClient:
    """Client synchrone du backend.

    Paramètres:
    - base_url: URL racine (ex: `http://localhost:54321`).
    - api_key: jeton transmis en `Authorization: Bearer`.
    - transport: transport httpx injectable (tests via `httpx.MockTransport`).
    - sleep: fonction d'attente entre tentatives (remplaçable en test).
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout_s: float = 5.0,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = _t.sleep,
    ) -> None:
        headers: dict[str, str] = {"Content-Type": "application/json", "cache-control": "no-store"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        timeout = httpx.Timeout(connect=timeout_s, read=timeout_s, write=timeout_s, pool=timeout_s)
        limits = httpx.Limits(max_keepalive_connections=20, max_connections=50)
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            limits=limits,
            transport=transport,
        )
        self._sleep = sleep
        self._log = structlog.get_logger(__name__).bind(component="backend_client")

    def close(self) -> None:
        self._client.close()

    def _backoff(self, attempts: int) -> None:
        delay = (2 ** (attempts - 1)) * RETRY_BASE_DELAY + _rand.random() * RETRY_RANDOM_FACTOR
        self._sleep(delay)

    def _request(self, method: str, path: str, *, retry: bool, **kwargs: Any) -> Any:
        max_attempts = MAX_RETRY_ATTEMPTS if retry else 1
        attempts = 0
        while True:
            attempts += 1
            try:
                resp = self._client.request(method, path, **kwargs)
            except httpx.HTTPError as exc:
                if attempts < max_attempts:
                    self._backoff(attempts)
                    continue
                self._log.error("backend_network_error", method=method, path=path, error=str(exc))
                raise BackendNetworkError(str(exc)) from exc
            if resp.is_success:
                return resp.json() if resp.content else {}
            is_server_error = (
                HTTP_STATUS_SERVER_ERROR_MIN <= resp.status_code < HTTP_STATUS_SERVER_ERROR_MAX
            )
            if is_server_error and attempts < max_attempts:
                self._backoff(attempts)
                continue
            message = extract_error_message(resp)
            self._log.warning(
                "backend_http_error",
                method=method,
                path=path,
                status_code=resp.status_code,
                error_message=message,
            )
            raise BackendHTTPError(resp.status_code, message)

    def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return self._request("GET", path, retry=True, params=params)

    def _post(self, path: str, payload: dict[str, Any]) -> Any:
        return self._request("POST", path, retry=False, json=payload)

    # Lectures

    def get_aircraft_charge_rate(self, aircraft_id: str, flight_type_id: str) -> ChargeRate | None:
        data = self._get(
            "/api/aircraft-charge-rates",
            params={"aircraft_id": aircraft_id, "flight_type_id": flight_type_id},
        )
        rate = data.get("charge_rate")
        return ChargeRate.model_validate(rate) if rate else None

    def get_instructor_charge_rate(
        self, instructor_id: str, flight_type_id: str
    ) -> ChargeRate | None:
        data = self._get(
            "/api/instructor-charge-rates",
            params={"instructor_id": instructor_id, "flight_type_id": flight_type_id},
        )
        rate = data.get("charge_rate")
        return ChargeRate.model_validate(rate) if rate else None

    def get_default_tax_rate(self) -> float | None:
        """Taux de taxe par défaut de l'école, ou None si absent ou hors de [0, 1]."""
        data = self._get("/api/tax-rates", params={"is_default": "true"})
        rates = data.get("tax_rates") or []
        if not rates:
            return None
        try:
            rate = float(rates[0]["rate"])
        except (KeyError, TypeError, ValueError):
            return None
        if not 0 <= rate <= 1:
            # ex. 15 pour 15 %
            self._log.warning("tax_rate_out_of_range", rate=rate)
            return None
        return rate

    def get_availability(self, start_iso: str, end_iso: str) -> dict[str, list[str]]:
        """Ressources indisponibles sur [start, end)."""
        data = self._get(
            "/api/bookings/availability",
            params={"start_time": start_iso, "end_time": end_iso},
        )
        return {
            "unavailableAircraftIds": list(data.get("unavailableAircraftIds") or []),
            "unavailableInstructorIds": list(data.get("unavailableInstructorIds") or []),
        }

    def get_roster_rules(self, date_key: str, day_of_week: int) -> list[dict[str, Any]]:
        """Règles de roster actives, non annulées et en vigueur à la date donnée."""
        data = self._get(
            "/api/roster_rules",
            params={"day_of_week": day_of_week, "effective_on": date_key},
        )
        return list(data.get("roster_rules") or [])

    def get_bookings(self, start_iso: str, end_iso: str) -> list[dict[str, Any]]:
        """Réservations qui chevauchent [start, end)."""
        data = self._get(
            "/api/bookings",
            params={"start_time": start_iso, "end_time": end_iso},
        )
        return list(data.get("bookings") or [])

    def get_invoice(self, invoice_id: str) -> dict[str, Any]:
        return self._get(f"/api/invoices/{invoice_id}").get("invoice") or {}

    def get_invoice_items(self, invoice_id: str) -> list[dict[str, Any]]:
        data = self._get("/api/invoice_items", params={"invoice_id": invoice_id})
        return list(data.get("invoice_items") or [])

    def get_booking(self, booking_id: str) -> dict[str, Any]:
        return self._get(f"/api/bookings/{booking_id}").get("booking") or {}

    def get_tenant_settings(self) -> dict[str, Any]:
        """Enregistrement brut du tenant et de ses paramètres.

        Forme: `{"tenant": {name, billing_address, ..., settings}, "tenant_settings": {...}}`.
        """
        data = self._get("/api/tenant")
        return {
            "tenant": data.get("tenant") or None,
            "tenant_settings": data.get("tenant_settings") or None,
        }

    # Écritures (jamais rejouées)

    def approve_checkin(self, booking_id: str, payload: dict[str, Any]) -> str:
        """Appelle la procédure atomique d'approbation; renvoie l'id de la facture créée."""
        data = self._post(f"/api/bookings/{booking_id}/checkin/approve", payload)
        invoice = data.get("invoice") or {}
        invoice_id = invoice.get("id")
        if not invoice_id:
            raise BackendHTTPError(
                HTTP_STATUS_SERVER_ERROR_MIN, "Approval did not return an invoice"
            )
        return str(invoice_id)

    def create_booking(self, payload: dict[str, Any]) -> dict[str, Any]:
        data = self._post("/api/bookings", payload)
        return data.get("booking") or data

    def correct_checkin(self, booking_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        return self._post(f"/api/bookings/{booking_id}/checkin/correct", payload)
