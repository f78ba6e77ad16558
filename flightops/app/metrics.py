"""
Métriques Prometheus pour l'application.

Ce module définit les métriques HTTP et métier (brouillons de check-in, approbations,
conflits de réservation, créations en série) et expose `/metrics`.
"""

import time

from fastapi import APIRouter, Request
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

metrics_router = APIRouter()

REQUEST_COUNT = Counter(
    "http_requests_total", "Total HTTP requests", ["method", "route", "status"]
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds", "Latency of HTTP requests", ["route"]
)

# Business/check-in metrics
CHECKIN_DRAFTS_CALCULATED = Counter(
    "checkin_drafts_calculated_total",
    "Check-in draft invoices calculated",
    ["basis"],
)
CHECKIN_CALCULATION_REJECTED = Counter(
    "checkin_calculation_rejected_total",
    "Check-in calculations rejected by a precondition",
)
CHECKIN_APPROVALS = Counter(
    "checkin_approvals_total",
    "Check-in approval attempts by outcome",
    ["outcome"],
)
CHECKIN_CORRECTIONS = Counter(
    "checkin_corrections_total",
    "Post-approval meter corrections submitted",
)
BACKEND_REQUEST_ERRORS = Counter(
    "backend_request_errors_total",
    "Errors returned by the managed backend",
    ["kind"],
)

# Scheduling metrics
BOOKING_CONFLICTS = Counter(
    "booking_conflicts_total",
    "Occurrences found in conflict with an existing booking",
    ["resource"],
)
BOOKING_BATCH_CREATIONS = Counter(
    "booking_batch_creations_total",
    "Recurring booking batches by outcome",
    ["outcome"],
)


@metrics_router.get("/metrics")
def metrics():
    """
    Expose les métriques Prometheus au format texte.

    Returns:
        Response: Réponse HTTP contenant les métriques au format Prometheus.
    """
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


def route_label(request: Request) -> str:
    """Gabarit de la route (ex: `/bookings/{booking_id}/checkin`) pour borner la cardinalité."""
    route = request.scope.get("route")
    path = getattr(route, "path", None)
    return path or request.scope.get("path", "unknown")


class PrometheusMiddleware(BaseHTTPMiddleware):
    """
    Middleware Prometheus pour mesurer les métriques HTTP.

    Collecte les métriques de comptage des requêtes et de latence par route pour l'exposition
    Prometheus.
    """

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        response: Response = await call_next(request)
        route = route_label(request)
        REQUEST_COUNT.labels(request.method, route, str(response.status_code)).inc()
        REQUEST_LATENCY.labels(route).observe(time.perf_counter() - start)
        return response
