"""
Application principale FastAPI.

Ce module assemble tous les composants de l'application : middlewares, gestionnaires d'erreurs,
routes et métriques du service de check-in et de planification.

Responsabilités du module:
- Initialiser le logging structuré
- Construire l'application FastAPI avec son titre/debug
- Ajouter les middlewares (request id, métriques, timing)
- Enregistrer les gestionnaires d'erreurs (enveloppe standard)
- Monter les routers (santé, check-in, planification, factures, métriques)
"""

from __future__ import annotations

from fastapi import FastAPI

from flightops.api.routes_checkin import router as checkin_router
from flightops.api.routes_health import router as health_router
from flightops.api.routes_invoices import router as invoices_router
from flightops.api.routes_scheduling import router as scheduling_router
from flightops.apigw.errors import register_error_handlers
from flightops.app.metrics import PrometheusMiddleware, metrics_router
from flightops.app.tracing import setup_tracing
from flightops.core.container import container
from flightops.core.logging import setup_logging
from flightops.middlewares.request_id import RequestIDMiddleware
from flightops.middlewares.timing import TimingMiddleware


def create_app() -> FastAPI:
    """
    Construit et retourne l'application FastAPI prête à l'usage.

    Étapes:
    - Configure le logging structuré (structlog) et le tracing optionnel
    - Lit les paramètres d'exécution
    - Ajoute les middlewares utiles au debug/traçabilité
    - Publie les routes de santé, de check-in, de planification et de factures
    """
    setup_logging()
    setup_tracing()
    settings = container.settings
    app = FastAPI(title=settings.APP_NAME, debug=settings.APP_DEBUG)
    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(TimingMiddleware)
    app.add_middleware(RequestIDMiddleware)
    register_error_handlers(app)
    app.include_router(health_router)
    app.include_router(checkin_router)
    app.include_router(scheduling_router)
    app.include_router(invoices_router)
    app.include_router(metrics_router)
    return app


app = create_app()
