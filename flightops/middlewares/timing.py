"""Middleware Starlette de mesure du temps de traitement.

Ajoute l'en-tête `X-Process-Time-ms` et journalise les requêtes plus lentes que le seuil donné
(appels au backend géré compris).
"""

import time
from collections.abc import Callable

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

SLOW_REQUEST_MS = 1000


class TimingMiddleware(BaseHTTPMiddleware):
    """Durée de traitement en millisecondes, par requête."""

    def __init__(
        self,
        app: ASGIApp,
        header_name: str = "X-Process-Time-ms",
        slow_ms: int = SLOW_REQUEST_MS,
    ) -> None:
        super().__init__(app)
        self.header_name = header_name
        self.slow_ms = slow_ms
        self._log = structlog.get_logger(__name__).bind(component="timing")

    async def dispatch(self, request, call_next: Callable):
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = int((time.perf_counter() - start) * 1000)
        response.headers[self.header_name] = str(duration_ms)
        if duration_ms >= self.slow_ms:
            self._log.warning(
                "slow_request",
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=duration_ms,
            )
        return response
