"""
Endpoint de santé pour vérifier la disponibilité de l'API et du stockage des brouillons.

Expose `/health` pour signaler l'état général de l'application.
"""


from fastapi import APIRouter

from flightops.core.container import container

router = APIRouter(tags=["health"])


@router.get("/health")
def health():
    """Vérifie la disponibilité de l'API, le stockage des brouillons et le backend configuré."""
    return {
        "status": "ok",
        "storage": getattr(container, "storage_backend", "unknown"),
        "redis_url": bool(getattr(container.settings, "REDIS_URL", None)),
        "backend_url": bool(getattr(container.settings, "BACKEND_URL", None)),
        "timezone": container.settings.SCHOOL_TIMEZONE,
    }
