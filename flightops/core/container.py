"""
Conteneur d'injection de dépendances et configuration application.

Instancie les composants centraux (settings, client du backend, dépôt de brouillons) et expose un
singleton `container` utilisé par le reste de l'application.
"""

from flightops.core.settings import get_settings
from flightops.infra.backend_client import BackendClient
from flightops.infra.repositories import InMemoryDraftRepo, RedisDraftRepo


class Container:
    def __init__(self):
        self.settings = get_settings()
        self.backend = BackendClient(
            base_url=self.settings.BACKEND_URL,
            api_key=self.settings.BACKEND_API_KEY,
            timeout_s=self.settings.BACKEND_TIMEOUT_S,
        )
        if self.settings.REDIS_URL:
            try:
                self.draft_repo = RedisDraftRepo(
                    self.settings.REDIS_URL, ttl_s=self.settings.DRAFT_TTL_S
                )
                self.storage_backend = "redis"
            except Exception as err:
                if self.settings.REQUIRE_REDIS:
                    raise RuntimeError("Redis required but unavailable") from err
                self.draft_repo = InMemoryDraftRepo()
                self.storage_backend = "memory-fallback"
        else:
            if self.settings.REQUIRE_REDIS:
                raise RuntimeError("Redis required but REDIS_URL not set")
            self.draft_repo = InMemoryDraftRepo()
            self.storage_backend = "memory"


container = Container()
