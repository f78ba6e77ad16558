"""
Dépôts des brouillons de check-in.

Un brouillon (`DraftState`) est conservé par réservation jusqu'à son approbation ou son abandon.
Deux implémentations: en mémoire (dev/tests) et Redis (clé `checkin:draft:{booking_id}` avec TTL).
"""

import redis

from flightops.domain.entities import DraftState


class InMemoryDraftRepo:
    """
    Dépôt de brouillons en mémoire.

    Stocke les états dans un dict local, non persistant.
    """

    def __init__(self):
        self._db: dict[str, DraftState] = {}

    def save(self, state: DraftState) -> DraftState:
        """Enregistre/écrase le brouillon de la réservation et le renvoie."""
        self._db[state.inputs.booking_id] = state
        return state

    def get(self, booking_id: str) -> DraftState | None:
        return self._db.get(booking_id)

    def delete(self, booking_id: str) -> bool:
        return self._db.pop(booking_id, None) is not None


class RedisDraftRepo:
    """Dépôt de brouillons adossé à Redis (JSON pydantic, expiration `ttl_s`)."""

    def __init__(self, url: str, ttl_s: int = 86400):
        """Crée un client Redis à partir de l'URL fournie."""
        self.client = redis.Redis.from_url(url, decode_responses=True)
        self.ttl_s = ttl_s

    @staticmethod
    def _key(booking_id: str) -> str:
        return f"checkin:draft:{booking_id}"

    def save(self, state: DraftState) -> DraftState:
        """Sérialise l'état en JSON et le stocke avec expiration."""
        self.client.set(self._key(state.inputs.booking_id), state.model_dump_json(), ex=self.ttl_s)
        return state

    def get(self, booking_id: str) -> DraftState | None:
        raw = self.client.get(self._key(booking_id))
        return DraftState.model_validate_json(raw) if raw else None

    def delete(self, booking_id: str) -> bool:
        return bool(self.client.delete(self._key(booking_id)))
