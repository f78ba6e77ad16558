"""Configuration de test pour pytest avec gestion des chemins.

Ce module ajoute la racine du projet au sys.path, neutralise les connexions Redis et fournit des
services câblés sur un backend factice et un dépôt de brouillons en mémoire.
"""

import os
import sys
from types import SimpleNamespace
from unittest.mock import Mock, patch

import pytest

# Ensure project root is on sys.path so that
# imports like `from flightops...` resolve.
CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from flightops.domain.services import BookingService, CheckinService  # noqa: E402
from flightops.infra.repositories import InMemoryDraftRepo  # noqa: E402
from tests.fakes import FakeBackend  # noqa: E402

FIXED_NOW_ISO = "2025-03-10T09:00:00+00:00"


@pytest.fixture(autouse=True)
def mock_redis_connection():
    """Mock Redis connections pour éviter les erreurs de connexion dans les tests."""
    with patch("redis.Redis") as mock_redis:
        mock_redis_instance = Mock()
        mock_redis_instance.ping.return_value = True
        mock_redis_instance.get.return_value = None
        mock_redis_instance.set.return_value = True
        mock_redis_instance.delete.return_value = 1
        mock_redis.return_value = mock_redis_instance
        mock_redis.from_url.return_value = mock_redis_instance
        yield mock_redis_instance


@pytest.fixture
def test_settings():
    return SimpleNamespace(
        APP_NAME="test_app",
        APP_ENV="test",
        SCHOOL_TIMEZONE="Pacific/Auckland",
        DEFAULT_TAX_RATE=0.15,
        CHECKIN_DUE_DAYS=7,
        CORRECTION_REASON_MIN_LEN=10,
    )


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def checkin_service(fake_backend, test_settings):
    from datetime import datetime

    return CheckinService(
        fake_backend,
        InMemoryDraftRepo(),
        test_settings,
        clock=lambda: datetime.fromisoformat(FIXED_NOW_ISO),
    )


@pytest.fixture
def booking_service(fake_backend, test_settings):
    return BookingService(fake_backend, test_settings)


@pytest.fixture
def api_services(monkeypatch, checkin_service, booking_service):
    """Remplace les services des routes par des services câblés sur le backend factice."""
    from flightops.api import routes_checkin, routes_invoices, routes_scheduling

    monkeypatch.setattr(routes_checkin, "service", checkin_service)
    monkeypatch.setattr(routes_invoices, "service", checkin_service)
    monkeypatch.setattr(routes_scheduling, "service", booking_service)
    return checkin_service, booking_service
