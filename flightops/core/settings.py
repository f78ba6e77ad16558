"""Définition et chargement des paramètres de configuration applicative.

Objectif du module
------------------
- Centraliser les paramètres (env/.env) via Pydantic Settings
- Résoudre le fichier `.env` à utiliser selon la stratégie: ENV_FILE > .env.{APP_ENV} > .env
"""

import os
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

# Détermination du fichier .env à utiliser avec priorité:
# 1) ENV_FILE (chemin explicite)
# 2) .env.{APP_ENV} si présent
# 3) .env (défaut)
_cwd = Path.cwd()
_env_file_from_env = os.getenv("ENV_FILE")
if _env_file_from_env:
    _ENV_FILE_PATH = _env_file_from_env
else:
    _app_env = os.getenv("APP_ENV", "dev")
    _candidate_specific = _cwd / f".env.{_app_env}"
    _candidate_default = _cwd / ".env"
    if _candidate_specific.exists():
        _ENV_FILE_PATH = _candidate_specific
    else:
        _ENV_FILE_PATH = _candidate_default


class Settings(BaseSettings):
    """Modèle de configuration chargé depuis l'environnement et .env."""

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE_PATH,
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        case_sensitive=False,
    )
    APP_NAME: str = "flightops-backend"
    APP_ENV: str = "dev"
    APP_DEBUG: bool = False
    APP_HOST: str = "0.0.0.0"
    APP_PORT: int = 8000

    # Backend géré (endpoints REST générés + procédures atomiques)
    BACKEND_URL: str = "http://localhost:54321"
    BACKEND_API_KEY: str | None = None
    BACKEND_TIMEOUT_S: float = 5.0

    # Stockage des brouillons de check-in
    REDIS_URL: str | None = None
    REQUIRE_REDIS: bool = False
    DRAFT_TTL_S: int = 86400

    # Paramètres métier de l'école
    SCHOOL_TIMEZONE: str = "Pacific/Auckland"
    DEFAULT_TAX_RATE: float = 0.15
    CHECKIN_DUE_DAYS: int = 7
    CORRECTION_REASON_MIN_LEN: int = 10

    OTLP_ENDPOINT: str | None = None


def get_settings() -> Settings:
    """Construit et retourne la configuration de l'application."""
    return Settings()
