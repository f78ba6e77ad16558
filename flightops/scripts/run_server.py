"""
Script de lancement du serveur de développement.

Lance l'API avec uvicorn sur `APP_HOST` / `APP_PORT` (surchargeable par la variable `PORT`).
"""

import os

import uvicorn

from flightops.app.main import app
from flightops.core.container import container


def main():
    """Point d'entrée du serveur de développement."""
    settings = container.settings
    port = int(os.environ.get("PORT", settings.APP_PORT))
    uvicorn.run(app, host=settings.APP_HOST, port=port, reload=False)


if __name__ == "__main__":
    main()
