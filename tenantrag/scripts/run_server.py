"""
Script de serveur de développement.

Lance l'application FastAPI avec les composants du conteneur (stores mémoire sans `REDIS_URL`,
réponses dégradées sans `OPENAI_API_KEY`).
"""

import os

import uvicorn

from tenantrag.app.main import app


def main():
    """Point d'entrée principal du serveur de développement."""
    host = os.environ.get("HOST", "127.0.0.1")
    port = int(os.environ.get("PORT", "8000"))
    uvicorn.run(app, host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
