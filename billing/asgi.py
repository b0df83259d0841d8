"""
ASGI entrypoint: expose `app` for process managers / deployments.

- En production, un process manager (ex: uvicorn workers) importe `billing.asgi:app`.
- Toute la configuration FastAPI est centralisée dans billing.app, ce fichier
  ne fait qu’exposer l’instance `app`.
"""

from billing.app import app

__all__ = ["app"]
