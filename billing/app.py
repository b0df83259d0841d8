# module billing.app
from fastapi import FastAPI

from billing.app_setup.exceptions import register_exception_handlers
from billing.app_setup.lifespan import lifespan
from billing.app_setup.middlewares import register_basic_middlewares
from billing.app_setup.routers import register_routers


def create_app() -> FastAPI:
    """
    Crée et configure l’instance FastAPI du service de paiement.
    Étapes et ordre:
      1) register_basic_middlewares: CORS, TrustedHost, ProxyHeaders.
      2) register_exception_handlers: erreurs du domaine paiement -> JSON {detail, code}.
      3) register_routers: paiements, catalogue, health.
    Retourne:
      - FastAPI: l’application prête à être servie (ASGI).
    """
    app = FastAPI(title="Kallin Billing API", lifespan=lifespan)
    register_basic_middlewares(app)
    register_exception_handlers(app)
    register_routers(app)
    return app


# App globale
app = create_app()
