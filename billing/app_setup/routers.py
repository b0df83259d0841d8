"""
Registre central des routers.
- API paiements: /api/stripe (création, redirection, abandon, webhook)
- Catalogue: /api/stripe/plans
- Health: /health
"""
from fastapi import FastAPI
from billing.payments import views as payments_views
from billing.plans import views as plans_views
from billing.health.router import router as health_router

def register_routers(app: FastAPI) -> None:
    # Le catalogue avant les paiements: chemins sous le même préfixe /api/stripe
    app.include_router(plans_views.router)
    app.include_router(payments_views.router)
    # Health & monitoring
    app.include_router(health_router)
