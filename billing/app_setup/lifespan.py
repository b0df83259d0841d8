"""
Lifespan FastAPI: initialisation/arrêt des ressources partagées.
- Initialise FastAPILimiter (Redis) avec options de test (fakeredis).
- Construit le store de sessions, la passerelle Stripe, le client HTTP du backend
  et les services de paiement (app.state).
- Démarre le balayage des sessions expirées et la relance des confirmations.
- Variables d’environnement supportées:
  - DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS=1: désactive complètement le rate limiting (tests)
  - USE_FAKE_REDIS_FOR_TESTS=1: utilise fakeredis (tests)
  - LOCAL_RATE_LIMIT_FALLBACK=1: active un fallback local si l’init échoue
"""
import os
import logging
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
from fastapi import FastAPI
from fastapi_limiter import FastAPILimiter

from billing import config
from billing.payments.confirmation import BackendConfirmationClient
from billing.payments.reconciler import EventReconciler
from billing.payments.scheduler import PeriodicTask
from billing.payments.service import PurchaseService
from billing.payments.session_store import build_session_store
from billing.payments.stripe_client import StripeGateway

try:
    from fakeredis.aioredis import FakeRedis  # tests only
except Exception:
    FakeRedis = None


async def init_rate_limiter(app: FastAPI, logger: logging.Logger) -> None:
    """
    Configure le rate limiting et gère les fallbacks.
    - En cas d’échec de Redis et sans fallback, le rate limiting est désactivé proprement.
    - Les logs indiquent l’état effectif (enabled/disabled) pour observabilité.
    """
    if os.getenv("DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS") == "1":
        app.state.rate_limit_enabled = False
        logger.info("Rate limiting disabled by DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS")
        return
    try:
        use_fake = os.getenv("USE_FAKE_REDIS_FOR_TESTS") == "1"
        if use_fake:
            if not FakeRedis:
                raise RuntimeError("USE_FAKE_REDIS_FOR_TESTS=1 mais fakeredis n'est pas installé.")
            r = FakeRedis(decode_responses=True)
        else:
            redis_url = os.getenv("RATE_LIMIT_REDIS_URL", "redis://127.0.0.1:6379/0")
            r = aioredis.from_url(redis_url, encoding="utf-8", decode_responses=True)

        await FastAPILimiter.init(r)
        app.state.rate_limit_enabled = True
        logger.info("Rate limiting enabled")
    except Exception as e:
        if os.getenv("LOCAL_RATE_LIMIT_FALLBACK") == "1":
            app.state.rate_limit_enabled = True
            logger.warning(f"Rate limiting falling back to local in-memory due to init error: {e}")
        else:
            app.state.rate_limit_enabled = False
            logger.warning(f"Rate limiting disabled due to init error: {e}")


def build_services(app: FastAPI, http_client: httpx.AsyncClient) -> None:
    """Construit les services de paiement et les expose dans app.state."""
    store = build_session_store()
    gateway = StripeGateway()
    backend = BackendConfirmationClient(http_client)
    app.state.session_store = store
    app.state.gateway = gateway
    app.state.purchase_service = PurchaseService(store, gateway)
    app.state.reconciler = EventReconciler(store, gateway, backend)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("uvicorn.error")
    await init_rate_limiter(app, logger)

    http_client = httpx.AsyncClient(timeout=config.BACKEND_TIMEOUT_SECONDS)
    build_services(app, http_client)
    store = app.state.session_store
    retry_task = PeriodicTask(
        "confirmation-retry", config.CONFIRMATION_RETRY_INTERVAL_SECONDS, app.state.reconciler.retry_stalled
    )
    store.start()
    retry_task.start()
    if not config.STRIPE_SECRET_KEY:
        logger.warning("STRIPE_SECRET_KEY absente: la création de paiements échouera (500)")
    logger.info("Payment services ready (store=%s)", type(store).__name__)
    try:
        yield
    finally:
        # Phase shutdown
        await retry_task.stop()
        await store.close()
        await http_client.aclose()
        logger.info("Payment services stopped")
