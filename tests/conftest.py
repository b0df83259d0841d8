import asyncio
import json
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Generator, List, Optional

import httpx
import pytest
from fastapi.testclient import TestClient

# Pas de Redis pour le rate limiting pendant les tests
os.environ.setdefault("DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS", "1")

from billing.app import create_app
from billing.errors import GatewayUnavailableError, InvalidSignatureError, MalformedEventError
from billing.payments.confirmation import BackendConfirmationClient
from billing.payments.models import GatewayIntent, GatewayStatus
from billing.payments.reconciler import EventReconciler
from billing.payments.service import PurchaseService
from billing.payments.session_store import InMemorySessionStore
from billing.payments.stripe_client import event_from_payload

VALID_SIGNATURE = "valid"


# Marquage automatique selon le dossier
def pytest_collection_modifyitems(config, items):
    for item in items:
        nodeid = item.nodeid.replace("\\", "/")
        if "tests/unit/" in nodeid:
            item.add_marker(pytest.mark.unit)
        elif "tests/integration/" in nodeid:
            item.add_marker(pytest.mark.integration)
        elif "tests/functional/" in nodeid:
            item.add_marker(pytest.mark.functional)


class MutableClock:
    """Horloge contrôlée par le test (UTC)."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)

    def timestamp(self) -> float:
        return self.now.timestamp()


class FakeGateway:
    """
    Passerelle Stripe simulée.
    - create_intent: même clé d'idempotence => même intent (comme Stripe)
    - verify_signature: accepte uniquement l'en-tête "valid"
    """

    def __init__(self):
        self.create_calls: List[Dict[str, Any]] = []
        self.intents_by_key: Dict[str, GatewayIntent] = {}
        self.statuses: Dict[str, GatewayStatus] = {}
        self.checkout_calls: List[Dict[str, Any]] = []
        self.config: Dict[str, Any] = {"configured": True, "testMode": True, "accountId": "acct_test"}
        self.fail_create = False
        self._queued: List[GatewayIntent] = []
        self._counter = 0

    def queue_intent(self, ref: str, secret: str) -> None:
        self._queued.append(GatewayIntent(ref, secret))

    @property
    def intents_created(self) -> int:
        return len(self.intents_by_key)

    async def create_intent(self, amount_minor_units, currency, metadata, idempotency_key, description=None):
        self.create_calls.append({
            "amount_minor_units": amount_minor_units,
            "currency": currency,
            "metadata": metadata,
            "idempotency_key": idempotency_key,
            "description": description,
        })
        if self.fail_create:
            raise GatewayUnavailableError("Stripe indisponible")
        if idempotency_key in self.intents_by_key:
            return self.intents_by_key[idempotency_key]
        if self._queued:
            intent = self._queued.pop(0)
        else:
            self._counter += 1
            intent = GatewayIntent(f"pi_test_{self._counter}", f"pi_test_{self._counter}_secret_x")
        self.intents_by_key[idempotency_key] = intent
        return intent

    async def create_checkout_session(self, amount_minor_units, currency, metadata, idempotency_key,
                                      description=None, subscription=False, customer_email=None):
        self.checkout_calls.append({
            "amount_minor_units": amount_minor_units,
            "metadata": metadata,
            "idempotency_key": idempotency_key,
            "subscription": subscription,
            "customer_email": customer_email,
        })
        if self.fail_create:
            raise GatewayUnavailableError("Stripe indisponible")
        if idempotency_key not in self.intents_by_key:
            self._counter += 1
            ref = f"cs_test_{self._counter}"
            self.intents_by_key[idempotency_key] = GatewayIntent(ref, f"https://checkout.stripe.test/c/pay/{ref}")
        return self.intents_by_key[idempotency_key]

    async def check_config(self):
        return dict(self.config)

    def set_status(self, ref: str, status: str, payment_intent_id: Optional[str] = None, metadata=None) -> None:
        self.statuses[ref] = GatewayStatus(ref, status, dict(metadata or {}), payment_intent_id)

    async def retrieve_status(self, gateway_reference_id: str) -> GatewayStatus:
        return self.statuses.get(gateway_reference_id) or GatewayStatus(gateway_reference_id, "pending")

    def verify_signature(self, raw_payload, signature_header, secret=None):
        if signature_header != VALID_SIGNATURE:
            raise InvalidSignatureError("Signature webhook invalide")
        try:
            payload = json.loads(raw_payload)
        except ValueError as e:
            raise MalformedEventError("Corps du webhook illisible") from e
        return event_from_payload(payload)


class BackendRecorder:
    """Backend de référence simulé (httpx.MockTransport)."""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.fail_next = 0
        self.fail_status = 500

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(json.loads(request.content))
        if self.fail_next > 0:
            self.fail_next -= 1
            return httpx.Response(self.fail_status, text="backend error")
        return httpx.Response(200, json={"success": True})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


def make_event(event_type: str, obj: Dict[str, Any], event_id: str = "evt_test_1") -> Dict[str, Any]:
    return {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}


def payment_intent(ref: str, status: str = "succeeded", user_id: str = "u1", plan_id: str = "starter") -> Dict[str, Any]:
    return {
        "id": ref,
        "object": "payment_intent",
        "status": status,
        "metadata": {"userId": user_id, "planId": plan_id},
    }


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def store(clock) -> InMemorySessionStore:
    return InMemorySessionStore(clock=clock, ttl=timedelta(minutes=15), sweep_interval_seconds=300)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def backend() -> BackendRecorder:
    return BackendRecorder()


@pytest.fixture
def backend_client(backend) -> Generator[BackendConfirmationClient, None, None]:
    http_client = backend.client()
    yield BackendConfirmationClient(http_client, base_url="http://backend.test", path="/api/stripe/confirm-payment", timeout=5)
    asyncio.run(http_client.aclose())


@pytest.fixture
def service(store, gateway, clock) -> PurchaseService:
    return PurchaseService(store, gateway, currency="usd", sales_contact="sales@example.com", time_func=clock.timestamp)


@pytest.fixture
def reconciler(store, gateway, backend_client) -> EventReconciler:
    return EventReconciler(store, gateway, backend_client, max_attempts=3)


@pytest.fixture
def app():
    return create_app()


@pytest.fixture
def client(app, store, service, reconciler, gateway) -> Generator[TestClient, None, None]:
    with TestClient(app) as c:
        # Services de test à la place de ceux construits par le lifespan
        app.state.session_store = store
        app.state.gateway = gateway
        app.state.purchase_service = service
        app.state.reconciler = reconciler
        yield c


@pytest.fixture
def stripe_event():
    return make_event


@pytest.fixture
def pi_object():
    return payment_intent


@pytest.fixture
def post_webhook(client):
    """Poste un événement Stripe (signature acceptée par FakeGateway)."""
    def _post(event: Dict[str, Any], signature: Optional[str] = VALID_SIGNATURE):
        headers = {"content-type": "application/json"}
        if signature is not None:
            headers["stripe-signature"] = signature
        return client.post("/api/stripe/webhook", content=json.dumps(event), headers=headers)
    return _post
