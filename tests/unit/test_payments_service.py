import asyncio
import hashlib

import pytest

from billing.errors import GatewayUnavailableError, PurchaseInProgressError, SalesAssistedPlanError, UnknownPlanError
from billing.payments.models import PurchaseStatus
from billing.payments.service import make_idempotency_key


def test_idempotency_key_is_deterministic_per_window():
    key = make_idempotency_key("u1", "starter", now=120.0, window_seconds=60)
    assert key == hashlib.sha256(b"u1:starter:2").hexdigest()
    assert make_idempotency_key("u1", "starter", now=179.9, window_seconds=60) == key
    assert make_idempotency_key("u1", "starter", now=180.0, window_seconds=60) != key
    assert make_idempotency_key("u2", "starter", now=120.0, window_seconds=60) != key
    scoped = make_idempotency_key("u1", "starter", now=120.0, window_seconds=60, scope="checkout")
    assert scoped == hashlib.sha256(b"checkout:u1:starter:2").hexdigest()


def test_start_purchase_creates_pending_session(service, store, gateway):
    started = asyncio.run(service.start_purchase("u1", "starter", "u1@example.com"))

    assert started.reused is False
    assert started.plan.plan_id == "starter"
    call = gateway.create_calls[0]
    assert call["amount_minor_units"] == 29900
    assert call["currency"] == "usd"
    assert call["metadata"]["userId"] == "u1"
    assert call["metadata"]["planId"] == "starter"
    assert call["metadata"]["userEmail"] == "u1@example.com"

    session = asyncio.run(store.get_existing("u1", "starter"))
    assert session.gateway_reference_id == started.gateway_reference_id
    assert session.status == PurchaseStatus.PENDING


def test_start_purchase_reuses_live_session(service, gateway):
    async def scenario():
        first = await service.start_purchase("u1", "starter")
        second = await service.start_purchase("u1", "starter")
        return first, second

    first, second = asyncio.run(scenario())
    assert second.reused is True
    assert (second.gateway_reference_id, second.client_secret) == (first.gateway_reference_id, first.client_secret)
    assert len(gateway.create_calls) == 1


def test_concurrent_starts_share_one_intent(service, gateway):
    async def scenario():
        return await asyncio.gather(*[service.start_purchase("u1", "professional") for _ in range(5)])

    results = asyncio.run(scenario())
    assert len({r.gateway_reference_id for r in results}) == 1
    assert gateway.intents_created == 1


def test_start_after_expiry_creates_new_intent(service, gateway, clock):
    async def scenario():
        first = await service.start_purchase("u1", "starter")
        clock.advance(minutes=16)
        second = await service.start_purchase("u1", "starter")
        return first, second

    first, second = asyncio.run(scenario())
    assert second.reused is False
    assert second.gateway_reference_id != first.gateway_reference_id


def test_unknown_plan_touches_nothing(service, store, gateway):
    with pytest.raises(UnknownPlanError):
        asyncio.run(service.start_purchase("u1", "bogus"))
    assert gateway.create_calls == []
    assert len(store) == 0


def test_sales_assisted_plan_is_rejected(service, gateway):
    with pytest.raises(SalesAssistedPlanError) as exc:
        asyncio.run(service.start_purchase("u1", "enterprise"))
    assert exc.value.to_dict()["contact"] == "sales@example.com"
    assert gateway.create_calls == []


def test_gateway_failure_records_nothing(service, store, gateway):
    gateway.fail_create = True
    with pytest.raises(GatewayUnavailableError):
        asyncio.run(service.start_purchase("u1", "starter"))
    assert len(store) == 0


def test_clear_purchase_allows_fresh_start(service, store, gateway, clock):
    async def scenario():
        first = await service.start_purchase("u1", "minutes_100")
        await service.clear_purchase("u1", "minutes_100")
        cleared = await store.get_existing("u1", "minutes_100")
        clock.advance(minutes=2)
        second = await service.start_purchase("u1", "minutes_100")
        return first, cleared, second

    first, cleared, second = asyncio.run(scenario())
    assert cleared is None
    assert second.reused is False
    assert second.gateway_reference_id != first.gateway_reference_id


def test_response_shape():
    from billing.payments.service import PurchaseStart
    from billing.plans.catalog import resolve_plan

    data = PurchaseStart("pi_1", "pi_1_secret", resolve_plan("trial"), reused=True).to_response()
    assert data == {
        "clientSecret": "pi_1_secret",
        "paymentIntentId": "pi_1",
        "amount": 2500,
        "description": resolve_plan("trial").description,
        "reused": True,
    }


def test_start_checkout_registers_session_under_checkout_id(service, store, gateway):
    started = asyncio.run(service.start_checkout("u1", "minutes_250", "u1@example.com"))

    assert started.gateway_reference_id.startswith("cs_")
    assert started.to_checkout_response()["url"].endswith(started.gateway_reference_id)
    call = gateway.checkout_calls[0]
    assert call["subscription"] is False
    assert call["customer_email"] == "u1@example.com"
    assert call["metadata"]["planId"] == "minutes_250"
    assert gateway.create_calls == []

    session = asyncio.run(store.get_by_gateway_reference(started.gateway_reference_id))
    assert (session.user_id, session.plan_id, session.status) == ("u1", "minutes_250", PurchaseStatus.PENDING)


def test_start_checkout_uses_subscription_mode_for_plans(service, gateway):
    asyncio.run(service.start_checkout("u1", "professional"))
    assert gateway.checkout_calls[0]["subscription"] is True
    assert gateway.checkout_calls[0]["amount_minor_units"] == 46900


def test_start_checkout_reuses_live_checkout(service, gateway):
    async def scenario():
        return await service.start_checkout("u1", "starter"), await service.start_checkout("u1", "starter")

    first, second = asyncio.run(scenario())
    assert second.reused is True
    assert second.gateway_reference_id == first.gateway_reference_id
    assert len(gateway.checkout_calls) == 1


def test_flows_do_not_share_one_attempt(service, gateway):
    asyncio.run(service.start_purchase("u1", "starter"))
    with pytest.raises(PurchaseInProgressError):
        asyncio.run(service.start_checkout("u1", "starter"))
    assert gateway.checkout_calls == []

    asyncio.run(service.start_checkout("u1", "trial"))
    with pytest.raises(PurchaseInProgressError):
        asyncio.run(service.start_purchase("u1", "trial"))


def test_start_checkout_rejects_sales_assisted_plan(service, gateway):
    with pytest.raises(SalesAssistedPlanError):
        asyncio.run(service.start_checkout("u1", "enterprise"))
    assert gateway.checkout_calls == []
