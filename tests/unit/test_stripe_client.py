import asyncio
import hashlib
import hmac
import json
import time

import pytest
import stripe

from billing.errors import (
    GatewayUnavailableError,
    InvalidSignatureError,
    MalformedEventError,
    PaymentConfigurationError,
)
from billing.payments.stripe_client import (
    StripeGateway,
    _as_dict,
    event_from_payload,
    status_from_checkout_session,
    status_from_payment_intent,
)

SECRET = "whsec_test_secret"


def _sign(payload: str, secret: str = SECRET, ts: int = None) -> str:
    ts = ts or int(time.time())
    signature = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def _payload(event_type="payment_intent.succeeded", status="succeeded") -> str:
    return json.dumps({
        "id": "evt_1",
        "object": "event",
        "type": event_type,
        "data": {"object": {"id": "pi_1", "object": "payment_intent", "status": status, "metadata": {"userId": "u1", "planId": "trial"}}},
    })


@pytest.mark.parametrize("status,expected", [
    ("succeeded", "succeeded"),
    ("canceled", "failed"),
    ("requires_payment_method", "pending"),
    ("processing", "pending"),
    (None, "pending"),
])
def test_status_from_payment_intent(status, expected):
    assert status_from_payment_intent({"status": status}) == expected


@pytest.mark.parametrize("session,expected", [
    ({"payment_status": "paid", "status": "complete"}, "succeeded"),
    ({"payment_status": "no_payment_required", "status": "complete"}, "succeeded"),
    ({"payment_status": "unpaid", "status": "expired"}, "failed"),
    ({"payment_status": "unpaid", "status": "open"}, "pending"),
])
def test_status_from_checkout_session(session, expected):
    assert status_from_checkout_session(session) == expected


def test_event_type_overrides_object_status():
    obj = {"id": "cs_1", "object": "checkout.session", "payment_status": "unpaid", "status": "complete", "payment_intent": "pi_1"}
    event = event_from_payload({"id": "evt", "type": "checkout.session.async_payment_succeeded", "data": {"object": obj}})
    assert event.status == "succeeded"
    assert event.reference_ids == ("cs_1", "pi_1")
    assert event.payment_intent_id == "pi_1"

    failed = event_from_payload({"id": "evt", "type": "checkout.session.async_payment_failed", "data": {"object": obj}})
    assert failed.status == "failed"


def test_unhandled_event_has_no_status():
    event = event_from_payload({"id": "evt", "type": "invoice.paid", "data": {"object": {"id": "in_1"}}})
    assert event.status is None
    assert event.reference_ids == ("in_1",)


@pytest.mark.parametrize("payload", [[], {"type": "payment_intent.succeeded"}, {"data": {"object": {}}}])
def test_malformed_event_payload(payload):
    with pytest.raises(MalformedEventError):
        event_from_payload(payload)


def test_verify_signature_with_real_stripe_signature():
    gateway = StripeGateway(api_key="sk_test_x", webhook_secret=SECRET)
    payload = _payload()
    event = gateway.verify_signature(payload.encode(), _sign(payload))
    assert event.event_id == "evt_1"
    assert event.status == "succeeded"
    assert event.reference_ids == ("pi_1",)
    assert event.metadata == {"userId": "u1", "planId": "trial"}


def test_verify_signature_rejects_wrong_secret_and_tampering():
    gateway = StripeGateway(api_key="sk_test_x", webhook_secret=SECRET)
    payload = _payload()
    with pytest.raises(InvalidSignatureError):
        gateway.verify_signature(payload.encode(), _sign(payload, secret="whsec_other"))
    with pytest.raises(InvalidSignatureError):
        gateway.verify_signature(_payload(status="canceled").encode(), _sign(payload))
    with pytest.raises(InvalidSignatureError):
        gateway.verify_signature(payload.encode(), None)


def test_verify_signature_requires_secret():
    gateway = StripeGateway(api_key="sk_test_x", webhook_secret="")
    with pytest.raises(PaymentConfigurationError):
        gateway.verify_signature(b"{}", "t=1,v1=abc")


def test_require_stripe_without_key():
    with pytest.raises(PaymentConfigurationError):
        StripeGateway(api_key="", webhook_secret=SECRET).require_stripe()


def test_config_status_hides_keys():
    status = StripeGateway(api_key="sk_test_abc", webhook_secret=SECRET, publishable_key="pk_test_def").config_status()
    assert status == {"configured": True, "publishable": True, "webhook": True, "testMode": True, "keysMatch": True}


def test_config_status_detects_mixed_modes():
    status = StripeGateway(api_key="sk_live_abc", webhook_secret="", publishable_key="pk_test_def").config_status()
    assert status["keysMatch"] is False
    assert status["testMode"] is False
    assert status["webhook"] is False


def test_check_config_reads_account(monkeypatch):
    monkeypatch.setattr(stripe.Account, "retrieve", lambda *args, **kwargs: {"id": "acct_123", "object": "account"})
    gateway = StripeGateway(api_key="sk_test_abc", webhook_secret=SECRET, publishable_key="pk_test_def")
    status = asyncio.run(gateway.check_config())
    assert status["configured"] is True
    assert status["accountId"] == "acct_123"
    assert "sk_test_abc" not in str(status)


def test_check_config_reports_stripe_rejection(monkeypatch):
    def fake_retrieve(*args, **kwargs):
        raise stripe.AuthenticationError("Invalid API Key provided")

    monkeypatch.setattr(stripe.Account, "retrieve", fake_retrieve)
    gateway = StripeGateway(api_key="sk_test_bad", webhook_secret=SECRET, publishable_key="pk_test_def")
    status = asyncio.run(gateway.check_config())
    assert status["configured"] is False
    assert "Invalid API Key" in status["error"]


def test_check_config_without_publishable_key():
    status = asyncio.run(StripeGateway(api_key="sk_test_abc", webhook_secret=SECRET, publishable_key="").check_config())
    assert status["configured"] is False
    assert "PUBLISHABLE" in status["error"]


def test_create_intent_passes_idempotency_key(monkeypatch):
    captured = {}

    def fake_create(**kwargs):
        captured.update(kwargs)
        return {"id": "pi_new", "client_secret": "pi_new_secret_1"}

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)
    gateway = StripeGateway(api_key="sk_test_x", webhook_secret=SECRET)
    intent = asyncio.run(gateway.create_intent(2500, "usd", {"userId": "u1", "planId": "trial"}, "key-123", "Trial"))

    assert intent.gateway_reference_id == "pi_new"
    assert intent.client_secret == "pi_new_secret_1"
    assert captured["idempotency_key"] == "key-123"
    assert captured["amount"] == 2500
    assert captured["automatic_payment_methods"] == {"enabled": True}


def test_create_intent_maps_stripe_errors(monkeypatch):
    def fake_create(**kwargs):
        raise stripe.APIConnectionError("network down")

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)
    gateway = StripeGateway(api_key="sk_test_x", webhook_secret=SECRET)
    with pytest.raises(GatewayUnavailableError):
        asyncio.run(gateway.create_intent(2500, "usd", {}, "key-123"))


def test_retrieve_status_for_checkout_session(monkeypatch):
    def fake_retrieve(session_id):
        return {
            "id": session_id,
            "object": "checkout.session",
            "payment_status": "paid",
            "status": "complete",
            "payment_intent": "pi_77",
            "metadata": {"userId": "u1", "planId": "minutes_100"},
        }

    monkeypatch.setattr(stripe.checkout.Session, "retrieve", fake_retrieve)
    gateway = StripeGateway(api_key="sk_test_x", webhook_secret=SECRET)
    status = asyncio.run(gateway.retrieve_status("cs_77"))

    assert status.status == "succeeded"
    assert status.reference_ids == ("cs_77", "pi_77")
    assert status.metadata["planId"] == "minutes_100"


def test_retrieve_status_for_payment_intent(monkeypatch):
    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", lambda ref: {"id": ref, "object": "payment_intent", "status": "canceled"})
    gateway = StripeGateway(api_key="sk_test_x", webhook_secret=SECRET)
    status = asyncio.run(gateway.retrieve_status("pi_5"))
    assert status.status == "failed"
    assert status.payment_intent_id == "pi_5"


def test_as_dict_accepts_objects_with_to_dict():
    class _Obj(dict):
        def to_dict(self):
            return {"id": self["id"], "converted": True}

    assert _as_dict(_Obj(id="pi_1")) == {"id": "pi_1", "converted": True}
    assert _as_dict({"id": "pi_2"}) == {"id": "pi_2"}
    assert _as_dict(None) == {}


def test_create_checkout_session_one_time_payment(monkeypatch):
    captured = {}

    def fake_create(**kwargs):
        captured.update(kwargs)
        return {"id": "cs_new", "object": "checkout.session", "url": "https://checkout.stripe.com/c/pay/cs_new"}

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
    gateway = StripeGateway(api_key="sk_test_x", webhook_secret=SECRET)
    metadata = {"userId": "u1", "planId": "minutes_100"}
    checkout = asyncio.run(gateway.create_checkout_session(4000, "usd", metadata, "key-cs", "100 Minutes Top-up",
                                                           customer_email="u1@example.com"))

    assert checkout.gateway_reference_id == "cs_new"
    assert checkout.client_secret == "https://checkout.stripe.com/c/pay/cs_new"
    assert captured["mode"] == "payment"
    assert captured["idempotency_key"] == "key-cs"
    assert captured["metadata"] == metadata
    assert captured["payment_intent_data"]["metadata"] == metadata
    assert captured["customer_email"] == "u1@example.com"
    assert captured["line_items"][0]["price_data"]["unit_amount"] == 4000
    assert "recurring" not in captured["line_items"][0]["price_data"]
    assert "{CHECKOUT_SESSION_ID}" in captured["success_url"]


def test_create_checkout_session_subscription(monkeypatch):
    captured = {}

    def fake_create(**kwargs):
        captured.update(kwargs)
        return {"id": "cs_sub", "url": "https://checkout.stripe.com/c/pay/cs_sub"}

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
    gateway = StripeGateway(api_key="sk_test_x", webhook_secret=SECRET)
    asyncio.run(gateway.create_checkout_session(29900, "usd", {"userId": "u1", "planId": "starter"}, "key-sub", subscription=True))

    assert captured["mode"] == "subscription"
    assert captured["line_items"][0]["price_data"]["recurring"] == {"interval": "month"}
    assert captured["subscription_data"]["metadata"]["planId"] == "starter"
    assert "payment_intent_data" not in captured
    assert "customer_email" not in captured


def test_create_checkout_session_maps_stripe_errors(monkeypatch):
    def fake_create(**kwargs):
        raise stripe.APIConnectionError("network down")

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
    gateway = StripeGateway(api_key="sk_test_x", webhook_secret=SECRET)
    with pytest.raises(GatewayUnavailableError):
        asyncio.run(gateway.create_checkout_session(4000, "usd", {}, "key-cs"))
