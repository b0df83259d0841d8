"""
Adaptateur Stripe: centralise les appels et la configuration Stripe.

Le SDK Stripe est synchrone: chaque appel réseau est exécuté dans le pool de
threads de Starlette pour ne pas bloquer la boucle asyncio.
"""
import json
import logging
from typing import Any, Dict, Optional

import stripe
from starlette.concurrency import run_in_threadpool

from billing import config
from billing.errors import (
    GatewayUnavailableError,
    InvalidSignatureError,
    MalformedEventError,
    PaymentConfigurationError,
)
from billing.payments.metadata import clean_metadata, payment_intent_of, reference_ids_of
from billing.payments.models import (
    GATEWAY_FAILED,
    GATEWAY_PENDING,
    GATEWAY_SUCCEEDED,
    GatewayEvent,
    GatewayIntent,
    GatewayStatus,
)

logger = logging.getLogger(__name__)

# Types d'événements réconciliés; les autres sont acquittés puis ignorés
HANDLED_EVENT_TYPES = frozenset({
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
    "payment_intent.canceled",
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "checkout.session.async_payment_failed",
    "checkout.session.expired",
})

# Le type d'événement prime sur le statut lu dans l'objet
_EVENT_TYPE_STATUS = {
    "checkout.session.async_payment_succeeded": GATEWAY_SUCCEEDED,
    "checkout.session.async_payment_failed": GATEWAY_FAILED,
    "checkout.session.expired": GATEWAY_FAILED,
    "payment_intent.canceled": GATEWAY_FAILED,
}


# module billing.payments.stripe_client
def _key_mode(key: Optional[str]) -> Optional[str]:
    """Mode d'une clé Stripe (sk_test_..., pk_live_...): "test", "live" ou None."""
    parts = (key or "").split("_")
    if len(parts) >= 3 and parts[1] in ("test", "live"):
        return parts[1]
    return None


def _as_dict(obj: Any) -> Dict[str, Any]:
    """Convertit un StripeObject (ou dict) en dict Python récursif."""
    if obj is None:
        return {}
    if isinstance(obj, dict) and not hasattr(obj, "to_dict"):
        return obj
    to_dict = getattr(obj, "to_dict", None) or getattr(obj, "to_dict_recursive", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def status_from_payment_intent(intent: Dict[str, Any]) -> str:
    """
    Statut normalisé d'un payment intent.
    - succeeded -> succeeded
    - canceled -> failed
    - tout le reste (requires_payment_method, processing, ...) -> pending:
      le client peut encore réessayer avec un autre moyen de paiement
    """
    status = (intent or {}).get("status")
    if status == "succeeded":
        return GATEWAY_SUCCEEDED
    if status == "canceled":
        return GATEWAY_FAILED
    return GATEWAY_PENDING


def status_from_checkout_session(session: Dict[str, Any]) -> str:
    session = session or {}
    if session.get("payment_status") in ("paid", "no_payment_required"):
        return GATEWAY_SUCCEEDED
    if session.get("status") == "expired":
        return GATEWAY_FAILED
    return GATEWAY_PENDING


def status_from_object(obj: Dict[str, Any]) -> str:
    if (obj or {}).get("object") == "checkout.session":
        return status_from_checkout_session(obj)
    return status_from_payment_intent(obj)


def event_from_payload(payload: Dict[str, Any]) -> GatewayEvent:
    """
    Normalise un événement Stripe (déjà vérifié) en GatewayEvent.
    - MalformedEventError si la structure attendue (id, type, data.object) manque
    - status=None pour les types non gérés
    """
    if not isinstance(payload, dict):
        raise MalformedEventError("Événement Stripe invalide")
    event_type = payload.get("type")
    data = payload.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not event_type or not isinstance(obj, dict):
        raise MalformedEventError("Événement Stripe incomplet (type ou data.object manquant)")

    status = None
    if event_type in HANDLED_EVENT_TYPES:
        status = _EVENT_TYPE_STATUS.get(event_type) or status_from_object(obj)
    return GatewayEvent(
        event_id=str(payload.get("id") or ""),
        event_type=str(event_type),
        reference_ids=reference_ids_of(obj),
        payment_intent_id=payment_intent_of(obj),
        status=status,
        metadata=clean_metadata(obj),
    )


class StripeGateway:
    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        publishable_key: Optional[str] = None,
    ):
        self.api_key = api_key if api_key is not None else config.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret if webhook_secret is not None else config.STRIPE_WEBHOOK_SECRET
        self.publishable_key = publishable_key if publishable_key is not None else config.STRIPE_PUBLISHABLE_KEY

    def require_stripe(self):
        """
        Prépare et retourne le module stripe prêt à l’emploi.
        - PaymentConfigurationError si STRIPE_SECRET_KEY est absente
        """
        if not self.api_key:
            raise PaymentConfigurationError("STRIPE_SECRET_KEY non configurée")
        stripe.api_key = self.api_key
        return stripe

    def config_status(self) -> Dict[str, Any]:
        """
        État de la configuration (sans appel réseau, sans exposer les clés).
        keysMatch: clé secrète et clé publique du même mode (test / live).
        """
        return {
            "configured": bool(self.api_key),
            "publishable": bool(self.publishable_key),
            "webhook": bool(self.webhook_secret),
            "testMode": "_test_" in (self.api_key or ""),
            "keysMatch": _key_mode(self.api_key) is not None and _key_mode(self.api_key) == _key_mode(self.publishable_key),
        }

    async def check_config(self) -> Dict[str, Any]:
        """
        Vérifie la configuration auprès de Stripe (lecture du compte).
        Ne lève pas: le résultat porte configured=False et l'erreur.
        """
        status = self.config_status()
        if not self.api_key:
            status["error"] = "STRIPE_SECRET_KEY non configurée"
            return status
        if not self.publishable_key:
            status["configured"] = False
            status["error"] = "STRIPE_PUBLISHABLE_KEY non configurée"
            return status
        s = self.require_stripe()
        try:
            account = _as_dict(await run_in_threadpool(s.Account.retrieve))
        except stripe.StripeError as e:
            logger.warning("payments.stripe.check_config failed error=%s", e)
            status["configured"] = False
            status["error"] = getattr(e, "user_message", None) or str(e)
            return status
        status["accountId"] = account.get("id")
        return status

    async def create_intent(
        self,
        amount_minor_units: int,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: str,
        description: Optional[str] = None,
    ) -> GatewayIntent:
        """
        Crée un payment intent.
        La clé d'idempotence garantit qu'un rejeu dans la même fenêtre renvoie le même intent.
        """
        s = self.require_stripe()
        try:
            intent = await run_in_threadpool(
                s.PaymentIntent.create,
                amount=amount_minor_units,
                currency=currency,
                description=description,
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            logger.warning("payments.stripe.create_intent failed error=%s", getattr(e, "user_message", None) or e)
            raise GatewayUnavailableError("Erreur lors de la création du paiement") from e
        data = _as_dict(intent)
        logger.info("payments.stripe.intent_created ref=%s amount=%s", data.get("id"), amount_minor_units)
        return GatewayIntent(gateway_reference_id=str(data["id"]), client_secret=str(data.get("client_secret") or ""))

    async def create_checkout_session(
        self,
        amount_minor_units: int,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: str,
        description: Optional[str] = None,
        subscription: bool = False,
        customer_email: Optional[str] = None,
    ) -> GatewayIntent:
        """
        Crée une session Checkout hébergée (prix construit depuis le catalogue).
        - subscription: mode abonnement (prix mensuel récurrent), sinon paiement unique
        Retour: GatewayIntent(id cs_..., URL de la page Checkout)
        """
        s = self.require_stripe()
        price_data: Dict[str, Any] = {
            "currency": currency,
            "unit_amount": amount_minor_units,
            "product_data": {"name": description or metadata.get("planId") or "Kallin"},
        }
        params: Dict[str, Any] = {
            "mode": "subscription" if subscription else "payment",
            "line_items": [{"price_data": price_data, "quantity": 1}],
            "payment_method_types": ["card"],
            "success_url": config.CHECKOUT_SUCCESS_URL,
            "cancel_url": config.CHECKOUT_CANCEL_URL,
            "metadata": metadata,
            "allow_promotion_codes": True,
            "billing_address_collection": "required",
            "idempotency_key": idempotency_key,
        }
        if subscription:
            price_data["recurring"] = {"interval": "month"}
            params["subscription_data"] = {"metadata": metadata}
        else:
            params["payment_intent_data"] = {"metadata": metadata, "description": description}
        if customer_email:
            params["customer_email"] = customer_email
        try:
            session = await run_in_threadpool(s.checkout.Session.create, **params)
        except stripe.StripeError as e:
            logger.warning("payments.stripe.create_checkout failed error=%s", getattr(e, "user_message", None) or e)
            raise GatewayUnavailableError("Erreur lors de la création de la session de paiement") from e
        data = _as_dict(session)
        logger.info("payments.stripe.checkout_created ref=%s mode=%s", data.get("id"), params["mode"])
        return GatewayIntent(gateway_reference_id=str(data["id"]), client_secret=str(data.get("url") or ""))

    async def retrieve_status(self, gateway_reference_id: str) -> GatewayStatus:
        """
        Lecture autoritative du statut d'un paiement.
        - cs_...: session Checkout (le payment intent associé sert de référence secondaire)
        - sinon: payment intent
        """
        s = self.require_stripe()
        ref = str(gateway_reference_id)
        try:
            if ref.startswith("cs_"):
                obj = _as_dict(await run_in_threadpool(s.checkout.Session.retrieve, ref))
                status = status_from_checkout_session(obj)
            else:
                obj = _as_dict(await run_in_threadpool(s.PaymentIntent.retrieve, ref))
                status = status_from_payment_intent(obj)
        except stripe.StripeError as e:
            logger.warning("payments.stripe.retrieve failed ref=%s error=%s", ref, e)
            raise GatewayUnavailableError("Impossible de lire le statut du paiement") from e
        return GatewayStatus(
            gateway_reference_id=str(obj.get("id") or ref),
            status=status,
            metadata=clean_metadata(obj),
            payment_intent_id=payment_intent_of(obj),
        )

    def verify_signature(self, raw_payload: bytes, signature_header: Optional[str], secret: Optional[str] = None) -> GatewayEvent:
        """
        Vérifie la signature Stripe (Webhook.construct_event) puis normalise l'événement.
        - InvalidSignatureError: en-tête absent ou signature invalide
        - MalformedEventError: corps illisible
        - PaymentConfigurationError: secret webhook absent
        """
        secret = secret or self.webhook_secret
        if not secret:
            raise PaymentConfigurationError("STRIPE_WEBHOOK_SECRET non configuré")
        if not signature_header:
            raise InvalidSignatureError("En-tête stripe-signature manquant")
        try:
            stripe.Webhook.construct_event(raw_payload, signature_header, secret)
        except stripe.SignatureVerificationError as e:
            raise InvalidSignatureError("Signature webhook invalide") from e
        except ValueError as e:
            raise MalformedEventError("Corps du webhook illisible") from e
        try:
            payload = json.loads(raw_payload)
        except ValueError as e:
            raise MalformedEventError("Corps du webhook illisible") from e
        return event_from_payload(payload)
