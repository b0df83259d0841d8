"""
Cas d'usage 'payments': démarrage d'un achat (une seule tentative en cours par
(user_id, plan_id)) et abandon explicite.
"""
from dataclasses import dataclass, field
import hashlib
import logging
import time
from typing import Callable, Optional

from billing import config
from billing.errors import PurchaseInProgressError, SalesAssistedPlanError
from billing.plans.catalog import PlanConfig, is_subscription_plan, resolve_plan

from .metadata import make_metadata
from .models import PurchaseSession
from .session_store import SessionStore

logger = logging.getLogger(__name__)


def make_idempotency_key(
    user_id: str,
    plan_id: str,
    now: Optional[float] = None,
    window_seconds: Optional[int] = None,
    scope: Optional[str] = None,
) -> str:
    """
    Clé d'idempotence déterministe pour la passerelle:
    sha256("user_id:plan_id:bucket") avec bucket = floor(epoch / fenêtre).
    Deux requêtes dans la même fenêtre obtiennent le même payment intent.
    scope préfixe la clé (ex: "checkout"): Stripe refuse une clé réutilisée sur un autre endpoint.
    """
    window = window_seconds or config.IDEMPOTENCY_WINDOW_SECONDS
    ts = time.time() if now is None else now
    bucket = int(ts // window)
    raw = f"{user_id}:{plan_id}:{bucket}"
    if scope:
        raw = f"{scope}:{raw}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


# module billing.payments.service
@dataclass(frozen=True)
class PurchaseStart:
    gateway_reference_id: str
    client_secret: str = field(repr=False)
    plan: PlanConfig
    reused: bool = False

    def to_response(self) -> dict:
        return {
            "clientSecret": self.client_secret,
            "paymentIntentId": self.gateway_reference_id,
            "amount": self.plan.amount_minor_units,
            "description": self.plan.description,
            "reused": self.reused,
        }

    def to_checkout_response(self) -> dict:
        # Pour un checkout hébergé, client_secret porte l'URL de la page Stripe
        return {
            "sessionId": self.gateway_reference_id,
            "url": self.client_secret,
            "amount": self.plan.amount_minor_units,
            "description": self.plan.description,
            "reused": self.reused,
        }


class PurchaseService:
    def __init__(
        self,
        store: SessionStore,
        gateway,
        currency: Optional[str] = None,
        sales_contact: Optional[str] = None,
        time_func: Callable[[], float] = time.time,
    ):
        self.store = store
        self.gateway = gateway
        self.currency = currency or config.PAYMENT_CURRENCY
        self.sales_contact = sales_contact if sales_contact is not None else config.SALES_CONTACT_EMAIL
        self._time = time_func

    def _resolve(self, plan_id: str) -> PlanConfig:
        plan = resolve_plan(plan_id)
        if plan.sales_assisted:
            raise SalesAssistedPlanError(plan.plan_id, contact=self.sales_contact)
        return plan

    def _reuse(self, existing: PurchaseSession, plan: PlanConfig, checkout: bool) -> PurchaseStart:
        if existing.gateway_reference_id.startswith("cs_") != checkout:
            raise PurchaseInProgressError(
                "Un paiement est déjà en cours pour ce plan: terminez-le ou abandonnez-le (cleanup-session)"
            )
        logger.info(
            "payments.start reused user_id=%s plan_id=%s ref=%s status=%s",
            existing.user_id, plan.plan_id, existing.gateway_reference_id, existing.status.value,
        )
        return PurchaseStart(existing.gateway_reference_id, existing.client_secret, plan, reused=True)

    async def _register(self, user_id: str, plan: PlanConfig, intent, checkout: bool) -> PurchaseStart:
        session, created = await self.store.create_if_absent(
            user_id, plan.plan_id, intent.gateway_reference_id, intent.client_secret
        )
        if not created:
            # Une requête concurrente a enregistré sa tentative pendant l'appel passerelle
            logger.info(
                "payments.start lost_race user_id=%s plan_id=%s winner=%s ours=%s",
                user_id, plan.plan_id, session.gateway_reference_id, intent.gateway_reference_id,
            )
            return self._reuse(session, plan, checkout)
        logger.info("payments.start created user_id=%s plan_id=%s ref=%s", user_id, plan.plan_id, session.gateway_reference_id)
        return PurchaseStart(session.gateway_reference_id, session.client_secret, plan, reused=False)

    async def start_purchase(self, user_id: str, plan_id: str, user_email: Optional[str] = None) -> PurchaseStart:
        """
        Retourne la tentative en cours pour (user_id, plan_id) ou en crée une (payment intent).
        - UnknownPlanError / SalesAssistedPlanError avant tout accès store ou passerelle
        - PurchaseInProgressError si un checkout hébergé est déjà en cours pour ce plan
        - GatewayUnavailableError si la création du payment intent échoue (rien n'est enregistré)
        """
        plan = self._resolve(plan_id)
        user_id = str(user_id)

        existing = await self.store.get_existing(user_id, plan.plan_id)
        if existing is not None:
            return self._reuse(existing, plan, checkout=False)

        intent = await self.gateway.create_intent(
            amount_minor_units=plan.amount_minor_units,
            currency=self.currency,
            metadata=make_metadata(user_id, plan, user_email),
            idempotency_key=make_idempotency_key(user_id, plan.plan_id, now=self._time()),
            description=plan.description,
        )
        return await self._register(user_id, plan, intent, checkout=False)

    async def start_checkout(self, user_id: str, plan_id: str, user_email: Optional[str] = None) -> PurchaseStart:
        """
        Variante checkout hébergé: la session d'achat est indexée sous l'id cs_...
        Abonnements en mode "subscription", recharges et essai en paiement unique.
        """
        plan = self._resolve(plan_id)
        user_id = str(user_id)

        existing = await self.store.get_existing(user_id, plan.plan_id)
        if existing is not None:
            return self._reuse(existing, plan, checkout=True)

        checkout = await self.gateway.create_checkout_session(
            amount_minor_units=plan.amount_minor_units,
            currency=self.currency,
            metadata=make_metadata(user_id, plan, user_email),
            idempotency_key=make_idempotency_key(user_id, plan.plan_id, now=self._time(), scope="checkout"),
            description=plan.description,
            subscription=is_subscription_plan(plan.plan_id),
            customer_email=user_email,
        )
        return await self._register(user_id, plan, checkout, checkout=True)

    async def clear_purchase(self, user_id: str, plan_id: str) -> None:
        """Abandon côté client: supprime la session (l'intent Stripe n'est pas annulé)."""
        await self.store.clear(str(user_id), str(plan_id))
