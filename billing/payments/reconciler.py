"""
Réconciliation des événements de paiement avec les sessions d'achat.

Sources d'événements: webhooks Stripe (signés), retour de redirection du client,
relance périodique des confirmations en échec. Quel que soit l'ordre ou le nombre
de livraisons, le backend de référence n'est appelé que par un seul appelant
(transition gardée PENDING -> PROCESSING, ou reprise explicite après échec).
"""
import asyncio
from dataclasses import dataclass
import logging
from typing import Iterable, Optional

from billing import config
from billing.errors import ConfirmationFailedError, PurchaseOwnershipError, UnknownPlanError
from billing.plans.catalog import resolve_plan

from .confirmation import BackendConfirmationClient, ConfirmationRequest
from .metadata import extract_metadata
from .models import GATEWAY_FAILED, GATEWAY_SUCCEEDED, GatewayEvent, PurchaseSession, PurchaseStatus
from .session_store import SessionStore

logger = logging.getLogger(__name__)

# Issues possibles d'une réconciliation
OUTCOME_COMPLETED = "completed"
OUTCOME_FAILED = "failed"
OUTCOME_PENDING = "pending"
OUTCOME_IN_PROGRESS = "in_progress"
OUTCOME_NO_SESSION = "no_session"
OUTCOME_IGNORED = "ignored"


# module billing.payments.reconciler
@dataclass(frozen=True)
class ReconcileResult:
    """
    Issue d'une réconciliation.
    success est vrai uniquement si le backend de référence a confirmé l'achat pendant cet appel.
    """
    outcome: str
    success: bool = False
    gateway_status: Optional[str] = None


class EventReconciler:
    def __init__(
        self,
        store: SessionStore,
        gateway,
        backend: BackendConfirmationClient,
        max_attempts: Optional[int] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.backend = backend
        self.max_attempts = max_attempts or config.CONFIRMATION_MAX_ATTEMPTS

    async def handle_webhook(self, raw_payload: bytes, signature_header: Optional[str]) -> ReconcileResult:
        """
        Vérifie la signature puis réconcilie.
        Les erreurs de signature/format remontent avant toute mutation.
        """
        event = self.gateway.verify_signature(raw_payload, signature_header)
        logger.info("payments.webhook received id=%s type=%s", event.event_id, event.event_type)
        return await self.reconcile(event)

    async def _find_session(self, reference_ids: Iterable[str]) -> Optional[PurchaseSession]:
        for ref in reference_ids:
            if not ref:
                continue
            session = await self.store.get_by_gateway_reference(ref)
            if session is not None:
                return session
        return None

    async def reconcile(self, event: GatewayEvent) -> ReconcileResult:
        if event.status is None:
            logger.info("payments.webhook ignored id=%s type=%s", event.event_id, event.event_type)
            return ReconcileResult(OUTCOME_IGNORED)

        session = await self._find_session(event.reference_ids)
        if session is None:
            # Doublon, rejeu après complétion ou session expirée: acquitté sans effet
            logger.info(
                "payments.webhook no_session id=%s type=%s refs=%s",
                event.event_id, event.event_type, ",".join(event.reference_ids),
            )
            return ReconcileResult(OUTCOME_NO_SESSION, gateway_status=event.status)

        meta_user, meta_plan = extract_metadata(event.metadata)
        if (meta_user and meta_user != session.user_id) or (meta_plan and meta_plan != session.plan_id):
            logger.warning(
                "payments.webhook metadata_mismatch id=%s ref=%s meta_user=%s meta_plan=%s user_id=%s plan_id=%s",
                event.event_id, session.gateway_reference_id, meta_user, meta_plan, session.user_id, session.plan_id,
            )

        return await self._apply(session, event.status, event.payment_intent_id)

    async def _apply(
        self,
        session: PurchaseSession,
        gateway_status: str,
        payment_intent_id: Optional[str],
    ) -> ReconcileResult:
        user_id, plan_id = session.user_id, session.plan_id
        ref = session.gateway_reference_id

        if gateway_status == GATEWAY_FAILED:
            # Un refus ne fait jamais échouer une session déjà en cours de confirmation
            if await self.store.update_status(user_id, plan_id, PurchaseStatus.FAILED, expected=PurchaseStatus.PENDING):
                await self.store.clear(user_id, plan_id)
                logger.info("payments.reconcile failed user_id=%s plan_id=%s ref=%s", user_id, plan_id, ref)
                return ReconcileResult(OUTCOME_FAILED, gateway_status=gateway_status)
            logger.info("payments.reconcile decline_ignored user_id=%s plan_id=%s status=%s", user_id, plan_id, session.status.value)
            return ReconcileResult(OUTCOME_IN_PROGRESS, gateway_status=gateway_status)

        if gateway_status != GATEWAY_SUCCEEDED:
            return ReconcileResult(OUTCOME_PENDING, gateway_status=gateway_status)

        claimed = await self.store.update_status(user_id, plan_id, PurchaseStatus.PROCESSING, expected=PurchaseStatus.PENDING)
        if not claimed:
            claimed = await self.store.claim_retry(user_id, plan_id)
        if not claimed:
            logger.info("payments.reconcile in_progress user_id=%s plan_id=%s ref=%s", user_id, plan_id, ref)
            return ReconcileResult(OUTCOME_IN_PROGRESS, gateway_status=gateway_status)

        await self._confirm(session, payment_intent_id)
        return ReconcileResult(OUTCOME_COMPLETED, success=True, gateway_status=gateway_status)

    async def _confirm(self, session: PurchaseSession, payment_intent_id: Optional[str] = None) -> None:
        """
        Appelle le backend de référence pour une session réclamée (PROCESSING + confirming).
        Succès: session supprimée. Échec ou interruption: réclamation rendue, tentative
        comptée puis erreur relancée.
        """
        user_id, plan_id = session.user_id, session.plan_id
        transaction_id = session.gateway_reference_id
        try:
            # Montant et minutes toujours relus depuis le catalogue
            plan = resolve_plan(plan_id)
        except UnknownPlanError:
            logger.error("payments.reconcile unknown_plan user_id=%s plan_id=%s", user_id, plan_id)
            await self.store.update_status(user_id, plan_id, PurchaseStatus.FAILED)
            await self.store.clear(user_id, plan_id)
            raise

        request = ConfirmationRequest(
            user_id=user_id,
            plan=plan,
            transaction_id=transaction_id,
            payment_intent_id=payment_intent_id or session.gateway_reference_id,
        )
        try:
            await self.backend.confirm(request)
        except ConfirmationFailedError as e:
            attempts = await self.store.record_confirmation_failure(user_id, plan_id, e.message)
            if attempts is not None and attempts >= self.max_attempts:
                await self.store.update_status(user_id, plan_id, PurchaseStatus.FAILED)
                await self.store.clear(user_id, plan_id)
                logger.error(
                    "payments.reconcile confirmation_abandoned user_id=%s plan_id=%s ref=%s attempts=%s",
                    user_id, plan_id, transaction_id, attempts,
                )
            else:
                logger.warning(
                    "payments.reconcile confirmation_failed user_id=%s plan_id=%s ref=%s attempts=%s",
                    user_id, plan_id, transaction_id, attempts,
                )
            raise
        except (Exception, asyncio.CancelledError) as e:
            # Annulation (arrêt du process) ou erreur inattendue: un autre appelant doit pouvoir reprendre
            await self.store.record_confirmation_failure(user_id, plan_id, type(e).__name__)
            logger.warning(
                "payments.reconcile confirmation_interrupted user_id=%s plan_id=%s ref=%s error=%s",
                user_id, plan_id, transaction_id, type(e).__name__,
            )
            raise

        await self.store.update_status(user_id, plan_id, PurchaseStatus.COMPLETED, expected=PurchaseStatus.PROCESSING)
        await self.store.complete(user_id, plan_id)

    async def confirm_from_redirect(self, gateway_reference_id: str, user_id: str) -> ReconcileResult:
        """
        Retour de redirection du client: relit le statut autoritatif chez Stripe
        (jamais les paramètres de l'URL) puis applique la même machine d'états.
        - PurchaseOwnershipError si la session (ou, sans session, le paiement Stripe)
          appartient à un autre utilisateur
        - sans session (déjà complétée ou expirée): success=False, le client relit son solde
        """
        status = await self.gateway.retrieve_status(gateway_reference_id)
        session = await self._find_session(status.reference_ids)
        if session is None:
            owner, _ = extract_metadata(status.metadata)
            if owner is None or owner != str(user_id):
                logger.warning(
                    "payments.redirect forbidden ref=%s owner=%s caller=%s", gateway_reference_id, owner, user_id
                )
                raise PurchaseOwnershipError("Ce paiement appartient à un autre utilisateur")
            logger.info("payments.redirect no_session ref=%s status=%s", gateway_reference_id, status.status)
            return ReconcileResult(OUTCOME_NO_SESSION, gateway_status=status.status)
        if str(session.user_id) != str(user_id):
            logger.warning(
                "payments.redirect forbidden ref=%s owner=%s caller=%s", gateway_reference_id, session.user_id, user_id
            )
            raise PurchaseOwnershipError("Cette session de paiement appartient à un autre utilisateur")
        return await self._apply(session, status.status, status.payment_intent_id)

    async def retry_stalled(self) -> int:
        """
        Relance les confirmations restées en PROCESSING après un échec du backend.
        Retour: nombre de sessions complétées.
        """
        completed = 0
        for session in await self.store.list_processing():
            # claim_retry écarte les confirmations en cours dont le bail n'est pas échu
            if not await self.store.claim_retry(session.user_id, session.plan_id):
                continue
            try:
                await self._confirm(session)
            except ConfirmationFailedError:
                continue
            completed += 1
        if completed:
            logger.info("payments.retry completed=%s", completed)
        return completed
