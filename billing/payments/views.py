import logging
from typing import Optional, Union

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from billing.errors import InvalidSignatureError, MalformedEventError
from billing.utils.rate_limit import optional_rate_limit

from .dependencies import get_gateway, get_purchase_service, get_reconciler
from .reconciler import EventReconciler
from .service import PurchaseService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/stripe", tags=["Payments API"])


class CreatePaymentIntentRequest(BaseModel):
    planId: str
    userId: Union[int, str]
    userEmail: Optional[str] = None


class CreateCheckoutSessionRequest(CreatePaymentIntentRequest):
    pass


class PaymentSuccessRequest(BaseModel):
    session_id: str
    user_id: Union[int, str]


class CleanupSessionRequest(BaseModel):
    userId: Union[int, str]
    planId: str


# module billing.payments.views
@router.post("/create-payment-intent", dependencies=[Depends(optional_rate_limit(times=10, seconds=60))])
async def create_payment_intent(
    payload: CreatePaymentIntentRequest,
    service: PurchaseService = Depends(get_purchase_service),
):
    """
    Démarre (ou reprend) l'achat d'un plan.
    - Entrée JSON: { "planId": "...", "userId": "...", "userEmail": "..." }
    - Retour: { clientSecret, paymentIntentId, amount, description, reused }
    - Erreurs: 400 plan inconnu / plan sur devis, 503 Stripe indisponible
    """
    started = await service.start_purchase(payload.userId, payload.planId, payload.userEmail)
    return started.to_response()


@router.post("/create-checkout-session", dependencies=[Depends(optional_rate_limit(times=10, seconds=60))])
async def create_checkout_session(
    payload: CreateCheckoutSessionRequest,
    service: PurchaseService = Depends(get_purchase_service),
):
    """
    Démarre (ou reprend) un achat via la page Checkout hébergée de Stripe.
    - Retour: { sessionId, url, amount, description, reused }
    - Erreurs: 400 plan inconnu / plan sur devis, 409 paiement intégré déjà en cours, 503 Stripe indisponible
    """
    started = await service.start_checkout(payload.userId, payload.planId, payload.userEmail)
    return started.to_checkout_response()


@router.post("/payment-success")
async def payment_success(
    payload: PaymentSuccessRequest,
    reconciler: EventReconciler = Depends(get_reconciler),
):
    """
    Retour de redirection après paiement: statut relu chez Stripe, jamais dans l'URL.
    - success=true uniquement après confirmation du backend pendant cet appel;
      sinon status indique l'état (pending, in_progress, no_session, failed)
    - Erreurs: 403 si la session appartient à un autre utilisateur
    """
    result = await reconciler.confirm_from_redirect(payload.session_id, payload.user_id)
    return {"success": result.success, "status": result.outcome}


@router.post("/cleanup-session")
async def cleanup_session(
    payload: CleanupSessionRequest,
    service: PurchaseService = Depends(get_purchase_service),
):
    """Abandon du formulaire de paiement côté client."""
    await service.clear_purchase(payload.userId, payload.planId)
    return {"success": True}


@router.get("/test-config")
async def stripe_config_check(gateway=Depends(get_gateway)):
    """Vérifie la configuration Stripe (clés, mode, compte). 500 si elle est incomplète ou refusée."""
    status = await gateway.check_config()
    if not status.get("configured"):
        return JSONResponse(status_code=500, content=status)
    return status


@router.post("/webhook", include_in_schema=False)
async def webhook_stripe(request: Request, reconciler: EventReconciler = Depends(get_reconciler)):
    """
    Webhook Stripe (payment intents et sessions Checkout).
    - 200 {"received": true}: traité, doublon ou type ignoré
    - 400: signature absente/invalide ou corps illisible (aucune mutation)
    - 500: erreur interne, y compris refus du backend: Stripe relivrera l'événement
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    try:
        result = await reconciler.handle_webhook(payload, sig_header)
    except InvalidSignatureError as e:
        logger.warning("payments.webhook rejected reason=%s", e.message)
        return JSONResponse(status_code=400, content={"error": "Webhook signature verification failed"})
    except MalformedEventError as e:
        logger.warning("payments.webhook rejected reason=%s", e.message)
        return JSONResponse(status_code=400, content={"error": "Invalid Stripe webhook payload"})
    except Exception:
        logger.exception("Erreur webhook_stripe")
        return JSONResponse(status_code=500, content={"error": "Error processing webhook"})
    logger.info("payments.webhook outcome=%s success=%s", result.outcome, result.success)
    return {"received": True}
