"""
Module 'payments' (feature-first): point d'entrée public.
Réunit le modèle de session d'achat, les stores, la passerelle Stripe, l'appel
au backend de référence et les services (démarrage d'achat, réconciliation).
"""

from .models import PurchaseSession, PurchaseStatus, GatewayEvent, GatewayIntent, GatewayStatus
from .session_store import SessionStore, InMemorySessionStore, build_session_store
from .stripe_client import StripeGateway, event_from_payload
from .confirmation import BackendConfirmationClient, ConfirmationRequest
from .service import PurchaseService, PurchaseStart, make_idempotency_key
from .reconciler import EventReconciler, ReconcileResult
from .scheduler import PeriodicTask

__all__ = [
    # modèle
    "PurchaseSession",
    "PurchaseStatus",
    "GatewayEvent",
    "GatewayIntent",
    "GatewayStatus",
    # stores
    "SessionStore",
    "InMemorySessionStore",
    "build_session_store",
    # stripe
    "StripeGateway",
    "event_from_payload",
    # backend
    "BackendConfirmationClient",
    "ConfirmationRequest",
    # services
    "PurchaseService",
    "PurchaseStart",
    "make_idempotency_key",
    "EventReconciler",
    "ReconcileResult",
    "PeriodicTask",
]
