"""
Taxonomie d’erreurs du service de paiement.
Chaque erreur porte son code HTTP et un code machine; la traduction en réponse
JSON est faite une seule fois par les handlers (billing.app_setup.exceptions).
"""
from typing import Any, Dict, Optional


class PaymentError(Exception):
    status_code = 500
    code = "payment_error"

    def __init__(self, message: str = "", **extra: Any):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        payload = {"detail": self.message, "code": self.code}
        payload.update(self.extra)
        return payload


class UnknownPlanError(PaymentError):
    status_code = 400
    code = "unknown_plan"

    def __init__(self, plan_id: str):
        super().__init__(f"Plan inconnu: {plan_id}")
        self.plan_id = plan_id


class SalesAssistedPlanError(PaymentError):
    """Plan vendu uniquement via l'équipe commerciale (pas de checkout en libre-service)."""
    status_code = 400
    code = "sales_assisted"

    def __init__(self, plan_id: str, contact: str = ""):
        super().__init__(f"Le plan {plan_id} nécessite un contact commercial", contact=contact)
        self.plan_id = plan_id
        self.contact = contact


class GatewayUnavailableError(PaymentError):
    status_code = 503
    code = "gateway_unavailable"


class InvalidSignatureError(PaymentError):
    status_code = 400
    code = "invalid_signature"


class MalformedEventError(PaymentError):
    status_code = 400
    code = "malformed_event"


class ConfirmationFailedError(PaymentError):
    """Le backend de référence a refusé (ou n'a pas reçu) la confirmation."""
    status_code = 502
    code = "confirmation_failed"

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.upstream_status = status_code
        self.body = body


class SessionExpiredError(PaymentError):
    # Jamais exposé: une session expirée est traitée comme absente
    status_code = 404
    code = "session_expired"


class PurchaseOwnershipError(PaymentError):
    status_code = 403
    code = "forbidden"


class PaymentConfigurationError(PaymentError):
    status_code = 500
    code = "configuration_error"


class PurchaseInProgressError(PaymentError):
    """Une tentative d'achat d'un autre type (formulaire intégré / checkout hébergé) est déjà en cours."""
    status_code = 409
    code = "purchase_in_progress"
