"""
Appel de confirmation vers le backend de référence (crédit des minutes / activation du plan).
Le backend déduplique sur transaction_id: un rejeu après succès est sans effet.
"""
from dataclasses import dataclass
import logging
from typing import Any, Dict, Optional

import httpx

from billing import config
from billing.errors import ConfirmationFailedError
from billing.plans.catalog import PlanConfig

logger = logging.getLogger(__name__)


def _wire_user_id(user_id: str) -> Any:
    # Le backend attend un entier quand l'identifiant est numérique
    text = str(user_id).strip()
    return int(text) if text.isdigit() else text


# module billing.payments.confirmation
@dataclass(frozen=True)
class ConfirmationRequest:
    user_id: str
    plan: PlanConfig
    transaction_id: str
    payment_intent_id: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "user_id": _wire_user_id(self.user_id),
            "plan_type": self.plan.plan_type,
            "amount_paid": self.plan.amount_major_units,
            "transaction_id": self.transaction_id,
            "payment_intent_id": self.payment_intent_id or self.transaction_id,
            "minutes": self.plan.minutes_granted,
            "is_admin": False,
        }


class BackendConfirmationClient:
    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: Optional[str] = None,
        path: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self._client = client
        self.base_url = (base_url if base_url is not None else config.BACKEND_API_URL).rstrip("/")
        self.path = path if path is not None else config.CONFIRM_PAYMENT_PATH
        self.timeout = timeout if timeout is not None else config.BACKEND_TIMEOUT_SECONDS

    @property
    def url(self) -> str:
        return f"{self.base_url}{self.path}"

    async def confirm(self, request: ConfirmationRequest) -> Dict[str, Any]:
        """
        POST de la confirmation.
        - ConfirmationFailedError sur réponse non-2xx ou erreur de transport
        Retour: corps JSON du backend ({} si vide ou non JSON).
        """
        payload = request.to_payload()
        try:
            resp = await self._client.post(self.url, json=payload, timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.warning("payments.confirm transport_error tx=%s error=%s", request.transaction_id, e)
            raise ConfirmationFailedError(f"Backend injoignable: {e}") from e

        if resp.status_code < 200 or resp.status_code >= 300:
            logger.warning(
                "payments.confirm rejected tx=%s status=%s body=%s",
                request.transaction_id, resp.status_code, resp.text[:500],
            )
            raise ConfirmationFailedError(
                "Le backend a refusé la confirmation", status_code=resp.status_code, body=resp.text
            )

        logger.info(
            "payments.confirm ok tx=%s user_id=%s plan_id=%s", request.transaction_id, request.user_id, request.plan.plan_id
        )
        try:
            data = resp.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {"result": data}
