"""
Modèle de données des achats: session d'achat et objets échangés avec la passerelle.
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional, Tuple

# module billing.payments.models


class PurchaseStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PurchaseStatus.COMPLETED, PurchaseStatus.FAILED)


# Transitions autorisées (uniquement vers l'avant)
_FORWARD = {
    PurchaseStatus.PENDING: {PurchaseStatus.PROCESSING, PurchaseStatus.FAILED},
    PurchaseStatus.PROCESSING: {PurchaseStatus.COMPLETED, PurchaseStatus.FAILED},
    PurchaseStatus.COMPLETED: set(),
    PurchaseStatus.FAILED: set(),
}


def can_transition(current: PurchaseStatus, target: PurchaseStatus) -> bool:
    return target in _FORWARD.get(current, set())


# Statuts normalisés renvoyés par la passerelle
GATEWAY_SUCCEEDED = "succeeded"
GATEWAY_PENDING = "pending"
GATEWAY_FAILED = "failed"


@dataclass
class PurchaseSession:
    """
    Tentative d'achat en cours pour une clé (user_id, plan_id).
    - gateway_reference_id: identifiant du payment intent, clé de jointure des webhooks
    - client_secret: jeton opaque remis au client (jamais loggé): client secret du
      payment intent, ou URL de la page Checkout pour un checkout hébergé (cs_...)
    - confirming: un appel de confirmation au backend est en cours
    - claimed_at: début de cet appel (bail: au-delà du délai, la réclamation est reprenable)
    """
    user_id: str
    plan_id: str
    gateway_reference_id: str
    client_secret: str = field(repr=False)
    status: PurchaseStatus
    created_at: datetime
    last_updated_at: datetime
    expires_at: datetime
    confirmation_attempts: int = 0
    confirming: bool = False
    claimed_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.user_id, self.plan_id)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now

    def is_live(self, now: datetime) -> bool:
        return not self.is_expired(now) and not self.status.is_terminal

    def claim_is_stale(self, now: datetime, timeout: timedelta) -> bool:
        """Réclamation abandonnée (process arrêté en pleine confirmation)."""
        if not self.confirming:
            return False
        return self.claimed_at is None or self.claimed_at + timeout <= now

    def claim(self, now: datetime) -> None:
        self.confirming = True
        self.claimed_at = now

    def release_claim(self) -> None:
        self.confirming = False
        self.claimed_at = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        for name in ("created_at", "last_updated_at", "expires_at"):
            data[name] = getattr(self, name).isoformat()
        data["claimed_at"] = self.claimed_at.isoformat() if self.claimed_at else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PurchaseSession":
        return cls(
            user_id=str(data["user_id"]),
            plan_id=str(data["plan_id"]),
            gateway_reference_id=str(data["gateway_reference_id"]),
            client_secret=str(data.get("client_secret") or ""),
            status=PurchaseStatus(data["status"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            last_updated_at=datetime.fromisoformat(data["last_updated_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            confirmation_attempts=int(data.get("confirmation_attempts") or 0),
            confirming=bool(data.get("confirming")),
            claimed_at=datetime.fromisoformat(data["claimed_at"]) if data.get("claimed_at") else None,
            last_error=data.get("last_error"),
        )


@dataclass(frozen=True)
class GatewayIntent:
    gateway_reference_id: str
    client_secret: str = field(repr=False)


@dataclass(frozen=True)
class GatewayStatus:
    """Lecture autoritative d'un paiement côté passerelle."""
    gateway_reference_id: str
    status: str
    metadata: Dict[str, str] = field(default_factory=dict)
    payment_intent_id: Optional[str] = None

    @property
    def reference_ids(self) -> Tuple[str, ...]:
        refs = [self.gateway_reference_id]
        if self.payment_intent_id and self.payment_intent_id not in refs:
            refs.append(self.payment_intent_id)
        return tuple(refs)


@dataclass(frozen=True)
class GatewayEvent:
    """
    Événement webhook vérifié et normalisé.
    status est None pour les types d'événements non gérés (acquittés puis ignorés).
    """
    event_id: str
    event_type: str
    reference_ids: Tuple[str, ...]
    payment_intent_id: Optional[str] = None
    status: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
