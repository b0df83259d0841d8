"""
Stockage des sessions d'achat (une tentative en cours par (user_id, plan_id)).

- SessionStore: interface asynchrone commune (mémoire locale / Redis)
- InMemorySessionStore: implémentation par défaut, un seul process
- build_session_store: choix de l'implémentation selon SESSION_STORE_BACKEND

Une session dont expires_at est dépassé est absente pour tous les lecteurs.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from billing import config
from billing.errors import SessionExpiredError
from billing.payments.models import PurchaseSession, PurchaseStatus, can_transition
from billing.payments.scheduler import PeriodicTask

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# module billing.payments.session_store
class SessionStore(ABC):
    """
    Contrat commun des stores. Les opérations de mutation retournent un booléen
    plutôt que de lever: une transition perdue est un cas normal de concurrence.
    """

    def __init__(
        self,
        *,
        ttl: Optional[timedelta] = None,
        sweep_interval_seconds: Optional[float] = None,
        clock: Optional[Clock] = None,
        claim_timeout: Optional[timedelta] = None,
    ):
        self.ttl = ttl or timedelta(minutes=config.PURCHASE_SESSION_TTL_MINUTES)
        self.claim_timeout = claim_timeout or timedelta(seconds=config.CONFIRMATION_CLAIM_TIMEOUT_SECONDS)
        self.sweep_interval_seconds = (
            sweep_interval_seconds if sweep_interval_seconds is not None else config.SESSION_SWEEP_INTERVAL_SECONDS
        )
        self._clock = clock or utcnow
        self._sweeper: Optional[PeriodicTask] = None

    def now(self) -> datetime:
        return self._clock()

    def new_session(self, user_id: str, plan_id: str, gateway_reference_id: str, client_secret: str) -> PurchaseSession:
        now = self.now()
        return PurchaseSession(
            user_id=str(user_id),
            plan_id=str(plan_id),
            gateway_reference_id=gateway_reference_id,
            client_secret=client_secret,
            status=PurchaseStatus.PENDING,
            created_at=now,
            last_updated_at=now,
            expires_at=now + self.ttl,
        )

    @abstractmethod
    async def get_existing(self, user_id: str, plan_id: str) -> Optional[PurchaseSession]:
        ...

    @abstractmethod
    async def create(self, user_id: str, plan_id: str, gateway_reference_id: str, client_secret: str) -> PurchaseSession:
        ...

    async def create_if_absent(
        self, user_id: str, plan_id: str, gateway_reference_id: str, client_secret: str
    ) -> Tuple[PurchaseSession, bool]:
        """
        Enregistre une session si aucune session vivante n'existe pour la clé.
        Retour: (session retenue, True si elle vient d'être créée).
        Les implémentations doivent rendre l'opération atomique.
        """
        existing = await self.get_existing(user_id, plan_id)
        if existing is not None:
            return existing, False
        return await self.create(user_id, plan_id, gateway_reference_id, client_secret), True

    @abstractmethod
    async def update_status(
        self,
        user_id: str,
        plan_id: str,
        status: PurchaseStatus,
        expected: Optional[PurchaseStatus] = None,
    ) -> bool:
        ...

    @abstractmethod
    async def claim_retry(self, user_id: str, plan_id: str) -> bool:
        """
        Réclame une session PROCESSING pour relancer sa confirmation:
        aucun appel en cours, ou appel en cours dont le bail (claim_timeout) est échu.
        """
        ...

    @abstractmethod
    async def record_confirmation_failure(self, user_id: str, plan_id: str, error: str) -> Optional[int]:
        ...

    @abstractmethod
    async def get_by_gateway_reference(self, gateway_reference_id: str) -> Optional[PurchaseSession]:
        ...

    @abstractmethod
    async def complete(self, user_id: str, plan_id: str) -> None:
        ...

    @abstractmethod
    async def clear(self, user_id: str, plan_id: str) -> None:
        ...

    @abstractmethod
    async def sweep_expired(self) -> int:
        ...

    @abstractmethod
    async def list_processing(self) -> List[PurchaseSession]:
        ...

    @abstractmethod
    async def stats(self) -> Dict[str, Any]:
        ...

    def start(self) -> None:
        """Démarre le balayage périodique (à appeler depuis une boucle asyncio)."""
        if self._sweeper is None:
            self._sweeper = PeriodicTask("session-sweep", self.sweep_interval_seconds, self.sweep_expired)
        self._sweeper.start()

    async def close(self) -> None:
        if self._sweeper is not None:
            await self._sweeper.stop()
            self._sweeper = None


def _status_counts(sessions) -> Dict[str, Any]:
    counts = {s.value: 0 for s in PurchaseStatus}
    total = 0
    for session in sessions:
        counts[session.status.value] += 1
        total += 1
    return {"total": total, **counts}


class InMemorySessionStore(SessionStore):
    """
    Store local au process. Aucune méthode n'attend (await) en interne:
    chaque opération est donc atomique vis-à-vis des autres requêtes asyncio.
    """

    def __init__(self, **kwargs: Any):
        super().__init__(**kwargs)
        self._sessions: Dict[Tuple[str, str], PurchaseSession] = {}
        self._by_reference: Dict[str, Tuple[str, str]] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def _drop(self, key: Tuple[str, str]) -> Optional[PurchaseSession]:
        session = self._sessions.pop(key, None)
        if session is not None and self._by_reference.get(session.gateway_reference_id) == key:
            self._by_reference.pop(session.gateway_reference_id, None)
        return session

    def _live_entry(self, key: Tuple[str, str]) -> PurchaseSession:
        """
        Retourne l'entrée vivante pour la clé.
        - KeyError si absente
        - SessionExpiredError si expirée (l'entrée est supprimée au passage)
        """
        session = self._sessions[key]
        if session.is_expired(self.now()):
            self._drop(key)
            logger.info("payments.session.expired user_id=%s plan_id=%s", key[0], key[1])
            raise SessionExpiredError()
        return session

    def _lookup(self, key: Tuple[str, str]) -> Optional[PurchaseSession]:
        try:
            return self._live_entry(key)
        except (KeyError, SessionExpiredError):
            return None

    def _store(self, session: PurchaseSession) -> PurchaseSession:
        self._drop(session.key)
        self._sessions[session.key] = session
        self._by_reference[session.gateway_reference_id] = session.key
        return session

    async def get_existing(self, user_id: str, plan_id: str) -> Optional[PurchaseSession]:
        session = self._lookup((str(user_id), str(plan_id)))
        if session is None or session.status.is_terminal:
            return None
        return session

    async def create(self, user_id: str, plan_id: str, gateway_reference_id: str, client_secret: str) -> PurchaseSession:
        session = self._store(self.new_session(user_id, plan_id, gateway_reference_id, client_secret))
        logger.info(
            "payments.session.created user_id=%s plan_id=%s ref=%s",
            session.user_id, session.plan_id, session.gateway_reference_id,
        )
        return session

    async def create_if_absent(
        self, user_id: str, plan_id: str, gateway_reference_id: str, client_secret: str
    ) -> Tuple[PurchaseSession, bool]:
        existing = self._lookup((str(user_id), str(plan_id)))
        if existing is not None and not existing.status.is_terminal:
            return existing, False
        return await self.create(user_id, plan_id, gateway_reference_id, client_secret), True

    async def update_status(
        self,
        user_id: str,
        plan_id: str,
        status: PurchaseStatus,
        expected: Optional[PurchaseStatus] = None,
    ) -> bool:
        session = self._lookup((str(user_id), str(plan_id)))
        if session is None:
            return False
        if expected is not None and session.status != expected:
            return False
        if not can_transition(session.status, status):
            return False
        now = self.now()
        session.status = status
        session.last_updated_at = now
        session.expires_at = now + self.ttl
        if status == PurchaseStatus.PROCESSING:
            session.claim(now)
        elif status.is_terminal:
            session.release_claim()
        return True

    async def claim_retry(self, user_id: str, plan_id: str) -> bool:
        session = self._lookup((str(user_id), str(plan_id)))
        if session is None or session.status != PurchaseStatus.PROCESSING:
            return False
        now = self.now()
        if session.confirming:
            if not session.claim_is_stale(now, self.claim_timeout):
                return False
            logger.warning("payments.session.claim_takeover user_id=%s plan_id=%s claimed_at=%s", user_id, plan_id, session.claimed_at)
        session.claim(now)
        session.last_updated_at = now
        session.expires_at = now + self.ttl
        return True

    async def record_confirmation_failure(self, user_id: str, plan_id: str, error: str) -> Optional[int]:
        session = self._lookup((str(user_id), str(plan_id)))
        if session is None:
            return None
        now = self.now()
        session.release_claim()
        session.confirmation_attempts += 1
        session.last_error = error
        session.last_updated_at = now
        session.expires_at = now + self.ttl
        return session.confirmation_attempts

    async def get_by_gateway_reference(self, gateway_reference_id: str) -> Optional[PurchaseSession]:
        key = self._by_reference.get(str(gateway_reference_id))
        if key is None:
            return None
        return self._lookup(key)

    async def complete(self, user_id: str, plan_id: str) -> None:
        if self._drop((str(user_id), str(plan_id))) is not None:
            logger.info("payments.session.completed user_id=%s plan_id=%s", user_id, plan_id)

    async def clear(self, user_id: str, plan_id: str) -> None:
        if self._drop((str(user_id), str(plan_id))) is not None:
            logger.info("payments.session.cleared user_id=%s plan_id=%s", user_id, plan_id)

    async def sweep_expired(self) -> int:
        now = self.now()
        expired = [key for key, s in self._sessions.items() if s.is_expired(now)]
        for key in expired:
            self._drop(key)
        if expired:
            logger.info("payments.session.sweep removed=%s", len(expired))
        return len(expired)

    async def list_processing(self) -> List[PurchaseSession]:
        now = self.now()
        return [
            s for s in self._sessions.values()
            if s.status == PurchaseStatus.PROCESSING and not s.is_expired(now)
        ]

    async def stats(self) -> Dict[str, Any]:
        now = self.now()
        data = _status_counts(s for s in self._sessions.values() if not s.is_expired(now))
        data["backend"] = "memory"
        return data


def build_session_store(backend: Optional[str] = None, **kwargs: Any) -> SessionStore:
    """
    Construit le store configuré.
    - "memory" (défaut): InMemorySessionStore
    - "redis": RedisSessionStore sur SESSION_REDIS_URL
    """
    backend = (backend or config.SESSION_STORE_BACKEND or "memory").lower()
    if backend == "redis":
        from billing.payments.redis_store import RedisSessionStore

        return RedisSessionStore.from_url(config.SESSION_REDIS_URL, prefix=config.SESSION_REDIS_PREFIX, **kwargs)
    if backend != "memory":
        logger.warning("payments.session.store unknown backend=%s, fallback=memory", backend)
    return InMemorySessionStore(**kwargs)
