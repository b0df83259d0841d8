"""
Store Redis des sessions d'achat (plusieurs instances de l'application).

Clés:
- {prefix}:session:{user_id}:{plan_id} -> JSON de la session (expiration native)
- {prefix}:ref:{gateway_reference_id}  -> clé de session (index secondaire)

Les changements de statut passent par des transactions optimistes WATCH/MULTI;
la création concurrente est arbitrée par SET NX.
"""
import json
import logging
import math
from typing import Any, Callable, Dict, List, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import WatchError

from billing.payments.models import PurchaseSession, PurchaseStatus, can_transition
from billing.payments.session_store import SessionStore, _status_counts

logger = logging.getLogger(__name__)

# Marqueurs de résultat des transactions
_KEEP = object()
_DELETE = object()

_CREATE_ATTEMPTS = 3


# module billing.payments.redis_store
class RedisSessionStore(SessionStore):
    def __init__(self, client: Any, *, prefix: str = "purchase", owns_client: bool = False, **kwargs: Any):
        super().__init__(**kwargs)
        self._redis = client
        self.prefix = prefix
        self._owns_client = owns_client

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisSessionStore":
        client = aioredis.from_url(url, encoding="utf-8", decode_responses=True)
        return cls(client, owns_client=True, **kwargs)

    def _session_key(self, user_id: str, plan_id: str) -> str:
        return f"{self.prefix}:session:{user_id}:{plan_id}"

    def _ref_key(self, gateway_reference_id: str) -> str:
        return f"{self.prefix}:ref:{gateway_reference_id}"

    def _ttl_seconds(self, session: PurchaseSession) -> int:
        remaining = (session.expires_at - self.now()).total_seconds()
        return max(1, math.ceil(remaining))

    @staticmethod
    def _encode(session: PurchaseSession) -> str:
        return json.dumps(session.to_dict())

    @staticmethod
    def _decode(raw: Optional[str]) -> Optional[PurchaseSession]:
        if not raw:
            return None
        try:
            return PurchaseSession.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            logger.warning("payments.session.redis undecodable entry dropped")
            return None

    def _is_stale(self, session: PurchaseSession) -> bool:
        return session.is_expired(self.now()) or session.status.is_terminal

    async def _transact(self, key: str, fn: Callable[[Optional[PurchaseSession]], Tuple[Any, Any]]) -> Any:
        """
        Lit la session sous WATCH, applique fn puis écrit le résultat dans MULTI.
        fn(session) -> (changement, résultat) où changement vaut:
        - _KEEP: aucune écriture
        - _DELETE: suppression de la session et de son index
        - une PurchaseSession: réécriture (TTL recalculé)
        Rejoue tant qu'une écriture concurrente invalide le WATCH.
        """
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    current = self._decode(await pipe.get(key))
                    change, result = fn(current)
                    if change is _KEEP:
                        return result
                    pipe.multi()
                    if change is _DELETE:
                        pipe.delete(key)
                        if current is not None:
                            pipe.delete(self._ref_key(current.gateway_reference_id))
                    else:
                        ttl = self._ttl_seconds(change)
                        pipe.set(key, self._encode(change), ex=ttl)
                        pipe.set(self._ref_key(change.gateway_reference_id), key, ex=ttl)
                        if current is not None and current.gateway_reference_id != change.gateway_reference_id:
                            pipe.delete(self._ref_key(current.gateway_reference_id))
                    await pipe.execute()
                    return result
                except WatchError:
                    logger.debug("payments.session.redis watch conflict key=%s", key)
                    continue

    async def _load_live(self, key: str) -> Optional[PurchaseSession]:
        session = self._decode(await self._redis.get(key))
        if session is None:
            return None
        if session.is_expired(self.now()):
            await self._discard_stale(key)
            return None
        return session

    async def _discard_stale(self, key: str) -> bool:
        def _fn(current):
            if current is not None and self._is_stale(current):
                return _DELETE, True
            return _KEEP, False

        return await self._transact(key, _fn)

    async def get_existing(self, user_id: str, plan_id: str) -> Optional[PurchaseSession]:
        session = await self._load_live(self._session_key(user_id, plan_id))
        if session is None or session.status.is_terminal:
            return None
        return session

    async def create(self, user_id: str, plan_id: str, gateway_reference_id: str, client_secret: str) -> PurchaseSession:
        session = self.new_session(user_id, plan_id, gateway_reference_id, client_secret)
        await self._transact(self._session_key(user_id, plan_id), lambda current: (session, None))
        logger.info("payments.session.created user_id=%s plan_id=%s ref=%s", user_id, plan_id, gateway_reference_id)
        return session

    async def create_if_absent(
        self, user_id: str, plan_id: str, gateway_reference_id: str, client_secret: str
    ) -> Tuple[PurchaseSession, bool]:
        key = self._session_key(user_id, plan_id)
        for _ in range(_CREATE_ATTEMPTS):
            session = self.new_session(user_id, plan_id, gateway_reference_id, client_secret)
            ttl = self._ttl_seconds(session)
            if await self._redis.set(key, self._encode(session), nx=True, ex=ttl):
                await self._redis.set(self._ref_key(gateway_reference_id), key, ex=ttl)
                logger.info(
                    "payments.session.created user_id=%s plan_id=%s ref=%s", user_id, plan_id, gateway_reference_id
                )
                return session, True
            existing = await self.get_existing(user_id, plan_id)
            if existing is not None:
                return existing, False
            # Entrée périmée (terminale ou expirée) encore présente: on la retire puis on réessaie
            await self._discard_stale(key)
        raise RuntimeError(f"Contention persistante sur la session {key}")

    async def update_status(
        self,
        user_id: str,
        plan_id: str,
        status: PurchaseStatus,
        expected: Optional[PurchaseStatus] = None,
    ) -> bool:
        def _fn(current):
            if current is None or current.is_expired(self.now()):
                return _KEEP, False
            if expected is not None and current.status != expected:
                return _KEEP, False
            if not can_transition(current.status, status):
                return _KEEP, False
            now = self.now()
            current.status = status
            current.last_updated_at = now
            current.expires_at = now + self.ttl
            if status == PurchaseStatus.PROCESSING:
                current.claim(now)
            elif status.is_terminal:
                current.release_claim()
            return current, True

        return await self._transact(self._session_key(user_id, plan_id), _fn)

    async def claim_retry(self, user_id: str, plan_id: str) -> bool:
        def _fn(current):
            if current is None or current.is_expired(self.now()):
                return _KEEP, False
            if current.status != PurchaseStatus.PROCESSING:
                return _KEEP, False
            now = self.now()
            if current.confirming:
                # Bail échu: l'instance qui confirmait s'est arrêtée en cours de route
                if not current.claim_is_stale(now, self.claim_timeout):
                    return _KEEP, False
                logger.warning(
                    "payments.session.claim_takeover user_id=%s plan_id=%s claimed_at=%s",
                    user_id, plan_id, current.claimed_at,
                )
            current.claim(now)
            current.last_updated_at = now
            current.expires_at = now + self.ttl
            return current, True

        return await self._transact(self._session_key(user_id, plan_id), _fn)

    async def record_confirmation_failure(self, user_id: str, plan_id: str, error: str) -> Optional[int]:
        def _fn(current):
            if current is None or current.is_expired(self.now()):
                return _KEEP, None
            now = self.now()
            current.release_claim()
            current.confirmation_attempts += 1
            current.last_error = error
            current.last_updated_at = now
            current.expires_at = now + self.ttl
            return current, current.confirmation_attempts

        return await self._transact(self._session_key(user_id, plan_id), _fn)

    async def get_by_gateway_reference(self, gateway_reference_id: str) -> Optional[PurchaseSession]:
        key = await self._redis.get(self._ref_key(gateway_reference_id))
        if not key:
            return None
        session = await self._load_live(key)
        if session is None or session.gateway_reference_id != gateway_reference_id:
            return None
        return session

    async def _delete(self, user_id: str, plan_id: str) -> bool:
        return await self._transact(
            self._session_key(user_id, plan_id),
            lambda current: (_DELETE, True) if current is not None else (_KEEP, False),
        )

    async def complete(self, user_id: str, plan_id: str) -> None:
        if await self._delete(user_id, plan_id):
            logger.info("payments.session.completed user_id=%s plan_id=%s", user_id, plan_id)

    async def clear(self, user_id: str, plan_id: str) -> None:
        if await self._delete(user_id, plan_id):
            logger.info("payments.session.cleared user_id=%s plan_id=%s", user_id, plan_id)

    async def _scan_sessions(self) -> List[Tuple[str, PurchaseSession]]:
        found = []
        async for key in self._redis.scan_iter(match=f"{self.prefix}:session:*"):
            session = self._decode(await self._redis.get(key))
            if session is not None:
                found.append((key, session))
        return found

    async def sweep_expired(self) -> int:
        now = self.now()
        removed = 0
        for key, session in await self._scan_sessions():
            if session.is_expired(now) and await self._discard_stale(key):
                removed += 1
        if removed:
            logger.info("payments.session.sweep removed=%s", removed)
        return removed

    async def list_processing(self) -> List[PurchaseSession]:
        now = self.now()
        return [
            s for _, s in await self._scan_sessions()
            if s.status == PurchaseStatus.PROCESSING and not s.is_expired(now)
        ]

    async def stats(self) -> Dict[str, Any]:
        now = self.now()
        data = _status_counts(s for _, s in await self._scan_sessions() if not s.is_expired(now))
        data["backend"] = "redis"
        return data

    async def close(self) -> None:
        await super().close()
        if self._owns_client:
            await self._redis.aclose()
