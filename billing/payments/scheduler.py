"""
Tâches périodiques asyncio (balayage des sessions expirées, relance des confirmations).
Démarrées et arrêtées explicitement par le lifespan de l'application.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

# module billing.payments.scheduler
class PeriodicTask:
    def __init__(self, name: str, interval_seconds: float, func: Callable[[], Awaitable[object]]):
        self.name = name
        self.interval_seconds = interval_seconds
        self._func = func
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Lance la boucle sur la boucle d'événements courante (idempotent)."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=f"periodic:{self.name}")
        logger.info("scheduler.start task=%s interval=%ss", self.name, self.interval_seconds)

    async def run_once(self) -> object:
        try:
            return await self._func()
        except Exception:
            # Une itération en échec ne doit pas arrêter la boucle
            logger.exception("scheduler.iteration_failed task=%s", self.name)
            return None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.run_once()

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("scheduler.stop task=%s", self.name)
