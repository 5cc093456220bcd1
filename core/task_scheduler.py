"""
⏱️ TaskScheduler - Tâches coopératives sur la boucle asyncio

Toute la logique OAuth / prédictions tourne sur une seule boucle :
- les appels réseau sont des points de suspension (await)
- les timers passent par sleep() sans bloquer les autres tâches
- une seule continuation s'exécute à la fois, donc pas de locks

Les exceptions d'une tâche sont loggées à la frontière de la tâche,
jamais propagées jusqu'au process.
"""
import asyncio
import logging
from typing import Any, Coroutine, Dict, Optional, Set

LOGGER = logging.getLogger(__name__)


class TaskScheduler:
    """Lance et suit les tâches de fond (fire-and-forget)"""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str = "task") -> asyncio.Task:
        """
        Lance une coroutine comme tâche de fond.

        Args:
            coro: Coroutine à exécuter
            name: Nom utilisé dans les logs

        Returns:
            La tâche créée (awaitable, résultat None si elle a échoué)
        """
        task = asyncio.create_task(self._safe_run(coro, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        LOGGER.debug(f"↳ Task lancée: {name}")
        return task

    async def _safe_run(self, coro: Coroutine[Any, Any, Any], name: str) -> Any:
        """Wrapper sécurisé pour exécuter les tâches"""
        try:
            return await coro
        except asyncio.CancelledError:
            LOGGER.debug(f"🛑 Task {name} annulée")
            raise
        except Exception as e:
            LOGGER.error(f"❌ Erreur task {name}: {e}", exc_info=True)
            return None

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    async def wait_all(self, timeout: Optional[float] = None) -> None:
        """Attend que toutes les tâches en cours se terminent"""
        if not self._tasks:
            return
        LOGGER.info(f"⏳ Attente de {len(self._tasks)} tasks...")
        await asyncio.wait(set(self._tasks), timeout=timeout)

    async def shutdown(self) -> None:
        """Annule toutes les tâches (boucle de refresh comprise)"""
        tasks = list(self._tasks)
        if not tasks:
            return
        LOGGER.info(f"🛑 Annulation de {len(tasks)} tasks...")
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def get_stats(self) -> Dict[str, int]:
        return {"active_tasks": len(self._tasks)}
