"""
🎮 MatchHooks - Points d'entrée appelés par le jeu

Le jeu décide QUAND (ouverture, début de manche, victoire, retour menu) ;
ici on traduit en appels OAuth / prédictions lancés comme tâches de fond.
Les PredictionError sont déjà reportées par le service, elles s'arrêtent ici.
"""
import asyncio
import logging
from typing import Awaitable, List, Mapping, Optional, Sequence

from core.notifier import Notifier
from core.task_scheduler import TaskScheduler
from twitchapi.auth_manager import AuthManager
from twitchapi.errors import PredictionError
from twitchapi.predictions import PredictionService, PredictionState

LOGGER = logging.getLogger(__name__)


class MatchHooks:
    """Adaptateur événements de jeu -> AuthManager / PredictionService"""

    def __init__(
        self,
        auth_manager: AuthManager,
        predictions: PredictionService,
        scheduler: TaskScheduler,
        notifier: Optional[Notifier] = None,
        default_rounds_to_win: int = 2
    ):
        self.auth = auth_manager
        self.predictions = predictions
        self.scheduler = scheduler
        self.notifier = notifier or Notifier(LOGGER)
        self.default_rounds_to_win = default_rounds_to_win

    def on_game_open(self) -> Optional[asyncio.Task]:
        return self.auth.start_authorization()

    def on_round_start(
        self,
        teams: Mapping[int, Sequence[str]],
        rounds_to_win: Optional[int] = None
    ) -> Optional[asyncio.Task]:
        """Début de match : une option par équipe"""
        if self.predictions.is_active():
            self.notifier.error("Prediction already started!")
            return None

        if not self.auth.is_affiliate_or_partner():
            self.notifier.warning("Predictions disabled: Twitch account is not affiliate/partner.")
            return None

        self.notifier.info("Prediction started for:", color="green")
        for index, (team_id, names) in enumerate(teams.items()):
            LOGGER.info(f"Team {team_id}: {', '.join(names)}")
            self.notifier.info(f"Option {index}: {', '.join(names)}")

        rounds = rounds_to_win if rounds_to_win is not None else self.default_rounds_to_win
        return self._spawn(self.predictions.create(teams, rounds), "prediction-create")

    def on_match_end(self, winning_team: int, winners: List[str]) -> asyncio.Task:
        self.notifier.info("Concluding predict results:", color="yellow")
        self.notifier.info(f"Team: {winning_team} Winners: {', '.join(winners)}")
        return self._spawn(self.predictions.resolve(winning_team), "prediction-resolve")

    def on_return_to_menu(self) -> Optional[asyncio.Task]:
        if self.predictions.status != PredictionState.ACTIVE:
            return None
        self.notifier.info("Stopping and refunding prediction", color="blue")
        return self._spawn(self.predictions.cancel(), "prediction-cancel")

    async def on_shutdown(self) -> bool:
        return await self.predictions.cancel_on_shutdown()

    def _spawn(self, coro: Awaitable, name: str) -> asyncio.Task:
        return self.scheduler.spawn(self._guarded(coro, name), name=name)

    async def _guarded(self, coro: Awaitable, name: str) -> bool:
        try:
            await coro
            return True
        except PredictionError as e:
            LOGGER.debug(f"{name} refusé: {e}")
            return False
