#!/usr/bin/env python3
"""Helix Transport - requêtes avec User Token (broadcaster) via pyTwitchAPI

- get_user() : twitch.get_users(user_ids=...) (broadcaster_type)
- create_prediction() : twitch.create_prediction()
- end_prediction() : twitch.end_prediction() (RESOLVED / CANCELED)

Le token vient de l'AuthManager (device flow + refresh maison) : l'instance
Twitch ne fait ni auth app ni auto-refresh, on lui pousse juste le token
courant avant chaque appel.

Les exceptions pyTwitchAPI remontent en TwitchHTTPError / TwitchAPIError,
c'est l'appelant qui décide quoi logger.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from twitchAPI.helper import first
from twitchAPI.twitch import Twitch
from twitchAPI.type import (
    AuthScope,
    MissingScopeException,
    PredictionStatus,
    TwitchAPIException,
    TwitchBackendException,
    TwitchResourceNotFound,
    UnauthorizedException,
)

from core.config import TWITCH_SCOPES
from twitchapi.errors import TwitchAPIError, TwitchHTTPError, TwitchResponseError

LOGGER = logging.getLogger(__name__)


def _status_for(error: TwitchAPIException) -> int:
    """Statut HTTP approximatif d'une exception pyTwitchAPI"""
    if isinstance(error, (UnauthorizedException, MissingScopeException)):
        return 401
    if isinstance(error, TwitchResourceNotFound):
        return 404
    if isinstance(error, TwitchBackendException):
        return 503
    return 400


class HelixClient:
    """Client Helix authentifié par le token du broadcaster"""

    def __init__(
        self,
        client_id: str,
        base_url: str = "https://api.twitch.tv/helix",
        timeout: float = 10.0,
        scopes: Optional[List[str]] = None,
        twitch: Optional[Twitch] = None
    ):
        self.client_id = client_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.scopes = [AuthScope(s) for s in (scopes or TWITCH_SCOPES)]
        self._twitch = twitch
        self._token: Optional[str] = None

    def _get_twitch(self) -> Twitch:
        # Créée au premier appel (pyTwitchAPI ouvre ses sessions sur la boucle active)
        if self._twitch is None:
            self._twitch = Twitch(
                self.client_id,
                authenticate_app=False,
                base_url=f"{self.base_url}/"
            )
        return self._twitch

    async def _use_token(self, access_token: str) -> Twitch:
        twitch = self._get_twitch()
        if access_token != self._token:
            # Le refresh est géré par l'AuthManager, jamais par la lib
            twitch.auto_refresh_auth = False
            await twitch.set_user_authentication(access_token, self.scopes, validate=False)
            self._token = access_token
        return twitch

    async def _call(self, access_token: str, what: str, call: Callable[[Twitch], Awaitable[Any]]) -> Any:
        """
        Exécute un appel pyTwitchAPI avec le token courant et un timeout.

        Raises:
            TwitchHTTPError: Twitch a répondu en erreur
            TwitchAPIError: requête refusée par la lib (arguments invalides)
            TwitchResponseError: réponse inexploitable
            asyncio.TimeoutError / aiohttp.ClientError: erreur réseau
        """
        LOGGER.debug(f"[HELIX] {what}")
        try:
            twitch = await self._use_token(access_token)
            return await asyncio.wait_for(call(twitch), timeout=self.timeout)
        except TwitchAPIException as e:
            # Token refusé : on le repoussera au prochain appel
            if isinstance(e, UnauthorizedException):
                self._token = None
            raise TwitchHTTPError(_status_for(e), body=str(e), message=str(e)) from e
        except ValueError as e:
            raise TwitchAPIError(f"{what}: {e}") from e
        except (KeyError, IndexError, TypeError) as e:
            raise TwitchResponseError(f"{what}: réponse invalide ({e!r})") from e

    async def get_user(self, access_token: str, user_id: str) -> Optional[Dict[str, Any]]:
        """Données publiques d'un utilisateur (None si introuvable)"""
        user = await self._call(
            access_token,
            f"get_user({user_id})",
            lambda twitch: first(twitch.get_users(user_ids=[user_id]))
        )
        if user is None:
            LOGGER.debug(f"User {user_id} introuvable")
            return None

        return {
            "id": user.id,
            "login": user.login,
            "display_name": user.display_name,
            "broadcaster_type": user.broadcaster_type,
        }

    async def create_prediction(
        self,
        access_token: str,
        broadcaster_id: str,
        title: str,
        outcome_titles: List[str],
        prediction_window: int
    ) -> Optional[Dict[str, Any]]:
        """
        Crée une prédiction.

        Returns:
            {id, title, outcomes: [{id, title}]} ou None si la réponse est vide
        """
        prediction = await self._call(
            access_token,
            f"create_prediction({len(outcome_titles)} outcomes, window={prediction_window}s)",
            lambda twitch: twitch.create_prediction(broadcaster_id, title, outcome_titles, prediction_window)
        )
        if prediction is None:
            return None

        return {
            "id": prediction.id,
            "title": prediction.title,
            "outcomes": [
                {"id": outcome.id, "title": outcome.title}
                for outcome in (prediction.outcomes or [])
            ],
        }

    async def end_prediction(
        self,
        access_token: str,
        broadcaster_id: str,
        prediction_id: str,
        status: PredictionStatus,
        winning_outcome_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Termine une prédiction (status RESOLVED ou CANCELED)"""
        prediction = await self._call(
            access_token,
            f"end_prediction({prediction_id}, {status.value})",
            lambda twitch: twitch.end_prediction(broadcaster_id, prediction_id, status, winning_outcome_id)
        )
        if prediction is None:
            return {}
        return {"id": prediction.id, "status": prediction.status}

    async def close(self) -> None:
        if self._twitch is not None:
            await self._twitch.close()
        self._twitch = None
        self._token = None
