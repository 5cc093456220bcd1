#!/usr/bin/env python3
"""
Predictions
Cycle de vie d'une prédiction Twitch (une seule à la fois)

- create() : POST /helix/predictions, mémorise id + outcome ids par équipe
- resolve() : PATCH status=RESOLVED avec l'outcome gagnant
- cancel() : PATCH status=CANCELED (remboursement)

Chaque échec est loggé via le Notifier puis levé en PredictionError ;
l'état local n'est jamais modifié partiellement.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

import aiohttp
from twitchAPI.type import PredictionStatus

from core.notifier import Notifier
from twitchapi.auth_manager import AuthManager
from twitchapi.errors import (
    NotAuthorizedError,
    PredictionError,
    PredictionPreconditionError,
    PredictionRemoteError,
    TwitchAPIError,
    TwitchHTTPError,
)
from twitchapi.transports.helix_client import HelixClient

LOGGER = logging.getLogger(__name__)

MAX_OUTCOME_TITLE = 24
TRUNCATION_MARKER = "…"
MIN_OUTCOMES = 2
MAX_OUTCOMES = 10

TRANSIENT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError)


class PredictionState(Enum):
    NONE = "none"
    ACTIVE = "active"
    RESOLVING = "resolving"
    CANCELING = "canceling"


@dataclass
class OutcomeSpec:
    """Une option de la prédiction (une équipe)"""
    option_key: int
    title: str


@dataclass
class Prediction:
    """Prédiction en cours côté Twitch"""
    prediction_id: Optional[str] = None
    outcome_id_by_option_key: Dict[int, str] = field(default_factory=dict)
    status: PredictionState = PredictionState.NONE
    title: str = ""
    window_seconds: int = 0


def trim_outcome_title(title: str, max_length: int = MAX_OUTCOME_TITLE) -> str:
    """Tronque à max_length caractères + un marqueur (Twitch limite à 25)"""
    if not title:
        return ""
    if len(title) > max_length:
        return title[:max_length] + TRUNCATION_MARKER
    return title


def build_outcome_specs(options: Mapping[int, Sequence[str]]) -> List[OutcomeSpec]:
    """Une OutcomeSpec par équipe, triées par clé croissante"""
    return [
        OutcomeSpec(option_key=key, title=trim_outcome_title(", ".join(names)))
        for key, names in sorted(options.items(), key=lambda kv: kv[0])
    ]


def compute_prediction_window(
    participants: int,
    rounds_to_win: int,
    base: int = 60,
    per_player_round: int = 15,
    minimum: int = 60,
    maximum: int = 1800
) -> int:
    """Durée de vote : base + 15s par joueur et par manche, bornée [60, 1800]"""
    window = base + per_player_round * participants * rounds_to_win
    return max(minimum, min(maximum, window))


def match_outcome_ids(
    specs: Sequence[OutcomeSpec],
    outcomes: Sequence[Dict[str, Any]]
) -> Dict[int, str]:
    """
    Associe chaque équipe à l'outcome id renvoyé par Twitch.

    Titre exact d'abord ; si Twitch a modifié un titre, on retombe sur la
    position dans la réponse (même nombre d'outcomes que la requête).
    Chaque outcome de la réponse n'est utilisé qu'une fois.
    """
    used = set()
    mapping: Dict[int, str] = {}

    for spec in specs:
        for index, outcome in enumerate(outcomes):
            if index not in used and outcome.get("title") == spec.title and outcome.get("id"):
                mapping[spec.option_key] = outcome["id"]
                used.add(index)
                break

    if len(mapping) < len(specs) and len(outcomes) == len(specs):
        for index, spec in enumerate(specs):
            if spec.option_key in mapping or index in used:
                continue
            outcome_id = outcomes[index].get("id")
            if outcome_id:
                mapping[spec.option_key] = outcome_id
                used.add(index)

    return mapping


class PredictionService:
    """
    Gère LA prédiction du broadcaster
    - une seule prédiction vivante
    - vérifie token + tier avant chaque appel Helix
    """

    def __init__(
        self,
        auth_manager: AuthManager,
        helix_client: HelixClient,
        title: str = "Match Winner",
        notifier: Optional[Notifier] = None,
        broadcaster_id: str = "",
        window_base: int = 60,
        window_per_player_round: int = 15,
        window_min: int = 60,
        window_max: int = 1800,
        shutdown_cancel_timeout: float = 5.0
    ):
        self.auth = auth_manager
        self.helix = helix_client
        self.title = title
        self.notifier = notifier or Notifier(LOGGER)
        self.window_base = window_base
        self.window_per_player_round = window_per_player_round
        self.window_min = window_min
        self.window_max = window_max
        self.shutdown_cancel_timeout = shutdown_cancel_timeout

        self._broadcaster_id = broadcaster_id
        self._prediction = Prediction()
        self._request_in_flight = False

    @property
    def prediction(self) -> Prediction:
        return self._prediction

    @property
    def status(self) -> PredictionState:
        return self._prediction.status

    def is_active(self) -> bool:
        """Vrai si une prédiction vit côté Twitch ou si un create est en vol"""
        return self._prediction.status != PredictionState.NONE or self._request_in_flight

    def compute_window(self, participants: int, rounds_to_win: int) -> int:
        return compute_prediction_window(
            participants,
            rounds_to_win,
            base=self.window_base,
            per_player_round=self.window_per_player_round,
            minimum=self.window_min,
            maximum=self.window_max,
        )

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(self, options: Mapping[int, Sequence[str]], rounds_to_win: int) -> Prediction:
        """
        Crée une prédiction avec une option par équipe.

        Args:
            options: {team_id: [noms des joueurs]}
            rounds_to_win: Manches nécessaires pour gagner (durée de vote)

        Raises:
            PredictionPreconditionError: refusé sans appel réseau
            PredictionRemoteError: Twitch a refusé ou réseau KO
        """
        if self.is_active():
            raise self._reject("Prediction already started!")
        if not self.auth.is_token_valid():
            raise self._reject("Twitch predictions: not authorized yet.")
        if not self.auth.is_affiliate_or_partner():
            raise self._reject("Predictions disabled: Twitch account is not affiliate/partner.", warning=True)

        specs = build_outcome_specs(options)
        if len(specs) < MIN_OUTCOMES:
            raise self._reject("Prediction requires at least 2 outcomes. Skipping prediction.", warning=True)
        if len(specs) > MAX_OUTCOMES:
            raise self._reject(f"Prediction supports at most {MAX_OUTCOMES} outcomes, got {len(specs)}.", warning=True)

        participants = sum(len(names) for names in options.values())
        window = self.compute_window(participants, rounds_to_win)

        self._request_in_flight = True
        try:
            await self._refresh_before_call()
            token = self._ensure_ready()

            LOGGER.info(f"Twitch prediction outcomes count: {len(specs)} (window={window}s)")
            try:
                data = await self.helix.create_prediction(
                    token,
                    self._broadcaster_id,
                    self.title,
                    [spec.title for spec in specs],
                    window
                )
            except TwitchAPIError as e:
                raise self._remote_failure("create", e) from e
            except TRANSIENT_ERRORS as e:
                raise self._remote_failure("create", e) from e

            if not data or not data.get("id"):
                raise self._reject_remote("Twitch prediction create failed: empty response data.")

            mapping = match_outcome_ids(specs, data.get("outcomes") or [])
            missing = [spec.option_key for spec in specs if spec.option_key not in mapping]
            if missing:
                self.notifier.warning(f"Twitch prediction: no outcome id for teams {missing}")

            self._prediction = Prediction(
                prediction_id=data["id"],
                outcome_id_by_option_key=mapping,
                status=PredictionState.ACTIVE,
                title=self.title,
                window_seconds=window,
            )
        finally:
            self._request_in_flight = False

        self.notifier.info(f"Twitch prediction created: {self._prediction.prediction_id}")
        return self._prediction

    # ------------------------------------------------------------------
    # Resolve / Cancel
    # ------------------------------------------------------------------

    async def resolve(self, winning_option_key: int) -> None:
        """Résout la prédiction en faveur de l'équipe gagnante"""
        if self._prediction.status != PredictionState.ACTIVE:
            raise self._reject("Twitch prediction resolve failed: no active prediction id.")

        winning_outcome_id = self._prediction.outcome_id_by_option_key.get(winning_option_key)
        if not winning_outcome_id:
            raise self._reject(f"Twitch prediction resolve failed: no outcome id for team {winning_option_key}.")

        await self._end(PredictionStatus.RESOLVED, winning_outcome_id)

    async def cancel(self) -> None:
        """Annule la prédiction (les points sont remboursés)"""
        if self._prediction.status != PredictionState.ACTIVE:
            raise self._reject("Twitch prediction cancel failed: no active prediction id.")

        await self._end(PredictionStatus.CANCELED, None)

    async def _end(self, status: PredictionStatus, winning_outcome_id: Optional[str]) -> None:
        action = status.value.lower()
        prediction_id = self._prediction.prediction_id
        # Passe en RESOLVING / CANCELING avant tout await : un second resolve est refusé
        self._prediction.status = (
            PredictionState.RESOLVING if status == PredictionStatus.RESOLVED else PredictionState.CANCELING
        )
        try:
            await self._refresh_before_call()
            token = self._ensure_ready()
        except PredictionError:
            self._prediction.status = PredictionState.ACTIVE
            raise

        try:
            await self.helix.end_prediction(
                token,
                self._broadcaster_id,
                prediction_id,
                status,
                winning_outcome_id
            )
        except TwitchAPIError as e:
            self._prediction.status = PredictionState.ACTIVE
            raise self._remote_failure(action, e) from e
        except TRANSIENT_ERRORS as e:
            self._prediction.status = PredictionState.ACTIVE
            raise self._remote_failure(action, e) from e

        self._prediction = Prediction()
        self.notifier.info(f"Twitch prediction {action}: {prediction_id}")

    async def cancel_on_shutdown(self, timeout: Optional[float] = None) -> bool:
        """
        Annulation best-effort à l'arrêt du process.

        Returns:
            True si Twitch a confirmé l'annulation dans le délai
        """
        if self._prediction.status != PredictionState.ACTIVE:
            return False

        timeout = self.shutdown_cancel_timeout if timeout is None else timeout
        self.notifier.info("Stopping and refunding prediction", color="blue")
        try:
            await asyncio.wait_for(self.cancel(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            self.notifier.warning(f"Twitch prediction cancel timed out after {timeout}s at shutdown.")
        except PredictionError as e:
            LOGGER.debug(f"Cancel à l'arrêt échoué: {e}")
        return False

    def abandon(self) -> None:
        """Oublie la prédiction locale sans appeler Twitch (terminée ailleurs)"""
        if self._prediction.status == PredictionState.NONE:
            return
        self.notifier.warning(f"Forgetting prediction {self._prediction.prediction_id} without ending it on Twitch.")
        self._prediction = Prediction()

    # ------------------------------------------------------------------
    # Garde
    # ------------------------------------------------------------------

    async def _refresh_before_call(self) -> None:
        """
        Attend un refresh en vol, puis refresh à la demande si le token est
        expiré ou proche de l'être.

        La boucle de refresh ne touche pas au token pendant une prédiction ;
        c'est donc ici qu'on le renouvelle, juste avant l'appel Helix.
        """
        await self.auth.wait_for_refresh()
        if self.auth.token_needs_refresh():
            LOGGER.info("🔄 Token proche de l'expiration, refresh avant l'appel Helix")
            await self.auth.refresh_access_token()

    def _ensure_ready(self) -> str:
        """Vérifie broadcaster id, token et tier ; retourne le token"""
        if not self._broadcaster_id:
            if self.auth.broadcaster_id:
                self._broadcaster_id = self.auth.broadcaster_id
            else:
                raise self._reject("Twitch predictions: broadcaster id is not set.")

        if not self.auth.session.access_token:
            raise self._reject("Twitch predictions: access token is missing.")

        if not self.auth.is_affiliate_or_partner():
            raise self._reject("Twitch predictions: broadcaster not affiliate/partner.", warning=True)

        try:
            return self.auth.current_token()
        except NotAuthorizedError:
            raise self._reject("Twitch predictions: access token is expired.") from None

    def _reject(self, message: str, warning: bool = False) -> PredictionPreconditionError:
        if warning:
            self.notifier.warning(message)
        else:
            self.notifier.error(message)
        return PredictionPreconditionError(message)

    def _reject_remote(self, message: str) -> PredictionRemoteError:
        self.notifier.error(message)
        return PredictionRemoteError(message)

    def _remote_failure(self, action: str, error: Exception) -> PredictionRemoteError:
        if isinstance(error, TwitchHTTPError):
            message = f"Twitch prediction {action} failed: {error.status} {error.message}".strip()
            self.notifier.error(message)
            if error.body:
                self.notifier.error(f"Twitch prediction error body: {error.body}", color="gray")
            return PredictionRemoteError(message, status=error.status, body=error.body)

        message = f"Twitch prediction {action} failed: {error!r}"
        self.notifier.error(message)
        return PredictionRemoteError(message)
