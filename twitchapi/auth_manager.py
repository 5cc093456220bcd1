#!/usr/bin/env python3
"""
AuthManager
Device Code Flow + refresh automatique du token broadcaster

Cycle de vie:
- start_authorization() : device code -> navigateur -> polling /token
- boucle de refresh : renouvelle le token 30 min avant expiration,
  sauf si une prédiction est en cours (on attend qu'elle se termine)
- validation : /validate (user_id) puis /helix/users (broadcaster_type)

Rien n'est persisté : chaque lancement refait le device flow.
"""

import asyncio
import logging
import webbrowser
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

import aiohttp
from twitchAPI.type import AuthScope

from core.config import TWITCH_SCOPES
from core.notifier import Notifier
from core.task_scheduler import TaskScheduler
from twitchapi.errors import NotAuthorizedError, TwitchAPIError, TwitchHTTPError
from twitchapi.scope_validator import analyze_scopes
from twitchapi.transports.helix_client import HelixClient
from twitchapi.transports.oauth_client import DeviceCodeResponse, TokenResponse, TwitchOAuthClient

LOGGER = logging.getLogger(__name__)

# Sentinelle "jamais" avant le premier token
NEVER = datetime.min.replace(tzinfo=timezone.utc)

TRANSIENT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError)


class DeviceFlowState(Enum):
    IDLE = "idle"
    CODE_REQUESTED = "code_requested"
    POLLING = "polling"
    AUTHORIZED = "authorized"
    VALIDATING = "validating"
    FAILED = "failed"


class BroadcasterTier(Enum):
    UNKNOWN = "unknown"
    STANDARD = "standard"
    AFFILIATE_OR_PARTNER = "affiliate_or_partner"


HANDSHAKE_IN_PROGRESS = (DeviceFlowState.CODE_REQUESTED, DeviceFlowState.POLLING)


@dataclass
class OAuthSession:
    """État OAuth du broadcaster (un seul par process)"""
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    access_token_expires_at: datetime = NEVER
    broadcaster_id: str = ""
    broadcaster_login: str = ""
    broadcaster_type: Optional[str] = None     # "" = compte standard
    broadcaster_tier: BroadcasterTier = BroadcasterTier.UNKNOWN
    device_flow_state: DeviceFlowState = DeviceFlowState.IDLE
    scopes: List[str] = field(default_factory=list)

    def seconds_until_expiry(self, now: datetime) -> float:
        if self.access_token_expires_at == NEVER:
            return 0.0
        return (self.access_token_expires_at - now).total_seconds()

    def is_expired(self, now: datetime) -> bool:
        return now >= self.access_token_expires_at


class AuthManager:
    """
    Gère le token du broadcaster
    - Device Code Flow (idempotent)
    - Refresh automatique en tâche de fond
    - Résolution broadcaster_id + tier (affiliate/partner)
    """

    def __init__(
        self,
        oauth_client: TwitchOAuthClient,
        helix_client: HelixClient,
        scheduler: TaskScheduler,
        scopes: Optional[List[str]] = None,
        notifier: Optional[Notifier] = None,
        is_prediction_active: Optional[Callable[[], bool]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        open_browser: Optional[Callable[[str], bool]] = None,
        refresh_margin: int = 1800,
        deferred_refresh_delay: int = 30,
        min_refresh_wait: int = 30,
        no_refresh_token_wait: int = 10
    ):
        self.oauth = oauth_client
        self.helix = helix_client
        self.scheduler = scheduler
        # AuthScope() lève ValueError sur un scope inconnu : on échoue au démarrage
        self.scopes = [AuthScope(s) for s in (scopes or TWITCH_SCOPES)]
        self.notifier = notifier or Notifier(LOGGER)
        self._is_prediction_active = is_prediction_active or (lambda: False)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._open_browser = open_browser or webbrowser.open

        self.refresh_margin = refresh_margin
        self.deferred_refresh_delay = deferred_refresh_delay
        self.min_refresh_wait = min_refresh_wait
        self.no_refresh_token_wait = no_refresh_token_wait

        self.session = OAuthSession()

        self._device_task: Optional[asyncio.Task] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self._refresh_in_progress = False
        self._refresh_done = asyncio.Event()
        self._refresh_done.set()
        self._validation_in_progress = False

        LOGGER.info("AuthManager initialisé")

    def set_prediction_guard(self, is_prediction_active: Callable[[], bool]) -> None:
        """Branche le check "prédiction en cours" utilisé par la boucle de refresh"""
        self._is_prediction_active = is_prediction_active

    # ------------------------------------------------------------------
    # Device Code Flow
    # ------------------------------------------------------------------

    def start_authorization(self) -> Optional[asyncio.Task]:
        """
        Lance le device flow.

        No-op si un handshake est déjà en cours ou si la session est
        déjà autorisée avec un token non expiré.

        Returns:
            La tâche du device flow, ou None si rien n'a été lancé
        """
        state = self.session.device_flow_state
        if state in HANDSHAKE_IN_PROGRESS:
            LOGGER.debug(f"Device flow déjà en cours ({state.value})")
            return None

        if state in (DeviceFlowState.AUTHORIZED, DeviceFlowState.VALIDATING) \
                and self.session.access_token and not self.session.is_expired(self._clock()):
            LOGGER.debug("Session déjà autorisée, device flow ignoré")
            return None

        # IDLE, FAILED, ou session autorisée mais token mort
        self._set_state(DeviceFlowState.IDLE)
        self._set_state(DeviceFlowState.CODE_REQUESTED)
        self._device_task = self.scheduler.spawn(self._run_device_flow(), name="oauth-device-flow")
        return self._device_task

    async def _run_device_flow(self) -> bool:
        try:
            return await self._device_flow()
        finally:
            # Sortie anormale (exception, annulation) : le handshake doit pouvoir repartir
            if self.session.device_flow_state in HANDSHAKE_IN_PROGRESS:
                self._set_state(DeviceFlowState.FAILED)
                self.notifier.error("Twitch OAuth device flow aborted.")

    async def _device_flow(self) -> bool:
        self.notifier.info("Attempting Twitch OAuth", color="purple")

        try:
            device = await self.oauth.request_device_code(self.scopes)
        except TwitchHTTPError as e:
            self._set_state(DeviceFlowState.FAILED)
            self.notifier.error(f"Twitch OAuth device code request failed: {e.status} {e.body}")
            return False
        except TwitchAPIError as e:
            self._set_state(DeviceFlowState.FAILED)
            self.notifier.error(f"Twitch OAuth device code request failed: {e}")
            return False
        except TRANSIENT_ERRORS as e:
            self._set_state(DeviceFlowState.FAILED)
            self.notifier.error(f"Twitch OAuth device code request failed: {e!r}")
            return False

        self.notifier.info("Opening Twitch OAuth Browser", color="purple")
        self.notifier.info(f"Enter code {device.user_code} at {device.verification_uri}")
        self._open_verification_uri(device.verification_uri)

        self._set_state(DeviceFlowState.POLLING)
        return await self._poll_device_token(device)

    def _open_verification_uri(self, uri: str) -> None:
        try:
            opened = self._open_browser(uri)
        except webbrowser.Error as e:
            LOGGER.warning(f"⚠️ Navigateur indisponible: {e}")
            opened = False
        if not opened:
            self.notifier.warning(f"Open this URL to authorize: {uri}")

    async def _poll_device_token(self, device: DeviceCodeResponse) -> bool:
        """Poll /token jusqu'au succès ou à une erreur terminale"""
        interval = max(1, device.interval)
        deadline = self._clock() + timedelta(seconds=device.expires_in)
        pending_reported = False

        while True:
            if self._clock() >= deadline:
                self._set_state(DeviceFlowState.FAILED)
                self.notifier.error("Twitch OAuth device flow failed: expired_token (device code expired)")
                return False

            try:
                token = await self.oauth.poll_device_token(device.device_code)
            except TwitchHTTPError as e:
                if e.error_code == "authorization_pending":
                    if not pending_reported:
                        self.notifier.warning("Twitch OAuth device flow: authorization pending request")
                        pending_reported = True
                    else:
                        LOGGER.debug("authorization_pending")
                elif e.error_code in ("access_denied", "expired_token"):
                    self._set_state(DeviceFlowState.FAILED)
                    self.notifier.error(f"Twitch OAuth device flow failed: {e.error_code} {e.message}".strip())
                    return False
                else:
                    self.notifier.error(f"Twitch OAuth device flow error: {e.error_code} {e.message}".strip())
            except TwitchAPIError as e:
                self.notifier.error(f"Twitch OAuth device flow error: {e}")
            except TRANSIENT_ERRORS as e:
                self.notifier.warning(f"Twitch OAuth device flow network error: {e!r}")
            else:
                self._store_token(token)
                self._set_state(DeviceFlowState.AUTHORIZED)
                self.notifier.info("Twitch OAuth device flow completed!", color="green")
                self._start_refresh_loop()
                await self._resolve_broadcaster()
                return True

            await self.scheduler.sleep(interval)

    def _store_token(self, token: TokenResponse) -> None:
        now = self._clock()
        self.session.access_token = token.access_token
        if token.refresh_token:
            self.session.refresh_token = token.refresh_token
        self.session.access_token_expires_at = now + timedelta(seconds=max(1, token.expires_in))
        if token.scopes:
            self.session.scopes = list(token.scopes)

    def _set_state(self, state: DeviceFlowState) -> None:
        previous = self.session.device_flow_state
        self.session.device_flow_state = state
        if previous != state:
            LOGGER.debug(f"Device flow: {previous.value} → {state.value}")

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def _start_refresh_loop(self) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
        self._refresh_task = self.scheduler.spawn(self._refresh_loop(), name="oauth-refresh-loop")

    async def _refresh_loop(self) -> None:
        LOGGER.info("🔄 Boucle de refresh démarrée")
        while True:
            try:
                delay = await self.run_refresh_cycle()
            except Exception as e:
                LOGGER.error(f"❌ Erreur cycle de refresh: {e}", exc_info=True)
                delay = self.min_refresh_wait
            LOGGER.debug(f"Prochain check refresh dans {delay:.0f}s")
            await self.scheduler.sleep(delay)

    async def run_refresh_cycle(self) -> float:
        """
        Un réveil de la boucle de refresh.

        Returns:
            Délai en secondes avant le prochain réveil
        """
        if not self.session.refresh_token:
            return self.no_refresh_token_wait

        remaining = self.session.seconds_until_expiry(self._clock())
        if remaining <= self.refresh_margin:
            # Token déjà expiré : plus rien à protéger, on refresh quand même
            if remaining > 0 and self._is_prediction_active():
                self.notifier.warning("Access token near expiry but prediction in progress; delaying refresh.")
                return self.deferred_refresh_delay

            if not self._refresh_in_progress and await self.refresh_access_token():
                remaining = self.session.seconds_until_expiry(self._clock())
        elif self.session.broadcaster_tier == BroadcasterTier.UNKNOWN:
            # Validation ratée plus tôt : on retente, les prédictions restent bloquées sinon
            await self._resolve_broadcaster()

        return max(self.min_refresh_wait, remaining - self.refresh_margin)

    async def refresh_access_token(self) -> bool:
        """Échange le refresh token. Retourne False si l'échange a échoué."""
        if not self.session.refresh_token:
            return False
        if self._refresh_in_progress:
            await self.wait_for_refresh()
            return self.is_token_valid()

        self._refresh_in_progress = True
        self._refresh_done.clear()
        try:
            LOGGER.info("🔄 Refresh token via Twitch OAuth...")
            try:
                token = await self.oauth.refresh_access_token(self.session.refresh_token)
            except TwitchHTTPError as e:
                self.notifier.error(f"Twitch token refresh failed: {e.status} {e.error_code} {e.message}".strip())
                return False
            except TwitchAPIError as e:
                self.notifier.error(f"Twitch token refresh failed: {e}")
                return False
            except TRANSIENT_ERRORS as e:
                self.notifier.error(f"Twitch token refresh failed: {e!r}")
                return False

            self._store_token(token)
            if self.session.device_flow_state != DeviceFlowState.VALIDATING:
                self._set_state(DeviceFlowState.AUTHORIZED)
            self.notifier.info("Twitch access token refreshed.")
            LOGGER.info(f"✅ Token refreshé (expires: {self.session.access_token_expires_at})")
        finally:
            self._refresh_in_progress = False
            self._refresh_done.set()

        if not self.session.broadcaster_id:
            await self._resolve_broadcaster()
        return True

    async def wait_for_refresh(self) -> None:
        """Attend la fin d'un refresh en vol (retour immédiat sinon)"""
        await self._refresh_done.wait()

    @property
    def refresh_in_progress(self) -> bool:
        return self._refresh_in_progress

    def token_needs_refresh(self) -> bool:
        """Token expiré ou dans la marge de refresh (et refresh token dispo)"""
        if not self.session.refresh_token:
            return False
        return self.session.seconds_until_expiry(self._clock()) <= self.refresh_margin

    # ------------------------------------------------------------------
    # Validation + tier
    # ------------------------------------------------------------------

    async def _resolve_broadcaster(self) -> None:
        """/validate puis /helix/users : broadcaster_id et broadcaster_type"""
        token = self.session.access_token
        if not token or self._validation_in_progress:
            return

        self._validation_in_progress = True
        self._set_state(DeviceFlowState.VALIDATING)
        try:
            try:
                info = await self.oauth.validate(token)
            except TwitchHTTPError as e:
                self.notifier.error(f"Twitch OAuth validate failed: {e.status} {e.body}")
                return
            except TwitchAPIError as e:
                self.notifier.error(f"Twitch OAuth validate failed: {e}")
                return
            except TRANSIENT_ERRORS as e:
                self.notifier.error(f"Twitch OAuth validate failed: {e!r}")
                return

            if not info.user_id:
                self.notifier.warning("Twitch OAuth validate succeeded but user_id was missing.")
                return

            self.session.broadcaster_id = info.user_id
            self.session.broadcaster_login = info.login
            self.session.scopes = list(info.scopes)
            self.notifier.info(f"Twitch OAuth validated. Broadcaster id: {info.user_id}")

            analysis = analyze_scopes(info.scopes)
            if not analysis["valid"]:
                for warning in analysis["warnings"]:
                    self.notifier.warning(warning)

            await self._fetch_broadcaster_type(token, info.user_id)
        finally:
            self._validation_in_progress = False
            if self.session.device_flow_state == DeviceFlowState.VALIDATING:
                self._set_state(DeviceFlowState.AUTHORIZED)

    async def _fetch_broadcaster_type(self, token: str, user_id: str) -> None:
        try:
            user = await self.helix.get_user(token, user_id)
        except TwitchHTTPError as e:
            self.notifier.error(f"Twitch get users failed: {e.status} {e.body}")
            return
        except TwitchAPIError as e:
            self.notifier.error(f"Twitch get users failed: {e}")
            return
        except TRANSIENT_ERRORS as e:
            self.notifier.error(f"Twitch get users failed: {e!r}")
            return

        broadcaster_type = user.get("broadcaster_type") if user else None
        if not isinstance(broadcaster_type, str):
            self.notifier.error(f"Twitch get users: no broadcaster_type for user {user_id}")
            return

        self.session.broadcaster_type = broadcaster_type
        if broadcaster_type:
            self.session.broadcaster_tier = BroadcasterTier.AFFILIATE_OR_PARTNER
            self.notifier.info(f"Twitch broadcaster type: {broadcaster_type}")
        else:
            self.session.broadcaster_tier = BroadcasterTier.STANDARD
            self.notifier.warning("Twitch account is not affiliate/partner. Predictions will be disabled.")

    # ------------------------------------------------------------------
    # Lecture
    # ------------------------------------------------------------------

    def is_token_valid(self) -> bool:
        return bool(self.session.access_token) and not self.session.is_expired(self._clock())

    def is_affiliate_or_partner(self) -> bool:
        return self.session.broadcaster_tier == BroadcasterTier.AFFILIATE_OR_PARTNER

    def is_authorized(self) -> bool:
        """Token non expiré ET compte affiliate/partner"""
        return self.is_token_valid() and self.is_affiliate_or_partner()

    def current_token(self) -> str:
        """
        Retourne l'access token courant.

        Raises:
            NotAuthorizedError: pas de token ou token expiré
        """
        if not self.session.access_token:
            raise NotAuthorizedError("access token is missing")
        if self.session.is_expired(self._clock()):
            raise NotAuthorizedError("access token is expired")
        return self.session.access_token

    @property
    def broadcaster_id(self) -> str:
        return self.session.broadcaster_id

    @property
    def state(self) -> DeviceFlowState:
        return self.session.device_flow_state

    def get_stats(self) -> Dict[str, object]:
        """Résumé de la session (sans les tokens)"""
        now = self._clock()
        return {
            "state": self.session.device_flow_state.value,
            "broadcaster_id": self.session.broadcaster_id,
            "broadcaster_login": self.session.broadcaster_login,
            "tier": self.session.broadcaster_tier.value,
            "token_valid": self.is_token_valid(),
            "expires_in": int(max(0.0, self.session.seconds_until_expiry(now))) if self.session.access_token else 0,
            "refresh_in_progress": self._refresh_in_progress,
        }
