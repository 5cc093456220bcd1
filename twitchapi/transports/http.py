"""
Base HTTP (aiohttp) des endpoints OAuth id.twitch.tv
"""
import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from twitchapi.errors import TwitchHTTPError, TwitchResponseError

LOGGER = logging.getLogger(__name__)


class JsonTransport:
    """
    Session aiohttp partagée + décodage JSON des réponses.

    La session est créée au premier appel (il faut une boucle active)
    ou injectée par l'appelant.
    """

    def __init__(
        self,
        base_url: str,
        client_id: str,
        timeout: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, str]] = None,
        data: Optional[Dict[str, str]] = None,
        json_body: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Envoie la requête et retourne le JSON décodé.

        Raises:
            TwitchHTTPError: statut non-2xx (code d'erreur extrait du body)
            TwitchResponseError: body illisible
            aiohttp.ClientError / asyncio.TimeoutError: erreur réseau
        """
        url = f"{self.base_url}{path}"
        session = self._get_session()
        async with session.request(
            method,
            url,
            headers=headers,
            params=params,
            data=data,
            json=json_body
        ) as resp:
            status = resp.status
            try:
                text = await resp.text()
            except UnicodeDecodeError as e:
                raise TwitchResponseError(f"{method} {path}: body non décodable ({status})") from e

        if status < 200 or status >= 300:
            payload = _decode(text)
            raise TwitchHTTPError(
                status=status,
                body=text,
                error_code=extract_error_code(payload, text),
                message=str(payload.get("message", "")) if payload else ""
            )

        LOGGER.debug(f"[HTTP] {method} {path} -> {status}")
        return _decode(text)

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None


KNOWN_OAUTH_ERRORS = ("authorization_pending", "access_denied", "expired_token")


def _decode(text: str) -> Dict[str, Any]:
    if not text:
        return {}
    try:
        payload = json.loads(text)
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def extract_error_code(payload: Dict[str, Any], text: str) -> str:
    """
    Code d'erreur OAuth d'une réponse Twitch.

    Twitch le met dans "error" ou dans "message" selon l'endpoint,
    et parfois seulement dans le body brut.
    """
    error = payload.get("error") if payload else None
    if isinstance(error, str) and error in KNOWN_OAUTH_ERRORS:
        return error

    message = payload.get("message") if payload else None
    if isinstance(message, str) and message in KNOWN_OAUTH_ERRORS:
        return message

    for code in KNOWN_OAUTH_ERRORS:
        if text and code in text:
            return code

    if isinstance(error, str):
        return error
    return ""
