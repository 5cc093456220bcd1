#!/usr/bin/env python3
"""OAuth Transport - id.twitch.tv

Endpoints du Device Code Flow (client public, sans client_secret) :
- request_device_code() : POST /device
- poll_device_token() : POST /token (grant device_code)
- refresh_access_token() : POST /token (grant refresh_token)
- validate() : GET /validate
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import aiohttp
from twitchAPI.helper import build_scope
from twitchAPI.type import AuthScope

from twitchapi.errors import TwitchResponseError
from twitchapi.transports.http import JsonTransport

LOGGER = logging.getLogger(__name__)

DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"


@dataclass
class DeviceCodeResponse:
    device_code: str
    user_code: str
    verification_uri: str
    expires_in: int
    interval: int


@dataclass
class TokenResponse:
    access_token: str
    refresh_token: str
    expires_in: int
    scopes: List[str] = field(default_factory=list)


@dataclass
class ValidateResponse:
    user_id: str
    login: str
    scopes: List[str]
    expires_in: int


class TwitchOAuthClient(JsonTransport):
    """Client des endpoints OAuth2 Twitch"""

    def __init__(
        self,
        client_id: str,
        base_url: str = "https://id.twitch.tv/oauth2",
        timeout: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None
    ):
        super().__init__(base_url, client_id, timeout=timeout, session=session)

    async def request_device_code(self, scopes: List[AuthScope]) -> DeviceCodeResponse:
        """Démarre le device flow pour les scopes demandés"""
        data = await self._request(
            "POST",
            "/device",
            data={
                "client_id": self.client_id,
                "scopes": build_scope(scopes),
            }
        )
        return _parse("/device", _parse_device_code, data)

    async def poll_device_token(self, device_code: str) -> TokenResponse:
        """
        Un tour de polling.

        Raises:
            TwitchHTTPError: error_code authorization_pending / access_denied /
                expired_token (ou autre)
        """
        data = await self._request(
            "POST",
            "/token",
            data={
                "client_id": self.client_id,
                "device_code": device_code,
                "grant_type": DEVICE_CODE_GRANT,
            }
        )
        return _parse("/token", _parse_token, data)

    async def refresh_access_token(self, refresh_token: str) -> TokenResponse:
        """Échange le refresh token contre un nouveau couple de tokens"""
        data = await self._request(
            "POST",
            "/token",
            data={
                "client_id": self.client_id,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            }
        )
        return _parse("/token", _parse_token, data)

    async def validate(self, access_token: str) -> ValidateResponse:
        """Appelle /validate pour obtenir user_id, login et scopes"""
        data = await self._request(
            "GET",
            "/validate",
            headers={"Authorization": f"Bearer {access_token}"}
        )
        return _parse("/validate", _parse_validate, data)


def _parse(endpoint: str, parser, data: dict):
    """Applique le parser ; un 2xx mal formé devient TwitchResponseError"""
    try:
        return parser(data)
    except (KeyError, TypeError, ValueError) as e:
        LOGGER.warning(f"⚠️ Réponse {endpoint} invalide: {e!r}")
        raise TwitchResponseError(f"{endpoint}: réponse invalide ({e!r})") from e


def _parse_device_code(data: dict) -> DeviceCodeResponse:
    return DeviceCodeResponse(
        device_code=data["device_code"],
        user_code=data.get("user_code", ""),
        verification_uri=data["verification_uri"],
        expires_in=int(data.get("expires_in", 1800)),
        interval=int(data.get("interval", 5)),
    )


def _parse_validate(data: dict) -> ValidateResponse:
    return ValidateResponse(
        user_id=str(data.get("user_id") or ""),
        login=data.get("login", ""),
        scopes=list(data.get("scopes") or []),
        expires_in=int(data.get("expires_in", 0)),
    )


def _parse_token(data: dict) -> TokenResponse:
    return TokenResponse(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token", ""),
        expires_in=int(data.get("expires_in", 14400)),  # 4h par défaut
        scopes=list(data.get("scope") or []),
    )
