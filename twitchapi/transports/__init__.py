"""
twitchapi/transports/
=====================

Clients de transport pour l'API Twitch.

Modules:
- oauth_client : Endpoints OAuth2 (device code, token, validate)
- helix_client : Client Helix avec User Token (users, predictions)
"""

from twitchapi.transports.helix_client import HelixClient
from twitchapi.transports.oauth_client import TwitchOAuthClient

__all__ = ["HelixClient", "TwitchOAuthClient"]
