"""
twitchapi/
==========

Module dédié à TOUTE la gestion de l'API Twitch.

Organisation:
- auth_manager.py : Device Code Flow + refresh du token broadcaster
- predictions.py : Cycle de vie des prédictions (create / resolve / cancel)
- scope_validator.py : Validation des scopes de prédiction
- errors.py : Erreurs OAuth / Helix / prédictions
- transports/ : Clients HTTP Twitch
  - oauth_client.py : id.twitch.tv (device, token, validate)
  - helix_client.py : Helix avec User Token (users, predictions)
"""

from twitchapi.auth_manager import AuthManager, BroadcasterTier, DeviceFlowState, OAuthSession
from twitchapi.predictions import Prediction, PredictionService, PredictionState

__all__ = [
    "AuthManager",
    "BroadcasterTier",
    "DeviceFlowState",
    "OAuthSession",
    "Prediction",
    "PredictionService",
    "PredictionState",
]
