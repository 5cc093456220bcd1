"""
Erreurs Twitch (OAuth + Helix) et erreurs de prédiction
"""
from typing import Optional


class TwitchAPIError(Exception):
    """Base des erreurs remontées par les transports Twitch"""


class TwitchHTTPError(TwitchAPIError):
    """Réponse HTTP non-2xx d'un endpoint Twitch"""

    def __init__(
        self,
        status: int,
        body: str = "",
        error_code: str = "",
        message: str = ""
    ):
        self.status = status
        self.body = body
        self.error_code = error_code
        self.message = message
        super().__init__(f"HTTP {status} {error_code} {message}".strip())


class TwitchResponseError(TwitchAPIError):
    """Réponse 2xx illisible (body non décodable, champ attendu absent)"""


class NotAuthorizedError(TwitchAPIError):
    """Aucun access token valide (absent ou expiré)"""


class PredictionError(Exception):
    """Base des échecs create/resolve/cancel"""


class PredictionPreconditionError(PredictionError):
    """Rejet avant tout appel réseau (pas autorisé, pas de prédiction active...)"""


class PredictionRemoteError(PredictionError):
    """L'appel Helix a échoué (statut non-2xx ou erreur réseau)"""

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        self.status = status
        self.body = body
        super().__init__(message)
