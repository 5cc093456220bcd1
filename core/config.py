"""
⚙️ Config - Chargement de config/config.yaml

Toutes les valeurs ont un défaut : l'app tourne sans fichier de config
(client id et scopes sont des constantes de l'application).
"""
import logging
import pathlib
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

import yaml

LOGGER = logging.getLogger(__name__)

TWITCH_CLIENT_ID = "t1tug446aluj8yvplzs9n0mhw3xo5n"
TWITCH_SCOPES = ["channel:read:predictions", "channel:manage:predictions"]


class ConfigError(ValueError):
    """Valeur de config invalide"""


@dataclass
class TwitchConfig:
    client_id: str = TWITCH_CLIENT_ID
    scopes: List[str] = field(default_factory=lambda: list(TWITCH_SCOPES))
    id_base_url: str = "https://id.twitch.tv/oauth2"
    helix_base_url: str = "https://api.twitch.tv/helix"
    http_timeout: float = 10.0
    open_browser: bool = True


@dataclass
class OAuthConfig:
    refresh_margin: int = 1800           # Refresh quand il reste <= 30 min
    deferred_refresh_delay: int = 30     # Re-check si une prédiction est en cours
    min_refresh_wait: int = 30
    no_refresh_token_wait: int = 10


@dataclass
class PredictionsConfig:
    title: str = "Match Winner"
    window_base: int = 60
    window_per_player_round: int = 15
    window_min: int = 60
    window_max: int = 1800
    default_rounds_to_win: int = 2
    shutdown_cancel_timeout: float = 5.0


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: str = "logs/autopoll.log"


@dataclass
class AppConfig:
    twitch: TwitchConfig = field(default_factory=TwitchConfig)
    oauth: OAuthConfig = field(default_factory=OAuthConfig)
    predictions: PredictionsConfig = field(default_factory=PredictionsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _build_section(cls, section_name: str, raw: Optional[Dict[str, Any]]):
    """Construit une section typée à partir du dict YAML"""
    section = cls()
    if raw is None:
        return section
    if not isinstance(raw, dict):
        raise ConfigError(f"Section '{section_name}' doit être un mapping")

    known = {f.name: f for f in fields(cls)}
    for key, value in raw.items():
        if key not in known:
            LOGGER.debug(f"Clé de config ignorée: {section_name}.{key}")
            continue

        default = getattr(section, key)
        if isinstance(default, bool):
            ok = isinstance(value, bool)
        elif isinstance(default, float):
            ok = isinstance(value, (int, float)) and not isinstance(value, bool)
            value = float(value) if ok else value
        elif isinstance(default, int):
            ok = isinstance(value, int) and not isinstance(value, bool)
        elif isinstance(default, list):
            ok = isinstance(value, list) and all(isinstance(v, str) for v in value)
        else:
            ok = isinstance(value, str)

        if not ok:
            raise ConfigError(
                f"Type invalide pour {section_name}.{key}: {type(value).__name__}"
            )
        setattr(section, key, value)

    return section


def parse_config(data: Optional[Dict[str, Any]]) -> AppConfig:
    """Convertit le contenu YAML brut en AppConfig"""
    data = data or {}
    if not isinstance(data, dict):
        raise ConfigError("La racine de la config doit être un mapping")

    config = AppConfig(
        twitch=_build_section(TwitchConfig, "twitch", data.get("twitch")),
        oauth=_build_section(OAuthConfig, "oauth", data.get("oauth")),
        predictions=_build_section(PredictionsConfig, "predictions", data.get("predictions")),
        logging=_build_section(LoggingConfig, "logging", data.get("logging")),
    )

    p = config.predictions
    if p.window_min > p.window_max:
        raise ConfigError("predictions.window_min doit être <= predictions.window_max")

    return config


def load_config(config_path: str = "config/config.yaml") -> AppConfig:
    """Charge config.yaml (défauts si le fichier n'existe pas)"""
    config_file = pathlib.Path(config_path)
    if not config_file.exists():
        LOGGER.warning(f"⚠️ Config file {config_path} not found, using defaults")
        return AppConfig()

    with open(config_file, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f)

    config = parse_config(data)
    LOGGER.info(f"✅ Config chargée depuis {config_path}")
    return config
