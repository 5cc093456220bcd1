#!/usr/bin/env python3
"""
Autopoll - Twitch Predictions automatiques pour les matchs

════════════════════════════════════════════════════════════════════════════
Copyright (c) 2024-2025 ElSerda

Licence propriétaire "Source-Disponible" - Voir LICENSE
════════════════════════════════════════════════════════════════════════════
"""

import argparse
import asyncio
import logging
import pathlib
import sys

from core.config import AppConfig, load_config
from core.console import ConsoleController, ConsoleError, parse_command
from core.match_hooks import MatchHooks
from core.notifier import Notifier
from core.task_scheduler import TaskScheduler
from twitchapi.auth_manager import AuthManager
from twitchapi.predictions import PredictionService
from twitchapi.transports.helix_client import HelixClient
from twitchapi.transports.oauth_client import TwitchOAuthClient

# Logger will be configured in setup_logging()
LOGGER = logging.getLogger(__name__)

LEVEL_ICONS = {
    logging.INFO: "ℹ️ ",
    logging.WARNING: "⚠️ ",
    logging.ERROR: "❌",
}


def parse_args(argv=None):
    """Parse command-line arguments"""
    parser = argparse.ArgumentParser(description="Autopoll - Twitch Predictions")
    parser.add_argument(
        '--config',
        type=str,
        default='config/config.yaml',
        help='Path to config file (default: config/config.yaml)'
    )
    parser.add_argument(
        '--log-level',
        type=str,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=None,
        help='Override logging.level from config'
    )
    parser.add_argument(
        '--no-browser',
        action='store_true',
        help='Do not open the verification URL, only print it'
    )
    return parser.parse_args(argv)


def setup_logging(level: str = "INFO", log_file: str = "logs/autopoll.log"):
    """Root logger: fichier + console"""
    log_path = pathlib.Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s %(message)s",
        handlers=[
            logging.FileHandler(log_path),
            logging.StreamHandler()
        ],
        force=True  # Override any existing config
    )
    return log_path


def console_sink(level: int, message: str, color: str) -> None:
    """Affiche les messages opérateur (le logger écrit déjà le détail)"""
    print(f"{LEVEL_ICONS.get(level, '')} {message}")


def build_app(config: AppConfig, open_browser: bool = True):
    """Assemble scheduler, transports, AuthManager, PredictionService, hooks"""
    notifier = Notifier(logging.getLogger("autopoll"))
    notifier.subscribe(console_sink)

    scheduler = TaskScheduler()
    oauth_client = TwitchOAuthClient(
        config.twitch.client_id,
        base_url=config.twitch.id_base_url,
        timeout=config.twitch.http_timeout
    )
    helix_client = HelixClient(
        config.twitch.client_id,
        base_url=config.twitch.helix_base_url,
        timeout=config.twitch.http_timeout,
        scopes=config.twitch.scopes
    )

    auth_manager = AuthManager(
        oauth_client,
        helix_client,
        scheduler,
        scopes=config.twitch.scopes,
        notifier=notifier,
        open_browser=None if open_browser else (lambda url: False),
        refresh_margin=config.oauth.refresh_margin,
        deferred_refresh_delay=config.oauth.deferred_refresh_delay,
        min_refresh_wait=config.oauth.min_refresh_wait,
        no_refresh_token_wait=config.oauth.no_refresh_token_wait,
    )
    predictions = PredictionService(
        auth_manager,
        helix_client,
        title=config.predictions.title,
        notifier=notifier,
        window_base=config.predictions.window_base,
        window_per_player_round=config.predictions.window_per_player_round,
        window_min=config.predictions.window_min,
        window_max=config.predictions.window_max,
        shutdown_cancel_timeout=config.predictions.shutdown_cancel_timeout,
    )
    auth_manager.set_prediction_guard(predictions.is_active)

    hooks = MatchHooks(
        auth_manager,
        predictions,
        scheduler,
        notifier=notifier,
        default_rounds_to_win=config.predictions.default_rounds_to_win
    )
    return hooks, (oauth_client, helix_client)


async def main(argv=None):
    """Main entry point: device flow + boucle console"""
    args = parse_args(argv)
    config = load_config(args.config)
    log_path = setup_logging(args.log_level or config.logging.level, config.logging.file)

    print("=" * 70)
    print("Autopoll - Twitch Predictions")
    print(f"Logs: {log_path}")
    print("=" * 70)

    hooks, transports = build_app(config, open_browser=config.twitch.open_browser and not args.no_browser)
    controller = ConsoleController(hooks)

    hooks.on_game_open()
    print("💡 Tapez 'help' pour la liste des commandes")

    loop = asyncio.get_running_loop()
    try:
        while True:
            try:
                line = await loop.run_in_executor(None, input, "> ")
            except EOFError:
                break

            try:
                command = parse_command(line)
            except ConsoleError as e:
                print(f"❌ {e}")
                continue

            if command is not None and not controller.execute(command):
                break
    except (KeyboardInterrupt, asyncio.CancelledError):
        LOGGER.info("CTRL+C détecté, arrêt en cours...")
    finally:
        LOGGER.info("Arret...")
        await hooks.on_shutdown()
        await hooks.scheduler.shutdown()
        for transport in transports:
            await transport.close()
        LOGGER.info("Termine")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nAu revoir !")
    except Exception as e:
        LOGGER.error(f"Erreur fatale: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    run()
