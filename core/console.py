"""
⌨️ Console - Commandes opérateur (joue le rôle du jeu en mode standalone)

    auth                          Lance le device flow
    start 1=alice,bob 2=carol     Crée une prédiction (rounds=N optionnel)
    win 1 [alice bob]             Résout en faveur de l'équipe 1
    cancel                        Annule + rembourse
    forget                        Oublie la prédiction locale
    status                        État OAuth + prédiction
    quit                          Arrête le process
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from core.match_hooks import MatchHooks
from twitchapi.scope_validator import analyze_scopes, print_scope_report

LOGGER = logging.getLogger(__name__)

COMMANDS = ("auth", "start", "win", "cancel", "forget", "status", "help", "quit")


class ConsoleError(ValueError):
    """Commande console invalide"""


@dataclass
class ConsoleCommand:
    name: str
    teams: Dict[int, List[str]] = field(default_factory=dict)
    rounds_to_win: Optional[int] = None
    team_id: Optional[int] = None
    winners: List[str] = field(default_factory=list)


def _parse_int(value: str, what: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise ConsoleError(f"{what} invalide: {value!r}") from None


def parse_command(line: str) -> Optional[ConsoleCommand]:
    """
    Parse une ligne de console.

    Returns:
        ConsoleCommand, ou None pour une ligne vide

    Raises:
        ConsoleError: commande inconnue ou arguments invalides
    """
    parts = line.split()
    if not parts:
        return None

    name, args = parts[0].lower(), parts[1:]
    if name not in COMMANDS:
        raise ConsoleError(f"Commande inconnue: {name}")

    command = ConsoleCommand(name=name)

    if name == "start":
        for arg in args:
            key, sep, value = arg.partition("=")
            if not sep:
                raise ConsoleError(f"Argument invalide: {arg!r} (attendu team=nom1,nom2)")
            if key == "rounds":
                command.rounds_to_win = _parse_int(value, "rounds")
                continue
            team_id = _parse_int(key, "team")
            names = [n for n in value.split(",") if n]
            if not names:
                raise ConsoleError(f"Équipe {team_id} sans joueur")
            if team_id in command.teams:
                raise ConsoleError(f"Équipe {team_id} en double")
            command.teams[team_id] = names

    elif name == "win":
        if not args:
            raise ConsoleError("Usage: win <team> [joueurs...]")
        command.team_id = _parse_int(args[0], "team")
        command.winners = args[1:]

    return command


class ConsoleController:
    """Exécute les commandes parsées via les MatchHooks"""

    def __init__(self, hooks: MatchHooks):
        self.hooks = hooks

    def execute(self, command: ConsoleCommand) -> bool:
        """Returns False quand il faut arrêter le process"""
        if command.name == "quit":
            return False

        if command.name == "help":
            print(__doc__)
        elif command.name == "auth":
            if self.hooks.on_game_open() is None:
                print("ℹ️  Device flow déjà en cours ou session déjà autorisée")
        elif command.name == "start":
            self.hooks.on_round_start(command.teams, command.rounds_to_win)
        elif command.name == "win":
            self.hooks.on_match_end(command.team_id, command.winners)
        elif command.name == "cancel":
            if self.hooks.on_return_to_menu() is None:
                print("ℹ️  Aucune prédiction active")
        elif command.name == "forget":
            self.hooks.predictions.abandon()
        elif command.name == "status":
            self.print_status()

        return True

    def print_status(self) -> None:
        stats = self.hooks.auth.get_stats()
        prediction = self.hooks.predictions.prediction
        print("=" * 60)
        for key, value in stats.items():
            print(f"  {key}: {value}")
        print(f"  prediction: {prediction.status.value} {prediction.prediction_id or ''}")
        for team_id, outcome_id in sorted(prediction.outcome_id_by_option_key.items()):
            print(f"    team {team_id} -> outcome {outcome_id}")
        print("=" * 60)
        if self.hooks.auth.session.scopes:
            print_scope_report(analyze_scopes(self.hooks.auth.session.scopes))
