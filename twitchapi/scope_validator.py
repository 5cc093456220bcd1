"""
🔐 Scope Validator - Compare les scopes du token aux features de prédiction

Les scopes viennent de /oauth2/validate (déjà appelé par l'AuthManager),
pas de nouvel appel réseau ici.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Set

from twitchAPI.type import AuthScope

logger = logging.getLogger(__name__)


@dataclass
class ScopeRequirement:
    """Required scopes for a feature."""
    name: str
    scopes: Set[str]
    description: str
    critical: bool  # Les prédictions ne marchent pas sans


# Feature -> Required scopes mapping
FEATURE_SCOPES = {
    "predictions_read": ScopeRequirement(
        name="Read Predictions",
        scopes={AuthScope.CHANNEL_READ_PREDICTIONS.value},
        description="Lire l'état des prédictions du channel",
        critical=True
    ),
    "predictions_manage": ScopeRequirement(
        name="Manage Predictions",
        scopes={AuthScope.CHANNEL_MANAGE_PREDICTIONS.value},
        description="Créer, résoudre et annuler les prédictions",
        critical=True
    ),
}


def analyze_scopes(scopes: Iterable[str]) -> Dict[str, Any]:
    """
    Analyse les scopes accordés.

    Returns:
        {
            "valid": bool,
            "scopes": List[str],
            "missing_critical": List[str],
            "missing_optional": List[str],
            "available_features": List[str],
            "unavailable_features": List[str],
            "warnings": List[str]
        }
    """
    user_scopes = set(scopes)
    result = {
        "valid": True,
        "scopes": sorted(user_scopes),
        "missing_critical": [],
        "missing_optional": [],
        "available_features": [],
        "unavailable_features": [],
        "warnings": [],
    }

    for feature_key, requirement in FEATURE_SCOPES.items():
        missing = requirement.scopes - user_scopes

        if not missing:
            result["available_features"].append(feature_key)
            logger.debug(f"✅ Feature '{requirement.name}' disponible")
            continue

        result["unavailable_features"].append(feature_key)
        if requirement.critical:
            result["missing_critical"].extend(sorted(missing))
            result["warnings"].append(
                f"❌ CRITIQUE : '{requirement.name}' nécessite {sorted(missing)}"
            )
        else:
            result["missing_optional"].extend(sorted(missing))
            result["warnings"].append(
                f"⚠️  OPTIONNEL : '{requirement.name}' nécessite {sorted(missing)}"
            )

    if result["missing_critical"]:
        result["valid"] = False
        result["warnings"].insert(0, "🚨 Prédictions indisponibles sans les scopes critiques !")
    else:
        result["warnings"].insert(0, "🎉 Tous les scopes de prédiction sont présents")

    return result


def print_scope_report(analysis: Dict[str, Any]) -> None:
    """
    Print a formatted scope analysis report to console.

    Args:
        analysis: Result from analyze_scopes()
    """
    print("\n" + "=" * 60)
    print("🔐 ANALYSE DES SCOPES OAUTH")
    print("=" * 60)

    print(f"\n📊 Scopes présents ({len(analysis['scopes'])}):")
    for scope in analysis['scopes']:
        print(f"  ✅ {scope}")

    if analysis['unavailable_features']:
        print(f"\n⚠️  Features indisponibles ({len(analysis['unavailable_features'])}):")
        for feature_key in analysis['unavailable_features']:
            req = FEATURE_SCOPES[feature_key]
            critical_marker = "❌ CRITIQUE" if req.critical else "⚠️  OPTIONNEL"
            print(f"  {critical_marker} {req.name}: {req.description}")

    print("\n📋 Résumé:")
    for warning in analysis['warnings']:
        print(f"  {warning}")

    print("=" * 60 + "\n")
