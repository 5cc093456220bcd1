"""
Core - Utilitaires transverses (config, tâches, notifications, hooks de jeu)
"""

# Import explicites pour Pylance
from core.notifier import Notifier
from core.task_scheduler import TaskScheduler

__all__ = ["Notifier", "TaskScheduler"]
