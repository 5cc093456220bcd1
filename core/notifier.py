"""
📣 Notifier - Messages lisibles pour l'opérateur

Chaque message part dans le logger Python et vers les sinks abonnés
(console, overlay...). Un sink qui plante est loggé, jamais propagé.
"""
import logging
from typing import Callable, List, Optional

LOGGER = logging.getLogger(__name__)

# sink(level, message, color)
Sink = Callable[[int, str, str], None]


class Notifier:
    """Sink unique info/warning/error partagé par l'OAuth et les prédictions"""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or LOGGER
        self._sinks: List[Sink] = []

    def subscribe(self, sink: Sink) -> None:
        self._sinks.append(sink)
        LOGGER.debug(f"📌 Sink ajouté: {getattr(sink, '__name__', sink)}")

    def info(self, message: str, color: str = "white") -> None:
        self._emit(logging.INFO, message, color)

    def warning(self, message: str, color: str = "yellow") -> None:
        self._emit(logging.WARNING, message, color)

    def error(self, message: str, color: str = "red") -> None:
        self._emit(logging.ERROR, message, color)

    def _emit(self, level: int, message: str, color: str) -> None:
        self.logger.log(level, message)
        for sink in self._sinks:
            try:
                sink(level, message, color)
            except Exception as e:
                LOGGER.error(f"❌ Erreur sink {getattr(sink, '__name__', sink)}: {e}")
