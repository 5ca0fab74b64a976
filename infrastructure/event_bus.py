"""Simple in-memory status events with bounded history"""
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List

from config import settings
from core.interfaces import IEventEmitter

logger = logging.getLogger(settings.LOGGER_NAME)


class InMemoryEventBus(IEventEmitter):
    """
    In-memory store of recent patient events, read by the polling endpoint.

    Keeps the newest `history_limit` events per patient. Lost on server restart.
    """

    def __init__(self, history_limit: int = 100):
        self._history_limit = history_limit
        self._history: Dict[str, Deque[Dict[str, Any]]] = {}

    def notify(self, patient_id: str, event_name: str, payload: Dict[str, Any]) -> None:
        try:
            event = {
                "event": event_name,
                "patient_id": patient_id,
                "payload": dict(payload),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
            history = self._history.setdefault(patient_id, deque(maxlen=self._history_limit))
            history.append(event)
        except Exception as e:
            # Listeners are best-effort; never break the caller
            logger.error(f"[EVENTS] Failed to publish '{event_name}' for patient {patient_id}: {e}")

    def recent(self, patient_id: str) -> List[Dict[str, Any]]:
        return list(self._history.get(patient_id, []))
