"""
Fire-and-forget analytics sinks for upload events.
"""

import logging
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)


class AnalyticsSink:
    """Receives named events; failures never reach the caller"""

    def track(self, event: str, properties: Optional[dict] = None):
        try:
            self.emit(event, properties or {})
        except Exception:
            logger.warning("Analytics sink failed for %s", event, exc_info=True)

    def emit(self, event: str, properties: dict):
        raise NotImplementedError


class NullAnalytics(AnalyticsSink):
    """Drops every event"""

    def emit(self, event: str, properties: dict):
        pass


class LoggingAnalytics(AnalyticsSink):
    """Writes each event to the debug log"""

    def emit(self, event: str, properties: dict):
        logger.debug("[ANALYTICS] Event: %s %s", event, properties)


class RecordingAnalytics(AnalyticsSink):
    """Keeps events in memory, in order"""

    def __init__(self):
        self.events: List[Tuple[str, dict]] = []

    def emit(self, event: str, properties: dict):
        self.events.append((event, properties))

    def names(self) -> List[str]:
        return [name for name, _ in self.events]
