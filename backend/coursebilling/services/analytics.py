"""
Analytics sink: best-effort `log_event(name, properties)`.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from ..core.logging_config import get_logger
from ..events.event_bus import EventBus
from ..events.event_types import EventType

logger = get_logger(__name__)


class AnalyticsSink(ABC):
    """Never blocks and never fails the caller. Property values are stringified."""

    def log_event(self, name: str, properties: Optional[Dict[str, Any]] = None) -> None:
        try:
            props = {key: "" if value is None else str(value) for key, value in (properties or {}).items()}
            self._emit(name, props)
        except Exception as e:
            logger.warning(f"Dropped analytics event {name}: {e}")

    @abstractmethod
    def _emit(self, name: str, properties: Dict[str, str]) -> None:
        ...


class EventBusAnalyticsSink(AnalyticsSink):
    def __init__(self, bus: EventBus):
        self.bus = bus

    def _emit(self, name: str, properties: Dict[str, str]) -> None:
        self.bus.publish_nowait(EventType.ANALYTICS_LOGGED, {"name": name, "properties": properties})
