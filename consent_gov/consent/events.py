"""
Outbound risk event queue
Consent decisions waiting to be collected by the external risk-scoring collaborator
"""

import threading
from collections import deque
from typing import Deque, List, Optional
import structlog

from .models import RiskEvent

logger = structlog.get_logger(__name__)


class RiskEventQueue:
    """Thread-safe FIFO of risk events; drained entries are handed over exactly once"""

    def __init__(self, max_size: Optional[int] = None):
        self._events: Deque[RiskEvent] = deque(maxlen=max_size)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def push(self, event: RiskEvent) -> None:
        with self._lock:
            if self._events.maxlen is not None and len(self._events) == self._events.maxlen:
                logger.warning("Risk event queue full, dropping oldest event",
                               max_size=self._events.maxlen)
            self._events.append(event)

    def drain(self) -> List[RiskEvent]:
        """Pop and return every queued event in arrival order"""
        with self._lock:
            drained = list(self._events)
            self._events.clear()
        if drained:
            logger.info("Risk events drained", count=len(drained))
        return drained
