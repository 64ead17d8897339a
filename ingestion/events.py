import logging
import threading
from collections import defaultdict
from typing import Callable, DefaultDict, List

logger = logging.getLogger(__name__)

WRITE_ERROR = "write-error"


class ErrorEmitter:
    """Shared side channel for failures of writes nobody is waiting on."""

    def __init__(self):
        self._listeners: DefaultDict[str, List[Callable]] = defaultdict(list)
        self._lock = threading.Lock()

    def on(self, event: str, listener: Callable) -> None:
        with self._lock:
            if listener not in self._listeners[event]:
                self._listeners[event].append(listener)

    def off(self, event: str, listener: Callable) -> None:
        with self._lock:
            if listener in self._listeners[event]:
                self._listeners[event].remove(listener)

    def emit(self, event: str, error: Exception) -> int:
        with self._lock:
            listeners = list(self._listeners[event])
        if not listeners:
            logger.error("Unhandled %s event: %s", event, error)
        for listener in listeners:
            try:
                listener(error)
            except Exception:
                logger.exception("Listener for %s failed", event)
        return len(listeners)


write_errors = ErrorEmitter()
