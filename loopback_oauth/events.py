"""
Minimal named-event bus used as the embedding application handle.

The loopback listener publishes its result on this bus from its worker
thread; the UI side registers listeners or blocks on a one-shot waiter.
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from .utils import OAuthFlowException

logger = logging.getLogger(__name__)


class EventWaiter:
    """One-shot wait for the first payload of a named event."""

    def __init__(self, bus: 'EventBus', name: str):
        self.name = name
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._payload = None
        self._error = None
        self._unlisten = bus.listen(name, self._onEvent)

    def _onEvent(self, payload: Any) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._payload = payload
            self._event.set()

    def abort(self, reason: Any) -> None:
        """Wake the waiter with an error instead of a payload."""
        with self._lock:
            if self._event.is_set():
                return
            self._error = str(reason)
            self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> Any:
        """
        Block until the event fires.

        Args:
            timeout: Maximum time to wait (seconds), None to wait forever

        Returns:
            The payload of the first emission

        Raises:
            OAuthFlowException: If the timeout is reached first or the waiter was aborted
        """
        try:
            if not self._event.wait(timeout=timeout):
                raise OAuthFlowException(
                    f"Timed out after {timeout:g} seconds waiting for {self.name!r}"
                )
            if self._error is not None:
                raise OAuthFlowException(self._error)
            return self._payload
        finally:
            self.cancel()

    def cancel(self) -> None:
        self._unlisten()


class EventBus:
    """Thread-safe registry of named event listeners."""

    def __init__(self):
        self._listeners: Dict[str, List[Callable[[Any], None]]] = {}
        self._lock = threading.Lock()

    def listen(self, name: str, callback: Callable[[Any], None]) -> Callable[[], None]:
        """
        Register a listener for a named event.

        Returns:
            A function that removes the listener. Calling it more than once is harmless.
        """
        with self._lock:
            self._listeners.setdefault(name, []).append(callback)

        def unlisten() -> None:
            with self._lock:
                callbacks = self._listeners.get(name, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return unlisten

    def once(self, name: str) -> EventWaiter:
        return EventWaiter(self, name)

    def emit(self, name: str, payload: Any = None) -> int:
        """
        Deliver a payload to every listener of a named event.

        Listener errors are logged and do not reach the emitter.

        Returns:
            Number of listeners invoked
        """
        with self._lock:
            callbacks = list(self._listeners.get(name, []))

        for callback in callbacks:
            try:
                callback(payload)
            except Exception:
                logger.exception("Listener for %r failed", name)
        logger.debug("Emitted %r to %d listener(s)", name, len(callbacks))
        return len(callbacks)
