"""Application state with change subscriptions."""

from __future__ import annotations

import copy
import logging
import threading
from collections import defaultdict
from typing import Any, Callable


logger = logging.getLogger(__name__)

Listener = Callable[[Any, Any], None]

DEFAULT_STATE: dict[str, Any] = {
    "user_id": None,
    "email": None,
    "plan": None,
    "usage": None,
    "current_chat_id": None,
    "messages": [],
    "is_new_chat": True,
    "last_decision": None,
}


class AppState:
    """
    Key/value state owned by the chat controller.

    Listeners receive ``(new_value, old_value)`` after every ``set``.
    The entitlement engine and usage store never read this object; the
    controller passes plan and usage to them explicitly.
    """

    def __init__(self, initial: dict[str, Any] | None = None):
        self._state: dict[str, Any] = copy.deepcopy(DEFAULT_STATE)
        if initial:
            self._state.update(initial)
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._lock = threading.RLock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._state.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            old = self._state.get(key)
            self._state[key] = value
            listeners = list(self._listeners.get(key, ()))

        for listener in listeners:
            try:
                listener(value, old)
            except Exception:
                logger.exception("State listener for '%s' failed", key)

    def update(self, **values: Any) -> None:
        for key, value in values.items():
            self.set(key, value)

    def subscribe(self, key: str, listener: Listener) -> Callable[[], None]:
        """Register a listener and return a callable that removes it."""
        with self._lock:
            self._listeners[key].append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners.get(key, []):
                    self._listeners[key].remove(listener)

        return unsubscribe

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return dict(self._state)

    def reset(self) -> None:
        for key, value in copy.deepcopy(DEFAULT_STATE).items():
            self.set(key, value)
