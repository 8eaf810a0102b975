from __future__ import annotations

import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

Listener = Callable[[str, Any], None]


class Observable:
    """Push field changes (`name`, `value`) to subscribed listeners."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, field: str, value: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(field, value)
            except Exception:
                logger.exception("Listener failed for field=%s", field)
