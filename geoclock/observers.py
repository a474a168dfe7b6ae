from typing import Any, Callable

Listener = Callable[[str, dict], Any]


class ListenerSet:
    """Ordered set of ``callback(event, info)`` subscribers.

    ``notify`` iterates over a snapshot, so a callback may subscribe or
    unsubscribe (itself or others) while a dispatch is running.
    """

    def __init__(self, logger, name: str) -> None:
        self.logger = logger
        self.name = name
        self._listeners: dict[int, Listener] = {}
        self._next_token = 0

    def add(self, callback: Listener) -> Callable[[], None]:
        token = self._next_token
        self._next_token += 1
        self._listeners[token] = callback

        def unsubscribe() -> None:
            self._listeners.pop(token, None)

        return unsubscribe

    def clear(self) -> None:
        self._listeners.clear()

    def __len__(self) -> int:
        return len(self._listeners)

    def notify(self, event: str, info: dict | None = None) -> None:
        payload = dict(info or {})
        for token, callback in list(self._listeners.items()):
            if token not in self._listeners:
                continue
            try:
                callback(event, payload)
            except Exception as exc:
                self.logger.error("LISTENER_ERROR source=%s event=%s error=%s", self.name, event, exc)
