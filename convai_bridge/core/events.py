"""
Listener registration with explicit disposers.

Every `add()` returns a zero-argument callable that removes exactly that
listener. Owners keep the disposers and call them on teardown, so repeated
connect/disconnect cycles never leave orphaned callbacks behind.
"""

from typing import Any, Callable, Dict, List

from convai_bridge.logging_config import get_logger

logger = get_logger(__name__)

Disposer = Callable[[], None]


class ListenerSet:
    """Named-event listener registry used by transport and player implementations."""

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Callable[..., Any]]] = {}

    def add(self, event: str, callback: Callable[..., Any], *, once: bool = False) -> Disposer:
        if once:
            def wrapper(*args: Any) -> Any:
                dispose()
                return callback(*args)
        else:
            wrapper = callback

        self._listeners.setdefault(event, []).append(wrapper)

        def dispose() -> None:
            listeners = self._listeners.get(event)
            if listeners and wrapper in listeners:
                listeners.remove(wrapper)

        return dispose

    def emit(self, event: str, *args: Any) -> int:
        """Call every listener for `event`; returns how many were called.

        A listener that raises is logged and does not stop the others.
        """
        listeners = list(self._listeners.get(event, ()))
        for listener in listeners:
            try:
                listener(*args)
            except Exception:
                logger.error("Event listener failed", event_name=event, exc_info=True)
        return len(listeners)

    def count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def clear(self) -> None:
        self._listeners.clear()


class DisposerBag:
    """Collects disposers so an owner can release all its subscriptions at once."""

    def __init__(self) -> None:
        self._disposers: List[Disposer] = []

    def add(self, disposer: Disposer) -> Disposer:
        self._disposers.append(disposer)
        return disposer

    def dispose_all(self) -> None:
        disposers, self._disposers = self._disposers, []
        for disposer in disposers:
            try:
                disposer()
            except Exception:
                logger.debug("Listener disposer failed", exc_info=True)

    def __len__(self) -> int:
        return len(self._disposers)
