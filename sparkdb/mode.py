"""Process-wide connectivity mode (remote | local) with subscribe/unsubscribe.

The dispatcher is the only writer. Subscribers receive the current mode
immediately on subscribe and then exactly one call per real transition.
"""
from __future__ import annotations
import threading
from enum import Enum
from typing import Callable, List

from .logging_util import info, error


class ConnectivityMode(str, Enum):
    REMOTE = "remote"
    LOCAL = "local"


ModeListener = Callable[[ConnectivityMode], None]


class ModePublisher:
    """Single owned state cell behind a subscribe interface.

    A reentrant lock serializes mode changes, listener-list mutation and
    notification, so every listener sees transitions in the order they happened.
    A listener may subscribe, unsubscribe or set the mode from its own thread.
    """

    def __init__(self, initial: ConnectivityMode = ConnectivityMode.REMOTE):
        self._mode = ConnectivityMode(initial)
        self._listeners: List[ModeListener] = []
        self._lock = threading.RLock()

    @property
    def mode(self) -> ConnectivityMode:
        return self._mode

    def subscribe(self, listener: ModeListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)
            self._notify(listener, self._mode)

        def unsubscribe() -> None:
            with self._lock:
                # identity match so a callable subscribed twice loses one entry per call
                for i, registered in enumerate(self._listeners):
                    if registered is listener:
                        del self._listeners[i]
                        break

        return unsubscribe

    def set_mode(self, mode: ConnectivityMode) -> bool:
        """Switch modes; returns False (and notifies nobody) when unchanged."""
        mode = ConnectivityMode(mode)
        with self._lock:
            if mode == self._mode:
                return False
            previous, self._mode = self._mode, mode
            listeners = list(self._listeners)
            info("mode_changed", previous=previous.value, mode=mode.value, listeners=len(listeners))
            for listener in listeners:
                self._notify(listener, mode)
        return True

    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    @staticmethod
    def _notify(listener: ModeListener, mode: ConnectivityMode) -> None:
        try:
            listener(mode)
        except Exception as e:
            error("mode_listener_failed", listener=getattr(listener, "__name__", repr(listener)), error=str(e))


default_publisher = ModePublisher()


def subscribe_to_connection_mode(listener: ModeListener) -> Callable[[], None]:
    return default_publisher.subscribe(listener)


def current_mode() -> ConnectivityMode:
    return default_publisher.mode
