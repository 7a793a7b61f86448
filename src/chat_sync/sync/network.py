from __future__ import annotations

import logging
from typing import Callable

logger = logging.getLogger(__name__)

NetworkListener = Callable[[bool, bool], None]


class NetworkMonitor:
    """Online/visibility flags fed by the host environment.

    Listeners are called with ``(online, visible)`` whenever either flag changes.
    """

    def __init__(self, *, online: bool = True, visible: bool = True) -> None:
        self._online = online
        self._visible = visible
        self._listeners: list[NetworkListener] = []

    @property
    def online(self) -> bool:
        return self._online

    @property
    def visible(self) -> bool:
        return self._visible

    @property
    def usable(self) -> bool:
        return self._online and self._visible

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        logger.info("Network %s", "online" if online else "offline")
        self._notify()

    def set_visible(self, visible: bool) -> None:
        if visible == self._visible:
            return
        self._visible = visible
        logger.debug("Visibility changed: visible=%s", visible)
        self._notify()

    def add_listener(self, listener: NetworkListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._online, self._visible)
            except Exception:
                logger.exception("Network listener failed")
