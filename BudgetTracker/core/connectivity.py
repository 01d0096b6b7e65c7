"""Network reachability monitoring.

:class:`ConnectivityMonitor` reports online/offline transitions. When Qt provides a
network information backend for the platform the monitor follows it; otherwise the
application is assumed to be online and the state can be driven with
:meth:`ConnectivityMonitor.set_online`.
"""
import logging
from typing import Optional

from PySide6 import QtCore, QtNetwork


class ConnectivityMonitor(QtCore.QObject):
    """Observe network reachability.

    Signals:
        onlineChanged (bool): Emitted on every offline/online transition.
    """
    onlineChanged = QtCore.Signal(bool)

    def __init__(self, online: bool = True, parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self._online = online
        self._backend_loaded = False

    def is_online(self) -> bool:
        return self._online

    @QtCore.Slot(bool)
    def set_online(self, online: bool) -> None:
        online = bool(online)
        if online == self._online:
            return
        self._online = online
        logging.info(f'Network is now {"online" if online else "offline"}.')
        self.onlineChanged.emit(online)

    def start(self) -> bool:
        """Bind to the platform's network information backend.

        Returns:
            bool: False if no backend is available; the current state is kept.
        """
        if self._backend_loaded:
            return True
        if not QtNetwork.QNetworkInformation.loadDefaultBackend():
            logging.warning('No network information backend available, assuming online.')
            return False

        info = QtNetwork.QNetworkInformation.instance()
        info.reachabilityChanged.connect(self._on_reachability_changed)
        self._backend_loaded = True
        logging.debug(f'Using network information backend "{info.backendName()}"')
        self._on_reachability_changed(info.reachability())
        return True

    @QtCore.Slot(QtNetwork.QNetworkInformation.Reachability)
    def _on_reachability_changed(self, reachability: QtNetwork.QNetworkInformation.Reachability) -> None:
        Reachability = QtNetwork.QNetworkInformation.Reachability
        if reachability == Reachability.Unknown:
            return
        # Local and Site reachability still reach a backend on the local network
        self.set_online(reachability != Reachability.Disconnected)
