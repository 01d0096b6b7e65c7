"""Construction and wiring of the application services.

:func:`create_context` builds the settings, the local store, the session, the API
client, the connectivity monitor and the sync queue, and hands them to each other.
The returned :class:`AppContext` owns their lifetime.
"""
import logging
import pathlib
from dataclasses import dataclass
from typing import Optional, Union

from .auth import SessionContext
from .connectivity import ConnectivityMonitor
from .database import Store
from .service import ApiClient
from .sync import SyncQueue
from ..settings.lib import SettingsAPI


@dataclass
class AppContext:
    """The services of one running application."""
    settings: SettingsAPI
    store: Store
    session: SessionContext
    client: ApiClient
    connectivity: ConnectivityMonitor
    sync_queue: SyncQueue

    def start(self) -> None:
        """Open the database, restore the cached session and begin syncing."""
        self.store.ensure_initialized()
        self.session.restore_session()
        self.connectivity.start()
        self.sync_queue.start()
        logging.info('BudgetTracker services started.')

    def shutdown(self) -> None:
        """Stop syncing and release the connection and the HTTP session."""
        self.sync_queue.stop()
        self.client.close()
        self.store.close()
        logging.info('BudgetTracker services stopped.')


def create_context(
        root: Optional[Union[str, pathlib.Path]] = None,
        asynchronous: bool = True,
        online: bool = True
) -> AppContext:
    """Build and wire the application services.

    Args:
        root: Directory for the config, database and session files. Defaults to the
            Qt app data location.
        asynchronous: Drain the sync queue on a worker thread.
        online: Initial connectivity state, used until a network backend reports.

    Raises:
        status.ConfigNotFoundException: If config.json is missing.
        status.ConfigInvalidException: If config.json is invalid.
    """
    settings = SettingsAPI(root=root)
    sync_config = settings.get_section('sync')

    store = Store(settings.db_path, defaults=settings.get_section('defaults'))
    session = SessionContext(settings.session_path)
    client = ApiClient.from_settings(settings, session=session)
    connectivity = ConnectivityMonitor(online=online)
    sync_queue = SyncQueue(
        store,
        client,
        session=session,
        connectivity=connectivity,
        interval_seconds=sync_config['interval_seconds'],
        max_retries=sync_config['max_retries'],
        asynchronous=asynchronous,
    )

    logging.debug(f'Created application context in {settings.app_data_dir}')
    return AppContext(settings, store, session, client, connectivity, sync_queue)
