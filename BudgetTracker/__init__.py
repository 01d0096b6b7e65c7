"""
BudgetTracker: offline-first personal finance tracking with background sync.

This package provides:

- :mod:`BudgetTracker.core` – Local SQLite store, data validation, conflict resolution,
  the durable sync queue, the REST API client and the session context.
- :mod:`BudgetTracker.settings` – Configuration loading, schema validation and application paths.
- :mod:`BudgetTracker.status` – Status codes and the exception taxonomy.
- :mod:`BudgetTracker.log` – Logging setup with an in-memory log tank.

Use :func:`BudgetTracker.exec_` to run the background sync service.
"""

import sys

from PySide6 import QtCore

# Fail on Python < 3.11
if not (sys.version_info.major == 3 and sys.version_info.minor >= 11):
    raise RuntimeError('BudgetTracker requires Python 3.11 or higher.')

__version__ = '0.1.0'
__license__ = 'GPL-3.0'
__description__ = 'BudgetTracker: offline-first expense, income and budget tracking with background sync.'

from .log import log

log.setup_logging()


def exec_() -> None:
    """Start the headless sync service and enter the Qt event loop.

    Builds the application context, restores the cached session, starts
    connectivity monitoring and keeps draining the sync queue while online.
    """
    from .core import context

    app = QtCore.QCoreApplication.instance() or QtCore.QCoreApplication(sys.argv)
    ctx = context.create_context()
    ctx.start()

    app.aboutToQuit.connect(ctx.shutdown)
    sys.exit(app.exec())


if __name__ == '__main__':
    exec_()
