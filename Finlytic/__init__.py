"""
Finlytic: offline-first sync core of a personal finance tracker.

This package provides:

- :mod:`Finlytic.core` – Local cache, Firestore adapter, connectivity monitoring, entity services and the sync queue.
- :mod:`Finlytic.data` – pandas aggregations over expenses, budgets and goals.
- :mod:`Finlytic.settings` – Settings management and schema validation.
- :mod:`Finlytic.status` – Status exceptions and the error handling service.
- :mod:`Finlytic.log` – Logging setup and the in-memory log tank.

Use :func:`Finlytic.exec_` to run the sync services headless.
"""

import sys

from PySide6 import QtCore

# Fail on Python < 3.11
if not (sys.version_info.major == 3 and sys.version_info.minor >= 11):
    raise RuntimeError('Finlytic requires Python 3.11 or higher.')

__version__ = '0.1.0'
__author__ = 'Gergely Wootsch'
__license__ = 'GPL-3.0'
__copyright__ = 'Copyright (C) 2025 Gergely Wootsch'
__description__ = 'Finlytic: offline-first sync core of a personal finance tracker.'
__email__ = 'hello+Finlytic@gergely-wootsch.com'

from .log import log

log.setup_logging()


def exec_() -> None:
    """Start the services and enter the Qt event loop.

    Connectivity changes and the periodic timer drive sync passes until the
    process is interrupted.
    """
    from .core.container import ServiceContainer

    app = QtCore.QCoreApplication(sys.argv)
    container = ServiceContainer()
    container.initialize()
    app.aboutToQuit.connect(container.dispose)

    sys.exit(app.exec())


if __name__ == '__main__':
    exec_()
