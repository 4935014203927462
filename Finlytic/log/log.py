"""Root logger configuration.

Log records go to stdout and to an in-memory :class:`TankHandler`. Qt's own
messages are routed into :mod:`logging` through :func:`qt_message_handler`.
The tank's recent warnings are appended to exported error logs, see
:meth:`Finlytic.status.errors.ErrorHandlingService.export_error_log`.
"""
import collections
import logging
import sys
from typing import Deque, Dict, List, Optional, Tuple

from PySide6.QtCore import QtMsgType, qInstallMessageHandler

LOG_LEVEL = logging.DEBUG
LOG_FORMAT = '[%(asctime)s] <%(module)s> %(levelname)s:  %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'
TANK_SIZE: int = 10_000

LEVELS = (logging.DEBUG, logging.INFO, logging.WARNING, logging.ERROR, logging.CRITICAL)

# Client libraries that log every request or cache miss at INFO and below
QUIET_LOGGERS = (
    'googleapiclient.discovery',
    'googleapiclient.discovery_cache',
    'google_auth_httplib2',
    'urllib3.connectionpool',
)

QT_LEVELS: Dict[QtMsgType, int] = {
    QtMsgType.QtDebugMsg: logging.DEBUG,
    QtMsgType.QtInfoMsg: logging.INFO,
    QtMsgType.QtWarningMsg: logging.WARNING,
    QtMsgType.QtCriticalMsg: logging.ERROR,
    QtMsgType.QtFatalMsg: logging.CRITICAL,
}


def set_logging_level(level: int) -> None:
    """Set the level of the root logger and all of its handlers.

    Raises:
        ValueError: If ``level`` is not one of the standard logging levels.
    """
    if not isinstance(level, int) or level not in LEVELS:
        raise ValueError(f'Invalid logging level {level!r}, must be one of {LEVELS}.')

    root = logging.getLogger()
    root.setLevel(level)
    for handler in root.handlers:
        handler.setLevel(level)


def qt_message_handler(mode, context, message) -> None:
    """Forward a Qt message to the ``Qt`` logger. Fatal messages exit the process."""
    level = QT_LEVELS.get(mode, logging.WARNING)
    logging.getLogger('Qt').log(level, message.strip())
    if mode == QtMsgType.QtFatalMsg:
        sys.exit(1)


def setup_logging(enable_stream_handler: bool = True, enable_qt_handler: bool = True,
                  log_level: int = LOG_LEVEL, tank_size: int = TANK_SIZE) -> None:
    """Replace the root logger's handlers.

    Args:
        enable_stream_handler: Add a stdout stream handler.
        enable_qt_handler: Route Qt messages through Python logging.
        log_level: Level for the root logger and its handlers.
        tank_size: Records kept by the tank handler.
    """
    root = logging.getLogger()
    root.setLevel(log_level)
    root.handlers.clear()

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)
    handlers: List[logging.Handler] = [TankHandler(max_records=tank_size)]
    if enable_stream_handler:
        handlers.insert(0, logging.StreamHandler(sys.stdout))

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.setLevel(log_level)
        root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    if enable_qt_handler:
        qInstallMessageHandler(qt_message_handler)


def get_tank_handler() -> Optional['TankHandler']:
    """Return the TankHandler attached to the root logger, if any."""
    return next((h for h in logging.getLogger().handlers if isinstance(h, TankHandler)), None)


class TankHandler(logging.Handler):
    """Keeps the most recent formatted records in memory.

    Attributes:
        tank: ``(level, message)`` pairs, oldest first.
    """

    def __init__(self, max_records: int = TANK_SIZE) -> None:
        super().__init__()
        self.tank: Deque[Tuple[int, str]] = collections.deque(maxlen=max_records)

    @property
    def max_records(self) -> int:
        return self.tank.maxlen

    @max_records.setter
    def max_records(self, value: int) -> None:
        self.tank = collections.deque(self.tank, maxlen=value)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.tank.append((record.levelno, self.format(record)))
        except Exception:
            self.handleError(record)

    def get_logs(self, level: int = logging.NOTSET, limit: Optional[int] = None) -> List[str]:
        """Formatted messages at ``level`` or above, oldest first.

        Args:
            level: Minimum level.
            limit: Only return the newest ``limit`` messages.
        """
        messages = [msg for lvl, msg in self.tank if lvl >= level]
        if limit is not None:
            messages = messages[-limit:] if limit > 0 else []
        return messages

    def clear_logs(self) -> None:
        self.tank.clear()
