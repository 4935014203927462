"""Composition root.

:class:`ServiceContainer` builds every service once and hands each its
collaborators explicitly. Tests substitute the remote store and the connectivity
probe through the constructor.
"""
import datetime
import logging
import pathlib
from typing import Any, Callable, Iterable, Optional, Union

from PySide6 import QtCore

from . import models
from .auth import AuthManager
from .connectivity import ConnectivityMonitor
from .database import LocalCacheAPI
from .entities import BudgetService, CategoryService, ExpenseService, GoalService
from .service import FirestoreStore, RemoteStore
from .sync import SyncAPI
from ..settings.lib import SettingsAPI
from ..status.errors import ErrorHandlingService


class ServiceContainer(QtCore.QObject):
    """Owns the application's services.

    Args:
        root: Application data directory. Defaults to the platform location.
        settings: A SettingsAPI to use instead of creating one for ``root``.
        remote: A RemoteStore to use instead of the Firestore adapter.
        probe: Connectivity probe passed to the monitor.
        clock: Callable returning the current time, shared by every service.
    """

    def __init__(self, root: Optional[Union[str, pathlib.Path]] = None,
                 settings: Optional[SettingsAPI] = None,
                 remote: Optional[RemoteStore] = None,
                 probe: Optional[Callable[[], Iterable[Any]]] = None,
                 clock: Optional[Callable[[], datetime.datetime]] = None,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent)
        self.settings = settings or SettingsAPI(root=root)
        self._clock = clock or models.now

        config = self.settings.get_section('errors')
        self.errors = ErrorHandlingService(
            burst_window=datetime.timedelta(seconds=config['burst_window_seconds']),
            burst_threshold=config['burst_threshold'],
            max_history=config['max_history'],
            clock=self._clock,
            parent=self,
        )

        self.cache = LocalCacheAPI(
            self.settings.db_dir,
            delete_attempts=self.settings['cache.delete_attempts'],
            parent=self,
        )
        self.cache.storeRecreated.connect(self._on_store_recreated)
        self.cache.storeDisabled.connect(self._on_store_disabled)

        self.auth_manager = AuthManager(self.settings)
        self.remote = remote or FirestoreStore(self.settings, self.auth_manager)

        config = self.settings.get_section('connectivity')
        self.monitor = ConnectivityMonitor(
            poll_interval_ms=config['poll_interval_ms'],
            offline_threshold=datetime.timedelta(hours=config['offline_threshold_hours']),
            probe=probe,
            use_platform_events=config['use_platform_events'] and probe is None,
            clock=self._clock,
            parent=self,
        )

        kwargs = {'errors': self.errors, 'clock': self._clock}
        self.expenses = ExpenseService(self.remote, self.cache, **kwargs)
        self.budgets = BudgetService(self.remote, self.cache, self.expenses, **kwargs)
        self.categories = CategoryService(self.remote, self.cache, **kwargs)
        self.goals = GoalService(self.remote, self.cache, **kwargs)

        config = self.settings.get_section('sync')
        self.sync = SyncAPI(
            {
                models.EntityType.Expense: self.expenses,
                models.EntityType.Budget: self.budgets,
                models.EntityType.Category: self.categories,
                models.EntityType.Goal: self.goals,
            },
            self.cache,
            self.monitor,
            errors=self.errors,
            max_retries=config['max_retries'],
            debounce_ms=config['debounce_ms'],
            interval_ms=config['interval_ms'],
            persist_queue=config['persist_queue'],
            clock=self._clock,
            parent=self,
        )

    @QtCore.Slot(str)
    def _on_store_recreated(self, name: str) -> None:
        self.errors.handle_cache_error(f'Local {name} store was corrupt and has been recreated empty.', store=name)

    @QtCore.Slot(str)
    def _on_store_disabled(self, name: str) -> None:
        self.errors.handle_cache_error(f'Local {name} store is unavailable.', store=name)

    def initialize(self) -> None:
        """Open the local cache, start connectivity monitoring and the sync timers."""
        logging.debug('Initializing services.')
        self.cache.initialize()
        self.monitor.initialize()
        self.sync.initialize()

    def dispose(self) -> None:
        self.sync.dispose()
        self.monitor.dispose()
        if isinstance(self.remote, FirestoreStore):
            self.remote.clear_service()
        logging.debug('Services disposed.')
