"""Queue of local changes waiting to be replayed against the remote store.

Changes that could not be written remotely are mirrored into the local cache and
queued here as :class:`PendingSyncItem` objects. A sync pass replays the queue in
FIFO order through the entity services:

- an item is removed on its first successful apply
- a failed item stays queued with its retry count incremented, and is dropped
  once the count reaches ``max_retries``
- once an item fails, later items for the same record are deferred to the next
  pass so that changes to one record are never applied out of order

Passes are triggered by :meth:`SyncAPI.enqueue` (debounced while online), by a
periodic timer, by the connectivity monitor going online, or explicitly. All
triggers share one single-flight guard: a trigger while a pass runs is ignored.
"""
import dataclasses
import datetime
import enum
import functools
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from PySide6 import QtCore

from . import models
from .connectivity import ConnectivityMonitor
from .database import LocalCacheAPI
from .entities import EntityService
from ..data import data
from ..status import status

MAX_RETRIES: int = 3
DEBOUNCE_MS: int = 2_000
SYNC_INTERVAL_MS: int = 300_000


class SyncState(enum.StrEnum):
    Idle = 'idle'
    Syncing = 'syncing'
    Success = 'success'
    Partial = 'partial'
    Error = 'error'


@dataclasses.dataclass(eq=False)
class PendingSyncItem:
    """One queued change.

    Items compare by identity; the queue may hold several items for one record.

    Attributes:
        id: Queue item id.
        entity_type: The record kind.
        operation: create, update or delete.
        item_id: Id of the changed record.
        data: Document mapping of the record. None for deletes.
        timestamp: When the change was queued.
        retry_count: Failed replay attempts so far.
    """
    entity_type: models.EntityType
    operation: models.SyncOperation
    item_id: str
    data: Optional[Dict[str, Any]] = None
    timestamp: datetime.datetime = dataclasses.field(default_factory=models.now)
    retry_count: int = 0
    id: str = dataclasses.field(default_factory=models.new_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'entityType': self.entity_type.value,
            'operation': self.operation.value,
            'itemId': self.item_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'retryCount': self.retry_count,
        }

    @classmethod
    def from_dict(cls, value: Dict[str, Any]) -> 'PendingSyncItem':
        """
        Raises:
            KeyError: If a required key is missing.
            ValueError: If a value is invalid.
        """
        return cls(
            id=value['id'],
            entity_type=models.EntityType(value['entityType']),
            operation=models.SyncOperation(value['operation']),
            item_id=value['itemId'],
            data=value.get('data'),
            timestamp=models.parse_datetime(value['timestamp']),
            retry_count=int(value.get('retryCount', 0)),
        )


@dataclasses.dataclass(frozen=True)
class SyncError:
    """A failed replay attempt."""
    entity_type: models.EntityType
    item_id: str
    operation: models.SyncOperation
    error: str
    timestamp: datetime.datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'itemType': self.entity_type.value,
            'itemId': self.item_id,
            'operation': self.operation.value,
            'error': self.error,
            'timestamp': self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, value: Dict[str, Any]) -> 'SyncError':
        return cls(
            entity_type=models.EntityType(value['itemType']),
            item_id=value['itemId'],
            operation=models.SyncOperation(value['operation']),
            error=value['error'],
            timestamp=models.parse_datetime(value['timestamp']),
        )


@dataclasses.dataclass(frozen=True)
class SyncStatus:
    state: SyncState = SyncState.Idle
    message: Optional[str] = None
    total_items: int = 0
    synced_items: int = 0
    failed_items: int = 0
    last_sync_time: Optional[datetime.datetime] = None
    errors: Tuple[SyncError, ...] = ()

    @property
    def progress(self) -> float:
        if self.total_items == 0:
            return 0.0
        return self.synced_items / self.total_items

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def is_complete(self) -> bool:
        return self.synced_items + self.failed_items >= self.total_items


def result_message(synced: int, failed: int) -> str:
    if failed == 0:
        return f'All {synced} items synced successfully'
    if synced == 0:
        return f'Failed to sync {failed} items'
    return f'{synced} items synced, {failed} failed'


class SyncAPI(QtCore.QObject):
    """Buffers local changes and replays them against the remote store.

    Signals:
        statusChanged (SyncStatus): Emitted when a pass starts, progresses or ends.
        queueChanged (int): Emitted with the new queue size.

    Args:
        services: Entity services keyed by entity type.
        cache: The local cache.
        monitor: The connectivity monitor.
        errors: Optional ErrorHandlingService.
        max_retries: Failed attempts after which an item is dropped.
        debounce_ms: Delay between an enqueue and the pass it schedules.
        interval_ms: Interval of the periodic pass.
        persist_queue: Store the queue in the local cache so it survives restarts.
        clock: Callable returning the current time.
    """
    statusChanged = QtCore.Signal(object)
    queueChanged = QtCore.Signal(int)

    def __init__(self, services: Dict[str, EntityService], cache: LocalCacheAPI,
                 monitor: ConnectivityMonitor, errors=None,
                 max_retries: int = MAX_RETRIES,
                 debounce_ms: int = DEBOUNCE_MS,
                 interval_ms: int = SYNC_INTERVAL_MS,
                 persist_queue: bool = False,
                 clock: Optional[Callable[[], datetime.datetime]] = None,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent)
        self.services = {models.EntityType(k): v for k, v in services.items()}
        self.cache = cache
        self.monitor = monitor
        self.errors = errors
        self.max_retries = max_retries
        self.persist_queue = persist_queue
        self._clock = clock or models.now

        self._queue: List[PendingSyncItem] = []
        self._is_syncing = False
        self._initialized = False
        self._status = SyncStatus()

        self._debounce_timer = QtCore.QTimer(self)
        self._debounce_timer.setSingleShot(True)
        self._debounce_timer.setInterval(debounce_ms)
        self._debounce_timer.timeout.connect(self._on_debounce_timeout)

        self._periodic_timer = QtCore.QTimer(self)
        self._periodic_timer.setInterval(interval_ms)
        self._periodic_timer.timeout.connect(self._on_periodic_timeout)

        for entity_type, service in self.services.items():
            service.is_pending = functools.partial(self.has_pending, entity_type)

        self.monitor.wentOnline.connect(self._on_went_online)

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def is_syncing(self) -> bool:
        return self._is_syncing

    @property
    def is_sync_scheduled(self) -> bool:
        return self._debounce_timer.isActive()

    def initialize(self) -> None:
        """Restore a persisted queue and start the periodic timer."""
        if self._initialized:
            return
        if self.persist_queue:
            self._load_queue()
        self._periodic_timer.start()
        self._initialized = True
        logging.debug(f'Sync queue initialized with {len(self._queue)} pending item(s).')

    def service(self, entity_type: Union[str, models.EntityType]) -> EntityService:
        try:
            return self.services[models.EntityType(entity_type)]
        except (KeyError, ValueError):
            raise ValueError(f'No service registered for "{entity_type}"')

    def _load_queue(self) -> None:
        items = []
        for value in self.cache.load_pending_items():
            try:
                items.append(PendingSyncItem.from_dict(value))
            except (KeyError, ValueError, TypeError) as ex:
                logging.warning(f'Skipping invalid persisted sync item {value!r}: {ex}')
        self._queue = items
        if items:
            logging.info(f'Restored {len(items)} pending sync item(s).')
            self.queueChanged.emit(len(self._queue))

    def _queue_changed(self) -> None:
        if self.persist_queue:
            self.cache.save_pending_items([i.to_dict() for i in self._queue])
        self.queueChanged.emit(len(self._queue))

    def _publish(self, value: SyncStatus) -> None:
        self._status = value
        self.statusChanged.emit(value)

    def enqueue(self, entity_type: Union[str, models.EntityType], operation: Union[str, models.SyncOperation],
                item_id: str, payload: Optional[Dict[str, Any]] = None) -> PendingSyncItem:
        """Queue a change and, when online, schedule a debounced pass.

        Args:
            entity_type: The record kind.
            operation: create, update or delete.
            item_id: Id of the changed record.
            payload: The record's document mapping. Not needed for deletes.
        """
        item = PendingSyncItem(
            entity_type=models.EntityType(entity_type),
            operation=models.SyncOperation(operation),
            item_id=item_id,
            data=payload,
            timestamp=self._clock(),
        )
        self._queue.append(item)
        logging.debug(f'Added to sync queue: {item.entity_type} {item.operation} {item_id}')
        self._queue_changed()

        if self.monitor.is_online:
            self.schedule_sync()
        return item

    def submit(self, entity_type: Union[str, models.EntityType], operation: Union[str, models.SyncOperation],
               record: Union[models.Record, str]) -> bool:
        """Apply a change remotely, or keep it locally and queue it if that fails.

        Changes to a record that already has queued changes are queued behind them.

        Args:
            entity_type: The record kind.
            operation: create, update or delete.
            record: The record, or the record id for deletes.

        Returns:
            bool: True if the change was applied remotely, False if it was queued.

        Raises:
            status.ValidationException: If the record is invalid.
        """
        entity_type = models.EntityType(entity_type)
        operation = models.SyncOperation(operation)
        service = self.service(entity_type)

        if operation == models.SyncOperation.Delete:
            item_id = record if isinstance(record, str) else record.id
            payload = None
        else:
            record.validate()
            item_id, payload = record.id, record.to_dict()

        if not self.has_pending(entity_type, item_id):
            try:
                service.apply(operation, payload, item_id)
                return True
            except status.RemoteWriteException as ex:
                logging.info(f'Queueing {entity_type} {operation} {item_id} for later: {ex}')

        service.apply_locally(operation, payload, item_id)
        self.enqueue(entity_type, operation, item_id, payload)
        return False

    def schedule_sync(self) -> None:
        """Start, or restart, the debounce timer."""
        if self._is_syncing:
            return
        self._debounce_timer.start()

    @QtCore.Slot()
    def _on_debounce_timeout(self) -> None:
        if self.monitor.is_online:
            self.sync_pending_items()

    @QtCore.Slot()
    def _on_periodic_timeout(self) -> None:
        if self.monitor.is_online and self._queue:
            self.sync_pending_items()

    @QtCore.Slot()
    def _on_went_online(self) -> None:
        if self._queue:
            self.schedule_sync()

    def has_pending(self, entity_type: Union[str, models.EntityType], item_id: str) -> bool:
        entity_type = models.EntityType(entity_type)
        return any(i.entity_type == entity_type and i.item_id == item_id for i in self._queue)

    def get_queued_items(self) -> List[PendingSyncItem]:
        return list(self._queue)

    def sync_pending_items(self) -> Optional[SyncStatus]:
        """Replay the queue once.

        Returns:
            SyncStatus: The final status of the pass, or None if a pass was already
            running or there was nothing to sync.
        """
        if self._is_syncing or not self._queue:
            return None

        self._is_syncing = True
        self._debounce_timer.stop()
        try:
            return self._run_pass()
        finally:
            self._is_syncing = False

    def _run_pass(self) -> SyncStatus:
        snapshot = list(self._queue)
        total = len(snapshot)
        synced = failed = 0
        errors: List[SyncError] = []
        blocked = set()

        logging.info(f'Starting sync: {total} items')
        self._publish(SyncStatus(state=SyncState.Syncing, message=f'Syncing {total} items...', total_items=total))

        for item in snapshot:
            key = (item.entity_type, item.item_id)
            if key in blocked:
                logging.debug(f'Deferring {item.entity_type} {item.operation} {item.item_id}, an earlier change failed')
                continue

            try:
                self.service(item.entity_type).apply(item.operation, item.data, item.item_id)
            except Exception as ex:
                failed += 1
                blocked.add(key)
                errors.append(SyncError(
                    entity_type=item.entity_type,
                    item_id=item.item_id,
                    operation=item.operation,
                    error=str(ex),
                    timestamp=self._clock(),
                ))
                self._record_failure(item, ex)
            else:
                synced += 1
                self._remove(item)

            self._publish(SyncStatus(
                state=SyncState.Syncing,
                message=f'Syncing... {synced}/{total}',
                total_items=total,
                synced_items=synced,
                failed_items=failed,
            ))

        if not errors:
            state = SyncState.Success
        elif synced > 0:
            state = SyncState.Partial
        else:
            state = SyncState.Error

        final = SyncStatus(
            state=state,
            message=result_message(synced, failed),
            total_items=total,
            synced_items=synced,
            failed_items=failed,
            last_sync_time=self._clock(),
            errors=tuple(errors),
        )
        self._publish(final)
        logging.info(f'Sync completed: {synced} synced, {failed} failed')
        return final

    def _remove(self, item: PendingSyncItem) -> None:
        if item in self._queue:
            self._queue.remove(item)
            self._queue_changed()

    def _record_failure(self, item: PendingSyncItem, ex: Exception) -> None:
        item.retry_count += 1
        if item.retry_count < self.max_retries:
            logging.warning(
                f'Failed to sync {item.entity_type} {item.operation} {item.item_id} '
                f'(attempt {item.retry_count}/{self.max_retries}): {ex}'
            )
            self._queue_changed()
            return

        self._remove(item)
        message = f'Max retries reached for {item.entity_type} {item.operation} {item.item_id}, dropping the change'
        if self.errors is not None:
            self.errors.handle_business_error(
                message,
                context='SyncAPI.sync_pending_items',
                metadata={'item': item.to_dict(), 'error': str(ex)},
            )
        else:
            logging.error(message)

    def force_sync_all(self, user_id: str) -> None:
        """Replay the queue, then refresh every entity cache from the remote store.

        Raises:
            status.RemoteStoreException: If refreshing any entity kind fails.
        """
        logging.info(f'Force syncing all data for user {user_id}')
        try:
            self.sync_pending_items()
            for service in self.services.values():
                service.sync_local_data(user_id)
            self.cache.set_last_sync_time(self._clock())
        except Exception as ex:
            if self.errors is not None:
                self.errors.handle_business_error(
                    f'Force sync failed: {ex}',
                    context='SyncAPI.force_sync_all',
                    metadata={'userId': user_id},
                )
            raise
        logging.info('Force sync completed')

    def is_sync_needed(self) -> bool:
        return bool(self._queue)

    def get_pending_items_count(self) -> int:
        return len(self._queue)

    def get_sync_statistics(self) -> Dict[str, Any]:
        stats = data.sync_statistics_frame(
            {'entity_type': i.entity_type.value, 'operation': i.operation.value} for i in self._queue
        )
        last_sync = self.cache.get_last_sync_time()
        return {
            'totalPendingItems': len(self._queue),
            'isSyncing': self._is_syncing,
            **stats,
            'lastSyncTime': last_sync.isoformat() if last_sync else None,
        }

    def clear_queue(self) -> None:
        if self._queue:
            logging.debug(f'Clearing {len(self._queue)} item(s) from the sync queue.')
            self._queue.clear()
            self._queue_changed()
        else:
            logging.debug('Clear queue called, but queue was already empty.')

    def reset_status(self) -> None:
        self._publish(SyncStatus())

    def dispose(self) -> None:
        self._debounce_timer.stop()
        self._periodic_timer.stop()
        try:
            self.monitor.wentOnline.disconnect(self._on_went_online)
        except (RuntimeError, TypeError) as ex:
            logging.debug(f'Failed disconnecting connectivity signal: {ex}')
        if self.persist_queue:
            self.cache.save_pending_items([i.to_dict() for i in self._queue])
        self._initialized = False
