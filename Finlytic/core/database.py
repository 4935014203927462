"""
Local SQLite cache of entity records.

Each record kind (user, expense, category, budget, goal) lives in its own SQLite file
under the configured db directory, keyed by record id. A separate meta store keeps
scalar values such as the last sync timestamp and the current user.

A store that fails to open or verify is deleted and recreated empty; the data loss is
logged. If even the recreation fails the store is disabled and every operation on it
becomes a no-op, so callers degrade to remote-only behavior. The cache never raises
to its callers: SQLite errors are logged and surfaced as empty results.
"""

import datetime
import enum
import functools
import json
import logging
import pathlib
import sqlite3
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from PySide6 import QtCore

from . import models
from ..status import status

RECORDS_SCHEMA: Dict[str, str] = {
    'id': 'TEXT PRIMARY KEY',
    'owner_id': 'TEXT',
    'data': 'TEXT NOT NULL',
}


class Kind(enum.StrEnum):
    """Record kinds held by the local cache."""
    User = 'user'
    Expense = 'expense'
    Category = 'category'
    Budget = 'budget'
    Goal = 'goal'


class MetaKey(enum.StrEnum):
    LastSync = 'last_sync'
    CurrentUser = 'current_user'
    PendingSync = 'pending_sync'


class Table(enum.StrEnum):
    """Enum for database tables."""
    Records = 'records'


class CacheState(enum.StrEnum):
    """Enum for store state values."""
    Uninitialized = 'store is uninitialized'
    Valid = 'store is valid'
    Recreated = 'store was recreated'
    Disabled = 'store is disabled'


def guarded(default: Callable[[], Any]) -> Callable:
    """Decorator turning unavailable stores and SQLite errors into a default result.

    Args:
        default: Factory for the value returned instead of raising.
    """

    def decorator(func):
        @functools.wraps(func)
        def wrapper(self, *args, **kwargs):
            if not self.is_available:
                logging.debug(f'Store "{self.name}" is {self.state.value}; skipping {func.__name__}.')
                return default()
            try:
                return func(self, *args, **kwargs)
            except (sqlite3.Error, ValueError) as ex:
                logging.error(f'Store "{self.name}" {func.__name__} failed: {ex}', exc_info=True)
                return default()

        return wrapper

    return decorator


class RecordStore:
    """A single SQLite file holding JSON documents keyed by id.

    Args:
        path: Location of the SQLite file.
        delete_attempts: Attempts made to remove a corrupt file before giving up.
    """

    def __init__(self, path: Union[str, pathlib.Path], delete_attempts: int = 5) -> None:
        self.path = pathlib.Path(path)
        self.name = self.path.stem
        self.delete_attempts = delete_attempts
        self.state = CacheState.Uninitialized

    @property
    def is_available(self) -> bool:
        return self.state in (CacheState.Valid, CacheState.Recreated)

    def connection(self) -> sqlite3.Connection:
        """Return a new connection to the store file."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.path), timeout=2.0)
        conn.set_progress_handler(lambda: logging.debug('Waiting on DB lock…'), 1000)
        return conn

    @staticmethod
    def _table_exists_in_conn(conn: sqlite3.Connection, table_name: str) -> bool:
        """Check if a table exists using an existing connection."""
        cursor = conn.execute(
            """SELECT name FROM sqlite_master WHERE type='table' AND name=?""",
            (table_name,)
        )
        return cursor.fetchone() is not None

    def open(self) -> CacheState:
        """Open the store, recreating it empty when it is corrupt.

        Returns:
            CacheState: Valid, Recreated or Disabled.
        """
        try:
            self._initialize_schema_if_needed()
            self.state = CacheState.Valid
        except sqlite3.Error as e:
            logging.error(f'Store "{self.name}" failed to open: {e}. Attempting recovery.', exc_info=True)
            try:
                self.delete()
                self._initialize_schema_if_needed()
                self.state = CacheState.Recreated
                logging.warning(f'Store "{self.name}" recreated empty; its cached records were lost.')
            except (sqlite3.Error, status.CacheInvalidException) as final_e:
                logging.critical(f'Failed to recover store "{self.name}": {final_e}', exc_info=True)
                self.state = CacheState.Disabled
        return self.state

    def _initialize_schema_if_needed(self) -> None:
        """
        Ensures the store file passes an integrity check and the records table has the
        expected columns, recreating the table otherwise.
        """
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            result = conn.execute('PRAGMA quick_check').fetchone()
            if not result or result[0] != 'ok':
                raise sqlite3.DatabaseError(f'Integrity check failed: {result}')

            table_is_valid = False
            if self._table_exists_in_conn(conn, Table.Records.value):
                cursor = conn.execute(f'PRAGMA table_info({Table.Records.value})')
                current_columns = {row[1] for row in cursor.fetchall()}
                if set(RECORDS_SCHEMA.keys()).issubset(current_columns):
                    table_is_valid = True
                else:
                    missing_cols = set(RECORDS_SCHEMA.keys()) - current_columns
                    logging.warning(
                        f'Store "{self.name}" table schema is invalid. Missing columns: {missing_cols}. '
                        f'Table will be recreated.'
                    )

            if not table_is_valid:
                conn.execute(f'DROP TABLE IF EXISTS {Table.Records.value}')
                cols_sql = ', '.join(f'"{name}" {typedef}' for name, typedef in RECORDS_SCHEMA.items())
                conn.execute(f'CREATE TABLE {Table.Records.value} ({cols_sql})')
                conn.execute(f'CREATE INDEX IF NOT EXISTS idx_owner ON {Table.Records.value} (owner_id)')
                conn.commit()
                logging.debug(f'Store "{self.name}" schema created.')
        finally:
            if conn:
                conn.close()

    def delete(self) -> None:
        """Delete the store file, retrying on failure.

        Raises:
            status.CacheInvalidException: If unable to remove the file after retries.
        """
        if not self.path.exists():
            logging.debug(f'No store file found to delete at {self.path}.')
            return

        attempt = 0
        wait_seconds = 1.0

        while attempt < self.delete_attempts:
            attempt += 1
            try:
                self.path.unlink()
                logging.info(f'Store file removed: {self.path}')
                return
            except OSError as ex:
                logging.error(f'Error removing store file (attempt {attempt}/{self.delete_attempts}): {ex}')
                if attempt < self.delete_attempts:
                    logging.debug(f'Retrying in {wait_seconds} seconds...')
                    time.sleep(wait_seconds)
                    wait_seconds *= 1.5
                else:
                    raise status.CacheInvalidException(
                        f'Failed to remove store file {self.path} after {self.delete_attempts} attempts: {ex}'
                    ) from ex

    @guarded(lambda: None)
    def put(self, record_id: str, owner_id: Optional[str], data: Dict[str, Any]) -> None:
        self.put_many([(record_id, owner_id, data)])

    @guarded(lambda: None)
    def put_many(self, rows: Iterable[tuple]) -> None:
        conn = self.connection()
        try:
            with conn:
                conn.executemany(
                    f'INSERT OR REPLACE INTO {Table.Records.value} (id, owner_id, data) VALUES (?, ?, ?)',
                    [(rid, owner, json.dumps(data)) for rid, owner, data in rows]
                )
        finally:
            conn.close()

    def _select(self, where: str = '', params: tuple = ()) -> List[Dict[str, Any]]:
        conn = self.connection()
        try:
            cursor = conn.execute(f'SELECT data FROM {Table.Records.value} {where} ORDER BY rowid', params)
            return [json.loads(row[0]) for row in cursor.fetchall()]
        finally:
            conn.close()

    @guarded(list)
    def all(self) -> List[Dict[str, Any]]:
        return self._select()

    @guarded(list)
    def by_owner(self, owner_id: str, include_unowned: bool = False) -> List[Dict[str, Any]]:
        if include_unowned:
            return self._select('WHERE owner_id = ? OR owner_id IS NULL', (owner_id,))
        return self._select('WHERE owner_id = ?', (owner_id,))

    @guarded(lambda: None)
    def get(self, record_id: str) -> Optional[Dict[str, Any]]:
        rows = self._select('WHERE id = ?', (record_id,))
        return rows[0] if rows else None

    @guarded(lambda: None)
    def remove(self, record_id: str) -> None:
        conn = self.connection()
        try:
            with conn:
                conn.execute(f'DELETE FROM {Table.Records.value} WHERE id = ?', (record_id,))
        finally:
            conn.close()

    @guarded(lambda: None)
    def clear(self) -> None:
        conn = self.connection()
        try:
            with conn:
                conn.execute(f'DELETE FROM {Table.Records.value}')
        finally:
            conn.close()

    @guarded(lambda: 0)
    def count(self) -> int:
        conn = self.connection()
        try:
            return conn.execute(f'SELECT COUNT(*) FROM {Table.Records.value}').fetchone()[0]
        finally:
            conn.close()


class LocalCacheAPI(QtCore.QObject):
    """Typed access to the per-kind record stores and the meta store.

    Signals:
        storeRecreated (str): Emitted with the kind name when a corrupt store was recreated empty.
        storeDisabled (str): Emitted with the kind name when a store could not be recovered.
    """
    storeRecreated = QtCore.Signal(str)
    storeDisabled = QtCore.Signal(str)

    def __init__(self, db_dir: Union[str, pathlib.Path], delete_attempts: int = 5,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self.db_dir = pathlib.Path(db_dir)
        self.stores: Dict[str, RecordStore] = {
            kind: RecordStore(self.db_dir / f'{kind.value}.db', delete_attempts=delete_attempts)
            for kind in Kind
        }
        self.meta = RecordStore(self.db_dir / 'meta.db', delete_attempts=delete_attempts)
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        """Open every store. Safe to call more than once."""
        if self._initialized:
            return
        logging.debug(f'Opening local cache in {self.db_dir}')
        for name, store in [*self.stores.items(), ('meta', self.meta)]:
            state = store.open()
            if state == CacheState.Recreated:
                self.storeRecreated.emit(str(name))
            elif state == CacheState.Disabled:
                self.storeDisabled.emit(str(name))
        self._initialized = True

    def store(self, kind: str) -> RecordStore:
        try:
            return self.stores[kind]
        except KeyError:
            raise ValueError(f'Unknown record kind: {kind}, must be one of {[k.value for k in Kind]}')

    def _decode(self, kind: str, rows: List[Dict[str, Any]]) -> List[models.Record]:
        model = models.MODELS[kind]
        records = []
        for row in rows:
            try:
                records.append(model.from_dict(row))
            except status.ValidationException as ex:
                logging.warning(f'Skipping malformed cached {kind} record {row.get("id")}: {ex}')
        return records

    def save(self, kind: str, record: models.Record) -> None:
        self.store(kind).put(record.id, record.owner_id, record.to_dict())

    def save_all(self, kind: str, records: Iterable[models.Record]) -> None:
        self.store(kind).put_many([(r.id, r.owner_id, r.to_dict()) for r in records])

    def get_all(self, kind: str) -> List[models.Record]:
        return self._decode(kind, self.store(kind).all())

    def get_by_owner(self, kind: str, user_id: str) -> List[models.Record]:
        """Return the user's records. Categories also include the shared default categories."""
        if kind == Kind.Category:
            rows = self.store(kind).by_owner(user_id, include_unowned=True)
            rows = [r for r in rows if r.get('userId') == user_id or r.get('isDefault')]
        else:
            rows = self.store(kind).by_owner(user_id)
        return self._decode(kind, rows)

    def get_by_id(self, kind: str, record_id: str) -> Optional[models.Record]:
        row = self.store(kind).get(record_id)
        if row is None:
            return None
        decoded = self._decode(kind, [row])
        return decoded[0] if decoded else None

    def delete(self, kind: str, record_id: str) -> None:
        self.store(kind).remove(record_id)

    def clear(self, kind: str) -> None:
        self.store(kind).clear()

    def clear_all(self) -> None:
        for store in self.stores.values():
            store.clear()
        self.meta.clear()

    def reset(self) -> None:
        """Delete every store file and reopen the stores empty."""
        logging.debug('Resetting local cache.')
        for store in [*self.stores.values(), self.meta]:
            try:
                store.delete()
            except status.CacheInvalidException as e:
                logging.error(f'Failed to reset store "{store.name}": {e}')
            store.state = CacheState.Uninitialized
        self._initialized = False
        self.initialize()

    def set_meta(self, key: str, value: Any) -> None:
        self.meta.put(str(key), None, {'value': value})

    def get_meta(self, key: str, default: Any = None) -> Any:
        row = self.meta.get(str(key))
        if row is None:
            return default
        return row.get('value', default)

    def set_last_sync_time(self, value: Optional[datetime.datetime] = None) -> None:
        value = value or datetime.datetime.now()
        self.set_meta(MetaKey.LastSync, value.isoformat())

    def get_last_sync_time(self) -> Optional[datetime.datetime]:
        value = self.get_meta(MetaKey.LastSync)
        if not value:
            return None
        try:
            return models.parse_datetime(value)
        except ValueError:
            logging.warning(f'Invalid last sync timestamp in cache: {value}')
            return None

    def save_current_user(self, user: models.User) -> None:
        self.save(Kind.User, user)
        self.set_meta(MetaKey.CurrentUser, user.id)

    def get_current_user(self) -> Optional[models.User]:
        user_id = self.get_meta(MetaKey.CurrentUser)
        if not user_id:
            return None
        return self.get_by_id(Kind.User, user_id)

    def clear_user(self) -> None:
        self.clear(Kind.User)
        self.meta.remove(str(MetaKey.CurrentUser))

    def save_pending_items(self, items: List[Dict[str, Any]]) -> None:
        self.set_meta(MetaKey.PendingSync, items)

    def load_pending_items(self) -> List[Dict[str, Any]]:
        return list(self.get_meta(MetaKey.PendingSync, []) or [])

    def has_local_data(self) -> bool:
        return any(self.store(kind).count() > 0 for kind in (Kind.Expense, Kind.Category, Kind.Budget, Kind.Goal))

    def get_data_counts(self) -> Dict[str, int]:
        return {kind.value: store.count() for kind, store in self.stores.items()}
