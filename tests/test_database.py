"""
Tests for Finlytic.core.database
(using unittest, not pytest).

Covers store recovery from corrupt files, the record and meta accessors and the
persisted sync queue.
"""
import datetime
import sqlite3
from unittest.mock import patch

from Finlytic.core import models
from Finlytic.core.database import CacheState, Kind, LocalCacheAPI, RecordStore
from tests.base import BaseTestCase, FIXED_NOW, make_category, make_expense, make_goal


class RecordStoreTests(BaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.store = RecordStore(self.settings.db_dir / 'test.db')

    def test_open_creates_schema(self):
        self.assertEqual(self.store.open(), CacheState.Valid)
        self.assertTrue(self.store.path.exists())
        self.assertEqual(self.store.count(), 0)

    def test_put_get_remove(self):
        self.store.open()
        self.store.put('a', 'u1', {'id': 'a', 'value': 1})
        self.assertEqual(self.store.get('a'), {'id': 'a', 'value': 1})
        self.store.put('a', 'u1', {'id': 'a', 'value': 2})
        self.assertEqual(self.store.count(), 1)
        self.assertEqual(self.store.get('a')['value'], 2)
        self.store.remove('a')
        self.assertIsNone(self.store.get('a'))

    def test_by_owner(self):
        self.store.open()
        self.store.put_many([
            ('a', 'u1', {'id': 'a'}),
            ('b', 'u2', {'id': 'b'}),
            ('c', None, {'id': 'c'}),
        ])
        self.assertEqual(self.store.by_owner('u1'), [{'id': 'a'}])
        self.assertEqual(self.store.by_owner('u1', include_unowned=True), [{'id': 'a'}, {'id': 'c'}])

    def test_garbage_file_is_recreated(self):
        self.store.path.write_bytes(b'this is not a sqlite database' * 100)
        self.assertEqual(self.store.open(), CacheState.Recreated)
        self.assertEqual(self.store.all(), [])
        self.store.put('a', None, {'id': 'a'})
        self.assertEqual(self.store.count(), 1)

    def test_missing_columns_recreate_table(self):
        conn = sqlite3.connect(str(self.store.path))
        conn.execute('CREATE TABLE records (id TEXT PRIMARY KEY)')
        conn.commit()
        conn.close()

        self.assertEqual(self.store.open(), CacheState.Valid)
        self.store.put('a', 'u1', {'id': 'a'})
        self.assertEqual(self.store.by_owner('u1'), [{'id': 'a'}])

    def test_unrecoverable_store_is_disabled(self):
        with patch.object(RecordStore, '_initialize_schema_if_needed', side_effect=sqlite3.DatabaseError('io')):
            self.assertEqual(self.store.open(), CacheState.Disabled)
        self.assertFalse(self.store.is_available)
        # operations degrade to empty results
        self.store.put('a', None, {'id': 'a'})
        self.assertEqual(self.store.all(), [])
        self.assertIsNone(self.store.get('a'))
        self.assertEqual(self.store.count(), 0)

    def test_delete_retries_then_raises(self):
        from Finlytic.status import status

        self.store.open()
        store = RecordStore(self.store.path, delete_attempts=2)
        with patch('pathlib.Path.unlink', side_effect=PermissionError('locked')), \
                patch('time.sleep') as sleep:
            with self.assertRaises(status.CacheInvalidException):
                store.delete()
        sleep.assert_called_once_with(1.0)

    def test_sqlite_errors_become_defaults(self):
        self.store.open()
        with patch.object(RecordStore, 'connection', side_effect=sqlite3.OperationalError('locked')):
            self.assertEqual(self.store.all(), [])
            self.assertEqual(self.store.count(), 0)


class LocalCacheAPITests(BaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.cache = LocalCacheAPI(self.settings.db_dir)
        self.cache.initialize()

    def test_initialize_creates_store_per_kind(self):
        self.assertTrue(self.cache.is_initialized)
        for kind in Kind:
            self.assertTrue((self.settings.db_dir / f'{kind.value}.db').exists())
        self.assertTrue((self.settings.db_dir / 'meta.db').exists())

    def test_unknown_kind(self):
        with self.assertRaises(ValueError):
            self.cache.get_all('invoice')

    def test_save_and_read_records(self):
        e1 = make_expense(id='e1', user_id='u1')
        e2 = make_expense(id='e2', user_id='u2')
        self.cache.save_all(Kind.Expense, [e1, e2])

        self.assertEqual(self.cache.get_all(Kind.Expense), [e1, e2])
        self.assertEqual(self.cache.get_by_owner(Kind.Expense, 'u1'), [e1])
        self.assertEqual(self.cache.get_by_id(Kind.Expense, 'e2'), e2)
        self.assertIsNone(self.cache.get_by_id(Kind.Expense, 'missing'))

        self.cache.delete(Kind.Expense, 'e1')
        self.assertEqual(self.cache.get_all(Kind.Expense), [e2])

    def test_entity_type_keys(self):
        goal = make_goal(id='g1')
        self.cache.save(models.EntityType.Goal, goal)
        self.assertEqual(self.cache.get_by_id(models.EntityType.Goal, 'g1'), goal)

    def test_categories_include_defaults(self):
        own = make_category(id='c1', user_id='u1')
        other = make_category(id='c2', user_id='u2')
        default = make_category(id='c3', user_id=None, is_default=True, name='Other')
        self.cache.save_all(Kind.Category, [own, other, default])

        ids = {c.id for c in self.cache.get_by_owner(Kind.Category, 'u1')}
        self.assertEqual(ids, {'c1', 'c3'})

    def test_malformed_records_are_skipped(self):
        self.cache.save(Kind.Expense, make_expense(id='ok'))
        self.cache.store(Kind.Expense).put('bad', 'u1', {'id': 'bad'})
        self.assertEqual([e.id for e in self.cache.get_all(Kind.Expense)], ['ok'])

    def test_corrupt_expense_store_reopens_empty(self):
        recreated = []
        path = self.settings.db_dir / 'expense.db'
        path.write_bytes(b'\x00garbage' * 512)

        cache = LocalCacheAPI(self.settings.db_dir)
        cache.storeRecreated.connect(recreated.append)
        cache.initialize()

        self.assertEqual(recreated, ['expense'])
        self.assertEqual(cache.get_all(Kind.Expense), [])
        self.assertEqual(cache.store(Kind.Expense).state, CacheState.Recreated)

    def test_meta_and_last_sync(self):
        self.assertIsNone(self.cache.get_last_sync_time())
        self.cache.set_last_sync_time(FIXED_NOW)
        self.assertEqual(self.cache.get_last_sync_time(), FIXED_NOW)

        self.cache.set_meta('theme', {'dark': True})
        self.assertEqual(self.cache.get_meta('theme'), {'dark': True})
        self.assertEqual(self.cache.get_meta('missing', 'x'), 'x')

    def test_invalid_last_sync_value(self):
        self.cache.set_meta('last_sync', 'not a date')
        self.assertIsNone(self.cache.get_last_sync_time())

    def test_current_user(self):
        user = models.User(id='u1', email='a@b.c', name='A', created_at=FIXED_NOW, updated_at=FIXED_NOW)
        self.cache.save_current_user(user)
        self.assertEqual(self.cache.get_current_user(), user)
        self.cache.clear_user()
        self.assertIsNone(self.cache.get_current_user())

    def test_pending_items(self):
        self.assertEqual(self.cache.load_pending_items(), [])
        items = [{'id': 'q1', 'itemId': 'e1'}]
        self.cache.save_pending_items(items)
        self.assertEqual(self.cache.load_pending_items(), items)

    def test_counts_and_clear(self):
        self.assertFalse(self.cache.has_local_data())
        self.cache.save(Kind.Expense, make_expense())
        self.cache.save(Kind.Category, make_category())
        counts = self.cache.get_data_counts()
        self.assertEqual(counts['expense'], 1)
        self.assertEqual(counts['category'], 1)
        self.assertTrue(self.cache.has_local_data())

        self.cache.set_last_sync_time(datetime.datetime(2025, 1, 1))
        self.cache.clear_all()
        self.assertFalse(self.cache.has_local_data())
        self.assertIsNone(self.cache.get_last_sync_time())

    def test_reset(self):
        self.cache.save(Kind.Expense, make_expense())
        self.cache.reset()
        self.assertTrue(self.cache.is_initialized)
        self.assertEqual(self.cache.get_all(Kind.Expense), [])
