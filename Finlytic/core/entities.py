"""Remote-first entity services with local cache fallback.

Each service owns one remote collection and the matching local cache store.

Mutations validate the record, write it to the remote store and then mirror it
into the cache. A failing remote write raises
:class:`~Finlytic.status.status.RemoteWriteException`; queuing the change for
later is the caller's decision (see :meth:`Finlytic.core.sync.SyncAPI.submit`).

Reads try the remote store first. On any failure they answer from the cache with
the same predicate applied, and say so through :class:`ReadResult`. A successful
remote read refreshes the cache, except for records that still have changes
waiting in the sync queue.
"""
import dataclasses
import datetime
import enum
import logging
import uuid
from typing import Any, Callable, Dict, Generic, Iterable, List, Optional, Sequence, TypeVar

from . import models
from .database import LocalCacheAPI
from .service import Filter, RemoteStore
from ..data import data
from ..status import status

T = TypeVar('T')

DEFAULT_CATEGORIES_NAMESPACE = uuid.UUID('5b0f2a52-8a3e-4f47-9d8e-6f3c1d6a2b10')

DEFAULT_CATEGORIES: List[Dict[str, Any]] = [
    {'name': 'Food & Dining', 'icon': '🍕', 'color': 0xFFE57373},
    {'name': 'Transportation', 'icon': '🚗', 'color': 0xFF81C784},
    {'name': 'Entertainment', 'icon': '🎬', 'color': 0xFF64B5F6},
    {'name': 'Shopping', 'icon': '🛍️', 'color': 0xFFBA68C8},
    {'name': 'Healthcare', 'icon': '🏥', 'color': 0xFFFF8A65},
    {'name': 'Education', 'icon': '📚', 'color': 0xFFFFB74D},
    {'name': 'Bills & Utilities', 'icon': '💡', 'color': 0xFFA1887F},
    {'name': 'Income', 'icon': '💰', 'color': 0xFF4CAF50, 'type': 'income'},
    {'name': 'Other', 'icon': '📦', 'color': 0xFF90A4AE},
]


class ReadOutcome(enum.StrEnum):
    Remote = 'remote'
    CachedFallback = 'cached_fallback'


@dataclasses.dataclass(frozen=True)
class ReadResult(Generic[T]):
    """The value of a read and where it came from.

    Attributes:
        value: The records or the value derived from them.
        outcome: ``remote`` if the remote store answered, ``cached_fallback`` if the
            local cache answered because the remote read failed.
        error: The remote failure message for fallback results.
    """
    value: T
    outcome: ReadOutcome = ReadOutcome.Remote
    error: Optional[str] = None

    @property
    def from_cache(self) -> bool:
        return self.outcome == ReadOutcome.CachedFallback

    def map(self, func: Callable[[T], Any]) -> 'ReadResult':
        """Derive a new value, keeping the outcome."""
        return ReadResult(func(self.value), self.outcome, self.error)

    @classmethod
    def combine(cls, value: Any, results: Iterable['ReadResult']) -> 'ReadResult':
        """Wrap a value derived from several reads. Any fallback makes the whole a fallback."""
        for result in results:
            if result.from_cache:
                return cls(value, ReadOutcome.CachedFallback, result.error)
        return cls(value, ReadOutcome.Remote)


def _day_start(value: datetime.datetime) -> datetime.datetime:
    return datetime.datetime.combine(value.date(), datetime.time.min)


def _day_end(value: datetime.datetime) -> datetime.datetime:
    return datetime.datetime.combine(value.date(), datetime.time.max)


class EntityService:
    """Base service for one entity kind.

    Args:
        remote: The remote document store.
        cache: The local cache.
        errors: Optional ErrorHandlingService that is told about remote failures.
        clock: Callable returning the current time.

    Attributes:
        is_pending: Callable taking a record id, returning True if the record has
            changes waiting in the sync queue. Such records are not overwritten in
            the cache by remote reads. Set by the sync queue.
    """
    entity_type: models.EntityType
    order_by: Optional[str] = 'created_at'
    descending: bool = True

    def __init__(self, remote: RemoteStore, cache: LocalCacheAPI, errors=None,
                 clock: Optional[Callable[[], datetime.datetime]] = None) -> None:
        self.remote = remote
        self.cache = cache
        self.errors = errors
        self._clock = clock or models.now
        self.is_pending: Callable[[str], bool] = lambda record_id: False

    @property
    def model(self):
        return models.MODELS[self.entity_type]

    @property
    def collection(self) -> str:
        return models.COLLECTIONS[self.entity_type]

    def _decode(self, documents: Iterable[Dict[str, Any]]) -> List[models.Record]:
        return [self.model.from_dict(d) for d in documents]

    def _sorted(self, records: Iterable[models.Record]) -> List[models.Record]:
        records = list(records)
        if self.order_by is None:
            return records
        return sorted(
            records,
            key=lambda r: getattr(r, self.order_by) or datetime.datetime.min,
            reverse=self.descending,
        )

    def _query(self, filters: Sequence[Filter]) -> List[models.Record]:
        order_by = models.to_camel(self.order_by) if self.order_by else None
        docs = self.remote.query(self.collection, filters=filters, order_by=order_by, descending=self.descending)
        return self._decode(docs)

    def _refresh_cache(self, records: Iterable[models.Record]) -> None:
        self.cache.save_all(self.entity_type, [r for r in records if not self.is_pending(r.id)])

    def _read(self, operation: str, remote_fn: Callable[[], T], local_fn: Callable[[], T]) -> ReadResult:
        try:
            return ReadResult(remote_fn(), ReadOutcome.Remote)
        except Exception as ex:
            logging.warning(f'{self.entity_type} {operation} failed remotely, using the local cache: {ex}')
            if self.errors is not None:
                self.errors.handle_remote_error(str(ex), operation=operation, collection=self.collection)
            return ReadResult(local_fn(), ReadOutcome.CachedFallback, str(ex))

    def _write_failed(self, operation: str, ex: Exception) -> status.RemoteWriteException:
        if self.errors is not None:
            self.errors.handle_remote_error(str(ex), operation=operation, collection=self.collection)
        return status.RemoteWriteException(f'Failed to {operation} {self.entity_type}: {ex}')

    def add(self, record: models.Record) -> models.Record:
        """Create ``record`` remotely, then cache it.

        Raises:
            status.ValidationException: If the record is invalid.
            status.RemoteWriteException: If the remote write fails.
        """
        record.validate()
        try:
            self.remote.set(self.collection, record.id, record.to_dict())
        except Exception as ex:
            raise self._write_failed('add', ex) from ex
        self.cache.save(self.entity_type, record)
        return record

    def update(self, record: models.Record) -> models.Record:
        """Overwrite an existing remote record, then cache it.

        Raises:
            status.ValidationException: If the record is invalid.
            status.RemoteWriteException: If the remote write fails.
        """
        record.validate()
        try:
            self.remote.update(self.collection, record.id, record.to_dict())
        except Exception as ex:
            raise self._write_failed('update', ex) from ex
        self.cache.save(self.entity_type, record)
        return record

    def delete(self, record_id: str) -> None:
        try:
            self.remote.delete(self.collection, record_id)
        except Exception as ex:
            raise self._write_failed('delete', ex) from ex
        self.cache.delete(self.entity_type, record_id)

    def bulk_delete(self, record_ids: Iterable[str]) -> None:
        record_ids = list(record_ids)
        try:
            self.remote.delete_many(self.collection, record_ids)
        except Exception as ex:
            raise self._write_failed('bulk delete', ex) from ex
        for record_id in record_ids:
            self.cache.delete(self.entity_type, record_id)

    def apply(self, operation: models.SyncOperation, payload: Optional[Dict[str, Any]],
              record_id: str) -> Optional[models.Record]:
        """Replay one queued change against the remote store.

        Args:
            operation: create, update or delete.
            payload: The record's document mapping. Unused for deletes.
            record_id: The record id.
        """
        operation = models.SyncOperation(operation)
        if operation == models.SyncOperation.Delete:
            self.delete(record_id)
            return None
        record = self.model.from_dict(payload or {})
        if operation == models.SyncOperation.Create:
            return self.add(record)
        return self.update(record)

    def apply_locally(self, operation: models.SyncOperation, payload: Optional[Dict[str, Any]],
                      record_id: str) -> None:
        """Mirror a change into the local cache only."""
        if models.SyncOperation(operation) == models.SyncOperation.Delete:
            self.cache.delete(self.entity_type, record_id)
            return
        self.cache.save(self.entity_type, self.model.from_dict(payload or {}))

    def get_for_user(self, user_id: str) -> ReadResult:
        def remote():
            records = self._query([('userId', '==', user_id)])
            self._refresh_cache(records)
            return records

        return self._read(
            'get_for_user', remote,
            lambda: self._sorted(self.cache.get_by_owner(self.entity_type, user_id))
        )

    def get_by_id(self, record_id: str) -> ReadResult:
        def remote():
            doc = self.remote.get(self.collection, record_id)
            if doc is None:
                return None
            record = self.model.from_dict(doc)
            self._refresh_cache([record])
            return record

        return self._read('get_by_id', remote, lambda: self.cache.get_by_id(self.entity_type, record_id))

    def _require(self, record_id: str) -> models.Record:
        record = self.get_by_id(record_id).value
        if record is None:
            raise status.EntityNotFoundException(f'{self.entity_type} {record_id}')
        return record

    def get_offline(self, user_id: str) -> List[models.Record]:
        return self._sorted(self.cache.get_by_owner(self.entity_type, user_id))

    def sync_local_data(self, user_id: str) -> List[models.Record]:
        """Refresh the cache from the remote store.

        Raises:
            status.RemoteStoreException: If the remote read failed.
        """
        result = self.get_for_user(user_id)
        if result.from_cache:
            raise status.RemoteStoreException(f'Failed to sync {self.collection}: {result.error}')
        self.cache.set_last_sync_time(self._clock())
        return result.value


class ExpenseService(EntityService):
    entity_type = models.EntityType.Expense
    order_by = 'transaction_date'

    def get_for_date_range(self, user_id: str, start: datetime.datetime, end: datetime.datetime) -> ReadResult:
        """Expenses whose transaction date falls on a day from ``start`` to ``end``, inclusive."""
        first, last = _day_start(start), _day_end(end)
        return self._read(
            'get_for_date_range',
            lambda: self._query([
                ('userId', '==', user_id),
                ('transactionDate', '>=', first.isoformat()),
                ('transactionDate', '<=', last.isoformat()),
            ]),
            lambda: [e for e in self.get_offline(user_id) if first <= e.transaction_date <= last],
        )

    def get_for_category(self, user_id: str, category_id: str) -> ReadResult:
        return self._read(
            'get_for_category',
            lambda: self._query([('userId', '==', user_id), ('categoryId', '==', category_id)]),
            lambda: [e for e in self.get_offline(user_id) if e.category_id == category_id],
        )

    def get_monthly(self, user_id: str, year: int, month: int) -> ReadResult:
        return self.get_for_date_range(user_id, *data.month_bounds(year, month))

    def get_total_for_period(self, user_id: str, start: datetime.datetime, end: datetime.datetime,
                             category_id: Optional[str] = None,
                             expense_type: Optional[models.ExpenseType] = None) -> ReadResult:
        """Net total of the period. Income adds, expenses subtract."""
        return self.get_for_date_range(user_id, start, end).map(
            lambda expenses: data.total_for_period(
                expenses, start, end, category_id=category_id, expense_type=expense_type
            )
        )

    def get_category_spending(self, user_id: str, start: datetime.datetime, end: datetime.datetime) -> ReadResult:
        return self.get_for_date_range(user_id, start, end).map(data.category_spending)


class BudgetService(EntityService):
    """Budgets and their spending status.

    Args:
        expenses: The ExpenseService used to compute spending.
    """
    entity_type = models.EntityType.Budget

    def __init__(self, remote: RemoteStore, cache: LocalCacheAPI, expenses: ExpenseService, errors=None,
                 clock: Optional[Callable[[], datetime.datetime]] = None) -> None:
        super().__init__(remote, cache, errors=errors, clock=clock)
        self.expenses = expenses

    def get_active(self, user_id: str, at: Optional[datetime.datetime] = None) -> ReadResult:
        at = at or self._clock()
        return self.get_for_user(user_id).map(
            lambda budgets: [b for b in budgets if b.is_active and b.is_current_period(at)]
        )

    def get_for_category(self, user_id: str, category_id: str,
                         at: Optional[datetime.datetime] = None) -> ReadResult:
        """The first active budget of the category whose period covers the day of ``at``."""
        at = at or self._clock()
        day = datetime.timedelta(days=1)

        def pick(budgets):
            for b in budgets:
                if b.category_id == category_id and b.is_active and b.start_date - day < at < b.end_date + day:
                    return b
            return None

        return self.get_for_user(user_id).map(pick)

    def get_spending_status(self, budget: models.Budget, at: Optional[datetime.datetime] = None) -> ReadResult:
        at = at or self._clock()
        return self.expenses.get_for_date_range(budget.user_id, budget.start_date, budget.end_date).map(
            lambda expenses: data.budget_status(budget, expenses, at)
        )

    def get_all_statuses(self, user_id: str, at: Optional[datetime.datetime] = None) -> ReadResult:
        at = at or self._clock()
        active = self.get_active(user_id, at=at)
        results = [self.get_spending_status(b, at=at) for b in active.value]
        return ReadResult.combine([r.value for r in results], [active, *results])

    def exists_for_category_and_period(self, user_id: str, category_id: str,
                                       start: datetime.datetime, end: datetime.datetime,
                                       exclude_id: Optional[str] = None) -> ReadResult:
        """Whether another active budget of the category overlaps the period."""
        return self.get_for_user(user_id).map(
            lambda budgets: any(
                b.id != exclude_id and b.category_id == category_id and b.is_active and b.overlaps(start, end)
                for b in budgets
            )
        )

    def get_recommended_amount(self, user_id: str, category_id: str, period: models.BudgetPeriod,
                               at: Optional[datetime.datetime] = None) -> ReadResult:
        """Suggest a budget amount from the average spending of the previous months."""
        at = at or self._clock()
        month = at.year * 12 + at.month - 1
        first = month - data.LOOKBACK_MONTHS
        start, _ = data.month_bounds(first // 12, first % 12 + 1)
        _, end = data.month_bounds((month - 1) // 12, (month - 1) % 12 + 1)
        return self.expenses.get_for_date_range(user_id, start, end).map(
            lambda expenses: data.recommended_budget_amount(expenses, category_id, period, at)
        )


class CategoryService(EntityService):
    """Shared default categories and user categories."""
    entity_type = models.EntityType.Category
    order_by = None

    @staticmethod
    def _by_name(categories: Iterable[models.Category]) -> List[models.Category]:
        return sorted(categories, key=lambda c: c.name.lower())

    def default_categories(self) -> List[models.Category]:
        """Build the default category records.

        Ids derive from the category names so that every device creates the same records.
        """
        t = self._clock()
        return [
            models.Category(
                id=str(uuid.uuid5(DEFAULT_CATEGORIES_NAMESPACE, item['name'])),
                name=item['name'],
                icon=item['icon'],
                color=item['color'],
                created_at=t,
                is_default=True,
                type=item.get('type', 'expense'),
            )
            for item in DEFAULT_CATEGORIES
        ]

    def initialize_default_categories(self) -> ReadResult:
        """Create the default categories remotely unless they already exist.

        Raises:
            status.RemoteWriteException: If creating the defaults fails.
        """
        existing = self._read(
            'initialize_default_categories',
            lambda: self._query([('isDefault', '==', True)]),
            lambda: [c for c in self.cache.get_all(self.entity_type) if c.is_default],
        )
        if existing.from_cache or existing.value:
            if not existing.from_cache:
                self._refresh_cache(existing.value)
            return existing.map(self._by_name)

        logging.info('Creating default categories.')
        created = [self.add(c) for c in self.default_categories()]
        return ReadResult(self._by_name(created), ReadOutcome.Remote)

    def get_for_user(self, user_id: Optional[str]) -> ReadResult:
        """The default categories plus the user's own, sorted by name."""
        def remote():
            records = self._query([('isDefault', '==', True)])
            if user_id:
                records += [
                    c for c in self._query([('userId', '==', user_id)])
                    if not c.is_default
                ]
            self._refresh_cache(records)
            return self._by_name(records)

        return self._read('get_for_user', remote, lambda: self.get_offline(user_id))

    def get_offline(self, user_id: Optional[str]) -> List[models.Category]:
        if user_id:
            return self._by_name(self.cache.get_by_owner(self.entity_type, user_id))
        return self._by_name(c for c in self.cache.get_all(self.entity_type) if c.is_default)

    def delete(self, record_id: str) -> None:
        """Delete a user category.

        Raises:
            status.DefaultCategoryException: If the category is a default category.
        """
        category = self.get_by_id(record_id).value
        if category is not None and category.is_default:
            raise status.DefaultCategoryException(f'{category.name} ({record_id})')
        super().delete(record_id)

    def bulk_delete(self, record_ids: Iterable[str]) -> None:
        record_ids = list(record_ids)
        for record_id in record_ids:
            category = self.cache.get_by_id(self.entity_type, record_id)
            if category is not None and category.is_default:
                raise status.DefaultCategoryException(f'{category.name} ({record_id})')
        super().bulk_delete(record_ids)

    def name_exists(self, user_id: Optional[str], name: str, exclude_id: Optional[str] = None) -> ReadResult:
        name = name.strip().lower()
        return self.get_for_user(user_id).map(
            lambda categories: any(c.name.lower() == name and c.id != exclude_id for c in categories)
        )

    def search(self, user_id: Optional[str], query: str) -> ReadResult:
        query = query.lower()
        return self.get_for_user(user_id).map(
            lambda categories: [c for c in categories if query in c.name.lower()]
        )


class GoalService(EntityService):
    entity_type = models.EntityType.Goal

    def get_active(self, user_id: str) -> ReadResult:
        return self.get_for_user(user_id).map(
            lambda goals: [g for g in goals if g.is_active and not g.is_completed]
        )

    def get_completed(self, user_id: str) -> ReadResult:
        return self.get_for_user(user_id).map(lambda goals: [g for g in goals if g.is_completed])

    def get_by_category(self, user_id: str, category: models.GoalCategory) -> ReadResult:
        """Goals of a category, highest priority first."""
        category = models.GoalCategory(category)
        return self._read(
            'get_by_category',
            lambda: self._decode(self.remote.query(
                self.collection,
                filters=[('userId', '==', user_id), ('category', '==', category.value)],
                order_by='priority',
                descending=True,
            )),
            lambda: sorted(
                (g for g in self.get_offline(user_id) if g.category == category),
                key=lambda g: g.priority, reverse=True,
            ),
        )

    def get_overdue(self, user_id: str, at: Optional[datetime.datetime] = None) -> ReadResult:
        at = at or self._clock()
        return self.get_active(user_id).map(lambda goals: [g for g in goals if g.is_overdue(at)])

    def get_progress_summary(self, user_id: str, at: Optional[datetime.datetime] = None) -> ReadResult:
        at = at or self._clock()
        return self.get_for_user(user_id).map(lambda goals: data.goals_summary(goals, at))

    def get_recommended_monthly_savings(self, user_id: str, at: Optional[datetime.datetime] = None) -> ReadResult:
        """Sum of the monthly savings every active goal needs to reach its target in time."""
        at = at or self._clock()
        return self.get_active(user_id).map(
            lambda goals: sum(g.required_monthly_savings(at) for g in goals)
        )

    def search(self, user_id: str, query: str) -> ReadResult:
        query = query.lower()
        return self.get_for_user(user_id).map(
            lambda goals: [g for g in goals if query in g.title.lower() or query in (g.description or '').lower()]
        )

    def update_progress(self, goal_id: str, amount: float) -> models.Goal:
        """Set the saved amount. Reaching the target completes the goal.

        Raises:
            status.EntityNotFoundException: If the goal does not exist.
            status.RemoteWriteException: If the remote write fails.
        """
        goal = self._require(goal_id)
        return self.update(goal.copy(
            current_amount=amount,
            is_completed=amount >= goal.target_amount,
            updated_at=self._clock(),
        ))

    def add_progress(self, goal_id: str, amount: float) -> models.Goal:
        goal = self._require(goal_id)
        return self.update_progress(goal_id, goal.current_amount + amount)

    def complete(self, goal_id: str) -> models.Goal:
        goal = self._require(goal_id)
        return self.update(goal.copy(
            is_completed=True,
            current_amount=goal.target_amount,
            updated_at=self._clock(),
        ))

    def add_milestone(self, goal_id: str, milestone: models.GoalMilestone) -> models.Goal:
        goal = self._require(goal_id)
        return self.update(goal.copy(
            milestones=[*goal.milestones, milestone],
            updated_at=self._clock(),
        ))

    def complete_milestone(self, goal_id: str, milestone_id: str) -> models.Goal:
        goal = self._require(goal_id)
        t = self._clock()
        milestones = [
            m.copy(is_completed=True, completed_at=t) if m.id == milestone_id else m
            for m in goal.milestones
        ]
        return self.update(goal.copy(milestones=milestones, updated_at=t))
