"""Entity records stored both in the remote document store and the local cache.

Every record is a dataclass keyed by a UUID string. Records serialize to the
camelCase document layout used by the remote store, with dates as ISO 8601
strings and enums as their values.
"""
import dataclasses
import datetime
import enum
import logging
import math
import uuid
from typing import Any, Dict, List, Optional, Tuple, Type

from ..status import status

MAX_DESCRIPTION_LENGTH = 100
MAX_AMOUNT = 999999.99
MIN_AMOUNT = 0.01
DAYS_PER_MONTH = 30.44


class EntityType(enum.StrEnum):
    """Record kinds that go through the sync queue."""
    Expense = 'expense'
    Budget = 'budget'
    Category = 'category'
    Goal = 'goal'


class SyncOperation(enum.StrEnum):
    Create = 'create'
    Update = 'update'
    Delete = 'delete'


class ExpenseType(enum.StrEnum):
    Income = 'income'
    Expense = 'expense'


class BudgetPeriod(enum.StrEnum):
    Weekly = 'weekly'
    Monthly = 'monthly'
    Quarterly = 'quarterly'
    Yearly = 'yearly'


class GoalCategory(enum.StrEnum):
    Emergency = 'emergency'
    Travel = 'travel'
    House = 'house'
    Car = 'car'
    Education = 'education'
    Investment = 'investment'
    Retirement = 'retirement'
    Wedding = 'wedding'
    Health = 'health'
    Business = 'business'
    Gadgets = 'gadgets'
    Vacation = 'vacation'
    Other = 'other'


class GoalType(enum.StrEnum):
    Savings = 'savings'
    DebtPayoff = 'debtPayoff'
    Investment = 'investment'
    Purchase = 'purchase'
    Emergency = 'emergency'


COLLECTIONS: Dict[str, str] = {
    'user': 'users',
    EntityType.Expense: 'expenses',
    EntityType.Category: 'categories',
    EntityType.Budget: 'budgets',
    EntityType.Goal: 'goals',
}


def new_id() -> str:
    """Return a new random record id."""
    return str(uuid.uuid4())


def now() -> datetime.datetime:
    return datetime.datetime.now()


def to_camel(name: str) -> str:
    """Convert a snake_case attribute name to its camelCase document key."""
    head, *rest = name.split('_')
    return head + ''.join(p.title() for p in rest)


def parse_datetime(value: Any) -> Optional[datetime.datetime]:
    """Parse an ISO 8601 string into a naive local datetime.

    Aware values are converted to local time so that comparisons with
    :func:`now` stay consistent.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime.datetime):
        dt = value
    elif isinstance(value, datetime.date):
        return datetime.datetime(value.year, value.month, value.day)
    else:
        dt = datetime.datetime.fromisoformat(str(value))
    if dt.tzinfo is not None:
        dt = dt.astimezone().replace(tzinfo=None)
    return dt


def _coerce_enum(enum_cls: Type[enum.Enum], value: Any, default: enum.Enum) -> enum.Enum:
    try:
        return enum_cls(value)
    except ValueError:
        logging.warning(f'Unknown {enum_cls.__name__} value "{value}", using "{default}".')
        return default


def _encode(value: Any) -> Any:
    if isinstance(value, datetime.datetime):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, Record):
        return value.to_dict()
    if isinstance(value, list):
        return [_encode(v) for v in value]
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    return value


class Record:
    """Mixin providing document serialization and validation for the entity dataclasses.

    Subclasses declare which attributes need converting when read back from a document:

    Attributes:
        datetime_fields: Attributes stored as ISO 8601 strings.
        float_fields: Numeric attributes that must come back as float.
        enum_fields: Attribute name to (enum class, fallback member).
        nested_fields: Attribute name to the Record class of its list items.
    """
    datetime_fields: Tuple[str, ...] = ()
    float_fields: Tuple[str, ...] = ()
    enum_fields: Dict[str, Tuple[Type[enum.Enum], enum.Enum]] = {}
    nested_fields: Dict[str, Type['Record']] = {}

    @property
    def owner_id(self) -> Optional[str]:
        return getattr(self, 'user_id', None)

    def to_dict(self) -> Dict[str, Any]:
        return {to_camel(f.name): _encode(getattr(self, f.name)) for f in dataclasses.fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        """Build a record from its document mapping.

        Unknown keys are ignored, missing optional keys take their defaults.

        Raises:
            status.ValidationException: If a required key is missing or a value cannot be converted.
        """
        kwargs: Dict[str, Any] = {}
        for f in dataclasses.fields(cls):
            key = to_camel(f.name)
            if key not in data:
                continue
            value = data[key]
            try:
                if value is None:
                    pass
                elif f.name in cls.datetime_fields:
                    value = parse_datetime(value)
                elif f.name in cls.float_fields:
                    value = float(value)
                elif f.name in cls.enum_fields:
                    enum_cls, default = cls.enum_fields[f.name]
                    value = _coerce_enum(enum_cls, value, default)
                elif f.name in cls.nested_fields:
                    value = [cls.nested_fields[f.name].from_dict(v) for v in value]
            except (TypeError, ValueError) as ex:
                raise status.ValidationException(
                    f'{cls.__name__}.{key} has an invalid value: {value!r}', field=key
                ) from ex
            kwargs[f.name] = value

        try:
            return cls(**kwargs)
        except TypeError as ex:
            raise status.ValidationException(f'{cls.__name__}: {ex}') from ex

    def copy(self, **changes):
        return dataclasses.replace(self, **changes)

    def validate(self) -> None:
        """Check field constraints.

        Raises:
            status.ValidationException: Naming the first offending field.
        """
        return None


def _require(condition: bool, field: str, message: str) -> None:
    if not condition:
        raise status.ValidationException(message, field=field)


def _check_amount(value: float, field: str, minimum: float = MIN_AMOUNT, maximum: float = MAX_AMOUNT) -> None:
    _require(
        isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value),
        field, f'{field} must be a number.'
    )
    _require(value >= minimum, field, f'{field} must be at least {minimum}.')
    _require(value <= maximum, field, f'{field} cannot exceed {maximum}.')


@dataclasses.dataclass
class Expense(Record):
    id: str
    user_id: str
    category_id: str
    amount: float
    description: str
    payment_method: str
    transaction_date: datetime.datetime
    created_at: datetime.datetime
    receipt_url: Optional[str] = None
    type: ExpenseType = ExpenseType.Expense
    notes: Optional[str] = None

    datetime_fields = ('transaction_date', 'created_at')
    float_fields = ('amount',)
    enum_fields = {'type': (ExpenseType, ExpenseType.Expense)}

    def validate(self) -> None:
        _require(bool(self.id), 'id', 'id is required.')
        _require(bool(self.user_id), 'userId', 'userId is required.')
        _require(bool(self.category_id), 'categoryId', 'Please select a category.')
        _check_amount(self.amount, 'amount')
        _require(
            len(self.description or '') <= MAX_DESCRIPTION_LENGTH, 'description',
            f'Description cannot exceed {MAX_DESCRIPTION_LENGTH} characters.'
        )

    @property
    def signed_amount(self) -> float:
        """Income counts positive, expenses negative."""
        return self.amount if self.type == ExpenseType.Income else -self.amount


@dataclasses.dataclass
class Budget(Record):
    id: str
    user_id: str
    category_id: str
    amount: float
    period: BudgetPeriod
    start_date: datetime.datetime
    end_date: datetime.datetime
    created_at: datetime.datetime
    is_active: bool = True
    alert_threshold: float = 0.8
    enable_notifications: bool = True

    datetime_fields = ('start_date', 'end_date', 'created_at')
    float_fields = ('amount', 'alert_threshold')
    enum_fields = {'period': (BudgetPeriod, BudgetPeriod.Monthly)}

    def validate(self) -> None:
        _require(bool(self.id), 'id', 'id is required.')
        _require(bool(self.user_id), 'userId', 'userId is required.')
        _require(bool(self.category_id), 'categoryId', 'Please select a category.')
        _check_amount(self.amount, 'amount', maximum=math.inf)
        _require(self.end_date > self.start_date, 'endDate', 'End date must be after the start date.')
        _require(0.0 < self.alert_threshold <= 1.0, 'alertThreshold', 'Alert threshold must be between 0 and 1.')

    @property
    def total_days(self) -> float:
        return float((self.end_date - self.start_date).days)

    def is_current_period(self, at: Optional[datetime.datetime] = None) -> bool:
        at = at or now()
        return self.start_date < at < self.end_date

    def days_remaining(self, at: Optional[datetime.datetime] = None) -> float:
        at = at or now()
        if at > self.end_date:
            return 0.0
        return float((self.end_date - at).days)

    def overlaps(self, start: datetime.datetime, end: datetime.datetime) -> bool:
        return self.start_date < end and self.end_date > start


@dataclasses.dataclass
class Category(Record):
    id: str
    name: str
    icon: str
    color: int
    created_at: datetime.datetime
    is_default: bool = False
    user_id: Optional[str] = None
    type: str = 'expense'
    is_active: bool = True

    datetime_fields = ('created_at',)

    def validate(self) -> None:
        _require(bool(self.id), 'id', 'id is required.')
        _require(bool((self.name or '').strip()), 'name', 'Category name is required.')
        _require(
            self.is_default or bool(self.user_id), 'userId',
            'Custom categories must belong to a user.'
        )
        _require(self.type in ('expense', 'income'), 'type', 'Category type must be "expense" or "income".')


@dataclasses.dataclass
class GoalMilestone(Record):
    id: str
    title: str
    description: str
    target_amount: float
    target_date: datetime.datetime
    created_at: datetime.datetime
    is_completed: bool = False
    completed_at: Optional[datetime.datetime] = None

    datetime_fields = ('target_date', 'created_at', 'completed_at')
    float_fields = ('target_amount',)


@dataclasses.dataclass
class Goal(Record):
    id: str
    user_id: str
    title: str
    description: str
    target_amount: float
    start_date: datetime.datetime
    target_date: datetime.datetime
    created_at: datetime.datetime
    updated_at: datetime.datetime
    current_amount: float = 0.0
    category: GoalCategory = GoalCategory.Other
    type: GoalType = GoalType.Savings
    is_completed: bool = False
    is_active: bool = True
    image_url: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    milestones: List[GoalMilestone] = dataclasses.field(default_factory=list)
    monthly_contribution: Optional[float] = None
    currency: str = 'NPR'
    priority: int = 3

    datetime_fields = ('start_date', 'target_date', 'created_at', 'updated_at')
    float_fields = ('target_amount', 'current_amount', 'monthly_contribution')
    enum_fields = {
        'category': (GoalCategory, GoalCategory.Other),
        'type': (GoalType, GoalType.Savings),
    }
    nested_fields = {'milestones': GoalMilestone}

    def validate(self) -> None:
        _require(bool(self.id), 'id', 'id is required.')
        _require(bool(self.user_id), 'userId', 'userId is required.')
        _require(bool((self.title or '').strip()), 'title', 'Goal title is required.')
        _check_amount(self.target_amount, 'targetAmount', maximum=math.inf)
        _check_amount(self.current_amount, 'currentAmount', minimum=0.0, maximum=math.inf)
        _require(self.target_date > self.start_date, 'targetDate', 'Target date must be after the start date.')
        _require(1 <= self.priority <= 5, 'priority', 'Priority must be between 1 and 5.')

    @property
    def progress_percentage(self) -> float:
        if self.target_amount <= 0:
            return 0.0
        return max(0.0, min(self.current_amount / self.target_amount * 100.0, 100.0))

    @property
    def remaining_amount(self) -> float:
        return max(0.0, min(self.target_amount - self.current_amount, self.target_amount))

    @property
    def total_days(self) -> int:
        return (self.target_date - self.start_date).days

    def days_remaining(self, at: Optional[datetime.datetime] = None) -> int:
        at = at or now()
        if at > self.target_date:
            return 0
        return (self.target_date - at).days

    def is_overdue(self, at: Optional[datetime.datetime] = None) -> bool:
        at = at or now()
        return at > self.target_date and not self.is_completed

    def is_on_track(self, at: Optional[datetime.datetime] = None) -> bool:
        """True when progress is at least 90% of the linearly expected progress."""
        at = at or now()
        if self.total_days <= 0:
            return self.progress_percentage >= 100.0
        expected = (at - self.start_date).days / self.total_days * 100.0
        return self.progress_percentage >= expected * 0.9

    def required_monthly_savings(self, at: Optional[datetime.datetime] = None) -> float:
        at = at or now()
        remaining_months = math.ceil((self.target_date - at).days / DAYS_PER_MONTH)
        if remaining_months <= 0:
            return self.remaining_amount
        return self.remaining_amount / remaining_months


@dataclasses.dataclass
class User(Record):
    id: str
    email: str
    name: str
    created_at: datetime.datetime
    updated_at: datetime.datetime
    currency: str = 'NPR'
    profile_image_url: Optional[str] = None
    monthly_budget_target: float = 0.0
    phone_number: Optional[str] = None
    auth_provider: str = 'email'

    datetime_fields = ('created_at', 'updated_at')
    float_fields = ('monthly_budget_target',)

    @property
    def owner_id(self) -> Optional[str]:
        return self.id

    def validate(self) -> None:
        _require(bool(self.id), 'id', 'id is required.')
        _require('@' in (self.email or ''), 'email', 'Please enter a valid email address.')


MODELS: Dict[str, Type[Record]] = {
    'user': User,
    EntityType.Expense: Expense,
    EntityType.Budget: Budget,
    EntityType.Category: Category,
    EntityType.Goal: Goal,
}
