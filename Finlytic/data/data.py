"""Aggregation helpers over entity record sets.

The entity services obtain records first, remote or cached, and reduce them here
in memory with pandas. Results carry whatever staleness the underlying read had.
"""
import calendar
import dataclasses
import datetime
import logging
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from ..core import models

EXPENSE_COLUMNS: List[str] = ['id', 'category_id', 'amount', 'type', 'transaction_date']
LOOKBACK_MONTHS: int = 3

PERIOD_FACTORS: Dict[models.BudgetPeriod, float] = {
    models.BudgetPeriod.Weekly: 1 / 4,
    models.BudgetPeriod.Monthly: 1.0,
    models.BudgetPeriod.Quarterly: 3.0,
    models.BudgetPeriod.Yearly: 12.0,
}


@dataclasses.dataclass
class BudgetSpendingStatus:
    budget: models.Budget
    spent_amount: float
    remaining_amount: float
    spent_percentage: float
    is_over_budget: bool
    is_near_limit: bool
    days_remaining: float


@dataclasses.dataclass
class GoalsProgressSummary:
    total_goals: int
    active_goals: int
    completed_goals: int
    overdue_goals: int
    total_target_amount: float
    total_current_amount: float
    average_progress: float
    on_track_goals: int


def expense_frame(expenses: Iterable[models.Expense]) -> pd.DataFrame:
    """Build a DataFrame of the fields used for aggregation.

    Returns:
        pd.DataFrame: One row per expense with columns :data:`EXPENSE_COLUMNS`.
    """
    rows = [
        {
            'id': e.id,
            'category_id': e.category_id,
            'amount': float(e.amount),
            'type': str(e.type),
            'transaction_date': e.transaction_date,
        }
        for e in expenses
    ]
    df = pd.DataFrame(rows, columns=EXPENSE_COLUMNS)
    df['amount'] = pd.to_numeric(df['amount'], errors='coerce').fillna(0.0)
    df['transaction_date'] = pd.to_datetime(df['transaction_date'], errors='coerce')

    invalid = df['transaction_date'].isna().sum()
    if invalid:
        logging.warning(f'Dropped {invalid} expenses with invalid transaction dates.')
        df = df.dropna(subset=['transaction_date'])
    return df


def filter_period(df: pd.DataFrame, start: datetime.datetime, end: datetime.datetime) -> pd.DataFrame:
    """Keep rows whose transaction date falls on a calendar day from ``start`` to ``end``, inclusive."""
    days = df['transaction_date'].dt.normalize()
    mask = (days >= pd.Timestamp(start.date())) & (days <= pd.Timestamp(end.date()))
    return df[mask]


def total_for_period(expenses: Iterable[models.Expense], start: datetime.datetime, end: datetime.datetime,
                     category_id: Optional[str] = None,
                     expense_type: Optional[models.ExpenseType] = None) -> float:
    """Net total of a period: income adds, expenses subtract.

    Args:
        category_id: Only include this category.
        expense_type: Only include this type.
    """
    df = filter_period(expense_frame(expenses), start, end)
    if category_id is not None:
        df = df[df['category_id'] == category_id]
    if expense_type is not None:
        df = df[df['type'] == str(expense_type)]
    if df.empty:
        return 0.0
    signed = df['amount'].where(df['type'] == str(models.ExpenseType.Income), -df['amount'])
    return float(signed.sum())


def category_spending(expenses: Iterable[models.Expense]) -> Dict[str, float]:
    """Sum of expense-type amounts per category id."""
    df = expense_frame(expenses)
    df = df[df['type'] == str(models.ExpenseType.Expense)]
    if df.empty:
        return {}
    return {k: float(v) for k, v in df.groupby('category_id')['amount'].sum().items()}


def monthly_totals(expenses: Iterable[models.Expense], category_id: Optional[str] = None) -> pd.Series:
    """Expense-type spending per calendar month, indexed by ``pd.Period``."""
    df = expense_frame(expenses)
    df = df[df['type'] == str(models.ExpenseType.Expense)]
    if category_id is not None:
        df = df[df['category_id'] == category_id]
    if df.empty:
        return pd.Series(dtype='float64')
    return df.groupby(df['transaction_date'].dt.to_period('M'))['amount'].sum()


def month_bounds(year: int, month: int):
    """Return the first moment and the last second of a month."""
    last_day = calendar.monthrange(year, month)[1]
    return datetime.datetime(year, month, 1), datetime.datetime(year, month, last_day, 23, 59, 59)


def recommended_budget_amount(expenses: Iterable[models.Expense], category_id: str,
                              period: models.BudgetPeriod, at: datetime.datetime) -> float:
    """Average monthly spending over the previous full months, scaled to ``period``.

    Only months with spending count toward the average.
    """
    totals = monthly_totals(expenses, category_id=category_id)
    current = pd.Period(at, freq='M')
    lookback = [current - i for i in range(1, LOOKBACK_MONTHS + 1)]
    values = [abs(float(totals.get(p, 0.0))) for p in lookback]
    values = [v for v in values if v > 0]
    if not values:
        return 0.0
    return sum(values) / len(values) * PERIOD_FACTORS[period]


def budget_status(budget: models.Budget, expenses: Iterable[models.Expense],
                  at: datetime.datetime) -> BudgetSpendingStatus:
    spent = abs(total_for_period(
        expenses, budget.start_date, budget.end_date,
        category_id=budget.category_id,
        expense_type=models.ExpenseType.Expense,
    ))
    percentage = spent / budget.amount * 100.0 if budget.amount > 0 else 0.0
    return BudgetSpendingStatus(
        budget=budget,
        spent_amount=spent,
        remaining_amount=budget.amount - spent,
        spent_percentage=percentage,
        is_over_budget=spent > budget.amount,
        is_near_limit=percentage >= budget.alert_threshold * 100.0,
        days_remaining=budget.days_remaining(at),
    )


def goals_summary(goals: Iterable[models.Goal], at: datetime.datetime) -> GoalsProgressSummary:
    goals = list(goals)
    active = [g for g in goals if g.is_active and not g.is_completed]
    df = pd.DataFrame(
        [{'target': g.target_amount, 'current': g.current_amount, 'progress': g.progress_percentage}
         for g in active],
        columns=['target', 'current', 'progress'],
    )
    return GoalsProgressSummary(
        total_goals=len(goals),
        active_goals=len(active),
        completed_goals=sum(1 for g in goals if g.is_completed),
        overdue_goals=sum(1 for g in goals if g.is_overdue(at)),
        total_target_amount=float(df['target'].sum()),
        total_current_amount=float(df['current'].sum()),
        average_progress=float(df['progress'].mean()) if not df.empty else 0.0,
        on_track_goals=sum(1 for g in active if g.is_on_track(at)),
    )


def sync_statistics_frame(items: Iterable[Dict[str, Any]]) -> Dict[str, Dict[str, int]]:
    """Count pending sync items by entity type and by operation."""
    df = pd.DataFrame(list(items), columns=['entity_type', 'operation'])
    return {
        'pendingByType': {str(k): int(v) for k, v in df['entity_type'].value_counts().items()},
        'pendingByOperation': {str(k): int(v) for k, v in df['operation'].value_counts().items()},
    }
