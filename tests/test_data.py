"""Tests for the pandas aggregations in Finlytic.data.data."""
import datetime
import unittest

from Finlytic.core import models
from Finlytic.data import data
from tests.base import FIXED_NOW, make_budget, make_expense, make_goal


class PeriodTotalTests(unittest.TestCase):
    def setUp(self) -> None:
        self.expenses = [
            make_expense(amount=100.0, type=models.ExpenseType.Income, category_id='salary',
                         transaction_date=datetime.datetime(2025, 6, 1, 8)),
            make_expense(amount=30.0, transaction_date=datetime.datetime(2025, 6, 10)),
            make_expense(amount=20.0, category_id='c2', transaction_date=datetime.datetime(2025, 6, 30, 18)),
            make_expense(amount=999.0, transaction_date=datetime.datetime(2025, 7, 1)),
        ]

    def test_net_total_includes_whole_days(self):
        total = data.total_for_period(self.expenses, datetime.datetime(2025, 6, 1, 12), datetime.datetime(2025, 6, 30))
        self.assertAlmostEqual(total, 50.0)

    def test_filters(self):
        start, end = datetime.datetime(2025, 6, 1), datetime.datetime(2025, 6, 30)
        self.assertAlmostEqual(data.total_for_period(self.expenses, start, end, category_id='c2'), -20.0)
        self.assertAlmostEqual(
            data.total_for_period(self.expenses, start, end, expense_type=models.ExpenseType.Income), 100.0
        )

    def test_empty(self):
        self.assertEqual(data.total_for_period([], FIXED_NOW, FIXED_NOW), 0.0)
        self.assertEqual(data.category_spending([]), {})

    def test_category_spending_ignores_income(self):
        self.assertEqual(data.category_spending(self.expenses), {'c1': 1029.0, 'c2': 20.0})

    def test_month_bounds(self):
        start, end = data.month_bounds(2024, 2)
        self.assertEqual(start, datetime.datetime(2024, 2, 1))
        self.assertEqual(end, datetime.datetime(2024, 2, 29, 23, 59, 59))


class RecommendationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.expenses = [
            make_expense(amount=200.0, transaction_date=datetime.datetime(2025, 3, 5)),
            make_expense(amount=100.0, transaction_date=datetime.datetime(2025, 3, 20)),
            make_expense(amount=150.0, transaction_date=datetime.datetime(2025, 5, 2)),
            make_expense(amount=80.0, category_id='c2', transaction_date=datetime.datetime(2025, 4, 2)),
            make_expense(amount=5000.0, transaction_date=datetime.datetime(2025, 1, 2)),
        ]

    def test_average_of_months_with_spending(self):
        amount = data.recommended_budget_amount(self.expenses, 'c1', models.BudgetPeriod.Monthly, FIXED_NOW)
        self.assertAlmostEqual(amount, 225.0)

    def test_scaled_to_period(self):
        weekly = data.recommended_budget_amount(self.expenses, 'c1', models.BudgetPeriod.Weekly, FIXED_NOW)
        yearly = data.recommended_budget_amount(self.expenses, 'c1', models.BudgetPeriod.Yearly, FIXED_NOW)
        self.assertAlmostEqual(weekly, 56.25)
        self.assertAlmostEqual(yearly, 2700.0)

    def test_no_history(self):
        self.assertEqual(
            data.recommended_budget_amount(self.expenses, 'c9', models.BudgetPeriod.Monthly, FIXED_NOW), 0.0
        )


class BudgetStatusTests(unittest.TestCase):
    def test_near_limit(self):
        budget = make_budget(amount=500.0)
        expenses = [make_expense(amount=300.0), make_expense(amount=150.0), make_expense(amount=70.0, category_id='c2')]
        result = data.budget_status(budget, expenses, FIXED_NOW)

        self.assertAlmostEqual(result.spent_amount, 450.0)
        self.assertAlmostEqual(result.remaining_amount, 50.0)
        self.assertAlmostEqual(result.spent_percentage, 90.0)
        self.assertTrue(result.is_near_limit)
        self.assertFalse(result.is_over_budget)
        self.assertEqual(result.days_remaining, 15.0)

    def test_over_budget(self):
        budget = make_budget(amount=100.0)
        result = data.budget_status(budget, [make_expense(amount=120.0)], FIXED_NOW)
        self.assertTrue(result.is_over_budget)
        self.assertLess(result.remaining_amount, 0)


class GoalSummaryTests(unittest.TestCase):
    def test_summary(self):
        goals = [
            make_goal(current_amount=600.0),
            make_goal(current_amount=0.0),
            make_goal(current_amount=1200.0, is_completed=True),
            make_goal(current_amount=10.0, target_date=datetime.datetime(2025, 6, 1)),
        ]
        summary = data.goals_summary(goals, FIXED_NOW)

        self.assertEqual(summary.total_goals, 4)
        self.assertEqual(summary.active_goals, 3)
        self.assertEqual(summary.completed_goals, 1)
        self.assertEqual(summary.overdue_goals, 1)
        self.assertAlmostEqual(summary.total_target_amount, 3600.0)
        self.assertAlmostEqual(summary.total_current_amount, 610.0)
        self.assertEqual(summary.on_track_goals, 1)

    def test_empty(self):
        summary = data.goals_summary([], FIXED_NOW)
        self.assertEqual(summary.total_goals, 0)
        self.assertEqual(summary.average_progress, 0.0)


class SyncStatisticsTests(unittest.TestCase):
    def test_counts(self):
        items = [
            {'entity_type': 'expense', 'operation': 'create'},
            {'entity_type': 'expense', 'operation': 'update'},
            {'entity_type': 'goal', 'operation': 'create'},
        ]
        stats = data.sync_statistics_frame(items)
        self.assertEqual(stats['pendingByType'], {'expense': 2, 'goal': 1})
        self.assertEqual(stats['pendingByOperation'], {'create': 2, 'update': 1})

    def test_empty(self):
        self.assertEqual(data.sync_statistics_frame([]), {'pendingByType': {}, 'pendingByOperation': {}})


if __name__ == '__main__':
    unittest.main()
