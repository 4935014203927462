"""Tests for Finlytic.core.models."""
import datetime
import unittest

from Finlytic.core import models
from Finlytic.status import status
from tests.base import FIXED_NOW, make_budget, make_category, make_expense, make_goal


class ExpenseModelTests(unittest.TestCase):
    def test_to_dict_uses_camel_case_and_iso_dates(self):
        e = make_expense(id='e1', amount=25.5)
        d = e.to_dict()
        self.assertEqual(d['id'], 'e1')
        self.assertEqual(d['userId'], 'u1')
        self.assertEqual(d['categoryId'], 'c1')
        self.assertEqual(d['transactionDate'], FIXED_NOW.isoformat())
        self.assertEqual(d['type'], 'expense')
        self.assertNotIn('user_id', d)

    def test_from_dict_restores_types(self):
        d = make_expense(id='e1', amount=25.5, type=models.ExpenseType.Income).to_dict()
        d['amount'] = 25  # integers coming back from the store
        e = models.Expense.from_dict(d)
        self.assertIsInstance(e.amount, float)
        self.assertEqual(e.type, models.ExpenseType.Income)
        self.assertEqual(e.transaction_date, FIXED_NOW)

    def test_from_dict_ignores_unknown_keys(self):
        d = make_expense().to_dict()
        d['somethingNew'] = 1
        self.assertEqual(models.Expense.from_dict(d).description, 'Lunch')

    def test_from_dict_missing_required_key(self):
        d = make_expense().to_dict()
        del d['amount']
        with self.assertRaises(status.ValidationException):
            models.Expense.from_dict(d)

    def test_from_dict_invalid_date(self):
        d = make_expense().to_dict()
        d['transactionDate'] = 'yesterday'
        with self.assertRaises(status.ValidationException) as ctx:
            models.Expense.from_dict(d)
        self.assertEqual(ctx.exception.field, 'transactionDate')

    def test_unknown_enum_value_falls_back(self):
        d = make_expense().to_dict()
        d['type'] = 'transfer'
        self.assertEqual(models.Expense.from_dict(d).type, models.ExpenseType.Expense)

    def test_aware_datetimes_become_naive(self):
        d = make_expense().to_dict()
        d['transactionDate'] = '2025-06-15T12:00:00+00:00'
        e = models.Expense.from_dict(d)
        self.assertIsNone(e.transaction_date.tzinfo)

    def test_validate(self):
        make_expense().validate()
        for kwargs, field in (
                ({'amount': 0}, 'amount'),
                ({'amount': 1_000_000}, 'amount'),
                ({'category_id': ''}, 'categoryId'),
                ({'description': 'x' * 101}, 'description'),
        ):
            with self.subTest(kwargs=kwargs):
                with self.assertRaises(status.ValidationException) as ctx:
                    make_expense(**kwargs).validate()
                self.assertEqual(ctx.exception.field, field)

    def test_signed_amount(self):
        self.assertEqual(make_expense(amount=5.0).signed_amount, -5.0)
        self.assertEqual(make_expense(amount=5.0, type=models.ExpenseType.Income).signed_amount, 5.0)


class BudgetModelTests(unittest.TestCase):
    def test_current_period_and_days_remaining(self):
        b = make_budget()
        self.assertTrue(b.is_current_period(FIXED_NOW))
        self.assertFalse(b.is_current_period(datetime.datetime(2025, 7, 2)))
        self.assertEqual(b.days_remaining(FIXED_NOW), 15.0)
        self.assertEqual(b.days_remaining(datetime.datetime(2025, 8, 1)), 0.0)

    def test_overlaps(self):
        b = make_budget()
        self.assertTrue(b.overlaps(datetime.datetime(2025, 6, 20), datetime.datetime(2025, 7, 20)))
        self.assertFalse(b.overlaps(datetime.datetime(2025, 7, 1), datetime.datetime(2025, 7, 31)))

    def test_validate_rejects_inverted_period(self):
        b = make_budget(start_date=datetime.datetime(2025, 7, 1), end_date=datetime.datetime(2025, 6, 1))
        with self.assertRaises(status.ValidationException):
            b.validate()

    def test_round_trip_keeps_period(self):
        b = make_budget(period=models.BudgetPeriod.Quarterly)
        self.assertEqual(models.Budget.from_dict(b.to_dict()), b)

    def test_large_amount_is_valid(self):
        make_budget(amount=1_200_000.0).validate()
        with self.assertRaises(status.ValidationException):
            make_budget(amount=0.0).validate()


class CategoryModelTests(unittest.TestCase):
    def test_custom_category_needs_owner(self):
        with self.assertRaises(status.ValidationException):
            make_category(user_id=None).validate()
        make_category(user_id=None, is_default=True).validate()

    def test_owner_id(self):
        self.assertEqual(make_category().owner_id, 'u1')
        self.assertIsNone(make_category(user_id=None, is_default=True).owner_id)


class GoalModelTests(unittest.TestCase):
    def test_progress(self):
        g = make_goal(current_amount=300.0)
        self.assertEqual(g.progress_percentage, 25.0)
        self.assertEqual(g.remaining_amount, 900.0)
        self.assertEqual(make_goal(current_amount=2000.0).progress_percentage, 100.0)

    def test_overdue(self):
        g = make_goal()
        self.assertFalse(g.is_overdue(FIXED_NOW))
        self.assertTrue(g.is_overdue(datetime.datetime(2026, 1, 2)))
        self.assertFalse(g.copy(is_completed=True).is_overdue(datetime.datetime(2026, 1, 2)))

    def test_required_monthly_savings(self):
        g = make_goal(current_amount=0.0)
        at = datetime.datetime(2025, 12, 1)
        # 30 days left rounds up to one month
        self.assertAlmostEqual(g.required_monthly_savings(at), 1200.0)
        self.assertAlmostEqual(g.required_monthly_savings(datetime.datetime(2026, 2, 1)), 1200.0)

    def test_milestones_round_trip(self):
        milestone = models.GoalMilestone(
            id='m1', title='Half', description='', target_amount=600.0,
            target_date=datetime.datetime(2025, 6, 30), created_at=FIXED_NOW,
        )
        g = make_goal(milestones=[milestone], type=models.GoalType.DebtPayoff)
        d = g.to_dict()
        self.assertEqual(d['milestones'][0]['targetAmount'], 600.0)
        self.assertEqual(d['type'], 'debtPayoff')
        restored = models.Goal.from_dict(d)
        self.assertEqual(restored.milestones, [milestone])
        self.assertEqual(restored.type, models.GoalType.DebtPayoff)

    def test_validate_priority(self):
        with self.assertRaises(status.ValidationException) as ctx:
            make_goal(priority=9).validate()
        self.assertEqual(ctx.exception.field, 'priority')

    def test_large_amounts_are_valid(self):
        g = make_goal(target_amount=2_500_000.0, current_amount=1_500_000.0)
        g.validate()
        g.copy(current_amount=2_500_000.0, is_completed=True).validate()

    def test_expense_cap_does_not_apply_to_goals(self):
        with self.assertRaises(status.ValidationException):
            make_expense(amount=1_000_000.0).validate()
        make_goal(target_amount=1_000_000.0).validate()


class HelperTests(unittest.TestCase):
    def test_to_camel(self):
        self.assertEqual(models.to_camel('transaction_date'), 'transactionDate')
        self.assertEqual(models.to_camel('id'), 'id')
        self.assertEqual(models.to_camel('profile_image_url'), 'profileImageUrl')

    def test_parse_datetime(self):
        self.assertIsNone(models.parse_datetime(None))
        self.assertIsNone(models.parse_datetime(''))
        self.assertEqual(models.parse_datetime('2025-01-02'), datetime.datetime(2025, 1, 2))
        self.assertEqual(models.parse_datetime(datetime.date(2025, 1, 2)), datetime.datetime(2025, 1, 2))


if __name__ == '__main__':
    unittest.main()
