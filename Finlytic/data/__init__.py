"""
Finlytic data package.

This package provides:

- :mod:`Finlytic.data.data` – pandas aggregations over expense, budget and goal records (period totals, category breakdowns, budget status, goal summaries).
"""
