"""Price-change analysis over price history."""

from betwatch.analysis.changes import ChangeCalculator
from betwatch.analysis.timeseries import nearest_before, percent_change, sort_series

__all__ = [
    "ChangeCalculator",
    "nearest_before",
    "percent_change",
    "sort_series",
]
