from datetime import date

from aggregation import BudgetPeriod, LedgerEntry, aggregate, summarize
from models import TransactionType
from periods import Period

PERIOD = Period(date(2024, 2, 27), date(2024, 3, 26))


def _expense(day, cents, category="groceries"):
    return LedgerEntry(day, TransactionType.expense, cents, category)


ENTRIES = [
    _expense(date(2024, 2, 26), 9_999),
    _expense(date(2024, 2, 27), 4_000),
    _expense(date(2024, 3, 1), 6_000, "dining"),
    _expense(date(2024, 3, 5), 95_000, "rent"),
    LedgerEntry(date(2024, 3, 6), TransactionType.income, 1_500, "groceries"),
    _expense(date(2024, 3, 20), 2_500),
]


def test_active_period_counts_up_to_today():
    result = aggregate(PERIOD, ENTRIES, ["groceries", "dining"], 30_000, date(2024, 3, 15))

    assert result.is_active is True
    assert result.end_date is None
    assert result.start_date == date(2024, 2, 27)
    assert result.total_spent == 10_000
    assert result.total_saved == 20_000
    assert result.transaction_count == 2
    assert result.category_spending == {"groceries": 4_000, "dining": 6_000}
    assert result.percentage == 33.33


def test_closed_period_uses_full_range():
    result = aggregate(PERIOD, ENTRIES, ["groceries"], 5_000, date(2024, 4, 2))

    assert result.is_active is False
    assert result.end_date == date(2024, 3, 26)
    assert result.total_spent == 6_500
    assert result.total_saved == -1_500
    assert result.percentage == 130.0


def test_no_matching_entries():
    result = aggregate(PERIOD, ENTRIES, ["travel"], 10_000, date(2024, 3, 15))
    assert result.total_spent == 0
    assert result.total_saved == 10_000
    assert result.category_spending == {}
    assert result.transaction_count == 0


def test_zero_allowance_percentage():
    result = aggregate(PERIOD, ENTRIES, ["groceries"], 0, date(2024, 3, 15))
    assert result.percentage == 0.0


def test_summarize_totals():
    periods = [
        BudgetPeriod(date(2024, 2, 27), None, True, 30_000, 10_000, 20_000),
        BudgetPeriod(date(2024, 2, 27), None, True, 5_000, 6_500, -1_500),
    ]
    assert summarize(periods) == {
        "total_budget_cents": 35_000,
        "total_spent_cents": 16_500,
        "total_saved_cents": 18_500,
    }


def test_empty_ledger():
    result = aggregate(PERIOD, [], ["groceries"], 30_000, date(2024, 3, 15))
    assert result.total_spent == 0
    assert result.total_saved == 30_000
    assert result.category_spending == {}
    assert result.transaction_count == 0
