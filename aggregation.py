from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Optional

from models import TransactionType
from periods import Period


@dataclass(frozen=True)
class LedgerEntry:
    date: date
    type: TransactionType
    amount_cents: int
    category: str


@dataclass(frozen=True)
class BudgetPeriod:
    start_date: date
    end_date: Optional[date]
    is_active: bool
    allowance_cents: int
    total_spent: int
    total_saved: int
    category_spending: dict[str, int] = field(default_factory=dict)
    transaction_count: int = 0

    @property
    def percentage(self) -> float:
        if self.allowance_cents <= 0:
            return 0.0
        return round(self.total_spent / self.allowance_cents * 100, 2)


def aggregate(
    period: Period,
    entries: Iterable[LedgerEntry],
    categories: Iterable[str],
    allowance_cents: int,
    today: date,
) -> BudgetPeriod:
    tracked = set(categories)
    is_active = period.contains(today)
    upper = today if is_active else period.end

    total_spent = 0
    count = 0
    category_spending: dict[str, int] = {}
    for entry in entries:
        if not period.start <= entry.date <= upper:
            continue
        if entry.category not in tracked:
            continue
        if entry.type != TransactionType.expense:
            continue
        total_spent += entry.amount_cents
        count += 1
        category_spending[entry.category] = (
            category_spending.get(entry.category, 0) + entry.amount_cents
        )

    return BudgetPeriod(
        start_date=period.start,
        end_date=None if is_active else period.end,
        is_active=is_active,
        allowance_cents=allowance_cents,
        total_spent=total_spent,
        total_saved=allowance_cents - total_spent,
        category_spending=category_spending,
        transaction_count=count,
    )


def summarize(periods: Iterable[BudgetPeriod]) -> dict[str, int]:
    allowance = 0
    spent = 0
    for p in periods:
        allowance += p.allowance_cents
        spent += p.total_spent
    return {
        "total_budget_cents": allowance,
        "total_spent_cents": spent,
        "total_saved_cents": allowance - spent,
    }
