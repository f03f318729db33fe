"""
Derived views over an in-memory transaction list.

Every function here is pure: the result depends only on the arguments, and an
empty input yields zeroed or empty output. Amounts are floats; malformed
amounts count as 0 (see ``schemas.safe_amount``).
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional, Sequence

from models import TransactionType
from periods import add_months, month_key, month_start, resolve_period
from schemas import Budget, Category, Transaction, safe_amount

OTHER_CATEGORY_ID = "other"
OTHER_CATEGORY_NAME = "Altro"
OTHER_CATEGORY_ICON = "📌"
OTHER_CATEGORY_COLOR = "hsl(0, 0%, 85%)"

FORECAST_WINDOW = 3


@dataclass(frozen=True)
class MonthBucket:
    year: int
    month: int
    income: float = 0.0
    expense: float = 0.0

    @property
    def label(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    @property
    def net(self) -> float:
        return self.income - self.expense


@dataclass(frozen=True)
class Totals:
    income: float
    expense: float
    count: int

    @property
    def net(self) -> float:
        return self.income - self.expense


@dataclass(frozen=True)
class CategorySlice:
    category_id: str
    name: str
    amount: float
    percentage: float
    icon: Optional[str] = None
    color: Optional[str] = None


@dataclass(frozen=True)
class BudgetProgress:
    budget: Budget
    spent: float
    percentage: float
    category: Optional[Category] = None

    @property
    def remaining(self) -> float:
        return self.budget.amount - self.spent

    @property
    def is_over_budget(self) -> bool:
        return self.percentage >= 100

    @property
    def is_near_limit(self) -> bool:
        return self.budget.alert_threshold * 100 <= self.percentage < 100

    @property
    def needs_alert(self) -> bool:
        return (
            not self.budget.alert_sent
            and self.percentage >= self.budget.alert_threshold * 100
        )


@dataclass(frozen=True)
class Forecast:
    avg_expense: float = 0.0
    avg_income: float = 0.0
    trend: float = 0.0
    next_month_expense: float = 0.0
    next_month_income: float = 0.0
    savings_rate: float = 0.0


@dataclass(frozen=True)
class ComparisonRow:
    bucket: MonthBucket
    trend: float


@dataclass(frozen=True)
class Span:
    text: str
    matched: bool = False


def _amount(txn: Transaction) -> float:
    return safe_amount(txn.amount)


def totals(transactions: Iterable[Transaction]) -> Totals:
    income = expense = 0.0
    count = 0
    for txn in transactions:
        count += 1
        if txn.type == TransactionType.income:
            income += _amount(txn)
        else:
            expense += _amount(txn)
    return Totals(income=income, expense=expense, count=count)


def _bucket_range(
    transactions: Iterable[Transaction], months: Sequence[date]
) -> list[MonthBucket]:
    sums: dict[tuple[int, int], list[float]] = {
        (m.year, m.month): [0.0, 0.0] for m in months
    }
    for txn in transactions:
        slot = sums.get((txn.date.year, txn.date.month))
        if slot is None:
            continue
        if txn.type == TransactionType.income:
            slot[0] += _amount(txn)
        else:
            slot[1] += _amount(txn)
    return [
        MonthBucket(m.year, m.month, sums[(m.year, m.month)][0], sums[(m.year, m.month)][1])
        for m in months
    ]


def monthly_series(
    transactions: Iterable[Transaction], year: int
) -> list[MonthBucket]:
    """Twelve buckets, January to December of ``year``."""
    return _bucket_range(transactions, [date(year, m, 1) for m in range(1, 13)])


def recent_months(
    transactions: Iterable[Transaction], end: date, count: int = FORECAST_WINDOW
) -> list[MonthBucket]:
    """``count`` consecutive buckets ending with the month of ``end``."""
    last = month_start(end)
    months = [add_months(last, offset) for offset in range(1 - count, 1)]
    return _bucket_range(transactions, months)


def category_breakdown(
    transactions: Iterable[Transaction],
    categories: Iterable[Category] = (),
) -> list[CategorySlice]:
    by_id = {c.id: c for c in categories}
    sums: dict[str, float] = {}
    for txn in transactions:
        if txn.type != TransactionType.expense:
            continue
        key = txn.category_id or OTHER_CATEGORY_ID
        sums[key] = sums.get(key, 0.0) + _amount(txn)

    items = sorted(
        ((key, value) for key, value in sums.items() if value > 0),
        key=lambda item: item[1],
        reverse=True,
    )
    total = sum(value for _, value in items)
    out: list[CategorySlice] = []
    for key, value in items:
        category = by_id.get(key)
        out.append(
            CategorySlice(
                category_id=key,
                name=category.name if category else OTHER_CATEGORY_NAME,
                amount=value,
                percentage=(value / total * 100) if total else 0.0,
                icon=(category.icon if category else None) or OTHER_CATEGORY_ICON,
                color=(category.color if category else None) or OTHER_CATEGORY_COLOR,
            )
        )
    return out


def budget_consumption(
    budget: Budget,
    transactions: Iterable[Transaction],
    category: Optional[Category] = None,
) -> BudgetProgress:
    """Spending against one budget row.

    A whole-month budget (no category) counts every expense of its month; a
    category budget counts only that category's expenses.
    """
    spent = 0.0
    for txn in transactions:
        if txn.type != TransactionType.expense:
            continue
        if txn.month_key != budget.month_key:
            continue
        if budget.category_id and txn.category_id != budget.category_id:
            continue
        spent += _amount(txn)
    percentage = (spent / budget.amount * 100) if budget.amount > 0 else 0.0
    return BudgetProgress(
        budget=budget, spent=spent, percentage=percentage, category=category
    )


def budgets_for_month(
    budgets: Iterable[Budget],
    transactions: Sequence[Transaction],
    month: str,
    categories: Iterable[Category] = (),
) -> list[BudgetProgress]:
    by_id = {c.id: c for c in categories}
    return [
        budget_consumption(
            budget,
            transactions,
            by_id.get(budget.category_id) if budget.category_id else None,
        )
        for budget in budgets
        if budget.month_key == month
    ]


def forecast(buckets: Sequence[MonthBucket]) -> Forecast:
    """Three-point linear estimate over the trailing buckets.

    trend is (last expense - first expense) / window size; no smoothing.
    """
    trailing = list(buckets[-FORECAST_WINDOW:])
    if not trailing:
        return Forecast()
    size = len(trailing)
    avg_expense = sum(b.expense for b in trailing) / size
    avg_income = sum(b.income for b in trailing) / size
    trend = (trailing[-1].expense - trailing[0].expense) / size if size >= 2 else 0.0
    savings_rate = (
        (avg_income - avg_expense) / avg_income * 100 if avg_income > 0 else 0.0
    )
    return Forecast(
        avg_expense=avg_expense,
        avg_income=avg_income,
        trend=trend,
        next_month_expense=avg_expense + trend,
        next_month_income=avg_income,
        savings_rate=savings_rate,
    )


def monthly_comparison(
    buckets: Sequence[MonthBucket], months: int = 6
) -> list[ComparisonRow]:
    window = list(buckets[-months:]) if months > 0 else []
    rows: list[ComparisonRow] = []
    for index, bucket in enumerate(window):
        trend = bucket.expense - window[index - 1].expense if index > 0 else 0.0
        rows.append(ComparisonRow(bucket=bucket, trend=trend))
    return rows


def highlight(text: str, term: str) -> list[Span]:
    if not term or not term.strip():
        return [Span(text)]
    parts = re.split(f"({re.escape(term)})", text, flags=re.IGNORECASE)
    # odd indices are the captured matches
    return [
        Span(part, matched=index % 2 == 1)
        for index, part in enumerate(parts)
        if part
    ]


def available_months(transactions: Iterable[Transaction]) -> list[str]:
    return sorted({month_key(txn.date) for txn in transactions}, reverse=True)


def filter_transactions(
    transactions: Iterable[Transaction],
    month: Optional[str] = "all",
    category_id: Optional[str] = "all",
    type: Optional[str] = "all",
) -> list[Transaction]:
    period = resolve_period(month)
    out: list[Transaction] = []
    for txn in transactions:
        if period and not period.contains(txn.date):
            continue
        if category_id and category_id != "all" and txn.category_id != category_id:
            continue
        if type and type != "all" and txn.type.value != type:
            continue
        out.append(txn)
    return out
