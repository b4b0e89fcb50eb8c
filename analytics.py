"""
Analytics module for family ledger aggregation.

This module provides the read-only aggregation engine: windowed totals
grouped by category (expenses) or source (incomes), monthly trends, and the
monthly/yearly/user/income statistics built on top of them. Every query runs
against the ledger itself; cached budget and category figures are never read
here.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

import pandas as pd
from sqlalchemy import extract, func

from database_ops import Category, DatabaseManager, Expense, Income, filter_transactions
from exceptions import AnalyticsError, InvalidWindowError
from utils import ZERO, percentage, to_money
from windows import (
    DateRangeWindow,
    MonthWindow,
    Window,
    iter_months,
    month_label,
    parse_date,
    end_of_day,
    trailing_months,
)

logger = logging.getLogger(__name__)

EXPENSE = "expense"
INCOME = "income"
KINDS = (EXPENSE, INCOME)
MONTH_INDEX = pd.RangeIndex(1, 13, name='month')


@dataclass(frozen=True)
class AggregateFilters:
    """Optional narrowing of an aggregation. The category filter only applies to expenses."""
    user_id: Optional[int] = None
    category_id: Optional[int] = None


@dataclass(frozen=True)
class GroupTotal:
    """
    Total of one group (a category for expenses, a source for incomes).

    Attributes:
        key: Category id or source value
        label: Category name or source value
        total: Sum of amounts, quantized to cents
        count: Number of transactions
        color: Category color (None for incomes)
    """
    key: Union[int, str]
    label: str
    total: Decimal
    count: int
    color: Optional[str] = None


@dataclass
class AggregateResult:
    """Outcome of ``AnalyticsEngine.aggregate``."""
    kind: str
    window: Window
    total: Decimal = ZERO
    count: int = 0
    groups: List[GroupTotal] = field(default_factory=list)

    def share(self, group: GroupTotal) -> float:
        """Percentage of the overall total contributed by ``group`` (0 when empty)."""
        return percentage(group.total, self.total)

    def to_dataframe(self) -> pd.DataFrame:
        """
        Convert the groups to a DataFrame.

        Returns:
            DataFrame with columns: key, label, total, count, color, percentage
        """
        columns = ['key', 'label', 'total', 'count', 'color', 'percentage']
        if not self.groups:
            return pd.DataFrame(columns=columns)
        return pd.DataFrame(
            [
                {
                    'key': group.key,
                    'label': group.label,
                    'total': float(group.total),
                    'count': group.count,
                    'color': group.color,
                    'percentage': self.share(group),
                }
                for group in self.groups
            ],
            columns=columns,
        )


@dataclass(frozen=True)
class TrendPoint:
    """Expense and income totals of one calendar month."""
    year: int
    month: int
    label: str
    total_expenses: Decimal
    total_incomes: Decimal

    @property
    def net(self) -> Decimal:
        return self.total_incomes - self.total_expenses


def _group_sort_key(group: GroupTotal):
    return (-group.total, group.label.casefold(), str(group.key))


class AnalyticsEngine:
    """
    Core aggregation engine for the family ledger.

    Provides windowed aggregation and statistics that are UI-agnostic and can
    be used by the CLI, the dashboard composer or reports. All methods are
    read only.
    """

    def __init__(self, db_manager: DatabaseManager):
        """
        Initialize the analytics engine.

        Args:
            db_manager: Database manager instance
        """
        self.db_manager = db_manager
        logger.info("Analytics engine initialized")

    @staticmethod
    def _check_kind(kind: str) -> str:
        if kind not in KINDS:
            raise AnalyticsError(
                f"Unknown aggregation kind '{kind}'",
                details={"allowed": ", ".join(KINDS)}
            )
        return kind

    @staticmethod
    def _check_window(window: Any) -> Window:
        if not isinstance(window, (MonthWindow, DateRangeWindow)):
            raise InvalidWindowError(
                "Aggregation window must be a month or a date range",
                details={"type": type(window).__name__}
            )
        return window

    def aggregate(
        self,
        family_id: int,
        window: Window,
        filters: Optional[AggregateFilters] = None,
        kind: str = EXPENSE
    ) -> AggregateResult:
        """
        Sum active transactions of one kind inside a window, grouped.

        Expenses are grouped by category and incomes by source. Groups are
        ordered by descending total, ties broken by label then key.

        Args:
            family_id: Family to aggregate
            window: MonthWindow or DateRangeWindow (inclusive bounds)
            filters: Optional user / category filters
            kind: 'expense' or 'income'

        Returns:
            AggregateResult (zeroed when nothing matches)

        Raises:
            InvalidWindowError: If the window is not a supported window type
            AnalyticsError: If the kind is unknown
        """
        kind = self._check_kind(kind)
        window = self._check_window(window)
        filters = filters or AggregateFilters()

        session = self.db_manager.get_session()
        try:
            if kind == EXPENSE:
                query = session.query(
                    Expense.category_id,
                    Category.name,
                    Category.color,
                    func.sum(Expense.amount).label('total'),
                    func.count(Expense.id).label('txn_count'),
                ).join(Category, Category.id == Expense.category_id)
                query = filter_transactions(
                    query, Expense, family_id,
                    start=window.start, end=window.end,
                    user_id=filters.user_id, category_id=filters.category_id,
                )
                rows = query.group_by(Expense.category_id, Category.name, Category.color).all()
                groups = [
                    GroupTotal(key=row[0], label=row[1], total=to_money(row.total), count=int(row.txn_count), color=row[2])
                    for row in rows
                ]
            else:
                query = session.query(
                    Income.source,
                    func.sum(Income.amount).label('total'),
                    func.count(Income.id).label('txn_count'),
                )
                query = filter_transactions(
                    query, Income, family_id,
                    start=window.start, end=window.end,
                    user_id=filters.user_id,
                )
                rows = query.group_by(Income.source).all()
                groups = [
                    GroupTotal(key=row[0].value, label=row[0].value, total=to_money(row.total), count=int(row.txn_count))
                    for row in rows
                ]
        except Exception as e:
            logger.error(f"Failed to aggregate {kind}s for family {family_id}: {e}", exc_info=True)
            raise
        finally:
            session.close()

        groups.sort(key=_group_sort_key)
        result = AggregateResult(
            kind=kind,
            window=window,
            total=sum((group.total for group in groups), ZERO),
            count=sum(group.count for group in groups),
            groups=groups,
        )
        logger.debug(
            "Aggregated %d %s group(s) for family %s in %s: total=%s",
            len(groups), kind, family_id, window.label, result.total
        )
        return result

    def monthly_trend(
        self,
        family_id: int,
        filters: Optional[AggregateFilters] = None,
        month_count: int = 6,
        start: Optional[Any] = None,
        end: Optional[Any] = None,
        today: Optional[date] = None
    ) -> List[TrendPoint]:
        """
        Expense and income totals per calendar month, oldest first.

        Without ``start``/``end`` the trend covers the trailing ``month_count``
        months ending with the current month. With a range, it has one point
        per calendar month intersecting the range; boundary months are
        counted whole.

        Raises:
            InvalidWindowError: If only one bound is given or the range is inverted
        """
        if start is None and end is None:
            months = trailing_months(month_count, today)
        elif start is None or end is None:
            raise InvalidWindowError(
                "A ranged trend needs both start and end",
                details={"start": start, "end": end}
            )
        else:
            months = list(iter_months(parse_date(start, "start_date"), end_of_day(parse_date(end, "end_date"))))

        points = []
        for window in months:
            expenses = self.aggregate(family_id, window, filters, EXPENSE)
            incomes = self.aggregate(family_id, window, filters, INCOME)
            points.append(TrendPoint(
                year=window.year,
                month=window.month,
                label=window.label,
                total_expenses=expenses.total,
                total_incomes=incomes.total,
            ))
        logger.info(f"Generated monthly trend with {len(points)} months for family {family_id}")
        return points

    def get_monthly_stats(self, family_id: int, year: int, month: int, kind: str = EXPENSE) -> Dict[str, Any]:
        """
        Per-group totals, counts and averages for one month.

        Returns:
            Dictionary with year, month, kind, total, count, average and a
            ``groups`` list of dicts (key, label, color, total, count,
            average, percentage)
        """
        result = self.aggregate(family_id, MonthWindow(year, month), kind=kind)
        return {
            'year': year,
            'month': month,
            'kind': result.kind,
            'total': result.total,
            'count': result.count,
            'average': to_money(result.total / result.count) if result.count else ZERO,
            'groups': [
                {
                    'key': group.key,
                    'label': group.label,
                    'color': group.color,
                    'total': group.total,
                    'count': group.count,
                    'average': to_money(group.total / group.count) if group.count else ZERO,
                    'percentage': result.share(group),
                }
                for group in result.groups
            ],
        }

    def get_yearly_stats(self, family_id: int, year: int, kind: str = EXPENSE) -> Dict[str, Any]:
        """
        Per-month totals for a calendar year with a per-group breakdown.

        Returns:
            Dictionary with:
                year, kind, total (Decimal), count
                months: DataFrame with columns month, label, total, count (all 12 months)
                breakdown: DataFrame pivot indexed by month, one column per group label
        """
        kind = self._check_kind(kind)
        start = MonthWindow(year, 1).start
        end = MonthWindow(year, 12).end

        session = self.db_manager.get_session()
        try:
            if kind == EXPENSE:
                month_col = extract('month', Expense.date).label('month')
                query = session.query(
                    month_col,
                    Category.name.label('label'),
                    func.sum(Expense.amount).label('total'),
                    func.count(Expense.id).label('txn_count'),
                ).join(Category, Category.id == Expense.category_id)
                query = filter_transactions(query, Expense, family_id, start=start, end=end)
                rows = query.group_by(month_col, Category.name).all()
                records = [(int(r.month), r.label, to_money(r.total), int(r.txn_count)) for r in rows]
            else:
                month_col = extract('month', Income.date).label('month')
                query = session.query(
                    month_col,
                    Income.source,
                    func.sum(Income.amount).label('total'),
                    func.count(Income.id).label('txn_count'),
                )
                query = filter_transactions(query, Income, family_id, start=start, end=end)
                rows = query.group_by(month_col, Income.source).all()
                records = [(int(r.month), r[1].value, to_money(r.total), int(r.txn_count)) for r in rows]
        except Exception as e:
            logger.error(f"Failed to get yearly stats: {e}", exc_info=True)
            raise
        finally:
            session.close()

        total = sum((record[2] for record in records), ZERO)
        count = sum(record[3] for record in records)

        df = pd.DataFrame(
            [(m, label, float(amount), n) for m, label, amount, n in records],
            columns=['month', 'label', 'total', 'count'],
        )
        months = df.groupby('month')[['total', 'count']].sum().reindex(MONTH_INDEX, fill_value=0)
        months = months.reset_index()
        months['label'] = [month_label(year, m) for m in months['month']]
        months = months[['month', 'label', 'total', 'count']]

        if df.empty:
            breakdown = pd.DataFrame(index=MONTH_INDEX)
        else:
            breakdown = df.pivot_table(
                index='month', columns='label', values='total', aggfunc='sum', fill_value=0.0
            ).reindex(MONTH_INDEX, fill_value=0.0)
            breakdown.index.name = 'month'
            breakdown.columns.name = None

        logger.info(f"Generated yearly {kind} stats for {year}: {count} transactions")
        return {
            'year': year,
            'kind': kind,
            'total': total,
            'count': count,
            'months': months,
            'breakdown': breakdown,
        }

    def get_user_stats(
        self,
        family_id: int,
        user_id: int,
        start: Any,
        end: Any
    ) -> Dict[str, Any]:
        """
        Totals for one family member in a date range.

        Returns:
            Dictionary with user_id, window label, total_expenses,
            total_incomes, expense_count and the expense groups by category
        """
        window = DateRangeWindow.from_values(start, end)
        filters = AggregateFilters(user_id=user_id)
        expenses = self.aggregate(family_id, window, filters, EXPENSE)
        incomes = self.aggregate(family_id, window, filters, INCOME)
        return {
            'user_id': user_id,
            'window': window.label,
            'total_expenses': expenses.total,
            'total_incomes': incomes.total,
            'expense_count': expenses.count,
            'expenses_by_category': expenses.groups,
        }

    def get_income_stats(self, family_id: int, year: int, month: Optional[int] = None) -> Dict[str, Any]:
        """
        Income total, count, average and per-source share for a month or a year.

        Returns:
            Dictionary with total, count, average and ``by_source`` (list of
            dicts with source, total, count, percentage)
        """
        if month is None:
            window: Window = DateRangeWindow(MonthWindow(year, 1).start, MonthWindow(year, 12).end)
        else:
            window = MonthWindow(year, month)
        result = self.aggregate(family_id, window, kind=INCOME)
        return {
            'year': year,
            'month': month,
            'total': result.total,
            'count': result.count,
            'average': to_money(result.total / result.count) if result.count else ZERO,
            'by_source': [
                {
                    'source': group.key,
                    'total': group.total,
                    'count': group.count,
                    'percentage': result.share(group),
                }
                for group in result.groups
            ],
        }

    def recent_transactions(
        self,
        family_id: int,
        window: Window,
        filters: Optional[AggregateFilters] = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        Matching expenses and incomes merged into one list, newest first.

        Each item is a dict with id, type ('expense' or 'income'), date,
        amount, description, user_id and category (expenses) or source
        (incomes).
        """
        window = self._check_window(window)
        filters = filters or AggregateFilters()

        session = self.db_manager.get_session()
        try:
            expense_rows = filter_transactions(
                session.query(Expense, Category.name).join(Category, Category.id == Expense.category_id),
                Expense, family_id,
                start=window.start, end=window.end,
                user_id=filters.user_id, category_id=filters.category_id,
            ).all()
            income_rows = filter_transactions(
                session.query(Income), Income, family_id,
                start=window.start, end=window.end,
                user_id=filters.user_id,
            ).all()
        except Exception as e:
            logger.error(f"Failed to get recent transactions: {e}", exc_info=True)
            raise
        finally:
            session.close()

        items: List[Dict[str, Any]] = []
        for expense, category_name in expense_rows:
            items.append({
                'id': expense.id,
                'type': EXPENSE,
                'date': expense.date,
                'amount': to_money(expense.amount),
                'description': expense.description,
                'user_id': expense.user_id,
                'category': category_name,
            })
        for income in income_rows:
            items.append({
                'id': income.id,
                'type': INCOME,
                'date': income.date,
                'amount': to_money(income.amount),
                'description': income.description,
                'user_id': income.user_id,
                'source': income.source.value,
            })

        items.sort(key=lambda item: (item['date'], item['id']), reverse=True)
        if limit is not None:
            items = items[:limit]
        return items
