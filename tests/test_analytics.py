"""
Unit tests for the analytics engine.

Tests windowed aggregation, grouping and ordering, monthly trends and the
monthly / yearly / user / income statistics.
"""

from datetime import date, datetime
from decimal import Decimal

import pytest

from analytics import EXPENSE, INCOME, AggregateFilters, TrendPoint
from exceptions import AnalyticsError, InvalidWindowError
from windows import DateRangeWindow, MonthWindow

MARCH = MonthWindow(2024, 3)


@pytest.fixture
def march_ledger(family, admin, member, add_expense, add_income):
    """A small March 2024 ledger with a few boundary transactions around it."""
    add_expense("10", datetime(2024, 3, 1, 0, 0), description="bread")
    add_expense("20", datetime(2024, 3, 12), user=member, description="fruit")
    add_expense("30", datetime(2024, 3, 20), category="Transport", description="train")
    add_expense("50", datetime(2024, 3, 31, 23, 59, 59), category="Home", description="repair")
    add_expense("99", datetime(2024, 2, 29, 23, 59), description="february")
    add_expense("77", datetime(2024, 4, 1), description="april")
    add_income("1000", datetime(2024, 3, 27), source="salary")
    add_income("500", datetime(2024, 3, 28), source="salary", user=member)
    add_income("50", datetime(2024, 3, 5), source="gift")


class TestAggregate:
    """Tests for AnalyticsEngine.aggregate."""

    def test_empty_window_is_zeroed(self, services, family):
        result = services.analytics.aggregate(family.id, MARCH)

        assert result.total == Decimal("0.00")
        assert result.count == 0
        assert result.groups == []
        assert result.to_dataframe().empty

    def test_groups_by_category_sorted_by_total_then_label(self, services, family, march_ledger):
        result = services.analytics.aggregate(family.id, MARCH)

        assert [(g.label, g.total, g.count) for g in result.groups] == [
            ("Home", Decimal("50.00"), 1),
            ("Groceries", Decimal("30.00"), 2),
            ("Transport", Decimal("30.00"), 1),
        ]
        assert result.total == Decimal("110.00")
        assert result.count == 4
        assert result.groups[0].color == "#8B5CF6"

    def test_month_bounds_are_inclusive(self, services, family, march_ledger):
        result = services.analytics.aggregate(family.id, MARCH)

        assert Decimal("99.00") not in [g.total for g in result.groups]
        assert result.total == sum((g.total for g in result.groups), Decimal("0"))

    def test_date_range_window(self, services, family, march_ledger):
        window = DateRangeWindow.from_values("2024-02-29", "2024-03-01")

        result = services.analytics.aggregate(family.id, window)

        assert result.total == Decimal("109.00")

    def test_user_and_category_filters(self, services, family, member, category_ids, march_ledger):
        by_user = services.analytics.aggregate(family.id, MARCH, AggregateFilters(user_id=member.id))
        by_category = services.analytics.aggregate(
            family.id, MARCH, AggregateFilters(category_id=category_ids["Groceries"])
        )

        assert by_user.total == Decimal("20.00")
        assert [g.label for g in by_category.groups] == ["Groceries"]
        assert by_category.total == Decimal("30.00")

    def test_incomes_grouped_by_source(self, services, family, march_ledger):
        result = services.analytics.aggregate(family.id, MARCH, kind=INCOME)

        assert [(g.key, g.total, g.count) for g in result.groups] == [
            ("salary", Decimal("1500.00"), 2),
            ("gift", Decimal("50.00"), 1),
        ]
        assert result.groups[0].color is None

    def test_deleted_expenses_are_excluded(self, services, family, admin, add_expense):
        expense = add_expense("10", datetime(2024, 3, 2))
        services.ledger.delete_expense(family.id, expense.id, admin.id)

        assert services.analytics.aggregate(family.id, MARCH).total == Decimal("0.00")

    def test_other_family_is_isolated(self, services, other_family, march_ledger):
        assert services.analytics.aggregate(other_family.id, MARCH).count == 0

    def test_unknown_kind(self, services, family):
        with pytest.raises(AnalyticsError):
            services.analytics.aggregate(family.id, MARCH, kind="transfer")

    def test_invalid_window(self, services, family):
        with pytest.raises(InvalidWindowError):
            services.analytics.aggregate(family.id, "2024-03")

    def test_to_dataframe_shares(self, services, family, march_ledger):
        df = services.analytics.aggregate(family.id, MARCH).to_dataframe()

        assert list(df.columns) == ['key', 'label', 'total', 'count', 'color', 'percentage']
        assert df['percentage'].sum() == pytest.approx(100.0)
        assert df.iloc[0]['percentage'] == pytest.approx(50 / 110 * 100)


class TestMonthlyTrend:
    """Tests for AnalyticsEngine.monthly_trend."""

    def test_trailing_months(self, services, family, march_ledger):
        points = services.analytics.monthly_trend(family.id, month_count=6, today=date(2024, 3, 10))

        assert [p.label for p in points] == ["Oct 2023", "Nov 2023", "Dec 2023", "Jan 2024", "Feb 2024", "Mar 2024"]
        assert points[-2].total_expenses == Decimal("99.00")
        assert points[-1].total_expenses == Decimal("110.00")
        assert points[-1].total_incomes == Decimal("1550.00")
        assert points[-1].net == Decimal("1440.00")

    def test_range_counts_boundary_months_whole(self, services, family, add_expense):
        add_expense("5", datetime(2024, 1, 2))
        add_expense("7", datetime(2024, 3, 25))

        points = services.analytics.monthly_trend(family.id, start="2024-01-15", end="2024-03-10")

        assert [(p.year, p.month) for p in points] == [(2024, 1), (2024, 2), (2024, 3)]
        assert [p.total_expenses for p in points] == [Decimal("5.00"), Decimal("0.00"), Decimal("7.00")]
        assert all(isinstance(p, TrendPoint) for p in points)

    def test_single_bound_rejected(self, services, family):
        with pytest.raises(InvalidWindowError):
            services.analytics.monthly_trend(family.id, start="2024-01-01")

    def test_inverted_range_rejected(self, services, family):
        with pytest.raises(InvalidWindowError):
            services.analytics.monthly_trend(family.id, start="2024-03-01", end="2024-01-01")


class TestStatistics:
    """Monthly, yearly, user and income statistics."""

    def test_monthly_stats(self, services, family, march_ledger):
        stats = services.analytics.get_monthly_stats(family.id, 2024, 3)

        assert stats['total'] == Decimal("110.00")
        assert stats['count'] == 4
        assert stats['average'] == Decimal("27.50")
        groceries = next(g for g in stats['groups'] if g['label'] == "Groceries")
        assert groceries['average'] == Decimal("15.00")

    def test_yearly_stats(self, services, family, march_ledger):
        yearly = services.analytics.get_yearly_stats(family.id, 2024)

        months = yearly['months']
        assert len(months) == 12
        assert list(months.columns) == ['month', 'label', 'total', 'count']
        assert months['total'].tolist()[:4] == [0.0, 99.0, 110.0, 77.0]
        assert months.iloc[2]['label'] == "Mar 2024"
        assert yearly['total'] == Decimal("286.00")
        assert yearly['count'] == 6

        breakdown = yearly['breakdown']
        assert sorted(breakdown.columns) == ["Groceries", "Home", "Transport"]
        assert breakdown.loc[3, "Transport"] == pytest.approx(30.0)
        assert breakdown.loc[2, "Groceries"] == pytest.approx(99.0)
        assert breakdown.loc[12, "Home"] == 0.0

    def test_yearly_stats_empty_year(self, services, family):
        yearly = services.analytics.get_yearly_stats(family.id, 2023, INCOME)

        assert yearly['count'] == 0
        assert len(yearly['months']) == 12
        assert len(yearly['breakdown'].index) == 12
        assert yearly['breakdown'].columns.empty

    def test_yearly_income_breakdown(self, services, family, march_ledger):
        yearly = services.analytics.get_yearly_stats(family.id, 2024, INCOME)

        assert sorted(yearly['breakdown'].columns) == ["gift", "salary"]
        assert yearly['total'] == Decimal("1550.00")

    def test_user_stats(self, services, family, member, march_ledger):
        stats = services.analytics.get_user_stats(family.id, member.id, "2024-03-01", "2024-03-31")

        assert stats['total_expenses'] == Decimal("20.00")
        assert stats['total_incomes'] == Decimal("500.00")
        assert stats['expense_count'] == 1
        assert stats['window'] == "2024-03-01..2024-03-31"

    def test_income_stats(self, services, family, march_ledger):
        stats = services.analytics.get_income_stats(family.id, 2024, 3)
        yearly = services.analytics.get_income_stats(family.id, 2024)

        assert stats['total'] == Decimal("1550.00")
        assert stats['average'] == Decimal("516.67")
        assert stats['by_source'][0]['source'] == "salary"
        assert stats['by_source'][0]['percentage'] == pytest.approx(1500 / 1550 * 100)
        assert yearly['total'] == stats['total']


class TestRecentTransactions:
    """Tests for the merged recent transaction list."""

    def test_merged_newest_first(self, services, family, march_ledger):
        items = services.analytics.recent_transactions(family.id, MARCH)

        assert len(items) == 7
        assert [item['type'] for item in items[:3]] == [EXPENSE, INCOME, INCOME]
        assert items[0]['description'] == "repair"
        assert items[0]['category'] == "Home"
        assert items[1]['source'] == "salary"

    def test_limit_and_filters(self, services, family, member, march_ledger):
        items = services.analytics.recent_transactions(
            family.id, MARCH, AggregateFilters(user_id=member.id), limit=1
        )

        assert len(items) == 1
        assert items[0]['type'] == INCOME
        assert items[0]['amount'] == Decimal("500.00")
