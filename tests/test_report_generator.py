"""
Unit tests for the text report generator.
"""

from datetime import date, datetime
from decimal import Decimal

import pandas as pd
import pytest

from analytics import AggregateResult, GroupTotal, TrendPoint
from exceptions import ReportError
from report_generator import ReportGenerator
from windows import MonthWindow


@pytest.fixture
def report_generator():
    """Create a report generator instance."""
    return ReportGenerator()


class TestFormatting:
    """Currency and percentage formatting."""

    def test_format_currency(self, report_generator):
        assert report_generator.format_currency(Decimal("1234.5")) == "1,234.50 EUR"
        assert report_generator.format_currency(None) == "0.00 EUR"
        assert ReportGenerator(currency="USD").format_currency(-20) == "-20.00 USD"

    def test_format_percentage(self, report_generator):
        assert report_generator.format_percentage(33.3333) == "33.3%"
        assert report_generator.format_percentage(None) == "0.0%"


class TestReports:
    """Rendering of the individual reports."""

    def test_empty_reports(self, report_generator):
        assert report_generator.generate_transactions_report([]) == "No transactions found."
        assert report_generator.generate_budget_report([]) == "No budgets configured."
        assert report_generator.generate_category_stats_report([]) == "No categories found."
        assert "No trend data" in report_generator.generate_monthly_trends_report([])

    def test_category_report(self, report_generator):
        result = AggregateResult(
            kind="expense",
            window=MonthWindow(2024, 3),
            total=Decimal("110.00"),
            count=3,
            groups=[
                GroupTotal(key=3, label="Home", total=Decimal("80.00"), count=1),
                GroupTotal(key=1, label="Groceries", total=Decimal("30.00"), count=2),
            ],
        )

        report = report_generator.generate_category_report(result)

        assert "EXPENSE BREAKDOWN (Mar 2024)" in report
        assert "Home" in report and "Groceries" in report
        assert "80.00 EUR" in report
        assert "72.7%" in report
        assert "TOTAL" in report

        top = report_generator.generate_category_report(result, top_n=1)
        assert "Groceries" not in top

    def test_empty_category_report(self, report_generator):
        result = AggregateResult(kind="income", window=MonthWindow(2024, 3))

        assert "No income data found for Mar 2024" in report_generator.generate_category_report(result)

    def test_monthly_trends_report(self, report_generator):
        points = [
            TrendPoint(2024, 1, "Jan 2024", Decimal("100"), Decimal("300")),
            TrendPoint(2024, 2, "Feb 2024", Decimal("300"), Decimal("300")),
        ]

        report = report_generator.generate_monthly_trends_report(points)

        assert "Jan 2024" in report
        assert "AVERAGE" in report
        assert "200.00 EUR" in report

    def test_transactions_report_truncates_description(self, report_generator):
        items = [{
            "date": datetime(2024, 3, 1),
            "type": "expense",
            "category": "Groceries",
            "description": "x" * 60,
            "amount": Decimal("5"),
        }]

        report = report_generator.generate_transactions_report(items)

        assert "2024-03-01" in report
        assert "x" * 40 + "..." in report
        assert "x" * 41 not in report

    def test_budget_reports(self, services, family, category_ids, add_expense, report_generator):
        services.budgets.create_budget(family.id, category_ids["Groceries"], 2024, 3, "100")
        add_expense("120", datetime(2024, 3, 3))

        report = report_generator.generate_budget_report(services.budgets.list_active(family.id, 2024, 3))
        summary = report_generator.generate_budget_summary_report(
            services.budgets.get_budget_summary(family.id, 2024, 3), 2024, 3
        )

        assert "Groceries" in report
        assert "exceeded" in report
        assert "-20.00 EUR" in report
        assert "BUDGET SUMMARY 2024-03" in summary
        assert "Exceeded: 1" in summary

    def test_dashboard_report(self, services, family, category_ids, add_expense, add_income, report_generator):
        services.budgets.create_budget(family.id, category_ids["Groceries"], 2024, 3, "100")
        add_expense("45", datetime(2024, 3, 3), description="Weekly shop")
        add_income("500", datetime(2024, 3, 1))

        dashboard = services.dashboard.compose_dashboard(family.id, today=date(2024, 3, 10))
        report = report_generator.generate_dashboard_report(dashboard)

        assert "DASHBOARD (Mar 2024)" in report
        assert "455.00 EUR" in report
        assert "Budget alerts" in report
        assert "Weekly shop" in report

    def test_yearly_and_category_stats_reports(self, services, family, add_expense, report_generator):
        add_expense("45", datetime(2024, 3, 3))

        yearly = report_generator.generate_yearly_report(services.analytics.get_yearly_stats(family.id, 2024))
        stats = report_generator.generate_category_stats_report(services.categories.get_category_stats(family.id))

        assert "EXPENSES 2024" in yearly
        assert "Mar 2024" in yearly
        assert "2024-03-03" in stats


class TestExport:
    """CSV export."""

    def test_export_to_csv(self, tmp_path, report_generator):
        df = pd.DataFrame({"month": [1, 2], "total": [10.0, 20.0]})
        output = tmp_path / "totals.csv"

        report_generator.export_to_csv(df, output, "totals")

        assert pd.read_csv(output)["total"].tolist() == [10.0, 20.0]

    def test_export_failure(self, tmp_path, report_generator):
        df = pd.DataFrame({"month": [1]})

        with pytest.raises(ReportError):
            report_generator.export_to_csv(df, tmp_path / "missing" / "totals.csv", "totals")
