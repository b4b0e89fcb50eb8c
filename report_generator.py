"""
Report generator module for formatting ledger data.

This module turns analytics, budget and dashboard results into text tables
for the command line, and exports DataFrames to CSV.
"""

import logging
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import pandas as pd
from tabulate import tabulate

from analytics import AggregateResult, TrendPoint
from database_ops import Budget
from exceptions import ReportError

logger = logging.getLogger(__name__)

Number = Union[Decimal, float, int]


class ReportGenerator:
    """
    Generate formatted text reports.

    Money is shown with two decimals and the family currency code;
    percentages are rounded here and nowhere earlier.
    """

    def __init__(self, currency: str = "EUR", tablefmt: str = "grid"):
        """
        Initialize the report generator.

        Args:
            currency: ISO currency code appended to amounts
            tablefmt: tabulate table format
        """
        self.currency = currency
        self.tablefmt = tablefmt
        logger.debug("Report generator initialized (currency=%s)", currency)

    def format_currency(self, amount: Optional[Number]) -> str:
        """
        Format amount as currency string.

        Args:
            amount: Amount to format (None is shown as zero)

        Returns:
            Formatted currency string, e.g. '1,234.50 EUR'
        """
        return f"{float(amount or 0):,.2f} {self.currency}"

    def format_percentage(self, percentage: Optional[Number]) -> str:
        return f"{float(percentage or 0):.1f}%"

    def _table(self, rows: List[List[Any]], headers: List[str]) -> str:
        return tabulate(rows, headers=headers, tablefmt=self.tablefmt, showindex=False)

    @staticmethod
    def _banner(title: str, width: int = 80) -> List[str]:
        return ["=" * width, title, "=" * width]

    def generate_dashboard_report(self, dashboard: Dict[str, Any], recent_limit: int = 10) -> str:
        """
        Render the dashboard read model.

        Args:
            dashboard: Output of ``DashboardComposer.compose_dashboard``
            recent_limit: Maximum number of recent transactions shown

        Returns:
            Formatted text report
        """
        stats = dashboard["stats"]
        filters = dashboard.get("applied_filters", {})
        lines = self._banner(f"DASHBOARD ({filters.get('window', '')})")
        lines.extend([
            "",
            f"Total Income:    {self.format_currency(stats['total_income']):>20}",
            f"Total Expenses:  {self.format_currency(stats['total_expenses']):>20}",
            "-" * 80,
            f"Balance:         {self.format_currency(stats['balance']):>20}",
            f"Savings:         {self.format_currency(stats['savings']):>20}",
            "",
        ])

        categories = dashboard.get("expenses_by_category", [])
        if categories:
            lines.append("Expenses by category")
            lines.append(self._table(
                [[item["category_name"], self.format_currency(item["total"])] for item in categories],
                ["Category", "Total"],
            ))
            lines.append("")

        trend = dashboard.get("monthly_trend", [])
        if trend:
            lines.append(self.generate_monthly_trends_report(trend))
            lines.append("")

        alerts = dashboard.get("budget_alerts", [])
        if alerts:
            lines.append("Budget alerts")
            lines.append(self._table(
                [
                    [
                        alert["category_name"],
                        alert["period"],
                        self.format_currency(alert["amount"]),
                        self.format_currency(alert["spent"]),
                        f"{alert['percentage_used']}%",
                        alert["status"],
                    ]
                    for alert in alerts
                ],
                ["Category", "Period", "Budget", "Spent", "Used", "Status"],
            ))
            lines.append("")

        recent = dashboard.get("recent_transactions", [])[:recent_limit]
        if recent:
            lines.append("Recent transactions")
            lines.append(self.generate_transactions_report(recent))

        return "\n".join(lines)

    def generate_transactions_report(self, items: Iterable[Dict[str, Any]]) -> str:
        """Render merged transaction dicts (as produced by ``recent_transactions``)."""
        rows = []
        for item in items:
            label = item.get("category") or item.get("source") or ""
            description = item["description"]
            if len(description) > 40:
                description = description[:40] + "..."
            rows.append([
                item["date"].strftime("%Y-%m-%d"),
                item["type"],
                label,
                description,
                self.format_currency(item["amount"]),
            ])
        if not rows:
            return "No transactions found."
        return self._table(rows, ["Date", "Type", "Category/Source", "Description", "Amount"])

    def generate_category_report(self, result: AggregateResult, top_n: Optional[int] = None) -> str:
        """
        Generate text report for a grouped aggregate.

        Args:
            result: AggregateResult from the analytics engine
            top_n: Optional limit to the top N groups

        Returns:
            Formatted text report
        """
        df = result.to_dataframe()
        if df.empty:
            return f"\nNo {result.kind} data found for {result.window.label}\n"
        if top_n:
            df = df.head(top_n)

        rows = [
            [row["label"], self.format_currency(row["total"]), int(row["count"]), self.format_percentage(row["percentage"])]
            for _, row in df.iterrows()
        ]
        rows.append(["TOTAL", self.format_currency(result.total), result.count, "100.0%"])
        lines = self._banner(f"{result.kind.upper()} BREAKDOWN ({result.window.label})")
        lines.append(self._table(rows, ["Group", "Total", "Count", "Percentage"]))
        return "\n".join(lines)

    def generate_monthly_trends_report(self, points: List[TrendPoint]) -> str:
        """Render a monthly trend with a closing average row."""
        if not points:
            return "\nNo trend data found\n"

        df = pd.DataFrame(
            [
                {
                    "period": point.label,
                    "income": float(point.total_incomes),
                    "expenses": float(point.total_expenses),
                    "net": float(point.net),
                }
                for point in points
            ]
        )
        rows = [
            [
                row["period"],
                self.format_currency(row["income"]),
                self.format_currency(row["expenses"]),
                self.format_currency(row["net"]),
            ]
            for _, row in df.iterrows()
        ]
        rows.append([
            "AVERAGE",
            self.format_currency(df["income"].mean()),
            self.format_currency(df["expenses"].mean()),
            self.format_currency(df["net"].mean()),
        ])
        lines = ["Monthly trend", self._table(rows, ["Period", "Income", "Expenses", "Net"])]
        return "\n".join(lines)

    def generate_budget_report(self, budgets: List[Budget]) -> str:
        """Render budgets with their cached figures."""
        if not budgets:
            return "No budgets configured."
        rows = [
            [
                budget.id,
                budget.period,
                budget.category.name if budget.category is not None else budget.category_id,
                self.format_currency(budget.amount),
                self.format_currency(budget.spent),
                self.format_currency(budget.remaining),
                self.format_percentage(budget.percentage_used),
                budget.status.value,
                "yes" if budget.auto_renew else "no",
            ]
            for budget in budgets
        ]
        return self._table(
            rows,
            ["ID", "Period", "Category", "Budget", "Spent", "Remaining", "Used", "Status", "Auto-renew"],
        )

    def generate_budget_summary_report(self, summary: Dict[str, Any], year: int, month: int) -> str:
        lines = self._banner(f"BUDGET SUMMARY {year}-{month:02d}")
        lines.extend([
            "",
            f"Total Budget:     {self.format_currency(summary['total_budget']):>20}",
            f"Total Spent:      {self.format_currency(summary['total_spent']):>20}",
            f"Total Remaining:  {self.format_currency(summary['total_remaining']):>20}",
            f"Average Usage:    {self.format_percentage(summary['average_usage']):>20}",
            "-" * 80,
            f"Exceeded: {summary['budgets_exceeded']}   Warning: {summary['budgets_warning']}   "
            f"Safe: {summary['budgets_safe']}   Categories: {summary['categories']}",
            "=" * 80,
        ])
        return "\n".join(lines)

    def generate_category_stats_report(self, stats: List[Dict[str, Any]]) -> str:
        """Render per-category totals and last use."""
        if not stats:
            return "No categories found."
        rows = [
            [
                item["id"],
                item["name"],
                "default" if item["is_default"] else "family",
                self.format_currency(item["total_expenses"]),
                item["last_used"].strftime("%Y-%m-%d") if item["last_used"] else "-",
            ]
            for item in stats
        ]
        return self._table(rows, ["ID", "Category", "Scope", "Total", "Last used"])

    def generate_yearly_report(self, yearly: Dict[str, Any]) -> str:
        """Render the per-month totals and the per-group pivot of a year."""
        months: pd.DataFrame = yearly["months"]
        rows = [
            [row["label"], self.format_currency(row["total"]), int(row["count"])]
            for _, row in months.iterrows()
        ]
        rows.append(["TOTAL", self.format_currency(yearly["total"]), yearly["count"]])
        lines = self._banner(f"{yearly['kind'].upper()}S {yearly['year']}")
        lines.append(self._table(rows, ["Month", "Total", "Count"]))

        breakdown: pd.DataFrame = yearly["breakdown"]
        if not breakdown.empty and len(breakdown.columns):
            lines.append("")
            lines.append(tabulate(
                breakdown.round(2), headers="keys", tablefmt=self.tablefmt, floatfmt=",.2f"
            ))
        return "\n".join(lines)

    def export_to_csv(
        self,
        df: pd.DataFrame,
        output_path: Path,
        report_name: str = "report"
    ) -> None:
        """
        Export DataFrame to CSV file.

        Args:
            df: DataFrame to export
            output_path: Output file path
            report_name: Name of the report for logging

        Raises:
            ReportError: If the file cannot be written
        """
        try:
            df.to_csv(output_path, index=False)
            logger.info(f"Exported {report_name} to {output_path}")
        except OSError as e:
            logger.error(f"Failed to export {report_name}: {e}")
            raise ReportError(
                f"Failed to export {report_name}",
                details={"path": str(output_path)},
                original_error=e
            ) from e
