"""
Dashboard composition for the family ledger.

Builds the single read model shown on the dashboard: headline stats,
expenses by category, the monthly trend, recent transactions and the budget
alert overlay, all scoped by the same user and date filters.
"""

import logging
from datetime import date
from typing import Any, Dict, List, Optional

from analytics import EXPENSE, INCOME, AggregateFilters, AggregateResult, AnalyticsEngine
from budgeting import BudgetManager, compute_status
from config_manager import get_setting
from utils import ZERO, percentage, to_money, whole_percentage
from windows import DateRangeWindow, MonthWindow, Window, end_of_day, parse_date

logger = logging.getLogger(__name__)


class DashboardComposer:
    """
    Composes dashboard data from the analytics engine and the budget ledger.

    Budget alerts are computed for display only: the windowed spend of each
    budget's category is compared to the budget amount, and nothing is
    written back to the budget rows.
    """

    def __init__(
        self,
        analytics: AnalyticsEngine,
        budget_manager: BudgetManager,
        config: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize the dashboard composer.

        Args:
            analytics: AnalyticsEngine used for every aggregate
            budget_manager: BudgetManager used to list active budgets
            config: Optional configuration dictionary (``dashboard`` section is used)
        """
        self.analytics = analytics
        self.budget_manager = budget_manager
        config = config or {}
        self.trend_months = int(get_setting(config, "dashboard", "trend_months"))
        self.epoch_floor = parse_date(get_setting(config, "dashboard", "epoch_floor"), "epoch_floor")

    def _resolve_window(
        self,
        start_date: Optional[Any],
        end_date: Optional[Any],
        today: date
    ) -> Window:
        """
        Resolve the dashboard window.

        No dates means the current calendar month; otherwise a missing start
        falls back to the epoch floor and a missing end to today.
        """
        if start_date is None and end_date is None:
            return MonthWindow.containing(today)
        start = parse_date(start_date, "start_date") if start_date is not None else self.epoch_floor
        end = end_of_day(parse_date(end_date, "end_date") if end_date is not None else parse_date(today))
        return DateRangeWindow(start, end)

    def compose_dashboard(
        self,
        family_id: int,
        user_id: Optional[int] = None,
        start_date: Optional[Any] = None,
        end_date: Optional[Any] = None,
        today: Optional[date] = None
    ) -> Dict[str, Any]:
        """
        Build the dashboard for a family.

        Args:
            family_id: Family to report on
            user_id: Restrict every figure to one member
            start_date: Inclusive range start (string, date or datetime)
            end_date: Inclusive range end; the whole day is included
            today: Reference date (defaults to the current date)

        Returns:
            Dictionary with stats, expenses_by_category, monthly_trend,
            recent_transactions, budget_alerts and applied_filters

        Raises:
            InvalidWindowError: If a date is malformed or the range is inverted
        """
        today = today or date.today()
        is_ranged = start_date is not None or end_date is not None
        window = self._resolve_window(start_date, end_date, today)
        filters = AggregateFilters(user_id=user_id)

        expenses = self.analytics.aggregate(family_id, window, filters, EXPENSE)
        incomes = self.analytics.aggregate(family_id, window, filters, INCOME)

        if is_ranged:
            trend = self.analytics.monthly_trend(family_id, filters, start=window.start, end=window.end)
        else:
            trend = self.analytics.monthly_trend(family_id, filters, month_count=self.trend_months, today=today)

        balance = incomes.total - expenses.total
        dashboard = {
            "stats": {
                "total_expenses": expenses.total,
                "total_income": incomes.total,
                "balance": balance,
                "savings": balance if balance > ZERO else ZERO,
            },
            "expenses_by_category": [
                {
                    "category_id": group.key,
                    "category_name": group.label,
                    "total": group.total,
                    "color": group.color,
                }
                for group in expenses.groups
            ],
            "monthly_trend": trend,
            "recent_transactions": self.analytics.recent_transactions(family_id, window, filters),
            "budget_alerts": self._budget_alerts(family_id, expenses, start_date, end_date),
            "applied_filters": {
                "user_id": user_id,
                "start_date": start_date,
                "end_date": end_date,
                "window": window.label,
                "is_filtered": bool(user_id is not None or is_ranged),
            },
        }
        logger.info(
            f"Composed dashboard for family {family_id} over {window.label}: "
            f"expenses={expenses.total} income={incomes.total}"
        )
        return dashboard

    def _budget_alerts(
        self,
        family_id: int,
        expenses: AggregateResult,
        start_date: Optional[Any],
        end_date: Optional[Any]
    ) -> List[Dict[str, Any]]:
        """Overlay the windowed spend of each category on every active budget."""
        spent_by_category = {group.key: group.total for group in expenses.groups}
        alerts = []
        for budget in self.budget_manager.list_all_active(family_id):
            spent = spent_by_category.get(budget.category_id, ZERO)
            used = percentage(spent, budget.amount)
            alerts.append({
                "budget_id": budget.id,
                "category_id": budget.category_id,
                "category_name": budget.category.name if budget.category is not None else None,
                "color": budget.category.color if budget.category is not None else None,
                "period": budget.period,
                "amount": to_money(budget.amount),
                "alert_threshold": budget.alert_threshold,
                "spent": spent,
                "percentage_used": whole_percentage(used),
                "status": compute_status(used, budget.alert_threshold).value,
                "period_info": {
                    "is_filtered": start_date is not None or end_date is not None,
                    "start_date": start_date,
                    "end_date": end_date,
                },
            })
        return alerts
