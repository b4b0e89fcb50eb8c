"""
Command line entry point for the family finance ledger.

This module wires the services together (ledger store, category registry,
budget manager, reconciliation dispatcher, analytics and dashboard) and
exposes them through argparse subcommands:

1. init / family / user: bootstrap the database and tenants
2. category / expense / income / budget: record and manage data
3. dashboard / stats: read-only reports
"""

import argparse
import logging
import sys
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from analytics import EXPENSE, INCOME, AggregateFilters, AnalyticsEngine
from budgeting import BudgetManager
from categories import CategoryRegistry
from config_manager import load_config
from dashboard import DashboardComposer
from database_ops import DatabaseManager, IncomeSource, RecurringFrequency, UserRole
from exceptions import FinanceAppError
from ledger import LedgerStore
from reconciliation import ReconciliationDispatcher
from report_generator import ReportGenerator
from utils import ensure_data_dir, resolve_connection_string, resolve_log_path
from windows import MonthWindow, end_of_day, parse_date

# Configure module-level logger
logger = logging.getLogger(__name__)


def setup_logging(config: dict) -> None:
    """
    Configure logging based on config settings.

    Args:
        config: Configuration dictionary with logging settings
    """
    log_config = config.get("logging", {}) or {}
    log_level = getattr(logging, str(log_config.get("level") or "INFO").upper(), logging.INFO)
    log_format = log_config.get("format") or "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    log_file = log_config.get("file")

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        try:
            log_path = resolve_log_path(log_file)
        except OSError as exc:
            raise RuntimeError(f"Unable to prepare log file path '{log_file}': {exc}") from exc
        handlers.append(logging.FileHandler(log_path))

    logging.basicConfig(
        level=log_level,
        format=log_format,
        handlers=handlers,
        force=True
    )


@dataclass
class Services:
    """The wired service graph shared by every command."""
    db_manager: DatabaseManager
    categories: CategoryRegistry
    budgets: BudgetManager
    dispatcher: ReconciliationDispatcher
    ledger: LedgerStore
    analytics: AnalyticsEngine
    dashboard: DashboardComposer
    reports: ReportGenerator


def build_services(db_manager: DatabaseManager, config: Optional[Dict[str, Any]] = None) -> Services:
    """
    Wire the services around one DatabaseManager.

    The ledger receives a dispatcher that reconciles budgets and category
    caches after every expense mutation.
    """
    config = config or {}
    categories = CategoryRegistry(db_manager)
    budgets = BudgetManager(db_manager, config)
    dispatcher = ReconciliationDispatcher(budgets, categories)
    analytics = AnalyticsEngine(db_manager)
    return Services(
        db_manager=db_manager,
        categories=categories,
        budgets=budgets,
        dispatcher=dispatcher,
        ledger=LedgerStore(db_manager, dispatcher),
        analytics=analytics,
        dashboard=DashboardComposer(analytics, budgets, config),
        reports=ReportGenerator(currency=config.get("currency") or "EUR"),
    )


def _today_period(args: argparse.Namespace) -> tuple:
    today = date.today()
    year = args.year if getattr(args, "year", None) is not None else today.year
    month = args.month if getattr(args, "month", None) is not None else today.month
    return year, month


def _range_args(args: argparse.Namespace) -> tuple:
    """Parse optional --start/--end into inclusive datetime bounds."""
    start = parse_date(args.start, "start_date") if args.start else None
    end = end_of_day(parse_date(args.end, "end_date")) if args.end else None
    return start, end


def _add_period_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--year", type=int, help="Year (default: current year)")
    parser.add_argument("--month", type=int, help="Month 1-12 (default: current month)")


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with every subcommand."""
    parser = argparse.ArgumentParser(
        description="Family finance ledger",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        default=None,
        help="Path to configuration file (default: config.yaml or $FINANCE_LEDGER_CONFIG)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("init", help="Create tables and seed default categories")

    # Family / user
    family_parser = subparsers.add_parser("family", help="Manage families")
    family_sub = family_parser.add_subparsers(dest="family_action", help="Family actions")
    fam_create = family_sub.add_parser("create", help="Create a family")
    fam_create.add_argument("--name", required=True, help="Family name")
    fam_create.add_argument("--currency", default=None, help="ISO currency code (default: config currency)")
    fam_members = family_sub.add_parser("members", help="List family members")
    fam_members.add_argument("--family", type=int, required=True, help="Family ID")

    user_parser = subparsers.add_parser("user", help="Manage users")
    user_sub = user_parser.add_subparsers(dest="user_action", help="User actions")
    usr_create = user_sub.add_parser("create", help="Create a user")
    usr_create.add_argument("--family", type=int, required=True, help="Family ID")
    usr_create.add_argument("--name", required=True, help="Display name")
    usr_create.add_argument("--email", required=True, help="Unique email")
    usr_create.add_argument("--admin", action="store_true", help="Make the user a family admin")

    # Categories
    category_parser = subparsers.add_parser("category", aliases=["cat"], help="Manage categories")
    category_sub = category_parser.add_subparsers(dest="category_action", help="Category actions")
    cat_list = category_sub.add_parser("list", help="List categories visible to a family")
    cat_list.add_argument("--family", type=int, required=True, help="Family ID")
    cat_create = category_sub.add_parser("create", help="Create a family category")
    cat_create.add_argument("--family", type=int, required=True, help="Family ID")
    cat_create.add_argument("--name", required=True, help="Category name")
    cat_create.add_argument("--description", help="Description")
    cat_create.add_argument("--color", default="#3B82F6", help="Hex color")
    cat_create.add_argument("--icon", default="shopping-cart", help="Icon name")
    cat_stats = category_sub.add_parser("stats", help="Show per-category totals")
    cat_stats.add_argument("--family", type=int, required=True, help="Family ID")

    # Expenses
    expense_parser = subparsers.add_parser("expense", aliases=["exp"], help="Record expenses")
    expense_sub = expense_parser.add_subparsers(dest="expense_action", help="Expense actions")
    exp_add = expense_sub.add_parser("add", help="Record an expense")
    exp_add.add_argument("--family", type=int, required=True, help="Family ID")
    exp_add.add_argument("--user", type=int, required=True, help="Acting user ID")
    exp_add.add_argument("--amount", required=True, help="Amount")
    exp_add.add_argument("--description", required=True, help="Description")
    exp_add.add_argument("--category", type=int, required=True, help="Category ID")
    exp_add.add_argument("--date", help="Date (YYYY-MM-DD, default: now)")
    exp_add.add_argument("--merchant", help="Merchant")
    exp_add.add_argument("--notes", help="Notes")
    exp_update = expense_sub.add_parser("update", help="Update an expense")
    exp_update.add_argument("id", type=int, help="Expense ID")
    exp_update.add_argument("--family", type=int, required=True, help="Family ID")
    exp_update.add_argument("--user", type=int, required=True, help="Acting user ID")
    exp_update.add_argument("--amount", help="New amount")
    exp_update.add_argument("--description", help="New description")
    exp_update.add_argument("--category", type=int, help="New category ID")
    exp_update.add_argument("--date", help="New date (YYYY-MM-DD)")
    exp_delete = expense_sub.add_parser("delete", help="Delete an expense")
    exp_delete.add_argument("id", type=int, help="Expense ID")
    exp_delete.add_argument("--family", type=int, required=True, help="Family ID")
    exp_delete.add_argument("--user", type=int, required=True, help="Acting user ID")
    exp_list = expense_sub.add_parser("list", help="List expenses")
    exp_list.add_argument("--family", type=int, required=True, help="Family ID")
    exp_list.add_argument("--user", type=int, help="Only this user's expenses")
    exp_list.add_argument("--category", type=int, help="Only this category")
    exp_list.add_argument("--start", help="Start date (YYYY-MM-DD)")
    exp_list.add_argument("--end", help="End date (YYYY-MM-DD)")
    exp_list.add_argument("--limit", type=int, default=50, help="Maximum rows (default: 50)")

    # Incomes
    income_parser = subparsers.add_parser("income", aliases=["inc"], help="Record incomes")
    income_sub = income_parser.add_subparsers(dest="income_action", help="Income actions")
    inc_add = income_sub.add_parser("add", help="Record an income")
    inc_add.add_argument("--family", type=int, required=True, help="Family ID")
    inc_add.add_argument("--user", type=int, required=True, help="Acting user ID")
    inc_add.add_argument("--amount", required=True, help="Amount")
    inc_add.add_argument("--description", required=True, help="Description")
    inc_add.add_argument("--source", choices=[s.value for s in IncomeSource], default="other", help="Income source")
    inc_add.add_argument("--date", help="Date (YYYY-MM-DD, default: now)")
    inc_add.add_argument("--recurring", choices=[f.value for f in RecurringFrequency], help="Recurrence frequency")
    inc_add.add_argument("--interval", type=int, default=1, help="Recurrence interval (default: 1)")
    inc_add.add_argument("--day-of-month", type=int, help="Day of month for monthly recurrences")
    inc_add.add_argument("--until", help="Recurrence end date (YYYY-MM-DD)")
    inc_list = income_sub.add_parser("list", help="List incomes")
    inc_list.add_argument("--family", type=int, required=True, help="Family ID")
    inc_list.add_argument("--user", type=int, help="Only this user's incomes")
    inc_list.add_argument("--source", choices=[s.value for s in IncomeSource], help="Only this source")
    inc_list.add_argument("--start", help="Start date (YYYY-MM-DD)")
    inc_list.add_argument("--end", help="End date (YYYY-MM-DD)")
    inc_list.add_argument("--limit", type=int, default=50, help="Maximum rows (default: 50)")
    inc_process = income_sub.add_parser("process-recurring", help="Create due recurring incomes")
    inc_process.add_argument("--family", type=int, help="Only this family")
    inc_process.add_argument("--today", help="Reference date (YYYY-MM-DD, default: today)")

    # Budgets
    budget_parser = subparsers.add_parser("budget", aliases=["bud"], help="Manage budgets")
    budget_sub = budget_parser.add_subparsers(dest="budget_action", help="Budget actions")
    bud_create = budget_sub.add_parser("create", help="Create a budget")
    bud_create.add_argument("--family", type=int, required=True, help="Family ID")
    bud_create.add_argument("--user", type=int, help="Acting admin user ID")
    bud_create.add_argument("--category", type=int, required=True, help="Category ID")
    bud_create.add_argument("--amount", required=True, help="Budget amount")
    bud_create.add_argument("--threshold", type=int, help="Alert threshold percentage")
    bud_create.add_argument("--no-auto-renew", action="store_true", help="Do not copy into the next month")
    bud_create.add_argument("--notes", default="", help="Notes")
    _add_period_args(bud_create)
    bud_list = budget_sub.add_parser("list", help="List budgets (refreshed)")
    bud_list.add_argument("--family", type=int, required=True, help="Family ID")
    _add_period_args(bud_list)
    bud_update = budget_sub.add_parser("update", help="Update a budget")
    bud_update.add_argument("id", type=int, help="Budget ID")
    bud_update.add_argument("--family", type=int, required=True, help="Family ID")
    bud_update.add_argument("--user", type=int, required=True, help="Acting admin user ID")
    bud_update.add_argument("--amount", help="New amount")
    bud_update.add_argument("--threshold", type=int, help="New alert threshold")
    bud_update.add_argument("--reason", default="Manual update", help="History reason")
    bud_delete = budget_sub.add_parser("delete", help="Delete a budget")
    bud_delete.add_argument("id", type=int, help="Budget ID")
    bud_delete.add_argument("--family", type=int, required=True, help="Family ID")
    bud_delete.add_argument("--user", type=int, help="Acting admin user ID")
    bud_summary = budget_sub.add_parser("summary", help="Summarize a month's budgets")
    bud_summary.add_argument("--family", type=int, required=True, help="Family ID")
    _add_period_args(bud_summary)
    bud_auto = budget_sub.add_parser("auto-create", help="Copy auto-renewing budgets from the previous month")
    bud_auto.add_argument("--family", type=int, required=True, help="Family ID")
    bud_auto.add_argument("--user", type=int, help="Acting admin user ID")
    _add_period_args(bud_auto)
    bud_refresh = budget_sub.add_parser("refresh", help="Recompute a month's budget figures")
    bud_refresh.add_argument("--family", type=int, required=True, help="Family ID")
    _add_period_args(bud_refresh)

    # Dashboard / stats
    dash_parser = subparsers.add_parser("dashboard", aliases=["dash"], help="Show the dashboard")
    dash_parser.add_argument("--family", type=int, required=True, help="Family ID")
    dash_parser.add_argument("--user", type=int, help="Only this user's figures")
    dash_parser.add_argument("--start", help="Start date (YYYY-MM-DD)")
    dash_parser.add_argument("--end", help="End date (YYYY-MM-DD)")

    stats_parser = subparsers.add_parser("stats", help="Monthly and yearly statistics")
    stats_sub = stats_parser.add_subparsers(dest="stats_action", help="Statistics")
    st_monthly = stats_sub.add_parser("monthly", help="Per-category (or per-source) totals of a month")
    st_monthly.add_argument("--family", type=int, required=True, help="Family ID")
    st_monthly.add_argument("--kind", choices=[EXPENSE, INCOME], default=EXPENSE, help="Transaction kind")
    _add_period_args(st_monthly)
    st_yearly = stats_sub.add_parser("yearly", help="Per-month totals of a year")
    st_yearly.add_argument("--family", type=int, required=True, help="Family ID")
    st_yearly.add_argument("--kind", choices=[EXPENSE, INCOME], default=EXPENSE, help="Transaction kind")
    st_yearly.add_argument("--year", type=int, help="Year (default: current year)")
    st_yearly.add_argument("--csv", help="Also export the monthly totals to this CSV file")

    return parser


def handle_init_command(args: argparse.Namespace, services: Services) -> None:
    services.db_manager.create_tables()
    created = services.categories.create_default_categories()
    print(f"Database ready ({created} default categories created)")


def handle_family_command(args: argparse.Namespace, services: Services, config: dict) -> None:
    if args.family_action == "create":
        family = services.db_manager.create_family(args.name, args.currency or config.get("currency") or "EUR")
        print(f"Created family {family.id}: {family.name} ({family.currency})")
    elif args.family_action == "members":
        for user in services.db_manager.get_family_members(args.family):
            print(f"{user.id:>5}  {user.name:<25} {user.email:<30} {user.role.value}")
    else:
        raise FinanceAppError("Invalid family action")


def handle_user_command(args: argparse.Namespace, services: Services) -> None:
    if args.user_action != "create":
        raise FinanceAppError("Invalid user action")
    role = UserRole.ADMIN if args.admin else UserRole.MEMBER
    user = services.db_manager.create_user(args.name, args.email, family_id=args.family, role=role)
    print(f"Created user {user.id}: {user.name} ({role.value}) in family {args.family}")


def handle_category_command(args: argparse.Namespace, services: Services) -> None:
    registry = services.categories
    if args.category_action == "list":
        for category in registry.get_categories_for_family(args.family):
            scope = "default" if category.is_default else "family"
            print(f"{category.id:>5}  {category.name:<20} {scope:<8} {category.color}")
    elif args.category_action == "create":
        category = registry.create_category(
            args.family, args.name, description=args.description, color=args.color, icon=args.icon
        )
        print(f"Created category {category.id}: {category.name}")
    elif args.category_action == "stats":
        print(services.reports.generate_category_stats_report(registry.get_category_stats(args.family)))
    else:
        raise FinanceAppError("Invalid category action")


def handle_expense_command(args: argparse.Namespace, services: Services) -> None:
    ledger = services.ledger
    if args.expense_action == "add":
        expense = ledger.create_expense(
            args.family, args.user, args.amount, args.description, args.category,
            expense_date=args.date, notes=args.notes, merchant=args.merchant,
        )
        print(f"Recorded expense {expense.id}: {services.reports.format_currency(expense.amount)}")
    elif args.expense_action == "update":
        expense = ledger.update_expense(
            args.family, args.id, args.user,
            amount=args.amount, description=args.description,
            category_id=args.category, expense_date=args.date,
        )
        print(f"Updated expense {expense.id}")
    elif args.expense_action == "delete":
        ledger.delete_expense(args.family, args.id, args.user)
        print(f"Deleted expense {args.id}")
    elif args.expense_action == "list":
        start, end = _range_args(args)
        expenses = ledger.list_expenses(
            args.family,
            start=start,
            end=end,
            user_id=args.user,
            category_id=args.category,
            limit=args.limit,
        )
        print(services.reports.generate_transactions_report([ledger.describe(e) for e in expenses]))
    else:
        raise FinanceAppError("Invalid expense action")


def handle_income_command(args: argparse.Namespace, services: Services) -> None:
    ledger = services.ledger
    if args.income_action == "add":
        income = ledger.create_income(
            args.family, args.user, args.amount, args.description,
            income_date=args.date, source=args.source,
            is_recurring=args.recurring is not None,
            recurring_frequency=args.recurring,
            recurring_interval=args.interval,
            recurring_day_of_month=args.day_of_month,
            recurring_end_date=args.until,
        )
        print(f"Recorded income {income.id}: {services.reports.format_currency(income.amount)}")
        if income.next_occurrence:
            print(f"Next occurrence: {income.next_occurrence.date()}")
    elif args.income_action == "list":
        start, end = _range_args(args)
        incomes = ledger.list_incomes(
            args.family,
            start=start,
            end=end,
            user_id=args.user,
            source=args.source,
            limit=args.limit,
        )
        print(services.reports.generate_transactions_report([ledger.describe(i) for i in incomes]))
    elif args.income_action == "process-recurring":
        today = date.fromisoformat(args.today) if args.today else None
        created = ledger.process_recurring_incomes(today=today, family_id=args.family)
        print(f"Created {len(created)} recurring income(s)")
    else:
        raise FinanceAppError("Invalid income action")


def handle_budget_command(args: argparse.Namespace, services: Services) -> None:
    budgets = services.budgets
    reports = services.reports
    if args.budget_action == "create":
        year, month = _today_period(args)
        budget = budgets.create_budget(
            args.family, args.category, year, month, args.amount,
            alert_threshold=args.threshold,
            auto_renew=not args.no_auto_renew,
            notes=args.notes,
            created_by=args.user,
        )
        print(f"Created budget {budget.id} for {budget.category.name} {budget.period}: "
              f"{reports.format_currency(budget.amount)} ({budget.status.value})")
    elif args.budget_action == "list":
        year, month = _today_period(args)
        budgets.refresh_stats(args.family, year, month)
        print(reports.generate_budget_report(budgets.list_active(args.family, year, month)))
    elif args.budget_action == "update":
        budget = budgets.update_budget(
            args.family, args.id, args.user,
            amount=args.amount, alert_threshold=args.threshold, reason=args.reason,
        )
        print(f"Updated budget {budget.id}: {reports.format_currency(budget.amount)} ({budget.status.value})")
    elif args.budget_action == "delete":
        budgets.delete_budget(args.family, args.id, deleted_by=args.user)
        print(f"Deleted budget {args.id}")
    elif args.budget_action == "summary":
        year, month = _today_period(args)
        print(reports.generate_budget_summary_report(budgets.get_budget_summary(args.family, year, month), year, month))
    elif args.budget_action == "auto-create":
        year, month = _today_period(args)
        created = budgets.create_from_previous_month(args.family, year, month, created_by=args.user)
        print(f"Auto-created {len(created)} budget(s) for {year}-{month:02d}")
    elif args.budget_action == "refresh":
        year, month = _today_period(args)
        count = budgets.refresh_stats(args.family, year, month)
        print(f"Refreshed {count} budget(s) for {year}-{month:02d}")
    else:
        raise FinanceAppError("Invalid budget action")


def handle_dashboard_command(args: argparse.Namespace, services: Services) -> None:
    dashboard = services.dashboard.compose_dashboard(
        args.family, user_id=args.user, start_date=args.start, end_date=args.end
    )
    print(services.reports.generate_dashboard_report(dashboard))


def handle_stats_command(args: argparse.Namespace, services: Services) -> None:
    if args.stats_action == "monthly":
        year, month = _today_period(args)
        result = services.analytics.aggregate(args.family, MonthWindow(year, month), AggregateFilters(), args.kind)
        print(services.reports.generate_category_report(result))
    elif args.stats_action == "yearly":
        year = args.year or date.today().year
        yearly = services.analytics.get_yearly_stats(args.family, year, args.kind)
        print(services.reports.generate_yearly_report(yearly))
        if args.csv:
            services.reports.export_to_csv(yearly["months"], args.csv, f"{args.kind} {year}")
    else:
        raise FinanceAppError("Invalid stats action")


def main(argv: Optional[list] = None) -> int:
    """Main entry point for the application."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        config = load_config(args.config)
    except FinanceAppError as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        return 1

    try:
        ensure_data_dir(config)
    except OSError as exc:
        print(f"Failed to prepare data directory: {exc}", file=sys.stderr)
        return 1

    setup_logging(config)

    db_manager = DatabaseManager(resolve_connection_string(config))
    services = build_services(db_manager, config)
    try:
        db_manager.create_tables()
        command = args.command
        if command == "init":
            handle_init_command(args, services)
        elif command == "family":
            handle_family_command(args, services, config)
        elif command == "user":
            handle_user_command(args, services)
        elif command in ("category", "cat"):
            handle_category_command(args, services)
        elif command in ("expense", "exp"):
            handle_expense_command(args, services)
        elif command in ("income", "inc"):
            handle_income_command(args, services)
        elif command in ("budget", "bud"):
            handle_budget_command(args, services)
        elif command in ("dashboard", "dash"):
            handle_dashboard_command(args, services)
        elif command == "stats":
            handle_stats_command(args, services)
        else:
            parser.print_help()
            return 1
    except FinanceAppError as e:
        logger.error(f"Command '{args.command}' failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except SQLAlchemyError as e:
        logger.error(f"Database error during '{args.command}': {e}", exc_info=True)
        print(f"Database error: {e}", file=sys.stderr)
        return 1
    finally:
        db_manager.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
