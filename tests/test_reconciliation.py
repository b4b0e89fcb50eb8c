"""
Tests for post-commit reconciliation of budget and category caches.
"""

from datetime import datetime
from decimal import Decimal
from unittest.mock import Mock

import pytest
from sqlalchemy.orm.exc import StaleDataError

import budgeting
from budgeting import RECONCILE_ATTEMPTS, BudgetManager
from categories import CategoryRegistry
from database_ops import Budget
from exceptions import ReconciliationError
from ledger import LedgerStore
from reconciliation import (
    Bucket,
    ReconcilerKind,
    ReconciliationDispatcher,
    TransactionSnapshot,
    affected_buckets,
    affected_categories,
)
from windows import MonthWindow


def snapshot(category_id=1, when=datetime(2024, 1, 31, 23, 0), amount="10", is_active=True, family_id=1):
    return TransactionSnapshot(family_id, category_id, when, Decimal(amount), is_active)


class TestAffectedBuckets:
    """Which buckets a mutation touches."""

    def test_create_touches_new_bucket(self):
        assert affected_buckets(None, snapshot()) == [Bucket(1, 1, 2024, 1)]

    def test_same_bucket_is_deduplicated(self):
        assert affected_buckets(snapshot(amount="10"), snapshot(amount="25")) == [Bucket(1, 1, 2024, 1)]

    def test_date_move_across_month_touches_both(self):
        old = snapshot(when=datetime(2024, 1, 31, 23, 0))
        new = snapshot(when=datetime(2024, 2, 1, 0, 30))

        assert affected_buckets(old, new) == [Bucket(1, 1, 2024, 1), Bucket(1, 1, 2024, 2)]

    def test_category_move_touches_both(self):
        assert affected_buckets(snapshot(category_id=3), snapshot(category_id=2)) == [
            Bucket(1, 2, 2024, 1),
            Bucket(1, 3, 2024, 1),
        ]

    def test_deactivation_touches_old_bucket_only(self):
        old = snapshot()
        new = snapshot(is_active=False)

        assert affected_buckets(old, new) == [Bucket(1, 1, 2024, 1)]
        assert affected_buckets(None, new) == []

    def test_uncategorized_snapshot_is_ignored(self):
        assert affected_buckets(None, snapshot(category_id=None)) == []

    def test_affected_categories(self):
        assert affected_categories(snapshot(category_id=5), snapshot(category_id=2)) == [2, 5]
        assert affected_categories(None, None) == []


class TestDispatcher:
    """Dispatcher behaviour with mocked reconcilers."""

    @pytest.fixture
    def budget_manager(self):
        return Mock(spec=BudgetManager)

    @pytest.fixture
    def registry(self):
        return Mock(spec=CategoryRegistry)

    @pytest.fixture
    def dispatcher(self, budget_manager, registry):
        return ReconciliationDispatcher(budget_manager, registry)

    def test_kinds_are_fixed(self, dispatcher):
        assert list(dispatcher.kinds) == [ReconcilerKind.BUDGET_BUCKET, ReconcilerKind.CATEGORY_STATS]

    def test_every_bucket_and_category_is_reconciled(self, dispatcher, budget_manager, registry):
        old = snapshot(when=datetime(2024, 1, 31))
        new = snapshot(when=datetime(2024, 2, 1))

        report = dispatcher.on_transaction_mutated(old, new)

        assert report.ok
        assert report.buckets == [Bucket(1, 1, 2024, 1), Bucket(1, 1, 2024, 2)]
        assert report.categories == [1]
        assert budget_manager.reconcile_bucket.call_count == 2
        registry.update_stats.assert_called_once_with(1)

    def test_failure_is_isolated_and_reported(self, dispatcher, budget_manager, registry):
        budget_manager.reconcile_bucket.side_effect = [ReconciliationError("stale write"), None]
        old = snapshot(when=datetime(2024, 1, 31))
        new = snapshot(when=datetime(2024, 2, 1))

        report = dispatcher.on_transaction_mutated(old, new)

        assert not report.ok
        assert len(report.failures) == 1
        failure = report.failures[0]
        assert failure.kind == ReconcilerKind.BUDGET_BUCKET
        assert failure.target == Bucket(1, 1, 2024, 1)
        assert "stale write" in failure.error
        assert report.buckets == [Bucket(1, 1, 2024, 2)]
        registry.update_stats.assert_called_once_with(1)

    def test_category_failure_does_not_stop_budgets(self, dispatcher, budget_manager, registry):
        registry.update_stats.side_effect = StaleDataError("gone")

        report = dispatcher.on_transaction_mutated(None, snapshot())

        assert report.buckets == [Bucket(1, 1, 2024, 1)]
        assert [f.kind for f in report.failures] == [ReconcilerKind.CATEGORY_STATS]

    def test_unexpected_error_is_reported_not_raised(self, dispatcher, budget_manager, registry):
        budget_manager.reconcile_bucket.side_effect = TypeError("bad operand")
        registry.update_stats.side_effect = KeyError("color")

        report = dispatcher.on_transaction_mutated(None, snapshot())

        assert [f.kind for f in report.failures] == [ReconcilerKind.BUDGET_BUCKET, ReconcilerKind.CATEGORY_STATS]
        assert "TypeError" in report.failures[0].error
        assert report.buckets == []
        assert report.categories == []

    def test_expense_write_survives_reconciler_bug(self, services, family, category_ids, add_expense, monkeypatch):
        monkeypatch.setattr(services.budgets, "reconcile_bucket", Mock(side_effect=TypeError("bad operand")))

        expense = add_expense("12.50", datetime(2024, 3, 3))

        assert services.ledger.get_expense(family.id, expense.id).amount == Decimal("12.50")


class TestLedgerDispatch:
    """The ledger hands snapshots to the dispatcher after each expense write."""

    def test_snapshots_passed_on_create_update_delete(self, services, family, admin, category_ids):
        dispatcher = Mock(spec=ReconciliationDispatcher)
        ledger = LedgerStore(services.db_manager, dispatcher)

        expense = ledger.create_expense(
            family.id, admin.id, "12.50", "Bread", category_ids["Groceries"], expense_date="2024-01-31"
        )
        old, new = dispatcher.on_transaction_mutated.call_args.args
        assert old is None
        assert new.bucket == Bucket(family.id, category_ids["Groceries"], 2024, 1)

        ledger.update_expense(family.id, expense.id, admin.id, expense_date="2024-02-01")
        old, new = dispatcher.on_transaction_mutated.call_args.args
        assert old.bucket.month == 1
        assert new.bucket.month == 2

        ledger.delete_expense(family.id, expense.id, admin.id)
        old, new = dispatcher.on_transaction_mutated.call_args.args
        assert old.is_active and not new.is_active
        assert dispatcher.on_transaction_mutated.call_count == 3

    def test_income_writes_do_not_dispatch(self, services, family, admin):
        dispatcher = Mock(spec=ReconciliationDispatcher)
        ledger = LedgerStore(services.db_manager, dispatcher)

        ledger.create_income(family.id, admin.id, "1000", "Salary", income_date="2024-01-31", source="salary")

        dispatcher.on_transaction_mutated.assert_not_called()


class TestBudgetReconciliation:
    """End to end: expense mutations keep budget caches equal to the ledger."""

    def test_month_boundary_move(self, services, family, admin, category_ids, add_expense):
        groceries = category_ids["Groceries"]
        services.budgets.create_budget(family.id, groceries, 2024, 1, "100")
        services.budgets.create_budget(family.id, groceries, 2024, 2, "100")
        expense = add_expense("50", datetime(2024, 1, 31, 23, 0))

        services.ledger.update_expense(family.id, expense.id, admin.id, expense_date=datetime(2024, 2, 1, 0, 30))

        january = services.budgets.find_by_key(family.id, groceries, 2024, 1)
        february = services.budgets.find_by_key(family.id, groceries, 2024, 2)
        assert january.spent == Decimal("0.00")
        assert january.remaining == Decimal("100.00")
        assert february.spent == Decimal("50.00")
        assert february.percentage_used == pytest.approx(50.0)

    def test_category_move(self, services, family, admin, category_ids, add_expense):
        services.budgets.create_budget(family.id, category_ids["Groceries"], 2024, 3, "100")
        services.budgets.create_budget(family.id, category_ids["Transport"], 2024, 3, "100")
        expense = add_expense("30", datetime(2024, 3, 3))

        services.ledger.update_expense(family.id, expense.id, admin.id, category_id=category_ids["Transport"])

        assert services.budgets.find_by_key(family.id, category_ids["Groceries"], 2024, 3).spent == Decimal("0.00")
        assert services.budgets.find_by_key(family.id, category_ids["Transport"], 2024, 3).spent == Decimal("30.00")

    def test_soft_delete_releases_spend(self, services, family, admin, category_ids, add_expense):
        services.budgets.create_budget(family.id, category_ids["Groceries"], 2024, 3, "100")
        expense = add_expense("80", datetime(2024, 3, 3))

        services.ledger.delete_expense(family.id, expense.id, admin.id)

        budget = services.budgets.find_by_key(family.id, category_ids["Groceries"], 2024, 3)
        assert budget.spent == Decimal("0.00")
        assert budget.percentage_used == 0.0

    def test_cached_spend_matches_ledger_after_mixed_writes(
        self, services, family, admin, member, category_ids, add_expense
    ):
        ledger = services.ledger
        keys = [(category_ids["Groceries"], 2024, 5), (category_ids["Home"], 2024, 5), (category_ids["Home"], 2024, 6)]
        for category_id, year, month in keys:
            services.budgets.create_budget(family.id, category_id, year, month, "500")

        first = add_expense("10.10", datetime(2024, 5, 1))
        second = add_expense("20.20", datetime(2024, 5, 2), category="Home", user=member)
        add_expense("30.30", datetime(2024, 6, 30, 23, 59), category="Home")
        add_expense("0.01", datetime(2024, 5, 31, 23, 59, 59))
        ledger.update_expense(family.id, first.id, admin.id, amount="11.11", category_id=category_ids["Home"])
        ledger.update_expense(family.id, second.id, member.id, expense_date="2024-06-01")
        ledger.delete_expense(family.id, first.id, admin.id)

        for category_id, year, month in keys:
            budget = services.budgets.find_by_key(family.id, category_id, year, month)
            assert budget.spent == ledger.sum_bucket(family.id, category_id, year, month)

        assert ledger.sum_bucket(family.id, category_ids["Groceries"], 2024, 5) == Decimal("0.01")
        assert ledger.sum_bucket(family.id, category_ids["Home"], 2024, 6) == Decimal("50.50")

    def test_budgets_of_a_month_add_up_to_the_aggregate(
        self, services, family, admin, member, category_ids, add_expense
    ):
        names = ["Groceries", "Home", "Transport"]
        for name in names:
            services.budgets.create_budget(family.id, category_ids[name], 2024, 5, "200")

        moved = add_expense("42.00", datetime(2024, 5, 3))
        add_expense("17.35", datetime(2024, 5, 9), category="Home", user=member)
        add_expense("8.65", datetime(2024, 5, 31, 23, 59), category="Transport")
        add_expense("99.99", datetime(2024, 6, 1), category="Transport")
        services.ledger.update_expense(family.id, moved.id, admin.id, category_id=category_ids["Home"])

        budgets = services.budgets.list_active(family.id, 2024, 5)
        total = services.analytics.aggregate(family.id, MonthWindow(2024, 5)).total

        assert len(budgets) == len(names)
        assert sum(budget.spent for budget in budgets) == total == Decimal("68.00")

    def test_reconcile_twice_keeps_version(self, services, family, category_ids, add_expense):
        groceries = category_ids["Groceries"]
        budget = services.budgets.create_budget(family.id, groceries, 2024, 3, "100")
        add_expense("45", datetime(2024, 3, 3))
        before = services.budgets.find_by_key(family.id, groceries, 2024, 3)

        first = services.budgets.reconcile_bucket(family.id, groceries, 2024, 3)
        second = services.budgets.reconcile_bucket(family.id, groceries, 2024, 3)

        assert first.id == budget.id
        assert first.version_id == before.version_id
        assert second.version_id == before.version_id
        assert second.spent == Decimal("45.00")

    def test_bucket_without_budget_is_noop(self, services, family, category_ids):
        assert services.budgets.reconcile_bucket(family.id, category_ids["Health"], 2024, 3) is None

    def test_failed_reconciliation_keeps_the_write(self, services, family, category_ids, add_expense, monkeypatch):
        groceries = category_ids["Groceries"]
        services.budgets.create_budget(family.id, groceries, 2024, 3, "100")
        monkeypatch.setattr(
            services.budgets, "reconcile_bucket", Mock(side_effect=ReconciliationError("busy"))
        )

        expense = add_expense("70", datetime(2024, 3, 3))

        assert services.ledger.get_expense(family.id, expense.id).amount == Decimal("70.00")
        assert services.budgets.find_by_key(family.id, groceries, 2024, 3).spent == Decimal("0.00")

        monkeypatch.undo()
        services.budgets.refresh_stats(family.id, 2024, 3)
        assert services.budgets.find_by_key(family.id, groceries, 2024, 3).spent == Decimal("70.00")

    def test_stale_budget_write_is_rejected(self, services, family, category_ids):
        budget = services.budgets.create_budget(family.id, category_ids["Groceries"], 2024, 3, "100")
        first = services.db_manager.get_session()
        second = services.db_manager.get_session()
        try:
            mine = first.get(Budget, budget.id)
            theirs = second.get(Budget, budget.id)
            mine.spent = Decimal("10.00")
            first.commit()

            theirs.spent = Decimal("20.00")
            with pytest.raises(StaleDataError):
                second.commit()
            second.rollback()
        finally:
            first.close()
            second.close()

    def test_stale_write_surfaces_as_reconciliation_error(self, services, family, category_ids, monkeypatch):
        groceries = category_ids["Groceries"]
        services.budgets.create_budget(family.id, groceries, 2024, 3, "100")
        stale = Mock(side_effect=StaleDataError("stale"))
        monkeypatch.setattr(services.budgets, "_reconcile", stale)

        with pytest.raises(ReconciliationError) as excinfo:
            services.budgets.reconcile_bucket(family.id, groceries, 2024, 3)

        assert stale.call_count == RECONCILE_ATTEMPTS
        assert excinfo.value.details["attempts"] == RECONCILE_ATTEMPTS

    def test_older_concurrent_pass_does_not_win(self, services, family, category_ids, add_expense, monkeypatch):
        groceries = category_ids["Groceries"]
        budget = services.budgets.create_budget(family.id, groceries, 2024, 3, "100")
        dispatcher = services.ledger.dispatcher
        services.ledger.dispatcher = None
        add_expense("10", datetime(2024, 3, 1))
        add_expense("20", datetime(2024, 3, 2))
        services.ledger.dispatcher = dispatcher
        real_sum = budgeting.sum_expenses
        calls = []

        def sum_while_older_pass_writes(session, *args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                # An older pass that only saw the first expense commits in between.
                other = services.db_manager.get_session()
                try:
                    other.get(Budget, budget.id).spent = Decimal("10.00")
                    other.commit()
                finally:
                    other.close()
            return real_sum(session, *args, **kwargs)

        monkeypatch.setattr(budgeting, "sum_expenses", sum_while_older_pass_writes)

        reconciled = services.budgets.reconcile_bucket(family.id, groceries, 2024, 3)

        assert len(calls) == 2
        assert reconciled.spent == Decimal("30.00")
        assert services.budgets.find_by_key(family.id, groceries, 2024, 3).spent == Decimal("30.00")
        assert services.ledger.sum_bucket(family.id, groceries, 2024, 3) == Decimal("30.00")


class TestCategoryStats:
    """Category caches follow the ledger."""

    def test_family_category_cache_updates(self, services, family, admin, add_expense):
        pets = services.categories.create_category(family.id, "Pets", color="#123456")

        add_expense("15", datetime(2024, 3, 1), category=pets.id)
        latest = add_expense("25", datetime(2024, 3, 9), category=pets.id)

        category = services.categories.get_category(family.id, pets.id)
        assert category.total_expenses == Decimal("40.00")
        assert category.last_used == datetime(2024, 3, 9)

        services.ledger.delete_expense(family.id, latest.id, admin.id)
        category = services.categories.get_category(family.id, pets.id)
        assert category.total_expenses == Decimal("15.00")
        assert category.last_used == datetime(2024, 3, 1)
