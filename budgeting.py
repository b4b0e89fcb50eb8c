"""
Budgeting module for monthly category budgets.

This module provides the budget ledger: one budget per (family, category,
year, month) bucket, whose ``spent`` / ``remaining`` / ``percentage_used`` /
``status`` fields are caches re-derived from the expense ledger on every
reconciliation. Amount changes are kept in a short per-budget history.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload, selectinload
from sqlalchemy.orm.exc import StaleDataError

from categories import find_visible_category
from config_manager import get_setting
from database_ops import (
    Budget,
    BudgetHistoryEntry,
    BudgetStatus,
    Category,
    DatabaseManager,
    User,
    active_only,
)
from exceptions import (
    BudgetError,
    CategoryError,
    DuplicateBudgetError,
    NotFoundError,
    PermissionDeniedError,
    ReconciliationError,
)
from ledger import sum_expenses
from utils import MAX_AMOUNT, ZERO, percentage, to_money
from windows import month_bounds, previous_month

# Configure logging
logger = logging.getLogger(__name__)

MIN_BUDGET_YEAR = 2020
MAX_BUDGET_YEAR = 2050
NORMAL_USAGE_FLOOR = 50
RECONCILE_ATTEMPTS = 3


def compute_status(percentage_used: float, alert_threshold: int = 80) -> BudgetStatus:
    """
    Map a usage percentage onto the budget status ladder.

    Args:
        percentage_used: Spent as a percentage of the budget amount
        alert_threshold: Percentage at which a budget turns to warning

    Returns:
        EXCEEDED at 100 or more, WARNING at the threshold, NORMAL from 50, else SAFE
    """
    if percentage_used >= 100:
        return BudgetStatus.EXCEEDED
    if percentage_used >= alert_threshold:
        return BudgetStatus.WARNING
    if percentage_used >= NORMAL_USAGE_FLOOR:
        return BudgetStatus.NORMAL
    return BudgetStatus.SAFE


@dataclass(frozen=True)
class BudgetFigures:
    """
    Derived figures of a budget.

    Attributes:
        spent: Sum of active expenses in the bucket
        remaining: amount - spent (negative when over budget)
        percentage_used: spent / amount * 100 at full precision, 0 for a zero amount
        status: Position on the status ladder
    """
    spent: Decimal
    remaining: Decimal
    percentage_used: float
    status: BudgetStatus


def derive_budget_figures(amount: Any, spent: Any, alert_threshold: int = 80) -> BudgetFigures:
    """Compute remaining, percentage and status for a budget amount and its spend."""
    amount_dec = to_money(amount)
    spent_dec = to_money(spent)
    used = percentage(spent_dec, amount_dec)
    return BudgetFigures(
        spent=spent_dec,
        remaining=amount_dec - spent_dec,
        percentage_used=used,
        status=compute_status(used, alert_threshold),
    )


class BudgetManager:
    """
    Manages monthly category budgets and keeps their cached figures reconciled.

    Every public method opens its own session. Budgets are returned detached
    with their category and history already loaded.
    """

    def __init__(self, db_manager: DatabaseManager, config: Optional[Dict[str, Any]] = None):
        """
        Initialize the budget manager.

        Args:
            db_manager: DatabaseManager instance
            config: Optional configuration dictionary (``budgets`` section is used)
        """
        self.db_manager = db_manager
        config = config or {}
        self.default_alert_threshold = int(get_setting(config, "budgets", "default_alert_threshold"))
        self.history_limit = int(get_setting(config, "budgets", "history_limit"))
        self.auto_renew_default = bool(get_setting(config, "budgets", "auto_renew_default"))
        logger.info("Budget manager initialized")

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_period(year: int, month: int) -> None:
        if not MIN_BUDGET_YEAR <= int(year) <= MAX_BUDGET_YEAR:
            raise BudgetError(
                f"Year must be between {MIN_BUDGET_YEAR} and {MAX_BUDGET_YEAR}",
                details={"year": year}
            )
        month_bounds(year, month)

    @staticmethod
    def _validate_amount(amount: Any) -> Decimal:
        value = to_money(amount)
        if value < ZERO or value > MAX_AMOUNT:
            raise BudgetError(
                f"Budget amount must be between 0 and {MAX_AMOUNT}",
                details={"amount": amount}
            )
        return value

    @staticmethod
    def _validate_threshold(alert_threshold: Any) -> int:
        threshold = int(alert_threshold)
        if not 0 <= threshold <= 100:
            raise BudgetError(
                "Alert threshold must be between 0 and 100",
                details={"alert_threshold": alert_threshold}
            )
        return threshold

    @staticmethod
    def _require_admin(session: Session, family_id: int, user_id: Optional[int], action: str) -> None:
        """
        Ensure the acting user is an admin of the family.

        Internal callers pass no user and are trusted.

        Raises:
            PermissionDeniedError: If the user is unknown, foreign or not an admin
        """
        if user_id is None:
            return
        user = session.get(User, user_id)
        if user is None or user.family_id != family_id or not user.is_admin:
            raise PermissionDeniedError(
                f"Only family admins can {action} budgets",
                details={"family_id": family_id, "user_id": user_id}
            )

    # ------------------------------------------------------------------
    # Session-level helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _hydrate(budget: Budget) -> Budget:
        """Load the relationships callers read after the session is closed."""
        _ = budget.category
        _ = list(budget.history)
        return budget

    @staticmethod
    def _query_active(session: Session, family_id: int):
        query = session.query(Budget).options(
            joinedload(Budget.category),
            selectinload(Budget.history),
        )
        return active_only(query, Budget).filter(Budget.family_id == family_id)

    @staticmethod
    def _find_row(
        session: Session,
        family_id: int,
        category_id: int,
        year: int,
        month: int
    ) -> Optional[Budget]:
        """Return the row for a bucket key, active or not."""
        return session.query(Budget).filter(
            Budget.family_id == family_id,
            Budget.category_id == category_id,
            Budget.year == year,
            Budget.month == month,
        ).first()

    @staticmethod
    def _apply_figures(budget: Budget, figures: BudgetFigures) -> bool:
        """
        Copy derived figures onto the row, touching only values that differ.

        Returns:
            True if anything changed
        """
        changed = False
        if to_money(budget.spent) != figures.spent:
            budget.spent = figures.spent
            changed = True
        if budget.remaining is None or to_money(budget.remaining) != figures.remaining:
            budget.remaining = figures.remaining
            changed = True
        if budget.percentage_used != figures.percentage_used:
            budget.percentage_used = figures.percentage_used
            changed = True
        if budget.status != figures.status:
            budget.status = figures.status
            changed = True
        return changed

    def _reconcile(self, session: Session, budget: Budget) -> bool:
        """Recompute a budget's cached figures from a fresh ledger scan."""
        start, end = month_bounds(budget.year, budget.month)
        spent = sum_expenses(session, budget.family_id, start, end, category_id=budget.category_id)
        threshold = budget.alert_threshold
        if threshold is None:
            threshold = self.default_alert_threshold
        figures = derive_budget_figures(budget.amount, spent, threshold)
        changed = self._apply_figures(budget, figures)
        logger.debug(
            "Reconciled budget %s (%s): spent=%s remaining=%s used=%.2f%% status=%s changed=%s",
            budget.id, budget.period, figures.spent, figures.remaining,
            figures.percentage_used, figures.status.value, changed
        )
        return changed

    def _append_history(self, budget: Budget, amount: Decimal, changed_by: int, reason: str) -> None:
        budget.history.append(
            BudgetHistoryEntry(amount=amount, changed_by=changed_by, reason=(reason or "")[:100])
        )
        overflow = len(budget.history) - self.history_limit
        if overflow > 0:
            del budget.history[:overflow]

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile_bucket(
        self,
        family_id: int,
        category_id: int,
        year: int,
        month: int
    ) -> Optional[Budget]:
        """
        Re-derive the cached figures of the budget for one bucket.

        A bucket without an active budget is a no-op. Running this twice in a
        row leaves the row (and its version) unchanged the second time. When
        another pass writes the row between our read and our write, the whole
        read-sum-write is retried against the fresh row, so the pass that
        finishes last always stores the newest ledger total.

        Returns:
            The reconciled Budget, or None when no budget is configured

        Raises:
            ReconciliationError: If the write fails or keeps losing to concurrent passes
        """
        details = {"family_id": family_id, "category_id": category_id, "year": year, "month": month}
        for attempt in range(1, RECONCILE_ATTEMPTS + 1):
            session = self.db_manager.get_session()
            try:
                budget = self._query_active(session, family_id).filter(
                    Budget.category_id == category_id,
                    Budget.year == year,
                    Budget.month == month,
                ).first()
                if budget is None:
                    logger.debug(
                        "No budget configured for family %s category %s %d-%02d",
                        family_id, category_id, year, month
                    )
                    return None

                self._reconcile(session, budget)
                session.commit()
                return self._hydrate(budget)
            except StaleDataError as e:
                session.rollback()
                if attempt < RECONCILE_ATTEMPTS:
                    logger.warning(
                        "Budget for family %s category %s %d-%02d changed during reconciliation, "
                        "retrying (attempt %d of %d)",
                        family_id, category_id, year, month, attempt, RECONCILE_ATTEMPTS
                    )
                    continue
                logger.error(
                    f"Gave up reconciling budget for family {family_id} category {category_id} "
                    f"{year}-{month:02d} after {RECONCILE_ATTEMPTS} attempts: {e}"
                )
                raise ReconciliationError(
                    "Budget reconciliation kept losing to concurrent writes",
                    details=dict(details, attempts=RECONCILE_ATTEMPTS),
                    original_error=e
                ) from e
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(
                    f"Failed to reconcile budget for family {family_id} category {category_id} "
                    f"{year}-{month:02d}: {e}"
                )
                raise ReconciliationError(
                    "Budget reconciliation failed",
                    details=details,
                    original_error=e
                ) from e
            finally:
                session.close()

    def refresh_stats(self, family_id: int, year: int, month: int) -> int:
        """
        Explicitly reconcile every active budget of a month.

        Returns:
            Number of budgets refreshed

        Raises:
            ReconciliationError: If any budget could not be written
        """
        session = self.db_manager.get_session()
        try:
            budgets = self._query_active(session, family_id).filter(
                Budget.year == year,
                Budget.month == month,
            ).all()
            for budget in budgets:
                self._reconcile(session, budget)
            session.commit()
            logger.info("Refreshed %d budget(s) for family %s %d-%02d", len(budgets), family_id, year, month)
            return len(budgets)
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to refresh budget stats: {e}")
            raise ReconciliationError(
                "Budget refresh failed",
                details={"family_id": family_id, "year": year, "month": month},
                original_error=e
            ) from e
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def find_by_key(self, family_id: int, category_id: int, year: int, month: int) -> Optional[Budget]:
        """Return the active budget for a bucket, or None when none is configured."""
        session = self.db_manager.get_session()
        try:
            return self._query_active(session, family_id).filter(
                Budget.category_id == category_id,
                Budget.year == year,
                Budget.month == month,
            ).first()
        except SQLAlchemyError as e:
            logger.error(f"Failed to look up budget: {e}")
            raise
        finally:
            session.close()

    def upsert(self, budget: Budget) -> Budget:
        """
        Insert a budget or overwrite the row with the same bucket key.

        Only the authored fields (amount, alert threshold, auto renew, notes)
        are taken from ``budget``; the cached figures are reconciled.

        Returns:
            The persisted Budget
        """
        self._validate_period(budget.year, budget.month)
        amount = self._validate_amount(budget.amount)
        threshold = budget.alert_threshold
        if threshold is None:
            threshold = self.default_alert_threshold
        threshold = self._validate_threshold(threshold)
        auto_renew = self.auto_renew_default if budget.auto_renew is None else bool(budget.auto_renew)

        session = self.db_manager.get_session()
        try:
            row = self._find_row(session, budget.family_id, budget.category_id, budget.year, budget.month)
            if row is None:
                row = Budget(
                    family_id=budget.family_id,
                    category_id=budget.category_id,
                    year=budget.year,
                    month=budget.month,
                    spent=ZERO,
                )
                session.add(row)
            row.amount = amount
            row.alert_threshold = threshold
            row.auto_renew = auto_renew
            row.notes = budget.notes or ""
            row.is_active = True

            self._reconcile(session, row)
            session.commit()
            logger.info("Upserted budget %s for family %s (%s)", row.id, row.family_id, row.period)
            return self._hydrate(row)
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to upsert budget: {e}")
            raise
        finally:
            session.close()

    def list_active(self, family_id: int, year: int, month: Optional[int] = None) -> List[Budget]:
        """
        List active budgets for a month, or for a whole year when ``month`` is None.

        Ordered by month, then category order and name.
        """
        session = self.db_manager.get_session()
        try:
            query = self._query_active(session, family_id).filter(Budget.year == year)
            if month is not None:
                query = query.filter(Budget.month == month)
            return query.join(Budget.category).order_by(
                Budget.month, Category.order, Category.name
            ).all()
        except SQLAlchemyError as e:
            logger.error(f"Failed to list budgets: {e}")
            raise
        finally:
            session.close()

    def list_all_active(self, family_id: int) -> List[Budget]:
        """List every active budget of the family, oldest period first."""
        session = self.db_manager.get_session()
        try:
            return self._query_active(session, family_id).join(Budget.category).order_by(
                Budget.year, Budget.month, Category.order, Category.name
            ).all()
        except SQLAlchemyError as e:
            logger.error(f"Failed to list budgets: {e}")
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Budget lifecycle
    # ------------------------------------------------------------------

    def create_budget(
        self,
        family_id: int,
        category_id: int,
        year: int,
        month: int,
        amount: Any,
        alert_threshold: Optional[int] = None,
        auto_renew: Optional[bool] = None,
        notes: str = "",
        created_by: Optional[int] = None
    ) -> Budget:
        """
        Create a budget for a category and month.

        Args:
            family_id: Owning family
            category_id: Category visible to the family
            year: Budget year (2020-2050)
            month: Budget month (1-12)
            amount: Target amount (0 to 999999.99)
            alert_threshold: Warning percentage (defaults to config, usually 80)
            auto_renew: Copy into the next month on auto-create (defaults to config)
            notes: Free text
            created_by: Acting user; must be a family admin when given

        Returns:
            The created Budget, already reconciled against the ledger

        Raises:
            BudgetError: On an invalid period, amount or threshold
            PermissionDeniedError: If the acting user is not an admin
            CategoryError: If the category is not usable by the family
            DuplicateBudgetError: If an active budget exists for the bucket
        """
        self._validate_period(year, month)
        amount_dec = self._validate_amount(amount)
        threshold = self._validate_threshold(
            self.default_alert_threshold if alert_threshold is None else alert_threshold
        )
        if auto_renew is None:
            auto_renew = self.auto_renew_default

        session = self.db_manager.get_session()
        try:
            self._require_admin(session, family_id, created_by, "create")

            category = find_visible_category(session, family_id, category_id)
            if category is None:
                raise CategoryError(
                    "The selected category is not valid for this family",
                    details={"family_id": family_id, "category_id": category_id}
                )

            budget = self._find_row(session, family_id, category_id, year, month)
            if budget is not None and budget.is_active:
                raise DuplicateBudgetError(
                    "A budget already exists for this category in the given period",
                    details={"family_id": family_id, "category_id": category_id, "period": budget.period}
                )

            if budget is None:
                budget = Budget(
                    family_id=family_id,
                    category_id=category_id,
                    year=year,
                    month=month,
                    spent=ZERO,
                )
                session.add(budget)
            else:
                # Revive the soft-deleted row that still owns the bucket key
                logger.debug("Reactivating deleted budget %s for %s", budget.id, budget.period)
                budget.is_active = True
                budget.history.clear()

            budget.amount = amount_dec
            budget.alert_threshold = threshold
            budget.auto_renew = bool(auto_renew)
            budget.notes = notes or ""

            self._reconcile(session, budget)
            session.commit()
            logger.info(
                f"Created budget {budget.id}: {amount_dec} for '{category.name}' "
                f"{budget.period} (family {family_id})"
            )
            return self._hydrate(budget)
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to create budget: {e}")
            raise
        finally:
            session.close()

    def get_budget(self, family_id: int, budget_id: int) -> Budget:
        """
        Fetch one active budget, refreshing its figures first.

        Raises:
            NotFoundError: If the budget does not exist, is inactive or belongs
                to another family
        """
        session = self.db_manager.get_session()
        try:
            budget = self._query_active(session, family_id).filter(Budget.id == budget_id).first()
            if budget is None:
                raise NotFoundError(
                    "Budget not found",
                    details={"family_id": family_id, "budget_id": budget_id}
                )
            self._reconcile(session, budget)
            session.commit()
            return self._hydrate(budget)
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to get budget {budget_id}: {e}")
            raise
        finally:
            session.close()

    def update_budget(
        self,
        family_id: int,
        budget_id: int,
        changed_by: int,
        amount: Optional[Any] = None,
        alert_threshold: Optional[int] = None,
        auto_renew: Optional[bool] = None,
        notes: Optional[str] = None,
        reason: str = "Manual update"
    ) -> Budget:
        """
        Update a budget's authored fields and reconcile it.

        An amount change is appended to the budget history (oldest entries
        are dropped beyond the configured limit).

        Raises:
            PermissionDeniedError: If ``changed_by`` is not a family admin
            NotFoundError: If the budget is missing or inactive
            BudgetError: On an invalid amount or threshold
        """
        new_amount = None if amount is None else self._validate_amount(amount)
        new_threshold = None if alert_threshold is None else self._validate_threshold(alert_threshold)

        session = self.db_manager.get_session()
        try:
            self._require_admin(session, family_id, changed_by, "modify")

            budget = self._query_active(session, family_id).filter(Budget.id == budget_id).first()
            if budget is None:
                raise NotFoundError(
                    "Budget not found",
                    details={"family_id": family_id, "budget_id": budget_id}
                )

            if new_amount is not None and new_amount != to_money(budget.amount):
                self._append_history(budget, new_amount, changed_by, reason)
                budget.amount = new_amount
            if new_threshold is not None:
                budget.alert_threshold = new_threshold
            if auto_renew is not None:
                budget.auto_renew = bool(auto_renew)
            if notes is not None:
                budget.notes = notes

            self._reconcile(session, budget)
            session.commit()
            logger.info("Updated budget %s by user %s", budget_id, changed_by)
            return self._hydrate(budget)
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to update budget {budget_id}: {e}")
            raise
        finally:
            session.close()

    def delete_budget(self, family_id: int, budget_id: int, deleted_by: Optional[int] = None) -> bool:
        """
        Soft-delete a budget.

        Returns:
            True once the budget is deactivated

        Raises:
            PermissionDeniedError: If ``deleted_by`` is not a family admin
            NotFoundError: If the budget is missing or already inactive
        """
        session = self.db_manager.get_session()
        try:
            self._require_admin(session, family_id, deleted_by, "delete")

            budget = active_only(session.query(Budget), Budget).filter(
                Budget.id == budget_id,
                Budget.family_id == family_id,
            ).first()
            if budget is None:
                raise NotFoundError(
                    "Budget not found",
                    details={"family_id": family_id, "budget_id": budget_id}
                )
            budget.is_active = False
            session.commit()
            logger.info("Deleted budget %s (%s) for family %s", budget_id, budget.period, family_id)
            return True
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to delete budget {budget_id}: {e}")
            raise
        finally:
            session.close()

    def create_from_previous_month(
        self,
        family_id: int,
        year: int,
        month: int,
        created_by: Optional[int] = None
    ) -> List[Budget]:
        """
        Copy the previous month's auto-renewing budgets into ``year``/``month``.

        January copies from December of the previous year. A bucket that
        already has a row (active or deleted) is skipped. New budgets start
        from zero spend and are reconciled immediately.

        Returns:
            The newly created budgets
        """
        self._validate_period(year, month)
        prev_year, prev_month = previous_month(year, month)
        note = f"Auto-created from {prev_year}-{prev_month:02d}"

        session = self.db_manager.get_session()
        try:
            self._require_admin(session, family_id, created_by, "create")

            previous = active_only(session.query(Budget), Budget).filter(
                Budget.family_id == family_id,
                Budget.year == prev_year,
                Budget.month == prev_month,
                Budget.auto_renew.is_(True),
            ).all()

            created: List[Budget] = []
            for source in previous:
                if self._find_row(session, family_id, source.category_id, year, month) is not None:
                    logger.debug(
                        "Skipping auto-create for category %s: %d-%02d already has a budget",
                        source.category_id, year, month
                    )
                    continue
                budget = Budget(
                    family_id=family_id,
                    category_id=source.category_id,
                    year=year,
                    month=month,
                    amount=source.amount,
                    spent=ZERO,
                    alert_threshold=source.alert_threshold,
                    auto_renew=source.auto_renew,
                    notes=note,
                )
                session.add(budget)
                self._reconcile(session, budget)
                created.append(budget)

            session.commit()
            for budget in created:
                self._hydrate(budget)
            logger.info(
                "Auto-created %d budget(s) for family %s %d-%02d from %d-%02d",
                len(created), family_id, year, month, prev_year, prev_month
            )
            return created
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to auto-create budgets: {e}")
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------

    def get_budget_summary(self, family_id: int, year: int, month: int) -> Dict[str, Any]:
        """
        Summarize the active budgets of a month.

        Returns:
            Dictionary with total_budget, total_spent, total_remaining,
            average_usage (spent over budget, in percent), budgets_exceeded,
            budgets_warning, budgets_safe (everything else) and categories
        """
        budgets = self.list_active(family_id, year, month)
        summary: Dict[str, Any] = {
            "total_budget": ZERO,
            "total_spent": ZERO,
            "total_remaining": ZERO,
            "average_usage": 0.0,
            "budgets_exceeded": 0,
            "budgets_warning": 0,
            "budgets_safe": 0,
            "categories": len(budgets),
        }
        for budget in budgets:
            summary["total_budget"] += to_money(budget.amount)
            summary["total_spent"] += to_money(budget.spent)
            summary["total_remaining"] += to_money(budget.remaining)

            status = compute_status(budget.percentage_used or 0.0, budget.alert_threshold)
            if status == BudgetStatus.EXCEEDED:
                summary["budgets_exceeded"] += 1
            elif status == BudgetStatus.WARNING:
                summary["budgets_warning"] += 1
            else:
                summary["budgets_safe"] += 1

        summary["average_usage"] = percentage(summary["total_spent"], summary["total_budget"])
        return summary
