"""
Ledger store for family expenses and incomes.

All transaction writes go through ``LedgerStore``. After an expense is
created, updated or soft-deleted and the write has committed, the store hands
before/after snapshots to the reconciliation dispatcher so budget and
category caches follow the ledger.
"""

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from dateutil.relativedelta import relativedelta
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from categories import find_visible_category
from database_ops import (
    DatabaseManager,
    Expense,
    Income,
    IncomeSource,
    RecurringFrequency,
    User,
    filter_transactions,
)
from exceptions import (
    CategoryError,
    InvalidWindowError,
    LedgerError,
    NotFoundError,
    PermissionDeniedError,
)
from reconciliation import ReconciliationDispatcher, ReconciliationReport, TransactionSnapshot
from utils import MAX_AMOUNT, CENT, to_money
from windows import month_bounds, parse_date

# Configure logging
logger = logging.getLogger(__name__)

DESCRIPTION_MAX_LENGTH = 200
NOTES_MAX_LENGTH = 500
MERCHANT_MAX_LENGTH = 100


def sum_expenses(
    session: Session,
    family_id: int,
    start: datetime,
    end: datetime,
    category_id: Optional[int] = None
) -> Decimal:
    """
    Sum active expense amounts of a family within ``[start, end]``.

    Args:
        session: Open session (the caller's transaction sees its own writes)
        family_id: Owning family
        start: Inclusive lower bound
        end: Inclusive upper bound
        category_id: Optional category restriction

    Returns:
        Sum quantized to cents (0.00 when nothing matches)
    """
    query = session.query(func.coalesce(func.sum(Expense.amount), 0))
    query = filter_transactions(query, Expense, family_id, start=start, end=end, category_id=category_id)
    return to_money(query.scalar())


def calculate_next_occurrence(income: Income, after: Optional[datetime] = None) -> Optional[datetime]:
    """
    Compute the next date of a recurring income.

    Weekly and biweekly add 7 or 14 days per interval, monthly adds months
    (moving to ``recurring_day_of_month`` when set, clamped to the month
    length), quarterly adds three months and yearly adds years.

    Args:
        income: Income carrying the recurrence rule
        after: Occurrence to step from (defaults to the income's own date)

    Returns:
        Next occurrence, or None for a non-recurring income
    """
    if not income.is_recurring or income.recurring_frequency is None:
        return None

    base = after or income.date
    interval = max(int(income.recurring_interval or 1), 1)
    frequency = income.recurring_frequency

    if frequency == RecurringFrequency.WEEKLY:
        return base + relativedelta(weeks=interval)
    if frequency == RecurringFrequency.BIWEEKLY:
        return base + relativedelta(weeks=2 * interval)
    if frequency == RecurringFrequency.MONTHLY:
        step = relativedelta(months=interval)
        if income.recurring_day_of_month:
            step += relativedelta(day=income.recurring_day_of_month)
        return base + step
    if frequency == RecurringFrequency.QUARTERLY:
        return base + relativedelta(months=3 * interval)
    if frequency == RecurringFrequency.YEARLY:
        return base + relativedelta(years=interval)
    return None


class LedgerStore:
    """
    Records expenses and incomes for a family.

    Every method opens its own session. Validation failures raise
    ``LedgerError`` (or a more specific FinanceAppError subclass) before
    anything is written; persistence errors are logged and propagated.
    """

    def __init__(self, db_manager: DatabaseManager, dispatcher: Optional[ReconciliationDispatcher] = None):
        """
        Initialize the ledger store.

        Args:
            db_manager: DatabaseManager instance
            dispatcher: Receives expense mutations after commit; None disables reconciliation
        """
        self.db_manager = db_manager
        self.dispatcher = dispatcher
        logger.info("Ledger store initialized")

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_amount(amount: Any) -> Decimal:
        value = to_money(amount)
        if value < CENT or value > MAX_AMOUNT:
            raise LedgerError(
                f"Amount must be between {CENT} and {MAX_AMOUNT}",
                details={"amount": amount}
            )
        return value

    @staticmethod
    def _validate_text(value: Optional[str], field: str, max_length: int, required: bool = False) -> Optional[str]:
        if value is None:
            if required:
                raise LedgerError(f"{field.capitalize()} is required")
            return None
        text = value.strip()
        if required and not text:
            raise LedgerError(f"{field.capitalize()} is required")
        if len(text) > max_length:
            raise LedgerError(
                f"{field.capitalize()} cannot exceed {max_length} characters",
                details={field: text[:20] + "..."}
            )
        return text

    @staticmethod
    def _coerce_date(value: Union[str, date, datetime], field: str = "date") -> datetime:
        try:
            return parse_date(value, field)
        except InvalidWindowError as e:
            raise LedgerError(f"Invalid {field}", details=e.details, original_error=e) from e

    @staticmethod
    def _coerce_source(source: Union[str, IncomeSource, None]) -> IncomeSource:
        if source is None:
            return IncomeSource.OTHER
        if isinstance(source, IncomeSource):
            return source
        try:
            return IncomeSource(str(source).lower())
        except ValueError as e:
            raise LedgerError(
                "Unknown income source",
                details={"source": source, "allowed": ", ".join(s.value for s in IncomeSource)},
                original_error=e
            ) from e

    @staticmethod
    def _coerce_frequency(frequency: Union[str, RecurringFrequency, None]) -> Optional[RecurringFrequency]:
        if frequency is None or isinstance(frequency, RecurringFrequency):
            return frequency
        try:
            return RecurringFrequency(str(frequency).lower())
        except ValueError as e:
            raise LedgerError(
                "Unknown recurring frequency",
                details={"frequency": frequency},
                original_error=e
            ) from e

    @staticmethod
    def _require_member(session: Session, family_id: int, user_id: int) -> User:
        """Return the user if they belong to the family."""
        user = session.get(User, user_id)
        if user is None or user.family_id != family_id:
            raise PermissionDeniedError(
                "User is not a member of this family",
                details={"family_id": family_id, "user_id": user_id}
            )
        return user

    def _require_owner_or_admin(self, session: Session, family_id: int, record: Any, user_id: int) -> None:
        """Only the member who recorded a transaction, or a family admin, may change it."""
        user = self._require_member(session, family_id, user_id)
        if record.user_id != user.id and not user.is_admin:
            raise PermissionDeniedError(
                "You can only modify your own transactions",
                details={"record_id": record.id, "user_id": user_id}
            )

    def _require_category(self, session: Session, family_id: int, category_id: int) -> None:
        if find_visible_category(session, family_id, category_id) is None:
            raise CategoryError(
                "The selected category is not valid for this family",
                details={"family_id": family_id, "category_id": category_id}
            )

    def _dispatch(
        self,
        old: Optional[TransactionSnapshot],
        new: Optional[TransactionSnapshot]
    ) -> Optional[ReconciliationReport]:
        if self.dispatcher is None:
            return None
        return self.dispatcher.on_transaction_mutated(old, new)

    # ------------------------------------------------------------------
    # Expenses
    # ------------------------------------------------------------------

    def create_expense(
        self,
        family_id: int,
        user_id: int,
        amount: Any,
        description: str,
        category_id: int,
        expense_date: Union[str, date, datetime, None] = None,
        notes: Optional[str] = None,
        merchant: Optional[str] = None
    ) -> Expense:
        """
        Record an expense and reconcile the affected bucket.

        Args:
            family_id: Owning family
            user_id: Member recording the expense
            amount: Positive amount up to 999999.99
            description: Short description (required)
            category_id: Category visible to the family
            expense_date: Accounting date (defaults to now)
            notes: Optional notes
            merchant: Optional merchant name

        Returns:
            The created Expense

        Raises:
            LedgerError: On invalid input
            CategoryError: If the category is not usable by the family
            PermissionDeniedError: If the user is not a family member
        """
        amount_dec = self._validate_amount(amount)
        description = self._validate_text(description, "description", DESCRIPTION_MAX_LENGTH, required=True)
        notes = self._validate_text(notes, "notes", NOTES_MAX_LENGTH)
        merchant = self._validate_text(merchant, "merchant", MERCHANT_MAX_LENGTH)
        when = self._coerce_date(expense_date) if expense_date is not None else datetime.now()

        session = self.db_manager.get_session()
        try:
            self._require_member(session, family_id, user_id)
            self._require_category(session, family_id, category_id)

            expense = Expense(
                family_id=family_id,
                user_id=user_id,
                category_id=category_id,
                amount=amount_dec,
                description=description,
                date=when,
                notes=notes,
                merchant=merchant,
            )
            session.add(expense)
            session.commit()
            _ = expense.category
            logger.info(f"Created expense {expense.id}: {amount_dec} in category {category_id} (family {family_id})")
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to create expense: {e}")
            raise
        finally:
            session.close()

        self._dispatch(None, TransactionSnapshot.of(expense))
        return expense

    def update_expense(
        self,
        family_id: int,
        expense_id: int,
        user_id: int,
        amount: Optional[Any] = None,
        description: Optional[str] = None,
        category_id: Optional[int] = None,
        expense_date: Union[str, date, datetime, None] = None,
        notes: Optional[str] = None,
        merchant: Optional[str] = None
    ) -> Expense:
        """
        Update an expense and reconcile both its old and new buckets.

        Raises:
            NotFoundError: If the expense is missing or deleted
            PermissionDeniedError: If the user is neither its creator nor an admin
            LedgerError: On invalid input
            CategoryError: If the new category is not usable by the family
        """
        new_amount = None if amount is None else self._validate_amount(amount)
        description = self._validate_text(description, "description", DESCRIPTION_MAX_LENGTH)
        if description is not None and not description:
            raise LedgerError("Description is required")
        notes = self._validate_text(notes, "notes", NOTES_MAX_LENGTH)
        merchant = self._validate_text(merchant, "merchant", MERCHANT_MAX_LENGTH)
        new_date = None if expense_date is None else self._coerce_date(expense_date)

        session = self.db_manager.get_session()
        try:
            expense = self._find_active(session, Expense, family_id, expense_id)
            self._require_owner_or_admin(session, family_id, expense, user_id)
            old = TransactionSnapshot.of(expense)

            if category_id is not None and category_id != expense.category_id:
                self._require_category(session, family_id, category_id)
                expense.category_id = category_id
            if new_amount is not None:
                expense.amount = new_amount
            if description is not None:
                expense.description = description
            if new_date is not None:
                expense.date = new_date
            if notes is not None:
                expense.notes = notes
            if merchant is not None:
                expense.merchant = merchant

            session.commit()
            session.refresh(expense)
            _ = expense.category
            logger.info("Updated expense %s by user %s", expense_id, user_id)
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to update expense {expense_id}: {e}")
            raise
        finally:
            session.close()

        self._dispatch(old, TransactionSnapshot.of(expense))
        return expense

    def delete_expense(self, family_id: int, expense_id: int, user_id: int) -> bool:
        """
        Soft-delete an expense and reconcile the bucket it left.

        Raises:
            NotFoundError: If the expense is missing or already deleted
            PermissionDeniedError: If the user is neither its creator nor an admin
        """
        session = self.db_manager.get_session()
        try:
            expense = self._find_active(session, Expense, family_id, expense_id)
            self._require_owner_or_admin(session, family_id, expense, user_id)
            old = TransactionSnapshot.of(expense)

            expense.is_active = False
            session.commit()
            logger.info("Deleted expense %s by user %s", expense_id, user_id)
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to delete expense {expense_id}: {e}")
            raise
        finally:
            session.close()

        self._dispatch(old, TransactionSnapshot.of(expense))
        return True

    def get_expense(self, family_id: int, expense_id: int) -> Expense:
        """
        Fetch one active expense of the family.

        Raises:
            NotFoundError: If it does not exist, is deleted or belongs to another family
        """
        session = self.db_manager.get_session()
        try:
            expense = self._find_active(session, Expense, family_id, expense_id)
            _ = expense.category
            return expense
        finally:
            session.close()

    def list_expenses(
        self,
        family_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        user_id: Optional[int] = None,
        category_id: Optional[int] = None,
        amount_min: Optional[Any] = None,
        amount_max: Optional[Any] = None,
        limit: Optional[int] = None
    ) -> List[Expense]:
        """
        List active expenses matching the filters, newest first.

        Returns:
            List of Expense objects with their category loaded
        """
        session = self.db_manager.get_session()
        try:
            query = session.query(Expense).options(joinedload(Expense.category), joinedload(Expense.user))
            query = filter_transactions(
                query, Expense, family_id,
                start=start, end=end, user_id=user_id, category_id=category_id,
                amount_min=amount_min, amount_max=amount_max,
            )
            query = query.order_by(Expense.date.desc(), Expense.id.desc())
            if limit is not None:
                query = query.limit(limit)
            expenses = query.all()
            logger.debug("Listed %d expenses for family %s", len(expenses), family_id)
            return expenses
        except SQLAlchemyError as e:
            logger.error(f"Failed to list expenses: {e}")
            raise
        finally:
            session.close()

    def sum_bucket(self, family_id: int, category_id: int, year: int, month: int) -> Decimal:
        """Return the active spend of one (family, category, year, month) bucket."""
        start, end = month_bounds(year, month)
        session = self.db_manager.get_session()
        try:
            return sum_expenses(session, family_id, start, end, category_id=category_id)
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Incomes
    # ------------------------------------------------------------------

    def create_income(
        self,
        family_id: int,
        user_id: int,
        amount: Any,
        description: str,
        income_date: Union[str, date, datetime, None] = None,
        source: Union[str, IncomeSource, None] = None,
        notes: Optional[str] = None,
        is_recurring: bool = False,
        recurring_frequency: Union[str, RecurringFrequency, None] = None,
        recurring_interval: int = 1,
        recurring_day_of_month: Optional[int] = None,
        recurring_end_date: Union[str, date, datetime, None] = None
    ) -> Income:
        """
        Record an income, optionally with a recurrence rule.

        Returns:
            The created Income (``next_occurrence`` set for recurring incomes)

        Raises:
            LedgerError: On invalid input or an incomplete recurrence rule
            PermissionDeniedError: If the user is not a family member
        """
        amount_dec = self._validate_amount(amount)
        description = self._validate_text(description, "description", DESCRIPTION_MAX_LENGTH, required=True)
        notes = self._validate_text(notes, "notes", NOTES_MAX_LENGTH)
        when = self._coerce_date(income_date) if income_date is not None else datetime.now()
        source_enum = self._coerce_source(source)
        frequency = self._coerce_frequency(recurring_frequency)
        end_date = None if recurring_end_date is None else self._coerce_date(recurring_end_date, "recurring_end_date")

        if is_recurring:
            if frequency is None:
                raise LedgerError("Recurring incomes need a frequency")
            if int(recurring_interval) < 1:
                raise LedgerError("Recurring interval must be at least 1", details={"interval": recurring_interval})
            if recurring_day_of_month is not None and not 1 <= int(recurring_day_of_month) <= 31:
                raise LedgerError(
                    "Day of month must be between 1 and 31",
                    details={"day_of_month": recurring_day_of_month}
                )

        session = self.db_manager.get_session()
        try:
            self._require_member(session, family_id, user_id)

            income = Income(
                family_id=family_id,
                user_id=user_id,
                amount=amount_dec,
                description=description,
                date=when,
                source=source_enum,
                notes=notes,
                is_recurring=bool(is_recurring),
                recurring_frequency=frequency if is_recurring else None,
                recurring_interval=int(recurring_interval) if is_recurring else 1,
                recurring_day_of_month=recurring_day_of_month if is_recurring else None,
                recurring_end_date=end_date if is_recurring else None,
            )
            income.next_occurrence = calculate_next_occurrence(income)
            session.add(income)
            session.commit()
            logger.info(
                f"Created income {income.id}: {amount_dec} from {source_enum.value} (family {family_id})"
            )
            return income
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to create income: {e}")
            raise
        finally:
            session.close()

    def update_income(
        self,
        family_id: int,
        income_id: int,
        user_id: int,
        amount: Optional[Any] = None,
        description: Optional[str] = None,
        income_date: Union[str, date, datetime, None] = None,
        source: Union[str, IncomeSource, None] = None,
        notes: Optional[str] = None
    ) -> Income:
        """
        Update an income's authored fields.

        Raises:
            NotFoundError: If the income is missing or deleted
            PermissionDeniedError: If the user is neither its creator nor an admin
        """
        new_amount = None if amount is None else self._validate_amount(amount)
        description = self._validate_text(description, "description", DESCRIPTION_MAX_LENGTH)
        if description is not None and not description:
            raise LedgerError("Description is required")
        notes = self._validate_text(notes, "notes", NOTES_MAX_LENGTH)
        new_date = None if income_date is None else self._coerce_date(income_date)
        new_source = None if source is None else self._coerce_source(source)

        session = self.db_manager.get_session()
        try:
            income = self._find_active(session, Income, family_id, income_id)
            self._require_owner_or_admin(session, family_id, income, user_id)

            if new_amount is not None:
                income.amount = new_amount
            if description is not None:
                income.description = description
            if new_date is not None:
                income.date = new_date
                income.next_occurrence = calculate_next_occurrence(income)
            if new_source is not None:
                income.source = new_source
            if notes is not None:
                income.notes = notes

            session.commit()
            logger.info("Updated income %s by user %s", income_id, user_id)
            return income
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to update income {income_id}: {e}")
            raise
        finally:
            session.close()

    def delete_income(self, family_id: int, income_id: int, user_id: int) -> bool:
        """Soft-delete an income."""
        session = self.db_manager.get_session()
        try:
            income = self._find_active(session, Income, family_id, income_id)
            self._require_owner_or_admin(session, family_id, income, user_id)
            income.is_active = False
            session.commit()
            logger.info("Deleted income %s by user %s", income_id, user_id)
            return True
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to delete income {income_id}: {e}")
            raise
        finally:
            session.close()

    def get_income(self, family_id: int, income_id: int) -> Income:
        session = self.db_manager.get_session()
        try:
            return self._find_active(session, Income, family_id, income_id)
        finally:
            session.close()

    def list_incomes(
        self,
        family_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        user_id: Optional[int] = None,
        source: Union[str, IncomeSource, None] = None,
        amount_min: Optional[Any] = None,
        amount_max: Optional[Any] = None,
        limit: Optional[int] = None
    ) -> List[Income]:
        """List active incomes matching the filters, newest first."""
        source_enum = None if source is None else self._coerce_source(source)
        session = self.db_manager.get_session()
        try:
            query = session.query(Income).options(joinedload(Income.user))
            query = filter_transactions(
                query, Income, family_id,
                start=start, end=end, user_id=user_id,
                amount_min=amount_min, amount_max=amount_max,
            )
            if source_enum is not None:
                query = query.filter(Income.source == source_enum)
            query = query.order_by(Income.date.desc(), Income.id.desc())
            if limit is not None:
                query = query.limit(limit)
            return query.all()
        except SQLAlchemyError as e:
            logger.error(f"Failed to list incomes: {e}")
            raise
        finally:
            session.close()

    def process_recurring_incomes(
        self,
        today: Optional[Union[date, datetime]] = None,
        family_id: Optional[int] = None
    ) -> List[Income]:
        """
        Materialize every due occurrence of recurring incomes.

        An income is due when it is active and recurring, its next occurrence
        is on or before ``today`` and its end date (if any) has not passed.
        Each generated income is a plain, non-recurring copy dated at the
        occurrence; the source's ``next_occurrence`` is then advanced. Missed
        occurrences are caught up in one call.

        Args:
            today: Reference date (defaults to now)
            family_id: Restrict processing to one family

        Returns:
            The incomes created
        """
        if today is None:
            cutoff = datetime.now()
        else:
            day = today.date() if isinstance(today, datetime) else today
            cutoff = datetime.combine(day, datetime.max.time())

        session = self.db_manager.get_session()
        try:
            query = session.query(Income).filter(
                Income.is_active.is_(True),
                Income.is_recurring.is_(True),
                Income.next_occurrence.isnot(None),
                Income.next_occurrence <= cutoff,
            )
            if family_id is not None:
                query = query.filter(Income.family_id == family_id)

            created: List[Income] = []
            for source in query.all():
                occurrence = source.next_occurrence
                while occurrence is not None and occurrence <= cutoff:
                    if source.recurring_end_date is not None and occurrence > source.recurring_end_date:
                        occurrence = None
                        break
                    copy = Income(
                        family_id=source.family_id,
                        user_id=source.user_id,
                        amount=source.amount,
                        description=source.description,
                        date=occurrence,
                        source=source.source,
                        notes=source.notes,
                        is_recurring=False,
                    )
                    session.add(copy)
                    created.append(copy)
                    occurrence = calculate_next_occurrence(source, after=occurrence)
                source.next_occurrence = occurrence

            session.commit()
            logger.info("Processed recurring incomes: %d created", len(created))
            return created
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to process recurring incomes: {e}")
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Shared lookups
    # ------------------------------------------------------------------

    @staticmethod
    def _find_active(session: Session, model: Any, family_id: int, record_id: int) -> Any:
        record = filter_transactions(session.query(model), model, family_id).filter(model.id == record_id).first()
        if record is None:
            raise NotFoundError(
                f"{model.__name__} not found",
                details={"family_id": family_id, "id": record_id}
            )
        return record

    def describe(self, record: Any) -> Dict[str, Any]:
        """Flatten an Expense or Income into a plain dict for presentation."""
        item: Dict[str, Any] = {
            "id": record.id,
            "date": record.date,
            "amount": to_money(record.amount),
            "description": record.description,
            "user_id": record.user_id,
        }
        if isinstance(record, Expense):
            item["type"] = "expense"
            item["category"] = record.category.name if record.category is not None else None
            item["merchant"] = record.merchant
        else:
            item["type"] = "income"
            item["source"] = record.source.value
            item["recurring"] = bool(record.is_recurring)
        return item
