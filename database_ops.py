"""
Database operations module for the family finance ledger.

This module defines the SQLAlchemy ORM schema (families, users, categories,
expenses, incomes, budgets and budget history), the DatabaseManager that owns
engine and session creation, and the single query-building helper that every
aggregation path uses to apply tenant, soft-delete and window filters.
"""

import enum
import logging
from datetime import UTC, datetime
from typing import Any, List, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Query, Session, declarative_base, declared_attr, relationship, sessionmaker

from exceptions import DatabaseError

# Configure logging
logger = logging.getLogger(__name__)

MONEY = Numeric(12, 2)


def utc_now() -> datetime:
    """
    Get current UTC datetime with timezone awareness.

    All audit timestamps in the database are stored in UTC. Accounting dates
    on transactions are naive and interpreted in the family's local calendar.

    Returns:
        Current datetime in UTC with timezone info
    """
    return datetime.now(UTC)


# Base class for declarative models
Base = declarative_base()


class UserRole(enum.Enum):
    """Role of a user inside their family."""
    ADMIN = "admin"
    MEMBER = "member"


class IncomeSource(enum.Enum):
    """Enumeration of income sources; incomes are grouped by source."""
    SALARY = "salary"
    FREELANCE = "freelance"
    BONUS = "bonus"
    INVESTMENT = "investment"
    RENTAL = "rental"
    GIFT = "gift"
    REFUND = "refund"
    OTHER = "other"


class RecurringFrequency(enum.Enum):
    """Calendar rules for recurring incomes."""
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class BudgetStatus(enum.Enum):
    """Budget usage ladder, ordered from least to most consumed."""
    SAFE = "safe"
    NORMAL = "normal"
    WARNING = "warning"
    EXCEEDED = "exceeded"


class Family(Base):
    """
    SQLAlchemy model representing a family (the tenant).

    Attributes:
        id: Auto-incrementing primary key
        name: Display name
        currency: ISO currency code used to interpret every amount
    """

    __tablename__ = "families"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    currency = Column(String(3), nullable=False, default="EUR")
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    users = relationship("User", back_populates="family")

    def __repr__(self) -> str:
        return f"<Family(id={self.id}, name='{self.name}', currency={self.currency})>"


class User(Base):
    """SQLAlchemy model representing a family member."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    family_id = Column(Integer, ForeignKey("families.id"), nullable=True, index=True)
    name = Column(String(100), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    role = Column(Enum(UserRole), nullable=False, default=UserRole.MEMBER)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    family = relationship("Family", back_populates="users")

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def __repr__(self) -> str:
        return f"<User(id={self.id}, name='{self.name}', family_id={self.family_id}, role={self.role.value})>"


class Category(Base):
    """
    SQLAlchemy model representing a spending category.

    Default categories have no family and are visible to every family.
    ``total_expenses`` and ``last_used`` are caches maintained by the
    category registry; they are never authored directly.
    """

    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(30), nullable=False)
    description = Column(String(100), nullable=True)
    color = Column(String(7), nullable=False, default="#3B82F6")
    icon = Column(String(40), nullable=False, default="shopping-cart")
    family_id = Column(Integer, ForeignKey("families.id"), nullable=True, index=True)
    is_default = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    order = Column(Integer, nullable=False, default=0)
    total_expenses = Column(MONEY, nullable=False, default=0)
    last_used = Column(DateTime, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    __table_args__ = (
        Index("idx_category_name_family", "name", "family_id"),
        Index("idx_category_family_active", "family_id", "is_active"),
    )

    def __repr__(self) -> str:
        return (
            f"<Category(id={self.id}, name='{self.name}', family_id={self.family_id}, "
            f"total_expenses={self.total_expenses})>"
        )


class TransactionMixin:
    """Columns shared by expenses and incomes."""

    id = Column(Integer, primary_key=True, autoincrement=True)
    amount = Column(MONEY, nullable=False)
    description = Column(String(200), nullable=False)
    date = Column(DateTime, nullable=False, index=True)
    notes = Column(String(500), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    @declared_attr
    def family_id(cls):
        return Column(Integer, ForeignKey("families.id"), nullable=False, index=True)

    @declared_attr
    def user_id(cls):
        return Column(Integer, ForeignKey("users.id"), nullable=False, index=True)


class Expense(TransactionMixin, Base):
    """SQLAlchemy model representing an expense; always belongs to a category."""

    __tablename__ = "expenses"

    category_id = Column(Integer, ForeignKey("categories.id"), nullable=False, index=True)
    merchant = Column(String(100), nullable=True)

    category = relationship("Category")
    user = relationship("User")

    __table_args__ = (
        Index("idx_expense_family_date", "family_id", "date"),
        Index("idx_expense_family_category_date", "family_id", "category_id", "date"),
    )

    def __repr__(self) -> str:
        return (
            f"<Expense(id={self.id}, family_id={self.family_id}, category_id={self.category_id}, "
            f"amount={self.amount}, date={self.date})>"
        )


class Income(TransactionMixin, Base):
    """SQLAlchemy model representing an income; grouped by source instead of category."""

    __tablename__ = "incomes"

    source = Column(Enum(IncomeSource), nullable=False, default=IncomeSource.OTHER)
    is_recurring = Column(Boolean, nullable=False, default=False)
    recurring_frequency = Column(Enum(RecurringFrequency), nullable=True)
    recurring_interval = Column(Integer, nullable=False, default=1)
    recurring_day_of_month = Column(Integer, nullable=True)
    recurring_end_date = Column(DateTime, nullable=True)
    next_occurrence = Column(DateTime, nullable=True, index=True)

    user = relationship("User")

    __table_args__ = (
        Index("idx_income_family_date", "family_id", "date"),
        Index("idx_income_family_source_date", "family_id", "source", "date"),
    )

    def __repr__(self) -> str:
        return (
            f"<Income(id={self.id}, family_id={self.family_id}, source={self.source.value}, "
            f"amount={self.amount}, date={self.date})>"
        )


class Budget(Base):
    """
    SQLAlchemy model representing a monthly budget for one category.

    ``spent``, ``remaining``, ``percentage_used`` and ``status`` are caches
    recomputed from the expense ledger. ``version_id`` guards against a stale
    recomputation overwriting a newer one.
    """

    __tablename__ = "budgets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    family_id = Column(Integer, ForeignKey("families.id"), nullable=False)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=False)
    year = Column(Integer, nullable=False)
    month = Column(Integer, nullable=False)
    amount = Column(MONEY, nullable=False)
    spent = Column(MONEY, nullable=False, default=0)
    remaining = Column(MONEY, nullable=False, default=0)
    percentage_used = Column(Float, nullable=False, default=0.0)
    status = Column(Enum(BudgetStatus), nullable=False, default=BudgetStatus.SAFE)
    alert_threshold = Column(Integer, nullable=False, default=80)
    auto_renew = Column(Boolean, nullable=False, default=True)
    notes = Column(String(300), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    version_id = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    category = relationship("Category")
    history = relationship(
        "BudgetHistoryEntry",
        back_populates="budget",
        order_by="BudgetHistoryEntry.id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("family_id", "category_id", "year", "month", name="uq_budget_bucket"),
        Index("idx_budget_family_period", "family_id", "year", "month"),
        Index("idx_budget_family_active", "family_id", "is_active"),
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def period(self) -> str:
        return f"{self.year}-{self.month:02d}"

    def __repr__(self) -> str:
        return (
            f"<Budget(id={self.id}, family_id={self.family_id}, category_id={self.category_id}, "
            f"period={self.period}, amount={self.amount}, spent={self.spent})>"
        )


class BudgetHistoryEntry(Base):
    """One manual change of a budget's amount."""

    __tablename__ = "budget_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    budget_id = Column(Integer, ForeignKey("budgets.id"), nullable=False, index=True)
    amount = Column(MONEY, nullable=False)
    changed_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    changed_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    reason = Column(String(100), nullable=True)

    budget = relationship("Budget", back_populates="history")

    def __repr__(self) -> str:
        return f"<BudgetHistoryEntry(budget_id={self.budget_id}, amount={self.amount}, changed_by={self.changed_by})>"


def active_only(query: Query, model: Any) -> Query:
    """
    Restrict a query to rows whose soft-delete flag is set.

    Every read path goes through this helper (directly or via
    ``filter_transactions``) so inactive rows are excluded identically.
    """
    return query.filter(model.is_active.is_(True))


def filter_transactions(
    query: Query,
    model: Any,
    family_id: int,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    user_id: Optional[int] = None,
    category_id: Optional[int] = None,
    amount_min: Optional[Any] = None,
    amount_max: Optional[Any] = None,
) -> Query:
    """
    Apply tenant, soft-delete, window and optional filters to a transaction query.

    Args:
        query: Base query (may select columns or aggregates)
        model: Expense or Income
        family_id: Owning family
        start: Inclusive lower bound on the accounting date
        end: Inclusive upper bound on the accounting date
        user_id: Only transactions recorded by this user
        category_id: Only expenses of this category (ignored for incomes)
        amount_min: Inclusive minimum amount
        amount_max: Inclusive maximum amount

    Returns:
        The filtered query
    """
    query = active_only(query, model).filter(model.family_id == family_id)
    if start is not None:
        query = query.filter(model.date >= start)
    if end is not None:
        query = query.filter(model.date <= end)
    if user_id is not None:
        query = query.filter(model.user_id == user_id)
    if category_id is not None and hasattr(model, "category_id"):
        query = query.filter(model.category_id == category_id)
    if amount_min is not None:
        query = query.filter(model.amount >= amount_min)
    if amount_max is not None:
        query = query.filter(model.amount <= amount_max)
    return query


class DatabaseManager:
    """
    Manages database connections and sessions.

    Services (ledger, budgets, categories, analytics) receive a
    DatabaseManager and open one session per operation.
    """

    def __init__(self, connection_string: str):
        """
        Initialize the database manager.

        Args:
            connection_string: SQLAlchemy connection string (e.g., 'sqlite:///data/ledger.db')

        Raises:
            SQLAlchemyError: If database connection fails
        """
        try:
            self.engine = create_engine(connection_string, echo=False)
            self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)
            logger.info(f"Database manager initialized with connection: {connection_string}")
        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

    def create_tables(self) -> None:
        """
        Create all database tables if they don't exist.

        Raises:
            SQLAlchemyError: If table creation fails
        """
        try:
            Base.metadata.create_all(self.engine)
            logger.info("Database tables created/verified successfully")
        except SQLAlchemyError as e:
            logger.error(f"Failed to create database tables: {e}")
            raise

    def get_session(self) -> Session:
        """
        Get a new database session.

        Returns:
            SQLAlchemy session object

        Note:
            Caller is responsible for closing the session.
        """
        return self.SessionLocal()

    def create_family(self, name: str, currency: str = "EUR") -> Family:
        """Create a family row and return it detached."""
        session = self.get_session()
        try:
            family = Family(name=name, currency=currency)
            session.add(family)
            session.commit()
            logger.info("Created family %s (%s)", family.id, name)
            return family
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to create family: {e}")
            raise
        finally:
            session.close()

    def create_user(
        self,
        name: str,
        email: str,
        family_id: Optional[int] = None,
        role: UserRole = UserRole.MEMBER
    ) -> User:
        """
        Create a user row and return it detached.

        Raises:
            DatabaseError: If the email is already registered
        """
        session = self.get_session()
        try:
            user = User(name=name, email=email, family_id=family_id, role=role)
            session.add(user)
            session.commit()
            logger.info("Created user %s in family %s", user.id, family_id)
            return user
        except IntegrityError as e:
            session.rollback()
            logger.warning("Integrity error creating user %s: %s", email, e)
            raise DatabaseError(
                "User violates database constraints",
                details={"operation": "create_user", "email": email},
                original_error=e
            ) from e
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to create user: {e}")
            raise
        finally:
            session.close()

    def get_user(self, user_id: int) -> Optional[User]:
        session = self.get_session()
        try:
            return session.get(User, user_id)
        finally:
            session.close()

    def get_family_members(self, family_id: int) -> List[User]:
        """Return users of a family ordered by name."""
        session = self.get_session()
        try:
            return session.query(User).filter(User.family_id == family_id).order_by(User.name).all()
        finally:
            session.close()

    def close(self) -> None:
        """Close the database engine connection."""
        if hasattr(self, 'engine'):
            self.engine.dispose()
            logger.info("Database connection closed")
