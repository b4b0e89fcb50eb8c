"""
Post-commit reconciliation of cached budget and category figures.

After an expense is created, updated or soft-deleted, the ledger hands the
before/after snapshots to ``ReconciliationDispatcher.on_transaction_mutated``.
The dispatcher works out which (family, category, year, month) buckets and
which categories were touched and runs a fixed list of reconcilers over
them. Each reconciler re-derives its cache from the ledger, so running it
twice, or concurrently with another writer, still leaves a consistent value.

Failures are logged and collected in the returned report; they never
propagate to the caller whose write already committed.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Callable, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError

from exceptions import FinanceAppError

if TYPE_CHECKING:
    from budgeting import BudgetManager
    from categories import CategoryRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class Bucket:
    """The (family, category, year, month) tuple that scopes a budget."""
    family_id: int
    category_id: int
    year: int
    month: int


@dataclass(frozen=True)
class TransactionSnapshot:
    """The fields of an expense that decide its bucket membership."""
    family_id: int
    category_id: Optional[int]
    date: datetime
    amount: Decimal
    is_active: bool = True

    @classmethod
    def of(cls, expense: Any) -> "TransactionSnapshot":
        """Capture the bucket-relevant state of an Expense row."""
        return cls(
            family_id=expense.family_id,
            category_id=expense.category_id,
            date=expense.date,
            amount=expense.amount,
            is_active=bool(expense.is_active),
        )

    @property
    def bucket(self) -> Optional[Bucket]:
        if self.category_id is None:
            return None
        return Bucket(self.family_id, self.category_id, self.date.year, self.date.month)


def affected_buckets(
    old: Optional[TransactionSnapshot],
    new: Optional[TransactionSnapshot]
) -> List[Bucket]:
    """
    Return the buckets whose cached spend may have changed, sorted and deduplicated.

    The old bucket is always included when there is an old state; the new
    bucket only when the new state exists and is active. A deactivation
    therefore touches just the old bucket.
    """
    buckets = set()
    if old is not None and old.bucket is not None:
        buckets.add(old.bucket)
    if new is not None and new.is_active and new.bucket is not None:
        buckets.add(new.bucket)
    return sorted(buckets)


def affected_categories(
    old: Optional[TransactionSnapshot],
    new: Optional[TransactionSnapshot]
) -> List[int]:
    """Return the category ids whose totals may have changed."""
    categories = {
        snapshot.category_id
        for snapshot in (old, new)
        if snapshot is not None and snapshot.category_id is not None
    }
    return sorted(categories)


class ReconcilerKind(enum.Enum):
    """The caches kept in step with the expense ledger."""
    BUDGET_BUCKET = "budget_bucket"
    CATEGORY_STATS = "category_stats"


@dataclass
class ReconciliationFailure:
    kind: ReconcilerKind
    target: Any
    error: str


@dataclass
class ReconciliationReport:
    """Outcome of one dispatch: what was reconciled and what failed."""
    buckets: List[Bucket] = field(default_factory=list)
    categories: List[int] = field(default_factory=list)
    failures: List[ReconciliationFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class ReconciliationDispatcher:
    """
    Fans one expense mutation out to every cache reconciler.

    The reconcilers are a fixed tuple of (kind, function) pairs; each
    function receives the before/after snapshots and the running report.
    """

    def __init__(self, budget_manager: "BudgetManager", category_registry: "CategoryRegistry"):
        self.budget_manager = budget_manager
        self.category_registry = category_registry
        self._reconcilers: Tuple[Tuple[ReconcilerKind, Callable[..., None]], ...] = (
            (ReconcilerKind.BUDGET_BUCKET, self._reconcile_budget_buckets),
            (ReconcilerKind.CATEGORY_STATS, self._reconcile_category_stats),
        )

    @property
    def kinds(self) -> Sequence[ReconcilerKind]:
        return [kind for kind, _ in self._reconcilers]

    def on_transaction_mutated(
        self,
        old: Optional[TransactionSnapshot],
        new: Optional[TransactionSnapshot]
    ) -> ReconciliationReport:
        """
        Reconcile every cache touched by an expense mutation.

        Args:
            old: State before the mutation (None on create)
            new: State after the mutation (None on hard delete; inactive on soft delete)

        Returns:
            ReconciliationReport listing reconciled targets and isolated failures
        """
        report = ReconciliationReport()
        for kind, reconciler in self._reconcilers:
            reconciler(old, new, report)

        if report.failures:
            logger.warning(
                "Reconciliation finished with %d failure(s); affected caches stay stale until refreshed",
                len(report.failures)
            )
        return report

    def _reconcile_budget_buckets(
        self,
        old: Optional[TransactionSnapshot],
        new: Optional[TransactionSnapshot],
        report: ReconciliationReport
    ) -> None:
        for bucket in affected_buckets(old, new):
            try:
                self.budget_manager.reconcile_bucket(
                    bucket.family_id, bucket.category_id, bucket.year, bucket.month
                )
                report.buckets.append(bucket)
            except (FinanceAppError, SQLAlchemyError) as exc:
                logger.error("Failed to reconcile budget bucket %s: %s", bucket, exc, exc_info=True)
                report.failures.append(
                    ReconciliationFailure(ReconcilerKind.BUDGET_BUCKET, bucket, str(exc))
                )
            except Exception as exc:
                logger.exception("Unexpected error reconciling budget bucket %s", bucket)
                report.failures.append(
                    ReconciliationFailure(ReconcilerKind.BUDGET_BUCKET, bucket, repr(exc))
                )

    def _reconcile_category_stats(
        self,
        old: Optional[TransactionSnapshot],
        new: Optional[TransactionSnapshot],
        report: ReconciliationReport
    ) -> None:
        for category_id in affected_categories(old, new):
            try:
                self.category_registry.update_stats(category_id)
                report.categories.append(category_id)
            except (FinanceAppError, SQLAlchemyError) as exc:
                logger.error("Failed to update stats for category %s: %s", category_id, exc, exc_info=True)
                report.failures.append(
                    ReconciliationFailure(ReconcilerKind.CATEGORY_STATS, category_id, str(exc))
                )
            except Exception as exc:
                logger.exception("Unexpected error updating stats for category %s", category_id)
                report.failures.append(
                    ReconciliationFailure(ReconcilerKind.CATEGORY_STATS, category_id, repr(exc))
                )
