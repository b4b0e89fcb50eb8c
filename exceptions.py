"""
Unified exception hierarchy for the family finance ledger.

This module defines the exception hierarchy with FinanceAppError as the base
exception, allowing callers (CLI, tests, a future API layer) to map every
engine failure onto a single handling path.
"""

from typing import Optional


class FinanceAppError(Exception):
    """
    Base exception class for all ledger errors.

    Attributes:
        message: Human-readable error message
        details: Optional dictionary with additional error context
        original_error: Optional original exception that caused this error
    """

    def __init__(
        self,
        message: str,
        details: Optional[dict] = None,
        original_error: Optional[Exception] = None
    ) -> None:
        """
        Initialize FinanceAppError.

        Args:
            message: Human-readable error message
            details: Optional dictionary with additional error context
            original_error: Optional original exception that caused this error
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_error = original_error

    def __str__(self) -> str:
        """Return string representation of the error."""
        msg = self.message
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            msg = f"{msg} ({detail_str})"
        return msg


class ConfigError(FinanceAppError):
    """Raised when configuration loading or validation fails."""
    pass


class DatabaseError(FinanceAppError):
    """Raised when database operations fail."""
    pass


class NotFoundError(FinanceAppError):
    """Raised when an explicitly requested record does not exist."""
    pass


class InvalidWindowError(FinanceAppError):
    """Raised when a date window is malformed or inverted."""
    pass


class ReconciliationError(FinanceAppError):
    """Raised when a cached budget or category figure cannot be recomputed."""
    pass


class BudgetError(FinanceAppError):
    """Raised when budget management operations fail."""
    pass


class DuplicateBudgetError(BudgetError):
    """Raised when a budget already exists for a (family, category, year, month) key."""
    pass


class CategoryError(FinanceAppError):
    """Raised when a category is invalid for a family or cannot be changed."""
    pass


class LedgerError(FinanceAppError):
    """Raised when an expense or income cannot be recorded."""
    pass


class PermissionDeniedError(FinanceAppError):
    """Raised when the acting user lacks the role required for a write."""
    pass


class AnalyticsError(FinanceAppError):
    """Raised when analytics operations fail."""
    pass


class ReportError(FinanceAppError):
    """Raised when report generation fails."""
    pass
