"""
Shared fixtures for the ledger test suite.

Every test gets its own file-backed SQLite database under ``tmp_path`` with
the default categories seeded, one family with an admin and a member, and a
second family used to check tenant isolation.
"""

import copy

import pytest

from config_manager import DEFAULT_CONFIG
from database_ops import DatabaseManager, UserRole
from main import build_services


@pytest.fixture
def config():
    """Default configuration (a fresh copy per test)."""
    return copy.deepcopy(DEFAULT_CONFIG)


@pytest.fixture
def db_manager(tmp_path):
    """DatabaseManager bound to a temporary SQLite file."""
    manager = DatabaseManager(f"sqlite:///{(tmp_path / 'ledger.db').as_posix()}")
    manager.create_tables()
    yield manager
    manager.close()


@pytest.fixture
def services(db_manager, config):
    """Fully wired services with default categories seeded."""
    wired = build_services(db_manager, config)
    wired.categories.create_default_categories()
    return wired


@pytest.fixture
def family(services):
    return services.db_manager.create_family("Rossi")


@pytest.fixture
def admin(services, family):
    return services.db_manager.create_user("Anna", "anna@example.com", family_id=family.id, role=UserRole.ADMIN)


@pytest.fixture
def member(services, family):
    return services.db_manager.create_user("Marco", "marco@example.com", family_id=family.id)


@pytest.fixture
def other_family(services):
    return services.db_manager.create_family("Bianchi")


@pytest.fixture
def outsider(services, other_family):
    return services.db_manager.create_user(
        "Olga", "olga@example.com", family_id=other_family.id, role=UserRole.ADMIN
    )


@pytest.fixture
def category_ids(services, family):
    """Map of default category name to id."""
    return {c.name: c.id for c in services.categories.get_categories_for_family(family.id)}


@pytest.fixture
def add_expense(services, family, admin, category_ids):
    """Record an expense through the ledger (so reconciliation runs)."""

    def _add(amount, when, category="Groceries", user=None, family_id=None, description="Expense"):
        category_id = category if isinstance(category, int) else category_ids[category]
        return services.ledger.create_expense(
            family_id or family.id,
            (user or admin).id,
            amount,
            description,
            category_id,
            expense_date=when,
        )

    return _add


@pytest.fixture
def add_income(services, family, admin):
    def _add(amount, when, source="salary", user=None, description="Income"):
        return services.ledger.create_income(
            family.id, (user or admin).id, amount, description, income_date=when, source=source
        )

    return _add
