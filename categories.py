"""
Category registry for the family finance ledger.

Categories are either global defaults (no family) or owned by one family.
Each category carries a ``total_expenses`` / ``last_used`` cache that is
recomputed from the expense ledger after every expense mutation.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database_ops import Category, DatabaseManager, Expense, active_only, filter_transactions
from exceptions import CategoryError, NotFoundError
from utils import to_money

# Configure logging
logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES: List[Dict[str, Any]] = [
    {"name": "Groceries", "description": "Food and drinks", "color": "#10B981", "icon": "shopping-cart", "order": 1},
    {"name": "Transport", "description": "Fuel, public transport, taxis", "color": "#3B82F6", "icon": "car", "order": 2},
    {"name": "Home", "description": "Rent, utilities, maintenance", "color": "#8B5CF6", "icon": "home", "order": 3},
    {"name": "Health", "description": "Doctors, medicines, visits", "color": "#EF4444", "icon": "heart", "order": 4},
    {"name": "Entertainment", "description": "Cinema, restaurants, leisure", "color": "#F59E0B", "icon": "film", "order": 5},
    {"name": "Clothing", "description": "Clothes, shoes, accessories", "color": "#EC4899", "icon": "shirt", "order": 6},
    {"name": "Education", "description": "School, courses, books", "color": "#06B6D4", "icon": "book", "order": 7},
    {"name": "Other", "description": "Miscellaneous expenses", "color": "#6B7280", "icon": "more-horizontal", "order": 8},
]


def visible_to_family(query, family_id: int):
    """Restrict a Category query to active defaults plus the family's own categories."""
    query = active_only(query, Category)
    return query.filter(or_(Category.is_default.is_(True), Category.family_id == family_id))


def find_visible_category(session: Session, family_id: int, category_id: int) -> Optional[Category]:
    """
    Look up a category the family is allowed to use.

    Returns:
        The Category, or None when it does not exist, is inactive, or
        belongs to another family
    """
    query = session.query(Category).filter(Category.id == category_id)
    return visible_to_family(query, family_id).first()


class CategoryRegistry:
    """
    Manages spending categories and their cached statistics.

    Every method opens its own session; persistence errors are logged and
    propagated to the caller.
    """

    def __init__(self, db_manager: DatabaseManager):
        """
        Initialize the category registry.

        Args:
            db_manager: DatabaseManager instance
        """
        self.db_manager = db_manager
        logger.info("Category registry initialized")

    @staticmethod
    def _normalize_name(name: Optional[str]) -> str:
        if name is None:
            return ""
        return name.strip()

    def _name_taken(
        self,
        session: Session,
        family_id: int,
        name: str,
        exclude_id: Optional[int] = None
    ) -> bool:
        """Return True if ``name`` clashes (case-insensitively) with a default or family category."""
        query = session.query(Category.id).filter(
            func.lower(Category.name) == name.lower(),
            or_(Category.is_default.is_(True), Category.family_id == family_id),
            Category.is_active.is_(True),
        )
        if exclude_id is not None:
            query = query.filter(Category.id != exclude_id)
        return query.first() is not None

    def create_default_categories(self) -> int:
        """
        Seed the global default categories once.

        Returns:
            Number of categories created (0 when defaults already exist)
        """
        session = self.db_manager.get_session()
        try:
            existing = session.query(Category).filter(Category.is_default.is_(True)).count()
            if existing:
                logger.debug("Default categories already present (%d)", existing)
                return 0

            for defaults in DEFAULT_CATEGORIES:
                session.add(Category(is_default=True, family_id=None, **defaults))
            session.commit()
            logger.info("Created %d default categories", len(DEFAULT_CATEGORIES))
            return len(DEFAULT_CATEGORIES)
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to create default categories: {e}")
            raise
        finally:
            session.close()

    def get_categories_for_family(self, family_id: int) -> List[Category]:
        """
        Get active default categories plus the family's own, ordered by order then name.
        """
        session = self.db_manager.get_session()
        try:
            query = visible_to_family(session.query(Category), family_id)
            return query.order_by(Category.order, Category.name).all()
        except SQLAlchemyError as e:
            logger.error(f"Failed to get categories for family {family_id}: {e}")
            raise
        finally:
            session.close()

    def get_category(self, family_id: int, category_id: int) -> Category:
        """
        Get a single category visible to the family.

        Raises:
            NotFoundError: If the category is missing, inactive or foreign
        """
        session = self.db_manager.get_session()
        try:
            category = find_visible_category(session, family_id, category_id)
            if category is None:
                raise NotFoundError(
                    "Category not found",
                    details={"family_id": family_id, "category_id": category_id}
                )
            return category
        finally:
            session.close()

    def create_category(
        self,
        family_id: int,
        name: str,
        description: Optional[str] = None,
        color: str = "#3B82F6",
        icon: str = "shopping-cart",
        order: Optional[int] = None
    ) -> Category:
        """
        Create a family-owned category.

        Raises:
            CategoryError: If the name is empty or already used by a default
                or family category
        """
        normalized = self._normalize_name(name)
        if not normalized:
            raise CategoryError("Category name cannot be empty", details={"family_id": family_id})

        session = self.db_manager.get_session()
        try:
            if self._name_taken(session, family_id, normalized):
                raise CategoryError(
                    "A category with this name already exists",
                    details={"family_id": family_id, "name": normalized}
                )

            if order is None:
                max_order = session.query(func.max(Category.order)).filter(
                    Category.family_id == family_id
                ).scalar()
                order = (max_order or len(DEFAULT_CATEGORIES)) + 1

            category = Category(
                name=normalized,
                description=description,
                color=color,
                icon=icon,
                family_id=family_id,
                is_default=False,
                order=order,
            )
            session.add(category)
            session.commit()
            logger.info("Created category '%s' (id=%s) for family %s", normalized, category.id, family_id)
            return category
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to create category: {e}")
            raise
        finally:
            session.close()

    def update_category(
        self,
        family_id: int,
        category_id: int,
        name: Optional[str] = None,
        description: Optional[str] = None,
        color: Optional[str] = None,
        icon: Optional[str] = None
    ) -> Category:
        """
        Update a family-owned category. Default categories are read-only.

        Raises:
            NotFoundError: If the category is not visible to the family
            CategoryError: If it is a default category or the new name clashes
        """
        session = self.db_manager.get_session()
        try:
            category = find_visible_category(session, family_id, category_id)
            if category is None:
                raise NotFoundError(
                    "Category not found",
                    details={"family_id": family_id, "category_id": category_id}
                )
            if category.is_default:
                raise CategoryError(
                    "Default categories cannot be modified",
                    details={"category_id": category_id}
                )

            if name is not None:
                normalized = self._normalize_name(name)
                if not normalized:
                    raise CategoryError("Category name cannot be empty", details={"category_id": category_id})
                if self._name_taken(session, family_id, normalized, exclude_id=category_id):
                    raise CategoryError(
                        "A category with this name already exists",
                        details={"family_id": family_id, "name": normalized}
                    )
                category.name = normalized
            if description is not None:
                category.description = description
            if color is not None:
                category.color = color
            if icon is not None:
                category.icon = icon

            session.commit()
            logger.info("Updated category %s for family %s", category_id, family_id)
            return category
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to update category: {e}")
            raise
        finally:
            session.close()

    def delete_category(self, family_id: int, category_id: int) -> None:
        """
        Soft-delete a family category that no expense references.

        Raises:
            NotFoundError: If the category is not visible to the family
            CategoryError: If it is a default category or still in use
        """
        session = self.db_manager.get_session()
        try:
            category = find_visible_category(session, family_id, category_id)
            if category is None:
                raise NotFoundError(
                    "Category not found",
                    details={"family_id": family_id, "category_id": category_id}
                )
            if category.is_default:
                raise CategoryError(
                    "Default categories cannot be deleted",
                    details={"category_id": category_id}
                )

            in_use = session.query(func.count(Expense.id)).filter(
                Expense.category_id == category_id
            ).scalar()
            if in_use:
                raise CategoryError(
                    "Category is used by existing expenses",
                    details={"category_id": category_id, "expense_count": in_use}
                )

            category.is_active = False
            session.commit()
            logger.info("Deleted category %s for family %s", category_id, family_id)
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to delete category: {e}")
            raise
        finally:
            session.close()

    def reorder_categories(self, family_id: int, ordered_ids: List[int]) -> int:
        """
        Assign display order to family categories following ``ordered_ids``.

        Default categories and ids of other families are skipped.

        Returns:
            Number of categories updated
        """
        session = self.db_manager.get_session()
        try:
            updated = 0
            for position, category_id in enumerate(ordered_ids, start=1):
                category = session.query(Category).filter(
                    Category.id == category_id,
                    Category.family_id == family_id,
                ).first()
                if category is None:
                    logger.debug("Skipping category %s during reorder (not owned by family %s)", category_id, family_id)
                    continue
                category.order = position
                updated += 1
            session.commit()
            return updated
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to reorder categories: {e}")
            raise
        finally:
            session.close()

    @staticmethod
    def _expense_stats(
        session: Session,
        category_id: int,
        family_id: Optional[int] = None
    ) -> Dict[str, Any]:
        """Sum and latest date of active expenses for a category, optionally for one family."""
        query = session.query(
            func.coalesce(func.sum(Expense.amount), 0),
            func.max(Expense.date),
        )
        if family_id is not None:
            query = filter_transactions(query, Expense, family_id, category_id=category_id)
        else:
            query = active_only(query, Expense).filter(Expense.category_id == category_id)
        total, last_used = query.one()
        return {"total_expenses": to_money(total), "last_used": last_used}

    def update_stats(self, category_id: int) -> Optional[Category]:
        """
        Recompute the cached ``total_expenses`` / ``last_used`` of a category.

        The cache covers every active expense referencing the category; for a
        family category that is the family's spend. Missing categories are a
        no-op.

        Returns:
            The updated Category, or None if it does not exist
        """
        session = self.db_manager.get_session()
        try:
            category = session.get(Category, category_id)
            if category is None:
                logger.debug("No category %s to update", category_id)
                return None

            stats = self._expense_stats(session, category_id)
            category.total_expenses = stats["total_expenses"]
            category.last_used = stats["last_used"]
            session.commit()
            logger.debug(
                "Category %s stats: total=%s last_used=%s",
                category_id, stats["total_expenses"], stats["last_used"]
            )
            return category
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to update stats for category {category_id}: {e}")
            raise
        finally:
            session.close()

    def get_category_stats(self, family_id: int) -> List[Dict[str, Any]]:
        """
        Refresh and return per-category statistics for a family.

        Family categories have their cache refreshed and reported; default
        categories are shared across families, so their figures are computed
        for this family only and the shared row is left untouched.

        Returns:
            List of dicts sorted by total_expenses descending
        """
        categories = self.get_categories_for_family(family_id)
        session = self.db_manager.get_session()
        try:
            stats: List[Dict[str, Any]] = []
            for category in categories:
                if category.is_default:
                    figures = self._expense_stats(session, category.id, family_id)
                else:
                    refreshed = self.update_stats(category.id)
                    figures = {
                        "total_expenses": to_money(refreshed.total_expenses),
                        "last_used": refreshed.last_used,
                    }
                stats.append({
                    "id": category.id,
                    "name": category.name,
                    "color": category.color,
                    "icon": category.icon,
                    "is_default": category.is_default,
                    "total_expenses": figures["total_expenses"],
                    "last_used": figures["last_used"],
                })
        finally:
            session.close()

        stats.sort(key=lambda item: (-item["total_expenses"], item["name"].casefold()))
        return stats
