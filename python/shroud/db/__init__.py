"""Database module for Shroud.

Provides engine creation, session management, transaction helpers, and ORM models.
"""

from shroud.db.engine import create_db_engine, get_engine
from shroud.db.models import (
    Base,
    CatalogGallery,
    CatalogGroup,
    CatalogImage,
    CatalogPerformer,
    CatalogScene,
    CatalogStudio,
    CatalogTag,
    ExcludedEntityRow,
    HiddenEntityRow,
    RestrictionRuleRow,
    User,
    UserEntityStats,
)
from shroud.db.session import get_db, transaction

__all__ = [
    # Engine and session
    "create_db_engine",
    "get_engine",
    "get_db",
    "transaction",
    # Base
    "Base",
    # Catalog
    "CatalogScene",
    "CatalogPerformer",
    "CatalogStudio",
    "CatalogTag",
    "CatalogGroup",
    "CatalogGallery",
    "CatalogImage",
    # Rules
    "User",
    "RestrictionRuleRow",
    "HiddenEntityRow",
    # Projection
    "ExcludedEntityRow",
    "UserEntityStats",
]
