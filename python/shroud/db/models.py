"""SQLAlchemy ORM models for Shroud.

Defines all database tables using SQLAlchemy 2.x declarative patterns.

Three groups of tables:
- Catalog: library entities and their relationships, written by the catalog
  sync. Rows are soft deleted through ``deleted_at``.
- Rules: admin restriction rules and user hide lists (source of truth).
- Projection: exclusion records and per-kind visible counts, derived from
  the rules and mirrored here for SQL anti-joins.

Enums are stored as strings (non-native) so the schema is portable.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from shroud.services.visibility.types import EntityKind, ExclusionReason, RuleMode


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def _kind_enum(name: str = "entity_kind") -> Enum:
    return Enum(EntityKind, name=name, native_enum=False, length=16)


def _created_at() -> Mapped[datetime]:
    return mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)


# =============================================================================
# Users
# =============================================================================


class User(Base):
    """A library user. Accounts are managed elsewhere; this is the roster."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    is_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="0")
    created_at: Mapped[datetime] = _created_at()


# =============================================================================
# Catalog
# =============================================================================


class CatalogScene(Base):
    __tablename__ = "catalog_scenes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    studio_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CatalogPerformer(Base):
    __tablename__ = "catalog_performers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CatalogStudio(Base):
    __tablename__ = "catalog_studios"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    parent_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CatalogTag(Base):
    __tablename__ = "catalog_tags"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CatalogGroup(Base):
    __tablename__ = "catalog_groups"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    studio_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CatalogGallery(Base):
    __tablename__ = "catalog_galleries"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    studio_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CatalogImage(Base):
    __tablename__ = "catalog_images"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    studio_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


def _junction(name: str, left: str, left_table: str, right: str, right_table: str) -> Table:
    return Table(
        name,
        Base.metadata,
        Column(left, String(64), ForeignKey(f"{left_table}.id", ondelete="CASCADE"), primary_key=True),
        Column(
            right, String(64), ForeignKey(f"{right_table}.id", ondelete="CASCADE"), primary_key=True
        ),
        Index(f"ix_{name}_{right}", right),
    )


scene_performers = _junction(
    "scene_performers", "scene_id", "catalog_scenes", "performer_id", "catalog_performers"
)
scene_tags = _junction("scene_tags", "scene_id", "catalog_scenes", "tag_id", "catalog_tags")
scene_groups = _junction("scene_groups", "scene_id", "catalog_scenes", "group_id", "catalog_groups")
scene_galleries = _junction(
    "scene_galleries", "scene_id", "catalog_scenes", "gallery_id", "catalog_galleries"
)
performer_tags = _junction(
    "performer_tags", "performer_id", "catalog_performers", "tag_id", "catalog_tags"
)
studio_tags = _junction("studio_tags", "studio_id", "catalog_studios", "tag_id", "catalog_tags")
group_tags = _junction("group_tags", "group_id", "catalog_groups", "tag_id", "catalog_tags")
group_parents = _junction("group_parents", "child_id", "catalog_groups", "parent_id", "catalog_groups")
tag_parents = _junction("tag_parents", "child_id", "catalog_tags", "parent_id", "catalog_tags")
gallery_performers = _junction(
    "gallery_performers", "gallery_id", "catalog_galleries", "performer_id", "catalog_performers"
)
gallery_tags = _junction("gallery_tags", "gallery_id", "catalog_galleries", "tag_id", "catalog_tags")
image_galleries = _junction(
    "image_galleries", "image_id", "catalog_images", "gallery_id", "catalog_galleries"
)
image_performers = _junction(
    "image_performers", "image_id", "catalog_images", "performer_id", "catalog_performers"
)
image_tags = _junction("image_tags", "image_id", "catalog_images", "tag_id", "catalog_tags")


# =============================================================================
# Rules (source of truth)
# =============================================================================


class RestrictionRuleRow(Base):
    """Admin restriction rule: one per (user, kind).

    ``entity_ids`` is a JSON array of string ids.
    """

    __tablename__ = "restriction_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    entity_kind: Mapped[EntityKind] = mapped_column(_kind_enum(), nullable=False)
    mode: Mapped[RuleMode] = mapped_column(
        Enum(RuleMode, name="rule_mode", native_enum=False, length=8), nullable=False
    )
    entity_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (UniqueConstraint("user_id", "entity_kind", name="uq_restriction_rules_user_kind"),)


class HiddenEntityRow(Base):
    """A user's hide of one entity."""

    __tablename__ = "hidden_entities"

    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    entity_kind: Mapped[EntityKind] = mapped_column(_kind_enum(), primary_key=True)
    entity_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    hidden_at: Mapped[datetime] = _created_at()


# =============================================================================
# Projection (derived)
# =============================================================================


class ExcludedEntityRow(Base):
    """Authoritative exclusion record for (user, kind, entity)."""

    __tablename__ = "excluded_entities"

    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    entity_kind: Mapped[EntityKind] = mapped_column(_kind_enum(), primary_key=True)
    entity_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    reason: Mapped[ExclusionReason] = mapped_column(
        Enum(ExclusionReason, name="exclusion_reason", native_enum=False, length=16),
        nullable=False,
    )
    source_kind: Mapped[EntityKind | None] = mapped_column(
        _kind_enum("source_entity_kind"), nullable=True
    )
    source_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    computed_at_version: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        Index("ix_excluded_entities_user_kind_reason", "user_id", "entity_kind", "reason"),
    )


class UserEntityStats(Base):
    """Visible count per (user, kind) at the projection's graph version."""

    __tablename__ = "user_entity_stats"

    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    entity_kind: Mapped[EntityKind] = mapped_column(_kind_enum(), primary_key=True)
    visible_count: Mapped[int] = mapped_column(Integer, nullable=False)
    computed_at_version: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
