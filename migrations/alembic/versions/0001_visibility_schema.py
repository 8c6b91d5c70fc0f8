"""Visibility schema - users, catalog, restriction rules, hide lists, exclusion projection

Revision ID: 0001
Revises:
Create Date: 2026-10-19

Catalog tables are written by the catalog sync and soft deleted through
deleted_at. restriction_rules and hidden_entities are the source of truth for
visibility; excluded_entities and user_entity_stats are derived projections.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

ENTITY_KINDS = ("scene", "performer", "studio", "tag", "group", "gallery", "image")

CATALOG_TABLES = {
    "catalog_scenes": ("studio_id", "title"),
    "catalog_performers": ("name",),
    "catalog_studios": ("parent_id", "name"),
    "catalog_tags": ("name",),
    "catalog_groups": ("studio_id", "name"),
    "catalog_galleries": ("studio_id", "title"),
    "catalog_images": ("studio_id", "title"),
}

# (table, left column, left table, right column, right table)
JUNCTION_TABLES = (
    ("scene_performers", "scene_id", "catalog_scenes", "performer_id", "catalog_performers"),
    ("scene_tags", "scene_id", "catalog_scenes", "tag_id", "catalog_tags"),
    ("scene_groups", "scene_id", "catalog_scenes", "group_id", "catalog_groups"),
    ("scene_galleries", "scene_id", "catalog_scenes", "gallery_id", "catalog_galleries"),
    ("performer_tags", "performer_id", "catalog_performers", "tag_id", "catalog_tags"),
    ("studio_tags", "studio_id", "catalog_studios", "tag_id", "catalog_tags"),
    ("group_tags", "group_id", "catalog_groups", "tag_id", "catalog_tags"),
    ("group_parents", "child_id", "catalog_groups", "parent_id", "catalog_groups"),
    ("tag_parents", "child_id", "catalog_tags", "parent_id", "catalog_tags"),
    ("gallery_performers", "gallery_id", "catalog_galleries", "performer_id", "catalog_performers"),
    ("gallery_tags", "gallery_id", "catalog_galleries", "tag_id", "catalog_tags"),
    ("image_galleries", "image_id", "catalog_images", "gallery_id", "catalog_galleries"),
    ("image_performers", "image_id", "catalog_images", "performer_id", "catalog_performers"),
    ("image_tags", "image_id", "catalog_images", "tag_id", "catalog_tags"),
)


def _kind_column(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.String(16), nullable=nullable)


def _kind_check(table: str, column: str) -> sa.CheckConstraint:
    values = ", ".join(f"'{kind}'" for kind in ENTITY_KINDS)
    return sa.CheckConstraint(f"{column} IN ({values})", name=f"ck_{table}_{column}")


def upgrade() -> None:
    # ==========================================================================
    # users table
    # ==========================================================================
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("is_admin", sa.Boolean(), server_default="false", nullable=False),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
    )

    # ==========================================================================
    # catalog tables
    # ==========================================================================
    for table, columns in CATALOG_TABLES.items():
        extra = []
        for column in columns:
            if column.endswith("_id"):
                extra.append(sa.Column(column, sa.String(64), nullable=True))
            else:
                extra.append(sa.Column(column, sa.Text(), nullable=True))
        op.create_table(
            table,
            sa.Column("id", sa.String(64), nullable=False),
            *extra,
            sa.Column("deleted_at", sa.TIMESTAMP(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        for column in columns:
            if column.endswith("_id"):
                op.create_index(f"ix_{table}_{column}", table, [column])

    for table, left, left_table, right, right_table in JUNCTION_TABLES:
        op.create_table(
            table,
            sa.Column(left, sa.String(64), nullable=False),
            sa.Column(right, sa.String(64), nullable=False),
            sa.PrimaryKeyConstraint(left, right),
            sa.ForeignKeyConstraint([left], [f"{left_table}.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint([right], [f"{right_table}.id"], ondelete="CASCADE"),
        )
        op.create_index(f"ix_{table}_{right}", table, [right])

    # ==========================================================================
    # restriction_rules table
    # ==========================================================================
    op.create_table(
        "restriction_rules",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        _kind_column("entity_kind"),
        sa.Column("mode", sa.String(8), nullable=False),
        sa.Column("entity_ids", sa.JSON(), nullable=False),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("user_id", "entity_kind", name="uq_restriction_rules_user_kind"),
        # Rules only apply to organizational kinds
        sa.CheckConstraint(
            "entity_kind IN ('tag', 'studio', 'group', 'gallery')",
            name="ck_restriction_rules_entity_kind",
        ),
        sa.CheckConstraint("mode IN ('INCLUDE', 'EXCLUDE')", name="ck_restriction_rules_mode"),
    )

    # ==========================================================================
    # hidden_entities table
    # ==========================================================================
    op.create_table(
        "hidden_entities",
        sa.Column("user_id", sa.Integer(), nullable=False),
        _kind_column("entity_kind"),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column(
            "hidden_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("user_id", "entity_kind", "entity_id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        _kind_check("hidden_entities", "entity_kind"),
    )

    # ==========================================================================
    # excluded_entities table (projection)
    # ==========================================================================
    op.create_table(
        "excluded_entities",
        sa.Column("user_id", sa.Integer(), nullable=False),
        _kind_column("entity_kind"),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("reason", sa.String(16), nullable=False),
        _kind_column("source_kind", nullable=True),
        sa.Column("source_id", sa.String(64), nullable=True),
        sa.Column("computed_at_version", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("user_id", "entity_kind", "entity_id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        _kind_check("excluded_entities", "entity_kind"),
        sa.CheckConstraint(
            "reason IN ('restricted', 'hidden', 'cascade', 'empty')",
            name="ck_excluded_entities_reason",
        ),
    )
    op.create_index(
        "ix_excluded_entities_user_kind_reason",
        "excluded_entities",
        ["user_id", "entity_kind", "reason"],
    )

    # ==========================================================================
    # user_entity_stats table (projection)
    # ==========================================================================
    op.create_table(
        "user_entity_stats",
        sa.Column("user_id", sa.Integer(), nullable=False),
        _kind_column("entity_kind"),
        sa.Column("visible_count", sa.Integer(), nullable=False),
        sa.Column("computed_at_version", sa.BigInteger(), nullable=False),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("user_id", "entity_kind"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.CheckConstraint("visible_count >= 0", name="ck_user_entity_stats_visible_count"),
    )


def downgrade() -> None:
    # Drop tables in reverse order (respecting foreign key dependencies)
    op.drop_table("user_entity_stats")
    op.drop_index("ix_excluded_entities_user_kind_reason", table_name="excluded_entities")
    op.drop_table("excluded_entities")
    op.drop_table("hidden_entities")
    op.drop_table("restriction_rules")
    for table, _, _, right, _ in reversed(JUNCTION_TABLES):
        op.drop_index(f"ix_{table}_{right}", table_name=table)
        op.drop_table(table)
    for table, columns in reversed(list(CATALOG_TABLES.items())):
        for column in columns:
            if column.endswith("_id"):
                op.drop_index(f"ix_{table}_{column}", table_name=table)
        op.drop_table(table)
    op.drop_table("users")
