"""Mirrors computed exclusion sets into SQL.

The ``excluded_entities`` rows let listing queries anti-join against a
user's exclusions without going through the in-process cache, and
``user_entity_stats`` carries the matching visible counts.

Rules:
- ``write_exclusion_projection`` accepts a Session and never commits.
- A user's rows are replaced wholesale in one transaction, so readers see
  either the previous projection or the new one.
"""

from collections.abc import Callable

from sqlalchemy import Select, delete, insert, select
from sqlalchemy.orm import Session, sessionmaker

from shroud.db.models import ExcludedEntityRow, UserEntityStats
from shroud.db.session import transaction
from shroud.logging import get_logger
from shroud.services.visibility.state import ExclusionSet
from shroud.services.visibility.types import EntityKind

logger = get_logger(__name__)


def write_exclusion_projection(db: Session, exclusions: ExclusionSet) -> int:
    """Replace the user's projected exclusions and stats. Returns rows written."""
    user_id = exclusions.user_id
    db.execute(delete(ExcludedEntityRow).where(ExcludedEntityRow.user_id == user_id))
    db.execute(delete(UserEntityStats).where(UserEntityStats.user_id == user_id))

    rows = [
        {
            "user_id": user_id,
            "entity_kind": record.kind,
            "entity_id": record.entity_id,
            "reason": record.reason,
            "source_kind": record.source_kind,
            "source_id": record.source_id,
            "computed_at_version": record.computed_at_version,
        }
        for record in exclusions.records()
    ]
    if rows:
        db.execute(insert(ExcludedEntityRow), rows)

    db.execute(
        insert(UserEntityStats),
        [
            {
                "user_id": user_id,
                "entity_kind": kind,
                "visible_count": exclusions.visible_count(kind),
                "computed_at_version": exclusions.version,
            }
            for kind in EntityKind
        ],
    )
    return len(rows)


def make_projection_writer(
    session_factory: sessionmaker[Session],
) -> Callable[[ExclusionSet], None]:
    """Build a callback that persists each exclusion set in its own transaction."""

    def persist(exclusions: ExclusionSet) -> None:
        db = session_factory()
        try:
            with transaction(db):
                written = write_exclusion_projection(db, exclusions)
        finally:
            db.close()
        logger.debug(
            "exclusion_projection_written",
            user_id=exclusions.user_id,
            graph_version=exclusions.version,
            rows=written,
        )

    return persist


def excluded_ids_query(user_id: int, kind: EntityKind) -> Select:
    """Subquery of projected excluded ids, for ``NOT IN`` anti-joins in listings."""
    return select(ExcludedEntityRow.entity_id).where(
        ExcludedEntityRow.user_id == user_id,
        ExcludedEntityRow.entity_kind == EntityKind(kind),
    )


def projected_visible_count(db: Session, user_id: int, kind: EntityKind) -> int | None:
    return db.scalar(
        select(UserEntityStats.visible_count).where(
            UserEntityStats.user_id == user_id,
            UserEntityStats.entity_kind == EntityKind(kind),
        )
    )
