"""Restriction rule and hide list storage.

Rules:
- Mutation helpers accept a Session and never call commit()/rollback();
  routes wrap them in ``transaction(db)`` and fire the visibility hooks
  only after the commit succeeds.
- ``SqlRuleStore`` is the read side consumed by the exclusion computer. It
  opens its own short-lived sessions and reports database failures as
  ``RuleStoreUnavailableError``.
"""

from collections.abc import Iterable, Iterator
from contextlib import contextmanager

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from shroud.db.models import HiddenEntityRow, RestrictionRuleRow, User
from shroud.errors import ApiErrorCode, InvalidRequestError, RuleStoreUnavailableError
from shroud.logging import get_logger
from shroud.services.visibility.state import sorted_ids
from shroud.services.visibility.types import (
    RULE_KINDS,
    EntityKind,
    EntityRef,
    HiddenEntity,
    RestrictionRule,
    RuleMode,
)

logger = get_logger(__name__)


def _to_rule(row: RestrictionRuleRow) -> RestrictionRule:
    return RestrictionRule(
        user_id=row.user_id,
        kind=row.entity_kind,
        mode=row.mode,
        ids=frozenset(row.entity_ids or ()),
    )


def _to_hidden(row: HiddenEntityRow) -> HiddenEntity:
    return HiddenEntity(
        user_id=row.user_id,
        kind=row.entity_kind,
        entity_id=row.entity_id,
        hidden_at=row.hidden_at,
    )


def _require_rule_kind(kind: EntityKind) -> EntityKind:
    kind = EntityKind(kind)
    if kind not in RULE_KINDS:
        raise InvalidRequestError(
            ApiErrorCode.E_INVALID_KIND,
            f"Restriction rules apply to {', '.join(k.value for k in RULE_KINDS)}",
        )
    return kind


# =============================================================================
# Users
# =============================================================================


def ensure_user(db: Session, user_id: int) -> None:
    """Insert the user into the roster if missing."""
    if db.get(User, user_id) is None:
        db.add(User(id=user_id))
        db.flush()


# =============================================================================
# Restriction rules
# =============================================================================


def get_restriction_rule(db: Session, user_id: int, kind: EntityKind) -> RestrictionRule | None:
    row = db.scalar(
        select(RestrictionRuleRow).where(
            RestrictionRuleRow.user_id == user_id,
            RestrictionRuleRow.entity_kind == EntityKind(kind),
        )
    )
    return _to_rule(row) if row is not None else None


def list_restriction_rules(db: Session, user_id: int) -> list[RestrictionRule]:
    rows = db.scalars(
        select(RestrictionRuleRow)
        .where(RestrictionRuleRow.user_id == user_id)
        .order_by(RestrictionRuleRow.entity_kind)
    )
    return [_to_rule(row) for row in rows]


def set_restriction_rule(
    db: Session,
    user_id: int,
    kind: EntityKind,
    mode: RuleMode,
    entity_ids: Iterable[str],
) -> tuple[RestrictionRule | None, RestrictionRule]:
    """Create or replace the user's rule for ``kind``.

    Returns:
        ``(old_rule, new_rule)``; ``old_rule`` is None when the rule is new.
    """
    kind = _require_rule_kind(kind)
    ids = sorted_ids({str(entity_id) for entity_id in entity_ids})
    ensure_user(db, user_id)

    row = db.scalar(
        select(RestrictionRuleRow)
        .where(RestrictionRuleRow.user_id == user_id, RestrictionRuleRow.entity_kind == kind)
        .with_for_update()
    )
    old_rule = _to_rule(row) if row is not None else None
    if row is None:
        row = RestrictionRuleRow(user_id=user_id, entity_kind=kind, mode=RuleMode(mode), entity_ids=ids)
        db.add(row)
    else:
        row.mode = RuleMode(mode)
        row.entity_ids = ids
    db.flush()
    return old_rule, _to_rule(row)


def clear_restriction_rule(db: Session, user_id: int, kind: EntityKind) -> RestrictionRule | None:
    """Delete the user's rule for ``kind``. Returns the deleted rule, if any."""
    kind = _require_rule_kind(kind)
    row = db.scalar(
        select(RestrictionRuleRow).where(
            RestrictionRuleRow.user_id == user_id, RestrictionRuleRow.entity_kind == kind
        )
    )
    if row is None:
        return None
    old_rule = _to_rule(row)
    db.delete(row)
    db.flush()
    return old_rule


# =============================================================================
# Hidden entities
# =============================================================================


def hide_entity(db: Session, user_id: int, kind: EntityKind, entity_id: str) -> bool:
    """Hide one entity for a user. Returns False if it was already hidden."""
    kind = EntityKind(kind)
    ensure_user(db, user_id)
    if db.get(HiddenEntityRow, (user_id, kind, entity_id)) is not None:
        return False
    db.add(HiddenEntityRow(user_id=user_id, entity_kind=kind, entity_id=entity_id))
    db.flush()
    return True


def hide_entities(
    db: Session, user_id: int, entities: Iterable[tuple[EntityKind, str]]
) -> list[EntityRef]:
    """Hide several entities at once.

    Duplicates and entities that are already hidden are skipped.

    Returns:
        The newly hidden entities, in request order.
    """
    ensure_user(db, user_id)
    added: list[EntityRef] = []
    seen: set[EntityRef] = set()
    for kind, entity_id in entities:
        ref = EntityRef(EntityKind(kind), str(entity_id))
        if ref in seen:
            continue
        seen.add(ref)
        if db.get(HiddenEntityRow, (user_id, ref.kind, ref.id)) is None:
            db.add(HiddenEntityRow(user_id=user_id, entity_kind=ref.kind, entity_id=ref.id))
            added.append(ref)
    db.flush()
    return added


def unhide_entity(db: Session, user_id: int, kind: EntityKind, entity_id: str) -> bool:
    """Remove a hide. Returns False if the entity was not hidden."""
    result = db.execute(
        delete(HiddenEntityRow).where(
            HiddenEntityRow.user_id == user_id,
            HiddenEntityRow.entity_kind == EntityKind(kind),
            HiddenEntityRow.entity_id == entity_id,
        )
    )
    return result.rowcount > 0


def unhide_all(db: Session, user_id: int, kind: EntityKind | None = None) -> int:
    """Remove every hide of the user, or only those of ``kind``. Returns rows removed."""
    query = delete(HiddenEntityRow).where(HiddenEntityRow.user_id == user_id)
    if kind is not None:
        query = query.where(HiddenEntityRow.entity_kind == EntityKind(kind))
    return db.execute(query).rowcount


def list_hidden_entities(
    db: Session, user_id: int, kind: EntityKind | None = None
) -> list[HiddenEntity]:
    query = select(HiddenEntityRow).where(HiddenEntityRow.user_id == user_id)
    if kind is not None:
        query = query.where(HiddenEntityRow.entity_kind == EntityKind(kind))
    rows = db.scalars(query.order_by(HiddenEntityRow.entity_kind, HiddenEntityRow.hidden_at))
    return [_to_hidden(row) for row in rows]


# =============================================================================
# Read side for the exclusion computer
# =============================================================================


class SqlRuleStore:
    """``RuleStore`` backed by the ``restriction_rules``/``hidden_entities`` tables."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def get_restriction_rules(self, user_id: int) -> list[RestrictionRule]:
        with self._reading(user_id, "restriction_rules") as db:
            return list_restriction_rules(db, user_id)

    def get_hidden_entities(self, user_id: int) -> list[HiddenEntity]:
        with self._reading(user_id, "hidden_entities") as db:
            return list_hidden_entities(db, user_id)

    def list_user_ids(self) -> list[int]:
        with self._reading(None, "users") as db:
            return list(db.scalars(select(User.id).order_by(User.id)))

    @contextmanager
    def _reading(self, user_id: int | None, table: str) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
        except SQLAlchemyError as exc:
            logger.warning("rule_store_read_failed", user_id=user_id, table=table, error=str(exc))
            raise RuleStoreUnavailableError(user_id, f"{table}: {exc}") from exc
        finally:
            db.close()
