"""Visibility, hide list and restriction rule schemas.

Contains request and response models for the visibility, hidden and admin
endpoints.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from shroud.services.visibility.query import ExclusionStats, RecomputeAllResult
from shroud.services.visibility.state import ExclusionSet, sorted_ids
from shroud.services.visibility.types import EntityKind, HiddenEntity, RestrictionRule, RuleMode

# =============================================================================
# Request Schemas
# =============================================================================


class SetRestrictionRequest(BaseModel):
    """Request body for creating or replacing a user's rule for one kind."""

    mode: RuleMode = Field(..., description="INCLUDE or EXCLUDE")
    entity_ids: list[str] = Field(
        default_factory=list, max_length=10_000, description="Ids the rule names"
    )


class HiddenEntityIn(BaseModel):
    kind: str = Field(..., description="Entity kind")
    entity_id: str = Field(..., min_length=1)


class BulkHideRequest(BaseModel):
    """Request body for hiding several entities at once."""

    entities: list[HiddenEntityIn] = Field(..., min_length=1, max_length=1000)


# =============================================================================
# Response Schemas
# =============================================================================


class VisibilityOut(BaseModel):
    kind: EntityKind
    entity_id: str
    visible: bool


class ExcludedIdsOut(BaseModel):
    kind: EntityKind
    ids: list[str]


class VisibleCountOut(BaseModel):
    kind: EntityKind
    visible_count: int


class HiddenEntityOut(BaseModel):
    """A hidden entity on the viewer's hide list."""

    kind: EntityKind
    entity_id: str
    hidden_at: datetime | None = None

    @classmethod
    def from_hidden(cls, hidden: HiddenEntity) -> "HiddenEntityOut":
        return cls(kind=hidden.kind, entity_id=hidden.entity_id, hidden_at=hidden.hidden_at)


class HideToggleOut(BaseModel):
    """Result of a hide or unhide.

    ``changed`` is False when the entity was already in the requested state.
    ``applied`` is False when the write committed but the viewer's cached
    exclusions could not be refreshed; they are recomputed on next read.
    """

    kind: EntityKind
    entity_id: str
    hidden: bool
    changed: bool
    applied: bool = True


class BulkHideOut(BaseModel):
    """Result of a bulk hide.

    ``hidden`` lists the newly hidden entities. ``already_hidden`` counts
    those skipped as duplicates or already on the hide list.
    """

    requested: int
    hidden: list[HiddenEntityOut]
    already_hidden: int
    applied: bool = True


class UnhideAllOut(BaseModel):
    kind: EntityKind | None = None
    unhidden: int
    applied: bool = True


class RestrictionRuleOut(BaseModel):
    user_id: int
    kind: EntityKind
    mode: RuleMode
    entity_ids: list[str]

    @classmethod
    def from_rule(cls, rule: RestrictionRule) -> "RestrictionRuleOut":
        return cls(
            user_id=rule.user_id, kind=rule.kind, mode=rule.mode, entity_ids=sorted_ids(rule.ids)
        )


class RecomputeUserOut(BaseModel):
    """Result of a single-user recompute.

    ``version`` is None when the result was superseded by a newer graph.
    """

    user_id: int
    version: int | None
    excluded: int
    fingerprint: str | None = None

    @classmethod
    def from_result(cls, user_id: int, result: ExclusionSet | None) -> "RecomputeUserOut":
        if result is None:
            return cls(user_id=user_id, version=None, excluded=0)
        return cls(
            user_id=user_id,
            version=result.version,
            excluded=len(result),
            fingerprint=result.fingerprint(),
        )


class RecomputeAllOut(BaseModel):
    success: int
    failed: int
    errors: list[str]

    @classmethod
    def from_result(cls, result: RecomputeAllResult) -> "RecomputeAllOut":
        return cls(success=result.success, failed=result.failed, errors=list(result.errors))


class ExclusionStatRowOut(BaseModel):
    user_id: int
    kind: EntityKind
    reason: str
    count: int


class ExclusionStatsOut(BaseModel):
    """Exclusion counts over every cached user at the current graph version."""

    version: int | None
    users: int
    by_kind: dict[str, dict[str, int]]
    rows: list[ExclusionStatRowOut]

    @classmethod
    def from_stats(cls, stats: ExclusionStats) -> "ExclusionStatsOut":
        return cls(
            version=stats.version,
            users=stats.users,
            by_kind={
                kind.value: {reason.value: count for reason, count in reasons.items()}
                for kind, reasons in stats.by_kind.items()
            },
            rows=[
                ExclusionStatRowOut(
                    user_id=row.user_id, kind=row.kind, reason=row.reason.value, count=row.count
                )
                for row in stats.rows
            ],
        )


class SyncCompleteOut(BaseModel):
    version: int
