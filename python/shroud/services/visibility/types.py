"""Core value types for the visibility exclusion engine.

Everything here is plain data: entity identity, restriction rules, hidden
entities, exclusion causes and the persisted record shape. Nothing in this
module touches the database or the graph.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Protocol


class EntityKind(str, Enum):
    """Library entity kinds."""

    scene = "scene"
    performer = "performer"
    studio = "studio"
    tag = "tag"
    group = "group"
    gallery = "gallery"
    image = "image"


class RuleMode(str, Enum):
    """Restriction rule modes."""

    INCLUDE = "INCLUDE"
    EXCLUDE = "EXCLUDE"


class ExclusionReason(str, Enum):
    """Why an entity is excluded for a user."""

    restricted = "restricted"
    hidden = "hidden"
    cascade = "cascade"
    empty = "empty"


# Kinds an admin restriction rule may target.
RULE_KINDS: tuple[EntityKind, ...] = (
    EntityKind.tag,
    EntityKind.studio,
    EntityKind.group,
    EntityKind.gallery,
)

# Kinds the content filter decides directly (everything else is organizational).
CONTENT_KINDS: tuple[EntityKind, ...] = (EntityKind.scene, EntityKind.image)

KIND_INDEX: dict[EntityKind, int] = {kind: index for index, kind in enumerate(EntityKind)}

REASON_PRECEDENCE: dict[ExclusionReason, int] = {
    ExclusionReason.restricted: 0,
    ExclusionReason.hidden: 1,
    ExclusionReason.cascade: 2,
    ExclusionReason.empty: 3,
}


def natural_id_key(entity_id: str | None) -> tuple[int, int, str]:
    """Sort key that orders numeric ids numerically and the rest lexically."""
    if entity_id is None:
        return (-1, 0, "")
    if entity_id.isdigit():
        return (0, int(entity_id), entity_id)
    return (1, 0, entity_id)


@dataclass(frozen=True)
class EntityRef:
    """Identity of a library entity: kind plus string id."""

    kind: EntityKind
    id: str

    def sort_key(self) -> tuple:
        return (KIND_INDEX[self.kind], natural_id_key(self.id))

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.id}"


@dataclass(frozen=True)
class Cause:
    """One reason an entity is excluded.

    ``source_kind``/``source_id`` name the entity the exclusion came from.
    INCLUDE-rule failures carry a source kind but no source id.
    """

    reason: ExclusionReason
    source_kind: EntityKind | None = None
    source_id: str | None = None

    @property
    def source(self) -> EntityRef | None:
        if self.source_kind is None or self.source_id is None:
            return None
        return EntityRef(self.source_kind, self.source_id)

    def sort_key(self) -> tuple:
        kind_rank = KIND_INDEX[self.source_kind] if self.source_kind is not None else -1
        return (REASON_PRECEDENCE[self.reason], kind_rank, natural_id_key(self.source_id))


@dataclass(frozen=True)
class RestrictionRule:
    """An admin-managed INCLUDE/EXCLUDE rule for one (user, kind) pair."""

    user_id: int
    kind: EntityKind
    mode: RuleMode
    ids: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", EntityKind(self.kind))
        object.__setattr__(self, "mode", RuleMode(self.mode))
        object.__setattr__(self, "ids", frozenset(str(i) for i in self.ids))
        if self.kind not in RULE_KINDS:
            raise ValueError(f"restriction rules cannot target {self.kind.value}")

    @property
    def is_include(self) -> bool:
        return self.mode is RuleMode.INCLUDE


@dataclass(frozen=True)
class HiddenEntity:
    """A user-level hide of a single entity."""

    user_id: int
    kind: EntityKind
    entity_id: str
    hidden_at: datetime | None = None

    @property
    def ref(self) -> EntityRef:
        return EntityRef(EntityKind(self.kind), self.entity_id)


@dataclass(frozen=True)
class ExclusionRecord:
    """Authoritative exclusion row for (user, kind, entity)."""

    user_id: int
    kind: EntityKind
    entity_id: str
    reason: ExclusionReason
    source_kind: EntityKind | None
    source_id: str | None
    computed_at_version: int


class RuleStore(Protocol):
    """Read side of the restriction rule / hide list storage."""

    def get_restriction_rules(self, user_id: int) -> Sequence[RestrictionRule]: ...

    def get_hidden_entities(self, user_id: int) -> Sequence[HiddenEntity]: ...

    def list_user_ids(self) -> Sequence[int]: ...


@dataclass(frozen=True)
class RuleIndex:
    """A user's rules and hides, indexed by kind for the traversal code."""

    include: dict[EntityKind, frozenset[str]] = field(default_factory=dict)
    exclude: dict[EntityKind, frozenset[str]] = field(default_factory=dict)
    hidden: dict[EntityKind, frozenset[str]] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        rules: Iterable[RestrictionRule] = (),
        hidden: Iterable[HiddenEntity] = (),
    ) -> RuleIndex:
        include: dict[EntityKind, frozenset[str]] = {}
        exclude: dict[EntityKind, frozenset[str]] = {}
        for rule in rules:
            if rule.is_include:
                include[rule.kind] = rule.ids
            elif rule.ids:
                exclude[rule.kind] = rule.ids
        hidden_ids: dict[EntityKind, set[str]] = {}
        for entry in hidden:
            hidden_ids.setdefault(EntityKind(entry.kind), set()).add(entry.entity_id)
        return cls(
            include=include,
            exclude=exclude,
            hidden={kind: frozenset(ids) for kind, ids in hidden_ids.items()},
        )

    @property
    def include_kinds(self) -> list[EntityKind]:
        return sorted(self.include, key=KIND_INDEX.__getitem__)

    @property
    def is_empty(self) -> bool:
        return not (self.include or self.exclude or self.hidden)

    def excluded_ids(self, kind: EntityKind) -> frozenset[str]:
        return self.exclude.get(kind, frozenset())

    def hidden_ids(self, kind: EntityKind) -> frozenset[str]:
        return self.hidden.get(kind, frozenset())

    def is_hidden(self, ref: EntityRef) -> bool:
        return ref.id in self.hidden.get(ref.kind, ())

    def hidden_refs(self) -> list[EntityRef]:
        refs = [EntityRef(kind, entity_id) for kind, ids in self.hidden.items() for entity_id in ids]
        return sorted(refs, key=EntityRef.sort_key)
