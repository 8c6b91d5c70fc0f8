"""Expands restriction rules and hides onto organizational entities.

Scenes and images are decided by ``SceneVisibilityFilter``; this module
covers the rest of the graph: the rule's own kind plus performers, studios,
groups and galleries reached through a single relationship hop.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from shroud.services.visibility.graph import EntityGraphView
from shroud.services.visibility.types import (
    Cause,
    EntityKind,
    EntityRef,
    ExclusionReason,
    RestrictionRule,
    RuleIndex,
)

# source kind -> kinds reached through one relationship hop
_EXPANSIONS: dict[EntityKind, tuple[EntityKind, ...]] = {
    EntityKind.tag: (EntityKind.performer, EntityKind.studio, EntityKind.group, EntityKind.gallery),
    EntityKind.studio: (EntityKind.group, EntityKind.gallery),
}


@dataclass
class RuleExpansion:
    """Entities a single rule directly restricts.

    ``include`` is set for INCLUDE rules and is consumed by the content
    filter, which applies it to scenes and images.
    """

    rule: RestrictionRule
    causes: list[tuple[EntityRef, Cause]] = field(default_factory=list)
    include: RestrictionRule | None = None

    def by_kind(self) -> dict[EntityKind, set[str]]:
        affected: dict[EntityKind, set[str]] = {}
        for ref, _cause in self.causes:
            affected.setdefault(ref.kind, set()).add(ref.id)
        return affected


class CascadeResolver:
    def __init__(self, graph: EntityGraphView):
        self._graph = graph

    def resolve(self, rule: RestrictionRule) -> RuleExpansion:
        expansion = RuleExpansion(rule=rule)
        restricted = Cause(ExclusionReason.restricted)

        if rule.is_include:
            expansion.include = rule
            for entity_id in self._graph.ids(rule.kind) - rule.ids:
                expansion.causes.append((EntityRef(rule.kind, entity_id), restricted))
            return expansion

        if not rule.ids:
            return expansion

        for entity_id in rule.ids:
            source = EntityRef(rule.kind, entity_id)
            expansion.causes.append((source, restricted))
            expansion.causes.extend(self.expand(source, ExclusionReason.restricted))
        return expansion

    def expand(self, source: EntityRef, reason: ExclusionReason) -> list[tuple[EntityRef, Cause]]:
        """One relationship hop from ``source`` onto organizational entities.

        Tag sources reach entities that carry the tag directly; the tag
        hierarchy is not walked.
        """
        targets = _EXPANSIONS.get(source.kind)
        if not targets:
            return []
        cause = Cause(reason, source.kind, source.id)
        affected = []
        for kind in targets:
            if source.kind is EntityKind.tag:
                ids = self._graph.tag_carriers(kind, source.id)
            else:
                ids = self._graph.related(source, kind)
            affected.extend((EntityRef(kind, entity_id), cause) for entity_id in ids)
        return affected

    def causes_for(self, ref: EntityRef, index: RuleIndex) -> list[Cause]:
        """Every non-empty cause that currently applies to an organizational entity.

        This is the inverse of ``resolve``/``expand`` and is used to re-check
        entities orphaned by an incremental retraction.
        """
        causes: list[Cause] = []
        if ref.id in index.excluded_ids(ref.kind):
            causes.append(Cause(ExclusionReason.restricted))
        allowed = index.include.get(ref.kind)
        if allowed is not None and ref.id not in allowed and self._graph.contains(ref.kind, ref.id):
            causes.append(Cause(ExclusionReason.restricted))
        if index.is_hidden(ref):
            causes.append(Cause(ExclusionReason.hidden))

        node = self._graph.node(ref.kind, ref.id)
        if node is None:
            return causes

        sources: list[EntityRef] = []
        if ref.kind in _EXPANSIONS[EntityKind.tag]:
            sources.extend(EntityRef(EntityKind.tag, tag_id) for tag_id in node.tag_ids)
        if ref.kind in _EXPANSIONS[EntityKind.studio] and node.studio_id is not None:
            sources.append(EntityRef(EntityKind.studio, node.studio_id))

        for source in sources:
            if source.id in index.excluded_ids(source.kind):
                causes.append(Cause(ExclusionReason.restricted, source.kind, source.id))
            if index.is_hidden(source):
                causes.append(Cause(ExclusionReason.cascade, source.kind, source.id))
        return causes
