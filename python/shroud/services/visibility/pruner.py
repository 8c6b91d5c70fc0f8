"""Marks organizational entities with no visible content as ``empty``.

Tiers run in a fixed order, each against the exclusions left by everything
before it:

    galleries -> groups -> studios -> performers -> tags

Hierarchies (group, studio and tag parents) are resolved by propagating
visibility upward from entities that have visible content of their own.
The walk keeps a visited set, so a malformed cycle simply stops the walk
and contributes nothing.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from shroud.services.visibility.graph import HIERARCHY_KINDS, TAGGED_KINDS, EntityGraphView
from shroud.services.visibility.state import ExclusionSet, first_excluded
from shroud.services.visibility.types import Cause, EntityKind, EntityRef, ExclusionReason

TIER_ORDER: tuple[EntityKind, ...] = (
    EntityKind.gallery,
    EntityKind.group,
    EntityKind.studio,
    EntityKind.performer,
    EntityKind.tag,
)

# Kinds whose exclusion status each tier reads.
_TIER_INPUTS: dict[EntityKind, frozenset[EntityKind]] = {
    EntityKind.gallery: frozenset({EntityKind.image, EntityKind.gallery}),
    EntityKind.group: frozenset({EntityKind.scene, EntityKind.group}),
    EntityKind.studio: frozenset(
        {EntityKind.scene, EntityKind.studio, EntityKind.group, EntityKind.gallery}
    ),
    EntityKind.performer: frozenset(
        {
            EntityKind.scene,
            EntityKind.gallery,
            EntityKind.image,
            EntityKind.group,
            EntityKind.performer,
        }
    ),
    EntityKind.tag: frozenset(EntityKind),
}


# kind -> related kinds that can keep it visible (tags are handled separately)
_CONTENT_KINDS: dict[EntityKind, tuple[EntityKind, ...]] = {
    EntityKind.gallery: (EntityKind.image,),
    EntityKind.group: (EntityKind.scene, EntityKind.group),
    EntityKind.studio: (EntityKind.scene, EntityKind.studio, EntityKind.group, EntityKind.gallery),
    EntityKind.performer: (EntityKind.scene, EntityKind.gallery, EntityKind.image, EntityKind.group),
}


def downstream_tiers(changed_kinds: Iterable[EntityKind]) -> tuple[EntityKind, ...]:
    """The suffix of ``TIER_ORDER`` that must re-run after ``changed_kinds`` moved.

    Every tier after the first affected one re-runs as well, since it reads
    the earlier tiers' output.
    """
    changed = frozenset(changed_kinds)
    for position, tier in enumerate(TIER_ORDER):
        if _TIER_INPUTS[tier] & changed:
            return TIER_ORDER[position:]
    return ()


@dataclass
class PruneReport:
    tiers: tuple[EntityKind, ...]
    emptied: dict[EntityKind, int] = field(default_factory=dict)
    cyclic: dict[EntityKind, int] = field(default_factory=dict)


class EmptyEntityPruner:
    def __init__(self, graph: EntityGraphView):
        self._graph = graph
        self._tiers: dict[EntityKind, Callable[[ExclusionSet], set[str]]] = {
            EntityKind.gallery: self._visible_galleries,
            EntityKind.group: self._visible_groups,
            EntityKind.studio: self._visible_studios,
            EntityKind.performer: self._visible_performers,
            EntityKind.tag: self._visible_tags,
        }

    def prune(self, state: ExclusionSet, tiers: Iterable[EntityKind] = TIER_ORDER) -> PruneReport:
        """Recompute ``empty`` exclusions for ``tiers`` in tier order.

        Existing ``empty`` causes in a tier are dropped before it is
        evaluated, so re-running a suffix after an incremental change gives
        the same result as a full pass.
        """
        selected = set(tiers)
        report = PruneReport(tiers=tuple(t for t in TIER_ORDER if t in selected))
        for tier in report.tiers:
            state.clear_reason(tier, ExclusionReason.empty)
            if tier in HIERARCHY_KINDS:
                cyclic = self._graph.cyclic_members(tier)
                if cyclic:
                    report.cyclic[tier] = len(cyclic)
            visible = self._tiers[tier](state)
            report.emptied[tier] = self._mark_empty(state, tier, visible)
        return report

    def _mark_empty(self, state: ExclusionSet, kind: EntityKind, visible: set[str]) -> int:
        # Sources are picked against the whole tier at once so the result does
        # not depend on iteration order.
        pending = {
            EntityRef(kind, entity_id)
            for entity_id in self._graph.ids(kind)
            if entity_id not in visible and not state.is_excluded_id(kind, entity_id)
        }
        for ref in pending:
            source = first_excluded(state, self._content_of(kind, ref.id), pending)
            if source is None:
                cause = Cause(ExclusionReason.empty)
            else:
                cause = Cause(ExclusionReason.empty, source.kind, source.id)
            state.add(ref, cause)
        return len(pending)

    def _content_of(self, kind: EntityKind, entity_id: str) -> Iterable[EntityRef]:
        """Everything that could keep ``kind:entity_id`` visible."""
        graph = self._graph
        ref = EntityRef(kind, entity_id)
        if kind is EntityKind.tag:
            for carrier_kind in TAGGED_KINDS:
                for carrier_id in graph.tag_carriers(carrier_kind, entity_id):
                    yield EntityRef(carrier_kind, carrier_id)
            for child_id in graph.children(kind, entity_id):
                yield EntityRef(kind, child_id)
            return
        for target_kind in _CONTENT_KINDS[kind]:
            for target_id in graph.related(ref, target_kind):
                yield EntityRef(target_kind, target_id)

    # -------------------------------------------------------------------------
    # Tiers
    # -------------------------------------------------------------------------

    def _any_visible(self, state: ExclusionSet, kind: EntityKind, ids: Iterable[str]) -> bool:
        return any(not state.is_excluded_id(kind, entity_id) for entity_id in ids)

    def _has_visible(self, state: ExclusionSet, ref: EntityRef, kinds: Iterable[EntityKind]) -> bool:
        return any(self._any_visible(state, kind, self._graph.related(ref, kind)) for kind in kinds)

    def _candidates(self, state: ExclusionSet, kind: EntityKind) -> list[str]:
        return [i for i in self._graph.ids(kind) if not state.is_excluded_id(kind, i)]

    def _visible_galleries(self, state: ExclusionSet) -> set[str]:
        kind = EntityKind.gallery
        return {
            gallery_id
            for gallery_id in self._candidates(state, kind)
            if self._has_visible(state, EntityRef(kind, gallery_id), (EntityKind.image,))
        }

    def _visible_groups(self, state: ExclusionSet) -> set[str]:
        kind = EntityKind.group
        seeds = [
            group_id
            for group_id in self._candidates(state, kind)
            if self._has_visible(state, EntityRef(kind, group_id), (EntityKind.scene,))
        ]
        return self._propagate_up(state, kind, seeds)

    def _visible_studios(self, state: ExclusionSet) -> set[str]:
        kind = EntityKind.studio
        owned = (EntityKind.scene, EntityKind.group, EntityKind.gallery)
        seeds = [
            studio_id
            for studio_id in self._candidates(state, kind)
            if self._has_visible(state, EntityRef(kind, studio_id), owned)
        ]
        return self._propagate_up(state, kind, seeds)

    def _visible_performers(self, state: ExclusionSet) -> set[str]:
        kind = EntityKind.performer
        appears_in = (EntityKind.scene, EntityKind.gallery, EntityKind.image, EntityKind.group)
        return {
            performer_id
            for performer_id in self._candidates(state, kind)
            if self._has_visible(state, EntityRef(kind, performer_id), appears_in)
        }

    def _visible_tags(self, state: ExclusionSet) -> set[str]:
        attached: set[str] = set()
        for carrier_kind in TAGGED_KINDS:
            for carrier_id, node in self._graph.nodes(carrier_kind).items():
                if not state.is_excluded_id(carrier_kind, carrier_id):
                    attached |= node.tag_ids
        seeds = [
            tag_id
            for tag_id in attached
            if self._graph.contains(EntityKind.tag, tag_id)
            and not state.is_excluded_id(EntityKind.tag, tag_id)
        ]
        return self._propagate_up(state, EntityKind.tag, seeds)

    def _propagate_up(self, state: ExclusionSet, kind: EntityKind, seeds: Iterable[str]) -> set[str]:
        """Seeds plus every non-excluded ancestor reachable through non-excluded parents."""
        visible = set(seeds)
        frontier = list(visible)
        while frontier:
            node_id = frontier.pop()
            for parent_id in self._graph.parents(kind, node_id):
                if parent_id in visible:
                    continue
                if not self._graph.contains(kind, parent_id) or state.is_excluded_id(kind, parent_id):
                    continue
                visible.add(parent_id)
                frontier.append(parent_id)
        return visible
