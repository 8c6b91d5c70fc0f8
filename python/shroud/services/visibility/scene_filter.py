"""Decides scene and image exclusions from rules and hidden entities.

Evaluation order per content entity:

1. INCLUDE rules. The entity must relate to at least one allowed id of
   every INCLUDE kind; no relationship of that kind counts as a failure.
2. EXCLUDE rules. Any related id in an exclude set restricts it. Tags are
   matched against the tag closure (own, performer, studio and group or
   gallery tags).
3. Hidden entities. Hidden directly, or cascaded from a hidden performer,
   studio, tag (closure), group or gallery.

Images follow the same contract. They have no group relationship, so a
group rule never applies to them.
"""

from __future__ import annotations

from collections.abc import Iterator

from shroud.services.visibility.graph import EntityGraphView
from shroud.services.visibility.state import sorted_ids
from shroud.services.visibility.types import (
    RULE_KINDS,
    Cause,
    EntityKind,
    EntityRef,
    ExclusionReason,
    RuleIndex,
)

_CASCADE_SOURCE_KINDS: tuple[EntityKind, ...] = (
    EntityKind.performer,
    EntityKind.studio,
    EntityKind.tag,
    EntityKind.group,
    EntityKind.gallery,
)

Relations = dict[EntityKind, frozenset[str]]


class SceneVisibilityFilter:
    def __init__(self, graph: EntityGraphView, index: RuleIndex | None = None):
        self._graph = graph
        self._index = index or RuleIndex()

    # -------------------------------------------------------------------------
    # Full evaluation
    # -------------------------------------------------------------------------

    def filter_scenes(self) -> Iterator[tuple[EntityRef, Cause]]:
        yield from self._filter(EntityKind.scene, self.scene_causes)

    def filter_images(self) -> Iterator[tuple[EntityRef, Cause]]:
        yield from self._filter(EntityKind.image, self.image_causes)

    def _filter(self, kind, evaluate) -> Iterator[tuple[EntityRef, Cause]]:
        if self._index.is_empty:
            return
        for entity_id in self._graph.ids(kind):
            ref = EntityRef(kind, entity_id)
            for cause in evaluate(entity_id):
                yield ref, cause

    def scene_causes(self, scene_id: str) -> list[Cause]:
        ref = EntityRef(EntityKind.scene, scene_id)
        return self._evaluate(ref, self._scene_relations(scene_id))

    def image_causes(self, image_id: str) -> list[Cause]:
        ref = EntityRef(EntityKind.image, image_id)
        return self._evaluate(ref, self._image_relations(image_id))

    def causes_for(self, ref: EntityRef) -> list[Cause]:
        if ref.kind is EntityKind.scene:
            return self.scene_causes(ref.id)
        if ref.kind is EntityKind.image:
            return self.image_causes(ref.id)
        raise ValueError(f"{ref.kind.value} is not a content kind")

    def _scene_relations(self, scene_id: str) -> Relations | None:
        node = self._graph.node(EntityKind.scene, scene_id)
        if node is None:
            return None
        return {
            EntityKind.tag: self._graph.scene_tag_closure(scene_id),
            EntityKind.studio: frozenset((node.studio_id,)) if node.studio_id else frozenset(),
            EntityKind.group: node.group_ids,
            EntityKind.gallery: node.gallery_ids,
            EntityKind.performer: node.performer_ids,
        }

    def _image_relations(self, image_id: str) -> Relations | None:
        node = self._graph.node(EntityKind.image, image_id)
        if node is None:
            return None
        return {
            EntityKind.tag: self._graph.image_tag_closure(image_id),
            EntityKind.studio: frozenset((node.studio_id,)) if node.studio_id else frozenset(),
            EntityKind.gallery: node.gallery_ids,
            EntityKind.performer: node.performer_ids,
        }

    def _evaluate(self, ref: EntityRef, relations: Relations | None) -> list[Cause]:
        index = self._index
        causes: list[Cause] = []
        if relations is not None:
            for kind in index.include_kinds:
                related = relations.get(kind)
                if related is None:
                    continue
                if related.isdisjoint(index.include[kind]):
                    causes.append(Cause(ExclusionReason.restricted, kind))

            for kind in RULE_KINDS:
                excluded = index.excluded_ids(kind)
                related = relations.get(kind)
                if not excluded or not related:
                    continue
                for hit in sorted_ids(related & excluded):
                    causes.append(Cause(ExclusionReason.restricted, kind, hit))

        if index.is_hidden(ref):
            causes.append(Cause(ExclusionReason.hidden))

        if relations is not None:
            for kind in _CASCADE_SOURCE_KINDS:
                hidden = index.hidden_ids(kind)
                related = relations.get(kind)
                if not hidden or not related:
                    continue
                for hit in sorted_ids(related & hidden):
                    causes.append(Cause(ExclusionReason.cascade, kind, hit))
        return causes

    # -------------------------------------------------------------------------
    # Narrow evaluation for incremental updates
    # -------------------------------------------------------------------------

    def causes_for_hidden(self, source: EntityRef) -> list[tuple[EntityRef, Cause]]:
        """Content entities cascaded from hiding ``source``."""
        targets = self._referencing(source, ExclusionReason.cascade)
        if source.kind in (EntityKind.scene, EntityKind.image):
            targets.append((source, Cause(ExclusionReason.hidden)))
        return targets

    def causes_for_rule_id(self, kind: EntityKind, entity_id: str) -> list[tuple[EntityRef, Cause]]:
        """Content entities restricted by one EXCLUDE rule id."""
        return self._referencing(EntityRef(kind, entity_id), ExclusionReason.restricted)

    def _referencing(self, source: EntityRef, reason: ExclusionReason) -> list[tuple[EntityRef, Cause]]:
        cause = Cause(reason, source.kind, source.id)
        affected = []
        for content_kind in (EntityKind.scene, EntityKind.image):
            for entity_id in self._graph.related(source, content_kind):
                affected.append((EntityRef(content_kind, entity_id), cause))
        return affected
