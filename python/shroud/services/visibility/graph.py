"""Immutable, versioned snapshot of the library entity graph.

An ``EntityGraphView`` is built once per catalog sync and never mutated.
All reverse indexes and tag closures the exclusion traversals need are
computed at construction time so a recompute is a series of dictionary
lookups.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from shroud.errors import CyclicGraphDetected
from shroud.logging import get_logger
from shroud.services.visibility.types import EntityKind, EntityRef

logger = get_logger(__name__)

_EMPTY: frozenset[str] = frozenset()


def _freeze(node: object, *names: str) -> None:
    object.__setattr__(node, "id", str(node.id))
    for name in names:
        object.__setattr__(node, name, frozenset(str(v) for v in getattr(node, name)))


def _optional_str(node: object, name: str) -> None:
    value = getattr(node, name)
    if value is not None:
        object.__setattr__(node, name, str(value))


@dataclass(frozen=True)
class SceneNode:
    id: str
    studio_id: str | None = None
    performer_ids: frozenset[str] = _EMPTY
    tag_ids: frozenset[str] = _EMPTY
    group_ids: frozenset[str] = _EMPTY
    gallery_ids: frozenset[str] = _EMPTY

    def __post_init__(self) -> None:
        _freeze(self, "performer_ids", "tag_ids", "group_ids", "gallery_ids")
        _optional_str(self, "studio_id")


@dataclass(frozen=True)
class PerformerNode:
    id: str
    tag_ids: frozenset[str] = _EMPTY

    def __post_init__(self) -> None:
        _freeze(self, "tag_ids")


@dataclass(frozen=True)
class StudioNode:
    id: str
    parent_id: str | None = None
    tag_ids: frozenset[str] = _EMPTY

    def __post_init__(self) -> None:
        _freeze(self, "tag_ids")
        _optional_str(self, "parent_id")


@dataclass(frozen=True)
class TagNode:
    id: str
    parent_ids: frozenset[str] = _EMPTY

    def __post_init__(self) -> None:
        _freeze(self, "parent_ids")


@dataclass(frozen=True)
class GroupNode:
    id: str
    studio_id: str | None = None
    tag_ids: frozenset[str] = _EMPTY
    parent_ids: frozenset[str] = _EMPTY

    def __post_init__(self) -> None:
        _freeze(self, "tag_ids", "parent_ids")
        _optional_str(self, "studio_id")


@dataclass(frozen=True)
class GalleryNode:
    id: str
    studio_id: str | None = None
    performer_ids: frozenset[str] = _EMPTY
    tag_ids: frozenset[str] = _EMPTY

    def __post_init__(self) -> None:
        _freeze(self, "performer_ids", "tag_ids")
        _optional_str(self, "studio_id")


@dataclass(frozen=True)
class ImageNode:
    id: str
    studio_id: str | None = None
    performer_ids: frozenset[str] = _EMPTY
    tag_ids: frozenset[str] = _EMPTY
    gallery_ids: frozenset[str] = _EMPTY

    def __post_init__(self) -> None:
        _freeze(self, "performer_ids", "tag_ids", "gallery_ids")
        _optional_str(self, "studio_id")


Node = SceneNode | PerformerNode | StudioNode | TagNode | GroupNode | GalleryNode | ImageNode

# Kinds whose nodes carry their own tag assignments.
TAGGED_KINDS: tuple[EntityKind, ...] = (
    EntityKind.scene,
    EntityKind.performer,
    EntityKind.studio,
    EntityKind.group,
    EntityKind.gallery,
    EntityKind.image,
)

# Kinds with parent/child hierarchies.
HIERARCHY_KINDS: tuple[EntityKind, ...] = (EntityKind.tag, EntityKind.group, EntityKind.studio)


def _reverse(pairs: Iterable[tuple[str | None, str]]) -> dict[str, frozenset[str]]:
    index: dict[str, set[str]] = defaultdict(set)
    for key, value in pairs:
        if key is not None:
            index[key].add(value)
    return {key: frozenset(values) for key, values in index.items()}


class EntityGraphView:
    """Read-only view of every library entity and relationship at one version.

    Dangling references (an edge to an entity not present in the snapshot)
    are kept on the nodes but contribute nothing to closures of missing
    nodes.
    """

    def __init__(
        self,
        version: int,
        *,
        scenes: Iterable[SceneNode] = (),
        performers: Iterable[PerformerNode] = (),
        studios: Iterable[StudioNode] = (),
        tags: Iterable[TagNode] = (),
        groups: Iterable[GroupNode] = (),
        galleries: Iterable[GalleryNode] = (),
        images: Iterable[ImageNode] = (),
    ):
        self.version = version
        self._nodes: dict[EntityKind, dict[str, Node]] = {
            EntityKind.scene: {n.id: n for n in scenes},
            EntityKind.performer: {n.id: n for n in performers},
            EntityKind.studio: {n.id: n for n in studios},
            EntityKind.tag: {n.id: n for n in tags},
            EntityKind.group: {n.id: n for n in groups},
            EntityKind.gallery: {n.id: n for n in galleries},
            EntityKind.image: {n.id: n for n in images},
        }
        self._ids = {kind: frozenset(nodes) for kind, nodes in self._nodes.items()}

        scene_nodes = self._nodes[EntityKind.scene].values()
        image_nodes = self._nodes[EntityKind.image].values()
        gallery_nodes = self._nodes[EntityKind.gallery].values()
        group_nodes = self._nodes[EntityKind.group].values()
        studio_nodes = self._nodes[EntityKind.studio].values()
        tag_nodes = self._nodes[EntityKind.tag].values()

        self._tag_carriers = {
            kind: _reverse((t, n.id) for n in self._nodes[kind].values() for t in n.tag_ids)
            for kind in TAGGED_KINDS
        }

        related: dict[tuple[EntityKind, EntityKind], dict[str, frozenset[str]]] = {
            (EntityKind.performer, EntityKind.scene): _reverse(
                (p, n.id) for n in scene_nodes for p in n.performer_ids
            ),
            (EntityKind.studio, EntityKind.scene): _reverse((n.studio_id, n.id) for n in scene_nodes),
            (EntityKind.group, EntityKind.scene): _reverse(
                (g, n.id) for n in scene_nodes for g in n.group_ids
            ),
            (EntityKind.gallery, EntityKind.scene): _reverse(
                (g, n.id) for n in scene_nodes for g in n.gallery_ids
            ),
            (EntityKind.performer, EntityKind.image): _reverse(
                (p, n.id) for n in image_nodes for p in n.performer_ids
            ),
            (EntityKind.studio, EntityKind.image): _reverse((n.studio_id, n.id) for n in image_nodes),
            (EntityKind.gallery, EntityKind.image): _reverse(
                (g, n.id) for n in image_nodes for g in n.gallery_ids
            ),
            (EntityKind.performer, EntityKind.gallery): _reverse(
                (p, n.id) for n in gallery_nodes for p in n.performer_ids
            ),
            (EntityKind.studio, EntityKind.gallery): _reverse(
                (n.studio_id, n.id) for n in gallery_nodes
            ),
            (EntityKind.studio, EntityKind.group): _reverse((n.studio_id, n.id) for n in group_nodes),
            (EntityKind.performer, EntityKind.group): _reverse(
                (p, g) for n in scene_nodes for p in n.performer_ids for g in n.group_ids
            ),
            (EntityKind.studio, EntityKind.studio): _reverse(
                (n.parent_id, n.id) for n in studio_nodes
            ),
            (EntityKind.group, EntityKind.group): _reverse(
                (p, n.id) for n in group_nodes for p in n.parent_ids
            ),
            (EntityKind.tag, EntityKind.tag): _reverse(
                (p, n.id) for n in tag_nodes for p in n.parent_ids
            ),
        }

        self._scene_tags = {n.id: self._build_scene_tags(n) for n in scene_nodes}
        self._image_tags = {n.id: self._build_image_tags(n) for n in image_nodes}
        related[(EntityKind.tag, EntityKind.scene)] = _reverse(
            (t, sid) for sid, closure in self._scene_tags.items() for t in closure
        )
        related[(EntityKind.tag, EntityKind.image)] = _reverse(
            (t, iid) for iid, closure in self._image_tags.items() for t in closure
        )
        self._related = related

        self._cycles: dict[EntityKind, frozenset[str]] = {}
        self._cycles_lock = threading.Lock()

    def __repr__(self) -> str:
        counts = ", ".join(f"{kind.value}={len(ids)}" for kind, ids in self._ids.items())
        return f"<EntityGraphView v{self.version} {counts}>"

    # -------------------------------------------------------------------------
    # Node access
    # -------------------------------------------------------------------------

    def ids(self, kind: EntityKind) -> frozenset[str]:
        return self._ids[kind]

    def count(self, kind: EntityKind) -> int:
        return len(self._ids[kind])

    def contains(self, kind: EntityKind, entity_id: str) -> bool:
        return entity_id in self._nodes[kind]

    def node(self, kind: EntityKind, entity_id: str) -> Node | None:
        return self._nodes[kind].get(entity_id)

    def nodes(self, kind: EntityKind) -> Mapping[str, Node]:
        return self._nodes[kind]

    # -------------------------------------------------------------------------
    # Relationships
    # -------------------------------------------------------------------------

    def tag_carriers(self, kind: EntityKind, tag_id: str) -> frozenset[str]:
        """Entities of ``kind`` whose directly assigned tags contain ``tag_id``."""
        return self._tag_carriers[kind].get(tag_id, _EMPTY)

    def related(self, source: EntityRef, target_kind: EntityKind) -> frozenset[str]:
        """Ids of ``target_kind`` entities that reference ``source``.

        For ``tag -> scene`` and ``tag -> image`` this is the tag closure, not
        the direct assignment. Same-kind lookups return children.
        """
        index = self._related.get((source.kind, target_kind))
        if index is None:
            return _EMPTY
        return index.get(source.id, _EMPTY)

    def children(self, kind: EntityKind, entity_id: str) -> frozenset[str]:
        return self.related(EntityRef(kind, entity_id), kind)

    def parents(self, kind: EntityKind, entity_id: str) -> frozenset[str]:
        node = self._nodes[kind].get(entity_id)
        if node is None:
            return _EMPTY
        if kind is EntityKind.studio:
            return frozenset((node.parent_id,)) if node.parent_id else _EMPTY
        if kind in (EntityKind.tag, EntityKind.group):
            return node.parent_ids
        return _EMPTY

    def scene_tag_closure(self, scene_id: str) -> frozenset[str]:
        return self._scene_tags.get(scene_id, _EMPTY)

    def image_tag_closure(self, image_id: str) -> frozenset[str]:
        return self._image_tags.get(image_id, _EMPTY)

    def _tags_of(self, kind: EntityKind, entity_id: str | None) -> frozenset[str]:
        if entity_id is None:
            return _EMPTY
        node = self._nodes[kind].get(entity_id)
        return node.tag_ids if node is not None else _EMPTY

    def _build_scene_tags(self, scene: SceneNode) -> frozenset[str]:
        closure = set(scene.tag_ids)
        for performer_id in scene.performer_ids:
            closure |= self._tags_of(EntityKind.performer, performer_id)
        closure |= self._tags_of(EntityKind.studio, scene.studio_id)
        for group_id in scene.group_ids:
            closure |= self._tags_of(EntityKind.group, group_id)
        return frozenset(closure)

    def _build_image_tags(self, image: ImageNode) -> frozenset[str]:
        closure = set(image.tag_ids)
        for performer_id in image.performer_ids:
            closure |= self._tags_of(EntityKind.performer, performer_id)
        closure |= self._tags_of(EntityKind.studio, image.studio_id)
        for gallery_id in image.gallery_ids:
            closure |= self._tags_of(EntityKind.gallery, gallery_id)
        return frozenset(closure)

    # -------------------------------------------------------------------------
    # Data quality
    # -------------------------------------------------------------------------

    def cyclic_members(self, kind: EntityKind) -> frozenset[str]:
        """Ids that sit on a parent/child cycle in the ``kind`` hierarchy.

        Computed lazily and once per snapshot; the first computation that
        finds a cycle logs ``cyclic_graph_detected``.
        """
        if kind not in HIERARCHY_KINDS:
            return _EMPTY
        with self._cycles_lock:
            cached = self._cycles.get(kind)
            if cached is not None:
                return cached
            members = self._find_cycles(kind)
            self._cycles[kind] = members
        if members:
            logger.warning(
                "cyclic_graph_detected",
                kind=kind.value,
                members=len(members),
                sample=sorted(members)[:10],
                graph_version=self.version,
            )
        return members

    def cycle_reports(self) -> list[CyclicGraphDetected]:
        reports = []
        for kind in HIERARCHY_KINDS:
            members = self.cyclic_members(kind)
            if members:
                reports.append(CyclicGraphDetected(kind.value, members))
        return reports

    def _find_cycles(self, kind: EntityKind) -> frozenset[str]:
        # Iterative Tarjan over parent edges; members of non-trivial SCCs
        # (or self loops) are cyclic.
        known = self._ids[kind]
        index: dict[str, int] = {}
        low: dict[str, int] = {}
        stack: list[str] = []
        on_stack: set[str] = set()
        members: set[str] = set()
        counter = 0

        for root in sorted(known):
            if root in index:
                continue
            index[root] = low[root] = counter
            counter += 1
            stack.append(root)
            on_stack.add(root)
            work = [(root, iter(sorted(self.parents(kind, root))))]
            while work:
                node, edges = work[-1]
                descended = False
                for nxt in edges:
                    if nxt not in known:
                        continue
                    if nxt not in index:
                        index[nxt] = low[nxt] = counter
                        counter += 1
                        stack.append(nxt)
                        on_stack.add(nxt)
                        work.append((nxt, iter(sorted(self.parents(kind, nxt)))))
                        descended = True
                        break
                    if nxt in on_stack:
                        low[node] = min(low[node], index[nxt])
                if descended:
                    continue
                work.pop()
                if work:
                    caller = work[-1][0]
                    low[caller] = min(low[caller], low[node])
                if low[node] == index[node]:
                    component = []
                    while True:
                        member = stack.pop()
                        on_stack.discard(member)
                        component.append(member)
                        if member == node:
                            break
                    if len(component) > 1 or node in self.parents(kind, node):
                        members.update(component)
        return frozenset(members)

    def changed_kinds(self, previous: EntityGraphView | None) -> set[EntityKind]:
        """Kinds whose nodes differ from ``previous`` (all kinds when None)."""
        if previous is None:
            return set(EntityKind)
        return {kind for kind in EntityKind if self._nodes[kind] != previous._nodes[kind]}
