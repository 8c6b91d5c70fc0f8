"""Tests for empty-entity pruning.

Verifies:
- Tier order and the downstream suffix used by incremental updates
- Hierarchies stay visible through any visible descendant
- Malformed cycles terminate and are reported
- Re-running a tier replaces its previous empty causes
"""

from shroud.services.visibility.graph import GroupNode, SceneNode, StudioNode, TagNode
from shroud.services.visibility.pruner import TIER_ORDER, EmptyEntityPruner, downstream_tiers
from shroud.services.visibility.state import ExclusionSet
from shroud.services.visibility.types import Cause, EntityKind, EntityRef, ExclusionReason
from tests.factories import build_graph, library_graph

HIDDEN = Cause(ExclusionReason.hidden)


def ref(kind: str, entity_id: str) -> EntityRef:
    return EntityRef(EntityKind(kind), entity_id)


def prune(graph, *excluded: EntityRef) -> ExclusionSet:
    state = ExclusionSet(1, graph)
    for target in excluded:
        state.add(target, HIDDEN)
    EmptyEntityPruner(graph).prune(state)
    return state


def empties(state: ExclusionSet) -> set[str]:
    return {
        f"{record.kind.value}:{record.entity_id}"
        for record in state.records()
        if record.reason is ExclusionReason.empty
    }


class TestDownstreamTiers:
    def test_tier_order(self):
        assert TIER_ORDER == (
            EntityKind.gallery,
            EntityKind.group,
            EntityKind.studio,
            EntityKind.performer,
            EntityKind.tag,
        )

    def test_image_change_reruns_everything(self):
        assert downstream_tiers({EntityKind.image}) == TIER_ORDER

    def test_scene_change_skips_galleries(self):
        assert downstream_tiers({EntityKind.scene}) == TIER_ORDER[1:]

    def test_tag_change_reruns_only_tags(self):
        assert downstream_tiers({EntityKind.tag}) == (EntityKind.tag,)

    def test_nothing_changed(self):
        assert downstream_tiers(set()) == ()


class TestEmptyEntities:
    def test_full_library_has_no_empties(self):
        assert empties(prune(library_graph())) == set()

    def test_gallery_without_visible_images_is_empty(self):
        state = prune(library_graph(), ref("image", "i1"))

        assert state.primary_cause(ref("gallery", "gal1")) == Cause(
            ExclusionReason.empty, EntityKind.image, "i1"
        )

    def test_entity_without_any_content_is_empty(self):
        graph = build_graph(studios=[StudioNode("lonely")])

        state = prune(graph)

        assert state.primary_cause(ref("studio", "lonely")) == Cause(ExclusionReason.empty)

    def test_tag_empty_source_prefers_kind_order(self):
        """t3 is carried by performer p1 and gallery gal1; the performer is reported."""
        state = prune(library_graph(), ref("performer", "p1"), ref("image", "i1"), ref("scene", "sc1"))

        assert state.primary_cause(ref("tag", "t3")) == Cause(
            ExclusionReason.empty, EntityKind.performer, "p1"
        )

    def test_already_excluded_entities_are_not_marked_empty(self):
        state = prune(library_graph(), ref("studio", "s3"), ref("scene", "sc3"), ref("image", "i2"))

        assert state.causes(ref("studio", "s3")) == {HIDDEN}

    def test_hundred_scene_studio_empties_when_all_scenes_excluded(self):
        graph = build_graph(
            studios=[StudioNode("big")],
            scenes=[SceneNode(str(n), studio_id="big") for n in range(1, 101)],
        )

        state = prune(graph, *(ref("scene", str(n)) for n in range(1, 101)))

        assert state.primary_cause(ref("studio", "big")) == Cause(
            ExclusionReason.empty, EntityKind.scene, "1"
        )

    def test_one_visible_scene_keeps_studio(self):
        graph = build_graph(
            studios=[StudioNode("big")],
            scenes=[SceneNode(str(n), studio_id="big") for n in range(1, 101)],
        )

        state = prune(graph, *(ref("scene", str(n)) for n in range(1, 100)))

        assert not state.is_excluded(ref("studio", "big"))

    def test_natural_order_picks_lowest_numeric_source(self):
        graph = build_graph(
            studios=[StudioNode("s")],
            scenes=[SceneNode("10", studio_id="s"), SceneNode("9", studio_id="s")],
        )

        state = prune(graph, ref("scene", "9"), ref("scene", "10"))

        assert state.primary_cause(ref("studio", "s")).source_id == "9"


class TestHierarchies:
    def test_parent_group_visible_through_child(self):
        state = prune(library_graph(), ref("scene", "sc1"))

        assert not state.is_excluded(ref("group", "g1"))

    def test_parent_studio_visible_through_child(self):
        graph = build_graph(
            studios=[StudioNode("parent"), StudioNode("child", parent_id="parent")],
            scenes=[SceneNode("sc", studio_id="child")],
        )

        assert empties(prune(graph)) == set()

    def test_parent_tag_visible_through_child(self):
        """t1's only scene is excluded, but its child t2 is still attached to visible content."""
        state = prune(library_graph(), ref("scene", "sc1"))

        assert not state.is_excluded(ref("tag", "t1"))

    def test_tag_with_two_parents_keeps_both_visible(self):
        graph = build_graph(
            tags=[TagNode("a"), TagNode("b"), TagNode("c", parent_ids={"a", "b"})],
            scenes=[SceneNode("sc", tag_ids={"c"})],
        )

        assert empties(prune(graph)) == set()

    def test_tag_visible_if_any_child_visible(self):
        graph = build_graph(
            tags=[TagNode("x"), TagNode("y", parent_ids={"x"}), TagNode("z", parent_ids={"x"})],
            scenes=[SceneNode("sc1", tag_ids={"y"}), SceneNode("sc2", tag_ids={"z"})],
        )

        state = prune(graph, ref("scene", "sc1"))

        assert empties(state) == {"tag:y"}
        assert not state.is_excluded(ref("tag", "x"))

    def test_excluded_parent_is_not_revived_by_child(self):
        state = prune(library_graph(), ref("studio", "s1"))

        assert state.causes(ref("studio", "s1")) == {HIDDEN}
        assert not state.is_excluded(ref("studio", "s2"))


class TestCycles:
    def test_content_free_cycle_terminates_and_is_empty(self):
        graph = build_graph(
            groups=[GroupNode("g1", parent_ids={"g2"}), GroupNode("g2", parent_ids={"g1"})]
        )
        state = ExclusionSet(1, graph)

        report = EmptyEntityPruner(graph).prune(state)

        assert report.cyclic == {EntityKind.group: 2}
        assert empties(state) == {"group:g1", "group:g2"}

    def test_cycle_with_content_is_visible(self):
        graph = build_graph(
            groups=[GroupNode("g1", parent_ids={"g2"}), GroupNode("g2", parent_ids={"g1"})],
            scenes=[SceneNode("sc", group_ids={"g1"})],
        )

        assert empties(prune(graph)) == set()

    def test_cycle_members_report_each_other_as_source(self):
        graph = build_graph(
            groups=[GroupNode("g1", parent_ids={"g2"}), GroupNode("g2", parent_ids={"g1"})]
        )
        state = ExclusionSet(1, graph)

        EmptyEntityPruner(graph).prune(state)

        assert state.primary_cause(ref("group", "g1")) == Cause(
            ExclusionReason.empty, EntityKind.group, "g2"
        )
        assert state.primary_cause(ref("group", "g2")) == Cause(
            ExclusionReason.empty, EntityKind.group, "g1"
        )


class TestRerun:
    def test_rerun_releases_stale_empty_causes(self):
        graph = library_graph()
        state = prune(graph, ref("image", "i1"))
        assert state.is_excluded(ref("gallery", "gal1"))

        state.discard(ref("image", "i1"), HIDDEN)
        report = EmptyEntityPruner(graph).prune(state, downstream_tiers({EntityKind.image}))

        assert not state.is_excluded(ref("gallery", "gal1"))
        assert report.emptied[EntityKind.gallery] == 0

    def test_partial_run_only_touches_selected_tiers(self):
        graph = build_graph(studios=[StudioNode("lonely")], tags=[TagNode("unused")])
        state = ExclusionSet(1, graph)

        report = EmptyEntityPruner(graph).prune(state, (EntityKind.tag,))

        assert report.tiers == (EntityKind.tag,)
        assert state.is_excluded(ref("tag", "unused"))
        assert not state.is_excluded(ref("studio", "lonely"))
