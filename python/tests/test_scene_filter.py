"""Tests for scene and image visibility decisions."""

import pytest

from shroud.services.visibility.graph import ImageNode, SceneNode, StudioNode, TagNode
from shroud.services.visibility.scene_filter import SceneVisibilityFilter
from shroud.services.visibility.types import (
    Cause,
    EntityKind,
    EntityRef,
    ExclusionReason,
    RuleIndex,
)
from tests.factories import build_graph, exclude, hidden, include, library_graph, scenario_graph


def scene_filter(graph, rules=(), hides=()) -> SceneVisibilityFilter:
    return SceneVisibilityFilter(graph, RuleIndex.build(rules, hides))


class TestExcludeRules:
    def test_studio_tag_restricts_scene(self):
        """A tag on the scene's studio is part of the scene's tag closure."""
        content = scene_filter(scenario_graph(), [exclude(1, "tag", "t123")])

        assert content.scene_causes("sc1") == [
            Cause(ExclusionReason.restricted, EntityKind.tag, "t123")
        ]
        assert content.scene_causes("sc2") == []

    def test_performer_tag_restricts_scene(self):
        content = scene_filter(library_graph(), [exclude(1, "tag", "t3")])

        assert content.scene_causes("sc1") == [Cause(ExclusionReason.restricted, EntityKind.tag, "t3")]

    def test_child_tag_rule_does_not_match_parent_tag(self):
        content = scene_filter(library_graph(), [exclude(1, "tag", "t2")])

        assert content.scene_causes("sc1") == []
        assert content.scene_causes("sc3") == [Cause(ExclusionReason.restricted, EntityKind.tag, "t2")]

    def test_one_cause_per_matching_id(self):
        graph = build_graph(
            tags=[TagNode("a"), TagNode("b")],
            scenes=[SceneNode("sc", tag_ids={"a", "b"})],
        )
        content = scene_filter(graph, [exclude(1, "tag", "a", "b")])

        assert content.scene_causes("sc") == [
            Cause(ExclusionReason.restricted, EntityKind.tag, "a"),
            Cause(ExclusionReason.restricted, EntityKind.tag, "b"),
        ]

    def test_group_rule_never_applies_to_images(self):
        content = scene_filter(library_graph(), [exclude(1, "group", "g1", "g2")])

        assert list(content.filter_images()) == []
        assert {ref.id for ref, _ in content.filter_scenes()} == {"sc1", "sc2"}


class TestIncludeRules:
    def test_scene_outside_allowed_studios_is_restricted(self):
        content = scene_filter(library_graph(), [include(1, "studio", "s1")])

        assert content.scene_causes("sc1") == []
        assert content.scene_causes("sc2") == [
            Cause(ExclusionReason.restricted, EntityKind.studio)
        ]

    def test_missing_relationship_fails_include(self):
        """An image with no gallery at all fails a gallery INCLUDE rule."""
        content = scene_filter(library_graph(), [include(1, "gallery", "gal1")])

        assert content.image_causes("i1") == []
        assert content.image_causes("i3") == [
            Cause(ExclusionReason.restricted, EntityKind.gallery)
        ]

    def test_include_and_exclude_compose(self):
        content = scene_filter(
            library_graph(), [include(1, "studio", "s1", "s3"), exclude(1, "tag", "t2")]
        )

        restricted = dict(content.filter_scenes())
        assert set(restricted) == {EntityRef(EntityKind.scene, "sc2"), EntityRef(EntityKind.scene, "sc3")}
        assert restricted[EntityRef(EntityKind.scene, "sc3")] == Cause(
            ExclusionReason.restricted, EntityKind.tag, "t2"
        )


class TestHidden:
    def test_directly_hidden_scene(self):
        content = scene_filter(library_graph(), hides=[hidden(1, "scene", "sc2")])

        assert content.scene_causes("sc2") == [Cause(ExclusionReason.hidden)]

    def test_hidden_performer_cascades_to_scenes_and_images(self):
        content = scene_filter(library_graph(), hides=[hidden(1, "performer", "p1")])

        cascade = Cause(ExclusionReason.cascade, EntityKind.performer, "p1")
        assert content.scene_causes("sc1") == [cascade]
        assert content.image_causes("i1") == [cascade]

    def test_hidden_tag_cascades_through_closure(self):
        graph = build_graph(
            tags=[TagNode("t")],
            studios=[StudioNode("s", tag_ids={"t"})],
            images=[ImageNode("i", studio_id="s")],
        )
        content = scene_filter(graph, hides=[hidden(1, "tag", "t")])

        assert content.image_causes("i") == [Cause(ExclusionReason.cascade, EntityKind.tag, "t")]

    def test_no_rules_yields_nothing(self):
        content = SceneVisibilityFilter(library_graph())

        assert list(content.filter_scenes()) == []
        assert list(content.filter_images()) == []


class TestNarrowEvaluation:
    def test_causes_for_hidden_scene_includes_itself(self):
        content = SceneVisibilityFilter(library_graph())

        assert content.causes_for_hidden(EntityRef(EntityKind.scene, "sc3")) == [
            (EntityRef(EntityKind.scene, "sc3"), Cause(ExclusionReason.hidden))
        ]

    def test_causes_for_rule_id_uses_tag_closure(self):
        content = SceneVisibilityFilter(library_graph())

        affected = content.causes_for_rule_id(EntityKind.tag, "t3")
        cause = Cause(ExclusionReason.restricted, EntityKind.tag, "t3")
        assert sorted(affected, key=lambda pair: pair[0].sort_key()) == [
            (EntityRef(EntityKind.scene, "sc1"), cause),
            (EntityRef(EntityKind.image, "i1"), cause),
        ]

    def test_causes_for_rejects_organizational_kinds(self):
        with pytest.raises(ValueError):
            SceneVisibilityFilter(library_graph()).causes_for(EntityRef(EntityKind.tag, "t1"))
