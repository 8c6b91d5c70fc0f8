"""Tests for expanding restriction rules and hides onto organizational entities."""

from shroud.services.visibility.cascade import CascadeResolver
from shroud.services.visibility.types import (
    Cause,
    EntityKind,
    EntityRef,
    ExclusionReason,
    RuleIndex,
)
from tests.factories import exclude, hidden, include, library_graph, scenario_graph

RESTRICTED = Cause(ExclusionReason.restricted)


def ref(kind: str, entity_id: str) -> EntityRef:
    return EntityRef(EntityKind(kind), entity_id)


class TestResolveExclude:
    def test_tag_rule_reaches_direct_carriers(self):
        """A tag rule restricts the tag and everything organizational carrying it."""
        expansion = CascadeResolver(scenario_graph()).resolve(exclude(1, "tag", "t123"))

        assert (ref("tag", "t123"), RESTRICTED) in expansion.causes
        assert (
            ref("studio", "s9"),
            Cause(ExclusionReason.restricted, EntityKind.tag, "t123"),
        ) in expansion.causes
        assert expansion.by_kind() == {EntityKind.tag: {"t123"}, EntityKind.studio: {"s9"}}
        assert expansion.include is None

    def test_tag_rule_does_not_touch_content(self):
        expansion = CascadeResolver(scenario_graph()).resolve(exclude(1, "tag", "t123"))

        assert EntityKind.scene not in expansion.by_kind()
        assert EntityKind.performer not in expansion.by_kind()

    def test_tag_rule_does_not_walk_tag_hierarchy(self):
        """Excluding a parent tag leaves its child tag alone."""
        expansion = CascadeResolver(library_graph()).resolve(exclude(1, "tag", "t1"))

        assert expansion.by_kind() == {EntityKind.tag: {"t1"}}

    def test_studio_rule_reaches_owned_groups_and_galleries(self):
        expansion = CascadeResolver(library_graph()).resolve(exclude(1, "studio", "s1"))

        assert expansion.by_kind() == {
            EntityKind.studio: {"s1"},
            EntityKind.group: {"g1"},
            EntityKind.gallery: {"gal1"},
        }

    def test_studio_rule_does_not_reach_child_studios(self):
        expansion = CascadeResolver(library_graph()).resolve(exclude(1, "studio", "s1"))

        assert "s2" not in expansion.by_kind()[EntityKind.studio]

    def test_group_rule_only_restricts_listed_groups(self):
        expansion = CascadeResolver(library_graph()).resolve(exclude(1, "group", "g1"))

        assert expansion.by_kind() == {EntityKind.group: {"g1"}}

    def test_empty_exclude_rule_restricts_nothing(self):
        expansion = CascadeResolver(library_graph()).resolve(exclude(1, "tag"))

        assert expansion.causes == []

    def test_unknown_ids_are_restricted_without_expansion(self):
        expansion = CascadeResolver(library_graph()).resolve(exclude(1, "gallery", "gone"))

        assert expansion.causes == [(ref("gallery", "gone"), RESTRICTED)]


class TestResolveInclude:
    def test_include_restricts_complement_of_kind(self):
        expansion = CascadeResolver(library_graph()).resolve(include(1, "studio", "s1"))

        assert expansion.by_kind() == {EntityKind.studio: {"s2", "s3"}}
        assert expansion.include is not None
        assert expansion.include.ids == {"s1"}

    def test_empty_include_restricts_every_entity_of_kind(self):
        expansion = CascadeResolver(library_graph()).resolve(include(1, "gallery"))

        assert expansion.by_kind() == {EntityKind.gallery: {"gal1", "gal2"}}


class TestExpand:
    def test_hidden_tag_cascades_to_carriers(self):
        causes = CascadeResolver(library_graph()).expand(ref("tag", "t3"), ExclusionReason.cascade)

        cascade = Cause(ExclusionReason.cascade, EntityKind.tag, "t3")
        assert sorted(causes, key=lambda pair: pair[0].sort_key()) == [
            (ref("performer", "p1"), cascade),
            (ref("gallery", "gal1"), cascade),
        ]

    def test_performer_has_no_organizational_expansion(self):
        resolver = CascadeResolver(library_graph())

        assert resolver.expand(ref("performer", "p1"), ExclusionReason.cascade) == []


class TestCausesFor:
    def test_restricted_carrier_reports_tag_source(self):
        index = RuleIndex.build([exclude(1, "tag", "t3")])
        causes = CascadeResolver(library_graph()).causes_for(ref("performer", "p1"), index)

        assert causes == [Cause(ExclusionReason.restricted, EntityKind.tag, "t3")]

    def test_include_failure_and_hide_are_both_reported(self):
        index = RuleIndex.build([include(1, "studio", "s1")], [hidden(1, "studio", "s3")])
        causes = CascadeResolver(library_graph()).causes_for(ref("studio", "s3"), index)

        assert set(causes) == {RESTRICTED, Cause(ExclusionReason.hidden)}

    def test_hidden_owner_cascades(self):
        index = RuleIndex.build([], [hidden(1, "studio", "s1")])
        causes = CascadeResolver(library_graph()).causes_for(ref("group", "g1"), index)

        assert causes == [Cause(ExclusionReason.cascade, EntityKind.studio, "s1")]

    def test_untouched_entity_has_no_causes(self):
        index = RuleIndex.build([exclude(1, "tag", "t1")])

        assert CascadeResolver(library_graph()).causes_for(ref("studio", "s2"), index) == []
