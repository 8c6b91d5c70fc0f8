"""Tests for restriction rule and hide list storage."""

import pytest

from shroud.db.models import User
from shroud.db.session import transaction
from shroud.errors import ApiErrorCode, InvalidRequestError, RuleStoreUnavailableError
from shroud.services.rules import (
    SqlRuleStore,
    clear_restriction_rule,
    ensure_user,
    get_restriction_rule,
    hide_entities,
    hide_entity,
    list_hidden_entities,
    list_restriction_rules,
    set_restriction_rule,
    unhide_all,
    unhide_entity,
)
from shroud.services.visibility.types import EntityKind, EntityRef, RuleMode


class TestRestrictionRules:
    def test_set_creates_rule_and_user(self, db_session):
        with transaction(db_session):
            old, new = set_restriction_rule(
                db_session, 5, EntityKind.tag, RuleMode.EXCLUDE, ["10", "9", "9"]
            )

        assert old is None
        assert new.ids == {"9", "10"}
        assert new.mode is RuleMode.EXCLUDE
        assert db_session.get(User, 5) is not None
        assert get_restriction_rule(db_session, 5, EntityKind.tag) == new

    def test_set_replaces_existing_rule(self, db_session):
        with transaction(db_session):
            set_restriction_rule(db_session, 5, EntityKind.studio, RuleMode.EXCLUDE, ["s1"])
        with transaction(db_session):
            old, new = set_restriction_rule(db_session, 5, EntityKind.studio, RuleMode.INCLUDE, ["s2"])

        assert old.ids == {"s1"}
        assert new.mode is RuleMode.INCLUDE
        assert [rule.ids for rule in list_restriction_rules(db_session, 5)] == [{"s2"}]

    def test_content_kinds_cannot_carry_rules(self, db_session):
        with pytest.raises(InvalidRequestError) as exc_info:
            set_restriction_rule(db_session, 5, EntityKind.scene, RuleMode.EXCLUDE, ["sc1"])

        assert exc_info.value.code == ApiErrorCode.E_INVALID_KIND

    def test_clear_returns_deleted_rule(self, db_session):
        with transaction(db_session):
            set_restriction_rule(db_session, 5, EntityKind.group, RuleMode.EXCLUDE, ["g1"])
        with transaction(db_session):
            old = clear_restriction_rule(db_session, 5, EntityKind.group)

        assert old.ids == {"g1"}
        assert get_restriction_rule(db_session, 5, EntityKind.group) is None
        assert clear_restriction_rule(db_session, 5, EntityKind.group) is None

    def test_rules_listed_per_user(self, db_session):
        with transaction(db_session):
            set_restriction_rule(db_session, 5, EntityKind.tag, RuleMode.EXCLUDE, ["t1"])
            set_restriction_rule(db_session, 5, EntityKind.gallery, RuleMode.INCLUDE, [])
            set_restriction_rule(db_session, 6, EntityKind.tag, RuleMode.EXCLUDE, ["t2"])

        kinds = {rule.kind for rule in list_restriction_rules(db_session, 5)}
        assert kinds == {EntityKind.tag, EntityKind.gallery}


class TestHiddenEntities:
    def test_hide_is_idempotent(self, db_session):
        with transaction(db_session):
            assert hide_entity(db_session, 5, EntityKind.performer, "p1") is True
        with transaction(db_session):
            assert hide_entity(db_session, 5, EntityKind.performer, "p1") is False

        hidden = list_hidden_entities(db_session, 5)
        assert [(h.kind, h.entity_id) for h in hidden] == [(EntityKind.performer, "p1")]
        assert hidden[0].hidden_at is not None

    def test_unhide(self, db_session):
        with transaction(db_session):
            hide_entity(db_session, 5, EntityKind.scene, "sc1")
        with transaction(db_session):
            assert unhide_entity(db_session, 5, EntityKind.scene, "sc1") is True
        with transaction(db_session):
            assert unhide_entity(db_session, 5, EntityKind.scene, "sc1") is False

        assert list_hidden_entities(db_session, 5) == []

    def test_filter_by_kind(self, db_session):
        with transaction(db_session):
            hide_entity(db_session, 5, EntityKind.scene, "sc1")
            hide_entity(db_session, 5, EntityKind.tag, "t1")

        hidden = list_hidden_entities(db_session, 5, EntityKind.tag)
        assert [h.entity_id for h in hidden] == ["t1"]

    def test_bulk_hide_skips_duplicates_and_existing(self, db_session):
        with transaction(db_session):
            hide_entity(db_session, 5, EntityKind.scene, "sc1")
        with transaction(db_session):
            added = hide_entities(
                db_session,
                5,
                [
                    (EntityKind.scene, "sc1"),
                    (EntityKind.performer, "p1"),
                    (EntityKind.performer, "p1"),
                    (EntityKind.tag, "t1"),
                ],
            )

        assert added == [
            EntityRef(EntityKind.performer, "p1"),
            EntityRef(EntityKind.tag, "t1"),
        ]
        hidden = list_hidden_entities(db_session, 5)
        assert {(h.kind, h.entity_id) for h in hidden} == {
            (EntityKind.scene, "sc1"),
            (EntityKind.performer, "p1"),
            (EntityKind.tag, "t1"),
        }

    def test_unhide_all(self, db_session):
        with transaction(db_session):
            hide_entity(db_session, 5, EntityKind.scene, "sc1")
            hide_entity(db_session, 5, EntityKind.tag, "t1")
            hide_entity(db_session, 6, EntityKind.scene, "sc1")
        with transaction(db_session):
            assert unhide_all(db_session, 5) == 2
        with transaction(db_session):
            assert unhide_all(db_session, 5) == 0

        assert list_hidden_entities(db_session, 5) == []
        assert len(list_hidden_entities(db_session, 6)) == 1

    def test_unhide_all_of_one_kind(self, db_session):
        with transaction(db_session):
            hide_entity(db_session, 5, EntityKind.scene, "sc1")
            hide_entity(db_session, 5, EntityKind.scene, "sc2")
            hide_entity(db_session, 5, EntityKind.tag, "t1")
        with transaction(db_session):
            assert unhide_all(db_session, 5, EntityKind.scene) == 2

        hidden = list_hidden_entities(db_session, 5)
        assert [(h.kind, h.entity_id) for h in hidden] == [(EntityKind.tag, "t1")]


class TestSqlRuleStore:
    def test_reads_committed_rows(self, session_factory, db_session):
        with transaction(db_session):
            set_restriction_rule(db_session, 5, EntityKind.tag, RuleMode.EXCLUDE, ["t1"])
            hide_entity(db_session, 5, EntityKind.scene, "sc1")
            ensure_user(db_session, 7)

        store = SqlRuleStore(session_factory)

        assert [rule.ids for rule in store.get_restriction_rules(5)] == [{"t1"}]
        assert [h.entity_id for h in store.get_hidden_entities(5)] == ["sc1"]
        assert store.list_user_ids() == [5, 7]

    def test_database_errors_become_rule_store_errors(self, engine, session_factory):
        store = SqlRuleStore(session_factory)
        User.__table__.drop(engine)

        with pytest.raises(RuleStoreUnavailableError):
            store.list_user_ids()

    def test_user_roster_is_ordered(self, session_factory, db_session):
        with transaction(db_session):
            for user_id in (9, 3, 6):
                ensure_user(db_session, user_id)

        assert SqlRuleStore(session_factory).list_user_ids() == [3, 6, 9]
