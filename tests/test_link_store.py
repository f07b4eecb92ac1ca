"""
Integration Tests: ProjectLinkStore + Preferences Service (SQLite in-memory)
"""

import json
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from triage_engine.errors import PersistenceError
from triage_engine.models import ProjectEmailLink, UserPreferences
from triage_engine.priority_config import DEFAULT_PRIORITY_CONFIG
from triage_engine.rule_engine import LinkInsertStatus, LinkKey, NewLink
from triage_engine.services.link_store import ProjectLinkStore
from triage_engine.services.preferences_service import (
    load_assignment_rule,
    load_assignment_rules,
    load_priority_config,
    save_priority_config,
)


def make_link(project_id="P1", email_id="e1", confidence=0.75):
    return NewLink(
        project_id=project_id,
        email_id=email_id,
        user_id="u1",
        confidence=confidence,
        metadata={"rule_id": "1", "linked_by": "rule-engine"},
    )


class TestProjectLinkStore:
    """Tests für ProjectLinkStore"""

    def test_insert_and_load(self, session, make_email):
        make_email("e1")
        store = ProjectLinkStore(session)

        result = store.insert_link(make_link())

        assert result.status is LinkInsertStatus.INSERTED
        assert store.load_existing_links(["e1"]) == {LinkKey("P1", "e1")}
        row = session.query(ProjectEmailLink).one()
        assert row.source == "rule"
        assert row.link_metadata["rule_id"] == "1"

    def test_duplicate_is_reported_not_failed(self, session, make_email):
        make_email("e1")
        store = ProjectLinkStore(session)
        store.insert_link(make_link(confidence=0.75))

        result = store.insert_link(make_link(confidence=1.0))

        assert result.status is LinkInsertStatus.DUPLICATE
        assert result.ok
        # Bestehender Link bleibt unverändert
        assert session.query(ProjectEmailLink).one().confidence == 0.75

    def test_failure_does_not_poison_session(self, session, make_email):
        make_email("e1")
        store = ProjectLinkStore(session)

        failed = store.insert_link(make_link(email_id="missing"))
        inserted = store.insert_link(make_link(project_id="P2"))

        assert failed.status is LinkInsertStatus.FAILED
        assert "IntegrityError" in failed.error
        assert inserted.status is LinkInsertStatus.INSERTED
        session.commit()
        assert session.query(ProjectEmailLink).count() == 1

    def test_overrides(self, session, make_email):
        make_email("e1")
        make_email("e2")
        store = ProjectLinkStore(session)

        assert store.add_override("u1", "P1", "e1") is True
        assert store.add_override("u1", "P1", "e1") is False
        store.add_override("u1", "P2", "e2")
        store.add_override("u2", "P3", "e1")

        assert store.load_overrides("u1") == {LinkKey("P1", "e1"), LinkKey("P2", "e2")}
        assert store.load_overrides("u1", ["e1"]) == {LinkKey("P1", "e1")}

    def test_load_existing_filters_projects(self, session, make_email):
        make_email("e1")
        store = ProjectLinkStore(session)
        store.insert_link(make_link("P1"))
        store.insert_link(make_link("P2"))
        assert store.load_existing_links(["e1"], project_ids=["P2"]) == {LinkKey("P2", "e1")}

    def test_read_errors_become_persistence_errors(self, session):
        store = ProjectLinkStore(session)
        with patch.object(session, "query", side_effect=OperationalError("SELECT", {}, Exception("locked"))):
            with pytest.raises(PersistenceError):
                store.load_overrides("u1")
            with pytest.raises(PersistenceError):
                store.load_existing_links(["e1"])


class TestPreferencesService:
    """Tests für preferences_service"""

    def test_missing_preferences_use_defaults(self, session):
        assert load_priority_config(session, "nobody") is DEFAULT_PRIORITY_CONFIG

    def test_broken_stored_config_falls_back(self, session):
        session.add(UserPreferences(user_id="u1", priority_config_json="{broken"))
        session.flush()
        assert load_priority_config(session, "u1") is DEFAULT_PRIORITY_CONFIG

    def test_save_normalizes(self, session):
        config = save_priority_config(session, "u1", {"unreadBonus": "999"})
        assert config.unread_bonus == 200
        stored = json.loads(session.query(UserPreferences).one().priority_config_json)
        assert stored["unread_bonus"] == 200
        assert load_priority_config(session, "u1").unread_bonus == 200

    def test_load_rules_enabled_sorted(self, session, make_rule):
        make_rule("P1", sort_order=2)
        make_rule("P2", sort_order=1)
        make_rule("P3", sort_order=0, enabled=False)
        make_rule("P4", user_id="other")

        rules = load_assignment_rules(session, "u1")

        assert [rule.project_id for rule in rules] == ["P2", "P1"]
        assert len(load_assignment_rules(session, "u1", include_disabled=True)) == 3

    def test_invalid_rule_is_loaded_with_parse_error(self, session, make_rule, caplog):
        make_rule("P1", conditions={"field": "nope", "operator": "equals", "value": 1})
        rules = load_assignment_rules(session, "u1")
        assert rules[0].parse_error is not None
        assert "ungültigen Bedingungen" in caplog.text

    def test_load_single_rule_checks_ownership(self, session, make_rule):
        record = make_rule("P1", user_id="u1")
        assert load_assignment_rule(session, "u1", record.id).project_id == "P1"
        assert load_assignment_rule(session, "u2", record.id) is None
        assert load_assignment_rule(session, "u1", "abc") is None
