"""
Unit Tests: Bedingungsbäume (Parser)
"""

import json

import pytest

from triage_engine.conditions import (
    MAX_TREE_DEPTH,
    ConditionField,
    ConditionOperator,
    NodeKind,
    and_,
    compare,
    condition_tree_to_dict,
    iter_comparisons,
    parse_condition_tree,
)
from triage_engine.errors import ConditionParseError, ConfigError


class TestParseConditionTree:
    """Tests für parse_condition_tree"""

    @pytest.mark.parametrize("raw", [None, {}, [], "", {"logic": "and", "conditions": []}])
    def test_empty_trees_have_no_root(self, raw):
        assert parse_condition_tree(raw) is None

    def test_combinator_shapes(self):
        tree = parse_condition_tree({
            "or": [
                {"field": "subject", "operator": "contains", "value": "Offer"},
                {"not": {"field": "category", "operator": "equals", "value": "FAN/Request"}},
            ]
        })
        assert tree.kind is NodeKind.OR
        assert tree.children[0].field is ConditionField.SUBJECT
        assert tree.children[1].kind is NodeKind.NOT
        assert tree.children[1].children[0].operator is ConditionOperator.EQUALS

    def test_typed_shape(self):
        tree = parse_condition_tree({
            "type": "and",
            "children": [{"field": "priorityScore", "operator": "greaterThan", "value": 50}],
        })
        assert tree.kind is NodeKind.AND
        assert tree.children[0].field is ConditionField.PRIORITY_SCORE

    def test_legacy_group_and_snake_case(self):
        tree = parse_condition_tree({
            "logic": "or",
            "conditions": [
                {"id": "c1", "field": "from_email", "operator": "ends_with", "value": "@label.com"},
                {"id": "c2", "field": "has_attachment", "operator": "equals", "value": True},
                {"id": "c3", "field": "received_at", "operator": "within_last_days", "value": 3},
            ],
        })
        assert tree.kind is NodeKind.OR
        fields = [node.field for node in iter_comparisons(tree)]
        assert fields == [ConditionField.FROM_EMAIL, ConditionField.HAS_ATTACHMENTS, ConditionField.RECEIVED_AT]
        assert tree.children[0].operator is ConditionOperator.ENDS_WITH
        assert tree.children[0].id == "c1"

    def test_negated_legacy_operators(self):
        tree = parse_condition_tree({"field": "subject", "operator": "not_contains", "value": "spam"})
        assert tree.kind is NodeKind.NOT
        assert tree.children[0].operator is ConditionOperator.CONTAINS

    def test_legacy_operator_aliases(self):
        assert parse_condition_tree({"field": "receivedAt", "operator": "before", "value": "2024-01-01"}).operator \
            is ConditionOperator.LESS_THAN
        assert parse_condition_tree({"field": "category", "operator": "is_one_of", "value": ["a"]}).operator \
            is ConditionOperator.IN

    def test_json_string(self):
        tree = parse_condition_tree(json.dumps({"and": [{"field": "labels", "operator": "contains", "value": "x"}]}))
        assert tree.kind is NodeKind.AND

    def test_list_values_are_frozen(self):
        tree = parse_condition_tree({"field": "category", "operator": "in", "value": ["a", "b"]})
        assert tree.value == ("a", "b")
        with pytest.raises(AttributeError):
            tree.value = ("c",)

    @pytest.mark.parametrize("raw", [
        {"field": "color", "operator": "equals", "value": "red"},
        {"field": "subject", "operator": "sounds_like", "value": "x"},
        {"xor": []},
        {"and": {"field": "subject"}},
        {"not": []},
        {"type": "nand", "children": []},
        "[1, 2",
        42,
    ])
    def test_malformed_structures_raise(self, raw):
        with pytest.raises(ConditionParseError):
            parse_condition_tree(raw)

    def test_error_reports_path(self):
        with pytest.raises(ConditionParseError) as exc_info:
            parse_condition_tree({"and": [{"field": "subject", "operator": "contains"}, {"field": "nope"}]})
        assert exc_info.value.path == "$.and[1]"
        assert isinstance(exc_info.value, ConfigError)

    def test_depth_limit(self):
        node = {"field": "subject", "operator": "contains", "value": "x"}
        for _ in range(MAX_TREE_DEPTH + 1):
            node = {"not": node}
        with pytest.raises(ConditionParseError):
            parse_condition_tree(node)

        shallow = {"field": "subject", "operator": "contains", "value": "x"}
        for _ in range(MAX_TREE_DEPTH - 1):
            shallow = {"not": shallow}
        assert parse_condition_tree(shallow) is not None


def test_to_dict_round_trip_is_canonical():
    tree = and_(
        compare("subject", "contains", "Offer"),
        compare("labels", "in", ["urgent", "finance"]),
    )
    data = condition_tree_to_dict(tree)
    assert data == {
        "and": [
            {"field": "subject", "operator": "contains", "value": "Offer"},
            {"field": "labels", "operator": "in", "value": ["urgent", "finance"]},
        ]
    }
    assert parse_condition_tree(data) == tree
