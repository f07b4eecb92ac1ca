"""
Unit Tests: Priority-Config Normalisierung
"""

import dataclasses
import json

import pytest

from triage_engine.priority_config import (
    DEFAULT_PRIORITY_CONFIG,
    PRIORITY_PRESETS,
    apply_priority_preset,
    get_priority_config,
    is_priority_config_equal,
    list_priority_presets,
    normalize_priority_config,
    priority_config_to_dict,
)


class TestNormalizePriorityConfig:
    """Tests für normalize_priority_config"""

    def test_none_returns_defaults(self):
        assert normalize_priority_config(None) is DEFAULT_PRIORITY_CONFIG

    def test_non_mapping_logs_and_returns_defaults(self, caplog):
        config = normalize_priority_config(42)
        assert config is DEFAULT_PRIORITY_CONFIG
        assert "ConfigError" in caplog.text

    def test_invalid_json_string_returns_defaults(self):
        assert normalize_priority_config("{not json") is DEFAULT_PRIORITY_CONFIG

    def test_numeric_strings_are_parsed(self):
        config = normalize_priority_config({"unread_bonus": "25", "recency_weight": "40.5"})
        assert config.unread_bonus == 25
        assert config.recency_weight == 40.5

    def test_out_of_range_values_are_clamped(self):
        config = normalize_priority_config({
            "snooze_suppression_factor": 5,
            "recency_half_life_hours": 0,
            "unread_bonus": 10_000,
        })
        assert config.snooze_suppression_factor == 0.9
        assert config.recency_half_life_hours == 1
        assert config.unread_bonus == 200

    def test_garbage_values_fall_back_to_base(self):
        config = normalize_priority_config({"unread_bonus": "lots", "recency_weight": None, "done_score": True})
        assert config.unread_bonus == DEFAULT_PRIORITY_CONFIG.unread_bonus
        assert config.recency_weight == DEFAULT_PRIORITY_CONFIG.recency_weight
        assert config.done_score == DEFAULT_PRIORITY_CONFIG.done_score

    def test_recency_floor_never_exceeds_weight(self):
        config = normalize_priority_config({"recency_weight": 10, "recency_floor": 40})
        assert config.recency_floor == 10

    def test_unknown_keys_are_ignored(self):
        config = normalize_priority_config({"whatever": 1, "unread_bonus": 5})
        assert config.unread_bonus == 5
        assert not hasattr(config, "whatever")

    def test_camel_case_and_nested_email_format(self):
        config = normalize_priority_config(json.dumps({
            "email": {
                "unreadBonus": 7,
                "categoryWeights": {"FAN/Request": 99},
                "snoozeSuppressionFactor": 0.2,
            }
        }))
        assert config.unread_bonus == 7
        assert config.category_weights["FAN/Request"] == 99
        assert config.snooze_suppression_factor == 0.2

    def test_category_weights_merge_and_clamp(self):
        config = normalize_priority_config({"category_weights": {"CUSTOM/New": 150, "FAN/Request": "abc"}})
        assert config.category_weights["CUSTOM/New"] == 100
        assert config.category_weights["FAN/Request"] == DEFAULT_PRIORITY_CONFIG.category_weights["FAN/Request"]
        assert config.category_weights["LEGAL/Contract_Draft"] == 90

    def test_sentiment_signs_are_enforced(self):
        config = normalize_priority_config({
            "sentiment_weights": {"negative": -20, "positive": 15, "Neutral": -3, "furious": 50}
        })
        assert config.sentiment_weights["negative"] == 0
        assert config.sentiment_weights["positive"] == 0
        assert config.sentiment_weights["neutral"] == -3
        assert "furious" not in config.sentiment_weights

    def test_result_is_immutable(self):
        config = normalize_priority_config({"unread_bonus": 5})
        with pytest.raises(dataclasses.FrozenInstanceError):
            config.unread_bonus = 1
        with pytest.raises(TypeError):
            config.category_weights["FAN/Request"] = 1

    def test_normalization_is_idempotent(self):
        once = normalize_priority_config({"unread_bonus": 5, "category_weights": {"X/Y": 12}})
        twice = normalize_priority_config(priority_config_to_dict(once))
        assert is_priority_config_equal(once, twice)


class TestPresets:
    """Tests für Priority-Presets"""

    def test_list_is_sorted_by_slug(self):
        slugs = [preset.slug for preset in list_priority_presets()]
        assert slugs == sorted(PRIORITY_PRESETS)

    def test_apply_preset_changes_only_adjusted_fields(self):
        config = apply_priority_preset("escalation-watch")
        assert config.sentiment_weights["negative"] == 30
        assert config.unread_bonus == 22
        assert config.recency_weight == DEFAULT_PRIORITY_CONFIG.recency_weight

    def test_unknown_preset_raises(self):
        with pytest.raises(KeyError):
            apply_priority_preset("does-not-exist")

    def test_get_priority_config_defaults(self):
        assert get_priority_config() is DEFAULT_PRIORITY_CONFIG
        assert get_priority_config({"unread_bonus": 3}).unread_bonus == 3


class TestTriageStateBounds:
    """Tests für Snooze-Faktor vs. Triage-Multiplikatoren"""

    def test_snooze_factor_capped_by_triage_multiplier(self):
        config = normalize_priority_config({
            "snooze_suppression_factor": 0.5,
            "triage_state_multipliers": {"triaged": 0.2},
        })
        assert config.snooze_suppression_factor == 0.2

    def test_snooze_factor_untouched_when_below(self):
        config = normalize_priority_config({"triage_state_multipliers": {"unassigned": 0.8}})
        assert config.snooze_suppression_factor == DEFAULT_PRIORITY_CONFIG.snooze_suppression_factor

    def test_hand_built_config_is_clamped(self, caplog):
        config = dataclasses.replace(DEFAULT_PRIORITY_CONFIG, recency_half_life_hours=0, unread_bonus=1000)

        normalized = normalize_priority_config(config)

        assert normalized.recency_half_life_hours == 1
        assert normalized.unread_bonus == 200
        assert "außerhalb der Wertebereiche" in caplog.text

    def test_valid_hand_built_config_is_kept(self):
        config = dataclasses.replace(DEFAULT_PRIORITY_CONFIG, unread_bonus=5)
        assert normalize_priority_config(config) is config


class TestBoostRules:
    """Tests für Cross-Label-Regeln und Advanced Boosts"""

    def test_cross_label_rules_merge_by_prefix(self):
        base = normalize_priority_config({"crossLabelRules": [
            {"prefix": "approval/", "weight": 22, "description": "Pending approval"},
            {"prefix": "travel/", "weight": 8},
        ]})
        config = normalize_priority_config({"cross_label_rules": [
            {"prefix": "approval/", "weight": 500},
            {"prefix": "", "weight": 3},
            "invoice/",
        ]}, base)

        assert [rule.prefix for rule in config.cross_label_rules] == ["approval/", "travel/"]
        approval = config.cross_label_rules[0]
        assert approval.weight == 200
        assert approval.description == "Pending approval"
        assert config.cross_label_rules[1].description == "travel/"

    def test_advanced_boosts_replace_base(self):
        base = normalize_priority_config({"advanced_boosts": [{"id": "old", "weight": 1}]})
        config = normalize_priority_config({"advancedBoosts": [
            {"label": "VIP", "weight": "15", "criteria": {"senders": ["VIP@Agency.com", ""], "hasAttachment": "yes"}},
            42,
        ]}, base)

        assert len(config.advanced_boosts) == 1
        boost = config.advanced_boosts[0]
        assert boost.id == "boost-1"
        assert boost.label == "VIP"
        assert boost.weight == 15
        assert boost.criteria.senders == ("vip@agency.com",)
        assert boost.criteria.has_attachment is True
        assert boost.criteria.min_priority is None

    def test_non_list_is_ignored(self):
        config = normalize_priority_config({"cross_label_rules": {"prefix": "x"}, "advanced_boosts": 7})
        assert config.cross_label_rules == ()
        assert config.advanced_boosts == ()

    def test_round_trip_keeps_boosts(self):
        once = normalize_priority_config({
            "crossLabelRules": [{"prefix": "approval/", "weight": 22, "description": "Pending approval"}],
            "advancedBoosts": [{"id": "vip", "label": "VIP", "weight": 15, "criteria": {"domains": ["@agency.com"]}}],
        })
        data = json.loads(json.dumps(priority_config_to_dict(once)))
        twice = normalize_priority_config(data)

        assert twice == once
        assert twice.advanced_boosts[0].criteria.domains == ("agency.com",)
