"""
Tests für Priority-Scoring
"""

from dataclasses import replace
from datetime import datetime, timedelta, UTC

import pytest

from triage_engine.priority_config import DEFAULT_PRIORITY_CONFIG, normalize_priority_config
from triage_engine.scoring import (
    build_priority_breakdown,
    calculate_priority_components,
    calculate_priority_score,
    calculate_recency,
    get_priority_label,
)
from triage_engine.signals import EmailSignal, Sentiment, TriageState

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


def make_signal(**values):
    values.setdefault("category", "BOOKING/Offer")
    values.setdefault("received_at", NOW - timedelta(hours=2))
    return EmailSignal.build(**values)


def test_score_components_with_defaults():
    """Kategorie + Recency + Unread + Sentiment"""
    signal = make_signal(sentiment="negative")
    recency = 2 + (30 - 2) * 0.5 ** (2 / 24)
    expected = round(86 + recency + 18 + 12, 4)
    assert calculate_priority_score(signal, DEFAULT_PRIORITY_CONFIG, NOW) == expected


def test_score_is_deterministic():
    signal = make_signal(labels=["a", "b"], sentiment="negative")
    first = calculate_priority_score(signal, DEFAULT_PRIORITY_CONFIG, NOW)
    second = calculate_priority_score(signal, DEFAULT_PRIORITY_CONFIG, NOW)
    assert first == second


def test_recency_is_monotonic_and_bounded():
    """Neuere E-Mails scoren nie niedriger; Recency nähert sich dem Floor"""
    scores = [
        calculate_priority_score(make_signal(received_at=NOW - timedelta(hours=hours)), DEFAULT_PRIORITY_CONFIG, NOW)
        for hours in (0, 1, 6, 24, 72, 24 * 30)
    ]
    assert scores == sorted(scores, reverse=True)

    assert calculate_recency(0, DEFAULT_PRIORITY_CONFIG) == pytest.approx(30)
    assert calculate_recency(24, DEFAULT_PRIORITY_CONFIG) == pytest.approx(16)
    assert calculate_recency(24 * 365, DEFAULT_PRIORITY_CONFIG) == pytest.approx(2, abs=1e-6)
    assert calculate_recency(None, DEFAULT_PRIORITY_CONFIG) == 2


def test_future_received_at_counts_as_now():
    future = make_signal(received_at=NOW + timedelta(hours=5))
    fresh = make_signal(received_at=NOW)
    assert calculate_priority_score(future, DEFAULT_PRIORITY_CONFIG, NOW) == calculate_priority_score(
        fresh, DEFAULT_PRIORITY_CONFIG, NOW
    )


def test_unread_bonus():
    unread = make_signal(is_read=False)
    read = make_signal(is_read=True)
    unread_score = calculate_priority_score(unread, DEFAULT_PRIORITY_CONFIG, NOW)
    read_score = calculate_priority_score(read, DEFAULT_PRIORITY_CONFIG, NOW)
    assert unread_score > read_score
    assert unread_score - read_score == pytest.approx(18)


def test_snooze_suppression_only_while_snoozed():
    base = make_signal()
    snoozed = make_signal(triage_state="snoozed", snoozed_until=NOW + timedelta(days=1))
    expired = make_signal(triage_state="snoozed", snoozed_until=NOW - timedelta(hours=1))

    base_score = calculate_priority_score(base, DEFAULT_PRIORITY_CONFIG, NOW)
    snoozed_score = calculate_priority_score(snoozed, DEFAULT_PRIORITY_CONFIG, NOW)
    assert snoozed_score < base_score
    assert snoozed_score == pytest.approx(base_score * 0.1, abs=1e-3)
    assert calculate_priority_score(expired, DEFAULT_PRIORITY_CONFIG, NOW) == base_score


def test_done_is_clamped_to_done_score():
    done = make_signal(triage_state="done", sentiment="negative")
    assert calculate_priority_score(done, DEFAULT_PRIORITY_CONFIG, NOW) == DEFAULT_PRIORITY_CONFIG.done_score


def test_legacy_triage_states():
    assert make_signal(triage_state="resolved").triage_state is TriageState.DONE
    assert make_signal(triage_state="acknowledged").triage_state is TriageState.TRIAGED
    assert make_signal(triage_state="???").triage_state is TriageState.UNASSIGNED
    assert make_signal(sentiment="angry").sentiment is Sentiment.NEUTRAL


def test_category_lookup():
    """Exakt, dann case-insensitive, sonst Default-Gewicht"""
    exact = calculate_priority_components(make_signal(category="FAN/Request"), DEFAULT_PRIORITY_CONFIG, NOW)
    lowered = calculate_priority_components(make_signal(category="fan/request"), DEFAULT_PRIORITY_CONFIG, NOW)
    unknown = calculate_priority_components(make_signal(category="invoice"), DEFAULT_PRIORITY_CONFIG, NOW)
    assert exact[0].value == 28
    assert lowered[0].value == 28
    assert unknown[0].value == DEFAULT_PRIORITY_CONFIG.default_category_weight


def test_malformed_config_falls_back_to_defaults():
    signal = make_signal()
    expected = calculate_priority_score(signal, DEFAULT_PRIORITY_CONFIG, NOW)
    assert calculate_priority_score(signal, "garbage", NOW) == expected
    assert calculate_priority_score(signal, None, NOW) == expected


def test_score_never_negative():
    config = normalize_priority_config({
        "default_category_weight": 0,
        "recency_weight": 0,
        "recency_floor": 0,
        "unread_bonus": -100,
        "sentiment_weights": {"positive": -200},
    })
    signal = make_signal(category="unknown", sentiment="positive")
    assert calculate_priority_score(signal, config, NOW) == 0


def test_triage_multiplier():
    config = normalize_priority_config({"triage_state_multipliers": {"triaged": 0.5}})
    base = calculate_priority_score(make_signal(), config, NOW)
    triaged = calculate_priority_score(make_signal(triage_state="triaged"), config, NOW)
    assert triaged == pytest.approx(base * 0.5, abs=1e-3)


def test_breakdown_labels():
    breakdown = build_priority_breakdown(make_signal(sentiment="negative"), DEFAULT_PRIORITY_CONFIG, NOW)
    labels = [component.label for component in breakdown.components]
    assert labels == ["Category BOOKING/Offer", "Recency 2h", "Unread", "Sentiment negative"]
    assert breakdown.suppression is None
    assert breakdown.total == round(breakdown.subtotal, 4)


def test_signal_from_dict_and_iso_strings():
    score = calculate_priority_score(
        {"category": "BOOKING/Offer", "received_at": "2024-05-01T10:00:00Z"},
        DEFAULT_PRIORITY_CONFIG,
        "2024-05-01T12:00:00Z",
    )
    assert score == calculate_priority_score(make_signal(), DEFAULT_PRIORITY_CONFIG, NOW)


def test_priority_label():
    """Test Priority Labels"""
    assert get_priority_label(150) == "critical"
    assert get_priority_label(120) == "critical"
    assert get_priority_label(90) == "high"
    assert get_priority_label(50) == "medium"
    assert get_priority_label(10) == "low"


def test_hand_built_config_with_zero_half_life():
    """replace() umgeht die Normalisierung - Scoring klemmt trotzdem"""
    config = replace(DEFAULT_PRIORITY_CONFIG, recency_half_life_hours=0)
    score = calculate_priority_score(make_signal(), config, NOW)
    assert score > 0
    assert calculate_recency(5, config) <= DEFAULT_PRIORITY_CONFIG.recency_weight


FLAT = {"recency_weight": 0, "recency_floor": 0}
VIP_BOOSTS = [
    {"id": "vip", "label": "VIP sender", "weight": 15, "criteria": {"senders": ["vip@agency.com"]}},
    {"id": "attachment", "label": "Attachment", "weight": 5, "criteria": {"hasAttachment": True}},
]


def test_advanced_boosts_are_added():
    config = normalize_priority_config({**FLAT, "advancedBoosts": VIP_BOOSTS})
    signal = make_signal(category="LEGAL/Contract_Draft", from_email="VIP@agency.com", has_attachments=True)

    breakdown = build_priority_breakdown(signal, config, NOW)

    labels = [component.label for component in breakdown.components]
    assert labels[-2:] == ["VIP sender", "Attachment"]
    assert breakdown.total == 90 + 18 + 15 + 5


def test_advanced_boost_needs_all_criteria():
    boosts = [{"id": "big-deal", "label": "Big deal", "weight": 10, "criteria": {
        "domains": ["agency.com"], "keywords": ["offer"], "minPriority": 100,
    }}]
    config = normalize_priority_config({**FLAT, "advanced_boosts": boosts})

    hit = make_signal(from_email="booker@agency.com", subject="Festival Offer")
    wrong_domain = make_signal(from_email="booker@other.com", subject="Festival Offer")
    too_low = make_signal(from_email="booker@agency.com", subject="Festival Offer", is_read=True)

    assert calculate_priority_score(hit, config, NOW) == 86 + 18 + 10
    assert calculate_priority_score(wrong_domain, config, NOW) == 86 + 18
    assert calculate_priority_score(too_low, config, NOW) == 86


def test_cross_label_rule_matches_prefix():
    config = normalize_priority_config({**FLAT, "crossLabelRules": [
        {"prefix": "approval/", "weight": 22, "description": "Pending approval"},
    ]})

    breakdown = build_priority_breakdown(make_signal(labels=["Approval/Legal"], is_read=True), config, NOW)
    other = calculate_priority_score(make_signal(labels=["legal"], is_read=True), config, NOW)

    assert breakdown.components[-1].label == "Pending approval"
    assert breakdown.total == 86 + 22
    assert other == 86


def test_cross_label_rule_case_sensitive():
    config = normalize_priority_config({**FLAT, "crossLabelRules": [
        {"prefix": "approval/", "weight": 22, "caseInsensitive": False},
    ]})
    assert calculate_priority_score(make_signal(labels=["Approval/Legal"], is_read=True), config, NOW) == 86
