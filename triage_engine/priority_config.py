"""
Triage Engine - Priority-Config Normalisierung

Gespeicherte Priority-Configs (user_preferences.priority_config_json) sind lose
typisiert und werden hier gegen DEFAULT_PRIORITY_CONFIG normalisiert:
- Zahlen (auch als String) werden geparst und auf sichere Bereiche geclampt
- Fehlende/ungültige Werte fallen auf den Basiswert zurück
- Ergebnis ist unveränderlich (frozen dataclass + read-only Mappings)

Usage:
    from triage_engine.priority_config import normalize_priority_config

    config = normalize_priority_config(row.priority_config_json)
"""

import json
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from triage_engine.helpers.coercion import (
    ensure_boolean,
    ensure_mapping,
    ensure_number,
    ensure_string,
    ensure_string_list,
    sanitize_number,
)
from triage_engine.signals import Sentiment, TriageState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CrossLabelRule:
    """Label-Präfix → fester Zuschlag (z.B. "approval/" → +22)"""

    prefix: str
    weight: float
    description: str
    case_insensitive: bool = True


@dataclass(frozen=True)
class AdvancedBoostCriteria:
    """Alle gesetzten Kriterien müssen zutreffen; Listen matchen bei irgendeinem Eintrag"""

    senders: Tuple[str, ...] = ()
    domains: Tuple[str, ...] = ()
    keywords: Tuple[str, ...] = ()
    labels: Tuple[str, ...] = ()
    categories: Tuple[str, ...] = ()
    min_priority: Optional[float] = None
    has_attachment: Optional[bool] = None


@dataclass(frozen=True)
class AdvancedBoost:
    """Zuschlag für E-Mails, die alle Kriterien erfüllen (VIP-Absender, Anhänge, ...)"""

    id: str
    label: str
    weight: float
    criteria: AdvancedBoostCriteria = AdvancedBoostCriteria()
    description: Optional[str] = None


@dataclass(frozen=True)
class PriorityConfig:
    """Koeffizienten für das Priority-Scoring (Value-Object)"""

    category_weights: Mapping[str, float]
    default_category_weight: float
    recency_weight: float
    recency_half_life_hours: float
    recency_floor: float
    unread_bonus: float
    sentiment_weights: Mapping[str, float]
    snooze_suppression_factor: float
    triage_state_multipliers: Mapping[str, float]
    done_score: float
    cross_label_rules: Tuple[CrossLabelRule, ...] = ()
    advanced_boosts: Tuple[AdvancedBoost, ...] = ()


@dataclass(frozen=True)
class PriorityPreset:
    """Benannter Satz an Anpassungen auf die Default-Config"""

    slug: str
    name: str
    description: str
    recommended_scenarios: tuple
    adjustments: Mapping[str, Any]


DEFAULT_CATEGORY_WEIGHTS = {
    "LEGAL/Contract_Executed": 95,
    "LEGAL/Contract_Draft": 90,
    "LEGAL/Addendum_or_Amendment": 88,
    "LEGAL/NDA_or_Clearance": 82,
    "LEGAL/Insurance_Indemnity": 80,
    "LEGAL/Compliance": 76,
    "FINANCE/Settlement": 94,
    "FINANCE/Invoice": 86,
    "FINANCE/Payment_Remittance": 70,
    "FINANCE/Banking_Details": 96,
    "FINANCE/Tax_Docs": 82,
    "FINANCE/Expenses_Receipts": 66,
    "FINANCE/Royalties_Publishing": 62,
    "LOGISTICS/Itinerary_DaySheet": 83,
    "LOGISTICS/Travel": 90,
    "LOGISTICS/Accommodation": 78,
    "LOGISTICS/Ground_Transport": 74,
    "LOGISTICS/Visas_Immigration": 95,
    "LOGISTICS/Technical_Advance": 82,
    "LOGISTICS/Passes_Access": 70,
    "BOOKING/Offer": 86,
    "BOOKING/Hold_or_Availability": 72,
    "BOOKING/Confirmation": 90,
    "BOOKING/Reschedule_or_Cancel": 96,
    "PROMO/Promo_Time_Request": 78,
    "PROMO/Press_Feature": 60,
    "PROMO/Radio_Playlist": 58,
    "PROMO/Deliverables": 74,
    "PROMO/Promos_Submission": 50,
    "ASSETS/Artwork": 55,
    "ASSETS/Audio": 68,
    "ASSETS/Video": 62,
    "ASSETS/Photos": 48,
    "ASSETS/Logos_Brand": 52,
    "ASSETS/EPK_OneSheet": 56,
    "FAN/Support_or_Thanks": 20,
    "FAN/Request": 28,
    "FAN/Issues_or_Safety": 72,
    "MISC/Uncategorized": 18,
}

DEFAULT_PRIORITY_CONFIG = PriorityConfig(
    category_weights=MappingProxyType(dict(DEFAULT_CATEGORY_WEIGHTS)),
    default_category_weight=40,
    recency_weight=30.0,
    recency_half_life_hours=24.0,
    recency_floor=2.0,
    unread_bonus=18,
    sentiment_weights=MappingProxyType({
        Sentiment.POSITIVE.value: 0,
        Sentiment.NEUTRAL.value: 0,
        Sentiment.NEGATIVE.value: 12,
    }),
    snooze_suppression_factor=0.1,
    triage_state_multipliers=MappingProxyType({
        TriageState.UNASSIGNED.value: 1.0,
        TriageState.TRIAGED.value: 1.0,
        TriageState.SNOOZED.value: 1.0,
    }),
    done_score=1.0,
)

# Wertebereiche: Feld → (min, max, runden)
FIELD_RANGES = {
    "default_category_weight": (0, 100, True),
    "recency_weight": (0, 200, False),
    "recency_half_life_hours": (1, 24 * 90, False),
    "recency_floor": (0, 50, False),
    "unread_bonus": (-100, 200, True),
    "snooze_suppression_factor": (0, 0.9, False),
    "done_score": (0, 20, False),
}
CATEGORY_WEIGHT_RANGE = (0, 100)
TRIAGE_MULTIPLIER_RANGE = (0, 2)
# negative Stimmung hebt, positive/neutrale senkt höchstens
SENTIMENT_RANGES = {
    Sentiment.NEGATIVE.value: (0, 200),
    Sentiment.NEUTRAL.value: (-200, 0),
    Sentiment.POSITIVE.value: (-200, 0),
}

# camelCase-Keys der Web-Oberfläche und des alten Formats
KEY_ALIASES = {
    "categoryWeights": "category_weights",
    "defaultCategoryWeight": "default_category_weight",
    "recencyWeight": "recency_weight",
    "recencyHalfLifeHours": "recency_half_life_hours",
    "recencyDecayHours": "recency_half_life_hours",
    "recencyFloor": "recency_floor",
    "unreadBonus": "unread_bonus",
    "sentimentWeights": "sentiment_weights",
    "snoozeSuppressionFactor": "snooze_suppression_factor",
    "snoozeAgeReduction": "snooze_suppression_factor",
    "triageStateMultipliers": "triage_state_multipliers",
    "doneScore": "done_score",
    "crossLabelRules": "cross_label_rules",
    "advancedBoosts": "advanced_boosts",
}


PRIORITY_PRESETS = {
    "inbox-zero": PriorityPreset(
        slug="inbox-zero",
        name="Inbox Zero",
        description="Ungelesenes und Frisches stark nach oben, Erledigtes verschwindet.",
        recommended_scenarios=("Hohes Mail-Volumen", "Tägliches Abarbeiten"),
        adjustments=MappingProxyType({
            "unread_bonus": 30,
            "recency_weight": 45,
            "recency_half_life_hours": 12,
            "snooze_suppression_factor": 0.05,
        }),
    ),
    "deal-desk": PriorityPreset(
        slug="deal-desk",
        name="Deal Desk",
        description="Verträge, Angebote und Zahlungen dominieren die Reihenfolge.",
        recommended_scenarios=("Booking-Saison", "Vertragsverhandlungen"),
        adjustments=MappingProxyType({
            "category_weights": {
                "LEGAL/Contract_Draft": 98,
                "BOOKING/Offer": 95,
                "FINANCE/Settlement": 97,
            },
            "recency_weight": 20,
        }),
    ),
    "escalation-watch": PriorityPreset(
        slug="escalation-watch",
        name="Escalation Watch",
        description="Negative Stimmung wird deutlich höher gewichtet.",
        recommended_scenarios=("Tour läuft", "Support-Spitzen"),
        adjustments=MappingProxyType({
            "sentiment_weights": {"negative": 30},
            "unread_bonus": 22,
        }),
    ),
}


def _canonical_keys(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """Übersetzt camelCase-Aliase auf die internen Feldnamen"""
    result = {}
    for key, value in raw.items():
        result[KEY_ALIASES.get(key, key)] = value
    return result


def _sanitize_weight_table(
    overrides: Any,
    base: Mapping[str, float],
    min_val: float,
    max_val: float,
    round_value: bool,
    allowed_keys: Optional[Mapping[str, Any]] = None,
    ranges: Optional[Mapping[str, tuple]] = None,
) -> Mapping[str, float]:
    """Mergt eine Gewichtstabelle auf die Basis (ungültige Einträge werden übersprungen)"""
    result = dict(base)
    table = ensure_mapping(overrides)
    if table is None:
        if overrides is not None:
            logger.warning(f"⚠️ Gewichtstabelle ignoriert, kein Mapping: {type(overrides).__name__}")
        return MappingProxyType(result)

    for key, value in table.items():
        name = ensure_string(key)
        if not name:
            continue
        if allowed_keys is not None and name.lower() not in allowed_keys:
            logger.warning(f"⚠️ Unbekannter Schlüssel in Gewichtstabelle ignoriert: {name}")
            continue
        if allowed_keys is not None:
            name = name.lower()
        low, high = ranges.get(name, (min_val, max_val)) if ranges else (min_val, max_val)
        fallback = result.get(name, 0)
        result[name] = sanitize_number(value, fallback, low, high, round_value)
    return MappingProxyType(result)


BOOST_WEIGHT_RANGE = (-200, 200)


def _entry_list(overrides: Any, field_name: str) -> Optional[list]:
    """Liste aus Config-Wert (JSON-String erlaubt), sonst None"""
    if isinstance(overrides, str):
        try:
            overrides = json.loads(overrides)
        except ValueError:
            overrides = None
    if isinstance(overrides, (list, tuple)):
        return list(overrides)
    logger.warning(f"⚠️ {field_name} ignoriert, keine Liste: {type(overrides).__name__}")
    return None


def _sanitize_cross_label_rules(overrides: Any, base: Tuple[CrossLabelRule, ...]) -> Tuple[CrossLabelRule, ...]:
    """
    Mergt Cross-Label-Regeln per Präfix auf die Basis.

    Gleiches Präfix ersetzt den Basis-Eintrag, neue Präfixe werden angehängt.
    """
    if overrides is None:
        return base
    entries = _entry_list(overrides, "cross_label_rules")
    if entries is None:
        return base

    merged: Dict[str, CrossLabelRule] = {rule.prefix: rule for rule in base}
    for entry in entries:
        if isinstance(entry, CrossLabelRule):
            entry = cross_label_rule_to_dict(entry)
        if not isinstance(entry, Mapping):
            logger.warning(f"⚠️ Cross-Label-Regel ignoriert, kein Objekt: {type(entry).__name__}")
            continue
        prefix = ensure_string(entry.get("prefix"))
        if not prefix:
            logger.warning("⚠️ Cross-Label-Regel ohne Präfix ignoriert")
            continue
        fallback = merged.get(prefix)
        merged[prefix] = CrossLabelRule(
            prefix=prefix,
            weight=sanitize_number(
                entry.get("weight"), fallback.weight if fallback else 0, *BOOST_WEIGHT_RANGE, True
            ),
            description=ensure_string(entry.get("description"), fallback.description if fallback else prefix),
            case_insensitive=ensure_boolean(
                _first_present(entry, "case_insensitive", "caseInsensitive"),
                fallback.case_insensitive if fallback else True,
            ),
        )
    return tuple(merged.values())


def _first_present(entry: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if entry.get(key) is not None:
            return entry[key]
    return None


def _sanitize_boost_criteria(raw: Any) -> AdvancedBoostCriteria:
    if isinstance(raw, AdvancedBoostCriteria):
        return raw
    if not isinstance(raw, Mapping):
        return AdvancedBoostCriteria()
    min_priority = ensure_number(_first_present(raw, "min_priority", "minPriority"))
    has_attachment = _first_present(raw, "has_attachment", "hasAttachment")
    return AdvancedBoostCriteria(
        senders=tuple(s.lower() for s in ensure_string_list(raw.get("senders"))),
        domains=tuple(d.lower().lstrip("@") for d in ensure_string_list(raw.get("domains"))),
        keywords=tuple(k.lower() for k in ensure_string_list(raw.get("keywords"))),
        labels=tuple(label.lower() for label in ensure_string_list(raw.get("labels"))),
        categories=tuple(c.lower() for c in ensure_string_list(raw.get("categories"))),
        min_priority=min_priority,
        has_attachment=None if has_attachment is None else ensure_boolean(has_attachment),
    )


def _sanitize_advanced_boosts(overrides: Any, base: Tuple[AdvancedBoost, ...]) -> Tuple[AdvancedBoost, ...]:
    """Eine gesetzte Liste ersetzt die Basis komplett (Reihenfolge bleibt erhalten)"""
    if overrides is None:
        return base
    entries = _entry_list(overrides, "advanced_boosts")
    if entries is None:
        return base

    boosts = []
    for index, entry in enumerate(entries, start=1):
        if isinstance(entry, AdvancedBoost):
            entry = advanced_boost_to_dict(entry)
        if not isinstance(entry, Mapping):
            logger.warning(f"⚠️ Advanced Boost ignoriert, kein Objekt: {type(entry).__name__}")
            continue
        boost_id = ensure_string(entry.get("id"), f"boost-{index}")
        description = ensure_string(entry.get("description"))
        boosts.append(AdvancedBoost(
            id=boost_id,
            label=ensure_string(entry.get("label"), boost_id),
            weight=sanitize_number(entry.get("weight"), 0, *BOOST_WEIGHT_RANGE, True),
            criteria=_sanitize_boost_criteria(entry.get("criteria")),
            description=description or None,
        ))
    return tuple(boosts)


WEIGHT_TABLE_FIELDS = ("category_weights", "sentiment_weights", "triage_state_multipliers")


def _revalidate_config(config: PriorityConfig) -> PriorityConfig:
    """Von Hand gebaute Configs (z.B. dataclasses.replace) erneut auf die Wertebereiche prüfen"""
    if config is DEFAULT_PRIORITY_CONFIG:
        return config
    data: Dict[str, Any] = {name: getattr(config, name) for name in FIELD_RANGES}
    for name in WEIGHT_TABLE_FIELDS:
        table = getattr(config, name)
        data[name] = dict(table) if isinstance(table, Mapping) else None
    data["cross_label_rules"] = list(config.cross_label_rules or ())
    data["advanced_boosts"] = list(config.advanced_boosts or ())
    normalized = normalize_priority_config(data, DEFAULT_PRIORITY_CONFIG)
    if normalized == config:
        return config
    logger.warning("⚠️ ConfigError: PriorityConfig außerhalb der Wertebereiche - Werte wurden geklemmt")
    return normalized


def normalize_priority_config(
    raw: Any,
    base: PriorityConfig = DEFAULT_PRIORITY_CONFIG,
) -> PriorityConfig:
    """
    Normalisiert eine gespeicherte Priority-Config (total, wirft nie).

    Args:
        raw: dict, JSON-String, PriorityConfig oder None
        base: Basis-Config für fehlende/ungültige Werte

    Returns:
        Unveränderliche PriorityConfig
    """
    if isinstance(raw, PriorityConfig):
        return _revalidate_config(raw)
    if raw is None:
        return base

    data = ensure_mapping(raw)
    if data is None:
        logger.warning(
            f"⚠️ ConfigError: Priority-Config ist kein Objekt "
            f"({type(raw).__name__}) - verwende Defaults"
        )
        return base

    # Altes Format: {"email": {...}, "time": {...}, ...}
    nested = ensure_mapping(data.get("email"))
    if nested is not None:
        data = nested
    data = _canonical_keys(data)

    values = {}
    for name, (low, high, round_value) in FIELD_RANGES.items():
        values[name] = sanitize_number(data.get(name), getattr(base, name), low, high, round_value)
    # Untergrenze darf das Maximum nicht übersteigen
    values["recency_floor"] = min(values["recency_floor"], values["recency_weight"])

    values["category_weights"] = _sanitize_weight_table(
        data.get("category_weights"), base.category_weights, *CATEGORY_WEIGHT_RANGE, True
    )
    values["sentiment_weights"] = _sanitize_weight_table(
        data.get("sentiment_weights"),
        base.sentiment_weights,
        -200,
        200,
        False,
        allowed_keys={s.value: s for s in Sentiment},
        ranges=SENTIMENT_RANGES,
    )
    values["triage_state_multipliers"] = _sanitize_weight_table(
        data.get("triage_state_multipliers"),
        base.triage_state_multipliers,
        *TRIAGE_MULTIPLIER_RANGE,
        False,
        allowed_keys={s.value: s for s in TriageState if s is not TriageState.DONE},
    )
    # Gesnoozte Mails dürfen nie über aktive (unassigned/triaged) gehoben werden
    multipliers = values["triage_state_multipliers"]
    active_min = min(
        multipliers.get(TriageState.UNASSIGNED.value, 1.0),
        multipliers.get(TriageState.TRIAGED.value, 1.0),
    )
    values["snooze_suppression_factor"] = min(values["snooze_suppression_factor"], active_min)

    values["cross_label_rules"] = _sanitize_cross_label_rules(data.get("cross_label_rules"), base.cross_label_rules)
    values["advanced_boosts"] = _sanitize_advanced_boosts(data.get("advanced_boosts"), base.advanced_boosts)

    return PriorityConfig(**values)


def get_priority_config(raw: Any = None) -> PriorityConfig:
    """Liefert die Default-Config oder die normalisierte User-Config"""
    if not raw:
        return DEFAULT_PRIORITY_CONFIG
    return normalize_priority_config(raw)


def priority_config_to_dict(config: PriorityConfig) -> Dict[str, Any]:
    """Serialisierbare Form (für user_preferences.priority_config_json)"""
    return {
        "category_weights": dict(config.category_weights),
        "default_category_weight": config.default_category_weight,
        "recency_weight": config.recency_weight,
        "recency_half_life_hours": config.recency_half_life_hours,
        "recency_floor": config.recency_floor,
        "unread_bonus": config.unread_bonus,
        "sentiment_weights": dict(config.sentiment_weights),
        "snooze_suppression_factor": config.snooze_suppression_factor,
        "triage_state_multipliers": dict(config.triage_state_multipliers),
        "done_score": config.done_score,
        "cross_label_rules": [cross_label_rule_to_dict(rule) for rule in config.cross_label_rules],
        "advanced_boosts": [advanced_boost_to_dict(boost) for boost in config.advanced_boosts],
    }


def cross_label_rule_to_dict(rule: CrossLabelRule) -> Dict[str, Any]:
    return {
        "prefix": rule.prefix,
        "weight": rule.weight,
        "description": rule.description,
        "case_insensitive": rule.case_insensitive,
    }


def advanced_boost_to_dict(boost: AdvancedBoost) -> Dict[str, Any]:
    criteria = boost.criteria
    data: Dict[str, Any] = {
        "id": boost.id,
        "label": boost.label,
        "weight": boost.weight,
        "criteria": {
            "senders": list(criteria.senders),
            "domains": list(criteria.domains),
            "keywords": list(criteria.keywords),
            "labels": list(criteria.labels),
            "categories": list(criteria.categories),
            "min_priority": criteria.min_priority,
            "has_attachment": criteria.has_attachment,
        },
    }
    if boost.description:
        data["description"] = boost.description
    return data


def is_priority_config_equal(a: PriorityConfig, b: PriorityConfig) -> bool:
    """Deterministischer Strukturvergleich (unabhängig von Key-Reihenfolge)"""
    return json.dumps(priority_config_to_dict(a), sort_keys=True) == json.dumps(
        priority_config_to_dict(b), sort_keys=True
    )


def list_priority_presets() -> List[PriorityPreset]:
    """Alle Presets in stabiler Reihenfolge"""
    return [PRIORITY_PRESETS[slug] for slug in sorted(PRIORITY_PRESETS)]


def apply_priority_preset(slug: str, base: PriorityConfig = DEFAULT_PRIORITY_CONFIG) -> PriorityConfig:
    """
    Wendet ein Preset auf eine Basis-Config an.

    Raises:
        KeyError: Unbekanntes Preset
    """
    preset = PRIORITY_PRESETS[slug]
    adjusted = normalize_priority_config(dict(preset.adjustments), base)
    logger.info(f"✅ Priority-Preset '{slug}' angewendet")
    return adjusted
