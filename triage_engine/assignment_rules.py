"""
Triage Engine - Projekt-Zuordnungsregeln

Normalisiert gespeicherte Regel-Definitionen (DB-Zeilen, JSON) in
unveränderliche ProjectAssignmentRule-Objekte.

Usage:
    from triage_engine.assignment_rules import normalize_assignment_rule, select_enabled_rules

    rules = select_enabled_rules(normalize_assignment_rule(row) for row in rows)
"""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from triage_engine.conditions import ConditionNode, condition_tree_to_dict, parse_condition_tree
from triage_engine.errors import ConditionParseError
from triage_engine.helpers.coercion import ensure_boolean, ensure_mapping, ensure_number, ensure_string
from triage_engine.signals import ConfidenceLevel

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = ConfidenceLevel.HIGH
DEFAULT_RULE_NAME = "Unbenannte Regel"

CONFIDENCE_SCORES = MappingProxyType({
    ConfidenceLevel.LOW: 0.25,
    ConfidenceLevel.MEDIUM: 0.5,
    ConfidenceLevel.HIGH: 0.75,
    ConfidenceLevel.CERTAIN: 1.0,
})


@dataclass(frozen=True)
class RuleActions:
    """Was bei einem Match passiert: Link mit dieser Confidence + Notiz"""

    confidence: ConfidenceLevel = DEFAULT_CONFIDENCE
    note: Optional[str] = None


@dataclass(frozen=True)
class ProjectAssignmentRule:
    """Normalisierte Zuordnungsregel eines Users für ein Projekt"""

    id: str
    user_id: str
    project_id: str
    name: str = DEFAULT_RULE_NAME
    description: Optional[str] = None
    enabled: bool = True
    sort_order: int = 0
    conditions: Optional[ConditionNode] = None
    actions: RuleActions = RuleActions()
    metadata: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    parse_error: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return self.parse_error is None


def confidence_level_to_score(level: Any) -> float:
    """Confidence-Stufe → numerischer Wert (unbekannt → high)"""
    return CONFIDENCE_SCORES[coerce_confidence_level(level)]


def score_to_confidence_level(score: Any) -> ConfidenceLevel:
    """Numerischer Wert → Confidence-Stufe (Umkehrung der Tabelle, abgerundet)"""
    value = ensure_number(score, 0.0)
    if value >= 1.0:
        return ConfidenceLevel.CERTAIN
    elif value >= 0.75:
        return ConfidenceLevel.HIGH
    elif value >= 0.5:
        return ConfidenceLevel.MEDIUM
    else:
        return ConfidenceLevel.LOW


def coerce_confidence_level(value: Any, fallback: ConfidenceLevel = DEFAULT_CONFIDENCE) -> ConfidenceLevel:
    """Akzeptiert Stufen-Namen und Zahlen; alles andere → fallback"""
    if isinstance(value, ConfidenceLevel):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return score_to_confidence_level(value)
    try:
        return ConfidenceLevel(ensure_string(value).lower())
    except ValueError:
        return fallback


def _pick(raw: Mapping[str, Any], *keys: str) -> Any:
    """Erster vorhandener Key (snake_case und camelCase)"""
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def _normalize_actions(raw: Mapping[str, Any]) -> RuleActions:
    actions = ensure_mapping(raw.get("actions")) or {}
    confidence = _pick(actions, "confidence", "confidence_level", "confidenceLevel")
    if confidence is None:
        confidence = _pick(raw, "confidence", "confidence_level", "confidenceLevel")
    note = _pick(actions, "note")
    if note is None:
        note = raw.get("note")
    return RuleActions(
        confidence=coerce_confidence_level(confidence),
        note=ensure_string(note) or None,
    )


def normalize_assignment_rule(
    raw: Any,
    defaults: Optional[Mapping[str, Any]] = None,
) -> ProjectAssignmentRule:
    """
    Normalisiert eine gespeicherte Regel (total, wirft nie).

    Args:
        raw: Dict (DB-Zeile, API-Payload) oder bereits normalisierte Regel
        defaults: Fallback-Werte für fehlende Felder (z.B. {"user_id": ...})

    Returns:
        ProjectAssignmentRule; parse_error gesetzt bei kaputtem Bedingungsbaum,
        fehlendem project_id oder wenn raw kein Objekt ist (solche Regeln matchen nie)
    """
    if isinstance(raw, ProjectAssignmentRule):
        return raw

    defaults = dict(defaults or {})
    data = ensure_mapping(raw)
    structure_error = None
    if data is None:
        structure_error = f"Regel ist kein Objekt ({type(raw).__name__})"
        logger.warning(f"⚠️ ConfigError: {structure_error} - Regel matcht nie")
        data = {}
    merged = {**defaults, **{key: value for key, value in data.items() if value is not None}}

    rule_id = ensure_string(_pick(merged, "id", "rule_id", "ruleId"))
    sort_order = ensure_number(_pick(merged, "sort_order", "sortOrder", "priority"), 0)
    metadata = ensure_mapping(merged.get("metadata")) or {}
    project_id = ensure_string(_pick(merged, "project_id", "projectId"))

    parse_error = structure_error
    conditions = None
    try:
        conditions = parse_condition_tree(_pick(merged, "conditions", "condition"))
    except ConditionParseError as e:
        parse_error = parse_error or str(e)
        logger.warning(f"⚠️ ConfigError: Bedingungen von Regel {rule_id or '?'} nicht parsebar - {e}")

    if parse_error is None and not project_id:
        # Ohne Zielprojekt kann die Regel keinen Link erzeugen
        parse_error = "project_id fehlt"
        logger.warning(f"⚠️ ConfigError: Regel {rule_id or '?'} hat kein Zielprojekt - Regel matcht nie")

    return ProjectAssignmentRule(
        id=rule_id,
        user_id=ensure_string(_pick(merged, "user_id", "userId")),
        project_id=project_id,
        name=ensure_string(merged.get("name")) or DEFAULT_RULE_NAME,
        description=ensure_string(merged.get("description")) or None,
        enabled=ensure_boolean(_pick(merged, "enabled", "is_active", "isActive"), True),
        sort_order=int(sort_order),
        conditions=conditions,
        actions=_normalize_actions(merged),
        metadata=MappingProxyType(dict(metadata)),
        parse_error=parse_error,
    )


def _rule_sort_key(rule: ProjectAssignmentRule) -> Tuple[int, Tuple[int, Any]]:
    # Numerische IDs numerisch, sonst lexikografisch
    if rule.id.isdigit():
        return rule.sort_order, (0, int(rule.id))
    return rule.sort_order, (1, rule.id)


def sort_assignment_rules(rules: Iterable[ProjectAssignmentRule]) -> List[ProjectAssignmentRule]:
    """Aufsteigend nach sort_order, Gleichstand nach Regel-ID"""
    return sorted(rules, key=_rule_sort_key)


def select_enabled_rules(rules: Iterable[Any]) -> List[ProjectAssignmentRule]:
    """Normalisiert, filtert aktive Regeln und sortiert sie für die Auswertung"""
    normalized = (normalize_assignment_rule(rule) for rule in rules)
    return sort_assignment_rules(rule for rule in normalized if rule.enabled)


def assignment_rule_to_dict(rule: ProjectAssignmentRule) -> Dict[str, Any]:
    """Serialisierbare Form (für API-Antworten und Vorschau)"""
    return {
        "id": rule.id,
        "user_id": rule.user_id,
        "project_id": rule.project_id,
        "name": rule.name,
        "description": rule.description,
        "enabled": rule.enabled,
        "sort_order": rule.sort_order,
        "conditions": condition_tree_to_dict(rule.conditions),
        "actions": {
            "confidence": rule.actions.confidence.value,
            "note": rule.actions.note,
        },
        "metadata": dict(rule.metadata),
        "parse_error": rule.parse_error,
    }
