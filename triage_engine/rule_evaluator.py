"""
Triage Engine - Regel-Auswertung

Prüft eine normalisierte Zuordnungsregel gegen einen EmailContext.
Rein und seiteneffektfrei (bis auf Logging).

Vergleichs-Semantik:
- Strings werden case-insensitive verglichen
- labels ist eine Menge: ein Vergleich matcht, wenn irgendein Label matcht
- Listen als Wert bei equals/contains/startsWith/endsWith: irgendein Begriff genügt
- withinLastDays akzeptiert eine Zahl oder {"days": n}
- Typ-Mismatch (z.B. greaterThan auf subject) → Vergleich = False
- Ungültiger Regex → Vergleich = False
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any, Iterable, List, Mapping, Optional, Tuple, Union

from triage_engine.assignment_rules import ProjectAssignmentRule, normalize_assignment_rule
from triage_engine.conditions import ConditionField, ConditionNode, ConditionOperator, NodeKind
from triage_engine.errors import EvaluationError
from triage_engine.helpers.coercion import ensure_boolean, ensure_number, parse_timestamp
from triage_engine.signals import ConfidenceLevel, EmailContext

logger = logging.getLogger(__name__)

STRING_FIELDS = {
    ConditionField.SUBJECT,
    ConditionField.FROM_EMAIL,
    ConditionField.FROM_NAME,
    ConditionField.CATEGORY,
    ConditionField.TRIAGE_STATE,
    ConditionField.SENTIMENT,
    ConditionField.BODY,
    ConditionField.SUMMARY,
}

STRING_OPERATORS = {
    ConditionOperator.EQUALS,
    ConditionOperator.CONTAINS,
    ConditionOperator.STARTS_WITH,
    ConditionOperator.ENDS_WITH,
    ConditionOperator.IN,
    ConditionOperator.MATCHES_REGEX,
}

ORDERED_OPERATORS = {
    ConditionOperator.EQUALS,
    ConditionOperator.IN,
    ConditionOperator.GREATER_THAN,
    ConditionOperator.LESS_THAN,
    ConditionOperator.BETWEEN,
}

TERM_LIST_OPERATORS = {
    ConditionOperator.EQUALS,
    ConditionOperator.CONTAINS,
    ConditionOperator.STARTS_WITH,
    ConditionOperator.ENDS_WITH,
}

BETWEEN_KEYS = (("min", "max"), ("from", "to"), ("start", "end"))


@dataclass(frozen=True)
class RuleEvaluation:
    """Ergebnis einer Regel-Auswertung"""

    matched: bool
    confidence: ConfidenceLevel
    matches: Tuple[str, ...] = ()  # Beschreibung der gematchten Vergleiche


@dataclass(frozen=True)
class RuleTestResult:
    """Vorschau-Ergebnis einer Regel für eine einzelne E-Mail"""

    email_id: str
    matched: bool
    matches: Tuple[str, ...] = ()


@lru_cache(maxsize=256)
def _compile_pattern(pattern: str) -> "re.Pattern[str]":
    return re.compile(pattern, re.IGNORECASE)


def _field_value(field: ConditionField, context: EmailContext) -> Any:
    if field is ConditionField.SUBJECT:
        return context.subject
    if field is ConditionField.FROM_EMAIL:
        return context.from_email
    if field is ConditionField.FROM_NAME:
        return context.from_name or ""
    if field is ConditionField.CATEGORY:
        return context.category
    if field is ConditionField.LABELS:
        return context.labels
    if field is ConditionField.PRIORITY_SCORE:
        return context.priority_score
    if field is ConditionField.TRIAGE_STATE:
        return context.triage_state.value
    if field is ConditionField.RECEIVED_AT:
        return context.received_at
    if field is ConditionField.SENTIMENT:
        return context.sentiment.value
    if field is ConditionField.BODY:
        return context.body
    if field is ConditionField.SUMMARY:
        return context.summary
    if field is ConditionField.HAS_ATTACHMENTS:
        return context.has_attachments
    raise EvaluationError(f"Feld {field!r} nicht auflösbar")


def _expect_text(value: Any, operator: ConditionOperator) -> str:
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise EvaluationError(f"{operator.value} erwartet einen String, nicht {type(value).__name__}")
    return str(value)


def _expect_list(value: Any, operator: ConditionOperator) -> Tuple[Any, ...]:
    if not isinstance(value, (list, tuple, set, frozenset)):
        raise EvaluationError(f"{operator.value} erwartet eine Liste, nicht {type(value).__name__}")
    return tuple(value)


def _compare_text(actual: str, operator: ConditionOperator, expected: Any) -> bool:
    if isinstance(expected, (list, tuple)) and operator in TERM_LIST_OPERATORS:
        # Gespeichertes Format: Liste von Suchbegriffen, ein Treffer genügt
        return any(_compare_text(actual, operator, term) for term in expected)
    if operator is ConditionOperator.IN:
        candidates = _expect_list(expected, operator)
        lowered = actual.lower()
        return any(lowered == _expect_text(item, operator).lower() for item in candidates)
    if operator is ConditionOperator.MATCHES_REGEX:
        pattern = _expect_text(expected, operator)
        try:
            return _compile_pattern(pattern).search(actual) is not None
        except re.error as e:
            raise EvaluationError(f"Ungültiger Regex '{pattern}': {e}") from e

    needle = _expect_text(expected, operator).lower()
    haystack = actual.lower()
    if operator is ConditionOperator.EQUALS:
        return haystack == needle
    if operator is ConditionOperator.CONTAINS:
        return needle in haystack
    if operator is ConditionOperator.STARTS_WITH:
        return haystack.startswith(needle)
    if operator is ConditionOperator.ENDS_WITH:
        return haystack.endswith(needle)
    raise EvaluationError(f"Operator {operator.value} nicht auf Text anwendbar")


def _between_bounds(expected: Any, operator: ConditionOperator) -> Tuple[Any, Any]:
    if isinstance(expected, Mapping):
        for low_key, high_key in BETWEEN_KEYS:
            if low_key in expected and high_key in expected:
                return expected[low_key], expected[high_key]
        raise EvaluationError("between erwartet {min, max}")
    bounds = _expect_list(expected, operator)
    if len(bounds) != 2:
        raise EvaluationError(f"between erwartet genau zwei Grenzen, nicht {len(bounds)}")
    return bounds[0], bounds[1]


def _compare_ordered(actual: Any, operator: ConditionOperator, expected: Any, coerce) -> bool:
    """Vergleich für Zahlen und Zeitpunkte; coerce wandelt den Regelwert um"""

    def convert(value: Any) -> Any:
        converted = coerce(value)
        if converted is None:
            raise EvaluationError(f"{operator.value}: Wert {value!r} passt nicht zum Feldtyp")
        return converted

    if operator is ConditionOperator.EQUALS:
        return actual == convert(expected)
    if operator is ConditionOperator.IN:
        return any(actual == convert(item) for item in _expect_list(expected, operator))
    if operator is ConditionOperator.GREATER_THAN:
        return actual > convert(expected)
    if operator is ConditionOperator.LESS_THAN:
        return actual < convert(expected)
    if operator is ConditionOperator.BETWEEN:
        low, high = _between_bounds(expected, operator)
        return convert(low) <= actual <= convert(high)
    raise EvaluationError(f"Operator {operator.value} nicht auf {type(actual).__name__} anwendbar")


def _compare_received_at(actual: Optional[datetime], operator: ConditionOperator, expected: Any, now: datetime) -> bool:
    if actual is None:
        raise EvaluationError("receivedAt ist nicht gesetzt")
    if operator is ConditionOperator.WITHIN_LAST_DAYS:
        raw_days = expected.get("days") if isinstance(expected, Mapping) else expected
        days = ensure_number(raw_days)
        if days is None or days < 0:
            raise EvaluationError(f"withinLastDays erwartet eine Anzahl Tage, nicht {expected!r}")
        try:
            threshold = now - timedelta(days=days)
        except (OverflowError, ValueError) as e:
            raise EvaluationError(f"withinLastDays {days!r} außerhalb des Datumsbereichs: {e}") from e
        return actual >= threshold
    return _compare_ordered(actual, operator, expected, parse_timestamp)


def _compare_labels(labels: Iterable[str], operator: ConditionOperator, expected: Any) -> bool:
    if operator not in STRING_OPERATORS:
        raise EvaluationError(f"Operator {operator.value} nicht auf labels anwendbar")
    return any(_compare_text(label, operator, expected) for label in labels)


def _compare_boolean(actual: bool, operator: ConditionOperator, expected: Any) -> bool:
    if operator is not ConditionOperator.EQUALS:
        raise EvaluationError(f"Operator {operator.value} nicht auf Boolean anwendbar")
    if isinstance(expected, bool):
        return actual is expected
    if isinstance(expected, str) and expected.strip().lower() in ("true", "false"):
        return actual is ensure_boolean(expected)
    raise EvaluationError(f"equals auf Boolean erwartet true/false, nicht {expected!r}")


def _compare(node: ConditionNode, context: EmailContext) -> bool:
    """
    Wertet einen einzelnen Vergleichsknoten aus.

    Raises:
        EvaluationError: Typ-Mismatch oder nicht auflösbares Feld
    """
    field, operator, expected = node.field, node.operator, node.value
    actual = _field_value(field, context)

    if field in STRING_FIELDS:
        if operator not in STRING_OPERATORS:
            raise EvaluationError(f"Operator {operator.value} nicht auf Textfeld {field.value} anwendbar")
        return _compare_text(actual, operator, expected)
    if field is ConditionField.LABELS:
        return _compare_labels(actual, operator, expected)
    if field is ConditionField.HAS_ATTACHMENTS:
        return _compare_boolean(actual, operator, expected)
    if field is ConditionField.RECEIVED_AT:
        return _compare_received_at(actual, operator, expected, context.now)
    if field is ConditionField.PRIORITY_SCORE:
        if actual is None:
            raise EvaluationError("priorityScore ist nicht gesetzt")
        if operator not in ORDERED_OPERATORS:
            raise EvaluationError(f"Operator {operator.value} nicht auf priorityScore anwendbar")
        return _compare_ordered(actual, operator, expected, ensure_number)
    raise EvaluationError(f"Feld {field.value} nicht unterstützt")


def _describe(node: ConditionNode) -> str:
    return f"{node.field.value} {node.operator.value} {node.value!r}"


def _evaluate_node(node: ConditionNode, context: EmailContext, matches: Optional[List[str]]) -> bool:
    if node.kind is NodeKind.AND:
        for child in node.children:
            if not _evaluate_node(child, context, matches):
                return False
        return True
    if node.kind is NodeKind.OR:
        for child in node.children:
            if _evaluate_node(child, context, matches):
                return True
        return False
    if node.kind is NodeKind.NOT:
        # Treffer unterhalb von NOT sind keine Treffer der Regel
        return not _evaluate_node(node.children[0], context, None)

    try:
        result = _compare(node, context)
    except EvaluationError as e:
        logger.debug(f"EvaluationError in E-Mail {context.id}: {e}")
        return False
    if result and matches is not None:
        matches.append(_describe(node))
    return result


def _resolve_context(context: Union[EmailContext, Mapping[str, Any]]) -> EmailContext:
    if isinstance(context, EmailContext):
        return context
    return EmailContext.build(context)


def evaluate_rule(
    rule: Union[ProjectAssignmentRule, Mapping[str, Any]],
    context: Union[EmailContext, Mapping[str, Any]],
) -> RuleEvaluation:
    """
    Prüft ob eine Regel auf eine E-Mail matched.

    Args:
        rule: Normalisierte Regel (rohe Dicts werden normalisiert)
        context: EmailContext

    Returns:
        RuleEvaluation(matched, confidence, matches)
    """
    rule = normalize_assignment_rule(rule)
    context = _resolve_context(context)
    confidence = rule.actions.confidence

    if not rule.enabled:
        return RuleEvaluation(False, confidence)
    if rule.parse_error is not None:
        logger.debug(f"Regel {rule.id} übersprungen (ungültige Bedingungen): {rule.parse_error}")
        return RuleEvaluation(False, confidence)
    if rule.conditions is None:
        return RuleEvaluation(True, confidence)

    matches: List[str] = []
    matched = _evaluate_node(rule.conditions, context, matches)
    return RuleEvaluation(matched, confidence, tuple(matches) if matched else ())


def test_assignment_rule(
    rule: Union[ProjectAssignmentRule, Mapping[str, Any]],
    contexts: Iterable[Union[EmailContext, Mapping[str, Any]]],
) -> List[RuleTestResult]:
    """
    Vorschau: Regel gegen mehrere E-Mails auswerten (ohne Links anzulegen)

    Returns:
        Ein RuleTestResult pro E-Mail, in Eingabereihenfolge
    """
    rule = normalize_assignment_rule(rule)
    results = []
    for context in contexts:
        context = _resolve_context(context)
        evaluation = evaluate_rule(rule, context)
        results.append(RuleTestResult(context.id, evaluation.matched, evaluation.matches))
    return results


# pytest soll die Vorschau-Funktion nicht als Test einsammeln
test_assignment_rule.__test__ = False
