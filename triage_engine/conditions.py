"""
Triage Engine - Bedingungsbäume für Projekt-Zuordnungsregeln

Ein Bedingungsbaum ist ein rekursiver Tagged-Variant-Typ:
- Kombinatoren: AND(children), OR(children), NOT(child)
- Vergleiche: {field, operator, value}

Gespeicherte Formen (alle werden akzeptiert):
    {"and": [...]}, {"or": [...]}, {"not": {...}}
    {"type": "and", "children": [...]}
    {"logic": "and", "conditions": [...]}          (altes Gruppen-Format)
    {"field": "subject", "operator": "contains", "value": "Offer"}

Kein Wurzelknoten (None, {}, leere Gruppe) = Regel ohne Bedingungen.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Optional, Tuple

from triage_engine.errors import ConditionParseError

logger = logging.getLogger(__name__)

MAX_TREE_DEPTH = 32


class NodeKind(str, Enum):
    AND = "and"
    OR = "or"
    NOT = "not"
    COMPARISON = "comparison"


class ConditionField(str, Enum):
    SUBJECT = "subject"
    FROM_EMAIL = "fromEmail"
    FROM_NAME = "fromName"
    CATEGORY = "category"
    LABELS = "labels"
    PRIORITY_SCORE = "priorityScore"
    TRIAGE_STATE = "triageState"
    RECEIVED_AT = "receivedAt"
    SENTIMENT = "sentiment"
    BODY = "body"
    SUMMARY = "summary"
    HAS_ATTACHMENTS = "hasAttachments"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    CONTAINS = "contains"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    IN = "in"
    GREATER_THAN = "greaterThan"
    LESS_THAN = "lessThan"
    MATCHES_REGEX = "matchesRegex"
    WITHIN_LAST_DAYS = "withinLastDays"
    BETWEEN = "between"


def _lookup_key(value: str) -> str:
    return value.strip().replace("_", "").replace("-", "").lower()


FIELD_LOOKUP = {_lookup_key(f.value): f for f in ConditionField}
FIELD_LOOKUP.update({
    "hasattachment": ConditionField.HAS_ATTACHMENTS,
    "sender": ConditionField.FROM_EMAIL,
    "score": ConditionField.PRIORITY_SCORE,
})

OPERATOR_LOOKUP = {_lookup_key(o.value): o for o in ConditionOperator}
OPERATOR_LOOKUP.update({
    "isoneof": ConditionOperator.IN,
    "regex": ConditionOperator.MATCHES_REGEX,
    "before": ConditionOperator.LESS_THAN,
    "after": ConditionOperator.GREATER_THAN,
})

# Negierte Operatoren des alten Formats → NOT(vergleich)
NEGATED_OPERATORS = {
    "notcontains": ConditionOperator.CONTAINS,
    "notequals": ConditionOperator.EQUALS,
}

COMBINATOR_KEYS = {
    "and": NodeKind.AND,
    "all": NodeKind.AND,
    "or": NodeKind.OR,
    "any": NodeKind.OR,
    "not": NodeKind.NOT,
}


@dataclass(frozen=True)
class ConditionNode:
    """Knoten eines Bedingungsbaums (Kombinator oder Vergleich)"""

    kind: NodeKind
    children: Tuple["ConditionNode", ...] = ()
    field: Optional[ConditionField] = None
    operator: Optional[ConditionOperator] = None
    value: Any = None
    id: Optional[str] = None

    @property
    def is_combinator(self) -> bool:
        return self.kind is not NodeKind.COMPARISON


def and_(*children: ConditionNode) -> ConditionNode:
    return ConditionNode(NodeKind.AND, children=tuple(children))


def or_(*children: ConditionNode) -> ConditionNode:
    return ConditionNode(NodeKind.OR, children=tuple(children))


def not_(child: ConditionNode) -> ConditionNode:
    return ConditionNode(NodeKind.NOT, children=(child,))


def compare(field: Any, operator: Any, value: Any = None, node_id: Optional[str] = None) -> ConditionNode:
    """Baut einen Vergleichsknoten (Feld/Operator als Enum oder String)"""
    return ConditionNode(
        NodeKind.COMPARISON,
        field=_parse_field(field, "$"),
        operator=_parse_operator(operator, "$")[0],
        value=_freeze(value),
        id=node_id,
    )


def _freeze(value: Any) -> Any:
    """Listen → Tupel, Dicts → read-only Mapping"""
    if isinstance(value, (list, tuple, set, frozenset)):
        return tuple(_freeze(item) for item in value)
    if isinstance(value, dict):
        return MappingProxyType({key: _freeze(item) for key, item in value.items()})
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, tuple):
        return [_thaw(item) for item in value]
    if isinstance(value, MappingProxyType):
        return {key: _thaw(item) for key, item in value.items()}
    return value


def _parse_field(raw: Any, path: str) -> ConditionField:
    if isinstance(raw, ConditionField):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        raise ConditionParseError("Vergleich ohne Feld", path)
    field = FIELD_LOOKUP.get(_lookup_key(raw))
    if field is None:
        raise ConditionParseError(f"Unbekanntes Feld '{raw}'", path)
    return field


def _parse_operator(raw: Any, path: str) -> Tuple[ConditionOperator, bool]:
    """Returns: (operator, negiert)"""
    if isinstance(raw, ConditionOperator):
        return raw, False
    if not isinstance(raw, str) or not raw.strip():
        raise ConditionParseError("Vergleich ohne Operator", path)
    key = _lookup_key(raw)
    if key in NEGATED_OPERATORS:
        return NEGATED_OPERATORS[key], True
    operator = OPERATOR_LOOKUP.get(key)
    if operator is None:
        raise ConditionParseError(f"Unbekannter Operator '{raw}'", path)
    return operator, False


def _parse_children(raw: Any, path: str, depth: int) -> List[ConditionNode]:
    if not isinstance(raw, (list, tuple)):
        raise ConditionParseError(f"Kinder müssen eine Liste sein, nicht {type(raw).__name__}", path)
    children = []
    for index, item in enumerate(raw):
        child = _parse_node(item, f"{path}[{index}]", depth + 1)
        if child is not None:
            children.append(child)
    return children


def _build_combinator(kind: NodeKind, raw_children: Any, path: str, depth: int) -> ConditionNode:
    if kind is NodeKind.NOT:
        if isinstance(raw_children, (list, tuple)):
            if len(raw_children) != 1:
                raise ConditionParseError("NOT erwartet genau ein Kind", path)
            raw_children = raw_children[0]
        child = _parse_node(raw_children, f"{path}.not", depth + 1)
        if child is None:
            raise ConditionParseError("NOT ohne Kind", path)
        return ConditionNode(NodeKind.NOT, children=(child,))
    children = _parse_children(raw_children, f"{path}.{kind.value}", depth)
    return ConditionNode(kind, children=tuple(children))


def _parse_comparison(raw: Dict[str, Any], path: str) -> ConditionNode:
    field = _parse_field(raw.get("field"), path)
    operator, negated = _parse_operator(raw.get("operator", "contains"), path)
    node_id = raw.get("id")
    node = ConditionNode(
        NodeKind.COMPARISON,
        field=field,
        operator=operator,
        value=_freeze(raw.get("value")),
        id=str(node_id) if node_id is not None else None,
    )
    if negated:
        return ConditionNode(NodeKind.NOT, children=(node,), id=node.id)
    return node


def _parse_node(raw: Any, path: str, depth: int) -> Optional[ConditionNode]:
    if depth > MAX_TREE_DEPTH:
        raise ConditionParseError(f"Bedingungsbaum tiefer als {MAX_TREE_DEPTH} Ebenen", path)
    if isinstance(raw, ConditionNode):
        return raw
    if raw is None:
        return None
    if isinstance(raw, (list, tuple)):
        children = _parse_children(raw, path, depth)
        return ConditionNode(NodeKind.AND, children=tuple(children)) if children else None
    if not isinstance(raw, dict):
        raise ConditionParseError(f"Knoten muss ein Objekt sein, nicht {type(raw).__name__}", path)
    if not raw:
        return None

    if "field" in raw:
        return _parse_comparison(raw, path)

    # Altes Gruppen-Format: {"logic": "and"|"or", "conditions": [...]}
    if "logic" in raw or ("conditions" in raw and "type" not in raw):
        logic = str(raw.get("logic", "and")).strip().lower()
        if logic not in ("and", "or"):
            raise ConditionParseError(f"Unbekannte Logik '{raw.get('logic')}'", path)
        children = _parse_children(raw.get("conditions") or [], f"{path}.conditions", depth)
        if not children:
            return None
        return ConditionNode(NodeKind(logic), children=tuple(children))

    type_value = raw.get("type", raw.get("kind"))
    if isinstance(type_value, str):
        kind = COMBINATOR_KEYS.get(type_value.strip().lower())
        if kind is None:
            raise ConditionParseError(f"Unbekannter Knotentyp '{type_value}'", path)
        raw_children = raw.get("children", raw.get("conditions", raw.get("child")))
        if raw_children is None:
            raw_children = []
        return _build_combinator(kind, raw_children, path, depth)

    if len(raw) == 1:
        key, raw_children = next(iter(raw.items()))
        kind = COMBINATOR_KEYS.get(str(key).strip().lower())
        if kind is not None:
            return _build_combinator(kind, raw_children, path, depth)

    raise ConditionParseError(f"Unbekannte Knotenstruktur mit Keys {sorted(map(str, raw))}", path)


def parse_condition_tree(raw: Any) -> Optional[ConditionNode]:
    """
    Parst einen gespeicherten Bedingungsbaum.

    Args:
        raw: dict/list/JSON-String/ConditionNode oder None

    Returns:
        Wurzelknoten oder None (= keine Bedingungen, matcht alles)

    Raises:
        ConditionParseError: Unbekanntes Feld/Operator, falsche Knotenform, zu tief
    """
    if isinstance(raw, (str, bytes)):
        if not raw.strip():
            return None
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise ConditionParseError(f"Ungültiges JSON: {e}") from e
    return _parse_node(raw, "$", 0)


def condition_tree_to_dict(node: Optional[ConditionNode]) -> Optional[Dict[str, Any]]:
    """Serialisiert einen Baum in die kanonische Speicherform"""
    if node is None:
        return None
    if node.kind is NodeKind.COMPARISON:
        data = {"field": node.field.value, "operator": node.operator.value, "value": _thaw(node.value)}
        if node.id is not None:
            data["id"] = node.id
        return data
    if node.kind is NodeKind.NOT:
        return {"not": condition_tree_to_dict(node.children[0])}
    return {node.kind.value: [condition_tree_to_dict(child) for child in node.children]}


def iter_comparisons(node: Optional[ConditionNode]) -> Iterable[ConditionNode]:
    """Alle Vergleichsknoten eines Baums (Tiefensuche, links nach rechts)"""
    if node is None:
        return
    if node.kind is NodeKind.COMPARISON:
        yield node
        return
    for child in node.children:
        yield from iter_comparisons(child)
