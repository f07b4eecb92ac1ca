"""
Triage Engine - Priority-Scoring
Berechnet den deterministischen Priority-Score einer klassifizierten E-Mail
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, List, Mapping, Optional, Tuple, Union

from triage_engine.helpers.coercion import parse_timestamp
from triage_engine.priority_config import AdvancedBoost, PriorityConfig, normalize_priority_config
from triage_engine.signals import EmailSignal, TriageState

logger = logging.getLogger(__name__)

HOUR_SECONDS = 60 * 60
SCORE_PRECISION = 4


@dataclass(frozen=True)
class PriorityComponent:
    """Ein Summand des Scores (für Breakdown-Anzeige)"""

    label: str
    value: float


@dataclass(frozen=True)
class PriorityBreakdown:
    """Score + Einzelteile + angewendete Triage-Unterdrückung"""

    total: float
    components: Tuple[PriorityComponent, ...]
    subtotal: float
    suppression: Optional[str] = None


def _resolve_config(config: Any) -> PriorityConfig:
    """Kaputte/rohe Config → normalisiert (fällt auf Defaults zurück, klemmt Wertebereiche)"""
    return normalize_priority_config(config)


def _resolve_signal(signal: Union[EmailSignal, Mapping[str, Any]]) -> EmailSignal:
    if isinstance(signal, EmailSignal):
        return signal
    return EmailSignal.build(**dict(signal))


def _format_hours(age_hours: float) -> str:
    """Kompakte Altersangabe: <1h, 5h, 3d"""
    if age_hours < 1:
        return "<1h"
    if age_hours < 24:
        return f"{round(age_hours)}h"
    return f"{round(age_hours / 24)}d"


def _category_weight(category: str, config: PriorityConfig) -> float:
    """Exakter Treffer, dann case-insensitive, dann Default-Gewicht"""
    if category in config.category_weights:
        return config.category_weights[category]
    lowered = category.lower()
    for name, weight in config.category_weights.items():
        if name.lower() == lowered:
            return weight
    return config.default_category_weight


def calculate_recency(age_hours: Optional[float], config: PriorityConfig) -> float:
    """
    Recency-Anteil: exponentieller Zerfall Richtung recency_floor

    Args:
        age_hours: Alter der E-Mail in Stunden (None = unbekannt)
        config: Priority-Config

    Returns:
        Wert zwischen recency_floor und recency_weight
    """
    config = _resolve_config(config)
    floor = config.recency_floor
    if age_hours is None:
        return floor
    decay = 0.5 ** (max(0.0, age_hours) / config.recency_half_life_hours)
    return floor + (config.recency_weight - floor) * decay


def _age_hours(received_at: Optional[datetime], now: Optional[datetime]) -> Optional[float]:
    if received_at is None:
        return None
    if now is None:
        return 0.0
    return max(0.0, (now - received_at).total_seconds() / HOUR_SECONDS)


def calculate_priority_components(
    signal: Union[EmailSignal, Mapping[str, Any]],
    config: Any,
    now: Any,
) -> List[PriorityComponent]:
    """
    Summanden des Scores: Kategorie, Recency, Ungelesen, Sentiment,
    danach Cross-Label-Regeln und Advanced Boosts

    Args:
        signal: EmailSignal (oder Dict mit denselben Feldern)
        config: PriorityConfig (rohe Werte werden normalisiert)
        now: Bezugszeitpunkt (datetime oder ISO-String)

    Returns:
        Liste der Komponenten (Nullwerte bei Unread/Sentiment entfallen)
    """
    config = _resolve_config(config)
    signal = _resolve_signal(signal)
    reference = parse_timestamp(now)
    if reference is None:
        logger.warning(f"⚠️ Ungültiger Bezugszeitpunkt für Scoring: {now!r} - Alter wird als 0 behandelt")

    components = [
        PriorityComponent(f"Category {signal.category}", _category_weight(signal.category, config))
    ]

    age_hours = _age_hours(signal.received_at, reference)
    recency_label = f"Recency {_format_hours(age_hours)}" if age_hours is not None else "Recency unknown"
    components.append(PriorityComponent(recency_label, calculate_recency(age_hours, config)))

    if not signal.is_read:
        components.append(PriorityComponent("Unread", config.unread_bonus))

    sentiment_value = config.sentiment_weights.get(signal.sentiment.value, 0)
    if sentiment_value:
        components.append(PriorityComponent(f"Sentiment {signal.sentiment.value}", sentiment_value))

    for rule in config.cross_label_rules:
        if _has_label_prefix(signal.labels, rule.prefix, rule.case_insensitive):
            components.append(PriorityComponent(rule.description, rule.weight))

    # min_priority bezieht sich auf den bis dahin aufgelaufenen Score
    running_score = sum(component.value for component in components)
    for boost in config.advanced_boosts:
        if _matches_advanced_boost(boost, signal, running_score):
            components.append(PriorityComponent(boost.label, boost.weight))
            running_score += boost.weight

    return components


def _has_label_prefix(labels: Iterable[str], prefix: str, case_insensitive: bool) -> bool:
    if case_insensitive:
        prefix = prefix.lower()
        return any(label.lower().startswith(prefix) for label in labels)
    return any(label.startswith(prefix) for label in labels)


def _matches_advanced_boost(boost: AdvancedBoost, signal: EmailSignal, running_score: float) -> bool:
    """Alle gesetzten Kriterien müssen passen (leere Kriterien matchen immer)"""
    criteria = boost.criteria
    if criteria.min_priority is not None and running_score < criteria.min_priority:
        return False

    sender = (signal.from_email or signal.from_name or "").lower()
    if criteria.senders and not any(entry in sender for entry in criteria.senders):
        return False

    if criteria.domains:
        parts = signal.from_email.lower().split("@")
        domain = parts[1] if len(parts) == 2 else ""
        if domain not in criteria.domains:
            return False

    subject = signal.subject.lower()
    if criteria.keywords and not any(keyword in subject for keyword in criteria.keywords):
        return False

    if criteria.labels:
        labels = {label.lower() for label in signal.labels}
        if not labels.intersection(criteria.labels):
            return False

    if criteria.categories and signal.category.lower() not in criteria.categories:
        return False

    if criteria.has_attachment is not None and signal.has_attachments != criteria.has_attachment:
        return False
    return True


def _apply_triage(
    subtotal: float,
    signal: EmailSignal,
    config: PriorityConfig,
    now: Optional[datetime],
) -> Tuple[float, Optional[str]]:
    """Schritt (5): Snooze-Unterdrückung, Done-Clamp oder Triage-Multiplikator"""
    state = signal.triage_state
    if state is TriageState.SNOOZED and signal.snoozed_until is not None and now is not None:
        if signal.snoozed_until > now:
            return subtotal * config.snooze_suppression_factor, "snoozed"
    if state is TriageState.DONE:
        return config.done_score, "done"

    multiplier = config.triage_state_multipliers.get(state.value, 1.0)
    if multiplier != 1.0:
        return subtotal * multiplier, f"triage {state.value}"
    return subtotal, None


def build_priority_breakdown(
    signal: Union[EmailSignal, Mapping[str, Any]],
    config: Any,
    now: Any,
) -> PriorityBreakdown:
    """Vollständige Priority-Analyse (Score + Komponenten)"""
    config = _resolve_config(config)
    signal = _resolve_signal(signal)
    components = calculate_priority_components(signal, config, now)
    subtotal = sum(component.value for component in components)
    total, suppression = _apply_triage(subtotal, signal, config, parse_timestamp(now))
    total = max(0.0, round(total, SCORE_PRECISION))
    return PriorityBreakdown(
        total=total,
        components=tuple(components),
        subtotal=subtotal,
        suppression=suppression,
    )


def calculate_priority_score(
    signal: Union[EmailSignal, Mapping[str, Any]],
    config: Any,
    now: Any,
) -> float:
    """
    Berechnet den Priority-Score (rein, total, deterministisch)

    Args:
        signal: EmailSignal
        config: PriorityConfig (ungültige Configs → Defaults)
        now: Bezugszeitpunkt

    Returns:
        Score >= 0, höher = dringender
    """
    return build_priority_breakdown(signal, config, now).total


def get_priority_label(score: float) -> str:
    """
    Liefert grobes Label für Priorität

    Returns:
        "critical", "high", "medium" oder "low"
    """
    if score >= 120:
        return "critical"
    elif score >= 80:
        return "high"
    elif score >= 45:
        return "medium"
    else:
        return "low"
