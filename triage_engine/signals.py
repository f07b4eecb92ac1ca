"""
Triage Engine - Eingangs-Datentypen

EmailSignal: Sicht des Scorers auf eine klassifizierte E-Mail
EmailContext: Sicht des Regel-Evaluators (Signal + id, Body, Summary, Score)

Beide werden pro Auswertung frisch gebaut und sind unveränderlich.
"""

from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from typing import Any, FrozenSet, Iterable, Mapping, Optional

from triage_engine.helpers.coercion import (
    ensure_boolean,
    ensure_number,
    ensure_string,
    ensure_string_list,
    parse_timestamp,
)


class TriageState(str, Enum):
    """Bearbeitungsstand einer E-Mail"""

    UNASSIGNED = "unassigned"
    TRIAGED = "triaged"
    SNOOZED = "snoozed"
    DONE = "done"


# Alte Bezeichnungen aus gespeicherten Datensätzen
TRIAGE_STATE_ALIASES = {
    "acknowledged": TriageState.TRIAGED,
    "resolved": TriageState.DONE,
}


class Sentiment(str, Enum):
    """Stimmung laut Klassifizierer"""

    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class LinkSource(str, Enum):
    """Herkunft eines Projekt-E-Mail-Links"""

    RULE = "rule"
    MANUAL = "manual"
    AI = "ai"


class ConfidenceLevel(str, Enum):
    """Vom Regel-Autor deklarierte Sicherheit"""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CERTAIN = "certain"


def coerce_triage_state(value: Any) -> TriageState:
    """Normalisiert einen Triage-State (unbekannt → unassigned)"""
    if isinstance(value, TriageState):
        return value
    text = ensure_string(value).lower()
    if text in TRIAGE_STATE_ALIASES:
        return TRIAGE_STATE_ALIASES[text]
    try:
        return TriageState(text)
    except ValueError:
        return TriageState.UNASSIGNED


def coerce_sentiment(value: Any) -> Sentiment:
    """Normalisiert ein Sentiment (unbekannt → neutral)"""
    if isinstance(value, Sentiment):
        return value
    try:
        return Sentiment(ensure_string(value).lower())
    except ValueError:
        return Sentiment.NEUTRAL


def _unique_labels(labels: Optional[Iterable[Any]]) -> FrozenSet[str]:
    return frozenset(ensure_string_list(list(labels) if labels is not None else []))


@dataclass(frozen=True)
class EmailSignal:
    """Klassifizierte E-Mail als Input für das Priority-Scoring"""

    category: str
    labels: FrozenSet[str] = frozenset()
    received_at: Optional[datetime] = None
    is_read: bool = False
    triage_state: TriageState = TriageState.UNASSIGNED
    snoozed_until: Optional[datetime] = None
    sentiment: Sentiment = Sentiment.NEUTRAL
    from_email: str = ""
    from_name: Optional[str] = None
    subject: str = ""
    has_attachments: bool = False

    @classmethod
    def build(cls, **values: Any) -> "EmailSignal":
        """
        Baut ein Signal aus lose typisierten Werten (DB-Zeile, Klassifizierer-Output).

        Unbekannte Keys werden ignoriert, Timestamps als ISO-String oder datetime akzeptiert.
        """
        return cls(
            category=ensure_string(values.get("category")) or "MISC/Uncategorized",
            labels=_unique_labels(values.get("labels")),
            received_at=parse_timestamp(values.get("received_at")),
            is_read=ensure_boolean(values.get("is_read"), False),
            triage_state=coerce_triage_state(values.get("triage_state")),
            snoozed_until=parse_timestamp(values.get("snoozed_until")),
            sentiment=coerce_sentiment(values.get("sentiment")),
            from_email=ensure_string(values.get("from_email")),
            from_name=ensure_string(values.get("from_name")) or None,
            subject=ensure_string(values.get("subject")),
            has_attachments=ensure_boolean(values.get("has_attachments"), False),
        )


@dataclass(frozen=True)
class EmailContext:
    """Strukturierte E-Mail für die Auswertung von Zuordnungsregeln"""

    id: str
    subject: str = ""
    from_email: str = ""
    from_name: Optional[str] = None
    category: str = ""
    labels: FrozenSet[str] = frozenset()
    sentiment: Sentiment = Sentiment.NEUTRAL
    triage_state: TriageState = TriageState.UNASSIGNED
    received_at: Optional[datetime] = None
    priority_score: Optional[float] = None
    body: str = ""
    summary: str = ""
    has_attachments: bool = False
    now: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_signal(
        cls,
        email_id: str,
        signal: EmailSignal,
        body: str = "",
        summary: str = "",
        priority_score: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> "EmailContext":
        """Erweitert ein EmailSignal um die Felder, die nur Regeln brauchen"""
        return cls(
            id=email_id,
            subject=signal.subject,
            from_email=signal.from_email,
            from_name=signal.from_name,
            category=signal.category,
            labels=signal.labels,
            sentiment=signal.sentiment,
            triage_state=signal.triage_state,
            received_at=signal.received_at,
            priority_score=priority_score,
            body=body or "",
            summary=summary or "",
            has_attachments=signal.has_attachments,
            now=parse_timestamp(now) or datetime.now(UTC),
        )

    @classmethod
    def build(cls, values: Mapping[str, Any], now: Optional[datetime] = None) -> "EmailContext":
        """Baut einen Kontext aus einem lose typisierten Dict"""
        signal = EmailSignal.build(**values)
        return cls.from_signal(
            ensure_string(values.get("id")),
            signal,
            body=ensure_string(values.get("body")),
            summary=ensure_string(values.get("summary")),
            priority_score=ensure_number(values.get("priority_score")),
            now=now,
        )
