"""
Project-Assignment Rule Engine
==============================

Wendet die aktiven Zuordnungsregeln eines Users auf eine E-Mail an und
erzeugt neue Projekt-E-Mail-Links.

Garantien:
- Regeln werden in der übergebenen Reihenfolge ausgewertet (vorsortiert)
- Pro (project_id, email_id) höchstens ein Link; bestehende Links und
  manuelle Overrides werden nie überschrieben
- Ein fehlgeschlagener Insert stoppt die übrigen Regeln nicht

Usage:
    from triage_engine.rule_engine import apply_project_assignment_rules

    result = apply_project_assignment_rules(
        user_id="u1",
        email=context,
        rules=rules,
        overrides=overrides,
        existing_links=existing,
        link_store=store,
    )
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from typing import Any, Dict, Iterable, List, MutableSet, NamedTuple, Optional, Protocol, Set

from triage_engine.assignment_rules import (
    ProjectAssignmentRule,
    confidence_level_to_score,
    normalize_assignment_rule,
)
from triage_engine.helpers.coercion import parse_timestamp
from triage_engine.rule_evaluator import evaluate_rule
from triage_engine.signals import EmailContext, LinkSource

logger = logging.getLogger(__name__)

LINKED_BY_RULE_ENGINE = "rule-engine"


class LinkKey(NamedTuple):
    """Eindeutiger Schlüssel eines Links"""

    project_id: str
    email_id: str


@dataclass(frozen=True)
class NewLink:
    """Von einer Regel erzeugter Link (noch nicht zwingend persistiert)"""

    project_id: str
    email_id: str
    user_id: str
    confidence: float
    source: LinkSource = LinkSource.RULE
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> LinkKey:
        return LinkKey(self.project_id, self.email_id)


class LinkInsertStatus(str, Enum):
    INSERTED = "inserted"
    DUPLICATE = "duplicate"
    FAILED = "failed"


@dataclass(frozen=True)
class LinkInsertResult:
    """Explizites Ergebnis eines Insert-Versuchs im Link-Store"""

    status: LinkInsertStatus
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is not LinkInsertStatus.FAILED

    @classmethod
    def inserted(cls) -> "LinkInsertResult":
        return cls(LinkInsertStatus.INSERTED)

    @classmethod
    def duplicate(cls) -> "LinkInsertResult":
        return cls(LinkInsertStatus.DUPLICATE)

    @classmethod
    def failed(cls, error: str) -> "LinkInsertResult":
        return cls(LinkInsertStatus.FAILED, error)


@dataclass(frozen=True)
class LinkInsertFailure:
    """Fehlgeschlagener Insert (Regel + Link + Fehlertext)"""

    rule_id: str
    link: NewLink
    error: str


@dataclass
class RuleApplicationResult:
    """Ergebnis für eine E-Mail"""

    new_links: List[NewLink] = field(default_factory=list)
    failures: List[LinkInsertFailure] = field(default_factory=list)
    skipped: List[LinkKey] = field(default_factory=list)


class LinkStore(Protocol):
    """Schnittstelle zum Link-Store (siehe services.link_store.ProjectLinkStore)"""

    def insert_link(self, link: NewLink) -> LinkInsertResult:
        ...


def _as_key(value: Any) -> LinkKey:
    if isinstance(value, LinkKey):
        return value
    if isinstance(value, str) and ":" in value:
        project_id, email_id = value.split(":", 1)
        return LinkKey(project_id, email_id)
    project_id, email_id = value
    return LinkKey(str(project_id), str(email_id))


def _as_key_set(values: Optional[Iterable[Any]]) -> Set[LinkKey]:
    return {_as_key(value) for value in values or ()}


def build_link_metadata(rule: ProjectAssignmentRule, linked_at: datetime) -> Dict[str, Any]:
    """Provenienz eines regelbasierten Links"""
    return {
        "rule_id": rule.id,
        "rule_name": rule.name,
        "confidence_level": rule.actions.confidence.value,
        "note": rule.actions.note,
        "linked_by": LINKED_BY_RULE_ENGINE,
        "linked_at": linked_at.isoformat(),
        "source": LinkSource.RULE.value,
    }


def apply_project_assignment_rules(
    user_id: str,
    email: EmailContext,
    rules: Iterable[ProjectAssignmentRule],
    overrides: Iterable[Any],
    existing_links: MutableSet[LinkKey],
    link_store: Optional[LinkStore] = None,
    now: Optional[datetime] = None,
) -> RuleApplicationResult:
    """
    Wertet die Regeln für eine E-Mail aus und legt neue Links an.

    Args:
        user_id: Besitzer der Regeln
        email: EmailContext der E-Mail
        rules: Aktive Regeln, bereits sortiert
        overrides: Manuell gesetzte (project_id, email_id)-Paare
        existing_links: Bereits vorhandene Links; wird um neue Keys ergänzt
        link_store: Optionaler Store; ohne Store werden Links nur zurückgegeben
        now: Zeitstempel für linked_at (Default: email.now)

    Returns:
        RuleApplicationResult(new_links, failures, skipped)
    """
    result = RuleApplicationResult()
    override_keys = _as_key_set(overrides)
    linked_at = parse_timestamp(now) or email.now or datetime.now(UTC)

    for rule in rules:
        rule = normalize_assignment_rule(rule)
        if not rule.project_id:
            logger.debug(f"Regel {rule.id or '?'} ohne Zielprojekt übersprungen")
            continue
        evaluation = evaluate_rule(rule, email)
        if not evaluation.matched:
            continue

        key = LinkKey(rule.project_id, email.id)
        if key in override_keys or key in existing_links:
            result.skipped.append(key)
            continue

        link = NewLink(
            project_id=rule.project_id,
            email_id=email.id,
            user_id=user_id,
            confidence=confidence_level_to_score(evaluation.confidence),
            metadata=build_link_metadata(rule, linked_at),
        )

        if link_store is None:
            existing_links.add(key)
            result.new_links.append(link)
            continue

        try:
            insert = link_store.insert_link(link)
        except Exception as e:
            # Store-Fehler betrifft nur diese Regel
            insert = LinkInsertResult.failed(f"{type(e).__name__}: {e}")
        if insert.status is LinkInsertStatus.INSERTED:
            existing_links.add(key)
            result.new_links.append(link)
            logger.debug(f"Regel {rule.id} → Projekt {rule.project_id} für E-Mail {email.id}")
        elif insert.status is LinkInsertStatus.DUPLICATE:
            existing_links.add(key)
            result.skipped.append(key)
        else:
            logger.error(f"❌ PersistenceError: Link {rule.project_id}:{email.id} (Regel {rule.id}): {insert.error}")
            result.failures.append(LinkInsertFailure(rule.id, link, insert.error or "unbekannter Fehler"))

    return result
