"""
Preferences Service

Lädt Priority-Config und Zuordnungsregeln eines Users aus der DB und
normalisiert sie. Kaputte gespeicherte Werte führen nie zu Fehlern,
nur DB-Fehler (→ PersistenceError).
"""

import json
import logging
from typing import Any, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from triage_engine.assignment_rules import (
    ProjectAssignmentRule,
    normalize_assignment_rule,
    select_enabled_rules,
    sort_assignment_rules,
)
from triage_engine.errors import PersistenceError
from triage_engine.models import ProjectAssignmentRuleRecord, UserPreferences
from triage_engine.priority_config import (
    PriorityConfig,
    normalize_priority_config,
    priority_config_to_dict,
)

logger = logging.getLogger(__name__)


def load_priority_config(db: Session, user_id: str) -> PriorityConfig:
    """
    Lädt die Priority-Config eines Users (Defaults wenn keine gespeichert).

    Raises:
        PersistenceError: Bei DB-Fehlern
    """
    try:
        prefs = db.query(UserPreferences).filter_by(user_id=user_id).first()
    except SQLAlchemyError as e:
        raise PersistenceError(f"Priority-Config für User {user_id} nicht lesbar: {e}") from e

    if prefs is None or not prefs.priority_config_json:
        return normalize_priority_config(None)
    return normalize_priority_config(prefs.priority_config_json)


def save_priority_config(db: Session, user_id: str, raw: Any) -> PriorityConfig:
    """
    Normalisiert und speichert eine Priority-Config (kein Commit).

    Returns:
        Die gespeicherte, normalisierte Config
    """
    config = normalize_priority_config(raw)
    try:
        prefs = db.query(UserPreferences).filter_by(user_id=user_id).first()
        if prefs is None:
            prefs = UserPreferences(user_id=user_id)
            db.add(prefs)
        prefs.priority_config_json = json.dumps(priority_config_to_dict(config))
        db.flush()
    except SQLAlchemyError as e:
        raise PersistenceError(f"Priority-Config für User {user_id} nicht speicherbar: {e}") from e

    logger.info(f"✅ Priority-Config gespeichert für User {user_id}")
    return config


def load_assignment_rules(
    db: Session,
    user_id: str,
    include_disabled: bool = False,
) -> List[ProjectAssignmentRule]:
    """
    Lädt die Zuordnungsregeln eines Users, normalisiert und sortiert.

    Args:
        db: DB-Session
        user_id: User ID
        include_disabled: Auch deaktivierte Regeln liefern (für Verwaltung/Vorschau)

    Returns:
        Regeln sortiert nach (sort_order, id)

    Raises:
        PersistenceError: Bei DB-Fehlern
    """
    try:
        records = db.query(ProjectAssignmentRuleRecord).filter_by(user_id=user_id).all()
    except SQLAlchemyError as e:
        raise PersistenceError(f"Regeln für User {user_id} nicht lesbar: {e}") from e

    values = [record.to_rule_values() for record in records]
    if include_disabled:
        return sort_assignment_rules(normalize_assignment_rule(value) for value in values)

    rules = select_enabled_rules(values)
    invalid = [rule.id for rule in rules if not rule.is_valid]
    if invalid:
        logger.warning(f"⚠️ User {user_id}: {len(invalid)} Regel(n) mit ungültigen Bedingungen: {invalid}")
    return rules


def load_assignment_rule(db: Session, user_id: str, rule_id: Any) -> Optional[ProjectAssignmentRule]:
    """Einzelne Regel mit Ownership-Check (None wenn nicht gefunden)"""
    try:
        record = db.query(ProjectAssignmentRuleRecord).filter_by(
            id=int(rule_id),
            user_id=user_id  # Ownership Check
        ).first()
    except (TypeError, ValueError):
        return None
    except SQLAlchemyError as e:
        raise PersistenceError(f"Regel {rule_id} nicht lesbar: {e}") from e
    return normalize_assignment_rule(record.to_rule_values()) if record else None
