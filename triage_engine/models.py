"""
Triage Engine - Datenbankmodelle (SQLAlchemy)
emails, user_preferences, project_assignment_rules,
project_email_links, project_email_link_overrides
"""

import json
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    create_engine,
    Column,
    Integer,
    String,
    Text,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    UniqueConstraint,
    Index,
)
from sqlalchemy.orm import declarative_base, sessionmaker, relationship
from sqlalchemy.pool import StaticPool

from triage_engine.helpers.database import configure_sqlite_engine
from triage_engine.signals import TriageState


Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _load_json(text: Optional[str], fallback: Any) -> Any:
    if not text:
        return fallback
    try:
        return json.loads(text)
    except ValueError:
        return fallback


class Email(Base):
    """
    Klassifizierte E-Mail (Output des vorgelagerten Klassifizierers)

    priority_score wird vom Batch-Prozessor geschrieben,
    rules_processed_at markiert E-Mails, die der Regel-Lauf bereits gesehen hat.
    """

    __tablename__ = "emails"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)

    subject = Column(Text, nullable=False, default="")
    from_email = Column(String(255), nullable=False, default="")
    from_name = Column(String(255), nullable=True)
    body = Column(Text, nullable=True)
    summary = Column(Text, nullable=True)

    # Klassifizierung
    category = Column(String(100), nullable=False, default="MISC/Uncategorized")
    labels_json = Column(Text, nullable=False, default="[]")
    sentiment = Column(String(20), nullable=False, default="neutral")

    # Status
    is_read = Column(Boolean, default=False, nullable=False)
    triage_state = Column(String(20), default=TriageState.UNASSIGNED.value, nullable=False)
    snoozed_until = Column(DateTime, nullable=True)
    has_attachments = Column(Boolean, default=False, nullable=False)
    received_at = Column(DateTime, nullable=True, index=True)

    # Scoring / Regel-Lauf
    priority_score = Column(Float, nullable=True)
    priority_scored_at = Column(DateTime, nullable=True)
    rules_processed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_emails_user_rules_processed", "user_id", "rules_processed_at"),
    )

    @property
    def labels(self) -> List[str]:
        """Gibt Labels als Liste zurück"""
        value = _load_json(self.labels_json, [])
        return value if isinstance(value, list) else []

    @labels.setter
    def labels(self, value: List[str]):
        """Setzt Labels aus Liste"""
        self.labels_json = json.dumps(sorted(set(value or [])))

    def to_signal_values(self) -> Dict[str, Any]:
        """Rohwerte für EmailSignal.build / EmailContext.build"""
        return {
            "id": self.id,
            "category": self.category,
            "labels": self.labels,
            "received_at": self.received_at,
            "is_read": self.is_read,
            "triage_state": self.triage_state,
            "snoozed_until": self.snoozed_until,
            "sentiment": self.sentiment,
            "from_email": self.from_email,
            "from_name": self.from_name,
            "subject": self.subject,
            "has_attachments": self.has_attachments,
            "body": self.body,
            "summary": self.summary,
            "priority_score": self.priority_score,
        }

    def __repr__(self):
        return f"<Email {self.id}: user={self.user_id} score={self.priority_score}>"


class UserPreferences(Base):
    """Pro-User Einstellungen; priority_config_json ist lose typisiert und wird normalisiert"""

    __tablename__ = "user_preferences"

    user_id = Column(String(64), primary_key=True)
    priority_config_json = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    @property
    def priority_config(self) -> Optional[Dict[str, Any]]:
        """Gibt die gespeicherte Config als dict zurück (None wenn leer/kaputt)"""
        value = _load_json(self.priority_config_json, None)
        return value if isinstance(value, dict) else None

    @priority_config.setter
    def priority_config(self, value: Optional[Dict[str, Any]]):
        self.priority_config_json = json.dumps(value) if value is not None else None

    def __repr__(self):
        return f"<UserPreferences {self.user_id}>"


class ProjectAssignmentRuleRecord(Base):
    """
    Gespeicherte Projekt-Zuordnungsregel

    Beispiel:
    {
        "name": "Angebote → Projekt Vertrieb",
        "conditions": {"and": [
            {"field": "category", "operator": "equals", "value": "SALES/Offer"},
            {"field": "fromEmail", "operator": "endsWith", "value": "@example.com"}
        ]},
        "actions": {"confidence": "high", "note": "Auto"}
    }
    """

    __tablename__ = "project_assignment_rules"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    project_id = Column(String(64), nullable=False, index=True)

    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    enabled = Column(Boolean, default=True, nullable=False, index=True)
    sort_order = Column(Integer, default=0, nullable=False)  # Niedrigere = zuerst

    conditions_json = Column(Text, nullable=True)
    actions_json = Column(Text, nullable=False, default="{}")
    metadata_json = Column(Text, nullable=False, default="{}")

    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    @property
    def conditions(self) -> Optional[Dict[str, Any]]:
        """Gibt Bedingungen als dict zurück"""
        return _load_json(self.conditions_json, None)

    @conditions.setter
    def conditions(self, value: Optional[Dict[str, Any]]):
        """Setzt Bedingungen aus dict"""
        self.conditions_json = json.dumps(value) if value is not None else None

    @property
    def actions(self) -> Dict[str, Any]:
        """Gibt Aktionen als dict zurück"""
        return _load_json(self.actions_json, {})

    @actions.setter
    def actions(self, value: Dict[str, Any]):
        """Setzt Aktionen aus dict"""
        self.actions_json = json.dumps(value or {})

    def to_rule_values(self) -> Dict[str, Any]:
        """Rohwerte für normalize_assignment_rule (JSON bleibt Text, Parser ist total)"""
        return {
            "id": str(self.id),
            "user_id": self.user_id,
            "project_id": self.project_id,
            "name": self.name,
            "description": self.description,
            "enabled": self.enabled,
            "sort_order": self.sort_order,
            "conditions": self.conditions_json,
            "actions": self.actions_json,
            "metadata": self.metadata_json,
        }

    def __repr__(self):
        return f"<ProjectAssignmentRule {self.id}: {self.name} (enabled={self.enabled})>"


class ProjectEmailLink(Base):
    """Link E-Mail ↔ Projekt; höchstens einer pro (project_id, email_id)"""

    __tablename__ = "project_email_links"

    id = Column(Integer, primary_key=True)
    project_id = Column(String(64), nullable=False)
    email_id = Column(String(64), ForeignKey("emails.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    confidence = Column(Float, nullable=False)
    source = Column(String(20), nullable=False)
    metadata_json = Column(Text, nullable=False, default="{}")
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    email = relationship("Email", backref="project_links")

    __table_args__ = (
        UniqueConstraint("project_id", "email_id", name="uq_project_email_link"),
    )

    @property
    def link_metadata(self) -> Dict[str, Any]:
        return _load_json(self.metadata_json, {})

    def __repr__(self):
        return f"<ProjectEmailLink {self.project_id}:{self.email_id} ({self.source}, {self.confidence})>"


class ProjectEmailLinkOverride(Base):
    """Manuelle Entscheidung des Users: Regeln dürfen dieses Paar nie verlinken"""

    __tablename__ = "project_email_link_overrides"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    project_id = Column(String(64), nullable=False)
    email_id = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "project_id", "email_id", name="uq_project_email_link_override"),
    )

    def __repr__(self):
        return f"<ProjectEmailLinkOverride {self.user_id}: {self.project_id}:{self.email_id}>"


# DB-Setup


def init_db(database_url="sqlite:///triage.db"):
    """Initialisiert die Datenbank; Returns: (engine, Session)"""
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        engine = create_engine(
            database_url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    elif database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=False,
            connect_args={"check_same_thread": False, "timeout": 30.0},
        )
    else:
        engine = create_engine(database_url, echo=False, pool_pre_ping=True)

    if engine.url.drivername.startswith("sqlite"):
        configure_sqlite_engine(engine)

    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine)
    return engine, Session
