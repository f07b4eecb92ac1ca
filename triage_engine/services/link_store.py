"""
Project Link Store

SQLAlchemy-Implementierung des Link-Stores für die Rule Engine.

- Jeder Insert läuft in einem eigenen SAVEPOINT: ein Fehler rollt nur
  diesen Link zurück, nie die Batch-Transaktion
- Duplikate (UniqueConstraint project_id + email_id) gelten als "bereits verlinkt"
- Der Store committed nie selbst; das macht der Aufrufer
"""

import json
import logging
from typing import Iterable, List, Optional, Set

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from triage_engine.errors import PersistenceError
from triage_engine.models import ProjectEmailLink, ProjectEmailLinkOverride
from triage_engine.rule_engine import LinkInsertResult, LinkKey, NewLink

logger = logging.getLogger(__name__)

# SQLite erlaubt max. 999 Bind-Parameter pro Statement
QUERY_CHUNK_SIZE = 500


def _chunks(values: List[str], size: int = QUERY_CHUNK_SIZE) -> Iterable[List[str]]:
    for start in range(0, len(values), size):
        yield values[start:start + size]


class ProjectLinkStore:
    """Liest Overrides/bestehende Links und legt neue Links an"""

    def __init__(self, db: Session):
        self.db = db

    def load_overrides(self, user_id: str, email_ids: Optional[Iterable[str]] = None) -> Set[LinkKey]:
        """
        Lädt die manuellen Overrides eines Users.

        Args:
            user_id: User ID
            email_ids: Optional auf diese E-Mails einschränken

        Returns:
            Menge von LinkKey(project_id, email_id)

        Raises:
            PersistenceError: Bei DB-Fehlern
        """
        try:
            query = self.db.query(
                ProjectEmailLinkOverride.project_id, ProjectEmailLinkOverride.email_id
            ).filter(ProjectEmailLinkOverride.user_id == user_id)

            if email_ids is None:
                return {LinkKey(project_id, email_id) for project_id, email_id in query.all()}

            keys = set()
            for chunk in _chunks(sorted(set(email_ids))):
                rows = query.filter(ProjectEmailLinkOverride.email_id.in_(chunk)).all()
                keys.update(LinkKey(project_id, email_id) for project_id, email_id in rows)
            return keys
        except SQLAlchemyError as e:
            raise PersistenceError(f"Overrides für User {user_id} nicht lesbar: {e}") from e

    def load_existing_links(
        self,
        email_ids: Iterable[str],
        project_ids: Optional[Iterable[str]] = None,
    ) -> Set[LinkKey]:
        """
        Lädt bestehende Links (jede Quelle: rule, manual, ai) für die E-Mails.

        Raises:
            PersistenceError: Bei DB-Fehlern
        """
        keys = set()
        try:
            for chunk in _chunks(sorted(set(email_ids))):
                query = self.db.query(ProjectEmailLink.project_id, ProjectEmailLink.email_id).filter(
                    ProjectEmailLink.email_id.in_(chunk)
                )
                if project_ids is not None:
                    query = query.filter(ProjectEmailLink.project_id.in_(list(project_ids)))
                keys.update(LinkKey(project_id, email_id) for project_id, email_id in query.all())
        except SQLAlchemyError as e:
            raise PersistenceError(f"Bestehende Links nicht lesbar: {e}") from e
        return keys

    def _link_exists(self, key: LinkKey) -> bool:
        return self.db.query(ProjectEmailLink.id).filter_by(
            project_id=key.project_id, email_id=key.email_id
        ).first() is not None

    def insert_link(self, link: NewLink) -> LinkInsertResult:
        """
        Legt einen Link an (SAVEPOINT pro Insert).

        Returns:
            LinkInsertResult: inserted, duplicate (Paar existiert bereits) oder failed
        """
        try:
            with self.db.begin_nested():
                self.db.add(ProjectEmailLink(
                    project_id=link.project_id,
                    email_id=link.email_id,
                    user_id=link.user_id,
                    confidence=link.confidence,
                    source=link.source.value,
                    metadata_json=json.dumps(link.metadata),
                ))
        except IntegrityError as e:
            # Unique-Verletzung oder z.B. fehlende E-Mail (FK)
            try:
                exists = self._link_exists(link.key)
            except SQLAlchemyError as lookup_error:
                return LinkInsertResult.failed(f"{type(lookup_error).__name__}: {lookup_error}")
            if exists:
                logger.debug(f"Link {link.project_id}:{link.email_id} existiert bereits")
                return LinkInsertResult.duplicate()
            return LinkInsertResult.failed(f"IntegrityError: {e.orig}")
        except SQLAlchemyError as e:
            return LinkInsertResult.failed(f"{type(e).__name__}: {e}")
        return LinkInsertResult.inserted()

    def add_override(self, user_id: str, project_id: str, email_id: str) -> bool:
        """
        Speichert eine manuelle Entscheidung (Regeln verlinken dieses Paar nie mehr).

        Returns:
            True wenn neu angelegt, False wenn bereits vorhanden

        Raises:
            PersistenceError: Bei DB-Fehlern
        """
        try:
            existing = self.db.query(ProjectEmailLinkOverride).filter_by(
                user_id=user_id, project_id=project_id, email_id=email_id
            ).first()
            if existing:
                return False
            with self.db.begin_nested():
                self.db.add(ProjectEmailLinkOverride(
                    user_id=user_id, project_id=project_id, email_id=email_id
                ))
        except IntegrityError:
            # Paralleler Insert desselben Overrides
            return False
        except SQLAlchemyError as e:
            raise PersistenceError(f"Override {project_id}:{email_id} nicht speicherbar: {e}") from e

        logger.info(f"✅ Override gespeichert: user={user_id}, {project_id}:{email_id}")
        return True
