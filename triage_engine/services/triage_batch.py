"""
Triage Batch Processor
======================

Scoring + Projekt-Zuordnung für alle (neuen) E-Mails eines oder mehrerer Accounts.

Ablauf pro Account:
1. Config, aktive Regeln und Overrides einmal laden (UserRuleCache, read-only)
2. Pro E-Mail: Signal bauen → Score berechnen → speichern → Regeln anwenden
3. Fehler einer E-Mail werden geloggt und gezählt, der Rest läuft weiter

Usage:
    from triage_engine.helpers.database import get_session_factory
    from triage_engine.services.triage_batch import TriageBatchProcessor

    processor = TriageBatchProcessor(get_session_factory())
    stats = processor.process_account(user_id="u1")
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from datetime import datetime, UTC
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, MutableSet, Optional, Tuple

from sqlalchemy.orm import Session

from triage_engine.assignment_rules import ProjectAssignmentRule
from triage_engine.env_validator import DEFAULT_BATCH_LIMIT, DEFAULT_MAX_PARALLEL_ACCOUNTS
from triage_engine.helpers.coercion import parse_timestamp
from triage_engine.models import Email
from triage_engine.priority_config import PriorityConfig
from triage_engine.rule_engine import LinkKey, RuleApplicationResult, apply_project_assignment_rules
from triage_engine.rule_evaluator import RuleTestResult, test_assignment_rule
from triage_engine.scoring import calculate_priority_score
from triage_engine.services.link_store import ProjectLinkStore
from triage_engine.services.preferences_service import (
    load_assignment_rule,
    load_assignment_rules,
    load_priority_config,
)
from triage_engine.signals import EmailContext, EmailSignal

logger = logging.getLogger(__name__)


@dataclass
class BatchStats:
    """Statistik eines Laufs (pro Account oder aggregiert)"""

    emails_checked: int = 0
    emails_scored: int = 0
    links_created: int = 0
    links_skipped: int = 0
    errors: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)
    processed_email_ids: List[str] = field(default_factory=list)

    def record_rules(self, email_id: str, result: RuleApplicationResult) -> None:
        self.links_created += len(result.new_links)
        self.links_skipped += len(result.skipped)
        for failure in result.failures:
            self.failures.append({
                "email_id": email_id,
                "rule_id": failure.rule_id,
                "project_id": failure.link.project_id,
                "error": failure.error,
            })

    def merge(self, other: "BatchStats") -> "BatchStats":
        self.emails_checked += other.emails_checked
        self.emails_scored += other.emails_scored
        self.links_created += other.links_created
        self.links_skipped += other.links_skipped
        self.errors += other.errors
        self.failures.extend(other.failures)
        self.processed_email_ids.extend(other.processed_email_ids)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "emails_checked": self.emails_checked,
            "emails_scored": self.emails_scored,
            "links_created": self.links_created,
            "links_skipped": self.links_skipped,
            "errors": self.errors,
            "failures": list(self.failures),
            "processed_email_ids": list(self.processed_email_ids),
        }


@dataclass(frozen=True)
class UserRuleCache:
    """Pro Lauf einmal geladene User-Daten (während des Laufs unveränderlich)"""

    user_id: str
    config: PriorityConfig
    rules: Tuple[ProjectAssignmentRule, ...]
    overrides: FrozenSet[LinkKey]


class TriageBatchProcessor:
    """
    Batch-Verarbeitung über Accounts.

    Jeder Account bekommt eine eigene Session aus session_factory; mehrere
    Accounts können parallel laufen (process_accounts).
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        now: Optional[datetime] = None,
        batch_limit: int = DEFAULT_BATCH_LIMIT,
    ):
        self.session_factory = session_factory
        self._fixed_now = parse_timestamp(now)
        self.batch_limit = batch_limit

    def _now(self) -> datetime:
        return self._fixed_now or datetime.now(UTC)

    def build_user_cache(self, db: Session, user_id: str, email_ids: Optional[Iterable[str]] = None) -> UserRuleCache:
        """Lädt Config, aktive Regeln und Overrides eines Users"""
        store = ProjectLinkStore(db)
        return UserRuleCache(
            user_id=user_id,
            config=load_priority_config(db, user_id),
            rules=tuple(load_assignment_rules(db, user_id)),
            overrides=frozenset(store.load_overrides(user_id, email_ids)),
        )

    def _select_emails(
        self,
        db: Session,
        user_id: str,
        email_ids: Optional[List[str]],
        limit: int,
        only_unprocessed: bool = True,
    ) -> List[Email]:
        query = db.query(Email).filter(Email.user_id == user_id)  # Ownership Check
        if email_ids is not None:
            query = query.filter(Email.id.in_(email_ids))
        elif only_unprocessed:
            query = query.filter(Email.rules_processed_at.is_(None))
        return query.order_by(Email.received_at.desc(), Email.id).limit(limit).all()

    def process_email(
        self,
        email: Email,
        cache: UserRuleCache,
        existing_links: MutableSet[LinkKey],
        store: Optional[ProjectLinkStore],
        now: datetime,
    ) -> RuleApplicationResult:
        """Score berechnen + speichern, dann Regeln anwenden"""
        values = email.to_signal_values()
        signal = EmailSignal.build(**values)
        score = calculate_priority_score(signal, cache.config, now)
        email.priority_score = score
        email.priority_scored_at = now

        context = EmailContext.from_signal(
            email.id,
            signal,
            body=values.get("body") or "",
            summary=values.get("summary") or "",
            priority_score=score,
            now=now,
        )
        result = apply_project_assignment_rules(
            cache.user_id,
            context,
            cache.rules,
            cache.overrides,
            existing_links,
            link_store=store,
            now=now,
        )
        email.rules_processed_at = now
        return result

    def process_account(
        self,
        user_id: str,
        email_ids: Optional[List[str]] = None,
        limit: Optional[int] = None,
    ) -> BatchStats:
        """
        Verarbeitet die E-Mails eines Accounts.

        Args:
            user_id: User ID
            email_ids: Bestimmte E-Mails (Default: alle noch nicht verarbeiteten)
            limit: Max. Anzahl E-Mails (Default: batch_limit)

        Returns:
            BatchStats

        Raises:
            PersistenceError: Config/Regeln/Links nicht ladbar (ganzer Account)
            SQLAlchemyError: Commit fehlgeschlagen
        """
        stats = BatchStats()
        now = self._now()

        with self.session_factory() as db:
            emails = self._select_emails(db, user_id, email_ids, limit or self.batch_limit)
            if not emails:
                logger.info(f"ℹ️  User {user_id}: keine E-Mails zu verarbeiten")
                return stats

            ids = [email.id for email in emails]
            cache = self.build_user_cache(db, user_id, ids)
            store = ProjectLinkStore(db)
            existing_links = store.load_existing_links(ids)

            for email in emails:
                stats.emails_checked += 1
                try:
                    # SAVEPOINT pro E-Mail: Fehler rollt nur diese E-Mail zurück
                    with db.begin_nested():
                        result = self.process_email(email, cache, existing_links, store, now)
                except Exception as e:
                    logger.error(f"❌ Fehler bei E-Mail {email.id}: {type(e).__name__}: {e}")
                    stats.errors += 1
                    stats.failures.append({"email_id": email.id, "error": f"{type(e).__name__}: {e}"})
                    continue

                stats.emails_scored += 1
                stats.record_rules(email.id, result)
                stats.processed_email_ids.append(email.id)

            db.commit()

        logger.info(
            f"✅ User {user_id}: {stats.emails_scored}/{stats.emails_checked} E-Mails bewertet, "
            f"{stats.links_created} Links angelegt, {stats.links_skipped} übersprungen, "
            f"{stats.errors} Fehler, {len(stats.failures)} Failures"
        )
        return stats

    def process_accounts(
        self,
        user_ids: Iterable[str],
        max_workers: int = DEFAULT_MAX_PARALLEL_ACCOUNTS,
        limit: Optional[int] = None,
    ) -> Dict[str, BatchStats]:
        """
        Verarbeitet mehrere Accounts mit begrenzter Parallelität.

        Ein fehlschlagender Account stoppt die anderen nicht; er erscheint
        mit errors=1 und einem Failure-Eintrag in der Statistik.
        """
        user_ids = list(dict.fromkeys(user_ids))
        results: Dict[str, BatchStats] = {}
        if not user_ids:
            return results

        workers = max(1, min(max_workers, len(user_ids)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="triage") as executor:
            futures = {
                executor.submit(self.process_account, user_id, None, limit): user_id
                for user_id in user_ids
            }
            for future in as_completed(futures):
                user_id = futures[future]
                try:
                    results[user_id] = future.result()
                except Exception as e:
                    logger.error(f"❌ Account {user_id} fehlgeschlagen: {type(e).__name__}: {e}")
                    results[user_id] = BatchStats(
                        errors=1,
                        failures=[{"user_id": user_id, "error": f"{type(e).__name__}: {e}"}],
                    )
        return results

    def rescore_account(self, user_id: str, only_missing: bool = False, limit: Optional[int] = None) -> BatchStats:
        """
        Berechnet Priority-Scores neu, ohne Regeln anzuwenden (Backfill).

        Args:
            user_id: User ID
            only_missing: Nur E-Mails ohne Score
            limit: Max. Anzahl E-Mails (Default: batch_limit)
        """
        stats = BatchStats()
        now = self._now()

        with self.session_factory() as db:
            config = load_priority_config(db, user_id)
            query = db.query(Email).filter(Email.user_id == user_id)
            if only_missing:
                query = query.filter(Email.priority_score.is_(None))
            emails = query.order_by(Email.received_at.desc(), Email.id).limit(limit or self.batch_limit).all()

            for email in emails:
                stats.emails_checked += 1
                try:
                    signal = EmailSignal.build(**email.to_signal_values())
                    email.priority_score = calculate_priority_score(signal, config, now)
                    email.priority_scored_at = now
                except Exception as e:
                    logger.error(f"❌ Backfill-Fehler bei E-Mail {email.id}: {type(e).__name__}: {e}")
                    stats.errors += 1
                    stats.failures.append({"email_id": email.id, "error": f"{type(e).__name__}: {e}"})
                    continue
                stats.emails_scored += 1
                stats.processed_email_ids.append(email.id)

            db.commit()

        logger.info(f"✅ Backfill User {user_id}: {stats.emails_scored} Scores neu berechnet")
        return stats

    def preview_rule(
        self,
        user_id: str,
        rule_id: Any,
        email_ids: Optional[List[str]] = None,
        limit: int = 50,
    ) -> Optional[List[RuleTestResult]]:
        """
        Testet eine Regel gegen E-Mails des Users, ohne Links anzulegen.

        Deaktivierte Regeln werden für die Vorschau wie aktive behandelt.

        Returns:
            Ergebnisse pro E-Mail oder None wenn die Regel nicht existiert
        """
        now = self._now()
        with self.session_factory() as db:
            rule = load_assignment_rule(db, user_id, rule_id)
            if rule is None:
                return None
            config = load_priority_config(db, user_id)
            emails = self._select_emails(db, user_id, email_ids, limit, only_unprocessed=False)

            contexts = []
            for email in emails:
                values = email.to_signal_values()
                signal = EmailSignal.build(**values)
                contexts.append(EmailContext.from_signal(
                    email.id,
                    signal,
                    body=values.get("body") or "",
                    summary=values.get("summary") or "",
                    priority_score=calculate_priority_score(signal, config, now),
                    now=now,
                ))

        return test_assignment_rule(replace(rule, enabled=True), contexts)
