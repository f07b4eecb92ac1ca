"""
Celery Tasks: Scoring + Projekt-Zuordnung

Tasks:
- score_and_assign_emails: Scoring + Regeln für einen Account
- score_and_assign_all_accounts: Dasselbe für mehrere Accounts (begrenzt parallel)
- backfill_priority_scores: Scores neu berechnen (ohne Regeln)
- preview_assignment_rule: Regel-Vorschau ohne Links anzulegen

Die Tasks sind dünne Wrapper um TriageBatchProcessor.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from celery import Task
from celery.exceptions import Reject
from sqlalchemy.exc import SQLAlchemyError

from triage_engine.celery_app import celery_app, settings
from triage_engine.errors import PersistenceError
from triage_engine.helpers.database import get_session_factory
from triage_engine.services.triage_batch import TriageBatchProcessor

logger = logging.getLogger(__name__)


class BaseTriageTask(Task):
    """Base Task mit Retry-Logic für DB-Fehler"""

    autoretry_for = (SQLAlchemyError,)
    retry_kwargs = {"max_retries": 3}
    retry_backoff = True
    retry_backoff_max = 600  # 10 minutes
    retry_jitter = True


def _valid_ids(values: Any) -> bool:
    return isinstance(values, (list, tuple)) and bool(values) and all(values)


@celery_app.task(
    bind=True,
    base=BaseTriageTask,
    name="tasks.triage.score_and_assign_emails",
    acks_late=True,
    reject_on_worker_lost=True,
    time_limit=600,  # 10 minutes hard limit
    soft_time_limit=540
)
def score_and_assign_emails(
    self,
    user_id: str,
    email_ids: Optional[List[str]] = None,
    limit: Optional[int] = None
) -> Dict[str, Any]:
    """
    Berechnet Priority-Scores und wendet Zuordnungsregeln an.

    Args:
        user_id: User ID
        email_ids: Bestimmte E-Mails (Default: alle noch nicht verarbeiteten)
        limit: Max. Anzahl E-Mails (Default: TRIAGE_BATCH_LIMIT)

    Returns:
        Dict mit Statistiken:
        {
            "emails_checked": int,
            "emails_scored": int,
            "links_created": int,
            "links_skipped": int,
            "errors": int,
            "failures": List[Dict],
            "processed_email_ids": List[str]
        }

    Raises:
        Reject: Bei ungültigen Parametern
        Retry: Bei vorübergehenden DB-Fehlern
    """
    if not user_id:
        raise Reject("Invalid parameter: user_id required", requeue=False)

    if email_ids is not None and not _valid_ids(email_ids):
        raise Reject("Invalid parameter: email_ids must be a non-empty list", requeue=False)

    if limit is not None and (not isinstance(limit, int) or limit < 1):
        raise Reject(f"Invalid parameter: limit={limit!r}", requeue=False)

    logger.info(
        f"🔧 [Task {self.request.id}] Score + assign: "
        f"user={user_id}, emails={len(email_ids) if email_ids else 'new'}"
    )

    processor = TriageBatchProcessor(get_session_factory(), batch_limit=settings.batch_limit)

    try:
        stats = processor.process_account(user_id, email_ids=email_ids, limit=limit)

    except SQLAlchemyError as e:
        logger.warning(f"Database error in triage batch (will retry): {e}")
        raise self.retry(exc=e, countdown=60)

    except PersistenceError as e:
        logger.warning(f"Persistence error in triage batch (will retry): {e}")
        raise self.retry(exc=e, countdown=60)

    logger.info(
        f"✅ [Task {self.request.id}] Done: "
        f"{stats.emails_scored} scored, {stats.links_created} links created"
    )
    return stats.to_dict()


@celery_app.task(
    bind=True,
    base=BaseTriageTask,
    name="tasks.triage.score_and_assign_all_accounts",
    acks_late=True,
    reject_on_worker_lost=True,
    time_limit=1800,  # 30 minutes hard limit
    soft_time_limit=1700
)
def score_and_assign_all_accounts(
    self,
    user_ids: List[str],
    max_workers: Optional[int] = None
) -> Dict[str, Any]:
    """
    Verarbeitet mehrere Accounts (typischerweise periodisch via Celery Beat).

    Returns:
        {"accounts": int, "totals": Dict, "per_account": Dict[user_id, Dict]}
    """
    if not _valid_ids(user_ids):
        raise Reject("Invalid parameter: user_ids must be a non-empty list", requeue=False)

    workers = max_workers or settings.max_parallel_accounts
    if not isinstance(workers, int) or workers < 1:
        raise Reject(f"Invalid parameter: max_workers={max_workers!r}", requeue=False)

    logger.info(
        f"🔧 [Task {self.request.id}] Score + assign for {len(user_ids)} accounts "
        f"(max_workers={workers})"
    )

    processor = TriageBatchProcessor(get_session_factory(), batch_limit=settings.batch_limit)
    per_account = processor.process_accounts(user_ids, max_workers=workers)

    totals = None
    for stats in per_account.values():
        totals = stats if totals is None else totals.merge(stats)

    summary = {
        "accounts": len(per_account),
        "totals": totals.to_dict() if totals else {},
        "per_account": {
            user_id: {
                "emails_scored": stats.emails_scored,
                "links_created": stats.links_created,
                "errors": stats.errors,
            }
            for user_id, stats in per_account.items()
        },
    }

    logger.info(
        f"✅ [Task {self.request.id}] {summary['accounts']} accounts processed, "
        f"{summary['totals'].get('links_created', 0)} links created"
    )
    return summary


@celery_app.task(
    bind=True,
    base=BaseTriageTask,
    name="tasks.triage.backfill_priority_scores",
    acks_late=True,
    reject_on_worker_lost=True,
    time_limit=600,
    soft_time_limit=540
)
def backfill_priority_scores(
    self,
    user_id: str,
    only_missing: bool = True,
    limit: Optional[int] = None
) -> Dict[str, Any]:
    """
    Berechnet Priority-Scores neu (z.B. nach Änderung der Priority-Config).

    Returns:
        Statistik-Dict wie score_and_assign_emails (links_* bleiben 0)
    """
    if not user_id:
        raise Reject("Invalid parameter: user_id required", requeue=False)

    logger.info(f"🔧 [Task {self.request.id}] Backfill scores: user={user_id}, only_missing={only_missing}")

    processor = TriageBatchProcessor(get_session_factory(), batch_limit=settings.batch_limit)

    try:
        stats = processor.rescore_account(user_id, only_missing=only_missing, limit=limit)
    except (SQLAlchemyError, PersistenceError) as e:
        logger.warning(f"Database error in score backfill (will retry): {e}")
        raise self.retry(exc=e, countdown=60)

    return stats.to_dict()


@celery_app.task(
    bind=True,
    base=BaseTriageTask,
    name="tasks.triage.preview_assignment_rule",
    acks_late=True,
    reject_on_worker_lost=True,
    time_limit=60,  # 1 minute hard limit
    soft_time_limit=50
)
def preview_assignment_rule(
    self,
    user_id: str,
    rule_id: int,
    email_ids: Optional[List[str]] = None,
    limit: int = 50
) -> Dict[str, Any]:
    """
    Testet eine Regel gegen E-Mails (Dry-Run, für Rule-Preview im Frontend).

    Returns:
        {
            "rule_id": ...,
            "matched": int,
            "results": [{"email_id", "matched", "matches"}]
        }

    Raises:
        Reject: Bei ungültigen Parametern oder unbekannter Regel
    """
    if not all([user_id, rule_id]):
        raise Reject("Invalid parameters: user_id and rule_id required", requeue=False)

    processor = TriageBatchProcessor(get_session_factory())

    try:
        results = processor.preview_rule(user_id, rule_id, email_ids=email_ids, limit=limit)
    except (SQLAlchemyError, PersistenceError) as e:
        logger.warning(f"Database error in rule preview (will retry): {e}")
        raise self.retry(exc=e, countdown=10)

    if results is None:
        raise Reject(f"Rule {rule_id} not found for user {user_id}", requeue=False)

    return {
        "rule_id": rule_id,
        "matched": sum(1 for result in results if result.matched),
        "results": [
            {"email_id": result.email_id, "matched": result.matched, "matches": list(result.matches)}
            for result in results
        ],
    }
