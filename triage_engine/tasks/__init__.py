# triage_engine/tasks/__init__.py
"""Celery Tasks - Batch-Verarbeitung für die Triage Engine.

ARCHITEKTUR:
┌─────────────────────────────┐
│ Task (Celery Wrapper)       │
│ triage_tasks.py             │
│ - Parameter-Prüfung         │
│ - Retry bei DB-Fehlern      │
└────────────┬────────────────┘
             │ processor.method(...)
             ↓
┌─────────────────────────────┐
│ Service (Business Logic)    │
│ services/triage_batch.py    │
│ - Keine Celery-Abhängigkeit │
└─────────────────────────────┘

Auto-discovered durch celery_app.autodiscover_tasks() in celery_app.py
"""

from triage_engine.tasks.triage_tasks import (
    score_and_assign_emails,
    score_and_assign_all_accounts,
    backfill_priority_scores,
    preview_assignment_rule,
)

__all__ = [
    "score_and_assign_emails",
    "score_and_assign_all_accounts",
    "backfill_priority_scores",
    "preview_assignment_rule",
]
