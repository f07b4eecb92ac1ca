# triage_engine/celery_app.py
"""Celery Application für die Batch-Verarbeitung (Scoring + Projekt-Zuordnung).

VERWENDUNG:
    1. .env updaten mit:
       - CELERY_BROKER_URL=redis://localhost:6379/1
       - CELERY_RESULT_BACKEND=redis://localhost:6379/2
       - DATABASE_URL=postgresql://...

    2. Worker starten:
       celery -A triage_engine.celery_app worker --loglevel=info

    3. Aufrufen:
       from triage_engine.tasks.triage_tasks import score_and_assign_emails
       task = score_and_assign_emails.delay(user_id)
"""

from pathlib import Path
from celery import Celery
from dotenv import load_dotenv

from triage_engine.env_validator import TriageSettings

# Load .env.local first (priority), then .env (fallback)
project_root = Path(__file__).parent.parent
load_dotenv(project_root / ".env.local", override=True)
load_dotenv(project_root / ".env", override=False)

settings = TriageSettings.from_env()

celery_app = Celery(
    "triage_engine",
    broker=settings.broker_url,
    backend=settings.result_backend,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="Europe/Berlin",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=15 * 60,      # 15 Minuten Hard-Limit
    task_soft_time_limit=12 * 60,  # 12 Minuten Soft-Limit
    worker_prefetch_multiplier=1,
)

celery_app.autodiscover_tasks(["triage_engine.tasks"])


if __name__ == "__main__":
    celery_app.start()
