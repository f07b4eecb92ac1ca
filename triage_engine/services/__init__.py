# triage_engine/services/__init__.py
"""Services mit DB-Zugriff (Link-Store, Preferences, Batch-Verarbeitung)."""
