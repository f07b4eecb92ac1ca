"""
Triage Engine - Fehler-Taxonomie

Keiner dieser Fehler ist im Kern fatal:
- ConfigError: kaputte Config/Regel → Defaults einsetzen, loggen
- EvaluationError: Typ-Mismatch im Vergleich → Vergleich = False
- PersistenceError: Link-/Config-Store nicht erreichbar → pro Regel/E-Mail isoliert
"""


class TriageEngineError(Exception):
    """Basisklasse für alle Fehler der Triage-Engine"""


class ConfigError(TriageEngineError):
    """Gespeicherte Priority-Config oder Regel hat eine ungültige Struktur"""


class ConditionParseError(ConfigError):
    """Bedingungsbaum einer Regel ist nicht parsebar"""

    def __init__(self, message: str, path: str = "$"):
        super().__init__(f"{path}: {message}")
        self.path = path


class EvaluationError(TriageEngineError):
    """Vergleich kann nicht ausgewertet werden (Typ-Mismatch, ungültiger Regex)"""


class PersistenceError(TriageEngineError):
    """Lesen/Schreiben im Link- oder Config-Store fehlgeschlagen"""
