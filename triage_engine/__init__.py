"""
Triage Engine - Priority-Scoring + regelbasierte Projekt-Zuordnung für E-Mails

Reiner Kern (ohne DB/Celery):
    from triage_engine import calculate_priority_score, evaluate_rule, apply_project_assignment_rules
"""

from triage_engine.assignment_rules import (
    ProjectAssignmentRule,
    normalize_assignment_rule,
    select_enabled_rules,
)
from triage_engine.conditions import ConditionNode, parse_condition_tree
from triage_engine.errors import (
    ConditionParseError,
    ConfigError,
    EvaluationError,
    PersistenceError,
    TriageEngineError,
)
from triage_engine.priority_config import DEFAULT_PRIORITY_CONFIG, PriorityConfig, normalize_priority_config
from triage_engine.rule_engine import LinkKey, NewLink, apply_project_assignment_rules
from triage_engine.rule_evaluator import evaluate_rule, test_assignment_rule
from triage_engine.scoring import calculate_priority_score
from triage_engine.signals import EmailContext, EmailSignal

__version__ = "1.0.0"

__all__ = [
    "ConditionNode",
    "ConditionParseError",
    "ConfigError",
    "DEFAULT_PRIORITY_CONFIG",
    "EmailContext",
    "EmailSignal",
    "EvaluationError",
    "LinkKey",
    "NewLink",
    "PersistenceError",
    "PriorityConfig",
    "ProjectAssignmentRule",
    "TriageEngineError",
    "apply_project_assignment_rules",
    "calculate_priority_score",
    "evaluate_rule",
    "normalize_assignment_rule",
    "normalize_priority_config",
    "parse_condition_tree",
    "select_enabled_rules",
    "test_assignment_rule",
]
