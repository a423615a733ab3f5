"""
exporchestra.playbooks - Playbook adapters.

Adapters turn a raw intent into a StepRecipe:
- EventPlaybook: reference adapter for event launches (code)
- DeclarativePlaybook: adapters defined by YAML contracts
"""

from .base import PlaybookAdapter, PlaybookInput, validate_intent
from .declarative import DeclarativePlaybook, evaluate_condition
from .event import EVENT_CONTRACT, EventPlaybook

__all__ = [
    "PlaybookAdapter",
    "PlaybookInput",
    "validate_intent",
    "DeclarativePlaybook",
    "evaluate_condition",
    "EventPlaybook",
    "EVENT_CONTRACT",
]
