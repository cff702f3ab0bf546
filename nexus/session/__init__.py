"""Conversation turns and the observable session state."""

from nexus.session.orchestrator import Orchestrator
from nexus.session.state import EventKind, SessionEvent, SessionState, TurnPhase

__all__ = [
    "EventKind",
    "Orchestrator",
    "SessionEvent",
    "SessionState",
    "TurnPhase",
]
