"""SessionState — transient, observable state owned by one orchestrator."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from nexus.store.models import PromptMode, SearchMode

if TYPE_CHECKING:
    from nexus.providers.base import Model
    from nexus.store.models import Preferences

logger = logging.getLogger(__name__)


class TurnPhase(StrEnum):
    IDLE = "idle"
    COMPOSING_PROMPT = "composing_prompt"
    AWAITING_FIRST_TOKEN = "awaiting_first_token"
    STREAMING = "streaming"
    SETTLING = "settling"
    FAILED = "failed"


class EventKind(StrEnum):
    PHASE = "phase"
    CONTENT = "content"
    SELECTION = "selection"
    MODELS = "models"
    NOTIFICATION = "notification"


@dataclass(frozen=True)
class SessionEvent:
    kind: EventKind
    conversation_id: str | None = None
    phase: TurnPhase | None = None
    content: str | None = None
    level: str | None = None
    message: str | None = None


Listener = Callable[[SessionEvent], None]


@dataclass
class SessionState:
    """Selection, modes and per-conversation turn progress.

    Not a singleton: each orchestrator gets its own instance, and the UI
    observes it through ``subscribe``. Every mutation goes through a method
    here so that listeners see one event per change.
    """

    provider_id: str | None = None
    model_id: str | None = None
    models: list[Model] = field(default_factory=list)
    models_loading: bool = False
    prompt_mode: PromptMode = PromptMode.STANDARD
    search_mode: SearchMode = SearchMode.AI
    memory_enabled: bool = True
    last_error: str | None = None
    _phases: dict[str, TurnPhase] = field(default_factory=dict, repr=False)
    _buffers: dict[str, str] = field(default_factory=dict, repr=False)
    _listeners: list[Listener] = field(default_factory=list, repr=False)

    # -- Subscription ----------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; call the returned function to unsubscribe."""
        self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, event: SessionEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Session listener failed on %s event", event.kind)

    # -- Turn progress ---------------------------------------------------------

    def phase(self, conversation_id: str) -> TurnPhase:
        return self._phases.get(conversation_id, TurnPhase.IDLE)

    def content(self, conversation_id: str) -> str:
        """The streaming accumulator for an in-flight turn ("" when idle)."""
        return self._buffers.get(conversation_id, "")

    def is_busy(self, conversation_id: str) -> bool:
        return self.phase(conversation_id) not in (TurnPhase.IDLE, TurnPhase.FAILED)

    def set_phase(self, conversation_id: str, phase: TurnPhase) -> None:
        if phase is TurnPhase.IDLE:
            self._phases.pop(conversation_id, None)
            self._buffers.pop(conversation_id, None)
        else:
            self._phases[conversation_id] = phase
        self.emit(SessionEvent(EventKind.PHASE, conversation_id=conversation_id, phase=phase))

    def set_content(self, conversation_id: str, content: str) -> None:
        self._buffers[conversation_id] = content
        self.emit(SessionEvent(EventKind.CONTENT, conversation_id=conversation_id, content=content))

    # -- Selection and modes ---------------------------------------------------

    def set_selection(self, provider_id: str | None, model_id: str | None) -> None:
        self.provider_id = provider_id
        self.model_id = model_id
        self.emit(SessionEvent(EventKind.SELECTION))

    def set_models(self, models: list[Model], *, loading: bool = False) -> None:
        self.models = list(models)
        self.models_loading = loading
        self.emit(SessionEvent(EventKind.MODELS))

    def apply_preferences(self, prefs: Preferences) -> None:
        self.prompt_mode = prefs.prompt_mode
        self.search_mode = prefs.search_mode
        self.memory_enabled = prefs.memory_enabled
        self.set_selection(prefs.provider_id, prefs.model_id)

    def notify(self, level: str, message: str, conversation_id: str | None = None) -> None:
        """Emit a user-facing notification. Errors are also kept as ``last_error``."""
        if level == "error":
            self.last_error = message
        self.emit(
            SessionEvent(
                EventKind.NOTIFICATION,
                conversation_id=conversation_id,
                level=level,
                message=message,
            )
        )
