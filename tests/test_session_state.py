"""Tests for SessionState — observable selection and turn progress."""

from nexus.providers.base import Model
from nexus.session.state import EventKind, SessionEvent, SessionState, TurnPhase
from nexus.store.models import Preferences, PromptMode, SearchMode


def _recording(state: SessionState) -> list[SessionEvent]:
    events: list[SessionEvent] = []
    state.subscribe(events.append)
    return events


class TestTurnProgress:
    def test_idle_by_default(self):
        state = SessionState()
        assert state.phase("c1") is TurnPhase.IDLE
        assert state.content("c1") == ""
        assert not state.is_busy("c1")

    def test_busy_until_idle(self):
        state = SessionState()
        state.set_phase("c1", TurnPhase.STREAMING)
        state.set_content("c1", "par")
        assert state.is_busy("c1")
        assert not state.is_busy("c2")
        assert state.content("c1") == "par"

        state.set_phase("c1", TurnPhase.IDLE)
        assert not state.is_busy("c1")
        assert state.content("c1") == ""

    def test_failed_is_not_busy(self):
        state = SessionState()
        state.set_phase("c1", TurnPhase.FAILED)
        assert state.phase("c1") is TurnPhase.FAILED
        assert not state.is_busy("c1")

    def test_events_carry_conversation(self):
        state = SessionState()
        events = _recording(state)
        state.set_phase("c1", TurnPhase.AWAITING_FIRST_TOKEN)
        state.set_content("c1", "hi")
        assert events == [
            SessionEvent(EventKind.PHASE, conversation_id="c1", phase=TurnPhase.AWAITING_FIRST_TOKEN),
            SessionEvent(EventKind.CONTENT, conversation_id="c1", content="hi"),
        ]


class TestListeners:
    def test_unsubscribe(self):
        state = SessionState()
        events: list[SessionEvent] = []
        unsubscribe = state.subscribe(events.append)
        state.notify("info", "one")
        unsubscribe()
        state.notify("info", "two")
        assert [e.message for e in events] == ["one"]

    def test_failing_listener_does_not_block_others(self, caplog):
        state = SessionState()

        def broken(event: SessionEvent) -> None:
            msg = "listener bug"
            raise RuntimeError(msg)

        state.subscribe(broken)
        events = _recording(state)
        state.set_phase("c1", TurnPhase.STREAMING)

        assert len(events) == 1
        assert "Session listener failed" in caplog.text


class TestSelection:
    def test_apply_preferences(self):
        state = SessionState()
        events = _recording(state)
        state.apply_preferences(
            Preferences(
                provider_id="groq",
                model_id="llama",
                prompt_mode=PromptMode.DEVELOPER,
                search_mode=SearchMode.WEB,
                memory_enabled=False,
            )
        )
        assert (state.provider_id, state.model_id) == ("groq", "llama")
        assert state.prompt_mode is PromptMode.DEVELOPER
        assert state.search_mode is SearchMode.WEB
        assert state.memory_enabled is False
        assert [e.kind for e in events] == [EventKind.SELECTION]

    def test_set_models(self):
        state = SessionState()
        events = _recording(state)
        state.set_models([], loading=True)
        assert state.models_loading
        state.set_models([Model(id="m", name="M")])
        assert not state.models_loading
        assert [m.id for m in state.models] == ["m"]
        assert [e.kind for e in events] == [EventKind.MODELS, EventKind.MODELS]

    def test_error_notification_sets_last_error(self):
        state = SessionState()
        state.notify("warning", "minor")
        assert state.last_error is None
        state.notify("error", "bad key", "c1")
        assert state.last_error == "bad key"

    def test_instances_are_independent(self):
        first, second = SessionState(), SessionState()
        first.set_phase("c1", TurnPhase.STREAMING)
        assert second.phase("c1") is TurnPhase.IDLE
