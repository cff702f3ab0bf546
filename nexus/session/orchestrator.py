"""Orchestrator — drives conversation turns end-to-end.

One turn runs ``Idle → ComposingPrompt → AwaitingFirstToken → Streaming →
Settling → Idle``. Any error moves it to ``Failed`` (one notification),
discards the partial reply and returns the conversation to ``Idle`` so the
user can retry. The user's message is committed before any network call.
Export and memory capture are side effects: their failures are reported
as notifications and never change the turn's outcome.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import TYPE_CHECKING

from nexus.config import settings
from nexus.errors import (
    AuthError,
    ConfigurationError,
    ExportError,
    NexusError,
    PersistenceError,
    TurnCancelledError,
    TurnInProgressError,
    UnrecoverableError,
)
from nexus.export import ExportClient
from nexus.intents import ExportIntent, MemoryCapture, match_export_intent, match_memory_capture
from nexus.llm.prompt import build_system_prompt, enhancer_prompt
from nexus.llm.sse import decode_sse
from nexus.providers.base import ChatMessage, format_model_name
from nexus.search import search_web
from nexus.session.state import EventKind, SessionEvent, SessionState, TurnPhase
from nexus.store.models import (
    Conversation,
    Memory,
    MemoryKind,
    Message,
    PromptMode,
    Role,
    SearchMode,
    WebSearchResult,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Coroutine, Sequence
    from typing import Any

    from nexus.providers.base import Model, ProviderAdapter
    from nexus.providers.registry import AdapterRegistry
    from nexus.store.persistence import Persistence
    from nexus.store.sync import MergeResult

    SearchFn = Callable[[str], Awaitable[WebSearchResult]]
    TextDeltaFn = Callable[[str], None]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Ready:
    adapter: ProviderAdapter
    model_id: str
    credential: str


class Orchestrator:
    """The entry points a UI may call.

    Owns the transient ``SessionState``; all durable reads and writes go
    through ``Persistence``. Only one turn may be in flight per
    conversation: a second ``send_turn`` raises ``TurnInProgressError``.
    """

    def __init__(
        self,
        persistence: Persistence,
        adapters: AdapterRegistry,
        state: SessionState | None = None,
        *,
        search: SearchFn = search_web,
        exporter: ExportClient | None = None,
    ) -> None:
        self.persistence = persistence
        self.adapters = adapters
        self.state = state or SessionState()
        self._search = search
        self._exporter = exporter or ExportClient()
        self._streams: dict[str, asyncio.Task[tuple[str, WebSearchResult | None]]] = {}
        self._cancel_requested: set[str] = set()
        self._background: set[asyncio.Task[None]] = set()

    # -- Session lifecycle -----------------------------------------------------

    async def restore(self) -> None:
        """Rebuild the session from stored preferences."""
        prefs = await self.persistence.load_preferences()
        self.state.apply_preferences(prefs)
        if prefs.provider_id and prefs.provider_id in self.adapters and prefs.api_keys.get(prefs.provider_id):
            await self._refresh_models(keep=prefs.model_id)

    async def sign_in(self, user_id: str) -> MergeResult | None:
        result = await self.persistence.sign_in(user_id)
        await self.restore()
        if result is not None:
            self.state.notify("info", f"Signed in as {user_id}")
        return result

    async def sign_out(self) -> None:
        await self.persistence.sign_out()
        self.state.notify("info", "Signed out")

    async def aclose(self) -> None:
        """Wait for background side effects, flush sync and close HTTP clients."""
        for conversation_id in list(self._streams):
            self.cancel_turn(conversation_id)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.persistence.flush()
        await self.adapters.aclose()

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # -- Provider / model selection --------------------------------------------

    async def _refresh_models(self, keep: str | None = None) -> list[Model]:
        """Refetch the model list for the selected provider.

        Keeps *keep* selected if it is still offered, else picks the first
        ranked model. Errors are reported and leave the list empty.
        """
        provider_id = self.state.provider_id
        if not provider_id:
            return []
        adapter = self.adapters.get(provider_id)
        prefs = await self.persistence.load_preferences()
        credential = prefs.api_keys.get(provider_id)
        if not credential:
            self.state.set_models([])
            return []

        self.state.set_models([], loading=True)
        try:
            models = await adapter.list_models(credential)
        except NexusError as exc:
            logger.warning("Could not load models for %s: %s", provider_id, exc)
            self.state.set_models([])
            self.state.notify("error", str(exc))
            return []
        except BaseException:
            # Cancellation or a bug; never leave the list marked as loading.
            self.state.set_models([])
            raise

        self.state.set_models(models)
        ids = [m.id for m in models]
        model_id = keep if keep in ids else (ids[0] if ids else None)
        if model_id != self.state.model_id:
            await self._update_preferences(model_id=model_id)
            self.state.set_selection(provider_id, model_id)
        return models

    async def select_provider(self, provider_id: str) -> list[Model]:
        """Switch provider. The model selection is reset and the list refetched."""
        self.adapters.get(provider_id)
        await self._update_preferences(provider_id=provider_id, model_id=None)
        self.state.set_selection(provider_id, None)
        self.state.set_models([])
        return await self._refresh_models()

    async def select_model(self, model_id: str) -> None:
        if not self.state.provider_id:
            msg = "Select a provider first"
            raise ConfigurationError(msg)
        if self.state.models and model_id not in {m.id for m in self.state.models}:
            msg = f"Model {model_id} is not offered by {self.state.provider_id}"
            raise ConfigurationError(msg)
        await self._update_preferences(model_id=model_id)
        self.state.set_selection(self.state.provider_id, model_id)

    async def save_credential(self, provider_id: str, secret: str) -> None:
        """Save (or clear, with an empty secret) the API key for a provider."""
        self.adapters.get(provider_id)
        await self.persistence.save_credential(provider_id, secret.strip())
        self.state.notify("info", f"API key {'saved' if secret.strip() else 'removed'} for {provider_id}")
        if provider_id == self.state.provider_id:
            await self._refresh_models(keep=self.state.model_id)

    # -- Modes -----------------------------------------------------------------

    async def _update_preferences(self, **changes: object) -> None:
        prefs = await self.persistence.load_preferences()
        await self.persistence.save_preferences(prefs.model_copy(update=changes))

    async def set_prompt_mode(self, mode: PromptMode | str) -> None:
        mode = PromptMode(mode)
        await self._update_preferences(prompt_mode=mode)
        self.state.prompt_mode = mode
        self.state.emit(SessionEvent(EventKind.SELECTION))

    async def set_search_mode(self, mode: SearchMode | str) -> None:
        mode = SearchMode(mode)
        await self._update_preferences(search_mode=mode)
        self.state.search_mode = mode
        self.state.emit(SessionEvent(EventKind.SELECTION))

    async def toggle_memory(self) -> bool:
        enabled = not self.state.memory_enabled
        await self._update_preferences(memory_enabled=enabled)
        self.state.memory_enabled = enabled
        self.state.emit(SessionEvent(EventKind.SELECTION))
        return enabled

    # -- Conversations and memories --------------------------------------------

    async def create_conversation(self, title: str = "New chat") -> Conversation:
        chat = Conversation(
            title=title,
            provider_id=self.state.provider_id or "",
            model_id=self.state.model_id or "",
            memory_enabled=self.state.memory_enabled,
        )
        return await self.persistence.commit_conversation(chat)

    async def delete_conversation(self, conversation_id: str) -> bool:
        if self.state.is_busy(conversation_id):
            raise TurnInProgressError(conversation_id)
        return await self.persistence.delete_conversation(conversation_id)

    async def list_conversations(self) -> list[Conversation]:
        return await self.persistence.list_conversations()

    async def list_messages(self, conversation_id: str) -> list[Message]:
        return await self.persistence.list_messages(conversation_id)

    async def add_memory(self, title: str, content: str, kind: MemoryKind | str = MemoryKind.FACT) -> Memory:
        memory = Memory(kind=MemoryKind(kind), title=title, content=content)
        return await self.persistence.commit_memory(memory)

    async def delete_memory(self, memory_id: str) -> bool:
        return await self.persistence.delete_memory(memory_id)

    async def toggle_memory_item(self, memory_id: str) -> Memory | None:
        memory = await self.persistence.get_memory(memory_id)
        if memory is None:
            return None
        await self.persistence.set_memory_enabled(memory_id, not memory.enabled)
        return memory.model_copy(update={"enabled": not memory.enabled})

    async def list_memories(self) -> list[Memory]:
        return await self.persistence.list_memories()

    # -- Turns -----------------------------------------------------------------

    async def _require_ready(self) -> _Ready:
        """Resolve adapter, model and credential, or report why not. No writes happen here."""
        provider_id, model_id = self.state.provider_id, self.state.model_id
        try:
            if not provider_id or not model_id:
                msg = "Select a provider and model first"
                raise ConfigurationError(msg)
            adapter = self.adapters.get(provider_id)
            prefs = await self.persistence.load_preferences()
            credential = prefs.api_keys.get(provider_id)
            if not credential:
                msg = f"Add an API key for {adapter.provider.name}"
                raise AuthError(msg, provider_id=provider_id)
        except NexusError as exc:
            self.state.notify("error", str(exc))
            raise
        return _Ready(adapter, model_id, credential)

    async def send_turn(
        self,
        conversation_id: str | None,
        text: str,
        *,
        on_text_delta: TextDeltaFn | None = None,
    ) -> Message:
        """Run one turn and return the committed assistant message.

        Args:
            conversation_id: Existing conversation, or None to start one
                titled after the first characters of *text*.
            text: The user's message.
            on_text_delta: Called with each token's text as it arrives.

        Raises:
            ConfigurationError: No provider/model selected, or unknown conversation.
            AuthError: No credential saved, or the vendor rejected it.
            TurnInProgressError: This conversation already has a turn in flight.
            TurnCancelledError: ``cancel_turn`` was called before the reply settled.
            RateLimitError, UnavailableError, UnrecoverableError: The vendor failed.
            PersistenceError: The local store failed.
        """
        if not text.strip():
            msg = "Message is empty"
            raise ValueError(msg)
        ready = await self._require_ready()

        if conversation_id is None:
            conversation = Conversation(
                title=text.strip()[: settings.title_max_chars],
                provider_id=ready.adapter.provider_id,
                model_id=ready.model_id,
                memory_enabled=self.state.memory_enabled,
            )
            is_new = True
        else:
            conversation = await self.persistence.get_conversation(conversation_id)
            if conversation is None:
                msg = f"Unknown conversation: {conversation_id}"
                self.state.notify("error", msg, conversation_id)
                raise ConfigurationError(msg)
            is_new = False

        chat_id = conversation.id
        # Check and claim with no await in between.
        if self.state.is_busy(chat_id):
            raise TurnInProgressError(chat_id)
        self.state.set_phase(chat_id, TurnPhase.COMPOSING_PROMPT)
        self._cancel_requested.discard(chat_id)

        try:
            return await self._run_turn(conversation, is_new, text, ready, on_text_delta)
        except TurnCancelledError:
            logger.info("Turn cancelled in %s", chat_id)
            raise
        except Exception as exc:
            logger.warning("Turn failed in %s: %s", chat_id, exc)
            self.state.set_phase(chat_id, TurnPhase.FAILED)
            self.state.notify("error", str(exc) or type(exc).__name__, chat_id)
            raise
        finally:
            self._cancel_requested.discard(chat_id)
            self.state.set_phase(chat_id, TurnPhase.IDLE)

    async def _run_turn(
        self,
        conversation: Conversation,
        is_new: bool,
        text: str,
        ready: _Ready,
        on_text_delta: TextDeltaFn | None,
    ) -> Message:
        chat_id = conversation.id
        if is_new:
            await self.persistence.commit_conversation(conversation)
        history = await self.persistence.list_messages(chat_id)
        await self.persistence.commit_message(Message(conversation_id=chat_id, role=Role.USER, content=text))
        await self._capture_memory(text, chat_id)

        if chat_id in self._cancel_requested:
            raise TurnCancelledError(chat_id)

        messages = [ChatMessage(m.role.value, m.content) for m in history]
        messages.append(ChatMessage(Role.USER.value, text))
        stream_task = asyncio.ensure_future(
            self._compose_and_stream(conversation, text, messages, ready, on_text_delta)
        )
        self._streams[chat_id] = stream_task
        try:
            content, web_result = await stream_task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if chat_id in self._cancel_requested and not (current and current.cancelling()):
                raise TurnCancelledError(chat_id) from None
            raise
        finally:
            self._streams.pop(chat_id, None)

        self.state.set_phase(chat_id, TurnPhase.SETTLING)
        assistant = await self.persistence.commit_message(
            Message(conversation_id=chat_id, role=Role.ASSISTANT, content=content, web_result=web_result)
        )
        if isinstance(match_export_intent(text), ExportIntent):
            self._spawn(self._export(assistant, conversation.title))
        logger.info("Turn settled in %s (%d chars)", chat_id, len(content))
        return assistant

    async def _compose_and_stream(
        self,
        conversation: Conversation,
        text: str,
        messages: Sequence[ChatMessage],
        ready: _Ready,
        on_text_delta: TextDeltaFn | None,
    ) -> tuple[str, WebSearchResult | None]:
        chat_id = conversation.id
        web_result = None
        if self.state.search_mode is SearchMode.WEB:
            web_result = await self._ground(text, chat_id)

        memories = None
        if self.state.memory_enabled and conversation.memory_enabled:
            memories = await self.persistence.list_memories(enabled_only=True)

        model = next((m for m in self.state.models if m.id == ready.model_id), None)
        system_prompt = build_system_prompt(
            self.state.prompt_mode,
            model_name=model.name if model else format_model_name(ready.model_id),
            model_id=ready.model_id,
            provider_name=ready.adapter.provider.name,
            grounding=(text, web_result) if web_result else None,
            memories=memories,
        )

        self.state.set_phase(chat_id, TurnPhase.AWAITING_FIRST_TOKEN)
        stream = await ready.adapter.stream_completion(ready.credential, ready.model_id, messages, system_prompt)
        content = ""
        async with stream, aclosing(decode_sse(stream.aiter_bytes(), stream.dialect)) as tokens:
            async for token in tokens:
                if not token.text:
                    continue
                if self.state.phase(chat_id) is TurnPhase.AWAITING_FIRST_TOKEN:
                    self.state.set_phase(chat_id, TurnPhase.STREAMING)
                content += token.text
                self.state.set_content(chat_id, content)
                if on_text_delta is not None:
                    on_text_delta(token.text)

        if not content:
            msg = f"{ready.adapter.provider.name} returned an empty response"
            raise UnrecoverableError(msg, provider_id=ready.adapter.provider_id)
        return content, web_result

    def cancel_turn(self, conversation_id: str) -> bool:
        """Abort a turn that has not finished streaming.

        Returns False when there is nothing left to cancel (idle, or the
        reply is already being committed).
        """
        task = self._streams.get(conversation_id)
        if task is not None and not task.done():
            self._cancel_requested.add(conversation_id)
            task.cancel()
            return True
        if self.state.phase(conversation_id) is TurnPhase.COMPOSING_PROMPT:
            self._cancel_requested.add(conversation_id)
            return True
        return False

    # -- Side effects ----------------------------------------------------------

    async def _capture_memory(self, text: str, conversation_id: str) -> None:
        capture = match_memory_capture(text)
        if not isinstance(capture, MemoryCapture):
            return
        try:
            await self.persistence.commit_memory(
                Memory(kind=capture.kind, title=capture.title, content=capture.content)
            )
        except PersistenceError as exc:
            logger.warning("Memory capture failed: %s", exc)
            self.state.notify("warning", f"Could not save memory: {exc}", conversation_id)
            return
        self.state.notify("info", f"Saved to memory: {capture.title}", conversation_id)

    async def _ground(self, query: str, conversation_id: str) -> WebSearchResult | None:
        try:
            return await self._search(query)
        except Exception:
            logger.exception("Web grounding failed")
            self.state.notify("warning", "Web search failed, answering without it", conversation_id)
            return None

    async def _export(self, message: Message, title: str) -> None:
        try:
            document = await self._exporter.export(title, message.content)
            await self.persistence.attach_export(message.id, document)
        except (ExportError, PersistenceError) as exc:
            logger.warning("Export failed for message %s: %s", message.id, exc)
            self.state.notify("warning", f"Export failed: {exc}", message.conversation_id)
            return
        self.state.notify("info", f"Exported to {document.path}", message.conversation_id)

    # -- Prompt enhancement ----------------------------------------------------

    async def enhance_prompt(self, text: str) -> str:
        """Rewrite *text* into a clearer prompt with the active model. Nothing is persisted."""
        ready = await self._require_ready()
        parts: list[str] = []
        try:
            stream = await ready.adapter.stream_completion(
                ready.credential,
                ready.model_id,
                [ChatMessage(Role.USER.value, text)],
                enhancer_prompt(),
            )
            async with stream, aclosing(decode_sse(stream.aiter_bytes(), stream.dialect)) as tokens:
                async for token in tokens:
                    parts.append(token.text)
        except NexusError as exc:
            logger.warning("Prompt enhancement failed: %s", exc)
            self.state.notify("error", f"Failed to enhance prompt: {exc}")
            raise
        return "".join(parts).strip()
