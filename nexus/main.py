"""Interactive terminal chat.

Usage examples:
    # Start with the saved provider/model
    nexus

    # Pick a provider and model up front
    nexus --provider groq --model llama-3.3-70b-versatile

    # Sign in so chats, memories and preferences sync to the remote store
    nexus --user alice
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from nexus.config import settings
from nexus.errors import NexusError, TurnCancelledError
from nexus.providers.registry import AdapterRegistry
from nexus.session.orchestrator import Orchestrator
from nexus.session.state import EventKind, SessionEvent
from nexus.store.local import LocalStore
from nexus.store.persistence import Persistence
from nexus.store.remote import LibsqlRemoteStore

logger = logging.getLogger(__name__)

HELP = """Commands:
  /new                 start a new conversation
  /providers           list providers
  /provider ID         select a provider
  /models              list models for the selected provider
  /model ID            select a model
  /key ID SECRET       save an API key (empty SECRET removes it)
  /memory              toggle memory on/off
  /memories            list saved memories
  /web                 toggle web grounding
  /mode NAME           prompt mode: standard, compact, developer, coder
  /enhance TEXT        rewrite TEXT into a better prompt
  /quit                exit"""


def _print_notification(event: SessionEvent) -> None:
    if event.kind is EventKind.NOTIFICATION:
        print(f"[{event.level}] {event.message}", file=sys.stderr)


class ChatShell:
    """Line-oriented front end over an ``Orchestrator``."""

    def __init__(self, orchestrator: Orchestrator) -> None:
        self.orchestrator = orchestrator
        self.conversation_id: str | None = None

    async def handle(self, line: str) -> bool:
        """Process one input line. Returns False when the shell should exit."""
        line = line.strip()
        if not line:
            return True
        if not line.startswith("/"):
            await self._chat(line)
            return True

        command, _, rest = line.partition(" ")
        rest = rest.strip()
        orch = self.orchestrator
        state = orch.state

        if command == "/quit":
            return False
        if command == "/new":
            self.conversation_id = None
            print("Started a new conversation.")
        elif command == "/providers":
            for provider in orch.adapters.providers():
                marker = "*" if provider.id == state.provider_id else " "
                print(f"{marker} {provider.id:12s} {provider.name}")
        elif command == "/provider" and rest:
            models = await orch.select_provider(rest)
            print(f"Provider {rest}: {len(models)} models")
        elif command == "/models":
            for model in state.models:
                marker = "*" if model.id == state.model_id else " "
                print(f"{marker} {model.id}  ({model.name})")
        elif command == "/model" and rest:
            await orch.select_model(rest)
            print(f"Model {rest}")
        elif command == "/key" and rest:
            provider_id, _, secret = rest.partition(" ")
            await orch.save_credential(provider_id, secret)
        elif command == "/memory":
            enabled = await orch.toggle_memory()
            print(f"Memory {'on' if enabled else 'off'}")
        elif command == "/memories":
            for memory in await orch.list_memories():
                flag = "on " if memory.enabled else "off"
                print(f"[{flag}] {memory.title}: {memory.content}")
        elif command == "/web":
            mode = "ai" if state.search_mode == "web" else "web"
            await orch.set_search_mode(mode)
            print(f"Search mode {mode}")
        elif command == "/mode" and rest:
            await orch.set_prompt_mode(rest)
            print(f"Prompt mode {rest}")
        elif command == "/enhance" and rest:
            print(await orch.enhance_prompt(rest))
        else:
            print(HELP)
        return True

    async def _chat(self, text: str) -> None:
        def write(delta: str) -> None:
            sys.stdout.write(delta)
            sys.stdout.flush()

        message = await self.orchestrator.send_turn(self.conversation_id, text, on_text_delta=write)
        self.conversation_id = message.conversation_id
        sys.stdout.write("\n")

    async def run(self) -> None:
        print(f"{settings.app_title} - type /help for commands")
        while True:
            try:
                line = await asyncio.to_thread(input, "> ")
            except EOFError:
                break
            try:
                if not await self.handle(line):
                    break
            except TurnCancelledError:
                print("\n(cancelled)")
            except (NexusError, ValueError) as exc:
                # Failed turns are already reported through the notification listener.
                if line.lstrip().startswith("/"):
                    print(f"error: {exc}", file=sys.stderr)
                else:
                    logger.debug("Turn failed: %s", exc)


async def _run(args: argparse.Namespace) -> None:
    remote = LibsqlRemoteStore() if settings.remote_sync_configured else None
    persistence = Persistence(LocalStore(), remote)
    orchestrator = Orchestrator(persistence, AdapterRegistry.default())
    orchestrator.state.subscribe(_print_notification)
    try:
        await orchestrator.restore()
        if args.user:
            await orchestrator.sign_in(args.user)
        if args.provider:
            await orchestrator.select_provider(args.provider)
        if args.model:
            await orchestrator.select_model(args.model)
        await ChatShell(orchestrator).run()
    finally:
        await orchestrator.aclose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Chat with any supported LLM provider")
    parser.add_argument("--provider", "-p", help="Provider id to select on start")
    parser.add_argument("--model", "-m", help="Model id to select on start")
    parser.add_argument("--user", "-u", help="Sign in as this user id to enable remote sync")
    args = parser.parse_args()

    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=getattr(logging, settings.log_level),
    )
    try:
        asyncio.run(_run(args))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
