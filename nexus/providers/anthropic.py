"""Anthropic Messages API adapter."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from nexus.config import settings
from nexus.errors import UnavailableError
from nexus.llm.sse import Token, dig
from nexus.providers.base import (
    MALFORMED_PAYLOAD,
    Model,
    Provider,
    ProviderAdapter,
    VendorStream,
    rank_models,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from nexus.providers.base import ChatMessage

ANTHROPIC = Provider(
    id="anthropic",
    name="Anthropic Claude",
    base_url="https://api.anthropic.com/v1",
    key_url="https://console.anthropic.com/settings/keys",
)

ANTHROPIC_VERSION = "2023-06-01"


def anthropic_dialect(data: Any) -> Token | None:
    """Text arrives in ``content_block_delta`` frames; ``message_stop`` ends it.

    Raises:
        UnavailableError: The vendor sent an ``error`` frame mid-stream.
    """
    kind = data.get("type") if isinstance(data, dict) else None
    if kind == "content_block_delta":
        text = dig(data, "delta", "text")
        return Token(text=text) if text else None
    if kind == "message_stop":
        return Token(text="", terminal=True)
    if kind == "error":
        detail = dig(data, "error", "message") or "stream error"
        msg = f"Anthropic stream error: {detail}"
        raise UnavailableError(msg, provider_id=ANTHROPIC.id)
    return None


class AnthropicAdapter(ProviderAdapter):
    provider = ANTHROPIC
    dialect = staticmethod(anthropic_dialect)
    preferred_models = (
        "claude-sonnet-4-5-20250929",
        "claude-haiku-4-5-20251001",
    )

    def _headers(self, credential: str) -> dict[str, str]:
        return {
            "x-api-key": credential,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }

    async def list_models(self, credential: str) -> list[Model]:
        data = await self.get_json(f"{self.provider.base_url}/models", headers=self._headers(credential))
        try:
            models = [
                Model(id=raw["id"], name=raw.get("display_name") or raw["id"])
                for raw in data.get("data", [])
            ]
        except MALFORMED_PAYLOAD as exc:
            raise self.unexpected_payload(exc) from exc
        return rank_models(models, self.preferred_models)

    async def stream_completion(
        self,
        credential: str,
        model_id: str,
        messages: Sequence[ChatMessage],
        system_prompt: str | None = None,
    ) -> VendorStream:
        body: dict[str, Any] = {
            "model": model_id,
            "max_tokens": settings.max_output_tokens,
            "stream": True,
            "messages": [
                {"role": m.role, "content": m.content} for m in messages if m.role != "system"
            ],
        }
        if system_prompt:
            body["system"] = system_prompt
        return await self.open_stream(
            f"{self.provider.base_url}/messages",
            headers=self._headers(credential),
            body=body,
        )
