"""Google Gemini adapter."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from nexus.config import settings
from nexus.errors import AuthError, ProviderError
from nexus.llm.sse import Token, dig
from nexus.providers.base import (
    MALFORMED_PAYLOAD,
    Model,
    Provider,
    ProviderAdapter,
    VendorStream,
    format_model_name,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    import httpx

    from nexus.providers.base import ChatMessage

GEMINI = Provider(
    id="gemini",
    name="Google Gemini",
    base_url="https://generativelanguage.googleapis.com/v1beta",
    key_url="https://aistudio.google.com/apikey",
)

FAST_TIER_MARKER = "flash"


def gemini_dialect(data: Any) -> Token | None:
    """Text lives at ``candidates[0].content.parts[0].text``; ``finishReason`` ends it."""
    text = dig(data, "candidates", 0, "content", "parts", 0, "text") or ""
    finished = bool(dig(data, "candidates", 0, "finishReason"))
    if not text and not finished:
        return None
    return Token(text=text, terminal=finished)


def _rank(models: list[Model]) -> list[Model]:
    """Fast-tier models first, then alphabetical by display name."""
    return sorted(models, key=lambda m: (FAST_TIER_MARKER not in m.id, m.name))


class GeminiAdapter(ProviderAdapter):
    provider = GEMINI
    dialect = staticmethod(gemini_dialect)

    def _headers(self, credential: str) -> dict[str, str]:
        # Header auth keeps the key out of request URLs (and so out of logs).
        return {"x-goog-api-key": credential, "Content-Type": "application/json"}

    def classify_error(self, response: httpx.Response) -> ProviderError:
        error = super().classify_error(response)
        if response.status_code == 400 and "API_KEY_INVALID" in response.text:
            return AuthError(str(error), provider_id=self.provider_id, status_code=400)
        return error

    async def list_models(self, credential: str) -> list[Model]:
        data = await self.get_json(f"{self.provider.base_url}/models", headers=self._headers(credential))
        models = []
        try:
            for raw in data.get("models", []):
                if "generateContent" not in (raw.get("supportedGenerationMethods") or []):
                    continue
                model_id = raw["name"].removeprefix("models/")
                models.append(
                    Model(
                        id=model_id,
                        name=format_model_name(model_id),
                        description=raw.get("description"),
                        context_length=raw.get("inputTokenLimit"),
                    )
                )
        except MALFORMED_PAYLOAD as exc:
            raise self.unexpected_payload(exc) from exc
        return _rank(models)

    async def stream_completion(
        self,
        credential: str,
        model_id: str,
        messages: Sequence[ChatMessage],
        system_prompt: str | None = None,
    ) -> VendorStream:
        body: dict[str, Any] = {
            "contents": [
                {
                    "role": "model" if m.role == "assistant" else "user",
                    "parts": [{"text": m.content}],
                }
                for m in messages
                if m.role != "system"
            ],
            "generationConfig": {
                "temperature": settings.temperature,
                "maxOutputTokens": settings.max_output_tokens,
            },
        }
        if system_prompt:
            body["systemInstruction"] = {"parts": [{"text": system_prompt}]}

        url = f"{self.provider.base_url}/models/{model_id}:streamGenerateContent?alt=sse"
        return await self.open_stream(url, headers=self._headers(credential), body=body)
