"""Adapters for vendors that speak the OpenAI chat-completions dialect."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from nexus.config import settings
from nexus.errors import AuthError, RateLimitError, UnavailableError, UnrecoverableError
from nexus.llm.sse import Token, dig
from nexus.providers.base import (
    MALFORMED_PAYLOAD,
    Model,
    Provider,
    ProviderAdapter,
    VendorStream,
    format_model_name,
    rank_models,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from nexus.providers.base import ChatMessage

logger = logging.getLogger(__name__)


def openai_dialect(data: Any) -> Token | None:
    """Text lives at ``choices[0].delta.content``; ``finish_reason`` ends it."""
    text = dig(data, "choices", 0, "delta", "content") or ""
    finished = bool(dig(data, "choices", 0, "finish_reason"))
    if not text and not finished:
        return None
    return Token(text=text, terminal=finished)


class OpenAICompatibleAdapter(ProviderAdapter):
    """Bearer auth, ``messages`` envelope, system prompt as a leading message."""

    dialect = staticmethod(openai_dialect)
    max_tokens: int = 8192

    @property
    def chat_url(self) -> str:
        return f"{self.provider.base_url}/chat/completions"

    def _headers(self, credential: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {credential}", "Content-Type": "application/json"}

    def _build_body(
        self,
        model_id: str,
        messages: Sequence[ChatMessage],
        system_prompt: str | None,
    ) -> dict[str, Any]:
        msgs = [{"role": m.role, "content": m.content} for m in messages]
        if system_prompt:
            msgs.insert(0, {"role": "system", "content": system_prompt})
        return {
            "model": model_id,
            "messages": msgs,
            "stream": True,
            "max_tokens": self.max_tokens,
        }

    async def stream_completion(
        self,
        credential: str,
        model_id: str,
        messages: Sequence[ChatMessage],
        system_prompt: str | None = None,
    ) -> VendorStream:
        body = self._build_body(model_id, messages, system_prompt)
        return await self.open_stream(self.chat_url, headers=self._headers(credential), body=body)


# -- Groq ----------------------------------------------------------------------

GROQ = Provider(
    id="groq",
    name="Groq",
    base_url="https://api.groq.com/openai/v1",
    key_url="https://console.groq.com/keys",
)


class GroqAdapter(OpenAICompatibleAdapter):
    provider = GROQ
    preferred_models = (
        "deepseek-r1-distill-llama-70b",
        "llama-3.3-70b-versatile",
        "llama-3.1-70b-versatile",
        "mixtral-8x7b-32768",
    )

    async def list_models(self, credential: str) -> list[Model]:
        data = await self.get_json(f"{self.provider.base_url}/models", headers=self._headers(credential))
        try:
            models = [
                Model(
                    id=raw["id"],
                    name=format_model_name(raw["id"]),
                    context_length=raw.get("context_window"),
                )
                for raw in data.get("data", [])
                if "whisper" not in raw["id"]
            ]
        except MALFORMED_PAYLOAD as exc:
            raise self.unexpected_payload(exc) from exc
        return rank_models(models, self.preferred_models)


# -- OpenRouter ----------------------------------------------------------------

OPENROUTER = Provider(
    id="openrouter",
    name="OpenRouter",
    base_url="https://openrouter.ai/api/v1",
    key_url="https://openrouter.ai/keys",
)

OPENROUTER_MODEL_LIMIT = 50


class OpenRouterAdapter(OpenAICompatibleAdapter):
    provider = OPENROUTER
    preferred_models = (
        "anthropic/claude-3.5-sonnet",
        "google/gemini-2.0-flash-exp:free",
        "meta-llama/llama-3.3-70b-instruct",
        "google/gemini-flash-1.5",
    )

    def _headers(self, credential: str) -> dict[str, str]:
        headers = super()._headers(credential)
        headers["HTTP-Referer"] = settings.app_url
        headers["X-Title"] = settings.app_title
        return headers

    async def list_models(self, credential: str) -> list[Model]:
        data = await self.get_json(f"{self.provider.base_url}/models", headers=self._headers(credential))
        try:
            models = [
                Model(
                    id=raw["id"],
                    name=raw.get("name") or format_model_name(raw["id"]),
                    description=raw.get("description"),
                    context_length=raw["context_length"],
                )
                for raw in data.get("data", [])
                if raw.get("context_length")
            ][:OPENROUTER_MODEL_LIMIT]
        except MALFORMED_PAYLOAD as exc:
            raise self.unexpected_payload(exc) from exc
        return rank_models(models, self.preferred_models)


# -- Hugging Face --------------------------------------------------------------

HUGGINGFACE = Provider(
    id="huggingface",
    name="Hugging Face",
    base_url="https://api-inference.huggingface.co",
    key_url="https://huggingface.co/settings/tokens",
)

HF_HUB_URL = "https://huggingface.co/api"


class HuggingFaceAdapter(OpenAICompatibleAdapter):
    provider = HUGGINGFACE
    max_tokens = 4096
    preferred_models = (
        "mistralai/Mistral-7B-Instruct-v0.3",
        "Qwen/Qwen2.5-7B-Instruct",
        "google/gemma-2-9b-it",
        "meta-llama/Llama-3.2-3B-Instruct",
    )

    def _build_body(
        self,
        model_id: str,
        messages: Sequence[ChatMessage],
        system_prompt: str | None,
    ) -> dict[str, Any]:
        body = super()._build_body(model_id, messages, system_prompt)
        body["temperature"] = settings.temperature
        return body

    async def stream_completion(
        self,
        credential: str,
        model_id: str,
        messages: Sequence[ChatMessage],
        system_prompt: str | None = None,
    ) -> VendorStream:
        url = f"{self.provider.base_url}/models/{model_id}/v1/chat/completions"
        body = self._build_body(model_id, messages, system_prompt)
        return await self.open_stream(url, headers=self._headers(credential), body=body)

    async def list_models(self, credential: str) -> list[Model]:
        headers = self._headers(credential)
        try:
            await self.get_json(f"{HF_HUB_URL}/whoami-v2", headers=headers)
        except AuthError as exc:
            msg = "Invalid Hugging Face API key"
            raise AuthError(msg, provider_id=self.provider_id, status_code=exc.status_code) from exc

        listing = {"inference": "warm", "sort": "downloads", "direction": -1}
        generation = await self.get_json(
            f"{HF_HUB_URL}/models",
            headers=headers,
            params={"pipeline_tag": "text-generation", "limit": 100, **listing},
        )
        try:
            conversational = await self.get_json(
                f"{HF_HUB_URL}/models",
                headers=headers,
                params={"pipeline_tag": "conversational", "limit": 50, **listing},
            )
        except (RateLimitError, UnavailableError, UnrecoverableError):
            logger.warning("Hugging Face conversational listing failed; using text-generation only")
            conversational = []

        seen: set[str] = set()
        models: list[Model] = []
        try:
            for raw in [*generation, *conversational]:
                if raw["id"] in seen:
                    continue
                seen.add(raw["id"])
                models.append(
                    Model(
                        id=raw["id"],
                        name=format_model_name(raw["id"]),
                        description=raw.get("pipeline_tag"),
                        context_length=dig(raw, "config", "max_position_embeddings") or 4096,
                    )
                )
        except MALFORMED_PAYLOAD as exc:
            raise self.unexpected_payload(exc) from exc
        return rank_models(models, self.preferred_models)


# -- NVIDIA --------------------------------------------------------------------

NVIDIA = Provider(
    id="nvidia",
    name="NVIDIA Kimi",
    base_url="https://integrate.api.nvidia.com/v1",
    key_url="https://build.nvidia.com/explore/discover",
)

NVIDIA_CATALOG: tuple[Model, ...] = (
    Model(id="moonshotai/kimi-k2.5", name="Kimi K2.5", description="1T multimodal MoE", context_length=128000),
    Model(id="meta/llama-3.1-405b-instruct", name="Llama 3.1 405B", description="Meta Flagship Model", context_length=128000),
    Model(id="meta/llama-3.1-70b-instruct", name="Llama 3.1 70B", description="Meta High Performance", context_length=128000),
    Model(id="meta/llama-3.1-8b-instruct", name="Llama 3.1 8B", description="Meta Efficient", context_length=128000),
    Model(id="nvidia/llama-3.1-nemotron-70b-instruct", name="Llama 3.1 Nemotron 70B", description="NVIDIA Optimized Llama", context_length=128000),
    Model(id="mistralai/mistral-large-2-instruct", name="Mistral Large 2", description="Mistral Flagship", context_length=128000),
    Model(id="mistralai/mixtral-8x22b-instruct-v0.1", name="Mixtral 8x22B", description="High Performance MoE", context_length=64000),
    Model(id="google/gemma-2-27b-it", name="Gemma 2 27B", description="Google Efficient", context_length=8192),
    Model(id="google/gemma-2-9b-it", name="Gemma 2 9B", description="Google Small", context_length=8192),
    Model(id="deepseek-ai/deepseek-r1", name="DeepSeek R1", description="Reasoning Model", context_length=128000),
    Model(id="microsoft/phi-3.5-mini-instruct", name="Phi 3.5 Mini", description="Microsoft Small", context_length=128000),
    Model(id="nvidia/nemotron-4-340b-instruct", name="Nemotron 4 340B", description="NVIDIA Foundation", context_length=4096),
)


class NvidiaAdapter(OpenAICompatibleAdapter):
    provider = NVIDIA
    max_tokens = 4096
    preferred_models = (
        "moonshotai/kimi-k2.5",
        "meta/llama-3.1-405b-instruct",
        "meta/llama-3.1-70b-instruct",
        "nvidia/llama-3.1-nemotron-70b-instruct",
        "mistralai/mistral-large-2-instruct",
    )

    def _headers(self, credential: str) -> dict[str, str]:
        headers = super()._headers(credential)
        headers["Accept"] = "text/event-stream"
        return headers

    def _build_body(
        self,
        model_id: str,
        messages: Sequence[ChatMessage],
        system_prompt: str | None,
    ) -> dict[str, Any]:
        body = super()._build_body(model_id, messages, system_prompt)
        body["temperature"] = settings.temperature
        if "kimi" in model_id:
            body["max_tokens"] = 16384
            body["chat_template_kwargs"] = {"thinking": True}
            body["top_p"] = 1.0
        return body

    async def list_models(self, credential: str) -> list[Model]:
        # The catalog is static: trial keys cannot list models but can still chat.
        return rank_models([m.model_copy() for m in NVIDIA_CATALOG], self.preferred_models)
