"""Provider adapter contract and the HTTP plumbing shared by every vendor."""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import BaseModel, ConfigDict

from nexus.config import settings
from nexus.errors import (
    AuthError,
    ProviderError,
    RateLimitError,
    UnavailableError,
    UnrecoverableError,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence

    from nexus.llm.sse import Dialect

logger = logging.getLogger(__name__)

# Raised while walking a listing body that is valid JSON but not the documented shape.
MALFORMED_PAYLOAD = (KeyError, IndexError, TypeError, AttributeError, ValueError)

KNOWN_MODEL_NAMES: dict[str, str] = {
    "gemini-2.0-flash-exp": "Gemini 2.0 Flash",
    "gemini-1.5-flash": "Gemini 1.5 Flash",
    "gemini-1.5-pro": "Gemini 1.5 Pro",
    "deepseek-r1-distill-llama-70b": "DeepSeek R1 70B",
    "llama-3.3-70b-versatile": "Llama 3.3 70B",
    "mixtral-8x7b-32768": "Mixtral 8x7B",
}


class Provider(BaseModel):
    """A vendor known at process start."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    base_url: str
    key_url: str = ""


class Model(BaseModel):
    """A model offered by a provider. Cached in memory only."""

    id: str
    name: str
    description: str | None = None
    context_length: int | None = None


@dataclass(frozen=True)
class ChatMessage:
    """A vendor-neutral history entry."""

    role: str  # "user", "assistant" or "system"
    content: str


def format_model_name(model_id: str) -> str:
    """Return a display name for a model id."""
    if model_id in KNOWN_MODEL_NAMES:
        return KNOWN_MODEL_NAMES[model_id]
    return " ".join(part[:1].upper() + part[1:] for part in re.split(r"[-/]", model_id) if part)


def rank_models(models: list[Model], preferred: Sequence[str]) -> list[Model]:
    """Move preferred ids to the front (in preference order), keep the rest in place."""
    order = {model_id: i for i, model_id in enumerate(preferred)}
    return sorted(models, key=lambda m: order.get(m.id, len(order)))


def _error_detail(response: httpx.Response) -> str:
    """Pull a human-readable message out of a vendor error body."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, list) and body:
        body = body[0]
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
        if body.get("detail"):
            return str(body["detail"])
        if body.get("message"):
            return str(body["message"])
    return response.text[:200]


def new_http_client() -> httpx.AsyncClient:
    """HTTP client with the configured vendor timeouts."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            settings.http_timeout_seconds,
            connect=settings.http_connect_timeout_seconds,
        )
    )


class VendorStream:
    """An open streaming response plus the dialect needed to decode it.

    Use as an async context manager so the connection is released on
    completion, failure or cancellation.
    """

    def __init__(self, response: httpx.Response, dialect: Dialect, provider_id: str) -> None:
        self._response = response
        self.dialect = dialect
        self.provider_id = provider_id

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        """Yield raw response bytes as they arrive."""
        try:
            async for chunk in self._response.aiter_bytes():
                yield chunk
        except httpx.TransportError as exc:
            msg = f"Connection lost while streaming from {self.provider_id}"
            raise UnavailableError(msg, provider_id=self.provider_id) from exc

    async def aclose(self) -> None:
        await self._response.aclose()

    async def __aenter__(self) -> VendorStream:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


class ProviderAdapter(ABC):
    """Per-vendor request builder and response parser.

    Subclasses set ``provider`` and ``dialect`` and implement the two
    contract methods. Everything vendor-specific (auth scheme, envelope
    shape, role names, model ranking) lives in the subclass.
    """

    provider: Provider
    dialect: Dialect
    preferred_models: tuple[str, ...] = ()

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client
        self._owns_client = client is None

    @property
    def provider_id(self) -> str:
        return self.provider.id

    @property
    def http(self) -> httpx.AsyncClient:
        """Lazily create the HTTP client when none was injected."""
        if self._client is None:
            self._client = new_http_client()
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client if this adapter created it."""
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    # -- Contract --------------------------------------------------------------

    @abstractmethod
    async def list_models(self, credential: str) -> list[Model]:
        """Fetch and rank the models this credential can use.

        Raises:
            AuthError: The credential was rejected.
            UnavailableError: Network failure, 5xx, or a body that is not the expected listing.
            UnrecoverableError: Any other non-2xx status.
        """

    @abstractmethod
    async def stream_completion(
        self,
        credential: str,
        model_id: str,
        messages: Sequence[ChatMessage],
        system_prompt: str | None = None,
    ) -> VendorStream:
        """Open a streaming completion.

        Fails before any bytes are exposed when the vendor answers non-2xx.

        Raises:
            AuthError, RateLimitError, UnavailableError, UnrecoverableError
        """

    # -- Shared HTTP helpers ---------------------------------------------------

    def classify_error(self, response: httpx.Response) -> ProviderError:
        """Map a non-2xx response to the error taxonomy."""
        status = response.status_code
        detail = _error_detail(response)
        msg = f"{self.provider.name} API error ({status}): {detail}"
        kwargs: dict[str, Any] = {"provider_id": self.provider_id, "status_code": status}
        if status in (401, 403):
            return AuthError(msg, **kwargs)
        if status == 429:
            return RateLimitError(msg, **kwargs)
        if status >= 500:
            return UnavailableError(msg, **kwargs)
        return UnrecoverableError(msg, **kwargs)

    def unexpected_payload(self, exc: Exception) -> UnavailableError:
        """Map a 2xx body that is not the expected JSON to the error taxonomy."""
        msg = f"{self.provider.name} returned an unexpected response: {exc}"
        return UnavailableError(msg, provider_id=self.provider_id)

    async def get_json(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """GET a JSON document, mapping failures to provider errors."""
        try:
            response = await self.http.get(url, headers=headers, params=params)
        except httpx.TransportError as exc:
            msg = f"Could not reach {self.provider.name}: {exc}"
            raise UnavailableError(msg, provider_id=self.provider_id) from exc
        if not response.is_success:
            raise self.classify_error(response)
        try:
            return response.json()
        except ValueError as exc:
            raise self.unexpected_payload(exc) from exc

    async def open_stream(
        self,
        url: str,
        *,
        headers: dict[str, str],
        body: dict[str, Any],
    ) -> VendorStream:
        """POST a streaming request and return it once the status is known good."""
        request = self.http.build_request("POST", url, headers=headers, json=body)
        try:
            response = await self.http.send(request, stream=True)
        except httpx.TransportError as exc:
            msg = f"Could not reach {self.provider.name}: {exc}"
            raise UnavailableError(msg, provider_id=self.provider_id) from exc

        if not response.is_success:
            try:
                await response.aread()
            finally:
                await response.aclose()
            error = self.classify_error(response)
            logger.warning("%s rejected completion request: %s", self.provider_id, error)
            raise error

        logger.debug("Opened %s stream for model %s", self.provider_id, body.get("model", "?"))
        return VendorStream(response, self.dialect, self.provider_id)
