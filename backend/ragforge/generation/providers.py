"""Completion provider backends (local daemon and OpenAI-compatible cloud APIs)."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Sequence

import httpx

from ragforge.core.errors import GenerationProviderError
from ragforge.core.logging import get_logger
from ragforge.generation.framing import WireFormat, decoder_for
from ragforge.generation.types import (
    ChatMessage,
    GenerationOptions,
    GenerationResult,
    StreamEvent,
    estimate_tokens,
)

logger = get_logger(__name__)


class CompletionProvider(ABC):
    """A chat completion backend with a blocking call and a token stream.

    Subclasses describe their request and response shapes; transport, error
    mapping and frame decoding live here.
    """

    name: str
    wire_format: WireFormat

    def __init__(
        self,
        base_url: str,
        default_model: str,
        timeout: float = 600.0,
        api_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.default_model = default_model
        self.timeout = timeout
        self.api_key = api_key
        self._transport = transport

    def model_for(self, options: GenerationOptions) -> str:
        return options.model or self.default_model

    @abstractmethod
    def _endpoint(self) -> str: ...

    @abstractmethod
    def _body(self, messages: Sequence[ChatMessage], options: GenerationOptions, stream: bool) -> dict[str, Any]: ...

    @abstractmethod
    def _parse_complete(self, data: dict[str, Any]) -> tuple[str, int | None]: ...

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    async def health_check(self) -> bool:
        return bool(self.api_key)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=httpx.Timeout(self.timeout, connect=10.0), transport=self._transport)

    async def complete(self, messages: Sequence[ChatMessage], options: GenerationOptions) -> GenerationResult:
        model = self.model_for(options)
        logger.info("Calling %s completion: model=%s", self.name, model)
        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.base_url}{self._endpoint()}",
                    json=self._body(messages, options, stream=False),
                    headers=self._headers(),
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            raise GenerationProviderError(
                f"{self.name} service error: {exc.response.status_code}"
            ) from exc
        except httpx.TimeoutException as exc:
            raise GenerationProviderError(f"{self.name} service timed out") from exc
        except httpx.RequestError as exc:
            raise GenerationProviderError(f"Could not connect to {self.name}: {exc}") from exc
        except ValueError as exc:
            raise GenerationProviderError(f"{self.name} returned a non-JSON body") from exc

        content, usage = self._parse_complete(data)
        return GenerationResult(
            content=content,
            tokens_used=usage if usage is not None else estimate_tokens(content),
            usage_estimated=usage is None,
            provider=self.name,
            model=model,
        )

    async def stream_events(
        self, messages: Sequence[ChatMessage], options: GenerationOptions
    ) -> AsyncIterator[StreamEvent]:
        """Yield decoded events; the connection is closed when the generator is closed."""
        decoder = decoder_for(self.wire_format)
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST",
                    f"{self.base_url}{self._endpoint()}",
                    json=self._body(messages, options, stream=True),
                    headers=self._headers(),
                ) as response:
                    if response.status_code >= 400:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        raise GenerationProviderError(
                            f"{self.name} returned {response.status_code}: {body[:300]}"
                        )
                    async for line in response.aiter_lines():
                        for event in decoder.feed(line):
                            yield event
                            if event.kind == "done":
                                return
        except httpx.TimeoutException as exc:
            raise GenerationProviderError(f"{self.name} stream timed out") from exc
        except httpx.RequestError as exc:
            raise GenerationProviderError(f"{self.name} stream failed: {exc}") from exc


class OllamaProvider(CompletionProvider):
    """Local inference daemon; streams newline-delimited JSON from ``/api/chat``."""

    name = "ollama"
    wire_format = WireFormat.NDJSON

    def _endpoint(self) -> str:
        return "/api/chat"

    def _body(self, messages: Sequence[ChatMessage], options: GenerationOptions, stream: bool) -> dict[str, Any]:
        return {
            "model": self.model_for(options),
            "messages": [message.to_dict() for message in messages],
            "stream": stream,
            "options": {"temperature": options.temperature, "num_predict": options.max_tokens},
        }

    def _parse_complete(self, data: dict[str, Any]) -> tuple[str, int | None]:
        content = (data.get("message") or {}).get("content", "")
        if not content:
            raise GenerationProviderError("Empty response from Ollama")
        if "eval_count" in data or "prompt_eval_count" in data:
            return content, int(data.get("prompt_eval_count") or 0) + int(data.get("eval_count") or 0)
        return content, None

    async def health_check(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=5.0, transport=self._transport) as client:
                response = await client.get(f"{self.base_url}/api/tags")
            return response.status_code == 200
        except httpx.HTTPError as exc:
            logger.warning("Ollama health check failed: %s", exc)
            return False


class OpenAICompatibleProvider(CompletionProvider):
    """OpenAI chat completions API (also served by OpenRouter); streams SSE."""

    wire_format = WireFormat.SSE

    def __init__(self, name: str, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.name = name

    def _endpoint(self) -> str:
        return "/chat/completions"

    def _headers(self) -> dict[str, str]:
        if not self.api_key:
            raise GenerationProviderError(f"No API key configured for {self.name}")
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {self.api_key}"}
        if self.name == "openrouter":
            headers["X-Title"] = "ragforge"
        return headers

    def _body(self, messages: Sequence[ChatMessage], options: GenerationOptions, stream: bool) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model_for(options),
            "messages": [message.to_dict() for message in messages],
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
            "stream": stream,
        }
        if stream:
            body["stream_options"] = {"include_usage": True}
        return body

    def _parse_complete(self, data: dict[str, Any]) -> tuple[str, int | None]:
        choices = data.get("choices") or []
        if not choices:
            raise GenerationProviderError(f"No choices in {self.name} response")
        content = (choices[0].get("message") or {}).get("content") or ""
        if not content:
            raise GenerationProviderError(f"Empty response from {self.name}")
        usage = data.get("usage") or {}
        total = usage.get("total_tokens")
        return content, int(total) if total is not None else None


__all__ = ["CompletionProvider", "OllamaProvider", "OpenAICompatibleProvider"]
