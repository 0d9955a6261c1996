"""Provider selection and the token stream handed to callers."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, AsyncIterator, Callable, Sequence

import httpx

from ragforge.core.config import Settings
from ragforge.core.errors import GenerationProviderError
from ragforge.core.logging import get_logger, log_context
from ragforge.core.metrics import GENERATION_TOKENS
from ragforge.generation.providers import CompletionProvider, OllamaProvider, OpenAICompatibleProvider
from ragforge.generation.types import ChatMessage, GenerationOptions, GenerationResult, estimate_tokens

logger = get_logger(__name__)

LOCAL_PROVIDER = "ollama"
CLOUD_PROVIDERS = ("openai", "openrouter")

_CLOSED = object()


class TokenStream:
    """Single-consumer async iterator over one generation.

    A producer task reads the provider connection and pushes tokens onto a
    queue; iteration pulls from it until the close marker. :meth:`cancel`
    stops the producer, which closes the connection, and unblocks the consumer.
    :meth:`result` is available once the stream has finished either way.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        messages: Sequence[ChatMessage],
        options: GenerationOptions,
    ) -> None:
        self.provider = provider
        self.model = provider.model_for(options)
        self._messages = list(messages)
        self._options = options
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._parts: list[str] = []
        self._usage: int | None = None
        self._error: str | None = None
        self._cancelled = False
        self._closed = False
        self._result: GenerationResult | None = None
        self._task = asyncio.create_task(self._produce())

    @property
    def finished(self) -> bool:
        return self._task.done()

    async def _produce(self) -> None:
        try:
            async for event in self.provider.stream_events(self._messages, self._options):
                if event.kind == "token":
                    self._parts.append(event.text)
                    self._queue.put_nowait(event.text)
                elif event.kind == "usage":
                    self._usage = event.tokens
        except GenerationProviderError as exc:
            self._error = str(exc)
            logger.warning("Generation stream failed: %s", exc, extra=log_context(provider=self.provider.name))
        except asyncio.CancelledError:
            self._cancelled = True
            raise
        except Exception as exc:
            self._error = f"Unexpected generation error: {exc}"
            logger.exception("Unexpected error in generation stream", extra=log_context(provider=self.provider.name))
        finally:
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[str]:
        return self

    async def __anext__(self) -> str:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._closed = True
            raise StopAsyncIteration
        return item

    async def cancel(self) -> None:
        """Stop reading from the provider; accumulated text is kept."""
        if not self._task.done():
            self._cancelled = True
            self._task.cancel()
        await asyncio.wait([self._task])
        self._closed = True

    async def result(self) -> GenerationResult:
        await asyncio.wait([self._task])
        if self._result is None:
            content = "".join(self._parts)
            estimated = self._usage is None
            tokens = estimate_tokens(content) if estimated else int(self._usage)
            self._result = GenerationResult(
                content=content,
                tokens_used=tokens,
                usage_estimated=estimated,
                provider=self.provider.name,
                model=self.model,
                cancelled=self._cancelled,
                error=self._error,
            )
            GENERATION_TOKENS.labels(provider=self.provider.name, estimated=str(estimated).lower()).inc(tokens)
        return self._result


class GenerationGateway:
    """Uniform streaming interface over interchangeable completion providers."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.settings = settings
        self._transport = transport
        self._providers: dict[str, CompletionProvider] = {}

    def default_options(self, **overrides: Any) -> GenerationOptions:
        values: dict[str, Any] = {
            "temperature": self.settings.temperature,
            "max_tokens": self.settings.max_tokens,
            "deployment": self.settings.deployment_mode,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return GenerationOptions(**values)

    def select_provider(self, options: GenerationOptions) -> str:
        """Explicit provider wins; otherwise local deployments use the local daemon
        and cloud deployments use the configured cloud API when it has a key."""
        if options.provider:
            return options.provider
        if options.deployment == "cloud":
            cloud = self.settings.cloud_provider
            if self.settings.cloud_api_key(cloud):
                return cloud
            logger.warning("No API key for %s, falling back to the local daemon", cloud)
        return LOCAL_PROVIDER

    def provider(self, name: str) -> CompletionProvider:
        if name not in self._providers:
            self._providers[name] = self._build(name)
        return self._providers[name]

    def _build(self, name: str) -> CompletionProvider:
        timeout = self.settings.generation_timeout
        if name == LOCAL_PROVIDER:
            return OllamaProvider(
                self.settings.ollama_base_url,
                self.settings.ollama_chat_model,
                timeout=timeout,
                transport=self._transport,
            )
        if name == "openai":
            return OpenAICompatibleProvider(
                "openai",
                self.settings.openai_base_url,
                self.settings.openai_model,
                timeout=timeout,
                api_key=self.settings.openai_api_key,
                transport=self._transport,
            )
        if name == "openrouter":
            return OpenAICompatibleProvider(
                "openrouter",
                self.settings.openrouter_base_url,
                self.settings.openrouter_model,
                timeout=timeout,
                api_key=self.settings.openrouter_api_key,
                transport=self._transport,
            )
        raise GenerationProviderError(f"Unknown generation provider: {name}")

    def open_stream(self, messages: Sequence[ChatMessage], options: GenerationOptions | None = None) -> TokenStream:
        """Start streaming; must be called from a running event loop."""
        options = options or self.default_options()
        provider = self.provider(self.select_provider(options))
        logger.info(
            "Opening generation stream",
            extra=log_context(provider=provider.name, model=provider.model_for(options)),
        )
        return TokenStream(provider, messages, options)

    async def complete(
        self, messages: Sequence[ChatMessage], options: GenerationOptions | None = None
    ) -> GenerationResult:
        options = options or self.default_options()
        provider = self.provider(self.select_provider(options))
        result = await provider.complete(messages, options)
        GENERATION_TOKENS.labels(provider=provider.name, estimated=str(result.usage_estimated).lower()).inc(
            result.tokens_used
        )
        return result

    async def stream(
        self,
        messages: Sequence[ChatMessage],
        options: GenerationOptions | None,
        on_token: Callable[[str], Any],
        on_complete: Callable[[GenerationResult], Any],
        on_error: Callable[[GenerationProviderError], Any] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> GenerationResult:
        """Callback form of :meth:`open_stream`.

        ``on_complete`` always runs, with partial text after a cancel or an
        error; on error ``on_error`` runs first. Callbacks may be coroutines.
        """
        token_stream = self.open_stream(messages, options)
        watcher = asyncio.create_task(_cancel_on(cancel_event, token_stream)) if cancel_event is not None else None
        try:
            async for token in token_stream:
                await _call(on_token, token)
                if cancel_event is not None and cancel_event.is_set():
                    await token_stream.cancel()
                    break
        finally:
            if watcher is not None:
                watcher.cancel()
                await asyncio.wait([watcher])
            if not token_stream.finished:
                await token_stream.cancel()
        result = await token_stream.result()
        if result.error and on_error is not None:
            await _call(on_error, GenerationProviderError(result.error))
        await _call(on_complete, result)
        return result

    async def health(self) -> dict[str, bool]:
        return {name: await self.provider(name).health_check() for name in (LOCAL_PROVIDER, *CLOUD_PROVIDERS)}


async def _cancel_on(event: asyncio.Event, token_stream: TokenStream) -> None:
    """Cancel the stream as soon as ``event`` is set, even between tokens."""
    await event.wait()
    await token_stream.cancel()


async def _call(callback: Callable[..., Any], *args: Any) -> None:
    outcome = callback(*args)
    if inspect.isawaitable(outcome):
        await outcome


__all__ = ["GenerationGateway", "TokenStream", "LOCAL_PROVIDER", "CLOUD_PROVIDERS"]
