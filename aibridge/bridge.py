"""AiBridge facade: cached, rate-limited access to chat and embedding providers.

Every request is first looked up in the :class:`LayerCache`. Misses are
dispatched through the :class:`DispatchQueue` to the provider adapter that
serves the requested model, and the result is written back to every cache
layer.
"""

import asyncio
import functools
import logging
import math
import random
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from aibridge.cache import CacheBackend, CacheKeyBuilder, LayerCache
from aibridge.config import build_backends, load_settings
from aibridge.dispatch import DispatchQueue, DispatchTask
from aibridge.errors import ConfigError, InvalidRequest
from aibridge.options import normalize_chat_options
from aibridge.providers import ProviderAdapter, default_adapters, provider_for_model
from aibridge.schemas import CacheRequest, CompletionResult, EmbeddingResult, RequestKind, TokenUsage
from aibridge.streaming import StreamDecoder, iter_deltas, notify
from aibridge.tokens import get_token_count

logger = logging.getLogger(__name__)

StreamListener = Callable[[str], Any]

_STREAM_END = object()


class AiBridge:
    """Setup the bridge with its cache layers, provider adapters and dispatch queue."""

    def __init__(
        self,
        cfg: Optional[Any] = None,
        *,
        backends: Optional[Sequence[CacheBackend]] = None,
        adapters: Optional[Dict[str, ProviderAdapter]] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.settings = load_settings(cfg)
        self.config = self.settings.config
        self.credentials = self.settings.credentials

        if backends is None:
            backends = build_backends(self.settings.cache_layers)
        self.layer_cache = LayerCache(backends)
        self.key_builder = CacheKeyBuilder()
        self.adapters = adapters if adapters is not None else default_adapters(self.config)
        self.queue = DispatchQueue(
            limit=self.config.provider_rate_limit,
            latency=self.config.provider_latency_add,
            max_attempts=self.config.max_attempts,
        )
        self._rng = rng or random.Random()
        self._background: Set[asyncio.Task] = set()

    async def setup(self) -> None:
        await self.layer_cache.setup()

    async def get_token_count(self, prompt: Any) -> int:
        return get_token_count(prompt)

    async def drain(self) -> None:
        """Wait for streaming calls still running after their consumer went away."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # --- Chat completions ---

    async def get_completion(self, prompt: Any, options: Optional[Mapping[str, Any]] = None, *args, **kwargs):
        logger.warning("get_completion is deprecated, use get_chat_completion instead")
        return await self.get_chat_completion(prompt, options, *args, **kwargs)

    async def get_chat_completion(
        self,
        messages: Any,
        options: Optional[Mapping[str, Any]] = None,
        stream_listener: Optional[StreamListener] = None,
        cache_group: Optional[str] = None,
        temp_key: int = -1,
    ) -> CompletionResult:
        """Return the completion of a chat, from cache when possible.

        ``stream_listener`` (sync or async) receives each delta of a streamed
        response, or the whole completion once otherwise.
        """
        opt, request, prompt_tokens = self._prepare_chat(messages, options, cache_group, temp_key)
        model = opt["model"]

        cached = await self.layer_cache.get_completion(request)
        if cached is not None:
            await notify(stream_listener, cached)
            return self._completion_result(model, cached, prompt_tokens, cache=True)

        adapter, credentials = self._route(model)
        if opt.get("stream") and adapter.supports_streaming:
            parts: List[str] = []
            async for delta in self._stream_deltas(adapter, credentials, opt, request):
                parts.append(delta)
                await notify(stream_listener, delta)
            completion = "".join(parts)
        else:
            completion = await self._dispatch_chat(adapter, credentials, opt, request)
            await notify(stream_listener, completion)

        return self._completion_result(model, completion, prompt_tokens, cache=False)

    async def stream_chat_completion(
        self,
        messages: Any,
        options: Optional[Mapping[str, Any]] = None,
        cache_group: Optional[str] = None,
        temp_key: int = -1,
    ) -> AsyncIterator[str]:
        """Yield completion deltas as they arrive.

        A cache hit yields the cached completion once. Abandoning the iterator
        does not cancel the provider call; its result still reaches the cache.
        """
        options = dict(options or {}, stream=True)
        opt, request, _ = self._prepare_chat(messages, options, cache_group, temp_key)

        cached = await self.layer_cache.get_completion(request)
        if cached is not None:
            yield cached
            return

        adapter, credentials = self._route(opt["model"])
        if not adapter.supports_streaming:
            yield await self._dispatch_chat(adapter, credentials, opt, request)
            return

        async for delta in self._stream_deltas(adapter, credentials, opt, request):
            yield delta

    # --- Embeddings ---

    async def get_embedding(
        self,
        prompt: str,
        options: Optional[Mapping[str, Any]] = None,
        cache_group: Optional[str] = None,
    ) -> EmbeddingResult:
        if not isinstance(prompt, str) or not prompt.strip():
            raise InvalidRequest("Embedding prompt must be a non-empty string.")

        opt = dict(self.settings.defaults.get("embedding", {}))
        opt.update(options or {})
        opt["prompt"] = prompt
        model = opt.get("model")

        request = self.key_builder.build(
            RequestKind.EMBEDDING, model, prompt, opt, self._group(cache_group)
        )
        token = TokenUsage(embedding=get_token_count(prompt))

        cached = await self.layer_cache.get_embedding(request)
        if cached:
            token.cache = True
            return EmbeddingResult(model=model, embedding=cached, token=token)

        adapter, credentials = self._route(model)
        if not adapter.supports_embeddings:
            raise InvalidRequest(f"{adapter.name} does not provide embeddings for model '{model}'.")
        payload = adapter.shape_embedding(opt)
        embedding = await self.queue.submit(
            DispatchTask(
                provider=adapter.name,
                call=functools.partial(adapter.embedding_attempt, credentials, payload),
            )
        )
        await self.layer_cache.add_embedding(request, embedding)
        return EmbeddingResult(model=model, embedding=embedding, token=token)

    # --- Helpers ---

    def partition_key_for(self, temperature: Any) -> int:
        """Pick the cache partition for a sampling temperature.

        The number of partitions is ``temperature * temperature_key_multiplier``,
        capped at ``max_temperature_partitions``.
        """
        try:
            temperature = float(temperature or 0)
        except (TypeError, ValueError) as exc:
            raise InvalidRequest(f"Invalid temperature: {temperature!r}") from exc
        if temperature <= 0:
            return 0
        temp_range = min(
            temperature * self.config.temperature_key_multiplier,
            float(self.config.max_temperature_partitions),
        )
        if math.floor(temp_range) <= 0:
            return 0
        return math.floor(self._rng.random() * temp_range)

    @staticmethod
    def normalize_messages(messages: Any) -> List[Dict[str, Any]]:
        if isinstance(messages, str):
            if not messages.strip():
                raise InvalidRequest("Prompt cannot be empty.")
            return [{"role": "user", "content": messages}]
        if isinstance(messages, Mapping) and "role" in messages and "content" in messages:
            messages = [messages]
        if not isinstance(messages, (list, tuple)) or not messages:
            raise InvalidRequest("Messages must be a string, a message or a non-empty list of messages.")

        normalized = []
        for msg in messages:
            if not isinstance(msg, Mapping) or msg.get("content") is None:
                raise InvalidRequest(f"Message content is null: {messages!r}")
            normalized.append(dict(msg))
        return normalized

    def _group(self, cache_group: Optional[str]) -> str:
        return cache_group or self.config.default_cache_group

    def _prepare_chat(
        self,
        messages: Any,
        options: Optional[Mapping[str, Any]],
        cache_group: Optional[str],
        temp_key: int,
    ) -> Tuple[Dict[str, Any], CacheRequest, int]:
        messages = self.normalize_messages(messages)
        opt = dict(self.settings.defaults.get("chat", {}))
        opt.update(options or {})
        opt["messages"] = messages

        prompt_tokens = get_token_count(messages)
        opt = normalize_chat_options(
            opt,
            prompt_tokens,
            messages,
            prefer_anthropic=bool(self.credentials.anthropic and not self.credentials.openai),
        )

        if temp_key is None or temp_key < 0:
            temp_key = self.partition_key_for(opt.get("temperature"))

        request = self.key_builder.build(
            RequestKind.COMPLETION,
            opt["model"],
            messages,
            opt,
            self._group(cache_group),
            temp_key,
        )
        return opt, request, prompt_tokens

    def _route(self, model: str) -> Tuple[ProviderAdapter, str]:
        provider = provider_for_model(model)
        adapter = self.adapters.get(provider)
        if adapter is None:
            raise ConfigError(f"No adapter registered for provider '{provider}'.")
        credentials = self.credentials.for_provider(provider)
        if not credentials:
            raise ConfigError(f"Missing {provider} API key for model '{model}'.")
        return adapter, credentials

    async def _dispatch_chat(
        self,
        adapter: ProviderAdapter,
        credentials: str,
        opt: Dict[str, Any],
        request: CacheRequest,
    ) -> str:
        payload = adapter.shape_chat(opt)
        payload.pop("stream", None)
        completion = await self.queue.submit(
            DispatchTask(
                provider=adapter.name,
                call=functools.partial(adapter.chat_attempt, credentials, payload),
            )
        )
        await self.layer_cache.add_completion(request, completion)
        return completion

    async def _stream_deltas(
        self,
        adapter: ProviderAdapter,
        credentials: str,
        opt: Dict[str, Any],
        request: CacheRequest,
    ) -> AsyncIterator[str]:
        # The provider call runs in its own task so an abandoned consumer
        # does not cancel it.
        deltas: asyncio.Queue = asyncio.Queue()
        job = asyncio.ensure_future(
            self._run_stream(adapter, credentials, adapter.shape_chat(opt), request, deltas.put)
        )
        self._background.add(job)
        job.add_done_callback(self._background.discard)
        job.add_done_callback(self._report_stream_failure)
        job.add_done_callback(lambda _: deltas.put_nowait(_STREAM_END))

        while True:
            delta = await deltas.get()
            if delta is _STREAM_END:
                break
            yield delta
        await job

    async def _run_stream(
        self,
        adapter: ProviderAdapter,
        credentials: str,
        payload: Dict[str, Any],
        request: CacheRequest,
        emit: Callable[[str], Any],
    ) -> str:
        decoder = StreamDecoder()
        task = DispatchTask(
            provider=adapter.name,
            call=lambda: iter_deltas(adapter.invoke_stream(credentials, payload), decoder),
            streaming=True,
        )
        async for delta in self.queue.stream(task):
            await emit(delta)

        completion = decoder.text
        if completion:
            await self.layer_cache.add_completion(request, completion)
        else:
            logger.warning("%s stream for %s finished without any text", adapter.name, request.model)
        return completion

    @staticmethod
    def _report_stream_failure(job: "asyncio.Future") -> None:
        if job.cancelled():
            return
        exc = job.exception()
        if exc is not None:
            logger.error("Streaming dispatch failed: %s", exc)

    @staticmethod
    def _completion_result(model: str, completion: str, prompt_tokens: int, cache: bool) -> CompletionResult:
        return CompletionResult(
            model=model,
            completion=completion,
            token=TokenUsage(prompt=prompt_tokens, completion=get_token_count(completion), cache=cache),
        )
