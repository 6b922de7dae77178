import asyncio
import json

import numpy as np
import pytest

from aibridge import AiBridge
from aibridge.cache import VolatileCache
from aibridge.errors import (
    ConfigError,
    InvalidRequest,
    ProviderContentError,
    ProviderExhausted,
    StreamProtocolError,
)


def chat_event(content):
    return f"data: {json.dumps({'choices': [{'delta': {'content': content}}]})}\n\n".encode("utf-8")


STREAM = [chat_event("Hel"), chat_event("lo"), b"data: [DONE]\n\n"]


class FixedRandom:
    def __init__(self, value):
        self.value = value

    def random(self):
        return self.value


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("OPENAI_API_KEY", "ANTHROPIC_API_KEY", "GOOGLE_API_KEY"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def make_bridge():
    def factory(*adapters, cfg=None, rng=None):
        config = {"provider": {"openai": "sk-test"}}
        config.update(cfg or {})
        return AiBridge(
            config,
            backends=[VolatileCache()],
            adapters={adapter.name: adapter for adapter in adapters},
            rng=rng,
        )

    return factory


def test_second_identical_request_is_served_from_cache(make_bridge, fake_adapter):
    adapter = fake_adapter(outcomes=["Paris"])
    bridge = make_bridge(adapter)

    async def scenario():
        first = await bridge.get_chat_completion("Capital of France?")
        second = await bridge.get_chat_completion("Capital of France?")
        return first, second

    first, second = asyncio.run(scenario())

    assert first.completion == second.completion == "Paris"
    assert first.token.cache is False
    assert second.token.cache is True
    assert first.model == "gpt-3.5-turbo-1106"
    assert len(adapter.calls) == 1
    assert adapter.calls[0]["credentials"] == "sk-test"
    assert "stream" not in adapter.calls[0]["payload"]


def test_listener_receives_whole_completion_once(make_bridge, fake_adapter):
    bridge = make_bridge(fake_adapter(outcomes=["Paris"]))
    seen = []

    async def scenario():
        await bridge.get_chat_completion("Capital of France?", stream_listener=seen.append)
        await bridge.get_chat_completion("Capital of France?", stream_listener=seen.append)

    asyncio.run(scenario())

    assert seen == ["Paris", "Paris"]


def test_streamed_completion_notifies_each_delta_and_is_cached(make_bridge, fake_adapter):
    adapter = fake_adapter(stream_chunks=STREAM)
    bridge = make_bridge(adapter)
    seen = []

    async def listener(delta):
        seen.append(delta)

    async def scenario():
        streamed = await bridge.get_chat_completion("Greet me", {"stream": True}, stream_listener=listener)
        cached = await bridge.get_chat_completion("Greet me")
        return streamed, cached

    streamed, cached = asyncio.run(scenario())

    assert seen == ["Hel", "lo"]
    assert streamed.completion == "Hello"
    assert cached.completion == "Hello" and cached.token.cache is True
    assert len(adapter.stream_calls) == 1
    assert adapter.calls == []


def test_stream_option_without_streaming_support_delivers_once(make_bridge, fake_adapter):
    bridge = make_bridge(fake_adapter(outcomes=["whole answer"]))
    seen = []

    result = asyncio.run(bridge.get_chat_completion("q", {"stream": True}, stream_listener=seen.append))

    assert result.completion == "whole answer"
    assert seen == ["whole answer"]


def test_stream_chat_completion_yields_deltas(make_bridge, fake_adapter):
    bridge = make_bridge(fake_adapter(stream_chunks=STREAM))

    async def scenario():
        live = [delta async for delta in bridge.stream_chat_completion("Greet me")]
        cached = [delta async for delta in bridge.stream_chat_completion("Greet me")]
        return live, cached

    assert asyncio.run(scenario()) == (["Hel", "lo"], ["Hello"])


def test_abandoned_stream_still_reaches_the_cache(make_bridge, fake_adapter):
    adapter = fake_adapter(stream_chunks=STREAM)
    bridge = make_bridge(adapter)

    async def scenario():
        stream = bridge.stream_chat_completion("Greet me")
        first = await stream.__anext__()
        await stream.aclose()
        await bridge.drain()
        return first, await bridge.get_chat_completion("Greet me")

    first, cached = asyncio.run(scenario())

    assert first == "Hel"
    assert cached.completion == "Hello"
    assert cached.token.cache is True
    assert len(adapter.stream_calls) == 1


def test_truncated_stream_fails_and_is_not_cached(make_bridge, fake_adapter):
    adapter = fake_adapter(outcomes=["recovered"], stream_chunks=[chat_event("Hel"), b'data: {"cho'])
    bridge = make_bridge(adapter)

    with pytest.raises(StreamProtocolError):
        asyncio.run(bridge.get_chat_completion("Greet me", {"stream": True}))

    result = asyncio.run(bridge.get_chat_completion("Greet me"))
    assert result.completion == "recovered"
    assert result.token.cache is False


def test_malformed_stream_payload_surfaces_as_stream_error(make_bridge, fake_adapter):
    adapter = fake_adapter(stream_chunks=[chat_event("Hel"), b'data: {"choices": {"a": 1}}\n\n'])
    bridge = make_bridge(adapter)

    with pytest.raises(StreamProtocolError):
        asyncio.run(bridge.get_chat_completion("Greet me", {"stream": True}))


def test_content_error_is_raised_and_not_cached(make_bridge, fake_adapter):
    adapter = fake_adapter(outcomes=[{"error": {"message": "bad request"}}, "fine"])
    bridge = make_bridge(adapter)

    with pytest.raises(ProviderContentError):
        asyncio.run(bridge.get_chat_completion("q"))

    assert asyncio.run(bridge.get_chat_completion("q")).completion == "fine"
    assert len(adapter.calls) == 2


def test_transport_failures_exhaust_attempts(make_bridge, fake_adapter):
    adapter = fake_adapter(outcomes=[ConnectionError("reset"), ConnectionError("reset again")])
    bridge = make_bridge(adapter)

    with pytest.raises(ProviderExhausted) as excinfo:
        asyncio.run(bridge.get_chat_completion("q"))

    assert len(adapter.calls) == 2
    assert str(excinfo.value.last_error) == "reset again"


def test_embeddings_are_cached(make_bridge, fake_adapter):
    adapter = fake_adapter(embeddings=[[0.1, 0.2, 0.3]])
    bridge = make_bridge(adapter)

    async def scenario():
        return await bridge.get_embedding("hello"), await bridge.get_embedding("hello")

    first, second = asyncio.run(scenario())

    assert first.embedding == second.embedding == [0.1, 0.2, 0.3]
    assert first.model == "text-embedding-ada-002"
    assert (first.token.cache, second.token.cache) == (False, True)
    assert second.token.embedding > 0
    assert second.as_array().dtype == np.float32
    assert len(adapter.embed_calls) == 1


def test_embedding_rejects_empty_prompt_and_unsupported_provider(make_bridge, fake_adapter):
    bridge = make_bridge(fake_adapter())

    with pytest.raises(InvalidRequest):
        asyncio.run(bridge.get_embedding("   "))
    with pytest.raises(InvalidRequest):
        asyncio.run(bridge.get_embedding("hello"))


def test_partition_key_follows_temperature(make_bridge, fake_adapter):
    bridge = make_bridge(fake_adapter(), rng=FixedRandom(0.99))

    assert bridge.partition_key_for(0) == 0
    assert bridge.partition_key_for(None) == 0
    assert bridge.partition_key_for(0.05) == 0
    assert bridge.partition_key_for(0.5) == 4
    # 5 * 10 partitions are capped at 16
    assert bridge.partition_key_for(5) == 15
    with pytest.raises(InvalidRequest):
        bridge.partition_key_for("hot")


def test_explicit_temp_key_selects_the_partition(make_bridge, fake_adapter):
    adapter = fake_adapter(outcomes=["sample A", "sample B"])
    bridge = make_bridge(adapter)
    options = {"temperature": 1}

    async def scenario():
        a = await bridge.get_chat_completion("Write a haiku", options, temp_key=3)
        again = await bridge.get_chat_completion("Write a haiku", options, temp_key=3)
        b = await bridge.get_chat_completion("Write a haiku", options, temp_key=4)
        return a, again, b

    a, again, b = asyncio.run(scenario())

    assert (a.completion, again.completion, b.completion) == ("sample A", "sample A", "sample B")
    assert again.token.cache is True
    assert len(adapter.calls) == 2


def test_cache_groups_are_isolated(make_bridge, fake_adapter):
    adapter = fake_adapter(outcomes=["for tenant a", "for tenant b"])
    bridge = make_bridge(adapter)

    async def scenario():
        a = await bridge.get_chat_completion("q", cache_group="tenant-a")
        b = await bridge.get_chat_completion("q", cache_group="tenant-b")
        return a, b

    a, b = asyncio.run(scenario())
    assert (a.completion, b.completion) == ("for tenant a", "for tenant b")


def test_economy_alias_picks_a_model_by_prompt_size(make_bridge, fake_adapter):
    bridge = make_bridge(fake_adapter(outcomes=["short", "long"]))

    async def scenario():
        short = await bridge.get_chat_completion("hi", {"model": "gpt-4e"})
        long = await bridge.get_chat_completion("word " * 15000, {"model": "gpt-4e"})
        return short, long

    short, long = asyncio.run(scenario())

    assert short.model == "gpt-3.5-turbo-1106"
    assert long.model == "gpt-4-1106-preview"


def test_prompt_too_large_for_the_budget_is_rejected(make_bridge, fake_adapter):
    adapter = fake_adapter(outcomes=["unused"])
    bridge = make_bridge(adapter)

    with pytest.raises(InvalidRequest):
        asyncio.run(bridge.get_chat_completion("hi", {"total_tokens": 20}))
    assert adapter.calls == []


def test_message_normalization():
    assert AiBridge.normalize_messages("hi") == [{"role": "user", "content": "hi"}]
    assert AiBridge.normalize_messages({"role": "system", "content": "x"}) == [{"role": "system", "content": "x"}]
    for bad in ("", [], [{"role": "user", "content": None}], 42):
        with pytest.raises(InvalidRequest):
            AiBridge.normalize_messages(bad)


def test_missing_provider_key_for_model(make_bridge, fake_adapter):
    bridge = make_bridge(fake_adapter(), fake_adapter(name="anthropic", outcomes=["never"]))

    with pytest.raises(ConfigError, match="anthropic"):
        asyncio.run(bridge.get_chat_completion("q", {"model": "claude-v1-100k"}))


def test_bridge_requires_some_provider_key():
    with pytest.raises(ConfigError):
        AiBridge({}, backends=[VolatileCache()])


def test_provider_key_from_environment(monkeypatch, fake_adapter):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    adapter = fake_adapter(outcomes=["ok"])
    bridge = AiBridge(backends=[VolatileCache()], adapters={"openai": adapter})

    asyncio.run(bridge.get_chat_completion("q"))

    assert adapter.calls[0]["credentials"] == "sk-env"


def test_only_anthropic_key_defaults_to_claude(fake_adapter):
    adapter = fake_adapter(name="anthropic", outcomes=["from claude"])
    bridge = AiBridge(
        {"provider": {"anthropic": "ak-test"}},
        backends=[VolatileCache()],
        adapters={"anthropic": adapter},
    )

    result = asyncio.run(bridge.get_chat_completion("q"))

    assert result.model == "claude-v1-100k"
    assert adapter.calls[0]["credentials"] == "ak-test"


def test_get_completion_is_a_deprecated_alias(make_bridge, fake_adapter, caplog):
    bridge = make_bridge(fake_adapter(outcomes=["legacy"]))

    with caplog.at_level("WARNING"):
        result = asyncio.run(bridge.get_completion("q"))

    assert result.completion == "legacy"
    assert "deprecated" in caplog.text


def test_dispatch_settings_come_from_config(make_bridge, fake_adapter):
    bridge = make_bridge(fake_adapter(), cfg={"provider_rate_limit": 2, "provider_latency_add": 0.5})

    assert bridge.queue.limit == 2
    assert bridge.queue.latency == 0.5
    assert bridge.queue.max_attempts == 2


def test_token_count(make_bridge, fake_adapter):
    bridge = make_bridge(fake_adapter())

    assert asyncio.run(bridge.get_token_count("")) == 0
    assert asyncio.run(bridge.get_token_count("hello world")) >= 2
