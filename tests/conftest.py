import sys
from pathlib import Path
from typing import Any, Dict, List

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from aibridge.cache import CacheKeyBuilder, VolatileCache  # noqa: E402
from aibridge.errors import BackendUnavailable  # noqa: E402
from aibridge.providers.base import ProviderAdapter  # noqa: E402
from aibridge.schemas import RequestKind  # noqa: E402


class FakeAdapter(ProviderAdapter):
    """Scripted provider: pops one outcome per call.

    Outcomes are strings (completion text), lists of floats (embeddings),
    dicts (raw responses) or exceptions.
    """

    def __init__(self, name="openai", outcomes=None, stream_chunks=None, embeddings=None):
        self.name = name
        self.outcomes = list(outcomes or [])
        self.stream_chunks = list(stream_chunks or [])
        self.embeddings = list(embeddings or [])
        self.supports_streaming = stream_chunks is not None
        self.supports_embeddings = embeddings is not None
        self.calls: List[Dict[str, Any]] = []
        self.stream_calls: List[Dict[str, Any]] = []
        self.embed_calls: List[Dict[str, Any]] = []

    def shape_chat(self, options):
        return dict(options)

    async def invoke(self, credentials, payload):
        self.calls.append({"credentials": credentials, "payload": payload})
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, str):
            return {"choices": [{"message": {"content": outcome}}]}
        return outcome

    def extract_text(self, raw):
        choices = raw.get("choices") or []
        if not choices:
            return None
        return choices[0].get("message", {}).get("content")

    async def invoke_stream(self, credentials, payload):
        self.stream_calls.append({"credentials": credentials, "payload": payload})
        for chunk in self.stream_chunks:
            yield chunk

    def shape_embedding(self, options):
        return dict(options)

    async def embed(self, credentials, payload):
        self.embed_calls.append({"credentials": credentials, "payload": payload})
        outcome = self.embeddings.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return {"embedding": outcome}

    def extract_embedding(self, raw):
        return raw.get("embedding")


class FlakyBackend(VolatileCache):
    """In-memory backend that can be switched to fail on reads or writes."""

    def __init__(self, name="flaky", fail_get=False, fail_set=False):
        super().__init__(max_entries=100)
        self.name = name
        self.fail_get = fail_get
        self.fail_set = fail_set
        self.get_calls = 0
        self.set_calls = 0

    async def get(self, request):
        self.get_calls += 1
        if self.fail_get:
            raise BackendUnavailable(self.name, "connection refused")
        return await super().get(request)

    async def set(self, request, value):
        self.set_calls += 1
        if self.fail_set:
            raise BackendUnavailable(self.name, "connection refused")
        await super().set(request, value)


@pytest.fixture
def fake_adapter():
    return FakeAdapter


@pytest.fixture
def flaky_backend():
    return FlakyBackend


@pytest.fixture
def key_builder():
    return CacheKeyBuilder()


@pytest.fixture
def completion_request(key_builder):
    def factory(prompt="hello", partition_key=0, group="default", model="gpt-3.5-turbo", **options):
        return key_builder.build(
            RequestKind.COMPLETION,
            model,
            [{"role": "user", "content": prompt}],
            options or {"temperature": 0},
            group,
            partition_key,
        )

    return factory


@pytest.fixture
def embedding_request(key_builder):
    def factory(prompt="hello", group="default", model="text-embedding-ada-002"):
        return key_builder.build(RequestKind.EMBEDDING, model, prompt, {"model": model}, group)

    return factory
