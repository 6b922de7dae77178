"""Ordered stack of cache backends with cascading reads.

Layers are declared fastest/most volatile first. A read walks the layers in
order and returns the first hit; the hit is then copied (promoted) into every
faster layer that missed. New values are written to every layer at once so
durability never depends on a later promotion.

A failing layer is logged and skipped: on reads it counts as a miss, on
writes as a no-op. Cache failures never fail the request that triggered them.
"""

import asyncio
import logging
from typing import Any, List, Optional, Sequence

from aibridge.cache.base import CacheBackend
from aibridge.errors import BackendUnavailable, InvalidRequest
from aibridge.schemas import CacheRequest, RequestKind

logger = logging.getLogger(__name__)


class LayerCache:
    def __init__(self, backends: Sequence[CacheBackend]) -> None:
        self._backends: List[CacheBackend] = list(backends)

    @property
    def layers(self) -> List[CacheBackend]:
        return list(self._backends)

    async def setup(self) -> None:
        for backend in self._backends:
            try:
                await backend.setup()
            except BackendUnavailable as exc:
                logger.warning("Cache layer %s failed to set up: %s", backend.name, exc)
            except Exception:
                logger.exception("Unexpected error while setting up cache layer %s", backend.name)

    # --- Completions ---

    async def get_completion(self, request: CacheRequest) -> Optional[str]:
        self._check_kind(request, RequestKind.COMPLETION)
        return await self._lookup(request)

    async def add_completion(self, request: CacheRequest, completion: str) -> None:
        self._check_kind(request, RequestKind.COMPLETION)
        await self._fan_out(request, completion)

    # --- Embeddings ---

    async def get_embedding(self, request: CacheRequest) -> Optional[List[float]]:
        self._check_kind(request, RequestKind.EMBEDDING)
        return await self._lookup(request)

    async def add_embedding(self, request: CacheRequest, embedding: List[float]) -> None:
        self._check_kind(request, RequestKind.EMBEDDING)
        await self._fan_out(request, [float(value) for value in embedding])

    # --- Internals ---

    @staticmethod
    def _check_kind(request: CacheRequest, expected: RequestKind) -> None:
        if request.kind is not expected:
            raise InvalidRequest(
                f"Expected a {expected.value} request, received {request.kind.value}."
            )

    async def _lookup(self, request: CacheRequest) -> Optional[Any]:
        missed: List[CacheBackend] = []
        for backend in self._backends:
            try:
                value = await backend.get(request)
            except BackendUnavailable as exc:
                logger.warning("Cache layer %s unavailable on read: %s", backend.name, exc)
                continue
            except Exception:
                logger.exception("Unexpected error reading cache layer %s", backend.name)
                continue

            if value is None:
                missed.append(backend)
                continue

            if missed:
                logger.debug(
                    "Promoting %s hit from %s into %s",
                    request.namespace,
                    backend.name,
                    ", ".join(layer.name for layer in missed),
                )
                await self._write_all(missed, request, value)
            return value
        return None

    async def _fan_out(self, request: CacheRequest, value: Any) -> None:
        await self._write_all(self._backends, request, value)

    async def _write_all(
        self, backends: Sequence[CacheBackend], request: CacheRequest, value: Any
    ) -> None:
        await asyncio.gather(*(self._safe_set(backend, request, value) for backend in backends))

    @staticmethod
    async def _safe_set(backend: CacheBackend, request: CacheRequest, value: Any) -> None:
        try:
            await backend.set(request, value)
        except BackendUnavailable as exc:
            logger.warning("Cache layer %s unavailable on write: %s", backend.name, exc)
        except Exception:
            logger.exception("Unexpected error writing cache layer %s", backend.name)
