"""MongoDB cache layer, shareable between several machines or team members.

Collection structure: one collection per ``{completion|embedding}_{model}``.
Completion records are addressed by ``(group, hash, tempKey, prompt, opt)``,
embedding records by ``(group, prompt, opt)``.
"""

import asyncio
import functools
import logging
import threading
from typing import Any, Dict, Optional, Set

from pymongo import MongoClient
from pymongo.errors import PyMongoError

from aibridge.cache.base import CacheBackend
from aibridge.errors import BackendUnavailable
from aibridge.schemas import CacheRequest, RequestKind

logger = logging.getLogger(__name__)


class MongoDBCache(CacheBackend):
    """Shared remote layer backed by a MongoDB database."""

    name = "mongodb"

    def __init__(
        self,
        url: Optional[str] = None,
        database: str = "aibridge",
        client: Any = None,
        server_selection_timeout_ms: int = 5000,
    ) -> None:
        if client is None:
            if not url:
                raise ValueError("MongoDBCache requires either a url or a client.")
            client = MongoClient(url, serverSelectionTimeoutMS=server_selection_timeout_ms)
        self.client = client
        self.database = database
        self._indexed: Set[str] = set()
        self._index_lock = threading.Lock()

    def _db(self):
        return self.client.get_default_database(default=self.database)

    def _collection(self, request: CacheRequest):
        collection = self._db()[request.namespace]
        if request.kind is RequestKind.COMPLETION:
            with self._index_lock:
                if request.namespace not in self._indexed:
                    collection.create_index("hash")
                    self._indexed.add(request.namespace)
        return collection

    @staticmethod
    def _record_filter(request: CacheRequest) -> Dict[str, Any]:
        if request.kind is RequestKind.EMBEDDING:
            return {"group": request.group, "prompt": request.prompt, "opt": request.options}
        return {
            "group": request.group,
            "hash": request.content_hash,
            "tempKey": request.partition_key,
            "prompt": request.prompt,
            "opt": request.options,
        }

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, functools.partial(func, *args))
        except PyMongoError as exc:
            raise BackendUnavailable(self.name, exc) from exc

    async def setup(self) -> None:
        await self._run(self.client.admin.command, "ping")
        logger.info("Connected to MongoDB cache database '%s'", self.database)

    async def get(self, request: CacheRequest) -> Optional[Any]:
        record = await self._run(self._find, request)
        if not record:
            return None
        return record.get(request.kind.value)

    async def set(self, request: CacheRequest, value: Any) -> None:
        await self._run(self._upsert, request, value)

    def _find(self, request: CacheRequest) -> Optional[Dict[str, Any]]:
        return self._collection(request).find_one(self._record_filter(request))

    def _upsert(self, request: CacheRequest, value: Any) -> None:
        self._collection(request).update_one(
            self._record_filter(request),
            {"$set": {request.kind.value: value}},
            upsert=True,
        )
