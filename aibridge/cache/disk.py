# aibridge/cache/disk.py
import asyncio
import json
import logging
import os
import re
import tempfile
from typing import Any, Optional

from aibridge.cache.base import CacheBackend
from aibridge.errors import BackendUnavailable
from aibridge.schemas import CacheRequest

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def _safe_segment(text: str) -> str:
    return _UNSAFE_CHARS.sub("_", text) or "_"


class DiskCache(CacheBackend):
    """Durable local layer persisted as JSON records under ``cache_dir``.

    Layout: ``<cache_dir>/<kind>_<model>/<group>/<digest>.json``. Each record
    stores the full request identity next to the value, so a digest collision
    reads as a miss instead of a wrong hit. Records are written to a temporary
    file first and moved into place with :func:`os.replace`.
    """

    name = "disk"

    def __init__(self, cache_dir: str = ".cache/aibridge") -> None:
        self.cache_dir = cache_dir
        os.makedirs(cache_dir, exist_ok=True)

    def _record_path(self, request: CacheRequest) -> str:
        return os.path.join(
            self.cache_dir,
            _safe_segment(request.namespace),
            _safe_segment(request.group),
            f"{request.digest()}.json",
        )

    async def get(self, request: CacheRequest) -> Optional[Any]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._read, request)

    async def set(self, request: CacheRequest, value: Any) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._write, request, value)

    def _read(self, request: CacheRequest) -> Optional[Any]:
        cache_file = self._record_path(request)
        if not os.path.exists(cache_file):
            return None
        try:
            with open(cache_file, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except json.JSONDecodeError as exc:
            logger.warning("Ignoring unreadable cache record %s: %s", cache_file, exc)
            return None
        except OSError as exc:
            raise BackendUnavailable(self.name, exc) from exc

        if data.get("identity") != list(request.identity()):
            return None
        return data.get("value")

    def _write(self, request: CacheRequest, value: Any) -> None:
        cache_file = self._record_path(request)
        record = {"identity": list(request.identity()), "value": value}
        tmp_path = None
        try:
            os.makedirs(os.path.dirname(cache_file), exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=os.path.dirname(cache_file), prefix=".tmp-", suffix=".json"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(record, handle, ensure_ascii=False)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, cache_file)
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise BackendUnavailable(self.name, exc) from exc
