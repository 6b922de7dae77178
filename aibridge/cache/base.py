from abc import ABC, abstractmethod
from typing import Any, Optional

from aibridge.schemas import CacheRequest


class CacheBackend(ABC):
    """Raw key -> value storage used as one layer of a :class:`LayerCache`.

    Implementations must tolerate concurrent ``get``/``set`` calls on the same
    key (last write wins) and report storage failures as
    :class:`aibridge.errors.BackendUnavailable`.
    """

    name = "cache"

    async def setup(self) -> None:
        """Perform any async initialisation the backend needs."""
        return None

    @abstractmethod
    async def get(self, request: CacheRequest) -> Optional[Any]:
        """Return the stored value for ``request`` or ``None`` on a miss."""

    @abstractmethod
    async def set(self, request: CacheRequest, value: Any) -> None:
        """Store ``value`` under ``request``, replacing any previous value."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"
