from .base import CacheBackend
from .disk import DiskCache
from .keys import CacheKeyBuilder
from .layer import LayerCache
from .memory import VolatileCache
from .mongo import MongoDBCache

__all__ = [
    "CacheBackend",
    "CacheKeyBuilder",
    "DiskCache",
    "LayerCache",
    "MongoDBCache",
    "VolatileCache",
]
