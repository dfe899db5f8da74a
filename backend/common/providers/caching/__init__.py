from .interface import CacheInterface
from .decorators import cache, invalidate_cache_keys
from .factory import get_cache_provider
from .redis_cache import RedisCache
from .memory_cache import MemoryCache
from .passthrough_cache import PassthroughCache

__all__ = [
    "CacheInterface",
    "cache",
    "invalidate_cache_keys",
    "get_cache_provider",
    "RedisCache",
    "MemoryCache",
    "PassthroughCache",
]
