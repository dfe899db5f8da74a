import functools
import hashlib
import json
from typing import Callable, Optional, Type
from pydantic import BaseModel

from common.core.otel_axiom_exporter import get_logger
from .factory import get_cache_provider

logger = get_logger(__name__)


def _generate_cache_key(func: Callable, args: tuple, kwargs: dict) -> str:
    """Default key: ``Class:method:<hash of args>``."""
    if args and hasattr(args[0], "__class__") and hasattr(args[0], func.__name__):
        owner = args[0].__class__.__name__
        key_args = args[1:]
    else:
        owner = func.__module__.split(".")[-1]
        key_args = args

    args_str = ""
    if key_args or kwargs:
        args_json = json.dumps(
            {"args": key_args, "kwargs": dict(sorted(kwargs.items()))},
            sort_keys=True,
            default=str,
        )
        args_str = f":{hashlib.md5(args_json.encode()).hexdigest()[:8]}"

    return f"{owner}:{func.__name__}{args_str}"


def _serialize(value):
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_serialize(item) for item in value]
    return value


def _deserialize(model_type: Type, cached_value):
    if isinstance(model_type, type) and issubclass(model_type, BaseModel):
        if isinstance(cached_value, list):
            return [model_type.model_validate(item) for item in cached_value]
        return model_type.model_validate(cached_value)
    return cached_value


def cache(model_type: Type, ttl: int = 3600, key_generator: Optional[Callable] = None):
    """
    Read-through cache decorator for async methods/functions.

    Cache failures never fail the call: a broken cache degrades to a miss.
    ``None`` results are not cached.

    Args:
        model_type: Pydantic model type for (de)serialization, or a plain type
        ttl: Time to live in seconds
        key_generator: Builds the key from the call arguments (``self`` excluded)
    """

    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            cache_key = None
            try:
                if key_generator:
                    is_method = args and hasattr(args[0], func.__name__)
                    key_args = args[1:] if is_method else args
                    cache_key = key_generator(*key_args, **kwargs)
                else:
                    cache_key = _generate_cache_key(func, args, kwargs)

                cached_value = await get_cache_provider().get(cache_key)
                if cached_value is not None:
                    logger.debug(f"Cache hit for key: {cache_key}")
                    return _deserialize(model_type, cached_value)
            except Exception as e:
                logger.warning(f"Cache lookup failed for {func.__name__}: {e}")

            result = await func(*args, **kwargs)

            if cache_key and result is not None:
                try:
                    await get_cache_provider().set(cache_key, _serialize(result), ttl)
                except Exception as e:
                    logger.warning(f"Cache set failed for key {cache_key}: {e}")

            return result

        return wrapper

    return decorator


async def invalidate_cache_keys(*keys: str) -> None:
    """
    Synchronously drop cache entries after a write.

    Best effort: a failed delete is logged, the TTL bounds how long a stale
    entry can survive.
    """
    cache_provider = get_cache_provider()
    for key in keys:
        try:
            await cache_provider.delete(key)
        except Exception as e:
            logger.warning(f"Cache invalidation failed for key {key}: {e}")
