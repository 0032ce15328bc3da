"""Memoization of async provider calls keyed by their serialized arguments."""

from __future__ import annotations

import functools
import hashlib
import json
import logging
from typing import Any, Awaitable, Callable, MutableMapping, TypeVar

from pydantic_core import to_jsonable_python

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
AsyncFn = Callable[..., Awaitable[T]]


def make_cache(
    cache_id: str, store: MutableMapping[str, Any] | None = None
) -> Callable[[AsyncFn[T]], AsyncFn[T]]:
    """Return a decorator memoizing an async function in ``store``.

    ``cache_id`` namespaces the keys so that a change in request shape can
    invalidate old entries by bumping the id. Without a store the decorator
    is a pass-through.
    """

    def decorator(fn: AsyncFn[T]) -> AsyncFn[T]:
        if store is None:
            return fn

        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            key = cache_key(cache_id, args, kwargs)
            if key in store:
                LOGGER.debug("Cache hit for %s", cache_id)
                return store[key]
            value = await fn(*args, **kwargs)
            store[key] = value
            return value

        return wrapper

    return decorator


def cache_key(cache_id: str, args: tuple[Any, ...], kwargs: dict[str, Any]) -> str:
    payload = json.dumps(
        [cache_id, to_jsonable_python(args), to_jsonable_python(kwargs)],
        sort_keys=True,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
