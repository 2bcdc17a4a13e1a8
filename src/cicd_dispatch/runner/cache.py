"""
Singleflight and the build/dependency cache.

Concurrent requests for the same key collapse into one in-flight computation;
every caller receives that computation's result (or exception).
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional, Tuple

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str, Optional[str]]


class SingleFlight:
    """Deduplicates concurrent async calls by key."""

    def __init__(self) -> None:
        self._futures: Dict[Hashable, asyncio.Future] = {}

    def __contains__(self, key: Hashable) -> bool:
        return key in self._futures

    async def do(self, key: Hashable, fn: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``fn`` once per key; later callers await the first call's result."""
        future = self._futures.get(key)
        if future is None:
            future = asyncio.get_running_loop().create_future()
            self._futures[key] = future
            try:
                result = await fn()
            except asyncio.CancelledError:
                future.cancel()
                raise
            except Exception as exc:
                future.set_exception(exc)
                # Retrieved so unobserved failures do not warn at shutdown
                future.exception()
                raise
            future.set_result(result)
            return result
        return await asyncio.shield(future)

    def forget(self, key: Hashable) -> None:
        self._futures.pop(key, None)


class BuildCache:
    """Dependency cache keyed by (component_id, stack, lockfile_hash).

    Successful populations are memoised for the lifetime of the cache; a
    failed population is forgotten so a later job can retry it.
    """

    def __init__(self) -> None:
        self._flight = SingleFlight()
        self._values: Dict[CacheKey, Any] = {}
        self.populations = 0
        self.hits = 0

    def __contains__(self, key: CacheKey) -> bool:
        return key in self._values

    async def get_or_populate(
        self, key: CacheKey, populate: Callable[[], Awaitable[Any]]
    ) -> Any:
        if key in self._values:
            self.hits += 1
            logger.debug(f"Build cache hit for {key}")
            return self._values[key]

        async def _populate() -> Any:
            self.populations += 1
            logger.info(f"Populating build cache for {key}")
            value = await populate()
            self._values[key] = value
            return value

        try:
            return await self._flight.do(key, _populate)
        except Exception:
            self._flight.forget(key)
            raise
