"""
Memo tables for derived values and the reach-metadata cache.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Hashable, Optional, Tuple, TypeVar

from .exceptions import CacheError, ParseError
from .models import ReachData
from .services import KeyValueStore, ReachMetadataCache
from .units import FlowUnit

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_VARIANT = "default"
REACH_CACHE_PREFIX = "reach_cache_"


def cache_key(
    reach_id: str, variant: Optional[str] = None, unit: Optional[FlowUnit] = None
) -> Tuple[Hashable, ...]:
    """
    Build a memo key.

    Keys are tuples so that invalidating reach ``"12"`` never touches reach
    ``"123"``. Unit-sensitive tables pass the active unit as the last element.
    """
    key: Tuple[Hashable, ...] = (reach_id, variant or DEFAULT_VARIANT)
    if unit is not None:
        key += (FlowUnit.parse(unit),)
    return key


class MemoTable:
    """A named memo table keyed by ``(reach_id, variant[, unit])`` tuples."""

    def __init__(self, name: str, unit_sensitive: bool = False):
        self.name = name
        self.unit_sensitive = unit_sensitive
        self._entries: Dict[Tuple[Hashable, ...], Any] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Tuple[Hashable, ...]) -> bool:
        return key in self._entries

    def get(self, key: Tuple[Hashable, ...], default: Any = None) -> Any:
        return self._entries.get(key, default)

    def set(self, key: Tuple[Hashable, ...], value: Any) -> None:
        self._entries[key] = value

    def get_or_compute(self, key: Tuple[Hashable, ...], compute: Callable[[], T]) -> T:
        """Return the memoized value for ``key``, computing it on a miss."""
        if key in self._entries:
            return self._entries[key]
        value = compute()
        self._entries[key] = value
        return value

    def invalidate_reach(self, reach_id: str) -> int:
        """Drop every entry for ``reach_id``. Returns the number removed."""
        stale = [key for key in self._entries if key[0] == reach_id]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()


class CacheRegistry:
    """
    Groups memo tables by whether their values depend on the active unit.

    A unit change clears exactly the unit-sensitive tables; location and
    forecast-type tables survive.
    """

    def __init__(self) -> None:
        self._tables: Dict[str, MemoTable] = {}

    def table(self, name: str, unit_sensitive: bool = False) -> MemoTable:
        """Get or register the table called ``name``."""
        if name not in self._tables:
            self._tables[name] = MemoTable(name, unit_sensitive=unit_sensitive)
        return self._tables[name]

    def clear_unit_dependent(self) -> None:
        for table in self._tables.values():
            if table.unit_sensitive:
                table.clear()

    def clear_all(self) -> None:
        for table in self._tables.values():
            table.clear()

    def invalidate_reach(self, reach_id: str) -> int:
        return sum(t.invalidate_reach(reach_id) for t in self._tables.values())

    def stats(self) -> Dict[str, int]:
        return {name: len(table) for name, table in self._tables.items()}


class ReachCache(ReachMetadataCache):
    """
    Reach metadata cached as JSON in a key-value store.

    Each record is wrapped in an envelope carrying the time it was written.
    Records older than ``max_age`` are treated as misses and removed. Storing a
    reach merges it into the cached record instead of replacing it, so a
    return-period update never drops previously cached fields.
    """

    def __init__(self, store: KeyValueStore, max_age: timedelta = timedelta(days=180)):
        self._store = store
        self.max_age = max_age
        self.hits = 0
        self.misses = 0
        self.writes = 0

    @staticmethod
    def _key(reach_id: str) -> str:
        return f"{REACH_CACHE_PREFIX}{reach_id}"

    async def get(self, reach_id: str) -> Optional[ReachData]:
        key = self._key(reach_id)
        try:
            raw = await self._store.get(key)
        except Exception as e:
            raise CacheError(f"Failed to read cache entry {key}: {e}") from e

        if raw is None:
            self.misses += 1
            logger.debug(f"Reach cache miss for {reach_id}")
            return None

        try:
            envelope = json.loads(raw)
            reach = ReachData.from_dict(envelope.get("data", envelope))
        except (json.JSONDecodeError, AttributeError, ParseError) as e:
            logger.warning(f"Discarding unreadable cache entry for reach {reach_id}: {e}")
            await self._store.remove(key)
            self.misses += 1
            return None

        if reach.is_cache_stale(self.max_age):
            logger.debug(f"Reach cache entry for {reach_id} is stale, removing")
            await self._store.remove(key)
            self.misses += 1
            return None

        self.hits += 1
        logger.debug(f"Reach cache hit for {reach_id}")
        return reach

    async def store(self, reach: ReachData) -> None:
        existing = await self.get(reach.reach_id)
        merged = reach.merge_with(existing) if existing is not None else reach

        envelope = {
            "meta": {"stored_at": datetime.now(timezone.utc).isoformat()},
            "data": merged.to_dict(),
        }
        try:
            await self._store.set(self._key(reach.reach_id), json.dumps(envelope))
        except Exception as e:
            raise CacheError(f"Failed to write cache entry for {reach.reach_id}: {e}") from e

        self.writes += 1
        logger.debug(f"Cached reach {reach.reach_id}")

    def stats(self) -> Dict[str, int]:
        return {"hits": self.hits, "misses": self.misses, "writes": self.writes}
