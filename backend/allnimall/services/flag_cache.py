"""TTL cache for plan feature flags."""

import time
from collections.abc import Callable

from cachetools import TTLCache

from allnimall.models.usage import FeatureFlag

ALL_PLANS_KEY = "all"


class PlanFlagCache:
    """Per-plan flag lists with a fixed TTL and explicit invalidation.

    Entries are keyed by plan id, or ``"all"`` for the unfiltered list.
    Staleness up to the TTL is accepted; admin edits must call
    ``invalidate_plan``. Callers run on one event loop, so plain dict-style
    access needs no locking.
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        maxsize: int = 256,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cache: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl_seconds, timer=timer)

    @staticmethod
    def _key(plan_id: str | None) -> str:
        return plan_id or ALL_PLANS_KEY

    def get(self, plan_id: str | None) -> list[FeatureFlag] | None:
        flags = self._cache.get(self._key(plan_id))
        return list(flags) if flags is not None else None

    def set(self, plan_id: str | None, flags: list[FeatureFlag]) -> None:
        self._cache[self._key(plan_id)] = list(flags)

    def invalidate_plan(self, plan_id: str) -> None:
        self._cache.pop(plan_id, None)
        self._cache.pop(ALL_PLANS_KEY, None)

    def clear(self) -> None:
        self._cache.clear()

    def __contains__(self, plan_id: str | None) -> bool:
        return self._key(plan_id) in self._cache
