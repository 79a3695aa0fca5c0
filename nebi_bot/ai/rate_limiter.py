from __future__ import annotations

import time
from collections import OrderedDict
from typing import Callable


class RateLimiter:
    """Per-(guild, user) cooldown gate.

    Entries live in an LRU map capped at ``max_entries``. When the cap is hit,
    entries whose cooldown already elapsed are dropped first; if the map is
    still full the least recently allowed key is evicted. An evicted key simply
    starts fresh, which only ever makes the gate more permissive.
    """

    def __init__(
        self,
        cooldown_seconds: float,
        *,
        max_entries: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cooldown_seconds = float(cooldown_seconds)
        self.max_entries = max(1, int(max_entries))
        self._clock = clock
        self._last_allowed: OrderedDict[tuple[str, str], float] = OrderedDict()

    def __len__(self) -> int:
        return len(self._last_allowed)

    def allow(self, guild_id: str, user_id: str) -> bool:
        if self.cooldown_seconds <= 0:
            return True
        key = (str(guild_id), str(user_id))
        now = self._clock()
        previous = self._last_allowed.get(key)
        if previous is not None and previous + self.cooldown_seconds > now:
            return False

        self._last_allowed[key] = now
        self._last_allowed.move_to_end(key)
        if len(self._last_allowed) > self.max_entries:
            self._evict(now)
        return True

    def remaining(self, guild_id: str, user_id: str) -> float:
        if self.cooldown_seconds <= 0:
            return 0.0
        previous = self._last_allowed.get((str(guild_id), str(user_id)))
        if previous is None:
            return 0.0
        return max(0.0, previous + self.cooldown_seconds - self._clock())

    def prune(self) -> int:
        return self._prune_expired(self._clock())

    def _prune_expired(self, now: float) -> int:
        # Insertion order equals allow order, so expired keys sit at the front.
        removed = 0
        while self._last_allowed:
            key, stamp = next(iter(self._last_allowed.items()))
            if stamp + self.cooldown_seconds > now:
                break
            del self._last_allowed[key]
            removed += 1
        return removed

    def _evict(self, now: float) -> None:
        self._prune_expired(now)
        while len(self._last_allowed) > self.max_entries:
            self._last_allowed.popitem(last=False)
