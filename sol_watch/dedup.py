from __future__ import annotations

import asyncio
import contextlib
import time
from collections import OrderedDict
from typing import Callable, Iterable


class SignatureTracker:
    """Per-venue seen set plus a time-stamped in-flight map.

    A signature enters both structures in the same call, so the in-flight map
    is always a subset of the seen set. The seen set is bounded by insertion
    order; an evicted signature could be emitted again if the source replays
    it much later.
    """

    def __init__(
        self,
        *,
        max_seen: int | None = None,
        max_age_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_seen is not None and max_seen <= 0:
            max_seen = None
        self._max_seen = max_seen
        self._max_age_seconds = max_age_seconds
        self._clock = clock
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._in_flight: dict[str, float] = {}
        self.duplicates = 0
        self.evicted = 0
        self.swept = 0

    def should_process(self, signature: str) -> bool:
        if not signature:
            return False
        if signature in self._seen:
            self.duplicates += 1
            return False
        self._seen[signature] = None
        self._in_flight[signature] = self._clock()
        if self._max_seen is not None:
            while len(self._seen) > self._max_seen:
                oldest, _ = self._seen.popitem(last=False)
                self._in_flight.pop(oldest, None)
                self.evicted += 1
        return True

    def finish(self, signature: str) -> None:
        self._in_flight.pop(signature, None)

    def sweep(self, now: float | None = None) -> int:
        if now is None:
            now = self._clock()
        stale = [
            signature
            for signature, started in self._in_flight.items()
            if now - started > self._max_age_seconds
        ]
        for signature in stale:
            del self._in_flight[signature]
        self.swept += len(stale)
        return len(stale)

    def seen(self, signature: str) -> bool:
        return signature in self._seen

    def in_flight(self, signature: str) -> bool:
        return signature in self._in_flight

    def seen_signatures(self) -> set[str]:
        return set(self._seen)

    def in_flight_signatures(self) -> set[str]:
        return set(self._in_flight)

    def stats(self) -> dict[str, int]:
        return {
            "seen": len(self._seen),
            "in_flight": len(self._in_flight),
            "duplicates": self.duplicates,
            "evicted": self.evicted,
            "swept": self.swept,
        }


async def sweep_loop(
    trackers: Iterable[SignatureTracker],
    interval_seconds: float,
    stop_event: asyncio.Event,
) -> None:
    unique = list({id(tracker): tracker for tracker in trackers}.values())
    if interval_seconds <= 0:
        return
    while not stop_event.is_set():
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        if stop_event.is_set():
            break
        for tracker in unique:
            tracker.sweep()
