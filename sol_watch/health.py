from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Callable, Iterable, Mapping

from .pipeline import PipelineCoordinator
from .transport import RunlogFn
from .worker import SubscriptionWorker, WorkerState


def build_heartbeat(
    *,
    workers: Iterable[SubscriptionWorker],
    coordinator: PipelineCoordinator,
    sink_stats: Mapping[str, int] | None = None,
    rpc_stats: Mapping[str, int] | None = None,
    uptime_seconds: float,
    now_mono: float,
) -> dict[str, Any]:
    venues = {worker.venue.venue_id: worker.health.snapshot(now_mono) for worker in workers}
    failed = sorted(
        venue_id for venue_id, item in venues.items() if item["state"] == WorkerState.FAILED.value
    )
    return {
        "record_type": "heartbeat",
        "uptime_seconds": round(uptime_seconds, 3),
        "venues": venues,
        "failed_venues": failed,
        "pipeline": coordinator.stats_snapshot(),
        "sink": dict(sink_stats or {}),
        "rpc": dict(rpc_stats or {}),
    }


async def heartbeat_loop(
    runlog: RunlogFn,
    interval_seconds: float,
    stop_event: asyncio.Event,
    build: Callable[[], dict[str, Any]],
) -> None:
    if interval_seconds <= 0:
        return
    while not stop_event.is_set():
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        if stop_event.is_set():
            break
        runlog(build())
