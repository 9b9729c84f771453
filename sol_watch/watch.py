from __future__ import annotations

import asyncio
import contextlib
import signal
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from .config import Config, ConfigError
from .dedup import sweep_loop
from .health import build_heartbeat, heartbeat_loop
from .pipeline import PipelineCoordinator, build_trackers
from .records import RawNotification
from .resolver import TransactionResolver
from .rpc import RpcClient
from .runlog import FATAL_ALL_WORKERS_FAILED, FATAL_CONFIG, FATAL_INTERNAL, Runlog
from .transport import SubscriptionTransport, build_transport
from .venues import VenueConfig, build_venues
from .worker import SubscriptionWorker
from .writers_ndjson import NdjsonSink
from .ws_primitives import RetryPolicy

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2

TransportFactory = Callable[[VenueConfig], SubscriptionTransport]


@dataclass(slots=True)
class WatchState:
    config: Config
    runlog: Runlog
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    all_failed_event: asyncio.Event = field(default_factory=asyncio.Event)
    stop_reason: str | None = None
    failed_venues: set[str] = field(default_factory=set)
    worker_count: int = 0

    def mark_failed(self, venue_id: str) -> None:
        self.failed_venues.add(venue_id)
        if self.worker_count and len(self.failed_venues) >= self.worker_count:
            self.all_failed_event.set()

    def request_stop(self, reason: str) -> None:
        if self.stop_event.is_set():
            return
        self.stop_reason = reason
        self.stop_event.set()


def _install_signal_handlers(state: WatchState) -> None:
    loop = asyncio.get_running_loop()

    def _request_stop(sig: signal.Signals) -> None:
        if state.stop_event.is_set():
            return
        loop.call_soon_threadsafe(state.request_stop, sig.name)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop, sig)
        except (NotImplementedError, RuntimeError):
            try:
                signal.signal(sig, lambda *_args, _sig=sig: _request_stop(_sig))
            except (ValueError, AttributeError):
                continue


def _build_rpc_client(config: Config, http_url: str) -> RpcClient:
    return RpcClient(
        http_url=http_url,
        timeout_seconds=config.rest_timeout,
        max_in_flight=config.rpc_max_in_flight,
    )


async def _cancel_tasks(tasks: list[asyncio.Task[Any]]) -> None:
    for task in tasks:
        task.cancel()
    for task in tasks:
        with contextlib.suppress(asyncio.CancelledError):
            await task


async def _watch_async(
    config: Config,
    *,
    duration_seconds: float | None = None,
    run_id: str | None = None,
    transport_factory: TransportFactory | None = None,
    rpc: RpcClient | None = None,
) -> int:
    output_dir = Path(config.output_dir)
    sink = NdjsonSink(
        output_dir,
        max_queue=config.notification_queue_max,
        fsync_on_close=config.ndjson_fsync_on_close,
    )
    runlog = Runlog(sink, run_id=run_id)
    try:
        venues = build_venues(config)
    except ConfigError as exc:
        runlog.fatal(FATAL_CONFIG, str(exc))
        sink.close()
        return EXIT_CONFIG
    print(f"sol_watch output dir: {output_dir}")

    if rpc is None:
        rpc = _build_rpc_client(config, venues[0].http_url)
    resolver = TransactionResolver(rpc, retry=RetryPolicy.from_config(config))
    coordinator = PipelineCoordinator(
        venues,
        resolver,
        sink,
        trackers=build_trackers(venues, config),
    )
    notifications: asyncio.Queue[RawNotification] = asyncio.Queue(
        maxsize=max(0, config.notification_queue_max)
    )
    state = WatchState(config=config, runlog=runlog, worker_count=len(venues))
    if transport_factory is None:

        def transport_factory(venue: VenueConfig) -> SubscriptionTransport:
            return build_transport(venue, config, rpc, runlog=runlog)

    workers = [
        SubscriptionWorker.from_config(
            venue,
            transport_factory(venue),
            notifications,
            config,
            runlog=runlog,
            on_failed=state.mark_failed,
        )
        for venue in venues
    ]
    _install_signal_handlers(state)
    runlog.write(
        {
            "record_type": "watch_start",
            "venues": [venue.to_dict() for venue in venues],
            "duration_seconds": duration_seconds,
            "output_dir": output_dir,
            "shared_dedup": config.shared_dedup,
        }
    )

    t0_mono = time.monotonic()

    def _heartbeat() -> dict[str, Any]:
        now = time.monotonic()
        return build_heartbeat(
            workers=workers,
            coordinator=coordinator,
            sink_stats=sink.stats(),
            rpc_stats=rpc.stats_snapshot(),
            uptime_seconds=now - t0_mono,
            now_mono=now,
        )

    worker_tasks: list[asyncio.Task[Any]] = []
    for worker in workers:
        task = asyncio.create_task(worker.run(state.stop_event))

        def _on_worker_done(done: asyncio.Task[Any], venue_id: str = worker.venue.venue_id) -> None:
            if done.cancelled() or done.exception() is None:
                return
            runlog.write(
                {
                    "record_type": "worker_crashed",
                    "venue": venue_id,
                    "reason": type(done.exception()).__name__,
                }
            )
            state.mark_failed(venue_id)

        task.add_done_callback(_on_worker_done)
        worker_tasks.append(task)
    coordinator_task = asyncio.create_task(coordinator.run(notifications, state.stop_event))
    background = [
        asyncio.create_task(
            sweep_loop(
                coordinator.trackers(),
                config.inflight_sweep_interval_seconds,
                state.stop_event,
            )
        ),
        asyncio.create_task(
            heartbeat_loop(runlog, config.heartbeat_interval_seconds, state.stop_event, _heartbeat)
        ),
    ]
    control = [
        asyncio.create_task(state.stop_event.wait()),
        asyncio.create_task(state.all_failed_event.wait()),
    ]
    if duration_seconds is not None and duration_seconds > 0:

        async def _stop_after_duration() -> None:
            await asyncio.sleep(duration_seconds)
            state.request_stop("duration")

        control.append(asyncio.create_task(_stop_after_duration()))

    done, _ = await asyncio.wait(
        [coordinator_task, *control], return_when=asyncio.FIRST_COMPLETED
    )
    exit_code = EXIT_OK
    if coordinator_task in done and coordinator_task.exception() is not None:
        exc = coordinator_task.exception()
        runlog.fatal(FATAL_INTERNAL, f"coordinator failed: {type(exc).__name__}: {exc}")
        state.request_stop("coordinator_failed")
        exit_code = EXIT_FATAL
    elif state.all_failed_event.is_set() and not state.stop_event.is_set():
        runlog.fatal(
            FATAL_ALL_WORKERS_FAILED,
            "every venue worker exhausted its reconnect budget",
            failed_venues=sorted(state.failed_venues),
        )
        state.request_stop("all_workers_failed")
        exit_code = EXIT_FATAL

    state.stop_event.set()
    grace = max(0.0, config.shutdown_grace_seconds)
    _, stuck_workers = await asyncio.wait(worker_tasks, timeout=grace)
    await _cancel_tasks(list(stuck_workers))
    _, stuck_coordinator = await asyncio.wait([coordinator_task], timeout=grace)
    await _cancel_tasks(list(stuck_coordinator))
    abandoned = await coordinator.drain(grace)
    await _cancel_tasks([task for task in [*background, *control] if not task.done()])

    runlog.write(_heartbeat(), blocking=True)
    runlog.write(
        {
            "record_type": "watch_stop",
            "reason": state.stop_reason or "signal",
            "exit_code": exit_code,
            "failed_venues": sorted(state.failed_venues),
            "abandoned_in_flight": abandoned,
            "pipeline": coordinator.stats_snapshot(),
        },
        blocking=True,
    )
    rpc.close()
    sink.close()
    return exit_code


def run_watch(
    config: Config,
    run_id: str | None = None,
    *,
    duration_seconds: float | None = None,
) -> int:
    try:
        return asyncio.run(
            _watch_async(config, duration_seconds=duration_seconds, run_id=run_id)
        )
    except KeyboardInterrupt:
        return EXIT_OK
