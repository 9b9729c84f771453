import asyncio

import pytest

from sol_watch.health import build_heartbeat, heartbeat_loop
from sol_watch.pipeline import PipelineCoordinator
from sol_watch.resolver import TransactionResolver
from sol_watch.venues import TRANSPORT_LOGS, VenueConfig, VenueFilter
from sol_watch.worker import SubscriptionWorker, WorkerState
from sol_watch.ws_primitives import ReconnectPolicy, RetryPolicy


def _venue(venue_id):
    return VenueConfig(
        venue_id=venue_id,
        filter=VenueFilter(program_ids=("prog1",)),
        commitment="confirmed",
        stream_commitment="processed",
        transport_kind=TRANSPORT_LOGS,
        ws_url="wss://rpc.example",
        http_url="https://rpc.example",
        output_tag=venue_id,
    )


class NullSink:
    async def append_wait(self, name, record):
        return True


def test_heartbeat_reports_failed_venues():
    venues = [_venue("orca"), _venue("humidifi")]
    queue = asyncio.Queue()
    workers = [
        SubscriptionWorker(venue, None, queue, reconnect=ReconnectPolicy(1, 1.0, 2.0))
        for venue in venues
    ]
    workers[1].health.state = WorkerState.FAILED
    workers[0].health.events = 3
    workers[0].health.last_event_mono = 10.0
    coordinator = PipelineCoordinator(
        venues, TransactionResolver(None, retry=RetryPolicy(2, 0.15)), NullSink()
    )
    record = build_heartbeat(
        workers=workers,
        coordinator=coordinator,
        sink_stats={"written": 4},
        uptime_seconds=12.3456,
        now_mono=12.5,
    )
    assert record["record_type"] == "heartbeat"
    assert record["uptime_seconds"] == 12.346
    assert record["failed_venues"] == ["humidifi"]
    assert record["venues"]["orca"]["events"] == 3
    assert record["venues"]["orca"]["seconds_since_event"] == 2.5
    assert record["sink"] == {"written": 4}
    assert record["rpc"] == {}


@pytest.mark.asyncio
async def test_heartbeat_loop_emits_until_stopped():
    records = []
    stop_event = asyncio.Event()
    task = asyncio.create_task(
        heartbeat_loop(records.append, 0.01, stop_event, lambda: {"record_type": "heartbeat"})
    )
    while len(records) < 2:
        await asyncio.sleep(0.005)
    stop_event.set()
    await asyncio.wait_for(task, timeout=1.0)
    assert all(record["record_type"] == "heartbeat" for record in records)
