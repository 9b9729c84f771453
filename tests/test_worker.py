import asyncio

import pytest

from sol_watch.records import RawNotification
from sol_watch.transport import KEEPALIVE, FilterRejected, TransportError
from sol_watch.venues import TRANSPORT_LOGS, VenueConfig, VenueFilter
from sol_watch.worker import SubscriptionWorker, WorkerState
from sol_watch.ws_primitives import ReconnectPolicy


class FakeSubscription:
    def __init__(self, items=(), *, opened=False, unsubscribe_error=None):
        self.items = list(items)
        self.opened = opened
        self.last_pong_mono = None
        self.pings = 0
        self.unsubscribed = False
        self._unsubscribe_error = unsubscribe_error

    async def receive(self):
        if self.items:
            item = self.items.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        await asyncio.Event().wait()

    async def ping(self):
        self.pings += 1

    async def unsubscribe(self):
        self.unsubscribed = True
        if self._unsubscribe_error is not None:
            raise self._unsubscribe_error


class FakeTransport:
    def __init__(self, plan, *, requires_keepalive=False):
        self.plan = list(plan)
        self.requires_keepalive = requires_keepalive
        self.calls = []

    async def subscribe(self, venue_filter, commitment):
        self.calls.append((venue_filter, commitment))
        step = self.plan.pop(0) if self.plan else TransportError("exhausted")
        if isinstance(step, Exception):
            raise step
        return step


VENUE = VenueConfig(
    venue_id="orca",
    filter=VenueFilter(program_ids=("prog1",)),
    commitment="confirmed",
    stream_commitment="processed",
    transport_kind=TRANSPORT_LOGS,
    ws_url="wss://rpc.example",
    http_url="https://rpc.example",
    output_tag="orca",
)


def _note(signature, logs=None):
    return RawNotification(
        venue_id="orca",
        signature=signature,
        slot=1,
        detected_at_ms=0,
        log_lines=logs,
    )


def _worker(transport, queue, runlog, **kwargs):
    kwargs.setdefault(
        "reconnect",
        ReconnectPolicy(max_reconnects=3, base_delay_seconds=0.001, cap_delay_seconds=0.004),
    )
    kwargs.setdefault("poll_interval_seconds", 0.01)
    return SubscriptionWorker(VENUE, transport, queue, runlog=runlog.append, **kwargs)


async def _wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


def _records(runlog, record_type):
    return [record for record in runlog if record["record_type"] == record_type]


@pytest.mark.asyncio
async def test_rejected_scoped_filter_falls_back_to_broad_with_local_match():
    subscription = FakeSubscription(
        [
            _note("sig1", ["Program prog1 invoke [1]"]),
            _note("sig2", ["Program other invoke [1]"]),
            KEEPALIVE,
        ]
    )
    transport = FakeTransport([FilterRejected("mentions unsupported"), subscription])
    queue = asyncio.Queue()
    runlog = []
    worker = _worker(transport, queue, runlog)
    stop_event = asyncio.Event()
    task = asyncio.create_task(worker.run(stop_event))
    await _wait_until(lambda: worker.health.locally_filtered == 1)
    assert worker.state is WorkerState.STREAMING
    stop_event.set()
    assert await asyncio.wait_for(task, timeout=1.0) is WorkerState.DISCONNECTED
    assert [call[0] for call in transport.calls] == [VENUE.filter, None]
    assert transport.calls[0][1] == "processed"
    assert queue.qsize() == 1
    assert queue.get_nowait().signature == "sig1"
    assert worker.health.broad_filter is True
    assert subscription.unsubscribed is True
    assert len(_records(runlog, "subscribe_fallback")) == 1
    assert len(_records(runlog, "ws_connect")) == 1
    assert _records(runlog, "subscribe_ok")[0]["broad_filter"] is True


@pytest.mark.asyncio
async def test_exhausted_budget_fails_and_reports():
    failed = []
    transport = FakeTransport([TransportError("refused")] * 5)
    runlog = []
    worker = _worker(
        transport,
        asyncio.Queue(),
        runlog,
        reconnect=ReconnectPolicy(max_reconnects=2, base_delay_seconds=0.001, cap_delay_seconds=0.004),
        on_failed=failed.append,
    )
    state = await asyncio.wait_for(worker.run(asyncio.Event()), timeout=2.0)
    assert state is WorkerState.FAILED
    assert failed == ["orca"]
    assert len(transport.calls) == 3
    backoffs = [record["backoff_seconds"] for record in _records(runlog, "reconnect")]
    assert backoffs == [pytest.approx(0.002), pytest.approx(0.004), None]
    assert len(_records(runlog, "worker_failed")) == 1


@pytest.mark.asyncio
async def test_attempt_resets_after_streaming():
    transport = FakeTransport(
        [
            TransportError("first"),
            FakeSubscription([_note("sig1"), TransportError("dropped")]),
            TransportError("second"),
            FakeSubscription(),
        ]
    )
    runlog = []
    worker = _worker(
        transport,
        asyncio.Queue(),
        runlog,
        reconnect=ReconnectPolicy(max_reconnects=2, base_delay_seconds=0.001, cap_delay_seconds=0.004),
    )
    stop_event = asyncio.Event()
    task = asyncio.create_task(worker.run(stop_event))
    await _wait_until(lambda: len(transport.calls) == 4 and worker.state is WorkerState.SUBSCRIBED)
    stop_event.set()
    await asyncio.wait_for(task, timeout=1.0)
    attempts = [record["attempt"] for record in _records(runlog, "reconnect")]
    assert attempts == [1, 1, 2]
    assert worker.health.reconnects == 3
    assert worker.health.streams_started == 1


@pytest.mark.asyncio
async def test_unanswered_keepalive_triggers_idle_reconnect():
    transport = FakeTransport([FakeSubscription(), FakeSubscription()], requires_keepalive=True)
    runlog = []
    worker = _worker(
        transport,
        asyncio.Queue(),
        runlog,
        keepalive_interval_seconds=0.01,
        data_idle_reconnect_seconds=0.05,
    )
    stop_event = asyncio.Event()
    task = asyncio.create_task(worker.run(stop_event))
    await _wait_until(lambda: len(transport.calls) >= 2)
    stop_event.set()
    await asyncio.wait_for(task, timeout=1.0)
    reconnects = _records(runlog, "reconnect")
    assert reconnects[0]["trigger"] == "data_idle_timeout"


@pytest.mark.asyncio
async def test_quiet_subscription_without_keepalive_is_never_failed():
    transport = FakeTransport([FakeSubscription()], requires_keepalive=False)
    runlog = []
    worker = _worker(
        transport,
        asyncio.Queue(),
        runlog,
        reconnect=ReconnectPolicy(max_reconnects=3, base_delay_seconds=0.001, cap_delay_seconds=0.004),
        data_idle_reconnect_seconds=0.02,
    )
    stop_event = asyncio.Event()
    task = asyncio.create_task(worker.run(stop_event))
    # Several times reconnect_max * idle limit.
    await asyncio.sleep(0.3)
    assert worker.state is WorkerState.SUBSCRIBED
    assert len(transport.calls) == 1
    assert _records(runlog, "reconnect") == []
    stop_event.set()
    assert await asyncio.wait_for(task, timeout=1.0) is WorkerState.DISCONNECTED


@pytest.mark.asyncio
async def test_keepalive_pings_only_when_transport_requires_them():
    subscription = FakeSubscription()
    transport = FakeTransport([subscription], requires_keepalive=True)
    worker = _worker(transport, asyncio.Queue(), [], keepalive_interval_seconds=0.01)
    stop_event = asyncio.Event()
    task = asyncio.create_task(worker.run(stop_event))
    await _wait_until(lambda: subscription.pings >= 3)
    stop_event.set()
    await asyncio.wait_for(task, timeout=1.0)

    quiet = FakeSubscription()
    worker = _worker(FakeTransport([quiet]), asyncio.Queue(), [], keepalive_interval_seconds=0.01)
    stop_event = asyncio.Event()
    task = asyncio.create_task(worker.run(stop_event))
    await asyncio.sleep(0.05)
    stop_event.set()
    await asyncio.wait_for(task, timeout=1.0)
    assert quiet.pings == 0


@pytest.mark.asyncio
async def test_stream_open_event_enters_streaming_and_resets_counters():
    subscription = FakeSubscription(opened=True)
    worker = _worker(FakeTransport([subscription]), asyncio.Queue(), [])
    worker.health.events = 42
    stop_event = asyncio.Event()
    task = asyncio.create_task(worker.run(stop_event))
    await _wait_until(lambda: worker.state is WorkerState.STREAMING)
    assert worker.health.events == 0
    assert worker.health.streams_started == 1
    stop_event.set()
    await asyncio.wait_for(task, timeout=1.0)


@pytest.mark.asyncio
async def test_unsubscribe_failure_is_logged_not_raised():
    subscription = FakeSubscription(unsubscribe_error=RuntimeError("socket gone"))
    runlog = []
    worker = _worker(FakeTransport([subscription]), asyncio.Queue(), runlog)
    stop_event = asyncio.Event()
    task = asyncio.create_task(worker.run(stop_event))
    await _wait_until(lambda: worker.state is WorkerState.SUBSCRIBED)
    stop_event.set()
    assert await asyncio.wait_for(task, timeout=1.0) is WorkerState.DISCONNECTED
    errors = _records(runlog, "unsubscribe_error")
    assert errors and errors[0]["reason"] == "RuntimeError"


@pytest.mark.asyncio
async def test_full_queue_counts_drops():
    subscription = FakeSubscription([_note("sig1"), _note("sig2")])
    queue = asyncio.Queue(maxsize=1)
    worker = _worker(FakeTransport([subscription]), queue, [])
    stop_event = asyncio.Event()
    task = asyncio.create_task(worker.run(stop_event))
    await _wait_until(lambda: worker.health.dropped.total == 1)
    stop_event.set()
    await asyncio.wait_for(task, timeout=1.0)
    assert queue.qsize() == 1
    assert worker.health.events == 2
