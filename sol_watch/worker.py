from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

import websockets

from .config import Config
from .records import RawNotification
from .transport import (
    FilterRejected,
    MalformedMessage,
    RunlogFn,
    Subscription,
    SubscriptionTransport,
    TransportError,
)
from .venues import VenueConfig
from .ws_primitives import DropCounter, ReconnectPolicy, normalize_ws_keepalive


class WorkerState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    STREAMING = "streaming"
    RECONNECT_WAIT = "reconnect_wait"
    FAILED = "failed"


class _DataIdleTimeout(TimeoutError):
    pass


def _looks_like_ping_timeout(exc: Exception) -> bool:
    reason = getattr(exc, "reason", None)
    if reason:
        reason_text = str(reason).lower()
        if "ping" in reason_text and "timeout" in reason_text:
            return True
    message = str(exc).lower()
    return "ping" in message and "timeout" in message


def classify_reconnect_trigger(exc: Exception) -> str:
    if isinstance(exc, _DataIdleTimeout):
        return "data_idle_timeout"
    if isinstance(exc, FilterRejected):
        return "subscribe_rejected"
    if isinstance(exc, MalformedMessage):
        return "malformed_message"
    if isinstance(exc, websockets.exceptions.ConnectionClosed):
        if _looks_like_ping_timeout(exc):
            return "ping_timeout"
        return "stream_closed"
    if isinstance(exc, TransportError):
        return "transport_error"
    return "exception"


@dataclass(slots=True)
class WorkerHealth:
    state: WorkerState = WorkerState.DISCONNECTED
    attempt: int = 0
    reconnects: int = 0
    streams_started: int = 0
    events: int = 0
    last_event_mono: float | None = None
    broad_filter: bool = False
    locally_filtered: int = 0
    dropped: DropCounter = field(default_factory=DropCounter)
    last_error: str | None = None

    def reset_stream_counters(self) -> None:
        self.events = 0
        self.last_event_mono = None

    def snapshot(self, now_mono: float) -> dict[str, Any]:
        since = None
        if self.last_event_mono is not None:
            since = round(max(0.0, now_mono - self.last_event_mono), 3)
        return {
            "state": self.state.value,
            "attempt": self.attempt,
            "reconnects": self.reconnects,
            "streams_started": self.streams_started,
            "events": self.events,
            "seconds_since_event": since,
            "broad_filter": self.broad_filter,
            "locally_filtered": self.locally_filtered,
            "dropped": self.dropped.total,
            "last_error": self.last_error,
        }


class SubscriptionWorker:
    """Owns one venue's live subscription and feeds notifications into a queue.

    Reconnects with exponential backoff; after the reconnect budget is spent
    the worker parks in FAILED and reports through ``on_failed``.
    """

    def __init__(
        self,
        venue: VenueConfig,
        transport: SubscriptionTransport,
        out_queue: asyncio.Queue[RawNotification],
        *,
        reconnect: ReconnectPolicy,
        keepalive_interval_seconds: float | None = None,
        data_idle_reconnect_seconds: float | None = None,
        runlog: RunlogFn | None = None,
        on_failed: Callable[[str], None] | None = None,
        poll_interval_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.venue = venue
        self._transport = transport
        self._queue = out_queue
        self._reconnect = reconnect
        self._keepalive_interval_seconds = keepalive_interval_seconds
        self._data_idle_reconnect_seconds = data_idle_reconnect_seconds
        self._runlog = runlog
        self._on_failed = on_failed
        self._poll_interval_seconds = poll_interval_seconds
        self._clock = clock
        self.health = WorkerHealth()

    @classmethod
    def from_config(
        cls,
        venue: VenueConfig,
        transport: SubscriptionTransport,
        out_queue: asyncio.Queue[RawNotification],
        config: Config,
        *,
        runlog: RunlogFn | None = None,
        on_failed: Callable[[str], None] | None = None,
    ) -> "SubscriptionWorker":
        _, _, keepalive_interval, data_idle_reconnect = normalize_ws_keepalive(config)
        return cls(
            venue,
            transport,
            out_queue,
            reconnect=ReconnectPolicy.from_config(config),
            keepalive_interval_seconds=keepalive_interval,
            data_idle_reconnect_seconds=data_idle_reconnect,
            runlog=runlog,
            on_failed=on_failed,
        )

    @property
    def state(self) -> WorkerState:
        return self.health.state

    def _log(self, record: dict[str, Any]) -> None:
        if self._runlog is not None:
            record.setdefault("venue", self.venue.venue_id)
            self._runlog(record)

    def _set_state(self, state: WorkerState) -> None:
        previous = self.health.state
        if previous is state:
            return
        self.health.state = state
        self._log(
            {
                "record_type": "worker_state",
                "from_state": previous.value,
                "to_state": state.value,
                "attempt": self.health.attempt,
            }
        )

    def _enter_streaming(self) -> None:
        self.health.attempt = 0
        self.health.streams_started += 1
        self.health.reset_stream_counters()
        self._set_state(WorkerState.STREAMING)

    async def run(self, stop_event: asyncio.Event) -> WorkerState:
        while not stop_event.is_set():
            self._set_state(WorkerState.CONNECTING)
            subscription: Subscription | None = None
            failure: Exception | None = None
            try:
                subscription = await self._subscribe()
                self._set_state(WorkerState.SUBSCRIBED)
                if subscription.opened:
                    self._enter_streaming()
                await self._stream(subscription, stop_event)
            except Exception as exc:
                failure = exc
            finally:
                if subscription is not None:
                    await self._close(subscription)
            if stop_event.is_set() or failure is None:
                break
            if not await self._reconnect_wait(failure, stop_event):
                return self.health.state
        self._set_state(WorkerState.DISCONNECTED)
        return self.health.state

    async def _subscribe(self) -> Subscription:
        commitment = self.venue.stream_commitment
        self._log(
            {
                "record_type": "ws_connect",
                "url": self.venue.ws_url,
                "transport": self.venue.transport_kind,
                "attempt": self.health.attempt,
            }
        )
        try:
            subscription = await self._transport.subscribe(
                None if self.health.broad_filter else self.venue.filter, commitment
            )
        except FilterRejected as exc:
            if self.health.broad_filter:
                raise
            # Some providers mishandle program-scoped filters; match locally instead.
            self.health.broad_filter = True
            self._log(
                {
                    "record_type": "subscribe_fallback",
                    "error": str(exc)[:200],
                    "program_ids": list(self.venue.filter.program_ids),
                }
            )
            subscription = await self._transport.subscribe(None, commitment)
        self._log(
            {
                "record_type": "subscribe_ok",
                "broad_filter": self.health.broad_filter,
                "commitment": commitment,
            }
        )
        return subscription

    async def _stream(self, subscription: Subscription, stop_event: asyncio.Event) -> None:
        keepalive = None
        idle_limit = None
        # Silence counts as a dead stream only when pongs stop too.
        if self._transport.requires_keepalive:
            keepalive = self._keepalive_interval_seconds
            idle_limit = self._data_idle_reconnect_seconds
        last_rx = self._clock()
        last_ping = last_rx
        while not stop_event.is_set():
            now = self._clock()
            if keepalive is not None and now - last_ping >= keepalive:
                await subscription.ping()
                last_ping = now
            pong = subscription.last_pong_mono
            if pong is not None and pong > last_rx:
                last_rx = pong
            recv_timeout = self._poll_interval_seconds
            if idle_limit is not None:
                remaining = idle_limit - (now - last_rx)
                if remaining <= 0:
                    raise _DataIdleTimeout("data idle timeout")
                recv_timeout = min(recv_timeout, remaining)
            if keepalive is not None:
                recv_timeout = min(recv_timeout, max(0.001, keepalive - (now - last_ping)))
            try:
                item = await asyncio.wait_for(subscription.receive(), timeout=recv_timeout)
            except asyncio.TimeoutError:
                continue
            last_rx = self._clock()
            if not isinstance(item, RawNotification):
                continue
            if self.health.state is not WorkerState.STREAMING:
                self._enter_streaming()
            self._emit(item)

    def _emit(self, notification: RawNotification) -> None:
        if self.health.broad_filter and notification.log_lines is not None:
            if not self.venue.filter.logs_mention_program(notification.log_lines):
                self.health.locally_filtered += 1
                return
        self.health.events += 1
        self.health.last_event_mono = self._clock()
        try:
            self._queue.put_nowait(notification)
        except asyncio.QueueFull:
            self.health.dropped.bump()

    async def _close(self, subscription: Subscription) -> None:
        try:
            await subscription.unsubscribe()
        except Exception as exc:
            self._log(
                {
                    "record_type": "unsubscribe_error",
                    "reason": type(exc).__name__,
                    "error": str(exc)[:200],
                }
            )

    async def _reconnect_wait(self, exc: Exception, stop_event: asyncio.Event) -> bool:
        self.health.reconnects += 1
        self.health.attempt += 1
        self.health.last_error = f"{type(exc).__name__}: {exc}"[:200]
        attempt = self.health.attempt
        allowed = self._reconnect.can_reconnect(attempt)
        backoff = self._reconnect.backoff(attempt) if allowed else None
        self._log(
            {
                "record_type": "reconnect",
                "reason": type(exc).__name__,
                "trigger": classify_reconnect_trigger(exc),
                "error": str(exc)[:200],
                "attempt": attempt,
                "reconnects": self.health.reconnects,
                "backoff_seconds": backoff,
            }
        )
        if backoff is None:
            self._set_state(WorkerState.FAILED)
            self._log(
                {
                    "record_type": "worker_failed",
                    "attempt": attempt,
                    "max_reconnects": self._reconnect.max_reconnects,
                    "last_error": self.health.last_error,
                }
            )
            if self._on_failed is not None:
                self._on_failed(self.venue.venue_id)
            return False
        self._set_state(WorkerState.RECONNECT_WAIT)
        if backoff > 0:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop_event.wait(), timeout=backoff)
        self._set_state(WorkerState.DISCONNECTED)
        return True
