from __future__ import annotations

import asyncio
import contextlib
import inspect
import itertools
import time
from collections import deque
from typing import Any, Callable, Protocol

import orjson
import websockets

from .config import Config
from .records import RawNotification
from .rpc import RpcClient, RpcError, parse_transaction
from .venues import (
    TRANSPORT_ACCOUNT,
    TRANSPORT_LOGS,
    TRANSPORT_TRANSACTIONS,
    VenueConfig,
    VenueFilter,
)
from .ws_primitives import normalize_ws_keepalive

CONNECT_SUPPORTS_CLOSE_TIMEOUT = (
    "close_timeout" in inspect.signature(websockets.connect).parameters
)
CONNECT_HEADERS_PARAM: str | None
if "extra_headers" in inspect.signature(websockets.connect).parameters:
    CONNECT_HEADERS_PARAM = "extra_headers"
elif "additional_headers" in inspect.signature(websockets.connect).parameters:
    CONNECT_HEADERS_PARAM = "additional_headers"
else:
    CONNECT_HEADERS_PARAM = None
DEFAULT_WS_CLOSE_TIMEOUT_SECONDS = 5.0

RunlogFn = Callable[[dict[str, Any]], None]


class TransportError(RuntimeError):
    pass


class FilterRejected(TransportError):
    pass


class MalformedMessage(TransportError):
    pass


class _Keepalive:
    __slots__ = ()

    def __repr__(self) -> str:
        return "KEEPALIVE"


# Traffic that proves the stream is alive but carries no notification.
KEEPALIVE = _Keepalive()


def now_ms() -> int:
    return time.time_ns() // 1_000_000


class Subscription(Protocol):
    opened: bool
    last_pong_mono: float | None

    async def receive(self) -> RawNotification | _Keepalive: ...

    async def ping(self) -> None: ...

    async def unsubscribe(self) -> None: ...


class SubscriptionTransport(Protocol):
    requires_keepalive: bool

    async def subscribe(
        self, venue_filter: VenueFilter | None, commitment: str
    ) -> Subscription: ...


def build_connect_kwargs(config: Config) -> dict[str, Any]:
    ping_interval, ping_timeout, _, _ = normalize_ws_keepalive(config)
    connect_kwargs: dict[str, Any] = {
        "ping_interval": ping_interval,
        "ping_timeout": ping_timeout,
    }
    if CONNECT_SUPPORTS_CLOSE_TIMEOUT:
        connect_kwargs["close_timeout"] = DEFAULT_WS_CLOSE_TIMEOUT_SECONDS
    if config.ws_user_agent and CONNECT_HEADERS_PARAM is not None:
        connect_kwargs[CONNECT_HEADERS_PARAM] = [("User-Agent", config.ws_user_agent)]
    return connect_kwargs


def _decode_message(raw: Any) -> dict[str, Any]:
    if isinstance(raw, (bytes, bytearray, memoryview)):
        raw = bytes(raw)
    try:
        message = orjson.loads(raw)
    except orjson.JSONDecodeError as exc:
        raise MalformedMessage(f"undecodable frame: {exc}") from exc
    if not isinstance(message, dict):
        raise MalformedMessage("frame is not a JSON object")
    return message


def _int_or_none(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class _WsSubscription:
    notification_method = ""
    unsubscribe_method = ""

    def __init__(
        self,
        ws: Any,
        *,
        venue_id: str,
        venue_filter: VenueFilter | None,
        commitment: str,
        ack_timeout_seconds: float,
        clock_ms: Callable[[], int] = now_ms,
    ) -> None:
        self._ws = ws
        self._venue_id = venue_id
        self._filter = venue_filter
        self._commitment = commitment
        self._ack_timeout_seconds = ack_timeout_seconds
        self._clock_ms = clock_ms
        self._ids = itertools.count(1)
        self._subscriptions: dict[Any, str] = {}
        self._backlog: deque[dict[str, Any]] = deque()
        self._closed = False
        self.opened = False
        self.last_pong_mono: float | None = None

    async def start(self) -> None:
        raise NotImplementedError

    def _rejection(self, method: str, error: Any) -> TransportError:
        return TransportError(f"{method} rejected: {error}")

    async def _notification(
        self, key: str | None, result: Any
    ) -> RawNotification | None:
        raise NotImplementedError

    async def _send(self, method: str, params: list[Any]) -> int:
        request_id = next(self._ids)
        payload = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
        await self._ws.send(orjson.dumps(payload).decode("utf-8"))
        return request_id

    async def _request(self, method: str, params: list[Any], *, key: str) -> None:
        request_id = await self._send(method, params)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._ack_timeout_seconds
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise TransportError(f"{method} ack timeout")
            try:
                raw = await asyncio.wait_for(self._ws.recv(), timeout=remaining)
            except asyncio.TimeoutError as exc:
                raise TransportError(f"{method} ack timeout") from exc
            message = _decode_message(raw)
            if message.get("id") != request_id:
                # Notifications for earlier subscriptions can beat this ack.
                self._backlog.append(message)
                continue
            if message.get("error") is not None:
                raise self._rejection(method, message["error"])
            if message.get("result") is None:
                raise MalformedMessage(f"{method} ack without subscription id")
            self._subscriptions[message["result"]] = key
            return

    async def receive(self) -> RawNotification | _Keepalive:
        if self._backlog:
            message = self._backlog.popleft()
        else:
            message = _decode_message(await self._ws.recv())
        if message.get("method") != self.notification_method:
            return KEEPALIVE
        params = message.get("params")
        if not isinstance(params, dict):
            raise MalformedMessage(f"{self.notification_method} without params")
        key = self._subscriptions.get(params.get("subscription"))
        notification = await self._notification(key, params.get("result"))
        if notification is None:
            return KEEPALIVE
        return notification

    async def ping(self) -> None:
        waiter = await self._ws.ping()
        waiter.add_done_callback(self._on_pong)

    def _on_pong(self, future: Any) -> None:
        if future.cancelled() or future.exception() is not None:
            return
        self.last_pong_mono = time.monotonic()

    async def unsubscribe(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            for subscription_id in list(self._subscriptions):
                await self._send(self.unsubscribe_method, [subscription_id])
        finally:
            await self._ws.close()

    def __aiter__(self) -> "_WsSubscription":
        return self

    async def __anext__(self) -> RawNotification:
        while True:
            try:
                item = await self.receive()
            except websockets.exceptions.ConnectionClosedOK as exc:
                raise StopAsyncIteration from exc
            if isinstance(item, RawNotification):
                return item


class _LogsSubscription(_WsSubscription):
    notification_method = "logsNotification"
    unsubscribe_method = "logsUnsubscribe"

    async def start(self) -> None:
        options = {"commitment": self._commitment}
        if self._filter is None:
            await self._request("logsSubscribe", ["all", options], key="all")
            return
        for program_id in self._filter.program_ids:
            await self._request(
                "logsSubscribe",
                [{"mentions": [program_id]}, options],
                key=program_id,
            )

    def _rejection(self, method: str, error: Any) -> TransportError:
        if self._filter is not None:
            return FilterRejected(f"{method} rejected scoped filter: {error}")
        return super()._rejection(method, error)

    async def _notification(
        self, key: str | None, result: Any
    ) -> RawNotification | None:
        if not isinstance(result, dict):
            raise MalformedMessage("logsNotification without result")
        value = result.get("value") or {}
        signature = value.get("signature")
        if not signature:
            return None
        context = result.get("context") or {}
        logs = value.get("logs")
        return RawNotification(
            venue_id=self._venue_id,
            signature=str(signature),
            slot=_int_or_none(context.get("slot")),
            detected_at_ms=self._clock_ms(),
            log_lines=tuple(str(line) for line in logs) if isinstance(logs, list) else None,
        )


class _AccountSubscription(_WsSubscription):
    """One accountSubscribe per pool; a change is mapped to the pool's newest signature."""

    notification_method = "accountNotification"
    unsubscribe_method = "accountUnsubscribe"

    def __init__(
        self,
        ws: Any,
        *,
        rpc: RpcClient,
        lookup_commitment: str,
        runlog: RunlogFn | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(ws, **kwargs)
        self._rpc = rpc
        self._lookup_commitment = lookup_commitment
        self._runlog = runlog
        self._lookup: asyncio.Future[RawNotification | None] | None = None
        self.lookup_errors = 0

    async def start(self) -> None:
        if self._filter is None or not self._filter.pools:
            raise TransportError("account subscriptions need a pool list")
        for pool in sorted(self._filter.pools):
            await self._request(
                "accountSubscribe",
                [pool, {"commitment": self._commitment, "encoding": "base64"}],
                key=pool,
            )

    async def receive(self) -> RawNotification | _Keepalive:
        if self._lookup is not None:
            notification = await self._await_lookup()
            return KEEPALIVE if notification is None else notification
        return await super().receive()

    async def _await_lookup(self) -> RawNotification | None:
        task = self._lookup
        if task is None:
            return None
        # Shielded so an idle-timeout cancel of receive() does not lose the change.
        result = await asyncio.shield(task)
        self._lookup = None
        return result

    async def _notification(
        self, key: str | None, result: Any
    ) -> RawNotification | None:
        if key is None:
            return None
        self._lookup = asyncio.ensure_future(self._latest_signature(key, self._clock_ms()))
        return await self._await_lookup()

    async def _latest_signature(self, pool: str, detected_at_ms: int) -> RawNotification | None:
        try:
            latest = await self._rpc.get_latest_signature(pool, self._lookup_commitment)
        except RpcError as exc:
            self.lookup_errors += 1
            if self._runlog is not None:
                self._runlog(
                    {
                        "record_type": "signature_lookup_error",
                        "venue": self._venue_id,
                        "pool": pool,
                        "tag": exc.tag,
                        "error": str(exc)[:200],
                    }
                )
            return None
        if latest is None:
            return None
        signature, slot = latest
        return RawNotification(
            venue_id=self._venue_id,
            signature=signature,
            slot=slot,
            detected_at_ms=detected_at_ms,
            pool_hint=pool,
        )

    async def unsubscribe(self) -> None:
        if self._lookup is not None and not self._lookup.done():
            self._lookup.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._lookup
        await super().unsubscribe()


class _TransactionStreamSubscription(_WsSubscription):
    notification_method = "transactionNotification"
    unsubscribe_method = "transactionUnsubscribe"

    async def start(self) -> None:
        if self._filter is None or not self._filter.pools:
            raise TransportError("transaction stream needs a pool list")
        await self._request(
            "transactionSubscribe",
            [
                {
                    "accountInclude": sorted(self._filter.pools),
                    "vote": False,
                    "failed": False,
                },
                {
                    "commitment": self._commitment,
                    "encoding": "json",
                    "transactionDetails": "full",
                    "showRewards": False,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
            key="transactions",
        )
        # The ack doubles as the stream-open event.
        self.opened = True

    async def _notification(
        self, key: str | None, result: Any
    ) -> RawNotification | None:
        if not isinstance(result, dict):
            raise MalformedMessage("transactionNotification without result")
        detected_at_ms = self._clock_ms()
        try:
            tx = parse_transaction(result)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise MalformedMessage(f"bad transaction payload: {exc}") from exc
        if not tx.signature:
            return None
        return RawNotification(
            venue_id=self._venue_id,
            signature=tx.signature,
            slot=tx.slot,
            detected_at_ms=detected_at_ms,
            log_lines=tx.log_lines,
            transaction=tx,
        )


class _WsTransport:
    requires_keepalive = False
    subscription_cls: type[_WsSubscription] = _WsSubscription

    def __init__(
        self,
        venue: VenueConfig,
        config: Config,
        *,
        connect: Callable[..., Any] | None = None,
    ) -> None:
        self._venue = venue
        self._ack_timeout_seconds = config.subscribe_ack_timeout_seconds
        self._connect_kwargs = build_connect_kwargs(config)
        self._connect = connect or websockets.connect

    def _subscription_kwargs(self) -> dict[str, Any]:
        return {}

    async def subscribe(
        self, venue_filter: VenueFilter | None, commitment: str
    ) -> _WsSubscription:
        ws = await self._connect(self._venue.ws_url, **self._connect_kwargs)
        subscription = self.subscription_cls(
            ws,
            venue_id=self._venue.venue_id,
            venue_filter=venue_filter,
            commitment=commitment,
            ack_timeout_seconds=self._ack_timeout_seconds,
            **self._subscription_kwargs(),
        )
        try:
            await subscription.start()
        except BaseException:
            with contextlib.suppress(Exception):
                await ws.close()
            raise
        return subscription


class LogsTransport(_WsTransport):
    subscription_cls = _LogsSubscription


class AccountTransport(_WsTransport):
    subscription_cls = _AccountSubscription

    def __init__(
        self,
        venue: VenueConfig,
        config: Config,
        *,
        rpc: RpcClient,
        runlog: RunlogFn | None = None,
        connect: Callable[..., Any] | None = None,
    ) -> None:
        super().__init__(venue, config, connect=connect)
        self._rpc = rpc
        self._runlog = runlog

    def _subscription_kwargs(self) -> dict[str, Any]:
        return {
            "rpc": self._rpc,
            "lookup_commitment": self._venue.commitment,
            "runlog": self._runlog,
        }


class TransactionStreamTransport(_WsTransport):
    requires_keepalive = True
    subscription_cls = _TransactionStreamSubscription


def build_transport(
    venue: VenueConfig,
    config: Config,
    rpc: RpcClient,
    *,
    runlog: RunlogFn | None = None,
) -> SubscriptionTransport:
    if venue.transport_kind == TRANSPORT_LOGS:
        return LogsTransport(venue, config)
    if venue.transport_kind == TRANSPORT_ACCOUNT:
        return AccountTransport(venue, config, rpc=rpc, runlog=runlog)
    if venue.transport_kind == TRANSPORT_TRANSACTIONS:
        return TransactionStreamTransport(venue, config)
    raise ValueError(f"unknown transport kind: {venue.transport_kind}")
