from __future__ import annotations

import asyncio
import itertools
from typing import Any, Callable

import requests
from requests.adapters import HTTPAdapter

from .records import ResolvedTransaction, TokenBalance

RPC_USER_AGENT = "sol_watch/rpc"

TAG_RATE_LIMITED = "rate_limited"
TAG_GATEWAY_TIMEOUT = "gateway_timeout"
TAG_RPC_ERROR = "rpc_error"

_GATEWAY_STATUS = {502, 503, 504}
_RATE_LIMIT_CODES = {429, -32429}


class RpcError(RuntimeError):
    tag = TAG_RPC_ERROR


class RateLimited(RpcError):
    tag = TAG_RATE_LIMITED


class GatewayTimeout(RpcError):
    tag = TAG_GATEWAY_TIMEOUT


def classify_failure(exc: BaseException) -> RpcError:
    if isinstance(exc, RpcError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, requests.Timeout)):
        return GatewayTimeout(f"timeout: {exc}" if str(exc) else "timeout")
    if isinstance(exc, requests.HTTPError):
        status = getattr(exc.response, "status_code", None)
        if status == 429:
            return RateLimited(str(exc))
        if status in _GATEWAY_STATUS:
            return GatewayTimeout(str(exc))
        return RpcError(str(exc))
    message = str(exc)
    lower = message.lower()
    if "429" in message or "too many requests" in lower or "rate limit" in lower:
        return RateLimited(message)
    if "504" in message or "gateway" in lower or "timed out" in lower:
        return GatewayTimeout(message)
    return RpcError(f"{type(exc).__name__}: {message}")


def _error_from_body(error: Any) -> RpcError:
    if isinstance(error, dict):
        code = error.get("code")
        message = str(error.get("message") or error)
    else:
        code = None
        message = str(error)
    lower = message.lower()
    if code in _RATE_LIMIT_CODES or "429" in message or "rate limit" in lower:
        return RateLimited(message)
    if "504" in message or "gateway" in lower:
        return GatewayTimeout(message)
    if code is None:
        return RpcError(message)
    return RpcError(f"rpc error {code}: {message}")


def _account_key(entry: Any) -> str | None:
    if isinstance(entry, str):
        return entry
    if isinstance(entry, dict):
        key = entry.get("pubkey")
        return str(key) if key else None
    return None


def _token_balances(entries: Any) -> tuple[TokenBalance, ...]:
    if not isinstance(entries, list):
        return ()
    balances: list[TokenBalance] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        ui_amount = entry.get("uiTokenAmount") or {}
        try:
            balances.append(
                TokenBalance(
                    account_index=int(entry["accountIndex"]),
                    mint=str(entry["mint"]),
                    amount=int(ui_amount["amount"]),
                    decimals=int(ui_amount.get("decimals", 0)),
                )
            )
        except (KeyError, TypeError, ValueError):
            continue
    return tuple(balances)


def parse_transaction(
    payload: dict[str, Any],
    *,
    signature: str | None = None,
    slot: int | None = None,
) -> ResolvedTransaction:
    """Build a ResolvedTransaction from a getTransaction-shaped payload.

    Stream notifications wrap the same shape one level deeper
    (``{"signature", "slot", "transaction": {"transaction", "meta"}}``);
    both layouts are accepted.
    """
    body = payload
    inner = payload.get("transaction")
    if isinstance(inner, dict) and "meta" in inner and "meta" not in payload:
        body = inner
    tx = body.get("transaction") or {}
    meta = body.get("meta") or {}
    message = tx.get("message") if isinstance(tx, dict) else None
    message = message or {}

    accounts: list[str] = []
    for entry in message.get("accountKeys") or []:
        key = _account_key(entry)
        if key:
            accounts.append(key)
    loaded = meta.get("loadedAddresses") or {}
    for group in ("writable", "readonly"):
        for entry in loaded.get(group) or []:
            key = _account_key(entry)
            if key:
                accounts.append(key)
    touched = tuple(dict.fromkeys(accounts))

    sig = signature or payload.get("signature")
    if not sig and isinstance(tx, dict):
        sigs = tx.get("signatures") or []
        sig = sigs[0] if sigs else None
    block_time = payload.get("blockTime", body.get("blockTime"))
    tx_slot = payload.get("slot", body.get("slot", slot))
    logs = meta.get("logMessages") or []
    return ResolvedTransaction(
        signature=str(sig or ""),
        slot=int(tx_slot) if tx_slot is not None else int(slot or 0),
        block_time_ms=int(block_time) * 1000 if block_time is not None else None,
        accounts_touched=touched,
        log_lines=tuple(str(line) for line in logs),
        pre_balances=_token_balances(meta.get("preTokenBalances")),
        post_balances=_token_balances(meta.get("postTokenBalances")),
        err=meta.get("err"),
    )


class RpcClient:
    def __init__(
        self,
        *,
        http_url: str,
        timeout_seconds: float,
        max_in_flight: int,
        poster: Callable[[str, list[Any]], Any] | None = None,
        user_agent: str = RPC_USER_AGENT,
    ) -> None:
        self._http_url = http_url
        self._timeout_seconds = timeout_seconds
        self._semaphore = asyncio.Semaphore(max(1, max_in_flight))
        self._user_agent = user_agent
        self._ids = itertools.count(1)
        self._session: requests.Session | None = None
        if poster is None:
            session = requests.Session()
            adapter = HTTPAdapter(pool_maxsize=max(1, max_in_flight))
            session.mount("http://", adapter)
            session.mount("https://", adapter)
            self._session = session
        self._poster = poster or self._post_sync
        self._requests = 0
        self._errors = 0
        self._timeouts = 0
        self._rate_limited = 0

    def stats_snapshot(self) -> dict[str, int]:
        return {
            "requests": self._requests,
            "errors": self._errors,
            "timeouts": self._timeouts,
            "rate_limited": self._rate_limited,
        }

    def close(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None

    def _post_sync(self, method: str, params: list[Any]) -> Any:
        session = self._session
        if session is None:
            raise RpcError("rpc client closed")
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        resp = session.post(
            self._http_url,
            json=payload,
            timeout=self._timeout_seconds,
            headers={"User-Agent": self._user_agent},
        )
        if resp.status_code == 429:
            raise RateLimited(f"HTTP 429 from {method}")
        if resp.status_code in _GATEWAY_STATUS:
            raise GatewayTimeout(f"HTTP {resp.status_code} from {method}")
        resp.raise_for_status()
        body = resp.json()
        if not isinstance(body, dict):
            raise RpcError(f"malformed {method} response")
        if body.get("error") is not None:
            raise _error_from_body(body["error"])
        return body.get("result")

    async def call(self, method: str, params: list[Any]) -> Any:
        async with self._semaphore:
            self._requests += 1
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(self._poster, method, params),
                    timeout=self._timeout_seconds,
                )
            except Exception as exc:
                failure = classify_failure(exc)
                if isinstance(failure, RateLimited):
                    self._rate_limited += 1
                elif isinstance(failure, GatewayTimeout):
                    self._timeouts += 1
                else:
                    self._errors += 1
                if failure is exc:
                    raise
                raise failure from exc

    async def get_transaction(
        self, signature: str, commitment: str
    ) -> ResolvedTransaction | None:
        result = await self.call(
            "getTransaction",
            [
                signature,
                {
                    "commitment": commitment,
                    "encoding": "json",
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
        if result is None:
            return None
        if not isinstance(result, dict):
            raise RpcError("malformed getTransaction result")
        return parse_transaction(result, signature=signature)

    async def get_block_time_ms(self, slot: int) -> int | None:
        result = await self.call("getBlockTime", [slot])
        if result is None:
            return None
        return int(result) * 1000

    async def get_latest_signature(
        self, address: str, commitment: str
    ) -> tuple[str, int] | None:
        result = await self.call(
            "getSignaturesForAddress",
            [address, {"limit": 1, "commitment": commitment}],
        )
        if not result:
            return None
        entry = result[0]
        if not isinstance(entry, dict) or not entry.get("signature"):
            return None
        return str(entry["signature"]), int(entry.get("slot") or 0)
