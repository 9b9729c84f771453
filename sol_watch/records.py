from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, localcontext
from typing import Any

ERROR_MAX_CHARS = 200

NOTE_NOT_YET_AVAILABLE = "transaction not yet available"


@dataclass(frozen=True, slots=True)
class TokenBalance:
    account_index: int
    mint: str
    amount: int
    decimals: int


@dataclass(frozen=True, slots=True)
class ResolvedTransaction:
    signature: str
    slot: int
    block_time_ms: int | None
    accounts_touched: tuple[str, ...]
    log_lines: tuple[str, ...] = ()
    pre_balances: tuple[TokenBalance, ...] = ()
    post_balances: tuple[TokenBalance, ...] = ()
    err: Any = None


@dataclass(frozen=True, slots=True)
class RawNotification:
    venue_id: str
    signature: str
    slot: int | None
    detected_at_ms: int
    log_lines: tuple[str, ...] | None = None
    pool_hint: str | None = None
    transaction: ResolvedTransaction | None = None


def format_amount(raw: int, decimals: int) -> str:
    """Fixed-point display string for a raw token amount."""
    if decimals <= 0:
        return str(raw)
    with localcontext() as ctx:
        # Wide enough that scaling never rounds a u64-or-larger amount.
        ctx.prec = max(ctx.prec, len(str(abs(raw))) + decimals + 1)
        value = Decimal(raw).scaleb(-decimals)
    return f"{value:.{decimals}f}"


@dataclass(frozen=True, slots=True)
class SwapData:
    token_in: str | None = None
    token_out: str | None = None
    amount_in_raw: int | None = None
    amount_out_raw: int | None = None
    decimals_in: int | None = None
    decimals_out: int | None = None

    @property
    def empty(self) -> bool:
        return self.token_in is None and self.token_out is None

    @property
    def amount_in(self) -> str | None:
        if self.amount_in_raw is None or self.decimals_in is None:
            return None
        return format_amount(self.amount_in_raw, self.decimals_in)

    @property
    def amount_out(self) -> str | None:
        if self.amount_out_raw is None or self.decimals_out is None:
            return None
        return format_amount(self.amount_out_raw, self.decimals_out)


def compute_latency_ms(detected_at_ms: int | None, block_time_ms: int | None) -> int | None:
    if detected_at_ms is None or block_time_ms is None:
        return None
    return max(0, int(detected_at_ms) - int(block_time_ms))


def _iso_utc(ms: int | None) -> str | None:
    if ms is None:
        return None
    stamp = datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)
    return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def truncate_error(message: str) -> str:
    return message[:ERROR_MAX_CHARS]


@dataclass(slots=True)
class OutputRecord:
    venue: str
    signature: str
    slot: int | None
    detected_ms: int
    program_id: str | None = None
    pool: str | None = None
    instruction: str | None = None
    swap: SwapData | None = None
    tx_block_time_ms: int | None = None
    err: Any = None
    error: str | None = None
    note: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def latency_ms(self) -> int | None:
        return compute_latency_ms(self.detected_ms, self.tx_block_time_ms)

    def to_dict(self) -> dict[str, Any]:
        swap = self.swap or SwapData()
        ts_ms = self.tx_block_time_ms if self.tx_block_time_ms is not None else self.detected_ms
        payload: dict[str, Any] = {
            "venue": self.venue,
            "signature": self.signature,
            "slot": self.slot,
            "program_id": self.program_id,
            "pool": self.pool,
            "instruction": self.instruction,
            "token_in": swap.token_in,
            "token_out": swap.token_out,
            "amount_in": swap.amount_in,
            "amount_out": swap.amount_out,
            "amount_in_raw": None if swap.amount_in_raw is None else str(swap.amount_in_raw),
            "amount_out_raw": None if swap.amount_out_raw is None else str(swap.amount_out_raw),
            "detected_ms": self.detected_ms,
            "tx_block_time_ms": self.tx_block_time_ms,
            "latency_ms": self.latency_ms,
            "timestamp": _iso_utc(ts_ms),
            "err": self.err,
            "error": self.error,
            "note": self.note,
        }
        payload.update(self.extra)
        return payload
