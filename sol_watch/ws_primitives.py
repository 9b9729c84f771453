from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from .config import Config


@dataclass(slots=True)
class DropCounter:
    total: int = 0

    def bump(self, count: int = 1) -> None:
        self.total += count


@dataclass(slots=True)
class ReconnectPolicy:
    max_reconnects: int
    base_delay_seconds: float
    cap_delay_seconds: float

    def can_reconnect(self, attempt: int) -> bool:
        if self.max_reconnects <= 0:
            return False
        return attempt <= self.max_reconnects

    def backoff(self, attempt: int) -> float:
        if attempt <= 0:
            return 0.0
        base = max(0.0, self.base_delay_seconds)
        cap = max(0.0, self.cap_delay_seconds)
        # Cap the exponent before multiplying so large attempts cannot overflow.
        exponent = min(attempt, 62)
        return min(base * (2 ** exponent), cap)

    @classmethod
    def from_config(cls, config: Config) -> "ReconnectPolicy":
        return cls(
            max_reconnects=config.reconnect_max,
            base_delay_seconds=config.reconnect_base_delay_seconds,
            cap_delay_seconds=config.reconnect_cap_delay_seconds,
        )


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int
    delay_seconds: float | Callable[[int], float] = 0.0

    def attempts(self) -> int:
        return max(1, self.max_attempts)

    def delay(self, attempt: int) -> float:
        if callable(self.delay_seconds):
            return max(0.0, float(self.delay_seconds(attempt)))
        return max(0.0, float(self.delay_seconds))

    @classmethod
    def from_config(cls, config: Config) -> "RetryPolicy":
        return cls(
            max_attempts=config.resolve_max_attempts,
            delay_seconds=config.resolve_retry_delay_seconds,
        )


def normalize_ws_keepalive(
    config: Config,
) -> tuple[float | None, float | None, float | None, float | None]:
    ping_interval = config.ws_ping_interval_seconds
    if ping_interval <= 0:
        ping_interval = None
    ping_timeout = config.ws_ping_timeout_seconds
    if ping_timeout <= 0:
        ping_timeout = None
    keepalive_interval = config.keepalive_interval_seconds
    if keepalive_interval <= 0:
        keepalive_interval = None
    data_idle_reconnect = config.data_idle_reconnect_seconds
    if data_idle_reconnect <= 0:
        data_idle_reconnect = None
    return ping_interval, ping_timeout, keepalive_interval, data_idle_reconnect
