from __future__ import annotations

import sys
import time
import uuid
from collections import deque
from dataclasses import asdict, is_dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from .writers_ndjson import NdjsonSink

RUNLOG_NAME = "runlog.ndjson"

FATAL_CONFIG = "CONFIG_ERROR"
FATAL_ALL_WORKERS_FAILED = "ALL_WORKERS_FAILED"
FATAL_INTERNAL = "INTERNAL_ERROR"


def normalize_orjson(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Enum):
        return normalize_orjson(value.value)
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    if is_dataclass(value) and not isinstance(value, type):
        return normalize_orjson(asdict(value))
    if isinstance(value, dict):
        return {str(key): normalize_orjson(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset, deque)):
        return [normalize_orjson(item) for item in value]
    return str(value)


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


class Runlog:
    """Operational records (``record_type`` keyed) appended to runlog.ndjson.

    Ordinary records never block the event loop: when the writer is behind
    they are dropped and counted. Fatal records wait briefly for room.
    """

    def __init__(self, sink: NdjsonSink | None, *, run_id: str | None = None) -> None:
        self._sink = sink
        self.run_id = run_id or new_run_id()
        self.failed = False
        self.records_written = 0
        self.records_dropped = 0

    def __call__(self, record: dict[str, Any]) -> None:
        self.write(record)

    def _payload(self, record: dict[str, Any]) -> dict[str, Any]:
        payload = {"run_id": self.run_id, "ts_wall_ns_utc": time.time_ns()}
        payload.update(record)
        return normalize_orjson(payload)

    def write(self, record: dict[str, Any], *, blocking: bool = False) -> None:
        if self.failed or self._sink is None:
            return
        payload = self._payload(record)
        if blocking:
            ok = self._sink.append_blocking(RUNLOG_NAME, payload)
        else:
            ok = self._sink.append(RUNLOG_NAME, payload)
        if ok:
            self.records_written += 1
            return
        error = self._sink.error()
        if error is not None:
            self._mark_failed(error)
            return
        self.records_dropped += 1

    def fatal(self, reason: str, message: str, **details: Any) -> None:
        print(f"fatal {reason}: {message}", file=sys.stderr)
        record: dict[str, Any] = {
            "record_type": "fatal",
            "fatal_reason": reason,
            "fatal_message": message,
        }
        record.update(details)
        self.write(record, blocking=True)

    def _mark_failed(self, error: Exception) -> None:
        if self.failed:
            return
        self.failed = True
        print(f"runlog failure: {type(error).__name__}: {error}", file=sys.stderr)
