from __future__ import annotations

import asyncio
import contextlib
import os
import queue
import threading
import time
from collections import defaultdict
from pathlib import Path
from typing import Any, Callable

import orjson

_SINK_STOP = object()
_ORJSON_NDJSON_OPTIONS = orjson.OPT_APPEND_NEWLINE


class NdjsonSink:
    """Append-only NDJSON files under one directory, written by a single thread.

    Callers on the event loop only enqueue; the writer thread owns every file
    handle, so lines from concurrent producers never interleave.
    """

    def __init__(
        self,
        output_dir: Path | str,
        *,
        max_queue: int = 10000,
        flush_interval_seconds: float = 0.5,
        batch_size: int = 200,
        enqueue_timeout_seconds: float = 1.0,
        fsync_on_close: bool = False,
        thread_name: str = "ndjson-sink",
    ) -> None:
        self.output_dir = Path(output_dir)
        self._queue: queue.Queue[object] = queue.Queue(maxsize=max_queue)
        self._flush_interval_seconds = flush_interval_seconds
        self._batch_size = max(1, batch_size)
        self._enqueue_timeout_seconds = max(0.0, enqueue_timeout_seconds)
        self._fsync_on_close = fsync_on_close
        self._accepted = 0
        self._written = 0
        self._enqueue_timeouts = 0
        self._dropped = 0
        self._backpressure_waits = 0
        self._error: Exception | None = None
        self._error_count = 0
        self._closed = False
        self._thread = threading.Thread(target=self._run, name=thread_name, daemon=True)
        self._thread.start()

    def path_for(self, name: str) -> Path:
        return self.output_dir / name

    @property
    def accepting(self) -> bool:
        return not self._closed and self._error is None

    def append(self, name: str, record: dict[str, Any]) -> bool:
        """Enqueue without blocking; a full queue drops the record and counts it."""
        if not self.accepting:
            return False
        try:
            self._queue.put_nowait((name, record))
        except queue.Full:
            self._dropped += 1
            return False
        self._accepted += 1
        return True

    def append_blocking(self, name: str, record: dict[str, Any]) -> bool:
        """Wait up to ``enqueue_timeout_seconds`` for room. Only for rare records (fatal)."""
        if not self.accepting:
            return False
        try:
            self._queue.put((name, record), timeout=self._enqueue_timeout_seconds)
        except queue.Full:
            self._enqueue_timeouts += 1
            return False
        self._accepted += 1
        return True

    async def append_wait(self, name: str, record: dict[str, Any]) -> bool:
        """Enqueue a data record without dropping it.

        When the writer is behind, the wait happens on a worker thread so the
        event loop keeps serving sockets. Gives up only once the sink is
        closed or the writer thread has failed.
        """
        item = (name, record)
        while self.accepting:
            try:
                self._queue.put_nowait(item)
            except queue.Full:
                self._backpressure_waits += 1
                try:
                    await asyncio.to_thread(
                        self._queue.put, item, True, max(0.05, self._enqueue_timeout_seconds)
                    )
                except queue.Full:
                    continue
            self._accepted += 1
            return True
        return False

    def close(self, timeout_seconds: float = 5.0) -> None:
        if self._closed:
            return
        self._closed = True
        # The stop marker must not be lost behind a full queue.
        with contextlib.suppress(queue.Full):
            self._queue.put(_SINK_STOP, timeout=timeout_seconds)
        self._thread.join(timeout=timeout_seconds)

    def stats(self) -> dict[str, int]:
        return {
            "queue_size": self._queue.qsize(),
            "accepted": self._accepted,
            "written": self._written,
            "dropped": self._dropped,
            "backpressure_waits": self._backpressure_waits,
            "enqueue_timeouts": self._enqueue_timeouts,
            "errors": self._error_count,
        }

    def error(self) -> Exception | None:
        return self._error

    def _record_error(self, exc: Exception) -> None:
        if self._error is None:
            self._error = exc
        self._error_count += 1

    def _next_batch(self) -> tuple[list[Any], bool]:
        """Block for one item, then take whatever else is already queued."""
        batch: list[Any] = []
        try:
            item = self._queue.get(timeout=self._flush_interval_seconds)
        except queue.Empty:
            return batch, False
        while True:
            if item is _SINK_STOP:
                return batch, True
            batch.append(item)
            if len(batch) >= self._batch_size:
                return batch, False
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return batch, False

    def _run(self) -> None:
        files = _AppendFiles(self.output_dir)
        buffered: dict[str, list[bytes]] = defaultdict(list)
        buffered_lines = 0
        flushed_at = time.monotonic()
        try:
            stopping = False
            while not stopping:
                batch, stopping = self._next_batch()
                for name, record in batch:
                    buffered[name].append(orjson.dumps(record, option=_ORJSON_NDJSON_OPTIONS))
                buffered_lines += len(batch)
                if not buffered_lines:
                    continue
                if (
                    stopping
                    or buffered_lines >= self._batch_size
                    or time.monotonic() - flushed_at >= self._flush_interval_seconds
                ):
                    self._written += files.write(buffered, self._record_error)
                    buffered_lines = 0
                    flushed_at = time.monotonic()
        except Exception as exc:
            self._record_error(exc)
        finally:
            if buffered_lines:
                self._written += files.write(buffered, self._record_error)
            if self._fsync_on_close:
                files.fsync(self._record_error)
            files.close()


class _AppendFiles:
    """Lazily opened ``ab`` handles, one per output name, owned by the writer thread."""

    def __init__(self, output_dir: Path) -> None:
        self._output_dir = output_dir
        self._handles: dict[str, Any] = {}

    def _handle(self, name: str) -> Any:
        handle = self._handles.get(name)
        if handle is None:
            path = self._output_dir / name
            path.parent.mkdir(parents=True, exist_ok=True)
            handle = self._handles[name] = path.open("ab")
        return handle

    def write(
        self,
        buffered: dict[str, list[bytes]],
        on_error: Callable[[Exception], None],
    ) -> int:
        written = 0
        for name, lines in buffered.items():
            if not lines:
                continue
            try:
                handle = self._handle(name)
                handle.write(b"".join(lines))
                handle.flush()
                written += len(lines)
            except OSError as exc:
                on_error(exc)
        buffered.clear()
        return written

    def fsync(self, on_error: Callable[[Exception], None]) -> None:
        for handle in self._handles.values():
            try:
                handle.flush()
                os.fsync(handle.fileno())
            except OSError as exc:
                on_error(exc)

    def close(self) -> None:
        for handle in self._handles.values():
            with contextlib.suppress(OSError):
                handle.close()
        self._handles.clear()
