import asyncio
import threading

import orjson
import pytest

from sol_watch import writers_ndjson
from sol_watch.runlog import RUNLOG_NAME, Runlog, normalize_orjson
from sol_watch.writers_ndjson import NdjsonSink


def _read_lines(path):
    return [orjson.loads(line) for line in path.read_bytes().splitlines()]


def test_sink_appends_one_line_per_record(tmp_path):
    sink = NdjsonSink(tmp_path / "logs", flush_interval_seconds=0.01)
    assert sink.append("orca.jsonl", {"signature": "s1", "amount_in": "5"})
    assert sink.append("orca.jsonl", {"signature": "s2", "note": "é"})
    assert sink.append("raydium.jsonl", {"signature": "s3"})
    sink.close()
    orca = _read_lines(tmp_path / "logs" / "orca.jsonl")
    assert [row["signature"] for row in orca] == ["s1", "s2"]
    assert orca[1]["note"] == "é"
    assert _read_lines(tmp_path / "logs" / "raydium.jsonl") == [{"signature": "s3"}]
    stats = sink.stats()
    assert stats["accepted"] == 3
    assert stats["written"] == 3
    assert sink.error() is None


def test_sink_reopens_in_append_mode(tmp_path):
    sink = NdjsonSink(tmp_path, flush_interval_seconds=0.01)
    sink.append("orca.jsonl", {"signature": "s1"})
    sink.close()
    sink = NdjsonSink(tmp_path, flush_interval_seconds=0.01)
    sink.append("orca.jsonl", {"signature": "s2"})
    sink.close()
    assert [row["signature"] for row in _read_lines(tmp_path / "orca.jsonl")] == ["s1", "s2"]


def test_concurrent_producers_never_interleave(tmp_path):
    sink = NdjsonSink(tmp_path, flush_interval_seconds=0.01, batch_size=7)

    def produce(prefix):
        for index in range(200):
            sink.append("mixed.jsonl", {"signature": f"{prefix}-{index}", "pad": "x" * 64})

    threads = [threading.Thread(target=produce, args=(name,)) for name in ("a", "b", "c")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    sink.close()
    rows = _read_lines(tmp_path / "mixed.jsonl")
    assert len(rows) == 600
    assert len({row["signature"] for row in rows}) == 600


def test_append_after_close_is_rejected(tmp_path):
    sink = NdjsonSink(tmp_path)
    sink.close()
    assert sink.append("orca.jsonl", {"signature": "late"}) is False


def test_runlog_records_carry_run_id(tmp_path):
    sink = NdjsonSink(tmp_path, flush_interval_seconds=0.01)
    runlog = Runlog(sink, run_id="run-1")
    runlog({"record_type": "watch_start", "output_dir": tmp_path})
    runlog.fatal("CONFIG_ERROR", "bad config", venue="orca")
    sink.close()
    rows = _read_lines(tmp_path / RUNLOG_NAME)
    assert [row["record_type"] for row in rows] == ["watch_start", "fatal"]
    assert all(row["run_id"] == "run-1" for row in rows)
    assert rows[0]["output_dir"] == str(tmp_path)
    assert rows[1]["fatal_reason"] == "CONFIG_ERROR"
    assert rows[1]["venue"] == "orca"


def test_runlog_without_sink_is_silent():
    runlog = Runlog(None)
    runlog({"record_type": "heartbeat"})
    assert runlog.records_written == 0


def test_normalize_orjson_handles_containers():
    assert normalize_orjson({"a": (1, 2), "b": frozenset({"x"}), 3: b"\x01"}) == {
        "a": [1, 2],
        "b": ["x"],
        "3": "01",
    }


def _stall_writer(monkeypatch):
    release = threading.Event()
    original = writers_ndjson._AppendFiles.write

    def slow_write(self, buffered, on_error):
        release.wait(timeout=5.0)
        return original(self, buffered, on_error)

    monkeypatch.setattr(writers_ndjson._AppendFiles, "write", slow_write)
    return release


@pytest.mark.asyncio
async def test_append_wait_keeps_loop_running_and_loses_nothing(tmp_path, monkeypatch):
    release = _stall_writer(monkeypatch)
    sink = NdjsonSink(
        tmp_path,
        max_queue=1,
        flush_interval_seconds=0.01,
        batch_size=1,
        enqueue_timeout_seconds=0.05,
    )
    tasks = [
        asyncio.create_task(sink.append_wait("orca.jsonl", {"signature": f"s{index}"}))
        for index in range(5)
    ]
    loop = asyncio.get_running_loop()
    deadline = loop.time() + 2.0
    while sink.stats()["backpressure_waits"] == 0:
        assert loop.time() < deadline
        await asyncio.sleep(0.005)
    started = loop.time()
    await asyncio.sleep(0.01)
    assert loop.time() - started < 0.5
    assert not all(task.done() for task in tasks)

    release.set()
    assert await asyncio.wait_for(asyncio.gather(*tasks), timeout=5.0) == [True] * 5
    sink.close()
    rows = _read_lines(tmp_path / "orca.jsonl")
    assert sorted(row["signature"] for row in rows) == [f"s{index}" for index in range(5)]
    stats = sink.stats()
    assert stats["dropped"] == 0
    assert stats["written"] == 5


@pytest.mark.asyncio
async def test_append_wait_after_close_is_rejected(tmp_path):
    sink = NdjsonSink(tmp_path)
    sink.close()
    assert await sink.append_wait("orca.jsonl", {"signature": "late"}) is False


def test_runlog_drops_when_writer_is_behind(tmp_path, monkeypatch):
    release = _stall_writer(monkeypatch)
    sink = NdjsonSink(tmp_path, max_queue=1, flush_interval_seconds=0.01, batch_size=1)
    runlog = Runlog(sink, run_id="run-1")
    for index in range(20):
        runlog({"record_type": "heartbeat", "seq": index})
    assert runlog.records_dropped > 0
    assert runlog.failed is False
    assert sink.stats()["dropped"] == runlog.records_dropped
    release.set()
    sink.close()
    rows = _read_lines(tmp_path / RUNLOG_NAME)
    assert len(rows) == runlog.records_written
