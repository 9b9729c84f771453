from __future__ import annotations

import asyncio
import contextlib
from dataclasses import asdict, dataclass
from typing import Any, Iterable, Protocol

from .config import Config
from .dedup import SignatureTracker
from .records import (
    NOTE_NOT_YET_AVAILABLE,
    OutputRecord,
    RawNotification,
    ResolvedTransaction,
    truncate_error,
)
from .resolver import NotYetAvailable, ResolveError, TransactionResolver
from .swaps import (
    InstructionClassifier,
    extract_swap,
    guess_instruction_label,
    match_pool,
    match_program,
)
from .venues import VenueConfig

ERROR_SHUTDOWN = "shutdown"


class RecordSink(Protocol):
    async def append_wait(self, name: str, record: dict[str, Any]) -> bool: ...


@dataclass(slots=True)
class PipelineStats:
    received: int = 0
    duplicates: int = 0
    unknown_venue: int = 0
    written: int = 0
    filtered: int = 0
    not_yet_available: int = 0
    resolve_errors: int = 0
    errors: int = 0
    sink_failures: int = 0
    cancelled: int = 0


def build_trackers(venues: Iterable[VenueConfig], config: Config) -> dict[str, SignatureTracker]:
    def _tracker() -> SignatureTracker:
        return SignatureTracker(
            max_seen=config.seen_max_signatures,
            max_age_seconds=config.inflight_max_age_seconds,
        )

    venue_ids = [venue.venue_id for venue in venues]
    if config.shared_dedup:
        shared = _tracker()
        return {venue_id: shared for venue_id in venue_ids}
    return {venue_id: _tracker() for venue_id in venue_ids}


class PipelineCoordinator:
    """Fan-in point: dedup, resolve, filter, extract, then one record per signature."""

    def __init__(
        self,
        venues: Iterable[VenueConfig],
        resolver: TransactionResolver,
        sink: RecordSink,
        *,
        trackers: dict[str, SignatureTracker] | None = None,
        classifier: InstructionClassifier = guess_instruction_label,
        poll_interval_seconds: float = 0.5,
    ) -> None:
        self._venues = {venue.venue_id: venue for venue in venues}
        self._resolver = resolver
        self._sink = sink
        self._classifier = classifier
        self._poll_interval_seconds = poll_interval_seconds
        if trackers is None:
            trackers = {venue_id: SignatureTracker() for venue_id in self._venues}
        self._trackers = trackers
        self._tasks: set[asyncio.Task[OutputRecord | None]] = set()
        self.stats = PipelineStats()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def trackers(self) -> list[SignatureTracker]:
        return list({id(tracker): tracker for tracker in self._trackers.values()}.values())

    def tracker_for(self, venue_id: str) -> SignatureTracker:
        tracker = self._trackers.get(venue_id)
        if tracker is None:
            tracker = SignatureTracker()
            self._trackers[venue_id] = tracker
        return tracker

    def stats_snapshot(self) -> dict[str, Any]:
        snapshot = asdict(self.stats)
        snapshot["in_flight"] = self.in_flight
        snapshot["trackers"] = {
            venue_id: tracker.stats() for venue_id, tracker in self._trackers.items()
        }
        return snapshot

    def submit(self, notification: RawNotification) -> asyncio.Task[OutputRecord | None] | None:
        venue = self._venues.get(notification.venue_id)
        if venue is None:
            self.stats.unknown_venue += 1
            return None
        self.stats.received += 1
        tracker = self.tracker_for(venue.venue_id)
        if not tracker.should_process(notification.signature):
            self.stats.duplicates += 1
            return None
        task = asyncio.create_task(self._process(venue, tracker, notification))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def process(self, notification: RawNotification) -> OutputRecord | None:
        task = self.submit(notification)
        if task is None:
            return None
        return await task

    async def run(self, notifications: asyncio.Queue[RawNotification], stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                notification = await asyncio.wait_for(
                    notifications.get(), timeout=self._poll_interval_seconds
                )
            except asyncio.TimeoutError:
                continue
            self.submit(notification)

    async def drain(self, grace_seconds: float) -> int:
        """Give in-flight resolutions a grace period, then cancel the rest."""
        pending = set(self._tasks)
        if not pending:
            return 0
        _, still_running = await asyncio.wait(pending, timeout=max(0.0, grace_seconds))
        for task in still_running:
            task.cancel()
        for task in still_running:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        return len(still_running)

    async def _process(
        self,
        venue: VenueConfig,
        tracker: SignatureTracker,
        notification: RawNotification,
    ) -> OutputRecord | None:
        try:
            record = await self._build_record(venue, notification)
        except asyncio.CancelledError:
            self.stats.cancelled += 1
            try:
                await self._write(venue, self._error_record(venue, notification, ERROR_SHUTDOWN))
            finally:
                tracker.finish(notification.signature)
            raise
        except Exception as exc:
            self.stats.errors += 1
            record = self._error_record(
                venue, notification, truncate_error(f"{type(exc).__name__}: {exc}")
            )
        try:
            if record is not None:
                await self._write(venue, record)
        finally:
            tracker.finish(notification.signature)
        return record

    async def _build_record(
        self, venue: VenueConfig, notification: RawNotification
    ) -> OutputRecord | None:
        try:
            outcome = await self._resolver.resolve(
                notification.signature,
                venue.commitment,
                inline=notification.transaction,
            )
        except ResolveError as exc:
            self.stats.resolve_errors += 1
            record = self._error_record(venue, notification, exc.tag)
            record.note = truncate_error(str(exc))
            return record
        if isinstance(outcome, NotYetAvailable):
            self.stats.not_yet_available += 1
            return OutputRecord(
                venue=venue.venue_id,
                signature=notification.signature,
                slot=notification.slot,
                detected_ms=notification.detected_at_ms,
                pool=self._hinted_pool(venue, notification, None),
                note=NOTE_NOT_YET_AVAILABLE,
            )
        pool = self._hinted_pool(venue, notification, outcome)
        if pool is None:
            pool = match_pool(outcome.accounts_touched, venue.filter.pools)
        if pool is None and not venue.filter.match_all_pools:
            self.stats.filtered += 1
            return None
        log_lines = outcome.log_lines or notification.log_lines or ()
        return OutputRecord(
            venue=venue.venue_id,
            signature=notification.signature,
            slot=outcome.slot if outcome.slot else notification.slot,
            detected_ms=notification.detected_at_ms,
            program_id=match_program(outcome.accounts_touched, venue.filter.program_ids),
            pool=pool,
            instruction=self._classifier(log_lines),
            swap=extract_swap(outcome.pre_balances, outcome.post_balances),
            tx_block_time_ms=outcome.block_time_ms,
            err=outcome.err,
        )

    def _hinted_pool(
        self,
        venue: VenueConfig,
        notification: RawNotification,
        tx: ResolvedTransaction | None,
    ) -> str | None:
        hint = notification.pool_hint
        if hint is None or hint not in venue.filter.pools:
            return None
        if tx is not None and hint not in tx.accounts_touched:
            return None
        return hint

    def _error_record(
        self, venue: VenueConfig, notification: RawNotification, error: str
    ) -> OutputRecord:
        return OutputRecord(
            venue=venue.venue_id,
            signature=notification.signature,
            slot=notification.slot,
            detected_ms=notification.detected_at_ms,
            error=truncate_error(error),
        )

    async def _write(self, venue: VenueConfig, record: OutputRecord) -> None:
        if await self._sink.append_wait(venue.output_name, record.to_dict()):
            self.stats.written += 1
        else:
            self.stats.sink_failures += 1
