"""
Watchlist Refresher

Rebuilds the index in the background and publishes each new generation
through the GenerationHandle.

Cycle: IDLE -> FETCHING -> BUILDING -> PUBLISHING -> IDLE, with FETCHING and
BUILDING able to fall into FAILED (then IDLE, retried with exponential
backoff). A failed or abandoned cycle never touches the served generation.

Partial refresh: when one source fails, its entities and checksum are
carried over from the current generation while the other sources update.
A source whose checksum is unchanged reuses its previous entities without
rebuilding them.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from audit_logger import AuditLogger, get_audit_logger
from config_manager import ConfigManager, get_config
from list_sources import SourceBatch, SourceFetchError, WatchlistSource
from monitoring import (
    operation_timer,
    record_refresh_outcome,
    record_skipped_records,
    record_source_failure,
)
from record_builder import build_entities, summarize_errors
from screener import GenerationHandle
from watchlist_index import IndexGeneration, build_index
from watchlist_models import MalformedRecordError, WatchlistEntity

logger = logging.getLogger(__name__)

TRIGGER_ACCEPTED = 'accepted'
TRIGGER_ALREADY_RUNNING = 'already_running'


class RefreshState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    BUILDING = "building"
    PUBLISHING = "publishing"
    FAILED = "failed"


class RefreshCycleError(Exception):
    """Aggregate of the ingestion errors seen in one refresh cycle

    Never fatal to serving; surfaced through the refresher status.
    """

    def __init__(self, source_errors: Sequence[SourceFetchError] = (),
                 record_errors: Sequence[MalformedRecordError] = (),
                 message: Optional[str] = None):
        self.source_errors = list(source_errors)
        self.record_errors = list(record_errors)
        if message is None:
            parts = []
            if self.source_errors:
                parts.append(f"{len(self.source_errors)} source(s) failed: "
                             + "; ".join(str(e) for e in self.source_errors))
            if self.record_errors:
                parts.append(f"{len(self.record_errors)} malformed record(s) skipped")
            message = ", ".join(parts) or "refresh cycle error"
        super().__init__(message)


class _RefreshCancelled(Exception):
    def __init__(self, stage: str):
        self.stage = stage
        super().__init__(f"cancelled during {stage}")


@dataclass(frozen=True)
class RefreshStatus:
    """Snapshot of the refresher for status reporting"""
    state: RefreshState
    generation: int
    entity_count: int
    last_success: Optional[datetime] = None
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    consecutive_failures: int = 0
    source_errors: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'state': self.state.value,
            'generation': self.generation,
            'entity_count': self.entity_count,
            'last_success': self.last_success.isoformat() if self.last_success else None,
            'last_error': self.last_error,
            'last_error_at': self.last_error_at.isoformat() if self.last_error_at else None,
            'consecutive_failures': self.consecutive_failures,
            'source_errors': list(self.source_errors)
        }


@dataclass
class RefreshReport:
    """Outcome of one refresh cycle"""
    published: bool = False
    generation: Optional[int] = None
    entity_count: int = 0
    unchanged_sources: List[str] = field(default_factory=list)
    source_errors: List[SourceFetchError] = field(default_factory=list)
    record_errors: List[MalformedRecordError] = field(default_factory=list)
    failed: bool = False
    cancelled: bool = False
    failure: Optional[str] = None
    duration_ms: float = 0.0

    @property
    def error(self) -> Optional[RefreshCycleError]:
        if not self.source_errors and not self.record_errors:
            return None
        return RefreshCycleError(self.source_errors, self.record_errors)


class WatchlistRefresher:
    """Runs refresh cycles on a timer or on demand, one at a time"""

    def __init__(self, sources: Sequence[WatchlistSource], handle: GenerationHandle,
                 config: Optional[ConfigManager] = None,
                 audit: Optional[AuditLogger] = None):
        """Initialize refresher

        Args:
            sources: Configured watchlist sources (names must be unique)
            handle: Handle the new generations are published to
            config: Configuration manager instance
            audit: Audit logger for cycle events
        """
        names = [s.name for s in sources]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate source names: {duplicates}")

        self.config = config or get_config()
        self._sources = list(sources)
        self._handle = handle
        self._audit = audit or get_audit_logger()

        self._cycle_lock = threading.Lock()
        self._status_lock = threading.Lock()
        self._trigger = threading.Event()
        self._stop = threading.Event()
        self._cancel_cycle = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._once_thread: Optional[threading.Thread] = None

        self._state = RefreshState.IDLE
        self._last_success: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._last_error_at: Optional[datetime] = None
        self._consecutive_failures = 0
        self._source_errors: Tuple[str, ...] = ()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the background refresh thread"""
        if self.running:
            return
        self._stop.clear()
        if self.config.refresh.refresh_on_start:
            self._trigger.set()
        self._thread = threading.Thread(target=self._run_loop, name="watchlist-refresher", daemon=True)
        self._thread.start()
        logger.info(f"Refresher started: {len(self._sources)} sources, "
                    f"interval {self.config.refresh.interval_seconds}s")

    def stop(self, timeout: Optional[float] = 30.0) -> None:
        """Stop the background thread, abandoning any cycle in progress

        The refresher stays usable: trigger() and run_cycle() start fresh
        cycles afterwards.
        """
        with self._status_lock:
            self._stop.set()
            self._cancel_cycle.set()
            threads = [t for t in (self._thread, self._once_thread) if t is not None]
        self._trigger.set()

        for thread in threads:
            if thread is threading.current_thread():
                continue
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("%s did not stop within %.1fs", thread.name, timeout or 0)

        with self._status_lock:
            self._thread = None
            self._once_thread = None
        self._trigger.clear()

    def _run_loop(self) -> None:
        while not self._stop.is_set():
            self._trigger.wait(timeout=self.next_delay())
            if self._stop.is_set():
                break
            self._trigger.clear()
            self.run_cycle()
        logger.info("Refresher stopped")

    def _run_once(self) -> None:
        try:
            self.run_cycle()
        finally:
            self._trigger.clear()

    def trigger(self) -> str:
        """Request a refresh cycle as soon as possible

        Returns:
            'accepted', or 'already_running' when a cycle is in progress or pending
        """
        with self._status_lock:
            if self._cycle_lock.locked() or self._trigger.is_set():
                return TRIGGER_ALREADY_RUNNING
            self._trigger.set()
            if not self.running:
                self._once_thread = threading.Thread(target=self._run_once, name="watchlist-refresh-once",
                                                     daemon=True)
                self._once_thread.start()
        return TRIGGER_ACCEPTED

    def next_delay(self) -> float:
        """Seconds until the next scheduled cycle"""
        refresh = self.config.refresh
        with self._status_lock:
            failures = self._consecutive_failures
        if failures == 0:
            return refresh.interval_seconds
        delay = refresh.backoff_initial_seconds * (refresh.backoff_multiplier ** (failures - 1))
        return min(delay, refresh.backoff_max_seconds)

    def status(self) -> RefreshStatus:
        current = self._handle.current()
        with self._status_lock:
            return RefreshStatus(
                state=self._state,
                generation=current.generation,
                entity_count=len(current),
                last_success=self._last_success,
                last_error=self._last_error,
                last_error_at=self._last_error_at,
                consecutive_failures=self._consecutive_failures,
                source_errors=self._source_errors
            )

    def _set_state(self, state: RefreshState) -> None:
        with self._status_lock:
            self._state = state
        logger.debug(f"Refresh state: {state.value}")

    def _check_cancelled(self, stage: str) -> None:
        if self._cancel_cycle.is_set():
            raise _RefreshCancelled(stage)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def run_cycle(self) -> Optional[RefreshReport]:
        """Run one refresh cycle in the calling thread

        Returns:
            The cycle report, or None when another cycle is already running
        """
        if not self._cycle_lock.acquire(blocking=False):
            logger.info("Refresh cycle already running, skipping")
            return None
        try:
            with self._status_lock:
                # stop() cancels only the cycles already running when it is called
                self._cancel_cycle = threading.Event()
                if self._stop.is_set() and threading.current_thread() is self._thread:
                    self._cancel_cycle.set()
            return self._run_cycle_locked()
        finally:
            self._cycle_lock.release()

    def _run_cycle_locked(self) -> RefreshReport:
        start = time.perf_counter()
        current = self._handle.current()
        report = RefreshReport()

        try:
            with operation_timer("refresh_cycle"):
                self._set_state(RefreshState.FETCHING)
                batches = self._fetch_all(report)
                if self._sources and not batches:
                    raise RefreshCycleError(report.source_errors, message="every source failed to fetch")
                self._check_cancelled(RefreshState.FETCHING.value)

                self._set_state(RefreshState.BUILDING)
                entities, checksums, changed = self._build(current, batches, report)
                self._check_cancelled(RefreshState.BUILDING.value)

                if changed:
                    index = build_index(entities, checksums,
                                        generation=current.generation + 1,
                                        config=self.config.index)
                    self._check_cancelled(RefreshState.BUILDING.value)
                    self._set_state(RefreshState.PUBLISHING)
                    self._publish(index, report)
                else:
                    report.entity_count = len(current)
                    logger.info(f"No source changed since generation {current.generation}; nothing to publish")

        except _RefreshCancelled as e:
            report.cancelled = True
            report.duration_ms = (time.perf_counter() - start) * 1000
            self._set_state(RefreshState.IDLE)
            self._audit.log_refresh_abandoned(e.stage)
            record_refresh_outcome("cancelled")
            logger.warning(f"Refresh cycle abandoned during {e.stage}")
            return report

        except Exception as e:
            report.failed = True
            report.failure = str(e)
            report.duration_ms = (time.perf_counter() - start) * 1000
            self._record_failure(e)
            return report

        report.duration_ms = (time.perf_counter() - start) * 1000
        self._record_success(report)
        return report

    def _fetch_all(self, report: RefreshReport) -> Dict[str, SourceBatch]:
        batches: Dict[str, SourceBatch] = {}
        for source in self._sources:
            self._check_cancelled(RefreshState.FETCHING.value)
            try:
                batches[source.name] = source.fetch()
            except SourceFetchError as e:
                self._source_failed(e, report)
            except Exception as e:
                self._source_failed(SourceFetchError(source.name, f"unexpected error: {e}"), report)
        return batches

    def _source_failed(self, error: SourceFetchError, report: RefreshReport) -> None:
        logger.warning(f"Source fetch failed, keeping previous data: {error}")
        report.source_errors.append(error)
        self._audit.log_source_failure(error.source, error.reason)
        record_source_failure(error.source)

    def _build(self, current: IndexGeneration, batches: Dict[str, SourceBatch],
               report: RefreshReport) -> Tuple[List[WatchlistEntity], Dict[str, str], bool]:
        entities: List[WatchlistEntity] = []
        checksums: Dict[str, str] = {}
        configured = {s.name for s in self._sources}
        changed = bool(set(current.sources) - configured)

        for source in self._sources:
            name = source.name
            self._check_cancelled(RefreshState.BUILDING.value)
            batch = batches.get(name)

            if batch is None:
                retained = current.entities_for_source(name)
                entities.extend(retained)
                if name in current.checksums:
                    checksums[name] = current.checksums[name]
                logger.warning(f"Retaining {len(retained)} {name} entities from generation {current.generation}")
                continue

            checksums[name] = batch.checksum
            if current.checksums.get(name) == batch.checksum:
                entities.extend(current.entities_for_source(name))
                report.unchanged_sources.append(name)
                continue

            built, errors = build_entities(batch.records, name)
            entities.extend(built)
            changed = True
            if errors:
                report.record_errors.extend(errors)
                self._audit.log_records_skipped(name, summarize_errors(errors))
                record_skipped_records(name, len(errors))

        return entities, checksums, changed

    def _publish(self, index: IndexGeneration, report: RefreshReport) -> None:
        self._handle.publish(index)
        report.published = True
        report.generation = index.generation
        report.entity_count = len(index)

    def _record_success(self, report: RefreshReport) -> None:
        now = datetime.now(timezone.utc)
        error = report.error
        with self._status_lock:
            self._state = RefreshState.IDLE
            self._last_success = now
            self._consecutive_failures = 0
            self._source_errors = tuple(str(e) for e in report.source_errors)
            if error is not None:
                self._last_error = str(error)
                self._last_error_at = now

        outcome = "partial" if error is not None else ("published" if report.published else "unchanged")
        record_refresh_outcome(outcome)
        if report.published:
            self._audit.log_refresh_completed(
                report.generation, report.entity_count, report.duration_ms,
                context={
                    'source_errors': [str(e) for e in report.source_errors],
                    'records_skipped': len(report.record_errors),
                    'unchanged_sources': report.unchanged_sources
                }
            )
        logger.info(f"Refresh cycle finished ({outcome}) in {report.duration_ms:.0f}ms")

    def _record_failure(self, error: Exception) -> None:
        now = datetime.now(timezone.utc)
        with self._status_lock:
            self._state = RefreshState.FAILED
            self._consecutive_failures += 1
            self._last_error = str(error)
            self._last_error_at = now
            if isinstance(error, RefreshCycleError):
                self._source_errors = tuple(str(e) for e in error.source_errors)
            failures = self._consecutive_failures

        retry_in = self.next_delay()
        logger.error(f"Refresh cycle failed ({failures} in a row), retrying in {retry_in:.0f}s: {error}")
        self._audit.log_refresh_failed(str(error), failures, retry_in)
        record_refresh_outcome("failed")
        self._set_state(RefreshState.IDLE)
