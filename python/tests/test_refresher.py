"""
Unit tests for the background refresher
"""

import threading
import time
import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from config_manager import RefreshConfig
from list_sources import SourceFetchError, StaticSource, WatchlistSource
from record_builder import build_entities
from refresher import (
    RefreshCycleError,
    RefreshState,
    TRIGGER_ACCEPTED,
    TRIGGER_ALREADY_RUNNING,
    WatchlistRefresher,
)
from screener import GenerationHandle
from watchlist_index import build_index


class FailingSource(WatchlistSource):
    """Source that is always unreachable"""

    def __init__(self, name, error=None):
        super().__init__(name)
        self.error = error or SourceFetchError(name, "connection refused")
        self.calls = 0

    def fetch(self):
        self.calls += 1
        raise self.error


class FlakySource(StaticSource):
    """Static source that can be switched into an outage"""

    def __init__(self, name, records=()):
        super().__init__(name, records)
        self.failing = False

    def fetch(self):
        if self.failing:
            raise SourceFetchError(self.name, "connection refused")
        return super().fetch()


class BlockingSource(StaticSource):
    """Static source that blocks inside fetch until released"""

    def __init__(self, name, records):
        super().__init__(name, records)
        self.entered = threading.Event()
        self.release = threading.Event()

    def fetch(self):
        self.entered.set()
        self.release.wait(5)
        return super().fetch()


class HookSource(StaticSource):
    """Static source that runs a callback before returning its batch"""

    def __init__(self, name, records, hook):
        super().__init__(name, records)
        self.hook = hook

    def fetch(self):
        self.hook()
        return super().fetch()


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def make_refresher(config, audit, sources, handle=None):
    handle = handle or GenerationHandle()
    return WatchlistRefresher(sources, handle, config, audit), handle


class TestRefreshCycle:

    def test_first_cycle_publishes_generation(self, config, audit, sample_records):
        refresher, handle = make_refresher(config, audit, [StaticSource('ofac', sample_records)])

        report = refresher.run_cycle()

        assert report.published
        assert report.generation == 1
        assert handle.current().generation == 1
        assert len(handle.current()) == len(sample_records)
        assert 'ofac' in handle.current().checksums

        status = refresher.status()
        assert status.state == RefreshState.IDLE
        assert status.generation == 1
        assert status.entity_count == len(sample_records)
        assert status.last_success is not None
        assert status.consecutive_failures == 0

    def test_unchanged_source_publishes_nothing(self, config, audit, sample_records):
        refresher, handle = make_refresher(config, audit, [StaticSource('ofac', sample_records)])
        refresher.run_cycle()
        first = handle.current()

        report = refresher.run_cycle()

        assert not report.published
        assert report.unchanged_sources == ['ofac']
        assert handle.current() is first

    def test_changed_source_publishes_next_generation(self, config, audit, sample_records):
        source = StaticSource('ofac', sample_records)
        refresher, handle = make_refresher(config, audit, [source])
        refresher.run_cycle()

        source.set_records(sample_records[:2])
        report = refresher.run_cycle()

        assert report.published
        assert handle.current().generation == 2
        assert len(handle.current()) == 2

    def test_malformed_records_skipped_and_reported(self, config, audit, sample_records):
        records = sample_records + [{'type': 'individual', 'name': 'No Id'}]
        refresher, handle = make_refresher(config, audit, [StaticSource('ofac', records)])

        report = refresher.run_cycle()

        assert report.published
        assert len(handle.current()) == len(sample_records)
        assert len(report.record_errors) == 1
        assert isinstance(report.error, RefreshCycleError)
        assert refresher.status().last_error is not None

    def test_removed_source_dropped(self, config, audit, sample_records):
        ofac, _ = build_entities(sample_records, 'ofac')
        handle = GenerationHandle(build_index(ofac, {'ofac': 'old'}, generation=5))
        refresher, _ = make_refresher(config, audit, [StaticSource('un', sample_records[:1])], handle)

        report = refresher.run_cycle()

        assert report.published
        assert handle.current().generation == 6
        assert handle.current().sources == ('un',)


class TestPartialFailure:

    def test_failed_source_keeps_previous_entities(self, config, audit, sample_records):
        ofac = StaticSource('ofac', sample_records[:2])
        un = FlakySource('un', sample_records[2:])
        refresher, handle = make_refresher(config, audit, [ofac, un])
        refresher.run_cycle()
        un_checksum = handle.current().checksums['un']

        # un goes down while ofac publishes an update
        un.failing = True
        ofac.set_records(sample_records[:1])
        report = refresher.run_cycle()

        current = handle.current()
        assert report.published
        assert current.generation == 2
        assert len(current.entities_for_source('ofac')) == 1
        assert len(current.entities_for_source('un')) == len(sample_records) - 2
        assert current.checksums['un'] == un_checksum

        status = refresher.status()
        assert status.consecutive_failures == 0
        assert len(status.source_errors) == 1
        assert 'connection refused' in status.source_errors[0]

    def test_failure_without_other_changes_publishes_nothing(self, config, audit, sample_records):
        un = FlakySource('un', sample_records[:1])
        refresher, handle = make_refresher(config, audit, [StaticSource('ofac', sample_records), un])
        refresher.run_cycle()
        first = handle.current()

        un.failing = True
        report = refresher.run_cycle()

        assert not report.published
        assert not report.failed
        assert len(report.source_errors) == 1
        assert handle.current() is first

    def test_unexpected_source_exception_is_a_source_failure(self, config, audit, sample_records):
        broken = FailingSource('broken', error=RuntimeError("parser bug"))
        refresher, handle = make_refresher(config, audit, [StaticSource('ofac', sample_records), broken])

        report = refresher.run_cycle()

        assert report.published
        assert report.source_errors[0].source == 'broken'
        assert 'parser bug' in report.source_errors[0].reason


class TestFailureAndBackoff:

    def test_all_sources_failing_fails_cycle(self, config, audit, sample_records):
        ofac, _ = build_entities(sample_records, 'ofac')
        served = build_index(ofac, {'ofac': 'x'}, generation=3)
        handle = GenerationHandle(served)
        refresher, _ = make_refresher(config, audit, [FailingSource('ofac')], handle)

        report = refresher.run_cycle()

        assert report.failed
        assert not report.published
        assert handle.current() is served
        status = refresher.status()
        assert status.state == RefreshState.IDLE
        assert status.consecutive_failures == 1
        assert 'every source failed' in status.last_error
        assert status.last_success is None

    def test_backoff_grows_and_is_capped(self, config, audit):
        config.refresh = RefreshConfig(backoff_initial_seconds=30, backoff_multiplier=2,
                                       backoff_max_seconds=100, interval_seconds=3600)
        refresher, _ = make_refresher(config, audit, [FailingSource('ofac')])

        assert refresher.next_delay() == 3600
        delays = []
        for _ in range(4):
            refresher.run_cycle()
            delays.append(refresher.next_delay())

        assert delays == [30, 60, 100, 100]

    def test_success_resets_backoff(self, config, audit, sample_records):
        source = FlakySource('ofac', sample_records)
        source.failing = True
        refresher, handle = make_refresher(config, audit, [source])
        refresher.run_cycle()
        refresher.run_cycle()
        assert refresher.status().consecutive_failures == 2

        source.failing = False
        refresher.run_cycle()

        assert refresher.status().consecutive_failures == 0
        assert refresher.next_delay() == config.refresh.interval_seconds
        assert handle.current().generation == 1

    def test_duplicate_source_names_rejected(self, config, audit):
        with pytest.raises(ValueError, match="Duplicate source names"):
            make_refresher(config, audit, [StaticSource('ofac'), StaticSource('ofac')])


class TestTriggerAndCancellation:

    def test_stop_abandons_cycle_without_publishing(self, config, audit, sample_records):
        holder = {}
        source = HookSource('ofac', sample_records, lambda: holder['refresher'].stop())
        refresher, handle = make_refresher(config, audit, [source])
        holder['refresher'] = refresher

        report = refresher.run_cycle()

        assert report.cancelled
        assert not report.published
        assert handle.current().generation == 0
        assert refresher.status().state == RefreshState.IDLE

    def test_trigger_while_running(self, config, audit, sample_records):
        source = BlockingSource('ofac', sample_records)
        refresher, handle = make_refresher(config, audit, [source])

        assert refresher.trigger() == TRIGGER_ACCEPTED
        assert source.entered.wait(5)
        assert refresher.trigger() == TRIGGER_ALREADY_RUNNING
        assert refresher.run_cycle() is None
        assert refresher.status().state == RefreshState.FETCHING

        source.release.set()
        assert wait_for(lambda: handle.current().generation == 1)
        assert wait_for(lambda: refresher.trigger() == TRIGGER_ACCEPTED)

    def test_background_thread_refreshes_on_start_and_trigger(self, config, audit, sample_records):
        source = StaticSource('ofac', sample_records)
        refresher, handle = make_refresher(config, audit, [source])

        refresher.start()
        try:
            assert refresher.running
            assert wait_for(lambda: handle.current().generation == 1)

            source.set_records(sample_records[:1])
            assert wait_for(lambda: refresher.trigger() == TRIGGER_ACCEPTED)
            assert wait_for(lambda: handle.current().generation == 2)
            assert len(handle.current()) == 1
        finally:
            refresher.stop(timeout=5)

        assert not refresher.running

    def test_trigger_after_stop_refreshes(self, config, audit, sample_records):
        source = StaticSource('ofac', sample_records)
        refresher, handle = make_refresher(config, audit, [source])

        refresher.start()
        assert wait_for(lambda: handle.current().generation == 1)
        refresher.stop(timeout=5)

        source.set_records(sample_records[:1])
        assert refresher.trigger() == TRIGGER_ACCEPTED
        assert wait_for(lambda: handle.current().generation == 2)
        assert len(handle.current()) == 1

    def test_run_cycle_after_stop_publishes(self, config, audit, sample_records):
        refresher, handle = make_refresher(config, audit, [StaticSource('ofac', sample_records)])
        refresher.stop()

        report = refresher.run_cycle()

        assert report.published
        assert not report.cancelled
        assert handle.current().generation == 1

    def test_stop_waits_for_triggered_cycle(self, config, audit, sample_records):
        source = BlockingSource('ofac', sample_records)
        refresher, handle = make_refresher(config, audit, [source])

        assert refresher.trigger() == TRIGGER_ACCEPTED
        assert source.entered.wait(5)
        releaser = threading.Timer(0.1, source.release.set)
        releaser.start()

        refresher.stop(timeout=5)

        releaser.join()
        assert handle.current().generation == 0
        assert refresher.status().state == RefreshState.IDLE
        assert refresher.trigger() == TRIGGER_ACCEPTED
        assert wait_for(lambda: handle.current().generation == 1)

    def test_status_to_dict(self, config, audit, sample_records):
        refresher, _ = make_refresher(config, audit, [StaticSource('ofac', sample_records)])
        refresher.run_cycle()

        data = refresher.status().to_dict()

        assert data['state'] == 'idle'
        assert data['generation'] == 1
        assert data['entity_count'] == len(sample_records)
        assert data['consecutive_failures'] == 0
        assert data['source_errors'] == []
        assert data['last_error'] is None
        assert data['last_success'] is not None
