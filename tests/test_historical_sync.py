#!/usr/bin/env python3
"""
Historical sync tests: single-flight claims, watermark monotonicity and
resuming a failed run.
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import update

from regime_tracker.errors import (
    AlreadyRunning, InvalidState, RateLimited, SyncFailure, ValidationError
)
from regime_tracker.processors.historical_sync import (
    HistoricalSyncService, SyncKey, SyncTracker
)
from regime_tracker.settings import Settings
from regime_tracker.storage.models import SyncProgress

T0 = datetime(2025, 1, 1)
HOUR = timedelta(hours=1)
KEY = SyncKey('binance', 'BTCUSDT', '1h', 'price')


class FakeProvider:
    """Serves stored bars; can fail on chosen call numbers"""

    def __init__(self, bars, failures=None):
        self.bars = bars
        self.failures = failures or {}
        self.calls = []

    def fetch(self, source, symbol, timeframe, kind, start, end, limit=500):
        self.calls.append((start, end))
        error = self.failures.get(len(self.calls))
        if error is not None:
            raise error
        return [b for b in self.bars if start <= b.time <= end][:limit]


def fast_settings(**overrides):
    values = dict(sync_batch_size=3, sync_request_delay=0, sync_retry_delay=0,
                  sync_rate_limit_cooldown=0, sync_max_consecutive_errors=2)
    values.update(overrides)
    return Settings(**values)


def make_service(provider, db, sleeps=None, **overrides):
    tracker = SyncTracker(db)
    return HistoricalSyncService(provider, tracker=tracker, settings=fast_settings(**overrides),
                                 sleep=(sleeps.append if sleeps is not None else (lambda s: None)))


def test_full_sync_stores_all_candles(db, candle_store, make_bars):
    bars = make_bars(T0, range(100, 110))
    service = make_service(FakeProvider(bars), db)

    report = service.sync(KEY, start=T0, end=T0 + 9 * HOUR)

    assert report.status == 'completed'
    assert report.fetched == 10 and report.new_rows == 10
    stored = candle_store.get('binance', 'BTCUSDT', '1h')
    assert [b.close for b in stored] == [float(v) for v in range(100, 110)]

    status = service.tracker.get(KEY)
    assert status.status == 'completed'
    assert status.last_synced_time == T0 + 9 * HOUR
    assert status.total_rows == 10


def test_second_start_is_rejected_while_syncing(db):
    tracker = SyncTracker(db)
    tracker.start(KEY, T0, T0 + HOUR)

    with pytest.raises(AlreadyRunning):
        tracker.start(KEY, T0, T0 + HOUR)

    other = SyncKey('binance', 'BTCUSDT', '1h', 'oi')
    tracker.start(other, T0, T0 + HOUR)
    assert tracker.get(other).status == 'syncing', "different keys run independently"


def test_stale_claim_can_be_taken_over(db):
    tracker = SyncTracker(db)
    tracker.start(KEY, T0, T0 + HOUR)

    with db.get_session() as session:
        session.execute(update(SyncProgress).values(updated_at=datetime(2000, 1, 1))
                        .execution_options(synchronize_session=False))

    run = tracker.start(KEY, T0, T0 + HOUR)
    assert run.key == KEY
    assert tracker.get(KEY).status == 'syncing'


def test_superseded_run_cannot_write_after_takeover(db, candle_store, make_bars):
    tracker = SyncTracker(db)
    stale = tracker.start(KEY, T0, T0 + 5 * HOUR)

    with db.get_session() as session:
        session.execute(update(SyncProgress).values(updated_at=datetime(2000, 1, 1))
                        .execution_options(synchronize_session=False))
    current = tracker.start(KEY, T0, T0 + 5 * HOUR)
    assert current.started_at != stale.started_at

    with pytest.raises(InvalidState, match='superseded'):
        tracker.ingest(stale, make_bars(T0, [100, 101]))
    with pytest.raises(InvalidState):
        tracker.advance(stale, T0 + 4 * HOUR)
    with pytest.raises(InvalidState):
        tracker.heartbeat(stale)
    with pytest.raises(InvalidState):
        tracker.complete(stale)
    with pytest.raises(InvalidState):
        tracker.fail(stale, 'stale holder woke up')

    status = tracker.get(KEY)
    assert status.status == 'syncing'
    assert status.last_synced_time is None
    assert candle_store.count('binance', 'BTCUSDT', '1h') == 0

    assert tracker.ingest(current, make_bars(T0, [100, 101])) == 2
    assert tracker.advance(current, T0 + 2 * HOUR)
    tracker.complete(current)
    assert tracker.get(KEY).status == 'completed'


def test_overlapping_ingest_advances_watermark(db, candle_store, make_bars):
    tracker = SyncTracker(db)
    bars = make_bars(T0, [100, 101, 102, 103, 104, 105])
    watermark = T0 + 3 * HOUR

    run = tracker.start(KEY, T0, T0 + 5 * HOUR)
    tracker.ingest(run, bars[:4])
    assert tracker.get(KEY).last_synced_time == watermark

    new_rows = tracker.ingest(run, bars[2:])

    assert new_rows == 2, "only candles beyond the watermark are new"
    status = tracker.get(KEY)
    assert status.last_synced_time == watermark + 2 * HOUR
    assert status.total_rows == 6
    assert candle_store.count('binance', 'BTCUSDT', '1h') == 6


def test_watermark_never_regresses(db):
    tracker = SyncTracker(db)
    run = tracker.start(KEY, T0, T0 + 10 * HOUR)

    assert tracker.advance(run, T0 + 5 * HOUR)
    assert not tracker.advance(run, T0 + 2 * HOUR)
    assert tracker.get(KEY).last_synced_time == T0 + 5 * HOUR


def test_transitions_require_syncing(db, make_bars):
    tracker = SyncTracker(db)
    run = tracker.start(KEY, T0, T0 + HOUR)
    tracker.complete(run)

    with pytest.raises(InvalidState):
        tracker.complete(run)
    with pytest.raises(InvalidState):
        tracker.ingest(run, make_bars(T0, [100]))
    with pytest.raises(InvalidState):
        tracker.advance(run, T0 + HOUR)
    with pytest.raises(InvalidState):
        tracker.fail(run, 'late failure')

    # completed -> syncing for an incremental refresh
    run = tracker.start(KEY, T0, T0 + 2 * HOUR)
    assert run.resume_from == T0


def test_failed_sync_resumes_from_watermark(db, candle_store, make_bars):
    bars = make_bars(T0, range(100, 112))
    end = T0 + 11 * HOUR
    error = SyncFailure('connection reset')

    # Calls 1 and 2 succeed (6 candles), then two consecutive errors abort
    flaky = FakeProvider(bars, failures={3: error, 4: error})
    with pytest.raises(SyncFailure):
        make_service(flaky, db).sync(KEY, start=T0, end=end)

    status = SyncTracker(db).get(KEY)
    assert status.status == 'failed'
    assert status.last_synced_time == T0 + 5 * HOUR
    assert 'connection reset' in status.error

    healthy = FakeProvider(bars)
    report = make_service(healthy, db).sync(KEY, start=T0, end=end)

    assert report.resume_from == T0 + 5 * HOUR
    assert healthy.calls[0][0] == T0 + 5 * HOUR, "retry re-fetches at most from the watermark"
    stored = candle_store.get('binance', 'BTCUSDT', '1h')
    assert [b.time for b in stored] == [b.time for b in bars], "no gaps and no duplicates"
    assert [b.close for b in stored] == [b.close for b in bars]
    assert SyncTracker(db).get(KEY).total_rows == 12


def test_rate_limit_cools_down_and_retries(db, make_bars):
    bars = make_bars(T0, range(100, 104))
    sleeps = []
    provider = FakeProvider(bars, failures={1: RateLimited('Too Many Requests')})
    service = make_service(provider, db, sleeps=sleeps, sync_rate_limit_cooldown=65)

    report = service.sync(KEY, start=T0, end=T0 + 3 * HOUR)

    assert report.status == 'completed'
    assert report.fetched == 4
    assert 65 in sleeps
    assert provider.calls[0] == provider.calls[1], "same window is retried after cooldown"


def test_force_ignores_watermark(db, make_bars):
    bars = make_bars(T0, range(100, 104))
    make_service(FakeProvider(bars), db).sync(KEY, start=T0, end=T0 + 3 * HOUR)

    provider = FakeProvider(bars)
    report = make_service(provider, db).sync(KEY, start=T0, end=T0 + 3 * HOUR, force=True)

    assert report.resume_from == T0
    assert report.new_rows == 0
    assert SyncTracker(db).get(KEY).last_synced_time == T0 + 3 * HOUR


def test_first_sync_without_start_fails_cleanly(db):
    with pytest.raises(ValidationError):
        make_service(FakeProvider([]), db).sync(KEY, end=T0)
    assert SyncTracker(db).get(KEY).status == 'failed'


def test_sync_many_isolates_failures(db, make_bars):
    bars = make_bars(T0, range(100, 103))
    broken = SyncFailure('provider down')
    provider = FakeProvider(bars, failures={1: broken, 2: broken})
    keys = [KEY, SyncKey('binance', 'BTCUSDT', '1h', 'funding')]

    reports = make_service(provider, db).sync_many(keys, start=T0, end=T0 + 2 * HOUR)

    assert [r.status for r in reports] == ['failed', 'completed']
    assert reports[0].error_kind == 'sync_failure'


def test_status_lists_keys(db):
    tracker = SyncTracker(db)
    tracker.start(KEY, T0, T0 + HOUR)
    tracker.start(SyncKey('binance', 'ETHUSDT', '1h', 'price'), T0, T0 + HOUR)

    assert [s.key.symbol for s in tracker.status(source='binance')] == ['BTCUSDT', 'ETHUSDT']
    assert [s.key.symbol for s in tracker.status(symbol='ETHUSDT')] == ['ETHUSDT']


def test_source_names_are_case_insensitive(db, candle_store, make_bars):
    mixed = SyncKey('Binance', 'BTCUSDT', '1h', 'price')
    assert mixed == KEY and str(mixed) == 'binance/BTCUSDT/1h/price'

    make_service(FakeProvider(make_bars(T0, [100, 101])), db).sync(mixed, start=T0, end=T0 + HOUR)

    assert candle_store.count('binance', 'BTCUSDT', '1h') == 2
    assert [s.key for s in SyncTracker(db).status(source='BINANCE')] == [KEY]


def test_invalid_key_is_rejected():
    with pytest.raises(ValidationError):
        SyncKey('binance', 'BTCUSDT', '1h', 'orderbook')
    with pytest.raises(ValidationError):
        SyncKey('binance', 'BTCUSDT', '7m', 'price')
