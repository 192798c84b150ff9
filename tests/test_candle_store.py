#!/usr/bin/env python3
"""
Candle store tests: upsert semantics, per-kind merging and CVD windows.
"""

from datetime import datetime, timedelta

from regime_tracker.storage.candle_store import CandleBar, with_cvd

T0 = datetime(2025, 1, 1, 0, 0)
HOUR = timedelta(hours=1)


def test_get_returns_ascending_window(candle_store, make_bars):
    bars = make_bars(T0, [100, 101, 102, 103, 104])
    candle_store.upsert('binance', 'BTCUSDT', '1h', list(reversed(bars)), kind='price')

    result = candle_store.get('binance', 'BTCUSDT', '1h', start=T0 + HOUR, end=T0 + 3 * HOUR)
    assert [b.time for b in result] == [T0 + HOUR, T0 + 2 * HOUR, T0 + 3 * HOUR]
    assert [b.close for b in result] == [101.0, 102.0, 103.0]


def test_upsert_same_key_overwrites_instead_of_duplicating(candle_store, make_bars):
    candle_store.upsert('binance', 'BTCUSDT', '1h', make_bars(T0, [100, 101]), kind='price')
    candle_store.upsert('binance', 'BTCUSDT', '1h', [CandleBar(time=T0 + HOUR, open=100, high=106,
                                                              low=99, close=105, volume=3)], kind='price')

    result = candle_store.get('binance', 'BTCUSDT', '1h')
    assert len(result) == 2
    assert result[1].close == 105.0
    assert candle_store.count('binance', 'BTCUSDT', '1h') == 2


def test_data_kinds_merge_into_one_row(candle_store, make_bars):
    candle_store.upsert('binance', 'BTCUSDT', '1h', make_bars(T0, [100]), kind='price')
    candle_store.upsert('binance', 'BTCUSDT', '1h',
                        [CandleBar(time=T0, oi_open=1, oi_high=2, oi_low=0.5, oi_close=1.5)], kind='oi')
    candle_store.upsert('binance', 'BTCUSDT', '1h',
                        [CandleBar(time=T0, buy_volume=7, sell_volume=3)], kind='taker_volume')

    result = candle_store.get('binance', 'BTCUSDT', '1h')
    assert len(result) == 1
    bar = result[0]
    assert bar.close == 100.0, "price columns must survive later kinds"
    assert bar.oi_close == 1.5
    assert bar.buy_volume == 7.0 and bar.sell_volume == 3.0


def test_cvd_resets_at_window_start(candle_store, make_bars):
    bars = make_bars(T0, [100, 101, 102, 103], buy=[5, 4, 3, 2], sell=[1, 1, 1, 1])
    candle_store.upsert('binance', 'BTCUSDT', '1h', bars)

    full = candle_store.get('binance', 'BTCUSDT', '1h')
    assert [b.cvd for b in full] == [4.0, 7.0, 9.0, 10.0]

    tail = candle_store.get('binance', 'BTCUSDT', '1h', start=T0 + 2 * HOUR)
    assert [b.cvd for b in tail] == [2.0, 3.0], "CVD is not carried in from outside the window"


def test_frame_matches_list_api(candle_store, make_bars):
    bars = make_bars(T0, [100, 101, 102], buy=[2, 2, 2], sell=[1, 3, 1])
    candle_store.upsert('binance', 'BTCUSDT', '1h', bars)

    frame = candle_store.get_frame('binance', 'BTCUSDT', '1h')
    assert list(frame['cvd']) == [1.0, 0.0, 1.0]
    assert list(frame['close']) == [100.0, 101.0, 102.0]

    empty = candle_store.get_frame('binance', 'ETHUSDT', '1h')
    assert empty.empty


def test_cvd_ignores_missing_taker_volume():
    bars = with_cvd([CandleBar(time=T0, buy_volume=3, sell_volume=1), CandleBar(time=T0 + HOUR)])
    assert [b.cvd for b in bars] == [2.0, 2.0]


def test_range_and_coverage_queries(candle_store, make_bars):
    candle_store.upsert('binance', 'BTCUSDT', '1h', make_bars(T0, [100] * 6), kind='price')
    candle_store.upsert('bybit', 'BTCUSDT', '4h', make_bars(T0, [100] * 2, timeframe_minutes=240), kind='price')

    assert candle_store.earliest_time('binance', 'BTCUSDT', '1h') == T0
    assert candle_store.latest_time('binance', 'BTCUSDT', '1h') == T0 + 5 * HOUR
    assert candle_store.latest_time('binance', 'ETHUSDT', '1h') is None

    assert candle_store.has_data('binance', 'BTCUSDT', '1h', T0, T0 + 5 * HOUR)
    assert not candle_store.has_data('binance', 'BTCUSDT', '1h', T0, T0 + 6 * HOUR)

    coverage = candle_store.coverage('BTCUSDT')
    assert [(c['source'], c['timeframe'], c['count']) for c in coverage] == [
        ('binance', '1h', 6),
        ('bybit', '4h', 2),
    ]


def test_delete_narrowed_by_timeframe(candle_store, make_bars):
    candle_store.upsert('binance', 'BTCUSDT', '1h', make_bars(T0, [100] * 3))
    candle_store.upsert('binance', 'BTCUSDT', '4h', make_bars(T0, [100] * 2, timeframe_minutes=240))

    assert candle_store.delete('BTCUSDT', timeframe='1h') == 3
    assert candle_store.count('binance', 'BTCUSDT', '1h') == 0
    assert candle_store.count('binance', 'BTCUSDT', '4h') == 2
