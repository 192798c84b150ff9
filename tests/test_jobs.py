#!/usr/bin/env python3
"""
Job trigger tests: JobResult error kinds and the command line.
"""

import json
from datetime import datetime, timedelta

import pytest

from regime_tracker.backtest.analyzer import Analyzer, AnalyzerOutput
from regime_tracker.backtest.replay_runner import ReplaySeries
from regime_tracker.config.defaults import DEFAULT_CONFIG
from regime_tracker.errors import ValidationError
from regime_tracker.jobs import (
    JobResult, _parse_series, load_analyzer, main, propose_config, rollback_config,
    run_job, run_labeling, start_replay, start_sync, sync_status
)

T0 = datetime(2025, 1, 1)
HOUR = timedelta(hours=1)


class ConstantAnalyzer(Analyzer):
    def evaluate(self, config, window):
        bars = window.get('1h')
        return AnalyzerOutput(bias='LONG', confidence=5.0, regime='RANGE', price=bars[-1].close,
                              state={'noise_floor_pct': 1.0})


class ListProvider:
    def __init__(self, bars):
        self.bars = bars

    def fetch(self, source, symbol, timeframe, kind, start, end, limit=500):
        return [b for b in self.bars if start <= b.time <= end][:limit]


def run_cli(capsys, *argv):
    code = main(list(argv))
    return code, json.loads(capsys.readouterr().out)


def test_run_job_maps_errors_to_kinds():
    def invalid():
        raise ValidationError('bad input')

    def crash():
        raise KeyError('boom')

    assert run_job('ok', lambda: {'a': 1}) == JobResult(success=True, data={'a': 1})
    failed = run_job('invalid', invalid)
    assert (failed.success, failed.error_kind, failed.message) == (False, 'validation_error', 'bad input')
    assert run_job('crash', crash).error_kind == 'internal_error'


def test_config_triggers(db):
    assert not rollback_config('1.0.0', 'alice').success

    first = propose_config(DEFAULT_CONFIG, 'alice', 'Seed through trigger')
    assert first.success and first.data == {'version': '1.0.0'}

    broken = dict(DEFAULT_CONFIG, weights={'signals': {'cvd': 1.5}})
    invalid = propose_config(broken, 'alice', 'Broken weights')
    assert invalid.error_kind == 'validation_error'

    stale = propose_config(DEFAULT_CONFIG, 'alice', 'Stale proposal', based_on_version='0.9.0')
    assert stale.error_kind == 'version_conflict'

    missing = rollback_config('3.0.0', 'alice')
    assert missing.error_kind == 'not_found'


def test_sync_trigger_and_status(db, make_bars):
    bars = make_bars(T0, range(100, 106))

    result = start_sync('binance', 'BTCUSDT', '1h', 'price', T0, T0 + 5 * HOUR,
                        provider=ListProvider(bars))

    assert result.success
    assert result.data['status'] == 'completed'
    assert result.data['new_rows'] == 6
    assert result.data['key']['symbol'] == 'BTCUSDT'

    keys = sync_status(source='binance').data['keys']
    assert [k['status'] for k in keys] == ['completed']

    invalid = start_sync('binance', 'BTCUSDT', '2h', 'price', provider=ListProvider(bars))
    assert invalid.error_kind == 'validation_error'


def test_replay_and_label_triggers(db, seeded_config, candle_store, make_bars):
    candle_store.upsert('binance', 'BTCUSDT', '1h', make_bars(T0, [100] * 3 + [102] * 10), kind='price')
    times = [T0 + 2 * HOUR, T0 + 3 * HOUR]

    result = start_replay('jobs', ['BTCUSDT'], times, ConstantAnalyzer(), [ReplaySeries('binance', '1h')],
                          auto_label_source='binance', horizon='MICRO')

    assert result.success
    assert result.data['reports']['BTCUSDT']['completed'] == 2
    assert result.data['labeling']['labeled'] == 2
    assert result.data['summary'] == {'batch_id': 'jobs', 'total': 2, 'completed': 2, 'failed': 0,
                                      'labeled': 2}

    again = run_labeling('all')
    assert again.success
    assert [r['labeled'] for r in again.data['reports']] == [0, 0]


def test_cli_config_commands(db, capsys, tmp_path):
    url = f"sqlite:///{tmp_path / 'cli.db'}"

    code, seeded = run_cli(capsys, '--database-url', url, 'config-seed')
    assert code == 0 and seeded['data'] == {'version': '1.0.0'}

    code, shown = run_cli(capsys, 'config-show')
    assert code == 0
    assert shown['data']['version'] == '1.0.0'
    assert shown['data']['document'] == DEFAULT_CONFIG

    document = json.loads(json.dumps(DEFAULT_CONFIG))
    document['weights']['signals'].update({'cvd': 0.11, 'vwap': 0.04})
    path = tmp_path / 'proposal.json'
    path.write_text(json.dumps(document))

    code, proposed = run_cli(capsys, 'config-propose', '--file', str(path), '--author', 'alice',
                             '--notes', 'Favor cvd over vwap', '--based-on', '1.0.0')
    assert code == 0 and proposed['data'] == {'version': '1.0.1'}

    code, rolled = run_cli(capsys, 'config-rollback', '--version', '1.0.0', '--author', 'alice')
    assert code == 0 and rolled['data'] == {'version': '1.0.2'}

    code, history = run_cli(capsys, 'config-history', '--limit', '5')
    assert [entry['action'] for entry in history['data']['history']] == ['rollback', 'update', 'initial']

    code, missing = run_cli(capsys, 'config-propose', '--file', str(tmp_path / 'absent.json'),
                            '--author', 'alice', '--notes', 'Missing file')
    assert code == 1 and missing['error_kind'] == 'internal_error'


def test_cli_replay(db, seeded_config, candle_store, make_bars, capsys):
    candle_store.upsert('binance', 'BTCUSDT', '1h', make_bars(T0, range(100, 110)), kind='price')

    code, result = run_cli(capsys, 'replay', '--batch', 'cli', '--symbol', 'BTCUSDT',
                           '--analyzer', f'{__name__}:ConstantAnalyzer', '--series', 'binance:1h:4',
                           '--start', '2025-01-01T02:00:00Z', '--end', '2025-01-01T04:00:00Z',
                           '--step', '1h')

    assert code == 0
    assert result['data']['summary']['completed'] == 3

    code, coverage = run_cli(capsys, 'coverage')
    assert coverage['data']['coverage'][0]['count'] == 10


def test_cli_helpers():
    assert _parse_series(['binance:1h', 'bybit:4h:50']) == [
        ReplaySeries('binance', '1h'), ReplaySeries('bybit', '4h', 50)
    ]
    with pytest.raises(ValidationError):
        _parse_series(['binance'])
    with pytest.raises(ValidationError):
        load_analyzer('no_attribute_given')
    assert isinstance(load_analyzer(f'{__name__}:ConstantAnalyzer'), ConstantAnalyzer)
