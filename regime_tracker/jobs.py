#!/usr/bin/env python3
"""
Job Triggers

Thin operational surface over the state-management components. Every
trigger returns a JobResult carrying success, a machine-readable error
kind and a payload; the command line prints it as JSON.

Usage:
    python -m regime_tracker.jobs init-db
    python -m regime_tracker.jobs sync --source binance --symbol BTCUSDT --timeframe 1h --kind price --start 2025-01-01
    python -m regime_tracker.jobs replay --batch b1 --symbol BTCUSDT --analyzer mypkg.analyzer:build --start ... --end ... --step 4h
    python -m regime_tracker.jobs label --kind replay --horizon MICRO
    python -m regime_tracker.jobs config-propose --file config.json --author alice --notes "Tighten 1h noise"
    python -m regime_tracker.jobs config-rollback --version 1.0.3 --author alice
"""

import sys
import json
import logging
import importlib
from dataclasses import dataclass, field, asdict, is_dataclass
from datetime import datetime
from typing import Optional, List, Dict, Any, Callable

from regime_tracker.backtest.labeling_job import OutcomeLabelingJob
from regime_tracker.backtest.replay_runner import (
    ReplayOrchestrator, ReplaySeries, generate_as_of_times
)
from regime_tracker.collectors.coinglass_client import CoinglassClient
from regime_tracker.config.config_store import ConfigStore
from regime_tracker.errors import RegimeTrackerError, ValidationError
from regime_tracker.processors.historical_sync import HistoricalSyncService, SyncKey, SyncTracker
from regime_tracker.settings import configure_logging
from regime_tracker.storage.candle_store import CandleStore
from regime_tracker.storage.database import db_manager, init_database
from regime_tracker.timeutils import parse_timestamp

logger = logging.getLogger(__name__)


@dataclass
class JobResult:
    success: bool
    error_kind: Optional[str] = None
    message: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str, indent=2)


def _plain(value):
    if is_dataclass(value):
        return asdict(value)
    return value


def run_job(name: str, func: Callable, *args, **kwargs) -> JobResult:
    """Run a trigger and convert its outcome into a JobResult"""
    try:
        data = func(*args, **kwargs)
    except RegimeTrackerError as e:
        logger.warning(f"Job {name} failed ({e.kind}): {e}")
        return JobResult(success=False, error_kind=e.kind, message=str(e))
    except Exception as e:
        logger.exception(f"Job {name} crashed")
        return JobResult(success=False, error_kind='internal_error', message=f"{type(e).__name__}: {e}")
    return JobResult(success=True, data=_plain(data) if data is not None else {})


# ============================================================================
# TRIGGERS
# ============================================================================

def start_sync(source: str, symbol: str, timeframe: str, kind: str,
               start: datetime = None, end: datetime = None, force: bool = False,
               provider=None) -> JobResult:
    def _sync():
        key = SyncKey(source, symbol, timeframe, kind)
        service = HistoricalSyncService(provider or CoinglassClient())
        return service.sync(key, start, end, force=force)
    return run_job('sync', _sync)


def sync_status(source: str = None, symbol: str = None) -> JobResult:
    return run_job('sync-status', lambda: {
        'keys': [asdict(status) for status in SyncTracker().status(source, symbol)]
    })


def start_replay(batch_id: str, symbols: List[str], as_of_times: List[datetime], analyzer,
                 series: List[ReplaySeries], config_version: str = None,
                 closed_candles_only: bool = False, auto_label_source: str = None,
                 horizon: str = 'MICRO') -> JobResult:
    def _replay():
        orchestrator = ReplayOrchestrator(analyzer, series, closed_candles_only=closed_candles_only)
        if len(symbols) == 1:
            reports = {symbols[0]: orchestrator.run(batch_id, symbols[0], as_of_times, config_version)}
        else:
            reports = orchestrator.run_multi(batch_id, symbols, as_of_times, config_version)
        data = {'reports': {symbol: asdict(report) for symbol, report in reports.items()}}
        if auto_label_source:
            labeler = OutcomeLabelingJob(source=auto_label_source, horizon=horizon)
            data['labeling'] = asdict(labeler.sweep('replay', batch_id=batch_id))
        data['summary'] = orchestrator.batch_summary(batch_id)
        return data
    return run_job('replay', _replay)


def run_labeling(kind: str = 'replay', horizon: str = 'MICRO', source: str = 'binance',
                 batch_id: str = None, limit: int = 500) -> JobResult:
    def _label():
        job = OutcomeLabelingJob(source=source, horizon=horizon)
        if kind == 'all':
            return {'reports': [asdict(report) for report in job.sweep_all(limit=limit)]}
        return job.sweep(kind, batch_id=batch_id, limit=limit)
    return run_job('label', _label)


def propose_config(document: dict, author: str, notes: str,
                   based_on_version: str = None, action: str = 'update') -> JobResult:
    return run_job('config-propose', lambda: {
        'version': ConfigStore().propose(document, author, notes,
                                         based_on_version=based_on_version, action=action)
    })


def rollback_config(version: str, author: str, notes: str = None) -> JobResult:
    return run_job('config-rollback', lambda: {
        'version': ConfigStore().rollback(version, author, notes)
    })


# ============================================================================
# COMMAND LINE
# ============================================================================

def load_analyzer(path: str):
    """Import ``module:attribute`` and call it if it is a factory"""
    module_name, _, attr = path.partition(':')
    if not attr:
        raise ValidationError(f"Analyzer must be given as module:attribute, got {path!r}")
    target = getattr(importlib.import_module(module_name), attr)
    return target() if isinstance(target, type) or not hasattr(target, 'evaluate') else target


def _parse_series(values: List[str]) -> List[ReplaySeries]:
    series = []
    for value in values:
        parts = value.split(':')
        if len(parts) not in (2, 3):
            raise ValidationError(f"Series must be source:timeframe[:lookback], got {value!r}")
        lookback = int(parts[2]) if len(parts) == 3 else None
        series.append(ReplaySeries(parts[0], parts[1], lookback))
    return series


def build_parser():
    import argparse

    parser = argparse.ArgumentParser(description='Regime tracker job triggers')
    parser.add_argument('--database-url', help='Override DATABASE_URL')
    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('init-db', help='Create database tables')

    sync = sub.add_parser('sync', help='Sync historical data for one key')
    sync.add_argument('--source', required=True)
    sync.add_argument('--symbol', required=True)
    sync.add_argument('--timeframe', required=True)
    sync.add_argument('--kind', required=True, choices=['price', 'oi', 'funding', 'taker_volume'])
    sync.add_argument('--start', type=parse_timestamp)
    sync.add_argument('--end', type=parse_timestamp)
    sync.add_argument('--force', action='store_true', help='Ignore the watermark')

    status = sub.add_parser('sync-status', help='Show sync progress')
    status.add_argument('--source')
    status.add_argument('--symbol')

    sub.add_parser('coverage', help='Show stored candle coverage')

    replay = sub.add_parser('replay', help='Run a replay batch')
    replay.add_argument('--batch', required=True)
    replay.add_argument('--symbol', required=True, action='append')
    replay.add_argument('--analyzer', required=True, help='module:attribute')
    replay.add_argument('--series', action='append', default=[],
                        help='source:timeframe[:lookback]; repeatable')
    replay.add_argument('--start', type=parse_timestamp, required=True)
    replay.add_argument('--end', type=parse_timestamp, required=True)
    replay.add_argument('--step', default='1h')
    replay.add_argument('--max-samples', type=int)
    replay.add_argument('--config-version')
    replay.add_argument('--closed-only', action='store_true')
    replay.add_argument('--label-source', help='Label the batch afterwards from this source')
    replay.add_argument('--horizon', default='MICRO')

    label = sub.add_parser('label', help='Run an outcome labeling sweep')
    label.add_argument('--kind', default='replay', choices=['replay', 'live', 'all'])
    label.add_argument('--horizon', default='MICRO', choices=['SCALPING', 'MICRO', 'MACRO'])
    label.add_argument('--source', default='binance')
    label.add_argument('--batch')
    label.add_argument('--limit', type=int, default=500)

    sub.add_parser('config-show', help='Show the active configuration')
    sub.add_parser('config-seed', help='Seed the default configuration')

    propose = sub.add_parser('config-propose', help='Propose a configuration document')
    propose.add_argument('--file', required=True)
    propose.add_argument('--author', required=True)
    propose.add_argument('--notes', required=True)
    propose.add_argument('--based-on')
    propose.add_argument('--action', default='update', choices=['update', 'ai_import'])

    rollback = sub.add_parser('config-rollback', help='Roll back to a historical version')
    rollback.add_argument('--version', required=True)
    rollback.add_argument('--author', required=True)
    rollback.add_argument('--notes')

    history = sub.add_parser('config-history', help='List configuration versions')
    history.add_argument('--limit', type=int, default=20)

    return parser


def dispatch(args) -> JobResult:
    if args.command == 'init-db':
        return run_job('init-db', lambda: db_manager.create_tables())
    if args.command == 'sync':
        return start_sync(args.source, args.symbol, args.timeframe, args.kind,
                          args.start, args.end, force=args.force)
    if args.command == 'sync-status':
        return sync_status(args.source, args.symbol)
    if args.command == 'coverage':
        return run_job('coverage', lambda: {'coverage': CandleStore().coverage()})
    if args.command == 'replay':
        def _setup():
            return {
                'analyzer': load_analyzer(args.analyzer),
                'series': _parse_series(args.series or ['binance:1h']),
                'times': generate_as_of_times(args.start, args.end, args.step, args.max_samples),
            }
        setup = run_job('replay-setup', _setup)
        if not setup.success:
            return setup
        return start_replay(args.batch, args.symbol, setup.data['times'], setup.data['analyzer'],
                            setup.data['series'], args.config_version,
                            closed_candles_only=args.closed_only,
                            auto_label_source=args.label_source, horizon=args.horizon)
    if args.command == 'label':
        return run_labeling(args.kind, args.horizon, args.source, args.batch, args.limit)
    if args.command == 'config-show':
        return run_job('config-show', ConfigStore().get_active)
    if args.command == 'config-seed':
        return run_job('config-seed', lambda: {'version': ConfigStore().seed_default()})
    if args.command == 'config-propose':
        def _propose():
            with open(args.file) as f:
                return json.load(f)
        loaded = run_job('config-load', _propose)
        if not loaded.success:
            return loaded
        return propose_config(loaded.data, args.author, args.notes, args.based_on, args.action)
    if args.command == 'config-rollback':
        return rollback_config(args.version, args.author, args.notes)
    if args.command == 'config-history':
        return run_job('config-history', lambda: {
            'history': [asdict(entry) for entry in ConfigStore().history(args.limit)]
        })
    raise ValueError(f"Unknown command: {args.command}")


def main(argv=None) -> int:
    configure_logging()
    args = build_parser().parse_args(argv)
    if args.database_url:
        init_database(args.database_url)

    result = dispatch(args)
    print(result.to_json())
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
