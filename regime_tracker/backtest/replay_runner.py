#!/usr/bin/env python3
"""
Replay Runner

Replays the analyzer over stored history as if it were running live at
each as-of time. Every evaluation sees only candles at or before its as-of
time, and produces at most one snapshot per (batch_id, as_of_time, symbol).

Re-running a batch is safe: points that already have a snapshot are
skipped and left untouched, so a crashed batch resumes where it stopped.
"""

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Union

from sqlalchemy import and_, func, update
from sqlalchemy.exc import IntegrityError

from regime_tracker.backtest.analyzer import CandleWindow, SeriesWindow
from regime_tracker.config.config_store import ConfigStore
from regime_tracker.errors import DuplicateError, InsufficientData, LookaheadViolation, ValidationError
from regime_tracker.storage.candle_store import CandleStore, normalize_source
from regime_tracker.storage.database import db_manager
from regime_tracker.storage.models import ReplayState
from regime_tracker.timeutils import (
    timeframe_delta, last_closed_open_time, parse_step, to_naive_utc
)

logger = logging.getLogger(__name__)

STATUS_COMPLETED = 'COMPLETED'
STATUS_FAILED = 'FAILED'

MAX_ERROR_LENGTH = 2000


@dataclass
class ReplaySeries:
    """One candle series handed to the analyzer"""
    source: str
    timeframe: str
    lookback: Optional[int] = None  # candles; None for full history

    def __post_init__(self):
        self.source = normalize_source(self.source)


@dataclass
class BatchReport:
    batch_id: str
    symbol: str
    config_version: Optional[str] = None
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    failures: List[Dict] = field(default_factory=list)

    @property
    def evaluated(self) -> int:
        return self.completed + self.failed


def generate_as_of_times(start: datetime, end: datetime, step: Union[str, timedelta],
                         max_samples: int = None) -> List[datetime]:
    """
    Evenly spaced as-of times from start to end inclusive.

    Args:
        start: First as-of time
        end: Last allowed as-of time
        step: Spacing, as a timedelta or a string like '1h'
        max_samples: Stop after this many samples

    Returns:
        Ascending list of naive UTC datetimes
    """
    if isinstance(step, str):
        step = parse_step(step)
    if step <= timedelta(0):
        raise ValidationError("Step must be positive")

    current = to_naive_utc(start)
    end = to_naive_utc(end)
    times = []
    while current <= end and (max_samples is None or len(times) < max_samples):
        times.append(current)
        current += step
    return times


class ReplayOrchestrator:
    """
    Runs replay batches for one analyzer over a fixed set of candle series.
    """

    def __init__(self, analyzer, series: List[ReplaySeries], config_store: ConfigStore = None,
                 candle_store: CandleStore = None, db=None, closed_candles_only: bool = False,
                 min_candles: Dict[str, int] = None):
        if not series:
            raise ValidationError("At least one replay series is required")
        self.analyzer = analyzer
        self.series = list(series)
        self.db = db or db_manager
        self.config_store = config_store or ConfigStore(self.db)
        self.candle_store = candle_store or CandleStore(self.db)
        self.closed_candles_only = closed_candles_only
        self.min_candles = min_candles or {}

    def load_config(self, config_version: str = None):
        """Config document and version used for a whole batch"""
        if config_version is not None:
            pinned = self.config_store.get_version(config_version)
            return pinned.document, pinned.version
        active = self.config_store.get_active()
        return active.document, active.version

    def build_window(self, symbol: str, as_of: datetime) -> CandleWindow:
        """
        Read every configured series up to ``as_of``.

        Raises:
            LookaheadViolation: a series returned a candle after ``as_of``
            InsufficientData: a series has fewer candles than required
        """
        window = CandleWindow(symbol=symbol, as_of=as_of)

        for spec in self.series:
            bound = as_of
            if self.closed_candles_only:
                bound = last_closed_open_time(as_of, spec.timeframe)
            start = None
            if spec.lookback:
                start = bound - timeframe_delta(spec.timeframe) * (spec.lookback - 1)

            bars = self.candle_store.get(spec.source, symbol, spec.timeframe, start=start, end=bound)
            name = CandleWindow.series_name(spec.source, spec.timeframe)
            window.series[name] = SeriesWindow(spec.source, spec.timeframe, bars)

            required = self.min_candles.get(spec.timeframe)
            if required and len(bars) < required:
                raise InsufficientData(
                    f"Insufficient data for {symbol} {name} at {as_of}: "
                    f"{len(bars)} candles, need {required}"
                )

        latest = window.latest
        if latest is not None and latest > as_of:
            raise LookaheadViolation(
                f"Lookahead violation for {symbol}: latest candle {latest} is after as-of {as_of}"
            )
        return window

    def _existing(self, batch_id: str, symbol: str, as_of: datetime) -> Optional[tuple]:
        with self.db.get_session() as session:
            row = session.query(ReplayState.id, ReplayState.status).filter(and_(
                ReplayState.batch_id == batch_id,
                ReplayState.as_of_time == as_of,
                ReplayState.symbol == symbol,
            )).one_or_none()
            return tuple(row) if row else None

    def _evaluate(self, config: dict, config_version: str, symbol: str, as_of: datetime) -> Dict:
        """Evaluate one point and return the snapshot column values"""
        values = {'config_version': config_version}
        try:
            window = self.build_window(symbol, as_of)
            values.update({
                'data_range_earliest': window.earliest,
                'data_range_latest': window.latest,
                'candles_captured': window.captured(),
            })
            output = self.analyzer.evaluate(config, window)
            state = json.loads(json.dumps(output.state or {}, allow_nan=False))
        except Exception as e:
            values.update({
                'status': STATUS_FAILED,
                'error_message': f"{type(e).__name__}: {e}"[:MAX_ERROR_LENGTH],
            })
            return values

        values.update({
            'status': STATUS_COMPLETED,
            'error_message': None,
            'bias': output.bias,
            'confidence': output.confidence,
            'primary_regime': output.regime,
            'price': output.price,
            'full_state_json': state,
        })
        return values

    def _insert(self, batch_id: str, symbol: str, as_of: datetime, values: Dict) -> bool:
        """Insert a snapshot; False if another writer already holds the key"""
        try:
            with self.db.get_session() as session:
                session.add(ReplayState(batch_id=batch_id, symbol=symbol, as_of_time=as_of, **values))
                try:
                    session.flush()
                except IntegrityError as e:
                    raise DuplicateError(f"Replay snapshot {batch_id} {symbol} {as_of} already exists") from e
        except DuplicateError:
            logger.info(f"Replay {batch_id} {symbol} {as_of}: snapshot written concurrently, skipping")
            return False
        return True

    def _replace_failed(self, row_id: int, values: Dict) -> bool:
        with self.db.get_session() as session:
            stmt = update(ReplayState)\
                .where(ReplayState.id == row_id)\
                .where(ReplayState.status == STATUS_FAILED)\
                .values(**values)\
                .execution_options(synchronize_session=False)
            return session.execute(stmt).rowcount > 0

    def run(self, batch_id: str, symbol: str, as_of_times: List[datetime],
            config_version: str = None, retry_failed: bool = False) -> BatchReport:
        """
        Evaluate a batch for one symbol, strictly in the given order.

        Args:
            batch_id: Batch identifier shared by all points of the run
            symbol: Symbol to replay
            as_of_times: Ordered as-of times
            config_version: Pin a historical config version instead of
                the active one
            retry_failed: Re-evaluate points whose snapshot is FAILED

        Returns:
            BatchReport with completed/failed/skipped counts
        """
        config, version = self.load_config(config_version)
        report = BatchReport(batch_id=batch_id, symbol=symbol, config_version=version)
        logger.info(f"Replay {batch_id} {symbol}: {len(as_of_times)} points with config {version}")

        for as_of in as_of_times:
            as_of = to_naive_utc(as_of)
            existing = self._existing(batch_id, symbol, as_of)
            if existing is not None and not (retry_failed and existing[1] == STATUS_FAILED):
                report.skipped += 1
                continue

            values = self._evaluate(config, version, symbol, as_of)
            if existing is not None:
                written = self._replace_failed(existing[0], values)
            else:
                written = self._insert(batch_id, symbol, as_of, values)
            if not written:
                report.skipped += 1
                continue

            if values['status'] == STATUS_COMPLETED:
                report.completed += 1
            else:
                report.failed += 1
                report.failures.append({'as_of': as_of, 'error': values['error_message']})
                logger.warning(f"Replay {batch_id} {symbol} {as_of} failed: {values['error_message']}")

        logger.info(f"Replay {batch_id} {symbol} done: {report.completed} completed, "
                    f"{report.failed} failed, {report.skipped} skipped")
        return report

    def run_multi(self, batch_id: str, symbols: List[str], as_of_times: List[datetime],
                  config_version: str = None, max_workers: int = 4) -> Dict[str, BatchReport]:
        """Run one worker per symbol; each symbol stays strictly sequential"""
        workers = max(1, min(max_workers, len(symbols)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {
                symbol: pool.submit(self.run, batch_id, symbol, as_of_times, config_version)
                for symbol in symbols
            }
            return {symbol: future.result() for symbol, future in futures.items()}

    def batch_results(self, batch_id: str, symbol: str = None) -> List[ReplayState]:
        with self.db.get_session() as session:
            query = session.query(ReplayState).filter(ReplayState.batch_id == batch_id)
            if symbol is not None:
                query = query.filter(ReplayState.symbol == symbol)
            rows = query.order_by(ReplayState.symbol, ReplayState.as_of_time).all()
            session.expunge_all()
        return rows

    def batch_failures(self, batch_id: str) -> List[ReplayState]:
        return [row for row in self.batch_results(batch_id) if row.status == STATUS_FAILED]

    def batch_summary(self, batch_id: str) -> Dict:
        """Counts by status and labeling progress for a batch"""
        with self.db.get_session() as session:
            by_status = dict(
                session.query(ReplayState.status, func.count(ReplayState.id))
                .filter(ReplayState.batch_id == batch_id)
                .group_by(ReplayState.status).all()
            )
            labeled = session.query(func.count(ReplayState.id)).filter(and_(
                ReplayState.batch_id == batch_id,
                ReplayState.outcome_labeled_at.isnot(None),
            )).scalar()
        return {
            'batch_id': batch_id,
            'total': sum(by_status.values()),
            'completed': by_status.get(STATUS_COMPLETED, 0),
            'failed': by_status.get(STATUS_FAILED, 0),
            'labeled': labeled or 0,
        }
