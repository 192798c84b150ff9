#!/usr/bin/env python3
"""
Outcome Labeling Job

Sweeps unlabeled live and replay snapshots whose horizon window is fully
covered by stored candles (every bar of the horizon present), and writes each outcome exactly once.

Workers do not claim rows up front. Every write is
``UPDATE ... WHERE id = :id AND outcome_labeled_at IS NULL``, so when two
sweeps race on a row one write lands and the other sees zero rows updated
and moves on.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, List, Dict

from sqlalchemy import and_, func, update

from regime_tracker.backtest.outcome_labeler import (
    HORIZONS, DEFAULT_THRESHOLD_MULTIPLIER, CONTINUATION, REVERSAL, NOISE,
    Horizon, Outcome, bias_direction, label_outcome
)
from regime_tracker.errors import InsufficientData, ValidationError
from regime_tracker.storage.candle_store import CandleStore, normalize_source
from regime_tracker.storage.database import db_manager
from regime_tracker.storage.models import MarketState, ReplayState
from regime_tracker.timeutils import TIMEFRAME_MINUTES, utc_now

logger = logging.getLogger(__name__)

SNAPSHOT_KINDS = ('live', 'replay')


@dataclass
class Candidate:
    id: int
    symbol: str
    time: datetime
    bias: Optional[str]
    price: Optional[float]
    noise_floor_pct: Optional[float]


@dataclass
class LabelingReport:
    kind: str
    horizon: str
    scanned: int = 0
    labeled: int = 0
    no_opinion: int = 0
    insufficient: int = 0
    already_labeled: int = 0
    errors: int = 0
    by_label: Dict[str, int] = field(default_factory=dict)


def _model(kind: str):
    if kind == 'live':
        return MarketState, MarketState.time
    if kind == 'replay':
        return ReplayState, ReplayState.as_of_time
    raise ValidationError(f"Unknown snapshot kind: {kind}")


def _noise_floor(state) -> Optional[float]:
    if not isinstance(state, dict):
        return None
    value = state.get('noise_floor_pct')
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class OutcomeLabelingJob:
    """
    Deferred outcome labeling over stored snapshots.
    """

    def __init__(self, source: str = 'binance', horizon: str = 'MICRO', db=None,
                 candle_store: CandleStore = None,
                 threshold_multiplier: float = DEFAULT_THRESHOLD_MULTIPLIER):
        if horizon not in HORIZONS:
            raise ValidationError(f"Invalid horizon: {horizon}. Must be one of: {', '.join(HORIZONS)}")
        self.source = normalize_source(source)
        self.horizon: Horizon = HORIZONS[horizon]
        self.db = db or db_manager
        self.candle_store = candle_store or CandleStore(self.db)
        self.threshold_multiplier = threshold_multiplier

    def _pending_filter(self, model, kind: str, batch_id: str = None, symbol: str = None):
        filters = [model.outcome_labeled_at.is_(None)]
        if kind == 'replay':
            filters.append(ReplayState.status == 'COMPLETED')
            if batch_id is not None:
                filters.append(ReplayState.batch_id == batch_id)
        if symbol is not None:
            filters.append(model.symbol == symbol)
        return and_(*filters)

    def candidates(self, kind: str, batch_id: str = None, symbol: str = None,
                   limit: int = 500) -> List[Candidate]:
        model, time_column = _model(kind)
        with self.db.get_session() as session:
            rows = session.query(model)\
                .filter(self._pending_filter(model, kind, batch_id, symbol))\
                .order_by(time_column, model.id)\
                .limit(limit).all()
            return [
                Candidate(
                    id=row.id,
                    symbol=row.symbol,
                    time=getattr(row, time_column.key),
                    bias=row.bias,
                    price=row.price,
                    noise_floor_pct=_noise_floor(row.full_state_json),
                )
                for row in rows
            ]

    def horizon_end(self, snapshot_time: datetime) -> datetime:
        return snapshot_time + timedelta(minutes=self.horizon.minutes)

    def compute(self, candidate: Candidate) -> Outcome:
        """
        Outcome for one snapshot.

        Raises:
            InsufficientData: the horizon window is not fully stored yet, or
                has gaps
        """
        timeframe = self.horizon.timeframe
        end = self.horizon_end(candidate.time)

        latest = self.candle_store.latest_time(self.source, candidate.symbol, timeframe)
        if latest is None or latest < end:
            raise InsufficientData(
                f"Snapshot {candidate.id}: {self.source} {candidate.symbol} {timeframe} "
                f"candles end at {latest}, horizon ends {end}"
            )

        bars = self.candle_store.get(self.source, candidate.symbol, timeframe,
                                     start=candidate.time, end=end)
        path = [bar for bar in bars if bar.time > candidate.time and bar.close is not None]
        expected = max(1, self.horizon.minutes // TIMEFRAME_MINUTES[timeframe])
        if len(path) < expected:
            raise InsufficientData(
                f"Snapshot {candidate.id}: {len(path)} of {expected} {timeframe} candles "
                f"stored between {candidate.time} and {end}"
            )

        entry = candidate.price
        if not entry:
            prior = self.candle_store.get(self.source, candidate.symbol, timeframe, end=candidate.time)
            closes = [bar.close for bar in prior if bar.close is not None]
            if not closes:
                raise InsufficientData(f"Snapshot {candidate.id}: no entry price available")
            entry = closes[-1]

        return label_outcome(
            candidate.bias, entry, path, self.horizon,
            noise_floor_pct=candidate.noise_floor_pct,
            threshold_multiplier=self.threshold_multiplier,
        )

    def write_outcome(self, kind: str, snapshot_id: int, outcome: Outcome) -> bool:
        """
        Conditionally store an outcome.

        Returns:
            False if the snapshot was already labeled
        """
        model, _ = _model(kind)
        with self.db.get_session() as session:
            stmt = update(model)\
                .where(model.id == snapshot_id)\
                .where(model.outcome_labeled_at.is_(None))\
                .values(
                    outcome_label=outcome.label,
                    outcome_reason=outcome.reason,
                    outcome_horizon=outcome.horizon,
                    outcome_price=outcome.price,
                    outcome_move_pct=outcome.move_pct,
                    outcome_mfe=outcome.mfe,
                    outcome_mae=outcome.mae,
                    outcome_labeled_at=utc_now(),
                )\
                .execution_options(synchronize_session=False)
            return session.execute(stmt).rowcount == 1

    def sweep(self, kind: str = 'replay', batch_id: str = None, symbol: str = None,
              limit: int = 500) -> LabelingReport:
        """
        Label every eligible snapshot of one kind.

        Rows without enough future data stay unlabeled for a later sweep.
        A failure on one row is logged and does not stop the sweep.
        """
        report = LabelingReport(kind=kind, horizon=self.horizon.name)

        for candidate in self.candidates(kind, batch_id=batch_id, symbol=symbol, limit=limit):
            report.scanned += 1
            try:
                outcome = self.compute(candidate)
            except InsufficientData as e:
                report.insufficient += 1
                logger.debug(f"Skipping {kind} snapshot {candidate.id}: {e}")
                continue
            except Exception as e:
                report.errors += 1
                logger.error(f"Failed to label {kind} snapshot {candidate.id}: {e}")
                continue

            if not self.write_outcome(kind, candidate.id, outcome):
                report.already_labeled += 1
                logger.info(f"{kind} snapshot {candidate.id} already labeled by another worker")
                continue

            report.labeled += 1
            if outcome.label is None:
                report.no_opinion += 1
            else:
                report.by_label[outcome.label] = report.by_label.get(outcome.label, 0) + 1

        logger.info(f"Labeling sweep ({kind}, {self.horizon.name}): {report.labeled} labeled, "
                    f"{report.insufficient} waiting for data, {report.already_labeled} already labeled, "
                    f"{report.errors} errors")
        return report

    def sweep_all(self, limit: int = 500) -> List[LabelingReport]:
        return [self.sweep(kind, limit=limit) for kind in SNAPSHOT_KINDS]

    def labeling_status(self, kind: str = 'replay', batch_id: str = None) -> Dict:
        """Total, labeled and pending counts with a per-horizon breakdown"""
        model, _ = _model(kind)
        with self.db.get_session() as session:
            query = session.query(model.outcome_horizon, model.outcome_labeled_at.isnot(None), func.count(model.id))
            if kind == 'replay':
                query = query.filter(ReplayState.status == 'COMPLETED')
                if batch_id is not None:
                    query = query.filter(ReplayState.batch_id == batch_id)
            rows = query.group_by(model.outcome_horizon, model.outcome_labeled_at.isnot(None)).all()

        total = labeled = 0
        by_horizon = {}
        for horizon, is_labeled, count in rows:
            total += count
            if is_labeled:
                labeled += count
                by_horizon[horizon] = by_horizon.get(horizon, 0) + count
        return {
            'total': total,
            'labeled': labeled,
            'pending': total - labeled,
            'by_horizon': by_horizon,
        }

    def summarize(self, kind: str = 'replay', batch_id: str = None) -> Dict:
        """
        Outcome statistics for labeled snapshots.

        Directional accuracy is the share of directional snapshots labeled
        CONTINUATION.
        """
        model, _ = _model(kind)
        with self.db.get_session() as session:
            query = session.query(model.bias, model.outcome_label, func.count(model.id))\
                .filter(model.outcome_labeled_at.isnot(None))
            if kind == 'replay' and batch_id is not None:
                query = query.filter(ReplayState.batch_id == batch_id)
            rows = query.group_by(model.bias, model.outcome_label).all()

        by_label = {CONTINUATION: 0, REVERSAL: 0, NOISE: 0}
        by_bias: Dict[str, Dict[str, int]] = {}
        no_opinion = 0
        for bias, label, count in rows:
            if label is None:
                no_opinion += count
                continue
            by_label[label] = by_label.get(label, 0) + count
            bucket = by_bias.setdefault(bias, {})
            bucket[label] = bucket.get(label, 0) + count

        directional = sum(
            count for bias, bucket in by_bias.items() if bias_direction(bias) != 0
            for count in bucket.values()
        )
        hits = sum(
            bucket.get(CONTINUATION, 0) for bias, bucket in by_bias.items() if bias_direction(bias) != 0
        )
        return {
            'labeled': sum(by_label.values()) + no_opinion,
            'no_opinion': no_opinion,
            'by_label': by_label,
            'by_bias': by_bias,
            'directional_accuracy': round(hits / directional, 4) if directional else None,
        }
