#!/usr/bin/env python3
"""
Historical Data Sync

Resumable ingestion of provider history into the candle store, tracked per
(source, symbol, timeframe, data_kind).

Lifecycle per key:
    pending -> syncing -> completed
    syncing -> failed
    failed | completed -> syncing   (retry / incremental refresh)

Only one job may hold ``syncing`` for a key. The claim is a conditional
UPDATE, so two processes racing for the same key cannot both win. The
watermark only moves forward and is advanced in the same transaction as
the candle upsert it covers. A run that loses its lease to a takeover is
fenced out: its later writes fail with InvalidState.
"""

import time
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Iterable

from sqlalchemy import and_, or_, update
from sqlalchemy.dialects import postgresql, sqlite

from regime_tracker.errors import (
    AlreadyRunning, InvalidState, RateLimited, RegimeTrackerError, SyncFailure, ValidationError
)
from regime_tracker.settings import Settings, load_settings
from regime_tracker.storage.candle_store import CandleBar, KIND_COLUMNS, normalize_source, upsert_bars
from regime_tracker.storage.database import db_manager
from regime_tracker.storage.models import SyncProgress
from regime_tracker.timeutils import (
    TIMEFRAME_MINUTES, utc_now, timeframe_delta, last_closed_open_time, to_naive_utc
)

logger = logging.getLogger(__name__)

DATA_KINDS = tuple(KIND_COLUMNS)

MAX_ERROR_LENGTH = 2000


@dataclass(frozen=True)
class SyncKey:
    source: str
    symbol: str
    timeframe: str
    data_kind: str

    def __post_init__(self):
        object.__setattr__(self, 'source', normalize_source(self.source))
        if self.data_kind not in DATA_KINDS:
            raise ValidationError(f"Invalid data kind: {self.data_kind}")
        if self.timeframe not in TIMEFRAME_MINUTES:
            raise ValidationError(f"Invalid timeframe: {self.timeframe}")

    def __str__(self):
        return f"{self.source}/{self.symbol}/{self.timeframe}/{self.data_kind}"


@dataclass
class SyncRun:
    """A claimed sync: where to resume and where to stop"""
    key: SyncKey
    resume_from: Optional[datetime]
    end: Optional[datetime]
    watermark: Optional[datetime]
    started_at: datetime


@dataclass
class SyncStatus:
    key: SyncKey
    status: str
    last_synced_time: Optional[datetime]
    total_rows: int
    error: Optional[str]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    updated_at: Optional[datetime]


@dataclass
class SyncReport:
    key: SyncKey
    status: str
    fetched: int = 0
    new_rows: int = 0
    resume_from: Optional[datetime] = None
    watermark: Optional[datetime] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None


def _key_filter(key: SyncKey):
    return and_(
        SyncProgress.source == key.source,
        SyncProgress.symbol == key.symbol,
        SyncProgress.timeframe == key.timeframe,
        SyncProgress.data_kind == key.data_kind,
    )


def _held_by(run: SyncRun):
    """The row is still syncing under this run's claim"""
    return and_(SyncProgress.status == 'syncing', SyncProgress.started_at == run.started_at)


class SyncTracker:
    """
    Persisted state machine for sync keys.

    All transitions are conditional writes against the progress row; the
    in-memory object holds no state of its own. ``start`` stamps the row
    with the run's ``started_at``, and every later transition of that run
    matches on it, so a holder whose lease was taken over can no longer
    write.
    """

    def __init__(self, db=None, lease_seconds: int = None):
        self.db = db or db_manager
        if lease_seconds is None:
            lease_seconds = load_settings().sync_lease_seconds
        self.lease = timedelta(seconds=lease_seconds)

    def _ensure_row(self, session, key: SyncKey):
        dialect = session.get_bind().dialect.name
        insert = postgresql.insert if dialect == 'postgresql' else sqlite.insert
        now = utc_now()
        stmt = insert(SyncProgress).values(
            source=key.source,
            symbol=key.symbol,
            timeframe=key.timeframe,
            data_kind=key.data_kind,
            status='pending',
            total_rows=0,
            created_at=now,
            updated_at=now,
        ).on_conflict_do_nothing(index_elements=['source', 'symbol', 'timeframe', 'data_kind'])
        session.execute(stmt)

    def _transition(self, session, key: SyncKey, condition, values: Dict) -> int:
        stmt = update(SyncProgress)\
            .where(_key_filter(key))\
            .where(condition)\
            .values(**values)\
            .execution_options(synchronize_session=False)
        return session.execute(stmt).rowcount

    def _require_held(self, session, run: SyncRun, operation: str):
        row = session.query(SyncProgress).filter(_key_filter(run.key)).one_or_none()
        status = row.status if row else 'missing'
        if status == 'syncing' and row.started_at != run.started_at:
            raise InvalidState(
                f"Cannot {operation} sync {run.key}: run started {run.started_at} was superseded "
                f"by run started {row.started_at}"
            )
        raise InvalidState(f"Cannot {operation} sync {run.key}: status is {status}, expected syncing")

    def start(self, key: SyncKey, start: datetime = None, end: datetime = None,
              force: bool = False) -> SyncRun:
        """
        Claim the key for a new run.

        A row stuck in ``syncing`` longer than the lease is treated as
        abandoned by a crashed process and may be taken over.

        Raises:
            AlreadyRunning: another job holds the key
        """
        now = utc_now()
        start = to_naive_utc(start) if start else None
        end = to_naive_utc(end) if end else None

        with self.db.get_session() as session:
            self._ensure_row(session, key)
            claimed = self._transition(
                session, key,
                or_(SyncProgress.status != 'syncing', SyncProgress.updated_at < now - self.lease),
                {
                    'status': 'syncing',
                    'started_at': now,
                    'completed_at': None,
                    'error': None,
                    'range_start': start,
                    'range_end': end,
                    'updated_at': now,
                }
            )
            if claimed == 0:
                raise AlreadyRunning(f"Sync {key} is already running")

            watermark = session.query(SyncProgress.last_synced_time)\
                .filter(_key_filter(key)).scalar()

        if force or watermark is None:
            resume_from = start
        elif start is None:
            resume_from = watermark
        else:
            resume_from = max(start, watermark)

        logger.info(f"Sync {key} started (resume from {resume_from}, watermark {watermark}, force={force})")
        return SyncRun(key=key, resume_from=resume_from, end=end, watermark=watermark, started_at=now)

    def ingest(self, run: SyncRun, bars: Iterable[CandleBar]) -> int:
        """
        Upsert candles for the key's data kind and advance the watermark to
        the newest candle, atomically.

        Returns:
            Number of candles newer than the previous watermark

        Raises:
            InvalidState: the run no longer holds the key
        """
        key = run.key
        bars = list(bars)
        if not bars:
            return 0
        newest = max(bar.time for bar in bars)

        with self.db.get_session() as session:
            previous = session.query(SyncProgress.last_synced_time)\
                .filter(_key_filter(key)).scalar()
            times = {bar.time for bar in bars}
            new_rows = len(times) if previous is None else sum(1 for t in times if t > previous)

            touched = self._transition(
                session, key,
                _held_by(run),
                {
                    'total_rows': SyncProgress.total_rows + new_rows,
                    'updated_at': utc_now(),
                }
            )
            if touched == 0:
                self._require_held(session, run, 'ingest')

            upsert_bars(session, key.source, key.symbol, key.timeframe, bars, kind=key.data_kind)

            self._transition(
                session, key,
                or_(SyncProgress.last_synced_time.is_(None), SyncProgress.last_synced_time < newest),
                {'last_synced_time': newest}
            )

        logger.debug(f"Sync {key}: ingested {len(bars)} candles ({new_rows} new), watermark {newest}")
        return new_rows

    def advance(self, run: SyncRun, watermark: datetime) -> bool:
        """
        Move the watermark forward. A watermark at or behind the current
        one is ignored.

        Returns:
            True if the watermark moved
        """
        watermark = to_naive_utc(watermark)
        with self.db.get_session() as session:
            moved = self._transition(
                session, run.key,
                and_(
                    _held_by(run),
                    or_(SyncProgress.last_synced_time.is_(None),
                        SyncProgress.last_synced_time < watermark),
                ),
                {'last_synced_time': watermark, 'updated_at': utc_now()}
            )
            if moved == 0:
                held = session.query(SyncProgress.id)\
                    .filter(_key_filter(run.key), _held_by(run)).scalar()
                if held is None:
                    self._require_held(session, run, 'advance')
        return moved > 0

    def heartbeat(self, run: SyncRun):
        """Refresh the lease; raises InvalidState once the run lost the key"""
        with self.db.get_session() as session:
            touched = self._transition(session, run.key, _held_by(run), {'updated_at': utc_now()})
            if touched == 0:
                self._require_held(session, run, 'heartbeat')

    def complete(self, run: SyncRun):
        now = utc_now()
        with self.db.get_session() as session:
            done = self._transition(
                session, run.key,
                _held_by(run),
                {'status': 'completed', 'completed_at': now, 'error': None, 'updated_at': now}
            )
            if done == 0:
                self._require_held(session, run, 'complete')
        logger.info(f"Sync {run.key} completed")

    def fail(self, run: SyncRun, error: str):
        """Mark the run failed; the watermark stays at its last confirmed value"""
        now = utc_now()
        with self.db.get_session() as session:
            done = self._transition(
                session, run.key,
                _held_by(run),
                {'status': 'failed', 'error': str(error)[:MAX_ERROR_LENGTH], 'updated_at': now}
            )
            if done == 0:
                self._require_held(session, run, 'fail')
        logger.warning(f"Sync {run.key} failed: {error}")

    def get(self, key: SyncKey) -> Optional[SyncStatus]:
        with self.db.get_session() as session:
            row = session.query(SyncProgress).filter(_key_filter(key)).one_or_none()
            return self._to_status(row) if row else None

    def status(self, source: str = None, symbol: str = None) -> List[SyncStatus]:
        with self.db.get_session() as session:
            query = session.query(SyncProgress)
            if source is not None:
                query = query.filter(SyncProgress.source == normalize_source(source))
            if symbol is not None:
                query = query.filter(SyncProgress.symbol == symbol)
            rows = query.order_by(
                SyncProgress.source, SyncProgress.symbol, SyncProgress.timeframe, SyncProgress.data_kind
            ).all()
            return [self._to_status(row) for row in rows]

    @staticmethod
    def _to_status(row: SyncProgress) -> SyncStatus:
        return SyncStatus(
            key=SyncKey(row.source, row.symbol, row.timeframe, row.data_kind),
            status=row.status,
            last_synced_time=row.last_synced_time,
            total_rows=row.total_rows,
            error=row.error,
            started_at=row.started_at,
            completed_at=row.completed_at,
            updated_at=row.updated_at,
        )


class HistoricalSyncService:
    """
    Drives a sync run against a data provider in batches.

    The provider must expose
    ``fetch(source, symbol, timeframe, kind, start, end, limit) -> [CandleBar]``.
    """

    def __init__(self, provider, tracker: SyncTracker = None, settings: Settings = None,
                 sleep=time.sleep):
        self.provider = provider
        self.settings = settings or load_settings()
        self.tracker = tracker or SyncTracker(lease_seconds=self.settings.sync_lease_seconds)
        self.sleep = sleep

    def sync(self, key: SyncKey, start: datetime = None, end: datetime = None,
             force: bool = False) -> SyncReport:
        """
        Run one sync for a key over [start, end].

        ``end`` defaults to the last fully closed candle. ``start`` may be
        omitted when the key already has a watermark.

        Raises:
            AlreadyRunning: key is held by another job
            SyncFailure: provider kept failing; the key is left ``failed``
            InvalidState: the run's lease was taken over by another job
        """
        if end is None:
            end = last_closed_open_time(utc_now(), key.timeframe)
        run = self.tracker.start(key, start, end, force=force)
        report = SyncReport(key=key, status='syncing', resume_from=run.resume_from,
                            watermark=run.watermark)

        try:
            if run.resume_from is None:
                raise ValidationError(f"Sync {key} has no watermark; a start time is required")
            self._fetch_loop(run, report)
        except RegimeTrackerError as e:
            self._record_failure(run, str(e))
            report.status = 'failed'
            report.error = str(e)
            report.error_kind = e.kind
            raise
        except Exception as e:
            self._record_failure(run, f"{type(e).__name__}: {e}")
            raise SyncFailure(f"Sync {key} failed: {e}") from e

        self.tracker.complete(run)
        report.status = 'completed'
        current = self.tracker.get(key)
        report.watermark = current.last_synced_time if current else report.watermark
        logger.info(f"Sync {key} finished: {report.fetched} fetched, {report.new_rows} new rows")
        return report

    def _record_failure(self, run: SyncRun, error: str):
        try:
            self.tracker.fail(run, error)
        except InvalidState as e:
            logger.warning(f"Sync {run.key} could not record failure: {e}")

    def _fetch_loop(self, run: SyncRun, report: SyncReport):
        key = run.key
        step = timeframe_delta(key.timeframe)
        current = run.resume_from
        consecutive_errors = 0

        while current <= run.end:
            try:
                bars = self.provider.fetch(
                    key.source, key.symbol, key.timeframe, key.data_kind,
                    current, run.end, limit=self.settings.sync_batch_size
                )
            except RateLimited as e:
                consecutive_errors += 1
                if consecutive_errors >= self.settings.sync_max_consecutive_errors:
                    raise
                logger.warning(f"Sync {key} rate limited, cooling down "
                               f"{self.settings.sync_rate_limit_cooldown}s: {e}")
                self.tracker.heartbeat(run)
                self.sleep(self.settings.sync_rate_limit_cooldown)
                continue
            except SyncFailure as e:
                consecutive_errors += 1
                if consecutive_errors >= self.settings.sync_max_consecutive_errors:
                    raise SyncFailure(
                        f"Sync {key} aborted after {consecutive_errors} consecutive errors at {current}: {e}"
                    ) from e
                logger.warning(f"Sync {key} error {consecutive_errors}/"
                               f"{self.settings.sync_max_consecutive_errors} at {current}: {e}")
                self.tracker.heartbeat(run)
                self.sleep(self.settings.sync_retry_delay)
                continue

            consecutive_errors = 0
            bars = [bar for bar in bars if current <= bar.time <= run.end]
            if not bars:
                logger.info(f"Sync {key}: no more data after {current}")
                break

            report.new_rows += self.tracker.ingest(run, bars)
            report.fetched += len(bars)

            next_start = bars[-1].time + step
            if next_start <= current:
                logger.info(f"Sync {key}: no progress past {current}, stopping")
                break
            current = next_start
            if current <= run.end and self.settings.sync_request_delay:
                self.sleep(self.settings.sync_request_delay)

    def sync_many(self, keys: List[SyncKey], start: datetime = None, end: datetime = None,
                  force: bool = False) -> List[SyncReport]:
        """
        Sync several keys one after another. A failure on one key is
        recorded in its report and does not stop the others.
        """
        reports = []
        for key in keys:
            try:
                reports.append(self.sync(key, start, end, force=force))
            except RegimeTrackerError as e:
                logger.error(f"Sync {key} did not complete: {e}")
                reports.append(SyncReport(key=key, status='failed', error=str(e), error_kind=e.kind))
        return reports
