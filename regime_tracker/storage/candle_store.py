"""
Candle Store

Durable candle storage keyed by (source, symbol, timeframe, time) with an
ordered read API. Writes are upserts so re-ingesting a key overwrites it.
Sources are stored lower-case; every read and write normalises the name.
"""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Optional, List, Dict, Iterable

import pandas as pd
from sqlalchemy import and_, func

from regime_tracker.storage.database import db_manager
from regime_tracker.storage.models import Candle
from regime_tracker.timeutils import utc_now

logger = logging.getLogger(__name__)

# Columns written by each ingestion data kind
KIND_COLUMNS = {
    'price': ('open', 'high', 'low', 'close', 'volume'),
    'oi': ('oi_open', 'oi_high', 'oi_low', 'oi_close'),
    'funding': ('funding_rate',),
    'taker_volume': ('buy_volume', 'sell_volume'),
}

VALUE_COLUMNS = tuple(col for cols in KIND_COLUMNS.values() for col in cols)

KEY_COLUMNS = ('source', 'symbol', 'timeframe', 'time')

UPSERT_CHUNK = 200


@dataclass
class CandleBar:
    """A candle as read from or written to the store"""
    time: datetime
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    close: Optional[float] = None
    volume: Optional[float] = None
    oi_open: Optional[float] = None
    oi_high: Optional[float] = None
    oi_low: Optional[float] = None
    oi_close: Optional[float] = None
    buy_volume: Optional[float] = None
    sell_volume: Optional[float] = None
    funding_rate: Optional[float] = None
    cvd: Optional[float] = None

    def to_dict(self) -> dict:
        return asdict(self)


def normalize_source(source: str) -> str:
    """Canonical stored form of a source name ('Binance' -> 'binance')"""
    return source.strip().lower()


def columns_for(kind: Optional[str]) -> tuple:
    if kind is None:
        return VALUE_COLUMNS
    if kind not in KIND_COLUMNS:
        raise ValueError(f"Invalid data kind: {kind}")
    return KIND_COLUMNS[kind]


def _dialect_insert(session):
    if session.get_bind().dialect.name == 'postgresql':
        from sqlalchemy.dialects.postgresql import insert
    else:
        from sqlalchemy.dialects.sqlite import insert
    return insert


def upsert_bars(session, source: str, symbol: str, timeframe: str,
                bars: Iterable[CandleBar], kind: Optional[str] = None) -> int:
    """
    Upsert candles inside an existing session.

    Only the columns belonging to ``kind`` are inserted or overwritten, so
    different data kinds merge into the same row. ``kind=None`` writes every
    value column.

    Returns:
        Number of candle keys written
    """
    columns = columns_for(kind)
    source = normalize_source(source)
    # Last write wins for a key repeated within one call
    by_time: Dict[datetime, dict] = {}
    for bar in bars:
        row = {'source': source, 'symbol': symbol, 'timeframe': timeframe, 'time': bar.time}
        for col in columns:
            row[col] = getattr(bar, col)
        by_time[bar.time] = row

    if not by_time:
        return 0

    insert = _dialect_insert(session)
    rows = [by_time[t] for t in sorted(by_time)]
    for i in range(0, len(rows), UPSERT_CHUNK):
        chunk = rows[i:i + UPSERT_CHUNK]
        stmt = insert(Candle).values(chunk)
        update = {col: getattr(stmt.excluded, col) for col in columns}
        update['updated_at'] = utc_now()
        stmt = stmt.on_conflict_do_update(index_elements=list(KEY_COLUMNS), set_=update)
        session.execute(stmt)

    return len(rows)


def _to_bar(candle: Candle) -> CandleBar:
    return CandleBar(time=candle.time, **{col: getattr(candle, col) for col in VALUE_COLUMNS})


def with_cvd(bars: List[CandleBar]) -> List[CandleBar]:
    """
    Attach cumulative volume delta, reset to zero at the first bar.

    Bars without taker volume contribute nothing to the running sum.
    """
    running = 0.0
    for bar in bars:
        running += (bar.buy_volume or 0.0) - (bar.sell_volume or 0.0)
        bar.cvd = running
    return bars


class CandleStore:
    """
    Read/write API over historical candles.
    """

    def __init__(self, db=None):
        self.db = db or db_manager

    def upsert(self, source: str, symbol: str, timeframe: str,
               bars: Iterable[CandleBar], kind: Optional[str] = None) -> int:
        """
        Upsert candles in their own transaction.

        Args:
            source: Data source (e.g., 'binance')
            symbol: Symbol (e.g., 'BTCUSDT')
            timeframe: Timeframe (e.g., '1h')
            bars: Candles to write
            kind: Data kind whose columns are written (None for all)

        Returns:
            Number of candle keys written
        """
        with self.db.get_session() as session:
            count = upsert_bars(session, source, symbol, timeframe, bars, kind)
        logger.debug(f"Upserted {count} {kind or 'full'} candles for {source} {symbol} {timeframe}")
        return count

    def _query(self, session, source, symbol, timeframe, start, end):
        filters = [
            Candle.source == normalize_source(source),
            Candle.symbol == symbol,
            Candle.timeframe == timeframe,
        ]
        if start is not None:
            filters.append(Candle.time >= start)
        if end is not None:
            filters.append(Candle.time <= end)
        return session.query(Candle).filter(and_(*filters))

    def get(self, source: str, symbol: str, timeframe: str,
            start: datetime = None, end: datetime = None) -> List[CandleBar]:
        """
        Candles in [start, end] ascending by time, with CVD computed over
        the returned window.
        """
        with self.db.get_session() as session:
            candles = self._query(session, source, symbol, timeframe, start, end)\
                .order_by(Candle.time).all()
            bars = [_to_bar(c) for c in candles]
        return with_cvd(bars)

    def get_frame(self, source: str, symbol: str, timeframe: str,
                  start: datetime = None, end: datetime = None) -> pd.DataFrame:
        """Same rows as get() as a DataFrame indexed by time"""
        with self.db.get_session() as session:
            candles = self._query(session, source, symbol, timeframe, start, end)\
                .order_by(Candle.time).all()
            records = [{'time': c.time, **{col: getattr(c, col) for col in VALUE_COLUMNS}}
                       for c in candles]

        df = pd.DataFrame(records, columns=['time', *VALUE_COLUMNS])
        if df.empty:
            df['cvd'] = pd.Series(dtype=float)
            return df.set_index('time')

        delta = df['buy_volume'].astype(float).fillna(0.0) - df['sell_volume'].astype(float).fillna(0.0)
        df['cvd'] = delta.cumsum()
        return df.set_index('time')

    def latest_time(self, source: str, symbol: str, timeframe: str) -> Optional[datetime]:
        with self.db.get_session() as session:
            return self._query(session, source, symbol, timeframe, None, None)\
                .with_entities(func.max(Candle.time)).scalar()

    def earliest_time(self, source: str, symbol: str, timeframe: str) -> Optional[datetime]:
        with self.db.get_session() as session:
            return self._query(session, source, symbol, timeframe, None, None)\
                .with_entities(func.min(Candle.time)).scalar()

    def has_data(self, source: str, symbol: str, timeframe: str,
                 start: datetime, end: datetime) -> bool:
        """True when stored candles span the whole of [start, end]"""
        with self.db.get_session() as session:
            earliest, latest = self._query(session, source, symbol, timeframe, None, None)\
                .with_entities(func.min(Candle.time), func.max(Candle.time)).one()
        if earliest is None:
            return False
        return earliest <= start and latest >= end

    def count(self, source: str, symbol: str, timeframe: str,
              start: datetime = None, end: datetime = None) -> int:
        with self.db.get_session() as session:
            return self._query(session, source, symbol, timeframe, start, end).count()

    def coverage(self, symbol: str = None) -> List[dict]:
        """
        Stored coverage per (source, symbol, timeframe).

        Returns:
            List of dicts with earliest, latest and candle count
        """
        with self.db.get_session() as session:
            query = session.query(
                Candle.source,
                Candle.symbol,
                Candle.timeframe,
                func.min(Candle.time),
                func.max(Candle.time),
                func.count(Candle.id),
            )
            if symbol is not None:
                query = query.filter(Candle.symbol == symbol)
            rows = query.group_by(Candle.source, Candle.symbol, Candle.timeframe)\
                .order_by(Candle.source, Candle.symbol, Candle.timeframe).all()

        return [
            {
                'source': source,
                'symbol': sym,
                'timeframe': timeframe,
                'earliest': earliest,
                'latest': latest,
                'count': count,
            }
            for source, sym, timeframe, earliest, latest, count in rows
        ]

    def delete(self, symbol: str, source: str = None, timeframe: str = None) -> int:
        """Delete candles for a symbol, optionally narrowed by source and timeframe"""
        with self.db.get_session() as session:
            query = session.query(Candle).filter(Candle.symbol == symbol)
            if source is not None:
                query = query.filter(Candle.source == normalize_source(source))
            if timeframe is not None:
                query = query.filter(Candle.timeframe == timeframe)
            deleted = query.delete(synchronize_session=False)
        logger.info(f"Deleted {deleted} candles for {symbol}")
        return deleted
