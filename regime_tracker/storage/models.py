"""
SQLAlchemy Database Models

ORM models for the regime tracker store. Every concurrency guarantee of
the system is expressed here as a constraint or index.
"""

from sqlalchemy import (
    Column, Integer, String, DECIMAL, TIMESTAMP, Text, Index, JSON,
    UniqueConstraint, CheckConstraint, text
)
from sqlalchemy.orm import declarative_base

from regime_tracker.timeutils import utc_now

Base = declarative_base()


def _price():
    return DECIMAL(24, 8, asdecimal=False)


def _amount():
    return DECIMAL(30, 8, asdecimal=False)


def _pct():
    return DECIMAL(18, 6, asdecimal=False)


# ============================================================================
# MARKET DATA MODELS
# ============================================================================

class Candle(Base):
    """
    Historical candle merged across data kinds.

    One row per (source, symbol, timeframe, time). Price, open interest,
    funding and taker volume ingestion each write only their own columns.
    Cumulative volume delta is derived at read time and never stored.
    """
    __tablename__ = 'historical_candles'

    id = Column(Integer, primary_key=True, autoincrement=True)
    source = Column(String(50), nullable=False)
    symbol = Column(String(30), nullable=False)
    timeframe = Column(String(10), nullable=False)
    time = Column(TIMESTAMP, nullable=False)

    # Price
    open = Column(_price())
    high = Column(_price())
    low = Column(_price())
    close = Column(_price())
    volume = Column(_amount())

    # Open interest
    oi_open = Column(_amount())
    oi_high = Column(_amount())
    oi_low = Column(_amount())
    oi_close = Column(_amount())

    # Taker volume
    buy_volume = Column(_amount())
    sell_volume = Column(_amount())

    funding_rate = Column(DECIMAL(18, 10, asdecimal=False))

    created_at = Column(TIMESTAMP, default=utc_now)
    updated_at = Column(TIMESTAMP, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint('source', 'symbol', 'timeframe', 'time', name='uq_historical_candle'),
        Index('idx_historical_candles_lookup', 'symbol', 'timeframe', 'time'),
    )

    def __repr__(self):
        return f"<Candle({self.source} {self.symbol} {self.timeframe} {self.time}, close={self.close})>"


class SyncProgress(Base):
    """Resumable ingestion state per (source, symbol, timeframe, data_kind)"""
    __tablename__ = 'historical_sync_progress'

    id = Column(Integer, primary_key=True, autoincrement=True)
    source = Column(String(50), nullable=False)
    symbol = Column(String(30), nullable=False)
    timeframe = Column(String(10), nullable=False)
    data_kind = Column(String(20), nullable=False)

    last_synced_time = Column(TIMESTAMP)
    status = Column(String(20), nullable=False, default='pending')
    total_rows = Column(Integer, nullable=False, default=0)
    error = Column(Text)

    range_start = Column(TIMESTAMP)
    range_end = Column(TIMESTAMP)
    started_at = Column(TIMESTAMP)
    completed_at = Column(TIMESTAMP)

    created_at = Column(TIMESTAMP, default=utc_now)
    updated_at = Column(TIMESTAMP, default=utc_now)

    __table_args__ = (
        UniqueConstraint('source', 'symbol', 'timeframe', 'data_kind', name='uq_sync_progress_key'),
        Index('idx_sync_progress_status', 'status'),
    )

    def __repr__(self):
        return (f"<SyncProgress({self.source} {self.symbol} {self.timeframe} {self.data_kind}, "
                f"status={self.status}, watermark={self.last_synced_time})>")


# ============================================================================
# ANALYZER CONFIGURATION MODELS
# ============================================================================

class AnalyzerConfig(Base):
    """Single-slot register holding the active analyzer configuration"""
    __tablename__ = 'analyzer_config'

    slot = Column(Integer, primary_key=True, default=1)
    version = Column(String(20), nullable=False)
    config_json = Column(JSON, nullable=False)
    validation_status = Column(String(20), nullable=False, default='valid')
    created_by = Column(String(100))
    notes = Column(Text)
    created_at = Column(TIMESTAMP, default=utc_now)

    __table_args__ = (
        CheckConstraint('slot = 1', name='ck_analyzer_config_single_slot'),
    )

    def __repr__(self):
        return f"<AnalyzerConfig(version={self.version}, created_by={self.created_by})>"


class AnalyzerConfigHistory(Base):
    """Append-only record of every accepted configuration proposal"""
    __tablename__ = 'analyzer_config_history'

    id = Column(Integer, primary_key=True, autoincrement=True)
    version = Column(String(20), nullable=False, unique=True)
    config_json = Column(JSON, nullable=False)
    previous_config_json = Column(JSON)
    diff_summary = Column(JSON)
    based_on_version = Column(String(20))
    action = Column(String(20), nullable=False)
    created_by = Column(String(100))
    notes = Column(Text)
    validation_status = Column(String(20), nullable=False, default='valid')
    created_at = Column(TIMESTAMP, default=utc_now)

    __table_args__ = (
        Index('idx_config_history_created', 'created_at'),
    )

    def __repr__(self):
        return f"<AnalyzerConfigHistory(version={self.version}, action={self.action})>"


# ============================================================================
# SNAPSHOT MODELS
# ============================================================================

class OutcomeColumns:
    """Outcome fields shared by live and replay snapshots; null until labeled"""

    outcome_label = Column(String(20))
    outcome_reason = Column(Text)
    outcome_horizon = Column(String(20))
    outcome_price = Column(_price())
    outcome_move_pct = Column(_pct())
    outcome_mfe = Column(_pct())
    outcome_mae = Column(_pct())
    outcome_labeled_at = Column(TIMESTAMP)


class MarketState(OutcomeColumns, Base):
    """Live analyzer snapshot"""
    __tablename__ = 'market_states'

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String(30), nullable=False)
    time = Column(TIMESTAMP, nullable=False)
    bias = Column(String(20))
    confidence = Column(DECIMAL(8, 4, asdecimal=False))
    primary_regime = Column(String(50))
    price = Column(_price())
    full_state_json = Column(JSON)
    config_version = Column(String(20))
    created_at = Column(TIMESTAMP, default=utc_now)

    __table_args__ = (
        Index('idx_market_states_symbol_time', 'symbol', 'time'),
        Index('idx_market_states_labeled', 'outcome_labeled_at'),
    )

    def __repr__(self):
        return f"<MarketState(symbol={self.symbol}, time={self.time}, bias={self.bias})>"


class ReplayState(OutcomeColumns, Base):
    """Replayed analyzer snapshot, unique per (batch_id, as_of_time, symbol)"""
    __tablename__ = 'replay_states'

    id = Column(Integer, primary_key=True, autoincrement=True)
    batch_id = Column(String(100), nullable=False)
    as_of_time = Column(TIMESTAMP, nullable=False)
    symbol = Column(String(30), nullable=False)

    bias = Column(String(20))
    confidence = Column(DECIMAL(8, 4, asdecimal=False))
    primary_regime = Column(String(50))
    price = Column(_price())
    full_state_json = Column(JSON)
    config_version = Column(String(20))

    # Visible candle range at evaluation time
    data_range_earliest = Column(TIMESTAMP)
    data_range_latest = Column(TIMESTAMP)
    candles_captured = Column(JSON)

    status = Column(String(20), nullable=False, default='COMPLETED')
    error_message = Column(Text)
    created_at = Column(TIMESTAMP, default=utc_now)

    __table_args__ = (
        UniqueConstraint('batch_id', 'as_of_time', 'symbol', name='uq_replay_batch_asof_symbol'),
        Index('idx_replay_states_batch', 'batch_id'),
        Index('idx_replay_states_labeled', 'outcome_labeled_at'),
    )

    def __repr__(self):
        return (f"<ReplayState(batch={self.batch_id}, symbol={self.symbol}, "
                f"as_of={self.as_of_time}, status={self.status})>")


# ============================================================================
# ABSORPTION MODELS
# ============================================================================

class AbsorptionEvent(Base):
    """
    Absorption detection lifecycle.

    At most one unresolved row per (symbol, timeframe, direction), enforced
    by a partial unique index over rows with resolved_at IS NULL.
    """
    __tablename__ = 'absorption_events'

    id = Column(Integer, primary_key=True, autoincrement=True)
    market_state_id = Column(Integer)
    symbol = Column(String(30), nullable=False)
    timeframe = Column(String(10), nullable=False)
    direction = Column(String(10), nullable=False)
    detected_at = Column(TIMESTAMP, nullable=False, default=utc_now)

    # Detection evidence
    cvd_strength = Column(_pct())
    cvd_noise_floor = Column(_pct())
    oi_behavior = Column(String(30))
    oi_at_detection = Column(_amount())
    price_response = Column(String(30))
    price_at_detection = Column(_price())
    location = Column(String(30))
    sr_level_used = Column(_price())
    last_evidence = Column(JSON)

    # Resolution
    resolved_at = Column(TIMESTAMP)
    resolution = Column(String(20))
    resolution_reason = Column(Text)
    resolution_criteria = Column(JSON)

    extensions_used = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index(
            'uq_absorption_open_key', 'symbol', 'timeframe', 'direction',
            unique=True,
            sqlite_where=text('resolved_at IS NULL'),
            postgresql_where=text('resolved_at IS NULL')
        ),
        Index('idx_absorption_detected', 'symbol', 'detected_at'),
    )

    def __repr__(self):
        return (f"<AbsorptionEvent(id={self.id}, {self.symbol} {self.timeframe} {self.direction}, "
                f"resolution={self.resolution})>")
