"""
Shared test fixtures.

Each test gets a fresh file-backed SQLite database so that tests using
worker threads see one store through separate connections.
"""

import sys
import os
from datetime import datetime, timedelta

import pytest

# Add project root to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from regime_tracker.config.config_store import ConfigStore
from regime_tracker.config.defaults import DEFAULT_CONFIG
from regime_tracker.storage.candle_store import CandleBar, CandleStore
from regime_tracker.storage.database import db_manager


@pytest.fixture
def db(tmp_path):
    db_manager.initialize(f"sqlite:///{tmp_path / 'regime_tracker_test.db'}")
    db_manager.create_tables()
    yield db_manager
    db_manager.close()


@pytest.fixture
def candle_store(db):
    return CandleStore(db)


@pytest.fixture
def seeded_config(db):
    store = ConfigStore(db)
    store.propose(DEFAULT_CONFIG, 'tester', 'Seed for tests')
    return store


@pytest.fixture
def make_bars():
    """
    Build price candles from a list of closes.

    Each bar opens at the previous close, with high/low 0.1% around the
    open/close range unless explicit (high, low, close) tuples are given.
    """
    def _make(start: datetime, closes, timeframe_minutes: int = 60, buy=None, sell=None):
        bars = []
        previous = None
        for i, value in enumerate(closes):
            if isinstance(value, tuple):
                high, low, close = value
                open_ = previous if previous is not None else close
            else:
                close = float(value)
                open_ = previous if previous is not None else close
                high = max(open_, close) * 1.001
                low = min(open_, close) * 0.999
            bars.append(CandleBar(
                time=start + timedelta(minutes=timeframe_minutes * i),
                open=open_,
                high=high,
                low=low,
                close=close,
                volume=10.0,
                buy_volume=buy[i] if buy else None,
                sell_volume=sell[i] if sell else None,
            ))
            previous = close
        return bars
    return _make
