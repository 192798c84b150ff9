"""
Live snapshot storage.

Persists analyzer output captured by live callers so the outcome labeler
can score it later, the same way it scores replay snapshots.
"""

import logging
from datetime import datetime
from typing import Optional, List

from regime_tracker.errors import NotFoundError
from regime_tracker.storage.database import db_manager
from regime_tracker.storage.models import MarketState
from regime_tracker.timeutils import to_naive_utc

logger = logging.getLogger(__name__)


class SnapshotStore:

    def __init__(self, db=None):
        self.db = db or db_manager

    def save(self, symbol: str, time: datetime, output, config_version: str = None) -> int:
        """
        Store a live analyzer output.

        Args:
            symbol: Symbol the analyzer evaluated
            time: Moment the output describes
            output: AnalyzerOutput returned by the analyzer
            config_version: Active config version used for the evaluation

        Returns:
            ID of the stored snapshot
        """
        with self.db.get_session() as session:
            state = MarketState(
                symbol=symbol,
                time=to_naive_utc(time),
                bias=output.bias,
                confidence=output.confidence,
                primary_regime=output.regime,
                price=output.price,
                full_state_json=output.state,
                config_version=config_version,
            )
            session.add(state)
            session.flush()
            state_id = state.id

        logger.info(f"Saved market state {state_id} for {symbol} at {time} (bias={output.bias})")
        return state_id

    def get(self, state_id: int) -> MarketState:
        with self.db.get_session() as session:
            state = session.get(MarketState, state_id)
            if state is None:
                raise NotFoundError(f"Market state {state_id} not found")
            session.expunge(state)
        return state

    def recent(self, symbol: str, limit: int = 50) -> List[MarketState]:
        with self.db.get_session() as session:
            states = session.query(MarketState)\
                .filter(MarketState.symbol == symbol)\
                .order_by(MarketState.time.desc())\
                .limit(limit).all()
            session.expunge_all()
        return states

    def latest(self, symbol: str) -> Optional[MarketState]:
        states = self.recent(symbol, limit=1)
        return states[0] if states else None
