"""
Absorption Event Tracker

Lifecycle of absorption detections: an event is OPEN from detection until
it is RESOLVED, which is terminal. For each (symbol, timeframe, direction)
at most one event may be open; the database enforces this with a partial
unique index, so concurrent detectors cannot both open one.
"""

import logging
from dataclasses import dataclass, fields
from datetime import datetime
from enum import Enum
from numbers import Number
from typing import Optional, List, Dict, Any, Union

from sqlalchemy import and_, update
from sqlalchemy.exc import IntegrityError

from regime_tracker.errors import DuplicateOpen, InvalidState, NotFoundError, ValidationError
from regime_tracker.storage.database import db_manager
from regime_tracker.storage.models import AbsorptionEvent
from regime_tracker.timeutils import utc_now, to_naive_utc

logger = logging.getLogger(__name__)

DIRECTIONS = ('buying', 'selling')

RESOLUTIONS = ('TRAP', 'ACCUMULATION', 'DISTRIBUTION', 'EXPIRED')

MAX_EXTENSIONS = 1


class AbsorptionState(Enum):
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"


@dataclass
class AbsorptionEvidence:
    """What the detector saw when it flagged the absorption"""
    price_at_detection: float
    cvd_strength: Optional[float] = None
    cvd_noise_floor: Optional[float] = None
    oi_behavior: Optional[str] = None
    oi_at_detection: Optional[float] = None
    price_response: Optional[str] = None
    location: Optional[str] = None
    sr_level_used: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AbsorptionEvidence':
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValidationError(f"Unknown evidence fields: {', '.join(sorted(unknown))}")
        if data.get('price_at_detection') is None:
            raise ValidationError("Evidence requires price_at_detection")
        return cls(**data)

    def validate(self):
        issues = []
        if not isinstance(self.price_at_detection, Number) or self.price_at_detection <= 0:
            issues.append(f"price_at_detection must be a positive number, got {self.price_at_detection!r}")
        for name in ('cvd_strength', 'cvd_noise_floor', 'oi_at_detection', 'sr_level_used'):
            value = getattr(self, name)
            if value is not None and not isinstance(value, Number):
                issues.append(f"{name} must be numeric, got {value!r}")
        if issues:
            raise ValidationError(f"Invalid absorption evidence: {'; '.join(issues)}", issues)


@dataclass
class AbsorptionRecord:
    id: int
    symbol: str
    timeframe: str
    direction: str
    state: AbsorptionState
    detected_at: datetime
    evidence: AbsorptionEvidence
    extensions_used: int
    market_state_id: Optional[int] = None
    last_evidence: Optional[Dict[str, Any]] = None
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None
    resolution_reason: Optional[str] = None
    resolution_criteria: Optional[Dict[str, Any]] = None


def _to_record(row: AbsorptionEvent) -> AbsorptionRecord:
    return AbsorptionRecord(
        id=row.id,
        symbol=row.symbol,
        timeframe=row.timeframe,
        direction=row.direction,
        state=AbsorptionState.OPEN if row.resolved_at is None else AbsorptionState.RESOLVED,
        detected_at=row.detected_at,
        evidence=AbsorptionEvidence(
            price_at_detection=row.price_at_detection,
            cvd_strength=row.cvd_strength,
            cvd_noise_floor=row.cvd_noise_floor,
            oi_behavior=row.oi_behavior,
            oi_at_detection=row.oi_at_detection,
            price_response=row.price_response,
            location=row.location,
            sr_level_used=row.sr_level_used,
        ),
        extensions_used=row.extensions_used,
        market_state_id=row.market_state_id,
        last_evidence=row.last_evidence,
        resolved_at=row.resolved_at,
        resolution=row.resolution,
        resolution_reason=row.resolution_reason,
        resolution_criteria=row.resolution_criteria,
    )


class AbsorptionTracker:

    def __init__(self, db=None):
        self.db = db or db_manager

    def _open_id(self, session, symbol: str, timeframe: str, direction: str) -> Optional[int]:
        return session.query(AbsorptionEvent.id).filter(and_(
            AbsorptionEvent.symbol == symbol,
            AbsorptionEvent.timeframe == timeframe,
            AbsorptionEvent.direction == direction,
            AbsorptionEvent.resolved_at.is_(None),
        )).scalar()

    def open(self, symbol: str, timeframe: str, direction: str,
             evidence: Union[AbsorptionEvidence, Dict[str, Any]],
             market_state_id: int = None, detected_at: datetime = None) -> int:
        """
        Start tracking a new absorption.

        Returns:
            ID of the new open event

        Raises:
            DuplicateOpen: an event is already open for the key; callers
                should treat this as "already tracked"
            ValidationError: unknown direction or malformed evidence
        """
        if direction not in DIRECTIONS:
            raise ValidationError(f"Invalid absorption direction: {direction!r}")
        if isinstance(evidence, dict):
            evidence = AbsorptionEvidence.from_dict(evidence)
        evidence.validate()

        with self.db.get_session() as session:
            event = AbsorptionEvent(
                market_state_id=market_state_id,
                symbol=symbol,
                timeframe=timeframe,
                direction=direction,
                detected_at=to_naive_utc(detected_at) if detected_at else utc_now(),
                cvd_strength=evidence.cvd_strength,
                cvd_noise_floor=evidence.cvd_noise_floor,
                oi_behavior=evidence.oi_behavior,
                oi_at_detection=evidence.oi_at_detection,
                price_response=evidence.price_response,
                price_at_detection=evidence.price_at_detection,
                location=evidence.location,
                sr_level_used=evidence.sr_level_used,
                extensions_used=0,
            )
            session.add(event)
            try:
                session.flush()
            except IntegrityError:
                session.rollback()
                existing = self._open_id(session, symbol, timeframe, direction)
                raise DuplicateOpen(symbol, timeframe, direction, existing)
            event_id = event.id

        logger.info(f"Opened absorption {event_id}: {symbol} {timeframe} {direction} "
                    f"at {evidence.price_at_detection}")
        return event_id

    def _missing_or_resolved(self, session, event_id: int, operation: str):
        row = session.get(AbsorptionEvent, event_id)
        if row is None:
            raise NotFoundError(f"Absorption event {event_id} not found")
        raise InvalidState(
            f"Cannot {operation} absorption event {event_id}: resolved as {row.resolution} at {row.resolved_at}"
        )

    def extend(self, event_id: int, evidence: Dict[str, Any] = None) -> int:
        """
        Record a re-confirmation of an open event.

        Returns:
            The new extensions_used count

        Raises:
            InvalidState: the event is already resolved
        """
        values = {'extensions_used': AbsorptionEvent.extensions_used + 1}
        if evidence is not None:
            values['last_evidence'] = evidence

        with self.db.get_session() as session:
            changed = session.execute(
                update(AbsorptionEvent)
                .where(AbsorptionEvent.id == event_id)
                .where(AbsorptionEvent.resolved_at.is_(None))
                .values(**values)
                .execution_options(synchronize_session=False)
            ).rowcount
            if changed == 0:
                self._missing_or_resolved(session, event_id, 'extend')
            count = session.query(AbsorptionEvent.extensions_used)\
                .filter(AbsorptionEvent.id == event_id).scalar()

        logger.info(f"Extended absorption {event_id} ({count} extensions)")
        return count

    def resolve(self, event_id: int, resolution: str, reason: str,
                criteria: Dict[str, Any] = None):
        """
        Close an open event. Resolution is irreversible.

        Raises:
            ValidationError: unknown resolution
            InvalidState: the event is already resolved
        """
        if resolution not in RESOLUTIONS:
            raise ValidationError(f"Invalid resolution: {resolution!r}")

        with self.db.get_session() as session:
            changed = session.execute(
                update(AbsorptionEvent)
                .where(AbsorptionEvent.id == event_id)
                .where(AbsorptionEvent.resolved_at.is_(None))
                .values(
                    resolved_at=utc_now(),
                    resolution=resolution,
                    resolution_reason=reason,
                    resolution_criteria=criteria or {},
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            if changed == 0:
                self._missing_or_resolved(session, event_id, 'resolve')

        logger.info(f"Resolved absorption {event_id} as {resolution}: {reason}")

    def extend_or_expire(self, event_id: int, evidence: Dict[str, Any] = None,
                         max_extensions: int = MAX_EXTENSIONS) -> AbsorptionState:
        """
        Extend an inconclusive event, or expire it once its extensions are
        used up.
        """
        record = self.get(event_id)
        if record.state is AbsorptionState.RESOLVED:
            raise InvalidState(f"Cannot extend absorption event {event_id}: already resolved")
        if record.extensions_used < max_extensions:
            self.extend(event_id, evidence)
            return AbsorptionState.OPEN
        self.resolve(event_id, 'EXPIRED', 'Max extensions reached')
        return AbsorptionState.RESOLVED

    def get(self, event_id: int) -> AbsorptionRecord:
        with self.db.get_session() as session:
            row = session.get(AbsorptionEvent, event_id)
            if row is None:
                raise NotFoundError(f"Absorption event {event_id} not found")
            return _to_record(row)

    def open_events(self, symbol: str = None, timeframe: str = None) -> List[AbsorptionRecord]:
        with self.db.get_session() as session:
            query = session.query(AbsorptionEvent).filter(AbsorptionEvent.resolved_at.is_(None))
            if symbol is not None:
                query = query.filter(AbsorptionEvent.symbol == symbol)
            if timeframe is not None:
                query = query.filter(AbsorptionEvent.timeframe == timeframe)
            rows = query.order_by(AbsorptionEvent.detected_at).all()
            return [_to_record(row) for row in rows]
