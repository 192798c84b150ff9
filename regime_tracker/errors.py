"""
Error Taxonomy

Every failure surfaced by the state-management components derives from
RegimeTrackerError and carries a machine-readable ``kind`` that job
triggers report back to the operator.
"""


class RegimeTrackerError(Exception):
    """Base class for all regime tracker errors"""

    kind = 'error'
    retryable = False


class ValidationError(RegimeTrackerError):
    """Malformed configuration document or detection evidence"""

    kind = 'validation_error'

    def __init__(self, message: str, issues: list = None):
        super().__init__(message)
        self.issues = list(issues or [])


class DuplicateError(RegimeTrackerError):
    """A write collided with a uniqueness constraint"""

    kind = 'duplicate'


class DuplicateOpen(DuplicateError):
    """An open absorption event already exists for the key"""

    kind = 'duplicate_open'

    def __init__(self, symbol: str, timeframe: str, direction: str, existing_id: int = None):
        super().__init__(
            f"Open absorption event already tracked for {symbol} {timeframe} {direction}"
            + (f" (id={existing_id})" if existing_id is not None else "")
        )
        self.symbol = symbol
        self.timeframe = timeframe
        self.direction = direction
        self.existing_id = existing_id


class AlreadyRunning(RegimeTrackerError):
    """Another job currently holds the sync key"""

    kind = 'already_running'
    retryable = True


class SyncFailure(RegimeTrackerError):
    """Data provider or network fault during ingestion"""

    kind = 'sync_failure'
    retryable = True


class RateLimited(SyncFailure):
    """Provider rejected the request because of rate limiting"""

    kind = 'rate_limited'


class InsufficientData(RegimeTrackerError):
    """Not enough candle data to complete the operation yet"""

    kind = 'insufficient_data'
    retryable = True


class NotFoundError(RegimeTrackerError):
    kind = 'not_found'


class InvalidState(RegimeTrackerError):
    """Operation is illegal for the record's current lifecycle state"""

    kind = 'invalid_state'


class LookaheadViolation(InvalidState):
    """A replay window contained data newer than its as-of time"""

    kind = 'lookahead_violation'


class VersionConflict(RegimeTrackerError):
    """The active configuration changed underneath a proposal"""

    kind = 'version_conflict'
    retryable = True

    def __init__(self, expected: str, actual: str, message: str = None):
        super().__init__(
            message or f"Config version conflict: proposal based on {expected}, active is {actual}"
        )
        self.expected = expected
        self.actual = actual
