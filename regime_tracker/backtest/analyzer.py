"""
Analyzer Interface

The analyzer turns a candle window into a bias/regime/confidence judgment.
Its algorithms live outside this project; replay and live callers only
rely on the types below.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Dict, Any

from regime_tracker.storage.candle_store import CandleBar

# Biases that express no directional opinion
NO_OPINION_BIASES = ('WAIT', 'NEUTRAL')

LONG_BIASES = ('LONG', 'BULLISH')
SHORT_BIASES = ('SHORT', 'BEARISH')


@dataclass
class AnalyzerOutput:
    bias: Optional[str]
    confidence: Optional[float] = None
    regime: Optional[str] = None
    price: Optional[float] = None
    state: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SeriesWindow:
    """Candles of one (source, timeframe) series visible at the as-of time"""
    source: str
    timeframe: str
    bars: List[CandleBar]

    @property
    def earliest(self) -> Optional[datetime]:
        return self.bars[0].time if self.bars else None

    @property
    def latest(self) -> Optional[datetime]:
        return self.bars[-1].time if self.bars else None


@dataclass
class CandleWindow:
    symbol: str
    as_of: datetime
    series: Dict[str, SeriesWindow] = field(default_factory=dict)

    @staticmethod
    def series_name(source: str, timeframe: str) -> str:
        return f"{source}/{timeframe}"

    def get(self, timeframe: str, source: str = None) -> List[CandleBar]:
        """Bars for a timeframe, optionally narrowed to one source"""
        for window in self.series.values():
            if window.timeframe == timeframe and (source is None or window.source == source):
                return window.bars
        return []

    @property
    def earliest(self) -> Optional[datetime]:
        times = [w.earliest for w in self.series.values() if w.earliest is not None]
        return min(times) if times else None

    @property
    def latest(self) -> Optional[datetime]:
        times = [w.latest for w in self.series.values() if w.latest is not None]
        return max(times) if times else None

    def captured(self) -> Dict[str, Dict[str, Any]]:
        """Exact candle ranges the analyzer was shown, per series"""
        return {
            name: {
                'count': len(window.bars),
                'first': window.earliest.isoformat() if window.earliest else None,
                'last': window.latest.isoformat() if window.latest else None,
            }
            for name, window in sorted(self.series.items())
        }


class Analyzer:
    """
    Interface for analyzers driven by replay and live callers.

    ``evaluate`` must be pure: the same config and window always produce
    the same output, with no hidden reads of external state.
    """

    def evaluate(self, config: Dict[str, Any], window: CandleWindow) -> AnalyzerOutput:
        raise NotImplementedError
