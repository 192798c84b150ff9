"""
Outcome Labeler

Deterministic classification of what the market did after a snapshot.

Each snapshot resolves into one label for its horizon:
- CONTINUATION: price moved in the bias direction past the threshold first
- REVERSAL: price moved against the bias past the threshold first
- NOISE: neither side crossed the threshold within the horizon

The threshold is the snapshot's noise floor scaled by a multiplier. The
candle path is walked in time order and the first side to cross wins; when
one candle crosses both sides, the adverse side is taken.
"""

from dataclasses import dataclass
from typing import Optional, List

from regime_tracker.backtest.analyzer import LONG_BIASES, SHORT_BIASES
from regime_tracker.storage.candle_store import CandleBar

CONTINUATION = 'CONTINUATION'
REVERSAL = 'REVERSAL'
NOISE = 'NOISE'

DEFAULT_THRESHOLD_MULTIPLIER = 1.0


@dataclass(frozen=True)
class Horizon:
    name: str
    minutes: int
    timeframe: str
    noise_floor_pct: float


HORIZONS = {
    'SCALPING': Horizon('SCALPING', minutes=60, timeframe='30m', noise_floor_pct=0.3),
    'MICRO': Horizon('MICRO', minutes=480, timeframe='1h', noise_floor_pct=0.8),
    'MACRO': Horizon('MACRO', minutes=7200, timeframe='4h', noise_floor_pct=2.0),
}


@dataclass
class Outcome:
    label: Optional[str]
    reason: str
    horizon: str
    price: float
    move_pct: float
    mfe: Optional[float]
    mae: Optional[float]
    candles: int


def bias_direction(bias: Optional[str]) -> int:
    """+1 for long biases, -1 for short biases, 0 for no opinion"""
    if bias is None:
        return 0
    bias = bias.upper()
    if bias in LONG_BIASES:
        return 1
    if bias in SHORT_BIASES:
        return -1
    return 0


def _pct(value: float, entry: float) -> float:
    return (value - entry) / entry * 100


def label_outcome(bias: Optional[str], entry_price: float, path: List[CandleBar],
                  horizon: Horizon, noise_floor_pct: float = None,
                  threshold_multiplier: float = DEFAULT_THRESHOLD_MULTIPLIER) -> Outcome:
    """
    Classify a snapshot against the candles that followed it.

    Args:
        bias: Snapshot bias (LONG/SHORT/BULLISH/BEARISH/WAIT/NEUTRAL)
        entry_price: Price at snapshot time
        path: Candles strictly after the snapshot, ascending, within the horizon
        horizon: Horizon definition
        noise_floor_pct: Noise floor in percent; horizon default if None
        threshold_multiplier: Scale applied to the noise floor

    Returns:
        Outcome; ``label`` is None for biases without a direction
    """
    if not path:
        raise ValueError("Outcome labeling requires at least one future candle")
    if not entry_price or entry_price <= 0:
        raise ValueError(f"Invalid entry price: {entry_price}")

    if noise_floor_pct is None or noise_floor_pct <= 0:
        noise_floor_pct = horizon.noise_floor_pct
    threshold = noise_floor_pct * threshold_multiplier

    final_price = path[-1].close
    move_pct = round(_pct(final_price, entry_price), 4)
    direction = bias_direction(bias)

    if direction == 0:
        return Outcome(
            label=None,
            reason=f"No directional bias ({bias}); realized move {move_pct:.2f}% recorded for audit",
            horizon=horizon.name,
            price=final_price,
            move_pct=move_pct,
            mfe=None,
            mae=None,
            candles=len(path),
        )

    mfe = 0.0
    mae = 0.0
    label = None
    reason = None

    for bar in path:
        high = bar.high if bar.high is not None else bar.close
        low = bar.low if bar.low is not None else bar.close
        if direction > 0:
            favorable = _pct(high, entry_price)
            adverse = -_pct(low, entry_price)
        else:
            favorable = -_pct(low, entry_price)
            adverse = _pct(high, entry_price)

        mfe = max(mfe, favorable)
        mae = max(mae, adverse)

        if label is None:
            if adverse > threshold:
                label = REVERSAL
                reason = (f"Moved {adverse:.2f}% against {bias} at {bar.time} "
                          f"before reaching +{threshold:.2f}%")
            elif favorable > threshold:
                label = CONTINUATION
                reason = (f"Moved {favorable:.2f}% with {bias} at {bar.time} "
                          f"before reaching -{threshold:.2f}%")

    if label is None:
        label = NOISE
        reason = f"No move beyond {threshold:.2f}% either way (MFE {mfe:.2f}%, MAE {mae:.2f}%)"

    return Outcome(
        label=label,
        reason=reason,
        horizon=horizon.name,
        price=final_price,
        move_pct=move_pct,
        mfe=round(mfe, 4),
        mae=round(mae, 4),
        candles=len(path),
    )
