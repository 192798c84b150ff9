"""
Default analyzer configuration used to seed an empty store.
"""

DEFAULT_CONFIG = {
    'thresholds': {
        '30m': {
            'price': {'noise': 0.25, 'strong': 0.5},
            'oi': {'quiet': 0.15, 'aggressive': 0.3},
            'funding': 0.03,
        },
        '1h': {
            'price': {'noise': 0.4, 'strong': 0.8},
            'oi': {'quiet': 0.25, 'aggressive': 0.5},
            'funding': 0.04,
        },
        '4h': {
            'price': {'noise': 0.65, 'strong': 1.3},
            'oi': {'quiet': 0.5, 'aggressive': 1.0},
            'funding': 0.05,
        },
        '1d': {
            'price': {'noise': 1.15, 'strong': 2.3},
            'oi': {'quiet': 1.0, 'aggressive': 2.0},
            'funding': 0.06,
        },
        'cvd': {
            '30m': {'slopeStrong': 0.02, 'slopeWeak': 0.005, 'divergenceMin': 0.01},
            '1h': {'slopeStrong': 0.025, 'slopeWeak': 0.008, 'divergenceMin': 0.015},
            '4h': {'slopeStrong': 0.03, 'slopeWeak': 0.01, 'divergenceMin': 0.02},
            '1d': {'slopeStrong': 0.04, 'slopeWeak': 0.015, 'divergenceMin': 0.025},
        },
        'vwap': {
            'innerBand': 0.01,
            'outerBand': 0.02,
        },
    },

    'weights': {
        'signals': {
            'exchange_divergence': 0.35,
            'market_regime': 0.20,
            'structure': 0.15,
            'technical': 0.10,
            'cvd': 0.10,
            'vwap': 0.05,
            'funding': 0.05,
        }
    },

    'gates': {
        'whaleRetail': {
            'scalping': {'minPct': 0.2, 'minUsd': 2000000},
            'macro': {'minPct': 0.5, 'minUsd': 10000000},
        },
        'minConfidence': 5,
        'minSampleSize': 5,
        'maxStalenessMinutes': 30,
    },

    'penalties': {
        'conflict': 0.15,
        'staleness': 0.10,
        'lowLiquidity': 0.10,
        'unreliableData': 0.20,
    },

    'bounds': {
        'weights': {'min': 0.01, 'max': 0.60, 'maxStepPct': 25},
        'thresholds': {'maxStepPct': 15},
        'gates': {'maxStepPct': 10},
        'penalties': {'min': 0.01, 'max': 0.50, 'maxStepPct': 15},
    },
}

REQUIRED_KEYS = ('thresholds', 'weights', 'gates', 'penalties')

EXPECTED_TIMEFRAMES = ('30m', '1h', '4h', '1d')

WEIGHTS_SUM_TOLERANCE = 0.001

MAX_DOCUMENT_BYTES = 256 * 1024

MAX_DIFF_CHANGES = 50

MIN_NOTES_LENGTH = 5

INITIAL_VERSION = '1.0.0'
