#!/usr/bin/env python3
"""
Coinglass Historical Data Client

Fetches futures price, open interest, funding rate and taker volume
history from the Coinglass v4 REST API and normalises it into CandleBar
rows for one data kind.
"""

import logging
import time
import requests
from datetime import datetime
from typing import List, Dict, Optional

from regime_tracker.errors import SyncFailure, RateLimited
from regime_tracker.settings import load_settings
from regime_tracker.storage.candle_store import CandleBar, normalize_source
from regime_tracker.timeutils import to_millis, from_millis

logger = logging.getLogger(__name__)

ENDPOINTS = {
    'price': '/futures/price/history',
    'oi': '/futures/open-interest/history',
    'funding': '/futures/funding-rate/history',
    'taker_volume': '/futures/v2/taker-buy-sell-volume/history',
}

TRANSIENT_STATUS = {500, 502, 503, 504}

# Stored (lower-case) source names to the exchange names the API expects
EXCHANGE_NAMES = {
    'binance': 'Binance',
    'bybit': 'Bybit',
    'okx': 'OKX',
    'bitget': 'Bitget',
    'coinbase': 'Coinbase',
    'kraken': 'Kraken',
    'bitmex': 'BitMEX',
    'deribit': 'Deribit',
    'htx': 'HTX',
    'gate': 'Gate',
}


def _first(item: Dict, *keys):
    for key in keys:
        value = item.get(key)
        if value is not None and value != '':
            return value
    return None


def _number(value) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def exchange_name(source: str) -> str:
    """API exchange name for a source; unknown names pass through unchanged"""
    return EXCHANGE_NAMES.get(normalize_source(source), source)


def to_bars(items: List[Dict], kind: str) -> List[CandleBar]:
    """
    Map raw API rows to CandleBar objects carrying only ``kind``'s columns.

    Rows without a timestamp are dropped. Output is sorted by time.
    """
    bars = []
    for item in items:
        stamp = _first(item, 'time', 't', 'createTime')
        if stamp is None:
            continue
        bar = CandleBar(time=from_millis(stamp))

        if kind == 'price':
            bar.open = _number(_first(item, 'open', 'o'))
            bar.high = _number(_first(item, 'high', 'h'))
            bar.low = _number(_first(item, 'low', 'l'))
            bar.close = _number(_first(item, 'close', 'c'))
            bar.volume = _number(_first(item, 'volume_usd', 'volume', 'vol', 'v'))
        elif kind == 'oi':
            bar.oi_open = _number(_first(item, 'open', 'o'))
            bar.oi_high = _number(_first(item, 'high', 'h'))
            bar.oi_low = _number(_first(item, 'low', 'l'))
            bar.oi_close = _number(_first(item, 'close', 'c'))
        elif kind == 'funding':
            bar.funding_rate = _number(_first(item, 'close', 'rate', 'fundingRate'))
        elif kind == 'taker_volume':
            bar.buy_volume = _number(_first(item, 'taker_buy_volume_usd', 'buyVol', 'buyVolume'))
            bar.sell_volume = _number(_first(item, 'taker_sell_volume_usd', 'sellVol', 'sellVolume'))
        else:
            raise ValueError(f"Invalid data kind: {kind}")

        bars.append(bar)

    bars.sort(key=lambda b: b.time)
    return bars


class CoinglassClient:
    """
    Data provider backed by the Coinglass REST API.
    """

    def __init__(self, api_key: str = None, base_url: str = None,
                 max_retries: int = 3, retry_delay: float = 2.0, timeout: int = 30):
        settings = load_settings()
        self.api_key = api_key if api_key is not None else settings.coinglass_api_key
        self.base_url = (base_url or settings.coinglass_base_url).rstrip('/')
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({
            'accept': 'application/json',
            'CG-API-KEY': self.api_key,
        })

    def request(self, endpoint: str, params: Dict) -> List[Dict]:
        """
        GET an endpoint with retries on transient failures.

        Returns:
            List of raw rows

        Raises:
            RateLimited: on HTTP 429 or an API-level rate limit message
            SyncFailure: on any other failure once retries are exhausted
        """
        params = {k: v for k, v in params.items() if v is not None and v != ''}
        url = f'{self.base_url}{endpoint}'
        last_error = None

        for attempt in range(1, self.max_retries + 1):
            try:
                response = self.session.get(url, params=params, timeout=self.timeout)
            except (requests.ConnectionError, requests.Timeout) as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning(f"Transient error on {endpoint} (attempt {attempt}/{self.max_retries}): {e}")
                self._backoff(attempt)
                continue

            if response.status_code == 429:
                raise RateLimited(f"Rate limited by Coinglass on {endpoint}")

            if response.status_code in TRANSIENT_STATUS:
                last_error = f"HTTP {response.status_code}"
                logger.warning(f"Server error {response.status_code} on {endpoint} "
                               f"(attempt {attempt}/{self.max_retries})")
                self._backoff(attempt)
                continue

            if response.status_code != 200:
                raise SyncFailure(f"API error on {endpoint}: {response.status_code} - {response.text[:200]}")

            payload = response.json()
            if str(payload.get('code')) != '0':
                message = payload.get('msg') or 'Coinglass API error'
                if 'too many requests' in message.lower() or 'rate limit' in message.lower():
                    raise RateLimited(f"Rate limited by Coinglass on {endpoint}: {message}")
                raise SyncFailure(f"Coinglass error on {endpoint}: {message} (code={payload.get('code')})")

            return self._normalise(payload.get('data'))

        raise SyncFailure(f"Request to {endpoint} failed after {self.max_retries} attempts: {last_error}")

    def _backoff(self, attempt: int):
        if attempt < self.max_retries:
            time.sleep(self.retry_delay * (1.5 ** (attempt - 1)))

    @staticmethod
    def _normalise(data) -> List[Dict]:
        if not data:
            return []
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            for key in ('list', 'data'):
                if isinstance(data.get(key), list):
                    return data[key]
        return []

    def fetch(self, source: str, symbol: str, timeframe: str, kind: str,
              start: datetime, end: datetime, limit: int = 500) -> List[CandleBar]:
        """
        Fetch one window of history for a data kind.

        Args:
            source: Source name (e.g., 'binance'), mapped to the API's exchange name
            symbol: Exchange symbol (e.g., 'BTCUSDT')
            timeframe: Candle interval (e.g., '1h')
            kind: One of price, oi, funding, taker_volume
            start: Window start (inclusive)
            end: Window end (inclusive)
            limit: Maximum rows per request

        Returns:
            Candles ordered by time
        """
        if kind not in ENDPOINTS:
            raise ValueError(f"Invalid data kind: {kind}")

        rows = self.request(ENDPOINTS[kind], {
            'exchange': exchange_name(source),
            'symbol': symbol,
            'interval': timeframe,
            'limit': limit,
            'start_time': to_millis(start),
            'end_time': to_millis(end),
        })
        bars = [bar for bar in to_bars(rows, kind) if start <= bar.time <= end]
        logger.debug(f"Fetched {len(bars)} {kind} candles for {source} {symbol} {timeframe}")
        return bars
