#!/usr/bin/env python3
"""
Coinglass client tests with a stubbed HTTP session.
"""

from datetime import datetime

import pytest
import requests

from regime_tracker.collectors.coinglass_client import CoinglassClient, to_bars
from regime_tracker.errors import RateLimited, SyncFailure
from regime_tracker.timeutils import to_millis

T0 = datetime(2025, 1, 1)
T1 = datetime(2025, 1, 1, 1)


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=''):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        return self._payload


class ScriptedGet:
    """Returns (or raises) the scripted responses in order"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def __call__(self, url, params=None, timeout=None):
        self.calls.append((url, params))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def client():
    return CoinglassClient(api_key='test-key', base_url='https://example.test/api/',
                           max_retries=3, retry_delay=0)


def test_to_bars_maps_each_kind():
    price = to_bars([
        {'time': to_millis(T1), 'open': '2', 'high': '3', 'low': '1', 'close': '2.5', 'volume_usd': '100'},
        {'time': to_millis(T0), 'open': '1', 'high': '2', 'low': '0.5', 'close': '2', 'volume_usd': '50'},
        {'open': '9'},
    ], 'price')
    assert [b.time for b in price] == [T0, T1]
    assert (price[1].close, price[1].volume) == (2.5, 100.0)
    assert price[0].oi_close is None

    taker = to_bars([{'time': to_millis(T0), 'taker_buy_volume_usd': '7', 'taker_sell_volume_usd': '3'}],
                    'taker_volume')
    assert (taker[0].buy_volume, taker[0].sell_volume, taker[0].close) == (7.0, 3.0, None)

    funding = to_bars([{'t': to_millis(T0), 'close': '0.0001'}], 'funding')
    assert funding[0].funding_rate == 0.0001

    with pytest.raises(ValueError):
        to_bars([{'time': to_millis(T0)}], 'orderbook')


def test_fetch_returns_window_bars(client, monkeypatch):
    payload = {'code': '0', 'data': [
        {'time': to_millis(T0), 'open': 10, 'high': 12, 'low': 9, 'close': 11},
        {'time': to_millis(T1), 'open': 11, 'high': 13, 'low': 10, 'close': 12},
    ]}
    get = ScriptedGet(FakeResponse(payload=payload))
    monkeypatch.setattr(client.session, 'get', get)

    bars = client.fetch('Binance', 'BTCUSDT', '1h', 'oi', T0, T0)

    assert [(b.time, b.oi_close) for b in bars] == [(T0, 11.0)]
    url, params = get.calls[0]
    assert url == 'https://example.test/api/futures/open-interest/history'
    assert params['start_time'] == to_millis(T0)
    assert params['exchange'] == 'Binance'
    assert client.session.headers['CG-API-KEY'] == 'test-key'


def test_source_maps_to_exchange_name(client, monkeypatch):
    get = ScriptedGet(*[FakeResponse(payload={'code': '0', 'data': []})] * 3)
    monkeypatch.setattr(client.session, 'get', get)

    for source in ('binance', 'okx', 'someexchange'):
        client.fetch(source, 'BTCUSDT', '1h', 'price', T0, T1)

    assert [params['exchange'] for _, params in get.calls] == ['Binance', 'OKX', 'someexchange']


def test_nested_data_shapes_are_normalised(client, monkeypatch):
    payload = {'code': 0, 'data': {'list': [{'time': to_millis(T0), 'close': 5}]}}
    monkeypatch.setattr(client.session, 'get', ScriptedGet(FakeResponse(payload=payload)))

    assert len(client.fetch('Binance', 'BTCUSDT', '1h', 'price', T0, T1)) == 1


def test_http_429_raises_rate_limited(client, monkeypatch):
    monkeypatch.setattr(client.session, 'get', ScriptedGet(FakeResponse(status_code=429)))
    with pytest.raises(RateLimited):
        client.request('/futures/price/history', {})


def test_api_error_codes(client, monkeypatch):
    monkeypatch.setattr(client.session, 'get', ScriptedGet(
        FakeResponse(payload={'code': '50001', 'msg': 'Too Many Requests'}),
        FakeResponse(payload={'code': '40001', 'msg': 'Invalid symbol'}),
        FakeResponse(status_code=401, text='Unauthorized'),
    ))

    with pytest.raises(RateLimited):
        client.request('/futures/price/history', {})
    with pytest.raises(SyncFailure, match='Invalid symbol'):
        client.request('/futures/price/history', {})
    with pytest.raises(SyncFailure, match='401'):
        client.request('/futures/price/history', {})


def test_transient_errors_are_retried(client, monkeypatch):
    get = ScriptedGet(
        requests.ConnectionError('reset'),
        FakeResponse(status_code=503),
        FakeResponse(payload={'code': '0', 'data': []}),
    )
    monkeypatch.setattr(client.session, 'get', get)

    assert client.request('/futures/price/history', {'limit': 10, 'symbol': None}) == []
    assert len(get.calls) == 3
    assert get.calls[0][1] == {'limit': 10}


def test_retries_exhausted(client, monkeypatch):
    monkeypatch.setattr(client.session, 'get', ScriptedGet(*[FakeResponse(status_code=502)] * 3))
    with pytest.raises(SyncFailure, match='after 3 attempts'):
        client.request('/futures/price/history', {})
