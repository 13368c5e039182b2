import pytest
import requests

from circuit_breaker import CircuitBreaker
from data_manager import BinanceKlineProvider, load_candles_csv, parse_kline
from exceptions import MalformedCandleError, MarketDataError
from retry import RetryConfig

NOW_S = 1_700_000_000
NOW_MS = NOW_S * 1000


class _Response:
    def __init__(self, payload, status=200):
        self._payload = payload
        self.status_code = status

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code}")


class _Session:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, params))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _kline(open_ms, o, h, l, c, v=10.0):
    return [open_ms, str(o), str(h), str(l), str(c), str(v), open_ms + 59_999, "0", 0]


def _provider(session, attempts=1):
    return BinanceKlineProvider(
        base_url="https://example.test/",
        session=session,
        retry_config=RetryConfig(max_attempts=attempts, initial_delay=0.0, jitter_range=0.0),
        breaker=CircuitBreaker("test", failure_threshold=5),
        clock=lambda: NOW_S,
    )


def test_parse_kline():
    candle = parse_kline(_kline(60_000, 1, 2, 0.5, 1.5, 7))
    assert candle.timestamp == 60_000
    assert (candle.open, candle.high, candle.low, candle.close, candle.volume) == (1, 2, 0.5, 1.5, 7)


def test_klines_drop_forming_candle_and_bad_rows():
    rows = [
        _kline(NOW_MS - 180_000, 100, 101, 99, 100.5),
        _kline(NOW_MS - 120_000, 100.5, 99, 101, 100),        # high < low
        _kline(NOW_MS - 60_000 - 1, 100.5, 102, 100, 101.5),
        _kline(NOW_MS - 30_000, 101.5, 103, 101, 102),        # still forming
    ]
    session = _Session(_Response(rows))
    series = _provider(session).get_candles("BTCUSDT", "1m", 10)

    assert len(series) == 2
    assert series.instrument == "BTCUSDT" and series.timeframe == "1m"
    assert series.last.close == 101.5
    url, params = session.calls[0]
    assert url == "https://example.test/api/v3/klines"
    assert params == {"symbol": "BTCUSDT", "interval": "1m", "limit": 11}


def test_klines_trimmed_to_lookback():
    rows = [_kline(NOW_MS - (10 - i) * 60_000 - 60_000, 100, 101, 99, 100) for i in range(8)]
    series = _provider(_Session(_Response(rows))).get_candles("ETHUSDT", "1m", 3)
    assert len(series) == 3
    assert series.last.timestamp == rows[-1][0]


def test_empty_klines_raise():
    with pytest.raises(MarketDataError):
        _provider(_Session(_Response([]))).get_candles("BTCUSDT", "1m", 10)


def test_error_payload_raises_market_data_error():
    with pytest.raises(MarketDataError):
        _provider(_Session(_Response({"code": -1121, "msg": "Invalid symbol."}))).get_candles(
            "NOPE", "1m", 10)


def test_transient_failure_is_retried():
    rows = [_kline(NOW_MS - 120_000, 100, 101, 99, 100.5)]
    session = _Session(requests.ConnectionError("reset"), _Response(rows))
    series = _provider(session, attempts=2).get_candles("BTCUSDT", "1m", 10)
    assert len(series) == 1
    assert len(session.calls) == 2


def test_http_error_surfaces_after_retries():
    session = _Session(_Response(None, 500), _Response(None, 500))
    with pytest.raises(requests.HTTPError):
        _provider(session, attempts=2).get_candles("BTCUSDT", "1m", 10)


# ── CSV ─────────────────────────────────────────────────────────────────────

def test_load_csv_epoch_seconds(tmp_path):
    path = tmp_path / "btc.csv"
    path.write_text(
        "timestamp,open,high,low,close,volume\n"
        "1700000000,100,101,99,100.5,10\n"
        "1700000060,100.5,102,100,101.5,12\n"
    )
    series = load_candles_csv(path, timeframe="1m")
    assert len(series) == 2
    assert series.instrument == "btc"
    assert series[0].timestamp == 1_700_000_000_000
    assert series.last.volume == 12


def test_load_csv_iso_dates_and_column_case(tmp_path):
    path = tmp_path / "eth.csv"
    path.write_text(
        "Date,Open,High,Low,Close,Volume\n"
        "2024-01-01T00:00:00Z,100,101,99,100.5,10\n"
        "2024-01-01 00:05:00,100.5,102,100,101.5,12\n"
    )
    series = load_candles_csv(path, instrument="ETHUSDT")
    assert series.instrument == "ETHUSDT"
    assert series[1].timestamp - series[0].timestamp == 300_000


def test_load_csv_reports_bad_line(tmp_path):
    path = tmp_path / "bad.csv"
    path.write_text(
        "timestamp,open,high,low,close,volume\n"
        "1700000000,100,101,99,100.5,10\n"
        "1700000060,100.5,99,101,100,12\n"
    )
    with pytest.raises(MalformedCandleError, match=":3"):
        load_candles_csv(path)


def test_load_csv_rejects_time_going_backwards(tmp_path):
    path = tmp_path / "back.csv"
    path.write_text(
        "timestamp,open,high,low,close,volume\n"
        "1700000060,100,101,99,100.5,10\n"
        "1700000000,100.5,102,100,101.5,12\n"
    )
    with pytest.raises(MalformedCandleError):
        load_candles_csv(path)


def test_load_csv_requires_columns(tmp_path):
    path = tmp_path / "cols.csv"
    path.write_text("timestamp,open,high,low,close\n1700000000,1,1,1,1\n")
    with pytest.raises(MalformedCandleError, match="volume"):
        load_candles_csv(path)
