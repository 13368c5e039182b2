"""
Data Manager
============
Candle sources for the engine.

  BinanceKlineProvider  public /api/v3/klines REST endpoint (no auth),
                        retried with backoff behind a circuit breaker;
                        the still-forming candle is dropped
  load_candles_csv      historical OHLCV file for backtests

Both hand back a validated CandleSeries.
"""

import csv
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union

import requests

import config
from circuit_breaker import CircuitBreaker
from exceptions import MalformedCandleError, MarketDataError
from models import Candle, CandleSeries
from retry import RetryConfig, retry

logger = logging.getLogger(__name__)

BINANCE_MAX_LIMIT = 1000


def parse_kline(row: Sequence) -> Candle:
    """Binance kline row: [open_time, open, high, low, close, volume, close_time, ...]."""
    return Candle(
        timestamp=int(row[0]),
        open=float(row[1]),
        high=float(row[2]),
        low=float(row[3]),
        close=float(row[4]),
        volume=float(row[5]),
    )


class BinanceKlineProvider:

    def __init__(
        self,
        base_url: str = config.BINANCE_REST_URL,
        timeout: float = config.REST_TIMEOUT_SEC,
        session: Optional[requests.Session] = None,
        retry_config: Optional[RetryConfig] = None,
        breaker: Optional[CircuitBreaker] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.breaker = breaker or CircuitBreaker(
            "binance-klines",
            failure_threshold=config.BREAKER_FAILURE_LIMIT,
            reset_timeout=config.BREAKER_RESET_SEC,
        )
        self._clock = clock
        self._fetch = retry(
            exceptions=(requests.RequestException, MarketDataError),
            config=retry_config or RetryConfig(max_attempts=config.REST_MAX_ATTEMPTS),
            circuit_breaker=self.breaker,
        )(self._fetch_once)

    def _fetch_once(self, instrument: str, timeframe: str, limit: int) -> List[list]:
        resp = self.session.get(
            f"{self.base_url}/api/v3/klines",
            params={"symbol": instrument, "interval": timeframe, "limit": limit},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, list):
            raise MarketDataError(f"{instrument} {timeframe}: unexpected klines payload {str(data)[:200]}")
        return data

    def get_candles(self, instrument: str, timeframe: str, lookback: int) -> CandleSeries:
        """
        Raises:
            MarketDataError: nothing usable came back
            CircuitBreakerError: endpoint is currently considered down
            requests.RequestException: after retries are exhausted
        """
        limit = max(1, min(lookback + 1, BINANCE_MAX_LIMIT))
        rows = self._fetch(instrument, timeframe, limit)

        now_ms = int(self._clock() * 1000)
        series = CandleSeries(instrument, timeframe)
        skipped = 0
        for row in sorted(rows, key=lambda r: int(r[0])):
            if len(row) > 6 and int(row[6]) >= now_ms:
                continue  # still forming
            try:
                series.append(parse_kline(row))
            except (ValueError, IndexError) as e:
                skipped += 1
                logger.warning(f"⚠️ {instrument} skipping bad kline {row[:6]}: {e}")

        if len(series) == 0:
            raise MarketDataError(f"{instrument} {timeframe}: no closed candles returned")
        if skipped:
            logger.info(f"{instrument}: {len(series)} candles loaded, {skipped} skipped")
        return series[-lookback:]


# ============================================================================
# CSV
# ============================================================================

_TIMESTAMP_COLUMNS = ("timestamp", "open_time", "time", "date")


def _parse_timestamp(raw: str) -> int:
    raw = raw.strip()
    try:
        value = float(raw)
    except ValueError:
        dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp() * 1000)
    # seconds vs milliseconds
    return int(value * 1000) if value < 1e11 else int(value)


def load_candles_csv(path: Union[str, Path], instrument: str = "",
                     timeframe: str = "") -> CandleSeries:
    """
    Read OHLCV rows with a header. The time column may be named timestamp,
    open_time, time or date and hold epoch seconds, epoch ms or ISO-8601.

    Raises:
        MalformedCandleError: unreadable row, broken OHLC, or time going backwards
    """
    path = Path(path)
    series = CandleSeries(instrument or path.stem, timeframe)
    with path.open("r", newline="", encoding="utf-8") as f:
        reader = csv.DictReader(f)
        fields = {name.strip().lower(): name for name in (reader.fieldnames or [])}
        ts_field = next((fields[c] for c in _TIMESTAMP_COLUMNS if c in fields), None)
        missing = [c for c in ("open", "high", "low", "close", "volume") if c not in fields]
        if ts_field is None or missing:
            raise MalformedCandleError(
                f"{path}: need a time column and open/high/low/close/volume (missing {missing})"
            )

        for line_no, row in enumerate(reader, start=2):
            try:
                candle = Candle(
                    timestamp=_parse_timestamp(row[ts_field]),
                    open=float(row[fields["open"]]),
                    high=float(row[fields["high"]]),
                    low=float(row[fields["low"]]),
                    close=float(row[fields["close"]]),
                    volume=float(row[fields["volume"]]),
                )
            except (TypeError, ValueError) as e:
                raise MalformedCandleError(f"{path}:{line_no}: {e}") from e
            try:
                series.append(candle)
            except MalformedCandleError as e:
                raise MalformedCandleError(f"{path}:{line_no}: {e}") from e

    logger.info(f"📂 Loaded {len(series)} candles from {path}")
    return series
