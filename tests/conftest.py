import pytest

from models import Candle, CandleSeries

MINUTE_MS = 60_000
HOUR_MS = 60 * MINUTE_MS


def build_rising(n: int = 30, start: float = 100.0, step: float = 0.005,
                 end_ms: int = 13 * HOUR_MS + 30 * MINUTE_MS, volume: float = 100.0,
                 instrument: str = "BTCUSDT") -> CandleSeries:
    """Closes rise by `step` per candle; the last candle is stamped `end_ms`."""
    first_ms = end_ms - (n - 1) * MINUTE_MS
    series = CandleSeries(instrument, "1m")
    prev_close = start / (1 + step)
    for i in range(n):
        close = start * (1 + step) ** i
        series.append(Candle(
            timestamp=first_ms + i * MINUTE_MS,
            open=prev_close,
            high=close * 1.001,
            low=prev_close * 0.999,
            close=close,
            volume=volume,
        ))
        prev_close = close
    return series


@pytest.fixture
def rising():
    return build_rising
