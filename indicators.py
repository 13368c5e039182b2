"""
Indicator helpers shared by the analyzer, scorer and risk manager.
All functions take a plain candle sequence and return floats (never numpy scalars).
"""

from typing import Optional, Sequence

import numpy as np

from models import Candle, Trend, TrendContext


def closes(candles: Sequence[Candle]) -> np.ndarray:
    return np.fromiter((c.close for c in candles), dtype=float, count=len(candles))


def volumes(candles: Sequence[Candle]) -> np.ndarray:
    return np.fromiter((c.volume for c in candles), dtype=float, count=len(candles))


def atr(candles: Sequence[Candle], period: int = 14) -> Optional[float]:
    """Average true range over the last `period` bars; None without period + 1 candles."""
    if period < 1 or len(candles) < period + 1:
        return None
    recent = candles[-(period + 1):]
    trs = []
    for i in range(1, len(recent)):
        high_low = recent[i].high - recent[i].low
        high_close = abs(recent[i].high - recent[i - 1].close)
        low_close = abs(recent[i].low - recent[i - 1].close)
        trs.append(max(high_low, high_close, low_close))
    return float(np.mean(trs)) if trs else None


def sma(values: np.ndarray, period: int) -> Optional[float]:
    if period < 1 or len(values) < period:
        return None
    return float(np.mean(values[-period:]))


def average_volume(candles: Sequence[Candle], end: int, period: int) -> Optional[float]:
    """Mean volume of up to `period` candles strictly before index `end`."""
    start = max(0, end - period)
    if end - start <= 0:
        return None
    return float(np.mean(volumes(candles[start:end])))


def volume_ratio_at(candles: Sequence[Candle], index: int, period: int = 20) -> float:
    avg = average_volume(candles, index, period)
    if not avg:
        return 1.0
    return candles[index].volume / avg


def volume_ratio(candles: Sequence[Candle], period: int = 20) -> float:
    """Last candle's volume relative to the preceding `period` average (1.0 if unknown)."""
    if not candles:
        return 1.0
    return volume_ratio_at(candles, len(candles) - 1, period)


def mean_abs_return_pct(candles: Sequence[Candle], lookback: int) -> Optional[float]:
    """Mean absolute close-to-close return over the last `lookback` candles, in %."""
    if len(candles) < lookback or lookback < 2:
        return None
    c = closes(candles[-lookback:])
    prev = c[:-1]
    if np.any(prev == 0):
        return None
    return float(np.mean(np.abs(np.diff(c) / prev)) * 100)


def pct_change(candles: Sequence[Candle], lookback: int) -> float:
    """Close change across the last `lookback` candles as % of their mean close."""
    recent = candles[-lookback:]
    if len(recent) < 2:
        return 0.0
    mean_close = float(np.mean(closes(recent)))
    if mean_close == 0:
        return 0.0
    return (recent[-1].close - recent[0].close) / mean_close * 100


def trend_context(candles: Sequence[Candle], fast: int = 20, slow: int = 50) -> TrendContext:
    """
    SMA stack trend:
      price > fast > slow  → bullish, alignment 0.8
      price < fast < slow  → bearish, alignment 0.8
      otherwise            → ranging, alignment 0.5
    The slow average shrinks to the available history when it is short.
    """
    if len(candles) < fast:
        return TrendContext(direction=Trend.RANGING, alignment=0.5)

    c = closes(candles)
    sma_fast = sma(c, fast)
    sma_slow = sma(c, min(slow, len(c)))
    price = float(c[-1])

    if price > sma_fast > sma_slow:
        return TrendContext(Trend.BULLISH, 0.8, sma_fast, sma_slow)
    if price < sma_fast < sma_slow:
        return TrendContext(Trend.BEARISH, 0.8, sma_fast, sma_slow)
    return TrendContext(Trend.RANGING, 0.5, sma_fast, sma_slow)
