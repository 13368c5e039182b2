"""
Market Structure Analyzer
=========================
Reads a trailing candle window and produces an immutable StructureSnapshot:

  - Swing extrema (strict k-bar half-window) → trend, clustered
    support/resistance and key levels
  - Volume profile (heavy / thin nodes, value area) and the market cycle
  - Trend strength, volatility regime and Wyckoff-style phase
  - Pluggable pattern detectors: order blocks, fair value gaps,
    liquidity sweeps, structure breaks (BOS / CHoCH)
  - Bounded LRU cache of snapshots keyed by window end

Analysis never raises on short history: below the minimum window the
neutral snapshot comes back and nothing downstream will trade on it.
"""

import logging
import threading
from collections import OrderedDict
from typing import Hashable, Iterable, List, Optional, Sequence, Tuple

import numpy as np

import indicators
from config import AnalyzerConfig
from models import (
    BreakType,
    Candle,
    FairValueGap,
    LiquidityLevel,
    LiquiditySweep,
    MarketCycle,
    OrderBlock,
    Pattern,
    PatternKind,
    PatternSide,
    Phase,
    StructureBreak,
    StructureSnapshot,
    SwingPoint,
    Trend,
    TrendStrength,
    Volatility,
    VolumeProfile,
)

logger = logging.getLogger(__name__)


# ============================================================================
# SWINGS / TREND
# ============================================================================

def find_swings(candles: Sequence[Candle], k: int) -> Tuple[List[SwingPoint], List[SwingPoint]]:
    """
    Index i is a swing high when high[i] is strictly above every high in
    [i-k, i-1] and [i+1, i+k]; swing lows mirror that on lows.
    The last k candles can never be confirmed.
    """
    highs: List[SwingPoint] = []
    lows: List[SwingPoint] = []
    n = len(candles)
    for i in range(k, n - k):
        c = candles[i]
        neighbours = [candles[j] for j in range(i - k, i + k + 1) if j != i]
        if all(c.high > o.high for o in neighbours):
            highs.append(SwingPoint(index=i, price=c.high, is_high=True, timestamp=c.timestamp))
        if all(c.low < o.low for o in neighbours):
            lows.append(SwingPoint(index=i, price=c.low, is_high=False, timestamp=c.timestamp))
    return highs, lows


def price_action_trend(candles: Sequence[Candle], lookback: int) -> Trend:
    """Count higher/lower highs and lows bar-to-bar over the last `lookback` candles."""
    recent = candles[-lookback:]
    hh = lh = hl = ll = 0
    for prev, cur in zip(recent, recent[1:]):
        if cur.high > prev.high:
            hh += 1
        elif cur.high < prev.high:
            lh += 1
        if cur.low > prev.low:
            hl += 1
        elif cur.low < prev.low:
            ll += 1
    if hh > lh and hl > ll:
        return Trend.BULLISH
    if lh > hh and ll > hl:
        return Trend.BEARISH
    return Trend.RANGING


def classify_trend(candles: Sequence[Candle], swing_highs: Sequence[SwingPoint],
                   swing_lows: Sequence[SwingPoint], fallback_lookback: int) -> Trend:
    if len(swing_highs) < 2 or len(swing_lows) < 2:
        return price_action_trend(candles, fallback_lookback)

    h_prev, h_last = swing_highs[-2].price, swing_highs[-1].price
    l_prev, l_last = swing_lows[-2].price, swing_lows[-1].price
    if h_last > h_prev and l_last > l_prev:
        return Trend.BULLISH
    if h_last < h_prev and l_last < l_prev:
        return Trend.BEARISH
    return Trend.RANGING


def group_levels(prices: Iterable[float], tolerance_pct: float) -> List[float]:
    """
    Merge nearby price levels. A price within `tolerance_pct` % of a level
    already kept is dropped, so the first one seen represents the cluster.
    Returned in the order kept.
    """
    kept: List[float] = []
    for price in prices:
        if all(abs(price - level) / level * 100 >= tolerance_pct for level in kept):
            kept.append(price)
    return kept


def volume_profile(candles: Sequence[Candle], min_candles: int, high_mult: float,
                   low_mult: float, value_area_fraction: float) -> VolumeProfile:
    """
    Heavy and thin candles relative to the window's average volume, plus the
    value area: the central `value_area_fraction` of closes ranked by price.
    """
    if len(candles) < max(1, min_candles):
        return VolumeProfile()
    avg_volume = float(np.mean([c.volume for c in candles]))
    high_nodes = tuple(c.close for c in candles if c.volume > avg_volume * high_mult)
    low_nodes = tuple(c.close for c in candles if c.volume < avg_volume * low_mult)

    ranked = sorted(c.close for c in candles)
    size = max(1, int(len(ranked) * value_area_fraction))
    start = (len(ranked) - size) // 2
    return VolumeProfile(
        high_volume_nodes=high_nodes,
        low_volume_nodes=low_nodes,
        value_area_low=ranked[start],
        value_area_high=ranked[start + size - 1],
    )


def classify_phase(trend: Trend, volatility: Volatility) -> Phase:
    low = volatility is Volatility.LOW
    if trend is Trend.BULLISH:
        return Phase.ACCUMULATION if low else Phase.MARKUP
    if trend is Trend.BEARISH:
        return Phase.DISTRIBUTION if low else Phase.MARKDOWN
    return Phase.ACCUMULATION if low else Phase.DISTRIBUTION


# ============================================================================
# PATTERN DETECTORS
# ============================================================================

class PatternDetector:
    """
    One pattern family. Subclasses set `kind`, report the minimum window they
    need and return patterns found in the window (ages are counted back from
    the last candle). Thresholds come from AnalyzerConfig.
    """

    kind: PatternKind

    def __init__(self, config: AnalyzerConfig):
        self.config = config

    @property
    def min_window(self) -> int:
        return 3

    def detect(self, candles: Sequence[Candle], trend: Trend) -> List[Pattern]:
        raise NotImplementedError


class OrderBlockDetector(PatternDetector):
    """Strong-bodied candle followed by a candle closing against it."""

    kind = PatternKind.ORDER_BLOCK

    @property
    def min_window(self) -> int:
        return 2

    def detect(self, candles: Sequence[Candle], trend: Trend) -> List[OrderBlock]:
        cfg = self.config
        n = len(candles)
        found: List[OrderBlock] = []

        for i in range(max(0, n - 1 - cfg.ob_lookback), n - 1):
            cur, nxt = candles[i], candles[i + 1]
            body_ratio = cur.body_ratio()
            if body_ratio < cfg.ob_body_ratio_min:
                continue

            if cur.is_bullish() and nxt.is_bearish():
                side, price = PatternSide.BULLISH, cur.low
            elif cur.is_bearish() and nxt.is_bullish():
                side, price = PatternSide.BEARISH, cur.high
            else:
                continue

            vol_ratio = indicators.volume_ratio_at(candles, i, cfg.ob_volume_period)
            volume_term = min(1.0, vol_ratio / cfg.ob_volume_ratio_cap)
            strength = max(0.0, min(1.0, 0.5 * volume_term + 0.5 * body_ratio))

            found.append(OrderBlock(
                side=side, price=price, high=cur.high, low=cur.low,
                strength=strength, age=n - 1 - i, body_ratio=body_ratio,
                volume_ratio=vol_ratio, timestamp=cur.timestamp,
            ))

        found.sort(key=lambda ob: ob.strength, reverse=True)
        kept = found[:cfg.max_order_blocks]
        kept.sort(key=lambda ob: ob.age)
        return kept


class FairValueGapDetector(PatternDetector):
    """Three-candle imbalance; gaps later traded through are dropped."""

    kind = PatternKind.FAIR_VALUE_GAP

    def detect(self, candles: Sequence[Candle], trend: Trend) -> List[FairValueGap]:
        cfg = self.config
        n = len(candles)
        found: List[FairValueGap] = []

        for i in range(max(1, n - 1 - cfg.fvg_lookback), n - 1):
            prev, cur, nxt = candles[i - 1], candles[i], candles[i + 1]
            threshold = cfg.fvg_min_size_pct * cur.close

            if (cur.high > prev.high and nxt.low > cur.low
                    and nxt.low - prev.high > threshold):
                side, start, end = PatternSide.BULLISH, prev.high, nxt.low
            elif (cur.low < prev.low and nxt.high < cur.high
                    and prev.low - nxt.high > threshold):
                side, start, end = PatternSide.BEARISH, nxt.high, prev.low
            else:
                continue

            fill_fraction = self._fill_fraction(side, start, end, candles[i + 2:])
            if fill_fraction >= 1.0:
                continue

            size = end - start
            vol_ratio = indicators.volume_ratio_at(candles, i, cfg.ob_volume_period)
            strength = (min(0.4, size / cur.close * 10) if cur.close > 0 else 0.0)
            strength += min(0.3, 0.3 * vol_ratio) + 0.3 * cur.body_ratio()

            found.append(FairValueGap(
                side=side, start=start, end=end,
                strength=max(0.0, min(1.0, strength)),
                filled=False, fill_fraction=fill_fraction,
                age=n - 1 - i, timestamp=cur.timestamp,
            ))

        found.sort(key=lambda g: g.age)
        return found[:cfg.max_fvgs]

    @staticmethod
    def _fill_fraction(side: PatternSide, start: float, end: float,
                       later: Sequence[Candle]) -> float:
        """Share of [start, end] covered by the candles after the gap formed."""
        if not later:
            return 0.0
        lowest = min(c.low for c in later)
        highest = max(c.high for c in later)
        if lowest <= start and highest >= end:
            return 1.0
        size = end - start
        if side is PatternSide.BULLISH:
            covered = end - max(lowest, start) if lowest < end else 0.0
        else:
            covered = min(highest, end) - start if highest > start else 0.0
        return max(0.0, min(1.0, covered / size)) if size > 0 else 1.0


class LiquiditySweepDetector(PatternDetector):
    """Wick through the prior N-candle extreme that closes back inside."""

    kind = PatternKind.LIQUIDITY_SWEEP

    @property
    def min_window(self) -> int:
        return self.config.sweep_reference_candles + 1

    def detect(self, candles: Sequence[Candle], trend: Trend) -> List[LiquiditySweep]:
        ref = self.config.sweep_reference_candles
        n = len(candles)
        found: List[LiquiditySweep] = []

        for i in range(max(ref, n - self.config.sweep_scan_candles), n):
            c = candles[i]
            prior = candles[i - ref:i]
            prior_low = min(p.low for p in prior)
            prior_high = max(p.high for p in prior)

            if c.low < prior_low and c.close > prior_low:
                found.append(LiquiditySweep(
                    side=PatternSide.BULLISH, price=prior_low,
                    age=n - 1 - i, timestamp=c.timestamp))
            if c.high > prior_high and c.close < prior_high:
                found.append(LiquiditySweep(
                    side=PatternSide.BEARISH, price=prior_high,
                    age=n - 1 - i, timestamp=c.timestamp))

        found.sort(key=lambda s: s.age)
        return found


class StructureBreakDetector(PatternDetector):
    """Volume-backed close beyond the recent range: BOS with trend, CHoCH against."""

    kind = PatternKind.STRUCTURE_BREAK

    @property
    def min_window(self) -> int:
        return self.config.break_reference_candles + 1

    def detect(self, candles: Sequence[Candle], trend: Trend) -> List[StructureBreak]:
        cfg = self.config
        ref = cfg.break_reference_candles
        n = len(candles)
        found: List[StructureBreak] = []

        for i in range(max(ref, n - cfg.break_scan_candles), n):
            c = candles[i]
            prior = candles[i - ref:i]
            avg_volume = float(np.mean([p.volume for p in prior]))
            if c.volume <= avg_volume * cfg.break_volume_mult:
                continue

            prior_high = max(p.high for p in prior)
            prior_low = min(p.low for p in prior)
            if c.high > prior_high:
                side, price = PatternSide.BULLISH, prior_high
            elif c.low < prior_low:
                side, price = PatternSide.BEARISH, prior_low
            else:
                continue

            against = ((side is PatternSide.BULLISH and trend is Trend.BEARISH)
                       or (side is PatternSide.BEARISH and trend is Trend.BULLISH))
            found.append(StructureBreak(
                side=side, price=price,
                break_type=BreakType.CHOCH if against else BreakType.BOS,
                age=n - 1 - i, timestamp=c.timestamp,
            ))

        found.sort(key=lambda b: b.age)
        return found[:cfg.max_structure_breaks]


def default_detectors(config: AnalyzerConfig) -> List[PatternDetector]:
    return [
        OrderBlockDetector(config),
        FairValueGapDetector(config),
        LiquiditySweepDetector(config),
        StructureBreakDetector(config),
    ]


# ============================================================================
# SNAPSHOT CACHE
# ============================================================================

class SnapshotCache:
    """Bounded LRU of snapshots. Evicts by capacity only."""

    def __init__(self, capacity: int = 256):
        self.capacity = capacity
        self._data: "OrderedDict[Hashable, StructureSnapshot]" = OrderedDict()
        self._lock = threading.RLock()
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable) -> Optional[StructureSnapshot]:
        with self._lock:
            snapshot = self._data.get(key)
            if snapshot is None:
                self.misses += 1
                return None
            self._data.move_to_end(key)
            self.hits += 1
            return snapshot

    def put(self, key: Hashable, snapshot: StructureSnapshot) -> None:
        with self._lock:
            self._data[key] = snapshot
            self._data.move_to_end(key)
            while len(self._data) > self.capacity:
                self._data.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()
            self.hits = 0
            self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._data


# ============================================================================
# ANALYZER
# ============================================================================

class MarketStructureAnalyzer:
    """Stateless apart from the snapshot cache; safe to share across threads."""

    def __init__(self, config: Optional[AnalyzerConfig] = None,
                 detectors: Optional[Iterable[PatternDetector]] = None):
        self.config = config or AnalyzerConfig()
        self.config.validate()
        self.detectors: List[PatternDetector] = (
            list(detectors) if detectors is not None else default_detectors(self.config)
        )
        self.cache = SnapshotCache(self.config.cache_size)

    def register(self, detector: PatternDetector) -> None:
        self.detectors.append(detector)
        self.cache.clear()

    def analyze(self, window: Iterable[Candle],
                cache_key: Optional[Hashable] = None) -> StructureSnapshot:
        if cache_key is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return cached

        candles = list(window)[-self.config.window_size:]
        snapshot = self._analyze(candles)

        if cache_key is not None:
            self.cache.put(cache_key, snapshot)
        return snapshot

    # ── Internals ───────────────────────────────────────────────────────────

    def _analyze(self, candles: List[Candle]) -> StructureSnapshot:
        cfg = self.config
        window_end = candles[-1].timestamp if candles else None
        if len(candles) < cfg.min_window:
            logger.debug(f"Insufficient history ({len(candles)}/{cfg.min_window}) → neutral")
            return StructureSnapshot.neutral(window_end)

        swing_highs, swing_lows = find_swings(candles, cfg.swing_half_window)
        trend = classify_trend(candles, swing_highs, swing_lows, cfg.trend_fallback_lookback)
        strength = self._trend_strength(candles, trend)
        volatility = self._volatility(candles)

        patterns: List[Pattern] = []
        for detector in self.detectors:
            if len(candles) < detector.min_window:
                continue
            patterns.extend(detector.detect(candles, trend))

        order_blocks = tuple(p for p in patterns if p.kind is PatternKind.ORDER_BLOCK)
        gaps = tuple(p for p in patterns if p.kind is PatternKind.FAIR_VALUE_GAP)
        sweeps = tuple(p for p in patterns if p.kind is PatternKind.LIQUIDITY_SWEEP)
        breaks = tuple(p for p in patterns if p.kind is PatternKind.STRUCTURE_BREAK)

        score = 0.3 + {TrendStrength.STRONG: 0.3, TrendStrength.MODERATE: 0.2,
                       TrendStrength.WEAK: 0.0}[strength]
        score += 0.1 * sum(1 for group in (order_blocks, gaps, sweeps, breaks) if group)

        # most recent swing first, so it stands for its cluster
        support = group_levels((s.price for s in reversed(swing_lows)),
                               cfg.sr_cluster_pct)[:cfg.sr_levels]
        resistance = group_levels((s.price for s in reversed(swing_highs)),
                                  cfg.sr_cluster_pct)[:cfg.sr_levels]

        snapshot = StructureSnapshot(
            trend=trend,
            strength=strength,
            volatility=volatility,
            phase=classify_phase(trend, volatility),
            support_levels=tuple(sorted(support, reverse=True)),
            resistance_levels=tuple(sorted(resistance, reverse=True)),
            key_levels=tuple(sorted(support + resistance, reverse=True)),
            volume_profile=volume_profile(
                candles, cfg.volume_profile_min_candles, cfg.high_volume_node_mult,
                cfg.low_volume_node_mult, cfg.value_area_fraction),
            cycle=self._cycle(candles),
            order_blocks=order_blocks,
            fair_value_gaps=gaps,
            liquidity_levels=self._liquidity_levels(candles),
            liquidity_sweeps=sweeps,
            structure_breaks=breaks,
            momentum=self._momentum(candles),
            structure_score=min(1.0, score),
            sufficient_data=True,
            window_end=window_end,
        )
        logger.debug(
            f"📐 Structure: {trend.value}/{strength.value} vol={volatility.value} "
            f"OB={len(order_blocks)} FVG={len(gaps)} sweeps={len(sweeps)} "
            f"breaks={len(breaks)} score={snapshot.structure_score:.2f}"
        )
        return snapshot

    def _trend_strength(self, candles: Sequence[Candle], trend: Trend) -> TrendStrength:
        if trend is Trend.RANGING:
            return TrendStrength.WEAK
        change = abs(indicators.pct_change(candles, self.config.trend_strength_lookback))
        if change > self.config.strong_trend_pct:
            return TrendStrength.STRONG
        if change > self.config.moderate_trend_pct:
            return TrendStrength.MODERATE
        return TrendStrength.WEAK

    def _volatility(self, candles: Sequence[Candle]) -> Volatility:
        mean_move = indicators.mean_abs_return_pct(candles, self.config.volatility_lookback)
        if mean_move is None:
            return Volatility.MEDIUM
        if mean_move > self.config.high_volatility_pct:
            return Volatility.HIGH
        if mean_move > self.config.medium_volatility_pct:
            return Volatility.MEDIUM
        return Volatility.LOW

    def _trend(self, candles: Sequence[Candle]) -> Trend:
        highs, lows = find_swings(candles, self.config.swing_half_window)
        return classify_trend(candles, highs, lows, self.config.trend_fallback_lookback)

    def _cycle(self, candles: Sequence[Candle]) -> MarketCycle:
        """Trend of the last `cycle_lookback` candles and how far back it holds."""
        lookback = self.config.cycle_lookback
        if len(candles) < lookback:
            return MarketCycle()
        recent = candles[-lookback:]
        trend = self._trend(recent)
        strength = self._trend_strength(recent, trend)

        duration = 0
        for end in range(len(recent), 1, -1):
            if self._trend(recent[:end]) is not trend:
                break
            duration += 1

        level = {TrendStrength.STRONG: 3, TrendStrength.MODERATE: 2, TrendStrength.WEAK: 1}
        return MarketCycle(current=trend, duration=duration, strength=level[strength])

    def _momentum(self, candles: Sequence[Candle]) -> Trend:
        lookback = min(self.config.momentum_lookback, len(candles) - 1)
        if lookback < 1:
            return Trend.RANGING
        change = candles[-1].close - candles[-1 - lookback].close
        if change > 0:
            return Trend.BULLISH
        if change < 0:
            return Trend.BEARISH
        return Trend.RANGING

    def _liquidity_levels(self, candles: Sequence[Candle]) -> Tuple[LiquidityLevel, ...]:
        ref = self.config.sweep_reference_candles
        if len(candles) < ref + 1:
            return ()
        prior = candles[-ref - 1:-1]
        last = candles[-1]
        high = max(c.high for c in prior)
        low = min(c.low for c in prior)
        return (
            LiquidityLevel(price=high, level_type="high",
                           swept=last.high > high and last.close < high),
            LiquidityLevel(price=low, level_type="low",
                           swept=last.low < low and last.close > low),
        )
