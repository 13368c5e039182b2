from typing import List

import pytest

from config import AnalyzerConfig
from market_structure import (
    FairValueGapDetector,
    LiquiditySweepDetector,
    MarketStructureAnalyzer,
    OrderBlockDetector,
    PatternDetector,
    SnapshotCache,
    StructureBreakDetector,
    classify_phase,
    classify_trend,
    find_swings,
    group_levels,
    volume_profile,
)
from models import (
    BreakType,
    Candle,
    MarketCycle,
    PatternKind,
    PatternSide,
    Phase,
    StructureSnapshot,
    Trend,
    TrendStrength,
    Volatility,
    VolumeProfile,
)


def _c(idx: int, o: float, h: float, l: float, c: float, v: float = 100.0) -> Candle:
    return Candle(timestamp=idx * 60_000, open=o, high=h, low=l, close=c, volume=v)


# Zigzag with higher highs (idx 3, 9, 15, 21, 27) and higher lows (idx 5, 11, 17, 23)
ZIGZAG = [10, 11, 12, 13, 12, 11, 12, 13, 14, 15, 14, 13, 14, 15, 16,
          17, 16, 15, 16, 17, 18, 19, 18, 17, 18, 19, 20, 21, 20, 19]


def _from_mids(mids) -> List[Candle]:
    return [_c(i, m - 0.2, m + 0.5, m - 0.5, m + 0.2) for i, m in enumerate(mids)]


def test_find_swings_uses_strict_half_window():
    highs, lows = find_swings(_from_mids(ZIGZAG), k=2)
    assert [s.index for s in highs] == [3, 9, 15, 21, 27]
    assert [s.index for s in lows] == [5, 11, 17, 23]
    assert all(s.is_high for s in highs)
    assert not any(s.is_high for s in lows)

    # equal neighbours never make a swing
    flat = [_c(i, 10, 11, 9, 10) for i in range(10)]
    assert find_swings(flat, k=2) == ([], [])


def test_swing_trend_bullish_and_bearish():
    candles = _from_mids(ZIGZAG)
    highs, lows = find_swings(candles, 2)
    assert classify_trend(candles, highs, lows, 10) is Trend.BULLISH

    mirrored = _from_mids([40 - m for m in ZIGZAG])
    highs, lows = find_swings(mirrored, 2)
    assert classify_trend(mirrored, highs, lows, 10) is Trend.BEARISH


def test_short_window_gives_neutral_snapshot(rising):
    analyzer = MarketStructureAnalyzer()
    snapshot = analyzer.analyze(rising(n=19))
    assert snapshot.sufficient_data is False
    assert snapshot.trend is Trend.RANGING
    assert snapshot.patterns == ()

    empty = analyzer.analyze([])
    assert empty.sufficient_data is False
    assert empty.window_end is None


def test_steady_rise_reads_bullish(rising):
    series = rising(n=30)
    snapshot = MarketStructureAnalyzer().analyze(series)

    assert snapshot.sufficient_data
    assert snapshot.trend is Trend.BULLISH
    assert snapshot.strength is TrendStrength.STRONG
    assert snapshot.volatility is Volatility.LOW
    assert snapshot.phase in (Phase.ACCUMULATION, Phase.MARKUP)
    assert snapshot.momentum is Trend.BULLISH
    assert snapshot.window_end == series.last.timestamp
    assert 0.0 <= snapshot.structure_score <= 1.0


@pytest.mark.parametrize("trend, volatility, phase", [
    (Trend.BULLISH, Volatility.LOW, Phase.ACCUMULATION),
    (Trend.BULLISH, Volatility.HIGH, Phase.MARKUP),
    (Trend.BEARISH, Volatility.LOW, Phase.DISTRIBUTION),
    (Trend.BEARISH, Volatility.MEDIUM, Phase.MARKDOWN),
    (Trend.RANGING, Volatility.LOW, Phase.ACCUMULATION),
    (Trend.RANGING, Volatility.HIGH, Phase.DISTRIBUTION),
])
def test_classify_phase(trend, volatility, phase):
    assert classify_phase(trend, volatility) is phase


def test_bullish_order_block():
    candles = [
        _c(0, 100, 100.5, 99.5, 100),
        _c(1, 100, 102.1, 99.9, 102),       # strong bullish body
        _c(2, 102, 102.2, 101, 101.2),      # closes against it
    ]
    blocks = OrderBlockDetector(AnalyzerConfig()).detect(candles, Trend.RANGING)
    assert len(blocks) == 1
    ob = blocks[0]
    assert ob.side is PatternSide.BULLISH
    assert ob.kind is PatternKind.ORDER_BLOCK
    assert ob.price == 99.9
    assert ob.age == 1
    assert ob.volume_ratio == pytest.approx(1.0)
    assert ob.strength == pytest.approx(0.25 + 0.5 * (2 / 2.2))


def test_weak_body_is_not_an_order_block():
    candles = [_c(0, 100, 101, 99, 100.5), _c(1, 100.5, 101, 99, 100)]
    assert OrderBlockDetector(AnalyzerConfig()).detect(candles, Trend.RANGING) == []


PREV = _c(0, 99.5, 100, 99, 99.8)
CUR = _c(1, 99.8, 101, 99.7, 100.9)


def test_fair_value_gap_above_threshold():
    nxt = _c(2, 100.9, 101.5, 100.5, 101.2)
    gaps = FairValueGapDetector(AnalyzerConfig()).detect([PREV, CUR, nxt], Trend.RANGING)
    assert len(gaps) == 1
    gap = gaps[0]
    assert gap.side is PatternSide.BULLISH
    assert (gap.start, gap.end) == (100, 100.5)
    assert gap.size == pytest.approx(0.5)
    assert not gap.filled
    assert gap.age == 1


def test_fair_value_gap_below_threshold_is_ignored():
    nxt = _c(2, 100.9, 101.5, 100.05, 101.2)   # 0.05 gap < 0.1 % of 100.9
    assert FairValueGapDetector(AnalyzerConfig()).detect([PREV, CUR, nxt], Trend.RANGING) == []


def test_filled_fair_value_gap_is_dropped():
    nxt = _c(2, 100.9, 101.5, 100.5, 101.2)
    later = _c(3, 101.2, 101.6, 99.9, 100.2)   # trades through the whole gap
    assert FairValueGapDetector(AnalyzerConfig()).detect(
        [PREV, CUR, nxt, later], Trend.RANGING) == []


def test_partial_fill_is_reported():
    nxt = _c(2, 100.9, 101.5, 100.5, 101.2)
    later = _c(3, 101.2, 101.6, 100.25, 101.0)
    gaps = FairValueGapDetector(AnalyzerConfig()).detect(
        [PREV, CUR, nxt, later], Trend.RANGING)
    assert gaps[0].fill_fraction == pytest.approx(0.5)


def test_liquidity_sweep_of_prior_low():
    candles = [_c(i, 101, 102, 100, 101) for i in range(10)]
    candles.append(_c(10, 101, 101.5, 99, 100.5))
    sweeps = LiquiditySweepDetector(AnalyzerConfig()).detect(candles, Trend.RANGING)
    assert len(sweeps) == 1
    assert sweeps[0].side is PatternSide.BULLISH
    assert sweeps[0].price == 100
    assert sweeps[0].age == 0


@pytest.mark.parametrize("trend, expected", [
    (Trend.BULLISH, BreakType.BOS),
    (Trend.BEARISH, BreakType.CHOCH),
])
def test_structure_break_type_follows_trend(trend, expected):
    candles = [_c(i, 100, 101, 99, 100, v=100) for i in range(5)]
    candles.append(_c(5, 100, 102, 99.5, 101.8, v=200))
    breaks = StructureBreakDetector(AnalyzerConfig()).detect(candles, trend)
    assert len(breaks) == 1
    assert breaks[0].side is PatternSide.BULLISH
    assert breaks[0].price == 101
    assert breaks[0].break_type is expected


def test_break_without_volume_is_ignored():
    candles = [_c(i, 100, 101, 99, 100, v=100) for i in range(5)]
    candles.append(_c(5, 100, 102, 99.5, 101.8, v=110))
    assert StructureBreakDetector(AnalyzerConfig()).detect(candles, Trend.BULLISH) == []


def test_snapshot_cache_evicts_least_recently_used():
    cache = SnapshotCache(capacity=2)
    a, b, c = (StructureSnapshot.neutral(i) for i in range(3))
    cache.put("a", a)
    cache.put("b", b)
    assert cache.get("a") is a
    cache.put("c", c)
    assert "b" not in cache
    assert "a" in cache and "c" in cache
    assert len(cache) == 2
    assert cache.get("b") is None
    assert (cache.hits, cache.misses) == (1, 1)


def test_analyzer_caches_by_key(rising):
    analyzer = MarketStructureAnalyzer()
    series = rising(n=30)
    first = analyzer.analyze(series, cache_key=29)
    second = analyzer.analyze(series, cache_key=29)
    assert first is second
    assert analyzer.cache.hits == 1


class _CountingDetector(PatternDetector):
    kind = PatternKind.ORDER_BLOCK

    def __init__(self, config):
        super().__init__(config)
        self.calls = 0

    def detect(self, candles, trend):
        self.calls += 1
        return []


def test_registered_detector_runs(rising):
    analyzer = MarketStructureAnalyzer(detectors=[])
    detector = _CountingDetector(analyzer.config)
    analyzer.register(detector)

    snapshot = analyzer.analyze(rising(n=25))
    assert detector.calls == 1
    assert snapshot.order_blocks == ()
    assert snapshot.fair_value_gaps == ()


def test_group_levels_keeps_first_of_each_cluster():
    assert group_levels([100.0, 101.0, 103.0, 100.5, 110.0], 2.0) == [100.0, 103.0, 110.0]
    assert group_levels([], 2.0) == []


def test_support_resistance_are_clustered():
    candles = _from_mids(ZIGZAG)
    plain = MarketStructureAnalyzer().analyze(candles)
    assert plain.resistance_levels == (21.5, 19.5, 17.5, 15.5, 13.5)
    assert plain.support_levels == (16.5, 14.5, 12.5, 10.5)

    wide = MarketStructureAnalyzer(AnalyzerConfig(sr_cluster_pct=20.0)).analyze(candles)
    assert wide.resistance_levels == (21.5, 15.5)
    assert wide.support_levels == (16.5, 12.5)
    assert wide.key_levels == (21.5, 16.5, 15.5, 12.5)


def test_volume_profile_nodes_and_value_area():
    candles = [_c(i, i + 1, i + 1.5, i + 0.5, i + 1, v=100.0) for i in range(20)]
    candles[0] = _c(0, 1, 1.5, 0.5, 1, v=1_000.0)
    candles[1] = _c(1, 2, 2.5, 1.5, 2, v=10.0)

    profile = volume_profile(candles, 20, 1.5, 0.5, 0.5)
    assert profile.high_volume_nodes == (1,)
    assert profile.low_volume_nodes == (2,)
    assert (profile.value_area_low, profile.value_area_high) == (6, 15)

    assert volume_profile(candles[:19], 20, 1.5, 0.5, 0.5) == VolumeProfile()


def test_market_cycle_needs_fifty_candles(rising):
    analyzer = MarketStructureAnalyzer()
    assert analyzer.analyze(rising(n=30)).cycle == MarketCycle()

    cycle = analyzer.analyze(rising(n=60)).cycle
    assert cycle.current is Trend.BULLISH
    assert cycle.strength == 3
    assert cycle.duration == 49
