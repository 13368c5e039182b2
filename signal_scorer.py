"""
Signal Scorer
=============
Turns a structure snapshot plus session / volume / trend context into an
unsized Signal, or None. Pure: the same inputs always give the same Signal.

Confidence  = base + killzone + overlap + structure·w + volume·w + trend·w
              + capped pattern bonus, × quality multiplier, clamped
Confluence  = structure·0.4 + killzone·0.2 + session·0.15
              + volume·0.15 + trend·0.1, clamped to [0, 1]
"""

import logging
from typing import List, Optional

from config import ScorerConfig
from models import (
    SessionContext,
    Side,
    Signal,
    StructureSnapshot,
    Trend,
    TrendContext,
)

logger = logging.getLogger(__name__)


def volume_confirmation(volume_ratio: float) -> float:
    if volume_ratio > 1.5:
        return 0.8
    if volume_ratio > 1.2:
        return 0.6
    if volume_ratio < 0.7:
        return 0.3
    return 0.5


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def _vote(trend: Trend) -> int:
    if trend is Trend.BULLISH:
        return 1
    if trend is Trend.BEARISH:
        return -1
    return 0


class SignalScorer:

    def __init__(self, config: Optional[ScorerConfig] = None):
        self.config = config or ScorerConfig()
        self.config.validate()

    def confidence(self, snapshot: StructureSnapshot, session: SessionContext,
                   volume_conf: float, trend: TrendContext) -> float:
        cfg = self.config
        raw = cfg.base
        if session.in_killzone:
            raw += cfg.killzone_bonus
        if session.overlap:
            raw += cfg.overlap_bonus
        raw += snapshot.structure_score * cfg.structure_weight
        raw += volume_conf * cfg.volume_weight
        raw += trend.alignment * cfg.trend_weight
        pattern_count = len(snapshot.order_blocks) + len(snapshot.fair_value_gaps)
        raw += min(cfg.pattern_bonus_cap, pattern_count * cfg.pattern_bonus)
        return _clamp(raw * cfg.quality_multiplier, 0.0, cfg.max_confidence)

    def confluence(self, snapshot: StructureSnapshot, session: SessionContext,
                   volume_conf: float, trend: TrendContext) -> float:
        cfg = self.config
        value = snapshot.structure_score * cfg.confluence_structure_weight
        if session.in_killzone:
            value += cfg.confluence_killzone_weight
        if session.in_session:
            value += cfg.confluence_session_weight
        value += volume_conf * cfg.confluence_volume_weight
        value += trend.alignment * cfg.confluence_trend_weight
        return _clamp(value)

    def direction(self, snapshot: StructureSnapshot, trend: TrendContext,
                  volume_conf: float) -> Optional[Side]:
        """Majority of SMA trend, structural trend and volume-backed momentum."""
        votes = _vote(trend.direction) + _vote(snapshot.trend)
        if volume_conf > self.config.momentum_volume_confirmation:
            votes += _vote(snapshot.momentum)

        if votes > 0:
            return Side.BUY
        if votes < 0:
            return Side.SELL

        # tie: SMA trend first, then structure
        for fallback in (trend.direction, snapshot.trend):
            if fallback is Trend.BULLISH:
                return Side.BUY
            if fallback is Trend.BEARISH:
                return Side.SELL
        return None

    def score(
        self,
        snapshot: StructureSnapshot,
        session: SessionContext,
        volume_ratio: float,
        trend: TrendContext,
        price: float,
        timestamp: int,
        instrument: str = "",
    ) -> Optional[Signal]:
        if not snapshot.sufficient_data:
            return None

        vol_conf = volume_confirmation(volume_ratio)
        confidence = self.confidence(snapshot, session, vol_conf, trend)
        confluence = self.confluence(snapshot, session, vol_conf, trend)

        if confidence < self.config.min_confidence or confluence < self.config.min_confluence:
            logger.debug(
                f"{instrument} below threshold: confidence={confidence:.2f} "
                f"confluence={confluence:.2f}"
            )
            return None

        side = self.direction(snapshot, trend, vol_conf)
        if side is None:
            logger.debug(f"{instrument} no directional bias")
            return None

        reasons: List[str] = [f"trend={snapshot.trend.value}/{snapshot.strength.value}"]
        if session.killzone:
            reasons.append(f"killzone={session.killzone}")
        if session.overlap:
            reasons.append("session_overlap")
        if snapshot.order_blocks:
            reasons.append(f"order_blocks={len(snapshot.order_blocks)}")
        if snapshot.fair_value_gaps:
            reasons.append(f"fvgs={len(snapshot.fair_value_gaps)}")
        if snapshot.liquidity_sweeps:
            reasons.append(f"sweeps={len(snapshot.liquidity_sweeps)}")

        signal = Signal(
            instrument=instrument,
            side=side,
            price=price,
            confidence=confidence,
            confluence=confluence,
            timestamp=timestamp,
            reasons=tuple(reasons),
        )
        logger.info(
            f"🎯 {instrument} {side.value.upper()} signal @ {price:.4f} | "
            f"confidence {confidence:.2f} | confluence {confluence:.2f}"
        )
        return signal
