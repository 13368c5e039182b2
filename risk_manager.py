"""
Risk Manager
============
Turns a scored Signal into a RiskPlan:

  STOP    tighter of fixed % and ATR × multiplier (fixed only without ATR)
  TARGET  stop distance × reward multiple (× bonus on strong structure)
  SIZE    (balance × risk fraction) / stop distance × min(confidence, 1),
          capped at max_position_fraction × balance / entry
  LADDER  partial exits at fixed R multiples, weighted toward the early
          levels, normalised to exactly 100 %
"""

import logging
from typing import Iterable, Optional, Sequence, Tuple

import indicators
from config import RiskConfig
from exceptions import DegenerateRiskError, RiskConfigError
from models import Candle, PartialLevel, RiskPlan, Side, Signal, StructureSnapshot

logger = logging.getLogger(__name__)


def ladder_weight(r_multiple: float) -> float:
    if r_multiple <= 0.5:
        return 1.5
    if r_multiple <= 1.0:
        return 1.2
    return 0.8


def ladder_percentages(levels: Sequence[float]) -> Tuple[float, ...]:
    """Percent of the original quantity closed at each level; always sums to 100."""
    if not levels:
        return ()
    weights = [ladder_weight(r) for r in levels]
    total = sum(weights)
    pcts = [round(w / total * 100, 4) for w in weights]
    pcts[-1] = 100.0 - sum(pcts[:-1])
    return tuple(pcts)


class RiskManager:

    def __init__(self, config: Optional[RiskConfig] = None):
        self.config = config or RiskConfig()
        self.config.validate()

    # ── Stops / targets ─────────────────────────────────────────────────────

    def stop_distance(self, entry: float, window: Optional[Sequence[Candle]] = None) -> float:
        cfg = self.config
        fixed = entry * cfg.fixed_stop_pct
        atr = indicators.atr(window, cfg.atr_period) if window else None
        if atr is not None and atr > 0:
            return min(fixed, atr * cfg.atr_multiplier)
        return fixed

    def take_profit_distance(self, stop_distance: float,
                             snapshot: Optional[StructureSnapshot] = None) -> float:
        distance = stop_distance * self.config.reward_multiple
        if snapshot is not None and snapshot.structure_score > self.config.strong_structure_score:
            distance *= self.config.strong_structure_multiplier
        return distance

    def partial_ladder(self, side: Side, entry: float,
                       stop_distance: float) -> Tuple[PartialLevel, ...]:
        if not self.config.partials_enabled:
            return ()
        levels = sorted(self.config.partial_levels)
        return tuple(
            PartialLevel(r_multiple=r, price=entry + side.sign * stop_distance * r, percentage=pct)
            for r, pct in zip(levels, ladder_percentages(levels))
        )

    # ── Sizing ──────────────────────────────────────────────────────────────

    def position_size(self, entry: float, stop_distance: float, confidence: float,
                      account_balance: float, risk_fraction: float) -> float:
        if stop_distance <= 0:
            raise DegenerateRiskError(
                f"Stop distance {stop_distance} for entry {entry} leaves no risk unit"
            )
        if account_balance <= 0:
            raise RiskConfigError(f"No available balance: {account_balance}")
        if not 0 < risk_fraction < 1:
            raise RiskConfigError(f"risk_fraction must be in (0, 1), got {risk_fraction}")
        if entry <= 0:
            raise RiskConfigError(f"Invalid entry price: {entry}")

        risk_amount = account_balance * risk_fraction
        size = risk_amount / stop_distance * min(max(confidence, 0.0), 1.0)
        cap = account_balance * self.config.max_position_fraction / entry
        return min(size, cap)

    def size(
        self,
        signal: Signal,
        account_balance: float,
        risk_fraction: float,
        window: Optional[Iterable[Candle]] = None,
        snapshot: Optional[StructureSnapshot] = None,
    ) -> RiskPlan:
        """
        Raises:
            DegenerateRiskError: stop distance is zero
            RiskConfigError: balance / risk fraction cannot fund a position
        """
        entry = signal.price
        candles = list(window) if window is not None else None
        distance = self.stop_distance(entry, candles)
        if distance <= 0:
            raise DegenerateRiskError(f"{signal.instrument}: zero stop distance at {entry}")

        side = signal.side
        stop_loss = entry - side.sign * distance
        take_profit = entry + side.sign * self.take_profit_distance(distance, snapshot)
        quantity = self.position_size(entry, distance, signal.confidence,
                                      account_balance, risk_fraction)

        plan = RiskPlan(
            stop_loss=stop_loss,
            take_profit=take_profit,
            position_size=quantity,
            stop_distance=distance,
            partials=self.partial_ladder(side, entry, distance),
        )
        logger.info(
            f"✅ {signal.instrument} plan: {side.value.upper()} {quantity:.6f} @ {entry:.4f} | "
            f"SL {stop_loss:.4f} | TP {take_profit:.4f} | "
            f"risk ${account_balance * risk_fraction:.2f} ({distance / entry * 100:.2f}%)"
        )
        return plan
