"""
Position Lifecycle
==================
One instance per instrument. Holds at most one OPEN position and drives it
with prices until it closes.

STATE ISOLATION:
  - Every position gets its own FLAT → OPEN → CLOSED state machine and a
    freshly built partial ladder; nothing survives into the next trade.

ON EVERY PRICE (in this order):
  1. Max hold exceeded        → close at price        (max_hold)
  2. Stop crossed             → close                 (stop_loss)
  3. Target crossed           → close                 (take_profit)
  4. Ladder levels reached    → partial exits, each fires once;
                                 nothing left → close (partials_complete)
  5. Trailing stop            → after N·R in profit, ratchet only

FILLS:
  A crossed level fills at the level or at the mark, whichever is worse
  for the position. on_price() marks at the observed price, so a jump
  through the stop books the loss actually available. on_candle() walks
  the intrabar path: the open is marked (gaps fill at the open), later
  segments are continuous and fill at the level. Replaying a candle that
  already closed marks every exit at the current market price.

PNL:
  Trade.pnl = realised partial legs + (exit − entry) × remaining × side.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

from config import LifecycleConfig
from exceptions import PositionInvariantError
from models import Candle, ExitReason, PartialLevel, Side, Signal, Trade
from state_machine import PositionState, PositionStateMachine

logger = logging.getLogger(__name__)


def price_path(candle: Candle) -> Tuple[float, float, float, float]:
    """Deterministic intrabar order: bullish/doji O→L→H→C, bearish O→H→L→C."""
    if candle.close >= candle.open:
        return candle.open, candle.low, candle.high, candle.close
    return candle.open, candle.high, candle.low, candle.close


# ============================================================================
# POSITION & EVENTS
# ============================================================================

@dataclass
class Position:
    instrument: str
    side: Side
    entry_price: float
    quantity: float
    stop_loss: float
    take_profit: float
    opened_at: int
    partials: List[PartialLevel] = field(default_factory=list)

    remaining_quantity: float = 0.0
    initial_stop_loss: float = 0.0
    realized_pnl: float = 0.0
    best_price: float = 0.0
    trailing_active: bool = False
    machine: PositionStateMachine = field(init=False, repr=False)

    def __post_init__(self):
        self.remaining_quantity = self.quantity
        self.initial_stop_loss = self.stop_loss
        self.best_price = self.entry_price
        self.machine = PositionStateMachine(self.instrument)

    @property
    def state(self) -> PositionState:
        return self.machine.current_state

    @property
    def is_long(self) -> bool:
        return self.side is Side.BUY

    @property
    def risk_per_unit(self) -> float:
        return abs(self.entry_price - self.initial_stop_loss)

    def leg_pnl(self, price: float, quantity: float) -> float:
        return (price - self.entry_price) * quantity * self.side.sign

    def current_r(self, price: float) -> float:
        if self.risk_per_unit <= 0:
            return 0.0
        return (price - self.entry_price) * self.side.sign / self.risk_per_unit

    def unrealized_pnl(self, price: float) -> float:
        return self.leg_pnl(price, self.remaining_quantity)

    def exit_fill(self, level: float, mark: Optional[float]) -> float:
        if mark is None:
            return level
        return min(level, mark) if self.is_long else max(level, mark)


@dataclass(frozen=True)
class PartialExit:
    instrument: str
    r_multiple: float
    price: float
    quantity: float
    pnl: float
    timestamp: int


@dataclass(frozen=True)
class StopMoved:
    instrument: str
    old_stop: float
    new_stop: float
    timestamp: int


@dataclass(frozen=True)
class PositionClosed:
    trade: Trade
    remainder_quantity: float
    remainder_pnl: float


LifecycleEvent = Union[PartialExit, StopMoved, PositionClosed]


# ============================================================================
# LIFECYCLE
# ============================================================================

class PositionLifecycle:

    def __init__(self, instrument: str, config: Optional[LifecycleConfig] = None):
        self.instrument = instrument
        self.config = config or LifecycleConfig()
        self.config.validate()
        self._lock = threading.RLock()
        self.position: Optional[Position] = None
        self.closed_trades: List[Trade] = []

    @property
    def is_open(self) -> bool:
        with self._lock:
            return self.position is not None

    # ── Open ────────────────────────────────────────────────────────────────

    def open(self, signal: Signal, opened_at: Optional[int] = None) -> Position:
        """
        Raises:
            PositionInvariantError: a position is already open, the signal is
                not sized, or stop/target sit on the wrong side of entry
        """
        with self._lock:
            if self.position is not None:
                raise PositionInvariantError(
                    f"{self.instrument}: position already OPEN "
                    f"({self.position.side.value} @ {self.position.entry_price})"
                )
            if signal.instrument and signal.instrument != self.instrument:
                raise PositionInvariantError(
                    f"Signal for {signal.instrument} routed to {self.instrument} lifecycle"
                )
            if not signal.is_sized:
                raise PositionInvariantError(
                    f"{self.instrument}: signal has no stop/target/size "
                    f"(size={signal.position_size})"
                )

            entry, stop, target = signal.price, signal.stop_loss, signal.take_profit
            if signal.side is Side.BUY and not stop < entry < target:
                raise PositionInvariantError(
                    f"{self.instrument}: BUY needs SL {stop} < entry {entry} < TP {target}"
                )
            if signal.side is Side.SELL and not stop > entry > target:
                raise PositionInvariantError(
                    f"{self.instrument}: SELL needs SL {stop} > entry {entry} > TP {target}"
                )

            position = Position(
                instrument=self.instrument,
                side=signal.side,
                entry_price=entry,
                quantity=signal.position_size,
                stop_loss=stop,
                take_profit=target,
                opened_at=signal.timestamp if opened_at is None else opened_at,
                partials=sorted(signal.partials, key=lambda p: p.r_multiple),
            )
            position.machine.transition(PositionState.OPEN, reason="entry filled")
            self.position = position

            logger.info("=" * 70)
            logger.info(
                f"📈 OPEN {self.instrument} {signal.side.value.upper()} "
                f"{position.quantity:.6f} @ {entry:.4f} | SL {stop:.4f} | TP {target:.4f} | "
                f"ladder {len(position.partials)} levels"
            )
            logger.info("=" * 70)
            return position

    # ── Price updates ───────────────────────────────────────────────────────

    def on_price(self, price: float, timestamp: int) -> List[LifecycleEvent]:
        with self._lock:
            return self._step(price, timestamp, mark=price)

    def on_candle(self, candle: Candle,
                  market_price: Optional[float] = None) -> List[LifecycleEvent]:
        """
        Drive the position through one candle's intrabar path.

        Args:
            candle: the candle to walk
            market_price: set when the candle has already closed and exits
                can only execute at the current market
        """
        with self._lock:
            events: List[LifecycleEvent] = []
            for i, price in enumerate(price_path(candle)):
                if self.position is None:
                    break
                if market_price is not None:
                    mark = market_price
                else:
                    mark = price if i == 0 else None
                events.extend(self._step(price, candle.timestamp, mark))
            return events

    def _step(self, price: float, timestamp: int,
              mark: Optional[float]) -> List[LifecycleEvent]:
        pos = self.position
        if pos is None:
            return []

        if timestamp - pos.opened_at > self.config.max_hold_ms:
            exit_price = price if mark is None else mark
            return [self._close(exit_price, timestamp, ExitReason.MAX_HOLD)]

        sign = pos.side.sign
        if (price - pos.stop_loss) * sign <= 0:
            return [self._close(pos.exit_fill(pos.stop_loss, mark), timestamp,
                                ExitReason.STOP_LOSS)]
        if (price - pos.take_profit) * sign >= 0:
            return [self._close(pos.exit_fill(pos.take_profit, mark), timestamp,
                                ExitReason.TAKE_PROFIT)]

        events: List[LifecycleEvent] = []
        for level in list(pos.partials):
            if (price - level.price) * sign < 0:
                break
            fill = pos.exit_fill(level.price, mark)
            events.append(self._take_partial(pos, level, fill, timestamp))
            if pos.remaining_quantity <= pos.quantity * 1e-9:
                events.append(self._close(fill, timestamp, ExitReason.PARTIALS_COMPLETE))
                return events

        moved = self._trail(pos, price, timestamp)
        if moved is not None:
            events.append(moved)
        return events

    def close(self, price: float, timestamp: int,
              reason: ExitReason = ExitReason.MANUAL) -> PositionClosed:
        with self._lock:
            if self.position is None:
                raise PositionInvariantError(f"{self.instrument}: no OPEN position to close")
            return self._close(price, timestamp, reason)

    # ── Internals ───────────────────────────────────────────────────────────

    def _take_partial(self, pos: Position, level: PartialLevel, price: float,
                      timestamp: int) -> PartialExit:
        quantity = min(pos.remaining_quantity, pos.quantity * level.percentage / 100)
        pnl = pos.leg_pnl(price, quantity)
        pos.remaining_quantity -= quantity
        pos.realized_pnl += pnl
        pos.partials.remove(level)
        logger.info(
            f"💰 {pos.instrument} partial {level.r_multiple:.1f}R: "
            f"{quantity:.6f} @ {price:.4f} | P&L ${pnl:+.2f} | "
            f"remaining {pos.remaining_quantity:.6f}"
        )
        return PartialExit(pos.instrument, level.r_multiple, price,
                           quantity, pnl, timestamp)

    def _trail(self, pos: Position, price: float, timestamp: int) -> Optional[StopMoved]:
        sign = pos.side.sign
        if (price - pos.best_price) * sign > 0:
            pos.best_price = price
        if not self.config.trailing_enabled:
            return None
        if pos.current_r(pos.best_price) < self.config.trailing_activation_r:
            return None

        candidate = price - sign * price * self.config.trailing_distance_pct
        if (candidate - pos.stop_loss) * sign <= 0:
            return None  # ratchet: never loosen

        old_stop = pos.stop_loss
        pos.stop_loss = candidate
        if not pos.trailing_active:
            pos.trailing_active = True
            logger.info(f"🔒 {pos.instrument} trailing stop active at {pos.current_r(price):.2f}R")
        logger.debug(f"{pos.instrument} trail SL {old_stop:.4f} → {candidate:.4f}")
        return StopMoved(pos.instrument, old_stop, candidate, timestamp)

    def _close(self, price: float, timestamp: int, reason: ExitReason) -> PositionClosed:
        pos = self.position
        remainder_quantity = max(0.0, pos.remaining_quantity)
        remainder_pnl = pos.leg_pnl(price, remainder_quantity)
        trade = Trade(
            instrument=pos.instrument,
            side=pos.side,
            entry_price=pos.entry_price,
            exit_price=price,
            quantity=pos.quantity,
            pnl=pos.realized_pnl + remainder_pnl,
            exit_reason=reason,
            opened_at=pos.opened_at,
            closed_at=timestamp,
            partial_pnl=pos.realized_pnl,
        )
        pos.remaining_quantity = 0.0
        pos.machine.transition(PositionState.CLOSED, reason=reason.value)
        self.position = None
        self.closed_trades.append(trade)

        emoji = "✅" if trade.pnl > 0 else "❌"
        logger.info(
            f"{emoji} CLOSE {pos.instrument} {pos.side.value.upper()} @ {price:.4f} "
            f"({reason.value}) | P&L ${trade.pnl:+.2f} "
            f"(partials ${trade.partial_pnl:+.2f})"
        )
        return PositionClosed(trade, remainder_quantity, remainder_pnl)
