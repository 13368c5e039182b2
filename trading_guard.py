"""
Trading Guard
Halts new entries for the rest of the UTC day after too many consecutive
losses, a daily loss beyond the limit, or the daily trade cap.
Open positions are never touched by the guard.

Only pnl < 0 extends the loss streak; any other trade ends it. The streak
survives day changes and resets only when a halt lifts.
"""

import logging
import threading
from datetime import date, datetime, timezone
from typing import Optional, Tuple

from config import GuardConfig
from models import Trade

logger = logging.getLogger(__name__)


def utc_day(timestamp_ms: int) -> date:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).date()


class TradingGuard:

    def __init__(self, config: Optional[GuardConfig] = None):
        self.config = config or GuardConfig()
        self.config.validate()
        self._lock = threading.RLock()

        self.consecutive_losses = 0
        self.daily_pnl = 0.0
        self.daily_trades = 0
        self.day_start_balance = 0.0
        self._day: Optional[date] = None
        self._halted_day: Optional[date] = None
        self.halt_reason = ""

    def _roll_day(self, timestamp_ms: int, balance: Optional[float] = None) -> None:
        day = utc_day(timestamp_ms)
        if self._day == day:
            return
        if self._day is not None:
            logger.info(f"🔄 New day {day} - resetting daily counters")
        if self._halted_day is not None and self._halted_day != day:
            # halt lifts with the day; the streak that caused it goes too
            self._halted_day = None
            self.halt_reason = ""
            logger.info("✅ Trading halt lifted - loss streak reset")
            self.consecutive_losses = 0
        self._day = day
        self.daily_pnl = 0.0
        self.daily_trades = 0
        if balance is not None:
            self.day_start_balance = balance

    def can_trade(self, timestamp_ms: int, balance: Optional[float] = None) -> Tuple[bool, str]:
        with self._lock:
            self._roll_day(timestamp_ms, balance)
            if self._halted_day == self._day:
                return False, f"Halted for the day: {self.halt_reason}"
            if self.daily_trades >= self.config.max_daily_trades:
                return False, f"Daily trade limit ({self.config.max_daily_trades})"
            return True, "OK"

    def record_trade(self, trade: Trade, balance_after: Optional[float] = None) -> None:
        with self._lock:
            balance_before = None if balance_after is None else balance_after - trade.pnl
            self._roll_day(trade.closed_at, balance_before)
            if balance_before is not None and self.day_start_balance <= 0:
                self.day_start_balance = balance_before

            self.daily_trades += 1
            self.daily_pnl += trade.pnl
            if trade.pnl < 0:
                self.consecutive_losses += 1
            else:
                self.consecutive_losses = 0

            logger.info(
                f"📊 Trade recorded: {trade.instrument} P&L ${trade.pnl:+.2f} | "
                f"day ${self.daily_pnl:+.2f} | streak {self.consecutive_losses} losses"
            )

            reason = self._breach()
            if reason and self._halted_day != self._day:
                self._halted_day = self._day
                self.halt_reason = reason
                logger.warning(f"🛑 Entries halted until next UTC day: {reason}")

    def _breach(self) -> str:
        if self.consecutive_losses >= self.config.max_consecutive_losses:
            return f"Max consecutive losses ({self.consecutive_losses})"
        if self.day_start_balance > 0 and self.daily_pnl < 0:
            loss_pct = abs(self.daily_pnl) / self.day_start_balance * 100
            if loss_pct >= self.config.max_daily_loss_pct:
                return f"Daily loss limit hit ({loss_pct:.2f}% >= {self.config.max_daily_loss_pct}%)"
        return ""

    @property
    def halted(self) -> bool:
        with self._lock:
            return self._halted_day is not None
