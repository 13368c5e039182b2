"""
Backtest Engine
===============
Replays the live pipeline over a historical series, candle by candle.

FILL SIMULATION (deterministic first touch):
  An open position walks each candle's intrabar path
      bullish / doji  O → L → H → C
      bearish         O → H → L → C
  so when stop and target both sit inside one candle the candle's own
  direction decides which was touched first. Levels touched inside the
  candle fill at the level; a candle that opens beyond a level fills at
  the open.

ENTRIES:
  Only when flat at the start of a candle, and only if the trading guard
  allows. Signals open at that candle's close; sizing uses the running
  balance.
"""

import logging
from typing import List, Optional

from config import StrategyConfig
from exceptions import RiskConfigError
from models import CandleSeries, ExitReason, Trade
from performance import BacktestStats, compute_stats
from position_lifecycle import PositionClosed, PositionLifecycle
from strategy import ICTStrategy
from trading_guard import TradingGuard

logger = logging.getLogger(__name__)


class BacktestEngine:

    def __init__(self, strategy: Optional[ICTStrategy] = None,
                 config: Optional[StrategyConfig] = None):
        if config is None:
            config = strategy.config if strategy is not None else StrategyConfig()
        self.config = config
        self.strategy = strategy or ICTStrategy(config)
        self.signals_seen = 0
        self.guard_blocks = 0

    def run(self, series: CandleSeries, initial_balance: float,
            risk_fraction: float) -> BacktestStats:
        if initial_balance <= 0:
            raise RiskConfigError(f"initial_balance must be > 0, got {initial_balance}")
        if not 0 < risk_fraction < 1:
            raise RiskConfigError(f"risk_fraction must be in (0, 1), got {risk_fraction}")

        instrument = series.instrument or "BACKTEST"
        lifecycle = PositionLifecycle(instrument, self.config.lifecycle)
        guard = TradingGuard(self.config.guard)
        self.strategy.analyzer.cache.clear()
        self.signals_seen = 0
        self.guard_blocks = 0

        trades: List[Trade] = []
        balance = initial_balance
        first_index = self.strategy.min_window - 1

        logger.info(
            f"🔁 Backtest {instrument}: {len(series)} candles | "
            f"balance ${initial_balance:.2f} | risk {risk_fraction * 100:.2f}%"
        )

        for i, candle in enumerate(series):
            if lifecycle.is_open:
                for event in lifecycle.on_candle(candle):
                    if isinstance(event, PositionClosed):
                        balance += event.trade.pnl
                        trades.append(event.trade)
                        guard.record_trade(event.trade, balance)
                continue

            if i < first_index:
                continue

            allowed, reason = guard.can_trade(candle.timestamp, balance)
            if not allowed:
                self.guard_blocks += 1
                logger.debug(f"Entry blocked @ {candle.timestamp}: {reason}")
                continue

            window = series.window(i, self.strategy.window_size)
            evaluation = self.strategy.evaluate(window, balance, risk_fraction, cache_key=i)
            if evaluation.signal is not None:
                self.signals_seen += 1
                lifecycle.open(evaluation.signal, opened_at=candle.timestamp)

        if lifecycle.is_open:
            last = series[-1]
            closed = lifecycle.close(last.close, last.timestamp, ExitReason.END_OF_DATA)
            balance += closed.trade.pnl
            trades.append(closed.trade)
            guard.record_trade(closed.trade, balance)

        stats = compute_stats(trades, initial_balance)
        logger.info("=" * 70)
        logger.info(f"📊 BACKTEST {instrument} | {stats.summary()}")
        logger.info("=" * 70)
        return stats
