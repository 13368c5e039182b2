"""
ICT / SMC Signal Engine
=======================
Entry points:
  backtest   replay a CSV of candles through the strategy and print stats
  live       bounded periodic loop over one or more instruments
             (Binance public klines · paper execution · Telegram/log alerts)
"""

import argparse
import logging
import signal
import sys
import threading
from typing import Dict, List, Optional, Sequence

import config
from backtest_engine import BacktestEngine
from config import BotConfig, StrategyConfig
from data_manager import BinanceKlineProvider, load_candles_csv
from exceptions import PositionInvariantError, TradingEngineError
from interfaces import (
    AccountInfoProvider,
    MarketDataProvider,
    NotificationKind,
    NotificationSink,
    OrderGateway,
    OrderRejected,
)
from models import CandleSeries, Signal, Trade
from order_manager import PaperAccount, PaperOrderGateway
from position_lifecycle import (
    LifecycleEvent,
    PartialExit,
    PositionClosed,
    PositionLifecycle,
    StopMoved,
)
from strategy import ICTStrategy
from telegram_notifier import build_notifier
from trading_guard import TradingGuard

logger = logging.getLogger(__name__)


def configure_logging(level: str = config.LOG_LEVEL,
                      log_file: Optional[str] = config.LOG_FILE) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )


class TradingBot:
    """
    Bounded live driver.

    Each iteration: fetch candles → drive every newly closed candle through
    the open positions (serially, per instrument) → evaluate flat
    instruments in parallel → enter serially.
    stop() lets the current instrument finish, schedules nothing further
    and leaves open positions as they are.
    """

    def __init__(
        self,
        instruments: Sequence[str],
        strategy: ICTStrategy,
        data_provider: MarketDataProvider,
        gateway: OrderGateway,
        account: AccountInfoProvider,
        notifier: NotificationSink,
        config: Optional[BotConfig] = None,
    ):
        if not instruments:
            raise ValueError("At least one instrument is required")
        self.instruments = list(dict.fromkeys(instruments))
        self.strategy = strategy
        self.data_provider = data_provider
        self.gateway = gateway
        self.account = account
        self.notifier = notifier
        self.config = config or strategy.config.bot
        self.config.validate()

        self.lifecycles: Dict[str, PositionLifecycle] = {
            inst: PositionLifecycle(inst, strategy.config.lifecycle) for inst in self.instruments
        }
        self.guard = TradingGuard(strategy.config.guard)
        self.trades: List[Trade] = []
        self.iterations = 0
        self._balance: Optional[float] = None
        self._last_seen: Dict[str, int] = {}      # newest candle already driven per instrument
        self._last_price: Dict[str, float] = {}
        self._stop = threading.Event()

    # =========================================================================
    # NOTIFY
    # =========================================================================

    def _notify(self, kind: NotificationKind, **payload) -> None:
        try:
            self.notifier.notify(kind, payload)
        except Exception as e:
            logger.warning(f"⚠️ Notification failed ({kind.value}): {e}")

    # =========================================================================
    # MAIN LOOP
    # =========================================================================

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def run(self) -> int:
        logger.info("=" * 80)
        logger.info(
            f"🚀 Engine running: {', '.join(self.instruments)} | "
            f"{self.config.timeframe} | every {self.config.interval_sec:.0f}s | "
            f"max {self.config.max_iterations} iterations"
        )
        logger.info("=" * 80)
        self._notify(NotificationKind.STATUS, title="Engine started",
                     instruments=", ".join(self.instruments),
                     timeframe=self.config.timeframe)

        while not self.stopping and self.iterations < self.config.max_iterations:
            try:
                self.run_iteration()
            except Exception:
                logger.exception("❌ Error in iteration")
            self.iterations += 1
            if self.stopping or self.iterations >= self.config.max_iterations:
                break
            self._stop.wait(self.config.interval_sec)

        self._shutdown_report()
        return self.iterations

    def stop(self) -> None:
        if not self.stopping:
            logger.info("🛑 Stop requested - finishing current instrument")
        self._stop.set()

    def run_iteration(self) -> None:
        windows: Dict[str, CandleSeries] = {}
        for inst in self.instruments:
            if self.stopping:
                return
            try:
                windows[inst] = self.data_provider.get_candles(
                    inst, self.config.timeframe, self.config.lookback)
            except Exception as e:
                logger.error(f"❌ {inst} market data unavailable: {e}")
                self._notify(NotificationKind.ERROR, title="Market data unavailable",
                             instrument=inst, error=str(e))

        for inst, series in windows.items():
            if self.stopping:
                return
            try:
                self._manage(inst, series)
            except PositionInvariantError as e:
                logger.critical(f"🚨 {inst} invariant violation: {e}")
                self._notify(NotificationKind.ERROR, title="Invariant violation",
                             instrument=inst, error=str(e))

        self._balance = self._fetch_balance()
        if self._balance is None:
            logger.warning("⚠️ Balance unavailable - skipping new entries this cycle")
            return

        flat = {inst: w for inst, w in windows.items()
                if not self.lifecycles[inst].is_open and len(w) > 0}
        if not flat or self.stopping:
            return

        now_ms = max(w.last.timestamp for w in flat.values())
        allowed, reason = self.guard.can_trade(now_ms, self._balance)
        if not allowed:
            logger.info(f"⏸️ Entries paused: {reason}")
            return

        evaluations = self.strategy.evaluate_many(
            flat, self._balance, self.config.risk_fraction, self.config.workers)

        for inst in self.instruments:
            if self.stopping:
                return
            evaluation = evaluations.get(inst)
            if evaluation is None or evaluation.signal is None:
                continue
            try:
                self._enter(inst, evaluation.signal)
            except PositionInvariantError as e:
                logger.critical(f"🚨 {inst} invariant violation on entry: {e}")
                self._notify(NotificationKind.ERROR, title="Invariant violation",
                             instrument=inst, error=str(e))

    # =========================================================================
    # ENTRIES
    # =========================================================================

    def _fetch_balance(self) -> Optional[float]:
        try:
            balance = self.account.get_available_balance(self.config.account_asset)
        except Exception as e:
            logger.error(f"❌ Balance fetch failed: {e}")
            return None
        if balance is None or balance <= 0:
            return None
        return float(balance)

    def _enter(self, inst: str, sig: Signal) -> None:
        try:
            result = self.gateway.place_order(inst, sig.side, sig.position_size, sig.price)
        except Exception as e:
            logger.error(f"❌ {inst} order gateway unreachable: {e}")
            self._notify(NotificationKind.ERROR, title="Order gateway unreachable",
                         instrument=inst, error=str(e))
            return

        if isinstance(result, OrderRejected):
            logger.warning(f"⚠️ {inst} entry rejected: {result.reason}")
            self._notify(NotificationKind.ERROR, title="Entry rejected",
                         instrument=inst, reason=result.reason)
            return

        fill = self.gateway.get_fill(result.order_id)
        if fill is None:
            cancelled = self.gateway.cancel_order(result.order_id)
            logger.warning(f"⚠️ {inst} entry {result.order_id} unfilled (cancelled={cancelled})")
            self._notify(NotificationKind.STATUS, title="Entry not filled",
                         instrument=inst, order_id=result.order_id, cancelled=cancelled)
            return

        position = self.lifecycles[inst].open(sig.with_fill(fill.price, fill.quantity),
                                              opened_at=sig.timestamp)
        self._last_seen[inst] = sig.timestamp
        self._notify(NotificationKind.TRADE, title="Position opened", instrument=inst,
                     side=position.side.value, quantity=position.quantity,
                     entry=position.entry_price, stop_loss=position.stop_loss,
                     take_profit=position.take_profit, confidence=sig.confidence)

    # =========================================================================
    # MANAGEMENT
    # =========================================================================

    def _manage(self, inst: str, series: CandleSeries) -> None:
        lifecycle = self.lifecycles[inst]
        if len(series) == 0:
            return
        market = series.last.close
        self._last_price[inst] = market
        if not lifecycle.is_open:
            return
        side = lifecycle.position.side

        # every closed candle since the last poll, in order; they are history,
        # so exits execute at the current market
        seen = self._last_seen.get(inst, lifecycle.position.opened_at)
        events: List[LifecycleEvent] = []
        for candle in series:
            if not lifecycle.is_open:
                break
            if candle.timestamp <= seen:
                continue
            events.extend(lifecycle.on_candle(candle, market_price=market))
            self._last_seen[inst] = candle.timestamp

        for event in events:
            if isinstance(event, PartialExit):
                self._exit_order(inst, side.opposite, event.quantity, event.price)
                self._notify(NotificationKind.TRADE, title="Partial exit", instrument=inst,
                             r_multiple=event.r_multiple, price=event.price,
                             quantity=event.quantity, pnl=event.pnl)
            elif isinstance(event, StopMoved):
                logger.info(f"🔒 {inst} stop {event.old_stop:.4f} → {event.new_stop:.4f}")
            elif isinstance(event, PositionClosed):
                if event.remainder_quantity > 0:
                    self._exit_order(inst, side.opposite, event.remainder_quantity,
                                     event.trade.exit_price)
                self._record(event.trade)

    def _exit_order(self, inst: str, side, quantity: float, price: float) -> None:
        try:
            result = self.gateway.place_order(inst, side, quantity, price)
        except Exception as e:
            result = OrderRejected(inst, f"gateway unreachable: {e}")
        if isinstance(result, OrderRejected):
            logger.critical(f"🚨 {inst} exit order failed ({result.reason}) - reconcile manually")
            self._notify(NotificationKind.ERROR, title="Exit order failed",
                         instrument=inst, quantity=quantity, reason=result.reason)

    def _record(self, trade: Trade) -> None:
        self.trades.append(trade)
        balance_after = self._fetch_balance()
        self.guard.record_trade(trade, balance_after)
        self._notify(NotificationKind.TRADE, title="Position closed",
                     instrument=trade.instrument, side=trade.side.value,
                     entry=trade.entry_price, exit=trade.exit_price,
                     reason=trade.exit_reason.value, pnl=trade.pnl)

    # =========================================================================
    # SHUTDOWN
    # =========================================================================

    def _shutdown_report(self) -> None:
        open_positions = [lc.position for lc in self.lifecycles.values() if lc.position]
        payload = {
            "title": "Engine stopped",
            "iterations": self.iterations,
            "closed_trades": len(self.trades),
            "realized_pnl": sum(t.pnl for t in self.trades),
        }
        for pos in open_positions:
            mark = self._last_price.get(pos.instrument, pos.entry_price)
            unrealized = pos.unrealized_pnl(mark)
            logger.critical(
                f"Active position left open on shutdown: {pos.instrument} "
                f"{pos.side.value.upper()} {pos.remaining_quantity:.6f} @ {pos.entry_price:.4f} "
                f"SL {pos.stop_loss:.4f} TP {pos.take_profit:.4f} | "
                f"unrealized ${unrealized:+.2f} @ {mark:.4f}"
            )
            payload[f"open_{pos.instrument}"] = (
                f"{pos.side.value} {pos.remaining_quantity:.6f} @ {pos.entry_price:.4f} "
                f"(unrealized {unrealized:+.2f})"
            )
        self._notify(NotificationKind.STATUS, **payload)
        logger.info(f"Engine stopped after {self.iterations} iterations")


# =============================================================================
# CLI
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ict-engine", description=__doc__,
                                     formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--log-level", default=config.LOG_LEVEL)
    sub = parser.add_subparsers(dest="command", required=True)

    bt = sub.add_parser("backtest", help="replay a CSV of candles")
    bt.add_argument("--csv", required=True, help="OHLCV file with a header row")
    bt.add_argument("--instrument", default="")
    bt.add_argument("--timeframe", default=config.TIMEFRAME)
    bt.add_argument("--balance", type=float, default=config.PAPER_BALANCE)
    bt.add_argument("--risk", type=float, default=config.RISK_FRACTION)

    live = sub.add_parser("live", help="bounded paper-trading loop")
    live.add_argument("--instruments", required=True, help="comma separated, e.g. BTCUSDT,ETHUSDT")
    live.add_argument("--timeframe", default=config.TIMEFRAME)
    live.add_argument("--interval", type=float, default=config.LOOP_INTERVAL_SEC)
    live.add_argument("--max-iterations", type=int, default=config.MAX_ITERATIONS)
    live.add_argument("--balance", type=float, default=config.PAPER_BALANCE)
    live.add_argument("--risk", type=float, default=config.RISK_FRACTION)
    return parser


def run_backtest(args: argparse.Namespace) -> int:
    series = load_candles_csv(args.csv, args.instrument, args.timeframe)
    stats = BacktestEngine(ICTStrategy(StrategyConfig.from_env())).run(
        series, args.balance, args.risk)
    print(stats.summary())
    for trade in stats.trades:
        print(f"{trade.opened_at} → {trade.closed_at} {trade.side.value:4} "
              f"{trade.entry_price:.4f} → {trade.exit_price:.4f} "
              f"{trade.exit_reason.value:18} {trade.pnl:+.2f}")
    return 0


def run_live(args: argparse.Namespace) -> int:
    base = StrategyConfig.from_env()
    bot_config = BotConfig(
        interval_sec=args.interval,
        max_iterations=args.max_iterations,
        timeframe=args.timeframe,
        lookback=base.bot.lookback,
        risk_fraction=args.risk,
        account_asset=base.bot.account_asset,
        workers=base.bot.workers,
    )
    account = PaperAccount(args.balance, bot_config.account_asset)
    notifier = build_notifier()
    bot = TradingBot(
        instruments=[s.strip().upper() for s in args.instruments.split(",") if s.strip()],
        strategy=ICTStrategy(base),
        data_provider=BinanceKlineProvider(),
        gateway=PaperOrderGateway(account),
        account=account,
        notifier=notifier,
        config=bot_config,
    )

    if threading.current_thread() is threading.main_thread():
        def signal_handler(signum, frame):
            logger.info("Shutdown signal received")
            bot.stop()
        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    try:
        bot.run()
    finally:
        # the sender is a daemon thread; drain it so the shutdown report goes out
        close = getattr(notifier, "close", None)
        if close is not None:
            close()
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    try:
        if args.command == "backtest":
            return run_backtest(args)
        return run_live(args)
    except TradingEngineError as e:
        logger.error(f"❌ {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
