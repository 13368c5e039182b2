import pytest

import main
from config import BotConfig, GuardConfig, StrategyConfig
from interfaces import NotificationKind
from main import TradingBot
from models import Candle, CandleSeries, ExitReason
from order_manager import PaperAccount, PaperOrderGateway
from strategy import ICTStrategy
from telegram_notifier import TelegramNotifier


class _Feed:
    """Hands out one prepared series per call for each instrument."""

    def __init__(self, script):
        self.script = {k: list(v) for k, v in script.items()}
        self.calls = []

    def get_candles(self, instrument, timeframe, lookback):
        self.calls.append(instrument)
        queue = self.script[instrument]
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item


class _Sink:
    def __init__(self):
        self.events = []

    def notify(self, kind, payload):
        self.events.append((kind, payload))

    def titles(self, kind=None):
        return [p.get("title") for k, p in self.events if kind is None or k is kind]


class _NoBalance:
    def get_available_balance(self, asset):
        return None


def _next(series: CandleSeries, o: float, h: float, l: float, c: float) -> CandleSeries:
    """Append one candle whose prices are multiples of the last close."""
    last = series.last
    extended = CandleSeries(series.instrument, series.timeframe, series.to_list())
    extended.append(Candle(last.timestamp + 60_000, last.close * o, last.close * h,
                           last.close * l, last.close * c, 100.0))
    return extended


def _crash(series: CandleSeries) -> CandleSeries:
    return _next(series, 1.0, 1.0, 0.9, 0.9)


def _bot(feed, account=None, gateway=None, iterations=1, strategy=None):
    account = account or PaperAccount(10_000.0)
    sink = _Sink()
    bot = TradingBot(
        instruments=list(feed.script),
        strategy=strategy or ICTStrategy(),
        data_provider=feed,
        gateway=gateway or PaperOrderGateway(account),
        account=account,
        notifier=sink,
        config=BotConfig(interval_sec=0.0, max_iterations=iterations),
    )
    return bot, sink


def test_iteration_opens_position_on_signal(rising):
    feed = _Feed({"BTCUSDT": [rising(n=60)]})
    bot, sink = _bot(feed)
    bot.run_iteration()

    assert bot.lifecycles["BTCUSDT"].is_open
    assert "Position opened" in sink.titles(NotificationKind.TRADE)
    position = bot.lifecycles["BTCUSDT"].position
    assert position.stop_loss < position.entry_price < position.take_profit


def test_run_is_bounded_and_reports_open_positions(rising):
    feed = _Feed({"BTCUSDT": [rising(n=60)]})
    bot, sink = _bot(feed, iterations=3)
    assert bot.run() == 3
    assert feed.calls == ["BTCUSDT"] * 3

    kind, report = sink.events[-1]
    assert kind is NotificationKind.STATUS
    assert report["title"] == "Engine stopped"
    assert "unrealized" in report["open_BTCUSDT"]


def test_stop_before_run_does_nothing(rising):
    feed = _Feed({"BTCUSDT": [rising(n=60)]})
    bot, _ = _bot(feed, iterations=5)
    bot.stop()
    assert bot.run() == 0
    assert feed.calls == []


def test_stop_loss_exit_places_order_and_records_trade(rising):
    series = rising(n=60)
    feed = _Feed({"BTCUSDT": [series, _crash(series)]})
    account = PaperAccount(10_000.0)
    gateway = PaperOrderGateway(account)
    bot, sink = _bot(feed, account=account, gateway=gateway)

    bot.run_iteration()
    qty = bot.lifecycles["BTCUSDT"].position.quantity
    bot.run_iteration()

    entry = series.last.close
    trade = bot.trades[0]
    assert len(bot.trades) == 1
    assert trade.exit_reason is ExitReason.STOP_LOSS
    # the candle already closed 10% lower; the exit is booked where it can execute
    assert trade.exit_price == pytest.approx(entry * 0.9)
    assert trade.pnl == pytest.approx((entry * 0.9 - entry) * qty)
    assert "Position closed" in sink.titles(NotificationKind.TRADE)
    assert account.get_available_balance("USDT") == pytest.approx(10_000.0 + trade.pnl)
    assert bot.guard.consecutive_losses == 1


def test_wick_through_stop_closes_at_the_stop(rising):
    series = rising(n=60)
    feed = _Feed({"BTCUSDT": [series, _next(series, 1.0, 1.001, 0.95, 1.0005)]})
    account = PaperAccount(10_000.0)
    bot, _ = _bot(feed, account=account, gateway=PaperOrderGateway(account))

    bot.run_iteration()
    stop = bot.lifecycles["BTCUSDT"].position.stop_loss
    bot.run_iteration()

    trade = bot.trades[0]
    assert trade.exit_reason is ExitReason.STOP_LOSS
    assert trade.exit_price == pytest.approx(stop)
    assert trade.closed_at == series.last.timestamp + 60_000


def test_each_closed_candle_is_driven_once(rising):
    series = rising(n=60)
    feed = _Feed({"BTCUSDT": [series, _next(series, 1.0, 1.001, 0.999, 1.0005)]})
    bot, _ = _bot(feed)
    bot.run_iteration()

    lifecycle = bot.lifecycles["BTCUSDT"]
    driven = []
    on_candle = lifecycle.on_candle

    def counting(candle, market_price=None):
        driven.append(candle.timestamp)
        return on_candle(candle, market_price=market_price)

    lifecycle.on_candle = counting
    for _ in range(3):
        bot.run_iteration()

    assert driven == [series.last.timestamp + 60_000]
    assert lifecycle.is_open


def test_halt_blocks_entries_but_open_positions_are_still_managed(rising):
    btc = rising(n=60)
    eth = rising(n=60, instrument="ETHUSDT")
    later = btc.last.timestamp + 10 * 60_000
    fresh_btc = rising(n=60, end_ms=later)
    fresh_eth = rising(n=60, end_ms=later, instrument="ETHUSDT")
    feed = _Feed({
        "BTCUSDT": [btc, _crash(btc), _crash(btc), fresh_btc],
        "ETHUSDT": [eth, eth, _crash(eth), fresh_eth],
    })
    strategy = ICTStrategy(StrategyConfig(guard=GuardConfig(max_consecutive_losses=1)))
    account = PaperAccount(10_000.0)
    bot, _ = _bot(feed, account=account, gateway=PaperOrderGateway(account), strategy=strategy)

    bot.run_iteration()
    assert bot.lifecycles["BTCUSDT"].is_open and bot.lifecycles["ETHUSDT"].is_open

    bot.run_iteration()
    assert bot.guard.halted
    assert not bot.lifecycles["BTCUSDT"].is_open
    assert bot.lifecycles["ETHUSDT"].is_open

    bot.run_iteration()
    assert [t.instrument for t in bot.trades] == ["BTCUSDT", "ETHUSDT"]

    bot.run_iteration()
    assert strategy.evaluate(fresh_btc, 10_000.0, 0.01).signal is not None
    assert not bot.lifecycles["BTCUSDT"].is_open
    assert not bot.lifecycles["ETHUSDT"].is_open


def test_market_data_failure_is_isolated(rising):
    feed = _Feed({
        "BAD": [ConnectionError("unreachable")],
        "BTCUSDT": [rising(n=60)],
    })
    bot, sink = _bot(feed)
    bot.run_iteration()

    assert "Market data unavailable" in sink.titles(NotificationKind.ERROR)
    assert bot.lifecycles["BTCUSDT"].is_open
    assert not bot.lifecycles["BAD"].is_open


def test_missing_balance_skips_entries(rising):
    feed = _Feed({"BTCUSDT": [rising(n=60)]})
    gateway = PaperOrderGateway()
    bot, _ = _bot(feed, account=_NoBalance(), gateway=gateway)
    bot.run_iteration()
    assert not bot.lifecycles["BTCUSDT"].is_open
    assert gateway.get_fill("PAPER-1") is None


def test_rejected_entry_is_reported(rising):
    feed = _Feed({"BTCUSDT": [rising(n=60)]})
    account = PaperAccount(10_000.0)
    gateway = PaperOrderGateway(PaperAccount(1.0))
    bot, sink = _bot(feed, account=account, gateway=gateway)
    bot.run_iteration()
    assert not bot.lifecycles["BTCUSDT"].is_open
    assert "Entry rejected" in sink.titles(NotificationKind.ERROR)


def test_cli_backtest(tmp_path, monkeypatch, capsys, rising):
    monkeypatch.chdir(tmp_path)
    series = rising(n=40)
    lines = ["timestamp,open,high,low,close,volume"]
    lines += [f"{c.timestamp // 1000},{c.open},{c.high},{c.low},{c.close},{c.volume}" for c in series]
    (tmp_path / "btc.csv").write_text("\n".join(lines) + "\n")

    assert main.main(["backtest", "--csv", "btc.csv", "--instrument", "BTCUSDT"]) == 0
    assert "Trades:" in capsys.readouterr().out


def test_cli_reports_engine_errors(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "bad.csv").write_text("timestamp,open\n1,2\n")
    assert main.main(["backtest", "--csv", "bad.csv"]) == 1


def test_parser_requires_instruments():
    with pytest.raises(SystemExit):
        main.build_parser().parse_args(["live"])


class _Resp:
    status_code = 200
    text = "ok"


class _Session:
    def __init__(self):
        self.texts = []

    def post(self, url, json=None, timeout=None):
        self.texts.append(json["text"])
        return _Resp()


def test_live_run_delivers_shutdown_report(tmp_path, monkeypatch, rising):
    monkeypatch.chdir(tmp_path)
    session = _Session()
    notifier = TelegramNotifier("TOKEN", "42", min_interval=0.0, session=session)
    monkeypatch.setattr(main, "build_notifier", lambda: notifier)
    monkeypatch.setattr(main, "BinanceKlineProvider",
                        lambda: _Feed({"BTCUSDT": [rising(n=60)]}))
    monkeypatch.setattr(main.signal, "signal", lambda *args: None)

    argv = ["live", "--instruments", "BTCUSDT", "--max-iterations", "1", "--interval", "0"]
    assert main.main(argv) == 0
    assert any("Engine stopped" in text for text in session.texts)
    assert any("open_BTCUSDT" in text for text in session.texts)
