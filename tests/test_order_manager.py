import pytest

from interfaces import OrderAccepted, OrderRejected
from models import Side
from order_manager import PaperAccount, PaperOrderGateway


def test_round_trip_realises_pnl_into_account():
    account = PaperAccount(1_000.0)
    gateway = PaperOrderGateway(account)

    entry = gateway.place_order("BTCUSDT", Side.BUY, 5.0, 100.0)
    assert isinstance(entry, OrderAccepted)
    fill = gateway.get_fill(entry.order_id)
    assert (fill.price, fill.quantity) == (100.0, 5.0)
    assert gateway.net_position("BTCUSDT") == (5.0, 100.0)

    gateway.place_order("BTCUSDT", Side.SELL, 2.0, 110.0)
    assert account.get_available_balance("USDT") == pytest.approx(1_020.0)
    gateway.place_order("BTCUSDT", Side.SELL, 3.0, 90.0)
    assert account.get_available_balance("USDT") == pytest.approx(990.0)
    assert gateway.realized_pnl == pytest.approx(-10.0)
    assert gateway.net_position("BTCUSDT") == (0.0, 0.0)


def test_short_round_trip():
    account = PaperAccount(1_000.0)
    gateway = PaperOrderGateway(account)
    gateway.place_order("ETHUSDT", Side.SELL, 1.0, 200.0)
    assert gateway.net_position("ETHUSDT") == (-1.0, 200.0)
    gateway.place_order("ETHUSDT", Side.BUY, 1.0, 190.0)
    assert account.get_available_balance("USDT") == pytest.approx(1_010.0)


def test_exposure_beyond_balance_is_rejected_but_exits_are_not():
    account = PaperAccount(1_000.0)
    gateway = PaperOrderGateway(account)
    rejected = gateway.place_order("BTCUSDT", Side.BUY, 20.0, 100.0)
    assert isinstance(rejected, OrderRejected)
    assert "exceeds balance" in rejected.reason

    gateway.place_order("BTCUSDT", Side.BUY, 9.0, 100.0)
    account.apply_pnl(-950.0)
    assert isinstance(gateway.place_order("BTCUSDT", Side.SELL, 9.0, 100.0), OrderAccepted)


@pytest.mark.parametrize("qty, price", [(0.0, 100.0), (-1.0, 100.0), (1.0, 0.0)])
def test_invalid_orders_rejected(qty, price):
    assert isinstance(PaperOrderGateway().place_order("BTCUSDT", Side.BUY, qty, price),
                      OrderRejected)


def test_cancel_and_fill_lookup():
    gateway = PaperOrderGateway()
    order = gateway.place_order("BTCUSDT", Side.BUY, 1.0, 100.0)
    assert gateway.cancel_order(order.order_id) is False      # already filled
    assert gateway.cancel_order("PAPER-999") is False
    assert gateway.get_fill("PAPER-999") is None
    assert gateway.get_fill(order.order_id) == gateway.get_fill(order.order_id)


def test_account_only_reports_its_asset():
    account = PaperAccount(500.0, asset="USDC")
    assert account.get_available_balance("USDC") == 500.0
    assert account.get_available_balance("USDT") is None
