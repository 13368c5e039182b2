# ============================================================================
# order_manager.py
# ============================================================================
"""
Order Manager — Paper Execution
================================

PaperOrderGateway:
  - Fills every accepted order immediately at its limit price.
  - Keeps a net position per instrument (signed quantity, average price).
    Fills that reduce it realise P&L into the wired PaperAccount.
  - Orders that add exposure are rejected when their notional exceeds the
    free balance; reducing orders are never refused for balance.
  - get_fill() is idempotent; cancel_order() always returns False since
    nothing is ever left resting.

PaperAccount:
  - Single-asset balance.

THREAD SAFETY:
  - All public methods use RLock.
"""

import itertools
import logging
import threading
import time
from typing import Dict, Optional, Tuple

from interfaces import Fill, OrderAccepted, OrderRejected, OrderResult
from models import Side

logger = logging.getLogger(__name__)


class PaperAccount:

    def __init__(self, balance: float, asset: str = "USDT"):
        self.asset = asset
        self._balance = float(balance)
        self._lock = threading.RLock()
        logger.info(f"💰 Paper account: {self._balance:.2f} {asset}")

    def get_available_balance(self, asset: str) -> Optional[float]:
        with self._lock:
            if asset != self.asset:
                logger.warning(f"Paper account holds {self.asset}, asked for {asset}")
                return None
            return self._balance

    def apply_pnl(self, pnl: float) -> float:
        with self._lock:
            self._balance += pnl
            return self._balance


class PaperOrderGateway:

    def __init__(self, account: Optional[PaperAccount] = None):
        self.account = account
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self._fills: Dict[str, Fill] = {}
        self._positions: Dict[str, Tuple[float, float]] = {}  # instrument -> (signed qty, avg price)
        self.realized_pnl = 0.0

    def net_position(self, instrument: str) -> Tuple[float, float]:
        with self._lock:
            return self._positions.get(instrument, (0.0, 0.0))

    def place_order(self, instrument: str, side: Side, quantity: float,
                    limit_price: float) -> OrderResult:
        if quantity <= 0 or limit_price <= 0:
            return OrderRejected(instrument, f"invalid qty/price ({quantity} @ {limit_price})")

        with self._lock:
            net_qty, avg_price = self._positions.get(instrument, (0.0, 0.0))
            reduces = net_qty != 0 and (net_qty > 0) != (side is Side.BUY)

            if self.account is not None and not reduces:
                balance = self.account.get_available_balance(self.account.asset) or 0.0
                notional = quantity * limit_price
                if notional > balance:
                    return OrderRejected(
                        instrument, f"notional {notional:.2f} exceeds balance {balance:.2f}"
                    )

            order_id = f"PAPER-{next(self._ids)}"
            order = OrderAccepted(order_id, instrument, side, quantity, limit_price)
            self._fills[order_id] = Fill(order_id, limit_price, quantity, int(time.time() * 1000))
            self._apply_fill(instrument, side.sign * quantity, limit_price, net_qty, avg_price)

        logger.info(
            f"📝 Paper {side.value.upper()} {instrument} {quantity:.6f} @ {limit_price:.4f} "
            f"→ {order_id} FILLED"
        )
        return order

    def _apply_fill(self, instrument: str, signed_qty: float, price: float,
                    net_qty: float, avg_price: float) -> None:
        if net_qty == 0 or (net_qty > 0) == (signed_qty > 0):
            new_qty = net_qty + signed_qty
            new_avg = (abs(net_qty) * avg_price + abs(signed_qty) * price) / abs(new_qty)
            self._positions[instrument] = (new_qty, new_avg)
            return

        closed = min(abs(signed_qty), abs(net_qty))
        pnl = (price - avg_price) * closed * (1 if net_qty > 0 else -1)
        self.realized_pnl += pnl
        if self.account is not None:
            self.account.apply_pnl(pnl)

        remaining = net_qty + signed_qty
        if abs(remaining) <= abs(net_qty) * 1e-9:
            self._positions.pop(instrument, None)
        elif (remaining > 0) == (net_qty > 0):
            self._positions[instrument] = (remaining, avg_price)
        else:
            self._positions[instrument] = (remaining, price)  # flipped through zero

    def cancel_order(self, order_id: str) -> bool:
        # accepted paper orders are already filled; there is never anything to cancel
        return False

    def get_fill(self, order_id: str) -> Optional[Fill]:
        with self._lock:
            return self._fills.get(order_id)
