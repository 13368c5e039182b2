"""
Collaborator contracts for the live driver.

The core never imports an exchange SDK; the driver is handed objects that
satisfy these protocols (paper implementations live in order_manager.py,
data in data_manager.py, notifications in telegram_notifier.py).
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Protocol, Union

from models import CandleSeries, Side


class NotificationKind(Enum):
    TRADE  = "trade"
    ERROR  = "error"
    STATUS = "status"


@dataclass(frozen=True)
class OrderAccepted:
    order_id: str
    instrument: str
    side: Side
    quantity: float
    limit_price: float


@dataclass(frozen=True)
class OrderRejected:
    instrument: str
    reason: str


@dataclass(frozen=True)
class Fill:
    order_id: str
    price: float
    quantity: float
    timestamp: int


OrderResult = Union[OrderAccepted, OrderRejected]


class MarketDataProvider(Protocol):
    def get_candles(self, instrument: str, timeframe: str, lookback: int) -> CandleSeries:
        ...


class OrderGateway(Protocol):
    def place_order(self, instrument: str, side: Side, quantity: float,
                    limit_price: float) -> OrderResult:
        ...

    def cancel_order(self, order_id: str) -> bool:
        ...

    def get_fill(self, order_id: str) -> Optional[Fill]:
        ...


class AccountInfoProvider(Protocol):
    def get_available_balance(self, asset: str) -> Optional[float]:
        ...


class NotificationSink(Protocol):
    def notify(self, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        ...

