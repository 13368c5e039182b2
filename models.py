"""
Typed Records
=============
Candles, the append-only candle series, structure patterns, snapshots,
signals and closed trades. Everything except CandleSeries is immutable.
"""

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Iterator, List, Optional, Sequence, Tuple, Union

from exceptions import MalformedCandleError


# ============================================================================
# ENUMS
# ============================================================================

class Side(Enum):
    BUY  = "buy"
    SELL = "sell"

    @property
    def sign(self) -> int:
        return 1 if self is Side.BUY else -1

    @property
    def opposite(self) -> "Side":
        return Side.SELL if self is Side.BUY else Side.BUY


class Trend(Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    RANGING = "ranging"


class TrendStrength(Enum):
    STRONG   = "strong"
    MODERATE = "moderate"
    WEAK     = "weak"


class Volatility(Enum):
    HIGH   = "high"
    MEDIUM = "medium"
    LOW    = "low"


class Phase(Enum):
    ACCUMULATION = "accumulation"
    MARKUP       = "markup"
    DISTRIBUTION = "distribution"
    MARKDOWN     = "markdown"


class PatternSide(Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"


class PatternKind(Enum):
    ORDER_BLOCK     = "order_block"
    FAIR_VALUE_GAP  = "fair_value_gap"
    LIQUIDITY_SWEEP = "liquidity_sweep"
    STRUCTURE_BREAK = "structure_break"


class BreakType(Enum):
    BOS   = "bos"     # break of structure, with the trend
    CHOCH = "choch"   # change of character, against it


class ExitReason(Enum):
    STOP_LOSS         = "stop_loss"
    TAKE_PROFIT       = "take_profit"
    MAX_HOLD          = "max_hold"
    PARTIALS_COMPLETE = "partials_complete"
    END_OF_DATA       = "end_of_data"
    MANUAL            = "manual"


# ============================================================================
# CANDLES
# ============================================================================

@dataclass(frozen=True)
class Candle:
    timestamp: int  # ms since epoch, UTC
    open: float
    high: float
    low: float
    close: float
    volume: float

    def is_bullish(self) -> bool:
        return self.close > self.open

    def is_bearish(self) -> bool:
        return self.close < self.open

    def body_size(self) -> float:
        return abs(self.close - self.open)

    def total_range(self) -> float:
        return self.high - self.low

    def upper_wick(self) -> float:
        return self.high - max(self.open, self.close)

    def lower_wick(self) -> float:
        return min(self.open, self.close) - self.low

    def body_ratio(self) -> float:
        r = self.total_range()
        return (self.body_size() / r) if r > 0 else 0.0

    def validate(self) -> None:
        values = (self.open, self.high, self.low, self.close, self.volume)
        if not all(math.isfinite(v) for v in values):
            raise MalformedCandleError(f"Non-finite value in candle @ {self.timestamp}")
        if self.high < self.low:
            raise MalformedCandleError(
                f"Candle @ {self.timestamp}: high {self.high} < low {self.low}"
            )
        for name, price in (("open", self.open), ("close", self.close)):
            if not self.low <= price <= self.high:
                raise MalformedCandleError(
                    f"Candle @ {self.timestamp}: {name} {price} outside "
                    f"[{self.low}, {self.high}]"
                )
        if self.volume < 0:
            raise MalformedCandleError(f"Candle @ {self.timestamp}: negative volume")


class CandleSeries:
    """
    Append-only, timestamp-ordered candles for one instrument/timeframe.

    Every candle is validated on the way in, so downstream analysis never
    sees a malformed bar. Slicing returns a new series sharing nothing
    mutable with this one.
    """

    def __init__(
        self,
        instrument: str = "",
        timeframe: str = "",
        candles: Optional[Sequence[Candle]] = None,
    ):
        self.instrument = instrument
        self.timeframe = timeframe
        self._candles: List[Candle] = []
        for candle in candles or ():
            self.append(candle)

    @classmethod
    def _trusted(cls, instrument: str, timeframe: str,
                 candles: List[Candle]) -> "CandleSeries":
        series = cls.__new__(cls)
        series.instrument = instrument
        series.timeframe = timeframe
        series._candles = candles
        return series

    def append(self, candle: Candle) -> None:
        candle.validate()
        if self._candles and candle.timestamp <= self._candles[-1].timestamp:
            raise MalformedCandleError(
                f"Non-increasing timestamp {candle.timestamp} after "
                f"{self._candles[-1].timestamp} ({self.instrument or 'series'})"
            )
        self._candles.append(candle)

    def __len__(self) -> int:
        return len(self._candles)

    def __iter__(self) -> Iterator[Candle]:
        return iter(self._candles)

    def __getitem__(self, item: Union[int, slice]):
        if isinstance(item, slice):
            return CandleSeries._trusted(
                self.instrument, self.timeframe, self._candles[item]
            )
        return self._candles[item]

    @property
    def last(self) -> Optional[Candle]:
        return self._candles[-1] if self._candles else None

    def to_list(self) -> List[Candle]:
        return list(self._candles)

    def window(self, end_index: int, size: int) -> "CandleSeries":
        """Trailing window of at most `size` candles ending at `end_index` (inclusive)."""
        start = max(0, end_index - size + 1)
        return self[start:end_index + 1]

    def __repr__(self) -> str:
        return (f"CandleSeries({self.instrument!r}, {self.timeframe!r}, "
                f"{len(self._candles)} candles)")


# ============================================================================
# STRUCTURE PATTERNS
# ============================================================================

@dataclass(frozen=True)
class SwingPoint:
    index: int
    price: float
    is_high: bool
    timestamp: int


@dataclass(frozen=True)
class OrderBlock:
    side: PatternSide
    price: float
    high: float
    low: float
    strength: float
    age: int
    body_ratio: float
    volume_ratio: float
    timestamp: int
    kind: PatternKind = field(default=PatternKind.ORDER_BLOCK, init=False)


@dataclass(frozen=True)
class FairValueGap:
    side: PatternSide
    start: float    # lower bound
    end: float      # upper bound
    strength: float
    filled: bool
    fill_fraction: float
    age: int
    timestamp: int
    kind: PatternKind = field(default=PatternKind.FAIR_VALUE_GAP, init=False)

    @property
    def size(self) -> float:
        return self.end - self.start


@dataclass(frozen=True)
class LiquidityLevel:
    price: float
    level_type: str   # "high" | "low"
    swept: bool


@dataclass(frozen=True)
class LiquiditySweep:
    side: PatternSide
    price: float       # the liquidity level that was taken
    age: int
    timestamp: int
    kind: PatternKind = field(default=PatternKind.LIQUIDITY_SWEEP, init=False)


@dataclass(frozen=True)
class StructureBreak:
    side: PatternSide
    price: float
    break_type: BreakType
    age: int
    timestamp: int
    kind: PatternKind = field(default=PatternKind.STRUCTURE_BREAK, init=False)


Pattern = Union[OrderBlock, FairValueGap, LiquiditySweep, StructureBreak]


@dataclass(frozen=True)
class VolumeProfile:
    high_volume_nodes: Tuple[float, ...] = ()   # closes of unusually heavy candles
    low_volume_nodes: Tuple[float, ...] = ()
    value_area_low: float = 0.0
    value_area_high: float = 0.0


@dataclass(frozen=True)
class MarketCycle:
    current: Trend = Trend.RANGING
    duration: int = 0      # trailing candles the current trend has held
    strength: int = 0      # 1 weak, 2 moderate, 3 strong; 0 when undetermined


@dataclass(frozen=True)
class StructureSnapshot:
    trend: Trend
    strength: TrendStrength
    volatility: Volatility
    phase: Phase
    support_levels: Tuple[float, ...] = ()        # highest first
    resistance_levels: Tuple[float, ...] = ()
    key_levels: Tuple[float, ...] = ()
    volume_profile: VolumeProfile = field(default_factory=VolumeProfile)
    cycle: MarketCycle = field(default_factory=MarketCycle)
    order_blocks: Tuple[OrderBlock, ...] = ()
    fair_value_gaps: Tuple[FairValueGap, ...] = ()
    liquidity_levels: Tuple[LiquidityLevel, ...] = ()
    liquidity_sweeps: Tuple[LiquiditySweep, ...] = ()
    structure_breaks: Tuple[StructureBreak, ...] = ()
    momentum: Trend = Trend.RANGING
    structure_score: float = 0.0
    sufficient_data: bool = True
    window_end: Optional[int] = None

    @classmethod
    def neutral(cls, window_end: Optional[int] = None) -> "StructureSnapshot":
        return cls(
            trend=Trend.RANGING,
            strength=TrendStrength.WEAK,
            volatility=Volatility.MEDIUM,
            phase=Phase.ACCUMULATION,
            sufficient_data=False,
            window_end=window_end,
        )

    @property
    def patterns(self) -> Tuple[Pattern, ...]:
        return (self.order_blocks + self.fair_value_gaps
                + self.liquidity_sweeps + self.structure_breaks)


# ============================================================================
# CONTEXT
# ============================================================================

@dataclass(frozen=True)
class SessionContext:
    killzone: Optional[str]
    session: Optional[str]
    overlap: bool = False

    @property
    def in_killzone(self) -> bool:
        return self.killzone is not None

    @property
    def in_session(self) -> bool:
        return self.session is not None


@dataclass(frozen=True)
class TrendContext:
    direction: Trend
    alignment: float           # [0, 1]
    sma_fast: Optional[float] = None
    sma_slow: Optional[float] = None


# ============================================================================
# SIGNALS / RISK
# ============================================================================

@dataclass(frozen=True)
class PartialLevel:
    r_multiple: float
    price: float
    percentage: float   # of the original quantity


@dataclass(frozen=True)
class RiskPlan:
    stop_loss: float
    take_profit: float
    position_size: float
    stop_distance: float
    partials: Tuple[PartialLevel, ...] = ()


@dataclass(frozen=True)
class Signal:
    instrument: str
    side: Side
    price: float
    confidence: float
    confluence: float
    timestamp: int
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    position_size: float = 0.0
    partials: Tuple[PartialLevel, ...] = ()
    reasons: Tuple[str, ...] = ()

    @property
    def is_sized(self) -> bool:
        return (self.stop_loss is not None and self.take_profit is not None
                and self.position_size > 0)

    def with_risk(self, plan: RiskPlan) -> "Signal":
        return replace(
            self,
            stop_loss=plan.stop_loss,
            take_profit=plan.take_profit,
            position_size=plan.position_size,
            partials=plan.partials,
        )

    def with_fill(self, price: float, quantity: float) -> "Signal":
        """Re-anchor a sized signal on an actual fill, keeping the stop/target levels."""
        return replace(self, price=price, position_size=quantity)


# ============================================================================
# TRADES
# ============================================================================

@dataclass(frozen=True)
class Trade:
    instrument: str
    side: Side
    entry_price: float
    exit_price: float
    quantity: float
    pnl: float               # partial legs + final leg
    exit_reason: ExitReason
    opened_at: int
    closed_at: int
    partial_pnl: float = 0.0

    @property
    def is_win(self) -> bool:
        return self.pnl > 0

    @property
    def holding_ms(self) -> int:
        return self.closed_at - self.opened_at
