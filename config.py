"""
config.py — Single source of truth for all engine parameters.
Naming: UPPER_SNAKE_CASE defaults, bundled into frozen config structs that
are passed explicitly to every component. Nothing here is mutated at runtime.
"""

import os
from dataclasses import dataclass, field
from typing import Tuple

from dotenv import load_dotenv

from exceptions import ConfigError

load_dotenv()

# ─────────────────────────────────────────────
# CREDENTIALS / ENVIRONMENT
# ─────────────────────────────────────────────
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN")
TELEGRAM_CHAT_ID   = os.getenv("TELEGRAM_CHAT_ID")
LOG_LEVEL          = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE           = os.getenv("LOG_FILE", "ict_engine.log")
ACCOUNT_ASSET      = os.getenv("ACCOUNT_ASSET", "USDT")

# ─────────────────────────────────────────────
# MARKET STRUCTURE ANALYZER
# ─────────────────────────────────────────────
MIN_STRUCTURE_CANDLES   = 20      # below this → neutral snapshot
STRUCTURE_WINDOW        = 200     # trailing candles examined per analysis
SWING_HALF_WINDOW       = 2       # k candles each side for a swing extreme
TREND_FALLBACK_LOOKBACK = 10      # price-action count when swings are scarce
TREND_STRENGTH_LOOKBACK = 20
STRONG_TREND_PCT        = 5.0     # % close change → strong
MODERATE_TREND_PCT      = 2.0     # % close change → moderate
VOLATILITY_LOOKBACK     = 20
HIGH_VOLATILITY_PCT     = 3.0     # mean |return| in %
MEDIUM_VOLATILITY_PCT   = 1.5
MOMENTUM_LOOKBACK       = 5
SR_LEVELS               = 5
SR_CLUSTER_PCT          = 2.0     # swing levels closer than this (%) merge into one

VOLUME_PROFILE_MIN_CANDLES = 20
HIGH_VOLUME_NODE_MULT      = 1.5  # × window average volume
LOW_VOLUME_NODE_MULT       = 0.5
VALUE_AREA_FRACTION        = 0.70

CYCLE_LOOKBACK = 50

OB_BODY_RATIO_MIN    = 0.70
OB_VOLUME_PERIOD     = 20
OB_VOLUME_RATIO_CAP  = 2.0        # volume ratio at which the volume term saturates
OB_LOOKBACK          = 20
MAX_ORDER_BLOCKS     = 5

FVG_MIN_SIZE_PCT = 0.001          # 0.1 % of price
FVG_LOOKBACK     = 30
MAX_FVGS         = 5

SWEEP_REFERENCE_CANDLES = 10
SWEEP_SCAN_CANDLES      = 20

BREAK_SCAN_CANDLES      = 30
BREAK_REFERENCE_CANDLES = 5
BREAK_VOLUME_MULT       = 1.2
MAX_STRUCTURE_BREAKS    = 2

SNAPSHOT_CACHE_SIZE = 256

# ─────────────────────────────────────────────
# SIGNAL SCORING
# ─────────────────────────────────────────────
CONFIDENCE_BASE          = 0.5
KILLZONE_BONUS           = 0.35
SESSION_OVERLAP_BONUS    = 0.40
STRUCTURE_WEIGHT         = 0.6
VOLUME_WEIGHT            = 0.4
TREND_WEIGHT             = 0.35
PATTERN_BONUS            = 0.25   # per order block / FVG
PATTERN_BONUS_CAP        = 0.25
QUALITY_MULTIPLIER       = 0.5
MAX_CONFIDENCE           = 0.98

CONFLUENCE_STRUCTURE_WEIGHT = 0.4
CONFLUENCE_KILLZONE_WEIGHT  = 0.2
CONFLUENCE_SESSION_WEIGHT   = 0.15
CONFLUENCE_VOLUME_WEIGHT    = 0.15
CONFLUENCE_TREND_WEIGHT     = 0.1

MIN_CONFIDENCE = 0.65
MIN_CONFLUENCE = 0.60

VOLUME_CONFIRM_MOMENTUM = 0.6     # volume confirmation needed for a momentum vote
VOLUME_AVERAGE_PERIOD   = 20
SMA_FAST                = 20
SMA_SLOW                = 50

# ─────────────────────────────────────────────
# RISK
# ─────────────────────────────────────────────
RISK_FRACTION              = float(os.getenv("RISK_FRACTION", "0.01"))
FIXED_STOP_PCT             = 0.015
ATR_PERIOD                 = 14
ATR_STOP_MULTIPLIER        = 1.5
REWARD_MULTIPLE            = 3.0
MIN_REWARD_MULTIPLE        = 2.0
STRONG_STRUCTURE_SCORE     = 0.8
STRONG_STRUCTURE_TP_MULT   = 1.2
MAX_POSITION_FRACTION      = 0.10  # notional cap as a fraction of balance
PARTIALS_ENABLED           = True
PARTIAL_LEVELS             = (0.3, 0.6, 1.0, 1.5)

# ─────────────────────────────────────────────
# POSITION LIFECYCLE
# ─────────────────────────────────────────────
MAX_HOLD_MS             = 24 * 60 * 60 * 1000
TRAILING_ENABLED        = True
TRAILING_ACTIVATION_R   = 1.0
TRAILING_DISTANCE_PCT   = 0.003

# ─────────────────────────────────────────────
# TRADING GUARD
# ─────────────────────────────────────────────
MAX_CONSECUTIVE_LOSSES = 3
MAX_DAILY_LOSS_PCT     = 2.0      # % of day-start balance
MAX_DAILY_TRADES       = 100

# ─────────────────────────────────────────────
# LIVE DRIVER
# ─────────────────────────────────────────────
LOOP_INTERVAL_SEC   = 60.0
MAX_ITERATIONS      = 100
TIMEFRAME           = "5m"
LOOKBACK_CANDLES    = 200
SCAN_WORKERS        = 4
PAPER_BALANCE       = 10_000.0

# ─────────────────────────────────────────────
# DATA / NETWORK
# ─────────────────────────────────────────────
BINANCE_REST_URL        = "https://api.binance.com"
REST_TIMEOUT_SEC        = 10.0
REST_MAX_ATTEMPTS       = 3
BREAKER_FAILURE_LIMIT   = 5
BREAKER_RESET_SEC       = 60.0

# ─────────────────────────────────────────────
# TELEGRAM
# ─────────────────────────────────────────────
TELEGRAM_MIN_SEND_INTERVAL = 1.5
TELEGRAM_QUEUE_SIZE        = 100


# ============================================================================
# CONFIG STRUCTS
# ============================================================================

@dataclass(frozen=True)
class AnalyzerConfig:
    min_window: int = MIN_STRUCTURE_CANDLES
    window_size: int = STRUCTURE_WINDOW
    swing_half_window: int = SWING_HALF_WINDOW
    trend_fallback_lookback: int = TREND_FALLBACK_LOOKBACK
    trend_strength_lookback: int = TREND_STRENGTH_LOOKBACK
    strong_trend_pct: float = STRONG_TREND_PCT
    moderate_trend_pct: float = MODERATE_TREND_PCT
    volatility_lookback: int = VOLATILITY_LOOKBACK
    high_volatility_pct: float = HIGH_VOLATILITY_PCT
    medium_volatility_pct: float = MEDIUM_VOLATILITY_PCT
    momentum_lookback: int = MOMENTUM_LOOKBACK
    sr_levels: int = SR_LEVELS
    sr_cluster_pct: float = SR_CLUSTER_PCT
    volume_profile_min_candles: int = VOLUME_PROFILE_MIN_CANDLES
    high_volume_node_mult: float = HIGH_VOLUME_NODE_MULT
    low_volume_node_mult: float = LOW_VOLUME_NODE_MULT
    value_area_fraction: float = VALUE_AREA_FRACTION
    cycle_lookback: int = CYCLE_LOOKBACK
    ob_body_ratio_min: float = OB_BODY_RATIO_MIN
    ob_volume_period: int = OB_VOLUME_PERIOD
    ob_volume_ratio_cap: float = OB_VOLUME_RATIO_CAP
    ob_lookback: int = OB_LOOKBACK
    max_order_blocks: int = MAX_ORDER_BLOCKS
    fvg_min_size_pct: float = FVG_MIN_SIZE_PCT
    fvg_lookback: int = FVG_LOOKBACK
    max_fvgs: int = MAX_FVGS
    sweep_reference_candles: int = SWEEP_REFERENCE_CANDLES
    sweep_scan_candles: int = SWEEP_SCAN_CANDLES
    break_scan_candles: int = BREAK_SCAN_CANDLES
    break_reference_candles: int = BREAK_REFERENCE_CANDLES
    break_volume_mult: float = BREAK_VOLUME_MULT
    max_structure_breaks: int = MAX_STRUCTURE_BREAKS
    cache_size: int = SNAPSHOT_CACHE_SIZE

    def validate(self) -> None:
        if self.swing_half_window < 1:
            raise ConfigError(f"swing_half_window must be >= 1, got {self.swing_half_window}")
        if self.min_window < 2 * self.swing_half_window + 1:
            raise ConfigError("min_window must fit at least one swing window")
        if self.window_size < self.min_window:
            raise ConfigError("window_size must be >= min_window")
        if not 0 < self.ob_body_ratio_min <= 1:
            raise ConfigError("ob_body_ratio_min must be in (0, 1]")
        if self.fvg_min_size_pct < 0:
            raise ConfigError("fvg_min_size_pct must be >= 0")
        if self.cache_size < 1:
            raise ConfigError("cache_size must be >= 1")
        if self.sr_cluster_pct < 0:
            raise ConfigError("sr_cluster_pct must be >= 0")
        if not 0 < self.value_area_fraction <= 1:
            raise ConfigError("value_area_fraction must be in (0, 1]")
        if self.volume_profile_min_candles < 1:
            raise ConfigError("volume_profile_min_candles must be >= 1")


@dataclass(frozen=True)
class ScorerConfig:
    base: float = CONFIDENCE_BASE
    killzone_bonus: float = KILLZONE_BONUS
    overlap_bonus: float = SESSION_OVERLAP_BONUS
    structure_weight: float = STRUCTURE_WEIGHT
    volume_weight: float = VOLUME_WEIGHT
    trend_weight: float = TREND_WEIGHT
    pattern_bonus: float = PATTERN_BONUS
    pattern_bonus_cap: float = PATTERN_BONUS_CAP
    quality_multiplier: float = QUALITY_MULTIPLIER
    max_confidence: float = MAX_CONFIDENCE
    confluence_structure_weight: float = CONFLUENCE_STRUCTURE_WEIGHT
    confluence_killzone_weight: float = CONFLUENCE_KILLZONE_WEIGHT
    confluence_session_weight: float = CONFLUENCE_SESSION_WEIGHT
    confluence_volume_weight: float = CONFLUENCE_VOLUME_WEIGHT
    confluence_trend_weight: float = CONFLUENCE_TREND_WEIGHT
    min_confidence: float = MIN_CONFIDENCE
    min_confluence: float = MIN_CONFLUENCE
    momentum_volume_confirmation: float = VOLUME_CONFIRM_MOMENTUM
    volume_period: int = VOLUME_AVERAGE_PERIOD
    sma_fast: int = SMA_FAST
    sma_slow: int = SMA_SLOW

    def validate(self) -> None:
        if self.sma_fast >= self.sma_slow:
            raise ConfigError("sma_fast must be shorter than sma_slow")
        if not 0 <= self.min_confidence <= 1:
            raise ConfigError("min_confidence must be in [0, 1]")
        if not 0 <= self.min_confluence <= 1:
            raise ConfigError("min_confluence must be in [0, 1]")
        if not 0 < self.max_confidence <= 1:
            raise ConfigError("max_confidence must be in (0, 1]")
        if self.quality_multiplier <= 0:
            raise ConfigError("quality_multiplier must be > 0")


@dataclass(frozen=True)
class RiskConfig:
    fixed_stop_pct: float = FIXED_STOP_PCT
    atr_period: int = ATR_PERIOD
    atr_multiplier: float = ATR_STOP_MULTIPLIER
    reward_multiple: float = REWARD_MULTIPLE
    min_reward_multiple: float = MIN_REWARD_MULTIPLE
    strong_structure_score: float = STRONG_STRUCTURE_SCORE
    strong_structure_multiplier: float = STRONG_STRUCTURE_TP_MULT
    max_position_fraction: float = MAX_POSITION_FRACTION
    partials_enabled: bool = PARTIALS_ENABLED
    partial_levels: Tuple[float, ...] = PARTIAL_LEVELS

    def validate(self) -> None:
        if self.fixed_stop_pct <= 0:
            raise ConfigError("fixed_stop_pct must be > 0")
        if self.reward_multiple < self.min_reward_multiple:
            raise ConfigError(
                f"reward_multiple {self.reward_multiple} below minimum "
                f"{self.min_reward_multiple}"
            )
        if not 0 < self.max_position_fraction <= 1:
            raise ConfigError("max_position_fraction must be in (0, 1]")
        if any(level <= 0 for level in self.partial_levels):
            raise ConfigError("partial_levels must all be > 0")


@dataclass(frozen=True)
class LifecycleConfig:
    max_hold_ms: int = MAX_HOLD_MS
    trailing_enabled: bool = TRAILING_ENABLED
    trailing_activation_r: float = TRAILING_ACTIVATION_R
    trailing_distance_pct: float = TRAILING_DISTANCE_PCT

    def validate(self) -> None:
        if self.max_hold_ms <= 0:
            raise ConfigError("max_hold_ms must be > 0")
        if not 0 < self.trailing_distance_pct < 1:
            raise ConfigError("trailing_distance_pct must be in (0, 1)")


@dataclass(frozen=True)
class GuardConfig:
    max_consecutive_losses: int = MAX_CONSECUTIVE_LOSSES
    max_daily_loss_pct: float = MAX_DAILY_LOSS_PCT
    max_daily_trades: int = MAX_DAILY_TRADES

    def validate(self) -> None:
        if self.max_consecutive_losses < 1:
            raise ConfigError("max_consecutive_losses must be >= 1")
        if self.max_daily_loss_pct <= 0:
            raise ConfigError("max_daily_loss_pct must be > 0")


@dataclass(frozen=True)
class BotConfig:
    interval_sec: float = LOOP_INTERVAL_SEC
    max_iterations: int = MAX_ITERATIONS
    timeframe: str = TIMEFRAME
    lookback: int = LOOKBACK_CANDLES
    risk_fraction: float = RISK_FRACTION
    account_asset: str = ACCOUNT_ASSET
    workers: int = SCAN_WORKERS

    def validate(self) -> None:
        if self.max_iterations < 1:
            raise ConfigError("max_iterations must be >= 1")
        if self.interval_sec < 0:
            raise ConfigError("interval_sec must be >= 0")
        if not 0 < self.risk_fraction < 1:
            raise ConfigError("risk_fraction must be in (0, 1)")


@dataclass(frozen=True)
class StrategyConfig:
    analyzer: AnalyzerConfig = field(default_factory=AnalyzerConfig)
    scorer: ScorerConfig = field(default_factory=ScorerConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    guard: GuardConfig = field(default_factory=GuardConfig)
    bot: BotConfig = field(default_factory=BotConfig)

    def validate(self) -> "StrategyConfig":
        for part in (self.analyzer, self.scorer, self.risk,
                     self.lifecycle, self.guard, self.bot):
            part.validate()
        return self

    @classmethod
    def from_env(cls) -> "StrategyConfig":
        """Build a validated bundle, letting the environment override the knobs
        operators actually tune."""
        risk_fraction = float(os.getenv("RISK_FRACTION", str(RISK_FRACTION)))
        bot = BotConfig(
            interval_sec=float(os.getenv("LOOP_INTERVAL_SEC", str(LOOP_INTERVAL_SEC))),
            max_iterations=int(os.getenv("MAX_ITERATIONS", str(MAX_ITERATIONS))),
            timeframe=os.getenv("TIMEFRAME", TIMEFRAME),
            risk_fraction=risk_fraction,
            account_asset=os.getenv("ACCOUNT_ASSET", ACCOUNT_ASSET),
        )
        scorer = ScorerConfig(
            min_confidence=float(os.getenv("MIN_CONFIDENCE", str(MIN_CONFIDENCE))),
            min_confluence=float(os.getenv("MIN_CONFLUENCE", str(MIN_CONFLUENCE))),
        )
        return cls(scorer=scorer, bot=bot).validate()
