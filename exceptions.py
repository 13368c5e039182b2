"""
Engine exceptions.

Core components raise; only the live driver's loop catches and reports.
"""


class TradingEngineError(Exception):
    """Base class for every error raised by the engine."""


class ConfigError(TradingEngineError):
    """A config struct holds an unusable value."""


class MalformedCandleError(TradingEngineError, ValueError):
    """Candle violates high >= low, OHLC bounds, or timestamp ordering."""


class DegenerateRiskError(TradingEngineError):
    """Stop distance collapsed to zero; sizing would divide by zero."""


class RiskConfigError(TradingEngineError):
    """Balance or risk fraction cannot produce a position."""


class PositionInvariantError(TradingEngineError):
    """A lifecycle invariant would be broken (second open, wrong-side stop, ...)."""


class MarketDataError(TradingEngineError):
    """Candle source returned nothing usable."""
