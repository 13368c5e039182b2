"""
ICT / SMC Strategy Pipeline
===========================
Analyzer → Scorer → RiskManager, shared by the backtester and the live bot.

  evaluate()       one instrument, synchronous and side-effect free
  evaluate_many()  independent instruments in parallel (thread pool);
                   position state is never touched here
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, Hashable, Mapping, Optional

import indicators
from config import StrategyConfig
from exceptions import DegenerateRiskError, RiskConfigError
from market_structure import MarketStructureAnalyzer
from models import CandleSeries, Signal, StructureSnapshot
from risk_manager import RiskManager
from sessions import session_context
from signal_scorer import SignalScorer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Evaluation:
    instrument: str
    snapshot: StructureSnapshot
    signal: Optional[Signal] = None      # sized and ready to open
    rejection: str = ""

    @property
    def actionable(self) -> bool:
        return self.signal is not None


class ICTStrategy:

    def __init__(
        self,
        config: Optional[StrategyConfig] = None,
        analyzer: Optional[MarketStructureAnalyzer] = None,
        scorer: Optional[SignalScorer] = None,
        risk_manager: Optional[RiskManager] = None,
    ):
        self.config = config or StrategyConfig()
        self.analyzer = analyzer or MarketStructureAnalyzer(self.config.analyzer)
        self.scorer = scorer or SignalScorer(self.config.scorer)
        self.risk_manager = risk_manager or RiskManager(self.config.risk)

    @property
    def min_window(self) -> int:
        return self.analyzer.config.min_window

    @property
    def window_size(self) -> int:
        return self.analyzer.config.window_size

    def evaluate(
        self,
        window: CandleSeries,
        account_balance: float,
        risk_fraction: float,
        cache_key: Optional[Hashable] = None,
    ) -> Evaluation:
        instrument = window.instrument
        candles = window.to_list()
        if not candles:
            return Evaluation(instrument, StructureSnapshot.neutral(), rejection="no candles")

        snapshot = self.analyzer.analyze(candles, cache_key)
        if not snapshot.sufficient_data:
            return Evaluation(instrument, snapshot, rejection="insufficient history")

        last = candles[-1]
        cfg = self.scorer.config
        candidate = self.scorer.score(
            snapshot,
            session_context(last.timestamp),
            indicators.volume_ratio(candles, cfg.volume_period),
            indicators.trend_context(candles, cfg.sma_fast, cfg.sma_slow),
            price=last.close,
            timestamp=last.timestamp,
            instrument=instrument,
        )
        if candidate is None:
            return Evaluation(instrument, snapshot, rejection="no qualifying signal")

        try:
            plan = self.risk_manager.size(candidate, account_balance, risk_fraction,
                                          candles, snapshot)
        except DegenerateRiskError as e:
            logger.warning(f"⚠️ {instrument} signal rejected: {e}")
            return Evaluation(instrument, snapshot, rejection=f"degenerate risk: {e}")
        except RiskConfigError as e:
            logger.warning(f"⚠️ {instrument} cannot afford entry: {e}")
            return Evaluation(instrument, snapshot, rejection=f"cannot afford: {e}")

        if plan.position_size <= 0:
            return Evaluation(instrument, snapshot, rejection="position size rounds to zero")
        return Evaluation(instrument, snapshot, signal=candidate.with_risk(plan))

    def evaluate_many(
        self,
        windows: Mapping[str, CandleSeries],
        account_balance: float,
        risk_fraction: float,
        max_workers: int = 4,
    ) -> Dict[str, Evaluation]:
        if not windows:
            return {}
        workers = max(1, min(max_workers, len(windows)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="scan") as pool:
            futures = {
                instrument: pool.submit(self.evaluate, window, account_balance, risk_fraction)
                for instrument, window in windows.items()
            }
            results: Dict[str, Evaluation] = {}
            for instrument, future in futures.items():
                try:
                    results[instrument] = future.result()
                except Exception:
                    logger.exception(f"❌ {instrument} evaluation failed")
            return results
