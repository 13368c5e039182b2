"""
Performance Statistics
======================
Honest aggregation of a closed-trade list. The same trades and starting
balance always produce the same BacktestStats; nothing else feeds in.
"""

from dataclasses import dataclass
from typing import Sequence, Tuple

import numpy as np

from models import Trade


@dataclass(frozen=True)
class BacktestStats:
    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: float              # fraction, 0..1
    profit_factor: float         # inf when there are wins and no losses
    max_drawdown: float          # absolute, account currency
    max_drawdown_pct: float      # fraction of the equity peak
    sharpe_like: float           # mean / pstdev of per-trade returns, not annualised
    sortino_like: float
    net_profit: float
    gross_profit: float
    gross_loss: float
    average_win: float
    average_loss: float
    largest_win: float
    largest_loss: float
    max_consecutive_wins: int
    max_consecutive_losses: int
    initial_balance: float
    final_balance: float
    total_return: float          # fraction of initial balance
    equity_curve: Tuple[float, ...]
    trades: Tuple[Trade, ...]

    def summary(self) -> str:
        pf = "inf" if self.profit_factor == float("inf") else f"{self.profit_factor:.2f}"
        return (
            f"Trades: {self.total_trades} (W {self.winning_trades} / L {self.losing_trades}) | "
            f"Win rate: {self.win_rate * 100:.1f}% | PF: {pf} | "
            f"Net: ${self.net_profit:+.2f} ({self.total_return * 100:+.2f}%) | "
            f"Max DD: ${self.max_drawdown:.2f} ({self.max_drawdown_pct * 100:.2f}%) | "
            f"Sharpe: {self.sharpe_like:.3f}"
        )


def _streaks(pnls: Sequence[float]) -> Tuple[int, int]:
    best_win = best_loss = cur_win = cur_loss = 0
    for pnl in pnls:
        if pnl > 0:
            cur_win += 1
            cur_loss = 0
        elif pnl < 0:
            cur_loss += 1
            cur_win = 0
        else:
            cur_win = cur_loss = 0
        best_win = max(best_win, cur_win)
        best_loss = max(best_loss, cur_loss)
    return best_win, best_loss


def compute_stats(trades: Sequence[Trade], initial_balance: float) -> BacktestStats:
    trades = tuple(trades)
    pnls = np.array([t.pnl for t in trades], dtype=float)
    wins = pnls[pnls > 0]
    losses = pnls[pnls < 0]

    gross_profit = float(wins.sum()) if wins.size else 0.0
    gross_loss = float(-losses.sum()) if losses.size else 0.0
    if gross_loss > 0:
        profit_factor = gross_profit / gross_loss
    else:
        profit_factor = float("inf") if gross_profit > 0 else 0.0

    equity = np.concatenate(([float(initial_balance)], initial_balance + np.cumsum(pnls)))
    peaks = np.maximum.accumulate(equity)
    drawdowns = peaks - equity
    max_dd = float(drawdowns.max()) if drawdowns.size else 0.0
    with np.errstate(divide="ignore", invalid="ignore"):
        dd_pct = np.where(peaks > 0, drawdowns / peaks, 0.0)
    max_dd_pct = float(dd_pct.max()) if dd_pct.size else 0.0

    sharpe = sortino = 0.0
    if pnls.size >= 2:
        prev_equity = equity[:-1]
        with np.errstate(divide="ignore", invalid="ignore"):
            returns = np.where(prev_equity != 0, pnls / prev_equity, 0.0)
        std = float(np.std(returns))
        mean = float(np.mean(returns))
        if std > 0:
            sharpe = mean / std
        downside = returns[returns < 0]
        if downside.size:
            downside_dev = float(np.sqrt(np.mean(downside ** 2)))
            if downside_dev > 0:
                sortino = mean / downside_dev

    best_win, best_loss = _streaks(pnls.tolist())
    net = float(pnls.sum()) if pnls.size else 0.0
    final_balance = float(equity[-1])

    return BacktestStats(
        total_trades=len(trades),
        winning_trades=int(wins.size),
        losing_trades=int(losses.size),
        win_rate=(wins.size / len(trades)) if trades else 0.0,
        profit_factor=profit_factor,
        max_drawdown=max_dd,
        max_drawdown_pct=max_dd_pct,
        sharpe_like=sharpe,
        sortino_like=sortino,
        net_profit=net,
        gross_profit=gross_profit,
        gross_loss=gross_loss,
        average_win=float(wins.mean()) if wins.size else 0.0,
        average_loss=float(losses.mean()) if losses.size else 0.0,
        largest_win=float(wins.max()) if wins.size else 0.0,
        largest_loss=float(losses.min()) if losses.size else 0.0,
        max_consecutive_wins=best_win,
        max_consecutive_losses=best_loss,
        initial_balance=float(initial_balance),
        final_balance=final_balance,
        total_return=(net / initial_balance) if initial_balance else 0.0,
        equity_curve=tuple(float(v) for v in equity),
        trades=trades,
    )
