"""
Risk Management - Correlation Analyzer.

============================================================
PURPOSE
============================================================
Pearson correlation of daily returns between a candidate and
existing holdings, used as a hard entry block.

Fewer than MIN_RETURNS overlapping returns means the correlation
is unknown and reported as 0.0.

============================================================
"""

import logging
import statistics
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence

from risk_management.types import CorrelationResult


logger = logging.getLogger(__name__)


MIN_RETURNS = 5


class PriceHistoryProvider(ABC):
    """Source of daily closing prices, oldest first."""

    @abstractmethod
    def get_closes(self, symbol: str, lookback_days: int) -> List[float]:
        pass


def daily_returns(closes: Sequence[float]) -> List[float]:
    returns = []
    for previous, current in zip(closes, closes[1:]):
        if previous > 0:
            returns.append((current - previous) / previous)
    return returns


def pearson(a: Sequence[float], b: Sequence[float]) -> float:
    """Correlation of the aligned tails of ``a`` and ``b``; 0.0 when unknown."""
    n = min(len(a), len(b))
    if n < MIN_RETURNS:
        return 0.0
    try:
        return statistics.correlation(list(a[-n:]), list(b[-n:]))
    except statistics.StatisticsError:
        # constant series
        return 0.0


class CorrelationAnalyzer:
    """Correlation checks against current holdings."""

    def __init__(self, history: PriceHistoryProvider, lookback_days: int = 30):
        self._history = history
        self._lookback_days = lookback_days

    def _returns(self, symbol: str) -> List[float]:
        try:
            closes = self._history.get_closes(symbol, self._lookback_days)
        except Exception as e:
            logger.warning(f"Price history unavailable for {symbol}: {e}")
            return []
        return daily_returns(closes or [])

    def correlation(self, symbol: str, other: str) -> CorrelationResult:
        a = self._returns(symbol)
        b = self._returns(other)
        return CorrelationResult(
            symbol=symbol,
            other=other,
            correlation=pearson(a, b),
            data_points=min(len(a), len(b)),
        )

    def check_against_holdings(self, symbol: str, holdings: Sequence[str]) -> List[CorrelationResult]:
        candidate = self._returns(symbol)
        results = []
        for held in holdings:
            if held == symbol:
                continue
            other = self._returns(held)
            results.append(CorrelationResult(
                symbol=symbol,
                other=held,
                correlation=pearson(candidate, other),
                data_points=min(len(candidate), len(other)),
            ))
        return results

    def highest_correlation(self, symbol: str, holdings: Sequence[str]) -> Optional[CorrelationResult]:
        """Holding with the largest absolute correlation, None without holdings."""
        results = self.check_against_holdings(symbol, holdings)
        if not results:
            return None
        return max(results, key=lambda r: abs(r.correlation))

    def correlation_matrix(self, symbols: Sequence[str]) -> Dict[str, Dict[str, float]]:
        returns = {symbol: self._returns(symbol) for symbol in symbols}
        matrix: Dict[str, Dict[str, float]] = {}
        for a in symbols:
            matrix[a] = {}
            for b in symbols:
                matrix[a][b] = 1.0 if a == b else pearson(returns[a], returns[b])
        return matrix
