"""
Columnar statistics over simulated cycles.

Each cycle's year rows are pivoted into a DataFrame (one column per field) and every
statistic is reduced from those full columns, so stats always agree with the trace.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional, Sequence

import numpy as np
import pandas as pd

from math_utils import max_with_index, mean, median, min_with_index

if TYPE_CHECKING:
    from portfolio_calc import CycleData, CycleYearData


@dataclass(frozen=True)
class Extreme:
    """A min or max value with the calendar year (and, across cycles, the cycle) that produced it."""
    value: float
    year: int
    cycle_index: Optional[int] = None


@dataclass(frozen=True)
class BalanceStats:
    total: float
    total_infl_adj: float
    average: float
    average_infl_adj: float
    median: float
    median_infl_adj: float
    min: Extreme
    min_infl_adj: Extreme
    max: Extreme
    max_infl_adj: Extreme
    ending: float
    ending_infl_adj: float


@dataclass(frozen=True)
class WithdrawalStats:
    total: float
    total_infl_adj: float
    average: float
    average_infl_adj: float
    median: float
    median_infl_adj: float
    min: Extreme
    min_infl_adj: Extreme
    max: Extreme
    max_infl_adj: Extreme


@dataclass(frozen=True)
class CycleStats:
    fees: float
    equities_growth: float
    dividends_growth: float
    bonds_growth: float
    balance: BalanceStats
    withdrawals: WithdrawalStats
    failure_year: Optional[int]  # None when the balance never reaches zero

    @property
    def failed(self) -> bool:
        return self.failure_year is not None


@dataclass(frozen=True)
class AverageMedian:
    average: float
    median: float


@dataclass(frozen=True)
class PortfolioBalanceStats:
    average: float
    average_infl_adj: float
    median: float
    median_infl_adj: float
    min: Extreme
    min_infl_adj: Extreme
    max: Extreme
    max_infl_adj: Extreme


@dataclass(frozen=True)
class PortfolioWithdrawalStats:
    average: float
    average_infl_adj: float
    median: float
    median_infl_adj: float
    min: Extreme
    min_infl_adj: Extreme
    max: Extreme
    max_infl_adj: Extreme
    # Average of each cycle's median withdrawal, alongside the pooled median above
    mean_of_cycle_medians: float
    mean_of_cycle_medians_infl_adj: float


@dataclass(frozen=True)
class PortfolioStats:
    num_failures: int
    num_successes: int
    success_rate: float
    investment_expenses: AverageMedian
    equities_price_change: AverageMedian
    equities_dividends_paid: AverageMedian
    fixed_income_interest_paid: AverageMedian
    balance: PortfolioBalanceStats
    withdrawals: PortfolioWithdrawalStats


def pivot_cycle(year_data: Sequence["CycleYearData"]) -> pd.DataFrame:
    """Transpose one cycle's year rows into a frame with one column per field."""
    return pd.DataFrame(list(year_data))


def pivot_portfolio_cycles(cycles: Sequence["CycleData"]) -> List[pd.DataFrame]:
    """Create a frame of columns for each cycle, in cycle order."""
    return [pivot_cycle(cycle.year_data) for cycle in cycles]


def _extreme(values, years, pick) -> Extreme:
    value, idx = pick(values)
    return Extreme(value=value, year=int(years[idx]))


def crunch_single_cycle_stats(columns: pd.DataFrame) -> CycleStats:
    """Reduce one cycle's pivoted columns into its CycleStats."""
    if len(columns) == 0:
        raise ValueError("Cannot compute statistics for a cycle with no years")

    years = columns["cycle_year"].to_numpy()
    balance = columns["balance_end"].to_numpy(dtype=np.float64)
    balance_infl_adj = columns["balance_infl_adj_end"].to_numpy(dtype=np.float64)
    withdrawal = columns["withdrawal"].to_numpy(dtype=np.float64)
    withdrawal_infl_adj = columns["withdrawal_infl_adj"].to_numpy(dtype=np.float64)

    depleted = np.flatnonzero(balance <= 0)
    failure_year = int(years[depleted[0]]) if depleted.size else None

    balance_stats = BalanceStats(
        total=float(balance.sum()),
        total_infl_adj=float(balance_infl_adj.sum()),
        average=mean(balance),
        average_infl_adj=mean(balance_infl_adj),
        median=median(balance),
        median_infl_adj=median(balance_infl_adj),
        min=_extreme(balance, years, min_with_index),
        min_infl_adj=_extreme(balance_infl_adj, years, min_with_index),
        max=_extreme(balance, years, max_with_index),
        max_infl_adj=_extreme(balance_infl_adj, years, max_with_index),
        # Final year's values, not an extreme
        ending=float(balance[-1]),
        ending_infl_adj=float(balance_infl_adj[-1]),
    )

    withdrawal_stats = WithdrawalStats(
        total=float(withdrawal.sum()),
        total_infl_adj=float(withdrawal_infl_adj.sum()),
        average=mean(withdrawal),
        average_infl_adj=mean(withdrawal_infl_adj),
        median=median(withdrawal),
        median_infl_adj=median(withdrawal_infl_adj),
        min=_extreme(withdrawal, years, min_with_index),
        min_infl_adj=_extreme(withdrawal_infl_adj, years, min_with_index),
        max=_extreme(withdrawal, years, max_with_index),
        max_infl_adj=_extreme(withdrawal_infl_adj, years, max_with_index),
    )

    return CycleStats(
        fees=float(columns["fees"].sum()),
        equities_growth=float(columns["equities_growth"].sum()),
        dividends_growth=float(columns["dividends_growth"].sum()),
        bonds_growth=float(columns["bonds_growth"].sum()),
        balance=balance_stats,
        withdrawals=withdrawal_stats,
        failure_year=failure_year,
    )


def _cross_cycle_extreme(values, cycles, pick) -> Extreme:
    """Extreme of per-cycle values, labelled with the cycle's start year."""
    value, idx = pick(values)
    return Extreme(value=value, year=int(cycles[idx].cycle_start_year), cycle_index=idx)


def _cross_cycle_nested_extreme(extremes: Sequence[Extreme], pick) -> Extreme:
    """Extreme of per-cycle extremes, keeping the calendar year inside the winning cycle."""
    value, idx = pick([e.value for e in extremes])
    return Extreme(value=value, year=extremes[idx].year, cycle_index=idx)


def _average_median(values) -> AverageMedian:
    return AverageMedian(average=mean(values), median=median(values))


def crunch_all_portfolio_stats(cycles: Sequence["CycleData"]) -> PortfolioStats:
    """Aggregate statistics across every cycle of a run."""
    if len(cycles) == 0:
        raise ValueError("Cannot compute portfolio statistics without any cycles")

    stats = [cycle.stats for cycle in cycles]

    num_failures = sum(1 for s in stats if s.failed)
    num_successes = len(stats) - num_failures

    endings = [s.balance.ending for s in stats]
    endings_infl_adj = [s.balance.ending_infl_adj for s in stats]
    balance = PortfolioBalanceStats(
        average=mean(endings),
        average_infl_adj=mean(endings_infl_adj),
        median=median(endings),
        median_infl_adj=median(endings_infl_adj),
        min=_cross_cycle_extreme(endings, cycles, min_with_index),
        min_infl_adj=_cross_cycle_extreme(endings_infl_adj, cycles, min_with_index),
        max=_cross_cycle_extreme(endings, cycles, max_with_index),
        max_infl_adj=_cross_cycle_extreme(endings_infl_adj, cycles, max_with_index),
    )

    # Withdrawal distribution pooled over every simulated year of every cycle
    pivoted = pivot_portfolio_cycles(cycles)
    all_withdrawals = np.concatenate([cols["withdrawal"].to_numpy(dtype=np.float64) for cols in pivoted])
    all_withdrawals_infl_adj = np.concatenate(
        [cols["withdrawal_infl_adj"].to_numpy(dtype=np.float64) for cols in pivoted]
    )
    withdrawals = PortfolioWithdrawalStats(
        average=mean(all_withdrawals),
        average_infl_adj=mean(all_withdrawals_infl_adj),
        median=median(all_withdrawals),
        median_infl_adj=median(all_withdrawals_infl_adj),
        min=_cross_cycle_nested_extreme([s.withdrawals.min for s in stats], min_with_index),
        min_infl_adj=_cross_cycle_nested_extreme([s.withdrawals.min_infl_adj for s in stats], min_with_index),
        max=_cross_cycle_nested_extreme([s.withdrawals.max for s in stats], max_with_index),
        max_infl_adj=_cross_cycle_nested_extreme([s.withdrawals.max_infl_adj for s in stats], max_with_index),
        mean_of_cycle_medians=mean([s.withdrawals.median for s in stats]),
        mean_of_cycle_medians_infl_adj=mean([s.withdrawals.median_infl_adj for s in stats]),
    )

    return PortfolioStats(
        num_failures=num_failures,
        num_successes=num_successes,
        success_rate=num_successes / len(stats),
        investment_expenses=_average_median([s.fees for s in stats]),
        equities_price_change=_average_median([s.equities_growth for s in stats]),
        equities_dividends_paid=_average_median([s.dividends_growth for s in stats]),
        fixed_income_interest_paid=_average_median([s.bonds_growth for s in stats]),
        balance=balance,
        withdrawals=withdrawals,
    )


def get_quantiles(cycles: Sequence["CycleData"], quantiles: Sequence[float]) -> pd.DataFrame:
    """
    Quantiles of the inflation-adjusted ending balance at each cycle year, across cycles.

    Returns a frame indexed by quantile with one column per cycle-year offset.
    Quantiles use linear interpolation between order statistics.
    """
    if len(cycles) == 0:
        raise ValueError("Cannot compute quantiles without any cycles")
    lengths = {len(cycle.year_data) for cycle in cycles}
    if len(lengths) != 1:
        raise ValueError("All cycles must have the same number of years to compute quantiles")

    balances = np.vstack([
        cols["balance_infl_adj_end"].to_numpy(dtype=np.float64) for cols in pivot_portfolio_cycles(cycles)
    ])
    result = np.quantile(balances, np.asarray(quantiles, dtype=np.float64), axis=0)
    return pd.DataFrame(
        result,
        index=pd.Index(list(quantiles), name="quantile"),
        columns=pd.RangeIndex(balances.shape[1], name="cycle_year_index"),
    )


def cycles_to_frame(cycles: Sequence["CycleData"]) -> pd.DataFrame:
    """Long-format frame of every year row of every cycle, tagged with its cycle index."""
    frames = []
    for idx, cols in enumerate(pivot_portfolio_cycles(cycles)):
        frames.append(cols.assign(cycle_index=idx))
    if not frames:
        return pd.DataFrame()
    return pd.concat(frames, ignore_index=True)
