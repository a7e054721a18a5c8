from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, List, NamedTuple, Optional, Sequence

from market_data import InvalidMarketDataError, MarketYearData, validate_market_data
from math_utils import clamp
from portfolio_options import (
    InflationAdjustedWithdrawal,
    NominalWithdrawal,
    PercentPortfolioClampedWithdrawal,
    PercentPortfolioWithdrawal,
    PortfolioOptions,
)
from portfolio_stats import (
    CycleStats,
    PortfolioStats,
    crunch_all_portfolio_stats,
    crunch_single_cycle_stats,
    pivot_cycle,
)

logger = logging.getLogger(__name__)


class InsufficientDataError(ValueError):
    """Raised when a requested cycle needs market data outside the series."""


class SimulationCancelled(RuntimeError):
    """Raised when a caller-supplied cancellation check asks a run to stop."""


class WithdrawalAmount(NamedTuple):
    actual: float
    infl_adj: float


@dataclass(frozen=True)
class CycleYearData:
    cycle_year: int
    cycle_start_year: Optional[int]
    cumulative_inflation: float
    balance_start: float
    balance_infl_adj_start: float
    withdrawal: float
    withdrawal_infl_adj: float
    start_subtotal: float
    equities: float
    equities_growth: float
    dividends_growth: float
    bonds: float
    bonds_growth: float
    end_subtotal: float
    fees: float
    balance_end: float
    balance_infl_adj_end: float


@dataclass(frozen=True)
class CycleData:
    year_data: List[CycleYearData]
    stats: CycleStats

    @property
    def cycle_start_year(self) -> int:
        return self.year_data[0].cycle_start_year


@dataclass(frozen=True)
class PortfolioRunResult:
    portfolio_lifecycles_data: List[CycleData]
    portfolio_stats: PortfolioStats


class CyclePortfolio:
    """
    Simulates a portfolio over every retirement cycle a market data series supports.

    The series and options are read-only for the lifetime of the object, so repeated
    calls return identical results.
    """

    def __init__(self, market_data: Sequence[MarketYearData], options: PortfolioOptions):
        if not isinstance(options, PortfolioOptions):
            raise TypeError(f"options must be PortfolioOptions, got {type(options).__name__}")

        self.market_data = tuple(market_data)
        validate_market_data(self.market_data)
        self.options = options

        self.first_data_year = self.market_data[0].year
        self.last_data_year = self.market_data[-1].year

        self.start_year = options.start_year if options.start_year is not None else self.first_data_year
        self.end_year = options.end_year if options.end_year is not None else self.last_data_year

        for label, year in (("Start year", self.start_year), ("End year", self.end_year)):
            if not (self.first_data_year <= year <= self.last_data_year):
                raise InsufficientDataError(
                    f"{label} {year} is outside the market data ({self.first_data_year}-{self.last_data_year})"
                )
        if self.end_year < self.start_year:
            raise InsufficientDataError(f"End year ({self.end_year}) cannot be before start year ({self.start_year})")

    def get_year_index(self, year: int) -> int:
        """Offset of a year from the first cycle start year."""
        return int(year) - self.start_year

    def get_max_simulation_cycles(self) -> int:
        """Number of start years with a full window plus the lookahead year before end_year."""
        last_possible_start_year = self.end_year - self.options.simulation_years_length
        # Add 1 to include start year
        return max(last_possible_start_year - self.start_year + 1, 0)

    def calculate_withdrawal(self, portfolio_start: float, cumulative_inflation: float) -> WithdrawalAmount:
        """Nominal and inflation-adjusted withdrawal for one year under the configured policy."""
        withdrawal = self.options.withdrawal

        if isinstance(withdrawal, NominalWithdrawal):
            actual = withdrawal.static_amount
            return WithdrawalAmount(actual, actual / cumulative_inflation)

        if isinstance(withdrawal, InflationAdjustedWithdrawal):
            return WithdrawalAmount(withdrawal.static_amount * cumulative_inflation, withdrawal.static_amount)

        if isinstance(withdrawal, PercentPortfolioWithdrawal):
            actual = withdrawal.percentage * portfolio_start
            return WithdrawalAmount(actual, actual / cumulative_inflation)

        if isinstance(withdrawal, PercentPortfolioClampedWithdrawal):
            raw_infl_adj = withdrawal.percentage * (portfolio_start / cumulative_inflation)
            infl_adj = clamp(raw_infl_adj, withdrawal.floor, withdrawal.ceiling)
            return WithdrawalAmount(infl_adj * cumulative_inflation, infl_adj)

        raise ValueError(f"Unsupported withdrawal policy: {withdrawal!r}")

    def calculate_year_data(
        self,
        starting_balance: float,
        data_curr_year: MarketYearData,
        data_next_year: MarketYearData,
        cycle_start_cpi: float,
        is_first_year: bool,
        cycle_start_year: Optional[int] = None,
    ) -> CycleYearData:
        """
        One year's balance transition: withdraw at the start of the year, split into
        equities and bonds, grow each, then charge fees on the ending subtotal.
        The next year's record only supplies the equities price change.
        """
        if is_first_year:
            cumulative_inflation = 1.0
        else:
            cumulative_inflation = data_curr_year.inflation_index / cycle_start_cpi

        withdrawal = self.calculate_withdrawal(starting_balance, cumulative_inflation)

        start_subtotal = starting_balance - withdrawal.actual
        equities_ratio = self.options.equities_ratio
        equities = start_subtotal * equities_ratio
        bonds = start_subtotal * (1 - equities_ratio)

        price = data_curr_year.equities_price
        equities_growth = equities * (data_next_year.equities_price - price) / price
        dividends_growth = equities * data_curr_year.equities_dividend / price
        bonds_growth = bonds * data_curr_year.fixed_income_interest / 100

        end_subtotal = equities + bonds + equities_growth + dividends_growth + bonds_growth
        fees = end_subtotal * self.options.investment_expense_ratio
        balance_end = end_subtotal - fees

        return CycleYearData(
            cycle_year=data_curr_year.year,
            cycle_start_year=cycle_start_year,
            cumulative_inflation=cumulative_inflation,
            balance_start=starting_balance,
            balance_infl_adj_start=starting_balance / cumulative_inflation,
            withdrawal=withdrawal.actual,
            withdrawal_infl_adj=withdrawal.infl_adj,
            start_subtotal=start_subtotal,
            equities=equities,
            equities_growth=equities_growth,
            dividends_growth=dividends_growth,
            bonds=bonds,
            bonds_growth=bonds_growth,
            end_subtotal=end_subtotal,
            fees=fees,
            balance_end=balance_end,
            balance_infl_adj_end=balance_end / cumulative_inflation,
        )

    def crunch_cycle(self, cycle_start_year: int) -> CycleData:
        """Generate data for each year in a portfolio lifecycle starting at cycle_start_year."""
        years_length = self.options.simulation_years_length
        start_idx = int(cycle_start_year) - self.first_data_year
        if not (0 <= start_idx < len(self.market_data)):
            raise InsufficientDataError(
                f"Cycle start year {cycle_start_year} is not in the market data "
                f"({self.first_data_year}-{self.last_data_year})"
            )
        # The final simulated year reads the following year's price
        if start_idx + years_length >= len(self.market_data):
            raise InsufficientDataError(
                f"Not enough data for a {years_length} year cycle starting in {cycle_start_year}: "
                f"needs data through {cycle_start_year + years_length}, series ends in {self.last_data_year}"
            )

        first_year_cpi = self.market_data[start_idx].inflation_index
        year_data: List[CycleYearData] = []
        balance = self.options.start_balance

        for offset in range(years_length):
            idx = start_idx + offset
            row = self.calculate_year_data(
                balance,
                self.market_data[idx],
                self.market_data[idx + 1],
                first_year_cpi,
                offset == 0,
                cycle_start_year=int(cycle_start_year),
            )
            if not math.isfinite(row.balance_end):
                raise InvalidMarketDataError(
                    f"Non-finite balance in {row.cycle_year} of the cycle starting {cycle_start_year}"
                )
            year_data.append(row)
            balance = row.balance_end

        return CycleData(year_data=year_data, stats=crunch_single_cycle_stats(pivot_cycle(year_data)))

    def crunch_single_cycle_data(self) -> CycleData:
        return self.crunch_cycle(self.start_year)

    def crunch_all_cycles_data(
        self,
        on_progress: Optional[Callable[[int, int], None]] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> PortfolioRunResult:
        """
        Generate a portfolio lifecycle for every possible starting year, in chronological order.

        Parameters
        ----------
        on_progress : callable, optional
            Callback invoked with (current, total) after each cycle.
        should_cancel : callable, optional
            Checked before each cycle; a truthy result raises SimulationCancelled.
        """
        num_cycles = self.get_max_simulation_cycles()
        if num_cycles <= 0:
            raise InsufficientDataError(
                f"Not enough data for {self.options.simulation_years_length} year simulations "
                f"between {self.start_year} and {self.end_year}"
            )

        logger.debug("Crunching %d cycles of %d years from %d", num_cycles,
                     self.options.simulation_years_length, self.start_year)

        cycles: List[CycleData] = []
        for i in range(num_cycles):
            if should_cancel is not None and should_cancel():
                raise SimulationCancelled(f"Simulation cancelled after {i} of {num_cycles} cycles")
            cycles.append(self.crunch_cycle(self.start_year + i))
            if on_progress is not None:
                on_progress(i + 1, num_cycles)

        return PortfolioRunResult(
            portfolio_lifecycles_data=cycles,
            portfolio_stats=self.crunch_all_portfolio_stats(cycles),
        )

    def crunch_all_portfolio_stats(self, cycles: Sequence[CycleData]) -> PortfolioStats:
        return crunch_all_portfolio_stats(cycles)
