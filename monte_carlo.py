import dataclasses
import logging
import math
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

import numba as nb
import numpy as np

from market_data import InvalidMarketDataError, MarketYearData
from math_utils import mean, norm_sinv, sample_std
from portfolio_calc import CycleData, CyclePortfolio, InsufficientDataError, SimulationCancelled
from portfolio_options import PortfolioOptions
from portfolio_stats import PortfolioStats, crunch_all_portfolio_stats

logger = logging.getLogger(__name__)

SIMULATION_METHODS = ("arithmetic", "geometric")


@dataclass(frozen=True)
class MarketDataStats:
    mean_annual_market_change: float
    std_dev_annual_market_change: float


@dataclass(frozen=True)
class MonteCarloResult:
    cycles: List[CycleData]
    portfolio_stats: PortfolioStats
    num_datasets: int
    market_stats: MarketDataStats


def get_market_data_stats(market_data: Sequence[MarketYearData]) -> MarketDataStats:
    """
    Mean and sample standard deviation of the year-over-year percentage change in
    equities price across the series.
    """
    if len(market_data) < 3:
        raise InsufficientDataError(
            f"At least 3 years of market data are needed for market statistics, got {len(market_data)}"
        )
    prices = np.array([record.equities_price for record in market_data], dtype=np.float64)
    changes = (prices[1:] - prices[:-1]) / prices[:-1]
    if not np.all(np.isfinite(changes)):
        raise InvalidMarketDataError("Equities prices produce non-finite annual changes")

    return MarketDataStats(
        mean_annual_market_change=mean(changes),
        std_dev_annual_market_change=sample_std(changes),
    )


@nb.jit(nopython=True)
def simulate_equities_prices(first_price, probabilities, mean_change, std_dev_change, geometric):
    """
    Build a synthetic price path from first_price, one step per probability.

    Each probability is mapped to a standard normal draw through norm_sinv. The
    arithmetic step is price * (1 + mean + z * sd); the geometric step is
    price * exp(mean - sd^2 / 2 + z * sd).
    """
    prices = np.empty(len(probabilities) + 1)
    prices[0] = first_price
    drift = mean_change - (std_dev_change * std_dev_change) / 2.0

    for i in range(len(probabilities)):
        z = norm_sinv(probabilities[i])
        if geometric:
            prices[i + 1] = prices[i] * math.exp(drift + z * std_dev_change)
        else:
            prices[i + 1] = prices[i] * (1.0 + mean_change + z * std_dev_change)

    return prices


def generate_monte_carlo_dataset(
    original_year_data: Sequence[MarketYearData],
    market_stats: MarketDataStats,
    rng=None,
    method: str = "arithmetic",
) -> List[MarketYearData]:
    """
    Synthetic copy of a series where only the equities price is simulated.

    The first record is kept as-is; dividends, inflation and fixed income are copied
    from the original record of the same year.

    Parameters
    ----------
    rng : numpy.random.Generator or int, optional
        Random source (or seed). A fresh unseeded generator is used when omitted.
    method : str
        "arithmetic" (default) or "geometric".
    """
    if method not in SIMULATION_METHODS:
        raise ValueError(f"Unknown simulation method {method!r}, expected one of {SIMULATION_METHODS}")
    if len(original_year_data) == 0:
        raise InsufficientDataError("Cannot simulate from an empty market data series")

    rng = np.random.default_rng(rng)
    probabilities = rng.random(len(original_year_data) - 1)

    prices = simulate_equities_prices(
        float(original_year_data[0].equities_price),
        probabilities,
        float(market_stats.mean_annual_market_change),
        float(market_stats.std_dev_annual_market_change),
        method == "geometric",
    )

    simulated = [original_year_data[0]]
    for record, price in zip(original_year_data[1:], prices[1:]):
        simulated.append(dataclasses.replace(record, equities_price=float(price)))
    return simulated


def run_monte_carlo(
    market_data: Sequence[MarketYearData],
    options: PortfolioOptions,
    desired_simulations: int,
    seed=None,
    method: str = "arithmetic",
    market_stats: Optional[MarketDataStats] = None,
    on_progress: Optional[Callable[[int, int], None]] = None,
    should_cancel: Optional[Callable[[], bool]] = None,
) -> MonteCarloResult:
    """
    Run every cycle over enough synthetic series to reach desired_simulations cycles.

    ceil(desired_simulations / cycles_per_series) independent series are generated from
    the historical statistics and their cycles are pooled into one set of statistics.
    A synthetic series with a non-positive price aborts the batch with
    InvalidMarketDataError; rerunning with another seed is left to the caller.
    """
    desired_simulations = int(desired_simulations)
    if desired_simulations < 1:
        raise ValueError(f"Desired simulations must be at least 1, got {desired_simulations}")

    if market_stats is None:
        market_stats = get_market_data_stats(market_data)

    cycles_per_series = CyclePortfolio(market_data, options).get_max_simulation_cycles()
    if cycles_per_series <= 0:
        raise InsufficientDataError(
            f"Not enough data for {options.simulation_years_length} year simulations"
        )
    num_datasets = math.ceil(desired_simulations / cycles_per_series)

    logger.info("Monte Carlo: %d series x %d cycles for %d desired simulations",
                num_datasets, cycles_per_series, desired_simulations)

    rng = np.random.default_rng(seed)
    cycles: List[CycleData] = []
    for i in range(num_datasets):
        if should_cancel is not None and should_cancel():
            raise SimulationCancelled(f"Monte Carlo cancelled after {i} of {num_datasets} series")

        dataset = generate_monte_carlo_dataset(market_data, market_stats, rng=rng, method=method)
        portfolio = CyclePortfolio(dataset, options)
        for offset in range(cycles_per_series):
            cycles.append(portfolio.crunch_cycle(portfolio.start_year + offset))

        if on_progress is not None:
            on_progress(i + 1, num_datasets)

    return MonteCarloResult(
        cycles=cycles,
        portfolio_stats=crunch_all_portfolio_stats(cycles),
        num_datasets=num_datasets,
        market_stats=market_stats,
    )
