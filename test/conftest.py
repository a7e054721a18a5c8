"""Shared fixtures for the simulator tests."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from market_data import MarketYearData
from portfolio_options import NominalWithdrawal, PortfolioOptions

REFERENCE_DATA_PATH = Path(__file__).parent / "data" / "jan-shiller-data.csv"

RECENT_ROWS = [
    (2015, 2028.18, 39.89666667, 233.707, 1.88),
    (2016, 1918.6, 43.55333333, 236.916, 2.09),
    (2017, 2275.12, 45.92666667, 242.839, 2.43),
    (2018, 2789.8, 49.28666667, 247.867, 2.58),
]


def make_series(start_year, prices, dividends=None, cpis=None, rates=None):
    """Build a gap-free series; omitted columns default to no dividends, flat CPI and zero interest."""
    n = len(prices)
    dividends = dividends if dividends is not None else [0.0] * n
    cpis = cpis if cpis is not None else [100.0] * n
    rates = rates if rates is not None else [0.0] * n
    return [
        MarketYearData(start_year + i, float(prices[i]), float(dividends[i]), float(cpis[i]), float(rates[i]))
        for i in range(n)
    ]


@pytest.fixture
def recent_market_data():
    return [MarketYearData(*row) for row in RECENT_ROWS]


@pytest.fixture
def starter_options():
    return PortfolioOptions(
        simulation_years_length=60,
        start_balance=1_000_000,
        investment_expense_ratio=0.0025,
        equities_ratio=0.9,
        withdrawal=NominalWithdrawal(static_amount=40_000),
    )
