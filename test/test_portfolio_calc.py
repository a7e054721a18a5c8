"""Tests for portfolio_calc.py year step, withdrawal policies and cycle engines."""

import math

import pytest

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from conftest import RECENT_ROWS, make_series
from market_data import InvalidMarketDataError, MarketYearData
from portfolio_calc import CyclePortfolio, InsufficientDataError, SimulationCancelled
from portfolio_options import (
    InflationAdjustedWithdrawal,
    NominalWithdrawal,
    PercentPortfolioClampedWithdrawal,
    PercentPortfolioWithdrawal,
)


def _manual_cycle(rows, start_balance, equities_ratio, expense_ratio, spend):
    """Straight-line reference simulation over rows of (year, price, dividend, cpi, rate)."""
    balance = start_balance
    first_cpi = rows[0][3]
    results = []
    for i in range(len(rows) - 1):
        _, price, dividend, cpi, rate = rows[i]
        next_price = rows[i + 1][1]
        inflation = 1.0 if i == 0 else cpi / first_cpi
        subtotal = balance - spend(balance, inflation)
        equities = subtotal * equities_ratio
        bonds = subtotal * (1 - equities_ratio)
        end = (equities + bonds
               + equities * (next_price - price) / price
               + equities * dividend / price
               + bonds * rate / 100)
        end -= end * expense_ratio
        results.append((end, end / inflation))
        balance = end
    return results


class TestConstruction:
    """Tests for CyclePortfolio construction and query helpers."""

    def test_rejects_non_options(self, recent_market_data):
        with pytest.raises(TypeError):
            CyclePortfolio(recent_market_data, {"simulation_years_length": 1})

    def test_rejects_nan_data(self, starter_options):
        series = make_series(2000, [100, 100, 100])
        series[1] = MarketYearData(2001, math.nan, 0.0, 100.0, 0.0)
        with pytest.raises(InvalidMarketDataError):
            CyclePortfolio(series, starter_options)

    def test_rejects_gapped_data(self, recent_market_data, starter_options):
        with pytest.raises(InvalidMarketDataError):
            CyclePortfolio(recent_market_data[::2], starter_options)

    def test_rejects_start_year_outside_data(self, recent_market_data, starter_options):
        with pytest.raises(InsufficientDataError, match="Start year"):
            CyclePortfolio(recent_market_data, starter_options.with_changes(start_year=1990))

    def test_rejects_end_year_outside_data(self, recent_market_data, starter_options):
        with pytest.raises(InsufficientDataError, match="End year"):
            CyclePortfolio(recent_market_data, starter_options.with_changes(end_year=2030))

    def test_get_year_index(self, recent_market_data, starter_options):
        portfolio = CyclePortfolio(recent_market_data, starter_options)
        assert portfolio.get_year_index(2015) == 0
        for year in (2016, 2018, 2030):
            assert portfolio.get_year_index(year) == year - 2015

    def test_get_year_index_custom_start(self, recent_market_data, starter_options):
        portfolio = CyclePortfolio(recent_market_data, starter_options.with_changes(start_year=2016))
        assert portfolio.get_year_index(2018) == 2

    @pytest.mark.parametrize("years_length, expected", [(1, 3), (2, 2), (3, 1), (4, 0)])
    def test_get_max_simulation_cycles(self, recent_market_data, starter_options, years_length, expected):
        portfolio = CyclePortfolio(recent_market_data, starter_options.with_changes(simulation_years_length=years_length))
        assert portfolio.get_max_simulation_cycles() == expected

    def test_get_max_simulation_cycles_formula(self, starter_options):
        series = make_series(1871, [100.0] * 150)
        for years_length in (1, 3, 30, 60, 149):
            portfolio = CyclePortfolio(series, starter_options.with_changes(simulation_years_length=years_length))
            assert portfolio.get_max_simulation_cycles() == (2020 - years_length) - 1871 + 1

    def test_get_max_simulation_cycles_with_window(self, starter_options):
        series = make_series(1871, [100.0] * 150)
        options = starter_options.with_changes(simulation_years_length=3, start_year=1990, end_year=2010)
        assert CyclePortfolio(series, options).get_max_simulation_cycles() == 18


class TestCalculateWithdrawal:
    """Tests for the withdrawal policy evaluator."""

    def _portfolio(self, recent_market_data, starter_options, withdrawal):
        return CyclePortfolio(recent_market_data, starter_options.with_changes(withdrawal=withdrawal))

    def test_nominal(self, recent_market_data, starter_options):
        portfolio = self._portfolio(recent_market_data, starter_options, NominalWithdrawal(40000))
        result = portfolio.calculate_withdrawal(1_000_000, 1.25)
        assert result.actual == 40000
        assert result.infl_adj == pytest.approx(32000)

    def test_inflation_adjusted(self, recent_market_data, starter_options):
        portfolio = self._portfolio(recent_market_data, starter_options, InflationAdjustedWithdrawal(40000))
        result = portfolio.calculate_withdrawal(1_000_000, 1.25)
        assert result.actual == pytest.approx(50000)
        assert result.infl_adj == 40000

    def test_percent_portfolio(self, recent_market_data, starter_options):
        portfolio = self._portfolio(recent_market_data, starter_options, PercentPortfolioWithdrawal(0.04))
        result = portfolio.calculate_withdrawal(1_000_000, 1.25)
        assert result.actual == pytest.approx(40000)
        assert result.infl_adj == pytest.approx(32000)

    def test_percent_portfolio_clamped_within_bounds(self, recent_market_data, starter_options):
        portfolio = self._portfolio(recent_market_data, starter_options,
                                    PercentPortfolioClampedWithdrawal(0.04, 30000, 60000))
        result = portfolio.calculate_withdrawal(1_250_000, 1.25)
        assert result.infl_adj == pytest.approx(40000)
        assert result.actual == pytest.approx(50000)

    def test_percent_portfolio_clamped_to_floor(self, recent_market_data, starter_options):
        portfolio = self._portfolio(recent_market_data, starter_options,
                                    PercentPortfolioClampedWithdrawal(0.04, 30000, 60000))
        result = portfolio.calculate_withdrawal(500_000, 1.25)
        assert result.infl_adj == 30000
        assert result.actual == pytest.approx(37500)

    def test_percent_portfolio_clamped_to_ceiling(self, recent_market_data, starter_options):
        portfolio = self._portfolio(recent_market_data, starter_options,
                                    PercentPortfolioClampedWithdrawal(0.04, 30000, 60000))
        result = portfolio.calculate_withdrawal(5_000_000, 2.0)
        assert result.infl_adj == 60000
        assert result.actual == pytest.approx(120000)

    def test_negative_start_yields_negative_percent_withdrawal(self, recent_market_data, starter_options):
        portfolio = self._portfolio(recent_market_data, starter_options, PercentPortfolioWithdrawal(0.04))
        result = portfolio.calculate_withdrawal(-100_000, 1.0)
        assert result.actual == pytest.approx(-4000)


class TestCalculateYearData:
    """Tests for the single year step."""

    def test_first_year(self, recent_market_data, starter_options):
        portfolio = CyclePortfolio(recent_market_data, starter_options)
        curr, nxt = recent_market_data[0], recent_market_data[1]
        row = portfolio.calculate_year_data(1_000_000, curr, nxt, curr.inflation_index, True)

        equities = 960_000 * 0.9
        bonds = 960_000 * (1 - 0.9)
        equities_growth = equities * (1918.6 - 2028.18) / 2028.18
        dividends_growth = equities * 39.89666667 / 2028.18
        bonds_growth = bonds * 1.88 / 100
        end_subtotal = equities + bonds + equities_growth + dividends_growth + bonds_growth

        assert row.cycle_year == 2015
        assert row.cumulative_inflation == 1.0
        assert row.withdrawal == 40_000
        assert row.start_subtotal == pytest.approx(960_000)
        assert row.equities == pytest.approx(equities)
        assert row.bonds == pytest.approx(bonds)
        assert row.equities_growth == pytest.approx(equities_growth)
        assert row.dividends_growth == pytest.approx(dividends_growth)
        assert row.bonds_growth == pytest.approx(bonds_growth)
        assert row.end_subtotal == pytest.approx(end_subtotal)
        assert row.fees == pytest.approx(end_subtotal * 0.0025)
        assert row.balance_end == pytest.approx(end_subtotal * (1 - 0.0025))
        assert row.balance_infl_adj_end == pytest.approx(row.balance_end)

    def test_later_year_uses_cycle_start_cpi(self, recent_market_data, starter_options):
        portfolio = CyclePortfolio(recent_market_data, starter_options)
        row = portfolio.calculate_year_data(
            1_000_000, recent_market_data[2], recent_market_data[3], 233.707, False
        )
        inflation = 242.839 / 233.707
        assert row.cumulative_inflation == pytest.approx(inflation)
        assert row.balance_infl_adj_start == pytest.approx(1_000_000 / inflation)
        assert row.balance_infl_adj_end == pytest.approx(row.balance_end / inflation)
        assert row.withdrawal_infl_adj == pytest.approx(40_000 / inflation)


class TestCrunchCycle:
    """Tests for the cycle engine."""

    @pytest.mark.parametrize("withdrawal, spend", [
        (NominalWithdrawal(40000), lambda balance, inflation: 40000),
        (InflationAdjustedWithdrawal(40000), lambda balance, inflation: 40000 * inflation),
        (PercentPortfolioWithdrawal(0.04), lambda balance, inflation: 0.04 * balance),
        (PercentPortfolioClampedWithdrawal(0.04, 30000, 60000),
         lambda balance, inflation: min(max(0.04 * balance / inflation, 30000), 60000) * inflation),
    ])
    def test_three_year_cycle_matches_reference(self, recent_market_data, starter_options, withdrawal, spend):
        options = starter_options.with_changes(simulation_years_length=3, withdrawal=withdrawal)
        cycle = CyclePortfolio(recent_market_data, options).crunch_single_cycle_data()

        expected = _manual_cycle(RECENT_ROWS, 1_000_000, 0.9, 0.0025, spend)
        assert [row.balance_end for row in cycle.year_data] == pytest.approx([e[0] for e in expected], rel=1e-12)
        assert cycle.stats.balance.ending == pytest.approx(expected[-1][0], rel=1e-12)
        assert cycle.stats.balance.ending_infl_adj == pytest.approx(expected[-1][1], rel=1e-12)

    def test_rows_are_labelled_and_chained(self, recent_market_data, starter_options):
        options = starter_options.with_changes(simulation_years_length=2)
        cycle = CyclePortfolio(recent_market_data, options).crunch_cycle(2016)
        assert [row.cycle_year for row in cycle.year_data] == [2016, 2017]
        assert all(row.cycle_start_year == 2016 for row in cycle.year_data)
        assert cycle.cycle_start_year == 2016
        assert cycle.year_data[0].balance_start == 1_000_000
        assert cycle.year_data[1].balance_start == cycle.year_data[0].balance_end

    def test_inflation_relative_to_cycle_start(self, recent_market_data, starter_options):
        options = starter_options.with_changes(simulation_years_length=2)
        cycle = CyclePortfolio(recent_market_data, options).crunch_cycle(2016)
        assert cycle.year_data[0].cumulative_inflation == 1.0
        assert cycle.year_data[1].cumulative_inflation == pytest.approx(242.839 / 236.916)

    def test_window_past_end_of_data(self, recent_market_data, starter_options):
        options = starter_options.with_changes(simulation_years_length=3)
        with pytest.raises(InsufficientDataError, match="needs data through 2019"):
            CyclePortfolio(recent_market_data, options).crunch_cycle(2016)

    def test_start_year_not_in_data(self, recent_market_data, starter_options):
        options = starter_options.with_changes(simulation_years_length=1)
        portfolio = CyclePortfolio(recent_market_data, options)
        with pytest.raises(InsufficientDataError, match="not in the market data"):
            portfolio.crunch_cycle(2010)
        with pytest.raises(InsufficientDataError):
            portfolio.crunch_cycle(2020)

    def test_failure_year_and_depleted_state(self, starter_options):
        # Flat market, no growth: 100 -> 60 -> 20 -> -20 -> -60
        series = make_series(2000, [100.0] * 5)
        options = starter_options.with_changes(
            simulation_years_length=4, start_balance=100, investment_expense_ratio=0.0,
            withdrawal=NominalWithdrawal(40),
        )
        cycle = CyclePortfolio(series, options).crunch_single_cycle_data()

        assert [row.balance_end for row in cycle.year_data] == pytest.approx([60, 20, -20, -60])
        assert cycle.stats.failure_year == 2002
        assert cycle.stats.failed
        failure_idx = [row.cycle_year for row in cycle.year_data].index(cycle.stats.failure_year)
        assert all(row.balance_end > 0 for row in cycle.year_data[:failure_idx])
        assert all(row.balance_end <= 0 for row in cycle.year_data[failure_idx:])

    def test_exactly_zero_balance_is_failure(self, starter_options):
        series = make_series(2000, [100.0] * 3)
        options = starter_options.with_changes(
            simulation_years_length=2, start_balance=100, investment_expense_ratio=0.0,
            withdrawal=NominalWithdrawal(50),
        )
        cycle = CyclePortfolio(series, options).crunch_single_cycle_data()
        assert cycle.stats.failure_year == 2001

    def test_successful_cycle_has_no_failure_year(self, recent_market_data, starter_options):
        options = starter_options.with_changes(simulation_years_length=3)
        cycle = CyclePortfolio(recent_market_data, options).crunch_single_cycle_data()
        assert cycle.stats.failure_year is None
        assert not cycle.stats.failed

    def test_withdrawal_roundtrip_with_inflation(self, recent_market_data, starter_options):
        for withdrawal in (NominalWithdrawal(40000), InflationAdjustedWithdrawal(40000)):
            options = starter_options.with_changes(simulation_years_length=3, withdrawal=withdrawal)
            cycle = CyclePortfolio(recent_market_data, options).crunch_single_cycle_data()
            for row in cycle.year_data:
                assert row.withdrawal / row.cumulative_inflation == pytest.approx(row.withdrawal_infl_adj)
                assert row.withdrawal_infl_adj * row.cumulative_inflation == pytest.approx(row.withdrawal)


class TestCrunchAllCyclesData:
    """Tests for the portfolio engine."""

    def test_cycles_in_chronological_order(self, recent_market_data, starter_options):
        options = starter_options.with_changes(simulation_years_length=1)
        portfolio = CyclePortfolio(recent_market_data, options)
        result = portfolio.crunch_all_cycles_data()

        cycles = result.portfolio_lifecycles_data
        assert len(cycles) == portfolio.get_max_simulation_cycles() == 3
        assert [c.cycle_start_year for c in cycles] == [2015, 2016, 2017]
        for i, cycle in enumerate(cycles):
            assert cycle.cycle_start_year == portfolio.start_year + i

    def test_known_ending_balance_for_2015_cycle(self, recent_market_data, starter_options):
        options = starter_options.with_changes(simulation_years_length=3)
        result = CyclePortfolio(recent_market_data, options).crunch_all_cycles_data()
        cycles = result.portfolio_lifecycles_data
        assert len(cycles) == 1
        assert cycles[0].stats.balance.ending_infl_adj == pytest.approx(1194007.547, abs=1e-3)

    def test_each_cycle_matches_single_cycle(self, recent_market_data, starter_options):
        options = starter_options.with_changes(simulation_years_length=2)
        portfolio = CyclePortfolio(recent_market_data, options)
        result = portfolio.crunch_all_cycles_data()
        assert result.portfolio_lifecycles_data[1] == portfolio.crunch_cycle(2016)

    def test_portfolio_stats_included(self, recent_market_data, starter_options):
        options = starter_options.with_changes(simulation_years_length=1)
        result = CyclePortfolio(recent_market_data, options).crunch_all_cycles_data()
        assert result.portfolio_stats.num_successes == 3
        assert result.portfolio_stats.success_rate == 1.0

    def test_idempotent(self, recent_market_data, starter_options):
        options = starter_options.with_changes(simulation_years_length=2)
        portfolio = CyclePortfolio(recent_market_data, options)
        assert portfolio.crunch_all_cycles_data() == portfolio.crunch_all_cycles_data()

    def test_respects_end_year(self, recent_market_data, starter_options):
        options = starter_options.with_changes(simulation_years_length=1, end_year=2017)
        result = CyclePortfolio(recent_market_data, options).crunch_all_cycles_data()
        assert [c.cycle_start_year for c in result.portfolio_lifecycles_data] == [2015, 2016]

    def test_not_enough_data(self, recent_market_data, starter_options):
        options = starter_options.with_changes(simulation_years_length=4)
        with pytest.raises(InsufficientDataError, match="Not enough data"):
            CyclePortfolio(recent_market_data, options).crunch_all_cycles_data()

    def test_progress_callback(self, recent_market_data, starter_options):
        options = starter_options.with_changes(simulation_years_length=1)
        calls = []
        CyclePortfolio(recent_market_data, options).crunch_all_cycles_data(
            on_progress=lambda current, total: calls.append((current, total))
        )
        assert calls == [(1, 3), (2, 3), (3, 3)]

    def test_cancellation(self, recent_market_data, starter_options):
        options = starter_options.with_changes(simulation_years_length=1)
        checks = []

        def should_cancel():
            checks.append(1)
            return len(checks) > 1

        with pytest.raises(SimulationCancelled, match="after 1 of 3"):
            CyclePortfolio(recent_market_data, options).crunch_all_cycles_data(should_cancel=should_cancel)
