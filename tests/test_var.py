from __future__ import annotations

import logging

import numpy as np
import pytest

from portfolio_risk_system.risk.var import (
    box_muller_normals,
    estimate_var,
    historical_var,
    monte_carlo_var,
    parametric_var,
)


def test_historical_var_falls_back_below_thirty_samples() -> None:
    returns = np.random.default_rng(1).normal(0.0, 0.05, 29)
    assert historical_var(returns, 1_000.0) == pytest.approx((20.0, 30.0, 40.0))


def test_historical_var_uses_sorted_quantiles() -> None:
    returns = [-(i + 1) / 100 for i in range(100)]
    var95, var99, cvar = historical_var(returns, 1.0)
    assert var95 == pytest.approx(0.95)
    assert var99 == pytest.approx(0.99)
    assert cvar == pytest.approx(0.995)


def test_parametric_var_from_sample_volatility() -> None:
    returns = np.random.default_rng(2).normal(0.0, 0.03, 200)
    vol = float(np.std(returns, ddof=1))
    var95, var99, cvar = parametric_var(returns, 10_000.0)
    assert var95 == pytest.approx(10_000.0 * vol * 1.645)
    assert var99 == pytest.approx(10_000.0 * vol * 2.326)
    assert cvar == pytest.approx(var99 * 1.15)


def test_parametric_var_defaults_to_two_percent_volatility() -> None:
    var95, var99, cvar = parametric_var([0.01], 1_000.0)
    assert var95 == pytest.approx(32.9)
    assert var99 == pytest.approx(46.52)
    assert cvar == pytest.approx(46.52 * 1.15)


def test_box_muller_normals_are_standard() -> None:
    draws = box_muller_normals(np.random.default_rng(11), 20_000)
    assert np.isfinite(draws).all()
    assert abs(draws.mean()) < 0.05
    assert draws.std() == pytest.approx(1.0, abs=0.05)


def test_monte_carlo_var_is_reproducible_for_a_seed() -> None:
    first = monte_carlo_var([], 1_000_000.0, 10_000, np.random.default_rng(5))
    second = monte_carlo_var([], 1_000_000.0, 10_000, np.random.default_rng(5))
    assert first == second
    var95, var99, cvar = first
    assert 0 < var95 < var99 < cvar
    assert var99 == pytest.approx(1_000_000.0 * 0.02 * 2.326, rel=0.1)


def test_estimate_var_scales_by_square_root_of_horizon() -> None:
    result = estimate_var("historical", [], 1_000.0, 0.99, 4, 100, np.random.default_rng(0))
    assert result.var95 == pytest.approx(40.0)
    assert result.var99 == pytest.approx(60.0)
    assert result.cvar == pytest.approx(80.0)
    assert result.time_horizon_days == 4


def test_unknown_var_method_falls_back_to_historical(caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="portfolio_risk_system.risk.var"):
        result = estimate_var("garch", [], 1_000.0, 0.99, 1, 100, np.random.default_rng(0))
    assert result.method == "historical"
    assert result.var95 == pytest.approx(20.0)
    assert "falling back to historical" in caplog.text
